"""WebhookEvent model"""
from sqlalchemy import Column, Integer, String, Boolean, Text, UniqueConstraint

from renewal_engine.models.base import Base
from renewal_engine.models.types import UTCDateTime, utcnow


class WebhookEvent(Base):
    """Gateway webhook event log for idempotency and audit"""
    __tablename__ = "webhook_events"
    __table_args__ = (
        UniqueConstraint("gateway_id", "event_id", name="uq_webhook_events_gateway_event"),
    )

    id = Column(Integer, primary_key=True, index=True)
    gateway_id = Column(String(50), nullable=False, index=True)
    event_type = Column(String(100), nullable=False, index=True)
    event_id = Column(String(255), nullable=False, index=True)
    subscription_id = Column(Integer, nullable=True, index=True)
    order_id = Column(Integer, nullable=True)
    payload = Column(Text, nullable=False)
    processed = Column(Boolean, default=False, nullable=False, index=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    processed_at = Column(UTCDateTime, nullable=True)
