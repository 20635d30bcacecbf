"""PaymentMethod model"""
from sqlalchemy import Column, Integer, String, Boolean, Text, ForeignKey, Index, UniqueConstraint, text

from renewal_engine.models.base import Base
from renewal_engine.models.types import UTCDateTime, utcnow


class PaymentMethod(Base):
    """Vaulted gateway token for a subscription (token is never stored in clear)"""
    __tablename__ = "payment_methods"
    __table_args__ = (
        UniqueConstraint("subscription_id", "gateway_id", name="uq_payment_methods_subscription_gateway"),
        # at most one default per subscription
        Index(
            "uq_payment_methods_one_default", "subscription_id", unique=True,
            sqlite_where=text("is_default = 1"),
            postgresql_where=text("is_default"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    subscription_id = Column(
        Integer, ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    gateway_id = Column(String(50), nullable=False, index=True)
    encrypted_token = Column(Text, nullable=False)
    customer_id = Column(String(100), nullable=False, default="", index=True)
    gateway_customer_id = Column(String(100), nullable=False, default="")
    is_default = Column(Boolean, nullable=False, default=False)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)
