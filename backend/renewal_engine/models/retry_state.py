"""RetryState model"""
import enum

from sqlalchemy import Column, Integer, String, Text, ForeignKey

from renewal_engine.models.base import Base
from renewal_engine.models.types import UTCDateTime, utcnow


class RetryStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RetryState(Base):
    """Backoff bookkeeping for a subscription's failed renewal

    subscription_id is unique, so there is never more than one in-flight
    retry per subscription; a new failure cycle reuses the row.
    """
    __tablename__ = "retry_states"

    id = Column(Integer, primary_key=True, index=True)
    subscription_id = Column(
        Integer, ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False, unique=True, index=True
    )
    order_id = Column(Integer, nullable=True)
    attempt_number = Column(Integer, nullable=False, default=1)
    next_retry_time = Column(UTCDateTime, nullable=True, index=True)
    status = Column(String(16), nullable=False, default=RetryStatus.PENDING.value, index=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)
