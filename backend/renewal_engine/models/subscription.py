"""Subscription model"""
import enum

from sqlalchemy import Column, Integer, String, Boolean, Numeric, Text, ForeignKey
from sqlalchemy.orm import relationship

from renewal_engine.models.base import Base
from renewal_engine.models.types import UTCDateTime, utcnow


class SubscriptionStatus(str, enum.Enum):
    DRAFT = "draft"
    PENDING = "pending"
    ACTIVE = "active"
    ON_HOLD = "on_hold"
    PE_CANCELLED = "pe_cancelled"  # cancels at period end, still entitled
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    TRASH = "trash"


class IntervalUnit(str, enum.Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


class Subscription(Base):
    """Billed entity with a schedule, status and payment counters

    Status and the renewal counters are only written through the state
    machine and the retry engine.
    """
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(String(255), nullable=False, index=True)
    status = Column(String(32), nullable=False, index=True, default=SubscriptionStatus.PENDING.value)

    # Billing schedule
    interval_count = Column(Integer, nullable=False, default=1)
    interval_unit = Column(String(10), nullable=False, default=IntervalUnit.MONTH.value)
    trial_interval_count = Column(Integer, nullable=True)
    trial_interval_unit = Column(String(10), nullable=True)

    price = Column(Numeric(12, 2), nullable=False)
    signup_fee = Column(Numeric(12, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="USD")

    start_date = Column(UTCDateTime, nullable=False, default=utcnow)
    next_date = Column(UTCDateTime, nullable=True, index=True)

    max_payments = Column(Integer, nullable=False, default=0)  # 0 = unlimited
    payments_made = Column(Integer, nullable=False, default=0)
    max_retry_attempts = Column(Integer, nullable=True)  # overrides MAX_RETRY_ATTEMPTS

    auto_renew = Column(Boolean, nullable=False, default=True)
    user_cancel_allowed = Column(Boolean, nullable=False, default=True)

    grace_period_end = Column(UTCDateTime, nullable=True)
    suspended_reason = Column(String(64), nullable=True)
    trashed_from_status = Column(String(32), nullable=True)

    version = Column(Integer, nullable=False, default=1)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    notes = relationship(
        "SubscriptionNote", back_populates="subscription",
        cascade="all, delete-orphan", order_by="SubscriptionNote.id"
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def has_trial(self) -> bool:
        return bool(self.trial_interval_count and self.trial_interval_unit)

    @property
    def is_suspended(self) -> bool:
        return self.status == SubscriptionStatus.PE_CANCELLED.value and bool(self.suspended_reason)

    def __repr__(self):
        return f"<Subscription id={self.id} status={self.status} next_date={self.next_date}>"


class SubscriptionNote(Base):
    """Human-readable history entry tagged with an activity type"""
    __tablename__ = "subscription_notes"

    id = Column(Integer, primary_key=True, index=True)
    subscription_id = Column(
        Integer, ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    content = Column(Text, nullable=False)
    activity = Column(String(100), nullable=False)
    activity_type = Column(String(50), nullable=False, index=True)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)

    subscription = relationship("Subscription", back_populates="notes")
