"""Order relation history and renewal orders"""
import enum

from sqlalchemy import Column, Integer, String, Numeric, Text, ForeignKey, Index, text

from renewal_engine.models.base import Base
from renewal_engine.models.types import UTCDateTime, utcnow


class RelationType(str, enum.Enum):
    NEW = "new"
    RENEW = "renew"


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class OrderRelation(Base):
    """Append-only link between a subscription and the orders that billed it"""
    __tablename__ = "order_relations"
    __table_args__ = (
        # exactly one 'new' relation per subscription
        Index(
            "uq_order_relations_one_new", "subscription_id", unique=True,
            sqlite_where=text("relation_type = 'new'"),
            postgresql_where=text("relation_type = 'new'"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    subscription_id = Column(
        Integer, ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    order_id = Column(Integer, nullable=False, index=True)
    order_item_id = Column(Integer, nullable=True)
    relation_type = Column(String(10), nullable=False)  # 'new' or 'renew'
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)


class RenewalOrder(Base):
    """One charge attempt for one billing period

    Doubles as the payment history: every attempt leaves a row with its
    outcome, gateway transaction id and failure reason.
    """
    __tablename__ = "renewal_orders"

    id = Column(Integer, primary_key=True, index=True)
    subscription_id = Column(
        Integer, ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String(16), nullable=False, default=OrderStatus.PENDING.value, index=True)
    gateway_id = Column(String(50), nullable=True)
    gateway_transaction_id = Column(String(255), nullable=True, index=True)
    attempt_number = Column(Integer, nullable=False, default=1)
    failure_reason = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    paid_at = Column(UTCDateTime, nullable=True)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def idempotency_key(self) -> str:
        return f"renewal-{self.id}"

    @property
    def is_paid(self) -> bool:
        return self.status == OrderStatus.PAID.value
