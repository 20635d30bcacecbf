"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from renewal_engine.models.base import Base
from renewal_engine.models.subscription import (
    Subscription, SubscriptionNote, SubscriptionStatus, IntervalUnit
)
from renewal_engine.models.order import OrderRelation, RenewalOrder, RelationType, OrderStatus
from renewal_engine.models.payment_method import PaymentMethod
from renewal_engine.models.retry_state import RetryState, RetryStatus
from renewal_engine.models.webhook_event import WebhookEvent

__all__ = [
    "Base",
    "Subscription", "SubscriptionNote", "SubscriptionStatus", "IntervalUnit",
    "OrderRelation", "RenewalOrder", "RelationType", "OrderStatus",
    "PaymentMethod", "RetryState", "RetryStatus", "WebhookEvent",
]
