"""Ledger queries: subscriptions, order history, retry state

Plain CRUD and lookups. Status changes never happen here; they go through
the state machine.
"""
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from renewal_engine.core.exceptions import SubscriptionNotFoundError, OrderNotFoundError
from renewal_engine.models import (
    Subscription, SubscriptionNote, SubscriptionStatus,
    OrderRelation, RenewalOrder, RelationType, OrderStatus,
    RetryState, RetryStatus,
)

logger = logging.getLogger(__name__)

RENEWABLE_STATUSES = (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PE_CANCELLED.value)


def get_subscription(db: Session, subscription_id: int) -> Subscription:
    """Load a subscription or raise SubscriptionNotFoundError"""
    subscription = db.get(Subscription, subscription_id)
    if subscription is None:
        raise SubscriptionNotFoundError(subscription_id)
    return subscription


def find_due_subscription_ids(db: Session, now: datetime, limit: int = 500) -> List[int]:
    """IDs of active/pe_cancelled subscriptions whose billing date has come

    A subscription is due when next_date has passed, or when it never got a
    next_date, has no trial and its start_date has passed.
    """
    rows = db.query(Subscription.id).filter(
        Subscription.status.in_(RENEWABLE_STATUSES),
        or_(
            Subscription.next_date <= now,
            and_(
                Subscription.next_date.is_(None),
                Subscription.trial_interval_count.is_(None),
                Subscription.start_date <= now,
            ),
        ),
    ).order_by(Subscription.next_date.asc(), Subscription.id.asc()).limit(limit).all()
    return [row[0] for row in rows]


def add_note(
    db: Session,
    subscription_id: int,
    content: str,
    activity: str,
    activity_type: str
) -> SubscriptionNote:
    note = SubscriptionNote(
        subscription_id=subscription_id,
        content=content,
        activity=activity,
        activity_type=activity_type,
    )
    db.add(note)
    return note


# ============================================================================
# ORDER HISTORY
# ============================================================================

def add_order_relation(
    db: Session,
    subscription_id: int,
    order_id: int,
    relation_type: str,
    order_item_id: Optional[int] = None
) -> OrderRelation:
    relation = OrderRelation(
        subscription_id=subscription_id,
        order_id=order_id,
        order_item_id=order_item_id,
        relation_type=relation_type,
    )
    db.add(relation)
    return relation


def get_related_orders(db: Session, subscription_id: int) -> List[OrderRelation]:
    """Relation history, oldest first"""
    return db.query(OrderRelation).filter(
        OrderRelation.subscription_id == subscription_id
    ).order_by(OrderRelation.created_at.asc(), OrderRelation.id.asc()).all()


def get_parent_order_id(db: Session, subscription_id: int) -> Optional[int]:
    relation = db.query(OrderRelation).filter(
        OrderRelation.subscription_id == subscription_id,
        OrderRelation.relation_type == RelationType.NEW.value,
    ).first()
    return relation.order_id if relation else None


def get_order(db: Session, order_id: int) -> RenewalOrder:
    order = db.get(RenewalOrder, order_id)
    if order is None:
        raise OrderNotFoundError(order_id)
    return order


def find_order_by_transaction(
    db: Session,
    transaction_id: str,
    gateway_id: Optional[str] = None
) -> Optional[RenewalOrder]:
    query = db.query(RenewalOrder).filter(RenewalOrder.gateway_transaction_id == transaction_id)
    if gateway_id:
        query = query.filter(RenewalOrder.gateway_id == gateway_id)
    return query.order_by(RenewalOrder.id.desc()).first()


def find_superseding_order(db: Session, order: RenewalOrder) -> Optional[RenewalOrder]:
    """A later order for the same subscription that is paid or still in flight"""
    return db.query(RenewalOrder).filter(
        RenewalOrder.subscription_id == order.subscription_id,
        RenewalOrder.id > order.id,
        RenewalOrder.status.in_((OrderStatus.PAID.value, OrderStatus.PENDING.value)),
    ).order_by(RenewalOrder.id.asc()).first()


def has_pending_order(db: Session, subscription_id: int) -> bool:
    return db.query(RenewalOrder.id).filter(
        RenewalOrder.subscription_id == subscription_id,
        RenewalOrder.status == OrderStatus.PENDING.value,
    ).first() is not None


# ============================================================================
# RETRY STATE
# ============================================================================

def get_retry_state(db: Session, subscription_id: int) -> Optional[RetryState]:
    return db.query(RetryState).filter(RetryState.subscription_id == subscription_id).first()


def has_pending_retry(db: Session, subscription_id: int) -> bool:
    return db.query(RetryState.id).filter(
        RetryState.subscription_id == subscription_id,
        RetryState.status == RetryStatus.PENDING.value,
    ).first() is not None


def find_due_retries(db: Session, now: datetime, limit: int = 200) -> List[RetryState]:
    return db.query(RetryState).filter(
        RetryState.status == RetryStatus.PENDING.value,
        RetryState.next_retry_time <= now,
    ).order_by(RetryState.next_retry_time.asc()).limit(limit).all()


def count_pending_retries(db: Session) -> int:
    return db.query(RetryState).filter(RetryState.status == RetryStatus.PENDING.value).count()
