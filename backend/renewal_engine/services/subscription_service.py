"""Subscription administration: creation, admin edits, hard delete, order history"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from renewal_engine.core.exceptions import DeletionNotAllowedError
from renewal_engine.db.helpers import (
    add_note, add_order_relation, get_parent_order_id, get_related_orders as query_related_orders,
    get_subscription, has_pending_order,
)
from renewal_engine.models import (
    IntervalUnit, OrderRelation, RelationType, RenewalOrder, RetryState, Subscription, SubscriptionStatus,
)
from renewal_engine.models.types import utcnow
from renewal_engine.services.grace_period import GRACE_END_TASK, GracePeriodManager, grace_task_key
from renewal_engine.services.schedule import first_billing_date
from renewal_engine.services.state_machine import SubscriptionStateMachine
from renewal_engine.services.vault import PaymentMethodVault

logger = logging.getLogger(__name__)

# Fields an operator may change after creation
ADMIN_EDITABLE_FIELDS = frozenset({
    "price", "interval_count", "interval_unit", "max_payments", "auto_renew", "next_date",
})

DELETABLE_STATUSES = (
    SubscriptionStatus.CANCELLED.value,
    SubscriptionStatus.EXPIRED.value,
    SubscriptionStatus.TRASH.value,
)


def create_subscription(
    db: Session,
    state_machine: SubscriptionStateMachine,
    owner_id: str,
    price: Decimal,
    parent_order_id: int,
    currency: str = "USD",
    interval_count: int = 1,
    interval_unit: str = IntervalUnit.MONTH.value,
    trial_interval_count: Optional[int] = None,
    trial_interval_unit: Optional[str] = None,
    signup_fee: Decimal = Decimal("0"),
    max_payments: int = 0,
    max_retry_attempts: Optional[int] = None,
    auto_renew: bool = True,
    user_cancel_allowed: bool = True,
    start_date: Optional[datetime] = None,
    order_item_id: Optional[int] = None,
    activate: bool = True
) -> Subscription:
    """Create a subscription for an order that activated a subscribable item

    Writes the single 'new' order relation. With activate=True the
    subscription goes straight to active (the parent order is paid);
    otherwise it waits in pending.
    """
    subscription = Subscription(
        owner_id=owner_id,
        status=SubscriptionStatus.PENDING.value,
        interval_count=interval_count,
        interval_unit=IntervalUnit(interval_unit).value,
        trial_interval_count=trial_interval_count,
        trial_interval_unit=IntervalUnit(trial_interval_unit).value if trial_interval_unit else None,
        price=price,
        signup_fee=signup_fee,
        currency=currency.upper(),
        start_date=start_date or utcnow(),
        max_payments=max_payments,
        payments_made=0,
        max_retry_attempts=max_retry_attempts,
        auto_renew=auto_renew,
        user_cancel_allowed=user_cancel_allowed,
    )
    db.add(subscription)
    db.flush()
    subscription.next_date = first_billing_date(subscription)

    add_order_relation(db, subscription.id, parent_order_id, RelationType.NEW.value, order_item_id)
    add_note(
        db, subscription.id,
        f"Subscription created from order #{parent_order_id}: {price} {subscription.currency} "
        f"every {interval_count} {subscription.interval_unit}(s).",
        "Subscription created", "subs_created",
    )
    db.commit()
    db.refresh(subscription)
    logger.info(f"Created subscription {subscription.id} for owner {owner_id} (order {parent_order_id})")

    if activate:
        state_machine.apply_transition(db, subscription.id, SubscriptionStatus.ACTIVE, "parent order paid")
        db.refresh(subscription)
    return subscription


def admin_edit(
    db: Session,
    subscription_id: int,
    changes: Dict[str, Any],
    grace: Optional[GracePeriodManager] = None
) -> Subscription:
    """Apply an operator edit to the billing terms

    Raises:
        ValueError: Unknown or read-only fields, or terms that would break
            the payment counters
    """
    unknown = set(changes) - ADMIN_EDITABLE_FIELDS
    if unknown:
        raise ValueError(f"Fields not editable: {', '.join(sorted(unknown))}")

    subscription = get_subscription(db, subscription_id)

    if "interval_count" in changes and changes["interval_count"] < 1:
        raise ValueError("interval_count must be at least 1")
    if "interval_unit" in changes:
        changes["interval_unit"] = IntervalUnit(changes["interval_unit"]).value
    if "price" in changes and Decimal(str(changes["price"])) < 0:
        raise ValueError("price must not be negative")
    max_payments = changes.get("max_payments")
    if max_payments is not None:
        if max_payments < 0:
            raise ValueError("max_payments must not be negative")
        if 0 < max_payments < subscription.payments_made:
            raise ValueError(
                f"max_payments {max_payments} is below payments already made ({subscription.payments_made})"
            )

    changed = []
    for field, value in changes.items():
        if getattr(subscription, field) != value:
            setattr(subscription, field, value)
            changed.append(field)

    if not changed:
        return subscription

    if "next_date" in changed and subscription.grace_period_end is not None:
        # A moved due date restarts the grace computation
        subscription.grace_period_end = None
        if grace is not None:
            grace.task_queue.cancel(GRACE_END_TASK, grace_task_key(subscription.id))

    add_note(
        db, subscription.id,
        f"Subscription edited by operator: {', '.join(f'{f}={changes[f]}' for f in changed)}.",
        "Subscription edited", "subs_edited",
    )
    db.commit()
    db.refresh(subscription)
    logger.info(f"Operator edited subscription {subscription_id}: {', '.join(changed)}")
    return subscription


def hard_delete(
    db: Session,
    subscription_id: int,
    vault: PaymentMethodVault,
    grace: Optional[GracePeriodManager] = None
) -> Dict[str, int]:
    """Permanently remove a finished subscription and everything hanging off it

    Webhook events are kept for audit.

    Raises:
        DeletionNotAllowedError: If the subscription is still live or has an
            unsettled renewal order
    """
    subscription = get_subscription(db, subscription_id)
    if subscription.status not in DELETABLE_STATUSES:
        raise DeletionNotAllowedError(
            f"Subscription {subscription_id} is {subscription.status}; only "
            f"{', '.join(DELETABLE_STATUSES)} subscriptions can be deleted"
        )
    if has_pending_order(db, subscription_id):
        raise DeletionNotAllowedError(f"Subscription {subscription_id} has an unsettled renewal order")

    removed = {
        "payment_methods": vault.delete_all_for_subscription(db, subscription_id),
        "retry_states": db.query(RetryState).filter(
            RetryState.subscription_id == subscription_id
        ).delete(synchronize_session=False),
        "order_relations": db.query(OrderRelation).filter(
            OrderRelation.subscription_id == subscription_id
        ).delete(synchronize_session=False),
        "renewal_orders": db.query(RenewalOrder).filter(
            RenewalOrder.subscription_id == subscription_id
        ).delete(synchronize_session=False),
        "notes": len(subscription.notes),
    }
    db.delete(subscription)
    db.commit()

    if grace is not None:
        grace.task_queue.cancel(GRACE_END_TASK, grace_task_key(subscription_id))
    logger.warning(f"Subscription {subscription_id} permanently deleted: {removed}")
    return removed


def get_related_orders(db: Session, subscription_id: int) -> Dict[str, Any]:
    """Order history of a subscription, oldest first"""
    get_subscription(db, subscription_id)
    relations = query_related_orders(db, subscription_id)

    order_ids = [r.order_id for r in relations if r.relation_type == RelationType.RENEW.value]
    renewals = {}
    if order_ids:
        renewals = {
            order.id: order
            for order in db.query(RenewalOrder).filter(RenewalOrder.id.in_(order_ids)).all()
        }

    history: List[Dict[str, Any]] = []
    for relation in relations:
        entry = {
            "order_id": relation.order_id,
            "order_item_id": relation.order_item_id,
            "relation_type": relation.relation_type,
            "created_at": relation.created_at.isoformat(),
        }
        order = renewals.get(relation.order_id)
        if order is not None:
            entry.update({
                "status": order.status,
                "amount": str(order.amount),
                "currency": order.currency,
                "gateway_id": order.gateway_id,
                "gateway_transaction_id": order.gateway_transaction_id,
                "attempt_number": order.attempt_number,
                "failure_reason": order.failure_reason,
                "paid_at": order.paid_at.isoformat() if order.paid_at else None,
            })
        history.append(entry)

    return {
        "subscription_id": subscription_id,
        "parent_order_id": get_parent_order_id(db, subscription_id),
        "orders": history,
    }
