"""Subscription state machine

The only writer of Subscription.status. Both the scheduler/retry path and
the webhook path call apply_transition, so the two can never disagree about
which changes are legal.
"""
import logging
from typing import Dict, FrozenSet, Optional

from sqlalchemy.orm import Session

from renewal_engine.core.exceptions import InvalidTransitionError
from renewal_engine.core.metrics import transitions_counter
from renewal_engine.db.helpers import add_note, get_retry_state, get_subscription
from renewal_engine.models import RetryStatus, Subscription, SubscriptionStatus
from renewal_engine.services.notifications import NotificationBus, NotificationKind

logger = logging.getLogger(__name__)

S = SubscriptionStatus

ALLOWED_TRANSITIONS: Dict[SubscriptionStatus, FrozenSet[SubscriptionStatus]] = {
    S.DRAFT: frozenset({S.PENDING, S.ACTIVE, S.CANCELLED, S.TRASH}),
    S.PENDING: frozenset({S.ACTIVE, S.ON_HOLD, S.CANCELLED, S.TRASH}),
    S.ACTIVE: frozenset({S.ON_HOLD, S.PE_CANCELLED, S.CANCELLED, S.EXPIRED, S.TRASH}),
    S.ON_HOLD: frozenset({S.ACTIVE, S.CANCELLED, S.EXPIRED, S.TRASH}),
    S.PE_CANCELLED: frozenset({S.ACTIVE, S.CANCELLED, S.EXPIRED, S.TRASH}),
    S.CANCELLED: frozenset({S.ACTIVE, S.TRASH}),
    S.EXPIRED: frozenset({S.ACTIVE, S.TRASH}),
    S.TRASH: frozenset(),  # leaves only through restore()
}

ACTIVITY_TYPES: Dict[SubscriptionStatus, str] = {
    S.DRAFT: "subs_draft",
    S.PENDING: "subs_pending",
    S.ACTIVE: "subs_activated",
    S.ON_HOLD: "subs_on_hold",
    S.PE_CANCELLED: "subs_pe_cancel",
    S.CANCELLED: "subs_cancelled",
    S.EXPIRED: "subs_expired",
    S.TRASH: "subs_trashed",
}

# Statuses in which an open retry cycle can no longer fire
RETRY_CLOSING_STATUSES = frozenset({S.CANCELLED, S.EXPIRED, S.TRASH})


def is_allowed(old_status: SubscriptionStatus, new_status: SubscriptionStatus) -> bool:
    return new_status in ALLOWED_TRANSITIONS[old_status]


class SubscriptionStateMachine:
    """Applies validated status transitions and publishes lifecycle notifications"""

    def __init__(self, bus: NotificationBus):
        self.bus = bus

    def apply_transition(
        self,
        db: Session,
        subscription_id: int,
        new_status: SubscriptionStatus,
        reason: str = "",
        commit: bool = True
    ) -> bool:
        """Move a subscription to new_status

        Args:
            db: Database session
            subscription_id: Subscription to change
            new_status: Target status
            reason: Free-text cause, recorded in the history note
            commit: Commit the session; callers composing a larger unit of
                work pass False and commit themselves

        Returns:
            True if the status changed, False for a same-status no-op

        Raises:
            SubscriptionNotFoundError: If the subscription does not exist
            InvalidTransitionError: If the table does not allow the change
        """
        subscription = get_subscription(db, subscription_id)
        new_status = SubscriptionStatus(new_status)
        old_status = SubscriptionStatus(subscription.status)

        if old_status == new_status:
            logger.debug(f"Subscription {subscription_id} already {new_status.value}, nothing to do")
            return False

        if not is_allowed(old_status, new_status):
            logger.error(
                f"Rejected transition for subscription {subscription_id}: "
                f"{old_status.value} -> {new_status.value} ({reason or 'no reason'})"
            )
            raise InvalidTransitionError(subscription_id, old_status.value, new_status.value)

        self._write_status(db, subscription, old_status, new_status, reason)
        if commit:
            db.commit()

        self._notify(subscription_id, old_status, new_status, reason)
        return True

    def restore(self, db: Session, subscription_id: int, commit: bool = True) -> SubscriptionStatus:
        """Bring a trashed subscription back to the status it was trashed from

        Raises:
            InvalidTransitionError: If the subscription is not in trash
        """
        subscription = get_subscription(db, subscription_id)
        if subscription.status != S.TRASH.value:
            raise InvalidTransitionError(subscription_id, subscription.status, "restore")

        target = SubscriptionStatus(subscription.trashed_from_status or S.PENDING.value)
        subscription.status = target.value
        subscription.trashed_from_status = None
        add_note(
            db, subscription.id,
            f"Subscription restored from trash to {target.value}.",
            "Subscription restored", "subs_restored",
        )
        transitions_counter.labels(to_status=target.value).inc()
        if commit:
            db.commit()

        logger.info(f"Subscription {subscription_id} restored from trash to {target.value}")
        self.bus.emit(
            NotificationKind.STATUS_CHANGED, subscription_id,
            old_status=S.TRASH.value, new_status=target.value, reason="restored",
        )
        return target

    def _write_status(
        self,
        db: Session,
        subscription: Subscription,
        old_status: SubscriptionStatus,
        new_status: SubscriptionStatus,
        reason: str
    ) -> None:
        subscription.status = new_status.value

        if new_status == S.ACTIVE:
            subscription.suspended_reason = None
            subscription.grace_period_end = None
        elif new_status == S.TRASH:
            subscription.trashed_from_status = old_status.value

        if new_status in RETRY_CLOSING_STATUSES:
            retry_state = get_retry_state(db, subscription.id)
            if retry_state is not None and retry_state.status == RetryStatus.PENDING.value:
                retry_state.status = RetryStatus.FAILED.value
                retry_state.last_error = f"subscription {new_status.value}"
                logger.info(f"Closed pending retry for subscription {subscription.id} ({new_status.value})")

        content = f"Status changed from {old_status.value} to {new_status.value}."
        if reason:
            content = f"{content} Reason: {reason}"
        add_note(
            db, subscription.id, content,
            f"Subscription {new_status.value.replace('_', ' ')}", ACTIVITY_TYPES[new_status],
        )
        transitions_counter.labels(to_status=new_status.value).inc()
        logger.info(
            f"Subscription {subscription.id}: {old_status.value} -> {new_status.value}"
            + (f" ({reason})" if reason else "")
        )

    def _notify(
        self,
        subscription_id: int,
        old_status: SubscriptionStatus,
        new_status: SubscriptionStatus,
        reason: Optional[str]
    ) -> None:
        self.bus.emit(
            NotificationKind.STATUS_CHANGED, subscription_id,
            old_status=old_status.value, new_status=new_status.value, reason=reason or "",
        )
        if new_status == S.ACTIVE and old_status in (S.CANCELLED, S.PE_CANCELLED):
            self.bus.emit(NotificationKind.RESUMED, subscription_id, old_status=old_status.value)
        if new_status == S.CANCELLED:
            self.bus.emit(NotificationKind.CANCELLED, subscription_id, old_status=old_status.value)
