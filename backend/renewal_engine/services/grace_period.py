"""Grace period manager

After a missed due date a subscription stays active for GRACE_DAYS while
payment is retried. A delayed task fires at grace_end and expires the
subscription if it is still unpaid. A successful renewal removes the task,
and the handler re-checks state before acting, so a stale fire is a no-op.
"""
import enum
import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy.orm import Session

from renewal_engine.core.exceptions import SubscriptionLockedError, SubscriptionNotFoundError
from renewal_engine.core.metrics import grace_periods_counter, scheduler_runs_counter
from renewal_engine.db.helpers import add_note, get_subscription
from renewal_engine.db.redis import subscription_lock
from renewal_engine.db.task_queue import DelayedTaskQueue
from renewal_engine.models import Subscription, SubscriptionStatus
from renewal_engine.models.types import utcnow
from renewal_engine.services.notifications import NotificationBus, NotificationKind
from renewal_engine.services.state_machine import SubscriptionStateMachine

logger = logging.getLogger(__name__)

GRACE_END_TASK = "grace_end"
LOCKED_TASK_DELAY = timedelta(minutes=1)

# Statuses a grace-end expiry may act on
GRACE_STATUSES = (
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.PE_CANCELLED.value,
    SubscriptionStatus.ON_HOLD.value,
)


class GraceVerdict(str, enum.Enum):
    DISABLED = "disabled"
    IN_GRACE = "in_grace"
    EXPIRED = "expired"


def grace_task_key(subscription_id: int) -> str:
    return f"{GRACE_END_TASK}:{subscription_id}"


class GracePeriodManager:
    def __init__(
        self,
        state_machine: SubscriptionStateMachine,
        task_queue: DelayedTaskQueue,
        bus: NotificationBus,
        redis_client,
        grace_days: int = 0
    ):
        self.state_machine = state_machine
        self.task_queue = task_queue
        self.bus = bus
        self.redis = redis_client
        self.grace_days = grace_days

    @property
    def enabled(self) -> bool:
        return self.grace_days > 0

    def grace_end_for(self, subscription: Subscription) -> Optional[datetime]:
        if not self.enabled:
            return None
        due = subscription.next_date or subscription.start_date
        return due + timedelta(days=self.grace_days)

    def is_past_grace(self, subscription: Subscription, now: datetime) -> bool:
        grace_end = self.grace_end_for(subscription)
        return grace_end is not None and now >= grace_end

    def evaluate(self, db: Session, subscription: Subscription, now: datetime) -> GraceVerdict:
        """Decide what a due, unpaid subscription's grace window allows

        The caller must hold the subscription lock.

        Returns:
            DISABLED when grace is off, IN_GRACE while now < grace_end (the
            window is opened on first sight), EXPIRED once grace_end has
            passed (the subscription has been expired)
        """
        grace_end = self.grace_end_for(subscription)
        if grace_end is None:
            return GraceVerdict.DISABLED

        if now >= grace_end:
            self.expire(db, subscription, grace_end)
            return GraceVerdict.EXPIRED

        if subscription.grace_period_end != grace_end:
            self.start(db, subscription, grace_end)
        return GraceVerdict.IN_GRACE

    def start(self, db: Session, subscription: Subscription, grace_end: datetime) -> None:
        subscription.grace_period_end = grace_end
        add_note(
            db, subscription.id,
            f"Renewal payment overdue. Grace period runs until {grace_end.isoformat()}.",
            "Grace period started", "grace_period_started",
        )
        db.commit()

        self.task_queue.schedule(
            GRACE_END_TASK, grace_task_key(subscription.id), grace_end,
            {"subscription_id": subscription.id, "grace_period_end": grace_end.isoformat()},
        )
        grace_periods_counter.labels(event="started").inc()
        logger.info(f"Subscription {subscription.id} entered grace period until {grace_end.isoformat()}")
        self.bus.emit(
            NotificationKind.GRACE_PERIOD_STARTED, subscription.id,
            grace_period_end=grace_end.isoformat(),
        )

    def expire(self, db: Session, subscription: Subscription, grace_end: datetime) -> None:
        """Grace is over and the subscription is still unpaid"""
        self.state_machine.apply_transition(
            db, subscription.id, SubscriptionStatus.EXPIRED, "grace_period_ended", commit=False
        )
        subscription.grace_period_end = grace_end
        db.commit()

        self.task_queue.cancel(GRACE_END_TASK, grace_task_key(subscription.id))
        grace_periods_counter.labels(event="ended").inc()
        self.bus.emit(
            NotificationKind.GRACE_PERIOD_ENDED, subscription.id,
            grace_period_end=grace_end.isoformat(),
        )

    def on_payment_success(self, subscription_id: int) -> None:
        """Drop the pending grace-end task after a successful renewal"""
        if self.task_queue.cancel(GRACE_END_TASK, grace_task_key(subscription_id)):
            grace_periods_counter.labels(event="cancelled").inc()
            logger.info(f"Grace period for subscription {subscription_id} closed by successful payment")

    def handle_grace_end(self, db: Session, subscription_id: int, now: datetime) -> bool:
        """Expire a subscription whose grace window has run out

        The caller must hold the subscription lock. Returns True if the
        subscription was expired, False for a stale task.
        """
        subscription = get_subscription(db, subscription_id)
        db.refresh(subscription)

        if subscription.status not in GRACE_STATUSES:
            logger.info(f"Grace-end task for subscription {subscription_id} is stale (status {subscription.status})")
            return False
        if subscription.grace_period_end is None or subscription.grace_period_end > now:
            logger.info(f"Grace-end task for subscription {subscription_id} is stale (renewed or rescheduled)")
            return False

        self.expire(db, subscription, subscription.grace_period_end)
        return True

    def process_due_tasks(self, db: Session, now: Optional[datetime] = None) -> Dict[str, int]:
        """Run every grace-end task that has come due"""
        now = now or utcnow()
        summary = {"claimed": 0, "expired": 0, "stale": 0, "deferred": 0, "failed": 0}
        for task in self.task_queue.claim_due(GRACE_END_TASK, now):
            summary["claimed"] += 1
            subscription_id = int(task["payload"].get("subscription_id") or task["task_key"].split(":")[-1])
            try:
                with subscription_lock(self.redis, subscription_id):
                    if self.handle_grace_end(db, subscription_id, now):
                        summary["expired"] += 1
                    else:
                        summary["stale"] += 1
            except SubscriptionLockedError:
                # Someone is renewing it right now; look again shortly
                self.task_queue.schedule(
                    GRACE_END_TASK, task["task_key"], now + LOCKED_TASK_DELAY, task["payload"]
                )
                summary["deferred"] += 1
            except SubscriptionNotFoundError:
                summary["stale"] += 1
                logger.info(f"Grace-end task for deleted subscription {subscription_id} dropped")
            except Exception as e:
                db.rollback()
                summary["failed"] += 1
                logger.error(f"Grace-end task for subscription {subscription_id} failed: {e}", exc_info=True)
                self.task_queue.schedule(
                    GRACE_END_TASK, task["task_key"], now + LOCKED_TASK_DELAY, task["payload"]
                )

        scheduler_runs_counter.labels(
            job="grace_end", status="failure" if summary["failed"] else "success"
        ).inc()
        return summary
