"""Renewal scheduler

Each tick scans for due subscriptions and hands them, one at a time and
under the subscription lock, to grace evaluation and the retry engine. A
tick with nothing due is a no-op, so it is safe to run more often than
needed.
"""
import logging
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from renewal_engine.core.exceptions import SubscriptionLockedError, SubscriptionNotFoundError
from renewal_engine.core.logging import scheduler_logger
from renewal_engine.core.metrics import scheduler_runs_counter, scheduler_subscriptions_processed_counter
from renewal_engine.db.helpers import (
    RENEWABLE_STATUSES, find_due_subscription_ids, get_subscription, has_pending_order, has_pending_retry,
)
from renewal_engine.db.redis import subscription_lock
from renewal_engine.models import Subscription, SubscriptionStatus
from renewal_engine.models.types import utcnow
from renewal_engine.services.grace_period import GracePeriodManager, GraceVerdict
from renewal_engine.services.retry_engine import AttemptOutcome, PaymentRetryEngine
from renewal_engine.services.state_machine import SubscriptionStateMachine

logger = logging.getLogger(__name__)

SUMMARY_KEYS = (
    "processed", "renewed", "pending", "retry_scheduled", "suspended",
    "cancelled", "expired", "skipped", "failed",
)


def is_due(subscription: Subscription, now: datetime) -> bool:
    if subscription.next_date is not None:
        return subscription.next_date <= now
    return not subscription.has_trial and subscription.start_date <= now


class RenewalScheduler:
    def __init__(
        self,
        state_machine: SubscriptionStateMachine,
        grace: GracePeriodManager,
        retry_engine: PaymentRetryEngine,
        redis_client,
        batch_size: int = 500
    ):
        self.state_machine = state_machine
        self.grace = grace
        self.retry_engine = retry_engine
        self.redis = redis_client
        self.batch_size = batch_size

    def tick(self, db: Session, now: Optional[datetime] = None) -> Dict[str, int]:
        """Process every subscription that is due at `now`

        Returns:
            Counts per outcome plus 'processed' (subscriptions looked at)
        """
        now = now or utcnow()
        summary = {key: 0 for key in SUMMARY_KEYS}
        subscription_ids = find_due_subscription_ids(db, now, self.batch_size)
        scheduler_logger.info(f"Renewal tick at {now.isoformat()}: {len(subscription_ids)} due subscription(s)")

        for subscription_id in subscription_ids:
            summary["processed"] += 1
            try:
                with subscription_lock(self.redis, subscription_id):
                    result = self.process_subscription(db, subscription_id, now)
                summary[result] += 1
            except SubscriptionLockedError:
                summary["skipped"] += 1
                scheduler_logger.info(f"Subscription {subscription_id} is locked by another worker, skipping")
            except StaleDataError as e:
                db.rollback()
                summary["skipped"] += 1
                scheduler_logger.warning(f"Subscription {subscription_id} changed underneath the tick: {e}")
            except Exception as e:
                db.rollback()
                summary["failed"] += 1
                scheduler_logger.error(f"Renewal of subscription {subscription_id} failed: {e}", exc_info=True)

        scheduler_subscriptions_processed_counter.inc(summary["processed"])
        scheduler_runs_counter.labels(
            job="renewal_tick", status="failure" if summary["failed"] else "success"
        ).inc()
        scheduler_logger.info(f"Renewal tick finished: {summary}")
        return summary

    def process_subscription(self, db: Session, subscription_id: int, now: datetime) -> str:
        """Handle one due subscription. The caller must hold its lock.

        Returns:
            The summary key for what happened
        """
        try:
            subscription = get_subscription(db, subscription_id)
        except SubscriptionNotFoundError:
            return "skipped"
        db.refresh(subscription)

        # Re-check under the lock; another worker may have renewed it
        if subscription.status not in RENEWABLE_STATUSES or not is_due(subscription, now):
            return "skipped"
        if has_pending_retry(db, subscription_id) or has_pending_order(db, subscription_id):
            return "skipped"

        if subscription.status == SubscriptionStatus.PE_CANCELLED.value:
            return self._end_prepaid_term(db, subscription, now)

        if self.retry_engine.expiry_reason(subscription) is None:
            verdict = self.grace.evaluate(db, subscription, now)
            if verdict == GraceVerdict.EXPIRED:
                return "expired"

        outcome = self.retry_engine.run_attempt(db, subscription, now).outcome
        if outcome == AttemptOutcome.SKIPPED:
            return "skipped"
        return outcome.value

    def _end_prepaid_term(self, db: Session, subscription: Subscription, now: datetime) -> str:
        if subscription.is_suspended:
            # Held for operator recovery; only the grace window may end it
            if self.grace.is_past_grace(subscription, now):
                self.grace.expire(db, subscription, self.grace.grace_end_for(subscription))
                return "expired"
            return "skipped"

        self.state_machine.apply_transition(
            db, subscription.id, SubscriptionStatus.CANCELLED, "end of prepaid term"
        )
        return "cancelled"
