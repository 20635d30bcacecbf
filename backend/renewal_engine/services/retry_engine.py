"""Payment retry engine

Owns the renewal attempt, the backoff schedule and suspension. One
in-flight retry per subscription: RetryState.subscription_id is unique and
every read-modify-write happens under the subscription lock.

Attempt numbering: when attempt n fails with a retryable error and
n < max_attempts, the RetryState records attempt n and fires at
now + delay(n); the retry runner then executes attempt n + 1. Failing the
last attempt suspends the subscription.
"""
import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from renewal_engine.core.exceptions import (
    GatewayNotConfiguredError, SubscriptionLockedError, SubscriptionNotFoundError,
)
from renewal_engine.core.logging import billing_logger
from renewal_engine.core.metrics import (
    charge_attempts_counter, pending_retries_gauge, retries_scheduled_counter,
    scheduler_runs_counter, suspensions_counter,
)
from renewal_engine.db.helpers import (
    add_note, add_order_relation, count_pending_retries, find_due_retries,
    find_superseding_order, get_retry_state, get_subscription, has_pending_order,
)
from renewal_engine.db.redis import subscription_lock
from renewal_engine.models import (
    OrderStatus, RelationType, RenewalOrder, RetryState, RetryStatus,
    Subscription, SubscriptionStatus,
)
from renewal_engine.models.types import utcnow
from renewal_engine.services.gateways import ChargeResult, ChargeStatus, GatewayRegistry
from renewal_engine.services.grace_period import GracePeriodManager
from renewal_engine.services.notifications import NotificationBus, NotificationKind
from renewal_engine.services.payment_errors import (
    GATEWAY_NOT_CONFIGURED, MISSING_PAYMENT_METHOD, ErrorClassification, classify_error,
)
from renewal_engine.services.schedule import next_billing_date
from renewal_engine.services.state_machine import SubscriptionStateMachine
from renewal_engine.services.vault import PaymentMethodVault

logger = logging.getLogger(__name__)

# Suspension reasons
RETRY_EXHAUSTED = "payment_retry_exhausted"
NON_RETRYABLE = "non_retryable_error"
CONFIGURATION_ERROR = "configuration_error"


class AttemptOutcome(str, enum.Enum):
    RENEWED = "renewed"
    PENDING = "pending"
    RETRY_SCHEDULED = "retry_scheduled"
    SUSPENDED = "suspended"
    EXPIRED = "expired"
    SKIPPED = "skipped"


@dataclass
class AttemptResult:
    outcome: AttemptOutcome
    order_id: Optional[int] = None
    error: Optional[str] = None
    next_retry_time: Optional[datetime] = None


class PaymentRetryEngine:
    def __init__(
        self,
        state_machine: SubscriptionStateMachine,
        vault: PaymentMethodVault,
        gateways: GatewayRegistry,
        grace: GracePeriodManager,
        bus: NotificationBus,
        redis_client,
        max_attempts: int = 3,
        retry_intervals_days: Optional[List[float]] = None,
        backoff_multiplier: float = 1.5,
        min_delay_hours: float = 1.0
    ):
        if backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")
        self.state_machine = state_machine
        self.vault = vault
        self.gateways = gateways
        self.grace = grace
        self.bus = bus
        self.redis = redis_client
        self.max_attempts = max_attempts
        self.retry_intervals_days = list(retry_intervals_days or [1, 3, 7])
        self.backoff_multiplier = backoff_multiplier
        self.min_delay = timedelta(hours=min_delay_hours)

    # ========================================================================
    # BACKOFF
    # ========================================================================

    def compute_retry_delay(self, attempt_number: int) -> timedelta:
        """delay(n) = interval[min(n-1, len-1)] * multiplier^(n-1) days, floored at the minimum delay"""
        if attempt_number < 1:
            raise ValueError(f"attempt_number must be >= 1, got {attempt_number}")
        intervals = self.retry_intervals_days
        base_days = intervals[min(attempt_number - 1, len(intervals) - 1)]
        delay = timedelta(days=base_days * self.backoff_multiplier ** (attempt_number - 1))
        return max(delay, self.min_delay)

    def max_attempts_for(self, subscription: Subscription) -> int:
        return subscription.max_retry_attempts or self.max_attempts

    @staticmethod
    def expiry_reason(subscription: Subscription) -> Optional[str]:
        """Why a due subscription must expire instead of being charged, if it must"""
        if subscription.max_payments and subscription.payments_made >= subscription.max_payments:
            return "max_payments_reached"
        if not subscription.auto_renew:
            return "auto_renew_disabled"
        return None

    # ========================================================================
    # RENEWAL ATTEMPT
    # ========================================================================

    def attempt_renewal(
        self,
        db: Session,
        subscription_id: int,
        now: Optional[datetime] = None,
        attempt_number: int = 1
    ) -> AttemptResult:
        """Run one renewal attempt under the subscription lock

        Raises:
            SubscriptionLockedError: If another worker holds the subscription
            SubscriptionNotFoundError: If the subscription does not exist
        """
        now = now or utcnow()
        with subscription_lock(self.redis, subscription_id):
            subscription = get_subscription(db, subscription_id)
            db.refresh(subscription)
            return self.run_attempt(db, subscription, now, attempt_number)

    def run_attempt(
        self,
        db: Session,
        subscription: Subscription,
        now: datetime,
        attempt_number: int = 1
    ) -> AttemptResult:
        """Charge a due subscription. The caller must hold the subscription lock."""
        if subscription.status != SubscriptionStatus.ACTIVE.value:
            logger.info(f"Subscription {subscription.id} is {subscription.status}, not attempting renewal")
            return AttemptResult(AttemptOutcome.SKIPPED)

        reason = self.expiry_reason(subscription)
        if reason:
            self.state_machine.apply_transition(db, subscription.id, SubscriptionStatus.EXPIRED, reason)
            billing_logger.info(f"Subscription {subscription.id} expired without charge ({reason})")
            return AttemptResult(AttemptOutcome.EXPIRED)

        payment_method = self.vault.get_default(db, subscription.id)
        if payment_method is None:
            logger.error(f"Subscription {subscription.id} has no default payment method")
            return self._suspend_for_configuration(db, subscription, MISSING_PAYMENT_METHOD)

        try:
            gateway = self.gateways.get(payment_method.gateway_id)
        except GatewayNotConfiguredError as e:
            logger.error(f"Subscription {subscription.id}: {e}")
            return self._suspend_for_configuration(
                db, subscription, f"{GATEWAY_NOT_CONFIGURED}: {payment_method.gateway_id}"
            )

        order = RenewalOrder(
            subscription_id=subscription.id,
            amount=subscription.price,
            currency=subscription.currency,
            status=OrderStatus.PENDING.value,
            gateway_id=gateway.gateway_id,
            attempt_number=attempt_number,
        )
        db.add(order)
        db.flush()
        add_order_relation(db, subscription.id, order.id, RelationType.RENEW.value)
        add_note(
            db, subscription.id,
            f"Renewal order #{order.id} created (attempt {attempt_number}, "
            f"{subscription.price} {subscription.currency}).",
            "Renewal order", "renewal_order",
        )
        # The order must exist before money moves so a webhook can correlate it
        db.commit()

        billing_logger.info(
            f"Charging subscription {subscription.id} order {order.id} via {gateway.gateway_id} "
            f"(attempt {attempt_number}): {subscription.price} {subscription.currency}"
        )
        try:
            result = gateway.charge(
                payment_method.token,
                subscription.price,
                subscription.currency,
                order.idempotency_key,
                customer_id=payment_method.gateway_customer_id or None,
                metadata={"order_id": str(order.id), "subscription_id": str(subscription.id)},
            )
        except Exception as e:
            logger.error(f"Gateway {gateway.gateway_id} raised during charge of order {order.id}: {e}", exc_info=True)
            result = ChargeResult.failure("gateway_exception", str(e))

        charge_attempts_counter.labels(gateway=gateway.gateway_id, outcome=result.status.value).inc()

        if result.status == ChargeStatus.SUCCEEDED:
            self.record_payment_success(db, order, result.transaction_id, now)
            return AttemptResult(AttemptOutcome.RENEWED, order_id=order.id)

        if result.status == ChargeStatus.PENDING:
            order.gateway_transaction_id = result.transaction_id
            db.commit()
            billing_logger.info(f"Order {order.id} accepted by {gateway.gateway_id}, awaiting settlement")
            return AttemptResult(AttemptOutcome.PENDING, order_id=order.id)

        if result.transaction_id:
            order.gateway_transaction_id = result.transaction_id
        return self.record_payment_failure(db, order, result.error_code, result.error_message, now)

    # ========================================================================
    # OUTCOMES (shared with webhook ingestion)
    # ========================================================================

    def record_payment_success(
        self,
        db: Session,
        order: RenewalOrder,
        transaction_id: Optional[str],
        now: Optional[datetime] = None
    ) -> bool:
        """Settle an order as paid and roll the subscription forward

        A late success for an order whose period a later order already
        covers, or one arriving after max_payments is reached, is recorded
        as paid and flagged for refund without touching the schedule.

        Returns:
            True if the subscription was renewed, False otherwise
        """
        now = now or utcnow()
        if order.is_paid:
            logger.info(f"Order {order.id} already paid, ignoring duplicate success")
            return False

        subscription = get_subscription(db, order.subscription_id)
        order.status = OrderStatus.PAID.value
        order.paid_at = now
        order.failure_reason = None
        if transaction_id:
            order.gateway_transaction_id = transaction_id

        reason = self._unrenewable_settlement(db, subscription, order)
        if reason is not None:
            add_note(
                db, subscription.id,
                f"Late payment received for order #{order.id} ({order.amount} {order.currency}): "
                f"{reason}. Refund required.",
                "Refund required", "refund_required",
            )
            db.commit()
            billing_logger.warning(
                f"Order {order.id} for subscription {subscription.id} settled without renewal: {reason}"
            )
            return False

        subscription.payments_made = (subscription.payments_made or 0) + 1
        subscription.next_date = next_billing_date(subscription, now)
        subscription.grace_period_end = None

        retry_state = get_retry_state(db, subscription.id)
        if retry_state is not None and retry_state.status == RetryStatus.PENDING.value:
            retry_state.status = RetryStatus.SUCCEEDED.value
            retry_state.next_retry_time = None

        add_note(
            db, subscription.id,
            f"Payment received for order #{order.id} ({order.amount} {order.currency}). "
            f"Next payment due {subscription.next_date.isoformat()}.",
            "Payment complete", "payment_complete",
        )

        if subscription.status == SubscriptionStatus.TRASH.value:
            logger.warning(f"Payment recorded for trashed subscription {subscription.id}; status left unchanged")
        elif subscription.status != SubscriptionStatus.ACTIVE.value:
            self.state_machine.apply_transition(
                db, subscription.id, SubscriptionStatus.ACTIVE, "renewal payment received", commit=False
            )
        db.commit()

        self.grace.on_payment_success(subscription.id)
        billing_logger.info(
            f"Subscription {subscription.id} renewed by order {order.id}; "
            f"payments_made={subscription.payments_made}, next_date={subscription.next_date.isoformat()}"
        )
        self.bus.emit(
            NotificationKind.PAYMENT_SUCCESS, subscription.id,
            order_id=order.id, amount=str(order.amount), currency=order.currency,
            transaction_id=order.gateway_transaction_id,
        )
        return True

    @staticmethod
    def _unrenewable_settlement(db: Session, subscription: Subscription, order: RenewalOrder) -> Optional[str]:
        superseding = find_superseding_order(db, order)
        if superseding is not None:
            return f"period already covered by order #{superseding.id} ({superseding.status})"
        if subscription.max_payments and (subscription.payments_made or 0) >= subscription.max_payments:
            return f"max_payments ({subscription.max_payments}) already reached"
        return None

    def record_payment_failure(
        self,
        db: Session,
        order: RenewalOrder,
        error_code: Optional[str],
        error_message: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> AttemptResult:
        """Mark an order failed and either schedule the next attempt or suspend"""
        now = now or utcnow()
        if order.status != OrderStatus.PENDING.value:
            logger.info(f"Order {order.id} already {order.status}, ignoring late failure")
            return AttemptResult(AttemptOutcome.SKIPPED, order_id=order.id)

        classification = classify_error(error_code, error_message)
        subscription = get_subscription(db, order.subscription_id)
        order.status = OrderStatus.FAILED.value
        order.failure_reason = classification.error
        add_note(
            db, subscription.id,
            f"Payment for order #{order.id} failed: {classification.error} ({classification.category.value}).",
            "Payment failed", "payment_failed",
        )
        billing_logger.warning(
            f"Order {order.id} for subscription {subscription.id} failed on attempt {order.attempt_number}: "
            f"{classification.error} ({classification.category.value})"
        )
        self.bus.emit(
            NotificationKind.PAYMENT_FAILED, subscription.id,
            order_id=order.id, error=classification.error,
            retryable=classification.retryable, attempt_number=order.attempt_number,
        )

        attempt_number = order.attempt_number
        if classification.retryable and attempt_number < self.max_attempts_for(subscription):
            return self._schedule_retry(db, subscription, order, attempt_number, classification, now)

        reason = RETRY_EXHAUSTED if classification.retryable else classification.suspension_reason
        self.suspend(db, subscription, reason, classification.error, order.id)
        return AttemptResult(AttemptOutcome.SUSPENDED, order_id=order.id, error=classification.error)

    def _schedule_retry(
        self,
        db: Session,
        subscription: Subscription,
        order: RenewalOrder,
        attempt_number: int,
        classification: ErrorClassification,
        now: datetime
    ) -> AttemptResult:
        next_retry_time = now + self.compute_retry_delay(attempt_number)

        retry_state = get_retry_state(db, subscription.id)
        if retry_state is None:
            retry_state = RetryState(subscription_id=subscription.id)
            db.add(retry_state)
        retry_state.order_id = order.id
        retry_state.attempt_number = attempt_number
        retry_state.next_retry_time = next_retry_time
        retry_state.status = RetryStatus.PENDING.value
        retry_state.last_error = classification.error

        add_note(
            db, subscription.id,
            f"Retry {attempt_number + 1} scheduled for {next_retry_time.isoformat()}.",
            "Retry scheduled", "retry_scheduled",
        )
        db.commit()

        retries_scheduled_counter.labels(attempt=str(attempt_number + 1)).inc()
        billing_logger.info(
            f"Subscription {subscription.id}: retry {attempt_number + 1} scheduled for {next_retry_time.isoformat()}"
        )
        return AttemptResult(
            AttemptOutcome.RETRY_SCHEDULED, order_id=order.id,
            error=classification.error, next_retry_time=next_retry_time,
        )

    def _suspend_for_configuration(
        self,
        db: Session,
        subscription: Subscription,
        error: str
    ) -> AttemptResult:
        self.suspend(db, subscription, CONFIGURATION_ERROR, error, None)
        return AttemptResult(AttemptOutcome.SUSPENDED, error=error)

    def suspend(
        self,
        db: Session,
        subscription: Subscription,
        reason: str,
        error: str,
        order_id: Optional[int]
    ) -> None:
        """Hold the subscription in pe_cancelled for manual recovery"""
        if subscription.status == SubscriptionStatus.ACTIVE.value:
            self.state_machine.apply_transition(
                db, subscription.id, SubscriptionStatus.PE_CANCELLED, f"{reason}: {error}", commit=False
            )
        if subscription.status == SubscriptionStatus.PE_CANCELLED.value:
            subscription.suspended_reason = reason

        retry_state = get_retry_state(db, subscription.id)
        if retry_state is not None and retry_state.status == RetryStatus.PENDING.value:
            retry_state.status = RetryStatus.FAILED.value
            retry_state.next_retry_time = None
            retry_state.last_error = error
        db.commit()

        suspensions_counter.labels(reason=reason).inc()
        billing_logger.error(f"Subscription {subscription.id} suspended ({reason}): {error}")
        self.bus.emit(
            NotificationKind.RETRY_EXHAUSTED, subscription.id,
            order_id=order_id, error=error, reason=reason,
        )

    # ========================================================================
    # RETRY RUNNER
    # ========================================================================

    def process_due_retries(self, db: Session, now: Optional[datetime] = None, limit: int = 200) -> Dict[str, int]:
        """Fire every pending retry whose next_retry_time has passed"""
        now = now or utcnow()
        summary = {"processed": 0, "skipped": 0, "failed": 0}
        due = [(state.id, state.subscription_id) for state in find_due_retries(db, now, limit)]

        for retry_state_id, subscription_id in due:
            try:
                with subscription_lock(self.redis, subscription_id):
                    outcome = self._run_retry(db, retry_state_id, subscription_id, now)
                summary[outcome.value] = summary.get(outcome.value, 0) + 1
                summary["processed"] += 1
            except SubscriptionLockedError:
                summary["skipped"] += 1
                logger.info(f"Retry for subscription {subscription_id} skipped, subscription locked")
            except StaleDataError as e:
                db.rollback()
                summary["skipped"] += 1
                logger.warning(f"Retry for subscription {subscription_id} lost a concurrent update: {e}")
            except Exception as e:
                db.rollback()
                summary["failed"] += 1
                logger.error(f"Retry for subscription {subscription_id} failed: {e}", exc_info=True)

        pending_retries_gauge.set(count_pending_retries(db))
        scheduler_runs_counter.labels(
            job="retry_runner", status="failure" if summary["failed"] else "success"
        ).inc()
        if due:
            logger.info(f"Retry runner: {summary}")
        return summary

    def _run_retry(self, db: Session, retry_state_id: int, subscription_id: int, now: datetime) -> AttemptOutcome:
        retry_state = db.get(RetryState, retry_state_id)
        if retry_state is None:
            return AttemptOutcome.SKIPPED
        db.refresh(retry_state)
        if retry_state.status != RetryStatus.PENDING.value or (
            retry_state.next_retry_time is not None and retry_state.next_retry_time > now
        ):
            return AttemptOutcome.SKIPPED

        try:
            subscription = get_subscription(db, subscription_id)
        except SubscriptionNotFoundError:
            return AttemptOutcome.SKIPPED
        db.refresh(subscription)

        if subscription.status != SubscriptionStatus.ACTIVE.value:
            retry_state.status = RetryStatus.FAILED.value
            retry_state.next_retry_time = None
            retry_state.last_error = f"subscription {subscription.status}"
            db.commit()
            logger.info(f"Closed retry for subscription {subscription_id}: no longer active ({subscription.status})")
            return AttemptOutcome.SKIPPED

        if has_pending_order(db, subscription_id):
            logger.info(f"Retry for subscription {subscription_id} waits on an unsettled order")
            return AttemptOutcome.SKIPPED

        return self.run_attempt(db, subscription, now, attempt_number=retry_state.attempt_number + 1).outcome
