"""Webhook ingestion and correlation

Turns verified gateway events into the same transitions the scheduler path
produces. The (gateway_id, event_id) unique constraint on webhook_events is
the idempotency boundary: a delivery either inserts the row or finds it, and
a processed row short-circuits before any state mutation.
"""
import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Mapping, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from renewal_engine.core.exceptions import (
    InvalidTransitionError, OrderNotFoundError, SubscriptionNotFoundError, WebhookAuthenticationError,
)
from renewal_engine.core.logging import security_logger, webhook_logger
from renewal_engine.core.metrics import webhook_events_counter
from renewal_engine.db.helpers import find_order_by_transaction, get_order, get_subscription
from renewal_engine.db.redis import hold_lock, subscription_lock
from renewal_engine.models import RenewalOrder, SubscriptionStatus, WebhookEvent
from renewal_engine.models.types import utcnow
from renewal_engine.services.gateways import EventType, GatewayRegistry, NormalizedEvent
from renewal_engine.services.retry_engine import PaymentRetryEngine
from renewal_engine.services.state_machine import SubscriptionStateMachine

logger = logging.getLogger(__name__)

# How long a webhook waits for a renewal in progress on the same subscription
SUBSCRIPTION_WAIT_SECONDS = 5.0

GATEWAY_TRANSITIONS = {
    EventType.SUBSCRIPTION_CANCELLED: SubscriptionStatus.CANCELLED,
    EventType.SUBSCRIPTION_SUSPENDED: SubscriptionStatus.ON_HOLD,
}


class IngestStatus(str, enum.Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    FAILED = "failed"


@dataclass
class IngestResult:
    status: IngestStatus
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    subscription_id: Optional[int] = None
    order_id: Optional[int] = None
    detail: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "event_id": self.event_id,
            "event_type": self.event_type,
            "subscription_id": self.subscription_id,
            "order_id": self.order_id,
            "detail": self.detail,
        }


def webhook_lock_key(gateway_id: str, event_id: str) -> str:
    return f"webhook:{gateway_id}:{event_id}"


class WebhookIngestor:
    def __init__(
        self,
        gateways: GatewayRegistry,
        state_machine: SubscriptionStateMachine,
        retry_engine: PaymentRetryEngine,
        redis_client,
        lock_timeout: int = 60
    ):
        self.gateways = gateways
        self.state_machine = state_machine
        self.retry_engine = retry_engine
        self.redis = redis_client
        self.lock_timeout = lock_timeout

    def ingest(
        self,
        db: Session,
        gateway_id: str,
        raw_body: bytes,
        headers: Mapping[str, str]
    ) -> IngestResult:
        """Verify, deduplicate, correlate and apply one webhook delivery

        Raises:
            GatewayNotConfiguredError: Unknown gateway
            WebhookAuthenticationError: Signature did not verify
            WebhookPayloadError: Body is not a recognisable event
        """
        adapter = self.gateways.get(gateway_id)
        if not adapter.verify_webhook(raw_body, headers):
            webhook_events_counter.labels(gateway=gateway_id, result="rejected").inc()
            security_logger.warning(f"Rejected {gateway_id} webhook with invalid signature")
            raise WebhookAuthenticationError(f"Invalid {gateway_id} webhook signature")

        event = adapter.parse_webhook(raw_body)
        webhook_logger.info(f"Received {gateway_id} event {event.event_id} ({event.raw_type})")

        record = self._record(db, gateway_id, event, raw_body)
        if record.processed:
            return self._duplicate(gateway_id, event, "already processed")

        with hold_lock(self.redis, webhook_lock_key(gateway_id, event.event_id), self.lock_timeout) as token:
            if token is None:
                return self._duplicate(gateway_id, event, "being processed by another worker")

            db.refresh(record)
            if record.processed:
                return self._duplicate(gateway_id, event, "already processed")
            if record.error_message:
                webhook_logger.info(f"Reprocessing {gateway_id} event {event.event_id} after earlier failure")

            record_id = record.id
            try:
                status, detail = self._dispatch(db, gateway_id, event, record)
                record = db.get(WebhookEvent, record_id)
                record.processed = True
                record.processed_at = utcnow()
                record.error_message = detail if status == IngestStatus.IGNORED else None
                db.commit()
            except Exception as e:
                db.rollback()
                failed = db.get(WebhookEvent, record_id)
                failed.processed = False
                failed.error_message = f"{type(e).__name__}: {e}"
                db.commit()
                webhook_events_counter.labels(gateway=gateway_id, result=IngestStatus.FAILED.value).inc()
                webhook_logger.error(
                    f"Processing {gateway_id} event {event.event_id} failed: {e}", exc_info=True
                )
                return IngestResult(
                    IngestStatus.FAILED, event.event_id, event.event_type.value,
                    failed.subscription_id, failed.order_id, str(e),
                )

        webhook_events_counter.labels(gateway=gateway_id, result=status.value).inc()
        webhook_logger.info(f"{gateway_id} event {event.event_id}: {status.value}" + (f" ({detail})" if detail else ""))
        return IngestResult(
            status, event.event_id, event.event_type.value,
            record.subscription_id, record.order_id, detail,
        )

    def _record(self, db: Session, gateway_id: str, event: NormalizedEvent, raw_body: bytes) -> WebhookEvent:
        """Insert the event row, or return the one a previous delivery stored"""
        record = WebhookEvent(
            gateway_id=gateway_id,
            event_id=event.event_id,
            event_type=event.raw_type[:100],
            subscription_id=event.subscription_id,
            order_id=event.order_id,
            payload=raw_body.decode("utf-8", errors="replace"),
            processed=False,
        )
        db.add(record)
        try:
            db.commit()
            return record
        except IntegrityError:
            db.rollback()
        return db.query(WebhookEvent).filter(
            WebhookEvent.gateway_id == gateway_id,
            WebhookEvent.event_id == event.event_id,
        ).one()

    def _duplicate(self, gateway_id: str, event: NormalizedEvent, detail: str) -> IngestResult:
        webhook_events_counter.labels(gateway=gateway_id, result=IngestStatus.DUPLICATE.value).inc()
        webhook_logger.info(f"Duplicate {gateway_id} event {event.event_id}: {detail}")
        return IngestResult(IngestStatus.DUPLICATE, event.event_id, event.event_type.value, detail=detail)

    # ========================================================================
    # CORRELATION AND DISPATCH
    # ========================================================================

    def resolve(
        self,
        db: Session,
        gateway_id: str,
        event: NormalizedEvent
    ) -> Tuple[Optional[int], Optional[RenewalOrder]]:
        """Find the subscription and order an event concerns

        Payload metadata wins; the gateway transaction id is the fallback.
        """
        order = None
        if event.order_id is not None:
            try:
                order = get_order(db, event.order_id)
            except OrderNotFoundError:
                webhook_logger.info(f"Event {event.event_id} names unknown order {event.order_id}")
            if order is not None and order.gateway_id and order.gateway_id != gateway_id:
                webhook_logger.warning(
                    f"Event {event.event_id} names order {order.id} which belongs to {order.gateway_id}"
                )
                order = None
        if order is None and event.transaction_id:
            order = find_order_by_transaction(db, event.transaction_id, gateway_id)

        subscription_id = order.subscription_id if order is not None else event.subscription_id
        return subscription_id, order

    def _dispatch(
        self,
        db: Session,
        gateway_id: str,
        event: NormalizedEvent,
        record: WebhookEvent
    ) -> Tuple[IngestStatus, Optional[str]]:
        if event.event_type == EventType.IGNORED:
            return IngestStatus.IGNORED, f"unhandled event type {event.raw_type}"

        subscription_id, order = self.resolve(db, gateway_id, event)
        record.subscription_id = subscription_id
        record.order_id = order.id if order is not None else None

        if event.event_type in (EventType.PAYMENT_SUCCEEDED, EventType.PAYMENT_FAILED):
            if order is None:
                return IngestStatus.IGNORED, "no matching renewal order"
            with subscription_lock(self.redis, order.subscription_id, blocking_timeout=SUBSCRIPTION_WAIT_SECONDS):
                db.refresh(order)
                return self._apply_payment(db, event, order)

        if subscription_id is None:
            return IngestStatus.IGNORED, "no matching subscription"
        try:
            get_subscription(db, subscription_id)
        except SubscriptionNotFoundError:
            return IngestStatus.IGNORED, f"subscription {subscription_id} not found"

        target = GATEWAY_TRANSITIONS[event.event_type]
        with subscription_lock(self.redis, subscription_id, blocking_timeout=SUBSCRIPTION_WAIT_SECONDS):
            try:
                self.state_machine.apply_transition(
                    db, subscription_id, target, f"{gateway_id} {event.raw_type}"
                )
            except InvalidTransitionError as e:
                return IngestStatus.IGNORED, str(e)
        return IngestStatus.PROCESSED, None

    def _apply_payment(
        self,
        db: Session,
        event: NormalizedEvent,
        order: RenewalOrder
    ) -> Tuple[IngestStatus, Optional[str]]:
        now = event.occurred_at or utcnow()
        if event.event_type == EventType.PAYMENT_SUCCEEDED:
            if order.is_paid:
                return IngestStatus.PROCESSED, "order already paid"
            if not self.retry_engine.record_payment_success(db, order, event.transaction_id, utcnow()):
                return IngestStatus.PROCESSED, "settled without renewal, refund required"
            return IngestStatus.PROCESSED, None

        result = self.retry_engine.record_payment_failure(
            db, order, event.error_code, event.error_message, self._failure_time(now)
        )
        return IngestStatus.PROCESSED, result.outcome.value

    @staticmethod
    def _failure_time(occurred_at: datetime) -> datetime:
        # Backoff counts from when we learn of the failure, never from the past
        return max(occurred_at, utcnow())

