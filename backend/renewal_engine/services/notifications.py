"""Typed notification bus for subscription lifecycle events

Services publish Notifications; collaborators (email, role mapping, gateway
listeners) register handlers for the kinds they care about. A Redis
publisher forwards everything to a pub/sub channel for out-of-process
consumers.
"""
import enum
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

NOTIFICATION_CHANNEL = "billing:notifications"


class NotificationKind(str, enum.Enum):
    STATUS_CHANGED = "status_changed"
    RESUMED = "resumed"
    CANCELLED = "cancelled"
    PAYMENT_SUCCESS = "payment_success"
    PAYMENT_FAILED = "payment_failed"
    RETRY_EXHAUSTED = "retry_exhausted"
    GRACE_PERIOD_STARTED = "grace_period_started"
    GRACE_PERIOD_ENDED = "grace_period_ended"


class VaultEventKind(str, enum.Enum):
    PAYMENT_METHOD_SAVED = "payment_method_saved"
    PAYMENT_METHOD_UPDATED = "payment_method_updated"
    PAYMENT_METHOD_DELETED = "payment_method_deleted"


EventKind = Union[NotificationKind, VaultEventKind]

# Keys every payload of a kind must carry
REQUIRED_FIELDS: Dict[EventKind, tuple] = {
    NotificationKind.STATUS_CHANGED: ("old_status", "new_status", "reason"),
    NotificationKind.RESUMED: ("old_status",),
    NotificationKind.CANCELLED: ("old_status",),
    NotificationKind.PAYMENT_SUCCESS: ("order_id", "amount", "currency", "transaction_id"),
    NotificationKind.PAYMENT_FAILED: ("order_id", "error", "retryable", "attempt_number"),
    NotificationKind.RETRY_EXHAUSTED: ("order_id", "error", "reason"),
    NotificationKind.GRACE_PERIOD_STARTED: ("grace_period_end",),
    NotificationKind.GRACE_PERIOD_ENDED: ("grace_period_end",),
    VaultEventKind.PAYMENT_METHOD_SAVED: ("gateway_id", "is_default"),
    VaultEventKind.PAYMENT_METHOD_UPDATED: ("gateway_id",),
    VaultEventKind.PAYMENT_METHOD_DELETED: ("gateway_id",),
}


@dataclass
class Notification:
    kind: EventKind
    subscription_id: int
    data: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        missing = [key for key in REQUIRED_FIELDS.get(self.kind, ()) if key not in self.data]
        if missing:
            raise ValueError(f"{self.kind.value} notification missing fields: {', '.join(missing)}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.kind.value,
            "subscription_id": self.subscription_id,
            "data": self.data,
            "timestamp": self.occurred_at.isoformat(),
        }


Handler = Callable[[Notification], None]


class NotificationBus:
    """Explicit subscriber registry, one handler list per kind"""

    def __init__(self):
        self._handlers: Dict[EventKind, List[Handler]] = {}
        self._catch_all: List[Handler] = []

    def subscribe(self, kind: EventKind, handler: Handler) -> None:
        self._handlers.setdefault(kind, []).append(handler)

    def subscribe_all(self, handler: Handler) -> None:
        self._catch_all.append(handler)

    def publish(self, notification: Notification) -> None:
        """Deliver to every handler registered for the kind

        A failing handler is logged and skipped; it must not undo the state
        change that produced the notification.
        """
        handlers = self._handlers.get(notification.kind, []) + self._catch_all
        logger.info(
            f"Publishing {notification.kind.value} for subscription {notification.subscription_id} "
            f"to {len(handlers)} handler(s)"
        )
        for handler in handlers:
            try:
                handler(notification)
            except Exception as e:
                logger.error(
                    f"Notification handler {getattr(handler, '__name__', handler)!r} failed for "
                    f"{notification.kind.value}: {e}",
                    exc_info=True
                )

    def emit(self, kind: EventKind, subscription_id: int, **data: Any) -> Notification:
        notification = Notification(kind=kind, subscription_id=subscription_id, data=data)
        self.publish(notification)
        return notification


class RedisNotificationPublisher:
    """Forwards notifications to a Redis pub/sub channel"""

    def __init__(self, client, channel: Optional[str] = None):
        self.client = client
        self.channel = channel or NOTIFICATION_CHANNEL

    def __call__(self, notification: Notification) -> None:
        event_json = json.dumps(notification.to_dict(), default=str)
        result = self.client.publish(self.channel, event_json)
        if result > 0:
            logger.debug(f"Event {notification.kind.value} delivered to {result} subscriber(s)")
        else:
            logger.debug(f"Event {notification.kind.value} published to {self.channel} with no subscribers")
