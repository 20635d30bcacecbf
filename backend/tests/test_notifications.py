"""Notification bus and billing schedule tests"""
import json
from datetime import datetime, timezone

import pytest

from renewal_engine.services.notifications import (
    NOTIFICATION_CHANNEL, Notification, NotificationBus, NotificationKind, RedisNotificationPublisher,
    VaultEventKind,
)
from renewal_engine.services.schedule import advance, interval_delta


@pytest.mark.high
class TestNotificationBus:
    """Test NotificationBus"""

    def test_handlers_receive_their_kind(self):
        bus = NotificationBus()
        received = []
        bus.subscribe(NotificationKind.CANCELLED, received.append)

        bus.emit(NotificationKind.CANCELLED, 1, old_status="active")
        bus.emit(NotificationKind.RESUMED, 1, old_status="on_hold")

        assert [n.kind for n in received] == [NotificationKind.CANCELLED]
        assert received[0].data == {"old_status": "active"}

    def test_missing_fields_rejected(self):
        with pytest.raises(ValueError):
            Notification(kind=NotificationKind.PAYMENT_SUCCESS, subscription_id=1, data={"order_id": 1})

    def test_failing_handler_does_not_stop_others(self):
        bus = NotificationBus()
        received = []

        def broken(notification):
            raise RuntimeError("mailer down")

        bus.subscribe(VaultEventKind.PAYMENT_METHOD_DELETED, broken)
        bus.subscribe_all(received.append)

        bus.emit(VaultEventKind.PAYMENT_METHOD_DELETED, 3, gateway_id="stripe")

        assert len(received) == 1

    def test_to_dict(self):
        occurred = datetime(2024, 1, 1, tzinfo=timezone.utc)
        notification = Notification(
            kind=NotificationKind.GRACE_PERIOD_STARTED, subscription_id=5,
            data={"grace_period_end": "2024-01-08T00:00:00+00:00"}, occurred_at=occurred,
        )

        assert notification.to_dict() == {
            "type": "grace_period_started",
            "subscription_id": 5,
            "data": {"grace_period_end": "2024-01-08T00:00:00+00:00"},
            "timestamp": occurred.isoformat(),
        }

    def test_redis_publisher_forwards_json(self, mock_redis):
        pubsub = mock_redis.pubsub()
        pubsub.subscribe(NOTIFICATION_CHANNEL)
        pubsub.get_message(timeout=1)  # subscribe confirmation
        bus = NotificationBus()
        bus.subscribe_all(RedisNotificationPublisher(mock_redis))

        bus.emit(NotificationKind.RESUMED, 9, old_status="on_hold")

        message = pubsub.get_message(timeout=1)
        assert message is not None
        event = json.loads(message["data"])
        assert event["type"] == "resumed"
        assert event["subscription_id"] == 9


@pytest.mark.medium
class TestSchedule:
    """Test billing date arithmetic"""

    def test_month_end_clamps(self):
        start = datetime(2024, 1, 31, tzinfo=timezone.utc)

        assert advance(start, 1, "month") == datetime(2024, 2, 29, tzinfo=timezone.utc)
        assert advance(start, 2, "month") == datetime(2024, 3, 31, tzinfo=timezone.utc)

    def test_leap_day_yearly(self):
        assert advance(datetime(2024, 2, 29, tzinfo=timezone.utc), 1, "year") == datetime(
            2025, 2, 28, tzinfo=timezone.utc
        )

    @pytest.mark.parametrize("count, unit, expected_days", [(3, "day", 3), (2, "week", 14)])
    def test_fixed_length_units(self, count, unit, expected_days):
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)

        assert (advance(start, count, unit) - start).days == expected_days

    def test_non_positive_count_rejected(self):
        with pytest.raises(ValueError):
            interval_delta(0, "month")
