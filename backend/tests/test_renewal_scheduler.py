"""Renewal scheduler tick tests"""
from datetime import timedelta
from unittest.mock import patch

import pytest

from renewal_engine.db.redis import subscription_lock_key
from renewal_engine.models import OrderStatus, RenewalOrder, RetryState, RetryStatus, SubscriptionStatus
from renewal_engine.services.gateways import ChargeResult
from renewal_engine.services.renewal_scheduler import SUMMARY_KEYS, is_due

from fakes import NOW


@pytest.mark.critical
class TestTick:
    """Test RenewalScheduler.tick()"""

    def test_renews_due_subscriptions_only(self, db_session, services, make_subscription, fake_gateway):
        due = make_subscription()
        not_due = make_subscription(next_date=NOW + timedelta(days=1))

        summary = services.scheduler.tick(db_session, now=NOW)

        assert set(summary) == set(SUMMARY_KEYS)
        assert summary["processed"] == 1
        assert summary["renewed"] == 1
        assert len(fake_gateway.calls) == 1
        db_session.refresh(due)
        db_session.refresh(not_due)
        assert due.payments_made == 1
        assert not_due.payments_made == 0

    def test_second_tick_is_a_noop(self, db_session, services, make_subscription, fake_gateway):
        make_subscription()

        services.scheduler.tick(db_session, now=NOW)
        summary = services.scheduler.tick(db_session, now=NOW)

        assert summary["processed"] == 0
        assert len(fake_gateway.calls) == 1

    def test_subscription_without_next_date_is_due_from_start(self, db_session, services, make_subscription):
        make_subscription(next_date=None)

        summary = services.scheduler.tick(db_session, now=NOW)

        assert summary["renewed"] == 1

    def test_failed_charge_schedules_retry(self, db_session, services, make_subscription, fake_gateway):
        subscription = make_subscription()
        fake_gateway.queue(ChargeResult.failure("insufficient_funds"))

        summary = services.scheduler.tick(db_session, now=NOW)

        assert summary["retry_scheduled"] == 1
        retry_state = db_session.query(RetryState).filter(RetryState.subscription_id == subscription.id).one()
        assert retry_state.status == RetryStatus.PENDING.value

    def test_pending_retry_blocks_new_attempt(self, db_session, services, make_subscription, fake_gateway):
        subscription = make_subscription()
        db_session.add(RetryState(
            subscription_id=subscription.id, attempt_number=1,
            next_retry_time=NOW + timedelta(days=1), status=RetryStatus.PENDING.value,
        ))
        db_session.commit()

        summary = services.scheduler.tick(db_session, now=NOW)

        assert summary["skipped"] == 1
        assert fake_gateway.calls == []

    def test_unsettled_order_blocks_new_attempt(self, db_session, services, make_subscription, fake_gateway):
        subscription = make_subscription()
        db_session.add(RenewalOrder(
            subscription_id=subscription.id, amount=subscription.price, currency="USD",
            status=OrderStatus.PENDING.value, gateway_id="fake",
        ))
        db_session.commit()

        summary = services.scheduler.tick(db_session, now=NOW)

        assert summary["skipped"] == 1
        assert fake_gateway.calls == []

    def test_pe_cancelled_ends_at_period_end(self, db_session, services, make_subscription, fake_gateway):
        subscription = make_subscription(status=SubscriptionStatus.PE_CANCELLED.value)

        summary = services.scheduler.tick(db_session, now=NOW)

        assert summary["cancelled"] == 1
        assert fake_gateway.calls == []
        db_session.refresh(subscription)
        assert subscription.status == SubscriptionStatus.CANCELLED.value

    def test_suspended_subscription_waits_for_operator(self, db_session, services, make_subscription, fake_gateway):
        subscription = make_subscription(status=SubscriptionStatus.PE_CANCELLED.value)
        subscription.suspended_reason = "payment_retry_exhausted"
        db_session.commit()

        summary = services.scheduler.tick(db_session, now=NOW)

        assert summary["skipped"] == 1
        db_session.refresh(subscription)
        assert subscription.status == SubscriptionStatus.PE_CANCELLED.value

    def test_suspended_subscription_expires_after_grace(self, db_session, grace_services, make_subscription):
        subscription = make_subscription(
            status=SubscriptionStatus.PE_CANCELLED.value, next_date=NOW - timedelta(days=8)
        )
        subscription.suspended_reason = "payment_retry_exhausted"
        db_session.commit()

        summary = grace_services.scheduler.tick(db_session, now=NOW)

        assert summary["expired"] == 1
        db_session.refresh(subscription)
        assert subscription.status == SubscriptionStatus.EXPIRED.value

    def test_auto_renew_off_expires(self, db_session, services, make_subscription, fake_gateway):
        subscription = make_subscription(auto_renew=False)

        summary = services.scheduler.tick(db_session, now=NOW)

        assert summary["expired"] == 1
        assert fake_gateway.calls == []
        db_session.refresh(subscription)
        assert subscription.status == SubscriptionStatus.EXPIRED.value

    def test_overdue_subscription_gets_grace_then_retry(
        self, db_session, grace_services, make_subscription, fake_gateway
    ):
        subscription = make_subscription()
        fake_gateway.queue(ChargeResult.failure("insufficient_funds"))

        summary = grace_services.scheduler.tick(db_session, now=NOW)

        assert summary["retry_scheduled"] == 1
        db_session.refresh(subscription)
        assert subscription.status == SubscriptionStatus.ACTIVE.value
        assert subscription.grace_period_end == NOW + timedelta(days=7)

    def test_overdue_past_grace_expires_without_charge(
        self, db_session, grace_services, make_subscription, fake_gateway
    ):
        subscription = make_subscription(next_date=NOW - timedelta(days=10))

        summary = grace_services.scheduler.tick(db_session, now=NOW)

        assert summary["expired"] == 1
        assert fake_gateway.calls == []
        db_session.refresh(subscription)
        assert subscription.status == SubscriptionStatus.EXPIRED.value

    def test_locked_subscription_is_skipped(self, db_session, services, make_subscription, fake_gateway, mock_redis):
        subscription = make_subscription()
        mock_redis.set(subscription_lock_key(subscription.id), "other-worker")

        summary = services.scheduler.tick(db_session, now=NOW)

        assert summary["skipped"] == 1
        assert fake_gateway.calls == []

    def test_error_on_one_subscription_does_not_stop_the_tick(self, db_session, services, make_subscription):
        make_subscription()
        make_subscription()

        with patch.object(services.retry_engine, "run_attempt", side_effect=RuntimeError("boom")):
            summary = services.scheduler.tick(db_session, now=NOW)

        assert summary["processed"] == 2
        assert summary["failed"] == 2

    def test_lock_is_released_after_processing(self, db_session, services, make_subscription, mock_redis):
        subscription = make_subscription()

        services.scheduler.tick(db_session, now=NOW)

        assert mock_redis.get(subscription_lock_key(subscription.id)) is None


@pytest.mark.medium
class TestIsDue:
    """Test is_due()"""

    def test_next_date_in_past_is_due(self, make_subscription):
        assert is_due(make_subscription(next_date=NOW - timedelta(seconds=1)), NOW)

    def test_next_date_in_future_is_not_due(self, make_subscription):
        assert not is_due(make_subscription(next_date=NOW + timedelta(seconds=1)), NOW)

    def test_trial_without_next_date_is_not_due(self, make_subscription):
        subscription = make_subscription(next_date=None, trial_interval_count=14, trial_interval_unit="day")
        assert not is_due(subscription, NOW)
