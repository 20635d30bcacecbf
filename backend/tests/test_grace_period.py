"""Grace period manager tests"""
from datetime import timedelta

import pytest

from renewal_engine.db.redis import subscription_lock_key
from renewal_engine.models import SubscriptionNote, SubscriptionStatus
from renewal_engine.services.grace_period import GRACE_END_TASK, GraceVerdict, grace_task_key
from renewal_engine.services.notifications import NotificationKind

from fakes import NOW

GRACE_END = NOW + timedelta(days=7)


@pytest.fixture
def grace_events(grace_services):
    received = []
    grace_services.bus.subscribe_all(received.append)
    return received


@pytest.mark.critical
class TestGraceEvaluation:
    """Test GracePeriodManager.evaluate()"""

    def test_disabled_without_grace_days(self, db_session, services, make_subscription):
        subscription = make_subscription()

        assert services.grace.evaluate(db_session, subscription, NOW) == GraceVerdict.DISABLED
        assert subscription.grace_period_end is None

    def test_first_sight_opens_grace_window(self, db_session, grace_services, make_subscription, grace_events):
        subscription = make_subscription()

        verdict = grace_services.grace.evaluate(db_session, subscription, NOW)

        assert verdict == GraceVerdict.IN_GRACE
        db_session.refresh(subscription)
        assert subscription.grace_period_end == GRACE_END
        assert subscription.status == SubscriptionStatus.ACTIVE.value
        assert grace_services.task_queue.get_run_at(GRACE_END_TASK, grace_task_key(subscription.id)) == GRACE_END

        started = [n for n in grace_events if n.kind == NotificationKind.GRACE_PERIOD_STARTED]
        assert started[0].data == {"grace_period_end": GRACE_END.isoformat()}

    def test_grace_window_is_opened_once(self, db_session, grace_services, make_subscription, grace_events):
        subscription = make_subscription()

        grace_services.grace.evaluate(db_session, subscription, NOW)
        grace_services.grace.evaluate(db_session, subscription, NOW + timedelta(days=2))

        notes = db_session.query(SubscriptionNote).filter(
            SubscriptionNote.subscription_id == subscription.id,
            SubscriptionNote.activity_type == "grace_period_started",
        ).count()
        assert notes == 1
        assert len([n for n in grace_events if n.kind == NotificationKind.GRACE_PERIOD_STARTED]) == 1

    def test_past_grace_end_expires(self, db_session, grace_services, make_subscription, grace_events):
        subscription = make_subscription()

        verdict = grace_services.grace.evaluate(db_session, subscription, GRACE_END)

        assert verdict == GraceVerdict.EXPIRED
        db_session.refresh(subscription)
        assert subscription.status == SubscriptionStatus.EXPIRED.value
        assert subscription.grace_period_end == GRACE_END
        assert NotificationKind.GRACE_PERIOD_ENDED in [n.kind for n in grace_events]

    def test_grace_end_counts_from_start_date_without_next_date(self, grace_services, make_subscription):
        subscription = make_subscription(next_date=None)

        assert grace_services.grace.grace_end_for(subscription) == subscription.start_date + timedelta(days=7)


@pytest.mark.critical
class TestGraceEndTasks:
    """Test the delayed grace-end task handler"""

    def test_due_task_expires_unpaid_subscription(self, db_session, grace_services, make_subscription):
        subscription = make_subscription()
        grace_services.grace.evaluate(db_session, subscription, NOW)

        early = grace_services.grace.process_due_tasks(db_session, now=GRACE_END - timedelta(minutes=1))
        assert early["claimed"] == 0

        summary = grace_services.grace.process_due_tasks(db_session, now=GRACE_END)

        assert summary["expired"] == 1
        db_session.refresh(subscription)
        assert subscription.status == SubscriptionStatus.EXPIRED.value

    def test_successful_payment_cancels_task(self, db_session, grace_services, make_subscription):
        subscription = make_subscription()
        grace_services.grace.evaluate(db_session, subscription, NOW)

        grace_services.retry_engine.attempt_renewal(db_session, subscription.id, now=NOW + timedelta(days=1))

        assert grace_services.task_queue.get_run_at(GRACE_END_TASK, grace_task_key(subscription.id)) is None
        db_session.refresh(subscription)
        assert subscription.grace_period_end is None

        summary = grace_services.grace.process_due_tasks(db_session, now=GRACE_END)
        assert summary["claimed"] == 0
        db_session.refresh(subscription)
        assert subscription.status == SubscriptionStatus.ACTIVE.value

    def test_stale_task_is_a_noop(self, db_session, grace_services, make_subscription):
        subscription = make_subscription()
        grace_services.grace.evaluate(db_session, subscription, NOW)
        grace_services.retry_engine.attempt_renewal(db_session, subscription.id, now=NOW + timedelta(days=1))
        # A task that slipped past the cancel
        grace_services.task_queue.schedule(
            GRACE_END_TASK, grace_task_key(subscription.id), GRACE_END, {"subscription_id": subscription.id}
        )

        summary = grace_services.grace.process_due_tasks(db_session, now=GRACE_END)

        assert summary["stale"] == 1
        db_session.refresh(subscription)
        assert subscription.status == SubscriptionStatus.ACTIVE.value

    def test_locked_subscription_defers_task(self, db_session, grace_services, make_subscription, mock_redis):
        subscription = make_subscription()
        grace_services.grace.evaluate(db_session, subscription, NOW)
        mock_redis.set(subscription_lock_key(subscription.id), "renewal-in-progress")

        summary = grace_services.grace.process_due_tasks(db_session, now=GRACE_END)

        assert summary["deferred"] == 1
        run_at = grace_services.task_queue.get_run_at(GRACE_END_TASK, grace_task_key(subscription.id))
        assert run_at == GRACE_END + timedelta(minutes=1)
        db_session.refresh(subscription)
        assert subscription.status == SubscriptionStatus.ACTIVE.value

    def test_task_for_deleted_subscription_is_dropped(self, db_session, grace_services):
        grace_services.task_queue.schedule(GRACE_END_TASK, grace_task_key(999), NOW, {"subscription_id": 999})

        summary = grace_services.grace.process_due_tasks(db_session, now=NOW)

        assert summary["stale"] == 1
        assert grace_services.task_queue.get_run_at(GRACE_END_TASK, grace_task_key(999)) is None

    def test_cancelled_subscription_task_is_stale(self, db_session, grace_services, make_subscription):
        subscription = make_subscription()
        grace_services.grace.evaluate(db_session, subscription, NOW)
        grace_services.state_machine.apply_transition(db_session, subscription.id, SubscriptionStatus.CANCELLED)

        summary = grace_services.grace.process_due_tasks(db_session, now=GRACE_END)

        assert summary["stale"] == 1
        db_session.refresh(subscription)
        assert subscription.status == SubscriptionStatus.CANCELLED.value
