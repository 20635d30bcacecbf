"""Subscription state machine tests"""
import pytest

from renewal_engine.core.exceptions import InvalidTransitionError, SubscriptionNotFoundError
from renewal_engine.models import RetryState, RetryStatus, SubscriptionNote, SubscriptionStatus
from renewal_engine.services.notifications import NotificationKind
from renewal_engine.services.state_machine import ALLOWED_TRANSITIONS, is_allowed

S = SubscriptionStatus


@pytest.mark.critical
class TestTransitionTable:
    """Test the allowed transition table"""

    def test_every_status_has_an_entry(self):
        assert set(ALLOWED_TRANSITIONS) == set(SubscriptionStatus)

    def test_trash_has_no_outgoing_transitions(self):
        assert ALLOWED_TRANSITIONS[S.TRASH] == frozenset()

    def test_cancelled_can_only_reactivate_or_trash(self):
        assert is_allowed(S.CANCELLED, S.ACTIVE)
        assert is_allowed(S.CANCELLED, S.TRASH)
        assert not is_allowed(S.CANCELLED, S.ON_HOLD)
        assert not is_allowed(S.CANCELLED, S.PE_CANCELLED)

    def test_no_status_lists_itself(self):
        for status, targets in ALLOWED_TRANSITIONS.items():
            assert status not in targets


@pytest.mark.critical
class TestApplyTransition:
    """Test apply_transition()"""

    def test_allowed_transition_updates_status_and_writes_note(self, db_session, services, make_subscription):
        subscription = make_subscription()

        changed = services.state_machine.apply_transition(db_session, subscription.id, S.ON_HOLD, "operator hold")

        assert changed is True
        db_session.refresh(subscription)
        assert subscription.status == S.ON_HOLD.value
        note = db_session.query(SubscriptionNote).filter(
            SubscriptionNote.subscription_id == subscription.id,
            SubscriptionNote.activity_type == "subs_on_hold",
        ).one()
        assert "active to on_hold" in note.content
        assert "operator hold" in note.content

    def test_same_status_is_a_noop(self, db_session, services, make_subscription, notifications):
        subscription = make_subscription()
        notes_before = db_session.query(SubscriptionNote).count()
        notifications.clear()

        changed = services.state_machine.apply_transition(db_session, subscription.id, S.ACTIVE)

        assert changed is False
        assert db_session.query(SubscriptionNote).count() == notes_before
        assert notifications == []

    def test_disallowed_transition_raises_and_leaves_status(self, db_session, services, make_subscription):
        subscription = make_subscription()
        services.state_machine.apply_transition(db_session, subscription.id, S.CANCELLED)

        with pytest.raises(InvalidTransitionError) as exc_info:
            services.state_machine.apply_transition(db_session, subscription.id, S.ON_HOLD)

        assert exc_info.value.old_status == "cancelled"
        assert exc_info.value.new_status == "on_hold"
        db_session.refresh(subscription)
        assert subscription.status == S.CANCELLED.value

    def test_accepts_plain_string_status(self, db_session, services, make_subscription):
        subscription = make_subscription()

        services.state_machine.apply_transition(db_session, subscription.id, "on_hold")

        db_session.refresh(subscription)
        assert subscription.status == "on_hold"

    def test_unknown_subscription_raises(self, db_session, services):
        with pytest.raises(SubscriptionNotFoundError):
            services.state_machine.apply_transition(db_session, 999, S.ACTIVE)

    def test_status_changed_notification_payload(self, db_session, services, make_subscription, notifications):
        subscription = make_subscription()

        services.state_machine.apply_transition(db_session, subscription.id, S.ON_HOLD, "why not")

        status_changes = [n for n in notifications if n.kind == NotificationKind.STATUS_CHANGED]
        assert status_changes[-1].subscription_id == subscription.id
        assert status_changes[-1].data == {"old_status": "active", "new_status": "on_hold", "reason": "why not"}

    def test_cancel_emits_cancelled_notification(self, db_session, services, make_subscription, notifications):
        subscription = make_subscription()

        services.state_machine.apply_transition(db_session, subscription.id, S.CANCELLED)

        kinds = [n.kind for n in notifications]
        assert NotificationKind.CANCELLED in kinds

    def test_reactivating_pe_cancelled_clears_suspension_and_emits_resumed(
        self, db_session, services, make_subscription, notifications
    ):
        subscription = make_subscription()
        services.state_machine.apply_transition(db_session, subscription.id, S.PE_CANCELLED)
        subscription.suspended_reason = "payment_retry_exhausted"
        db_session.commit()

        services.state_machine.apply_transition(db_session, subscription.id, S.ACTIVE, "card updated")

        db_session.refresh(subscription)
        assert subscription.suspended_reason is None
        assert subscription.grace_period_end is None
        resumed = [n for n in notifications if n.kind == NotificationKind.RESUMED]
        assert resumed[0].data == {"old_status": "pe_cancelled"}

    def test_cancelling_closes_pending_retry(self, db_session, services, make_subscription):
        subscription = make_subscription()
        db_session.add(RetryState(
            subscription_id=subscription.id, attempt_number=1, status=RetryStatus.PENDING.value,
        ))
        db_session.commit()

        services.state_machine.apply_transition(db_session, subscription.id, S.CANCELLED)

        retry_state = db_session.query(RetryState).filter(RetryState.subscription_id == subscription.id).one()
        assert retry_state.status == RetryStatus.FAILED.value
        assert retry_state.last_error == "subscription cancelled"

    def test_commit_false_leaves_transaction_open(self, db_session, services, make_subscription):
        subscription = make_subscription()

        services.state_machine.apply_transition(db_session, subscription.id, S.ON_HOLD, commit=False)
        db_session.rollback()

        db_session.refresh(subscription)
        assert subscription.status == S.ACTIVE.value


@pytest.mark.high
class TestTrashAndRestore:
    """Test trashing and restoring subscriptions"""

    def test_trash_remembers_previous_status(self, db_session, services, make_subscription):
        subscription = make_subscription()
        services.state_machine.apply_transition(db_session, subscription.id, S.ON_HOLD)

        services.state_machine.apply_transition(db_session, subscription.id, S.TRASH)

        db_session.refresh(subscription)
        assert subscription.status == S.TRASH.value
        assert subscription.trashed_from_status == S.ON_HOLD.value

    def test_restore_returns_to_previous_status(self, db_session, services, make_subscription):
        subscription = make_subscription()
        services.state_machine.apply_transition(db_session, subscription.id, S.ON_HOLD)
        services.state_machine.apply_transition(db_session, subscription.id, S.TRASH)

        restored = services.state_machine.restore(db_session, subscription.id)

        assert restored == S.ON_HOLD
        db_session.refresh(subscription)
        assert subscription.status == S.ON_HOLD.value
        assert subscription.trashed_from_status is None
        assert db_session.query(SubscriptionNote).filter(
            SubscriptionNote.subscription_id == subscription.id,
            SubscriptionNote.activity_type == "subs_restored",
        ).count() == 1

    def test_trash_cannot_transition_directly(self, db_session, services, make_subscription):
        subscription = make_subscription()
        services.state_machine.apply_transition(db_session, subscription.id, S.TRASH)

        with pytest.raises(InvalidTransitionError):
            services.state_machine.apply_transition(db_session, subscription.id, S.ACTIVE)

    def test_restore_requires_trash(self, db_session, services, make_subscription):
        subscription = make_subscription()

        with pytest.raises(InvalidTransitionError):
            services.state_machine.restore(db_session, subscription.id)
