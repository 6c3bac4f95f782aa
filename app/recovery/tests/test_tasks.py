"""
Tests for recovery Celery tasks.

Tests cover:
- trigger_obligation_recovery task
- apply_recovery_session_outcome and expire_recovery_session tasks
- process_due_obligations, expire_recovery_sessions and
  reconcile_obligations scans
- send_recovery_notification task
"""

from datetime import timedelta
from unittest.mock import patch
from uuid import uuid4

from django.core import mail
from django.utils import timezone

from recovery.models import Obligation
from recovery.notifications import CHEF_PAYMENT_LINK
from recovery.state_machines import ObligationStatus
from recovery.tasks import (
    BATCH_SIZE,
    apply_recovery_session_outcome,
    expire_recovery_session,
    expire_recovery_sessions,
    process_due_obligations,
    reconcile_obligations,
    send_recovery_notification,
    trigger_obligation_recovery,
)
from recovery.tests.factories import (
    ChargeAttemptFactory,
    ObligationFactory,
    PaymentRecoverySessionFactory,
)
from recovery.tests.fakes import declined


# =============================================================================
# trigger_obligation_recovery Tests
# =============================================================================


class TestTriggerObligationRecovery:
    def test_processes_obligation(self, obligation, gateway):
        result = trigger_obligation_recovery(str(obligation.id))

        assert result == {
            "status": "processed",
            "obligation_id": str(obligation.id),
            "obligation_status": ObligationStatus.CHARGE_SUCCEEDED,
        }

    def test_declined(self, obligation, gateway):
        gateway.queue(declined())

        result = trigger_obligation_recovery(str(obligation.id))

        assert result["obligation_status"] == ObligationStatus.CHARGE_FAILED

    def test_force(self, charge_failed_obligation, gateway):
        Obligation.objects.filter(pk=charge_failed_obligation.pk).update(
            next_attempt_at=timezone.now() + timedelta(days=1)
        )

        result = trigger_obligation_recovery(str(charge_failed_obligation.id), force=True)

        assert result["obligation_status"] == ObligationStatus.CHARGE_SUCCEEDED
        assert len(gateway.charges) == 1

    def test_not_found(self, db):
        result = trigger_obligation_recovery(str(uuid4()))

        assert result["status"] == "not_found"

    def test_invalid_id(self, db):
        result = trigger_obligation_recovery("12345")

        assert result["status"] == "invalid"


# =============================================================================
# Recovery Session Tasks
# =============================================================================


class TestApplyRecoverySessionOutcome:
    def test_paid(self, open_session):
        result = apply_recovery_session_outcome(str(open_session.id), "succeeded")

        assert result["status"] == "processed"
        assert result["obligation_status"] == ObligationStatus.CHARGE_SUCCEEDED

    def test_invalid_outcome(self, open_session):
        result = apply_recovery_session_outcome(str(open_session.id), "chargeback")

        assert result["status"] == "invalid"
        open_session.refresh_from_db()
        assert open_session.consumed is False

    def test_not_found(self, db):
        result = apply_recovery_session_outcome(str(uuid4()), "succeeded")

        assert result["status"] == "not_found"


class TestExpireRecoverySession:
    def test_expires_lapsed_session(self, requires_action_obligation, open_session):
        open_session.expires_at = timezone.now() - timedelta(seconds=1)
        open_session.save()

        result = expire_recovery_session(str(open_session.id))

        assert result["status"] == "processed"
        assert result["obligation_status"] == ObligationStatus.CHARGE_FAILED

    def test_not_found(self, db):
        assert expire_recovery_session(str(uuid4()))["status"] == "not_found"


# =============================================================================
# Periodic Scan Tests
# =============================================================================


class TestProcessDueObligations:
    def test_queues_due_obligations(self, obligation, charge_failed_obligation, chef):
        ObligationFactory(
            chef=chef,
            status=ObligationStatus.CHARGE_FAILED,
            next_attempt_at=timezone.now() + timedelta(hours=1),
        )
        ObligationFactory(chef=chef, status=ObligationStatus.CHARGE_SUCCEEDED)
        ObligationFactory(chef=chef, status=ObligationStatus.ESCALATED)

        with patch("recovery.tasks.trigger_obligation_recovery.delay") as mock_delay:
            result = process_due_obligations()

        assert result == {"queued_count": 2}
        queued = {call.args[0] for call in mock_delay.call_args_list}
        assert queued == {str(obligation.id), str(charge_failed_obligation.id)}

    def test_requires_action_waiting_on_link_not_queued(self, requires_action_obligation):
        with patch("recovery.tasks.trigger_obligation_recovery.delay") as mock_delay:
            result = process_due_obligations()

        assert result == {"queued_count": 0}
        mock_delay.assert_not_called()

    def test_requires_action_due_for_reissue(self, db, chef):
        due = ObligationFactory(
            chef=chef,
            status=ObligationStatus.REQUIRES_ACTION,
            next_attempt_at=timezone.now() - timedelta(minutes=5),
        )

        with patch("recovery.tasks.trigger_obligation_recovery.delay") as mock_delay:
            process_due_obligations()

        mock_delay.assert_called_once_with(str(due.id))

    def test_batch_limit(self, db, chef):
        ObligationFactory.create_batch(BATCH_SIZE + 5, chef=chef)

        with patch("recovery.tasks.trigger_obligation_recovery.delay") as mock_delay:
            result = process_due_obligations()

        assert result["queued_count"] == BATCH_SIZE
        assert mock_delay.call_count == BATCH_SIZE

    def test_queue_failure_does_not_stop_scan(self, obligation, charge_failed_obligation):
        with patch(
            "recovery.tasks.trigger_obligation_recovery.delay",
            side_effect=[ConnectionError("broker down"), None],
        ):
            result = process_due_obligations()

        assert result["queued_count"] == 1


class TestExpireRecoverySessions:
    def test_queues_lapsed_sessions(self, obligation, open_session):
        lapsed = PaymentRecoverySessionFactory(
            obligation=obligation,
            expires_at=timezone.now() - timedelta(minutes=1),
        )

        with patch("recovery.tasks.expire_recovery_session.delay") as mock_delay:
            result = expire_recovery_sessions()

        assert result == {"queued_count": 1}
        mock_delay.assert_called_once_with(str(lapsed.id))


class TestReconcileObligations:
    def test_returns_counts(self, obligation):
        ChargeAttemptFactory(obligation=obligation, attempt_number=1)

        result = reconcile_obligations()

        assert result == {"checked": 1, "repaired": 1, "discrepancies": 0, "skipped": 0}


# =============================================================================
# send_recovery_notification Tests
# =============================================================================


class TestSendRecoveryNotification:
    def test_sends_email(self, db):
        result = send_recovery_notification(
            "chef@example.com",
            CHEF_PAYMENT_LINK,
            {"obligation_id": "1", "amount": "150.00 USD", "link": "https://pay.example.com/x"},
        )

        assert result is True
        assert len(mail.outbox) == 1
        assert mail.outbox[0].to == ["chef@example.com"]

    def test_unknown_template_dropped(self, db):
        result = send_recovery_notification("chef@example.com", "recovery.nope", {})

        assert result is False
        assert mail.outbox == []
