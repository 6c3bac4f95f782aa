"""
Tests for EscalationManager.

Tests cover:
- Ticket creation with the attempt history snapshot
- Idempotent escalation (one ticket, one round of admin emails)
- Admin notification payloads and missing recipients
- Manual ticket resolution
"""

import uuid

import pytest
from django.utils import timezone

from recovery.exceptions import InvalidStateTransitionError
from recovery.models import EscalationTicket, Obligation, ObligationEvent
from recovery.notifications import ADMIN_ESCALATION
from recovery.services import EscalationManager
from recovery.state_machines import (
    AttemptOutcome,
    EscalationReason,
    ObligationEventType,
    ObligationStatus,
    TicketResolution,
)
from recovery.tests.factories import ChargeAttemptFactory, PaymentRecoverySessionFactory


@pytest.fixture
def exhausted_obligation(charge_failed_obligation):
    """Three declines recorded; the threshold is reached."""
    ChargeAttemptFactory(obligation=charge_failed_obligation, attempt_number=2)
    ChargeAttemptFactory(
        obligation=charge_failed_obligation,
        attempt_number=3,
        outcome=AttemptOutcome.GATEWAY_ERROR,
        decline_code="api_error",
    )
    ChargeAttemptFactory(obligation=charge_failed_obligation, attempt_number=4)
    return charge_failed_obligation


class TestAttemptSummary:
    def test_summary_counts(self, exhausted_obligation):
        summary = EscalationManager.attempt_summary(exhausted_obligation)

        assert summary["attempt_count"] == 4
        assert summary["decline_count"] == 3
        assert summary["gateway_error_count"] == 1
        assert summary["failed_session_count"] == 0
        assert [a["attempt_number"] for a in summary["attempts"]] == [1, 2, 3, 4]
        assert isinstance(summary["attempts"][0]["created_at"], str)

    def test_empty_history(self, obligation):
        summary = EscalationManager.attempt_summary(obligation)

        assert summary["attempt_count"] == 0
        assert summary["attempts"] == []


class TestEscalate:
    def test_opens_ticket(self, exhausted_obligation, admin_emails, dispatcher):
        ticket = EscalationManager.escalate(
            exhausted_obligation, EscalationReason.RETRIES_EXHAUSTED
        )

        obligation = Obligation.objects.get(pk=exhausted_obligation.pk)
        assert obligation.status == ObligationStatus.ESCALATED
        assert obligation.escalated_at is not None
        assert obligation.next_attempt_at is None

        assert ticket.reason == EscalationReason.RETRIES_EXHAUSTED
        assert ticket.attempt_count_at_escalation == 4
        assert ticket.resolution == TicketResolution.OPEN
        assert ticket.summary["decline_count"] == 3

        event = ObligationEvent.objects.get(
            obligation=obligation, event_type=ObligationEventType.ESCALATED
        )
        assert event.from_status == ObligationStatus.CHARGE_FAILED
        assert event.data["ticket_id"] == str(ticket.id)

    def test_notifies_every_admin(self, exhausted_obligation, admin_emails, dispatcher):
        ticket = EscalationManager.escalate(
            exhausted_obligation, EscalationReason.RETRIES_EXHAUSTED
        )

        sent = dispatcher.sent(ADMIN_ESCALATION)
        assert [recipient for recipient, _, _ in sent] == admin_emails
        payload = sent[0][2]
        assert payload["ticket_id"] == str(ticket.id)
        assert payload["amount"] == "150.00 USD"
        assert payload["reason"] == EscalationReason.RETRIES_EXHAUSTED
        assert payload["chef_email"] == exhausted_obligation.chef.email
        assert len(payload["attempts"]) == 4

    def test_escalate_is_idempotent(self, exhausted_obligation, admin_emails, dispatcher):
        first = EscalationManager.escalate(
            exhausted_obligation, EscalationReason.RETRIES_EXHAUSTED
        )
        second = EscalationManager.escalate(
            exhausted_obligation, EscalationReason.RECOVERY_WINDOW_ELAPSED
        )

        assert first.pk == second.pk
        assert EscalationTicket.objects.count() == 1
        assert len(dispatcher.sent(ADMIN_ESCALATION)) == 2
        assert ObligationEvent.objects.filter(
            event_type=ObligationEventType.ESCALATED
        ).count() == 1

    def test_escalate_from_requires_action_keeps_link_open(
        self, requires_action_obligation, open_session
    ):
        EscalationManager.escalate(
            requires_action_obligation, EscalationReason.RECOVERY_WINDOW_ELAPSED
        )

        open_session.refresh_from_db()
        assert open_session.is_active is True

    def test_cannot_escalate_succeeded(self, succeeded_obligation):
        with pytest.raises(InvalidStateTransitionError) as exc_info:
            EscalationManager.escalate(succeeded_obligation, EscalationReason.RETRIES_EXHAUSTED)

        assert exc_info.value.details["current_state"] == ObligationStatus.CHARGE_SUCCEEDED
        assert not EscalationTicket.objects.exists()

    def test_counts_failed_sessions(self, obligation):
        PaymentRecoverySessionFactory(obligation=obligation, expired_processed_at=timezone.now())

        ticket = EscalationManager.escalate(obligation, EscalationReason.RETRIES_EXHAUSTED)

        assert ticket.summary["failed_session_count"] == 1
        assert ticket.attempt_count_at_escalation == 0


class TestNotifyAdmins:
    def test_no_recipients(self, escalated_obligation, settings, dispatcher):
        settings.RECOVERY_ADMIN_EMAILS = []

        count = EscalationManager.notify_admins(escalated_obligation.escalation_ticket)

        assert count == 0
        assert dispatcher.messages == []

    def test_dispatcher_failure_is_not_raised(self, escalated_obligation, admin_emails, dispatcher):
        dispatcher.fail = True

        count = EscalationManager.notify_admins(escalated_obligation.escalation_ticket)

        assert count == 0


class TestResolve:
    def test_resolve_ticket(self, escalated_obligation):
        ticket = escalated_obligation.escalation_ticket

        result = EscalationManager.resolve(ticket.id, "Collected by bank transfer", actor="ops")

        assert result.success is True
        assert result.data.is_resolved is True
        ticket.refresh_from_db()
        assert ticket.resolution == TicketResolution.RESOLVED
        assert ticket.resolution_note == "Collected by bank transfer"

        obligation = Obligation.objects.get(pk=escalated_obligation.pk)
        assert obligation.status == ObligationStatus.ESCALATED

        event = ObligationEvent.objects.get(event_type=ObligationEventType.TICKET_RESOLVED)
        assert event.actor == "ops"

    def test_already_resolved(self, escalated_obligation):
        ticket = escalated_obligation.escalation_ticket
        EscalationManager.resolve(ticket.id, "first")

        result = EscalationManager.resolve(ticket.id, "second")

        assert result.success is False
        assert result.error_code == "TICKET_ALREADY_RESOLVED"
        ticket.refresh_from_db()
        assert ticket.resolution_note == "first"

    def test_unknown_ticket(self, db):
        result = EscalationManager.resolve(uuid.uuid4(), "note")

        assert result.success is False
        assert result.error_code == "ESCALATION_TICKET_NOT_FOUND"

    def test_list_open_tickets(self, escalated_obligation):
        ticket = escalated_obligation.escalation_ticket
        assert list(EscalationManager.list_open_tickets()) == [ticket]

        EscalationManager.resolve(ticket.id, "done")

        assert not EscalationManager.list_open_tickets().exists()
