"""
Tests for RecoverySessionIssuer.

Covers purpose selection, the gateway phase (no database writes), the
persist phase (supersede and store) and chef notification.
"""

from datetime import timedelta

from django.utils import timezone

from recovery.exceptions import GatewayUnavailableError
from recovery.models import ObligationEvent, PaymentRecoverySession
from recovery.notifications import CHEF_AUTHENTICATION_REQUIRED, CHEF_PAYMENT_LINK
from recovery.services import RecoverySessionIssuer
from recovery.state_machines import FailureDisposition, ObligationEventType, SessionPurpose
from recovery.tests.factories import (
    ChargeAttemptFactory,
    ObligationFactory,
    PaymentRecoverySessionFactory,
)


class TestPurposeFor:
    def test_authentication_with_reference(self):
        purpose = RecoverySessionIssuer.purpose_for(
            FailureDisposition.NEEDS_AUTHENTICATION, "pi_auth"
        )
        assert purpose == SessionPurpose.AUTHENTICATE

    def test_authentication_without_reference_collects_instrument(self):
        purpose = RecoverySessionIssuer.purpose_for(FailureDisposition.NEEDS_AUTHENTICATION)
        assert purpose == SessionPurpose.COLLECT_INSTRUMENT

    def test_hard_decline_collects_instrument(self):
        purpose = RecoverySessionIssuer.purpose_for(FailureDisposition.HARD_DECLINE, "pi_x")
        assert purpose == SessionPurpose.COLLECT_INSTRUMENT

    def test_no_instrument(self):
        purpose = RecoverySessionIssuer.purpose_for(FailureDisposition.NO_INSTRUMENT)
        assert purpose == SessionPurpose.COLLECT_INSTRUMENT


class TestOpenLink:
    def test_authenticate_carries_reference(self, obligation, gateway):
        issued = RecoverySessionIssuer.open_link(
            obligation, FailureDisposition.NEEDS_AUTHENTICATION, "pi_auth_1"
        )

        assert issued.opened is True
        assert issued.purpose == SessionPurpose.AUTHENTICATE
        assert issued.authorization_reference == "pi_auth_1"
        assert issued.link.gateway_reference == "pi_auth_1"
        assert gateway.sessions[0]["auth_ref"] == "pi_auth_1"
        assert gateway.sessions[0]["token"] == issued.token

    def test_collect_instrument_drops_reference(self, obligation, gateway):
        issued = RecoverySessionIssuer.open_link(
            obligation, FailureDisposition.HARD_DECLINE, "pi_declined"
        )

        assert issued.purpose == SessionPurpose.COLLECT_INSTRUMENT
        assert issued.authorization_reference == ""
        assert gateway.sessions[0]["auth_ref"] is None
        assert issued.link.url == f"https://pay.example.com/recovery/{issued.token}"

    def test_expiry_from_policy(self, obligation, settings):
        settings.RECOVERY_SESSION_TTL_HOURS = 6
        before = timezone.now()

        issued = RecoverySessionIssuer.open_link(obligation, FailureDisposition.NO_INSTRUMENT)

        assert before + timedelta(hours=6) <= issued.expires_at
        assert issued.expires_at <= timezone.now() + timedelta(hours=6)

    def test_expiry_clamped_to_deadline(self, db, gateway):
        deadline = timezone.now() + timedelta(hours=1)
        obligation = ObligationFactory(recovery_deadline=deadline)

        issued = RecoverySessionIssuer.open_link(
            obligation, FailureDisposition.NEEDS_AUTHENTICATION, "pi_auth_1"
        )

        assert issued.expires_at == deadline
        assert gateway.sessions[0]["expires_at"] == deadline

    def test_gateway_failure_captured(self, obligation, gateway):
        gateway.session_error = GatewayUnavailableError("down")

        issued = RecoverySessionIssuer.open_link(obligation, FailureDisposition.HARD_DECLINE)

        assert issued.opened is False
        assert issued.error is gateway.session_error
        assert PaymentRecoverySession.objects.count() == 0

    def test_tokens_are_unique(self, obligation):
        first = RecoverySessionIssuer.open_link(obligation, FailureDisposition.NO_INSTRUMENT)
        second = RecoverySessionIssuer.open_link(obligation, FailureDisposition.NO_INSTRUMENT)

        assert first.token != second.token


class TestPersist:
    def test_stores_session_and_event(self, charge_failed_obligation):
        attempt = charge_failed_obligation.attempts.get()
        issued = RecoverySessionIssuer.open_link(
            charge_failed_obligation, FailureDisposition.HARD_DECLINE
        )

        session = RecoverySessionIssuer.persist(charge_failed_obligation, attempt, issued)

        session = PaymentRecoverySession.objects.get(pk=session.pk)
        assert session.is_active is True
        assert session.triggering_attempt == attempt
        assert session.token == issued.token
        assert session.link_url == issued.link.url

        event = ObligationEvent.objects.get(
            obligation=charge_failed_obligation,
            event_type=ObligationEventType.SESSION_ISSUED,
        )
        assert event.data["session_id"] == str(session.id)
        assert event.data["superseded_sessions"] == 0

    def test_supersedes_open_session(self, requires_action_obligation, open_session):
        issued = RecoverySessionIssuer.open_link(
            requires_action_obligation, FailureDisposition.HARD_DECLINE
        )

        session = RecoverySessionIssuer.persist(requires_action_obligation, None, issued)

        open_session.refresh_from_db()
        assert open_session.invalidated_at is not None
        assert open_session.ended_unpaid is False
        assert list(
            PaymentRecoverySession.objects.filter(obligation=requires_action_obligation).open()
        ) == [session]

    def test_failed_link_still_invalidates(self, requires_action_obligation, open_session, gateway):
        gateway.session_error = GatewayUnavailableError("down")
        issued = RecoverySessionIssuer.open_link(
            requires_action_obligation, FailureDisposition.HARD_DECLINE
        )

        assert RecoverySessionIssuer.persist(requires_action_obligation, None, issued) is None

        open_session.refresh_from_db()
        assert open_session.invalidated_at is not None
        assert not ObligationEvent.objects.filter(
            event_type=ObligationEventType.SESSION_ISSUED
        ).exists()


class TestIssue:
    def test_collect_instrument_notifies_chef(self, charge_failed_obligation, dispatcher):
        attempt = ChargeAttemptFactory(
            obligation=charge_failed_obligation,
            attempt_number=2,
            disposition=FailureDisposition.HARD_DECLINE,
            decline_code="expired_card",
            failure_message="Your card has expired.",
        )

        session = RecoverySessionIssuer.issue(charge_failed_obligation, attempt)

        assert session.purpose == SessionPurpose.COLLECT_INSTRUMENT
        [(recipient, template_id, payload)] = dispatcher.messages
        assert recipient == charge_failed_obligation.chef.email
        assert template_id == CHEF_PAYMENT_LINK
        assert payload["link"] == session.link_url
        assert payload["amount"] == "150.00 USD"
        assert payload["reason"] == "Your card has expired."
        assert payload["chef_name"] == "Casey Chef"

    def test_authentication_notifies_with_auth_template(self, obligation, dispatcher):
        attempt = ChargeAttemptFactory(
            obligation=obligation,
            attempt_number=1,
            disposition=FailureDisposition.NEEDS_AUTHENTICATION,
            processor_reference="pi_3ds",
        )

        session = RecoverySessionIssuer.issue(obligation, attempt)

        assert session.purpose == SessionPurpose.AUTHENTICATE
        assert session.authorization_reference == "pi_3ds"
        assert dispatcher.sent(CHEF_AUTHENTICATION_REQUIRED)

    def test_notification_failure_keeps_session(self, obligation, dispatcher):
        dispatcher.fail = True
        attempt = ChargeAttemptFactory(
            obligation=obligation,
            attempt_number=1,
            disposition=FailureDisposition.HARD_DECLINE,
        )

        session = RecoverySessionIssuer.issue(obligation, attempt)

        assert PaymentRecoverySession.objects.get(pk=session.pk).is_active is True

    def test_gateway_failure_returns_none(self, obligation, gateway, dispatcher):
        gateway.session_error = GatewayUnavailableError("down")
        attempt = ChargeAttemptFactory(
            obligation=obligation,
            attempt_number=1,
            disposition=FailureDisposition.HARD_DECLINE,
        )

        assert RecoverySessionIssuer.issue(obligation, attempt) is None
        assert dispatcher.messages == []


class TestQueries:
    def test_active_session(self, requires_action_obligation, open_session):
        assert RecoverySessionIssuer.active_session(requires_action_obligation) == open_session

    def test_no_active_session_once_lapsed(self, obligation):
        PaymentRecoverySessionFactory(
            obligation=obligation,
            expires_at=timezone.now() - timedelta(minutes=1),
        )
        assert RecoverySessionIssuer.active_session(obligation) is None

    def test_list_active_sessions(self, open_session, obligation):
        PaymentRecoverySessionFactory(obligation=obligation, consumed=True)

        assert list(RecoverySessionIssuer.list_active_sessions()) == [open_session]
