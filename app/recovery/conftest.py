"""
Pytest fixtures for recovery tests.

Shared by recovery/tests, recovery/services/tests and recovery/adapters/tests.

Autouse fixtures keep tests off the network: the lease store is an
in-memory fake, the charge gateway is a scriptable fake and notifications
are recorded instead of queued. Obligations are provided in each status.

Usage:
    def test_retry(charge_failed_obligation, gateway):
        gateway.queue(succeeded())
        ...
"""

from datetime import timedelta

import pytest
from django.utils import timezone

from recovery.adapters import set_charge_gateway
from recovery.notifications import set_dispatcher
from recovery.state_machines import (
    EscalationReason,
    FailureDisposition,
    ObligationStatus,
    SessionPurpose,
)
from recovery.tests.factories import (
    ChargeAttemptFactory,
    EscalationTicketFactory,
    ObligationFactory,
    PaymentRecoverySessionFactory,
    UserFactory,
)
from recovery.tests.fakes import FakeChargeGateway, FakeRedis, RecordingDispatcher


# =============================================================================
# Collaborator Fakes
# =============================================================================


@pytest.fixture(autouse=True)
def fake_redis(mocker):
    """In-memory Redis behind recovery.locks."""
    redis = FakeRedis()
    mocker.patch("recovery.locks.get_redis_connection", return_value=redis)
    return redis


@pytest.fixture(autouse=True)
def gateway():
    fake = FakeChargeGateway()
    set_charge_gateway(fake)
    yield fake
    set_charge_gateway(None)


@pytest.fixture(autouse=True)
def dispatcher():
    recording = RecordingDispatcher()
    set_dispatcher(recording)
    yield recording
    set_dispatcher(None)


@pytest.fixture
def admin_emails(settings):
    settings.RECOVERY_ADMIN_EMAILS = ["ops@example.com", "finance@example.com"]
    return settings.RECOVERY_ADMIN_EMAILS


# =============================================================================
# Obligation Fixtures
# =============================================================================


@pytest.fixture
def chef(db):
    return UserFactory()


@pytest.fixture
def obligation(db, chef):
    """Pending obligation with a stored card."""
    return ObligationFactory(chef=chef)


@pytest.fixture
def obligation_without_card(db, chef):
    return ObligationFactory(chef=chef, payment_method_ref=None, customer_ref=None)


@pytest.fixture
def charge_failed_obligation(db, chef):
    """One soft decline recorded, retry due now."""
    obligation = ObligationFactory(
        chef=chef,
        status=ObligationStatus.CHARGE_FAILED,
        next_attempt_at=timezone.now() - timedelta(minutes=1),
    )
    ChargeAttemptFactory(obligation=obligation, attempt_number=1)
    return obligation


@pytest.fixture
def requires_action_obligation(db, chef):
    """Hard decline recorded with an open collect-instrument link."""
    obligation = ObligationFactory(chef=chef, status=ObligationStatus.REQUIRES_ACTION)
    attempt = ChargeAttemptFactory(
        obligation=obligation,
        attempt_number=1,
        disposition=FailureDisposition.HARD_DECLINE,
        decline_code="stolen_card",
    )
    PaymentRecoverySessionFactory(
        obligation=obligation,
        triggering_attempt=attempt,
        purpose=SessionPurpose.COLLECT_INSTRUMENT,
    )
    return obligation


@pytest.fixture
def open_session(requires_action_obligation):
    return requires_action_obligation.recovery_sessions.get()


@pytest.fixture
def escalated_obligation(db, chef):
    obligation = ObligationFactory(
        chef=chef,
        status=ObligationStatus.ESCALATED,
        escalated_at=timezone.now(),
    )
    EscalationTicketFactory(
        obligation=obligation,
        reason=EscalationReason.RETRIES_EXHAUSTED,
        attempt_count_at_escalation=3,
    )
    return obligation


@pytest.fixture
def succeeded_obligation(db, chef):
    return ObligationFactory(
        chef=chef,
        status=ObligationStatus.CHARGE_SUCCEEDED,
        resolved_at=timezone.now(),
    )
