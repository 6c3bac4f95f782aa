"""
Tests for ChargeAttemptExecutor.

The gateway is the FakeChargeGateway from recovery.conftest. Declines are
results, infrastructure failures are raised GatewayErrors.
"""

import pytest

from recovery.adapters import IdempotencyKeyGenerator
from recovery.exceptions import GatewayTimeoutError, GatewayUnavailableError, InvalidStateTransitionError
from recovery.models import ChargeAttempt, Obligation
from recovery.services import ChargeAttemptExecutor
from recovery.state_machines import AttemptOutcome, FailureDisposition, ObligationStatus
from recovery.tests.fakes import declined, requires_action, succeeded


class TestExecute:
    def test_successful_charge(self, obligation, gateway):
        gateway.queue(succeeded("pi_ok_1"))

        executed = ChargeAttemptExecutor.execute(obligation)

        assert executed.succeeded is True
        assert executed.attempt_number == 1
        assert executed.disposition is None
        assert executed.charge.processor_reference == "pi_ok_1"
        assert gateway.charges == [
            {
                "obligation_id": obligation.id,
                "amount_cents": 15000,
                "currency": "usd",
                "instrument_ref": obligation.payment_method_ref,
                "idempotency_key": executed.idempotency_key,
                "customer_ref": obligation.customer_ref,
            }
        ]

    def test_execute_writes_nothing(self, obligation, gateway):
        gateway.queue(declined())

        ChargeAttemptExecutor.execute(obligation)

        assert ChargeAttempt.objects.count() == 0
        assert Obligation.objects.get(pk=obligation.pk).status == ObligationStatus.PENDING

    def test_next_number_follows_existing_attempts(self, charge_failed_obligation, gateway):
        executed = ChargeAttemptExecutor.execute(charge_failed_obligation)

        assert executed.attempt_number == 2
        assert executed.idempotency_key == IdempotencyKeyGenerator.generate(
            "obligation_charge", charge_failed_obligation.id, 2
        )

    def test_soft_decline(self, obligation, gateway):
        gateway.queue(declined("insufficient_funds"))

        executed = ChargeAttemptExecutor.execute(obligation)

        assert executed.outcome == AttemptOutcome.DECLINED
        assert executed.disposition == FailureDisposition.RETRY_LATER

    def test_hard_decline(self, obligation, gateway):
        gateway.queue(declined("stolen_card"))

        executed = ChargeAttemptExecutor.execute(obligation)

        assert executed.disposition == FailureDisposition.HARD_DECLINE

    def test_authentication_required(self, obligation, gateway):
        gateway.queue(requires_action("pi_auth_9"))

        executed = ChargeAttemptExecutor.execute(obligation)

        assert executed.outcome == AttemptOutcome.REQUIRES_ACTION
        assert executed.disposition == FailureDisposition.NEEDS_AUTHENTICATION
        assert executed.charge.processor_reference == "pi_auth_9"

    def test_no_payment_method_skips_gateway(self, obligation_without_card, gateway):
        executed = ChargeAttemptExecutor.execute(obligation_without_card)

        assert gateway.charges == []
        assert executed.outcome == AttemptOutcome.NO_PAYMENT_METHOD
        assert executed.disposition == FailureDisposition.NO_INSTRUMENT

    def test_gateway_error_becomes_outcome(self, obligation, gateway):
        gateway.queue(GatewayUnavailableError("down", processor_code="api_connection_error"))

        executed = ChargeAttemptExecutor.execute(obligation)

        assert executed.outcome == AttemptOutcome.GATEWAY_ERROR
        assert executed.disposition == FailureDisposition.RETRY_LATER
        assert executed.charge.decline_code == "api_connection_error"
        assert executed.charge.failure_message == "down"

    def test_gateway_error_without_processor_code(self, obligation, gateway):
        gateway.queue(GatewayTimeoutError("slow"))

        executed = ChargeAttemptExecutor.execute(obligation)

        assert executed.charge.decline_code == "GATEWAY_TIMEOUT"

    @pytest.mark.parametrize(
        "fixture_name",
        ["requires_action_obligation", "escalated_obligation", "succeeded_obligation"],
    )
    def test_rejects_non_chargeable_states(self, request, gateway, fixture_name):
        obligation = request.getfixturevalue(fixture_name)

        with pytest.raises(InvalidStateTransitionError) as exc_info:
            ChargeAttemptExecutor.execute(obligation)

        assert exc_info.value.details["transition"] == "charge_attempt"
        assert gateway.charges == []


class TestRecord:
    def test_record_persists_attempt(self, obligation, gateway):
        gateway.queue(declined("do_not_honor", reference="pi_dnh"))
        executed = ChargeAttemptExecutor.execute(obligation)

        attempt = ChargeAttemptExecutor.record(obligation, executed)

        attempt = ChargeAttempt.objects.get(pk=attempt.pk)
        assert attempt.attempt_number == 1
        assert attempt.outcome == AttemptOutcome.DECLINED
        assert attempt.disposition == FailureDisposition.RETRY_LATER
        assert attempt.processor_reference == "pi_dnh"
        assert attempt.decline_code == "do_not_honor"
        assert attempt.idempotency_key == executed.idempotency_key

    def test_attempt_numbers_are_sequential(self, obligation, gateway):
        gateway.queue(declined(), declined(), succeeded())

        numbers = [ChargeAttemptExecutor.attempt(obligation).attempt_number for _ in range(3)]

        assert numbers == [1, 2, 3]
        assert Obligation.objects.get(pk=obligation.pk).status == ObligationStatus.PENDING

    def test_same_attempt_number_reuses_key(self, obligation, gateway):
        first = ChargeAttemptExecutor.execute(obligation)
        second = ChargeAttemptExecutor.execute(obligation)

        assert first.idempotency_key == second.idempotency_key
        assert gateway.charges[0]["idempotency_key"] == gateway.charges[1]["idempotency_key"]
