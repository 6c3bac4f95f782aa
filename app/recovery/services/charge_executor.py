"""
Charge attempt executor: one off-session charge try per call.

The executor never changes obligation status. It calls the gateway, turns
infrastructure failures into gateway_error outcomes, classifies the result
and writes exactly one ChargeAttempt with the next sequential number.

The work is split in two so the controller can keep the gateway call
outside any database transaction:

    executed = ChargeAttemptExecutor.execute(obligation)   # network only
    with transaction.atomic():
        attempt = ChargeAttemptExecutor.record(obligation, executed)
        ...  # status transition in the same transaction

attempt() combines both for callers that do not need the split.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from django.db.models import Max

from core.services import BaseService

from recovery.adapters import IdempotencyKeyGenerator, get_charge_gateway
from recovery.exceptions import GatewayError, InvalidStateTransitionError
from recovery.models import ChargeAttempt
from recovery.protocols import GatewayCharge
from recovery.services.failure_classifier import FailureClassifier
from recovery.state_machines import AttemptOutcome, ObligationStatus

if TYPE_CHECKING:
    from recovery.models import Obligation

CHARGE_OPERATION = "obligation_charge"


@dataclass
class ExecutedCharge:
    """
    Gateway result for one attempt, not yet persisted.

    Attributes:
        attempt_number: Number the attempt will be recorded under
        idempotency_key: Key sent with the charge
        charge: Business outcome from the gateway
        disposition: Classifier verdict (None for success)
    """

    attempt_number: int
    idempotency_key: str
    charge: GatewayCharge
    disposition: str | None

    @property
    def outcome(self) -> str:
        return self.charge.outcome

    @property
    def succeeded(self) -> bool:
        return self.charge.outcome == AttemptOutcome.SUCCEEDED


class ChargeAttemptExecutor(BaseService):
    """Executes and records off-session charge attempts."""

    @classmethod
    def next_attempt_number(cls, obligation: Obligation) -> int:
        current = ChargeAttempt.objects.filter(obligation=obligation).aggregate(
            highest=Max("attempt_number")
        )["highest"]
        return (current or 0) + 1

    @classmethod
    def execute(cls, obligation: Obligation) -> ExecutedCharge:
        """
        Call the gateway for the obligation's next attempt.

        Must run under the obligation lease so the attempt number read here
        is still free when the attempt is recorded.

        Raises:
            InvalidStateTransitionError: obligation is not pending or charge_failed
        """
        if obligation.status not in ObligationStatus.chargeable_states():
            raise InvalidStateTransitionError(
                f"Cannot charge obligation in state '{obligation.status}'",
                details={
                    "obligation_id": str(obligation.id),
                    "current_state": obligation.status,
                    "transition": "charge_attempt",
                },
            )

        logger = cls.get_logger()
        attempt_number = cls.next_attempt_number(obligation)
        idempotency_key = IdempotencyKeyGenerator.generate(
            CHARGE_OPERATION, obligation.id, attempt_number
        )
        log_context = {
            "obligation_id": str(obligation.id),
            "attempt_number": attempt_number,
        }

        if not obligation.has_payment_method:
            charge = GatewayCharge(
                outcome=AttemptOutcome.NO_PAYMENT_METHOD,
                failure_message="No stored payment method on file",
            )
        else:
            try:
                charge = get_charge_gateway().charge(
                    obligation.id,
                    obligation.amount_cents,
                    obligation.currency,
                    obligation.payment_method_ref,
                    idempotency_key=idempotency_key,
                    customer_ref=obligation.customer_ref,
                    metadata={"kind": obligation.kind},
                )
            except GatewayError as e:
                logger.error(
                    "Gateway error during off-session charge",
                    extra={**log_context, "error_code": e.error_code},
                )
                charge = GatewayCharge(
                    outcome=AttemptOutcome.GATEWAY_ERROR,
                    decline_code=e.processor_code or e.error_code,
                    failure_message=e.message,
                )

        disposition = FailureClassifier.classify(
            charge.outcome,
            instrument_present=obligation.has_payment_method,
            decline_code=charge.decline_code,
        )

        logger.info(
            "Charge attempt executed",
            extra={**log_context, "outcome": charge.outcome, "disposition": disposition},
        )

        return ExecutedCharge(
            attempt_number=attempt_number,
            idempotency_key=idempotency_key,
            charge=charge,
            disposition=disposition,
        )

    @classmethod
    def record(cls, obligation: Obligation, executed: ExecutedCharge) -> ChargeAttempt:
        """Persist the attempt. Call inside the caller's transaction."""
        return ChargeAttempt.objects.create(
            obligation=obligation,
            attempt_number=executed.attempt_number,
            outcome=executed.charge.outcome,
            disposition=executed.disposition,
            processor_reference=executed.charge.processor_reference or "",
            decline_code=executed.charge.decline_code or "",
            failure_message=executed.charge.failure_message or "",
            idempotency_key=executed.idempotency_key,
        )

    @classmethod
    def attempt(cls, obligation: Obligation) -> ChargeAttempt:
        """Execute and record one attempt."""
        executed = cls.execute(obligation)
        with cls.atomic():
            return cls.record(obligation, executed)
