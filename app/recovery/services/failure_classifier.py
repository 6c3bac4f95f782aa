"""
Failure classifier: maps a raw gateway outcome to a recovery policy.

Processor-specific decline codes stop here. Everything downstream works
with the four FailureDisposition values, so the state machine does not
change when a new decline code appears; the code is added to one of the
sets below (unknown codes default to RETRY_LATER).
"""

from __future__ import annotations

from core.services import BaseService

from recovery.exceptions import ObligationValidationError
from recovery.state_machines import AttemptOutcome, FailureDisposition

# Card cannot be charged again without a new instrument
HARD_DECLINE_CODES = frozenset(
    {
        "account_closed",
        "card_not_supported",
        "do_not_try_again",
        "expired_card",
        "fraudulent",
        "incorrect_number",
        "invalid_account",
        "lost_card",
        "merchant_blacklist",
        "new_account_information_available",
        "pickup_card",
        "restricted_card",
        "revocation_of_all_authorizations",
        "revocation_of_authorization",
        "security_violation",
        "stolen_card",
        "stop_payment_order",
        "transaction_not_allowed",
    }
)

# Issuer wants the cardholder present
AUTHENTICATION_CODES = frozenset(
    {
        "authentication_required",
        "authentication_not_handled",
    }
)


class FailureClassifier(BaseService):
    """
    Pure mapping from (outcome, instrument present, decline code) to a
    FailureDisposition.

    Examples:
        FailureClassifier.classify(AttemptOutcome.DECLINED, decline_code="insufficient_funds")
        # -> RETRY_LATER

        FailureClassifier.classify(AttemptOutcome.DECLINED, decline_code="stolen_card")
        # -> HARD_DECLINE

        FailureClassifier.classify(AttemptOutcome.SUCCEEDED)
        # -> None
    """

    @classmethod
    def classify(
        cls,
        outcome: str,
        instrument_present: bool = True,
        decline_code: str | None = None,
    ) -> str | None:
        """
        Classify one attempt outcome.

        Args:
            outcome: AttemptOutcome value
            instrument_present: Whether the obligation had a stored method
            decline_code: Processor decline code, if any

        Returns:
            FailureDisposition value, or None for a successful charge

        Raises:
            ObligationValidationError: outcome is not an AttemptOutcome
        """
        if outcome not in AttemptOutcome.values:
            raise ObligationValidationError(
                f"Unknown attempt outcome '{outcome}'",
                details={"outcome": outcome},
            )

        if outcome == AttemptOutcome.SUCCEEDED:
            return None
        if outcome == AttemptOutcome.NO_PAYMENT_METHOD or not instrument_present:
            return FailureDisposition.NO_INSTRUMENT
        if outcome == AttemptOutcome.REQUIRES_ACTION:
            return FailureDisposition.NEEDS_AUTHENTICATION
        if outcome == AttemptOutcome.GATEWAY_ERROR:
            return FailureDisposition.RETRY_LATER

        code = (decline_code or "").lower()
        if code in AUTHENTICATION_CODES:
            return FailureDisposition.NEEDS_AUTHENTICATION
        if code in HARD_DECLINE_CODES:
            return FailureDisposition.HARD_DECLINE
        return FailureDisposition.RETRY_LATER

    @staticmethod
    def opens_session(disposition: str | None) -> bool:
        return disposition in FailureDisposition.session_dispositions()
