"""
Tests for FailureClassifier.

The classifier is pure: no database, no gateway.
"""

import pytest

from recovery.exceptions import ObligationValidationError
from recovery.services import FailureClassifier
from recovery.state_machines import AttemptOutcome, FailureDisposition


class TestClassify:
    def test_success_has_no_disposition(self):
        assert FailureClassifier.classify(AttemptOutcome.SUCCEEDED) is None

    @pytest.mark.parametrize(
        "decline_code",
        ["insufficient_funds", "generic_decline", "do_not_honor", "card_velocity_exceeded", "", None],
    )
    def test_soft_declines_retry_later(self, decline_code):
        disposition = FailureClassifier.classify(AttemptOutcome.DECLINED, decline_code=decline_code)
        assert disposition == FailureDisposition.RETRY_LATER

    @pytest.mark.parametrize(
        "decline_code",
        ["stolen_card", "lost_card", "expired_card", "fraudulent", "do_not_try_again"],
    )
    def test_hard_declines(self, decline_code):
        disposition = FailureClassifier.classify(AttemptOutcome.DECLINED, decline_code=decline_code)
        assert disposition == FailureDisposition.HARD_DECLINE

    def test_decline_code_case_insensitive(self):
        disposition = FailureClassifier.classify(AttemptOutcome.DECLINED, decline_code="Stolen_Card")
        assert disposition == FailureDisposition.HARD_DECLINE

    def test_unknown_decline_code_retries(self):
        disposition = FailureClassifier.classify(
            AttemptOutcome.DECLINED, decline_code="brand_new_issuer_code"
        )
        assert disposition == FailureDisposition.RETRY_LATER

    def test_requires_action_needs_authentication(self):
        disposition = FailureClassifier.classify(AttemptOutcome.REQUIRES_ACTION)
        assert disposition == FailureDisposition.NEEDS_AUTHENTICATION

    def test_authentication_decline_code(self):
        disposition = FailureClassifier.classify(
            AttemptOutcome.DECLINED, decline_code="authentication_required"
        )
        assert disposition == FailureDisposition.NEEDS_AUTHENTICATION

    def test_no_payment_method(self):
        disposition = FailureClassifier.classify(AttemptOutcome.NO_PAYMENT_METHOD)
        assert disposition == FailureDisposition.NO_INSTRUMENT

    def test_missing_instrument_wins(self):
        disposition = FailureClassifier.classify(
            AttemptOutcome.DECLINED,
            instrument_present=False,
            decline_code="insufficient_funds",
        )
        assert disposition == FailureDisposition.NO_INSTRUMENT

    def test_gateway_error_retries(self):
        disposition = FailureClassifier.classify(AttemptOutcome.GATEWAY_ERROR, decline_code="stolen_card")
        assert disposition == FailureDisposition.RETRY_LATER

    def test_unknown_outcome_rejected(self):
        with pytest.raises(ObligationValidationError) as exc_info:
            FailureClassifier.classify("exploded")

        assert exc_info.value.details == {"outcome": "exploded"}


class TestOpensSession:
    @pytest.mark.parametrize(
        ("disposition", "expected"),
        [
            (FailureDisposition.NEEDS_AUTHENTICATION, True),
            (FailureDisposition.HARD_DECLINE, True),
            (FailureDisposition.NO_INSTRUMENT, True),
            (FailureDisposition.RETRY_LATER, False),
            (None, False),
        ],
    )
    def test_opens_session(self, disposition, expected):
        assert FailureClassifier.opens_session(disposition) is expected
