"""
Retry accountant: decides between another automatic attempt and escalation.

Every count is derived from the immutable records (charge attempts and
recovery sessions). No mutable counter is stored on the obligation, so the
numbers cannot drift from the audit log.

Counting rules:
    Business failures = attempts with outcome declined
                      + recovery sessions that ended unpaid (expired or failed)
    gateway_error, no_payment_method and requires_action attempts are not
    business failures. Consecutive gateway errors have their own cap.

Backoff:
    delay(n) = min(base * factor ** (n - 1), max)

    With the defaults (60 min, x4, 96 h): 1h, 4h, 16h, 64h, 96h, 96h, ...
    Non-decreasing, no jitter. The next attempt time is clamped to the
    recovery deadline; at the deadline escalation is forced.
"""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING

from django.utils import timezone

from core.services import BaseService

from recovery.conf import get_policy
from recovery.models import ChargeAttempt, PaymentRecoverySession
from recovery.state_machines import AttemptOutcome, EscalationReason

if TYPE_CHECKING:
    from datetime import datetime

    from recovery.models import Obligation

# Exponent cap; far beyond any realistic backoff_max
MAX_BACKOFF_EXPONENT = 32


class RetryAccountant(BaseService):
    """
    Failure accounting and backoff policy for obligations.

    Usage:
        reason = RetryAccountant.escalation_reason(obligation)
        if reason:
            EscalationManager.escalate(obligation, reason)
        else:
            retry_at = RetryAccountant.next_attempt_at(obligation, attempt_number)
    """

    # =========================================================================
    # Counts
    # =========================================================================

    @classmethod
    def decline_count(cls, obligation: Obligation) -> int:
        return ChargeAttempt.objects.filter(
            obligation=obligation,
            outcome=AttemptOutcome.DECLINED,
        ).count()

    @classmethod
    def failed_session_count(cls, obligation: Obligation) -> int:
        return PaymentRecoverySession.objects.filter(obligation=obligation).ended_unpaid().count()

    @classmethod
    def failure_count(cls, obligation: Obligation) -> int:
        """Business failures counted against RECOVERY_MAX_DECLINE_ATTEMPTS."""
        return cls.decline_count(obligation) + cls.failed_session_count(obligation)

    @classmethod
    def attempt_count(cls, obligation: Obligation) -> int:
        return ChargeAttempt.objects.filter(obligation=obligation).count()

    @classmethod
    def consecutive_gateway_errors(cls, obligation: Obligation) -> int:
        """Length of the trailing run of gateway_error attempts."""
        outcomes = ChargeAttempt.objects.filter(obligation=obligation).order_by(
            "-attempt_number"
        ).values_list("outcome", flat=True)

        count = 0
        for outcome in outcomes:
            if outcome != AttemptOutcome.GATEWAY_ERROR:
                break
            count += 1
        return count

    # =========================================================================
    # Escalation Decision
    # =========================================================================

    @classmethod
    def window_elapsed(cls, obligation: Obligation, now: datetime | None = None) -> bool:
        return obligation.deadline_passed(now)

    @classmethod
    def escalation_reason(
        cls,
        obligation: Obligation,
        now: datetime | None = None,
        pending_failures: int = 0,
    ) -> str | None:
        """
        Name the limit that forces escalation, or None if recovery may go on.

        Precedence: recovery window, then the gateway error cap, then the
        business failure threshold.

        Args:
            pending_failures: Business failures not recorded yet, e.g. a
                decline about to be written
        """
        policy = get_policy()

        if cls.window_elapsed(obligation, now):
            return EscalationReason.RECOVERY_WINDOW_ELAPSED
        if cls.consecutive_gateway_errors(obligation) >= policy.max_gateway_errors:
            return EscalationReason.GATEWAY_UNAVAILABLE
        if cls.failure_count(obligation) + pending_failures >= policy.max_decline_attempts:
            return EscalationReason.RETRIES_EXHAUSTED
        return None

    @classmethod
    def should_escalate(cls, obligation: Obligation, now: datetime | None = None) -> bool:
        return cls.escalation_reason(obligation, now) is not None

    # =========================================================================
    # Backoff
    # =========================================================================

    @classmethod
    def next_backoff(cls, attempt_number: int) -> timedelta:
        """
        Delay to wait after the given attempt before trying again.

        Args:
            attempt_number: 1-based number of the attempt that just failed
        """
        policy = get_policy()
        exponent = min(max(attempt_number, 1) - 1, MAX_BACKOFF_EXPONENT)
        seconds = policy.backoff_base.total_seconds() * (policy.backoff_factor**exponent)
        if seconds >= policy.backoff_max.total_seconds():
            return policy.backoff_max
        return timedelta(seconds=seconds)

    @classmethod
    def next_attempt_at(
        cls,
        obligation: Obligation,
        attempt_number: int,
        now: datetime | None = None,
    ) -> datetime:
        """Next eligible attempt time, never later than the recovery deadline."""
        now = now or timezone.now()
        retry_at = now + cls.next_backoff(attempt_number)
        if obligation.recovery_deadline is not None:
            retry_at = min(retry_at, obligation.recovery_deadline)
        return retry_at
