"""
Recovery policy read from Django settings.

All tunables are defined in config/settings.py (via django-environ) and
resolved at call time, so override_settings in tests and a settings change
on redeploy both take effect without import-order concerns.

Usage:
    from recovery.conf import get_policy

    policy = get_policy()
    if failures >= policy.max_decline_attempts:
        ...
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from django.conf import settings


@dataclass(frozen=True)
class RecoveryPolicy:
    """
    Limits and timings for the recovery engine.

    Attributes:
        max_decline_attempts: Business failures before escalation
        max_gateway_errors: Consecutive gateway errors before escalation
        backoff_base: Delay after the first failed attempt
        backoff_factor: Multiplier applied per subsequent attempt
        backoff_max: Upper bound for any single delay
        recovery_window: Time from creation after which escalation is forced
        session_ttl: Lifetime of a recovery link
        lease_ttl_seconds: TTL of the per-obligation lease
        admin_emails: Escalation recipients
        frontend_url: Base URL for chef-facing recovery pages
    """

    max_decline_attempts: int = 3
    max_gateway_errors: int = 5
    backoff_base: timedelta = timedelta(minutes=60)
    backoff_factor: int = 4
    backoff_max: timedelta = timedelta(hours=96)
    recovery_window: timedelta = timedelta(days=14)
    session_ttl: timedelta = timedelta(hours=24)
    lease_ttl_seconds: int = 120
    admin_emails: tuple[str, ...] = ()
    frontend_url: str = "http://localhost:5173"

    @classmethod
    def from_settings(cls) -> RecoveryPolicy:
        return cls(
            max_decline_attempts=getattr(settings, "RECOVERY_MAX_DECLINE_ATTEMPTS", 3),
            max_gateway_errors=getattr(settings, "RECOVERY_MAX_GATEWAY_ERRORS", 5),
            backoff_base=timedelta(
                minutes=getattr(settings, "RECOVERY_BACKOFF_BASE_MINUTES", 60)
            ),
            backoff_factor=getattr(settings, "RECOVERY_BACKOFF_FACTOR", 4),
            backoff_max=timedelta(
                hours=getattr(settings, "RECOVERY_BACKOFF_MAX_HOURS", 96)
            ),
            recovery_window=timedelta(days=getattr(settings, "RECOVERY_WINDOW_DAYS", 14)),
            session_ttl=timedelta(
                hours=getattr(settings, "RECOVERY_SESSION_TTL_HOURS", 24)
            ),
            lease_ttl_seconds=getattr(settings, "RECOVERY_LEASE_TTL_SECONDS", 120),
            admin_emails=tuple(getattr(settings, "RECOVERY_ADMIN_EMAILS", ())),
            frontend_url=getattr(
                settings, "RECOVERY_FRONTEND_URL", "http://localhost:5173"
            ).rstrip("/"),
        )


def get_policy() -> RecoveryPolicy:
    """Return the policy for the current settings."""
    return RecoveryPolicy.from_settings()
