"""
Recovery session issuer: on-session payment links for obligations.

Two kinds of link:
- authenticate: the processor asked for 3DS/SCA. The session carries the
  triggering attempt's processor reference forward and the link completes
  that same charge, so the chef is never charged twice.
- collect_instrument: hard decline or no stored method. The link collects
  a new card and charges it on submission.

Issuing invalidates (never deletes) any open session for the obligation,
so at most one session is open at a time. The chef is notified on a
best-effort basis; the session itself is the source of truth and
list_active_sessions() is the admin-visible fallback.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from django.utils import timezone

from core.helpers import generate_token
from core.services import BaseService

from recovery.adapters import get_charge_gateway
from recovery.conf import get_policy
from recovery.exceptions import GatewayError
from recovery.models import ObligationEvent, PaymentRecoverySession
from recovery.notifications import (
    CHEF_AUTHENTICATION_REQUIRED,
    CHEF_PAYMENT_LINK,
    notify,
)
from recovery.state_machines import (
    FailureDisposition,
    ObligationEventType,
    SessionPurpose,
)

if TYPE_CHECKING:
    from datetime import datetime

    from django.db.models import QuerySet

    from recovery.models import ChargeAttempt, Obligation
    from recovery.protocols import GatewaySessionLink


@dataclass
class IssuedLink:
    """
    Link opened at the gateway, not yet persisted.

    link is None when the gateway could not open it; error holds the cause.
    """

    purpose: str
    authorization_reference: str
    token: str
    expires_at: datetime
    link: GatewaySessionLink | None = None
    error: GatewayError | None = None

    @property
    def opened(self) -> bool:
        return self.link is not None


class RecoverySessionIssuer(BaseService):
    """Opens, persists and announces recovery sessions."""

    @staticmethod
    def purpose_for(disposition: str | None, authorization_reference: str = "") -> str:
        """
        Authentication links need the original authorization; without one
        the chef is asked for a fresh instrument instead.
        """
        if disposition == FailureDisposition.NEEDS_AUTHENTICATION and authorization_reference:
            return SessionPurpose.AUTHENTICATE
        return SessionPurpose.COLLECT_INSTRUMENT

    # =========================================================================
    # Gateway phase
    # =========================================================================

    @staticmethod
    def _clamp_to_deadline(obligation: Obligation, expires_at: datetime) -> datetime:
        if obligation.recovery_deadline is None:
            return expires_at
        return min(expires_at, obligation.recovery_deadline)

    @classmethod
    def open_link(
        cls,
        obligation: Obligation,
        disposition: str | None,
        authorization_reference: str = "",
    ) -> IssuedLink:
        """
        Open the link at the gateway. No database writes.

        The link never outlives the recovery deadline. Gateway failures are
        captured on the returned IssuedLink, never raised.
        """
        purpose = cls.purpose_for(disposition, authorization_reference)
        auth_ref = authorization_reference if purpose == SessionPurpose.AUTHENTICATE else ""
        issued = IssuedLink(
            purpose=purpose,
            authorization_reference=auth_ref,
            token=generate_token(),
            expires_at=cls._clamp_to_deadline(
                obligation, timezone.now() + get_policy().session_ttl
            ),
        )

        try:
            link = get_charge_gateway().create_session(
                obligation.id,
                auth_ref or None,
                obligation.amount_cents,
                obligation.currency,
                token=issued.token,
                expires_at=issued.expires_at,
                customer_ref=obligation.customer_ref,
                description=obligation.description,
            )
        except GatewayError as e:
            cls.get_logger().error(
                "Failed to open recovery link",
                extra={
                    "obligation_id": str(obligation.id),
                    "purpose": purpose,
                    "error_code": e.error_code,
                },
            )
            issued.error = e
            return issued

        issued.link = link
        if link.expires_at is not None:
            issued.expires_at = cls._clamp_to_deadline(obligation, link.expires_at)
        return issued

    # =========================================================================
    # Database phase
    # =========================================================================

    @classmethod
    def invalidate_open_sessions(cls, obligation: Obligation) -> int:
        return (
            PaymentRecoverySession.objects.filter(obligation=obligation)
            .open()
            .update(invalidated_at=timezone.now())
        )

    @classmethod
    def persist(
        cls,
        obligation: Obligation,
        attempt: ChargeAttempt | None,
        issued: IssuedLink,
        actor: str = "system",
    ) -> PaymentRecoverySession | None:
        """
        Supersede open sessions and store the new one.

        Call inside the caller's transaction. Returns None (after still
        invalidating older sessions) when the link could not be opened.
        """
        superseded = cls.invalidate_open_sessions(obligation)
        if not issued.opened:
            return None

        session = PaymentRecoverySession.objects.create(
            obligation=obligation,
            triggering_attempt=attempt,
            purpose=issued.purpose,
            authorization_reference=issued.authorization_reference,
            token=issued.token,
            link_url=issued.link.url,
            gateway_reference=issued.link.gateway_reference,
            expires_at=issued.expires_at,
        )
        ObligationEvent.record(
            obligation,
            ObligationEventType.SESSION_ISSUED,
            actor=actor,
            note=f"Recovery link issued ({issued.purpose})",
            data={
                "session_id": str(session.id),
                "purpose": issued.purpose,
                "authorization_reference": issued.authorization_reference,
                "superseded_sessions": superseded,
            },
        )
        cls.get_logger().info(
            "Recovery session issued",
            extra={
                "obligation_id": str(obligation.id),
                "session_id": str(session.id),
                "purpose": issued.purpose,
            },
        )
        return session

    @classmethod
    def notify(cls, session: PaymentRecoverySession, reason: str = "") -> bool:
        """Tell the chef about the link. Best-effort."""
        obligation = session.obligation
        chef = obligation.chef
        template_id = (
            CHEF_AUTHENTICATION_REQUIRED
            if session.purpose == SessionPurpose.AUTHENTICATE
            else CHEF_PAYMENT_LINK
        )
        return notify(
            getattr(chef, "email", None),
            template_id,
            {
                "obligation_id": str(obligation.id),
                "session_id": str(session.id),
                "amount": obligation.amount_display,
                "amount_cents": obligation.amount_cents,
                "currency": obligation.currency,
                "description": obligation.description,
                "link": session.link_url,
                "expires_at": session.expires_at.isoformat(),
                "chef_name": chef.get_full_name() or chef.get_username(),
                "reason": reason,
            },
        )

    # =========================================================================
    # Combined
    # =========================================================================

    @classmethod
    def issue(
        cls,
        obligation: Obligation,
        attempt: ChargeAttempt,
    ) -> PaymentRecoverySession | None:
        """
        Open, persist and announce a session for a failed attempt.

        Returns None when the gateway could not open the link.
        """
        issued = cls.open_link(obligation, attempt.disposition, attempt.processor_reference)
        with cls.atomic():
            session = cls.persist(obligation, attempt, issued)
        if session is not None:
            cls.notify(session, attempt.failure_message)
        return session

    # =========================================================================
    # Queries
    # =========================================================================

    @classmethod
    def active_session(cls, obligation: Obligation) -> PaymentRecoverySession | None:
        return (
            PaymentRecoverySession.objects.filter(obligation=obligation)
            .active()
            .order_by("-created_at")
            .first()
        )

    @classmethod
    def list_active_sessions(cls) -> QuerySet[PaymentRecoverySession]:
        """Every live recovery link, for the admin listing."""
        return (
            PaymentRecoverySession.objects.active()
            .select_related("obligation", "obligation__chef")
            .order_by("expires_at")
        )
