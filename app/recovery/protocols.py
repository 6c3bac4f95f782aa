"""
Protocol definitions for the recovery engine's external collaborators.

The engine depends on these abstractions, not on Stripe or on email:
- ChargeGateway: off-session charges and on-session recovery links
- NotificationDispatcher: fire-and-forget messages to chefs and admins

Production implementations live in recovery.adapters (Stripe) and
recovery.notifications (Celery + Django mail). Tests inject fakes through
set_charge_gateway() / set_dispatcher().

Usage:
    from recovery.protocols import ChargeGateway

    class FakeGateway:
        def charge(self, obligation_id, amount_cents, currency, instrument_ref, **kwargs): ...
        def create_session(self, obligation_id, auth_ref, amount_cents, currency, **kwargs): ...

    gateway: ChargeGateway = FakeGateway()
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from datetime import datetime
    from typing import Any


# =============================================================================
# Data Types
# =============================================================================


@dataclass
class GatewayCharge:
    """
    Business answer from one off-session charge.

    Attributes:
        outcome: One of AttemptOutcome (never gateway_error; that is raised)
        processor_reference: Processor object id (pi_xxx), if one was created
        decline_code: Processor decline code for declined charges
        failure_message: Human-readable reason for a failed charge
        raw: Processor response payload (for debugging)
    """

    outcome: str
    processor_reference: str = ""
    decline_code: str = ""
    failure_message: str = ""
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class GatewaySessionLink:
    """
    On-session recovery link opened at the processor.

    Attributes:
        url: Link the chef follows to pay
        gateway_reference: Processor object behind the link (cs_xxx / pi_xxx)
        expires_at: When the processor stops accepting the link
    """

    url: str
    gateway_reference: str = ""
    expires_at: datetime | None = None


# =============================================================================
# Protocols
# =============================================================================


@runtime_checkable
class ChargeGateway(Protocol):
    """
    Protocol for the payment processor gateway.

    Declines, authentication requests and missing instruments are returned
    as GatewayCharge outcomes. Only infrastructure failures (unreachable,
    timeout, rate limited, rejected request) raise, as GatewayError.
    """

    def charge(
        self,
        obligation_id: Any,
        amount_cents: int,
        currency: str,
        instrument_ref: str,
        *,
        idempotency_key: str,
        customer_ref: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> GatewayCharge:
        """
        Charge a stored payment method without the chef present.

        Args:
            obligation_id: Obligation being collected
            amount_cents: Amount in smallest currency unit
            currency: ISO 4217 currency code
            instrument_ref: Stored payment method (pm_xxx)
            idempotency_key: Same key for the same attempt number
            customer_ref: Processor customer owning the payment method
            metadata: Extra metadata to attach at the processor

        Raises:
            GatewayError: Processor could not give a business answer
        """
        ...

    def create_session(
        self,
        obligation_id: Any,
        auth_ref: str | None,
        amount_cents: int,
        currency: str,
        *,
        token: str,
        expires_at: datetime,
        customer_ref: str | None = None,
        description: str = "",
    ) -> GatewaySessionLink:
        """
        Open an on-session recovery link.

        Args:
            obligation_id: Obligation being collected
            auth_ref: Existing authorization to complete, or None to collect
                a fresh instrument and charge on submission
            amount_cents: Amount in smallest currency unit
            currency: ISO 4217 currency code
            token: Recovery session token to embed in return URLs
            expires_at: Requested link expiry

        Raises:
            GatewayError: The link could not be opened
        """
        ...


@runtime_checkable
class NotificationDispatcher(Protocol):
    """Protocol for fire-and-forget notifications."""

    def dispatch(self, recipient: str, template_id: str, payload: dict[str, Any]) -> None:
        """
        Send a message to a recipient.

        Must not block on delivery. Failures may raise; callers treat
        notification as best-effort and log them.
        """
        ...
