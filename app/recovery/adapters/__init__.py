"""
Payment gateway adapters for the recovery engine.

All processor calls go through the configured ChargeGateway. Production
uses StripeChargeGateway; tests swap in a fake with set_charge_gateway().

Usage:
    from recovery.adapters import get_charge_gateway

    charge = get_charge_gateway().charge(...)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from recovery.adapters.stripe_gateway import IdempotencyKeyGenerator, StripeChargeGateway

if TYPE_CHECKING:
    from recovery.protocols import ChargeGateway

_gateway: ChargeGateway | None = None


def get_charge_gateway() -> ChargeGateway:
    """Return the configured gateway (Stripe unless overridden)."""
    return _gateway if _gateway is not None else StripeChargeGateway


def set_charge_gateway(gateway: ChargeGateway | None) -> None:
    """Override the gateway. Pass None to restore the Stripe default."""
    global _gateway
    _gateway = gateway


__all__ = [
    "IdempotencyKeyGenerator",
    "StripeChargeGateway",
    "get_charge_gateway",
    "set_charge_gateway",
]
