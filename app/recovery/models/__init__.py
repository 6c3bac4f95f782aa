"""
Recovery domain models.

This module contains all recovery-related models:
- Obligation: Amount owed by a chef, driven through the recovery state machine
- ChargeAttempt: Append-only log of off-session charge tries
- PaymentRecoverySession: On-session payment links
- EscalationTicket: Admin handover when automatic recovery is exhausted
- ObligationEvent: Append-only status history
"""

from recovery.models.charge_attempt import ChargeAttempt
from recovery.models.escalation_ticket import EscalationTicket
from recovery.models.obligation import Obligation
from recovery.models.obligation_event import ObligationEvent
from recovery.models.recovery_session import (
    PaymentRecoverySession,
    PaymentRecoverySessionQuerySet,
)

__all__ = [
    "ChargeAttempt",
    "EscalationTicket",
    "Obligation",
    "ObligationEvent",
    "PaymentRecoverySession",
    "PaymentRecoverySessionQuerySet",
]
