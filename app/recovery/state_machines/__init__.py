"""
State machine enums for recovery models.

This module defines the state enums used by recovery models with django-fsm.
"""

from recovery.state_machines.states import (
    AttemptOutcome,
    EscalationReason,
    FailureDisposition,
    ObligationEventType,
    ObligationKind,
    ObligationStatus,
    SessionOutcome,
    SessionPurpose,
    TicketResolution,
)

__all__ = [
    "AttemptOutcome",
    "EscalationReason",
    "FailureDisposition",
    "ObligationEventType",
    "ObligationKind",
    "ObligationStatus",
    "SessionOutcome",
    "SessionPurpose",
    "TicketResolution",
]
