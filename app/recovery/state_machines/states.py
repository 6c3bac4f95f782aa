"""
State enums for recovery models.

These are Django TextChoices for database storage and admin integration.
ObligationStatus is driven by django-fsm transitions on Obligation; the
other enums label immutable records.

State Machine Overview:

Obligation Status:
    pending → charge_succeeded
    pending/charge_failed → charge_failed (transient decline, retry later)
    pending/charge_failed → requires_action (authentication or new card needed)
    requires_action → charge_succeeded (recovery link paid)
    requires_action → charge_failed (recovery link expired or failed)
    pending/charge_failed/requires_action → escalated (limits reached)

    charge_succeeded and escalated are terminal.
"""

from django.db import models


class ObligationStatus(models.TextChoices):
    """
    Lifecycle of a chargeable obligation.

    Terminal states: CHARGE_SUCCEEDED, ESCALATED

    State Flow (happy path):
        PENDING → CHARGE_SUCCEEDED

    Retry Flow:
        PENDING → CHARGE_FAILED → CHARGE_FAILED → CHARGE_SUCCEEDED

    On-session Flow:
        PENDING/CHARGE_FAILED → REQUIRES_ACTION → CHARGE_SUCCEEDED
        REQUIRES_ACTION → CHARGE_FAILED (link expired unpaid)

    Escalation Flow:
        PENDING/CHARGE_FAILED/REQUIRES_ACTION → ESCALATED
    """

    PENDING = "pending", "Pending"
    CHARGE_SUCCEEDED = "charge_succeeded", "Charge Succeeded"
    REQUIRES_ACTION = "requires_action", "Requires Action"
    CHARGE_FAILED = "charge_failed", "Charge Failed"
    ESCALATED = "escalated", "Escalated"

    @classmethod
    def terminal_states(cls) -> list[str]:
        return [cls.CHARGE_SUCCEEDED, cls.ESCALATED]

    @classmethod
    def chargeable_states(cls) -> list[str]:
        """States from which an off-session attempt may be made."""
        return [cls.PENDING, cls.CHARGE_FAILED]


class ObligationKind(models.TextChoices):
    """What produced the obligation."""

    OVERSTAY_PENALTY = "overstay_penalty", "Overstay Penalty"
    DAMAGE_CLAIM = "damage_claim", "Damage Claim"


class AttemptOutcome(models.TextChoices):
    """
    Raw result of one off-session charge try.

    GATEWAY_ERROR means the processor could not be reached or timed out;
    it never counts as a business decline.
    """

    SUCCEEDED = "succeeded", "Succeeded"
    REQUIRES_ACTION = "requires_action", "Requires Additional Authentication"
    DECLINED = "declined", "Declined"
    NO_PAYMENT_METHOD = "no_payment_method", "No Payment Method"
    GATEWAY_ERROR = "gateway_error", "Gateway Error"


class FailureDisposition(models.TextChoices):
    """Classifier verdict for a failed attempt."""

    RETRY_LATER = "retry_later", "Retry Later"
    NEEDS_AUTHENTICATION = "needs_authentication", "Needs Authentication"
    HARD_DECLINE = "hard_decline", "Hard Decline"
    NO_INSTRUMENT = "no_instrument", "No Instrument"

    @classmethod
    def session_dispositions(cls) -> list[str]:
        """Dispositions that move the obligation on-session."""
        return [cls.NEEDS_AUTHENTICATION, cls.HARD_DECLINE, cls.NO_INSTRUMENT]


class SessionPurpose(models.TextChoices):
    """What the chef is asked to do through a recovery link."""

    AUTHENTICATE = "authenticate", "Authenticate Existing Charge"
    COLLECT_INSTRUMENT = "collect_instrument", "Collect New Payment Method"


class SessionOutcome(models.TextChoices):
    """Outcome reported when a recovery link is used."""

    SUCCEEDED = "succeeded", "Succeeded"
    FAILED = "failed", "Failed"


class TicketResolution(models.TextChoices):
    OPEN = "open", "Open"
    RESOLVED = "resolved", "Resolved"


class EscalationReason(models.TextChoices):
    """Which limit moved the obligation to an admin."""

    RETRIES_EXHAUSTED = "retries_exhausted", "Retries Exhausted"
    RECOVERY_WINDOW_ELAPSED = "recovery_window_elapsed", "Recovery Window Elapsed"
    GATEWAY_UNAVAILABLE = "gateway_unavailable", "Gateway Unavailable"


class ObligationEventType(models.TextChoices):
    """Entries in the obligation status history."""

    CREATED = "created", "Created"
    CHARGE_ATTEMPT = "charge_attempt", "Charge Attempt"
    SESSION_ISSUED = "session_issued", "Recovery Session Issued"
    SESSION_CONSUMED = "session_consumed", "Recovery Session Consumed"
    SESSION_FAILED = "session_failed", "Recovery Session Failed"
    SESSION_EXPIRED = "session_expired", "Recovery Session Expired"
    LINK_REISSUED = "link_reissued", "Recovery Link Re-issued"
    ESCALATED = "escalated", "Escalated"
    TICKET_RESOLVED = "ticket_resolved", "Escalation Ticket Resolved"
    MANUAL_RESOLUTION = "manual_resolution", "Manually Resolved"
    RECONCILED = "reconciled", "Reconciled"
