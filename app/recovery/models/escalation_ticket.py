"""
EscalationTicket model: handover from automatic recovery to an admin.

One ticket per obligation, enforced by a one-to-one relation. Resolving a
ticket does not reopen the obligation; if money is owed again after a
resolution, a new obligation (and, if needed, a new ticket) is created.
"""

from __future__ import annotations

from django.db import models
from django.utils import timezone

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel

from recovery.state_machines import EscalationReason, TicketResolution


class EscalationTicket(UUIDPrimaryKeyMixin, BaseModel):
    """
    Admin work item for an obligation automation gave up on.

    Fields:
        obligation: Escalated obligation (one ticket per obligation)
        reason: Which limit triggered the escalation
        attempt_count_at_escalation: Size of the attempt log when escalated
        resolution: open or resolved
        resolution_note: Admin note on how it was settled
        resolved_at: When the ticket was closed
        summary: Attempt history snapshot sent to admins
    """

    obligation = models.OneToOneField(
        "recovery.Obligation",
        on_delete=models.PROTECT,
        related_name="escalation_ticket",
        help_text="Obligation this ticket covers",
    )
    reason = models.CharField(
        max_length=32,
        choices=EscalationReason.choices,
        help_text="Limit that moved the obligation to manual handling",
    )
    attempt_count_at_escalation = models.PositiveIntegerField(
        help_text="Number of charge attempts recorded when escalated",
    )

    resolution = models.CharField(
        max_length=16,
        choices=TicketResolution.choices,
        default=TicketResolution.OPEN,
        db_index=True,
    )
    resolution_note = models.TextField(blank=True, default="")
    resolved_at = models.DateTimeField(null=True, blank=True)

    summary = models.JSONField(
        default=dict,
        blank=True,
        help_text="Attempt history summary at escalation time",
    )

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Escalation Ticket"
        verbose_name_plural = "Escalation Tickets"

    def __str__(self) -> str:
        return f"EscalationTicket({self.obligation_id}, {self.reason}, {self.resolution})"

    @property
    def is_resolved(self) -> bool:
        return self.resolution == TicketResolution.RESOLVED

    def resolve(self, note: str = "") -> None:
        """Close the ticket. Caller saves."""
        self.resolution = TicketResolution.RESOLVED
        self.resolution_note = note
        self.resolved_at = timezone.now()
