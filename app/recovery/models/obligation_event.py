"""
ObligationEvent model: append-only status history for obligations.

Written in the same transaction as every status transition, so the history
and the cached status never disagree.
"""

from __future__ import annotations

from django.db import models

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel

from recovery.exceptions import ImmutableRecordError
from recovery.state_machines import ObligationEventType


class ObligationEvent(UUIDPrimaryKeyMixin, BaseModel):
    """One entry in an obligation's history."""

    obligation = models.ForeignKey(
        "recovery.Obligation",
        on_delete=models.PROTECT,
        related_name="events",
    )
    event_type = models.CharField(
        max_length=32,
        choices=ObligationEventType.choices,
        db_index=True,
    )
    from_status = models.CharField(max_length=32, blank=True, default="")
    to_status = models.CharField(max_length=32, blank=True, default="")
    actor = models.CharField(
        max_length=64,
        default="system",
        help_text="Who caused the event (system, scheduler, webhook, admin)",
    )
    note = models.TextField(blank=True, default="")
    data = models.JSONField(default=dict, blank=True)

    class Meta:
        ordering = ["created_at"]
        verbose_name = "Obligation Event"
        verbose_name_plural = "Obligation Events"
        indexes = [
            models.Index(fields=["obligation", "event_type"], name="recovery_ob_obligat_4d7a9c_idx"),
        ]

    def __str__(self) -> str:
        return f"ObligationEvent({self.obligation_id}, {self.event_type}, {self.from_status}->{self.to_status})"

    @classmethod
    def record(
        cls,
        obligation,
        event_type: str,
        *,
        from_status: str = "",
        to_status: str = "",
        actor: str = "system",
        note: str = "",
        data: dict | None = None,
    ) -> ObligationEvent:
        """Append an event. Call inside the transaction that made the change."""
        return cls.objects.create(
            obligation=obligation,
            event_type=event_type,
            from_status=from_status,
            to_status=to_status,
            actor=actor,
            note=note,
            data=data or {},
        )

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ImmutableRecordError(
                "Obligation events are append-only",
                details={"event_id": str(self.pk)},
            )
        super().save(*args, **kwargs)
