"""
ChargeAttempt model: the append-only log of off-session charge tries.

Every automatic attempt against an obligation writes exactly one row, even
when the processor could not be reached. All retry counts are derived from
this log; nothing else stores how many times an obligation was charged.

Usage:
    from recovery.models import ChargeAttempt

    attempts = ChargeAttempt.objects.filter(obligation=obligation)
    declines = attempts.filter(outcome=AttemptOutcome.DECLINED).count()
"""

from __future__ import annotations

from django.db import models

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel

from recovery.exceptions import ImmutableRecordError
from recovery.state_machines import AttemptOutcome, FailureDisposition


class ChargeAttempt(UUIDPrimaryKeyMixin, BaseModel):
    """
    Immutable audit record of one charge try.

    Attempt numbers are 1-based and gap-free per obligation. They are
    assigned under the obligation lease; the unique constraint on
    (obligation, attempt_number) rejects a duplicate number if the lease
    was ever lost mid-attempt.

    Fields:
        obligation: Obligation that was charged
        attempt_number: Position in the obligation's attempt log
        outcome: Raw gateway outcome
        disposition: Classifier verdict (null for a successful charge)
        processor_reference: Processor object id (pi_xxx), carried forward
            as the authorization reference when authentication is required
        decline_code: Processor decline code, if any
        failure_message: Human-readable failure text
        idempotency_key: Key sent with the charge request
    """

    obligation = models.ForeignKey(
        "recovery.Obligation",
        on_delete=models.PROTECT,
        related_name="attempts",
        help_text="Obligation this attempt was made for",
    )
    attempt_number = models.PositiveIntegerField(
        help_text="1-based sequential attempt number for the obligation",
    )

    outcome = models.CharField(
        max_length=32,
        choices=AttemptOutcome.choices,
        help_text="Raw outcome reported by the gateway",
    )
    disposition = models.CharField(
        max_length=32,
        choices=FailureDisposition.choices,
        null=True,
        blank=True,
        help_text="Recovery policy chosen for this outcome",
    )

    processor_reference = models.CharField(
        max_length=255,
        blank=True,
        default="",
        help_text="Processor object id for this attempt (pi_xxx)",
    )
    decline_code = models.CharField(
        max_length=100,
        blank=True,
        default="",
        help_text="Processor decline or error code",
    )
    failure_message = models.TextField(
        blank=True,
        default="",
        help_text="Failure details for declined or errored attempts",
    )
    idempotency_key = models.CharField(
        max_length=255,
        blank=True,
        default="",
        help_text="Idempotency key sent to the processor",
    )

    class Meta:
        ordering = ["attempt_number"]
        verbose_name = "Charge Attempt"
        verbose_name_plural = "Charge Attempts"
        constraints = [
            models.UniqueConstraint(
                fields=["obligation", "attempt_number"],
                name="unique_attempt_number_per_obligation",
            ),
            models.CheckConstraint(
                condition=models.Q(attempt_number__gte=1),
                name="charge_attempt_number_positive",
            ),
        ]

    def __str__(self) -> str:
        return f"ChargeAttempt({self.obligation_id}, #{self.attempt_number}, {self.outcome})"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ImmutableRecordError(
                "Charge attempts are append-only",
                details={"attempt_id": str(self.pk)},
            )
        super().save(*args, **kwargs)

    @property
    def succeeded(self) -> bool:
        return self.outcome == AttemptOutcome.SUCCEEDED
