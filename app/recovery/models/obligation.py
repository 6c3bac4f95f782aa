"""
Obligation model for money a chef owes after the fact.

An Obligation is created when an overstay penalty or a damage claim is
approved. The recovery engine then tries to collect it off-session, falls
back to an on-session payment link, and escalates to an admin when limits
are reached.

Usage:
    from recovery.models import Obligation
    from recovery.state_machines import ObligationKind

    obligation = Obligation.objects.create(
        chef=chef,
        kind=ObligationKind.OVERSTAY_PENALTY,
        amount_cents=15000,
        payment_method_ref="pm_123",
        customer_ref="cus_123",
    )

    # State transitions using django-fsm
    obligation.mark_charge_failed(next_attempt_at=retry_at)  # pending -> charge_failed
    obligation.save()
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from django.conf import settings
from django.db import models
from django.db.models import F
from django.utils import timezone

from django_fsm import FSMField, transition

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin

from recovery.conf import get_policy
from recovery.state_machines import ObligationKind, ObligationStatus

if TYPE_CHECKING:
    from datetime import datetime


class Obligation(UUIDPrimaryKeyMixin, BaseModel):
    """
    A chargeable obligation owed by a chef.

    State Flow:
        PENDING -> CHARGE_SUCCEEDED
        PENDING/CHARGE_FAILED -> CHARGE_FAILED (retry scheduled)
        PENDING/CHARGE_FAILED -> REQUIRES_ACTION -> CHARGE_SUCCEEDED
        REQUIRES_ACTION -> CHARGE_FAILED (recovery link lapsed)
        PENDING/CHARGE_FAILED/REQUIRES_ACTION -> ESCALATED

    Fields:
        chef: Owing party
        kind: Overstay penalty or damage claim
        source_reference: Id of the record that produced the obligation
        amount_cents: Amount owed in smallest currency unit
        currency: ISO 4217 currency code
        status: Current FSM state
        payment_method_ref: Stored processor payment method (pm_xxx)
        customer_ref: Processor customer owning the payment method (cus_xxx)
        next_attempt_at: Next eligible automatic attempt (scheduler data)
        recovery_deadline: Escalation is forced after this time
        version: Optimistic locking version

    Note:
        Obligations are never deleted. When the underlying event is
        reversed, a new obligation supersedes this one.
    """

    # ==========================================================================
    # Relationships
    # ==========================================================================

    chef = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="recovery_obligations",
        help_text="Chef who owes this amount",
    )

    # ==========================================================================
    # Origin
    # ==========================================================================

    kind = models.CharField(
        max_length=32,
        choices=ObligationKind.choices,
        help_text="What produced the obligation",
    )

    source_reference = models.CharField(
        max_length=255,
        blank=True,
        default="",
        help_text="Id of the overstay record or damage claim",
    )

    description = models.CharField(
        max_length=255,
        blank=True,
        default="",
        help_text="Short description shown on payment links and emails",
    )

    # ==========================================================================
    # Amount & Currency
    # ==========================================================================

    amount_cents = models.PositiveBigIntegerField(
        help_text="Amount owed in smallest currency unit (e.g., cents)",
    )

    currency = models.CharField(
        max_length=3,
        default="usd",
        help_text="ISO 4217 currency code (lowercase)",
    )

    # ==========================================================================
    # State
    # ==========================================================================

    status = FSMField(
        default=ObligationStatus.PENDING,
        choices=ObligationStatus.choices,
        db_index=True,
        protected=True,
        help_text="Current recovery status (managed by FSM)",
    )

    # ==========================================================================
    # Payment Processor References
    # ==========================================================================

    payment_method_ref = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        help_text="Stored payment method to charge off-session (pm_xxx)",
    )

    customer_ref = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        help_text="Processor customer owning the payment method (cus_xxx)",
    )

    # ==========================================================================
    # Concurrency Control
    # ==========================================================================

    version = models.PositiveIntegerField(
        default=1,
        help_text="Version for optimistic locking - incremented on each save",
    )

    # ==========================================================================
    # Scheduling & Timestamps
    # ==========================================================================

    next_attempt_at = models.DateTimeField(
        null=True,
        blank=True,
        db_index=True,
        help_text="Earliest time the scheduler should trigger recovery again",
    )

    recovery_deadline = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Escalation is forced once this time has passed",
    )

    resolved_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the obligation was paid",
    )

    escalated_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the obligation was handed to an admin",
    )

    # ==========================================================================
    # Metadata
    # ==========================================================================

    metadata = models.JSONField(
        default=dict,
        blank=True,
        help_text="Arbitrary JSON metadata for extensibility",
    )

    # ==========================================================================
    # Meta & Methods
    # ==========================================================================

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Obligation"
        verbose_name_plural = "Obligations"
        indexes = [
            models.Index(fields=["chef", "status"], name="recovery_ob_chef_id_5b6f0e_idx"),
            models.Index(
                fields=["status", "next_attempt_at"], name="recovery_ob_status_3c1d2a_idx"
            ),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(amount_cents__gt=0),
                name="obligation_amount_positive",
            ),
        ]

    def __str__(self) -> str:
        return f"Obligation({self.id}, {self.kind}, {self.status}, {self.amount_display})"

    def save(self, *args, **kwargs):
        """
        Save with version auto-increment for optimistic locking.

        New obligations get a recovery deadline of creation time plus the
        configured recovery window.
        """
        if self._state.adding and self.recovery_deadline is None:
            self.recovery_deadline = timezone.now() + get_policy().recovery_window
        is_update = self.pk and not self._state.adding and not kwargs.get(
            "force_insert", False
        )
        if is_update:
            self.version = F("version") + 1
        super().save(*args, **kwargs)
        if is_update:
            self.refresh_from_db(fields=["version"])

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=status,
        source=[
            ObligationStatus.PENDING,
            ObligationStatus.CHARGE_FAILED,
            ObligationStatus.REQUIRES_ACTION,
        ],
        target=ObligationStatus.CHARGE_SUCCEEDED,
    )
    def mark_succeeded(self):
        """
        Record that the amount has been collected.

        Transition: PENDING/CHARGE_FAILED/REQUIRES_ACTION -> CHARGE_SUCCEEDED
        """
        self.resolved_at = timezone.now()
        self.next_attempt_at = None

    @transition(
        field=status,
        source=[
            ObligationStatus.PENDING,
            ObligationStatus.CHARGE_FAILED,
            ObligationStatus.REQUIRES_ACTION,
        ],
        target=ObligationStatus.CHARGE_FAILED,
    )
    def mark_charge_failed(self, next_attempt_at: datetime | None = None):
        """
        Record a retryable failure and when to try again.

        Transition: PENDING/CHARGE_FAILED/REQUIRES_ACTION -> CHARGE_FAILED

        Args:
            next_attempt_at: When the scheduler should trigger the next attempt
        """
        self.next_attempt_at = next_attempt_at

    @transition(
        field=status,
        source=[ObligationStatus.PENDING, ObligationStatus.CHARGE_FAILED],
        target=ObligationStatus.REQUIRES_ACTION,
    )
    def require_action(self, next_attempt_at: datetime | None = None):
        """
        Move the obligation on-session.

        Transition: PENDING/CHARGE_FAILED -> REQUIRES_ACTION

        Args:
            next_attempt_at: Set only when the recovery link could not be
                opened, so the scheduler retries issuing it
        """
        self.next_attempt_at = next_attempt_at

    @transition(
        field=status,
        source=[
            ObligationStatus.PENDING,
            ObligationStatus.CHARGE_FAILED,
            ObligationStatus.REQUIRES_ACTION,
        ],
        target=ObligationStatus.ESCALATED,
    )
    def escalate(self):
        """
        Hand the obligation to an admin and stop automatic recovery.

        Transition: PENDING/CHARGE_FAILED/REQUIRES_ACTION -> ESCALATED
        """
        self.escalated_at = timezone.now()
        self.next_attempt_at = None

    # ==========================================================================
    # Properties
    # ==========================================================================

    @property
    def is_terminal(self) -> bool:
        return self.status in ObligationStatus.terminal_states()

    @property
    def has_payment_method(self) -> bool:
        return bool(self.payment_method_ref)

    @property
    def amount_display(self) -> str:
        """Amount formatted for emails, e.g. '150.00 USD'."""
        return f"{self.amount_cents / 100:.2f} {self.currency.upper()}"

    def deadline_passed(self, now: datetime | None = None) -> bool:
        if self.recovery_deadline is None:
            return False
        return (now or timezone.now()) >= self.recovery_deadline
