"""
PaymentRecoverySession model for on-session recovery links.

A session is opened when an off-session charge cannot complete without the
chef: either the processor asked for authentication (the link completes the
same PaymentIntent) or a new payment method is needed (the link collects a
fresh card and charges on submission).

Sessions are never deleted or reused. A newer session supersedes an older
one by setting invalidated_at on it.
"""

from __future__ import annotations

from django.db import models
from django.utils import timezone

from core.helpers import generate_token
from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel

from recovery.state_machines import SessionPurpose


class PaymentRecoverySessionQuerySet(models.QuerySet):
    """
    Chainable filters over recovery session lifecycle.

    Usage:
        PaymentRecoverySession.objects.filter(obligation=obligation).open()
        PaymentRecoverySession.objects.active()
        PaymentRecoverySession.objects.lapsed()
    """

    def open(self):
        return self.filter(
            consumed=False,
            invalidated_at__isnull=True,
            failed_at__isnull=True,
            expired_processed_at__isnull=True,
        )

    def active(self):
        return self.open().filter(expires_at__gt=timezone.now())

    def lapsed(self):
        """Open sessions past expiry whose transition has not been applied."""
        return self.open().filter(expires_at__lte=timezone.now())

    def ended_unpaid(self):
        return self.filter(consumed=False).filter(
            models.Q(failed_at__isnull=False) | models.Q(expired_processed_at__isnull=False)
        )


class PaymentRecoverySession(UUIDPrimaryKeyMixin, BaseModel):
    """
    On-session payment link for one obligation.

    A session is "open" until it is consumed, invalidated, reported failed
    or has had its expiry processed. It is "active" while open and not yet
    past expires_at. At most one open session exists per obligation
    (partial unique constraint).

    Fields:
        obligation: Obligation being recovered
        triggering_attempt: Charge attempt that led to this session
        purpose: Authenticate an existing charge or collect a new instrument
        authorization_reference: Processor reference carried forward from
            the triggering attempt (authenticate only)
        token: Unguessable token embedded in the recovery link
        link_url: URL sent to the chef
        gateway_reference: Processor object behind the link (cs_xxx / pi_xxx)
        expires_at: When the link stops being valid
        consumed: True once the chef completed payment through the link
    """

    objects = PaymentRecoverySessionQuerySet.as_manager()

    # ==========================================================================
    # Relationships
    # ==========================================================================

    obligation = models.ForeignKey(
        "recovery.Obligation",
        on_delete=models.PROTECT,
        related_name="recovery_sessions",
        help_text="Obligation this session recovers",
    )
    triggering_attempt = models.ForeignKey(
        "recovery.ChargeAttempt",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="recovery_sessions",
        help_text="Charge attempt whose outcome opened this session",
    )

    # ==========================================================================
    # Link
    # ==========================================================================

    purpose = models.CharField(
        max_length=32,
        choices=SessionPurpose.choices,
        help_text="What the chef is asked to do",
    )
    authorization_reference = models.CharField(
        max_length=255,
        blank=True,
        default="",
        help_text="Processor reference of the charge to authenticate (pi_xxx)",
    )
    token = models.CharField(
        max_length=64,
        unique=True,
        default=generate_token,
        help_text="Unguessable token embedded in the recovery link",
    )
    link_url = models.URLField(
        max_length=2048,
        blank=True,
        default="",
        help_text="Recovery link sent to the chef",
    )
    gateway_reference = models.CharField(
        max_length=255,
        blank=True,
        default="",
        help_text="Processor object behind the link (cs_xxx or pi_xxx)",
    )

    # ==========================================================================
    # Lifecycle
    # ==========================================================================

    expires_at = models.DateTimeField(
        db_index=True,
        help_text="When the recovery link expires",
    )
    consumed = models.BooleanField(
        default=False,
        help_text="True once the chef paid through this link",
    )
    consumed_at = models.DateTimeField(null=True, blank=True)
    invalidated_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Set when a newer session superseded this one",
    )
    failed_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Set when the gateway reported the session payment failed",
    )
    expired_processed_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Set when the expiry transition was applied to the obligation",
    )

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Payment Recovery Session"
        verbose_name_plural = "Payment Recovery Sessions"
        indexes = [
            models.Index(fields=["obligation", "consumed"], name="recovery_pa_obligat_8e2f41_idx"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["obligation"],
                condition=models.Q(
                    consumed=False,
                    invalidated_at__isnull=True,
                    failed_at__isnull=True,
                    expired_processed_at__isnull=True,
                ),
                name="one_open_recovery_session_per_obligation",
            ),
        ]

    def __str__(self) -> str:
        return f"PaymentRecoverySession({self.id}, {self.purpose}, consumed={self.consumed})"

    @property
    def is_open(self) -> bool:
        """Not yet closed by consumption, supersession, failure or expiry."""
        return (
            not self.consumed
            and self.invalidated_at is None
            and self.failed_at is None
            and self.expired_processed_at is None
        )

    @property
    def is_expired(self) -> bool:
        return timezone.now() >= self.expires_at

    @property
    def is_active(self) -> bool:
        return self.is_open and not self.is_expired

    @property
    def ended_unpaid(self) -> bool:
        """Counts as a business failure for escalation purposes."""
        return not self.consumed and (
            self.failed_at is not None or self.expired_processed_at is not None
        )
