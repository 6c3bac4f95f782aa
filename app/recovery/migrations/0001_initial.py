import uuid

import django.db.models.deletion
import django_fsm
from django.conf import settings
from django.db import migrations, models

import core.helpers


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Obligation",
            fields=[
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True,
                        help_text="Timestamp when this record was last modified",
                    ),
                ),
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier (UUID v4)",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "kind",
                    models.CharField(
                        choices=[
                            ("overstay_penalty", "Overstay Penalty"),
                            ("damage_claim", "Damage Claim"),
                        ],
                        help_text="What produced the obligation",
                        max_length=32,
                    ),
                ),
                (
                    "source_reference",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text="Id of the overstay record or damage claim",
                        max_length=255,
                    ),
                ),
                (
                    "description",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text="Short description shown on payment links and emails",
                        max_length=255,
                    ),
                ),
                (
                    "amount_cents",
                    models.PositiveBigIntegerField(
                        help_text="Amount owed in smallest currency unit (e.g., cents)"
                    ),
                ),
                (
                    "currency",
                    models.CharField(
                        default="usd",
                        help_text="ISO 4217 currency code (lowercase)",
                        max_length=3,
                    ),
                ),
                (
                    "status",
                    django_fsm.FSMField(
                        choices=[
                            ("pending", "Pending"),
                            ("charge_succeeded", "Charge Succeeded"),
                            ("requires_action", "Requires Action"),
                            ("charge_failed", "Charge Failed"),
                            ("escalated", "Escalated"),
                        ],
                        db_index=True,
                        default="pending",
                        help_text="Current recovery status (managed by FSM)",
                        max_length=50,
                        protected=True,
                    ),
                ),
                (
                    "payment_method_ref",
                    models.CharField(
                        blank=True,
                        help_text="Stored payment method to charge off-session (pm_xxx)",
                        max_length=255,
                        null=True,
                    ),
                ),
                (
                    "customer_ref",
                    models.CharField(
                        blank=True,
                        help_text="Processor customer owning the payment method (cus_xxx)",
                        max_length=255,
                        null=True,
                    ),
                ),
                (
                    "version",
                    models.PositiveIntegerField(
                        default=1,
                        help_text="Version for optimistic locking - incremented on each save",
                    ),
                ),
                (
                    "next_attempt_at",
                    models.DateTimeField(
                        blank=True,
                        db_index=True,
                        help_text="Earliest time the scheduler should trigger recovery again",
                        null=True,
                    ),
                ),
                (
                    "recovery_deadline",
                    models.DateTimeField(
                        blank=True,
                        help_text="Escalation is forced once this time has passed",
                        null=True,
                    ),
                ),
                (
                    "resolved_at",
                    models.DateTimeField(
                        blank=True, help_text="When the obligation was paid", null=True
                    ),
                ),
                (
                    "escalated_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When the obligation was handed to an admin",
                        null=True,
                    ),
                ),
                (
                    "metadata",
                    models.JSONField(
                        blank=True,
                        default=dict,
                        help_text="Arbitrary JSON metadata for extensibility",
                    ),
                ),
                (
                    "chef",
                    models.ForeignKey(
                        help_text="Chef who owes this amount",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="recovery_obligations",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "Obligation",
                "verbose_name_plural": "Obligations",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["chef", "status"], name="recovery_ob_chef_id_5b6f0e_idx"
                    ),
                    models.Index(
                        fields=["status", "next_attempt_at"],
                        name="recovery_ob_status_3c1d2a_idx",
                    ),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("amount_cents__gt", 0)),
                        name="obligation_amount_positive",
                    )
                ],
            },
        ),
        migrations.CreateModel(
            name="ChargeAttempt",
            fields=[
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True,
                        help_text="Timestamp when this record was last modified",
                    ),
                ),
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier (UUID v4)",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "attempt_number",
                    models.PositiveIntegerField(
                        help_text="1-based sequential attempt number for the obligation"
                    ),
                ),
                (
                    "outcome",
                    models.CharField(
                        choices=[
                            ("succeeded", "Succeeded"),
                            ("requires_action", "Requires Additional Authentication"),
                            ("declined", "Declined"),
                            ("no_payment_method", "No Payment Method"),
                            ("gateway_error", "Gateway Error"),
                        ],
                        help_text="Raw outcome reported by the gateway",
                        max_length=32,
                    ),
                ),
                (
                    "disposition",
                    models.CharField(
                        blank=True,
                        choices=[
                            ("retry_later", "Retry Later"),
                            ("needs_authentication", "Needs Authentication"),
                            ("hard_decline", "Hard Decline"),
                            ("no_instrument", "No Instrument"),
                        ],
                        help_text="Recovery policy chosen for this outcome",
                        max_length=32,
                        null=True,
                    ),
                ),
                (
                    "processor_reference",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text="Processor object id for this attempt (pi_xxx)",
                        max_length=255,
                    ),
                ),
                (
                    "decline_code",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text="Processor decline or error code",
                        max_length=100,
                    ),
                ),
                (
                    "failure_message",
                    models.TextField(
                        blank=True,
                        default="",
                        help_text="Failure details for declined or errored attempts",
                    ),
                ),
                (
                    "idempotency_key",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text="Idempotency key sent to the processor",
                        max_length=255,
                    ),
                ),
                (
                    "obligation",
                    models.ForeignKey(
                        help_text="Obligation this attempt was made for",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="attempts",
                        to="recovery.obligation",
                    ),
                ),
            ],
            options={
                "verbose_name": "Charge Attempt",
                "verbose_name_plural": "Charge Attempts",
                "ordering": ["attempt_number"],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("obligation", "attempt_number"),
                        name="unique_attempt_number_per_obligation",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("attempt_number__gte", 1)),
                        name="charge_attempt_number_positive",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="PaymentRecoverySession",
            fields=[
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True,
                        help_text="Timestamp when this record was last modified",
                    ),
                ),
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier (UUID v4)",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "purpose",
                    models.CharField(
                        choices=[
                            ("authenticate", "Authenticate Existing Charge"),
                            ("collect_instrument", "Collect New Payment Method"),
                        ],
                        help_text="What the chef is asked to do",
                        max_length=32,
                    ),
                ),
                (
                    "authorization_reference",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text="Processor reference of the charge to authenticate (pi_xxx)",
                        max_length=255,
                    ),
                ),
                (
                    "token",
                    models.CharField(
                        default=core.helpers.generate_token,
                        help_text="Unguessable token embedded in the recovery link",
                        max_length=64,
                        unique=True,
                    ),
                ),
                (
                    "link_url",
                    models.URLField(
                        blank=True,
                        default="",
                        help_text="Recovery link sent to the chef",
                        max_length=2048,
                    ),
                ),
                (
                    "gateway_reference",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text="Processor object behind the link (cs_xxx or pi_xxx)",
                        max_length=255,
                    ),
                ),
                (
                    "expires_at",
                    models.DateTimeField(
                        db_index=True, help_text="When the recovery link expires"
                    ),
                ),
                (
                    "consumed",
                    models.BooleanField(
                        default=False, help_text="True once the chef paid through this link"
                    ),
                ),
                ("consumed_at", models.DateTimeField(blank=True, null=True)),
                (
                    "invalidated_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="Set when a newer session superseded this one",
                        null=True,
                    ),
                ),
                (
                    "failed_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="Set when the gateway reported the session payment failed",
                        null=True,
                    ),
                ),
                (
                    "expired_processed_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="Set when the expiry transition was applied to the obligation",
                        null=True,
                    ),
                ),
                (
                    "obligation",
                    models.ForeignKey(
                        help_text="Obligation this session recovers",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="recovery_sessions",
                        to="recovery.obligation",
                    ),
                ),
                (
                    "triggering_attempt",
                    models.ForeignKey(
                        blank=True,
                        help_text="Charge attempt whose outcome opened this session",
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="recovery_sessions",
                        to="recovery.chargeattempt",
                    ),
                ),
            ],
            options={
                "verbose_name": "Payment Recovery Session",
                "verbose_name_plural": "Payment Recovery Sessions",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["obligation", "consumed"],
                        name="recovery_pa_obligat_8e2f41_idx",
                    )
                ],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(
                            ("consumed", False),
                            ("invalidated_at__isnull", True),
                            ("failed_at__isnull", True),
                            ("expired_processed_at__isnull", True),
                        ),
                        fields=("obligation",),
                        name="one_open_recovery_session_per_obligation",
                    )
                ],
            },
        ),
        migrations.CreateModel(
            name="EscalationTicket",
            fields=[
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True,
                        help_text="Timestamp when this record was last modified",
                    ),
                ),
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier (UUID v4)",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "reason",
                    models.CharField(
                        choices=[
                            ("retries_exhausted", "Retries Exhausted"),
                            ("recovery_window_elapsed", "Recovery Window Elapsed"),
                            ("gateway_unavailable", "Gateway Unavailable"),
                        ],
                        help_text="Limit that moved the obligation to manual handling",
                        max_length=32,
                    ),
                ),
                (
                    "attempt_count_at_escalation",
                    models.PositiveIntegerField(
                        help_text="Number of charge attempts recorded when escalated"
                    ),
                ),
                (
                    "resolution",
                    models.CharField(
                        choices=[("open", "Open"), ("resolved", "Resolved")],
                        db_index=True,
                        default="open",
                        max_length=16,
                    ),
                ),
                ("resolution_note", models.TextField(blank=True, default="")),
                ("resolved_at", models.DateTimeField(blank=True, null=True)),
                (
                    "summary",
                    models.JSONField(
                        blank=True,
                        default=dict,
                        help_text="Attempt history summary at escalation time",
                    ),
                ),
                (
                    "obligation",
                    models.OneToOneField(
                        help_text="Obligation this ticket covers",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="escalation_ticket",
                        to="recovery.obligation",
                    ),
                ),
            ],
            options={
                "verbose_name": "Escalation Ticket",
                "verbose_name_plural": "Escalation Tickets",
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="ObligationEvent",
            fields=[
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True,
                        help_text="Timestamp when this record was last modified",
                    ),
                ),
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier (UUID v4)",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "event_type",
                    models.CharField(
                        choices=[
                            ("created", "Created"),
                            ("charge_attempt", "Charge Attempt"),
                            ("session_issued", "Recovery Session Issued"),
                            ("session_consumed", "Recovery Session Consumed"),
                            ("session_failed", "Recovery Session Failed"),
                            ("session_expired", "Recovery Session Expired"),
                            ("escalated", "Escalated"),
                            ("ticket_resolved", "Escalation Ticket Resolved"),
                            ("manual_resolution", "Manually Resolved"),
                            ("reconciled", "Reconciled"),
                        ],
                        db_index=True,
                        max_length=32,
                    ),
                ),
                ("from_status", models.CharField(blank=True, default="", max_length=32)),
                ("to_status", models.CharField(blank=True, default="", max_length=32)),
                (
                    "actor",
                    models.CharField(
                        default="system",
                        help_text="Who caused the event (system, scheduler, webhook, admin)",
                        max_length=64,
                    ),
                ),
                ("note", models.TextField(blank=True, default="")),
                ("data", models.JSONField(blank=True, default=dict)),
                (
                    "obligation",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="events",
                        to="recovery.obligation",
                    ),
                ),
            ],
            options={
                "verbose_name": "Obligation Event",
                "verbose_name_plural": "Obligation Events",
                "ordering": ["created_at"],
                "indexes": [
                    models.Index(
                        fields=["obligation", "event_type"],
                        name="recovery_ob_obligat_4d7a9c_idx",
                    )
                ],
            },
        ),
    ]
