"""
Obligation lifecycle controller: drives an obligation to a terminal state.

Every entry point runs under the per-obligation lease and re-reads the
obligation after acquiring it. Gateway calls happen first, outside any
database transaction; the resulting attempt, status transition, session
and history event are then written in one transaction guarded by the
obligation version read under the lease.

State machine:
    pending/charge_failed --attempt succeeded--> charge_succeeded
    pending/charge_failed --retry_later--> charge_failed (next_attempt_at)
    pending/charge_failed --retry_later, limit reached--> escalated
    pending/charge_failed --needs_authentication--> requires_action (auth link)
    pending/charge_failed --hard_decline/no_instrument--> requires_action (new card link)
    requires_action --link paid--> charge_succeeded
    requires_action --link expired or failed--> charge_failed, or escalated at the limit
    charge_failed --last attempt needs the chef--> requires_action (link re-issued, no charge)
    requires_action --recovery window elapsed--> escalated, even with a live link

Usage:
    from recovery.services import ObligationLifecycleController

    obligation = ObligationLifecycleController.create_obligation(
        chef=chef,
        kind=ObligationKind.OVERSTAY_PENALTY,
        amount_cents=15000,
        payment_method_ref="pm_123",
        customer_ref="cus_123",
    )
    status = ObligationLifecycleController.trigger_recovery(obligation.id)
"""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING, Any

from django.utils import timezone

from core.services import BaseService, ServiceResult

from recovery.conf import get_policy
from recovery.exceptions import (
    LockAcquisitionError,
    ObligationNotFoundError,
    ObligationValidationError,
    RecoverySessionNotFoundError,
    StaleRecordError,
)
from recovery.locks import check_version, obligation_lease
from recovery.models import ChargeAttempt, Obligation, ObligationEvent, PaymentRecoverySession
from recovery.services.charge_executor import ChargeAttemptExecutor
from recovery.services.escalation_manager import EscalationManager
from recovery.services.failure_classifier import FailureClassifier
from recovery.services.retry_accountant import RetryAccountant
from recovery.services.session_issuer import RecoverySessionIssuer
from recovery.state_machines import (
    AttemptOutcome,
    EscalationReason,
    FailureDisposition,
    ObligationEventType,
    ObligationKind,
    ObligationStatus,
    SessionOutcome,
    TicketResolution,
)

if TYPE_CHECKING:
    from datetime import datetime

    from django.contrib.auth.models import AbstractBaseUser
    from django.db.models import QuerySet

    from recovery.services.charge_executor import ExecutedCharge
    from recovery.services.session_issuer import IssuedLink


class ObligationLifecycleController(BaseService):
    """Entry points for creating, recovering and settling obligations."""

    # =========================================================================
    # Input Validation
    # =========================================================================

    @staticmethod
    def _parse_id(value: Any, field: str = "obligation_id") -> uuid.UUID:
        if isinstance(value, uuid.UUID):
            return value
        try:
            return uuid.UUID(str(value))
        except (TypeError, ValueError):
            raise ObligationValidationError(
                f"Malformed {field}: {value!r}",
                details={field: str(value)},
            ) from None

    @classmethod
    def _load(cls, obligation_id: uuid.UUID) -> Obligation:
        try:
            return Obligation.objects.select_related("chef").get(pk=obligation_id)
        except Obligation.DoesNotExist:
            raise ObligationNotFoundError(
                f"Obligation {obligation_id} not found",
                details={"obligation_id": str(obligation_id)},
            ) from None

    @staticmethod
    def _current_status(obligation_id: uuid.UUID) -> str | None:
        return (
            Obligation.objects.filter(pk=obligation_id)
            .values_list("status", flat=True)
            .first()
        )

    # =========================================================================
    # Creation
    # =========================================================================

    @classmethod
    def create_obligation(
        cls,
        chef: AbstractBaseUser,
        kind: str,
        amount_cents: int,
        currency: str = "usd",
        payment_method_ref: str | None = None,
        customer_ref: str | None = None,
        source_reference: str = "",
        description: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> Obligation:
        """
        Record a new obligation in pending.

        Raises:
            ObligationValidationError: unknown kind, non-positive amount or
                malformed currency
        """
        if kind not in ObligationKind.values:
            raise ObligationValidationError(
                f"Unknown obligation kind: {kind!r}",
                details={"kind": kind},
            )
        if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
            raise ObligationValidationError(
                "Amount must be a positive integer in minor units",
                details={"amount_cents": amount_cents},
            )
        if not isinstance(currency, str) or len(currency) != 3 or not currency.isalpha():
            raise ObligationValidationError(
                f"Invalid currency code: {currency!r}",
                details={"currency": currency},
            )

        with cls.atomic():
            obligation = Obligation.objects.create(
                chef=chef,
                kind=kind,
                amount_cents=amount_cents,
                currency=currency.lower(),
                payment_method_ref=payment_method_ref or None,
                customer_ref=customer_ref or None,
                source_reference=source_reference,
                description=description,
                metadata=metadata or {},
            )
            ObligationEvent.record(
                obligation,
                ObligationEventType.CREATED,
                to_status=obligation.status,
                note=f"{obligation.get_kind_display()} of {obligation.amount_display}",
                data={"kind": kind, "amount_cents": amount_cents},
            )

        cls.get_logger().info(
            "Obligation created",
            extra={
                "obligation_id": str(obligation.id),
                "kind": kind,
                "amount_cents": amount_cents,
            },
        )
        return obligation

    # =========================================================================
    # Recovery Trigger
    # =========================================================================

    @classmethod
    def trigger_recovery(cls, obligation_id: Any, force: bool = False) -> str:
        """
        Advance an obligation by at most one step. Idempotent.

        A trigger that finds the lease held elsewhere returns the current
        status without acting. Terminal obligations are left untouched.

        Args:
            obligation_id: Obligation to recover
            force: Ignore next_attempt_at (admin "retry now")

        Returns:
            Status after the step

        Raises:
            ObligationValidationError: malformed obligation id
            ObligationNotFoundError: no such obligation
        """
        obligation_id = cls._parse_id(obligation_id)
        if not Obligation.objects.filter(pk=obligation_id).exists():
            raise ObligationNotFoundError(
                f"Obligation {obligation_id} not found",
                details={"obligation_id": str(obligation_id)},
            )

        logger = cls.get_logger()
        try:
            with obligation_lease(obligation_id):
                return cls._recover(obligation_id, force)
        except LockAcquisitionError:
            logger.warning(
                "Recovery lease held elsewhere, skipping trigger",
                extra={"obligation_id": str(obligation_id)},
            )
        except StaleRecordError as e:
            logger.warning(
                "Obligation changed during recovery, write abandoned",
                extra={"obligation_id": str(obligation_id), **e.details},
            )
        return cls._current_status(obligation_id)

    @classmethod
    def _recover(cls, obligation_id: uuid.UUID, force: bool) -> str:
        obligation = cls._load(obligation_id)
        if obligation.is_terminal:
            return obligation.status

        now = timezone.now()
        if obligation.status == ObligationStatus.REQUIRES_ACTION:
            return cls._recover_on_session(obligation, now, force)

        if not force and obligation.next_attempt_at and obligation.next_attempt_at > now:
            return obligation.status

        # Limits reached through expired sessions or the window: no new charge
        reason = RetryAccountant.escalation_reason(obligation, now)
        if reason:
            return cls._escalate(obligation, reason)

        # The stored card needs the chef (authentication, or a new card): a
        # lapsed link is re-issued, the card is not charged off-session again
        latest = cls._latest_attempt(obligation)
        if latest is not None and FailureClassifier.opens_session(latest.disposition):
            return cls._reissue_link(obligation, now, latest)

        executed = ChargeAttemptExecutor.execute(obligation)
        issued = None
        if FailureClassifier.opens_session(executed.disposition):
            pending = 1 if executed.outcome == AttemptOutcome.DECLINED else 0
            if RetryAccountant.escalation_reason(obligation, now, pending_failures=pending) is None:
                issued = RecoverySessionIssuer.open_link(
                    obligation,
                    executed.disposition,
                    executed.charge.processor_reference,
                )
        return cls._apply_attempt(obligation, executed, issued, now)

    @staticmethod
    def _latest_attempt(obligation: Obligation) -> ChargeAttempt | None:
        return (
            ChargeAttempt.objects.filter(obligation=obligation)
            .order_by("-attempt_number")
            .first()
        )

    @classmethod
    def _apply_attempt(
        cls,
        obligation: Obligation,
        executed: ExecutedCharge,
        issued: IssuedLink | None,
        now: datetime,
    ) -> str:
        """Write the attempt and its transition in one transaction."""
        session = None
        ticket = None
        created = False

        with cls.atomic():
            locked = check_version(Obligation, obligation.pk, obligation.version)
            from_status = locked.status
            attempt = ChargeAttemptExecutor.record(locked, executed)

            reason = None
            if executed.succeeded:
                locked.mark_succeeded()
                locked.save()
                RecoverySessionIssuer.invalidate_open_sessions(locked)
            else:
                reason = RetryAccountant.escalation_reason(locked, now)
                if reason is None and executed.disposition == FailureDisposition.RETRY_LATER:
                    locked.mark_charge_failed(
                        next_attempt_at=RetryAccountant.next_attempt_at(
                            locked, attempt.attempt_number, now
                        )
                    )
                    locked.save()
                elif reason is None:
                    # Link could not be opened: the scheduler re-issues it
                    opened = issued is not None and issued.opened
                    retry_at = None if opened else now + get_policy().backoff_base
                    locked.require_action(next_attempt_at=retry_at)
                    locked.save()
                    if issued is not None:
                        session = RecoverySessionIssuer.persist(locked, attempt, issued)

            ObligationEvent.record(
                locked,
                ObligationEventType.CHARGE_ATTEMPT,
                from_status=from_status,
                to_status=locked.status,
                note=f"Attempt {attempt.attempt_number}: {attempt.outcome}",
                data={
                    "attempt_number": attempt.attempt_number,
                    "outcome": attempt.outcome,
                    "disposition": attempt.disposition,
                    "decline_code": attempt.decline_code,
                },
            )
            if reason:
                ticket, created = EscalationManager.open_ticket(locked, reason)

        if session is not None:
            RecoverySessionIssuer.notify(session, attempt.failure_message)
        if created:
            EscalationManager.notify_admins(ticket)

        cls.get_logger().info(
            "Recovery attempt applied",
            extra={
                "obligation_id": str(locked.id),
                "attempt_number": attempt.attempt_number,
                "outcome": attempt.outcome,
                "disposition": attempt.disposition,
                "from_status": from_status,
                "to_status": locked.status,
            },
        )
        return locked.status

    @classmethod
    def _recover_on_session(cls, obligation: Obligation, now: datetime, force: bool) -> str:
        """requires_action: wait on the live link, apply its expiry, or re-issue it."""
        session = (
            PaymentRecoverySession.objects.filter(obligation=obligation)
            .open()
            .order_by("-created_at")
            .first()
        )
        if session is not None:
            if session.expires_at > now:
                if RetryAccountant.window_elapsed(obligation, now):
                    return cls._escalate(obligation, EscalationReason.RECOVERY_WINDOW_ELAPSED)
                return obligation.status
            return cls._apply_session_failure(obligation, session, expired=True, now=now)

        if not force and obligation.next_attempt_at and obligation.next_attempt_at > now:
            return obligation.status

        reason = RetryAccountant.escalation_reason(obligation, now)
        if reason:
            return cls._escalate(obligation, reason)

        return cls._reissue_link(obligation, now, cls._latest_attempt(obligation))

    @classmethod
    def _reissue_link(
        cls,
        obligation: Obligation,
        now: datetime,
        attempt: ChargeAttempt | None,
    ) -> str:
        """
        Open a new link for the latest attempt. Never another off-session charge.

        A charge_failed obligation whose last link lapsed goes back to
        requires_action.
        """
        disposition = attempt.disposition if attempt else FailureDisposition.NO_INSTRUMENT
        auth_ref = attempt.processor_reference if attempt else ""
        issued = RecoverySessionIssuer.open_link(obligation, disposition, auth_ref)

        with cls.atomic():
            locked = check_version(Obligation, obligation.pk, obligation.version)
            from_status = locked.status
            retry_at = None if issued.opened else now + get_policy().backoff_base
            if locked.status == ObligationStatus.REQUIRES_ACTION:
                locked.next_attempt_at = retry_at
            else:
                locked.require_action(next_attempt_at=retry_at)
            locked.save()
            session = RecoverySessionIssuer.persist(locked, attempt, issued)

            if from_status != locked.status:
                ObligationEvent.record(
                    locked,
                    ObligationEventType.LINK_REISSUED,
                    from_status=from_status,
                    to_status=locked.status,
                    note="Stored card needs the chef; recovery link re-issued",
                    data={
                        "attempt_number": attempt.attempt_number if attempt else None,
                        "disposition": disposition,
                        "link_opened": issued.opened,
                    },
                )

        if session is not None:
            RecoverySessionIssuer.notify(session, attempt.failure_message if attempt else "")
        return locked.status

    @classmethod
    def _escalate(cls, obligation: Obligation, reason: str) -> str:
        with cls.atomic():
            locked = check_version(Obligation, obligation.pk, obligation.version)
            ticket, created = EscalationManager.open_ticket(locked, reason)
        if created:
            EscalationManager.notify_admins(ticket)
        return locked.status

    # =========================================================================
    # Recovery Sessions
    # =========================================================================

    @classmethod
    def on_recovery_session_consumed(cls, session_id: Any, outcome: str) -> str:
        """
        Apply the reported result of a recovery link. Idempotent.

        Waits a bounded time for the lease, since the outcome must not be
        lost; LockAcquisitionError propagates so the caller can retry.

        Args:
            session_id: PaymentRecoverySession id
            outcome: "succeeded" or "failed"

        Returns:
            Obligation status afterwards

        Raises:
            ObligationValidationError: malformed id or unknown outcome
            RecoverySessionNotFoundError: no such session
            LockAcquisitionError: lease still held after the wait
        """
        session_id = cls._parse_id(session_id, field="session_id")
        if outcome not in SessionOutcome.values:
            raise ObligationValidationError(
                f"Unknown session outcome: {outcome!r}",
                details={"session_id": str(session_id), "outcome": outcome},
            )
        obligation_id = cls._session_obligation_id(session_id)

        with obligation_lease(obligation_id, blocking=True):
            obligation = cls._load(obligation_id)
            session = PaymentRecoverySession.objects.get(pk=session_id)
            if session.consumed or session.failed_at is not None:
                return obligation.status

            if outcome == SessionOutcome.SUCCEEDED:
                return cls._apply_session_payment(obligation, session)
            if not session.is_open:
                return obligation.status
            return cls._apply_session_failure(
                obligation, session, expired=False, now=timezone.now()
            )

    @classmethod
    def expire_recovery_session(cls, session_id: Any) -> str | None:
        """
        Apply the expiry of a lapsed link.

        Also closes lapsed links on escalated obligations, without a
        status change, so the expiry scan does not revisit them.
        """
        session_id = cls._parse_id(session_id, field="session_id")
        obligation_id = cls._session_obligation_id(session_id)

        try:
            with obligation_lease(obligation_id):
                obligation = cls._load(obligation_id)
                session = PaymentRecoverySession.objects.get(pk=session_id)
                now = timezone.now()
                if not session.is_open or session.expires_at > now:
                    return obligation.status
                return cls._apply_session_failure(obligation, session, expired=True, now=now)
        except LockAcquisitionError:
            cls.get_logger().warning(
                "Recovery lease held elsewhere, skipping session expiry",
                extra={"obligation_id": str(obligation_id), "session_id": str(session_id)},
            )
        except StaleRecordError as e:
            cls.get_logger().warning(
                "Obligation changed during session expiry, write abandoned",
                extra={"obligation_id": str(obligation_id), **e.details},
            )
        return cls._current_status(obligation_id)

    @staticmethod
    def _session_obligation_id(session_id: uuid.UUID) -> uuid.UUID:
        obligation_id = (
            PaymentRecoverySession.objects.filter(pk=session_id)
            .values_list("obligation_id", flat=True)
            .first()
        )
        if obligation_id is None:
            raise RecoverySessionNotFoundError(
                f"Recovery session {session_id} not found",
                details={"session_id": str(session_id)},
            )
        return obligation_id

    @classmethod
    def _apply_session_payment(
        cls,
        obligation: Obligation,
        session: PaymentRecoverySession,
    ) -> str:
        """The chef paid through the link."""
        logger = cls.get_logger()
        with cls.atomic():
            locked = check_version(Obligation, obligation.pk, obligation.version)
            from_status = locked.status

            now = timezone.now()
            session.consumed = True
            session.consumed_at = now
            session.save(update_fields=["consumed", "consumed_at", "updated_at"])

            if locked.is_terminal:
                logger.warning(
                    "Payment received for settled obligation",
                    extra={
                        "obligation_id": str(locked.id),
                        "session_id": str(session.id),
                        "status": locked.status,
                    },
                )
            else:
                locked.mark_succeeded()
                locked.save()
                RecoverySessionIssuer.invalidate_open_sessions(locked)

            ObligationEvent.record(
                locked,
                ObligationEventType.SESSION_CONSUMED,
                from_status=from_status,
                to_status=locked.status,
                note="Recovery link paid",
                data={"session_id": str(session.id), "purpose": session.purpose},
            )

        logger.info(
            "Recovery session consumed",
            extra={
                "obligation_id": str(locked.id),
                "session_id": str(session.id),
                "status": locked.status,
            },
        )
        return locked.status

    @classmethod
    def _apply_session_failure(
        cls,
        obligation: Obligation,
        session: PaymentRecoverySession,
        expired: bool,
        now: datetime,
    ) -> str:
        """
        Close a link that ended unpaid and count it as a failure.

        requires_action obligations go to charge_failed with backoff, or
        straight to escalated when this failure reaches a limit.
        """
        ticket = None
        created = False

        with cls.atomic():
            locked = check_version(Obligation, obligation.pk, obligation.version)
            from_status = locked.status

            if expired:
                session.expired_processed_at = now
                session.save(update_fields=["expired_processed_at", "updated_at"])
            else:
                session.failed_at = now
                session.save(update_fields=["failed_at", "updated_at"])

            reason = None
            if locked.status == ObligationStatus.REQUIRES_ACTION:
                reason = RetryAccountant.escalation_reason(locked, now)
                if reason is None:
                    failures = RetryAccountant.failure_count(locked)
                    locked.mark_charge_failed(
                        next_attempt_at=RetryAccountant.next_attempt_at(locked, failures, now)
                    )
                    locked.save()

            ObligationEvent.record(
                locked,
                ObligationEventType.SESSION_EXPIRED if expired else ObligationEventType.SESSION_FAILED,
                from_status=from_status,
                to_status=locked.status,
                note="Recovery link expired unpaid" if expired else "Recovery link payment failed",
                data={"session_id": str(session.id), "purpose": session.purpose},
            )
            if reason:
                ticket, created = EscalationManager.open_ticket(locked, reason)

        if created:
            EscalationManager.notify_admins(ticket)

        cls.get_logger().info(
            "Recovery session ended unpaid",
            extra={
                "obligation_id": str(locked.id),
                "session_id": str(session.id),
                "expired": expired,
                "status": locked.status,
            },
        )
        return locked.status

    # =========================================================================
    # Manual Handling & Queries
    # =========================================================================

    @classmethod
    def resolve_manually(
        cls,
        obligation_id: Any,
        note: str,
        actor: str = "admin",
    ) -> ServiceResult[Obligation]:
        """Record out-of-band collection and settle the obligation."""
        obligation_id = cls._parse_id(obligation_id)
        try:
            with obligation_lease(obligation_id, blocking=True):
                with cls.atomic():
                    locked = Obligation.objects.select_for_update().filter(pk=obligation_id).first()
                    if locked is None:
                        return ServiceResult.failure(
                            f"Obligation {obligation_id} not found",
                            error_code="OBLIGATION_NOT_FOUND",
                        )
                    if locked.is_terminal:
                        return ServiceResult.failure(
                            f"Obligation is already {locked.status}",
                            error_code="OBLIGATION_ALREADY_TERMINAL",
                        )

                    from_status = locked.status
                    locked.mark_succeeded()
                    locked.save()
                    RecoverySessionIssuer.invalidate_open_sessions(locked)
                    ObligationEvent.record(
                        locked,
                        ObligationEventType.MANUAL_RESOLUTION,
                        from_status=from_status,
                        to_status=locked.status,
                        actor=actor,
                        note=note,
                    )
        except LockAcquisitionError as e:
            return cls.handle_exception(e, "Manual resolution", log_level=logging.WARNING)

        cls.get_logger().info(
            "Obligation resolved manually",
            extra={"obligation_id": str(obligation_id), "actor": actor},
        )
        return ServiceResult.success(locked)

    @classmethod
    def list_unresolved_obligations(
        cls,
        chef: AbstractBaseUser | None = None,
    ) -> QuerySet[Obligation]:
        """
        Obligations still owed.

        An escalated obligation counts as settled once its ticket is resolved.
        """
        queryset = Obligation.objects.exclude(status=ObligationStatus.CHARGE_SUCCEEDED).exclude(
            status=ObligationStatus.ESCALATED,
            escalation_ticket__resolution=TicketResolution.RESOLVED,
        )
        if chef is not None:
            queryset = queryset.filter(chef=chef)
        return queryset

    @classmethod
    def has_unresolved_obligations(cls, chef: AbstractBaseUser) -> bool:
        """Booking gate check."""
        return cls.list_unresolved_obligations(chef).exists()
