"""
Reconciliation: re-derive obligation status from the immutable records.

The cached Obligation.status is a convenience. The truth is the attempt
log, the recovery sessions and the escalation ticket. This service derives
the status from those records alone and repairs a non-terminal cached
status that has drifted (for example after a crash between the gateway call
and the final write, or a manual database edit).

Derivation priority:
    1. An escalation ticket exists                     -> escalated
    2. A succeeded attempt, a consumed session, or a
       manual resolution event                         -> charge_succeeded
    3. Latest attempt opened a session and the newest
       link is live or was re-issued after it ended    -> requires_action
    4. Any attempt or unpaid session exists            -> charge_failed
    5. Otherwise                                       -> pending

A cached terminal status is never rewritten; a mismatch there is reported
as a discrepancy for an admin.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from django.db.models import F
from django.utils import timezone

from core.services import BaseService

from recovery.exceptions import LockAcquisitionError, ObligationNotFoundError
from recovery.locks import obligation_lease
from recovery.models import (
    ChargeAttempt,
    EscalationTicket,
    Obligation,
    ObligationEvent,
    PaymentRecoverySession,
)
from recovery.state_machines import (
    AttemptOutcome,
    FailureDisposition,
    ObligationEventType,
    ObligationStatus,
)

if TYPE_CHECKING:
    import uuid


@dataclass
class ReconciliationReport:
    """Outcome of reconciling one obligation."""

    obligation_id: str
    cached_status: str
    derived_status: str
    repaired: bool = False
    skipped: bool = False

    @property
    def in_sync(self) -> bool:
        return self.cached_status == self.derived_status

    @property
    def discrepancy(self) -> bool:
        """Mismatch left for an admin."""
        return not self.in_sync and not self.repaired and not self.skipped


class ReconciliationService(BaseService):
    """Derives and repairs obligation status."""

    @classmethod
    def derive_status(cls, obligation: Obligation) -> str:
        if EscalationTicket.objects.filter(obligation=obligation).exists():
            return ObligationStatus.ESCALATED

        attempts = ChargeAttempt.objects.filter(obligation=obligation)
        sessions = PaymentRecoverySession.objects.filter(obligation=obligation)

        if (
            attempts.filter(outcome=AttemptOutcome.SUCCEEDED).exists()
            or sessions.filter(consumed=True).exists()
            or ObligationEvent.objects.filter(
                obligation=obligation,
                event_type=ObligationEventType.MANUAL_RESOLUTION,
            ).exists()
        ):
            return ObligationStatus.CHARGE_SUCCEEDED

        latest = attempts.order_by("-attempt_number").first()
        if latest is not None and latest.disposition in FailureDisposition.session_dispositions():
            newest = sessions.order_by("-created_at").first()
            if newest is None or not newest.ended_unpaid:
                return ObligationStatus.REQUIRES_ACTION
            # The last link ended unpaid; a later re-issue put it back on-session
            ended_at = newest.failed_at or newest.expired_processed_at
            if ObligationEvent.objects.filter(
                obligation=obligation,
                event_type=ObligationEventType.LINK_REISSUED,
                created_at__gt=ended_at,
            ).exists():
                return ObligationStatus.REQUIRES_ACTION

        if latest is not None or sessions.ended_unpaid().exists():
            return ObligationStatus.CHARGE_FAILED
        return ObligationStatus.PENDING

    @classmethod
    def reconcile(cls, obligation_id: uuid.UUID | str) -> ReconciliationReport:
        """
        Compare cached and derived status; repair a drifted non-terminal one.

        Runs under the recovery lease so it never races a live recovery
        step. A held lease skips the obligation.

        Raises:
            ObligationNotFoundError: no such obligation
        """
        logger = cls.get_logger()
        try:
            obligation = Obligation.objects.get(pk=obligation_id)
        except Obligation.DoesNotExist:
            raise ObligationNotFoundError(
                f"Obligation {obligation_id} not found",
                details={"obligation_id": str(obligation_id)},
            ) from None

        try:
            with obligation_lease(obligation.pk):
                obligation = Obligation.objects.get(pk=obligation.pk)
                report = ReconciliationReport(
                    obligation_id=str(obligation.pk),
                    cached_status=obligation.status,
                    derived_status=cls.derive_status(obligation),
                )
                if report.in_sync:
                    return report

                if obligation.is_terminal:
                    logger.error(
                        "Terminal obligation disagrees with its records",
                        extra={
                            "obligation_id": report.obligation_id,
                            "cached_status": report.cached_status,
                            "derived_status": report.derived_status,
                        },
                    )
                    return report

                report.repaired = cls._repair(obligation, report.derived_status)
                return report
        except LockAcquisitionError:
            logger.warning(
                "Recovery lease held elsewhere, skipping reconciliation",
                extra={"obligation_id": str(obligation.pk)},
            )
            return ReconciliationReport(
                obligation_id=str(obligation.pk),
                cached_status=obligation.status,
                derived_status=obligation.status,
                skipped=True,
            )

    @classmethod
    def _repair(cls, obligation: Obligation, derived_status: str) -> bool:
        """
        Write the derived status.

        Bypasses the FSM; the cached field only catches up with records
        that already exist. Guarded by the version read under the lease.
        """
        now = timezone.now()
        changes: dict[str, Any] = {
            "status": derived_status,
            "version": F("version") + 1,
            "updated_at": now,
        }
        if derived_status == ObligationStatus.CHARGE_SUCCEEDED:
            changes.update(resolved_at=obligation.resolved_at or now, next_attempt_at=None)
        elif derived_status == ObligationStatus.ESCALATED:
            changes.update(escalated_at=obligation.escalated_at or now, next_attempt_at=None)
        elif derived_status == ObligationStatus.CHARGE_FAILED and obligation.next_attempt_at is None:
            changes["next_attempt_at"] = now

        with cls.atomic():
            updated = Obligation.objects.filter(
                pk=obligation.pk, version=obligation.version
            ).update(**changes)
            if not updated:
                return False
            ObligationEvent.record(
                obligation,
                ObligationEventType.RECONCILED,
                from_status=obligation.status,
                to_status=derived_status,
                note="Cached status repaired from records",
            )

        cls.get_logger().warning(
            "Obligation status repaired",
            extra={
                "obligation_id": str(obligation.pk),
                "from_status": obligation.status,
                "to_status": derived_status,
            },
        )
        return True

    @classmethod
    def reconcile_all(cls) -> dict[str, int]:
        """Reconcile every obligation. Terminal mismatches are counted, never repaired."""
        counts = {"checked": 0, "repaired": 0, "discrepancies": 0, "skipped": 0}
        ids = Obligation.objects.order_by("created_at").values_list("pk", flat=True).iterator()
        for obligation_id in ids:
            report = cls.reconcile(obligation_id)
            counts["checked"] += 1
            if report.repaired:
                counts["repaired"] += 1
            elif report.skipped:
                counts["skipped"] += 1
            elif report.discrepancy:
                counts["discrepancies"] += 1
        return counts
