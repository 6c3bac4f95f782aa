"""
Escalation manager: hands obligations to an admin when automation gives up.

Escalation is terminal for automatic recovery. The obligation moves to
escalated, one EscalationTicket is opened (one-to-one with the obligation)
and every address in RECOVERY_ADMIN_EMAILS is notified with the attempt
history. A recovery link that is still open stays usable: if the chef pays
through it, the payment is recorded and the admin closes the ticket.

Usage:
    from recovery.services import EscalationManager

    ticket = EscalationManager.escalate(obligation, EscalationReason.RETRIES_EXHAUSTED)

    result = EscalationManager.resolve(ticket.id, "Collected by e-transfer")
    if not result.success:
        logger.warning(result.error)
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any

from django_fsm import TransitionNotAllowed

from core.services import BaseService, ServiceResult

from recovery.conf import get_policy
from recovery.exceptions import InvalidStateTransitionError
from recovery.models import ChargeAttempt, EscalationTicket, Obligation, ObligationEvent
from recovery.notifications import ADMIN_ESCALATION, notify
from recovery.services.retry_accountant import RetryAccountant
from recovery.state_machines import ObligationEventType, ObligationStatus, TicketResolution

if TYPE_CHECKING:
    from django.db.models import QuerySet


class EscalationManager(BaseService):
    """Opens, announces and resolves escalation tickets."""

    @classmethod
    def attempt_summary(cls, obligation: Obligation) -> dict[str, Any]:
        """Attempt history snapshot for the ticket and the admin email."""
        attempts = list(
            ChargeAttempt.objects.filter(obligation=obligation)
            .order_by("attempt_number")
            .values("attempt_number", "outcome", "decline_code", "created_at")
        )
        return {
            "attempt_count": len(attempts),
            "decline_count": RetryAccountant.decline_count(obligation),
            "gateway_error_count": sum(
                1 for a in attempts if a["outcome"] == "gateway_error"
            ),
            "failed_session_count": RetryAccountant.failed_session_count(obligation),
            "attempts": [
                {**a, "created_at": a["created_at"].isoformat()} for a in attempts
            ],
        }

    # =========================================================================
    # Escalation
    # =========================================================================

    @classmethod
    def open_ticket(
        cls,
        obligation: Obligation,
        reason: str,
        actor: str = "system",
    ) -> tuple[EscalationTicket, bool]:
        """
        Escalate and open the ticket inside the caller's transaction.

        The obligation must be a fresh instance read under the lease or a row
        lock. Admins are not notified here; call notify_admins() once the
        transaction has committed.

        Returns:
            (ticket, created)

        Raises:
            InvalidStateTransitionError: obligation already charge_succeeded
        """
        existing = EscalationTicket.objects.filter(obligation=obligation).first()
        if existing is not None:
            return existing, False

        from_status = obligation.status
        if from_status != ObligationStatus.ESCALATED:
            try:
                obligation.escalate()
            except TransitionNotAllowed:
                raise InvalidStateTransitionError(
                    f"Cannot escalate obligation in state '{from_status}'",
                    details={
                        "obligation_id": str(obligation.id),
                        "current_state": from_status,
                        "transition": "escalate",
                    },
                ) from None
            obligation.save()

        summary = cls.attempt_summary(obligation)
        ticket = EscalationTicket.objects.create(
            obligation=obligation,
            reason=reason,
            attempt_count_at_escalation=summary["attempt_count"],
            summary=summary,
        )
        ObligationEvent.record(
            obligation,
            ObligationEventType.ESCALATED,
            from_status=from_status,
            to_status=ObligationStatus.ESCALATED,
            actor=actor,
            note=f"Escalated: {reason}",
            data={"reason": reason, "ticket_id": str(ticket.id)},
        )

        cls.get_logger().error(
            "Obligation escalated",
            extra={
                "obligation_id": str(obligation.id),
                "ticket_id": str(ticket.id),
                "reason": reason,
                "attempt_count": summary["attempt_count"],
            },
        )
        return ticket, True

    @classmethod
    def escalate(
        cls,
        obligation: Obligation,
        reason: str,
        actor: str = "system",
    ) -> EscalationTicket:
        """
        Escalate an obligation. Idempotent.

        An obligation that already has a ticket gets that ticket back and no
        second admin notification is sent.
        """
        with cls.atomic():
            locked = Obligation.objects.select_for_update().get(pk=obligation.pk)
            ticket, created = cls.open_ticket(locked, reason, actor=actor)

        if created:
            cls.notify_admins(ticket)
        return ticket

    @classmethod
    def notify_admins(cls, ticket: EscalationTicket) -> int:
        """
        Notify every configured admin. Best-effort.

        Returns:
            Number of notifications handed to the dispatcher
        """
        recipients = get_policy().admin_emails
        obligation = ticket.obligation
        if not recipients:
            cls.get_logger().warning(
                "No admin recipients configured for escalation",
                extra={"obligation_id": str(obligation.id), "ticket_id": str(ticket.id)},
            )
            return 0

        payload = {
            "obligation_id": str(obligation.id),
            "ticket_id": str(ticket.id),
            "kind": obligation.kind,
            "chef_email": getattr(obligation.chef, "email", ""),
            "amount": obligation.amount_display,
            "amount_cents": obligation.amount_cents,
            "currency": obligation.currency,
            "reason": ticket.reason,
            **ticket.summary,
        }
        return sum(
            1 for recipient in recipients if notify(recipient, ADMIN_ESCALATION, payload)
        )

    # =========================================================================
    # Manual Handling
    # =========================================================================

    @classmethod
    def resolve(
        cls,
        ticket_id: uuid.UUID | str,
        note: str,
        actor: str = "admin",
    ) -> ServiceResult[EscalationTicket]:
        """
        Close a ticket after manual collection or waiver.

        The obligation stays escalated; the booking gate treats an escalated
        obligation with a resolved ticket as settled.
        """
        try:
            with cls.atomic():
                ticket = (
                    EscalationTicket.objects.select_for_update()
                    .select_related("obligation")
                    .get(pk=ticket_id)
                )
                if ticket.is_resolved:
                    return ServiceResult.failure(
                        f"Ticket {ticket_id} is already resolved",
                        error_code="TICKET_ALREADY_RESOLVED",
                    )

                ticket.resolve(note)
                ticket.save()
                ObligationEvent.record(
                    ticket.obligation,
                    ObligationEventType.TICKET_RESOLVED,
                    from_status=ticket.obligation.status,
                    to_status=ticket.obligation.status,
                    actor=actor,
                    note=note,
                    data={"ticket_id": str(ticket.id)},
                )
        except EscalationTicket.DoesNotExist:
            return ServiceResult.failure(
                f"Escalation ticket {ticket_id} not found",
                error_code="ESCALATION_TICKET_NOT_FOUND",
            )

        cls.get_logger().info(
            "Escalation ticket resolved",
            extra={"ticket_id": str(ticket.id), "obligation_id": str(ticket.obligation_id)},
        )
        return ServiceResult.success(ticket)

    @classmethod
    def list_open_tickets(cls) -> QuerySet[EscalationTicket]:
        return (
            EscalationTicket.objects.filter(resolution=TicketResolution.OPEN)
            .select_related("obligation", "obligation__chef")
            .order_by("created_at")
        )
