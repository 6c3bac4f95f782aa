"""
Celery tasks for obligation recovery.

The engine holds no timers. celery-beat (DatabaseScheduler, see migration
0002_add_recovery_schedules) runs the periodic scans, which queue one
single-obligation task per candidate:

- process_due_obligations: pending obligations and those whose
  next_attempt_at has passed -> trigger_obligation_recovery
- expire_recovery_sessions: open links past expiry -> expire_recovery_session
- reconcile_obligations: re-derive status from the records

Usage:
    from recovery.tasks import trigger_obligation_recovery

    trigger_obligation_recovery.delay(str(obligation.id))

    # Chef finished the recovery link (processor callback)
    apply_recovery_session_outcome.delay(str(session.id), "succeeded")
"""

from __future__ import annotations

import logging

from celery import shared_task
from django.db import models
from django.utils import timezone

from recovery.exceptions import (
    LockAcquisitionError,
    ObligationNotFoundError,
    ObligationValidationError,
    RecoverySessionNotFoundError,
)
from recovery.models import Obligation, PaymentRecoverySession
from recovery.notifications import UnknownTemplateError, send_notification_email
from recovery.state_machines import ObligationStatus

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

# Maximum obligations or sessions queued per scan
BATCH_SIZE = 100

MAX_NOTIFICATION_RETRIES = 3


# =============================================================================
# Single-Obligation Tasks
# =============================================================================


@shared_task(bind=True)
def trigger_obligation_recovery(self, obligation_id: str, force: bool = False) -> dict:
    """
    Advance one obligation by one step.

    The lease makes concurrent deliveries safe: the loser no-ops.

    Returns:
        Dict with status ("processed", "not_found", "invalid") and the
        obligation status afterwards
    """
    from recovery.services import ObligationLifecycleController

    try:
        status = ObligationLifecycleController.trigger_recovery(obligation_id, force=force)
    except ObligationValidationError as e:
        logger.error(
            f"Invalid obligation_id: {obligation_id}",
            extra={"obligation_id": str(obligation_id), "error": e.message},
        )
        return {"status": "invalid", "obligation_id": str(obligation_id)}
    except ObligationNotFoundError:
        logger.warning("Obligation not found", extra={"obligation_id": str(obligation_id)})
        return {"status": "not_found", "obligation_id": str(obligation_id)}

    return {
        "status": "processed",
        "obligation_id": str(obligation_id),
        "obligation_status": status,
    }


@shared_task(
    bind=True,
    autoretry_for=(LockAcquisitionError,),
    retry_backoff=True,
    retry_backoff_max=60,
    retry_kwargs={"max_retries": 5},
    acks_late=True,
)
def apply_recovery_session_outcome(self, session_id: str, outcome: str) -> dict:
    """
    Apply the result of a recovery link.

    Retried while another worker holds the obligation lease; the outcome
    must not be dropped. Re-delivery of an applied outcome is a no-op.
    """
    from recovery.services import ObligationLifecycleController

    logger.info(
        "Applying recovery session outcome",
        extra={
            "session_id": str(session_id),
            "outcome": outcome,
            "celery_retries": self.request.retries,
        },
    )

    try:
        status = ObligationLifecycleController.on_recovery_session_consumed(session_id, outcome)
    except ObligationValidationError as e:
        logger.error(
            f"Rejected recovery session outcome: {e.message}",
            extra={"session_id": str(session_id), "outcome": outcome},
        )
        return {"status": "invalid", "session_id": str(session_id)}
    except RecoverySessionNotFoundError:
        logger.warning("Recovery session not found", extra={"session_id": str(session_id)})
        return {"status": "not_found", "session_id": str(session_id)}

    return {
        "status": "processed",
        "session_id": str(session_id),
        "obligation_status": status,
    }


@shared_task
def expire_recovery_session(session_id: str) -> dict:
    from recovery.services import ObligationLifecycleController

    try:
        status = ObligationLifecycleController.expire_recovery_session(session_id)
    except (ObligationValidationError, RecoverySessionNotFoundError) as e:
        logger.warning(
            f"Cannot expire recovery session: {e.message}",
            extra={"session_id": str(session_id)},
        )
        return {"status": "not_found", "session_id": str(session_id)}

    return {
        "status": "processed",
        "session_id": str(session_id),
        "obligation_status": status,
    }


# =============================================================================
# Periodic Scans (celery-beat)
# =============================================================================


@shared_task
def process_due_obligations() -> dict:
    """
    Queue a recovery step for every obligation that is due.

    Due means pending, or charge_failed/requires_action with a
    next_attempt_at in the past. Obligations waiting on a live recovery
    link carry no next_attempt_at and are left to the expiry scan.

    Returns:
        Dict with queued_count
    """
    now = timezone.now()
    due = (
        Obligation.objects.filter(
            models.Q(status=ObligationStatus.PENDING, next_attempt_at__isnull=True)
            | models.Q(
                status__in=[
                    ObligationStatus.PENDING,
                    ObligationStatus.CHARGE_FAILED,
                    ObligationStatus.REQUIRES_ACTION,
                ],
                next_attempt_at__lte=now,
            )
        )
        .order_by("next_attempt_at", "created_at")
        .values_list("id", flat=True)[:BATCH_SIZE]
    )

    queued_count = 0
    for obligation_id in due:
        try:
            trigger_obligation_recovery.delay(str(obligation_id))
            queued_count += 1
        except Exception as e:
            logger.error(
                f"Failed to queue obligation recovery: {e}",
                extra={"obligation_id": str(obligation_id)},
            )

    logger.info(
        f"Queued {queued_count} due obligations",
        extra={"queued_count": queued_count},
    )
    return {"queued_count": queued_count}


@shared_task
def expire_recovery_sessions() -> dict:
    """Queue the expiry transition for every open link past its expiry."""
    lapsed = (
        PaymentRecoverySession.objects.lapsed()
        .order_by("expires_at")
        .values_list("id", flat=True)[:BATCH_SIZE]
    )

    queued_count = 0
    for session_id in lapsed:
        try:
            expire_recovery_session.delay(str(session_id))
            queued_count += 1
        except Exception as e:
            logger.error(
                f"Failed to queue session expiry: {e}",
                extra={"session_id": str(session_id)},
            )

    logger.info(
        f"Queued {queued_count} lapsed recovery sessions",
        extra={"queued_count": queued_count},
    )
    return {"queued_count": queued_count}


@shared_task
def reconcile_obligations() -> dict:
    """Repair drifted non-terminal statuses; report terminal mismatches."""
    from recovery.services import ReconciliationService

    counts = ReconciliationService.reconcile_all()
    logger.info("Reconciliation finished", extra=counts)
    return counts


# =============================================================================
# Notifications
# =============================================================================


@shared_task(
    bind=True,
    autoretry_for=(OSError,),
    retry_backoff=True,
    retry_kwargs={"max_retries": MAX_NOTIFICATION_RETRIES},
)
def send_recovery_notification(self, recipient: str, template_id: str, payload: dict) -> bool:
    """
    Render and send one recovery email.

    SMTP failures (OSError) are retried; an unknown template is logged and
    dropped since retrying cannot fix it.
    """
    try:
        send_notification_email(recipient, template_id, payload)
    except UnknownTemplateError:
        logger.error(
            f"Unknown recovery notification template: {template_id}",
            extra={"recipient": recipient, "obligation_id": payload.get("obligation_id")},
        )
        return False

    logger.info(
        "Recovery notification sent",
        extra={"recipient": recipient, "template_id": template_id},
    )
    return True
