"""
Notification dispatch for the recovery engine.

The engine only knows the NotificationDispatcher protocol. The default
EmailNotificationDispatcher queues a Celery task per message; rendering and
sending happen in the worker with Django's mail framework.

Templates:
    recovery.chef_payment_link          - new card needed, link collects it
    recovery.chef_authentication_required - bank asked the chef to confirm
    recovery.admin_escalation           - automatic recovery gave up

Usage:
    from recovery.notifications import get_dispatcher

    get_dispatcher().dispatch(
        chef.email,
        "recovery.chef_payment_link",
        {"obligation_id": str(obligation.id), "amount": "150.00 USD", "link": url},
    )
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from django.conf import settings
from django.core.mail import EmailMultiAlternatives
from django.template.loader import render_to_string

if TYPE_CHECKING:
    from typing import Any

    from recovery.protocols import NotificationDispatcher

logger = logging.getLogger(__name__)

CHEF_PAYMENT_LINK = "recovery.chef_payment_link"
CHEF_AUTHENTICATION_REQUIRED = "recovery.chef_authentication_required"
ADMIN_ESCALATION = "recovery.admin_escalation"

# template_id -> (subject format, body template)
TEMPLATES: dict[str, tuple[str, str]] = {
    CHEF_PAYMENT_LINK: (
        "Action required: payment of {amount} is outstanding",
        "recovery/email/chef_payment_link.txt",
    ),
    CHEF_AUTHENTICATION_REQUIRED: (
        "Action required: confirm your payment of {amount}",
        "recovery/email/chef_authentication_required.txt",
    ),
    ADMIN_ESCALATION: (
        "Escalated obligation {obligation_id} ({amount})",
        "recovery/email/admin_escalation.txt",
    ),
}


class UnknownTemplateError(KeyError):
    pass


def render_notification(template_id: str, payload: dict[str, Any]) -> tuple[str, str]:
    """
    Render subject and plain-text body for a template.

    Raises:
        UnknownTemplateError: template_id is not registered
    """
    try:
        subject_format, template_name = TEMPLATES[template_id]
    except KeyError:
        raise UnknownTemplateError(template_id) from None

    subject = subject_format.format_map(_Defaulting(payload))
    body = render_to_string(template_name, payload)
    return subject, body


class _Defaulting(dict):
    def __missing__(self, key: str) -> str:
        return ""


def send_notification_email(recipient: str, template_id: str, payload: dict[str, Any]) -> None:
    """Render and send one notification email synchronously."""
    subject, body = render_notification(template_id, payload)
    message = EmailMultiAlternatives(
        subject=subject,
        body=body,
        from_email=settings.DEFAULT_FROM_EMAIL,
        to=[recipient],
    )
    message.send(fail_silently=False)


class EmailNotificationDispatcher:
    """Queues send_recovery_notification for each message."""

    def dispatch(self, recipient: str, template_id: str, payload: dict[str, Any]) -> None:
        from recovery.tasks import send_recovery_notification

        send_recovery_notification.delay(recipient, template_id, payload)
        logger.info(
            "Recovery notification queued",
            extra={"recipient": recipient, "template_id": template_id},
        )


_dispatcher: NotificationDispatcher | None = None


def get_dispatcher() -> NotificationDispatcher:
    return _dispatcher if _dispatcher is not None else EmailNotificationDispatcher()


def set_dispatcher(dispatcher: NotificationDispatcher | None) -> None:
    """Override the dispatcher. Pass None to restore email delivery."""
    global _dispatcher
    _dispatcher = dispatcher


def notify(recipient: str | None, template_id: str, payload: dict[str, Any]) -> bool:
    """
    Best-effort dispatch.

    Failures are logged and swallowed: the recovery session or escalation
    ticket is the source of truth, and the admin listings are the fallback
    discovery path.

    Returns:
        True if the message was handed to the dispatcher
    """
    if not recipient:
        logger.warning(
            "No recipient for recovery notification",
            extra={"template_id": template_id, "obligation_id": payload.get("obligation_id")},
        )
        return False
    try:
        get_dispatcher().dispatch(recipient, template_id, payload)
    except Exception:
        logger.warning(
            "Failed to dispatch recovery notification",
            extra={
                "recipient": recipient,
                "template_id": template_id,
                "obligation_id": payload.get("obligation_id"),
            },
            exc_info=True,
        )
        return False
    return True
