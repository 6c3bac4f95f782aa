"""
Recovery app configuration.

This app owns chargeable obligations and everything recorded while
collecting them:
- Off-session charge attempts (append-only)
- On-session recovery sessions (payment links)
- Escalation tickets for admins
- Status history events
"""

from django.apps import AppConfig


class RecoveryConfig(AppConfig):
    """Configuration for the recovery application."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "recovery"
    verbose_name = "Charge Recovery"
