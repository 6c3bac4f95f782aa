"""
Celery configuration for the charge recovery service.

Celery runs the recovery entry points outside the request cycle:
- Periodic scans (due obligations, lapsed recovery links, reconciliation)
  scheduled by celery-beat from the database scheduler
- Single-obligation recovery runs queued by those scans
- Best-effort email delivery for chef and admin notifications

This configuration uses Redis as both the message broker and result backend.
Tasks are auto-discovered from all installed Django apps.

Usage:
    from recovery.tasks import trigger_obligation_recovery

    trigger_obligation_recovery.delay(str(obligation.id))

For more information, see:
https://docs.celeryq.dev/en/stable/django/first-steps-with-django.html
"""

import os

from celery import Celery

# Set the default Django settings module for the Celery worker
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

app = Celery("config")

# All Celery settings are prefixed with CELERY_ in settings.py
app.config_from_object("django.conf:settings", namespace="CELERY")

# Looks for a tasks.py module in each installed app
app.autodiscover_tasks()
