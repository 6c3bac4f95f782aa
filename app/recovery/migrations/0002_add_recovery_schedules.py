"""
Add celery-beat schedules for the recovery scanners.

The recovery engine holds no timers of its own. These periodic tasks are
the external scheduler that invokes it:
- process_due_obligations every 5 minutes
- expire_recovery_sessions every 15 minutes
- reconcile_obligations hourly
"""

from django.db import migrations

SCHEDULES = [
    {
        "name": "Process Due Obligations",
        "task": "recovery.tasks.process_due_obligations",
        "every": 5,
        "period": "minutes",
        "description": (
            "Finds obligations whose next attempt time has passed and queues "
            "a recovery trigger for each."
        ),
    },
    {
        "name": "Expire Recovery Sessions",
        "task": "recovery.tasks.expire_recovery_sessions",
        "every": 15,
        "period": "minutes",
        "description": (
            "Finds recovery links past expiry and applies the expiry "
            "transition to their obligations."
        ),
    },
    {
        "name": "Reconcile Obligations",
        "task": "recovery.tasks.reconcile_obligations",
        "every": 1,
        "period": "hours",
        "description": (
            "Re-derives obligation status from attempts, sessions and tickets "
            "and repairs drifted cached status."
        ),
    },
]


def create_periodic_tasks(apps, schema_editor):
    """Create the periodic tasks for the recovery scanners."""
    IntervalSchedule = apps.get_model("django_celery_beat", "IntervalSchedule")
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    for entry in SCHEDULES:
        schedule, _ = IntervalSchedule.objects.get_or_create(
            every=entry["every"],
            period=entry["period"],
        )
        PeriodicTask.objects.get_or_create(
            name=entry["name"],
            defaults={
                "task": entry["task"],
                "interval": schedule,
                "enabled": True,
                "description": entry["description"],
            },
        )


def remove_periodic_tasks(apps, schema_editor):
    """Remove the periodic tasks on migration rollback."""
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    PeriodicTask.objects.filter(
        name__in=[entry["name"] for entry in SCHEDULES],
    ).delete()


class Migration(migrations.Migration):
    dependencies = [
        ("recovery", "0001_initial"),
        ("django_celery_beat", "0019_alter_periodictasks_options"),
    ]

    operations = [
        migrations.RunPython(create_periodic_tasks, remove_periodic_tasks),
    ]
