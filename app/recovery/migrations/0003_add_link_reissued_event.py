"""
Record re-issued recovery links in the obligation history.
"""

from django.db import migrations, models


class Migration(migrations.Migration):
    dependencies = [
        ("recovery", "0002_add_recovery_schedules"),
    ]

    operations = [
        migrations.AlterField(
            model_name="obligationevent",
            name="event_type",
            field=models.CharField(
                choices=[
                    ("created", "Created"),
                    ("charge_attempt", "Charge Attempt"),
                    ("session_issued", "Recovery Session Issued"),
                    ("session_consumed", "Recovery Session Consumed"),
                    ("session_failed", "Recovery Session Failed"),
                    ("session_expired", "Recovery Session Expired"),
                    ("link_reissued", "Recovery Link Re-issued"),
                    ("escalated", "Escalated"),
                    ("ticket_resolved", "Escalation Ticket Resolved"),
                    ("manual_resolution", "Manually Resolved"),
                    ("reconciled", "Reconciled"),
                ],
                db_index=True,
                max_length=32,
            ),
        ),
    ]
