"""
Add celery-beat schedules for the escrow background tasks.

Schedules:
    - Auto-approve submitted milestones: every 15 minutes
    - Execute pending payouts: every 5 minutes
    - Request pending refunds: every 10 minutes
    - Reconcile stale funding: every 30 minutes
    - Reconcile stale payouts: every 30 minutes
"""

from django.db import migrations

PERIODIC_TASKS = [
    {
        "name": "Auto-approve Submitted Milestones",
        "task": "escrow.tasks.auto_approve_submitted_milestones",
        "every": 15,
        "description": (
            "Approves SUBMITTED milestones whose grace period has elapsed. "
            "Does nothing unless ESCROW_AUTO_APPROVAL_GRACE_HOURS is set."
        ),
    },
    {
        "name": "Execute Pending Escrow Payouts",
        "task": "escrow.tasks.execute_pending_payouts",
        "every": 5,
        "description": (
            "Requests provider transfers for approved milestones whose "
            "payout was deferred or never requested."
        ),
    },
    {
        "name": "Request Pending Escrow Refunds",
        "task": "escrow.tasks.request_pending_refunds",
        "every": 10,
        "description": "Requests refunds for refunded deals without a refund reference.",
    },
    {
        "name": "Reconcile Stale Escrow Funding",
        "task": "escrow.tasks.reconcile_stale_funding",
        "every": 30,
        "description": "Reads funding status from the provider for deals stuck in draft.",
    },
    {
        "name": "Reconcile Stale Escrow Payouts",
        "task": "escrow.tasks.reconcile_stale_payouts",
        "every": 30,
        "description": "Reads transfer status from the provider for unsettled payouts.",
    },
]


def create_periodic_tasks(apps, schema_editor):
    """Create the escrow periodic tasks."""
    IntervalSchedule = apps.get_model("django_celery_beat", "IntervalSchedule")
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    for entry in PERIODIC_TASKS:
        schedule, _ = IntervalSchedule.objects.get_or_create(
            every=entry["every"],
            period="minutes",
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
        name__in=[entry["name"] for entry in PERIODIC_TASKS],
    ).delete()


class Migration(migrations.Migration):
    dependencies = [
        ("escrow", "0001_initial"),
        ("django_celery_beat", "0019_alter_periodictasks_options"),
    ]

    operations = [
        migrations.RunPython(create_periodic_tasks, remove_periodic_tasks),
    ]
