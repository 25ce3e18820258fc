"""
Per-deal auto-approval settings and dispute escalation.

Adds:
    - Deal.auto_approval_enabled, Deal.auto_approval_grace_hours
    - Dispute.requested_amount_cents, priority, admin_notes, escalated_by,
      escalated_at and the ESCALATED status
    - One active (open or escalated) dispute per deal
"""

import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):
    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
        ("escrow", "0002_periodic_tasks"),
    ]

    operations = [
        migrations.AddField(
            model_name="deal",
            name="auto_approval_enabled",
            field=models.BooleanField(
                blank=True,
                help_text="Auto-approve submitted milestones; null follows the global setting",
                null=True,
            ),
        ),
        migrations.AddField(
            model_name="deal",
            name="auto_approval_grace_hours",
            field=models.PositiveIntegerField(
                blank=True,
                help_text="Hours before a submission is auto-approved; null uses the global setting",
                null=True,
            ),
        ),
        migrations.AddField(
            model_name="dispute",
            name="requested_amount_cents",
            field=models.PositiveBigIntegerField(
                blank=True,
                help_text="Refund the raising party asks for; informational only",
                null=True,
            ),
        ),
        migrations.AddField(
            model_name="dispute",
            name="priority",
            field=models.CharField(
                choices=[
                    ("low", "Low"),
                    ("medium", "Medium"),
                    ("high", "High"),
                    ("urgent", "Urgent"),
                ],
                default="medium",
                max_length=10,
            ),
        ),
        migrations.AddField(
            model_name="dispute",
            name="admin_notes",
            field=models.TextField(blank=True, default=""),
        ),
        migrations.AddField(
            model_name="dispute",
            name="escalated_by",
            field=models.ForeignKey(
                blank=True,
                null=True,
                on_delete=django.db.models.deletion.SET_NULL,
                related_name="escalated_disputes",
                to=settings.AUTH_USER_MODEL,
            ),
        ),
        migrations.AddField(
            model_name="dispute",
            name="escalated_at",
            field=models.DateTimeField(blank=True, null=True),
        ),
        migrations.AlterField(
            model_name="dispute",
            name="status",
            field=models.CharField(
                choices=[
                    ("open", "Open"),
                    ("escalated", "Escalated"),
                    ("resolved", "Resolved"),
                ],
                db_index=True,
                default="open",
                max_length=20,
            ),
        ),
        migrations.RemoveConstraint(
            model_name="dispute",
            name="dispute_one_open_per_deal",
        ),
        migrations.AddConstraint(
            model_name="dispute",
            constraint=models.UniqueConstraint(
                condition=models.Q(status__in=("open", "escalated")),
                fields=("deal",),
                name="dispute_one_active_per_deal",
            ),
        ),
    ]
