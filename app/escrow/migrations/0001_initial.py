"""
Initial escrow schema.

Creates:
    - Deal, Milestone (FSM state, version counter)
    - Deliverable, Dispute
    - Payout (FSM status, one active payout per milestone)
    - ConnectedAccount
    - LedgerEvent (append-only, unique provider_event_id)
"""

import uuid

import django.core.serializers.json
import django.db.models.deletion
import django.utils.timezone
import django_fsm
from django.conf import settings
from django.db import migrations, models


def _uuid_pk():
    return (
        "id",
        models.UUIDField(
            default=uuid.uuid4,
            editable=False,
            help_text="Unique identifier for this record",
            primary_key=True,
            serialize=False,
        ),
    )


def _timestamps():
    return [
        (
            "created_at",
            models.DateTimeField(
                auto_now_add=True,
                db_index=True,
                help_text="Timestamp when this record was created",
            ),
        ),
        (
            "updated_at",
            models.DateTimeField(
                auto_now=True,
                help_text="Timestamp when this record was last modified",
            ),
        ),
    ]


def _version():
    return (
        "version",
        models.PositiveIntegerField(
            default=1,
            help_text="Version for optimistic locking - incremented on each save",
        ),
    )


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Deal",
            fields=[
                _uuid_pk(),
                *_timestamps(),
                _version(),
                ("title", models.CharField(blank=True, default="", max_length=200)),
                (
                    "amount_cents",
                    models.PositiveBigIntegerField(
                        help_text="Total amount in smallest currency unit; sum of milestones",
                    ),
                ),
                (
                    "currency",
                    models.CharField(
                        default="usd",
                        help_text="ISO 4217 currency code (lowercase)",
                        max_length=3,
                    ),
                ),
                (
                    "state",
                    django_fsm.FSMField(
                        choices=[
                            ("draft", "Draft"),
                            ("funded", "Funded"),
                            ("released", "Released"),
                            ("disputed", "Disputed"),
                            ("refunded", "Refunded"),
                        ],
                        db_index=True,
                        default="draft",
                        help_text="Current state of the deal (managed by FSM)",
                        max_length=50,
                        protected=True,
                    ),
                ),
                (
                    "provider",
                    models.CharField(
                        default="stripe",
                        help_text="Payments provider holding the escrow",
                        max_length=32,
                    ),
                ),
                (
                    "funding_reference",
                    models.CharField(
                        blank=True,
                        help_text="Provider escrow handle, set when funding is initiated",
                        max_length=255,
                        null=True,
                        unique=True,
                    ),
                ),
                (
                    "escrow_reference",
                    models.CharField(
                        blank=True,
                        help_text="Confirmed escrow handle, set when funding succeeds",
                        max_length=255,
                        null=True,
                        unique=True,
                    ),
                ),
                (
                    "refund_amount_cents",
                    models.PositiveBigIntegerField(
                        blank=True,
                        help_text="Amount returned to the payer after a refund resolution",
                        null=True,
                    ),
                ),
                (
                    "refund_reference",
                    models.CharField(
                        blank=True,
                        help_text="Provider refund handle",
                        max_length=255,
                        null=True,
                    ),
                ),
                ("accepted_at", models.DateTimeField(blank=True, null=True)),
                ("funded_at", models.DateTimeField(blank=True, null=True)),
                ("disputed_at", models.DateTimeField(blank=True, null=True)),
                ("released_at", models.DateTimeField(blank=True, null=True)),
                ("refunded_at", models.DateTimeField(blank=True, null=True)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                (
                    "payer",
                    models.ForeignKey(
                        help_text="Funding party",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="funded_deals",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "receiver",
                    models.ForeignKey(
                        help_text="Receiving party",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="received_deals",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["payer", "state"], name="deal_payer_state_idx"),
                    models.Index(fields=["receiver", "state"], name="deal_receiver_state_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(amount_cents__gt=0),
                        name="deal_amount_positive",
                    ),
                    models.CheckConstraint(
                        condition=(
                            models.Q(state="draft", escrow_reference__isnull=True)
                            | (
                                ~models.Q(state="draft")
                                & models.Q(escrow_reference__isnull=False)
                            )
                        ),
                        name="deal_escrow_reference_matches_state",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Milestone",
            fields=[
                _uuid_pk(),
                *_timestamps(),
                _version(),
                ("position", models.PositiveSmallIntegerField(default=0)),
                ("title", models.CharField(max_length=200)),
                ("description", models.TextField(blank=True, default="")),
                (
                    "amount_cents",
                    models.PositiveBigIntegerField(
                        help_text="Milestone share of the deal amount",
                    ),
                ),
                ("currency", models.CharField(default="usd", max_length=3)),
                (
                    "state",
                    django_fsm.FSMField(
                        choices=[
                            ("pending", "Pending"),
                            ("submitted", "Submitted"),
                            ("approved", "Approved"),
                            ("released", "Released"),
                            ("disputed", "Disputed"),
                        ],
                        db_index=True,
                        default="pending",
                        max_length=50,
                        protected=True,
                    ),
                ),
                ("due_at", models.DateTimeField(blank=True, null=True)),
                ("submitted_at", models.DateTimeField(blank=True, db_index=True, null=True)),
                ("approved_at", models.DateTimeField(blank=True, null=True)),
                ("released_at", models.DateTimeField(blank=True, null=True)),
                ("disputed_at", models.DateTimeField(blank=True, null=True)),
                (
                    "auto_approved",
                    models.BooleanField(
                        default=False,
                        help_text="Approved by the grace-period timeout rather than the payer",
                    ),
                ),
                ("revision_count", models.PositiveIntegerField(default=0)),
                (
                    "deal",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="milestones",
                        to="escrow.deal",
                    ),
                ),
            ],
            options={
                "ordering": ["deal", "position", "created_at"],
                "indexes": [
                    models.Index(
                        fields=["state", "submitted_at"],
                        name="milestone_state_submitted_idx",
                    ),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(amount_cents__gt=0),
                        name="milestone_amount_positive",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Deliverable",
            fields=[
                _uuid_pk(),
                *_timestamps(),
                ("url", models.URLField(blank=True, default="", max_length=500)),
                (
                    "file_reference",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text="Opaque handle of an uploaded file",
                        max_length=255,
                    ),
                ),
                ("note", models.TextField(blank=True, default="")),
                ("revision_feedback", models.TextField(blank=True, default="")),
                ("revision_requested_at", models.DateTimeField(blank=True, null=True)),
                (
                    "milestone",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="deliverables",
                        to="escrow.milestone",
                    ),
                ),
                (
                    "submitted_by",
                    models.ForeignKey(
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="deliverables",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="Dispute",
            fields=[
                _uuid_pk(),
                *_timestamps(),
                (
                    "category",
                    models.CharField(
                        choices=[
                            ("quality", "Quality"),
                            ("deadline", "Deadline"),
                            ("communication", "Communication"),
                            ("payment", "Payment"),
                            ("scope", "Scope"),
                            ("other", "Other"),
                        ],
                        default="other",
                        max_length=20,
                    ),
                ),
                ("reason", models.TextField()),
                (
                    "status",
                    models.CharField(
                        choices=[("open", "Open"), ("resolved", "Resolved")],
                        db_index=True,
                        default="open",
                        max_length=20,
                    ),
                ),
                (
                    "resolution",
                    models.CharField(
                        blank=True,
                        choices=[
                            ("release", "Release to receiver"),
                            ("refund", "Refund to payer"),
                        ],
                        default="",
                        max_length=20,
                    ),
                ),
                ("resolution_note", models.TextField(blank=True, default="")),
                ("resolved_at", models.DateTimeField(blank=True, null=True)),
                (
                    "deal",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="disputes",
                        to="escrow.deal",
                    ),
                ),
                (
                    "raised_by",
                    models.ForeignKey(
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="raised_disputes",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "resolved_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="resolved_disputes",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(status="open"),
                        fields=("deal",),
                        name="dispute_one_open_per_deal",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Payout",
            fields=[
                _uuid_pk(),
                *_timestamps(),
                _version(),
                (
                    "provider",
                    models.CharField(
                        default="stripe",
                        help_text="Payments provider executing the transfer",
                        max_length=32,
                    ),
                ),
                (
                    "provider_reference",
                    models.CharField(
                        blank=True,
                        help_text="Provider transfer handle",
                        max_length=255,
                        null=True,
                        unique=True,
                    ),
                ),
                (
                    "destination",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text="Provider account id receiving the funds",
                        max_length=255,
                    ),
                ),
                (
                    "amount_cents",
                    models.PositiveBigIntegerField(
                        help_text="Net amount in smallest currency unit",
                    ),
                ),
                (
                    "fee_cents",
                    models.PositiveBigIntegerField(
                        default=0,
                        help_text="Platform fee withheld from the gross amount",
                    ),
                ),
                (
                    "currency",
                    models.CharField(
                        default="usd",
                        help_text="ISO 4217 currency code (lowercase)",
                        max_length=3,
                    ),
                ),
                (
                    "status",
                    django_fsm.FSMField(
                        choices=[
                            ("pending", "Pending"),
                            ("processing", "Processing"),
                            ("completed", "Completed"),
                            ("failed", "Failed"),
                            ("canceled", "Canceled"),
                        ],
                        db_index=True,
                        default="pending",
                        help_text="Current status of the payout (managed by FSM)",
                        max_length=50,
                        protected=True,
                    ),
                ),
                (
                    "attempt",
                    models.PositiveSmallIntegerField(
                        default=1,
                        help_text="Transfer attempt number",
                    ),
                ),
                (
                    "requested_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When the transfer was requested from the provider",
                        null=True,
                    ),
                ),
                (
                    "processed_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When the provider confirmed the transfer was created",
                        null=True,
                    ),
                ),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("failed_at", models.DateTimeField(blank=True, null=True)),
                ("canceled_at", models.DateTimeField(blank=True, null=True)),
                ("failure_reason", models.TextField(blank=True, default="")),
                ("metadata", models.JSONField(blank=True, default=dict)),
                (
                    "deal",
                    models.ForeignKey(
                        blank=True,
                        help_text="Deal the funds are released from",
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payouts",
                        to="escrow.deal",
                    ),
                ),
                (
                    "milestone",
                    models.ForeignKey(
                        blank=True,
                        help_text="Milestone this payout settles",
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payouts",
                        to="escrow.milestone",
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["status", "created_at"],
                        name="payout_status_created_idx",
                    ),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(amount_cents__gt=0),
                        name="payout_amount_positive",
                    ),
                    models.UniqueConstraint(
                        condition=models.Q(
                            status__in=("pending", "processing", "completed")
                        ),
                        fields=("milestone",),
                        name="payout_one_active_per_milestone",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="ConnectedAccount",
            fields=[
                _uuid_pk(),
                *_timestamps(),
                ("provider", models.CharField(default="stripe", max_length=32)),
                (
                    "provider_account_id",
                    models.CharField(
                        help_text="Provider account id (acct_xxx)",
                        max_length=255,
                        unique=True,
                    ),
                ),
                (
                    "onboarding_status",
                    models.CharField(
                        choices=[
                            ("not_started", "Not Started"),
                            ("required", "Action Required"),
                            ("approved", "Approved"),
                        ],
                        db_index=True,
                        default="not_started",
                        max_length=20,
                    ),
                ),
                ("charges_enabled", models.BooleanField(default=False)),
                ("payouts_enabled", models.BooleanField(default=False)),
                ("details_submitted", models.BooleanField(default=False)),
                (
                    "requirements_due",
                    models.JSONField(
                        blank=True,
                        default=list,
                        help_text="Requirement keys the provider is waiting for",
                    ),
                ),
                (
                    "user",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="connected_account",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="LedgerEvent",
            fields=[
                _uuid_pk(),
                (
                    "event_type",
                    models.CharField(
                        db_index=True,
                        help_text="Namespaced event type",
                        max_length=100,
                    ),
                ),
                (
                    "subject_type",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text="Model name of the entity this event is about",
                        max_length=50,
                    ),
                ),
                (
                    "subject_id",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text="Primary key of the entity this event is about",
                        max_length=64,
                    ),
                ),
                (
                    "payload",
                    models.JSONField(
                        blank=True,
                        default=dict,
                        encoder=django.core.serializers.json.DjangoJSONEncoder,
                        help_text="Type-specific event data",
                    ),
                ),
                (
                    "provider_event_id",
                    models.CharField(
                        blank=True,
                        help_text="Provider webhook event id (deduplication key)",
                        max_length=255,
                        null=True,
                        unique=True,
                    ),
                ),
                (
                    "occurred_at",
                    models.DateTimeField(
                        db_index=True,
                        default=django.utils.timezone.now,
                        help_text="When the event was recorded",
                    ),
                ),
                (
                    "actor",
                    models.ForeignKey(
                        blank=True,
                        help_text="User who caused this event (NULL for system events)",
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="ledger_events",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "deal",
                    models.ForeignKey(
                        blank=True,
                        help_text="Deal this event belongs to",
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="ledger_events",
                        to="escrow.deal",
                    ),
                ),
            ],
            options={
                "ordering": ["occurred_at"],
                "indexes": [
                    models.Index(
                        fields=["deal", "occurred_at"],
                        name="ledger_deal_occurred_idx",
                    ),
                    models.Index(
                        fields=["subject_type", "subject_id"],
                        name="ledger_subject_idx",
                    ),
                ],
            },
        ),
    ]
