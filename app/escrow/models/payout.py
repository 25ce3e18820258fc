"""
Payout model for transfers out of escrow.

A Payout represents money leaving the escrow hold for the receiving
party's connected account. Each approved Milestone produces one active
Payout; a failed transfer is retried by creating a new row with
``attempt + 1``.

Usage:
    from escrow.models import Payout

    payout = Payout.objects.create(
        deal=deal,
        milestone=milestone,
        destination="acct_123",
        amount_cents=9500,
        fee_cents=500,
    )

    # After the provider confirms the transfer is queued
    payout.mark_processing()
    payout.save()
"""

from __future__ import annotations

from django.db import models
from django.utils import timezone

from django_fsm import FSMField, transition

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel

from escrow.models.base import VersionedModel
from escrow.state_machines import PayoutStatus

ACTIVE_PAYOUT_STATUSES = (
    PayoutStatus.PENDING,
    PayoutStatus.PROCESSING,
    PayoutStatus.COMPLETED,
)


class Payout(UUIDPrimaryKeyMixin, VersionedModel, BaseModel):
    """
    Outbound transfer of escrowed funds.

    State Flow:
        PENDING -> PROCESSING -> COMPLETED / FAILED / CANCELED
        PENDING -> COMPLETED / FAILED / CANCELED (provider reported first)
        FAILED -> COMPLETED (provider reports the same transfer as paid)

    Webhook-driven state changes:
        transfer.created: PENDING -> PROCESSING
        transfer.paid / transfer.updated(paid): -> COMPLETED
        transfer.failed / transfer.updated(failed): -> FAILED
        transfer.reversed: -> CANCELED

    Fields:
        deal: Source Deal (nullable for aggregated payouts)
        milestone: Milestone this payout settles (nullable)
        provider_reference: Provider transfer handle (tr_xxx)
        destination: Provider account id of the receiver
        amount_cents: Net amount transferred
        fee_cents: Platform fee withheld from the milestone amount
        attempt: 1 for the first transfer, incremented by manual retries

    Note:
        COMPLETED is never downgraded. FAILED/CANCELED reports after
        COMPLETED are recorded as anomalies by the orchestrator.
    """

    # ==========================================================================
    # Relationships
    # ==========================================================================

    deal = models.ForeignKey(
        "escrow.Deal",
        on_delete=models.PROTECT,
        related_name="payouts",
        null=True,
        blank=True,
        help_text="Deal the funds are released from",
    )

    milestone = models.ForeignKey(
        "escrow.Milestone",
        on_delete=models.PROTECT,
        related_name="payouts",
        null=True,
        blank=True,
        help_text="Milestone this payout settles",
    )

    # ==========================================================================
    # Provider Integration
    # ==========================================================================

    provider = models.CharField(
        max_length=32,
        default="stripe",
        help_text="Payments provider executing the transfer",
    )

    provider_reference = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        unique=True,
        help_text="Provider transfer handle",
    )

    destination = models.CharField(
        max_length=255,
        blank=True,
        default="",
        help_text="Provider account id receiving the funds",
    )

    # ==========================================================================
    # Amount & Currency
    # ==========================================================================

    amount_cents = models.PositiveBigIntegerField(
        help_text="Net amount in smallest currency unit",
    )

    fee_cents = models.PositiveBigIntegerField(
        default=0,
        help_text="Platform fee withheld from the gross amount",
    )

    currency = models.CharField(
        max_length=3,
        default="usd",
        help_text="ISO 4217 currency code (lowercase)",
    )

    # ==========================================================================
    # State
    # ==========================================================================

    status = FSMField(
        default=PayoutStatus.PENDING,
        choices=PayoutStatus.choices,
        db_index=True,
        protected=True,
        help_text="Current status of the payout (managed by FSM)",
    )

    attempt = models.PositiveSmallIntegerField(
        default=1,
        help_text="Transfer attempt number",
    )

    # ==========================================================================
    # Timestamps
    # ==========================================================================

    requested_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the transfer was requested from the provider",
    )

    processed_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the provider confirmed the transfer was created",
    )

    completed_at = models.DateTimeField(null=True, blank=True)
    failed_at = models.DateTimeField(null=True, blank=True)
    canceled_at = models.DateTimeField(null=True, blank=True)

    failure_reason = models.TextField(blank=True, default="")

    metadata = models.JSONField(default=dict, blank=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status", "created_at"], name="payout_status_created_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(amount_cents__gt=0),
                name="payout_amount_positive",
            ),
            models.UniqueConstraint(
                fields=["milestone"],
                condition=models.Q(status__in=ACTIVE_PAYOUT_STATUSES),
                name="payout_one_active_per_milestone",
            ),
        ]

    def __str__(self) -> str:
        amount_display = f"{self.amount_cents / 100:.2f} {self.currency.upper()}"
        return f"Payout({self.id}, {self.status}, {amount_display})"

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=status,
        source=PayoutStatus.PENDING,
        target=PayoutStatus.PROCESSING,
    )
    def mark_processing(self):
        """
        Provider confirmed the transfer.

        Transition: PENDING -> PROCESSING
        """
        self.processed_at = timezone.now()

    @transition(
        field=status,
        source=[PayoutStatus.PENDING, PayoutStatus.PROCESSING],
        target=PayoutStatus.COMPLETED,
    )
    def complete(self):
        """
        Transfer settled.

        Transition: PENDING/PROCESSING -> COMPLETED
        """
        self.completed_at = timezone.now()
        self.processed_at = self.processed_at or self.completed_at

    @transition(
        field=status,
        source=[PayoutStatus.PENDING, PayoutStatus.PROCESSING],
        target=PayoutStatus.FAILED,
    )
    def fail(self, reason: str = ""):
        """
        Transition: PENDING/PROCESSING -> FAILED

        No automatic retry follows; see PayoutOrchestrator.retry_payout.
        """
        self.failed_at = timezone.now()
        self.failure_reason = reason

    @transition(
        field=status,
        source=[PayoutStatus.PENDING, PayoutStatus.PROCESSING],
        target=PayoutStatus.CANCELED,
    )
    def cancel(self, reason: str = ""):
        """Transition: PENDING/PROCESSING -> CANCELED"""
        self.canceled_at = timezone.now()
        self.failure_reason = reason

    @transition(
        field=status,
        source=PayoutStatus.FAILED,
        target=PayoutStatus.COMPLETED,
    )
    def confirm_completed(self):
        """
        Provider reports a previously failed transfer as paid.

        Transition: FAILED -> COMPLETED

        The orchestrator only calls this for a paid report of this exact
        provider_reference and when no other active payout exists for the
        milestone.
        """
        self.completed_at = timezone.now()

    # ==========================================================================
    # Properties
    # ==========================================================================

    @property
    def gross_amount_cents(self) -> int:
        """Milestone share this payout accounts for (net + fee)."""
        return self.amount_cents + self.fee_cents

    @property
    def is_terminal(self) -> bool:
        return self.status in (
            PayoutStatus.COMPLETED,
            PayoutStatus.FAILED,
            PayoutStatus.CANCELED,
        )
