"""
Deal and Milestone models.

A Deal is one paid engagement between a funding party (payer) and a
receiving party (receiver). Its amount is split into Milestones that are
submitted, approved and paid out independently.

Usage:
    from escrow.models import Deal, Milestone

    deal = Deal.objects.create(payer=brand, receiver=creator, amount_cents=10000)
    Milestone.objects.create(deal=deal, title="Video", amount_cents=10000)

    # Transitions are driven by EscrowService under row locks
    deal.mark_funded(escrow_reference="pi_123")
    deal.save()
"""

from __future__ import annotations

from django.conf import settings
from django.db import models
from django.utils import timezone

from django_fsm import FSMField, transition

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel

from escrow.models.base import VersionedModel
from escrow.state_machines import DealState, MilestoneState


def _all_milestones_released(deal: Deal) -> bool:
    milestones = deal.milestones.all()
    return milestones.exists() and not milestones.exclude(
        state=MilestoneState.RELEASED
    ).exists()


def _deal_allows_release(milestone: Milestone) -> bool:
    return milestone.deal.state in (DealState.FUNDED, DealState.RELEASED)


def _deal_is_funded(milestone: Milestone) -> bool:
    return milestone.deal.state == DealState.FUNDED


class Deal(UUIDPrimaryKeyMixin, VersionedModel, BaseModel):
    """
    A commercial engagement whose funds are held in escrow.

    State Flow:
        DRAFT → FUNDED → RELEASED (all milestones released)
        FUNDED → DISPUTED → RELEASED / REFUNDED (administrative)

    Fields:
        payer: Funding party (brand); owns the deal
        receiver: Receiving party (creator)
        amount_cents: Sum of milestone amounts, fixed at creation
        currency: ISO 4217 code (lowercase)
        state: Current FSM state
        funding_reference: Provider escrow handle, set once funding begins
        escrow_reference: Confirmed escrow handle, set on FUNDED
        refund_reference: Provider refund handle after a refund resolution
        auto_approval_enabled: Per-deal switch; null follows the global setting
        auto_approval_grace_hours: Per-deal grace period; null uses the global one

    Invariants:
        - escrow_reference is set iff state != DRAFT (check constraint)
        - amount_cents never changes after creation
    """

    # ==========================================================================
    # Parties
    # ==========================================================================

    payer = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="funded_deals",
        help_text="Funding party",
    )

    receiver = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="received_deals",
        help_text="Receiving party",
    )

    title = models.CharField(max_length=200, blank=True, default="")

    # ==========================================================================
    # Amount & Currency
    # ==========================================================================

    amount_cents = models.PositiveBigIntegerField(
        help_text="Total amount in smallest currency unit; sum of milestones",
    )

    currency = models.CharField(
        max_length=3,
        default="usd",
        help_text="ISO 4217 currency code (lowercase)",
    )

    # ==========================================================================
    # State
    # ==========================================================================

    state = FSMField(
        default=DealState.DRAFT,
        choices=DealState.choices,
        db_index=True,
        protected=True,
        help_text="Current state of the deal (managed by FSM)",
    )

    # ==========================================================================
    # Provider Integration
    # ==========================================================================

    provider = models.CharField(
        max_length=32,
        default="stripe",
        help_text="Payments provider holding the escrow",
    )

    funding_reference = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        unique=True,
        help_text="Provider escrow handle, set when funding is initiated",
    )

    escrow_reference = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        unique=True,
        help_text="Confirmed escrow handle, set when funding succeeds",
    )

    refund_amount_cents = models.PositiveBigIntegerField(
        null=True,
        blank=True,
        help_text="Amount returned to the payer after a refund resolution",
    )

    refund_reference = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        help_text="Provider refund handle",
    )

    # ==========================================================================
    # Auto-approval
    # ==========================================================================

    auto_approval_enabled = models.BooleanField(
        null=True,
        blank=True,
        help_text="Auto-approve submitted milestones; null follows the global setting",
    )

    auto_approval_grace_hours = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Hours before a submission is auto-approved; null uses the global setting",
    )

    # ==========================================================================
    # Timestamps
    # ==========================================================================

    accepted_at = models.DateTimeField(null=True, blank=True)
    funded_at = models.DateTimeField(null=True, blank=True)
    disputed_at = models.DateTimeField(null=True, blank=True)
    released_at = models.DateTimeField(null=True, blank=True)
    refunded_at = models.DateTimeField(null=True, blank=True)

    metadata = models.JSONField(default=dict, blank=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["payer", "state"], name="deal_payer_state_idx"),
            models.Index(fields=["receiver", "state"], name="deal_receiver_state_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(amount_cents__gt=0),
                name="deal_amount_positive",
            ),
            models.CheckConstraint(
                condition=(
                    models.Q(state=DealState.DRAFT, escrow_reference__isnull=True)
                    | (
                        ~models.Q(state=DealState.DRAFT)
                        & models.Q(escrow_reference__isnull=False)
                    )
                ),
                name="deal_escrow_reference_matches_state",
            ),
        ]

    def __str__(self) -> str:
        amount_display = f"{self.amount_cents / 100:.2f} {self.currency.upper()}"
        return f"Deal({self.id}, {self.state}, {amount_display})"

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(field=state, source=DealState.DRAFT, target=DealState.FUNDED)
    def mark_funded(self, escrow_reference: str):
        """
        Confirm funding.

        Transition: DRAFT -> FUNDED

        Only called for a verified funding-succeeded provider event (or a
        reconciliation read of the same fact).
        """
        self.escrow_reference = escrow_reference
        self.funded_at = timezone.now()

    @transition(
        field=state,
        source=DealState.FUNDED,
        target=DealState.RELEASED,
        conditions=[_all_milestones_released],
    )
    def mark_released(self):
        """
        Derived release once every milestone is RELEASED.

        Transition: FUNDED -> RELEASED
        """
        self.released_at = timezone.now()

    @transition(field=state, source=DealState.FUNDED, target=DealState.DISPUTED)
    def dispute(self):
        """Transition: FUNDED -> DISPUTED"""
        self.disputed_at = timezone.now()

    @transition(field=state, source=DealState.DISPUTED, target=DealState.RELEASED)
    def resolve_released(self):
        """
        Administrative resolution in the receiver's favour.

        Transition: DISPUTED -> RELEASED
        """
        self.released_at = timezone.now()

    @transition(field=state, source=DealState.DISPUTED, target=DealState.REFUNDED)
    def resolve_refunded(self, refund_amount_cents: int):
        """
        Administrative resolution in the payer's favour.

        Transition: DISPUTED -> REFUNDED
        """
        self.refund_amount_cents = refund_amount_cents
        self.refunded_at = timezone.now()

    # ==========================================================================
    # Properties
    # ==========================================================================

    @property
    def is_accepted(self) -> bool:
        return self.accepted_at is not None

    @property
    def released_amount_cents(self) -> int:
        """Sum of RELEASED milestone amounts."""
        total = self.milestones.filter(state=MilestoneState.RELEASED).aggregate(
            total=models.Sum("amount_cents")
        )["total"]
        return total or 0


class Milestone(UUIDPrimaryKeyMixin, VersionedModel, BaseModel):
    """
    A unit of deliverable work and its share of the deal amount.

    State Flow:
        PENDING → SUBMITTED → APPROVED → RELEASED
        SUBMITTED → PENDING (revision requested)
        PENDING/SUBMITTED/APPROVED → DISPUTED
        DISPUTED → APPROVED / RELEASED (administrative resolution)

    Note:
        APPROVED only initiates the payout; RELEASED is applied when the
        provider reports the transfer as settled.
    """

    deal = models.ForeignKey(
        Deal,
        on_delete=models.PROTECT,
        related_name="milestones",
    )

    position = models.PositiveSmallIntegerField(default=0)
    title = models.CharField(max_length=200)
    description = models.TextField(blank=True, default="")

    amount_cents = models.PositiveBigIntegerField(
        help_text="Milestone share of the deal amount",
    )

    currency = models.CharField(max_length=3, default="usd")

    state = FSMField(
        default=MilestoneState.PENDING,
        choices=MilestoneState.choices,
        db_index=True,
        protected=True,
    )

    due_at = models.DateTimeField(null=True, blank=True)
    submitted_at = models.DateTimeField(null=True, blank=True, db_index=True)
    approved_at = models.DateTimeField(null=True, blank=True)
    released_at = models.DateTimeField(null=True, blank=True)
    disputed_at = models.DateTimeField(null=True, blank=True)

    auto_approved = models.BooleanField(
        default=False,
        help_text="Approved by the grace-period timeout rather than the payer",
    )

    revision_count = models.PositiveIntegerField(default=0)

    class Meta:
        ordering = ["deal", "position", "created_at"]
        indexes = [
            models.Index(fields=["state", "submitted_at"], name="milestone_state_submitted_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(amount_cents__gt=0),
                name="milestone_amount_positive",
            ),
        ]

    def __str__(self) -> str:
        return f"Milestone({self.id}, {self.state}, {self.amount_cents})"

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=state,
        source=MilestoneState.PENDING,
        target=MilestoneState.SUBMITTED,
        conditions=[_deal_is_funded],
    )
    def submit(self):
        """Transition: PENDING -> SUBMITTED (deal must be FUNDED)"""
        self.submitted_at = timezone.now()

    @transition(
        field=state,
        source=MilestoneState.SUBMITTED,
        target=MilestoneState.APPROVED,
        conditions=[_deal_is_funded],
    )
    def approve(self, automatic: bool = False):
        """Transition: SUBMITTED -> APPROVED"""
        self.approved_at = timezone.now()
        self.auto_approved = automatic

    @transition(
        field=state,
        source=MilestoneState.SUBMITTED,
        target=MilestoneState.PENDING,
    )
    def request_revision(self):
        """
        Send the milestone back to the receiver.

        Transition: SUBMITTED -> PENDING

        The previous submission survives in the ledger only.
        """
        self.submitted_at = None
        self.revision_count += 1

    @transition(
        field=state,
        source=MilestoneState.APPROVED,
        target=MilestoneState.RELEASED,
        conditions=[_deal_allows_release],
    )
    def release(self):
        """Transition: APPROVED -> RELEASED (transfer settled)"""
        self.released_at = timezone.now()

    @transition(
        field=state,
        source=[
            MilestoneState.PENDING,
            MilestoneState.SUBMITTED,
            MilestoneState.APPROVED,
        ],
        target=MilestoneState.DISPUTED,
    )
    def dispute(self):
        """Transition: PENDING/SUBMITTED/APPROVED -> DISPUTED"""
        self.disputed_at = timezone.now()

    @transition(
        field=state,
        source=MilestoneState.DISPUTED,
        target=MilestoneState.APPROVED,
    )
    def resolve_approved(self):
        """Transition: DISPUTED -> APPROVED (payout to follow)"""
        self.approved_at = self.approved_at or timezone.now()

    @transition(
        field=state,
        source=MilestoneState.DISPUTED,
        target=MilestoneState.RELEASED,
        conditions=[_deal_allows_release],
    )
    def resolve_released(self):
        """Transition: DISPUTED -> RELEASED (payout already settled)"""
        self.released_at = timezone.now()
