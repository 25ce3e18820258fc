"""
Escrow service: the deal and milestone state machine.

Every public method takes ``(entity_id, actor, ...)`` and returns a
ServiceResult. Inside, a single ``transaction.atomic()`` block locks rows
in the order deal -> milestone -> payout, applies the django-fsm transition
and records the ledger event. Any domain exception rolls the whole block
back; denied actions are then recorded as ``action.denied``.

Provider calls never run inside these blocks. Funding, payout transfers and
dispute refunds are split into phases around the provider call.

Usage:
    service = EscrowService()

    result = service.approve_milestone(milestone_id, request.user)
    if result.success:
        approval = result.data
        if approval.transfer_status == "deferred":
            ...  # 202, transfer will be retried

Webhook-facing methods (``confirm_funding``, ``record_funding_failed``)
run inside the dispatcher's transaction and return a WebhookOutcome.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING

from django.conf import settings
from django.db.models import Q
from django.utils import timezone

from core.exceptions import ValidationError
from core.services import ServiceResult

from escrow.exceptions import (
    AmountMismatch,
    EntityNotFound,
    LedgerWriteFailed,
    ProviderError,
    ProviderUnavailable,
)
from escrow.ledger.types import EventType, WebhookOutcome
from escrow.locks import lock_row
from escrow.models import Deal, Deliverable, Dispute, Milestone, Payout
from escrow.services.base import (
    DENIED_ERRORS,
    PROVIDER_UNAVAILABLE_MESSAGE,
    EscrowServiceBase,
    apply_transition,
    parse_uuid,
)
from escrow.services.payout_orchestrator import (
    PayoutOrchestrator,
    TransferRequestStatus,
    committed_amount_cents,
)
from escrow.state_machines import (
    ACTIVE_DISPUTE_STATUSES,
    DealState,
    DisputeCategory,
    DisputePriority,
    DisputeResolution,
    DisputeStatus,
    MilestoneState,
    PayoutStatus,
)

if TYPE_CHECKING:
    from typing import Any

    from django.db.models import QuerySet

    from escrow.ledger.services import LedgerRecorder
    from escrow.providers import PaymentsProvider


logger = logging.getLogger(__name__)


def auto_approval_grace(deal: Deal | None = None) -> timedelta | None:
    """
    Grace period before a submitted milestone is auto-approved; None disables it.

    A deal's own settings take precedence over
    ESCROW_AUTO_APPROVAL_GRACE_HOURS: ``auto_approval_enabled=False`` turns
    it off, and ``auto_approval_grace_hours`` replaces the global period.
    """
    if deal is not None and deal.auto_approval_enabled is False:
        return None
    hours = deal.auto_approval_grace_hours if deal is not None else None
    if hours is None:
        hours = getattr(settings, "ESCROW_AUTO_APPROVAL_GRACE_HOURS", None)
    if hours is None:
        return None
    return timedelta(hours=hours)


# =============================================================================
# Result Types
# =============================================================================


@dataclass
class FundingResult:
    """
    Funding handle returned to the payer.

    The deal stays DRAFT until the provider confirms the payment.
    """

    deal: Deal
    payment_reference: str
    client_secret: str | None = None


@dataclass
class ApprovalResult:
    """
    Attributes:
        milestone: Approved milestone
        payout: Payout created for it
        transfer_status: requested, deferred, skipped or failed
        message: User-facing note when the transfer was deferred
    """

    milestone: Milestone
    payout: Payout
    transfer_status: str
    message: str = ""

    @property
    def deferred(self) -> bool:
        return self.transfer_status == TransferRequestStatus.DEFERRED


@dataclass
class ResolutionResult:
    deal: Deal
    dispute: Dispute
    follow_up_status: str = ""
    transfers: list[str] = field(default_factory=list)

    @property
    def deferred(self) -> bool:
        return self.follow_up_status == TransferRequestStatus.DEFERRED


# =============================================================================
# Escrow Service
# =============================================================================


class EscrowService(EscrowServiceBase):
    """
    Deal and milestone lifecycle.

    Args:
        provider: PaymentsProvider instance (default: from settings)
        recorder: LedgerRecorder instance
        orchestrator: PayoutOrchestrator sharing the provider and recorder
    """

    def __init__(
        self,
        provider: PaymentsProvider | None = None,
        recorder: LedgerRecorder | None = None,
        orchestrator: PayoutOrchestrator | None = None,
    ) -> None:
        super().__init__(provider=provider, recorder=recorder)
        self.orchestrator = orchestrator or PayoutOrchestrator(
            provider=self.provider, recorder=self.recorder
        )

    # =========================================================================
    # Locking
    # =========================================================================

    @staticmethod
    def _lock_milestone(milestone_id) -> tuple[Deal, Milestone]:
        """Lock deal -> milestone for ``milestone_id``."""
        deal_id = Milestone.objects.filter(pk=milestone_id).values_list("deal_id", flat=True).first()
        if deal_id is None:
            raise EntityNotFound(
                "Milestone not found",
                details={"entity": "milestone", "entity_id": str(milestone_id)},
            )
        deal = lock_row(Deal, deal_id)
        milestone = lock_row(Milestone, milestone_id)
        return deal, milestone

    @staticmethod
    def _deal_id_for_milestone(milestone_id):
        return Milestone.objects.filter(pk=milestone_id).values_list("deal_id", flat=True).first()

    # =========================================================================
    # Deal Setup
    # =========================================================================

    def create_deal(
        self,
        payer,
        receiver,
        milestones: list[dict[str, Any]],
        currency: str = "usd",
        title: str = "",
        auto_approval_enabled: bool | None = None,
        auto_approval_grace_hours: int | None = None,
    ) -> ServiceResult[Deal]:
        """
        Create a DRAFT deal with PENDING milestones.

        Args:
            payer: User funding the deal
            receiver: User delivering the work
            milestones: [{"title", "amount_cents", "description"?, "due_at"?}, ...]
            currency: ISO currency code
            title: Deal title
            auto_approval_enabled: Per-deal auto-approval switch (None: global)
            auto_approval_grace_hours: Per-deal grace period (None: global)

        The deal amount is the sum of the milestone amounts.
        """
        try:
            self._validate_new_deal(payer, receiver, milestones)
            self._validate_grace_hours(auto_approval_grace_hours)
            with self.atomic():
                deal = Deal.objects.create(
                    payer=payer,
                    receiver=receiver,
                    title=title,
                    amount_cents=sum(m["amount_cents"] for m in milestones),
                    currency=currency.lower(),
                    provider=self.provider.name,
                    auto_approval_enabled=auto_approval_enabled,
                    auto_approval_grace_hours=auto_approval_grace_hours,
                )
                for position, item in enumerate(milestones):
                    Milestone.objects.create(
                        deal=deal,
                        position=position,
                        title=item["title"],
                        description=item.get("description", ""),
                        amount_cents=item["amount_cents"],
                        currency=deal.currency,
                        due_at=item.get("due_at"),
                    )
                self.recorder.record(
                    EventType.DEAL_CREATED,
                    actor=payer,
                    deal=deal,
                    payload={
                        "amount_cents": deal.amount_cents,
                        "currency": deal.currency,
                        "receiver_id": receiver.pk,
                        "milestones": [
                            {"title": m["title"], "amount_cents": m["amount_cents"]}
                            for m in milestones
                        ],
                    },
                )
        except ValidationError as e:
            return self.failure_from(e)
        except LedgerWriteFailed as e:
            return self.failure_from(e, log_level=logging.ERROR)

        self.get_logger().info(
            "Deal created",
            extra={"deal_id": str(deal.pk), "amount_cents": deal.amount_cents},
        )
        return ServiceResult.success(deal)

    @staticmethod
    def _validate_new_deal(payer, receiver, milestones) -> None:
        if payer.pk == receiver.pk:
            raise ValidationError(
                "Payer and receiver must be different users",
                details={"field": "receiver"},
            )
        if not milestones:
            raise ValidationError(
                "A deal needs at least one milestone",
                details={"field": "milestones"},
            )
        for index, item in enumerate(milestones):
            amount = item.get("amount_cents")
            if not isinstance(amount, int) or amount <= 0:
                raise ValidationError(
                    "Milestone amounts must be positive integers (cents)",
                    details={"field": "milestones", "index": index},
                )
            if not item.get("title"):
                raise ValidationError(
                    "Milestone title is required",
                    details={"field": "milestones", "index": index},
                )

    @staticmethod
    def _validate_grace_hours(hours) -> None:
        if hours is not None and (not isinstance(hours, int) or hours <= 0):
            raise ValidationError(
                "Auto-approval grace period must be a positive number of hours",
                details={"field": "auto_approval_grace_hours"},
            )

    def update_auto_approval(
        self,
        deal_id,
        actor,
        enabled: bool | None,
        grace_hours: int | None = None,
    ) -> ServiceResult[Deal]:
        """
        Payer changes the deal's auto-approval settings.

        Only allowed while the deal is DRAFT and not yet accepted: the
        receiver accepts the terms including these settings.

        Args:
            enabled: False disables auto-approval, None follows the global setting
            grace_hours: Grace period in hours, None uses the global one
        """
        try:
            with self.atomic():
                deal = lock_row(Deal, deal_id)
                self.require_party(deal, actor, "payer")
                self.require(
                    deal.state == DealState.DRAFT and not deal.is_accepted,
                    "Auto-approval settings are fixed once the deal is accepted",
                    deal_id=deal.pk,
                    current_state=deal.state,
                )
                self._validate_grace_hours(grace_hours)
                deal.auto_approval_enabled = enabled
                deal.auto_approval_grace_hours = grace_hours
                deal.save()
                self.recorder.record(
                    EventType.DEAL_AUTO_APPROVAL_UPDATED,
                    actor=actor,
                    deal=deal,
                    payload={
                        "auto_approval_enabled": enabled,
                        "auto_approval_grace_hours": grace_hours,
                    },
                )
        except DENIED_ERRORS as e:
            return self.deny("update_auto_approval", e, actor=actor, deal_id=deal_id)
        except EntityNotFound as e:
            return self.failure_from(e)
        except LedgerWriteFailed as e:
            return self.failure_from(e, log_level=logging.ERROR)
        return ServiceResult.success(deal)

    def accept_deal(self, deal_id, actor) -> ServiceResult[Deal]:
        """Receiver accepts the DRAFT deal terms."""
        try:
            with self.atomic():
                deal = lock_row(Deal, deal_id)
                self.require_party(deal, actor, "receiver")
                self.require(
                    deal.state == DealState.DRAFT and not deal.is_accepted,
                    "Deal action 'accept' is not allowed in current state",
                    deal_id=deal.pk,
                    current_state=deal.state,
                )
                deal.accepted_at = timezone.now()
                deal.save()
                self.recorder.record(EventType.DEAL_ACCEPTED, actor=actor, deal=deal)
        except DENIED_ERRORS as e:
            return self.deny("accept_deal", e, actor=actor, deal_id=deal_id)
        except EntityNotFound as e:
            return self.failure_from(e)
        except LedgerWriteFailed as e:
            return self.failure_from(e, log_level=logging.ERROR)
        return ServiceResult.success(deal)

    # =========================================================================
    # Funding
    # =========================================================================

    def fund_deal(self, deal_id, actor) -> ServiceResult[FundingResult]:
        """
        Start funding an accepted DRAFT deal.

        Phases:
            1. Lock and check payer / DRAFT / accepted
            2. create_escrow (or reuse funding_reference) and fund_escrow
            3. Record deal.funding_requested

        The deal becomes FUNDED only through the funding-succeeded webhook.
        """
        try:
            with self.atomic():
                deal = lock_row(Deal, deal_id)
                self.require_party(deal, actor, "payer")
                self.require(
                    deal.state == DealState.DRAFT,
                    "Deal action 'fund' is not allowed in current state",
                    deal_id=deal.pk,
                    current_state=deal.state,
                )
                self.require(
                    deal.is_accepted,
                    "Deal must be accepted by the receiver before funding",
                    deal_id=deal.pk,
                )
                escrow_id = deal.funding_reference
        except DENIED_ERRORS as e:
            return self.deny("fund_deal", e, actor=actor, deal_id=deal_id)
        except EntityNotFound as e:
            return self.failure_from(e)
        except LedgerWriteFailed as e:
            return self.failure_from(e, log_level=logging.ERROR)

        try:
            if not escrow_id:
                escrow_id = self.provider.create_escrow(deal.pk, deal.currency)
                with self.atomic():
                    deal = lock_row(Deal, deal_id)
                    if not deal.funding_reference:
                        deal.funding_reference = escrow_id
                        deal.save()
                    escrow_id = deal.funding_reference

            intent = self.provider.fund_escrow(escrow_id, deal.amount_cents, actor.pk)
        except ProviderUnavailable as e:
            self.get_logger().warning(
                "Funding deferred: provider unavailable",
                extra={"deal_id": str(deal_id), "error_code": e.error_code},
            )
            return ServiceResult.failure(PROVIDER_UNAVAILABLE_MESSAGE, error_code=e.error_code)
        except ProviderError as e:
            return self.failure_from(e, log_level=logging.ERROR)

        try:
            with self.atomic():
                deal = lock_row(Deal, deal_id)
                self.recorder.record(
                    EventType.DEAL_FUNDING_REQUESTED,
                    actor=actor,
                    deal=deal,
                    payload={
                        "funding_reference": escrow_id,
                        "payment_reference": intent.payment_reference,
                        "amount_cents": deal.amount_cents,
                    },
                )
        except LedgerWriteFailed as e:
            return self.failure_from(e, log_level=logging.ERROR)

        self.get_logger().info(
            "Funding requested",
            extra={"deal_id": str(deal.pk), "funding_reference": escrow_id},
        )
        return ServiceResult.success(
            FundingResult(
                deal=deal,
                payment_reference=intent.payment_reference,
                client_secret=intent.client_secret,
            )
        )

    def _find_deal_for_funding(self, escrow_id: str, deal_hint) -> tuple[Any, bool]:
        """
        Resolve a funding event to a deal id.

        Returns:
            (deal_id or None, adopt) where ``adopt`` means the reference was
            not stored yet and the deal was found through metadata
        """
        deal_id = (
            Deal.objects.filter(Q(funding_reference=escrow_id) | Q(escrow_reference=escrow_id))
            .values_list("id", flat=True)
            .first()
        )
        if deal_id is not None:
            return deal_id, False

        hinted = parse_uuid(deal_hint)
        if hinted and Deal.objects.filter(pk=hinted, funding_reference__isnull=True).exists():
            return hinted, True
        return None, False

    def confirm_funding(
        self,
        escrow_id: str,
        amount_cents: int,
        *,
        deal_hint: str | None = None,
        source: str = "webhook",
    ) -> str:
        """
        DRAFT -> FUNDED for a verified funding report.

        Runs inside the caller's transaction.

        Returns:
            WebhookOutcome: applied, noop (already funded), ignored (unknown
            escrow or deal not DRAFT) or anomaly (amount below the deal)
        """
        log = self.get_logger()
        deal_id, adopt = self._find_deal_for_funding(escrow_id, deal_hint)
        if deal_id is None:
            log.info("Funding for unknown escrow ignored", extra={"escrow_id": escrow_id})
            return WebhookOutcome.IGNORED

        deal = lock_row(Deal, deal_id)
        context = {"deal_id": str(deal.pk), "escrow_id": escrow_id, "source": source}

        if deal.state == DealState.FUNDED and deal.escrow_reference == escrow_id:
            log.info("Deal already funded", extra=context)
            return WebhookOutcome.NOOP

        if deal.state != DealState.DRAFT:
            log.warning(
                "Funding report for a deal that is not draft",
                extra={**context, "current_state": deal.state},
            )
            return WebhookOutcome.IGNORED

        if adopt:
            deal.funding_reference = escrow_id

        if amount_cents < deal.amount_cents:
            if adopt:
                deal.save()
            log.warning(
                "Funded amount below deal amount",
                extra={
                    **context,
                    "anomaly": True,
                    "amount_cents": amount_cents,
                    "deal_amount_cents": deal.amount_cents,
                },
            )
            return WebhookOutcome.ANOMALY

        apply_transition(deal, "mark_funded", escrow_reference=escrow_id)
        deal.save()
        self.recorder.record(
            EventType.DEAL_FUNDED,
            deal=deal,
            payload={"escrow_reference": escrow_id, "amount_cents": amount_cents, "source": source},
        )
        log.info("Deal funded", extra=context)
        return WebhookOutcome.APPLIED

    def record_funding_failed(
        self,
        escrow_id: str,
        failure_reason: str = "",
        *,
        deal_hint: str | None = None,
    ) -> str:
        """Record a failed payment attempt; the deal stays DRAFT."""
        deal_id, _adopt = self._find_deal_for_funding(escrow_id, deal_hint)
        if deal_id is None:
            return WebhookOutcome.IGNORED

        deal = lock_row(Deal, deal_id)
        if deal.state != DealState.DRAFT:
            return WebhookOutcome.IGNORED

        self.recorder.record(
            EventType.DEAL_FUNDING_FAILED,
            deal=deal,
            payload={"escrow_id": escrow_id, "reason": failure_reason},
        )
        self.get_logger().warning(
            "Deal funding failed",
            extra={"deal_id": str(deal.pk), "escrow_id": escrow_id, "reason": failure_reason},
        )
        return WebhookOutcome.APPLIED

    # =========================================================================
    # Milestones
    # =========================================================================

    def submit_milestone(
        self,
        milestone_id,
        actor,
        url: str = "",
        file_reference: str = "",
        note: str = "",
    ) -> ServiceResult[Milestone]:
        """
        Receiver submits a deliverable: PENDING -> SUBMITTED.

        The deal must be FUNDED and a url or file reference is required.
        """
        try:
            with self.atomic():
                deal, milestone = self._lock_milestone(milestone_id)
                self.require_party(deal, actor, "receiver")
                if not url and not file_reference:
                    raise ValidationError(
                        "A deliverable url or file reference is required",
                        details={"field": "url"},
                    )
                apply_transition(milestone, "submit")
                milestone.save()

                deliverable = Deliverable.objects.create(
                    milestone=milestone,
                    submitted_by=actor,
                    url=url,
                    file_reference=file_reference,
                    note=note,
                )
                self.recorder.record(
                    EventType.MILESTONE_SUBMITTED,
                    actor=actor,
                    deal=deal,
                    subject=milestone,
                    payload={
                        "milestone_id": str(milestone.pk),
                        "deliverable_id": str(deliverable.pk),
                        "url": url,
                        "file_reference": file_reference,
                        "note": note,
                    },
                )
        except DENIED_ERRORS as e:
            return self.deny(
                "submit_milestone",
                e,
                actor=actor,
                deal_id=self._deal_id_for_milestone(milestone_id),
            )
        except EntityNotFound as e:
            return self.failure_from(e)
        except LedgerWriteFailed as e:
            return self.failure_from(e, log_level=logging.ERROR)
        return ServiceResult.success(milestone)

    def request_revision(self, milestone_id, actor, feedback: str) -> ServiceResult[Milestone]:
        """Payer sends a submission back: SUBMITTED -> PENDING."""
        try:
            with self.atomic():
                deal, milestone = self._lock_milestone(milestone_id)
                self.require_party(deal, actor, "payer")
                if not feedback or not feedback.strip():
                    raise ValidationError(
                        "Revision feedback is required",
                        details={"field": "feedback"},
                    )
                apply_transition(milestone, "request_revision")
                milestone.save()

                deliverable = milestone.deliverables.order_by("-created_at").first()
                if deliverable is not None:
                    deliverable.revision_feedback = feedback
                    deliverable.revision_requested_at = timezone.now()
                    deliverable.save()

                self.recorder.record(
                    EventType.MILESTONE_REVISION_REQUESTED,
                    actor=actor,
                    deal=deal,
                    subject=milestone,
                    payload={
                        "milestone_id": str(milestone.pk),
                        "deliverable_id": str(deliverable.pk) if deliverable else None,
                        "feedback": feedback,
                        "revision_count": milestone.revision_count,
                    },
                )
        except DENIED_ERRORS as e:
            return self.deny(
                "request_revision",
                e,
                actor=actor,
                deal_id=self._deal_id_for_milestone(milestone_id),
            )
        except EntityNotFound as e:
            return self.failure_from(e)
        except LedgerWriteFailed as e:
            return self.failure_from(e, log_level=logging.ERROR)
        return ServiceResult.success(milestone)

    def approve_milestone(
        self,
        milestone_id,
        actor=None,
        automatic: bool = False,
    ) -> ServiceResult[ApprovalResult]:
        """
        Approve a submitted milestone and start its payout.

        SUBMITTED -> APPROVED and the PENDING payout are committed together;
        the transfer is requested afterwards. A provider outage at that point
        leaves the approval in place and reports ``transfer_status="deferred"``.

        Args:
            milestone_id: Milestone to approve
            actor: Payer (None for automatic approval)
            automatic: Grace-period auto-approval
        """
        try:
            with self.atomic():
                deal, milestone = self._lock_milestone(milestone_id)
                if automatic:
                    self._check_auto_approval(deal, milestone)
                else:
                    self.require_party(deal, actor, "payer")

                apply_transition(milestone, "approve", automatic=automatic)
                milestone.save()
                self.recorder.record(
                    EventType.MILESTONE_AUTO_APPROVED if automatic else EventType.MILESTONE_APPROVED,
                    actor=None if automatic else actor,
                    deal=deal,
                    subject=milestone,
                    payload={
                        "milestone_id": str(milestone.pk),
                        "amount_cents": milestone.amount_cents,
                        "automatic": automatic,
                    },
                )
                payout = self.orchestrator.create_payout(deal, milestone)
        except DENIED_ERRORS as e:
            return self.deny(
                "approve_milestone",
                e,
                actor=actor,
                deal_id=self._deal_id_for_milestone(milestone_id),
            )
        except EntityNotFound as e:
            return self.failure_from(e)
        except LedgerWriteFailed as e:
            return self.failure_from(e, log_level=logging.ERROR)

        outcome = self.orchestrator.request_transfer_safely(payout)
        return ServiceResult.success(
            ApprovalResult(
                milestone=Milestone.objects.get(pk=milestone.pk),
                payout=outcome.payout,
                transfer_status=outcome.status,
                message=outcome.message,
            )
        )

    def _check_auto_approval(self, deal: Deal, milestone: Milestone) -> None:
        grace = auto_approval_grace(deal)
        self.require(grace is not None, "Auto-approval is disabled", milestone_id=milestone.pk)
        self.require(
            milestone.submitted_at is not None
            and milestone.submitted_at <= timezone.now() - grace,
            "Auto-approval grace period has not elapsed",
            milestone_id=milestone.pk,
            current_state=milestone.state,
        )

    @staticmethod
    def milestones_due_for_auto_approval() -> QuerySet[Milestone]:
        """
        SUBMITTED milestones of FUNDED deals past their grace period.

        Deals with their own grace period are matched per distinct period;
        the rest use ESCROW_AUTO_APPROVAL_GRACE_HOURS.
        """
        now = timezone.now()
        candidates = Milestone.objects.filter(
            Q(deal__auto_approval_enabled__isnull=True) | Q(deal__auto_approval_enabled=True),
            state=MilestoneState.SUBMITTED,
            deal__state=DealState.FUNDED,
            submitted_at__isnull=False,
        )

        due = Q()
        default_grace = auto_approval_grace()
        if default_grace is not None:
            due |= Q(
                deal__auto_approval_grace_hours__isnull=True,
                submitted_at__lte=now - default_grace,
            )
        overrides = (
            candidates.filter(deal__auto_approval_grace_hours__isnull=False)
            .order_by()
            .values_list("deal__auto_approval_grace_hours", flat=True)
            .distinct()
        )
        for hours in overrides:
            due |= Q(
                deal__auto_approval_grace_hours=hours,
                submitted_at__lte=now - timedelta(hours=hours),
            )

        if not due:
            return Milestone.objects.none()
        return candidates.filter(due).order_by("submitted_at")

    # =========================================================================
    # Disputes
    # =========================================================================

    def raise_dispute(
        self,
        deal_id,
        actor,
        reason: str,
        category: str = DisputeCategory.OTHER,
        requested_amount_cents: int | None = None,
    ) -> ServiceResult[Dispute]:
        """
        Either party freezes a FUNDED deal: FUNDED -> DISPUTED.

        Every milestone that is not RELEASED moves to DISPUTED as well.
        ``requested_amount_cents`` records the refund the party asks for;
        it may not exceed the deal amount and does not bind the resolution.
        """
        try:
            with self.atomic():
                deal = lock_row(Deal, deal_id)
                self.require_party(deal, actor, "party")
                if not reason or not reason.strip():
                    raise ValidationError("Dispute reason is required", details={"field": "reason"})
                if category not in DisputeCategory.values:
                    raise ValidationError(
                        f"Unknown dispute category '{category}'",
                        details={"field": "category"},
                    )
                if requested_amount_cents is not None and not (
                    0 < requested_amount_cents <= deal.amount_cents
                ):
                    raise AmountMismatch(
                        "Requested amount must be positive and within the deal amount",
                        details={
                            "deal_id": str(deal.pk),
                            "requested_amount_cents": requested_amount_cents,
                            "deal_amount_cents": deal.amount_cents,
                        },
                    )
                apply_transition(deal, "dispute")
                deal.save()

                milestones = (
                    deal.milestones.select_for_update()
                    .exclude(state=MilestoneState.RELEASED)
                    .order_by("position", "id")
                )
                disputed_ids = []
                for milestone in milestones:
                    apply_transition(milestone, "dispute")
                    milestone.save()
                    disputed_ids.append(str(milestone.pk))
                    self.recorder.record(
                        EventType.MILESTONE_DISPUTED,
                        actor=actor,
                        deal=deal,
                        subject=milestone,
                        payload={"milestone_id": str(milestone.pk)},
                    )

                dispute = Dispute.objects.create(
                    deal=deal,
                    raised_by=actor,
                    category=category,
                    reason=reason,
                    requested_amount_cents=requested_amount_cents,
                )
                self.recorder.record(
                    EventType.DEAL_DISPUTED,
                    actor=actor,
                    deal=deal,
                    payload={
                        "dispute_id": str(dispute.pk),
                        "category": category,
                        "reason": reason,
                        "requested_amount_cents": requested_amount_cents,
                        "milestone_ids": disputed_ids,
                    },
                )
        except DENIED_ERRORS as e:
            return self.deny("raise_dispute", e, actor=actor, deal_id=deal_id)
        except EntityNotFound as e:
            return self.failure_from(e)
        except LedgerWriteFailed as e:
            return self.failure_from(e, log_level=logging.ERROR)

        self.get_logger().info(
            "Deal disputed",
            extra={"deal_id": str(deal_id), "dispute_id": str(dispute.pk)},
        )
        return ServiceResult.success(dispute)

    def escalate_dispute(
        self,
        deal_id,
        actor,
        priority: str = DisputePriority.MEDIUM,
        note: str = "",
    ) -> ServiceResult[Dispute]:
        """
        Staff flag an OPEN dispute for priority review: OPEN -> ESCALATED.

        The deal stays DISPUTED; an escalated dispute is resolved the same
        way as an open one.
        """
        try:
            with self.atomic():
                self.require_staff(actor)
                if priority not in DisputePriority.values:
                    raise ValidationError(
                        f"Unknown dispute priority '{priority}'",
                        details={"field": "priority"},
                    )
                deal = lock_row(Deal, deal_id)
                dispute = (
                    deal.disputes.select_for_update().filter(status=DisputeStatus.OPEN).first()
                )
                self.require(
                    dispute is not None,
                    "Deal has no open dispute to escalate",
                    deal_id=deal.pk,
                    current_state=deal.state,
                )
                dispute.escalate(actor, priority, note)
                dispute.save()
                self.recorder.record(
                    EventType.DEAL_DISPUTE_ESCALATED,
                    actor=actor,
                    deal=deal,
                    subject=dispute,
                    payload={
                        "dispute_id": str(dispute.pk),
                        "priority": priority,
                        "note": note,
                    },
                )
        except DENIED_ERRORS as e:
            return self.deny("escalate_dispute", e, actor=actor, deal_id=deal_id)
        except EntityNotFound as e:
            return self.failure_from(e)
        except LedgerWriteFailed as e:
            return self.failure_from(e, log_level=logging.ERROR)

        self.get_logger().info(
            "Dispute escalated",
            extra={"deal_id": str(deal_id), "dispute_id": str(dispute.pk), "priority": priority},
        )
        return ServiceResult.success(dispute)

    def resolve_dispute(
        self,
        deal_id,
        actor,
        resolution: str,
        note: str = "",
        refund_amount_cents: int | None = None,
    ) -> ServiceResult[ResolutionResult]:
        """
        Administrative resolution (staff only).

        release: DISPUTED -> RELEASED. Milestones whose payout already
            settled become RELEASED; the rest become APPROVED and get a
            payout (an in-flight one is continued).
        refund: DISPUTED -> REFUNDED. Unrequested payouts are canceled and
            the uncommitted balance is refunded to the payer after commit.
            ``refund_amount_cents`` makes it a partial refund; it may not
            exceed the uncommitted balance.

        Open and escalated disputes can both be resolved.
        """
        to_request: list[Payout] = []
        refundable = 0
        try:
            with self.atomic():
                self.require_staff(actor)
                if resolution not in DisputeResolution.values:
                    raise ValidationError(
                        f"Unknown dispute resolution '{resolution}'",
                        details={"field": "resolution"},
                    )
                if refund_amount_cents is not None and resolution != DisputeResolution.REFUND:
                    raise ValidationError(
                        "A refund amount only applies to a refund resolution",
                        details={"field": "refund_amount_cents"},
                    )
                deal = lock_row(Deal, deal_id)
                self.require(
                    deal.state == DealState.DISPUTED,
                    "Deal action 'resolve' is not allowed in current state",
                    deal_id=deal.pk,
                    current_state=deal.state,
                )
                dispute = (
                    deal.disputes.select_for_update()
                    .filter(status__in=ACTIVE_DISPUTE_STATUSES)
                    .first()
                )
                self.require(dispute is not None, "Deal has no open dispute", deal_id=deal.pk)

                if resolution == DisputeResolution.RELEASE:
                    to_request = self._resolve_in_receiver_favour(deal, actor)
                else:
                    refundable = self._resolve_in_payer_favour(deal, refund_amount_cents)

                dispute.resolve(resolution, actor, note)
                dispute.save()
                self.recorder.record(
                    EventType.DEAL_DISPUTE_RESOLVED,
                    actor=actor,
                    deal=deal,
                    subject=dispute,
                    payload={
                        "dispute_id": str(dispute.pk),
                        "resolution": resolution,
                        "note": note,
                        "refund_amount_cents": refundable,
                    },
                )
        except DENIED_ERRORS as e:
            return self.deny("resolve_dispute", e, actor=actor, deal_id=deal_id)
        except EntityNotFound as e:
            return self.failure_from(e)
        except LedgerWriteFailed as e:
            return self.failure_from(e, log_level=logging.ERROR)

        self.get_logger().info(
            "Dispute resolved",
            extra={"deal_id": str(deal_id), "resolution": resolution},
        )

        result = ResolutionResult(deal=deal, dispute=dispute)
        if to_request:
            outcomes = [self.orchestrator.request_transfer_safely(p) for p in to_request]
            result.transfers = [o.status for o in outcomes]
            deferred = any(o.status == TransferRequestStatus.DEFERRED for o in outcomes)
            result.follow_up_status = (
                TransferRequestStatus.DEFERRED if deferred else TransferRequestStatus.REQUESTED
            )
        elif refundable > 0:
            result.follow_up_status = self.orchestrator.request_refund_safely(deal.pk).status

        result.deal = Deal.objects.get(pk=deal.pk)
        return ServiceResult.success(result)

    def _resolve_in_receiver_favour(self, deal: Deal, actor) -> list[Payout]:
        apply_transition(deal, "resolve_released")
        deal.save()

        to_request = []
        milestones = (
            deal.milestones.select_for_update()
            .filter(state=MilestoneState.DISPUTED)
            .order_by("position", "id")
        )
        for milestone in milestones:
            if milestone.payouts.filter(status=PayoutStatus.COMPLETED).exists():
                apply_transition(milestone, "resolve_released")
                milestone.save()
                self.recorder.record(
                    EventType.MILESTONE_RELEASED,
                    actor=actor,
                    deal=deal,
                    subject=milestone,
                    payload={"milestone_id": str(milestone.pk), "source": "dispute_resolution"},
                )
                continue

            apply_transition(milestone, "resolve_approved")
            milestone.save()
            self.recorder.record(
                EventType.MILESTONE_APPROVED,
                actor=actor,
                deal=deal,
                subject=milestone,
                payload={"milestone_id": str(milestone.pk), "source": "dispute_resolution"},
            )

            payout = (
                milestone.payouts.select_for_update()
                .filter(status__in=[PayoutStatus.PENDING, PayoutStatus.PROCESSING])
                .first()
            )
            if payout is None:
                payout = self.orchestrator.create_payout(deal, milestone)
            if payout.status == PayoutStatus.PENDING and not payout.provider_reference:
                to_request.append(payout)
        return to_request

    def _resolve_in_payer_favour(self, deal: Deal, amount_cents: int | None = None) -> int:
        self.orchestrator.cancel_unrequested_payouts(deal, reason="dispute resolved with refund")
        refundable = deal.amount_cents - committed_amount_cents(deal)
        if amount_cents is not None:
            if not 0 < amount_cents <= refundable:
                raise AmountMismatch(
                    "Refund amount exceeds the uncommitted deal balance",
                    details={
                        "deal_id": str(deal.pk),
                        "refund_amount_cents": amount_cents,
                        "refundable_cents": refundable,
                    },
                )
            refundable = amount_cents
        apply_transition(deal, "resolve_refunded", refund_amount_cents=refundable)
        deal.save()
        return refundable
