"""
Payout orchestrator: money leaving escrow.

Responsibilities:
    - Compute the payout for an approved milestone and create the PENDING row
      inside the approval transaction (fee policy, balance check)
    - Request the transfer from the provider after commit (two-phase)
    - Apply transfer status reports (webhooks, reconciliation) along the
      payout status lattice
    - Manual retry of failed payouts and dispute refunds

Two-phase transfer request:
    1. Under a Redis lock and row locks, re-check the payout and stamp
       ``requested_at``; commit
    2. Call ``release_to_receiver`` outside any transaction with an
       idempotency key derived from (payout, attempt)
    3. Store ``provider_reference`` and record ``payout.transfer_requested``

If phase 3 never runs, the transfer webhook finds the payout through the
``payout_id`` metadata and stores the reference itself.

Usage:
    orchestrator = PayoutOrchestrator(provider=provider)

    with transaction.atomic():
        payout = orchestrator.create_payout(deal, milestone)

    outcome = orchestrator.request_transfer(payout.id)
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING

from django.db import IntegrityError, transaction
from django.db.models import F, Sum
from django.utils import timezone

from core.services import ServiceResult

from escrow.exceptions import (
    AmountMismatch,
    EntityNotFound,
    InvalidState,
    LedgerWriteFailed,
    LockAcquisitionError,
    ProviderConfigurationError,
    ProviderError,
    ProviderUnavailable,
    WebhookTargetNotFound,
)
from escrow.ledger.types import EventType, WebhookOutcome
from escrow.locks import DistributedLock, lock_row
from escrow.models import (
    ACTIVE_PAYOUT_STATUSES,
    ConnectedAccount,
    Deal,
    Milestone,
    Payout,
)
from escrow.providers.base import IdempotencyKeyGenerator, TransferStatus
from escrow.services.base import (
    DENIED_ERRORS,
    PROVIDER_UNAVAILABLE_MESSAGE,
    EscrowServiceBase,
    apply_transition,
    parse_uuid,
)
from escrow.services.fees import get_fee_policy
from escrow.state_machines import DealState, MilestoneState, PayoutStatus

if TYPE_CHECKING:
    from typing import Any


logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

# Redis lock TTL for a transfer request; must exceed the provider timeout
PAYOUT_LOCK_TTL = 120

RELEASABLE_DEAL_STATES = (DealState.FUNDED, DealState.RELEASED)


# =============================================================================
# Result Types
# =============================================================================


class TransferRequestStatus:
    REQUESTED = "requested"
    DEFERRED = "deferred"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class TransferOutcome:
    """
    Result of a transfer request attempt.

    Attributes:
        payout: Payout as stored after the attempt
        status: One of TransferRequestStatus
        reason: Why the transfer was deferred, skipped or failed
    """

    payout: Payout
    status: str
    reason: str = ""

    @property
    def message(self) -> str:
        if self.status == TransferRequestStatus.DEFERRED:
            return PROVIDER_UNAVAILABLE_MESSAGE
        return ""


@dataclass
class RefundOutcome:
    deal: Deal
    status: str
    refund_reference: str | None = None


def committed_amount_cents(deal: Deal) -> int:
    """Gross (net + fee) of the deal's pending, processing and completed payouts."""
    total = (
        Payout.objects.filter(deal=deal, status__in=ACTIVE_PAYOUT_STATUSES)
        .aggregate(total=Sum(F("amount_cents") + F("fee_cents")))
        .get("total")
    )
    return total or 0


# =============================================================================
# Payout Orchestrator
# =============================================================================


class PayoutOrchestrator(EscrowServiceBase):
    """
    Creates payouts, requests transfers and applies transfer status.

    Methods named ``apply_*`` and ``create_payout`` must run inside the
    caller's transaction; they raise domain exceptions instead of returning
    ServiceResults. ``request_transfer`` and ``request_refund`` must run
    outside any transaction because they call the provider.
    """

    # =========================================================================
    # Payout Creation (inside the approval transaction)
    # =========================================================================

    def create_payout(self, deal: Deal, milestone: Milestone, attempt: int = 1) -> Payout:
        """
        Create the PENDING payout for an approved milestone.

        The caller holds row locks on ``deal`` and ``milestone``.

        Raises:
            AmountMismatch: Fee not below the amount, or committed payouts plus
                this gross would exceed the deal amount
            InvalidState: An active payout already exists for the milestone
        """
        gross = milestone.amount_cents
        fee = get_fee_policy()(gross, milestone.currency)
        if fee < 0 or fee >= gross:
            raise AmountMismatch(
                "Payout fee must be below the milestone amount",
                details={
                    "milestone_id": str(milestone.pk),
                    "gross_amount_cents": gross,
                    "fee_cents": fee,
                },
            )

        committed = committed_amount_cents(deal)
        if committed + gross > deal.amount_cents:
            raise AmountMismatch(
                "Payout would exceed the remaining deal balance",
                details={
                    "deal_id": str(deal.pk),
                    "deal_amount_cents": deal.amount_cents,
                    "committed_cents": committed,
                    "requested_cents": gross,
                },
            )

        account = ConnectedAccount.objects.filter(user_id=deal.receiver_id).first()

        try:
            with transaction.atomic():
                payout = Payout.objects.create(
                    deal=deal,
                    milestone=milestone,
                    provider=self.provider.name or deal.provider,
                    destination=account.provider_account_id if account else "",
                    amount_cents=gross - fee,
                    fee_cents=fee,
                    currency=milestone.currency,
                    attempt=attempt,
                )
        except IntegrityError as e:
            raise InvalidState(
                "An active payout already exists for this milestone",
                details={"milestone_id": str(milestone.pk)},
            ) from e

        self.recorder.record(
            EventType.PAYOUT_CREATED,
            deal=deal,
            subject=payout,
            payload={
                "payout_id": str(payout.pk),
                "milestone_id": str(milestone.pk),
                "amount_cents": payout.amount_cents,
                "fee_cents": fee,
                "currency": payout.currency,
                "attempt": attempt,
            },
        )
        self.get_logger().info(
            "Payout created",
            extra={
                "payout_id": str(payout.pk),
                "deal_id": str(deal.pk),
                "milestone_id": str(milestone.pk),
                "amount_cents": payout.amount_cents,
                "fee_cents": fee,
            },
        )
        return payout

    # =========================================================================
    # Transfer Request (two-phase, outside transactions)
    # =========================================================================

    def request_transfer(self, payout_id: uuid.UUID) -> TransferOutcome:
        """
        Ask the provider to transfer a PENDING payout.

        Returns:
            TransferOutcome with status requested, deferred, skipped or failed

        Raises:
            ProviderUnavailable: Transient provider failure; the payout stays
                PENDING and a ``payout.transfer_deferred`` event is recorded
            LockAcquisitionError: Another worker is requesting this transfer
            ProviderConfigurationError: Provider credentials are missing
        """
        with DistributedLock(f"payout:{payout_id}", ttl=PAYOUT_LOCK_TTL, blocking=False):
            return self._request_transfer_locked(payout_id)

    def _request_transfer_locked(self, payout_id: uuid.UUID) -> TransferOutcome:
        log = self.get_logger()

        # Phase 1: re-check under row locks
        with transaction.atomic():
            deal, milestone, payout = self._lock_payout(payout_id)

            if payout.status != PayoutStatus.PENDING or payout.provider_reference:
                return TransferOutcome(payout, TransferRequestStatus.SKIPPED, "already_requested")

            if deal.state not in RELEASABLE_DEAL_STATES or (
                milestone is not None and milestone.state != MilestoneState.APPROVED
            ):
                return TransferOutcome(payout, TransferRequestStatus.SKIPPED, "not_releasable")

            account = ConnectedAccount.objects.filter(user_id=deal.receiver_id).first()
            if account is None or not account.is_ready_for_payouts:
                self.recorder.record(
                    EventType.PAYOUT_TRANSFER_DEFERRED,
                    deal=deal,
                    subject=payout,
                    payload={"payout_id": str(payout.pk), "reason": "account_not_ready"},
                )
                log.info(
                    "Transfer deferred: receiver account not ready",
                    extra={"payout_id": str(payout.pk), "deal_id": str(deal.pk)},
                )
                return TransferOutcome(payout, TransferRequestStatus.DEFERRED, "account_not_ready")

            payout.destination = account.provider_account_id
            payout.requested_at = timezone.now()
            payout.save()

            escrow_id = deal.escrow_reference
            metadata = {
                "payout_id": str(payout.pk),
                "deal_id": str(deal.pk),
                "milestone_id": str(milestone.pk) if milestone else "",
                "attempt": str(payout.attempt),
            }

        # Phase 2: provider call outside the transaction
        idempotency_key = IdempotencyKeyGenerator.generate("release", payout.pk, payout.attempt)
        try:
            transfer_ref = self.provider.release_to_receiver(
                escrow_id,
                payout.amount_cents,
                payout.destination,
                metadata,
                currency=payout.currency,
                idempotency_key=idempotency_key,
            )
        except ProviderUnavailable as e:
            with transaction.atomic():
                self.recorder.record(
                    EventType.PAYOUT_TRANSFER_DEFERRED,
                    deal=deal,
                    subject=payout,
                    payload={
                        "payout_id": str(payout.pk),
                        "reason": "provider_unavailable",
                        "error_code": e.error_code,
                    },
                )
            log.warning(
                "Transfer deferred: provider unavailable",
                extra={"payout_id": str(payout.pk), "attempt": payout.attempt},
            )
            raise
        except ProviderConfigurationError:
            raise
        except ProviderError as e:
            return self._fail_after_rejection(payout.pk, e)

        # Phase 3: store the reference
        with transaction.atomic():
            deal, milestone, payout = self._lock_payout(payout_id)
            if not payout.provider_reference:
                payout.provider_reference = transfer_ref
                payout.save()
            self.recorder.record(
                EventType.PAYOUT_TRANSFER_REQUESTED,
                deal=deal,
                subject=payout,
                payload={
                    "payout_id": str(payout.pk),
                    "provider_reference": transfer_ref,
                    "amount_cents": payout.amount_cents,
                    "destination": payout.destination,
                    "attempt": payout.attempt,
                },
            )

        log.info(
            "Transfer requested",
            extra={
                "payout_id": str(payout.pk),
                "provider_reference": transfer_ref,
                "attempt": payout.attempt,
            },
        )
        return TransferOutcome(payout, TransferRequestStatus.REQUESTED)

    def _fail_after_rejection(self, payout_id: uuid.UUID, error: ProviderError) -> TransferOutcome:
        """Permanent provider rejection: PENDING -> FAILED."""
        with transaction.atomic():
            deal, _milestone, payout = self._lock_payout(payout_id)
            if payout.status == PayoutStatus.PENDING and not payout.provider_reference:
                apply_transition(payout, "fail", reason=error.message)
                payout.save()
                self.recorder.record(
                    EventType.PAYOUT_FAILED,
                    deal=deal,
                    subject=payout,
                    payload={
                        "payout_id": str(payout.pk),
                        "reason": error.message,
                        "error_code": error.error_code,
                        "source": "provider_rejection",
                    },
                )
        self.get_logger().error(
            "Transfer rejected by provider",
            extra={"payout_id": str(payout_id), "error_code": error.error_code},
        )
        return TransferOutcome(payout, TransferRequestStatus.FAILED, error.message)

    def _lock_payout(self, payout_id) -> tuple[Deal, Milestone | None, Payout]:
        """Lock deal -> milestone -> payout for ``payout_id``."""
        row = Payout.objects.filter(pk=payout_id).values("deal_id", "milestone_id").first()
        if row is None:
            raise EntityNotFound(
                "Payout not found",
                details={"entity": "payout", "entity_id": str(payout_id)},
            )
        deal = lock_row(Deal, row["deal_id"])
        milestone = lock_row(Milestone, row["milestone_id"]) if row["milestone_id"] else None
        payout = lock_row(Payout, payout_id)
        return deal, milestone, payout

    # =========================================================================
    # Transfer Status (inside the caller's transaction)
    # =========================================================================

    def find_payout_id(self, transfer_id: str, metadata: dict[str, str]) -> uuid.UUID | None:
        """
        Resolve a transfer to our payout.

        Looks up ``provider_reference`` first, then the ``payout_id``
        metadata we attach to every transfer.

        Raises:
            WebhookTargetNotFound: Metadata names a payout we do not have yet
        """
        payout_id = (
            Payout.objects.filter(provider_reference=transfer_id)
            .values_list("id", flat=True)
            .first()
        )
        if payout_id is not None:
            return payout_id

        metadata_id = parse_uuid(metadata.get("payout_id"))
        if metadata_id is None:
            return None
        if not Payout.objects.filter(pk=metadata_id).exists():
            raise WebhookTargetNotFound(
                "Transfer references a payout that is not stored yet",
                details={"provider_reference": transfer_id, "payout_id": str(metadata_id)},
            )
        return metadata_id

    def apply_transfer_status(
        self,
        transfer_id: str,
        status: str,
        *,
        metadata: dict[str, str] | None = None,
        failure_reason: str = "",
        source: str = "webhook",
    ) -> str:
        """
        Apply a provider transfer status to the matching payout.

        Payout status is a monotonic lattice:
            - COMPLETED is never downgraded; FAILED/CANCELED reports after it
              are recorded as ``payout.anomaly``
            - PAID after FAILED moves to COMPLETED only for this exact transfer
              and only if no other active payout exists for the milestone

        Returns:
            WebhookOutcome value (applied, noop, ignored, anomaly)
        """
        payout_id = self.find_payout_id(transfer_id, metadata or {})
        if payout_id is None:
            self.get_logger().info(
                "Transfer does not belong to any payout",
                extra={"provider_reference": transfer_id},
            )
            return WebhookOutcome.IGNORED

        deal, milestone, payout = self._lock_payout(payout_id)

        if payout.provider_reference is None:
            payout.provider_reference = transfer_id
        elif payout.provider_reference != transfer_id:
            return self._record_anomaly(
                deal,
                payout,
                "Transfer reference does not match payout",
                reported_status=status,
                transfer_id=transfer_id,
                source=source,
            )

        context = {"payout_id": str(payout.pk), "source": source, "transfer_id": transfer_id}

        if status == TransferStatus.PROCESSING:
            if payout.status != PayoutStatus.PENDING:
                payout.save()
                return WebhookOutcome.NOOP
            apply_transition(payout, "mark_processing")
            payout.save()
            self.recorder.record(
                EventType.PAYOUT_PROCESSING, deal=deal, subject=payout, payload=context
            )
            return WebhookOutcome.APPLIED

        if status == TransferStatus.PAID:
            return self._apply_paid(deal, milestone, payout, context)

        if status in (TransferStatus.FAILED, TransferStatus.CANCELED):
            return self._apply_unsuccessful(deal, payout, status, failure_reason, context)

        raise InvalidState(
            f"Unknown transfer status '{status}'",
            details={"transfer_id": transfer_id},
        )

    def _apply_paid(
        self,
        deal: Deal,
        milestone: Milestone | None,
        payout: Payout,
        context: dict[str, Any],
    ) -> str:
        if payout.status == PayoutStatus.COMPLETED:
            payout.save()
            return WebhookOutcome.NOOP

        if payout.status == PayoutStatus.CANCELED:
            return self._record_anomaly(
                deal, payout, "Paid report for a canceled payout", reported_status="paid", **context
            )

        if payout.status == PayoutStatus.FAILED:
            other_active = (
                Payout.objects.filter(milestone=payout.milestone, status__in=ACTIVE_PAYOUT_STATUSES)
                .exclude(pk=payout.pk)
                .exists()
            )
            if payout.milestone_id is not None and other_active:
                return self._record_anomaly(
                    deal,
                    payout,
                    "Paid report for a failed payout that was already retried",
                    reported_status="paid",
                    **context,
                )
            apply_transition(payout, "confirm_completed")
        else:
            apply_transition(payout, "complete")

        payout.save()
        self.recorder.record(EventType.PAYOUT_COMPLETED, deal=deal, subject=payout, payload=context)
        self.get_logger().info("Payout completed", extra=context)

        if milestone is not None:
            self._release_milestone(deal, milestone, payout)
        return WebhookOutcome.APPLIED

    def _release_milestone(self, deal: Deal, milestone: Milestone, payout: Payout) -> None:
        """Milestone APPROVED -> RELEASED; deal -> RELEASED once all are."""
        if milestone.state != MilestoneState.APPROVED:
            self.get_logger().warning(
                "Payout completed for a milestone that is not approved",
                extra={
                    "milestone_id": str(milestone.pk),
                    "milestone_state": milestone.state,
                    "payout_id": str(payout.pk),
                },
            )
            return

        apply_transition(milestone, "release")
        milestone.save()
        self.recorder.record(
            EventType.MILESTONE_RELEASED,
            deal=deal,
            subject=milestone,
            payload={
                "milestone_id": str(milestone.pk),
                "payout_id": str(payout.pk),
                "amount_cents": milestone.amount_cents,
            },
        )

        if deal.state == DealState.FUNDED and not deal.milestones.exclude(
            state=MilestoneState.RELEASED
        ).exists():
            apply_transition(deal, "mark_released")
            deal.save()
            self.recorder.record(
                EventType.DEAL_RELEASED,
                deal=deal,
                payload={"released_amount_cents": deal.released_amount_cents},
            )
            self.get_logger().info("Deal released", extra={"deal_id": str(deal.pk)})

    def _apply_unsuccessful(
        self,
        deal: Deal,
        payout: Payout,
        status: str,
        failure_reason: str,
        context: dict[str, Any],
    ) -> str:
        if payout.status == PayoutStatus.COMPLETED:
            return self._record_anomaly(
                deal,
                payout,
                f"Transfer reported {status} after completion",
                reported_status=status,
                **context,
            )

        if payout.status in (PayoutStatus.FAILED, PayoutStatus.CANCELED):
            payout.save()
            return WebhookOutcome.NOOP

        if status == TransferStatus.FAILED:
            apply_transition(payout, "fail", reason=failure_reason)
            event_type = EventType.PAYOUT_FAILED
        else:
            apply_transition(payout, "cancel", reason=failure_reason or "transfer reversed")
            event_type = EventType.PAYOUT_CANCELED
        payout.save()

        self.recorder.record(
            event_type,
            deal=deal,
            subject=payout,
            payload={**context, "reason": payout.failure_reason},
        )
        self.get_logger().warning(
            f"Payout {payout.status}", extra={**context, "reason": payout.failure_reason}
        )
        return WebhookOutcome.APPLIED

    def _record_anomaly(
        self,
        deal: Deal,
        payout: Payout,
        message: str,
        **context: Any,
    ) -> str:
        """Log and record a lattice violation; payout status is left alone."""
        payload = {
            "payout_id": str(payout.pk),
            "current_status": payout.status,
            "anomaly_reason": message,
            **{k: v for k, v in context.items() if k != "payout_id"},
        }
        self.get_logger().warning(
            f"Payout anomaly: {message}",
            extra={"anomaly": True, **payload},
        )
        self.recorder.record(EventType.PAYOUT_ANOMALY, deal=deal, subject=payout, payload=payload)
        return WebhookOutcome.ANOMALY

    # =========================================================================
    # Manual Retry
    # =========================================================================

    def retry_payout(self, payout_id: uuid.UUID, actor) -> ServiceResult[TransferOutcome]:
        """
        Retry a FAILED payout (staff only).

        Creates a new PENDING payout with ``attempt + 1`` for the same
        milestone and requests its transfer.
        """
        deal_id = Payout.objects.filter(pk=payout_id).values_list("deal_id", flat=True).first()
        try:
            with transaction.atomic():
                self.require_staff(actor)
                deal, milestone, failed = self._lock_payout(payout_id)
                self.require(
                    failed.status == PayoutStatus.FAILED,
                    "Only failed payouts can be retried",
                    payout_id=failed.pk,
                    current_status=failed.status,
                )
                self.require(
                    milestone is not None and milestone.state == MilestoneState.APPROVED,
                    "Milestone is not awaiting payout",
                    payout_id=failed.pk,
                )
                self.require(
                    deal.state in RELEASABLE_DEAL_STATES,
                    "Deal does not allow payouts in its current state",
                    deal_id=deal.pk,
                    current_state=deal.state,
                )
                payout = self.create_payout(deal, milestone, attempt=failed.attempt + 1)
                payout.metadata = {"retry_of": str(failed.pk), "retried_by": actor.pk}
                payout.save()
        except DENIED_ERRORS as e:
            return self.deny("retry_payout", e, actor=actor, deal_id=deal_id)
        except EntityNotFound as e:
            return self.failure_from(e)
        except LedgerWriteFailed as e:
            return self.failure_from(e, log_level=logging.ERROR)

        return ServiceResult.success(self.request_transfer_safely(payout))

    def request_transfer_safely(self, payout: Payout) -> TransferOutcome:
        """
        request_transfer for user-facing actions.

        Transient failures become a DEFERRED outcome; the periodic
        execute_pending_payouts task picks the payout up again.
        """
        try:
            return self.request_transfer(payout.pk)
        except (
            ProviderUnavailable,
            LockAcquisitionError,
            ProviderConfigurationError,
            LedgerWriteFailed,
        ) as e:
            self.get_logger().warning(
                "Transfer request deferred",
                extra={"payout_id": str(payout.pk), "error_code": e.error_code},
            )
            return TransferOutcome(
                Payout.objects.get(pk=payout.pk),
                TransferRequestStatus.DEFERRED,
                e.error_code,
            )

    # =========================================================================
    # Dispute Refund
    # =========================================================================

    def cancel_unrequested_payouts(self, deal: Deal, reason: str) -> list[Payout]:
        """Cancel PENDING payouts without a provider reference (caller holds locks)."""
        canceled = []
        payouts = Payout.objects.select_for_update().filter(
            deal=deal, status=PayoutStatus.PENDING, provider_reference__isnull=True
        )
        for payout in payouts.order_by("id"):
            apply_transition(payout, "cancel", reason=reason)
            payout.save()
            self.recorder.record(
                EventType.PAYOUT_CANCELED,
                deal=deal,
                subject=payout,
                payload={"payout_id": str(payout.pk), "reason": reason},
            )
            canceled.append(payout)
        return canceled

    def request_refund(self, deal_id: uuid.UUID) -> RefundOutcome:
        """
        Refund the uncommitted balance of a REFUNDED deal to the payer.

        Raises:
            ProviderUnavailable: Transient failure; request_pending_refunds retries
        """
        with DistributedLock(f"refund:{deal_id}", ttl=PAYOUT_LOCK_TTL, blocking=False):
            with transaction.atomic():
                deal = lock_row(Deal, deal_id)
                if (
                    deal.state != DealState.REFUNDED
                    or deal.refund_reference
                    or not deal.refund_amount_cents
                ):
                    return RefundOutcome(deal, TransferRequestStatus.SKIPPED, deal.refund_reference)
                escrow_id = deal.escrow_reference
                amount = deal.refund_amount_cents
                full_refund = amount == deal.amount_cents

            refund_ref = self.provider.refund_to_payer(
                escrow_id,
                amount_cents=None if full_refund else amount,
                idempotency_key=IdempotencyKeyGenerator.generate("refund", deal.pk, 1),
            )

            with transaction.atomic():
                deal = lock_row(Deal, deal_id)
                if not deal.refund_reference:
                    deal.refund_reference = refund_ref
                    deal.save()
                self.recorder.record(
                    EventType.DEAL_REFUND_REQUESTED,
                    deal=deal,
                    payload={"refund_reference": refund_ref, "amount_cents": amount},
                )

        self.get_logger().info(
            "Refund requested",
            extra={"deal_id": str(deal_id), "refund_reference": refund_ref, "amount_cents": amount},
        )
        return RefundOutcome(deal, TransferRequestStatus.REQUESTED, refund_ref)

    def request_refund_safely(self, deal_id: uuid.UUID) -> RefundOutcome:
        try:
            return self.request_refund(deal_id)
        except (
            ProviderUnavailable,
            LockAcquisitionError,
            ProviderConfigurationError,
            LedgerWriteFailed,
        ) as e:
            self.get_logger().warning(
                "Refund request deferred",
                extra={"deal_id": str(deal_id), "error_code": e.error_code},
            )
            return RefundOutcome(Deal.objects.get(pk=deal_id), TransferRequestStatus.DEFERRED)

    # =========================================================================
    # Connected Accounts
    # =========================================================================

    def apply_account_status(
        self,
        account_id: str,
        *,
        charges_enabled: bool,
        payouts_enabled: bool,
        details_submitted: bool,
        requirements_due: list[str],
    ) -> str:
        """
        Sync a receiver's connected account (inside the caller's transaction).

        When the account becomes payout-ready, PENDING payouts waiting for it
        are queued after commit.
        """
        account = (
            ConnectedAccount.objects.select_for_update()
            .filter(provider_account_id=account_id)
            .first()
        )
        if account is None:
            return WebhookOutcome.IGNORED

        was_ready = account.is_ready_for_payouts
        account.apply_capabilities(
            charges_enabled=charges_enabled,
            payouts_enabled=payouts_enabled,
            details_submitted=details_submitted,
            requirements_due=requirements_due,
        )
        account.save()
        self.recorder.record(
            EventType.ACCOUNT_UPDATED,
            subject=account,
            payload={
                "provider_account_id": account_id,
                "onboarding_status": account.onboarding_status,
                "payouts_enabled": payouts_enabled,
                "requirements_due": list(requirements_due),
            },
        )

        if account.is_ready_for_payouts and not was_ready:
            waiting = list(
                Payout.objects.filter(
                    deal__receiver_id=account.user_id,
                    status=PayoutStatus.PENDING,
                    provider_reference__isnull=True,
                ).values_list("id", flat=True)
            )
            if waiting:
                from escrow.tasks import request_payout_transfer

                def _queue():
                    for pending_id in waiting:
                        request_payout_transfer.delay(str(pending_id))

                transaction.on_commit(_queue)
        return WebhookOutcome.APPLIED
