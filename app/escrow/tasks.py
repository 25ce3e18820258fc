"""
Celery tasks for the escrow.

This module provides async tasks for:
- Auto-approving submitted milestones after the grace period
- Requesting payout transfers (one payout, or a scan of pending ones)
- Requesting dispute refunds that were deferred
- Reconciling stale funding and payouts with the provider

Scheduling is done by django-celery-beat; the schedules are created by a
data migration (escrow/migrations/0002_periodic_tasks.py).

Usage:
    from escrow.tasks import request_payout_transfer

    # Queue one transfer request
    request_payout_transfer.delay(str(payout_id))

    # Scan for pending payouts (typically via celery-beat)
    from escrow.tasks import execute_pending_payouts
    execute_pending_payouts.delay()
"""

from __future__ import annotations

import logging
from uuid import UUID

from celery import shared_task

from escrow.exceptions import (
    EntityNotFound,
    LedgerWriteFailed,
    LockAcquisitionError,
    ProviderUnavailable,
)
from escrow.models import Deal, Payout
from escrow.state_machines import DealState, MilestoneState, PayoutStatus

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

MAX_TRANSFER_RETRIES = 8
SCAN_BATCH_SIZE = 100


# =============================================================================
# Auto-approval
# =============================================================================


@shared_task
def auto_approve_submitted_milestones() -> dict:
    """
    Queue auto-approval for milestones past the grace period.

    Deals with their own grace period use it; the rest follow
    ESCROW_AUTO_APPROVAL_GRACE_HOURS and are skipped while it is unset.
    Deals with auto-approval switched off, DISPUTED milestones and deals
    that are not FUNDED are never picked up.
    """
    from escrow.services import EscrowService

    milestone_ids = list(
        EscrowService.milestones_due_for_auto_approval().values_list("id", flat=True)[
            :SCAN_BATCH_SIZE
        ]
    )
    for milestone_id in milestone_ids:
        auto_approve_milestone.delay(str(milestone_id))

    if milestone_ids:
        logger.info(
            f"Queued {len(milestone_ids)} milestones for auto-approval",
            extra={"count": len(milestone_ids)},
        )
    return {"queued": len(milestone_ids)}


@shared_task(bind=True, acks_late=True)
def auto_approve_milestone(self, milestone_id: str) -> dict:
    """
    Auto-approve one milestone.

    State and grace period are re-checked under the row lock, so a
    milestone that was approved, revised or disputed in the meantime is
    left alone.
    """
    from escrow.services import EscrowService

    result = EscrowService().approve_milestone(UUID(milestone_id), actor=None, automatic=True)
    if not result.success:
        logger.info(
            "Auto-approval skipped",
            extra={"milestone_id": milestone_id, "error_code": result.error_code},
        )
        return {"status": "skipped", "milestone_id": milestone_id, "error_code": result.error_code}

    return {
        "status": "approved",
        "milestone_id": milestone_id,
        "payout_id": str(result.data.payout.pk),
        "transfer_status": result.data.transfer_status,
    }


# =============================================================================
# Payout Transfers
# =============================================================================


@shared_task(
    bind=True,
    autoretry_for=(ProviderUnavailable, LockAcquisitionError, LedgerWriteFailed),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_kwargs={"max_retries": MAX_TRANSFER_RETRIES},
    acks_late=True,
)
def request_payout_transfer(self, payout_id: str) -> dict:
    """
    Request the provider transfer for one PENDING payout.

    Safe to run any number of times: the orchestrator skips payouts that
    already have a provider reference, and the idempotency key makes the
    provider deduplicate a retried call.

    Raises:
        ProviderUnavailable, LockAcquisitionError, LedgerWriteFailed: Retried
            with backoff
    """
    from escrow.services import PayoutOrchestrator

    logger.info(
        "Requesting payout transfer",
        extra={"payout_id": payout_id, "retry_count": self.request.retries},
    )

    try:
        outcome = PayoutOrchestrator().request_transfer(UUID(payout_id))
    except EntityNotFound:
        logger.error("Payout not found", extra={"payout_id": payout_id})
        return {"status": "not_found", "payout_id": payout_id}

    return {"status": outcome.status, "payout_id": payout_id, "reason": outcome.reason}


@shared_task
def execute_pending_payouts() -> dict:
    """
    Queue transfer requests for PENDING payouts without a provider reference.

    Picks up payouts whose transfer was deferred (provider outage, receiver
    account not ready) or whose after-commit request never ran.
    """
    payout_ids = list(
        Payout.objects.filter(
            status=PayoutStatus.PENDING,
            provider_reference__isnull=True,
            milestone__state=MilestoneState.APPROVED,
            deal__state__in=[DealState.FUNDED, DealState.RELEASED],
        )
        .order_by("created_at")
        .values_list("id", flat=True)[:SCAN_BATCH_SIZE]
    )
    for payout_id in payout_ids:
        request_payout_transfer.delay(str(payout_id))

    if payout_ids:
        logger.info(
            f"Queued {len(payout_ids)} pending payouts",
            extra={"count": len(payout_ids)},
        )
    return {"queued": len(payout_ids)}


# =============================================================================
# Dispute Refunds
# =============================================================================


@shared_task
def request_pending_refunds() -> dict:
    """Request refunds for REFUNDED deals whose refund call has not succeeded yet."""
    from escrow.services import PayoutOrchestrator, TransferRequestStatus

    deal_ids = list(
        Deal.objects.filter(
            state=DealState.REFUNDED,
            refund_reference__isnull=True,
            refund_amount_cents__gt=0,
        ).values_list("id", flat=True)[:SCAN_BATCH_SIZE]
    )

    orchestrator = PayoutOrchestrator()
    stats = {"requested": 0, "deferred": 0}
    for deal_id in deal_ids:
        outcome = orchestrator.request_refund_safely(deal_id)
        if outcome.status == TransferRequestStatus.REQUESTED:
            stats["requested"] += 1
        elif outcome.status == TransferRequestStatus.DEFERRED:
            stats["deferred"] += 1

    logger.info("Pending refunds processed", extra=stats)
    return stats


# =============================================================================
# Reconciliation
# =============================================================================


@shared_task
def reconcile_stale_funding() -> dict:
    from escrow.services import ReconciliationService

    return ReconciliationService().reconcile_stale_funding(limit=SCAN_BATCH_SIZE)


@shared_task
def reconcile_stale_payouts() -> dict:
    from escrow.services import ReconciliationService

    return ReconciliationService().reconcile_stale_payouts(limit=SCAN_BATCH_SIZE)
