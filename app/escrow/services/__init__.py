"""
Escrow services.

This module provides:
- EscrowService: Deal and milestone lifecycle (create, fund, submit,
  approve, dispute, resolve)
- PayoutOrchestrator: Payout creation, transfer requests, transfer status
  and dispute refunds
- ReconciliationService: Provider polling for stale funding and payouts

Usage:
    from escrow.services import EscrowService

    result = EscrowService().approve_milestone(milestone_id, request.user)
"""

from escrow.services.escrow_service import (
    ApprovalResult,
    EscrowService,
    FundingResult,
    ResolutionResult,
)
from escrow.services.payout_orchestrator import (
    PayoutOrchestrator,
    RefundOutcome,
    TransferOutcome,
    TransferRequestStatus,
)
from escrow.services.reconciliation_service import ReconciliationService

__all__ = [
    "ApprovalResult",
    "EscrowService",
    "FundingResult",
    "PayoutOrchestrator",
    "ReconciliationService",
    "RefundOutcome",
    "ResolutionResult",
    "TransferOutcome",
    "TransferRequestStatus",
]
