"""
Escrow models.

Import models from here:
    from escrow.models import Deal, Milestone, Payout
"""

from escrow.ledger.models import LedgerEvent
from escrow.models.connected_account import ConnectedAccount
from escrow.models.deal import Deal, Milestone
from escrow.models.payout import ACTIVE_PAYOUT_STATUSES, Payout
from escrow.models.submission import Deliverable, Dispute

__all__ = [
    "ACTIVE_PAYOUT_STATUSES",
    "ConnectedAccount",
    "Deal",
    "Deliverable",
    "Dispute",
    "LedgerEvent",
    "Milestone",
    "Payout",
]
