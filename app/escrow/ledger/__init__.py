"""
Ledger - append-only audit trail for the escrow lifecycle.

Public API:
    Models:
        LedgerEvent - One immutable fact (transition, denial, webhook receipt)

    Service:
        LedgerRecorder - Appends events; raises LedgerWriteFailed on failure

    Types:
        EventType - Namespaced event type constants
        WebhookOutcome - Outcome values stored on webhook receipts

Usage:
    from escrow.ledger.services import LedgerRecorder
    from escrow.ledger.types import EventType
"""
