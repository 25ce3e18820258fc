"""
Event types for the escrow ledger.

Event types are namespaced strings (``<subject>.<fact>``). Webhook receipts
are recorded as ``webhook.<normalized type>`` and are built with
``EventType.webhook()``.

Usage:
    from escrow.ledger.types import EventType

    recorder.record(EventType.DEAL_FUNDED, deal=deal, subject=deal)
"""

from __future__ import annotations


class EventType:
    """Namespaced ledger event types."""

    # Deal
    DEAL_CREATED = "deal.created"
    DEAL_ACCEPTED = "deal.accepted"
    DEAL_FUNDING_REQUESTED = "deal.funding_requested"
    DEAL_FUNDED = "deal.funded"
    DEAL_FUNDING_FAILED = "deal.funding_failed"
    DEAL_AUTO_APPROVAL_UPDATED = "deal.auto_approval_updated"
    DEAL_DISPUTED = "deal.disputed"
    DEAL_DISPUTE_ESCALATED = "deal.dispute_escalated"
    DEAL_DISPUTE_RESOLVED = "deal.dispute_resolved"
    DEAL_RELEASED = "deal.released"
    DEAL_REFUND_REQUESTED = "deal.refund_requested"

    # Milestone
    MILESTONE_SUBMITTED = "milestone.submitted"
    MILESTONE_REVISION_REQUESTED = "milestone.revision_requested"
    MILESTONE_APPROVED = "milestone.approved"
    MILESTONE_AUTO_APPROVED = "milestone.auto_approved"
    MILESTONE_RELEASED = "milestone.released"
    MILESTONE_DISPUTED = "milestone.disputed"

    # Payout
    PAYOUT_CREATED = "payout.created"
    PAYOUT_TRANSFER_REQUESTED = "payout.transfer_requested"
    PAYOUT_TRANSFER_DEFERRED = "payout.transfer_deferred"
    PAYOUT_PROCESSING = "payout.processing"
    PAYOUT_COMPLETED = "payout.completed"
    PAYOUT_FAILED = "payout.failed"
    PAYOUT_CANCELED = "payout.canceled"
    PAYOUT_ANOMALY = "payout.anomaly"

    # Connected accounts
    ACCOUNT_UPDATED = "account.updated"

    # Denied user actions (recorded after the rollback)
    ACTION_DENIED = "action.denied"

    WEBHOOK_PREFIX = "webhook."

    @classmethod
    def webhook(cls, normalized_type: str) -> str:
        """Receipt event type for a provider webhook."""
        return f"{cls.WEBHOOK_PREFIX}{normalized_type}"


class WebhookOutcome:
    """Outcome recorded on a webhook receipt."""

    APPLIED = "applied"
    NOOP = "noop"
    IGNORED = "ignored"
    ANOMALY = "anomaly"
    UNHANDLED = "unhandled"
