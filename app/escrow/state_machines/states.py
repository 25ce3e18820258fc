"""
State enums for escrow models.

These are Django TextChoices used as django-fsm field choices.

State Machines Overview:

Deal States:
    draft → funded (funding-succeeded webhook)
    funded → released (derived: every milestone released)
    funded → disputed (either party)
    disputed → released / refunded (administrative resolution)

Milestone States:
    pending → submitted → approved → released
    submitted → pending (revision requested)
    pending/submitted/approved → disputed
    disputed → approved / released (resolution in the receiver's favour)

Payout States:
    pending → processing → completed / failed / canceled
    pending → completed / failed / canceled (provider reported first)
    failed → completed (provider reports the transfer as paid)
"""

from django.db import models


class DealState(models.TextChoices):
    """
    States for the Deal lifecycle.

    Terminal states: RELEASED, REFUNDED

    State Flow:
        DRAFT → FUNDED → RELEASED
        DRAFT → FUNDED → DISPUTED → RELEASED
        DRAFT → FUNDED → DISPUTED → REFUNDED

    DRAFT deals that are never funded stay DRAFT.
    """

    DRAFT = "draft", "Draft"
    FUNDED = "funded", "Funded"
    RELEASED = "released", "Released"
    DISPUTED = "disputed", "Disputed"
    REFUNDED = "refunded", "Refunded"


class MilestoneState(models.TextChoices):
    """
    States for the Milestone lifecycle.

    Terminal states: RELEASED

    State Flow:
        PENDING → SUBMITTED → APPROVED → RELEASED
        SUBMITTED → PENDING (revision)
        any but RELEASED → DISPUTED
    """

    PENDING = "pending", "Pending"
    SUBMITTED = "submitted", "Submitted"
    APPROVED = "approved", "Approved"
    RELEASED = "released", "Released"
    DISPUTED = "disputed", "Disputed"


class PayoutStatus(models.TextChoices):
    """
    Status of an outbound transfer.

    Terminal states: COMPLETED, FAILED, CANCELED

    COMPLETED is never downgraded. A FAILED payout is only moved to
    COMPLETED when the provider reports the same transfer as paid.
    Retrying a failed payout creates a new Payout row.
    """

    PENDING = "pending", "Pending"
    PROCESSING = "processing", "Processing"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"
    CANCELED = "canceled", "Canceled"


class DisputeStatus(models.TextChoices):
    """
    Dispute lifecycle: OPEN → ESCALATED → RESOLVED.

    OPEN and ESCALATED are both active; either can be resolved.
    """

    OPEN = "open", "Open"
    ESCALATED = "escalated", "Escalated"
    RESOLVED = "resolved", "Resolved"


ACTIVE_DISPUTE_STATUSES = (DisputeStatus.OPEN, DisputeStatus.ESCALATED)


class DisputePriority(models.TextChoices):
    """Review priority set when staff escalate a dispute."""

    LOW = "low", "Low"
    MEDIUM = "medium", "Medium"
    HIGH = "high", "High"
    URGENT = "urgent", "Urgent"


class DisputeCategory(models.TextChoices):
    """Reason category chosen by the party raising a dispute."""

    QUALITY = "quality", "Quality"
    DEADLINE = "deadline", "Deadline"
    COMMUNICATION = "communication", "Communication"
    PAYMENT = "payment", "Payment"
    SCOPE = "scope", "Scope"
    OTHER = "other", "Other"


class DisputeResolution(models.TextChoices):
    """Outcome chosen by the administrator resolving a dispute."""

    RELEASE = "release", "Release to receiver"
    REFUND = "refund", "Refund to payer"


class OnboardingStatus(models.TextChoices):
    """
    Onboarding status of a receiver's provider account.

    APPROVED means details are submitted and both charges and payouts are
    enabled; REQUIRED means the provider is asking for more information.
    """

    NOT_STARTED = "not_started", "Not Started"
    REQUIRED = "required", "Action Required"
    APPROVED = "approved", "Approved"
