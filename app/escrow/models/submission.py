"""
Deliverable and Dispute records.

Neither carries a state machine of its own: they are the documents that
explain why a Milestone or Deal moved.
"""

from __future__ import annotations

from django.conf import settings
from django.db import models
from django.utils import timezone

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel

from escrow.state_machines import (
    ACTIVE_DISPUTE_STATUSES,
    DisputeCategory,
    DisputePriority,
    DisputeResolution,
    DisputeStatus,
)


class Deliverable(UUIDPrimaryKeyMixin, BaseModel):
    """
    One submission of work against a Milestone.

    A revision request keeps the row and stores the payer's feedback; the
    next submission creates a new row.
    """

    milestone = models.ForeignKey(
        "escrow.Milestone",
        on_delete=models.PROTECT,
        related_name="deliverables",
    )

    submitted_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        related_name="deliverables",
    )

    url = models.URLField(max_length=500, blank=True, default="")
    file_reference = models.CharField(
        max_length=255,
        blank=True,
        default="",
        help_text="Opaque handle of an uploaded file",
    )
    note = models.TextField(blank=True, default="")

    revision_feedback = models.TextField(blank=True, default="")
    revision_requested_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self) -> str:
        return f"Deliverable({self.id}, milestone={self.milestone_id})"


class Dispute(UUIDPrimaryKeyMixin, BaseModel):
    """
    A dispute raised on a funded Deal.

    At most one active (OPEN or ESCALATED) dispute exists per deal.
    Escalation and resolution are explicit administrative actions.
    """

    deal = models.ForeignKey(
        "escrow.Deal",
        on_delete=models.PROTECT,
        related_name="disputes",
    )

    raised_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        related_name="raised_disputes",
    )

    category = models.CharField(
        max_length=20,
        choices=DisputeCategory.choices,
        default=DisputeCategory.OTHER,
    )
    reason = models.TextField()

    requested_amount_cents = models.PositiveBigIntegerField(
        null=True,
        blank=True,
        help_text="Refund the raising party asks for; informational only",
    )

    status = models.CharField(
        max_length=20,
        choices=DisputeStatus.choices,
        default=DisputeStatus.OPEN,
        db_index=True,
    )

    priority = models.CharField(
        max_length=10,
        choices=DisputePriority.choices,
        default=DisputePriority.MEDIUM,
    )
    admin_notes = models.TextField(blank=True, default="")
    escalated_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="escalated_disputes",
    )
    escalated_at = models.DateTimeField(null=True, blank=True)

    resolution = models.CharField(
        max_length=20,
        choices=DisputeResolution.choices,
        blank=True,
        default="",
    )
    resolution_note = models.TextField(blank=True, default="")
    resolved_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="resolved_disputes",
    )
    resolved_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["deal"],
                condition=models.Q(status__in=ACTIVE_DISPUTE_STATUSES),
                name="dispute_one_active_per_deal",
            ),
        ]

    def __str__(self) -> str:
        return f"Dispute({self.id}, {self.status}, deal={self.deal_id})"

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_DISPUTE_STATUSES

    def escalate(self, escalated_by, priority: str, note: str = "") -> None:
        self.status = DisputeStatus.ESCALATED
        self.priority = priority
        self.escalated_by = escalated_by
        self.escalated_at = timezone.now()
        if note:
            self.admin_notes = note

    def resolve(self, resolution: str, resolved_by, note: str = "") -> None:
        self.status = DisputeStatus.RESOLVED
        self.resolution = resolution
        self.resolved_by = resolved_by
        self.resolution_note = note
        self.resolved_at = timezone.now()
