"""
Ledger model: the append-only escrow audit trail.

Every state change, denied action and processed webhook produces exactly
one LedgerEvent. Rows are never updated or deleted; the single permitted
mutation is nulling the actor when a user account is erased.

Usage:
    from escrow.ledger.models import LedgerEvent

    LedgerEvent.objects.filter(deal=deal).order_by("occurred_at")
    LedgerEvent.objects.filter(provider_event_id="evt_123").exists()
"""

from __future__ import annotations

from django.conf import settings
from django.core.serializers.json import DjangoJSONEncoder
from django.db import models
from django.utils import timezone

from core.model_mixins import UUIDPrimaryKeyMixin

from escrow.exceptions import LedgerImmutableError


class LedgerEventQuerySet(models.QuerySet):
    """QuerySet that refuses bulk mutation."""

    def update(self, **kwargs):
        raise LedgerImmutableError(
            "Ledger events cannot be updated",
            details={"fields": sorted(kwargs)},
        )

    def delete(self):
        raise LedgerImmutableError("Ledger events cannot be deleted")

    def anonymize_actor(self, user) -> int:
        """
        Null the actor on every event of ``user``.

        Leaves event_type, payload and timestamps untouched.

        Returns:
            Number of events anonymized
        """
        return models.QuerySet.update(self.filter(actor=user), actor=None)


class LedgerEvent(UUIDPrimaryKeyMixin, models.Model):
    """
    An immutable record of one fact.

    Fields:
        event_type: Namespaced type (e.g. "deal.funded", "webhook.payout_settled")
        actor: User who caused the fact; NULL for provider/system events
            or after anonymization
        deal: Deal the fact belongs to, if any
        subject_type / subject_id: Entity the fact is about
        payload: Type-specific structured data
        provider_event_id: Provider webhook id; the deduplication key
        occurred_at: When the fact was recorded

    Constraints:
        - provider_event_id is unique (NULL allowed for non-webhook facts)
    """

    event_type = models.CharField(
        max_length=100,
        db_index=True,
        help_text="Namespaced event type",
    )

    actor = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="ledger_events",
        help_text="User who caused this event (NULL for system events)",
    )

    deal = models.ForeignKey(
        "escrow.Deal",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="ledger_events",
        help_text="Deal this event belongs to",
    )

    subject_type = models.CharField(
        max_length=50,
        blank=True,
        default="",
        help_text="Model name of the entity this event is about",
    )

    subject_id = models.CharField(
        max_length=64,
        blank=True,
        default="",
        help_text="Primary key of the entity this event is about",
    )

    payload = models.JSONField(
        default=dict,
        blank=True,
        encoder=DjangoJSONEncoder,
        help_text="Type-specific event data",
    )

    provider_event_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        unique=True,
        help_text="Provider webhook event id (deduplication key)",
    )

    occurred_at = models.DateTimeField(
        default=timezone.now,
        db_index=True,
        help_text="When the event was recorded",
    )

    objects = LedgerEventQuerySet.as_manager()

    class Meta:
        ordering = ["occurred_at"]
        indexes = [
            models.Index(fields=["deal", "occurred_at"], name="ledger_deal_occurred_idx"),
            models.Index(fields=["subject_type", "subject_id"], name="ledger_subject_idx"),
        ]

    def __str__(self) -> str:
        return f"LedgerEvent({self.event_type}, {self.occurred_at:%Y-%m-%d %H:%M:%S})"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise LedgerImmutableError(
                "Ledger events cannot be modified",
                details={"ledger_event_id": str(self.pk)},
            )
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise LedgerImmutableError(
            "Ledger events cannot be deleted",
            details={"ledger_event_id": str(self.pk)},
        )
