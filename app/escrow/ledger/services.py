"""
Ledger recorder service.

All ledger writes go through LedgerRecorder so that a failed write is
always raised as LedgerWriteFailed and rolls back the transition that
triggered it.

Usage:
    from escrow.ledger.services import LedgerRecorder
    from escrow.ledger.types import EventType

    recorder = LedgerRecorder()

    with transaction.atomic():
        deal.mark_funded(escrow_reference=ref)
        deal.save()
        recorder.record(EventType.DEAL_FUNDED, deal=deal, subject=deal)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from django.db import DatabaseError, IntegrityError, transaction

from escrow.exceptions import DuplicateEvent, LedgerWriteFailed
from escrow.ledger.models import LedgerEvent
from escrow.ledger.types import EventType

if TYPE_CHECKING:
    from typing import Any

    from django.db.models import Model

    from core.exceptions import BaseApplicationError

logger = logging.getLogger(__name__)


class LedgerRecorder:
    """
    Appends LedgerEvents.

    Holds no state; constructed once per service and passed in so tests
    can observe or replace it.
    """

    def record(
        self,
        event_type: str,
        *,
        actor=None,
        deal=None,
        subject: Model | None = None,
        payload: dict[str, Any] | None = None,
        provider_event_id: str | None = None,
    ) -> LedgerEvent:
        """
        Append one ledger event inside the caller's transaction.

        The insert runs in a savepoint so the caller's transaction stays
        usable for the rollback it is about to perform.

        Args:
            event_type: Namespaced event type (see EventType)
            actor: User who caused the event, or None for system events
            deal: Deal the event belongs to
            subject: Model instance the event is about (defaults to deal)
            payload: JSON-serializable event data
            provider_event_id: Provider webhook id for receipts

        Raises:
            DuplicateEvent: A receipt for provider_event_id already exists
            LedgerWriteFailed: The event could not be persisted
        """
        subject = subject if subject is not None else deal
        subject_type = subject._meta.model_name if subject is not None else ""
        subject_id = str(subject.pk) if subject is not None else ""

        try:
            with transaction.atomic():
                return LedgerEvent.objects.create(
                    event_type=event_type,
                    actor=actor,
                    deal=deal,
                    subject_type=subject_type,
                    subject_id=subject_id,
                    payload=payload or {},
                    provider_event_id=provider_event_id,
                )
        except DatabaseError as e:
            if (
                isinstance(e, IntegrityError)
                and provider_event_id
                and self.exists_for_provider_event(provider_event_id)
            ):
                raise DuplicateEvent(
                    "Provider event already recorded",
                    details={"provider_event_id": provider_event_id},
                ) from e
            logger.error(
                f"Ledger write failed for {event_type}",
                extra={
                    "event_type": event_type,
                    "deal_id": str(deal.pk) if deal is not None else None,
                    "provider_event_id": provider_event_id,
                },
                exc_info=True,
            )
            raise LedgerWriteFailed(
                f"Could not record ledger event {event_type}",
                details={"event_type": event_type},
            ) from e

    def record_denied(
        self,
        action: str,
        exc: BaseApplicationError,
        *,
        actor=None,
        deal=None,
        subject: Model | None = None,
    ) -> LedgerEvent | None:
        """
        Record a denied user action.

        Called after the failed transaction has rolled back, in its own
        transaction. A failure here is logged and not raised: the caller
        is already reporting the original denial.
        """
        try:
            with transaction.atomic():
                return self.record(
                    EventType.ACTION_DENIED,
                    actor=actor,
                    deal=deal,
                    subject=subject,
                    payload={
                        "action": action,
                        "error_code": exc.error_code,
                        "reason": exc.message,
                        "details": exc.details,
                    },
                )
        except LedgerWriteFailed:
            logger.error(
                f"Could not record denied action {action}",
                extra={"action": action, "error_code": exc.error_code},
            )
            return None

    def exists_for_provider_event(self, provider_event_id: str) -> bool:
        """Check whether a provider webhook has already been recorded."""
        return LedgerEvent.objects.filter(provider_event_id=provider_event_id).exists()

    def anonymize_actor(self, user) -> int:
        """
        Null the actor on all of ``user``'s events (account erasure).

        Returns:
            Number of events anonymized
        """
        count = LedgerEvent.objects.anonymize_actor(user)
        logger.info(
            f"Anonymized actor on {count} ledger events",
            extra={"user_id": user.pk, "event_count": count},
        )
        return count
