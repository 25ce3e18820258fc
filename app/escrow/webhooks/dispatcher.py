"""
Webhook dispatcher.

Flow:
    1. provider.construct_event: signature, timestamp tolerance, parsing
    2. Dedupe on the provider event id (ledger receipts)
    3. One transaction: handler + exactly one ``webhook.<type>`` receipt

The receipt's unique ``provider_event_id`` is the idempotency guard. Two
concurrent deliveries of the same event race on it; the loser's transaction
rolls back and it is reported as a duplicate.

Usage:
    dispatcher = WebhookDispatcher(get_payments_provider("stripe"))
    result = dispatcher.handle(request.body, request.headers.get("Stripe-Signature", ""))
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from django.db import transaction

from escrow.exceptions import DuplicateEvent, SignatureInvalid
from escrow.ledger.services import LedgerRecorder
from escrow.ledger.types import EventType
from escrow.services import EscrowService
from escrow.webhooks.handlers import dispatch_event

if TYPE_CHECKING:
    from escrow.providers import PaymentsProvider
    from escrow.webhooks.events import ProviderEvent


logger = logging.getLogger(__name__)


class DispatchStatus:
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"


@dataclass
class DispatchResult:
    """
    Attributes:
        status: accepted or duplicate
        event: Normalized event
        outcome: WebhookOutcome for accepted events, empty for duplicates
    """

    status: str
    event: ProviderEvent
    outcome: str = ""


class WebhookDispatcher:
    """
    Verifies, dedupes and dispatches provider webhooks.

    Args:
        provider: PaymentsProvider that verifies and normalizes the payload
        service: EscrowService handlers act through (default: built on provider)
        recorder: LedgerRecorder for receipts
    """

    def __init__(
        self,
        provider: PaymentsProvider,
        service: EscrowService | None = None,
        recorder: LedgerRecorder | None = None,
    ) -> None:
        self.provider = provider
        self.recorder = recorder or LedgerRecorder()
        self.service = service or EscrowService(provider=provider, recorder=self.recorder)

    def handle(self, raw_body: bytes, signature_header: str) -> DispatchResult:
        """
        Process one webhook delivery.

        Raises:
            SignatureInvalid: Authenticity or timestamp check failed
            PayloadInvalid: Verified body does not match its schema
            LedgerWriteFailed, WebhookTargetNotFound, ProviderUnavailable:
                transient; the provider should redeliver
        """
        try:
            event = self.provider.construct_event(raw_body, signature_header)
        except SignatureInvalid as e:
            logger.warning(
                "Webhook signature verification failed",
                extra={
                    "security_event": True,
                    "provider": self.provider.name,
                    "reason": e.message,
                },
            )
            raise

        context = {
            "provider_event_id": event.event_id,
            "provider_type": event.provider_type,
            "event_type": event.event_type,
        }

        if self.recorder.exists_for_provider_event(event.event_id):
            logger.info("Webhook already processed, acknowledging duplicate", extra=context)
            return DispatchResult(DispatchStatus.DUPLICATE, event)

        started = time.monotonic()
        try:
            with transaction.atomic():
                outcome = dispatch_event(event, self.service)
                self._record_receipt(event, outcome)
        except DuplicateEvent:
            logger.info("Concurrent duplicate webhook delivery", extra=context)
            return DispatchResult(DispatchStatus.DUPLICATE, event)

        logger.info(
            f"Webhook processed: {outcome}",
            extra={
                **context,
                "outcome": outcome,
                "duration_ms": int((time.monotonic() - started) * 1000),
            },
        )
        return DispatchResult(DispatchStatus.ACCEPTED, event, outcome)

    def _record_receipt(self, event: ProviderEvent, outcome: str) -> None:
        self.recorder.record(
            EventType.webhook(event.event_type),
            payload={
                "provider": self.provider.name,
                "provider_type": event.provider_type,
                "outcome": outcome,
            },
            provider_event_id=event.event_id,
        )
