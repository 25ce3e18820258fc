"""
Webhook event handlers.

Each handler receives one normalized event and the EscrowService built
around the dispatcher's provider, and returns a WebhookOutcome. Handlers
run inside the dispatcher's transaction: they raise to roll back, they
never commit on their own.

Usage:
    from escrow.webhooks.handlers import dispatch_event, register_handler

    @register_handler(EventKind.FUNDING_SUCCEEDED)
    def handle_funding_succeeded(event, service) -> str:
        ...

    outcome = dispatch_event(event, service)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable

from escrow.ledger.types import WebhookOutcome
from escrow.providers.base import TransferStatus
from escrow.webhooks.events import (
    AccountStatusChanged,
    EventKind,
    FundingFailed,
    FundingSucceeded,
    PayoutSettled,
    TransferCreated,
    TransferUpdated,
)

if TYPE_CHECKING:
    from escrow.services import EscrowService
    from escrow.webhooks.events import ProviderEvent


logger = logging.getLogger(__name__)


# =============================================================================
# Handler Registry
# =============================================================================


# Maps normalized event types to handler functions
WEBHOOK_HANDLERS: dict[str, Callable[[ProviderEvent, EscrowService], str]] = {}


def register_handler(event_type: str) -> Callable:
    """
    Decorator to register a handler for a normalized event type.

    Args:
        event_type: One of EventKind
    """

    def decorator(func: Callable[[ProviderEvent, EscrowService], str]) -> Callable:
        WEBHOOK_HANDLERS[event_type] = func
        logger.debug(f"Registered webhook handler for {event_type}")
        return func

    return decorator


def dispatch_event(event: ProviderEvent, service: EscrowService) -> str:
    """
    Dispatch a normalized event to its handler.

    Unknown event types have no handler and yield ``unhandled``; they are
    still acknowledged and recorded by the dispatcher.
    """
    handler = WEBHOOK_HANDLERS.get(event.event_type)

    if not handler:
        logger.info(
            f"No handler registered for event type: {event.provider_type}",
            extra={"provider_event_id": event.event_id},
        )
        return WebhookOutcome.UNHANDLED

    logger.info(
        f"Dispatching {event.event_type} to handler",
        extra={"provider_event_id": event.event_id, "provider_type": event.provider_type},
    )
    return handler(event, service)


# =============================================================================
# Funding Handlers
# =============================================================================


@register_handler(EventKind.FUNDING_SUCCEEDED)
def handle_funding_succeeded(event: FundingSucceeded, service: EscrowService) -> str:
    """Escrow payment captured: DRAFT -> FUNDED."""
    return service.confirm_funding(
        event.escrow_id,
        event.amount_cents,
        deal_hint=event.deal_id,
        source="webhook",
    )


@register_handler(EventKind.FUNDING_FAILED)
def handle_funding_failed(event: FundingFailed, service: EscrowService) -> str:
    return service.record_funding_failed(
        event.escrow_id,
        event.failure_reason,
        deal_hint=event.deal_id,
    )


# =============================================================================
# Transfer Handlers
# =============================================================================


@register_handler(EventKind.TRANSFER_CREATED)
def handle_transfer_created(event: TransferCreated, service: EscrowService) -> str:
    """Transfer accepted by the provider: PENDING -> PROCESSING."""
    return service.orchestrator.apply_transfer_status(
        event.transfer_id,
        TransferStatus.PROCESSING,
        metadata=event.metadata,
    )


@register_handler(EventKind.TRANSFER_UPDATED)
def handle_transfer_updated(event: TransferUpdated, service: EscrowService) -> str:
    return service.orchestrator.apply_transfer_status(
        event.transfer_id,
        event.status,
        metadata=event.metadata,
        failure_reason=event.failure_reason,
    )


@register_handler(EventKind.PAYOUT_SETTLED)
def handle_payout_settled(event: PayoutSettled, service: EscrowService) -> str:
    """Funds reached the receiver: payout COMPLETED, milestone RELEASED."""
    return service.orchestrator.apply_transfer_status(
        event.transfer_id,
        TransferStatus.PAID,
        metadata=event.metadata,
    )


# =============================================================================
# Account Handlers
# =============================================================================


@register_handler(EventKind.ACCOUNT_STATUS_CHANGED)
def handle_account_status_changed(event: AccountStatusChanged, service: EscrowService) -> str:
    return service.orchestrator.apply_account_status(
        event.account_id,
        charges_enabled=event.charges_enabled,
        payouts_enabled=event.payouts_enabled,
        details_submitted=event.details_submitted,
        requirements_due=list(event.requirements_due),
    )
