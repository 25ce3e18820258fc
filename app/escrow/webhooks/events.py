"""
Normalized provider events.

A verified webhook is parsed into exactly one of these frozen dataclasses
before it reaches a handler. ``event_type`` is the dispatch key and the
suffix of the ledger receipt type (``webhook.<event_type>``).

Variants:
    FundingSucceeded      - escrow payment captured
    FundingFailed         - escrow payment failed
    TransferCreated       - transfer accepted by the provider
    TransferUpdated       - transfer status changed (processing|paid|failed|canceled)
    PayoutSettled         - transfer reached the receiver
    AccountStatusChanged  - receiver account capabilities changed
    UnknownEvent          - anything else; acknowledged and recorded only
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

from escrow.providers.base import TransferStatus


class EventKind:
    """Normalized event type names."""

    FUNDING_SUCCEEDED = "funding_succeeded"
    FUNDING_FAILED = "funding_failed"
    TRANSFER_CREATED = "transfer_created"
    TRANSFER_UPDATED = "transfer_updated"
    PAYOUT_SETTLED = "payout_settled"
    ACCOUNT_STATUS_CHANGED = "account_status_changed"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class FundingSucceeded:
    event_id: str
    provider_type: str
    escrow_id: str
    amount_cents: int
    currency: str
    deal_id: str | None = None

    event_type = EventKind.FUNDING_SUCCEEDED


@dataclass(frozen=True)
class FundingFailed:
    event_id: str
    provider_type: str
    escrow_id: str
    failure_reason: str = ""
    deal_id: str | None = None

    event_type = EventKind.FUNDING_FAILED


@dataclass(frozen=True)
class TransferCreated:
    event_id: str
    provider_type: str
    transfer_id: str
    amount_cents: int
    currency: str
    metadata: dict[str, str] = field(default_factory=dict)

    event_type = EventKind.TRANSFER_CREATED


@dataclass(frozen=True)
class TransferUpdated:
    """
    A transfer status report.

    ``status`` is one of TransferStatus. A PAID report is the provider's
    terminal truth for that transfer id.
    """

    event_id: str
    provider_type: str
    transfer_id: str
    status: TransferStatus
    failure_reason: str = ""
    metadata: dict[str, str] = field(default_factory=dict)

    event_type = EventKind.TRANSFER_UPDATED


@dataclass(frozen=True)
class PayoutSettled:
    event_id: str
    provider_type: str
    transfer_id: str
    metadata: dict[str, str] = field(default_factory=dict)

    event_type = EventKind.PAYOUT_SETTLED


@dataclass(frozen=True)
class AccountStatusChanged:
    event_id: str
    provider_type: str
    account_id: str
    charges_enabled: bool
    payouts_enabled: bool
    details_submitted: bool
    requirements_due: tuple[str, ...] = ()

    event_type = EventKind.ACCOUNT_STATUS_CHANGED


@dataclass(frozen=True)
class UnknownEvent:
    event_id: str
    provider_type: str
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    event_type = EventKind.UNKNOWN


ProviderEvent = Union[
    FundingSucceeded,
    FundingFailed,
    TransferCreated,
    TransferUpdated,
    PayoutSettled,
    AccountStatusChanged,
    UnknownEvent,
]
