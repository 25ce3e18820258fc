"""
Payments provider contract.

Every provider operation is an "intent": the call returns a pending
reference and the real outcome arrives later by webhook (or is read back by
reconciliation through ``get_status`` / ``get_transfer_status``).

Providers are plain instances built from settings by
``escrow.providers.registry.get_payments_provider``. Services and the
webhook dispatcher receive one in their constructor.

Usage:
    from escrow.providers import get_payments_provider

    provider = get_payments_provider()
    escrow_id = provider.create_escrow(deal.id, deal.currency)
    intent = provider.fund_escrow(escrow_id, deal.amount_cents, payer.id)
"""

from __future__ import annotations

import hashlib
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING

from django.conf import settings
from django.db import models

if TYPE_CHECKING:
    from typing import Any

    from escrow.webhooks.events import ProviderEvent


# =============================================================================
# Data Types
# =============================================================================


class EscrowStatus(models.TextChoices):
    """Provider-side state of an escrow hold."""

    UNFUNDED = "unfunded", "Unfunded"
    FUNDED = "funded", "Funded"
    RELEASED = "released", "Released"
    REFUNDED = "refunded", "Refunded"


class TransferStatus(models.TextChoices):
    """Provider-side state of an outbound transfer."""

    PROCESSING = "processing", "Processing"
    PAID = "paid", "Paid"
    FAILED = "failed", "Failed"
    CANCELED = "canceled", "Canceled"


@dataclass(frozen=True)
class FundingIntent:
    """
    Pending funding reference returned by ``fund_escrow``.

    Attributes:
        payment_reference: Provider payment handle (pi_xxx)
        client_secret: Secret the payer's client uses to confirm payment
        status: Provider status string at creation time
    """

    payment_reference: str
    client_secret: str | None = None
    status: str = ""


# =============================================================================
# Idempotency Keys
# =============================================================================


class IdempotencyKeyGenerator:
    """
    Generate idempotency keys for provider calls.

    Format: "{operation}:{entity_id}:{attempt}:{hash}"

    The same (operation, entity, attempt) always yields the same key, so a
    retried call after a timeout is deduplicated by the provider.

    Example:
        key = IdempotencyKeyGenerator.generate("release", payout.id, payout.attempt)
        # "release:550e8400-...:1:a1b2c3d4"
    """

    @staticmethod
    def generate(
        operation: str,
        entity_id: uuid.UUID | str,
        attempt: int = 1,
    ) -> str:
        entity_str = str(entity_id)
        hash_input = f"{operation}:{entity_str}:{attempt}:{settings.SECRET_KEY}"
        short_hash = hashlib.sha256(hash_input.encode()).hexdigest()[:8]
        return f"{operation}:{entity_str}:{attempt}:{short_hash}"


# =============================================================================
# Provider Contract
# =============================================================================


class PaymentsProvider(ABC):
    """
    Uniform interface over a payments backend.

    Implementations translate their SDK errors into escrow.exceptions:
        ProviderUnavailable: transient; the caller may retry with backoff
        InvalidCurrency: the currency is not supported
        ProviderRequestRejected: permanent rejection
        ProviderConfigurationError: credentials or setup problem

    Attributes:
        name: Registry name stored on Deal.provider / Payout.provider
    """

    name: str = ""

    @abstractmethod
    def create_escrow(self, deal_id: uuid.UUID | str, currency: str) -> str:
        """
        Create the escrow hold for a deal.

        Idempotent per deal id: calling twice returns the same escrow id.
        """

    @abstractmethod
    def fund_escrow(
        self,
        escrow_id: str,
        amount_cents: int,
        payer_id: uuid.UUID | str | int,
    ) -> FundingIntent:
        """Start funding; success or failure arrives by webhook."""

    @abstractmethod
    def release_to_receiver(
        self,
        escrow_id: str,
        amount_cents: int,
        receiver_id: str,
        metadata: dict[str, Any],
        currency: str = "usd",
        idempotency_key: str | None = None,
    ) -> str:
        """Start a transfer to the receiver's account; returns the transfer ref."""

    @abstractmethod
    def refund_to_payer(
        self,
        escrow_id: str,
        amount_cents: int | None = None,
        idempotency_key: str | None = None,
    ) -> str:
        """Refund the payer in full (``amount_cents=None``) or in part."""

    @abstractmethod
    def get_status(self, escrow_id: str) -> EscrowStatus:
        """Read the escrow hold status back from the provider."""

    @abstractmethod
    def get_transfer_status(self, payout_ref: str) -> TransferStatus:
        """Read a transfer's status back from the provider."""

    @abstractmethod
    def construct_event(self, raw_body: bytes, signature_header: str) -> ProviderEvent:
        """
        Verify a webhook and normalize it.

        Signature verification runs on the raw bytes before any parsing.

        Raises:
            SignatureInvalid: Signature or timestamp check failed
            PayloadInvalid: Known event type with a malformed object
        """
