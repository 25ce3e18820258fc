"""
Payments provider adapters.

Usage:
    from escrow.providers import get_payments_provider

    provider = get_payments_provider()          # DEFAULT_PAYMENTS_PROVIDER
    provider = get_payments_provider("stripe")
"""

from escrow.providers.base import (
    EscrowStatus,
    FundingIntent,
    IdempotencyKeyGenerator,
    PaymentsProvider,
    TransferStatus,
)
from escrow.providers.registry import get_payments_provider

__all__ = [
    "EscrowStatus",
    "FundingIntent",
    "IdempotencyKeyGenerator",
    "PaymentsProvider",
    "TransferStatus",
    "get_payments_provider",
]
