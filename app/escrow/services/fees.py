"""
Payout fee policies.

A policy is a callable ``(gross_amount_cents, currency) -> fee_cents``
selected by the ESCROW_PAYOUT_FEE_POLICY dotted path. The fee is withheld
from the milestone amount; the receiver gets ``gross - fee``.
"""

from __future__ import annotations

from collections.abc import Callable

from django.conf import settings
from django.utils.module_loading import import_string

FeePolicy = Callable[[int, str], int]

DEFAULT_FEE_POLICY = "escrow.services.fees.no_fee"


def no_fee(gross_amount_cents: int, currency: str) -> int:
    return 0


def basis_points_fee(gross_amount_cents: int, currency: str) -> int:
    """
    ESCROW_PLATFORM_FEE_BASIS_POINTS of the gross, rounded down.

    Example:
        500 bps on 10000 cents -> 500
    """
    basis_points = getattr(settings, "ESCROW_PLATFORM_FEE_BASIS_POINTS", 0)
    return gross_amount_cents * basis_points // 10_000


def get_fee_policy() -> FeePolicy:
    return import_string(getattr(settings, "ESCROW_PAYOUT_FEE_POLICY", DEFAULT_FEE_POLICY))
