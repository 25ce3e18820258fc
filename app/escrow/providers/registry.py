"""
Provider registry.

Providers are configured in settings as dotted paths and instantiated per
use; nothing here caches an instance.

Settings:
    PAYMENTS_PROVIDERS = {"stripe": "escrow.providers.stripe_connect.StripeConnectProvider"}
    DEFAULT_PAYMENTS_PROVIDER = "stripe"
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from django.conf import settings
from django.utils.module_loading import import_string

from escrow.exceptions import ProviderConfigurationError

if TYPE_CHECKING:
    from escrow.providers.base import PaymentsProvider


def get_payments_provider(name: str | None = None) -> PaymentsProvider:
    """
    Build the provider registered under ``name`` (default provider if None).

    Raises:
        ProviderConfigurationError: Unknown provider name or bad dotted path
    """
    name = name or settings.DEFAULT_PAYMENTS_PROVIDER
    dotted_path = settings.PAYMENTS_PROVIDERS.get(name)
    if dotted_path is None:
        raise ProviderConfigurationError(
            f"Unknown payments provider '{name}'",
            details={"provider": name},
        )

    try:
        provider_class = import_string(dotted_path)
    except ImportError as e:
        raise ProviderConfigurationError(
            f"Cannot import payments provider '{dotted_path}'",
            details={"provider": name},
        ) from e
    return provider_class()
