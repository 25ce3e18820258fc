"""
Escrow app configuration.

This app owns the escrow lifecycle:
- Deal / Milestone / Payout state machines (django-fsm)
- Payment provider adapters (Stripe Connect)
- Webhook verification, deduplication and dispatch
- Append-only ledger of every state change
"""

from django.apps import AppConfig


class EscrowConfig(AppConfig):
    """Configuration for the escrow application."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "escrow"
    verbose_name = "Escrow"

    def ready(self) -> None:
        # Registers webhook handlers with the dispatcher registry
        from escrow.webhooks import handlers  # noqa: F401
        from escrow.providers.stripe_connect import configure_stripe_transport

        configure_stripe_transport()
