"""
Reconciliation against the payments provider.

Webhooks are the primary signal; these scans catch what was missed or
timed out. A provider call that timed out is never assumed to have failed:
the stale row is re-read from the provider and the reported status applied
through the same code path a webhook would use.

Usage:
    stats = ReconciliationService().reconcile_stale_payouts()
    # {"checked": 3, "applied": 1, "unchanged": 2, "errors": 0}
"""

from __future__ import annotations

import logging
from datetime import timedelta

from django.conf import settings
from django.db import transaction
from django.db.models import Q
from django.utils import timezone

from escrow.exceptions import ProviderError, ProviderUnavailable
from escrow.ledger.types import WebhookOutcome
from escrow.models import Deal, Payout
from escrow.providers.base import EscrowStatus
from escrow.services.base import EscrowServiceBase
from escrow.services.escrow_service import EscrowService
from escrow.state_machines import DealState, PayoutStatus

logger = logging.getLogger(__name__)

DEFAULT_STALE_MINUTES = 30


def stale_cutoff():
    minutes = getattr(settings, "ESCROW_RECONCILIATION_STALE_MINUTES", DEFAULT_STALE_MINUTES)
    return timezone.now() - timedelta(minutes=minutes)


class ReconciliationService(EscrowServiceBase):
    """Polls the provider for deals and payouts stuck in intermediate states."""

    def __init__(self, provider=None, recorder=None, escrow_service=None) -> None:
        super().__init__(provider=provider, recorder=recorder)
        self.escrow_service = escrow_service or EscrowService(
            provider=self.provider, recorder=self.recorder
        )

    def reconcile_stale_funding(self, limit: int = 100) -> dict[str, int]:
        """Confirm DRAFT deals whose escrow the provider reports as funded."""
        stats = {"checked": 0, "applied": 0, "unchanged": 0, "errors": 0}
        deals = Deal.objects.filter(
            state=DealState.DRAFT,
            funding_reference__isnull=False,
            updated_at__lte=stale_cutoff(),
        ).order_by("updated_at")[:limit]

        for deal in deals:
            stats["checked"] += 1
            try:
                status = self.provider.get_status(deal.funding_reference)
            except ProviderError as e:
                stats["errors"] += 1
                logger.warning(
                    "Funding reconciliation failed for deal",
                    extra={"deal_id": str(deal.pk), "error_code": e.error_code},
                )
                continue

            if status != EscrowStatus.FUNDED:
                stats["unchanged"] += 1
                continue

            with transaction.atomic():
                outcome = self.escrow_service.confirm_funding(
                    deal.funding_reference,
                    deal.amount_cents,
                    source="reconciliation",
                )
            stats["applied" if outcome == WebhookOutcome.APPLIED else "unchanged"] += 1

        logger.info("Funding reconciliation finished", extra=stats)
        return stats

    def reconcile_stale_payouts(self, limit: int = 100) -> dict[str, int]:
        """
        Apply the provider's transfer status to stale in-flight payouts.

        Covers PENDING payouts that already have a provider reference and
        PROCESSING payouts, older than ESCROW_RECONCILIATION_STALE_MINUTES.
        """
        stats = {"checked": 0, "applied": 0, "unchanged": 0, "errors": 0}
        payouts = (
            Payout.objects.filter(
                Q(status=PayoutStatus.PENDING, provider_reference__isnull=False)
                | Q(status=PayoutStatus.PROCESSING),
                updated_at__lte=stale_cutoff(),
            )
            .order_by("updated_at")[:limit]
        )

        for payout in payouts:
            stats["checked"] += 1
            try:
                status = self.provider.get_transfer_status(payout.provider_reference)
            except ProviderUnavailable as e:
                stats["errors"] += 1
                logger.warning(
                    "Payout reconciliation deferred: provider unavailable",
                    extra={"payout_id": str(payout.pk), "error_code": e.error_code},
                )
                continue
            except ProviderError as e:
                stats["errors"] += 1
                logger.error(
                    "Payout reconciliation failed",
                    extra={"payout_id": str(payout.pk), "error_code": e.error_code},
                )
                continue

            with transaction.atomic():
                outcome = self.escrow_service.orchestrator.apply_transfer_status(
                    payout.provider_reference,
                    status,
                    metadata={"payout_id": str(payout.pk)},
                    source="reconciliation",
                )
            stats["applied" if outcome == WebhookOutcome.APPLIED else "unchanged"] += 1

        logger.info("Payout reconciliation finished", extra=stats)
        return stats
