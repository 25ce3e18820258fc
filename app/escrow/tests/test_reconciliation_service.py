"""
Tests for ReconciliationService.

Rows are made stale by moving ``updated_at`` back with a queryset update,
which bypasses ``auto_now``.
"""

from datetime import timedelta

import pytest
from django.utils import timezone

from escrow.exceptions import ProviderRequestRejected, ProviderUnavailable
from escrow.ledger.models import LedgerEvent
from escrow.ledger.types import EventType
from escrow.models import Deal, Milestone, Payout
from escrow.providers.base import EscrowStatus, TransferStatus
from escrow.services import ReconciliationService
from escrow.state_machines import DealState, MilestoneState, PayoutStatus


@pytest.fixture
def reconciler(fake_provider, service, recorder):
    return ReconciliationService(provider=fake_provider, recorder=recorder, escrow_service=service)


def make_stale(queryset, minutes=45):
    queryset.update(updated_at=timezone.now() - timedelta(minutes=minutes))


@pytest.mark.django_db
class TestReconcileStaleFunding:
    @pytest.fixture
    def funding_deal(self, service, accepted_deal, payer):
        service.fund_deal(accepted_deal.pk, payer)
        make_stale(Deal.objects.filter(pk=accepted_deal.pk))
        return Deal.objects.get(pk=accepted_deal.pk)

    def test_applies_missed_funding(self, reconciler, funding_deal, fake_provider):
        fake_provider.escrow_statuses[funding_deal.funding_reference] = EscrowStatus.FUNDED

        stats = reconciler.reconcile_stale_funding()

        assert stats == {"checked": 1, "applied": 1, "unchanged": 0, "errors": 0}
        assert Deal.objects.get(pk=funding_deal.pk).state == DealState.FUNDED
        event = LedgerEvent.objects.get(event_type=EventType.DEAL_FUNDED)
        assert event.payload["source"] == "reconciliation"

    def test_unfunded_escrow_is_left_alone(self, reconciler, funding_deal):
        stats = reconciler.reconcile_stale_funding()

        assert stats["unchanged"] == 1
        assert Deal.objects.get(pk=funding_deal.pk).state == DealState.DRAFT

    def test_recent_deals_are_skipped(self, reconciler, service, accepted_deal, payer):
        service.fund_deal(accepted_deal.pk, payer)

        stats = reconciler.reconcile_stale_funding()

        assert stats["checked"] == 0

    def test_deals_without_funding_reference_are_skipped(self, reconciler, accepted_deal):
        make_stale(Deal.objects.filter(pk=accepted_deal.pk))

        assert reconciler.reconcile_stale_funding()["checked"] == 0

    def test_provider_error_is_counted(self, reconciler, funding_deal, fake_provider):
        fake_provider.errors["get_status"] = ProviderUnavailable("timeout")

        stats = reconciler.reconcile_stale_funding()

        assert stats["errors"] == 1
        assert Deal.objects.get(pk=funding_deal.pk).state == DealState.DRAFT

    def test_respects_configured_staleness(self, reconciler, funding_deal, settings):
        settings.ESCROW_RECONCILIATION_STALE_MINUTES = 120

        assert reconciler.reconcile_stale_funding()["checked"] == 0


@pytest.mark.django_db
class TestReconcileStalePayouts:
    @pytest.fixture
    def stale_payout(self, approved_payout):
        make_stale(Payout.objects.filter(pk=approved_payout.pk))
        return Payout.objects.get(pk=approved_payout.pk)

    def test_applies_paid_transfer(self, reconciler, stale_payout, fake_provider):
        fake_provider.transfer_statuses[stale_payout.provider_reference] = TransferStatus.PAID

        stats = reconciler.reconcile_stale_payouts()

        assert stats == {"checked": 1, "applied": 1, "unchanged": 0, "errors": 0}
        assert Payout.objects.get(pk=stale_payout.pk).status == PayoutStatus.COMPLETED
        milestone = Milestone.objects.get(pk=stale_payout.milestone_id)
        assert milestone.state == MilestoneState.RELEASED

    def test_applies_failed_transfer(self, reconciler, stale_payout, fake_provider):
        fake_provider.transfer_statuses[stale_payout.provider_reference] = TransferStatus.FAILED

        reconciler.reconcile_stale_payouts()

        assert Payout.objects.get(pk=stale_payout.pk).status == PayoutStatus.FAILED

    def test_processing_payout_still_processing(self, reconciler, stale_payout, fake_provider):
        fake_provider.transfer_statuses[stale_payout.provider_reference] = TransferStatus.PROCESSING
        reconciler.reconcile_stale_payouts()
        make_stale(Payout.objects.filter(pk=stale_payout.pk))

        stats = reconciler.reconcile_stale_payouts()

        assert stats["unchanged"] == 1
        assert Payout.objects.get(pk=stale_payout.pk).status == PayoutStatus.PROCESSING

    def test_pending_payouts_without_reference_are_skipped(
        self, reconciler, service, submitted_milestone, payer, fake_provider
    ):
        fake_provider.errors["release_to_receiver"] = ProviderUnavailable("503")
        service.approve_milestone(submitted_milestone.pk, payer)
        make_stale(Payout.objects.all())

        assert reconciler.reconcile_stale_payouts()["checked"] == 0
        assert fake_provider.calls_for("get_transfer_status") == []

    @pytest.mark.parametrize(
        "error", [ProviderUnavailable("timeout"), ProviderRequestRejected("no such transfer")]
    )
    def test_provider_errors_are_counted(self, reconciler, stale_payout, fake_provider, error):
        fake_provider.errors["get_transfer_status"] = error

        stats = reconciler.reconcile_stale_payouts()

        assert stats["errors"] == 1
        assert Payout.objects.get(pk=stale_payout.pk).status == PayoutStatus.PENDING
