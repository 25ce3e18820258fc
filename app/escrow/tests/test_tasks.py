"""
Tests for escrow Celery tasks.

Tasks are called directly (synchronously); ``.delay`` is patched where a
test asserts what gets queued.
"""

from datetime import timedelta
from unittest.mock import call, patch

import pytest
from django.utils import timezone

from escrow.exceptions import ProviderUnavailable
from escrow.models import Deal, Milestone, Payout
from escrow.providers.base import TransferStatus
from escrow.state_machines import DisputeResolution, MilestoneState, PayoutStatus
from escrow.tasks import (
    auto_approve_milestone,
    auto_approve_submitted_milestones,
    execute_pending_payouts,
    reconcile_stale_funding,
    reconcile_stale_payouts,
    request_payout_transfer,
    request_pending_refunds,
)


@pytest.fixture
def deferred_payout(service, submitted_milestone, payer, fake_provider):
    """Approved milestone whose transfer request hit a provider outage."""
    fake_provider.errors["release_to_receiver"] = ProviderUnavailable("503")
    result = service.approve_milestone(submitted_milestone.pk, payer)
    assert result.data.deferred
    del fake_provider.errors["release_to_receiver"]
    return result.data.payout


@pytest.mark.django_db
class TestAutoApprovalTasks:
    def test_scan_queues_due_milestones(self, submitted_milestone, settings):
        settings.ESCROW_AUTO_APPROVAL_GRACE_HOURS = 72
        Milestone.objects.filter(pk=submitted_milestone.pk).update(
            submitted_at=timezone.now() - timedelta(hours=80)
        )

        with patch("escrow.tasks.auto_approve_milestone.delay") as mock_delay:
            result = auto_approve_submitted_milestones()

        assert result == {"queued": 1}
        mock_delay.assert_called_once_with(str(submitted_milestone.pk))

    def test_scan_disabled_without_grace_period(self, submitted_milestone, settings):
        settings.ESCROW_AUTO_APPROVAL_GRACE_HOURS = None

        with patch("escrow.tasks.auto_approve_milestone.delay") as mock_delay:
            result = auto_approve_submitted_milestones()

        assert result == {"queued": 0}
        mock_delay.assert_not_called()

    def test_scan_uses_deal_grace_period(self, submitted_milestone, settings):
        settings.ESCROW_AUTO_APPROVAL_GRACE_HOURS = None
        Deal.objects.filter(pk=submitted_milestone.deal_id).update(auto_approval_grace_hours=12)
        Milestone.objects.filter(pk=submitted_milestone.pk).update(
            submitted_at=timezone.now() - timedelta(hours=13)
        )

        with patch("escrow.tasks.auto_approve_milestone.delay") as mock_delay:
            result = auto_approve_submitted_milestones()

        assert result == {"queued": 1}
        mock_delay.assert_called_once_with(str(submitted_milestone.pk))

    def test_scan_skips_deal_with_auto_approval_off(self, submitted_milestone, settings):
        settings.ESCROW_AUTO_APPROVAL_GRACE_HOURS = 72
        Deal.objects.filter(pk=submitted_milestone.deal_id).update(auto_approval_enabled=False)
        Milestone.objects.filter(pk=submitted_milestone.pk).update(
            submitted_at=timezone.now() - timedelta(hours=80)
        )

        with patch("escrow.tasks.auto_approve_milestone.delay") as mock_delay:
            result = auto_approve_submitted_milestones()

        assert result == {"queued": 0}
        mock_delay.assert_not_called()
        assert auto_approve_milestone(str(submitted_milestone.pk))["status"] == "skipped"

    def test_approves_due_milestone(self, submitted_milestone, settings):
        settings.ESCROW_AUTO_APPROVAL_GRACE_HOURS = 72
        Milestone.objects.filter(pk=submitted_milestone.pk).update(
            submitted_at=timezone.now() - timedelta(hours=80)
        )

        result = auto_approve_milestone(str(submitted_milestone.pk))

        assert result["status"] == "approved"
        assert result["transfer_status"] == "requested"
        milestone = Milestone.objects.get(pk=submitted_milestone.pk)
        assert milestone.state == MilestoneState.APPROVED
        assert milestone.auto_approved

    def test_skips_milestone_approved_in_the_meantime(self, approved_payout, settings):
        settings.ESCROW_AUTO_APPROVAL_GRACE_HOURS = 72

        result = auto_approve_milestone(str(approved_payout.milestone_id))

        assert result["status"] == "skipped"
        assert result["error_code"] == "INVALID_STATE"

    def test_skips_disputed_milestone(self, service, submitted_milestone, payer, settings):
        settings.ESCROW_AUTO_APPROVAL_GRACE_HOURS = 72
        Milestone.objects.filter(pk=submitted_milestone.pk).update(
            submitted_at=timezone.now() - timedelta(hours=80)
        )
        service.raise_dispute(submitted_milestone.deal_id, payer, "Not what we agreed")

        result = auto_approve_milestone(str(submitted_milestone.pk))

        assert result["status"] == "skipped"
        assert Milestone.objects.get(pk=submitted_milestone.pk).state == MilestoneState.DISPUTED


@pytest.mark.django_db
class TestPayoutTransferTasks:
    def test_requests_deferred_transfer(self, deferred_payout, fake_provider):
        result = request_payout_transfer(str(deferred_payout.pk))

        assert result["status"] == "requested"
        payout = Payout.objects.get(pk=deferred_payout.pk)
        assert payout.provider_reference.startswith("tr_fake_")

    def test_already_requested_is_skipped(self, approved_payout, fake_provider):
        result = request_payout_transfer(str(approved_payout.pk))

        assert result["status"] == "skipped"
        assert len(fake_provider.calls_for("release_to_receiver")) == 1

    def test_unknown_payout(self, db):
        result = request_payout_transfer("44444444-4444-4444-4444-444444444444")

        assert result == {
            "status": "not_found",
            "payout_id": "44444444-4444-4444-4444-444444444444",
        }

    def test_provider_outage_is_raised_for_retry(self, deferred_payout, fake_provider):
        fake_provider.errors["release_to_receiver"] = ProviderUnavailable("still down")

        with pytest.raises(ProviderUnavailable):
            request_payout_transfer(str(deferred_payout.pk))

        assert Payout.objects.get(pk=deferred_payout.pk).provider_reference is None

    def test_scan_queues_pending_payouts(self, deferred_payout):
        with patch("escrow.tasks.request_payout_transfer.delay") as mock_delay:
            result = execute_pending_payouts()

        assert result == {"queued": 1}
        mock_delay.assert_called_once_with(str(deferred_payout.pk))

    def test_scan_ignores_payouts_of_disputed_deals(self, service, deferred_payout, payer):
        service.raise_dispute(deferred_payout.deal_id, payer, "late")

        with patch("escrow.tasks.request_payout_transfer.delay") as mock_delay:
            result = execute_pending_payouts()

        assert result == {"queued": 0}
        mock_delay.assert_not_called()


@pytest.mark.django_db
class TestRefundTasks:
    def test_requests_deferred_refunds(
        self, service, funded_deal, payer, staff_user, fake_provider
    ):
        service.raise_dispute(funded_deal.pk, payer, "never delivered")
        fake_provider.errors["refund_to_payer"] = ProviderUnavailable("timeout")
        resolution = service.resolve_dispute(
            funded_deal.pk, staff_user, DisputeResolution.REFUND
        )
        assert resolution.data.deferred

        assert request_pending_refunds() == {"requested": 0, "deferred": 1}

        del fake_provider.errors["refund_to_payer"]
        assert request_pending_refunds() == {"requested": 1, "deferred": 0}
        assert Deal.objects.get(pk=funded_deal.pk).refund_reference.startswith("re_fake_")

        assert request_pending_refunds() == {"requested": 0, "deferred": 0}


@pytest.mark.django_db
class TestReconciliationTasks:
    def test_reconcile_stale_payouts(self, approved_payout, fake_provider):
        Payout.objects.filter(pk=approved_payout.pk).update(
            updated_at=timezone.now() - timedelta(hours=2)
        )
        fake_provider.transfer_statuses[approved_payout.provider_reference] = TransferStatus.PAID

        stats = reconcile_stale_payouts()

        assert stats["applied"] == 1
        assert Payout.objects.get(pk=approved_payout.pk).status == PayoutStatus.COMPLETED

    def test_scan_uses_batch_size(self, db):
        with patch("escrow.services.ReconciliationService.reconcile_stale_funding") as mock:
            mock.return_value = {"checked": 0}
            reconcile_stale_funding()

        assert mock.call_args == call(limit=100)
