"""
Tests for PayoutOrchestrator.

Covers:
- Payout creation (fee policy, balance check, one active payout)
- Two-phase transfer requests and their skipped / deferred / failed outcomes
- Transfer status lattice (webhook and reconciliation path)
- Manual retry, refunds and connected account sync
"""

from unittest.mock import patch

import pytest
from django.db import transaction

from escrow.exceptions import (
    AmountMismatch,
    InvalidState,
    LockAcquisitionError,
    ProviderConfigurationError,
    ProviderRequestRejected,
    ProviderUnavailable,
    WebhookTargetNotFound,
)
from escrow.ledger.models import LedgerEvent
from escrow.ledger.types import EventType, WebhookOutcome
from escrow.models import ConnectedAccount, Deal, Milestone, Payout
from escrow.services import TransferRequestStatus
from escrow.state_machines import DealState, MilestoneState, OnboardingStatus, PayoutStatus
from escrow.tests.conftest import failing_ledger_writes, first_milestone
from escrow.tests.factories import DealFactory, MilestoneFactory, PayoutFactory


def approve(milestone):
    milestone.submit()
    milestone.approve()
    milestone.save()
    return milestone


def apply_status(orchestrator, transfer_id, status, **kwargs):
    with transaction.atomic():
        return orchestrator.apply_transfer_status(transfer_id, status, **kwargs)


def anomalies():
    return LedgerEvent.objects.filter(event_type=EventType.PAYOUT_ANOMALY)


# =============================================================================
# Payout Creation
# =============================================================================


@pytest.mark.django_db
class TestCreatePayout:
    def test_creates_pending_payout(self, standalone_orchestrator, funded_deal):
        milestone = approve(first_milestone(funded_deal))

        with transaction.atomic():
            payout = standalone_orchestrator.create_payout(funded_deal, milestone)

        assert payout.status == PayoutStatus.PENDING
        assert payout.amount_cents == 6000
        assert payout.fee_cents == 0
        assert payout.attempt == 1
        assert payout.destination == "acct_creator"
        assert LedgerEvent.objects.filter(
            event_type=EventType.PAYOUT_CREATED, subject_id=str(payout.pk)
        ).exists()

    def test_second_active_payout_is_invalid_state(
        self, standalone_orchestrator, payer, receiver, receiver_account
    ):
        # Deal balance large enough that only the per-milestone constraint applies
        deal = DealFactory(payer=payer, receiver=receiver, amount_cents=20000, funded=True)
        milestone = approve(MilestoneFactory(deal=deal, amount_cents=6000))

        with transaction.atomic():
            standalone_orchestrator.create_payout(deal, milestone)
            with pytest.raises(InvalidState):
                standalone_orchestrator.create_payout(deal, milestone)

        assert Payout.objects.filter(milestone=milestone).count() == 1

    def test_exceeding_balance_raises(self, standalone_orchestrator, funded_deal):
        milestone = approve(first_milestone(funded_deal))
        PayoutFactory(
            deal=funded_deal,
            milestone=funded_deal.milestones.get(position=1),
            amount_cents=5000,
        )

        with pytest.raises(AmountMismatch) as exc_info:
            with transaction.atomic():
                standalone_orchestrator.create_payout(funded_deal, milestone)

        assert exc_info.value.details["committed_cents"] == 5000
        assert exc_info.value.details["requested_cents"] == 6000

    def test_fee_at_or_above_gross_raises(self, standalone_orchestrator, funded_deal):
        milestone = approve(first_milestone(funded_deal))

        def whole_amount(gross, currency):
            return gross

        with patch(
            "escrow.services.payout_orchestrator.get_fee_policy", return_value=whole_amount
        ):
            with pytest.raises(AmountMismatch):
                with transaction.atomic():
                    standalone_orchestrator.create_payout(funded_deal, milestone)

    def test_missing_account_leaves_destination_empty(self, standalone_orchestrator, funded_deal):
        ConnectedAccount.objects.filter(user=funded_deal.receiver).delete()
        milestone = approve(first_milestone(funded_deal))

        with transaction.atomic():
            payout = standalone_orchestrator.create_payout(funded_deal, milestone)

        assert payout.destination == ""


# =============================================================================
# Transfer Request
# =============================================================================


@pytest.mark.django_db
class TestRequestTransfer:
    @pytest.fixture
    def pending_payout(self, standalone_orchestrator, funded_deal):
        milestone = approve(first_milestone(funded_deal))
        with transaction.atomic():
            return standalone_orchestrator.create_payout(funded_deal, milestone)

    def test_requests_and_stores_reference(
        self, standalone_orchestrator, pending_payout, fake_provider, mock_redis
    ):
        outcome = standalone_orchestrator.request_transfer(pending_payout.pk)

        assert outcome.status == TransferRequestStatus.REQUESTED
        payout = Payout.objects.get(pk=pending_payout.pk)
        assert payout.provider_reference.startswith("tr_fake_")
        assert payout.requested_at is not None
        assert mock_redis.set.call_args[0][0] == f"lock:escrow:payout:{pending_payout.pk}"

        call = fake_provider.calls_for("release_to_receiver")[0]
        assert call["receiver_id"] == "acct_creator"
        assert call["metadata"]["attempt"] == "1"

    def test_already_requested_is_skipped(self, standalone_orchestrator, approved_payout):
        outcome = standalone_orchestrator.request_transfer(approved_payout.pk)

        assert outcome.status == TransferRequestStatus.SKIPPED
        assert outcome.reason == "already_requested"

    def test_disputed_milestone_is_not_releasable(
        self, standalone_orchestrator, pending_payout, fake_provider
    ):
        milestone = Milestone.objects.get(pk=pending_payout.milestone_id)
        milestone.dispute()
        milestone.save()

        outcome = standalone_orchestrator.request_transfer(pending_payout.pk)

        assert outcome.status == TransferRequestStatus.SKIPPED
        assert outcome.reason == "not_releasable"
        assert fake_provider.calls_for("release_to_receiver") == []

    def test_account_not_ready_defers(
        self, standalone_orchestrator, pending_payout, receiver_account
    ):
        receiver_account.payouts_enabled = False
        receiver_account.save()

        outcome = standalone_orchestrator.request_transfer(pending_payout.pk)

        assert outcome.status == TransferRequestStatus.DEFERRED
        assert outcome.reason == "account_not_ready"

    def test_provider_unavailable_reraises_and_records(
        self, standalone_orchestrator, pending_payout, fake_provider
    ):
        fake_provider.errors["release_to_receiver"] = ProviderUnavailable("timeout")

        with pytest.raises(ProviderUnavailable):
            standalone_orchestrator.request_transfer(pending_payout.pk)

        event = LedgerEvent.objects.get(event_type=EventType.PAYOUT_TRANSFER_DEFERRED)
        assert event.payload["reason"] == "provider_unavailable"
        payout = Payout.objects.get(pk=pending_payout.pk)
        assert payout.status == PayoutStatus.PENDING
        assert payout.provider_reference is None

    def test_permanent_rejection_fails_payout(
        self, standalone_orchestrator, pending_payout, fake_provider
    ):
        fake_provider.errors["release_to_receiver"] = ProviderRequestRejected(
            "Destination account closed"
        )

        outcome = standalone_orchestrator.request_transfer(pending_payout.pk)

        assert outcome.status == TransferRequestStatus.FAILED
        payout = Payout.objects.get(pk=pending_payout.pk)
        assert payout.status == PayoutStatus.FAILED
        assert payout.failure_reason == "Destination account closed"

    def test_retry_uses_same_idempotency_key(
        self, standalone_orchestrator, pending_payout, fake_provider
    ):
        fake_provider.errors["release_to_receiver"] = ProviderUnavailable("timeout")
        with pytest.raises(ProviderUnavailable):
            standalone_orchestrator.request_transfer(pending_payout.pk)

        del fake_provider.errors["release_to_receiver"]
        standalone_orchestrator.request_transfer(pending_payout.pk)

        keys = {c["idempotency_key"] for c in fake_provider.calls_for("release_to_receiver")}
        assert len(keys) == 1

    def test_lock_held_elsewhere(self, standalone_orchestrator, pending_payout, mock_redis):
        mock_redis.set.return_value = False

        with pytest.raises(LockAcquisitionError):
            standalone_orchestrator.request_transfer(pending_payout.pk)

    @pytest.mark.parametrize(
        "error",
        [
            ProviderUnavailable("timeout"),
            ProviderConfigurationError("No API key"),
        ],
    )
    def test_safely_turns_transient_errors_into_deferred(
        self, standalone_orchestrator, pending_payout, fake_provider, error
    ):
        fake_provider.errors["release_to_receiver"] = error

        outcome = standalone_orchestrator.request_transfer_safely(pending_payout)

        assert outcome.status == TransferRequestStatus.DEFERRED
        assert outcome.reason == error.error_code
        assert outcome.message

    def test_safely_defers_when_reference_cannot_be_recorded(
        self, standalone_orchestrator, pending_payout, fake_provider
    ):
        with failing_ledger_writes(EventType.PAYOUT_TRANSFER_REQUESTED):
            outcome = standalone_orchestrator.request_transfer_safely(pending_payout)

        assert outcome.status == TransferRequestStatus.DEFERRED
        assert outcome.reason == "LEDGER_WRITE_FAILED"
        payout = Payout.objects.get(pk=pending_payout.pk)
        assert payout.status == PayoutStatus.PENDING
        assert payout.provider_reference is None
        assert len(fake_provider.calls_for("release_to_receiver")) == 1


# =============================================================================
# Transfer Status
# =============================================================================


@pytest.mark.django_db
class TestApplyTransferStatus:
    def test_processing_then_paid_releases_milestone(self, orchestrator, approved_payout):
        ref = approved_payout.provider_reference

        assert apply_status(orchestrator, ref, "processing") == WebhookOutcome.APPLIED
        assert Payout.objects.get(pk=approved_payout.pk).status == PayoutStatus.PROCESSING

        assert apply_status(orchestrator, ref, "paid") == WebhookOutcome.APPLIED
        assert Payout.objects.get(pk=approved_payout.pk).status == PayoutStatus.COMPLETED
        milestone = Milestone.objects.get(pk=approved_payout.milestone_id)
        assert milestone.state == MilestoneState.RELEASED
        assert Deal.objects.get(pk=approved_payout.deal_id).state == DealState.FUNDED

    def test_last_release_releases_deal(
        self, service, orchestrator, single_milestone_deal, receiver, payer
    ):
        milestone = first_milestone(single_milestone_deal)
        service.submit_milestone(milestone.pk, receiver, url="https://example.com/post")
        payout = service.approve_milestone(milestone.pk, payer).data.payout

        apply_status(orchestrator, payout.provider_reference, "paid")

        deal = Deal.objects.get(pk=single_milestone_deal.pk)
        assert deal.state == DealState.RELEASED
        assert deal.released_amount_cents == 5000
        assert LedgerEvent.objects.filter(event_type=EventType.DEAL_RELEASED, deal=deal).exists()

    def test_repeat_paid_is_noop(self, orchestrator, approved_payout):
        ref = approved_payout.provider_reference
        apply_status(orchestrator, ref, "paid")

        assert apply_status(orchestrator, ref, "paid") == WebhookOutcome.NOOP
        assert (
            LedgerEvent.objects.filter(event_type=EventType.PAYOUT_COMPLETED).count() == 1
        )

    def test_processing_after_paid_is_noop(self, orchestrator, approved_payout):
        ref = approved_payout.provider_reference
        apply_status(orchestrator, ref, "paid")

        assert apply_status(orchestrator, ref, "processing") == WebhookOutcome.NOOP
        assert Payout.objects.get(pk=approved_payout.pk).status == PayoutStatus.COMPLETED

    def test_failure_after_completion_is_anomaly(self, orchestrator, approved_payout):
        ref = approved_payout.provider_reference
        apply_status(orchestrator, ref, "paid")

        outcome = apply_status(orchestrator, ref, "failed", failure_reason="late bounce")

        assert outcome == WebhookOutcome.ANOMALY
        assert Payout.objects.get(pk=approved_payout.pk).status == PayoutStatus.COMPLETED
        payload = anomalies().get().payload
        assert payload["current_status"] == PayoutStatus.COMPLETED
        assert payload["reported_status"] == "failed"
        assert "after completion" in payload["anomaly_reason"]

    def test_failed_keeps_milestone_approved(self, orchestrator, approved_payout):
        outcome = apply_status(
            orchestrator, approved_payout.provider_reference, "failed", failure_reason="closed"
        )

        assert outcome == WebhookOutcome.APPLIED
        payout = Payout.objects.get(pk=approved_payout.pk)
        assert payout.status == PayoutStatus.FAILED
        assert payout.failure_reason == "closed"
        milestone = Milestone.objects.get(pk=approved_payout.milestone_id)
        assert milestone.state == MilestoneState.APPROVED

    def test_canceled(self, orchestrator, approved_payout):
        outcome = apply_status(orchestrator, approved_payout.provider_reference, "canceled")

        assert outcome == WebhookOutcome.APPLIED
        assert Payout.objects.get(pk=approved_payout.pk).status == PayoutStatus.CANCELED

    def test_paid_after_failed_completes_same_transfer(self, orchestrator, approved_payout):
        ref = approved_payout.provider_reference
        apply_status(orchestrator, ref, "failed")

        assert apply_status(orchestrator, ref, "paid") == WebhookOutcome.APPLIED
        assert Payout.objects.get(pk=approved_payout.pk).status == PayoutStatus.COMPLETED

    def test_paid_after_failed_and_retried_is_anomaly(
        self, orchestrator, approved_payout, staff_user
    ):
        ref = approved_payout.provider_reference
        apply_status(orchestrator, ref, "failed")
        orchestrator.retry_payout(approved_payout.pk, staff_user)

        assert apply_status(orchestrator, ref, "paid") == WebhookOutcome.ANOMALY
        assert Payout.objects.get(pk=approved_payout.pk).status == PayoutStatus.FAILED

    def test_mismatched_reference_is_anomaly(self, orchestrator, approved_payout):
        outcome = apply_status(
            orchestrator,
            "tr_other",
            "paid",
            metadata={"payout_id": str(approved_payout.pk)},
        )

        assert outcome == WebhookOutcome.ANOMALY
        assert anomalies().get().payload["transfer_id"] == "tr_other"

    def test_adopts_reference_from_metadata(self, standalone_orchestrator, funded_deal):
        milestone = approve(first_milestone(funded_deal))
        with transaction.atomic():
            payout = standalone_orchestrator.create_payout(funded_deal, milestone)

        outcome = apply_status(
            standalone_orchestrator,
            "tr_lost_response",
            "processing",
            metadata={"payout_id": str(payout.pk)},
        )

        assert outcome == WebhookOutcome.APPLIED
        assert Payout.objects.get(pk=payout.pk).provider_reference == "tr_lost_response"

    def test_unknown_transfer_is_ignored(self, orchestrator, db):
        assert apply_status(orchestrator, "tr_unknown", "paid") == WebhookOutcome.IGNORED

    def test_metadata_for_missing_payout_raises(self, orchestrator, db):
        with pytest.raises(WebhookTargetNotFound):
            apply_status(
                orchestrator,
                "tr_unknown",
                "paid",
                metadata={"payout_id": "11111111-1111-1111-1111-111111111111"},
            )


# =============================================================================
# Manual Retry
# =============================================================================


@pytest.mark.django_db
class TestRetryPayout:
    def test_creates_new_attempt(self, orchestrator, approved_payout, staff_user, fake_provider):
        apply_status(orchestrator, approved_payout.provider_reference, "failed")

        result = orchestrator.retry_payout(approved_payout.pk, staff_user)

        assert result.success
        outcome = result.data
        assert outcome.status == TransferRequestStatus.REQUESTED
        retry = outcome.payout
        assert retry.pk != approved_payout.pk
        assert retry.attempt == 2
        assert retry.metadata == {"retry_of": str(approved_payout.pk), "retried_by": staff_user.pk}

        keys = [c["idempotency_key"] for c in fake_provider.calls_for("release_to_receiver")]
        assert keys[-1].startswith(f"release:{retry.pk}:2:")

    def test_only_failed_payouts(self, orchestrator, approved_payout, staff_user):
        result = orchestrator.retry_payout(approved_payout.pk, staff_user)

        assert result.error_code == "INVALID_STATE"

    def test_staff_only(self, orchestrator, approved_payout, payer):
        apply_status(orchestrator, approved_payout.provider_reference, "failed")

        result = orchestrator.retry_payout(approved_payout.pk, payer)

        assert result.error_code == "PERMISSION_DENIED"
        event = LedgerEvent.objects.get(event_type=EventType.ACTION_DENIED)
        assert event.payload["action"] == "retry_payout"

    def test_unknown_payout(self, orchestrator, staff_user):
        result = orchestrator.retry_payout("22222222-2222-2222-2222-222222222222", staff_user)

        assert result.error_code == "NOT_FOUND"

    def test_ledger_failure_rolls_back_new_attempt(
        self, orchestrator, approved_payout, staff_user, fake_provider
    ):
        apply_status(orchestrator, approved_payout.provider_reference, "failed")
        calls_before = len(fake_provider.calls_for("release_to_receiver"))

        with failing_ledger_writes(EventType.PAYOUT_CREATED):
            result = orchestrator.retry_payout(approved_payout.pk, staff_user)

        assert result.error_code == "LEDGER_WRITE_FAILED"
        assert Payout.objects.filter(milestone_id=approved_payout.milestone_id).count() == 1
        assert len(fake_provider.calls_for("release_to_receiver")) == calls_before


# =============================================================================
# Refunds
# =============================================================================


@pytest.mark.django_db
class TestRequestRefund:
    @pytest.fixture
    def refunded_deal(self, funded_deal):
        funded_deal.dispute()
        funded_deal.save()
        funded_deal.resolve_refunded(refund_amount_cents=funded_deal.amount_cents)
        funded_deal.save()
        return funded_deal

    def test_full_refund(self, standalone_orchestrator, refunded_deal, fake_provider):
        outcome = standalone_orchestrator.request_refund(refunded_deal.pk)

        assert outcome.status == TransferRequestStatus.REQUESTED
        call = fake_provider.calls_for("refund_to_payer")[0]
        assert call["escrow_id"] == refunded_deal.escrow_reference
        assert call["amount_cents"] is None
        assert call["idempotency_key"].startswith(f"refund:{refunded_deal.pk}:1:")
        assert Deal.objects.get(pk=refunded_deal.pk).refund_reference == outcome.refund_reference

    def test_second_request_is_skipped(self, standalone_orchestrator, refunded_deal, fake_provider):
        standalone_orchestrator.request_refund(refunded_deal.pk)

        outcome = standalone_orchestrator.request_refund(refunded_deal.pk)

        assert outcome.status == TransferRequestStatus.SKIPPED
        assert len(fake_provider.calls_for("refund_to_payer")) == 1

    def test_not_refunded_deal_is_skipped(self, standalone_orchestrator, funded_deal, fake_provider):
        outcome = standalone_orchestrator.request_refund(funded_deal.pk)

        assert outcome.status == TransferRequestStatus.SKIPPED
        assert fake_provider.calls_for("refund_to_payer") == []

    def test_safely_defers(self, standalone_orchestrator, refunded_deal, fake_provider):
        fake_provider.errors["refund_to_payer"] = ProviderUnavailable("timeout")

        outcome = standalone_orchestrator.request_refund_safely(refunded_deal.pk)

        assert outcome.status == TransferRequestStatus.DEFERRED
        assert Deal.objects.get(pk=refunded_deal.pk).refund_reference is None


# =============================================================================
# Connected Accounts
# =============================================================================


@pytest.mark.django_db
class TestApplyAccountStatus:
    def test_unknown_account_is_ignored(self, standalone_orchestrator, db):
        with transaction.atomic():
            outcome = standalone_orchestrator.apply_account_status(
                "acct_unknown",
                charges_enabled=True,
                payouts_enabled=True,
                details_submitted=True,
                requirements_due=[],
            )

        assert outcome == WebhookOutcome.IGNORED

    def test_becoming_ready_queues_waiting_payouts(
        self,
        service,
        submitted_milestone,
        payer,
        receiver_account,
        django_capture_on_commit_callbacks,
    ):
        receiver_account.payouts_enabled = False
        receiver_account.save()
        payout = service.approve_milestone(submitted_milestone.pk, payer).data.payout

        with patch("escrow.tasks.request_payout_transfer.delay") as mock_delay:
            with django_capture_on_commit_callbacks(execute=True):
                with transaction.atomic():
                    outcome = service.orchestrator.apply_account_status(
                        "acct_creator",
                        charges_enabled=True,
                        payouts_enabled=True,
                        details_submitted=True,
                        requirements_due=[],
                    )

        assert outcome == WebhookOutcome.APPLIED
        mock_delay.assert_called_once_with(str(payout.pk))
        account = ConnectedAccount.objects.get(pk=receiver_account.pk)
        assert account.onboarding_status == OnboardingStatus.APPROVED

    def test_losing_readiness_queues_nothing(
        self, standalone_orchestrator, receiver_account, django_capture_on_commit_callbacks
    ):
        with patch("escrow.tasks.request_payout_transfer.delay") as mock_delay:
            with django_capture_on_commit_callbacks(execute=True):
                with transaction.atomic():
                    standalone_orchestrator.apply_account_status(
                        "acct_creator",
                        charges_enabled=True,
                        payouts_enabled=False,
                        details_submitted=True,
                        requirements_due=["external_account"],
                    )

        mock_delay.assert_not_called()
        account = ConnectedAccount.objects.get(pk=receiver_account.pk)
        assert account.onboarding_status == OnboardingStatus.REQUIRED
