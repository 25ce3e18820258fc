"""
Tests for escrow models.

Covers:
- Deal, Milestone and Payout FSM transitions and their guards
- Database constraints (positive amounts, escrow reference vs state,
  one active dispute per deal, one active payout per milestone)
- Version counter
- ConnectedAccount capability sync
- LedgerEvent immutability
"""

import pytest
from django.db import IntegrityError, transaction
from django_fsm import TransitionNotAllowed, can_proceed

from escrow.exceptions import LedgerImmutableError
from escrow.models import Deal, Dispute, LedgerEvent, Milestone, Payout
from escrow.state_machines import (
    DealState,
    DisputePriority,
    DisputeResolution,
    DisputeStatus,
    MilestoneState,
    OnboardingStatus,
    PayoutStatus,
)
from escrow.tests.factories import (
    ConnectedAccountFactory,
    DealFactory,
    MilestoneFactory,
    PayoutFactory,
    UserFactory,
)


@pytest.mark.django_db
class TestDealTransitions:
    def test_new_deal_is_draft(self, draft_deal):
        assert draft_deal.state == DealState.DRAFT
        assert draft_deal.escrow_reference is None
        assert draft_deal.version == 1

    def test_mark_funded_sets_reference(self, draft_deal):
        draft_deal.mark_funded(escrow_reference="esc_1")
        draft_deal.save()

        deal = Deal.objects.get(pk=draft_deal.pk)
        assert deal.state == DealState.FUNDED
        assert deal.escrow_reference == "esc_1"
        assert deal.funded_at is not None

    def test_cannot_fund_twice(self, funded_deal):
        with pytest.raises(TransitionNotAllowed):
            funded_deal.mark_funded(escrow_reference="esc_other")

    def test_release_requires_all_milestones_released(self, funded_deal):
        assert not can_proceed(funded_deal.mark_released)

        for milestone in funded_deal.milestones.all():
            milestone.submit()
            milestone.approve()
            milestone.release()
            milestone.save()

        assert can_proceed(funded_deal.mark_released)

    def test_dispute_only_from_funded(self, draft_deal):
        with pytest.raises(TransitionNotAllowed):
            draft_deal.dispute()

    def test_resolution_paths(self, funded_deal):
        funded_deal.dispute()
        funded_deal.save()
        assert can_proceed(funded_deal.resolve_released)
        assert can_proceed(funded_deal.resolve_refunded)

        funded_deal.resolve_refunded(refund_amount_cents=10000)
        funded_deal.save()

        deal = Deal.objects.get(pk=funded_deal.pk)
        assert deal.state == DealState.REFUNDED
        assert deal.refund_amount_cents == 10000

    def test_state_field_is_protected(self, draft_deal):
        with pytest.raises(AttributeError):
            draft_deal.state = DealState.FUNDED

    def test_version_increments_on_update(self, draft_deal):
        draft_deal.title = "Renamed"
        draft_deal.save()
        draft_deal.save()

        assert draft_deal.version == 3
        assert Deal.objects.get(pk=draft_deal.pk).version == 3

    def test_released_amount_sums_released_milestones(self, funded_deal):
        milestone = funded_deal.milestones.get(position=0)
        milestone.submit()
        milestone.approve()
        milestone.release()
        milestone.save()

        assert funded_deal.released_amount_cents == 6000


@pytest.mark.django_db
class TestDealConstraints:
    def test_amount_must_be_positive(self):
        with pytest.raises(IntegrityError), transaction.atomic():
            DealFactory(amount_cents=0)

    def test_funded_deal_requires_escrow_reference(self):
        with pytest.raises(IntegrityError), transaction.atomic():
            DealFactory(state=DealState.FUNDED, escrow_reference=None)

    def test_draft_deal_cannot_carry_escrow_reference(self):
        with pytest.raises(IntegrityError), transaction.atomic():
            DealFactory(escrow_reference="esc_draft")

    def test_funding_reference_is_unique(self):
        DealFactory(funding_reference="esc_same")
        with pytest.raises(IntegrityError), transaction.atomic():
            DealFactory(funding_reference="esc_same")


@pytest.mark.django_db
class TestMilestoneTransitions:
    def test_submit_requires_funded_deal(self, draft_deal):
        milestone = draft_deal.milestones.first()
        assert not can_proceed(milestone.submit)

    def test_full_lifecycle(self, funded_deal):
        milestone = funded_deal.milestones.get(position=0)

        milestone.submit()
        assert milestone.submitted_at is not None
        milestone.approve(automatic=True)
        assert milestone.auto_approved is True
        milestone.release()
        milestone.save()

        milestone = Milestone.objects.get(pk=milestone.pk)
        assert milestone.state == MilestoneState.RELEASED
        assert milestone.released_at is not None

    def test_revision_returns_to_pending(self, submitted_milestone):
        submitted_milestone.request_revision()
        submitted_milestone.save()

        milestone = Milestone.objects.get(pk=submitted_milestone.pk)
        assert milestone.state == MilestoneState.PENDING
        assert milestone.submitted_at is None
        assert milestone.revision_count == 1

    def test_cannot_approve_pending(self, funded_deal):
        milestone = funded_deal.milestones.first()
        with pytest.raises(TransitionNotAllowed):
            milestone.approve()

    def test_released_milestone_cannot_be_disputed(self, funded_deal):
        milestone = funded_deal.milestones.first()
        milestone.submit()
        milestone.approve()
        milestone.release()

        assert not can_proceed(milestone.dispute)

    def test_amount_must_be_positive(self, draft_deal):
        with pytest.raises(IntegrityError), transaction.atomic():
            MilestoneFactory(deal=draft_deal, amount_cents=0)


@pytest.mark.django_db
class TestPayoutTransitions:
    def test_lattice_forward_path(self):
        payout = PayoutFactory()
        payout.mark_processing()
        payout.complete()
        payout.save()

        payout = Payout.objects.get(pk=payout.pk)
        assert payout.status == PayoutStatus.COMPLETED
        assert payout.is_terminal

    def test_completed_is_never_downgraded(self):
        payout = PayoutFactory()
        payout.complete()

        assert not can_proceed(payout.fail)
        assert not can_proceed(payout.cancel)

    def test_failed_can_be_confirmed_completed(self):
        payout = PayoutFactory()
        payout.fail(reason="account closed")
        assert payout.failure_reason == "account closed"

        payout.confirm_completed()
        assert payout.status == PayoutStatus.COMPLETED

    def test_gross_amount_includes_fee(self):
        payout = PayoutFactory(amount_cents=9500, fee_cents=500)
        assert payout.gross_amount_cents == 10000

    def test_one_active_payout_per_milestone(self):
        payout = PayoutFactory()
        with pytest.raises(IntegrityError), transaction.atomic():
            PayoutFactory(deal=payout.deal, milestone=payout.milestone)

    def test_failed_payout_allows_a_new_attempt(self):
        payout = PayoutFactory()
        payout.fail(reason="rejected")
        payout.save()

        retry = PayoutFactory(deal=payout.deal, milestone=payout.milestone, attempt=2)
        assert retry.status == PayoutStatus.PENDING


@pytest.mark.django_db
class TestDispute:
    def test_one_active_dispute_per_deal(self, funded_deal, payer):
        Dispute.objects.create(deal=funded_deal, raised_by=payer, reason="late")
        with pytest.raises(IntegrityError), transaction.atomic():
            Dispute.objects.create(deal=funded_deal, raised_by=payer, reason="again")

    def test_resolved_dispute_frees_the_slot(self, funded_deal, payer, staff_user):
        dispute = Dispute.objects.create(deal=funded_deal, raised_by=payer, reason="late")
        dispute.resolve(DisputeResolution.REFUND, staff_user, note="refund")
        dispute.save()

        assert dispute.status == DisputeStatus.RESOLVED
        Dispute.objects.create(deal=funded_deal, raised_by=payer, reason="new issue")

    def test_escalated_dispute_keeps_the_slot(self, funded_deal, payer, staff_user):
        dispute = Dispute.objects.create(deal=funded_deal, raised_by=payer, reason="late")
        dispute.escalate(staff_user, DisputePriority.HIGH, note="repeat offender")
        dispute.save()

        assert dispute.is_active
        assert dispute.admin_notes == "repeat offender"
        with pytest.raises(IntegrityError), transaction.atomic():
            Dispute.objects.create(deal=funded_deal, raised_by=payer, reason="again")


@pytest.mark.django_db
class TestConnectedAccount:
    def test_fully_enabled_account_is_approved(self):
        account = ConnectedAccountFactory(
            onboarding_status=OnboardingStatus.NOT_STARTED,
            charges_enabled=False,
            payouts_enabled=False,
            details_submitted=False,
        )
        account.apply_capabilities(
            charges_enabled=True,
            payouts_enabled=True,
            details_submitted=True,
            requirements_due=[],
        )

        assert account.onboarding_status == OnboardingStatus.APPROVED
        assert account.is_ready_for_payouts

    def test_outstanding_requirements(self):
        account = ConnectedAccountFactory()
        account.apply_capabilities(
            charges_enabled=True,
            payouts_enabled=False,
            details_submitted=True,
            requirements_due=["external_account"],
        )

        assert account.onboarding_status == OnboardingStatus.REQUIRED
        assert account.requirements_due == ["external_account"]
        assert not account.is_ready_for_payouts


@pytest.mark.django_db
class TestLedgerEventImmutability:
    def test_save_existing_event_raises(self):
        event = LedgerEvent.objects.create(event_type="deal.created")
        event.payload = {"changed": True}

        with pytest.raises(LedgerImmutableError):
            event.save()

    def test_delete_raises(self):
        event = LedgerEvent.objects.create(event_type="deal.created")

        with pytest.raises(LedgerImmutableError):
            event.delete()

    def test_bulk_update_and_delete_raise(self):
        LedgerEvent.objects.create(event_type="deal.created")

        with pytest.raises(LedgerImmutableError):
            LedgerEvent.objects.all().update(event_type="deal.funded")
        with pytest.raises(LedgerImmutableError):
            LedgerEvent.objects.all().delete()

    def test_anonymize_actor_only_touches_actor(self):
        user = UserFactory()
        event = LedgerEvent.objects.create(
            event_type="deal.created", actor=user, payload={"amount_cents": 100}
        )

        assert LedgerEvent.objects.anonymize_actor(user) == 1

        stored = LedgerEvent.objects.get(pk=event.pk)
        assert stored.actor is None
        assert stored.payload == {"amount_cents": 100}
        assert stored.event_type == "deal.created"
