"""
Pytest fixtures for escrow tests.

Fixtures provide deals and milestones in various states, an in-memory
payments provider and a mocked Redis for the distributed locks.

Usage:
    def test_approve(service, submitted_milestone, payer):
        result = service.approve_milestone(submitted_milestone.pk, payer)
        assert result.success
"""

from contextlib import contextmanager
from unittest.mock import MagicMock, patch

import pytest
from django.utils import timezone

from escrow.exceptions import LedgerWriteFailed
from escrow.ledger.services import LedgerRecorder
from escrow.models import Milestone
from escrow.services import EscrowService, PayoutOrchestrator
from escrow.state_machines import MilestoneState
from escrow.tests.factories import (
    ConnectedAccountFactory,
    DealFactory,
    MilestoneFactory,
    StaffUserFactory,
    UserFactory,
)
from escrow.tests.fakes import FakeProvider


# =============================================================================
# Infrastructure
# =============================================================================


@pytest.fixture(autouse=True)
def mock_redis():
    """Redis client behind DistributedLock; every lock is free by default."""
    mock = MagicMock()
    mock.set.return_value = True
    mock.eval.return_value = 1
    with patch("escrow.locks.get_redis_connection", return_value=mock):
        yield mock


@pytest.fixture(autouse=True)
def fake_provider():
    """Provider returned by get_payments_provider() to every service."""
    provider = FakeProvider()
    with patch("escrow.services.base.get_payments_provider", return_value=provider):
        yield provider


@pytest.fixture
def recorder():
    return LedgerRecorder()


@pytest.fixture
def service(fake_provider, recorder):
    return EscrowService(provider=fake_provider, recorder=recorder)


@pytest.fixture
def orchestrator(service):
    return service.orchestrator


@pytest.fixture
def standalone_orchestrator(fake_provider, recorder):
    return PayoutOrchestrator(provider=fake_provider, recorder=recorder)


# =============================================================================
# Users
# =============================================================================


@pytest.fixture
def payer(db):
    return UserFactory(username="brand")


@pytest.fixture
def receiver(db):
    return UserFactory(username="creator")


@pytest.fixture
def outsider(db):
    return UserFactory(username="outsider")


@pytest.fixture
def staff_user(db):
    return StaffUserFactory(username="moderator")


@pytest.fixture
def receiver_account(db, receiver):
    """Receiver's connected account, ready for payouts."""
    return ConnectedAccountFactory(user=receiver, provider_account_id="acct_creator")


# =============================================================================
# Deals
# =============================================================================


@pytest.fixture
def draft_deal(db, payer, receiver):
    """DRAFT deal of 10000 cents split 6000 / 4000."""
    deal = DealFactory(payer=payer, receiver=receiver, amount_cents=10000)
    MilestoneFactory(deal=deal, position=0, title="Script", amount_cents=6000)
    MilestoneFactory(deal=deal, position=1, title="Video", amount_cents=4000)
    return deal


@pytest.fixture
def accepted_deal(draft_deal):
    draft_deal.accepted_at = timezone.now()
    draft_deal.save()
    return draft_deal


@pytest.fixture
def funded_deal(db, payer, receiver, receiver_account):
    """FUNDED deal of 10000 cents split 6000 / 4000, receiver account ready."""
    deal = DealFactory(payer=payer, receiver=receiver, amount_cents=10000, funded=True)
    MilestoneFactory(deal=deal, position=0, title="Script", amount_cents=6000)
    MilestoneFactory(deal=deal, position=1, title="Video", amount_cents=4000)
    return deal


@pytest.fixture
def single_milestone_deal(db, payer, receiver, receiver_account):
    """FUNDED deal with one milestone for the full amount."""
    deal = DealFactory(payer=payer, receiver=receiver, amount_cents=5000, funded=True)
    MilestoneFactory(deal=deal, position=0, title="Post", amount_cents=5000)
    return deal


def first_milestone(deal) -> Milestone:
    return deal.milestones.order_by("position").first()


@pytest.fixture
def submitted_milestone(funded_deal):
    """First milestone of funded_deal in SUBMITTED."""
    milestone = first_milestone(funded_deal)
    milestone.submit()
    milestone.save()
    assert milestone.state == MilestoneState.SUBMITTED
    return Milestone.objects.get(pk=milestone.pk)


@pytest.fixture
def approved_payout(service, submitted_milestone, payer):
    """
    Approve the submitted milestone through the service.

    The fake provider accepts the transfer, so the payout is PENDING with a
    provider reference.
    """
    result = service.approve_milestone(submitted_milestone.pk, payer)
    assert result.success, result.error
    return result.data.payout


@contextmanager
def failing_ledger_writes(event_type: str):
    """Make every LedgerRecorder raise LedgerWriteFailed for one event type."""
    original = LedgerRecorder.record

    def record(self, recorded_type, **kwargs):
        if recorded_type == event_type:
            raise LedgerWriteFailed(
                f"Could not record ledger event {recorded_type}",
                details={"event_type": recorded_type},
            )
        return original(self, recorded_type, **kwargs)

    with patch.object(LedgerRecorder, "record", record):
        yield
