"""
Tests for LedgerRecorder.
"""

from unittest.mock import patch

import pytest
from django.db import DatabaseError

from escrow.exceptions import DuplicateEvent, InvalidState, LedgerWriteFailed
from escrow.ledger.models import LedgerEvent
from escrow.ledger.types import EventType


@pytest.mark.django_db
class TestRecord:
    def test_subject_defaults_to_deal(self, recorder, draft_deal, payer):
        event = recorder.record(EventType.DEAL_CREATED, actor=payer, deal=draft_deal)

        assert event.subject_type == "deal"
        assert event.subject_id == str(draft_deal.pk)
        assert event.actor == payer

    def test_explicit_subject(self, recorder, draft_deal):
        milestone = draft_deal.milestones.first()

        event = recorder.record(
            EventType.MILESTONE_SUBMITTED,
            deal=draft_deal,
            subject=milestone,
            payload={"amount_cents": milestone.amount_cents},
        )

        assert event.subject_type == "milestone"
        assert event.payload == {"amount_cents": milestone.amount_cents}

    def test_system_event_without_deal(self, recorder):
        event = recorder.record(EventType.ACCOUNT_UPDATED)

        assert event.deal is None
        assert event.subject_type == ""

    def test_database_error_raises_ledger_write_failed(self, recorder, draft_deal):
        with patch.object(LedgerEvent.objects, "create", side_effect=DatabaseError("disk full")):
            with pytest.raises(LedgerWriteFailed) as exc_info:
                recorder.record(EventType.DEAL_FUNDED, deal=draft_deal)

        assert exc_info.value.details == {"event_type": EventType.DEAL_FUNDED}

    def test_duplicate_provider_event_id_raises(self, recorder):
        recorder.record(EventType.webhook("funding_succeeded"), provider_event_id="evt_1")

        with pytest.raises(DuplicateEvent):
            recorder.record(EventType.webhook("funding_succeeded"), provider_event_id="evt_1")

        assert recorder.exists_for_provider_event("evt_1")
        assert not recorder.exists_for_provider_event("evt_2")


@pytest.mark.django_db
class TestRecordDenied:
    def test_payload_carries_error(self, recorder, draft_deal, payer):
        error = InvalidState("Deal is not funded", details={"current_state": "draft"})

        event = recorder.record_denied("submit_milestone", error, actor=payer, deal=draft_deal)

        assert event.event_type == EventType.ACTION_DENIED
        assert event.payload == {
            "action": "submit_milestone",
            "error_code": "INVALID_STATE",
            "reason": "Deal is not funded",
            "details": {"current_state": "draft"},
        }

    def test_write_failure_is_not_raised(self, recorder, draft_deal):
        error = InvalidState("Deal is not funded")

        with patch.object(LedgerEvent.objects, "create", side_effect=DatabaseError("down")):
            assert recorder.record_denied("fund_deal", error, deal=draft_deal) is None


@pytest.mark.django_db
class TestAnonymize:
    def test_anonymize_actor(self, recorder, draft_deal, payer):
        recorder.record(EventType.DEAL_CREATED, actor=payer, deal=draft_deal)
        recorder.record(EventType.DEAL_ACCEPTED, deal=draft_deal)

        assert recorder.anonymize_actor(payer) == 1
        assert not LedgerEvent.objects.filter(actor=payer).exists()
        assert LedgerEvent.objects.filter(deal=draft_deal).count() == 2
