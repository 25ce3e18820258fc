"""
Shared plumbing for escrow services.

EscrowServiceBase wires the injected collaborators (payments provider,
ledger recorder) and implements the "denied action" path: the failed
transaction has already rolled back, so the denial is recorded in a fresh
one and returned as a failed ServiceResult.
"""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING

from django_fsm import can_proceed

from core.exceptions import ValidationError
from core.services import BaseService, ServiceResult

from escrow.exceptions import (
    ActionNotPermitted,
    AmountMismatch,
    InvalidState,
)
from escrow.ledger.services import LedgerRecorder
from escrow.models import Deal
from escrow.providers import get_payments_provider

if TYPE_CHECKING:
    from typing import Any

    from django.db.models import Model

    from core.exceptions import BaseApplicationError
    from escrow.providers import PaymentsProvider

# Failures recorded as action.denied
DENIED_ERRORS = (InvalidState, ActionNotPermitted, AmountMismatch, ValidationError)

PROVIDER_UNAVAILABLE_MESSAGE = "Payment provider temporarily unavailable, will retry"


def apply_transition(instance: Model, name: str, *args: Any, **kwargs: Any) -> None:
    """
    Run a django-fsm transition or raise InvalidState.

    Source state and transition conditions are both checked.
    """
    method = getattr(instance, name)
    if not can_proceed(method):
        model_name = instance.__class__.__name__
        current = getattr(instance, "state", None) or getattr(instance, "status", None)
        raise InvalidState(
            f"{model_name} action '{name}' is not allowed in current state '{current}'",
            details={
                "entity": model_name.lower(),
                "entity_id": str(instance.pk),
                "current_state": current,
                "action": name,
            },
        )
    method(*args, **kwargs)


def parse_uuid(value) -> uuid.UUID | None:
    """Parse a UUID from provider metadata; None if absent or malformed."""
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


class EscrowServiceBase(BaseService):
    """
    Base for services that move money.

    Args:
        provider: PaymentsProvider instance (default: from settings)
        recorder: LedgerRecorder instance
    """

    def __init__(
        self,
        provider: PaymentsProvider | None = None,
        recorder: LedgerRecorder | None = None,
    ) -> None:
        self.provider = provider if provider is not None else get_payments_provider()
        self.recorder = recorder if recorder is not None else LedgerRecorder()

    def deny(
        self,
        action: str,
        exc: BaseApplicationError,
        *,
        actor=None,
        deal_id=None,
        subject: Model | None = None,
    ) -> ServiceResult:
        """Record an action.denied event and convert ``exc`` to a failure."""
        deal = Deal.objects.filter(pk=deal_id).first() if deal_id else None
        if actor is not None and not getattr(actor, "is_authenticated", True):
            actor = None
        self.recorder.record_denied(
            action,
            exc,
            actor=actor,
            deal=deal,
            subject=subject if subject is not None else deal,
        )
        return self.failure_from(exc)

    @staticmethod
    def require(condition: bool, message: str, **details: Any) -> None:
        """Raise InvalidState unless ``condition`` holds."""
        if not condition:
            raise InvalidState(message, details={k: str(v) for k, v in details.items()})

    @staticmethod
    def require_party(deal: Deal, actor, role: str) -> None:
        """
        Check that ``actor`` is the deal's payer, receiver or either party.

        Args:
            role: "payer", "receiver" or "party"
        """
        allowed = {
            "payer": [deal.payer_id],
            "receiver": [deal.receiver_id],
            "party": [deal.payer_id, deal.receiver_id],
        }[role]
        if actor is None or actor.pk not in allowed:
            raise ActionNotPermitted(
                f"Only the deal {role} may perform this action",
                details={"deal_id": str(deal.pk), "required_role": role},
            )

    @staticmethod
    def require_staff(actor) -> None:
        if actor is None or not actor.is_staff:
            raise ActionNotPermitted(
                "Only an administrator may perform this action",
                details={"required_role": "staff"},
            )
