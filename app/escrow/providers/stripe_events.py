"""
Normalization of verified Stripe events.

Each known Stripe event type has a serializer for its ``data.object``
shape. A known type whose object fails validation raises PayloadInvalid;
an unknown type becomes UnknownEvent.

Stripe type -> normalized event:
    payment_intent.succeeded        FundingSucceeded
    payment_intent.payment_failed   FundingFailed
    transfer.created                TransferCreated
    transfer.updated                TransferUpdated (status from object)
    transfer.reversed               TransferUpdated(canceled)
    transfer.failed                 TransferUpdated(failed)
    transfer.paid                   PayoutSettled
    account.updated                 AccountStatusChanged
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rest_framework import serializers

from escrow.exceptions import PayloadInvalid
from escrow.providers.base import TransferStatus
from escrow.webhooks.events import (
    AccountStatusChanged,
    FundingFailed,
    FundingSucceeded,
    PayoutSettled,
    TransferCreated,
    TransferUpdated,
    UnknownEvent,
)

if TYPE_CHECKING:
    from typing import Any

    from escrow.webhooks.events import ProviderEvent

# Stripe transfer status values -> TransferStatus
TRANSFER_STATUS_MAP = {
    "pending": TransferStatus.PROCESSING,
    "in_transit": TransferStatus.PROCESSING,
    "processing": TransferStatus.PROCESSING,
    "paid": TransferStatus.PAID,
    "failed": TransferStatus.FAILED,
    "canceled": TransferStatus.CANCELED,
}


# =============================================================================
# Object Serializers
# =============================================================================


class StripeEnvelopeSerializer(serializers.Serializer):
    id = serializers.CharField()
    type = serializers.CharField()
    data = serializers.DictField()


class MetadataField(serializers.DictField):
    child = serializers.CharField(allow_blank=True)


class PaymentIntentObjectSerializer(serializers.Serializer):
    id = serializers.CharField()
    amount = serializers.IntegerField(min_value=0)
    amount_received = serializers.IntegerField(min_value=0, required=False, default=0)
    currency = serializers.CharField(max_length=3)
    metadata = MetadataField(required=False, default=dict)
    last_payment_error = serializers.DictField(required=False, allow_null=True)


class TransferObjectSerializer(serializers.Serializer):
    id = serializers.CharField()
    amount = serializers.IntegerField(min_value=0)
    currency = serializers.CharField(max_length=3)
    metadata = MetadataField(required=False, default=dict)
    reversed = serializers.BooleanField(required=False, default=False)
    status = serializers.CharField(required=False, allow_blank=True, default="")
    failure_message = serializers.CharField(
        required=False, allow_blank=True, allow_null=True, default=""
    )


class AccountRequirementsSerializer(serializers.Serializer):
    currently_due = serializers.ListField(
        child=serializers.CharField(), required=False, default=list
    )


class AccountObjectSerializer(serializers.Serializer):
    id = serializers.CharField()
    charges_enabled = serializers.BooleanField()
    payouts_enabled = serializers.BooleanField()
    details_submitted = serializers.BooleanField()
    requirements = AccountRequirementsSerializer(required=False, allow_null=True)


def _validated(serializer_class, data: Any, event_id: str, event_type: str) -> dict:
    serializer = serializer_class(data=data)
    if not serializer.is_valid():
        raise PayloadInvalid(
            f"Malformed {event_type} object",
            details={
                "provider_event_id": event_id,
                "provider_event_type": event_type,
                "errors": serializer.errors,
            },
        )
    return serializer.validated_data


# =============================================================================
# Normalizers
# =============================================================================


def _funding_succeeded(event_id: str, event_type: str, obj: dict) -> FundingSucceeded:
    data = _validated(PaymentIntentObjectSerializer, obj, event_id, event_type)
    return FundingSucceeded(
        event_id=event_id,
        provider_type=event_type,
        escrow_id=data["id"],
        amount_cents=data["amount_received"] or data["amount"],
        currency=data["currency"].lower(),
        deal_id=data["metadata"].get("deal_id"),
    )


def _funding_failed(event_id: str, event_type: str, obj: dict) -> FundingFailed:
    data = _validated(PaymentIntentObjectSerializer, obj, event_id, event_type)
    last_error = data.get("last_payment_error") or {}
    return FundingFailed(
        event_id=event_id,
        provider_type=event_type,
        escrow_id=data["id"],
        failure_reason=str(last_error.get("message", "")),
        deal_id=data["metadata"].get("deal_id"),
    )


def _transfer_created(event_id: str, event_type: str, obj: dict) -> TransferCreated:
    data = _validated(TransferObjectSerializer, obj, event_id, event_type)
    return TransferCreated(
        event_id=event_id,
        provider_type=event_type,
        transfer_id=data["id"],
        amount_cents=data["amount"],
        currency=data["currency"].lower(),
        metadata=dict(data["metadata"]),
    )


def _transfer_updated(event_id: str, event_type: str, obj: dict) -> TransferUpdated:
    data = _validated(TransferObjectSerializer, obj, event_id, event_type)

    if event_type == "transfer.reversed" or data["reversed"]:
        status = TransferStatus.CANCELED
    elif event_type == "transfer.failed":
        status = TransferStatus.FAILED
    else:
        raw_status = data["status"] or "pending"
        status = TRANSFER_STATUS_MAP.get(raw_status)
        if status is None:
            raise PayloadInvalid(
                f"Unknown transfer status '{raw_status}'",
                details={"provider_event_id": event_id, "status": raw_status},
            )

    return TransferUpdated(
        event_id=event_id,
        provider_type=event_type,
        transfer_id=data["id"],
        status=status,
        failure_reason=data.get("failure_message") or "",
        metadata=dict(data["metadata"]),
    )


def _payout_settled(event_id: str, event_type: str, obj: dict) -> PayoutSettled:
    data = _validated(TransferObjectSerializer, obj, event_id, event_type)
    return PayoutSettled(
        event_id=event_id,
        provider_type=event_type,
        transfer_id=data["id"],
        metadata=dict(data["metadata"]),
    )


def _account_updated(event_id: str, event_type: str, obj: dict) -> AccountStatusChanged:
    data = _validated(AccountObjectSerializer, obj, event_id, event_type)
    requirements = data.get("requirements") or {}
    return AccountStatusChanged(
        event_id=event_id,
        provider_type=event_type,
        account_id=data["id"],
        charges_enabled=data["charges_enabled"],
        payouts_enabled=data["payouts_enabled"],
        details_submitted=data["details_submitted"],
        requirements_due=tuple(requirements.get("currently_due", ())),
    )


STRIPE_EVENT_NORMALIZERS = {
    "payment_intent.succeeded": _funding_succeeded,
    "payment_intent.payment_failed": _funding_failed,
    "transfer.created": _transfer_created,
    "transfer.updated": _transfer_updated,
    "transfer.reversed": _transfer_updated,
    "transfer.failed": _transfer_updated,
    "transfer.paid": _payout_settled,
    "account.updated": _account_updated,
}


def normalize_stripe_event(payload: dict[str, Any]) -> ProviderEvent:
    """
    Convert a verified Stripe event dict into a ProviderEvent.

    Raises:
        PayloadInvalid: Envelope or known object shape is malformed
    """
    envelope = StripeEnvelopeSerializer(data=payload)
    if not envelope.is_valid():
        raise PayloadInvalid(
            "Malformed Stripe event envelope",
            details={"errors": envelope.errors},
        )

    event_id = envelope.validated_data["id"]
    event_type = envelope.validated_data["type"]
    obj = envelope.validated_data["data"].get("object")

    normalizer = STRIPE_EVENT_NORMALIZERS.get(event_type)
    if normalizer is None:
        return UnknownEvent(event_id=event_id, provider_type=event_type, raw=payload)

    if not isinstance(obj, dict):
        raise PayloadInvalid(
            f"Stripe event {event_type} has no data.object",
            details={"provider_event_id": event_id},
        )
    return normalizer(event_id, event_type, obj)
