"""
Stripe Connect implementation of PaymentsProvider.

Escrow is modelled with "separate charges and transfers":
    - the escrow hold is a PaymentIntent carrying metadata
      ``{type: escrow, deal_id, escrow_state}``
    - funding sets the real amount on that PaymentIntent; the payer's
      client confirms it with the returned client secret
    - a release is a Transfer to the receiver's connected account, grouped
      by ``transfer_group = escrow id``
    - a refund is a Refund on the PaymentIntent

Configuration (via settings):
    STRIPE_SECRET_KEY: API secret key (passed per request)
    STRIPE_WEBHOOK_SECRET: Webhook signing secret
    STRIPE_API_TIMEOUT_SECONDS: HTTP timeout (default: 10)
    STRIPE_MAX_RETRIES: SDK network retries (default: 2)
    ESCROW_WEBHOOK_TOLERANCE_SECONDS: Webhook timestamp tolerance (default: 300)

Usage:
    provider = StripeConnectProvider()
    escrow_id = provider.create_escrow(deal.id, "usd")
    intent = provider.fund_escrow(escrow_id, 10000, payer.id)
"""

from __future__ import annotations

import json
import logging
import time
from typing import TYPE_CHECKING

import stripe
from django.conf import settings

from escrow.exceptions import (
    InvalidCurrency,
    PayloadInvalid,
    ProviderConfigurationError,
    ProviderRequestRejected,
    ProviderUnavailable,
    SignatureInvalid,
)
from escrow.providers.base import (
    EscrowStatus,
    FundingIntent,
    IdempotencyKeyGenerator,
    PaymentsProvider,
    TransferStatus,
)
from escrow.providers.stripe_events import TRANSFER_STATUS_MAP, normalize_stripe_event

if TYPE_CHECKING:
    import uuid
    from typing import Any

    from escrow.webhooks.events import ProviderEvent

# Stripe requires a chargeable amount at creation; fund_escrow replaces it.
PLACEHOLDER_AMOUNT_CENTS = 100

PAYMENT_INTENT_STATUS_MAP = {
    "succeeded": EscrowStatus.FUNDED,
    "canceled": EscrowStatus.REFUNDED,
}


def configure_stripe_transport() -> None:
    """
    Apply HTTP timeout and network retries to the Stripe SDK.

    Called once from EscrowConfig.ready(). The API key is not set globally;
    every call passes it explicitly.
    """
    timeout = getattr(settings, "STRIPE_API_TIMEOUT_SECONDS", 10)
    stripe.default_http_client = stripe.RequestsClient(timeout=timeout)
    stripe.max_network_retries = getattr(settings, "STRIPE_MAX_RETRIES", 2)


class StripeConnectProvider(PaymentsProvider):
    """
    PaymentsProvider backed by Stripe Connect.

    Instances hold only configuration (keys, tolerance) and are safe to
    share between threads.
    """

    name = "stripe"

    def __init__(
        self,
        api_key: str | None = None,
        webhook_secret: str | None = None,
        webhook_tolerance: int | None = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.STRIPE_SECRET_KEY
        self.webhook_secret = (
            webhook_secret
            if webhook_secret is not None
            else settings.STRIPE_WEBHOOK_SECRET
        )
        self.webhook_tolerance = (
            webhook_tolerance
            if webhook_tolerance is not None
            else settings.ESCROW_WEBHOOK_TOLERANCE_SECONDS
        )

    @classmethod
    def get_logger(cls) -> logging.Logger:
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    def _request_options(self) -> dict[str, str]:
        if not self.api_key:
            raise ProviderConfigurationError(
                "STRIPE_SECRET_KEY is not configured",
                details={"provider": self.name},
            )
        return {"api_key": self.api_key}

    def _call(self, operation: str, log_context: dict[str, Any], func, **kwargs):
        """
        Run one Stripe API call with timing logs and error translation.
        """
        logger = self.get_logger()
        log_context = {"operation": operation, **log_context}
        options = self._request_options()

        start_time = time.time()
        logger.info("Starting Stripe operation", extra=log_context)

        try:
            result = func(**kwargs, **options)
        except stripe.StripeError as e:
            duration_ms = (time.time() - start_time) * 1000
            self._handle_stripe_error(e, log_context, duration_ms)
            raise

        duration_ms = (time.time() - start_time) * 1000
        logger.info(
            "Stripe operation completed",
            extra={
                **log_context,
                "stripe_object_id": getattr(result, "id", None),
                "duration_ms": duration_ms,
            },
        )
        return result

    # =========================================================================
    # Escrow Operations
    # =========================================================================

    def create_escrow(self, deal_id: uuid.UUID | str, currency: str) -> str:
        intent = self._call(
            "create_escrow",
            {"deal_id": str(deal_id), "currency": currency},
            stripe.PaymentIntent.create,
            amount=PLACEHOLDER_AMOUNT_CENTS,
            currency=currency.lower(),
            payment_method_types=["card"],
            metadata={
                "type": "escrow",
                "deal_id": str(deal_id),
                "escrow_state": EscrowStatus.UNFUNDED.value,
            },
            idempotency_key=IdempotencyKeyGenerator.generate("create_escrow", deal_id),
        )
        return intent.id

    def fund_escrow(
        self,
        escrow_id: str,
        amount_cents: int,
        payer_id: uuid.UUID | str | int,
    ) -> FundingIntent:
        intent = self._call(
            "fund_escrow",
            {"escrow_id": escrow_id, "amount_cents": amount_cents},
            stripe.PaymentIntent.modify,
            id=escrow_id,
            amount=amount_cents,
            metadata={"payer_id": str(payer_id), "escrow_state": "funding"},
        )
        return FundingIntent(
            payment_reference=intent.id,
            client_secret=intent.client_secret,
            status=intent.status,
        )

    def release_to_receiver(
        self,
        escrow_id: str,
        amount_cents: int,
        receiver_id: str,
        metadata: dict[str, Any],
        currency: str = "usd",
        idempotency_key: str | None = None,
    ) -> str:
        transfer = self._call(
            "release_to_receiver",
            {
                "escrow_id": escrow_id,
                "amount_cents": amount_cents,
                "destination": receiver_id,
                "idempotency_key": idempotency_key,
            },
            stripe.Transfer.create,
            amount=amount_cents,
            currency=currency.lower(),
            destination=receiver_id,
            transfer_group=escrow_id,
            metadata={"escrow_id": escrow_id, **{k: str(v) for k, v in metadata.items()}},
            idempotency_key=idempotency_key
            or IdempotencyKeyGenerator.generate("release", escrow_id),
        )
        return transfer.id

    def refund_to_payer(
        self,
        escrow_id: str,
        amount_cents: int | None = None,
        idempotency_key: str | None = None,
    ) -> str:
        idempotency_key = idempotency_key or IdempotencyKeyGenerator.generate(
            "refund", escrow_id
        )
        params: dict[str, Any] = {
            "payment_intent": escrow_id,
            "metadata": {"type": "escrow_refund"},
            "idempotency_key": idempotency_key,
        }
        if amount_cents is not None:
            params["amount"] = amount_cents

        refund = self._call(
            "refund_to_payer",
            {"escrow_id": escrow_id, "amount_cents": amount_cents},
            stripe.Refund.create,
            **params,
        )

        self._call(
            "mark_escrow_refunded",
            {"escrow_id": escrow_id},
            stripe.PaymentIntent.modify,
            id=escrow_id,
            metadata={
                "escrow_state": EscrowStatus.REFUNDED.value,
                "refund_id": refund.id,
            },
            idempotency_key=f"{idempotency_key}:metadata",
        )
        return refund.id

    # =========================================================================
    # Reconciliation Reads
    # =========================================================================

    def get_status(self, escrow_id: str) -> EscrowStatus:
        """
        Escrow status from metadata ``escrow_state``, falling back to the
        PaymentIntent status.
        """
        intent = self._call(
            "get_status",
            {"escrow_id": escrow_id},
            stripe.PaymentIntent.retrieve,
            id=escrow_id,
        )
        metadata = intent.metadata or {}
        recorded = metadata.get("escrow_state")
        if recorded in EscrowStatus.values:
            if recorded == EscrowStatus.UNFUNDED and intent.status == "succeeded":
                return EscrowStatus.FUNDED
            return EscrowStatus(recorded)
        return PAYMENT_INTENT_STATUS_MAP.get(intent.status, EscrowStatus.UNFUNDED)

    def get_transfer_status(self, payout_ref: str) -> TransferStatus:
        """
        Transfer status for reconciliation.

        A reversed transfer is CANCELED. Stripe transfers carry no status
        of their own once created: funds are already on the connected
        account, so an unreversed transfer counts as PAID.
        """
        transfer = self._call(
            "get_transfer_status",
            {"transfer_id": payout_ref},
            stripe.Transfer.retrieve,
            id=payout_ref,
        )
        if getattr(transfer, "reversed", False):
            return TransferStatus.CANCELED
        raw_status = getattr(transfer, "status", None)
        if raw_status in TRANSFER_STATUS_MAP:
            return TRANSFER_STATUS_MAP[raw_status]
        return TransferStatus.PAID

    # =========================================================================
    # Webhook Verification
    # =========================================================================

    def construct_event(self, raw_body: bytes, signature_header: str) -> ProviderEvent:
        """
        Verify the Stripe-Signature header over the raw body, then parse.

        Raises:
            SignatureInvalid: Missing/invalid signature or timestamp outside
                the tolerance window (past or future)
            PayloadInvalid: Body is not JSON or a known event is malformed
        """
        if not self.webhook_secret:
            raise ProviderConfigurationError(
                "STRIPE_WEBHOOK_SECRET is not configured",
                details={"provider": self.name},
            )
        if not signature_header:
            raise SignatureInvalid("Missing signature header")

        try:
            payload = raw_body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise SignatureInvalid("Webhook body is not valid UTF-8") from e

        try:
            stripe.WebhookSignature.verify_header(
                payload,
                signature_header,
                self.webhook_secret,
                tolerance=self.webhook_tolerance,
            )
        except stripe.SignatureVerificationError as e:
            raise SignatureInvalid(
                "Webhook signature verification failed",
                details={"reason": str(e)},
            ) from e

        timestamp = _signature_timestamp(signature_header)
        if timestamp is None or timestamp > time.time() + self.webhook_tolerance:
            raise SignatureInvalid(
                "Webhook timestamp outside tolerance",
                details={"timestamp": timestamp},
            )

        try:
            data = json.loads(payload)
        except ValueError as e:
            raise PayloadInvalid("Webhook body is not valid JSON") from e
        if not isinstance(data, dict):
            raise PayloadInvalid("Webhook body is not a JSON object")

        return normalize_stripe_event(data)

    # =========================================================================
    # Error Handling
    # =========================================================================

    def _handle_stripe_error(
        self,
        error: stripe.StripeError,
        log_context: dict[str, Any],
        duration_ms: float,
    ) -> None:
        """
        Translate Stripe SDK errors to escrow provider errors.

        Raises:
            ProviderUnavailable: Connection, API (5xx) and rate-limit errors
            InvalidCurrency: Invalid request on the currency parameter
            ProviderRequestRejected: Other invalid requests, card errors
            ProviderConfigurationError: Authentication/permission errors
        """
        logger = self.get_logger()
        log_context = {
            **log_context,
            "duration_ms": duration_ms,
            "stripe_code": getattr(error, "code", None),
        }

        if isinstance(error, stripe.InvalidRequestError):
            logger.error("Invalid request to Stripe", extra=log_context)
            if getattr(error, "param", None) == "currency":
                raise InvalidCurrency(
                    str(error.user_message or error),
                    provider_code=error.code,
                ) from error
            raise ProviderRequestRejected(
                str(error.user_message or error),
                provider_code=error.code,
            ) from error

        if isinstance(error, stripe.CardError):
            logger.warning("Card error from Stripe", extra=log_context)
            raise ProviderRequestRejected(
                str(error.user_message or error),
                provider_code=error.code,
            ) from error

        if isinstance(error, stripe.RateLimitError):
            logger.warning("Rate limited by Stripe", extra=log_context)
            raise ProviderUnavailable(
                "Payment provider rate limit exceeded; will retry",
                provider_code="rate_limit",
            ) from error

        if isinstance(error, stripe.APIConnectionError):
            logger.error("Connection error to Stripe", extra=log_context, exc_info=True)
            raise ProviderUnavailable(
                "Could not reach the payment provider; will retry",
                provider_code="api_connection_error",
            ) from error

        if isinstance(error, (stripe.AuthenticationError, stripe.PermissionError)):
            logger.critical(
                "Stripe authentication failed - check API key", extra=log_context
            )
            raise ProviderConfigurationError(
                "Payment provider authentication failed",
                provider_code="authentication_error",
            ) from error

        logger.error(
            f"Stripe API error: {type(error).__name__}",
            extra=log_context,
            exc_info=True,
        )
        raise ProviderUnavailable(
            "Payment provider error; will retry",
            provider_code=getattr(error, "code", None) or "api_error",
        ) from error


def _signature_timestamp(signature_header: str) -> int | None:
    for item in signature_header.split(","):
        key, _, value = item.strip().partition("=")
        if key == "t":
            try:
                return int(value)
            except ValueError:
                return None
    return None
