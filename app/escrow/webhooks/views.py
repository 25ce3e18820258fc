"""
Webhook endpoint views.

The view reads the raw body, hands it to the WebhookDispatcher and maps
the result to the status the provider expects:

    200 - accepted, duplicate or unknown event type
    400 - verified body that does not match its schema
    401 - bad signature or timestamp outside tolerance
    503 - transient failure; the provider redelivers
    500 - unexpected failure; the provider redelivers

Usage:
    # In urls.py
    from escrow.webhooks.views import stripe_webhook

    urlpatterns = [
        path("webhooks/stripe/", stripe_webhook, name="stripe_webhook"),
    ]
"""

from __future__ import annotations

import logging

from django.http import HttpRequest, JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from escrow.exceptions import EscrowError, PayloadInvalid, SignatureInvalid
from escrow.providers import get_payments_provider
from escrow.webhooks.dispatcher import WebhookDispatcher

logger = logging.getLogger(__name__)


@csrf_exempt
@require_POST
def stripe_webhook(request: HttpRequest) -> JsonResponse:
    """
    Receive Stripe webhook events.

    Processing is synchronous: the receipt is committed before the 200 is
    returned, so a 2xx always means the event is durably applied.

    Example Stripe-Signature header:
        t=1614556800,v1=xxx
    """
    signature = request.headers.get("Stripe-Signature", "")
    dispatcher = WebhookDispatcher(get_payments_provider("stripe"))

    try:
        result = dispatcher.handle(request.body, signature)
    except SignatureInvalid:
        return JsonResponse({"error": "Invalid signature"}, status=401)
    except PayloadInvalid as e:
        logger.warning(
            "Webhook payload rejected",
            extra={"error_code": e.error_code, "reason": e.message},
        )
        return JsonResponse({"error": "Invalid payload"}, status=400)
    except EscrowError as e:
        if not e.is_retryable:
            logger.error(
                f"Webhook processing failed: {e.message}",
                extra={"error_code": e.error_code},
                exc_info=True,
            )
            return JsonResponse({"error": "Processing error"}, status=500)
        logger.warning(
            f"Webhook processing deferred: {e.message}",
            extra={"error_code": e.error_code, **e.details},
        )
        return JsonResponse({"error": "Temporarily unavailable"}, status=503)
    except Exception as e:
        logger.error(
            f"Unexpected error processing webhook: {type(e).__name__}",
            exc_info=True,
        )
        return JsonResponse({"error": "Processing error"}, status=500)

    return JsonResponse(
        {
            "status": result.status,
            "event_type": result.event.event_type,
            "outcome": result.outcome,
        },
        status=200,
    )
