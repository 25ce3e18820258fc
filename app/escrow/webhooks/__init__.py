"""
Inbound provider webhooks.

    views.stripe_webhook     - HTTP endpoint (raw body, signature header)
    dispatcher.WebhookDispatcher - verify, dedupe, dispatch, record receipt
    handlers                 - one handler per normalized event type
    events                   - normalized event dataclasses

Submodules are imported directly to keep app loading free of cycles.
"""
