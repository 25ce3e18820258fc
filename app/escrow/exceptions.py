"""
Escrow-specific exception classes.

Exception Hierarchy:
    BaseApplicationError (from core)
    └── EscrowError - Base for all escrow errors
        ├── SignatureInvalid - Webhook authenticity check failed
        ├── PayloadInvalid - Verified webhook body does not match its schema
        ├── DuplicateEvent - Provider event already processed (internal signal)
        ├── WebhookTargetNotFound - Event refers to an entity not stored yet
        ├── AmountMismatch - Payout would exceed the remaining deal balance
        ├── LedgerWriteFailed - Audit event could not be persisted
        ├── LedgerImmutableError - Attempt to mutate a ledger event
        ├── LockAcquisitionError - Distributed lock held elsewhere
        └── ProviderError - Payment provider call failed
            ├── ProviderUnavailable - Transient, retry with backoff
            ├── InvalidCurrency - Provider rejected the currency
            ├── ProviderRequestRejected - Permanent request rejection
            └── ProviderConfigurationError - Credentials / setup problem

    ConflictError (from core)
    └── InvalidState - Transition not allowed from current state

    PermissionDeniedError (from core)
    └── ActionNotPermitted - Actor may not perform the action

    NotFoundError (from core)
    └── EntityNotFound - Deal / Milestone / Payout lookup failed

Retry guidance:
    Every exception exposes ``is_retryable``. Celery tasks and the webhook
    endpoint use it to decide between "retry later" (5xx / autoretry) and
    "permanent failure" (4xx / give up).

Usage:
    from escrow.exceptions import InvalidState

    raise InvalidState(
        "Milestone cannot be submitted in its current state",
        details={"milestone_id": str(milestone.id), "current_state": milestone.state},
    )
"""

from __future__ import annotations

from core.exceptions import (
    BaseApplicationError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
)


class EscrowError(BaseApplicationError):
    """Base exception for escrow errors."""

    default_error_code: str = "ESCROW_ERROR"
    is_retryable: bool = False


# =============================================================================
# Webhook Errors
# =============================================================================


class SignatureInvalid(EscrowError):
    """
    Raised when a webhook signature or timestamp check fails.

    The message is safe to log but is never echoed to the caller; the
    endpoint answers 401 with a generic body.
    """

    default_error_code: str = "SIGNATURE_INVALID"
    http_status: int = 401


class PayloadInvalid(EscrowError):
    """Raised when a verified webhook body is not valid for its event type."""

    default_error_code: str = "PAYLOAD_INVALID"
    http_status: int = 400


class DuplicateEvent(EscrowError):
    """
    Provider event id already exists in the ledger.

    Not an error from the provider's point of view: the dispatcher turns it
    into a 200 acknowledgement.
    """

    default_error_code: str = "DUPLICATE_EVENT"
    http_status: int = 200


class WebhookTargetNotFound(EscrowError):
    """
    Raised when an event carries our metadata but the entity is missing.

    Usually a race between the provider call returning and the reference
    being stored. Answering 5xx makes the provider redeliver.
    """

    default_error_code: str = "WEBHOOK_TARGET_NOT_FOUND"
    http_status: int = 503
    is_retryable: bool = True


# =============================================================================
# State Machine Errors
# =============================================================================


class InvalidState(ConflictError):
    """Raised when a transition is not allowed from the current state."""

    default_error_code: str = "INVALID_STATE"
    is_retryable: bool = False


class ActionNotPermitted(PermissionDeniedError):
    """Raised when the actor is not a party allowed to perform the action."""

    default_error_code: str = "PERMISSION_DENIED"
    is_retryable: bool = False


class EntityNotFound(NotFoundError):
    """Raised when a deal, milestone or payout does not exist."""

    default_error_code: str = "NOT_FOUND"
    is_retryable: bool = False


class AmountMismatch(EscrowError):
    """
    Raised when a payout or refund would exceed the remaining deal balance,
    or a requested amount exceeds the deal amount.

    Fatal to the transition that computed it: the action is rolled back.
    """

    default_error_code: str = "AMOUNT_MISMATCH"
    http_status: int = 400


# =============================================================================
# Ledger Errors
# =============================================================================


class LedgerWriteFailed(EscrowError):
    """
    Raised when a ledger event cannot be persisted.

    Propagates out of the surrounding transaction so the triggering state
    change rolls back with it.
    """

    default_error_code: str = "LEDGER_WRITE_FAILED"
    http_status: int = 503
    is_retryable: bool = True


class LedgerImmutableError(EscrowError):
    """Raised on any attempt to update or delete a ledger event."""

    default_error_code: str = "LEDGER_IMMUTABLE"
    http_status: int = 500


# =============================================================================
# Concurrency Errors
# =============================================================================


class LockAcquisitionError(EscrowError):
    """Raised when a distributed lock is held by another worker."""

    default_error_code: str = "LOCK_ACQUISITION_FAILED"
    http_status: int = 409
    is_retryable: bool = True


# =============================================================================
# Provider Errors
# =============================================================================


class ProviderError(EscrowError):
    """
    Base exception for payment provider failures.

    Attributes:
        provider_code: Provider-specific error code, when one was returned
    """

    default_error_code: str = "PROVIDER_ERROR"
    http_status: int = 502

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict | None = None,
        provider_code: str | None = None,
    ):
        self.provider_code = provider_code
        details = dict(details or {})
        if provider_code:
            details.setdefault("provider_code", provider_code)
        super().__init__(message, error_code=error_code, details=details)


class ProviderUnavailable(ProviderError):
    """
    Transient provider failure (network, timeout, 5xx, rate limit).

    The caller may retry with backoff. Money-moving actions surface this as
    "temporarily unavailable, will retry".
    """

    default_error_code: str = "PROVIDER_UNAVAILABLE"
    http_status: int = 503
    is_retryable: bool = True


class InvalidCurrency(ProviderError):
    """Raised when the provider does not support the requested currency."""

    default_error_code: str = "INVALID_CURRENCY"
    http_status: int = 400


class ProviderRequestRejected(ProviderError):
    """Permanent rejection of a well-formed request (bad account, balance)."""

    default_error_code: str = "PROVIDER_REQUEST_REJECTED"
    http_status: int = 422


class ProviderConfigurationError(ProviderError):
    """Raised when credentials are missing/invalid or a provider is unknown."""

    default_error_code: str = "PROVIDER_CONFIGURATION_ERROR"
    http_status: int = 500


__all__ = [
    "ActionNotPermitted",
    "AmountMismatch",
    "DuplicateEvent",
    "EntityNotFound",
    "EscrowError",
    "InvalidCurrency",
    "InvalidState",
    "LedgerImmutableError",
    "LedgerWriteFailed",
    "LockAcquisitionError",
    "PayloadInvalid",
    "ProviderConfigurationError",
    "ProviderError",
    "ProviderRequestRejected",
    "ProviderUnavailable",
    "SignatureInvalid",
    "WebhookTargetNotFound",
]
