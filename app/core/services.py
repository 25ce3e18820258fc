"""
Base service layer patterns for business logic encapsulation.

This module provides foundational patterns for the service layer:
- ServiceResult: Standard result wrapper for consistent success/failure handling
- BaseService: Base class with logging and transaction helpers

Pattern Comparison:
    - ServiceResult: Use for expected failures (illegal transitions, bad input)
    - Exceptions: Use inside a service to abort a transaction; convert to
      ServiceResult at the public boundary

Usage:
    from core.services import BaseService, ServiceResult

    class DealService(BaseService):
        def accept(self, deal_id, actor) -> ServiceResult[Deal]:
            try:
                with self.atomic():
                    deal = Deal.objects.select_for_update().get(pk=deal_id)
                    ...
            except BaseApplicationError as e:
                return self.failure_from(e)
            return ServiceResult.success(deal)

    # In view
    result = service.accept(deal_id, request.user)
    if result.success:
        return Response(DealSerializer(result.data).data)
    return Response(result.to_response(), status=400)
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Generic, TypeVar

from django.db import transaction

if TYPE_CHECKING:
    from collections.abc import Generator
    from typing import Any

    from core.exceptions import BaseApplicationError

T = TypeVar("T")


@dataclass
class ServiceResult(Generic[T]):
    """
    Standard result wrapper for service operations.

    Attributes:
        success: Whether the operation succeeded
        data: Result data if successful (None if failed)
        error: Error message if failed (None if successful)
        error_code: Machine-readable error code for client handling
        errors: Field-level errors for validation failures
        details: Extra context carried over from a domain exception
    """

    success: bool
    data: T | None = None
    error: str | None = None
    error_code: str | None = None
    errors: dict[str, list[str]] | None = field(default=None)
    details: dict[str, Any] | None = field(default=None)

    @classmethod
    def success(cls, data: T) -> ServiceResult[T]:
        """Create a successful result."""
        return cls(success=True, data=data)

    @classmethod
    def failure(
        cls,
        error: str,
        error_code: str | None = None,
        errors: dict[str, list[str]] | None = None,
        details: dict[str, Any] | None = None,
    ) -> ServiceResult[T]:
        """
        Create a failed result.

        Example:
            return ServiceResult.failure(
                "Milestone is not in a state that allows approval",
                error_code="INVALID_STATE",
            )
        """
        return cls(
            success=False,
            error=error,
            error_code=error_code,
            errors=errors,
            details=details,
        )

    @classmethod
    def from_exception(cls, exc: BaseApplicationError) -> ServiceResult[T]:
        """Create a failed result from a domain exception."""
        return cls.failure(
            exc.message,
            error_code=exc.error_code,
            details=exc.details or None,
        )

    def to_response(self) -> dict[str, Any]:
        """Convert to API response format."""
        if self.success:
            return {"success": True, "data": self.data}

        response: dict[str, Any] = {
            "success": False,
            "error": self.error,
        }
        if self.error_code:
            response["error_code"] = self.error_code
        if self.errors:
            response["errors"] = self.errors
        if self.details:
            response["details"] = self.details
        return response

    def __bool__(self) -> bool:
        return self.success


class BaseService:
    """
    Base class for service layer classes.

    Provides:
    - Logging setup per service
    - Database transaction management

    Services hold no per-request state. Collaborators (payment provider,
    ledger recorder) are passed to the constructor so tests can swap them.
    """

    @classmethod
    def get_logger(cls) -> logging.Logger:
        """Get logger named after the service class."""
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    @classmethod
    @contextmanager
    def atomic(cls) -> Generator[None, None, None]:
        """
        Execute operations in a database transaction.

        Thin wrapper around transaction.atomic() that makes transaction
        boundaries explicit in service code. Nested use creates a savepoint.
        """
        with transaction.atomic():
            yield

    @classmethod
    def failure_from(
        cls,
        exc: BaseApplicationError,
        log_level: int = logging.WARNING,
    ) -> ServiceResult:
        """
        Log a domain exception and convert it to a failed ServiceResult.

        Example:
            except InvalidState as e:
                return self.failure_from(e)
        """
        cls.get_logger().log(
            log_level,
            f"{exc.__class__.__name__}: {exc.message}",
            extra={"error_code": exc.error_code, **exc.details},
        )
        return ServiceResult.from_exception(exc)
