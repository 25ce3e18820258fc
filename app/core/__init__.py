"""
Core application: shared infrastructure for the escrow service.

Models (import from core.models):
    - BaseModel: Abstract model with created_at / updated_at

Model Mixins (import from core.model_mixins):
    - UUIDPrimaryKeyMixin: UUID primary key

Services (import from core.services):
    - BaseService: Logging and transaction helpers for service classes
    - ServiceResult: Success/failure wrapper returned by service methods

Exceptions (import from core.exceptions):
    - BaseApplicationError and its HTTP-flavoured subclasses

Note:
    Models and mixins are not re-exported here because they need the app
    registry to be ready.
"""

from .exceptions import (
    BaseApplicationError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from .services import BaseService, ServiceResult

__all__ = [
    "BaseService",
    "ServiceResult",
    "BaseApplicationError",
    "ValidationError",
    "NotFoundError",
    "PermissionDeniedError",
    "ConflictError",
    "ExternalServiceError",
]
