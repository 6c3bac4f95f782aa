"""
Core Application - Infrastructure & Base Classes

Generic, reusable building blocks shared by the domain apps. No recovery
logic lives here.

Models (import from core.models):
    - BaseModel: Abstract model with timestamps (created_at, updated_at)

Model Mixins (import from core.model_mixins):
    - UUIDPrimaryKeyMixin: UUID as primary key

Services (import from core.services):
    - BaseService: Base class for service layer
    - ServiceResult: Standard result wrapper for success/failure handling

Exceptions (import from core.exceptions):
    - BaseApplicationError: Base exception with error codes
    - NotFoundError: Record not found
    - ConflictError: State conflicts (locks, versions, transitions)
    - ExternalServiceError: Third-party service failures

Helpers (import from core.helpers):
    - generate_token: Cryptographically secure token generation
    - hash_string: String hashing

Note:
    Django models and model mixins are NOT imported here to avoid
    AppRegistryNotReady errors. Import them directly from their modules.
"""

from .exceptions import (
    BaseApplicationError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
)
from .helpers import generate_token, hash_string
from .services import BaseService, ServiceResult

__all__ = [
    # Services
    "BaseService",
    "ServiceResult",
    # Exceptions
    "BaseApplicationError",
    "NotFoundError",
    "ConflictError",
    "ExternalServiceError",
    # Helpers
    "generate_token",
    "hash_string",
]
