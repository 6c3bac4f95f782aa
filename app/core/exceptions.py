"""
Base exception classes for application-wide error handling.

Every domain exception carries a machine-readable error code and a details
dict so Celery task results, logs and admin tooling report failures the same
way.

Exception Hierarchy:
    BaseApplicationError (base)
    ├── NotFoundError - Record lookup failures
    ├── ConflictError - State conflicts (locks, stale versions, transitions)
    └── ExternalServiceError - Third-party service failures (payment gateway)

Usage:
    from core.exceptions import ConflictError, NotFoundError

    raise NotFoundError(
        f"Obligation {obligation_id} not found",
        error_code="OBLIGATION_NOT_FOUND",
        details={"obligation_id": str(obligation_id)},
    )

    try:
        ...
    except BaseApplicationError as e:
        return {"status": "error", **e.to_dict()}
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any


class BaseApplicationError(Exception):
    """
    Base exception for all application-specific errors.

    Attributes:
        message: Human-readable error description
        error_code: Machine-readable code for callers and task results
        details: Additional error context (ids, versions, processor codes)
    """

    default_error_code: str = "APPLICATION_ERROR"

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        """
        Initialize the exception.

        Args:
            message: Human-readable error description
            error_code: Machine-readable error code (defaults to class default)
            details: Additional error context
        """
        self.message = message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert exception to a serializable dictionary.

        Returns:
            Dict with error, error_code, and (when present) details keys

        Example:
            {
                "error": "Obligation not found",
                "error_code": "OBLIGATION_NOT_FOUND",
                "details": {"obligation_id": "..."}
            }
        """
        result: dict[str, Any] = {
            "error": self.message,
            "error_code": self.error_code,
        }
        if self.details:
            result["details"] = self.details
        return result

    def __str__(self) -> str:
        """Return string representation with error code."""
        return f"[{self.error_code}] {self.message}"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"error_code={self.error_code!r}, "
            f"details={self.details!r})"
        )


class NotFoundError(BaseApplicationError):
    """
    Raised when a record that is expected to exist cannot be found.

    Example:
        obligation = Obligation.objects.filter(id=obligation_id).first()
        if not obligation:
            raise NotFoundError(
                f"Obligation {obligation_id} not found",
                error_code="OBLIGATION_NOT_FOUND",
            )
    """

    default_error_code: str = "NOT_FOUND"


class ConflictError(BaseApplicationError):
    """
    Raised when an operation conflicts with current resource state.

    Use for:
    - Lease contention
    - Optimistic locking failures
    - Invalid state transitions
    - Writes to append-only records
    """

    default_error_code: str = "CONFLICT"


class ExternalServiceError(BaseApplicationError):
    """
    Raised when an external service call fails.

    Example:
        except stripe.APIConnectionError as e:
            raise ExternalServiceError(
                "Payment gateway unavailable",
                error_code="GATEWAY_UNAVAILABLE",
                details={"original_error": str(e)},
            )

    Note:
        Log the original error for debugging; keep processor internals
        out of anything shown to chefs.
    """

    default_error_code: str = "EXTERNAL_SERVICE_ERROR"
