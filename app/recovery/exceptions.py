"""
Recovery-specific exceptions.

Business declines are never exceptions: they are recorded as charge
attempts and classified. Exceptions here cover contract violations,
infrastructure failures and concurrency conflicts.

Exception Hierarchy:
    RecoveryError (base for the recovery domain)
    ├── ObligationNotFoundError - Obligation lookup failures
    ├── RecoverySessionNotFoundError - Recovery session lookup failures
    └── ObligationValidationError - Malformed ids, amounts, outcomes

    GatewayError (ExternalServiceError) - Payment gateway failures
    ├── GatewayUnavailableError - Network failure or processor 5xx (transient)
    ├── GatewayTimeoutError - No response within the timeout (transient)
    ├── GatewayRateLimitError - Rate limited by the processor (transient)
    └── GatewayRequestError - Rejected request or bad credentials (permanent)

    StaleRecordError - Optimistic locking conflict (inherits ConflictError)
    LockAcquisitionError - Lease held elsewhere (inherits ConflictError)
    InvalidStateTransitionError - FSM transition not allowed (inherits ConflictError)
    ImmutableRecordError - Write to an append-only record (inherits ConflictError)

Usage:
    from recovery.exceptions import GatewayError, LockAcquisitionError

    try:
        charge = gateway.charge(...)
    except GatewayError as e:
        # Recorded as a gateway_error attempt, never a decline
        ...
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from core.exceptions import BaseApplicationError, ConflictError, ExternalServiceError

if TYPE_CHECKING:
    from typing import Any


# =============================================================================
# Recovery Domain Exceptions
# =============================================================================


class RecoveryError(BaseApplicationError):
    """Base exception for recovery operations."""

    default_error_code: str = "RECOVERY_ERROR"


class ObligationNotFoundError(RecoveryError):
    """
    Raised when an obligation cannot be found.

    Example:
        raise ObligationNotFoundError(
            f"Obligation {obligation_id} not found",
            details={"obligation_id": str(obligation_id)},
        )
    """

    default_error_code: str = "OBLIGATION_NOT_FOUND"


class RecoverySessionNotFoundError(RecoveryError):
    """Raised when a recovery session cannot be found."""

    default_error_code: str = "RECOVERY_SESSION_NOT_FOUND"


class ObligationValidationError(RecoveryError):
    """
    Raised when a caller passes malformed input.

    Use for:
    - Identifiers that are not UUIDs
    - Non-positive amounts or unknown currencies
    - Unknown kinds, outcomes or attempt results
    """

    default_error_code: str = "OBLIGATION_VALIDATION_ERROR"


# =============================================================================
# Gateway Exceptions
# =============================================================================


class GatewayError(ExternalServiceError):
    """
    Base exception for payment gateway failures.

    Raised by gateway adapters when the processor could not give a
    business answer. The charge executor records these as gateway_error
    attempts; they count against the consecutive-infrastructure-failure
    cap, never against the decline threshold.

    Attributes:
        processor_code: Processor's own error code, if any
        is_retryable: Whether the same request may succeed later
    """

    default_error_code: str = "GATEWAY_ERROR"
    is_retryable: bool = True

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        processor_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = details or {}
        if processor_code:
            details["processor_code"] = processor_code
        super().__init__(message, error_code=error_code, details=details)
        self.processor_code = processor_code


class GatewayUnavailableError(GatewayError):
    """
    Processor unreachable or returning server errors.

    Covers network connectivity issues, DNS and TLS failures, and 5xx
    responses.
    """

    default_error_code: str = "GATEWAY_UNAVAILABLE"


class GatewayTimeoutError(GatewayError):
    """
    Processor call timed out.

    IMPORTANT: The charge may have succeeded on the processor's side.
    The next attempt uses a new attempt number, so the processor-side
    idempotency key only protects replays of the same attempt.
    """

    default_error_code: str = "GATEWAY_TIMEOUT"


class GatewayRateLimitError(GatewayError):
    default_error_code: str = "GATEWAY_RATE_LIMITED"


class GatewayRequestError(GatewayError):
    """
    Processor rejected the request itself.

    Invalid parameters or credentials; retrying the same request will not
    help until configuration is fixed.
    """

    default_error_code: str = "GATEWAY_REQUEST_REJECTED"
    is_retryable: bool = False


# =============================================================================
# Concurrency Control Exceptions
# =============================================================================


class StaleRecordError(ConflictError):
    """
    Raised when optimistic locking detects concurrent modification.

    The obligation was written by another process between the read under
    the lease and the final write (for example after the lease expired
    during a slow gateway call). The write is abandoned.

    Attributes:
        details: Contains pk, expected_version, and current_version
    """

    default_error_code: str = "STALE_RECORD"


class LockAcquisitionError(ConflictError):
    """
    Raised when a distributed lock cannot be acquired.

    For recovery triggers this is not an error condition: another worker
    owns the obligation and the trigger no-ops.

    Attributes:
        details: Contains key and (for blocking acquisition) timeout
    """

    default_error_code: str = "LOCK_ACQUISITION_FAILED"


class InvalidStateTransitionError(ConflictError):
    """
    Raised when a state machine transition is not allowed.

    Wraps django-fsm's TransitionNotAllowed in the standard error format.

    Example:
        try:
            obligation.require_action()
        except TransitionNotAllowed:
            raise InvalidStateTransitionError(
                f"Cannot require action from '{obligation.status}'",
                details={
                    "current_state": obligation.status,
                    "transition": "require_action",
                },
            )
    """

    default_error_code: str = "INVALID_STATE_TRANSITION"


class ImmutableRecordError(ConflictError):
    """Raised when an append-only record (charge attempt, event) is re-saved."""

    default_error_code: str = "IMMUTABLE_RECORD"


# =============================================================================
# Exports
# =============================================================================

__all__ = [
    # Recovery domain
    "RecoveryError",
    "ObligationNotFoundError",
    "RecoverySessionNotFoundError",
    "ObligationValidationError",
    # Gateway
    "GatewayError",
    "GatewayUnavailableError",
    "GatewayTimeoutError",
    "GatewayRateLimitError",
    "GatewayRequestError",
    # Concurrency control
    "StaleRecordError",
    "LockAcquisitionError",
    "InvalidStateTransitionError",
    "ImmutableRecordError",
]
