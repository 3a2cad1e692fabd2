"""
PhiloGraph - Error Taxonomy

Every store adapter, the reasoning gateway and the saga coordinator raise
errors from this hierarchy. The ErrorKind drives the coordinator's
retry-vs-compensate decision:

- UNAVAILABLE: transient (connection, timeout). Retried with backoff.
- NOT_FOUND / CONFLICT / VALIDATION_FAILED / CIRCUIT_OPEN / CANCELLED:
  fail the step immediately.
- COMPENSATION_FAILED: reported alongside the root cause, never alone.
"""

from typing import List, Optional
from enum import Enum


class ErrorKind(str, Enum):
    """Classification of coordinator errors."""
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    UNAVAILABLE = "unavailable"
    CIRCUIT_OPEN = "circuit_open"
    VALIDATION_FAILED = "validation_failed"
    COMPENSATION_FAILED = "compensation_failed"
    CANCELLED = "cancelled"


class PhiloGraphError(Exception):
    """Base class for all classified errors."""

    kind: ErrorKind = ErrorKind.UNAVAILABLE

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    @property
    def retryable(self) -> bool:
        return self.kind == ErrorKind.UNAVAILABLE


class NotFoundError(PhiloGraphError):
    kind = ErrorKind.NOT_FOUND


class ConflictError(PhiloGraphError):
    kind = ErrorKind.CONFLICT


class UnavailableError(PhiloGraphError):
    kind = ErrorKind.UNAVAILABLE


class StepTimeoutError(UnavailableError):
    """
    A step call outlived its timeout.

    unresolved is set when the call finished late and its result could not
    be undone; such a timeout is not retried.
    """

    def __init__(self, message: str, unresolved: Optional['CompensationFailedError'] = None):
        super().__init__(message)
        self.unresolved = unresolved

    @property
    def retryable(self) -> bool:
        return self.unresolved is None


class CircuitOpenError(PhiloGraphError):
    """Reasoning service is degraded; the call was not attempted."""
    kind = ErrorKind.CIRCUIT_OPEN


class ValidationFailedError(PhiloGraphError):
    """Invariant violation caught before any write or network call."""
    kind = ErrorKind.VALIDATION_FAILED


class PlanCancelledError(PhiloGraphError):
    kind = ErrorKind.CANCELLED


class CompensationFailedError(PhiloGraphError):
    """A compensating action did not succeed."""
    kind = ErrorKind.COMPENSATION_FAILED

    def __init__(self, step_name: str, cause: BaseException):
        super().__init__(f"Compensation of step '{step_name}' failed: {cause}")
        self.step_name = step_name
        self.cause = cause


class PlanFailedError(PhiloGraphError):
    """
    Aggregate failure of a plan.

    Carries the failing step name, the root cause and every compensation
    error encountered during best-effort rollback. The root cause is never
    masked by compensation errors.
    """

    def __init__(
        self,
        plan_id: str,
        step_name: str,
        cause: BaseException,
        compensation_errors: Optional[List[CompensationFailedError]] = None
    ):
        self.plan_id = plan_id
        self.step_name = step_name
        self.cause = cause
        self.compensation_errors = list(compensation_errors or [])

        message = f"Plan {plan_id} failed at step '{step_name}': {cause}"
        if self.compensation_errors:
            message += (
                f" ({len(self.compensation_errors)} compensation error(s): "
                + "; ".join(str(e) for e in self.compensation_errors)
                + ")"
            )
        super().__init__(message)

    @property
    def kind(self) -> ErrorKind:
        return error_kind(self.cause)

    @property
    def fully_compensated(self) -> bool:
        return not self.compensation_errors

    def user_message(self) -> str:
        """Human-readable message for synchronous and polling callers."""
        if isinstance(self.cause, CircuitOpenError):
            return (
                "Reasoning service temporarily degraded, your request was not applied "
                f"(step: {self.step_name})"
            )
        return f"Step '{self.step_name}' failed: {self.cause}"


def error_kind(exc: BaseException) -> ErrorKind:
    """
    Classify an arbitrary exception.

    Unclassified exceptions are treated as terminal (VALIDATION_FAILED is not
    appropriate, CONFLICT is the closest non-retryable kind).
    """
    if isinstance(exc, PhiloGraphError):
        return exc.kind
    if isinstance(exc, TimeoutError):
        return ErrorKind.UNAVAILABLE
    return ErrorKind.CONFLICT
