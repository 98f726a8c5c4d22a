"""Error taxonomy for the submission pipeline and feed cache.

Every error raised by the core carries an :class:`ErrorKind` tag. Callers
(HTTP handlers, the job runner, retry policies) dispatch on ``error.kind``
rather than on the concrete class, so the set of kinds is closed and each kind
has a fixed HTTP status and retry behaviour.
"""

from enum import Enum
from typing import Any, ClassVar

import httpx


class ErrorKind(str, Enum):
    """Closed set of error kinds."""

    VALIDATION = "validation"
    INVALID_TRANSITION = "invalid_transition"
    INVALID_JOB_TRANSITION = "invalid_job_transition"
    RETRY_EXHAUSTED = "retry_exhausted"
    EXTERNAL_SERVICE = "external_service"
    CACHE_DEGRADED = "cache_degraded"


# HTTP status used when an error of the given kind reaches the API layer
STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 422,
    ErrorKind.INVALID_TRANSITION: 409,
    ErrorKind.INVALID_JOB_TRANSITION: 409,
    ErrorKind.RETRY_EXHAUSTED: 503,
    ErrorKind.EXTERNAL_SERVICE: 502,
    ErrorKind.CACHE_DEGRADED: 500,
}

RETRYABLE_KINDS: frozenset[ErrorKind] = frozenset({ErrorKind.EXTERNAL_SERVICE})


class PipelineError(Exception):
    """Base class for all tagged errors."""

    kind: ClassVar[ErrorKind]

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = details

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    @property
    def status_code(self) -> int:
        return STATUS_BY_KIND[self.kind]

    def to_dict(self) -> dict[str, Any]:
        """Serialize for logging and error responses."""
        return {
            "kind": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
            "details": {k: _jsonable(v) for k, v in self.details.items()},
        }


class ValidationError(PipelineError):
    """Malformed input. Never retried."""

    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, field: str | None = None, **details: Any) -> None:
        super().__init__(message, field=field, **details)
        self.field = field


class InvalidTransition(PipelineError):
    """A submission was asked to move along an edge that does not exist."""

    kind = ErrorKind.INVALID_TRANSITION

    def __init__(self, current: str, target: str, reason: str | None = None) -> None:
        message = f"Invalid submission transition: {current} -> {target}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message, current=current, target=target, reason=reason)
        self.current = current
        self.target = target


class InvalidJobTransition(PipelineError):
    """A job was asked to move along an edge that does not exist."""

    kind = ErrorKind.INVALID_JOB_TRANSITION

    def __init__(self, current: str, target: str, reason: str | None = None) -> None:
        message = f"Invalid job transition: {current} -> {target}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message, current=current, target=target, reason=reason)
        self.current = current
        self.target = target


class RetryExhaustedError(PipelineError):
    """All attempts failed. Wraps the last underlying error."""

    kind = ErrorKind.RETRY_EXHAUSTED

    def __init__(
        self,
        last_error: BaseException,
        attempts: int,
        total_time_ms: float | None = None,
        operation: str | None = None,
    ) -> None:
        label = operation or "operation"
        super().__init__(
            f"{label} failed after {attempts} attempt(s): {last_error}",
            attempts=attempts,
            total_time_ms=total_time_ms,
            operation=operation,
            last_error=repr(last_error),
        )
        self.last_error = last_error
        self.attempts = attempts
        self.total_time_ms = total_time_ms


class ExternalServiceError(PipelineError):
    """A collaborator (CDN, storage, TTS, ...) failed. Retryable per policy."""

    kind = ErrorKind.EXTERNAL_SERVICE

    def __init__(
        self,
        service: str,
        message: str,
        status_code: int | None = None,
        **details: Any,
    ) -> None:
        super().__init__(
            f"{service}: {message}",
            service=service,
            upstream_status=status_code,
            **details,
        )
        self.service = service
        self.upstream_status = status_code


class CacheDegradedError(PipelineError):
    """Describes a swallowed cache failure. Logged, never raised to callers."""

    kind = ErrorKind.CACHE_DEGRADED

    def __init__(self, operation: str, cause: BaseException) -> None:
        super().__init__(
            f"feed cache {operation} failed: {cause}",
            operation=operation,
            cause=repr(cause),
        )
        self.operation = operation
        self.cause = cause


def error_kind(error: BaseException) -> ErrorKind | None:
    """Return the tag of a pipeline error, or None for foreign exceptions."""
    kind = getattr(error, "kind", None)
    return kind if isinstance(kind, ErrorKind) else None


def is_retryable(error: BaseException) -> bool:
    """Decide whether an error is transient.

    Tagged errors answer by kind. Foreign errors are transient when they are
    network/timeouts or upstream 5xx/429 responses.
    """
    kind = error_kind(error)
    if kind is not None:
        return kind in RETRYABLE_KINDS

    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        return status >= 500 or status == 429
    if isinstance(error, (httpx.TransportError, ConnectionError, TimeoutError)):
        return True
    return False


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)
