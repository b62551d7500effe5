"""Backend error classification and the transition failure taxonomy.

Two halves:

1. classify(): a pure mapping from whatever the backend raised to
   RETRYABLE / FATAL / IGNORABLE. Structured signals only (controller
   error codes, SDK exception types, HTTP status). Error text is never
   inspected. Anything unrecognized fails closed as FATAL.

2. TransitionError and subclasses: the single structured failure a caller
   receives from a wait or a transition. Each carries the phase it
   happened in, a FailureKind, the last observed state and elapsed time.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from azure.core.exceptions import HttpResponseError, ResourceNotFoundError

# Controller error codes signalling a busy device or a conflicting operation
BUSY_ERROR_CODES: frozenset[str] = frozenset(
    {
        "api.err.DeviceBusy",
        "api.err.Busy",
    }
)

# Controller error codes meaning the entity is not (currently) visible.
# UnknownDevice is also returned for a few seconds after a forget, while the
# device is briefly missing from the controller's inventory.
NOT_FOUND_ERROR_CODES: frozenset[str] = frozenset(
    {
        "api.err.UnknownDevice",
        "api.err.NotFound",
        "api.err.NoSiteContext",
    }
)

HTTP_NOT_FOUND = 404
HTTP_CONFLICT = 409
HTTP_TOO_MANY_REQUESTS = 429


class ControllerError(HttpResponseError):
    """Error response from the network controller API.

    The controller reports failures as {"meta": {"rc": "error", "msg": "api.err.X"}}.
    The `msg` value is kept as the structured error_code.
    """

    def __init__(
        self,
        message: str | None = None,
        response: Any = None,
        *,
        error_code: str | None = None,
        **kwargs: Any,
    ) -> None:
        self.error_code = error_code
        super().__init__(message=message, response=response, **kwargs)


class ErrorKind(str, Enum):
    """How the engine should react to a backend error."""

    RETRYABLE = "retryable"
    FATAL = "fatal"
    IGNORABLE = "ignorable"


@dataclass(frozen=True)
class ClassifiedError:
    """A backend error plus the engine's verdict on it."""

    kind: ErrorKind
    cause: Any
    error_code: str | None = None
    retry_after: float | None = None
    attempt: int | None = None

    @property
    def retryable(self) -> bool:
        return self.kind == ErrorKind.RETRYABLE


def _error_code(err: Any) -> str | None:
    code = getattr(err, "error_code", None)
    if isinstance(code, str) and code:
        return code
    # Errors parsed from OData-style bodies expose the code on .error
    odata = getattr(err, "error", None)
    code = getattr(odata, "code", None)
    if isinstance(code, str) and code:
        return code
    return None


def _status_code(err: Any) -> int | None:
    status = getattr(err, "status_code", None)
    return status if isinstance(status, int) else None


def _retry_after(err: Any) -> float | None:
    try:
        value = err.response.headers.get("Retry-After")
        if value is None:
            return None
        seconds = float(value)
    except (AttributeError, TypeError, ValueError):
        return None
    return seconds if seconds >= 0 else None


def classify(err: Any, attempt: int | None = None) -> ClassifiedError:
    """Classify a backend error.

    Total and side-effect free: never raises, whatever it is given.

    Args:
        err: The error raised by a backend call (any object is accepted).
        attempt: Optional attempt number to carry along for diagnostics.

    Returns:
        ClassifiedError with kind RETRYABLE (busy/conflict), IGNORABLE
        (not found) or FATAL (everything else).
    """
    try:
        code = _error_code(err)
        status = _status_code(err)

        if code in BUSY_ERROR_CODES:
            return ClassifiedError(ErrorKind.RETRYABLE, err, code, _retry_after(err), attempt)
        if status in (HTTP_CONFLICT, HTTP_TOO_MANY_REQUESTS):
            return ClassifiedError(ErrorKind.RETRYABLE, err, code, _retry_after(err), attempt)

        if isinstance(err, ResourceNotFoundError):
            return ClassifiedError(ErrorKind.IGNORABLE, err, code, None, attempt)
        if code in NOT_FOUND_ERROR_CODES or status == HTTP_NOT_FOUND:
            return ClassifiedError(ErrorKind.IGNORABLE, err, code, None, attempt)

        return ClassifiedError(ErrorKind.FATAL, err, code, None, attempt)
    except Exception:  # noqa: BLE001 - fail closed
        return ClassifiedError(ErrorKind.FATAL, err, None, None, attempt)


def is_not_found(err: Any) -> bool:
    """Check whether a backend error means the entity is not visible."""
    return classify(err).kind == ErrorKind.IGNORABLE


def is_retryable(err: Any) -> bool:
    """Check whether a backend error is a transient busy/conflict signal."""
    return classify(err).kind == ErrorKind.RETRYABLE


# =============================================================================
# Failure taxonomy
# =============================================================================


class Phase(str, Enum):
    """Where in a transition a failure happened."""

    MUTATE = "mutate"
    WAIT = "wait"


class FailureKind(str, Enum):
    """Terminal failure categories surfaced to callers."""

    RETRY_EXHAUSTED = "retry_exhausted"
    FATAL = "fatal"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class TransitionError(Exception):
    """Base class for every terminal failure of a wait or transition."""

    kind: FailureKind = FailureKind.FATAL

    def __init__(
        self,
        message: str,
        *,
        phase: Phase | None = None,
        last_state: Any = None,
        elapsed_seconds: float = 0.0,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.phase = phase
        self.last_state = last_state
        self.elapsed_seconds = elapsed_seconds
        self.cause = cause

    def with_phase(self, phase: Phase) -> TransitionError:
        """Tag the failure with the phase it surfaced in and return it."""
        self.phase = phase
        return self

    def to_dict(self) -> dict[str, Any]:
        """Structured form for logging."""
        return {
            "phase": self.phase.value if self.phase else None,
            "failure_kind": self.kind.value,
            "last_state": repr(self.last_state) if self.last_state is not None else None,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "error": str(self),
            "cause_type": type(self.cause).__name__ if self.cause else None,
        }


class FatalBackendError(TransitionError):
    """Backend returned an error that must not be retried."""

    kind = FailureKind.FATAL


class RetryExhaustedError(TransitionError):
    """Transient errors persisted beyond the retry budget."""

    kind = FailureKind.RETRY_EXHAUSTED

    def __init__(self, message: str, *, attempts: int = 0, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.attempts = attempts


class EntityNotFoundError(TransitionError):
    """Entity stayed absent beyond the grace threshold while presence was expected."""

    kind = FailureKind.FATAL


class UnexpectedStateError(TransitionError):
    """Entity reported a state that is neither pending nor the target."""

    kind = FailureKind.FATAL


class WaitTimeoutError(TransitionError):
    """Target state was not reached within the wait budget."""

    kind = FailureKind.TIMEOUT


class CancellationRequested(TransitionError):
    """Caller asked the engine to stop. Not a backend failure."""

    kind = FailureKind.CANCELLED
