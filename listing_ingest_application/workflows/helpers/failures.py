from __future__ import annotations

from typing import Optional

from temporalio.exceptions import ActivityError, ApplicationError, ChildWorkflowError, RetryState
from temporalio.exceptions import TimeoutError as TemporalTimeoutError

_EXHAUSTED_RETRY_STATES = {RetryState.MAXIMUM_ATTEMPTS_REACHED, RetryState.TIMEOUT}


def _root_cause(exc: BaseException) -> BaseException:
    current = exc
    while isinstance(current, (ActivityError, ChildWorkflowError)) and current.cause is not None:
        current = current.cause
    return current


def error_kind(exc: BaseException) -> str:
    """Return the failure type name, unwrapping activity and child workflow causes."""

    cause = _root_cause(exc)
    if isinstance(cause, ApplicationError) and cause.type:
        return cause.type
    return type(cause).__name__


def failure_message(exc: BaseException) -> str:
    cause = _root_cause(exc)
    message = getattr(cause, "message", None) or str(cause)
    return message or type(cause).__name__


def is_kind(exc: BaseException, *kinds: str) -> bool:
    return error_kind(exc) in kinds


def is_completion_timeout(exc: BaseException) -> bool:
    """True when a completion check ran out of attempts or wall-clock time."""

    if not isinstance(exc, ActivityError):
        return False
    if error_kind(exc) == "TimedOutWorkflowError":
        return True
    retry_state: Optional[RetryState] = exc.retry_state
    if retry_state not in _EXHAUSTED_RETRY_STATES:
        return False
    cause = _root_cause(exc)
    if isinstance(cause, TemporalTimeoutError):
        return True
    return error_kind(exc) == "StillProcessingError"


__all__ = ["error_kind", "failure_message", "is_kind", "is_completion_timeout"]
