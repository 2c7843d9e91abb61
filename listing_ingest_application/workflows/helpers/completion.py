"""Completion detection for one provider snapshot.

A submission starts in ``SUBMITTED`` and moves to ``POLLING`` (poll mode) or
``AWAITING_WEBHOOK`` (webhook mode). Each check produces an explicit
``Done | Retry | Fatal`` outcome; the activity layer turns ``Retry`` into a
retryable error so Temporal's retry policy schedules the next check.

A webhook that already reported the snapshot ready wins over any poll result,
including one that races it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Awaitable, Callable, Optional, Union

from ..exceptions import ProviderFailedError, StillProcessingError, TimedOutWorkflowError

logger = logging.getLogger("temporal.worker.completion")


class CompletionMode(StrEnum):
    POLL = "poll"
    WEBHOOK = "webhook"


class CompletionState(StrEnum):
    SUBMITTED = "submitted"
    POLLING = "polling"
    AWAITING_WEBHOOK = "awaiting_webhook"
    READY = "ready"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


# The provider uses all three spellings for a finished snapshot.
READY_STATUSES = frozenset({"ready", "completed", "complete"})
PENDING_STATUSES = frozenset({"running", "pending", "initializing", "queued", "building", "collecting"})
FAILED_STATUSES = frozenset({"failed"})


@dataclass(frozen=True)
class CompletionSignal:
    provider_handle: str
    status: str
    error: Optional[str] = None
    progress: Optional[str] = None
    record_count: Optional[int] = None
    not_found: bool = False


@dataclass(frozen=True)
class WebhookState:
    status: Optional[str] = None
    error: Optional[str] = None
    record_count: Optional[int] = None
    delivery_key: Optional[str] = None

    @property
    def is_ready(self) -> bool:
        return bool(self.delivery_key) or normalize_status(self.status) == "ready"

    @property
    def is_failed(self) -> bool:
        return not self.delivery_key and normalize_status(self.status) == "failed"


@dataclass(frozen=True)
class Done:
    source: str
    record_count: Optional[int] = None
    delivery_key: Optional[str] = None
    state: CompletionState = CompletionState.READY


@dataclass(frozen=True)
class Retry:
    state: CompletionState
    reason: str


@dataclass(frozen=True)
class Fatal:
    state: CompletionState
    error: str


StepOutcome = Union[Done, Retry, Fatal]
PollFn = Callable[[str], Awaitable[CompletionSignal]]
WebhookLookupFn = Callable[[str], Awaitable[Optional[WebhookState]]]


def normalize_status(raw: Optional[str]) -> Optional[str]:
    """Map a provider status onto ``ready``, ``pending`` or ``failed``; None when unknown."""

    if not isinstance(raw, str):
        return None
    status = raw.strip().lower()
    if status in READY_STATUSES:
        if status != "ready":
            logger.info("Treating provider status %r as ready", status)
        return "ready"
    if status in PENDING_STATUSES:
        return "pending"
    if status in FAILED_STATUSES:
        return "failed"
    return None


def initial_state(mode: str) -> CompletionState:
    if mode == CompletionMode.WEBHOOK:
        return CompletionState.AWAITING_WEBHOOK
    return CompletionState.POLLING


def _webhook_outcome(state: Optional[WebhookState]) -> Optional[StepOutcome]:
    if state is None:
        return None
    if state.is_ready:
        return Done(
            source="webhook",
            record_count=state.record_count,
            delivery_key=state.delivery_key,
        )
    if state.is_failed:
        return Fatal(CompletionState.FAILED, state.error or "provider reported failure via webhook")
    return None


def classify_signal(signal: CompletionSignal, waiting_state: CompletionState) -> StepOutcome:
    """Decide the next step from one poll response."""

    if signal.not_found:
        return Retry(waiting_state, f"snapshot {signal.provider_handle} not provisioned yet")
    status = normalize_status(signal.status)
    if status == "ready":
        return Done(source="poll", record_count=signal.record_count)
    if status == "failed":
        return Fatal(CompletionState.FAILED, signal.error or f"snapshot {signal.provider_handle} failed")
    if status == "pending":
        progress = f" ({signal.progress})" if signal.progress else ""
        return Retry(waiting_state, f"snapshot {signal.provider_handle} is {signal.status}{progress}")
    logger.warning(
        "Unknown provider status %r for snapshot %s; will check again",
        signal.status,
        signal.provider_handle,
    )
    return Retry(waiting_state, f"unknown status {signal.status!r}")


async def evaluate_completion(
    provider_handle: str,
    mode: str,
    *,
    poll: PollFn,
    webhook_lookup: Optional[WebhookLookupFn] = None,
    now: datetime,
    deadline: Optional[datetime] = None,
) -> StepOutcome:
    """Run one completion check for ``provider_handle``."""

    waiting_state = initial_state(mode)

    if webhook_lookup is not None:
        outcome = _webhook_outcome(await webhook_lookup(provider_handle))
        if outcome is not None:
            return outcome

    if deadline is not None and now >= deadline:
        return Fatal(
            CompletionState.TIMED_OUT,
            f"snapshot {provider_handle} not ready before {deadline.isoformat()}",
        )

    outcome = classify_signal(await poll(provider_handle), waiting_state)

    if webhook_lookup is not None and not isinstance(outcome, Done):
        # A webhook may have landed while the poll was in flight.
        raced = _webhook_outcome(await webhook_lookup(provider_handle))
        if isinstance(raced, Done):
            return raced

    return outcome


def raise_for_outcome(outcome: StepOutcome) -> Done:
    """Return ``Done`` or raise the error the retry policy understands."""

    if isinstance(outcome, Done):
        return outcome
    if isinstance(outcome, Retry):
        raise StillProcessingError(outcome.reason)
    if outcome.state == CompletionState.TIMED_OUT:
        raise TimedOutWorkflowError(outcome.error)
    raise ProviderFailedError(outcome.error)


__all__ = [
    "CompletionMode",
    "CompletionSignal",
    "CompletionState",
    "Done",
    "Fatal",
    "Retry",
    "StepOutcome",
    "WebhookState",
    "classify_signal",
    "evaluate_completion",
    "initial_state",
    "normalize_status",
    "raise_for_outcome",
]
