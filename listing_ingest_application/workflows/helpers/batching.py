"""Split work into bounded batches and isolate failures per batch.

Runs inside workflow code, so it only uses deterministic asyncio primitives.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, Sequence, TypeVar

from .failures import error_kind, failure_message

T = TypeVar("T")


@dataclass(frozen=True)
class Batch(Generic[T]):
    index: int
    items: List[T]


@dataclass
class BatchOutcome:
    index: int
    item_count: int
    status: str
    data_count: int = 0
    provider_handle: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == "success"

    def to_summary(self) -> Dict[str, Any]:
        summary: Dict[str, Any] = {
            "batchIndex": self.index,
            "itemCount": self.item_count,
            "status": self.status,
            "dataCount": self.data_count,
        }
        if self.provider_handle:
            summary["snapshotId"] = self.provider_handle
        if self.error:
            summary["error"] = self.error
            summary["errorKind"] = self.error_kind
        return summary


@dataclass(frozen=True)
class BatchResult:
    """What a batch processor reports back on success."""

    data_count: int
    provider_handle: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


BatchProcessor = Callable[[Batch[T]], Awaitable[BatchResult]]
FatalPredicate = Callable[[Batch[Any], BaseException], bool]


def chunk_items(items: Sequence[T], batch_size: int) -> List[Batch[T]]:
    """Consecutive chunks of ``batch_size``; the last one may be smaller. Indexes start at 1."""

    if batch_size <= 0:
        raise ValueError(f"batch_size must be positive, got {batch_size}")
    return [
        Batch(index=position // batch_size + 1, items=list(items[position : position + batch_size]))
        for position in range(0, len(items), batch_size)
    ]


async def _run_one(
    batch: Batch[T],
    process: BatchProcessor[T],
    is_fatal: Optional[FatalPredicate],
) -> BatchOutcome:
    try:
        result = await process(batch)
    except Exception as exc:  # noqa: BLE001
        if is_fatal is not None and is_fatal(batch, exc):
            raise
        return BatchOutcome(
            index=batch.index,
            item_count=len(batch.items),
            status="error",
            data_count=0,
            error=failure_message(exc),
            error_kind=error_kind(exc),
        )
    return BatchOutcome(
        index=batch.index,
        item_count=len(batch.items),
        status="success",
        data_count=result.data_count,
        provider_handle=result.provider_handle,
        details=dict(result.details),
    )


async def run_batches(
    items: Sequence[T],
    batch_size: int,
    process: BatchProcessor[T],
    *,
    concurrency: int = 1,
    is_fatal: Optional[FatalPredicate] = None,
) -> List[BatchOutcome]:
    """Drive every batch through ``process`` and return outcomes in batch order.

    Batches run one at a time unless ``concurrency`` > 1, in which case at most
    that many are in flight. A failing batch is recorded with zero records and
    the rest continue, unless ``is_fatal`` says the failure should end the run;
    then batches still queued or in flight are cancelled before the error propagates.
    """

    batches = chunk_items(items, batch_size)
    if concurrency <= 1:
        outcomes: List[BatchOutcome] = []
        for batch in batches:
            outcomes.append(await _run_one(batch, process, is_fatal))
        return outcomes

    semaphore = asyncio.Semaphore(concurrency)
    fatal_seen = False

    async def _bounded(batch: Batch[T]) -> BatchOutcome:
        nonlocal fatal_seen
        async with semaphore:
            if fatal_seen:
                # Woken by the fatal batch releasing its slot; never start.
                raise asyncio.CancelledError()
            try:
                return await _run_one(batch, process, is_fatal)
            except Exception:
                fatal_seen = True
                raise

    tasks = [asyncio.ensure_future(_bounded(batch)) for batch in batches]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


__all__ = [
    "Batch",
    "BatchOutcome",
    "BatchResult",
    "chunk_items",
    "run_batches",
]
