"""Async Batch Executor - bounded fan-out of pipeline calls.

WHY
───
Adapters routinely need hundreds of independent calls (fetch 500 issues,
upsert 10k vectors in chunks of 100). Each call is its own logical operation
with its own retries; an ``asyncio.Semaphore`` bounds how many are in flight
so the pool and the rate limiter see a steady, bounded load.

ARCHITECTURE
────────────
::

    BatchExecutor(pipeline)
      ├── .add(key, descriptor, payload)   ─ enqueue item (fluent)
      ├── .run_all(...)                    ─ execute queued items
      └── .execute_batch(items, concurrency_limit, chunk_size, fail_fast)
             │
             ├── one task per item             (chunk_size=None)
             └── one task per chunk of items   (chunk_size=N, build_chunk)
                   each item shares its chunk's outcome

    BatchResult
      ├── successes: key → response
      ├── failures:  key → BulwarkError
      └── cancelled: keys never completed (fail_fast)

One item's failure never affects its siblings unless ``fail_fast=True``, in
which case the first failure cancels every unfinished sibling.

Related modules:
    pipeline.py - RequestPipeline.execute is the per-item work

Example::

    batch = BatchExecutor(pipeline, max_concurrency=20)
    for key in issue_keys:
        batch.add(key, OperationDescriptor("issue.get"), {"key": key})
    result = await batch.run_all()
    print(result.succeeded, result.failed)
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from bulwark.core.errors import BulwarkError, classify_exception
from bulwark.core.logging import LogContext, get_logger
from bulwark.core.models import OperationDescriptor

logger = get_logger(__name__)

ExecuteFn = Callable[[OperationDescriptor, Any], Awaitable[Any]]
ChunkBuilder = Callable[[Sequence["BatchItem"]], tuple[OperationDescriptor, Any]]


@dataclass(frozen=True)
class BatchItem:
    """A single keyed operation in a batch."""

    key: str
    descriptor: OperationDescriptor
    payload: Any = None


@dataclass
class BatchResult:
    """Aggregate outcome of a batch, keyed by item key."""

    batch_id: str
    successes: dict[str, Any] = field(default_factory=dict)
    failures: dict[str, BulwarkError] = field(default_factory=dict)
    cancelled: list[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None

    @property
    def succeeded(self) -> int:
        return len(self.successes)

    @property
    def failed(self) -> int:
        return len(self.failures)

    @property
    def total(self) -> int:
        return len(self.successes) + len(self.failures) + len(self.cancelled)

    @property
    def duration_seconds(self) -> float | None:
        """Wall-clock duration of the entire batch."""
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        """Serialise for logging."""
        return {
            "batch_id": self.batch_id,
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "cancelled": list(self.cancelled),
            "duration_seconds": self.duration_seconds,
            "failures": {key: err.to_dict() for key, err in self.failures.items()},
        }


def chunked(items: Sequence[BatchItem], size: int) -> list[list[BatchItem]]:
    """Split ``items`` into consecutive chunks of at most ``size``."""
    if size < 1:
        raise ValueError(f"chunk_size must be at least 1, got {size}")
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


@dataclass
class _Unit:
    """One task's worth of work: a single item or a chunk of items."""

    keys: list[str]
    descriptor: OperationDescriptor
    payload: Any


class BatchExecutor:
    """Semaphore-bounded concurrent executor for keyed operations.

    Parameters
    ----------
    pipeline : RequestPipeline, optional
        Its ``execute`` is the per-item work.
    execute : callable, optional
        Alternative ``async (descriptor, payload) -> result``; used when no
        pipeline is given.
    max_concurrency : int
        Default concurrency limit (10).
    """

    def __init__(
        self,
        pipeline: Any | None = None,
        *,
        execute: ExecuteFn | None = None,
        max_concurrency: int = 10,
    ) -> None:
        if pipeline is None and execute is None:
            raise ValueError("BatchExecutor needs a pipeline or an execute function")
        self._execute: ExecuteFn = execute or pipeline.execute
        self._max_concurrency = max_concurrency
        self._items: list[BatchItem] = []

    # ── Building ─────────────────────────────────────────────────────

    def add(self, key: str, descriptor: OperationDescriptor, payload: Any = None) -> BatchExecutor:
        """Queue an item; returns ``self`` for fluent chaining."""
        self._items.append(BatchItem(key=key, descriptor=descriptor, payload=payload))
        return self

    @property
    def item_count(self) -> int:
        """Number of items queued."""
        return len(self._items)

    async def run_all(self, **kwargs: Any) -> BatchResult:
        """Execute the queued items; keyword arguments go to ``execute_batch``."""
        items, self._items = self._items, []
        return await self.execute_batch(items, **kwargs)

    # ── Execution ────────────────────────────────────────────────────

    def _units(
        self,
        items: list[BatchItem],
        chunk_size: int | None,
        build_chunk: ChunkBuilder | None,
    ) -> list[_Unit]:
        if chunk_size is None:
            return [_Unit([item.key], item.descriptor, item.payload) for item in items]
        if build_chunk is None:
            raise ValueError("chunk_size requires a build_chunk function")
        units = []
        for chunk in chunked(items, chunk_size):
            descriptor, payload = build_chunk(chunk)
            units.append(_Unit([item.key for item in chunk], descriptor, payload))
        return units

    async def execute_batch(
        self,
        items: Iterable[BatchItem],
        concurrency_limit: int | None = None,
        chunk_size: int | None = None,
        fail_fast: bool = False,
        build_chunk: ChunkBuilder | None = None,
    ) -> BatchResult:
        """Run every item concurrently, at most ``concurrency_limit`` at a time.

        Args:
            items: Keyed operations; keys must be unique
            concurrency_limit: In-flight bound (default: ``max_concurrency``)
            chunk_size: Group items into chunks of this size
            fail_fast: Cancel unfinished siblings on the first failure
            build_chunk: ``chunk -> (descriptor, payload)`` for one
                multi-item request; required with ``chunk_size``

        Returns:
            :class:`BatchResult` keyed by item key.
        """
        items = list(items)
        keys = [item.key for item in items]
        if len(set(keys)) != len(keys):
            raise ValueError("Batch item keys must be unique")

        limit = self._max_concurrency if concurrency_limit is None else concurrency_limit
        if limit < 1:
            raise ValueError(f"concurrency_limit must be at least 1, got {limit}")

        units = self._units(items, chunk_size, build_chunk)
        result = BatchResult(batch_id=str(uuid.uuid4()))
        sem = asyncio.Semaphore(limit)

        async def _run_one(unit: _Unit) -> Any:
            async with sem:
                return await self._execute(unit.descriptor, unit.payload)

        with LogContext(batch_id=result.batch_id):
            logger.info(
                "async_batch.start",
                items=len(items),
                tasks=len(units),
                concurrency_limit=limit,
                fail_fast=fail_fast,
            )

            tasks = {asyncio.create_task(_run_one(unit)): unit for unit in units}
            try:
                if fail_fast:
                    await self._wait_fail_fast(set(tasks))
                elif tasks:
                    await asyncio.wait(tasks)
            finally:
                unfinished = [t for t in tasks if not t.done()]
                for task in unfinished:
                    task.cancel()
                if unfinished:
                    await asyncio.gather(*unfinished, return_exceptions=True)

            for task, unit in tasks.items():
                self._collect(task, unit, result)

            result.completed_at = datetime.now(UTC)
            logger.info(
                "async_batch.complete",
                succeeded=result.succeeded,
                failed=result.failed,
                cancelled=len(result.cancelled),
                duration_seconds=result.duration_seconds,
            )

        return result

    async def _wait_fail_fast(self, pending: set[asyncio.Task[Any]]) -> None:
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_EXCEPTION)
            if any(not t.cancelled() and t.exception() is not None for t in done):
                for task in pending:
                    task.cancel()
                if pending:
                    await asyncio.gather(*pending, return_exceptions=True)
                logger.warning("async_batch.fail_fast", cancelled=len(pending))
                return

    def _collect(self, task: asyncio.Task[Any], unit: _Unit, result: BatchResult) -> None:
        if task.cancelled():
            result.cancelled.extend(unit.keys)
            return
        exc = task.exception()
        if exc is None:
            value = task.result()
            for key in unit.keys:
                result.successes[key] = value
            return
        error = classify_exception(exc)
        logger.warning(
            "async_batch.item_failed",
            keys=unit.keys,
            operation=unit.descriptor.name,
            error=error.kind.value,
        )
        for key in unit.keys:
            result.failures[key] = error


__all__ = [
    "BatchItem",
    "BatchResult",
    "BatchExecutor",
    "chunked",
]
