"""
Sync Queue.

Ordered, retrying delivery of change events. Operations on the same
record (table, id) are applied strictly one after another in enqueue
order; different records are processed concurrently by a bounded pool of
workers.
"""

import asyncio
import logging
from collections import deque
from datetime import timedelta
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set, Tuple

from clinisync.sync.models import (
    ChangeEvent,
    ConflictResolution,
    OperationState,
    SyncOperation,
    utc_now,
)
from clinisync.utils.retry import RetryConfig, RetryExecutor, RetryStrategy

logger = logging.getLogger(__name__)

Key = Tuple[str, str]
OperationHandler = Callable[[SyncOperation], Awaitable[Any]]
OperationCallback = Callable[[SyncOperation], Awaitable[None]]


class SyncQueue:
    """
    Per-record FIFO queue with retry and parking.

    Features:
    - One in-flight operation per record key
    - Failed operations retried after ``base_delay * attempt_count``
    - Operations that fail ``max_attempts`` times are parked, never dropped
    - Bounded history of applied operations

    All state is owned by the event loop; methods must be called from it.
    """

    def __init__(
        self,
        handler: OperationHandler,
        workers: int = 4,
        max_attempts: int = 3,
        base_delay: float = 5.0,
        history_size: int = 500,
        on_applied: Optional[OperationCallback] = None,
        on_failed: Optional[OperationCallback] = None,
        on_parked: Optional[OperationCallback] = None
    ):
        if workers < 1:
            raise ValueError("workers must be at least 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self._handler = handler
        self.worker_count = workers
        self.max_attempts = max_attempts
        self._backoff = RetryExecutor(RetryConfig(
            max_attempts=max_attempts,
            base_delay=base_delay,
            strategy=RetryStrategy.LINEAR,
            label="sync queue",
        ))
        self._on_applied = on_applied
        self._on_failed = on_failed
        self._on_parked = on_parked

        self._pending: Dict[Key, Deque[SyncOperation]] = {}
        self._active_keys: Set[Key] = set()
        self._scheduled: Set[Key] = set()
        self._timers: Dict[Key, asyncio.TimerHandle] = {}
        self._parked: Dict[str, SyncOperation] = {}
        self._history: Deque[SyncOperation] = deque(maxlen=history_size)
        self._ready: Optional[asyncio.Queue] = None
        self._workers: List[asyncio.Task] = []
        self._accepting = False
        self._idle = asyncio.Event()
        self._idle.set()
        self._stats = {
            "total": 0,
            "applied": 0,
            "failed": 0,
            "parked": 0,
        }

    @property
    def running(self) -> bool:
        return self._accepting

    def enqueue(self, event: ChangeEvent, resolution: Optional[ConflictResolution] = None) -> SyncOperation:
        """
        Queue a change event behind any earlier work on the same record.

        A confirmed ``resolution`` rides along with an event keyed on the
        same record, so that it is written in order with captured changes.
        """
        operation = SyncOperation(event=event, resolution=resolution)
        key = operation.key
        self._pending.setdefault(key, deque()).append(operation)
        self._stats["total"] += 1
        self._idle.clear()

        if self._accepting:
            self._schedule(key)

        logger.debug(f"Enqueued {event.kind.value} {key[0]}/{key[1]} from {event.source_store.value}")
        return operation

    async def start(self) -> None:
        """Start the worker pool and schedule everything already pending."""
        if self._accepting:
            return

        self._ready = asyncio.Queue()
        self._scheduled.clear()
        self._accepting = True
        for n in range(self.worker_count):
            self._workers.append(asyncio.create_task(self._worker(n), name=f"sync-worker-{n}"))

        for key in list(self._pending.keys()):
            self._schedule(key)

        logger.info(f"Sync queue started with {self.worker_count} workers")

    async def stop(self, grace_period: float = 10.0) -> None:
        """
        Stop handing out work and let in-flight operations finish.

        Operations still running after ``grace_period`` seconds are
        cancelled and stay pending.
        """
        self._accepting = False
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()

        deadline = asyncio.get_running_loop().time() + grace_period
        while self._active_keys and asyncio.get_running_loop().time() < deadline:
            await asyncio.sleep(0.05)

        for task in self._workers:
            task.cancel()
        for task in self._workers:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._workers.clear()
        self._scheduled.clear()
        logger.info(f"Sync queue stopped ({self.pending_count} operations still pending)")

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until no operation is pending or processing.

        Returns:
            True if the queue drained before the timeout
        """
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    def _schedule(self, key: Key) -> None:
        if key in self._scheduled or key in self._active_keys or key in self._timers:
            return
        operations = self._pending.get(key)
        if not operations or self._ready is None:
            return
        self._scheduled.add(key)
        self._ready.put_nowait(key)

    def _timer_fired(self, key: Key) -> None:
        self._timers.pop(key, None)
        if self._accepting:
            self._schedule(key)

    async def _worker(self, number: int) -> None:
        while True:
            key = await self._ready.get()
            self._scheduled.discard(key)
            if not self._accepting:
                continue

            operations = self._pending.get(key)
            if not operations:
                continue

            operation = operations[0]
            self._active_keys.add(key)
            try:
                await self._process(operation)
            finally:
                self._active_keys.discard(key)

            self._settle(key)

    async def _process(self, operation: SyncOperation) -> None:
        operation.transition(OperationState.PROCESSING)
        operation.not_before = None
        try:
            await self._handler(operation)
        except asyncio.CancelledError:
            operation.transition(OperationState.FAILED)
            operation.last_error = "cancelled during shutdown"
            operation.transition(OperationState.PENDING)
            raise
        except Exception as e:
            await self._fail(operation, e)
            return

        operation.transition(OperationState.APPLIED)
        self._pending[operation.key].popleft()
        self._history.append(operation)
        self._stats["applied"] += 1
        await self._notify(self._on_applied, operation)

    async def _fail(self, operation: SyncOperation, error: Exception) -> None:
        operation.attempt_count += 1
        operation.last_error = f"{type(error).__name__}: {error}"
        operation.transition(OperationState.FAILED)
        self._stats["failed"] += 1
        logger.warning(
            f"Operation {operation.id} on {operation.key[0]}/{operation.key[1]} failed "
            f"(attempt {operation.attempt_count}/{self.max_attempts}): {error}"
        )

        if operation.attempt_count >= self.max_attempts:
            operation.transition(OperationState.PARKED)
            self._pending[operation.key].popleft()
            self._parked[operation.id] = operation
            self._stats["parked"] += 1
            logger.error(f"Operation {operation.id} parked after {operation.attempt_count} attempts")
            await self._notify(self._on_parked, operation)
            return

        delay = self._backoff.calculate_delay(operation.attempt_count)
        operation.transition(OperationState.PENDING)
        operation.not_before = utc_now() + timedelta(seconds=delay)
        await self._notify(self._on_failed, operation)
        if self._accepting:
            self._timers[operation.key] = asyncio.get_running_loop().call_later(
                delay, self._timer_fired, operation.key
            )

    def _settle(self, key: Key) -> None:
        operations = self._pending.get(key)
        if not operations:
            self._pending.pop(key, None)
        elif self._accepting:
            self._schedule(key)

        if not self._pending and not self._active_keys:
            self._idle.set()

    async def _notify(self, callback: Optional[OperationCallback], operation: SyncOperation) -> None:
        if callback is None:
            return
        try:
            await callback(operation)
        except Exception as e:
            logger.error(f"Queue callback failed for operation {operation.id}: {e}")

    def requeue_parked(self, operation_id: str) -> Optional[SyncOperation]:
        """Give a parked operation's event a fresh set of attempts."""
        parked = self._parked.pop(operation_id, None)
        if parked is None:
            return None
        logger.info(f"Requeueing parked operation {operation_id}")
        return self.enqueue(parked.event, resolution=parked.resolution)

    @property
    def pending_count(self) -> int:
        return sum(len(ops) for ops in self._pending.values())

    def get_pending(self) -> List[SyncOperation]:
        return [op for ops in self._pending.values() for op in ops]

    def get_parked(self) -> List[SyncOperation]:
        return sorted(self._parked.values(), key=lambda op: op.enqueued_at)

    def get_history(self, limit: int = 100) -> List[SyncOperation]:
        return list(self._history)[-limit:]

    def get_stats(self) -> Dict[str, Any]:
        """Counters since start plus current queue sizes."""
        return {
            **self._stats,
            "pending": self.pending_count - len(self._active_keys),
            "processing": len(self._active_keys),
            "parked_now": len(self._parked),
            "workers": len(self._workers),
            "running": self._accepting,
        }
