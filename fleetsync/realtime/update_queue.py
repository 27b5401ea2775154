"""
Priority/batching update queue.

Incoming updates either join the open batch for their batch key (flushed on
size or age, whichever comes first) or go to the main priority queue
(highest priority first, FIFO among equals). A dispatcher drains the main
queue with bounded concurrency; a batch worker runs flushed batches FIFO.

Failures go down one retry path: retry_count is incremented while it stays
<= max_retries and the update is re-queued after
min(retry_base * 2^(retry_count-1), retry_cap); otherwise it is dropped and
total_failed goes up by exactly one.
"""

from __future__ import annotations

import asyncio
import heapq
import inspect
import itertools
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Mapping, Optional, assert_never

from fleetsync.config.configs import UpdateQueueConfig
from fleetsync.core.bus import EventBus
from fleetsync.core.clock import Millis, now_ms
from fleetsync.core.scheduler import TaskScheduler
from fleetsync.errors.errors import (
    BatchProcessorError,
    ComponentDestroyedError,
    ConfigurationError,
    QueueProcessingError,
)
from fleetsync.types.topics import (
    INBOUND_TOPICS,
    T_CONNECTION_APPLIED,
    T_POLLING_APPLIED,
    T_POSITIONS_BATCH,
    T_VEHICLES_BATCH,
)
from fleetsync.types.types import Priority

logger = logging.getLogger(__name__)


class UpdateKind(str, Enum):
    VEHICLE = "vehicle"
    POSITION = "position"
    CONNECTION = "connection"
    POLLING = "polling"
    CUSTOM = "custom"


class BatchStatus(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class QueuedUpdate:
    id: str
    kind: UpdateKind
    priority: Priority
    payload: Any
    source: str
    timestamp: Millis
    max_retries: int
    retry_count: int = 0
    process_after: Optional[float] = None  # monotonic, set while waiting for a retry
    batch_key: Optional[str] = None


Executor = Callable[[QueuedUpdate], Optional[Awaitable[None]]]
BatchProcessor = Callable[[list[QueuedUpdate]], Optional[Awaitable[None]]]


@dataclass
class BatchConfig:
    batch_key: str
    max_batch_size: int
    max_wait_s: float
    processor: BatchProcessor


@dataclass
class Batch:
    batch_key: str
    opened_at: float  # monotonic
    scheduled_at: float  # monotonic deadline for the age trigger
    updates: list[QueuedUpdate] = field(default_factory=list)
    status: BatchStatus = BatchStatus.PENDING
    id: str = field(default_factory=lambda: f"batch_{uuid.uuid4().hex[:12]}")


@dataclass
class QueueStats:
    total_enqueued: int = 0
    total_processed: int = 0
    total_failed: int = 0
    total_retried: int = 0
    total_cancelled: int = 0
    batches_processed: int = 0
    batches_failed: int = 0
    current_queue_size: int = 0
    retry_queue_size: int = 0
    in_flight: int = 0
    active_batches: int = 0
    average_processing_time_ms: float = 0.0
    processing_rate: float = 0.0  # processed updates per second since creation


def retry_delay(retry_count: int, base_s: float, cap_s: float) -> float:
    """Backoff before retry number retry_count (>= 1)."""
    return min(base_s * (2 ** (retry_count - 1)), cap_s)


def consolidated_topic(kind: UpdateKind) -> Optional[str]:
    """Bus topic an update of this kind is republished on; None for CUSTOM."""
    match kind:
        case UpdateKind.VEHICLE:
            return T_VEHICLES_BATCH
        case UpdateKind.POSITION:
            return T_POSITIONS_BATCH
        case UpdateKind.CONNECTION:
            return T_CONNECTION_APPLIED
        case UpdateKind.POLLING:
            return T_POLLING_APPLIED
        case UpdateKind.CUSTOM:
            return None
        case _:
            assert_never(kind)


class UpdateQueue:
    """
    Usage:
        queue = UpdateQueue(UpdateQueueConfig(), bus)
        queue.enqueue(UpdateKind.POSITION, [pos], priority=Priority.HIGH,
                      batch_key="position_updates")

    The default executor and the default batch processors publish consolidated
    events on the bus. Pass executor= to run updates somewhere else.
    """

    def __init__(
        self,
        config: Optional[UpdateQueueConfig] = None,
        bus: Optional[EventBus] = None,
        *,
        executor: Optional[Executor] = None,
        name: str = "update_queue",
    ) -> None:
        self._config = config or UpdateQueueConfig()
        if bus is None and executor is None:
            raise ConfigurationError(
                "UpdateQueue needs a bus or an executor", field="executor", component=name
            )
        self._bus = bus
        self._executor: Executor = executor or self._publish_update
        self._name = name
        self._destroyed = False

        self._scheduler = TaskScheduler(name)
        self._seq = itertools.count(1)
        self._heap: list[tuple[int, int, QueuedUpdate]] = []
        self._retry: dict[str, QueuedUpdate] = {}
        self._open_batches: dict[str, Batch] = {}
        self._ready_batches: Deque[Batch] = deque()
        self._batch_configs: dict[str, BatchConfig] = {}
        for settings in self._config.batches:
            self.configure_batch(settings.batch_key, settings.max_batch_size, settings.max_wait_s)

        self._slots = asyncio.Semaphore(self._config.concurrency)
        self._wakeup = asyncio.Event()
        self._batch_wakeup = asyncio.Event()
        self._batch_running = False
        self._workers_started = False
        self._paused = self._config.start_paused

        self._stats = QueueStats()
        self._durations_ms: Deque[float] = deque(maxlen=100)
        self._created_mono = time.monotonic()

    # --- helpers ---

    def _check_alive(self, operation: str) -> None:
        if self._destroyed:
            raise ComponentDestroyedError("UpdateQueue", operation)

    def _ensure_workers(self) -> None:
        if self._workers_started:
            return
        self._workers_started = True
        self._scheduler.spawn(self._dispatch_loop(), name=f"{self._name}_dispatch")
        self._scheduler.spawn(self._batch_loop(), name=f"{self._name}_batches")

    def _push(self, update: QueuedUpdate) -> None:
        # a fresh seq on every (re)insertion keeps FIFO among equal priorities
        heapq.heappush(self._heap, (-int(update.priority), next(self._seq), update))
        self._wakeup.set()

    def _record_success(self, count: int, started: float) -> None:
        self._stats.total_processed += count
        self._durations_ms.append((time.monotonic() - started) * 1000)

    # --- Batch configuration ---

    def _default_processor(self, batch_key: str) -> BatchProcessor:
        defaults: dict[str, BatchProcessor] = {
            "vehicle_updates": self._process_vehicle_batch,
            "position_updates": self._process_position_batch,
            "connection_status": self._process_latest_status,
        }
        return defaults.get(batch_key, self._process_each)

    def configure_batch(
        self,
        batch_key: str,
        max_batch_size: int,
        max_wait_s: float,
        processor: Optional[BatchProcessor] = None,
    ) -> None:
        """Add or replace the flush triggers and processor for a batch key."""
        self._check_alive("configure_batch")
        if not batch_key:
            raise ConfigurationError("batch_key must not be empty", field="batch_key")
        if max_batch_size <= 0:
            raise ConfigurationError(
                "max_batch_size must be positive", field="max_batch_size", value=max_batch_size
            )
        if max_wait_s <= 0:
            raise ConfigurationError(
                "max_wait_s must be positive", field="max_wait_s", value=max_wait_s
            )
        self._batch_configs[batch_key] = BatchConfig(
            batch_key=batch_key,
            max_batch_size=max_batch_size,
            max_wait_s=max_wait_s,
            processor=processor or self._default_processor(batch_key),
        )

    def remove_batch_configuration(self, batch_key: str) -> bool:
        """Stop batching a key. An open batch for it is flushed, not dropped."""
        self._check_alive("remove_batch_configuration")
        if batch_key in self._open_batches:
            self._flush_batch(batch_key, "removed")
        return self._batch_configs.pop(batch_key, None) is not None

    # --- Enqueue ---

    def enqueue(
        self,
        kind: UpdateKind | str,
        payload: Any,
        *,
        priority: Priority | int | str = Priority.NORMAL,
        source: str = "unknown",
        max_retries: Optional[int] = None,
        batch_key: Optional[str] = None,
    ) -> str:
        """Queue one update and return its id. Must be called from the event loop."""
        self._check_alive("enqueue")
        kind = UpdateKind(kind)
        if kind is UpdateKind.CUSTOM and not (
            isinstance(payload, Mapping) and payload.get("event_type")
        ):
            raise ValueError("custom updates need a payload with an 'event_type'")
        if kind is UpdateKind.CUSTOM and payload["event_type"] in INBOUND_TOPICS:
            raise ValueError(f"event_type must not be an inbound topic: {payload['event_type']!r}")
        retries = self._config.max_retries if max_retries is None else max_retries
        if retries < 0:
            raise ValueError("max_retries must be non-negative")

        update = QueuedUpdate(
            id=f"upd_{uuid.uuid4().hex[:12]}",
            kind=kind,
            priority=Priority.coerce(priority),
            payload=payload,
            source=source,
            timestamp=now_ms(),
            max_retries=retries,
            batch_key=batch_key,
        )
        self._stats.total_enqueued += 1
        self._ensure_workers()

        if batch_key is not None:
            cfg = self._batch_configs.get(batch_key)
            if cfg is not None:
                self._add_to_batch(cfg, update)
                return update.id
            logger.debug(f"[{self._name}] No batch config for {batch_key!r}, using main queue")

        self._push(update)
        return update.id

    # --- Batching ---

    def _add_to_batch(self, cfg: BatchConfig, update: QueuedUpdate) -> None:
        batch = self._open_batches.get(cfg.batch_key)
        if batch is None:
            opened = time.monotonic()
            batch = Batch(
                batch_key=cfg.batch_key, opened_at=opened, scheduled_at=opened + cfg.max_wait_s
            )
            self._open_batches[cfg.batch_key] = batch
            self._scheduler.call_later(
                cfg.max_wait_s,
                lambda key=cfg.batch_key: self._flush_batch(key, "age"),
                key=f"batch:{cfg.batch_key}",
            )
        batch.updates.append(update)
        if len(batch.updates) >= cfg.max_batch_size:
            self._flush_batch(cfg.batch_key, "size")

    def _flush_batch(self, batch_key: str, reason: str) -> None:
        batch = self._open_batches.pop(batch_key, None)
        if batch is None:
            return
        self._scheduler.cancel(f"batch:{batch_key}")
        logger.debug(
            f"[{self._name}] Flushing batch {batch_key!r} ({len(batch.updates)} updates, {reason})"
        )
        self._ready_batches.append(batch)
        self._batch_wakeup.set()

    def flush_all(self) -> int:
        """Flush every open batch now. Returns the number flushed."""
        self._check_alive("flush_all")
        keys = list(self._open_batches)
        for key in keys:
            self._flush_batch(key, "manual")
        return len(keys)

    # --- Workers ---

    async def _dispatch_loop(self) -> None:
        while True:
            if self._paused or not self._heap:
                self._wakeup.clear()
                await self._wakeup.wait()
                continue
            await self._slots.acquire()
            if self._paused or not self._heap:
                self._slots.release()
                continue
            _, _, update = heapq.heappop(self._heap)
            self._stats.in_flight += 1
            task = self._scheduler.spawn(
                self._run_update(update), name=f"{self._name}:{update.id}"
            )
            task.add_done_callback(self._settle_update)

    async def _run_update(self, update: QueuedUpdate) -> None:
        started = time.monotonic()
        try:
            result = self._executor(update)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self._handle_failure(update, e)
        else:
            self._record_success(1, started)

    def _settle_update(self, task: asyncio.Task[None]) -> None:
        # runs even when the task was cancelled before its first step
        if task.cancelled():
            self._stats.total_cancelled += 1
        self._stats.in_flight -= 1
        self._slots.release()

    async def _batch_loop(self) -> None:
        while True:
            if self._paused or not self._ready_batches:
                self._batch_wakeup.clear()
                await self._batch_wakeup.wait()
                continue
            await self._run_batch(self._ready_batches.popleft())

    async def _run_batch(self, batch: Batch) -> None:
        cfg = self._batch_configs.get(batch.batch_key)
        processor = cfg.processor if cfg is not None else self._process_each
        updates = list(batch.updates)
        batch.status = BatchStatus.EXECUTING
        started = time.monotonic()
        self._batch_running = True
        try:
            result = processor(updates)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            self._stats.total_cancelled += len(updates)
            raise
        except Exception as e:
            batch.status = BatchStatus.FAILED
            self._stats.batches_failed += 1
            err = BatchProcessorError(
                f"Batch processor failed: {e}",
                batch_key=batch.batch_key,
                size=len(updates),
                component=self._name,
            )
            logger.error(f"[{self._name}] {err}")
            for update in updates:
                self._handle_failure(update, err)
        else:
            batch.status = BatchStatus.COMPLETED
            self._stats.batches_processed += 1
            self._record_success(len(updates), started)
        finally:
            self._batch_running = False

    # --- Retry path ---

    def _handle_failure(self, update: QueuedUpdate, exc: Exception) -> None:
        if update.retry_count + 1 > update.max_retries:
            self._stats.total_failed += 1
            err = QueueProcessingError(
                f"Update permanently failed after {update.retry_count + 1} attempts: {exc}",
                update_id=update.id,
                retry_count=update.retry_count,
                component=self._name,
                details={"kind": update.kind.value},
            )
            logger.error(f"[{self._name}] {err}")
            return

        update.retry_count += 1
        self._stats.total_retried += 1
        delay = retry_delay(
            update.retry_count, self._config.retry_base_delay_s, self._config.retry_max_delay_s
        )
        update.process_after = time.monotonic() + delay
        self._retry[update.id] = update
        logger.warning(
            f"[{self._name}] Update {update.id} failed ({exc}); "
            f"retry {update.retry_count}/{update.max_retries} in {delay:.2f}s"
        )
        if self._destroyed:
            return
        self._scheduler.call_later(
            delay, lambda u=update: self._promote(u), key=f"retry:{update.id}"
        )

    def _promote(self, update: QueuedUpdate) -> None:
        if self._retry.pop(update.id, None) is None:
            return
        update.process_after = None
        self._push(update)

    # --- Default executor and processors ---

    async def _emit(self, topic: str, payload: Any, priority: Priority) -> None:
        if self._bus is None:
            raise ConfigurationError("No bus to publish on", component=self._name)
        await self._bus.emit(topic, payload, source=self._name, priority=priority)

    async def _publish_update(self, update: QueuedUpdate) -> None:
        match update.kind:
            case UpdateKind.VEHICLE:
                await self._emit(
                    T_VEHICLES_BATCH,
                    {"vehicles": list(update.payload), "count": 1},
                    update.priority,
                )
            case UpdateKind.POSITION:
                await self._emit(
                    T_POSITIONS_BATCH,
                    {"positions": list(update.payload), "count": 1},
                    update.priority,
                )
            case UpdateKind.CONNECTION:
                await self._emit(T_CONNECTION_APPLIED, {"status": update.payload}, update.priority)
            case UpdateKind.POLLING:
                await self._emit(T_POLLING_APPLIED, {"status": update.payload}, update.priority)
            case UpdateKind.CUSTOM:
                await self._emit(
                    update.payload["event_type"], update.payload.get("event_data"), update.priority
                )
            case _:
                assert_never(update.kind)

    async def _process_vehicle_batch(self, updates: list[QueuedUpdate]) -> None:
        # each update carries the full fleet list; the newest wins
        await self._emit(
            T_VEHICLES_BATCH,
            {"vehicles": list(updates[-1].payload), "count": len(updates)},
            max(u.priority for u in updates),
        )

    async def _process_position_batch(self, updates: list[QueuedUpdate]) -> None:
        positions = [p for u in updates for p in u.payload]
        await self._emit(
            T_POSITIONS_BATCH,
            {"positions": positions, "count": len(updates)},
            max(u.priority for u in updates),
        )

    async def _process_latest_status(self, updates: list[QueuedUpdate]) -> None:
        latest = updates[-1]
        topic = consolidated_topic(latest.kind)
        if topic is None:
            await self._process_each(updates)
            return
        await self._emit(topic, {"status": latest.payload}, latest.priority)

    async def _process_each(self, updates: list[QueuedUpdate]) -> None:
        for update in updates:
            result = self._executor(update)
            if inspect.isawaitable(result):
                await result

    # --- Control ---

    @property
    def is_paused(self) -> bool:
        return self._paused

    def pause(self) -> None:
        """Stop dispatching. Enqueues, batching and retry timers keep running."""
        self._check_alive("pause")
        self._paused = True

    def resume(self) -> None:
        self._check_alive("resume")
        self._paused = False
        self._wakeup.set()
        self._batch_wakeup.set()

    def clear(self) -> int:
        """Discard everything not yet executing. Each discarded update counts as cancelled."""
        self._check_alive("clear")
        dropped = len(self._heap) + len(self._retry)
        dropped += sum(len(b.updates) for b in self._open_batches.values())
        dropped += sum(len(b.updates) for b in self._ready_batches)

        self._heap.clear()
        for update_id in self._retry:
            self._scheduler.cancel(f"retry:{update_id}")
        self._retry.clear()
        for key in self._open_batches:
            self._scheduler.cancel(f"batch:{key}")
        self._open_batches.clear()
        self._ready_batches.clear()

        self._stats.total_cancelled += dropped
        if dropped:
            logger.info(f"[{self._name}] Cleared {dropped} pending updates")
        return dropped

    def destroy(self) -> None:
        """Cancel all timers and workers. Further calls raise ComponentDestroyedError."""
        if self._destroyed:
            return
        self.clear()
        self._destroyed = True
        # in-flight tasks are counted as cancelled by _settle_update
        self._scheduler.close()
        logger.info(f"[{self._name}] Destroyed")

    async def wait_idle(self, timeout_s: float = 5.0, poll_s: float = 0.005) -> None:
        """Wait until nothing is queued, batched, retrying or executing."""

        async def _poll() -> None:
            while not self._is_idle():
                await asyncio.sleep(poll_s)

        await asyncio.wait_for(_poll(), timeout=timeout_s)

    def _is_idle(self) -> bool:
        return not (
            self._heap
            or self._retry
            or self._open_batches
            or self._ready_batches
            or self._batch_running
            or self._stats.in_flight
        )

    # --- Diagnostics ---

    def get_stats(self) -> QueueStats:
        self._check_alive("get_stats")
        s = self._stats
        elapsed = max(time.monotonic() - self._created_mono, 1e-9)
        avg = sum(self._durations_ms) / len(self._durations_ms) if self._durations_ms else 0.0
        return QueueStats(
            total_enqueued=s.total_enqueued,
            total_processed=s.total_processed,
            total_failed=s.total_failed,
            total_retried=s.total_retried,
            total_cancelled=s.total_cancelled,
            batches_processed=s.batches_processed,
            batches_failed=s.batches_failed,
            current_queue_size=len(self._heap),
            retry_queue_size=len(self._retry),
            in_flight=s.in_flight,
            active_batches=len(self._open_batches) + len(self._ready_batches),
            average_processing_time_ms=avg,
            processing_rate=s.total_processed / elapsed,
        )

    def pending_order(self) -> list[QueuedUpdate]:
        """Main-queue updates in the order they will be dispatched."""
        self._check_alive("pending_order")
        return [entry[2] for entry in sorted(self._heap)]

    def get_queue_info(self) -> dict[str, Any]:
        self._check_alive("get_queue_info")
        now = time.monotonic()
        return {
            "paused": self._paused,
            "main": [
                {
                    "id": u.id,
                    "kind": u.kind.value,
                    "priority": u.priority.name,
                    "retry_count": u.retry_count,
                }
                for u in self.pending_order()
            ],
            "retry": [
                {
                    "id": u.id,
                    "retry_count": u.retry_count,
                    "due_in_s": max(0.0, (u.process_after or now) - now),
                }
                for u in self._retry.values()
            ],
            "batches": {
                key: {
                    "size": len(b.updates),
                    "age_s": now - b.opened_at,
                    "status": b.status.value,
                }
                for key, b in self._open_batches.items()
            },
            "ready_batches": len(self._ready_batches),
            "in_flight": self._stats.in_flight,
            "batch_configs": {
                key: {"max_batch_size": c.max_batch_size, "max_wait_s": c.max_wait_s}
                for key, c in self._batch_configs.items()
            },
        }
