"""Offline operation queue.

Holds operations that failed because connectivity was lost, and replays them
when it returns. Drain order is priority first (high, medium, low), then
oldest first. Only one drain runs at a time; a second caller joins the drain
already in flight instead of starting another.
"""

import asyncio
import itertools
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Deque, Dict, List, Optional
from uuid import uuid4

from tempoguard.errors import QueueFullError
from tempoguard.events import EventType, TelemetryRecorder, get_telemetry_recorder
from tempoguard.logging import get_logger

if TYPE_CHECKING:
    from tempoguard.state_store import StatePreservationStore

logger = get_logger(__name__, component="offline_queue")

Operation = Callable[[], Awaitable[Any]]


class OperationPriority(str, Enum):
    """Queued operation priority levels."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def value_int(self) -> int:
        """Get integer value for priority comparison (higher is better)."""
        return {"high": 3, "medium": 2, "low": 1}[self.value]


@dataclass
class QueuedOperation:
    """An operation waiting for connectivity."""

    invoke: Operation
    operation_name: str
    priority: OperationPriority = OperationPriority.MEDIUM
    max_retries: int = 3
    preserve_state: bool = False
    state_snapshot: Optional[Any] = None
    state_key: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid4()))
    enqueued_at: float = field(default_factory=time.time)
    retry_count: int = 0
    last_error: Optional[str] = None
    # Enqueue order, breaks ties between identical timestamps
    sequence: int = 0

    def sort_key(self):
        return (-self.priority.value_int, self.enqueued_at, self.sequence)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "operation_name": self.operation_name,
            "priority": self.priority.value,
            "enqueued_at": self.enqueued_at,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "preserve_state": self.preserve_state,
            "state_key": self.state_key,
            "last_error": self.last_error,
        }


@dataclass
class DroppedOperation:
    """Record of an operation that exhausted its drain retries."""

    id: str
    operation_name: str
    retry_count: int
    dropped_at: float
    state_key: Optional[str]
    last_error: Optional[str]


@dataclass
class DrainReport:
    """Outcome of one drain pass."""

    succeeded: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    dropped: List[str] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return len(self.succeeded) + len(self.failed) + len(self.dropped)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempted": self.attempted,
            "succeeded": list(self.succeeded),
            "failed": list(self.failed),
            "dropped": list(self.dropped),
        }


class OfflineQueue:
    """Priority-ordered holding area for operations deferred while offline.

    Items that fail ``max_retries`` drains are dropped, but their preserved
    state is left in the state store and the drop is kept in ``dropped`` so
    the application can offer a manual retry.
    """

    def __init__(
        self,
        max_size: int = 1000,
        default_max_retries: int = 3,
        state_store: Optional["StatePreservationStore"] = None,
        telemetry: Optional[TelemetryRecorder] = None,
        clock: Callable[[], float] = time.time,
        dropped_history: int = 100,
    ):
        """Initialize queue.

        Args:
            max_size: Maximum number of queued operations (0 for unlimited).
            default_max_retries: Drain attempts per item when not given.
            state_store: Store holding snapshots linked to queued items.
            telemetry: Recorder for queue events.
            clock: Wall-clock source in seconds.
            dropped_history: How many dropped items to remember.
        """
        self.max_size = max_size
        self.default_max_retries = default_max_retries
        self.state_store = state_store
        self.telemetry = telemetry or get_telemetry_recorder()
        self._clock = clock
        self._items: Dict[str, QueuedOperation] = {}
        self._sequence = itertools.count()
        self._drain_task: Optional[asyncio.Task] = None
        self.dropped: Deque[DroppedOperation] = deque(maxlen=dropped_history)

    def __len__(self) -> int:
        return len(self._items)

    @property
    def size(self) -> int:
        return len(self._items)

    @property
    def is_draining(self) -> bool:
        return self._drain_task is not None and not self._drain_task.done()

    def enqueue(
        self,
        invoke: Operation,
        operation_name: str,
        priority: OperationPriority = OperationPriority.MEDIUM,
        state_snapshot: Optional[Any] = None,
        preserve_state: bool = True,
        max_retries: Optional[int] = None,
        state_key: Optional[str] = None,
        user_id: Optional[str] = None,
        ttl_seconds: Optional[float] = None,
    ) -> QueuedOperation:
        """Queue an operation until connectivity returns.

        Args:
            invoke: Zero-argument coroutine function replaying the operation.
            operation_name: Name for logs and status.
            priority: Drain priority.
            state_snapshot: Context to preserve while the item waits.
            preserve_state: Whether the snapshot should be stored.
            max_retries: Drain attempts before the item is dropped.
            state_key: Key of the linked preserved state (default: item id).
            user_id: Owner of the preserved state.
            ttl_seconds: TTL of the preserved state (default: store default).

        Returns:
            The queued item.

        Raises:
            QueueFullError: If the queue is at capacity.
        """
        if self.max_size > 0 and len(self._items) >= self.max_size:
            logger.warning("offline_queue_full", max_size=self.max_size, operation=operation_name)
            raise QueueFullError(self.max_size)

        item = QueuedOperation(
            invoke=invoke,
            operation_name=operation_name,
            priority=OperationPriority(priority),
            max_retries=self.default_max_retries if max_retries is None else max_retries,
            preserve_state=preserve_state,
            state_snapshot=state_snapshot,
            enqueued_at=self._clock(),
            sequence=next(self._sequence),
        )
        if preserve_state and (state_snapshot is not None or state_key is not None):
            item.state_key = state_key or item.id
        if preserve_state and state_snapshot is not None and self.state_store is not None:
            self.state_store.save(
                item.state_key,
                state_snapshot,
                ttl_seconds=ttl_seconds,
                user_id=user_id,
                queued_operation_id=item.id,
            )

        self._items[item.id] = item

        logger.info(
            "operation_queued",
            operation=operation_name,
            operation_id=item.id,
            priority=item.priority.value,
            queue_size=len(self._items),
        )
        self.telemetry.emit(
            EventType.OPERATION_QUEUED,
            operation=operation_name,
            data={"operation_id": item.id, "priority": item.priority.value, "queue_size": len(self._items)},
        )
        return item

    def get(self, operation_id: str) -> Optional[QueuedOperation]:
        return self._items.get(operation_id)

    def remove(self, operation_id: str) -> bool:
        """Remove a queued item without running it."""
        removed = self._items.pop(operation_id, None) is not None
        if removed:
            logger.info("operation_removed", operation_id=operation_id, queue_size=len(self._items))
        return removed

    def clear(self) -> int:
        """Remove every queued item. Returns the number removed."""
        count = len(self._items)
        self._items.clear()
        return count

    def pending(self) -> List[QueuedOperation]:
        """Queued items in drain order."""
        return sorted(self._items.values(), key=QueuedOperation.sort_key)

    async def drain(self) -> DrainReport:
        """Run every queued item once, in drain order.

        Concurrent calls share one drain pass.

        Returns:
            What happened to each attempted item.
        """
        if self.is_draining:
            logger.debug("drain_already_running")
            return await asyncio.shield(self._drain_task)

        self._drain_task = asyncio.ensure_future(self._drain())
        return await asyncio.shield(self._drain_task)

    async def _drain(self) -> DrainReport:
        report = DrainReport()
        # Items enqueued while this pass runs wait for the next one
        candidates = self.pending()
        if not candidates:
            return report

        logger.info("drain_started", queue_size=len(candidates))

        for item in candidates:
            if item.id not in self._items:
                continue

            try:
                await item.invoke()
            except Exception as e:
                item.retry_count += 1
                item.last_error = str(e)
                self._record_attempt(item, success=False, error=str(e))

                if item.retry_count >= item.max_retries:
                    self._drop(item)
                    report.dropped.append(item.id)
                else:
                    report.failed.append(item.id)
                continue

            self._items.pop(item.id, None)
            if item.state_key and self.state_store is not None:
                self.state_store.clear(item.state_key)
            self._record_attempt(item, success=True)
            report.succeeded.append(item.id)

        logger.info(
            "drain_completed",
            succeeded=len(report.succeeded),
            failed=len(report.failed),
            dropped=len(report.dropped),
            remaining=len(self._items),
        )
        return report

    def _record_attempt(self, item: QueuedOperation, success: bool, error: Optional[str] = None) -> None:
        log = logger.info if success else logger.warning
        log(
            "drain_attempt",
            operation=item.operation_name,
            operation_id=item.id,
            retry_count=item.retry_count,
            success=success,
            error=error,
        )
        self.telemetry.emit(
            EventType.DRAIN_ATTEMPT,
            operation=item.operation_name,
            attempt=item.retry_count,
            success=success,
            data={"operation_id": item.id, "queue_size": len(self._items)},
        )

    def _drop(self, item: QueuedOperation) -> None:
        self._items.pop(item.id, None)
        self.dropped.append(
            DroppedOperation(
                id=item.id,
                operation_name=item.operation_name,
                retry_count=item.retry_count,
                dropped_at=self._clock(),
                state_key=item.state_key,
                last_error=item.last_error,
            )
        )
        logger.warning(
            "operation_dropped",
            operation=item.operation_name,
            operation_id=item.id,
            retry_count=item.retry_count,
            state_key=item.state_key,
        )
        self.telemetry.emit(
            EventType.DRAIN_DROPPED,
            operation=item.operation_name,
            attempt=item.retry_count,
            success=False,
            data={"operation_id": item.id, "state_key": item.state_key, "queue_size": len(self._items)},
        )

    def status(self) -> Dict[str, Any]:
        """Queue size, items in drain order and recent drops."""
        return {
            "size": len(self._items),
            "max_size": self.max_size,
            "draining": self.is_draining,
            "items": [item.to_dict() for item in self.pending()],
            "dropped": [
                {
                    "id": d.id,
                    "operation_name": d.operation_name,
                    "retry_count": d.retry_count,
                    "dropped_at": d.dropped_at,
                    "state_key": d.state_key,
                }
                for d in self.dropped
            ],
        }
