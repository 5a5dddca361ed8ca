"""
Intent queue and operation backlog.

The intent queue is the multi-producer, single-consumer hand-off between
event collection and reconciliation. The backlog holds derived operations
and releases them so that operations on one path run strictly in order
while disjoint paths run concurrently.
"""

import asyncio
import itertools
import logging
import threading
from collections import OrderedDict, defaultdict, deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Iterable, List, Optional

from .events import Intent, IntentKind
from ..models.operations import Operation

logger = logging.getLogger(__name__)


@dataclass
class QueueMetrics:
    """Metrics for monitoring queue behavior"""
    total_enqueued: int = 0
    total_dequeued: int = 0
    total_rejected: int = 0
    current_size: int = 0
    max_size_reached: int = 0
    intents_by_kind: Dict[IntentKind, int] = field(default_factory=lambda: defaultdict(int))


class IntentQueue:
    """
    Thread-safe FIFO of intents for one directory.

    Every accepted intent receives the next sequence number under the same
    lock that appends it, so drain order is program order regardless of
    which thread produced it. When full, further pushes are rejected and the
    queue reports overflow until ``reset_overflow()``.
    """

    def __init__(self, max_size: int = 10000, directory_id: str = ""):
        self.max_size = max_size
        self.directory_id = directory_id

        self._items: Deque[Intent] = deque()
        self._lock = threading.Lock()
        self._sequence = itertools.count(1)
        self._overflowed = False

        self._wake: Optional[Callable[[], None]] = None
        self.metrics = QueueMetrics()

    def bind(self, loop: asyncio.AbstractEventLoop, event: asyncio.Event) -> None:
        """Wake the consumer's event whenever an intent arrives"""
        def wake() -> None:
            if loop.is_closed():
                return
            try:
                loop.call_soon_threadsafe(event.set)
            except RuntimeError as e:
                if "closed" not in str(e).lower():
                    logger.error(f"Failed to wake intent consumer: {e}")

        self._wake = wake

    def push(self, intent: Intent) -> bool:
        """
        Append an intent, assigning its sequence number.

        Returns:
            True if accepted, False if the queue is full
        """
        with self._lock:
            if len(self._items) >= self.max_size:
                self._overflowed = True
                self.metrics.total_rejected += 1
                accepted = False
            else:
                intent.sequence = next(self._sequence)
                self._items.append(intent)
                self.metrics.total_enqueued += 1
                self.metrics.intents_by_kind[intent.kind] += 1
                self.metrics.current_size = len(self._items)
                self.metrics.max_size_reached = max(self.metrics.max_size_reached, len(self._items))
                accepted = True

        if not accepted:
            logger.warning(f"Intent queue full for {self.directory_id}, dropping {intent}")
        if self._wake:
            self._wake()
        return accepted

    def drain(self) -> List[Intent]:
        """Remove and return every queued intent in sequence order"""
        with self._lock:
            items = list(self._items)
            self._items.clear()
            self.metrics.total_dequeued += len(items)
            self.metrics.current_size = 0
        return items

    def clear(self) -> int:
        with self._lock:
            dropped = len(self._items)
            self._items.clear()
            self.metrics.current_size = 0
        return dropped

    @property
    def overflowed(self) -> bool:
        return self._overflowed

    def reset_overflow(self) -> None:
        with self._lock:
            self._overflowed = False

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class OperationBacklog:
    """
    Pending operations with per-path FIFO release.

    An operation is ready when it is at the head of the queue of every path
    it occupies. Renames occupy both their paths. Readiness is evaluated in
    arrival order so independent work is not starved.
    """

    def __init__(self):
        self._pending: "OrderedDict[str, Operation]" = OrderedDict()
        self._by_path: Dict[str, Deque[str]] = {}
        self._in_flight: Dict[str, Operation] = {}

    def append(self, operation: Operation) -> None:
        self._pending[operation.op_id] = operation
        for path in operation.paths:
            self._by_path.setdefault(path, deque()).append(operation.op_id)
        logger.debug(f"Queued {operation}")

    def extend(self, operations: Iterable[Operation]) -> None:
        for operation in operations:
            self.append(operation)

    def next_ready(self) -> Optional[Operation]:
        """Pop the oldest operation whose paths are all free, marking it in flight"""
        for op_id, operation in self._pending.items():
            if all(self._by_path[path][0] == op_id for path in operation.paths):
                del self._pending[op_id]
                self._in_flight[op_id] = operation
                return operation
        return None

    def complete(self, operation: Operation) -> None:
        """Release the paths held by a finished (or failed) operation"""
        if self._in_flight.pop(operation.op_id, None) is None:
            return
        for path in operation.paths:
            queue = self._by_path.get(path)
            if not queue:
                continue
            if operation.op_id in queue:
                queue.remove(operation.op_id)
            if not queue:
                del self._by_path[path]

    def is_busy(self, path: str) -> bool:
        """True when any pending or in-flight operation occupies the path"""
        return path in self._by_path

    def clear_pending(self) -> List[Operation]:
        """Drop every operation that has not started; in-flight ones stay"""
        dropped = list(self._pending.values())
        self._pending.clear()
        self._by_path = {}
        for operation in self._in_flight.values():
            for path in operation.paths:
                self._by_path.setdefault(path, deque()).append(operation.op_id)
        return dropped

    def pending_operations(self) -> List[Operation]:
        return list(self._pending.values())

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    @property
    def is_idle(self) -> bool:
        return not self._pending and not self._in_flight

    def count_by_kind(self) -> Dict[str, int]:
        counts: Dict[str, int] = defaultdict(int)
        for operation in list(self._pending.values()) + list(self._in_flight.values()):
            counts[operation.kind.value] += 1
        return dict(counts)
