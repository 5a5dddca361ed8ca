"""
Tests for IntentQueue ordering and OperationBacklog per-path release.
"""

import asyncio
import threading

import pytest

from core.models.operations import Operation
from core.sync.events import Intent, IntentKind
from core.sync.queue import IntentQueue, OperationBacklog


class TestIntentQueue:
    """Test suite for the multi-producer intent queue."""

    def test_sequence_numbers_follow_push_order(self):
        """Test that every accepted intent gets the next sequence number."""
        queue = IntentQueue(directory_id="docs")
        for name in ("a.txt", "b.txt", "c.txt"):
            assert queue.push(Intent.create(name)) is True

        drained = queue.drain()
        assert [intent.path for intent in drained] == ["a.txt", "b.txt", "c.txt"]
        assert [intent.sequence for intent in drained] == [1, 2, 3]
        assert len(queue) == 0

    def test_concurrent_producers_keep_per_producer_order(self):
        """Test that intents from several threads drain in a consistent total order."""
        queue = IntentQueue(max_size=10000)
        producers = 4
        per_producer = 200

        def produce(producer: int) -> None:
            for i in range(per_producer):
                queue.push(Intent.modify(f"p{producer}/{i}.txt"))

        threads = [threading.Thread(target=produce, args=(n,)) for n in range(producers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        drained = queue.drain()
        assert len(drained) == producers * per_producer
        sequences = [intent.sequence for intent in drained]
        assert sequences == sorted(sequences)
        assert len(set(sequences)) == len(sequences)

        for producer in range(producers):
            own = [int(intent.path.split('/')[1].split('.')[0])
                   for intent in drained if intent.path.startswith(f"p{producer}/")]
            assert own == list(range(per_producer))

    def test_overflow_rejects_and_flags(self):
        """Test that a full queue rejects intents and reports overflow."""
        queue = IntentQueue(max_size=2)
        assert queue.push(Intent.create("a.txt"))
        assert queue.push(Intent.create("b.txt"))
        assert queue.push(Intent.create("c.txt")) is False

        assert queue.overflowed is True
        assert queue.metrics.total_rejected == 1

        queue.clear()
        queue.reset_overflow()
        assert queue.overflowed is False

    @pytest.mark.asyncio
    async def test_push_from_thread_wakes_consumer(self):
        """Test that a bound event is set when another thread pushes."""
        queue = IntentQueue()
        wake = asyncio.Event()
        queue.bind(asyncio.get_running_loop(), wake)

        thread = threading.Thread(target=queue.push, args=(Intent.delete("gone.txt"),))
        thread.start()
        await asyncio.wait_for(wake.wait(), timeout=2.0)
        thread.join()

        drained = queue.drain()
        assert drained[0].kind == IntentKind.DELETE


class TestOperationBacklog:
    """Test suite for per-path FIFO release."""

    def test_same_path_operations_run_in_order(self):
        """Test that a second operation on a path waits for the first."""
        backlog = OperationBacklog()
        first = Operation.upload("a.txt", "h1", None)
        second = Operation.upload("a.txt", "h2", "r1")
        backlog.extend([first, second])

        assert backlog.next_ready() is first
        assert backlog.next_ready() is None
        assert backlog.is_busy("a.txt")

        backlog.complete(first)
        assert backlog.next_ready() is second
        backlog.complete(second)
        assert backlog.is_idle
        assert not backlog.is_busy("a.txt")

    def test_disjoint_paths_are_ready_together(self):
        """Test that operations on different paths do not block each other."""
        backlog = OperationBacklog()
        a = Operation.upload("a.txt", "h1", None)
        b = Operation.delete_remote("b.txt", "r1")
        backlog.extend([a, b])

        assert backlog.next_ready() is a
        assert backlog.next_ready() is b
        assert backlog.in_flight_count == 2

    def test_rename_occupies_both_paths(self):
        """Test that a rename blocks work on its source and destination."""
        backlog = OperationBacklog()
        rename = Operation.rename_remote("old.txt", "new.txt", "r1", "h1")
        on_new = Operation.upload("new.txt", "h2", None)
        on_old = Operation.upload("old.txt", "h3", None)
        backlog.extend([rename, on_new, on_old])

        assert backlog.next_ready() is rename
        assert backlog.next_ready() is None

        backlog.complete(rename)
        assert backlog.next_ready() is on_new
        assert backlog.next_ready() is on_old

    def test_clear_pending_keeps_in_flight_paths_busy(self):
        """Test that dropping queued work leaves running operations tracked."""
        backlog = OperationBacklog()
        running = Operation.upload("a.txt", "h1", None)
        queued = Operation.upload("b.txt", "h2", None)
        backlog.append(running)
        assert backlog.next_ready() is running
        backlog.append(queued)

        dropped = backlog.clear_pending()
        assert dropped == [queued]
        assert backlog.is_busy("a.txt")
        assert not backlog.is_busy("b.txt")

        backlog.complete(running)
        assert backlog.is_idle

    def test_count_by_kind(self):
        """Test the per-kind summary used in status output."""
        backlog = OperationBacklog()
        backlog.extend([
            Operation.upload("a.txt", "h1", None),
            Operation.upload("b.txt", "h2", None),
            Operation.delete_local("c.txt", "h3"),
        ])
        assert backlog.count_by_kind() == {"upload": 2, "delete_local": 1}
