"""
Tests for IntentCoalescer debouncing and coalescing rules.

Uses explicit timestamps so no test depends on wall-clock timing.
"""

import pytest

from core.sync.debouncer import CoalescedChange, IntentCoalescer
from core.sync.events import IntentKind, RawEventKind


class TestIntentCoalescer:
    """Test suite for per-path coalescing."""

    @pytest.fixture
    def known(self):
        """Paths treated as already synchronized."""
        return set()

    @pytest.fixture
    def coalescer(self, known):
        """Coalescer with a 0.5s window and a fixed clock."""
        return IntentCoalescer(window_s=0.5, is_known=lambda path: path in known, clock=lambda: 0.0)

    def test_burst_collapses_into_one_change(self, coalescer):
        """Test that many writes to one path inside the window give one intent."""
        coalescer.observe("a.txt", RawEventKind.CREATED, now=0.0)
        for i in range(1, 10):
            coalescer.observe("a.txt", RawEventKind.MODIFIED, now=i * 0.1)

        assert coalescer.pop_due(now=1.0) == []
        assert coalescer.pop_due(now=1.5) == [CoalescedChange(IntentKind.CREATE, "a.txt")]
        assert coalescer.pending_count == 0

    def test_create_then_remove_cancels_out(self, coalescer):
        """Test that a temporary file never produces an intent."""
        coalescer.observe("tmp.txt", RawEventKind.CREATED, now=0.0)
        coalescer.observe("tmp.txt", RawEventKind.MODIFIED, now=0.1)
        coalescer.observe("tmp.txt", RawEventKind.REMOVED, now=0.2)

        assert coalescer.pop_due(now=5.0) == []

    def test_modify_of_known_path(self, coalescer, known):
        """Test that writes to a synchronized path become MODIFY."""
        known.add("a.txt")
        coalescer.observe("a.txt", RawEventKind.CREATED, now=0.0)

        assert coalescer.pop_due(now=1.0) == [CoalescedChange(IntentKind.MODIFY, "a.txt")]

    def test_delete_then_recreate_known_path_is_modify(self, coalescer, known):
        """Test that an editor's delete-and-replace save is a single MODIFY."""
        known.add("doc.txt")
        coalescer.observe("doc.txt", RawEventKind.REMOVED, now=0.0)
        coalescer.observe("doc.txt", RawEventKind.CREATED, now=0.1)

        assert coalescer.pop_due(now=1.0) == [CoalescedChange(IntentKind.MODIFY, "doc.txt")]

    def test_remove_of_known_path_after_create_is_delete(self, coalescer, known):
        """Test that removing a synchronized path is kept even after a create."""
        known.add("a.txt")
        coalescer.observe("a.txt", RawEventKind.REMOVED, now=0.0)
        coalescer.observe("a.txt", RawEventKind.CREATED, now=0.1)
        coalescer.observe("a.txt", RawEventKind.REMOVED, now=0.2)

        assert coalescer.pop_due(now=1.0) == [CoalescedChange(IntentKind.DELETE, "a.txt")]

    def test_move_of_known_file_is_rename(self, coalescer, known):
        """Test that a move of a synchronized file becomes one RENAME."""
        known.add("old.txt")
        coalescer.observe_move("old.txt", "new.txt", now=0.0)

        changes = coalescer.pop_due(now=1.0)
        assert changes == [CoalescedChange(IntentKind.RENAME, "new.txt", old_path="old.txt")]

    def test_move_of_unknown_file_is_create(self, coalescer):
        """Test that moving a file that was never synced only creates the destination."""
        coalescer.observe("draft.txt", RawEventKind.CREATED, now=0.0)
        coalescer.observe_move("draft.txt", "final.txt", now=0.1)

        assert coalescer.pop_due(now=1.0) == [CoalescedChange(IntentKind.CREATE, "final.txt")]

    def test_chained_moves_keep_the_origin(self, coalescer, known):
        """Test that a -> b -> c is a single rename from a to c."""
        known.add("a.txt")
        coalescer.observe_move("a.txt", "b.txt", now=0.0)
        coalescer.observe_move("b.txt", "c.txt", now=0.1)

        assert coalescer.pop_due(now=1.0) == [CoalescedChange(IntentKind.RENAME, "c.txt", old_path="a.txt")]

    def test_move_back_to_origin_is_modify(self, coalescer, known):
        """Test that a -> b -> a collapses into a change of a."""
        known.add("a.txt")
        coalescer.observe_move("a.txt", "b.txt", now=0.0)
        coalescer.observe_move("b.txt", "a.txt", now=0.1)

        assert coalescer.pop_due(now=1.0) == [CoalescedChange(IntentKind.MODIFY, "a.txt")]

    def test_removing_renamed_file_deletes_origin(self, coalescer, known):
        """Test that deleting a just-renamed file still deletes the original path."""
        known.add("a.txt")
        coalescer.observe_move("a.txt", "b.txt", now=0.0)
        coalescer.observe("b.txt", RawEventKind.REMOVED, now=0.1)

        changes = coalescer.pop_due(now=1.0)
        assert CoalescedChange(IntentKind.DELETE, "a.txt") in changes
        assert all(change.path != "b.txt" for change in changes)

    def test_due_changes_are_released_in_arrival_order(self, coalescer):
        """Test that paths are released in the order they were first seen."""
        coalescer.observe("b.txt", RawEventKind.CREATED, now=0.0)
        coalescer.observe("a.txt", RawEventKind.CREATED, now=0.1)
        coalescer.observe("c.txt", RawEventKind.CREATED, now=0.2)

        assert [change.path for change in coalescer.pop_due(now=1.0)] == ["b.txt", "a.txt", "c.txt"]

    def test_only_quiet_paths_are_released(self, coalescer):
        """Test that a path still being written stays pending."""
        coalescer.observe("quiet.txt", RawEventKind.CREATED, now=0.0)
        coalescer.observe("busy.txt", RawEventKind.CREATED, now=0.0)
        coalescer.observe("busy.txt", RawEventKind.MODIFIED, now=0.4)

        assert [change.path for change in coalescer.pop_due(now=0.6)] == ["quiet.txt"]
        assert coalescer.pending_paths() == ["busy.txt"]
        assert coalescer.next_deadline() == pytest.approx(0.9)

    def test_continuous_writes_are_released_after_max_wait(self):
        """Test that a file written forever is still synced eventually."""
        coalescer = IntentCoalescer(window_s=0.5, is_known=lambda path: False, max_wait_s=2.0)
        for i in range(30):
            coalescer.observe("log.txt", RawEventKind.MODIFIED, now=i * 0.1)

        assert [change.path for change in coalescer.pop_due(now=2.9)] == ["log.txt"]

    def test_clear_drops_everything(self, coalescer):
        """Test that clear discards pending changes."""
        coalescer.observe("a.txt", RawEventKind.CREATED, now=0.0)
        coalescer.observe("b.txt", RawEventKind.CREATED, now=0.0)

        assert coalescer.clear() == 2
        assert coalescer.next_deadline() is None
        assert coalescer.pop_due(now=10.0) == []
