"""
Per-path debouncing and coalescing of raw events into intents.

Pure in-memory logic with an injectable clock. The collector feeds events as
they arrive and periodically pops the paths that have been quiet for the
debounce window.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from .events import IntentKind, RawEventKind

logger = logging.getLogger(__name__)


@dataclass
class PendingChange:
    """Accumulated state for one path inside the debounce window"""
    kind: Optional[IntentKind]  # None: changes cancelled out
    old_path: Optional[str]
    first_seen: float
    last_seen: float
    order: int


@dataclass(frozen=True)
class CoalescedChange:
    """A path whose quiet period elapsed, ready to become an Intent"""
    kind: IntentKind
    path: str
    old_path: Optional[str] = None


class IntentCoalescer:
    """
    Collapse bursts of raw events into one outcome per path.

    Rules:
    - repeated events for a path collapse into one change
    - create then remove cancels out
    - modify after create stays create
    - any write after a delete becomes modify when the path is known
      (synchronized or busy), create otherwise
    - a move carries the source's pending state to the destination
    """

    def __init__(
        self,
        window_s: float,
        is_known: Callable[[str], bool],
        clock: Callable[[], float] = time.monotonic,
        max_wait_s: Optional[float] = None
    ):
        """
        Args:
            window_s: Quiet period before a change is released
            is_known: Whether a path has a fingerprint or queued work
            clock: Monotonic time source
            max_wait_s: Release a continuously changing path after this long
        """
        self.window_s = window_s
        self.is_known = is_known
        self.clock = clock
        self.max_wait_s = max_wait_s if max_wait_s is not None else window_s * 20

        self._pending: Dict[str, PendingChange] = {}
        self._order = 0

    def observe(self, path: str, kind: RawEventKind, now: Optional[float] = None) -> None:
        """Record a create/modify/remove notification for one path"""
        now = self.clock() if now is None else now
        entry = self._pending.get(path)

        if kind in (RawEventKind.CREATED, RawEventKind.MODIFIED, RawEventKind.RENAMED_TO):
            new_kind, old_path = self._after_write(path, entry)
        else:
            if entry is not None and entry.kind == IntentKind.RENAME:
                self._release_origin(entry.old_path, now)
            new_kind, old_path = self._after_remove(path, entry), None

        self._set(path, new_kind, old_path, now)

    def observe_move(self, src: str, dst: str, now: Optional[float] = None) -> None:
        """Record a paired rename from src to dst"""
        now = self.clock() if now is None else now
        src_entry = self._pending.pop(src, None)
        dst_entry = self._pending.get(dst)

        if src_entry is not None and src_entry.kind == IntentKind.RENAME:
            origin = src_entry.old_path
            if origin == dst:
                new_kind, old_path = IntentKind.MODIFY, None
            else:
                new_kind, old_path = IntentKind.RENAME, origin
        elif (src_entry is not None and src_entry.kind == IntentKind.CREATE) or not self.is_known(src):
            new_kind = IntentKind.MODIFY if self.is_known(dst) else IntentKind.CREATE
            old_path = None
        else:
            new_kind, old_path = IntentKind.RENAME, src

        # The source must still go away remotely unless the rename carries it
        if not (new_kind == IntentKind.RENAME and old_path == src) and self.is_known(src):
            self._set(src, IntentKind.DELETE, None, now)

        # An overwritten pending rename target would otherwise lose its origin's deletion
        if (dst_entry is not None and dst_entry.kind == IntentKind.RENAME
                and dst_entry.old_path not in (old_path, dst)):
            self._release_origin(dst_entry.old_path, now)

        self._set(dst, new_kind, old_path, now)

    def _after_write(self, path: str, entry: Optional[PendingChange]):
        if entry is None or entry.kind is None or entry.kind == IntentKind.DELETE:
            return (IntentKind.MODIFY if self.is_known(path) else IntentKind.CREATE), None
        if entry.kind == IntentKind.RENAME:
            return IntentKind.RENAME, entry.old_path
        # CREATE stays CREATE, MODIFY stays MODIFY
        return entry.kind, None

    def _after_remove(self, path: str, entry: Optional[PendingChange]) -> Optional[IntentKind]:
        if entry is None:
            return IntentKind.DELETE
        if entry.kind is None:
            return None
        if entry.kind in (IntentKind.CREATE, IntentKind.RENAME):
            return IntentKind.DELETE if self.is_known(path) else None
        return IntentKind.DELETE

    def _release_origin(self, origin: Optional[str], now: float) -> None:
        if origin is None:
            return
        self._set(origin, IntentKind.DELETE if self.is_known(origin) else None, None, now)

    def _set(self, path: str, kind: Optional[IntentKind], old_path: Optional[str], now: float) -> None:
        entry = self._pending.get(path)
        if entry is None:
            self._order += 1
            self._pending[path] = PendingChange(
                kind=kind, old_path=old_path, first_seen=now, last_seen=now, order=self._order
            )
        else:
            entry.kind = kind
            entry.old_path = old_path
            entry.last_seen = now

    def pop_due(self, now: Optional[float] = None) -> List[CoalescedChange]:
        """Remove and return every change whose quiet period has elapsed"""
        now = self.clock() if now is None else now
        due = [
            (path, entry) for path, entry in self._pending.items()
            if now - entry.last_seen >= self.window_s or now - entry.first_seen >= self.max_wait_s
        ]
        due.sort(key=lambda item: item[1].order)

        changes: List[CoalescedChange] = []
        for path, entry in due:
            del self._pending[path]
            if entry.kind is None:
                logger.debug(f"Changes for {path} cancelled out")
                continue
            changes.append(CoalescedChange(kind=entry.kind, path=path, old_path=entry.old_path))
        return changes

    def next_deadline(self) -> Optional[float]:
        """Earliest time at which some pending change becomes due"""
        if not self._pending:
            return None
        return min(
            min(entry.last_seen + self.window_s, entry.first_seen + self.max_wait_s)
            for entry in self._pending.values()
        )

    def pending_paths(self) -> List[str]:
        return list(self._pending)

    def pending_kind(self, path: str) -> Optional[IntentKind]:
        entry = self._pending.get(path)
        return entry.kind if entry else None

    def clear(self) -> int:
        dropped = len(self._pending)
        self._pending.clear()
        return dropped

    @property
    def pending_count(self) -> int:
        return len(self._pending)
