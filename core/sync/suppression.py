"""
Registry of filesystem changes the executor is about to make.

Entries are keyed by relative path and expire after a grace period. The
collector consults the registry before emitting an intent so that downloads,
local deletes and local renames do not echo back as user changes.
"""

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class ExpectedChange:
    content_hash: Optional[str]  # None: removal expected
    expires_at: float


class ExpectedWriteRegistry:
    """Bounded map of path to expected outcome with lifetime-bound entries"""

    def __init__(
        self,
        ttl_s: float = 5.0,
        max_entries: int = 4096,
        clock: Callable[[], float] = time.monotonic
    ):
        self.ttl_s = ttl_s
        self.max_entries = max_entries
        self.clock = clock
        self._entries: "OrderedDict[str, ExpectedChange]" = OrderedDict()

        self.suppressed = 0
        self.expired = 0

    def expect_write(self, path: str, content_hash: str) -> None:
        self._add(path, content_hash)

    def expect_removal(self, path: str) -> None:
        self._add(path, None)

    def _add(self, path: str, content_hash: Optional[str]) -> None:
        self._entries.pop(path, None)
        self._entries[path] = ExpectedChange(content_hash, self.clock() + self.ttl_s)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"Evicted expected change for {evicted}")

    def _live(self, path: str) -> Optional[ExpectedChange]:
        entry = self._entries.get(path)
        if entry is None:
            return None
        if entry.expires_at <= self.clock():
            del self._entries[path]
            self.expired += 1
            return None
        return entry

    def consume_write(self, path: str, content_hash: Optional[str]) -> bool:
        """
        Check a create/modify against the registry.

        Returns:
            True when the current content is exactly what the executor wrote;
            the entry is consumed on that confirmed match
        """
        entry = self._live(path)
        if entry is None or entry.content_hash is None or content_hash is None:
            return False
        if entry.content_hash != content_hash:
            return False
        del self._entries[path]
        self.suppressed += 1
        return True

    def consume_removal(self, path: str) -> bool:
        entry = self._live(path)
        if entry is None or entry.content_hash is not None:
            return False
        del self._entries[path]
        self.suppressed += 1
        return True

    def is_expected(self, path: str) -> bool:
        return self._live(path) is not None

    def discard(self, path: str) -> None:
        self._entries.pop(path, None)

    def purge_expired(self) -> int:
        now = self.clock()
        stale = [path for path, entry in self._entries.items() if entry.expires_at <= now]
        for path in stale:
            del self._entries[path]
        self.expired += len(stale)
        return len(stale)

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> Dict[str, int]:
        return {
            "entries": len(self._entries),
            "suppressed": self.suppressed,
            "expired": self.expired,
        }
