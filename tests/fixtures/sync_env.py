"""
Helpers wiring one watched directory against the in-memory remote.
"""

import os
from pathlib import Path
from typing import List, Optional

from core.models.config import AccessRights, ConflictPolicy, SourceRules
from core.models.sync import WatchedDirectory
from core.storage.fingerprints import FingerprintStore
from core.storage.journal import OperationJournal
from core.sync.events import RawEvent
from core.sync.executor import RetryConfig, SyncExecutor
from core.sync.queue import IntentQueue, OperationBacklog
from core.sync.reconciler import Reconciler
from core.sync.suppression import ExpectedWriteRegistry
from core.sync.watcher import EventCallback, NotificationSource

from tests.fixtures.fake_transport import InMemoryTransport

REMOTE_ID = "sherry-1"


def make_directory(root: Path, read_only: bool = False, **rules) -> WatchedDirectory:
    source = SourceRules(
        id=REMOTE_ID,
        access=AccessRights.READ if read_only else AccessRights.WRITE,
        **rules
    )
    return WatchedDirectory(id="docs", root=root, remote_id=REMOTE_ID, user_id="user-1", source=source)


def write(root: Path, relative_path: str, content: bytes, mtime: Optional[float] = None) -> Path:
    target = root.joinpath(*relative_path.split('/'))
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(content)
    if mtime is not None:
        os.utime(target, (mtime, mtime))
    return target


def read(root: Path, relative_path: str) -> Optional[bytes]:
    target = root.joinpath(*relative_path.split('/'))
    return target.read_bytes() if target.exists() else None


async def no_sleep(delay: float) -> None:
    return None


class SyncHarness:
    """Store, journal, executor and reconciler for one directory"""

    def __init__(
        self,
        root: Path,
        state_dir: Path,
        transport: Optional[InMemoryTransport] = None,
        read_only: bool = False,
        policy: ConflictPolicy = ConflictPolicy.NEWEST_WINS,
        max_attempts: int = 3
    ):
        self.root = root
        self.state_dir = state_dir
        self.transport = transport or InMemoryTransport()
        self.directory = make_directory(root, read_only=read_only)
        self.policy = policy
        self.max_attempts = max_attempts
        self.build()

    def build(self) -> None:
        """(Re)create every component, as a daemon restart would"""
        self.store = FingerprintStore(self.state_dir / "hashes", self.directory.id, self.root)
        self.store.load()
        self.journal = OperationJournal(self.state_dir / "journal", self.directory.id)
        self.registry = ExpectedWriteRegistry()
        self.intents = IntentQueue(directory_id=self.directory.id)
        self.backlog = OperationBacklog()
        self.executor = SyncExecutor(
            self.directory, self.store, self.journal, self.transport, self.registry,
            retry=RetryConfig(max_attempts=self.max_attempts, initial_delay=0.0, jitter=False),
            sleep=no_sleep
        )
        self.reconciler = Reconciler(
            self.directory, self.store, self.journal, self.executor, self.intents,
            backlog=self.backlog, conflict_policy=self.policy
        )

    async def sync(self) -> None:
        """Catch up and drive every resulting operation to completion"""
        await self.reconciler.catch_up()
        await self.reconciler.run_until_idle()


class FakeNotificationSource(NotificationSource):
    """Notification source driven directly by tests"""

    def __init__(self):
        self.callback: Optional[EventCallback] = None
        self.alive = False
        self.starts = 0

    def start(self, callback: EventCallback) -> None:
        self.callback = callback
        self.alive = True
        self.starts += 1

    def stop(self) -> None:
        self.alive = False

    def is_alive(self) -> bool:
        return self.alive

    def emit(self, events: List[RawEvent]) -> None:
        if self.callback is not None:
            self.callback(events)
