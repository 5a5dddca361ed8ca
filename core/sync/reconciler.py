"""
Reconciler for one watched directory.

Owns the directory's state machine. Catch-up merges a full local scan and
the remote listing against the fingerprint baseline; while watching,
intents from the collector are translated into operations against the same
baseline. Operations are dispatched to the executor with per-path FIFO
ordering and bounded concurrency.
"""

import asyncio
import logging
import os
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from .errors import (
    AuthError,
    ConflictError,
    LocalIOError,
    RetryExhaustedError,
    StalePreconditionError,
    SyncError,
    TransportError,
)
from .events import Intent, IntentKind
from .executor import SyncExecutor
from .filters import PathFilter
from .planner import plan_path
from .queue import IntentQueue, OperationBacklog
from ..models.config import ConflictPolicy
from ..models.operations import Operation
from ..models.sync import FileFingerprint, RemoteEntry, SyncState, WatchedDirectory, can_transition
from ..storage.fingerprints import FingerprintStore
from ..storage.hashing import fingerprint_file, scan_tree
from ..storage.journal import OperationJournal

logger = logging.getLogger(__name__)

# Consecutive stale outcomes after which a path waits for the next catch-up
MAX_REDERIVE_ATTEMPTS = 5


class Reconciler:
    """
    Turns local intents and remote state into operations.

    Illegal state transitions raise SyncError. Fatal outcomes
    (RetryExhaustedError, AuthError, unexpected errors) are raised from
    ``run`` so the supervisor can change state.
    """

    def __init__(
        self,
        directory: WatchedDirectory,
        store: FingerprintStore,
        journal: OperationJournal,
        executor: SyncExecutor,
        intents: IntentQueue,
        backlog: Optional[OperationBacklog] = None,
        path_filter: Optional[PathFilter] = None,
        conflict_policy: ConflictPolicy = ConflictPolicy.NEWEST_WINS,
        max_concurrent_operations: int = 4,
        idle_interval_s: float = 1.0,
        remote_poll_interval_s: float = 0.0
    ):
        self.directory = directory
        self.store = store
        self.journal = journal
        self.executor = executor
        self.intents = intents
        self.backlog = backlog or OperationBacklog()
        self.path_filter = path_filter or PathFilter(directory.source)
        self.conflict_policy = conflict_policy
        self.max_concurrent_operations = max(1, max_concurrent_operations)
        self.idle_interval_s = idle_interval_s
        self.remote_poll_interval_s = remote_poll_interval_s

        self.state = SyncState.CATCHING_UP
        self.state_changed_at = datetime.now()

        self._deferred: List[Intent] = []
        self._stale_paths: Set[str] = set()
        self._stale_counts: Dict[str, int] = {}
        self._retry_paths: Set[str] = set()
        self._next_remote_poll: Optional[float] = None
        self._tasks: Set[asyncio.Task] = set()
        self._wake = asyncio.Event()
        self._catch_up_requested = False
        self._catch_up_reason: Optional[str] = None
        self._fatal: Optional[BaseException] = None
        self._stopping = False

        # Metrics
        self.catch_ups = 0
        self.remote_polls = 0
        self.operations_planned = 0
        self.operations_failed = 0
        self.last_error: Optional[str] = None

    @property
    def read_only(self) -> bool:
        return self.directory.source.is_read_only

    def transition(self, target: SyncState) -> None:
        if not can_transition(self.state, target):
            raise SyncError(f"Illegal transition {self.state.value} -> {target.value} "
                            f"for {self.directory.id}")
        if target != self.state:
            logger.info(f"{self.directory.id}: {self.state.value} -> {target.value}")
            self.state = target
            self.state_changed_at = datetime.now()

    def request_catch_up(self, reason: str) -> None:
        """Gap callback: schedule a full catch-up at the next opportunity"""
        logger.info(f"Catch-up requested for {self.directory.id}: {reason}")
        self._catch_up_requested = True
        self._catch_up_reason = reason
        self._wake.set()

    def stop(self) -> None:
        """Stop dequeuing work; in-flight operations keep running"""
        self._stopping = True
        self._wake.set()

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for in-flight operations.

        Returns:
            True when every in-flight operation finished within the timeout
        """
        if not self._tasks:
            return True
        done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        if pending:
            logger.warning(f"{len(pending)} operations still in flight for {self.directory.id}")
        return not pending

    @property
    def is_idle(self) -> bool:
        return (
            self.backlog.is_idle
            and not self._tasks
            and not self._deferred
            and not self._stale_paths
            and len(self.intents) == 0
        )

    # Catch-up

    async def catch_up(self) -> int:
        """
        Full three-way merge of the tree, the remote listing and the baseline.

        Returns:
            Number of operations queued
        """
        self.transition(SyncState.CATCHING_UP)
        self._catch_up_requested = False
        self.catch_ups += 1

        await self.wait_idle()
        dropped = self.backlog.clear_pending()
        if dropped:
            logger.debug(f"Dropped {len(dropped)} queued operations before catch-up")
        self.intents.clear()
        self.intents.reset_overflow()
        self._deferred.clear()
        self._stale_paths.clear()
        self._stale_counts.clear()
        self._retry_paths.clear()

        baseline = self.store.as_dict()
        local, rejected = await asyncio.to_thread(self._scan, baseline)
        entries = await self.executor.call_remote(
            f"list {self.directory.remote_id}",
            self.executor.transport.list_remote,
            self.directory.remote_id
        )
        remote = {entry.path: entry for entry in entries if self.path_filter.accepts_path(entry.path)}

        # Interrupted operations resume before anything new is planned for their paths
        replayed: Set[str] = set()
        for operation in self.journal.pending():
            logger.info(f"Resuming journaled {operation}")
            self.backlog.append(operation)
            replayed.update(operation.paths)

        queued = len(replayed)
        async with self.store.critical():
            self._refresh_stats(local)
            paths = (set(local) | set(remote) | set(self.store.as_dict())) - replayed - rejected
            for path in sorted(paths):
                operations = plan_path(
                    path,
                    self.store.get(path),
                    local.get(path),
                    remote.get(path),
                    policy=self.conflict_policy,
                    read_only=self.read_only,
                    occupied=self._occupied(remote)
                )
                self.backlog.extend(operations)
                queued += len(operations)

        if self.store.is_dirty:
            await self.store.persist()

        self.operations_planned += queued
        logger.info(f"Catch-up for {self.directory.id}: {len(local)} local, {len(remote)} remote, "
                    f"{len(baseline)} synced, {queued} operations queued")
        self.transition(SyncState.WATCHING)
        return queued

    def _scan(self, baseline: Dict[str, FileFingerprint]) -> Tuple[Dict[str, FileFingerprint], Set[str]]:
        local = scan_tree(self.directory.root, self.path_filter.accepts, baseline)
        # Synced files that still exist but no longer pass the rules are left alone
        rejected = {
            path for path in baseline
            if path not in local and self.directory.absolute(path).is_file()
        }
        return local, rejected

    async def poll_remote(self) -> int:
        """
        Plan paths whose remote revision moved away from the baseline.

        Paths with work in flight are skipped; their settling re-derives them.
        Paths that failed locally are planned again here.

        Returns:
            Number of operations queued
        """
        self.remote_polls += 1
        baseline = self.store.as_dict()
        entries = await self.executor.call_remote(
            f"list {self.directory.remote_id}",
            self.executor.transport.list_remote,
            self.directory.remote_id
        )
        remote = {entry.path: entry for entry in entries if self.path_filter.accepts_path(entry.path)}

        changed = {
            path for path, entry in remote.items()
            if path not in baseline or baseline[path].revision != entry.revision
        }
        changed |= set(baseline) - set(remote)
        changed |= self._retry_paths
        self._retry_paths.clear()
        changed = {path for path in changed if not self.backlog.is_busy(path) and path not in self._stale_paths}
        if not changed:
            return 0

        try:
            local = await asyncio.to_thread(self._fingerprints, sorted(changed))
        except LocalIOError as e:
            logger.warning(f"Cannot inspect remote changes in {self.directory.id}: {e}")
            self._retry_paths.update(changed)
            return 0

        queued = 0
        async with self.store.critical():
            for path in sorted(changed):
                # Settled while listing; the listing may predate the settled write
                if self.backlog.is_busy(path) or self.store.get(path) != baseline.get(path):
                    continue
                fingerprint = local[path]
                if fingerprint is not None and not self.path_filter.accepts(path, fingerprint.size):
                    continue
                operations = plan_path(
                    path, baseline.get(path), fingerprint, remote.get(path),
                    policy=self.conflict_policy,
                    read_only=self.read_only,
                    occupied=self._occupied(remote)
                )
                self.backlog.extend(operations)
                queued += len(operations)

        self.operations_planned += queued
        if queued:
            logger.info(f"Remote changes in {self.directory.id}: {queued} operations queued")
        return queued

    def _occupied(self, remote: Optional[Dict[str, RemoteEntry]] = None) -> Callable[[str], bool]:
        """Conflict names already taken by a synced, queued, remote or local file"""

        def occupied(path: str) -> bool:
            return (
                self.store.get(path) is not None
                or self.backlog.is_busy(path)
                or (remote is not None and path in remote)
                or os.path.lexists(self.directory.absolute(path))
            )

        return occupied

    def _schedule_remote_poll(self) -> None:
        if self.remote_poll_interval_s > 0:
            self._next_remote_poll = time.monotonic() + self.remote_poll_interval_s
        else:
            self._next_remote_poll = None

    def _remote_poll_due(self) -> bool:
        return self._next_remote_poll is not None and time.monotonic() >= self._next_remote_poll

    def _idle_timeout(self) -> float:
        if self._next_remote_poll is None:
            return self.idle_interval_s
        return max(0.0, min(self.idle_interval_s, self._next_remote_poll - time.monotonic()))

    def _refresh_stats(self, local: Dict[str, FileFingerprint]) -> None:
        for path, fingerprint in local.items():
            base = self.store.get(path)
            if (base is not None and base.content_hash == fingerprint.content_hash
                    and not base.matches_stat(fingerprint.size, fingerprint.mtime)):
                self.store.put(path, fingerprint.with_revision(base.revision))

    # Intent translation

    async def process_intents(self) -> int:
        """Translate queued intents into operations; returns intents consumed"""
        candidates = self._deferred + self.intents.drain()
        if not candidates:
            return 0

        self._deferred = []
        consumed = 0
        for intent in sorted(candidates, key=lambda item: item.sequence):
            if any(self.backlog.is_busy(path) for path in intent.paths):
                self._deferred.append(intent)
                continue
            operations = await self._translate(intent)
            self.backlog.extend(operations)
            self.operations_planned += len(operations)
            consumed += 1
        return consumed

    async def _translate(self, intent: Intent) -> List[Operation]:
        paths = intent.paths
        try:
            current = await asyncio.to_thread(self._fingerprints, paths)
        except LocalIOError as e:
            logger.warning(f"Cannot inspect {intent}: {e}")
            return []

        async with self.store.critical():
            if intent.kind == IntentKind.RENAME:
                return self._derive_rename(intent.old_path, intent.path, current)
            return self._derive_local(intent.path, current[intent.path])

    def _fingerprints(self, paths) -> Dict[str, Optional[FileFingerprint]]:
        return {path: fingerprint_file(self.directory.root, path) for path in paths}

    def _derive_local(self, path: str, local: Optional[FileFingerprint]) -> List[Operation]:
        """One local change against the baseline; a pure edit yields one operation"""
        base = self.store.get(path)

        if local is None:
            if base is None or self.read_only:
                return []
            return [Operation.delete_remote(path, base.revision, reason="deleted locally")]

        if not self.path_filter.accepts(path, local.size):
            return []

        if base is not None and base.content_hash == local.content_hash:
            if not base.matches_stat(local.size, local.mtime):
                self.store.put(path, local.with_revision(base.revision))
            return []

        if self.read_only:
            logger.debug(f"Ignoring local change to {path} in read-only {self.directory.id}")
            return []

        return [Operation.upload(
            path, local.content_hash, base.revision if base else None,
            reason="modified locally" if base else "new local file"
        )]

    def _derive_rename(
        self,
        old_path: str,
        new_path: str,
        current: Dict[str, Optional[FileFingerprint]]
    ) -> List[Operation]:
        base_old = self.store.get(old_path)
        old_local = current[old_path]
        new_local = current[new_path]

        if (not self.read_only
                and base_old is not None
                and old_local is None
                and new_local is not None
                and new_local.content_hash == base_old.content_hash
                and self.store.get(new_path) is None
                and self.path_filter.accepts(new_path, new_local.size)):
            return [Operation.rename_remote(
                old_path, new_path, base_old.revision, new_local.content_hash, reason="renamed locally"
            )]

        return self._derive_local(old_path, old_local) + self._derive_local(new_path, new_local)

    # Dispatch

    async def step(self) -> int:
        """One round of translation, re-derivation and dispatch; returns units of progress"""
        progress = await self.process_intents()
        if self._stopping:
            return progress
        progress += await self._rederive_settled()
        progress += self._dispatch()
        return progress

    def _dispatch(self) -> int:
        if self._stopping:
            return 0
        started = 0
        while len(self._tasks) < self.max_concurrent_operations:
            operation = self.backlog.next_ready()
            if operation is None:
                break
            if self.state == SyncState.WATCHING:
                self.transition(SyncState.RECONCILING)
            task = asyncio.create_task(self._execute(operation))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            started += 1
        return started

    async def _execute(self, operation: Operation) -> None:
        try:
            await self.executor.apply(operation)
            for path in operation.paths:
                self._stale_counts.pop(path, None)
        except (StalePreconditionError, ConflictError) as e:
            await self.journal.clear(operation.op_id)
            logger.info(f"Re-deriving {operation.path} after {type(e).__name__}: {e}")
            self._stale_paths.update(operation.paths)
        except LocalIOError as e:
            self.operations_failed += 1
            self.last_error = str(e)
            self._retry_paths.update(operation.paths)
            logger.warning(f"Local I/O failure on {operation}, retried on the next remote poll: {e}")
        except TransportError as e:
            self.operations_failed += 1
            self.last_error = str(e)
            await self.journal.clear(operation.op_id)
            logger.error(f"Remote rejected {operation}: {e}")
        except (RetryExhaustedError, AuthError) as e:
            self.last_error = str(e)
            self._fatal = self._fatal or e
        except Exception as e:
            self.last_error = str(e)
            logger.error(f"Unexpected error applying {operation}: {e}", exc_info=True)
            self._fatal = self._fatal or e
        finally:
            self.backlog.complete(operation)
            self._wake.set()

    async def _rederive_settled(self) -> int:
        settled = [path for path in self._stale_paths if not self.backlog.is_busy(path)]
        for path in settled:
            self._stale_paths.discard(path)
            attempts = self._stale_counts.get(path, 0) + 1
            if attempts > MAX_REDERIVE_ATTEMPTS:
                logger.warning(f"{path} keeps changing during sync, waiting for the next catch-up")
                self._stale_counts.pop(path, None)
                continue
            self._stale_counts[path] = attempts
            self.backlog.extend(await self.rederive(path))
        return len(settled)

    async def rederive(self, path: str) -> List[Operation]:
        """Plan one path from fresh local and remote state"""
        try:
            local = await asyncio.to_thread(fingerprint_file, self.directory.root, path)
        except LocalIOError as e:
            logger.warning(f"Cannot inspect {path}: {e}")
            return []
        if local is not None and not self.path_filter.accepts(path, local.size):
            return []
        remote = await self.executor.stat_remote(path)

        async with self.store.critical():
            operations = plan_path(
                path, self.store.get(path), local, remote,
                policy=self.conflict_policy,
                read_only=self.read_only,
                occupied=self._occupied()
            )
        self.operations_planned += len(operations)
        return operations

    def _raise_fatal(self) -> None:
        if self._fatal is not None:
            error, self._fatal = self._fatal, None
            raise error

    def _settle(self) -> None:
        if self.state == SyncState.RECONCILING and self.is_idle:
            self.transition(SyncState.WATCHING)

    async def run(self) -> None:
        """Process intents and operations until stopped or a fatal error occurs"""
        self.intents.bind(asyncio.get_running_loop(), self._wake)
        self._schedule_remote_poll()

        while not self._stopping:
            self._raise_fatal()
            if self._catch_up_requested:
                await self.catch_up()
                self._schedule_remote_poll()
                continue
            if self._remote_poll_due():
                self._schedule_remote_poll()
                await self.poll_remote()
                continue

            self._wake.clear()
            if await self.step():
                continue

            self._settle()
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self._idle_timeout())
            except asyncio.TimeoutError:
                self.executor.registry.purge_expired()

        self._raise_fatal()

    async def run_until_idle(self, timeout: float = 10.0) -> None:
        """Drive the reconciler until no work remains (used by tests and one-shot syncs)"""

        async def drive() -> None:
            while True:
                self._raise_fatal()
                if self._catch_up_requested:
                    await self.catch_up()
                    continue
                progressed = await self.step()
                if self._tasks:
                    await asyncio.wait(set(self._tasks), return_when=asyncio.FIRST_COMPLETED)
                    continue
                if not progressed and self.is_idle:
                    break
            self._raise_fatal()
            self._settle()

        await asyncio.wait_for(drive(), timeout=timeout)

    def get_status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "state_changed_at": self.state_changed_at.isoformat(),
            "pending_operations": self.backlog.pending_count,
            "in_flight_operations": self.backlog.in_flight_count,
            "operations_by_kind": self.backlog.count_by_kind(),
            "deferred_intents": len(self._deferred),
            "queued_intents": len(self.intents),
            "catch_ups": self.catch_ups,
            "remote_polls": self.remote_polls,
            "operations_planned": self.operations_planned,
            "operations_failed": self.operations_failed,
            "last_error": self.last_error,
        }
