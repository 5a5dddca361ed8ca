"""
Directory Event Collector.

Subscribes to filesystem notifications for one watched directory, debounces
them per path, filters the daemon's own writes and pushes the resulting
intents to the reconciler. Lost or overflowing subscriptions are reported
as gaps so the reconciler can run a full catch-up scan.
"""

import asyncio
import itertools
import logging
import os
import platform
import time
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from watchdog.observers import Observer
from watchdog.observers.polling import PollingObserver
from watchdog.events import FileSystemEventHandler, FileSystemEvent as WatchdogEvent

from .debouncer import CoalescedChange, IntentCoalescer
from .errors import LocalIOError
from .events import Intent, IntentKind, RawEvent, RawEventKind
from .filters import PathFilter
from .queue import IntentQueue
from .suppression import ExpectedWriteRegistry
from ..models.sync import FileFingerprint, WatchedDirectory
from ..storage.fingerprints import FingerprintStore
from ..storage.hashing import fingerprint_file, list_files

# Platform-specific imports for enhanced monitoring
if platform.system() == 'Darwin':
    from watchdog.observers.fsevents import FSEventsObserver

logger = logging.getLogger(__name__)

EventCallback = Callable[[List[RawEvent]], None]


class NotificationSource(ABC):
    """Platform notification subscription for one directory tree"""

    @abstractmethod
    def start(self, callback: EventCallback) -> None:
        """Begin delivering batches of RawEvents to callback (from any thread)"""

    @abstractmethod
    def stop(self) -> None:
        """Stop delivering events and release the subscription"""

    @abstractmethod
    def is_alive(self) -> bool:
        """Whether the subscription is still delivering events"""


class WatchdogNotificationSource(NotificationSource):
    """
    Notification source backed by a watchdog observer.

    Uses FSEvents on macOS, the platform default elsewhere, or a polling
    observer when native notifications are unavailable.
    """

    def __init__(self, root: Path, directory_id: str, use_polling: bool = False):
        self.root = Path(root)
        self.directory_id = directory_id
        self.use_polling = use_polling
        self.observer = None
        self.event_handler: Optional['SyncFileSystemEventHandler'] = None

    def _create_observer(self):
        if self.use_polling:
            return PollingObserver()
        if platform.system() == 'Darwin':
            return FSEventsObserver()
        return Observer()

    def start(self, callback: EventCallback) -> None:
        if self.observer is not None:
            self.stop()

        self.event_handler = SyncFileSystemEventHandler(self.directory_id, callback)
        self.observer = self._create_observer()
        self.observer.schedule(self.event_handler, str(self.root), recursive=True)
        self.observer.start()
        logger.info(f"Started {type(self.observer).__name__} for {self.root}")

    def stop(self) -> None:
        if self.event_handler:
            self.event_handler.detach()
        if self.observer is None:
            return
        try:
            self.observer.stop()
            self.observer.join(timeout=5.0)
        except RuntimeError as e:
            logger.warning(f"Error stopping observer for {self.root}: {e}")
        finally:
            self.observer = None

    def is_alive(self) -> bool:
        return self.observer is not None and self.observer.is_alive()


class SyncFileSystemEventHandler(FileSystemEventHandler):
    """
    Watchdog event handler that normalizes events into RawEvents.

    Runs on the observer thread; it only translates and forwards, never
    touches shared state.
    """

    _move_ids = itertools.count(1)

    def __init__(self, directory_id: str, callback: EventCallback):
        super().__init__()
        self.directory_id = directory_id
        self._callback: Optional[EventCallback] = callback
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def detach(self) -> None:
        self._callback = None

    def on_any_event(self, event: WatchdogEvent) -> None:
        callback = self._callback
        if callback is None:
            return

        raw_events = self.translate(event)
        if raw_events:
            callback(raw_events)

    def translate(self, event: WatchdogEvent) -> List[RawEvent]:
        src_path = Path(os.fsdecode(event.src_path))
        is_directory = event.is_directory
        event_type = event.event_type

        if event_type == 'created':
            return [RawEvent.created(src_path, self.directory_id, is_directory=is_directory)]
        if event_type in ('modified', 'closed'):
            return [RawEvent.modified(src_path, self.directory_id, is_directory=is_directory)]
        if event_type == 'deleted':
            return [RawEvent.removed(src_path, self.directory_id, is_directory=is_directory)]
        if event_type == 'moved':
            dest_path = Path(os.fsdecode(event.dest_path))
            return list(RawEvent.moved(
                src_path, dest_path, self.directory_id,
                move_id=next(self._move_ids), is_directory=is_directory
            ))
        # opened / closed_no_write carry no content change
        return []


class DirectoryEventCollector:
    """
    Event collection for one watched directory.

    Notification handling (``feed``) is synchronous and in-memory only.
    Hashing and directory expansion happen in the flush loop, off the event
    loop thread.
    """

    def __init__(
        self,
        directory: WatchedDirectory,
        intents: IntentQueue,
        store: FingerprintStore,
        registry: ExpectedWriteRegistry,
        path_filter: PathFilter,
        on_gap: Callable[[str], None],
        is_busy: Callable[[str], bool] = lambda path: False,
        source: Optional[NotificationSource] = None,
        debounce_ms: int = 500,
        max_pending_paths: int = 10000,
        health_check_interval_s: float = 2.0,
        use_polling: bool = False,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize the collector.

        Args:
            directory: Watched directory definition
            intents: Queue the reconciler consumes
            store: Fingerprint baseline (read only here)
            registry: Expected executor writes to suppress
            path_filter: Acceptance rules for paths
            on_gap: Called with a reason when notifications may have been lost
            is_busy: Whether the reconciler has queued work for a path
            source: Notification source (watchdog by default)
            debounce_ms: Quiet period per path
            max_pending_paths: Pending path count that counts as overflow
            health_check_interval_s: How often to verify the subscription
            use_polling: Use the polling observer for the default source
            clock: Monotonic time source
        """
        self.directory = directory
        self.intents = intents
        self.store = store
        self.registry = registry
        self.path_filter = path_filter
        self.on_gap = on_gap
        self.is_busy = is_busy
        self.source = source or WatchdogNotificationSource(
            directory.root, directory.id, use_polling=use_polling
        )
        self.debounce_ms = debounce_ms
        self.max_pending_paths = max_pending_paths
        self.health_check_interval_s = health_check_interval_s
        self.clock = clock

        self.coalescer = IntentCoalescer(
            window_s=debounce_ms / 1000.0,
            is_known=self._is_known,
            clock=clock
        )

        self._roots = (directory.root, directory.root.resolve())
        self._move_sources: Dict[int, Tuple[str, bool]] = {}
        self._directory_events: List[Tuple[str, str, Optional[str]]] = []

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._flush_task: Optional[asyncio.Task] = None
        self._is_monitoring = False
        self._gap_reported = False
        self._monitor_start_time: Optional[datetime] = None
        self._last_health_check = 0.0

        # Metrics
        self.events_received = 0
        self.intents_emitted = 0
        self.intents_suppressed = 0
        self.gaps_detected = 0

    def _is_known(self, path: str) -> bool:
        return path in self.store or self.is_busy(path)

    async def start(self) -> None:
        """Subscribe to notifications and start the flush loop"""
        if self._is_monitoring:
            return

        self._loop = asyncio.get_running_loop()
        self.source.start(self._deliver)
        self._is_monitoring = True
        self._monitor_start_time = datetime.now()
        self._last_health_check = self.clock()
        self._flush_task = asyncio.create_task(self._flush_loop())
        logger.info(f"Collecting events for {self.directory.id} at {self.directory.root} "
                    f"(debounce {self.debounce_ms}ms)")

    async def stop(self) -> None:
        if not self._is_monitoring:
            return
        self._is_monitoring = False

        if self._flush_task and not self._flush_task.done():
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass

        await asyncio.to_thread(self.source.stop)
        logger.info(f"Stopped collecting events for {self.directory.id}")

    def _deliver(self, events: List[RawEvent]) -> None:
        """Hand a batch from the observer thread to the event loop"""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self.feed, events)
        except RuntimeError as e:
            # Event loop might be closing
            if "closed" not in str(e).lower():
                logger.error(f"Failed to schedule events on loop: {e}")

    def _relative(self, path: Path) -> Optional[str]:
        for root in self._roots:
            try:
                rel = path.relative_to(root).as_posix()
            except ValueError:
                continue
            return None if rel in ('', '.') else rel
        return None

    def feed(self, events: List[RawEvent], now: Optional[float] = None) -> None:
        """Record raw events; never blocks on I/O"""
        now = self.clock() if now is None else now

        for event in events:
            self.events_received += 1
            rel = self._relative(event.path)

            if event.kind == RawEventKind.RENAMED_FROM:
                self._move_sources[event.move_id] = (rel, event.is_directory)
                continue

            if event.kind == RawEventKind.RENAMED_TO:
                source = self._move_sources.pop(event.move_id, None)
                src = source[0] if source else None
                if event.is_directory:
                    self._record_directory_move(src, rel)
                else:
                    self._observe_move(src, rel, now)
                continue

            if rel is None:
                continue

            if event.is_directory:
                if event.kind == RawEventKind.CREATED:
                    self._directory_events.append(('create', rel, None))
                elif event.kind == RawEventKind.REMOVED:
                    self._directory_events.append(('remove', rel, None))
                continue

            if self.path_filter.accepts_path(rel):
                self.coalescer.observe(rel, event.kind, now)

        if self.coalescer.pending_count > self.max_pending_paths:
            logger.warning(f"Pending changes for {self.directory.id} exceeded "
                           f"{self.max_pending_paths} paths")
            self._report_gap("event overflow")

    def _observe_move(self, src: Optional[str], dst: Optional[str], now: float) -> None:
        src_ok = src is not None and self.path_filter.accepts_path(src)
        dst_ok = dst is not None and self.path_filter.accepts_path(dst)

        if src_ok and dst_ok:
            self.coalescer.observe_move(src, dst, now)
        elif dst_ok:
            # Moved in from outside the tree or from an ignored temp file
            self.coalescer.observe(dst, RawEventKind.CREATED, now)
        elif src_ok:
            self.coalescer.observe(src, RawEventKind.REMOVED, now)

    def _record_directory_move(self, src: Optional[str], dst: Optional[str]) -> None:
        if src is not None and dst is not None:
            self._directory_events.append(('move', src, dst))
        elif dst is not None:
            self._directory_events.append(('create', dst, None))
        elif src is not None:
            self._directory_events.append(('remove', src, None))

    async def _expand_directory_events(self, now: float) -> None:
        """Turn directory-level events into per-file events"""
        events, self._directory_events = self._directory_events, []

        for action, rel, dst in events:
            if action == 'create':
                for path in await asyncio.to_thread(list_files, self.directory.root, rel):
                    if self.path_filter.accepts_path(path):
                        self.coalescer.observe(path, RawEventKind.CREATED, now)

            elif action == 'remove':
                prefix = f"{rel}/"
                known = set(self.store.paths_under(rel))
                known.update(p for p in self.coalescer.pending_paths() if p.startswith(prefix))
                for path in sorted(known):
                    self.coalescer.observe(path, RawEventKind.REMOVED, now)

            elif action == 'move':
                moved = await asyncio.to_thread(list_files, self.directory.root, dst)
                carried = set()
                for new_path in moved:
                    old_path = f"{rel}{new_path[len(dst):]}"
                    carried.add(old_path)
                    self._observe_move(old_path, new_path, now)
                # Known files that did not arrive at the destination are gone
                for old_path in self.store.paths_under(rel):
                    if old_path not in carried:
                        self.coalescer.observe(old_path, RawEventKind.REMOVED, now)

    async def flush(self, now: Optional[float] = None) -> int:
        """
        Emit intents for every path whose debounce window has elapsed.

        Returns:
            Number of intents pushed to the queue
        """
        now = self.clock() if now is None else now

        if self._directory_events:
            await self._expand_directory_events(now)

        changes = self.coalescer.pop_due(now)
        if not changes:
            return 0

        to_inspect = [change.path for change in changes if change.kind != IntentKind.DELETE]
        current = await asyncio.to_thread(self._inspect, to_inspect) if to_inspect else {}

        pushed = 0
        for intent in self._resolve(changes, current):
            intent.directory_id = self.directory.id
            if not self.intents.push(intent):
                self._report_gap("intent queue overflow")
                break
            pushed += 1
            logger.debug(f"Intent {intent}")

        self.intents_emitted += pushed
        return pushed

    def _inspect(self, paths: List[str]) -> Dict[str, Optional[FileFingerprint]]:
        result: Dict[str, Optional[FileFingerprint]] = {}
        for path in paths:
            try:
                result[path] = fingerprint_file(self.directory.root, path)
            except LocalIOError as e:
                logger.warning(f"Cannot inspect {path}: {e}")
                result[path] = None
        return result

    def _resolve(
        self,
        changes: List[CoalescedChange],
        current: Dict[str, Optional[FileFingerprint]]
    ) -> List[Intent]:
        """Apply suppression and size rules, then fold delete/create pairs into renames"""
        intents: List[Intent] = []

        for change in changes:
            if change.kind == IntentKind.DELETE:
                if self.registry.consume_removal(change.path):
                    self.intents_suppressed += 1
                    continue
                intents.append(Intent.delete(change.path))
                continue

            fingerprint = current.get(change.path)
            if fingerprint is not None and not self.path_filter.accepts(change.path, fingerprint.size):
                logger.info(f"Skipping {change.path}: exceeds size limit of source")
                if change.kind == IntentKind.RENAME:
                    intents.append(Intent.delete(change.old_path))
                continue

            if fingerprint is not None and self.registry.consume_write(change.path, fingerprint.content_hash):
                if change.kind == IntentKind.RENAME:
                    self.registry.consume_removal(change.old_path)
                self.intents_suppressed += 1
                continue

            intents.append(Intent(
                kind=change.kind,
                path=change.path,
                old_path=change.old_path,
                content_hash=fingerprint.content_hash if fingerprint else None
            ))

        return self._fold_renames(intents)

    def _fold_renames(self, intents: List[Intent]) -> List[Intent]:
        deleted_by_hash: Dict[str, List[Intent]] = {}
        for intent in intents:
            if intent.kind != IntentKind.DELETE:
                continue
            baseline = self.store.get(intent.path)
            if baseline is not None:
                deleted_by_hash.setdefault(baseline.content_hash, []).append(intent)

        if not deleted_by_hash:
            return intents

        folded: Dict[int, Intent] = {}
        consumed = set()
        for index, intent in enumerate(intents):
            if intent.kind != IntentKind.CREATE or intent.content_hash is None:
                continue
            candidates = deleted_by_hash.get(intent.content_hash)
            if not candidates:
                continue
            deleted = candidates.pop(0)
            consumed.add(id(deleted))
            folded[index] = Intent.rename(deleted.path, intent.path, content_hash=intent.content_hash)
            logger.debug(f"Folded delete of {deleted.path} and create of {intent.path} into rename")

        return [
            folded.get(index, intent)
            for index, intent in enumerate(intents)
            if id(intent) not in consumed
        ]

    async def _flush_loop(self) -> None:
        interval = max(self.debounce_ms / 4000.0, 0.05)
        while self._is_monitoring:
            await asyncio.sleep(interval)
            try:
                await self.flush()
                if self.clock() - self._last_health_check >= self.health_check_interval_s:
                    self._last_health_check = self.clock()
                    await self.check_health()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error flushing events for {self.directory.id}: {e}", exc_info=True)

    async def check_health(self) -> Optional[str]:
        """
        Detect lost subscriptions and overflow.

        Returns:
            The gap reason when one was detected, None when healthy
        """
        reason = None
        if not self.directory.root.is_dir():
            reason = "watched root disappeared"
        elif not self.source.is_alive():
            reason = "notification source stopped"
            try:
                await asyncio.to_thread(self.source.stop)
                self.source.start(self._deliver)
            except OSError as e:
                logger.error(f"Failed to restart notifications for {self.directory.id}: {e}")
        elif self.intents.overflowed:
            reason = "intent queue overflow"

        if reason is None:
            self._gap_reported = False
            return None

        if not self._gap_reported:
            self._report_gap(reason)
        return reason

    def _report_gap(self, reason: str) -> None:
        self.gaps_detected += 1
        self._gap_reported = True
        dropped = self.coalescer.clear()
        self._directory_events.clear()
        self._move_sources.clear()
        self.intents.clear()
        self.intents.reset_overflow()
        logger.warning(f"Notification gap for {self.directory.id} ({reason}); "
                       f"dropped {dropped} pending paths, requesting catch-up")
        self.on_gap(reason)

    @property
    def is_monitoring(self) -> bool:
        return self._is_monitoring

    def get_status(self) -> Dict[str, Any]:
        return {
            "is_monitoring": self._is_monitoring,
            "source_alive": self.source.is_alive(),
            "debounce_ms": self.debounce_ms,
            "pending_paths": self.coalescer.pending_count,
            "events_received": self.events_received,
            "intents_emitted": self.intents_emitted,
            "intents_suppressed": self.intents_suppressed,
            "gaps_detected": self.gaps_detected,
            "monitor_start_time": self._monitor_start_time.isoformat() if self._monitor_start_time else None,
        }
