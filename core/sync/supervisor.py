"""
Directory Supervisor.

Wires the per-directory components together and drives the reconciler
through its lifecycle: catch-up, watching, error backoff and pauses while
authorization is missing.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from .errors import AuthError, ConfigurationError, TransientNetworkError
from .executor import RetryConfig, SyncExecutor
from .filters import PathFilter
from .queue import IntentQueue, OperationBacklog
from .reconciler import Reconciler
from .suppression import ExpectedWriteRegistry
from .watcher import DirectoryEventCollector, NotificationSource
from ..models.config import DaemonSettings
from ..models.sync import AuthorizationState, SyncState, WatchedDirectory
from ..storage.fingerprints import FingerprintStore
from ..storage.journal import OperationJournal
from ..transport.base import AuthorizationProvider, TransportClient

logger = logging.getLogger(__name__)


class DirectorySupervisor:
    """
    Owns the collector, reconciler and executor of one watched directory.

    ``run`` only returns when stopped. A missing root raises
    ConfigurationError; every other failure is handled here so one
    directory never affects another.
    """

    def __init__(
        self,
        directory: WatchedDirectory,
        transport: TransportClient,
        settings: DaemonSettings,
        authorization: Optional[AuthorizationProvider] = None,
        source: Optional[NotificationSource] = None
    ):
        self.directory = directory
        self.transport = transport
        self.settings = settings
        self.authorization = authorization

        self.store = FingerprintStore(settings.hashes_dir, directory.id, directory.root)
        self.journal = OperationJournal(settings.journal_dir, directory.id)
        self.registry = ExpectedWriteRegistry(ttl_s=settings.suppression_ttl_s)
        self.path_filter = PathFilter(directory.source)
        self.intents = IntentQueue(max_size=settings.max_queued_intents, directory_id=directory.id)
        self.backlog = OperationBacklog()

        self.executor = SyncExecutor(
            directory=directory,
            store=self.store,
            journal=self.journal,
            transport=transport,
            registry=self.registry,
            retry=RetryConfig.from_settings(settings)
        )
        self.reconciler = Reconciler(
            directory=directory,
            store=self.store,
            journal=self.journal,
            executor=self.executor,
            intents=self.intents,
            backlog=self.backlog,
            path_filter=self.path_filter,
            conflict_policy=settings.conflict_policy,
            max_concurrent_operations=settings.max_concurrent_operations,
            remote_poll_interval_s=settings.remote_poll_interval_s
        )
        self.collector = DirectoryEventCollector(
            directory=directory,
            intents=self.intents,
            store=self.store,
            registry=self.registry,
            path_filter=self.path_filter,
            on_gap=self.reconciler.request_catch_up,
            is_busy=self.backlog.is_busy,
            source=source,
            debounce_ms=settings.debounce_ms,
            max_pending_paths=settings.max_pending_paths,
            health_check_interval_s=settings.health_check_interval_s,
            use_polling=settings.use_polling
        )

        self._stop_event = asyncio.Event()
        self.error_backoffs = 0
        self.last_error: Optional[str] = None

    @property
    def state(self) -> SyncState:
        return self.reconciler.state

    def stop(self) -> None:
        """Stop dequeuing work; ``run`` returns once in-flight work settles"""
        self._stop_event.set()
        self.reconciler.stop()

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    async def _sleep(self, delay: float) -> bool:
        """Interruptible sleep; returns True when stopped meanwhile"""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    async def run(self) -> None:
        if not self.directory.root.is_dir():
            raise ConfigurationError(
                f"Local path of {self.directory.id} does not exist: {self.directory.root}"
            )

        await asyncio.to_thread(self.store.load)
        await self.collector.start()
        logger.info(f"Supervising {self.directory.id} ({self.directory.root} -> {self.directory.remote_id})")

        backoff = self.settings.error_backoff_initial_s
        try:
            while not self.stopping:
                try:
                    await self.reconciler.catch_up()
                    self.directory.authorization = AuthorizationState.AUTHORIZED
                    self.directory.last_synced_at = self.store.last_synced_at
                    backoff = self.settings.error_backoff_initial_s
                    await self.reconciler.run()
                except AuthError as e:
                    await self._pause_unauthorized(e)
                except ConfigurationError:
                    raise
                except Exception as e:
                    self.error_backoffs += 1
                    self.last_error = str(e)
                    self.reconciler.transition(SyncState.ERROR_BACKOFF)
                    logger.error(f"Sync of {self.directory.id} failed, retrying in {backoff:.0f}s: {e}",
                                 exc_info=not isinstance(e, TransientNetworkError))
                    if await self._sleep(backoff):
                        break
                    backoff = min(backoff * 2, self.settings.error_backoff_max_s)
        finally:
            await self._shutdown()

    async def _pause_unauthorized(self, error: AuthError) -> None:
        self.last_error = str(error)
        self.reconciler.transition(SyncState.UNAUTHORIZED)
        self.directory.authorization = AuthorizationState.UNAUTHORIZED
        logger.warning(f"{self.directory.id} is not authorized, pausing: {error}")

        while not self.stopping:
            if self.authorization is not None:
                try:
                    await asyncio.to_thread(self.authorization.reauthorize)
                    logger.info(f"Reauthorized {self.directory.id}")
                    return
                except (AuthError, TransientNetworkError) as e:
                    logger.warning(f"Reauthorization for {self.directory.id} failed: {e}")
            if await self._sleep(self.settings.auth_retry_interval_s):
                return
            if self.authorization is None:
                # Credentials may have been refreshed outside the daemon
                return

    async def _shutdown(self) -> None:
        self.reconciler.stop()
        await self.collector.stop()
        finished = await self.reconciler.wait_idle(timeout=self.settings.shutdown_timeout_s)
        if not finished:
            logger.warning(f"Stopped {self.directory.id} with operations still in flight")
        if self.store.is_dirty:
            await self.store.persist()
        logger.info(f"Stopped supervising {self.directory.id}")

    def get_status(self) -> Dict[str, Any]:
        return {
            "id": self.directory.id,
            "root": str(self.directory.root),
            "remote_id": self.directory.remote_id,
            "authorization": self.directory.authorization.value,
            "error_backoffs": self.error_backoffs,
            "last_error": self.last_error,
            "reconciler": self.reconciler.get_status(),
            "collector": self.collector.get_status(),
            "store": self.store.get_stats(),
            "executor": self.executor.get_stats(),
            "suppression": self.registry.get_stats(),
        }
