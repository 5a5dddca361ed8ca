"""
Multi-directory Synchronization Engine.

Central coordinator running one supervisor task per watched directory, with
dynamic addition and removal and a bounded graceful shutdown.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from .errors import ConfigurationError
from .supervisor import DirectorySupervisor
from .watcher import NotificationSource
from ..models.config import DaemonSettings
from ..models.sync import WatchedDirectory
from ..transport.base import AuthorizationProvider, TransportClient

logger = logging.getLogger(__name__)

SourceFactory = Callable[[WatchedDirectory], Optional[NotificationSource]]
ClientFactory = Callable[[WatchedDirectory], Tuple[TransportClient, Optional[AuthorizationProvider]]]


@dataclass
class SyncEngineMetrics:
    """Engine-level counters."""

    directories_added: int = 0
    directories_removed: int = 0
    directories_failed: int = 0

    uptime_seconds: float = 0.0

    last_error_time: Optional[datetime] = None
    last_error_message: Optional[str] = None


@dataclass
class DirectoryRuntime:
    """A supervisor and the task running it."""

    supervisor: DirectorySupervisor
    task: Optional[asyncio.Task] = None
    failed: bool = False
    start_time: Optional[datetime] = None


class SyncEngine:
    """
    Runs every watched directory independently.

    A directory whose supervisor fails (for example a missing local root) is
    marked failed and logged; the others keep running.
    """

    def __init__(
        self,
        settings: DaemonSettings,
        transport: Optional[TransportClient] = None,
        authorization: Optional[AuthorizationProvider] = None,
        client_factory: Optional[ClientFactory] = None,
        source_factory: Optional[SourceFactory] = None
    ):
        """
        Initialize the synchronization engine.

        Args:
            settings: Runtime tunables
            transport: Remote transport shared by every directory
            authorization: Provider used to recover from AuthError
            client_factory: Per-directory (transport, authorization), used
                instead of the shared pair when given
            source_factory: Builds the notification source for a directory
                (watchdog when it returns None)
        """
        if transport is None and client_factory is None:
            raise ValueError("SyncEngine needs a transport or a client_factory")
        self.settings = settings
        self.transport = transport
        self.authorization = authorization
        self.client_factory = client_factory
        self.source_factory = source_factory

        self.directories: Dict[str, DirectoryRuntime] = {}
        self.directories_lock = asyncio.Lock()
        self.is_running = True

        self.metrics = SyncEngineMetrics()
        self.start_time = datetime.now()

    async def add_directory(self, directory: WatchedDirectory) -> bool:
        """
        Start synchronizing a directory.

        Returns:
            True if the directory is now running (or already was)
        """
        async with self.directories_lock:
            if not self.is_running:
                logger.warning(f"Engine is shutting down, not adding {directory.id}")
                return False
            if directory.id in self.directories:
                logger.warning(f"Directory already synchronized: {directory.id}")
                return True

            transport, authorization = self.transport, self.authorization
            if self.client_factory is not None:
                transport, authorization = self.client_factory(directory)
            source = self.source_factory(directory) if self.source_factory else None
            supervisor = DirectorySupervisor(
                directory=directory,
                transport=transport,
                settings=self.settings,
                authorization=authorization,
                source=source
            )
            runtime = DirectoryRuntime(supervisor=supervisor, start_time=datetime.now())
            runtime.task = asyncio.create_task(
                self._run_supervisor(runtime), name=f"sherry-{directory.id}"
            )
            self.directories[directory.id] = runtime
            self.metrics.directories_added += 1

        logger.info(f"Added directory {directory.id}: {directory.root}")
        return True

    async def _run_supervisor(self, runtime: DirectoryRuntime) -> None:
        directory_id = runtime.supervisor.directory.id
        try:
            await runtime.supervisor.run()
        except asyncio.CancelledError:
            raise
        except ConfigurationError as e:
            self._record_failure(runtime, f"Directory {directory_id} is misconfigured: {e}")
        except Exception as e:
            self._record_failure(runtime, f"Directory {directory_id} stopped unexpectedly: {e}")
            logger.debug("Supervisor failure details", exc_info=True)

    def _record_failure(self, runtime: DirectoryRuntime, message: str) -> None:
        logger.error(message)
        runtime.failed = True
        runtime.supervisor.last_error = message
        self.metrics.directories_failed += 1
        self.metrics.last_error_message = message
        self.metrics.last_error_time = datetime.now()

    async def remove_directory(self, directory_id: str, timeout: Optional[float] = None) -> bool:
        """
        Stop synchronizing a directory.

        Dequeuing stops immediately, in-flight operations get ``timeout``
        seconds to finish. The fingerprint file is left in place.
        """
        async with self.directories_lock:
            runtime = self.directories.pop(directory_id, None)
        if runtime is None:
            logger.warning(f"Directory not found for removal: {directory_id}")
            return False

        await self._stop_runtime(runtime, timeout)
        self.metrics.directories_removed += 1
        logger.info(f"Removed directory {directory_id}")
        return True

    async def _stop_runtime(self, runtime: DirectoryRuntime, timeout: Optional[float]) -> None:
        timeout = self.settings.shutdown_timeout_s if timeout is None else timeout
        runtime.supervisor.stop()
        if runtime.task is None or runtime.task.done():
            return
        try:
            # Add timeout protection to prevent hanging; the supervisor waits for
            # in-flight work itself, the extra second covers its cleanup
            await asyncio.wait_for(asyncio.shield(runtime.task), timeout=timeout + 1.0)
        except asyncio.TimeoutError:
            logger.warning(f"Timeout stopping {runtime.supervisor.directory.id} - forcing shutdown")
            runtime.task.cancel()
            try:
                await runtime.task
            except asyncio.CancelledError:
                pass

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """Stop every directory, bounded by the shutdown timeout"""
        async with self.directories_lock:
            self.is_running = False
            runtimes: List[DirectoryRuntime] = list(self.directories.values())
            self.directories.clear()

        logger.info(f"Shutting down {len(runtimes)} directories")
        await asyncio.gather(*(self._stop_runtime(runtime, timeout) for runtime in runtimes))
        self.metrics.uptime_seconds = (datetime.now() - self.start_time).total_seconds()
        logger.info("Stopped SyncEngine")

    def get_supervisor(self, directory_id: str) -> Optional[DirectorySupervisor]:
        runtime = self.directories.get(directory_id)
        return runtime.supervisor if runtime else None

    def get_status(self) -> Dict[str, Any]:
        directories = {}
        for directory_id, runtime in self.directories.items():
            status = runtime.supervisor.get_status()
            status["failed"] = runtime.failed
            status["start_time"] = runtime.start_time.isoformat() if runtime.start_time else None
            directories[directory_id] = status

        return {
            "is_running": self.is_running,
            "uptime_seconds": (datetime.now() - self.start_time).total_seconds(),
            "directories": directories,
            "metrics": {
                "directories_added": self.metrics.directories_added,
                "directories_removed": self.metrics.directories_removed,
                "directories_failed": self.metrics.directories_failed,
                "last_error_message": self.metrics.last_error_message,
                "last_error_time": self.metrics.last_error_time.isoformat()
                if self.metrics.last_error_time else None,
            },
        }
