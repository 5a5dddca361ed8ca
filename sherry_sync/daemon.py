"""
sherry daemon.

Wires configuration, transport, authorization and the sync engine together,
writes a periodic status snapshot for ``sherry status`` and shuts down
gracefully on SIGINT/SIGTERM.
"""

import asyncio
import json
import logging
import os
import re
import signal
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

import aiofiles

from config.defaults import LOG_FORMAT
from config.loader import ConfigReloader, ConfigurationLoader
from core.models.config import DaemonSettings
from core.models.sync import WatchedDirectory
from core.sync.engine import SyncEngine
from core.transport.auth import FileAuthorizationProvider, initialize_auth_file
from core.transport.base import AuthorizationProvider, TransportClient
from core.transport.http import HttpTransportClient

logger = logging.getLogger(__name__)

STATUS_INTERVAL_S = 5.0


def log_file_name(now: Optional[datetime] = None) -> str:
    """Log file named after the UTC start time, e.g. 2024-01-01T12-00-00-000000-00-00.log"""
    now = now or datetime.now(timezone.utc)
    return f"{re.sub(r'[:.+ ]', '-', now.isoformat())}.log"


def setup_logging(settings: DaemonSettings) -> Optional[str]:
    """
    Configure root logging once for the daemon.

    Returns:
        Path of the log file, None when file logging is disabled
    """
    handlers = [logging.StreamHandler()]
    log_path = None
    if settings.log_to_file:
        settings.logs_dir.mkdir(parents=True, exist_ok=True)
        log_path = str(settings.logs_dir / log_file_name())
        handlers.append(logging.FileHandler(log_path, encoding='utf-8'))

    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True
    )
    # Observer threads are chatty at debug level
    logging.getLogger('watchdog').setLevel(logging.WARNING)
    return log_path


class SherryDaemon:
    """Long-running synchronization daemon"""

    def __init__(self, settings: Optional[DaemonSettings] = None):
        self.settings = settings or DaemonSettings()
        self.loader = ConfigurationLoader(self.settings.config_dir)
        self.config = None

        self._clients: Dict[str, Tuple[TransportClient, AuthorizationProvider]] = {}
        self.engine = SyncEngine(settings=self.settings, client_factory=self._client_for)
        self.reloader = ConfigReloader(self.loader, self.engine)

        self._stop_event = asyncio.Event()
        self._status_task: Optional[asyncio.Task] = None
        self.start_time: Optional[datetime] = None

    def _client_for(self, directory: WatchedDirectory) -> Tuple[TransportClient, AuthorizationProvider]:
        """One HTTP client and authorization provider per user"""
        if directory.user_id not in self._clients:
            authorization = FileAuthorizationProvider(self.settings.config_dir, directory.user_id)
            client = HttpTransportClient(
                self.config.api_url,
                authorization=authorization,
                timeout=self.settings.request_timeout_s
            )
            authorization.bind(client.authenticate)
            self._clients[directory.user_id] = (client, authorization)
        return self._clients[directory.user_id]

    def request_stop(self) -> None:
        logger.info("🛑 Received shutdown signal")
        self._stop_event.set()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError):
                # Not supported on this platform; KeyboardInterrupt still works
                logger.debug(f"Cannot install handler for {sig.name}")

    async def start(self) -> None:
        """Load configuration and start every configured directory"""
        self.start_time = datetime.now()
        self.config = await asyncio.to_thread(self.loader.initialize)
        await asyncio.to_thread(initialize_auth_file, self.settings.config_dir)

        await self.reloader.apply(self.config)
        self.reloader.start()
        self._status_task = asyncio.create_task(self._status_loop())

        logger.info(f"✅ sherry daemon ready: {len(self.engine.directories)} directories, "
                    f"api {self.config.api_url}")

    async def run(self) -> None:
        """Run until a shutdown signal arrives"""
        self._install_signal_handlers()
        await self.start()
        try:
            await self._stop_event.wait()
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        logger.info("🔌 Shutting down sherry daemon...")
        await self.reloader.stop()

        if self._status_task and not self._status_task.done():
            self._status_task.cancel()
            try:
                await self._status_task
            except asyncio.CancelledError:
                pass

        try:
            await asyncio.wait_for(
                self.engine.shutdown(self.settings.shutdown_timeout_s),
                timeout=self.settings.shutdown_timeout_s + 5.0
            )
        except asyncio.TimeoutError:
            logger.warning("Timeout waiting for directories to stop - forcing shutdown")

        await self.write_status(running=False)
        logger.info("✅ sherry daemon shutdown complete")

    def get_status(self, running: bool = True) -> Dict[str, Any]:
        status = self.engine.get_status()
        status.update({
            "pid": os.getpid(),
            "running": running,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "updated_at": datetime.now().isoformat(),
            "config_reloads": self.reloader.reloads,
        })
        return status

    async def write_status(self, running: bool = True) -> None:
        """Write the status snapshot atomically"""
        status_file = self.settings.status_file
        temp_file = status_file.with_suffix('.tmp')
        payload = json.dumps(self.get_status(running), indent=2, default=str)
        status_file.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(temp_file, 'w', encoding='utf-8') as f:
            await f.write(payload)
        os.replace(temp_file, status_file)

    async def _status_loop(self) -> None:
        while True:
            try:
                await self.write_status()
            except OSError as e:
                logger.warning(f"Failed to write status file: {e}")
            await asyncio.sleep(STATUS_INTERVAL_S)


async def main(settings: Optional[DaemonSettings] = None) -> None:
    """Main entry point for the daemon"""
    settings = settings or DaemonSettings()
    log_path = setup_logging(settings)
    if log_path:
        logger.info(f"Logs initialized at {log_path}")

    daemon = SherryDaemon(settings)
    await daemon.run()
