"""
Configuration loading and management.

Reads ``<config_dir>/config.json`` (creating it with defaults when missing),
applies environment overrides, validates it and turns watchers into
WatchedDirectory definitions. ConfigReloader applies file changes to a
running engine.
"""

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from core.models.config import SherryConfig, SourceRules, WatcherConfig
from core.models.sync import WatchedDirectory
from core.sync.engine import SyncEngine
from core.sync.errors import ConfigurationError
from .defaults import CONFIG_FILE, DEFAULT_SOURCE_RULES, ENV_VAR_MAPPING, get_default_config

logger = logging.getLogger(__name__)


class ConfigurationLoader:
    """Load and manage the daemon configuration file"""

    def __init__(self, config_dir: Path):
        self.config_dir = Path(config_dir).expanduser()
        self.config_file = self.config_dir / CONFIG_FILE

    def initialize(self) -> SherryConfig:
        """Create the config directory and a default config file when missing"""
        self.config_dir.mkdir(parents=True, exist_ok=True)
        if not self.config_file.exists():
            config = SherryConfig(**get_default_config())
            self.save(config)
            logger.info(f"Created default configuration at {self.config_file}")
            return config
        return self.load()

    def load(self) -> SherryConfig:
        """
        Load and validate the configuration.

        Raises:
            ConfigurationError: When the file is missing, unreadable or invalid
        """
        try:
            with open(self.config_file, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except FileNotFoundError as e:
            raise ConfigurationError(f"No configuration at {self.config_file}; run 'sherry run' once") from e
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Failed to read {self.config_file}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"{self.config_file} must contain a JSON object")

        data = self._apply_env_overrides(data)
        try:
            return SherryConfig(**data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration in {self.config_file}: {e}") from e

    def _apply_env_overrides(self, config_data: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides to configuration"""
        for env_var, config_path in ENV_VAR_MAPPING.items():
            env_value = os.getenv(env_var)
            if env_value is not None:
                self._set_nested_value(config_data, config_path, env_value)

        return config_data

    def _set_nested_value(self, data: Dict[str, Any], path: str, value: str) -> None:
        """Set nested dictionary value using dot notation path"""
        keys = path.split('.')
        current = data

        for key in keys[:-1]:
            if key not in current:
                current[key] = {}
            current = current[key]

        current[keys[-1]] = value

    def save(self, config: SherryConfig) -> None:
        """Write the configuration atomically"""
        self.config_dir.mkdir(parents=True, exist_ok=True)
        temp_file = self.config_file.with_suffix('.tmp')
        with open(temp_file, 'w', encoding='utf-8') as f:
            json.dump(config.to_dict(), f, indent=2, ensure_ascii=False)
        os.replace(temp_file, self.config_file)
        logger.info(f"Saved configuration to {self.config_file}")

    def directory_definitions(self, config: Optional[SherryConfig] = None) -> Dict[str, WatchedDirectory]:
        """WatchedDirectory per watcher, keyed by watcher id"""
        config = config or self.load()
        definitions: Dict[str, WatchedDirectory] = {}
        for watcher in config.watchers:
            source = config.sources[watcher.source]
            definitions[watcher.watcher_id] = WatchedDirectory(
                id=watcher.watcher_id,
                root=watcher.local_path,
                remote_id=source.id,
                user_id=watcher.user_id,
                source=source
            )
        return definitions

    def add_watcher(
        self,
        source_id: str,
        local_path: Path,
        user_id: str,
        rules: Optional[Dict[str, Any]] = None
    ) -> WatcherConfig:
        """Register a local directory for a source, adding the source when new"""
        config = self.load()
        sources = dict(config.sources)
        if source_id not in sources:
            source_data = {**DEFAULT_SOURCE_RULES, **(rules or {}), "id": source_id}
            sources[source_id] = SourceRules(**source_data)

        watcher = WatcherConfig(
            source=source_id,
            local_path=Path(local_path).expanduser().absolute(),
            user_id=user_id
        )
        try:
            updated = SherryConfig(
                api_url=config.api_url,
                sources=sources,
                watchers=config.watchers + [watcher],
                webhooks=config.webhooks
            )
        except ValidationError as e:
            raise ConfigurationError(f"Cannot add watcher: {e}") from e

        self.save(updated)
        return watcher

    def remove_watcher(self, watcher_id: str) -> bool:
        """Remove a watcher by id; returns False when it does not exist"""
        config = self.load()
        remaining = [watcher for watcher in config.watchers if watcher.watcher_id != watcher_id]
        if len(remaining) == len(config.watchers):
            return False
        config.watchers = remaining
        self.save(config)
        return True


def diff_definitions(
    current: Dict[str, WatchedDirectory],
    desired: Dict[str, WatchedDirectory]
) -> Tuple[List[str], List[WatchedDirectory]]:
    """
    Compare running and configured directories.

    Returns:
        (ids to remove, definitions to add); a changed definition appears in both
    """
    to_remove = [
        directory_id for directory_id, directory in current.items()
        if directory_id not in desired
        or desired[directory_id].definition_key() != directory.definition_key()
    ]
    to_add = [
        directory for directory_id, directory in desired.items()
        if directory_id not in current or directory_id in to_remove
    ]
    return to_remove, to_add


class ConfigFileEventHandler(FileSystemEventHandler):
    """Forwards changes of the config file to the reloader"""

    def __init__(self, config_file: Path, callback):
        super().__init__()
        self.config_file = config_file
        self.callback = callback

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type not in ('created', 'modified', 'moved', 'closed'):
            return
        paths = [os.fsdecode(event.src_path)]
        if event.event_type == 'moved':
            paths.append(os.fsdecode(event.dest_path))
        if any(Path(path).name == self.config_file.name for path in paths):
            self.callback()


class ConfigReloader:
    """
    Applies configuration file changes to a running engine.

    Removed or changed watchers are stopped, new or changed ones are started.
    An invalid file is logged and the running set is kept.
    """

    def __init__(self, loader: ConfigurationLoader, engine: SyncEngine, debounce_s: float = 0.5):
        self.loader = loader
        self.engine = engine
        self.debounce_s = debounce_s

        self.current: Dict[str, WatchedDirectory] = {}
        self.observer = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._pending: Optional[asyncio.TimerHandle] = None
        self._reload_task: Optional[asyncio.Task] = None
        self.reloads = 0

    async def apply(self, config: Optional[SherryConfig] = None) -> Tuple[List[str], List[str]]:
        """
        Reconcile the engine with the configuration.

        Returns:
            (removed ids, added ids)
        """
        desired = self.loader.directory_definitions(config)
        to_remove, to_add = diff_definitions(self.current, desired)

        for directory_id in to_remove:
            await self.engine.remove_directory(directory_id)
            self.current.pop(directory_id, None)
        for directory in to_add:
            if await self.engine.add_directory(directory):
                self.current[directory.id] = directory

        if to_remove or to_add:
            logger.info(f"Configuration applied: {len(to_remove)} removed, {len(to_add)} added")
        return to_remove, [directory.id for directory in to_add]

    async def reload(self) -> bool:
        """Load the file and apply it; False when the file is invalid"""
        self.reloads += 1
        try:
            config = await asyncio.to_thread(self.loader.load)
        except ConfigurationError as e:
            logger.error(f"Ignoring invalid configuration: {e}")
            return False
        await self.apply(config)
        return True

    def start(self) -> None:
        """Watch the config directory for changes of the config file"""
        self._loop = asyncio.get_running_loop()
        handler = ConfigFileEventHandler(self.loader.config_file, self._on_change)
        self.observer = Observer()
        self.observer.schedule(handler, str(self.loader.config_dir), recursive=False)
        self.observer.start()
        logger.info(f"Watching {self.loader.config_file} for changes")

    def _on_change(self) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._schedule_reload)

    def _schedule_reload(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
        self._pending = self._loop.call_later(self.debounce_s, self._start_reload)

    def _start_reload(self) -> None:
        self._pending = None
        self._reload_task = asyncio.create_task(self.reload())

    async def stop(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None
        if self._reload_task is not None and not self._reload_task.done():
            await self._reload_task
        if self.observer is not None:
            self.observer.stop()
            await asyncio.to_thread(self.observer.join, 5.0)
            self.observer = None
