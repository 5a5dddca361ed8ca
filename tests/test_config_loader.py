"""
Unit tests for configuration loading and live reloading.
"""

import asyncio
import json
import shutil
import tempfile
from pathlib import Path
from unittest.mock import AsyncMock, Mock

import pytest

from config.defaults import get_default_config
from config.loader import ConfigReloader, ConfigurationLoader, ConfigFileEventHandler, diff_definitions
from core.models.config import SourceRules
from core.models.sync import WatchedDirectory
from core.sync.errors import ConfigurationError


class TestConfigurationLoader:
    """Test ConfigurationLoader functionality"""

    def setup_method(self):
        """Setup test environment"""
        self.temp_dir = Path(tempfile.mkdtemp())
        self.loader = ConfigurationLoader(self.temp_dir / "config")

    def teardown_method(self):
        """Cleanup test environment"""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def write_config(self, data):
        self.loader.config_dir.mkdir(parents=True, exist_ok=True)
        self.loader.config_file.write_text(json.dumps(data))

    def test_initialize_creates_default_file(self):
        """Test that a missing config file is created with defaults"""
        config = self.loader.initialize()

        assert self.loader.config_file.exists()
        assert config.watchers == []
        assert json.loads(self.loader.config_file.read_text()) == get_default_config()

    def test_load_missing_file_raises(self):
        with pytest.raises(ConfigurationError):
            self.loader.load()

    def test_load_invalid_json_raises(self):
        self.loader.config_dir.mkdir(parents=True)
        self.loader.config_file.write_text("{oops")

        with pytest.raises(ConfigurationError):
            self.loader.load()

    def test_load_invalid_content_raises(self):
        self.write_config({"api_url": "not-a-url"})

        with pytest.raises(ConfigurationError):
            self.loader.load()

    def test_environment_overrides_api_url(self, monkeypatch):
        """Test SHERRY_API_URL takes precedence over the file"""
        self.write_config({"api_url": "http://file.example.com"})
        monkeypatch.setenv("SHERRY_API_URL", "https://env.example.com")

        assert self.loader.load().api_url == "https://env.example.com"

    def test_directory_definitions(self):
        """Test that watchers become watched directories bound to their source"""
        local = self.temp_dir / "docs"
        self.write_config({
            "sources": {"s1": {"access": "read"}},
            "watchers": [{"source": "s1", "local_path": str(local), "user_id": "u1"}],
        })

        definitions = self.loader.directory_definitions()
        [(directory_id, directory)] = definitions.items()

        assert directory.id == directory_id
        assert directory.root == local
        assert directory.remote_id == "s1"
        assert directory.user_id == "u1"
        assert directory.source.is_read_only

    def test_add_and_remove_watcher(self):
        """Test that add_watcher registers a source once and remove_watcher drops it"""
        self.loader.initialize()
        first = self.temp_dir / "one"
        second = self.temp_dir / "two"

        watcher = self.loader.add_watcher("s1", first, "u1", rules={"access": "read"})
        self.loader.add_watcher("s1", second, "u1")

        config = self.loader.load()
        assert len(config.watchers) == 2
        assert config.sources["s1"].is_read_only

        assert self.loader.remove_watcher(watcher.watcher_id) is True
        assert self.loader.remove_watcher(watcher.watcher_id) is False
        assert len(self.loader.load().watchers) == 1

    def test_add_duplicate_watcher_raises(self):
        self.loader.initialize()
        self.loader.add_watcher("s1", self.temp_dir / "one", "u1")

        with pytest.raises(ConfigurationError):
            self.loader.add_watcher("s1", self.temp_dir / "one", "u1")


def make_definition(directory_id: str, root: str, remote_id: str = "s1") -> WatchedDirectory:
    return WatchedDirectory(
        id=directory_id, root=Path(root), remote_id=remote_id, user_id="u1", source=SourceRules(id=remote_id)
    )


class TestDiffDefinitions:
    """Test comparison of running and configured directories"""

    def test_added_removed_and_changed(self):
        current = {
            "keep": make_definition("keep", "/data/keep"),
            "drop": make_definition("drop", "/data/drop"),
            "move": make_definition("move", "/data/old"),
        }
        desired = {
            "keep": make_definition("keep", "/data/keep"),
            "move": make_definition("move", "/data/new"),
            "new": make_definition("new", "/data/new-one"),
        }

        to_remove, to_add = diff_definitions(current, desired)

        assert sorted(to_remove) == ["drop", "move"]
        assert sorted(directory.id for directory in to_add) == ["move", "new"]

    def test_no_changes(self):
        current = {"keep": make_definition("keep", "/data/keep")}
        assert diff_definitions(current, dict(current)) == ([], [])


class TestConfigReloader:
    """Test applying configuration changes to a running engine"""

    def setup_method(self):
        self.temp_dir = Path(tempfile.mkdtemp())
        self.loader = ConfigurationLoader(self.temp_dir / "config")
        self.loader.initialize()
        self.engine = Mock()
        self.engine.add_directory = AsyncMock(return_value=True)
        self.engine.remove_directory = AsyncMock(return_value=True)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    @pytest.mark.asyncio
    async def test_apply_adds_then_removes(self):
        """Test that watchers are started and stopped as the file changes"""
        reloader = ConfigReloader(self.loader, self.engine)
        watcher = self.loader.add_watcher("s1", self.temp_dir / "docs", "u1")

        removed, added = await reloader.apply()
        assert (removed, added) == ([], [watcher.watcher_id])
        self.engine.add_directory.assert_awaited_once()

        self.loader.remove_watcher(watcher.watcher_id)
        assert await reloader.reload() is True
        self.engine.remove_directory.assert_awaited_once_with(watcher.watcher_id)
        assert reloader.current == {}

    @pytest.mark.asyncio
    async def test_invalid_file_keeps_running_set(self):
        """Test that a broken config file is ignored"""
        reloader = ConfigReloader(self.loader, self.engine)
        self.loader.add_watcher("s1", self.temp_dir / "docs", "u1")
        await reloader.apply()

        self.loader.config_file.write_text("{broken")
        assert await reloader.reload() is False
        self.engine.remove_directory.assert_not_awaited()
        assert len(reloader.current) == 1

    @pytest.mark.asyncio
    async def test_file_change_triggers_debounced_reload(self):
        """Test that change notifications are debounced into one reload"""
        reloader = ConfigReloader(self.loader, self.engine, debounce_s=0.05)
        reloader._loop = asyncio.get_running_loop()

        for _ in range(5):
            reloader._on_change()
        await asyncio.sleep(0.2)
        await reloader.stop()

        assert reloader.reloads == 1

    def test_event_handler_filters_on_file_name(self):
        callback = Mock()
        handler = ConfigFileEventHandler(self.loader.config_file, callback)

        handler.on_any_event(Mock(event_type="modified", src_path=str(self.loader.config_dir / "other.json")))
        handler.on_any_event(Mock(event_type="opened", src_path=str(self.loader.config_file)))
        handler.on_any_event(Mock(event_type="moved", src_path=str(self.loader.config_dir / "config.tmp"),
                                  dest_path=str(self.loader.config_file)))

        callback.assert_called_once()
