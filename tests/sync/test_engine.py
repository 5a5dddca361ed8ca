"""
Tests for DirectorySupervisor lifecycle and multi-directory SyncEngine.
"""

import asyncio
import shutil
import tempfile
from pathlib import Path

import pytest

from core.models.config import DaemonSettings
from core.models.sync import AuthorizationState, SyncState
from core.sync.engine import SyncEngine
from core.sync.errors import ConfigurationError
from core.sync.supervisor import DirectorySupervisor

from tests.fixtures.fake_transport import InMemoryTransport, StaticAuthorization, rejected, transient
from tests.fixtures.sync_env import REMOTE_ID, FakeNotificationSource, make_directory, write


async def eventually(predicate, timeout: float = 5.0) -> None:
    """Poll until predicate() is true"""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.02)


class TestDirectorySupervisor:
    """Test suite for one directory's lifecycle."""

    @pytest.fixture
    def temp_dir(self):
        temp_dir = Path(tempfile.mkdtemp())
        (temp_dir / "root").mkdir()
        yield temp_dir
        shutil.rmtree(temp_dir, ignore_errors=True)

    @pytest.fixture
    def settings(self, temp_dir):
        return DaemonSettings(
            config_dir=temp_dir / "config",
            debounce_ms=50,
            retry_max_attempts=1,
            retry_initial_delay_s=0.0,
            error_backoff_initial_s=0.05,
            auth_retry_interval_s=0.05,
            shutdown_timeout_s=2.0
        )

    @pytest.fixture
    def transport(self):
        return InMemoryTransport()

    def supervisor(self, temp_dir, settings, transport, authorization=None):
        return DirectorySupervisor(
            make_directory(temp_dir / "root"), transport, settings,
            authorization=authorization, source=FakeNotificationSource()
        )

    @pytest.mark.asyncio
    async def test_run_catches_up_and_stops_cleanly(self, temp_dir, settings, transport):
        """Test that the supervisor syncs on start and persists state on stop."""
        write(temp_dir / "root", "a.txt", b"hello")
        supervisor = self.supervisor(temp_dir, settings, transport)

        task = asyncio.create_task(supervisor.run())
        await eventually(lambda: transport.content(REMOTE_ID, "a.txt") == b"hello")
        await eventually(lambda: supervisor.state == SyncState.WATCHING)
        assert supervisor.directory.authorization == AuthorizationState.AUTHORIZED

        supervisor.stop()
        await asyncio.wait_for(task, timeout=5.0)

        assert (settings.hashes_dir / "docs.json").exists()
        assert supervisor.collector.is_monitoring is False

    @pytest.mark.asyncio
    async def test_missing_root_is_configuration_error(self, temp_dir, settings, transport):
        """Test that a missing local root fails fast."""
        shutil.rmtree(temp_dir / "root")
        supervisor = self.supervisor(temp_dir, settings, transport)

        with pytest.raises(ConfigurationError):
            await supervisor.run()

    @pytest.mark.asyncio
    async def test_auth_error_pauses_until_reauthorized(self, temp_dir, settings, transport):
        """Test that rejected credentials pause the directory and resume after reauthorization."""
        transport.fail_next("list_remote", rejected())
        authorization = StaticAuthorization()
        supervisor = self.supervisor(temp_dir, settings, transport, authorization)

        task = asyncio.create_task(supervisor.run())
        try:
            await eventually(lambda: supervisor.state == SyncState.WATCHING
                             and authorization.reauthorizations == 1)
            assert supervisor.directory.authorization == AuthorizationState.AUTHORIZED
        finally:
            supervisor.stop()
            await asyncio.wait_for(task, timeout=5.0)

    @pytest.mark.asyncio
    async def test_unauthorized_state_while_credentials_stay_invalid(self, temp_dir, settings, transport):
        """Test that the directory stays unauthorized while reauthorization fails."""
        transport.fail_next("list_remote", rejected())
        authorization = StaticAuthorization(valid=False)
        supervisor = self.supervisor(temp_dir, settings, transport, authorization)

        task = asyncio.create_task(supervisor.run())
        try:
            await eventually(lambda: authorization.reauthorizations >= 2)
            assert supervisor.state == SyncState.UNAUTHORIZED
            assert supervisor.directory.authorization == AuthorizationState.UNAUTHORIZED
        finally:
            supervisor.stop()
            await asyncio.wait_for(task, timeout=5.0)

    @pytest.mark.asyncio
    async def test_exhausted_retries_back_off_and_recover(self, temp_dir, settings, transport):
        """Test that persistent network failure enters backoff, then catches up again."""
        write(temp_dir / "root", "a.txt", b"queued while offline")
        transport.fail_next("list_remote", transient())
        supervisor = self.supervisor(temp_dir, settings, transport)

        task = asyncio.create_task(supervisor.run())
        try:
            await eventually(lambda: transport.content(REMOTE_ID, "a.txt") is not None)
            assert supervisor.error_backoffs == 1
            assert "list" in supervisor.last_error
        finally:
            supervisor.stop()
            await asyncio.wait_for(task, timeout=5.0)

    @pytest.mark.asyncio
    async def test_status_snapshot(self, temp_dir, settings, transport):
        supervisor = self.supervisor(temp_dir, settings, transport)
        status = supervisor.get_status()

        assert status["id"] == "docs"
        assert status["reconciler"]["state"] == "catching_up"
        assert status["store"]["files"] == 0


class TestSyncEngine:
    """Test suite for running several directories independently."""

    @pytest.fixture
    def temp_dir(self):
        temp_dir = Path(tempfile.mkdtemp())
        yield temp_dir
        shutil.rmtree(temp_dir, ignore_errors=True)

    @pytest.fixture
    def settings(self, temp_dir):
        return DaemonSettings(config_dir=temp_dir / "config", debounce_ms=50, shutdown_timeout_s=2.0)

    def directory(self, root: Path, directory_id: str, remote_id: str):
        directory = make_directory(root)
        return directory.model_copy(update={"id": directory_id, "remote_id": remote_id})

    def test_requires_a_transport(self, settings):
        """Test that an engine without any way to reach the remote is rejected."""
        with pytest.raises(ValueError):
            SyncEngine(settings)

    @pytest.mark.asyncio
    async def test_failing_directory_does_not_block_others(self, temp_dir, settings):
        """Test that a misconfigured directory is marked failed while others sync."""
        transport = InMemoryTransport()
        engine = SyncEngine(settings, transport=transport, source_factory=lambda d: FakeNotificationSource())

        good_root = temp_dir / "good"
        good_root.mkdir()
        write(good_root, "a.txt", b"a")

        assert await engine.add_directory(self.directory(temp_dir / "missing", "broken", "remote-broken"))
        assert await engine.add_directory(self.directory(good_root, "good", "remote-good"))

        try:
            await eventually(lambda: transport.content("remote-good", "a.txt") == b"a")
            await eventually(lambda: engine.directories["broken"].failed)

            status = engine.get_status()
            assert status["directories"]["broken"]["failed"] is True
            assert status["directories"]["good"]["failed"] is False
            assert status["metrics"]["directories_failed"] == 1
        finally:
            await engine.shutdown()

        assert engine.is_running is False
        assert engine.directories == {}

    @pytest.mark.asyncio
    async def test_duplicate_add_is_ignored(self, temp_dir, settings):
        transport = InMemoryTransport()
        engine = SyncEngine(settings, transport=transport, source_factory=lambda d: FakeNotificationSource())
        root = temp_dir / "root"
        root.mkdir()
        directory = self.directory(root, "one", "remote-one")

        try:
            assert await engine.add_directory(directory)
            first = engine.get_supervisor("one")
            assert await engine.add_directory(directory)
            assert engine.get_supervisor("one") is first
            assert engine.metrics.directories_added == 1
        finally:
            await engine.shutdown()

    @pytest.mark.asyncio
    async def test_remove_directory_keeps_fingerprint_file(self, temp_dir, settings):
        """Test that removing a directory stops it but keeps its sync state."""
        transport = InMemoryTransport()
        engine = SyncEngine(settings, transport=transport, source_factory=lambda d: FakeNotificationSource())
        root = temp_dir / "root"
        root.mkdir()
        write(root, "a.txt", b"a")

        await engine.add_directory(self.directory(root, "one", "remote-one"))
        try:
            await eventually(lambda: transport.content("remote-one", "a.txt") == b"a")
            supervisor = engine.get_supervisor("one")

            assert await engine.remove_directory("one") is True
            assert await engine.remove_directory("one") is False
            assert engine.get_supervisor("one") is None
            assert supervisor.collector.is_monitoring is False
            assert (settings.hashes_dir / "one.json").exists()
            assert read_bytes(root / "a.txt") == b"a"
        finally:
            await engine.shutdown()

    @pytest.mark.asyncio
    async def test_add_after_shutdown_is_refused(self, settings):
        engine = SyncEngine(settings, transport=InMemoryTransport())
        await engine.shutdown()

        assert await engine.add_directory(self.directory(Path("/nonexistent"), "late", "remote")) is False

    @pytest.mark.asyncio
    async def test_client_factory_is_used_per_directory(self, temp_dir, settings):
        """Test that each directory gets its transport from the factory."""
        transports = {}

        def factory(directory):
            transports[directory.id] = InMemoryTransport()
            return transports[directory.id], None

        engine = SyncEngine(settings, client_factory=factory, source_factory=lambda d: FakeNotificationSource())
        root = temp_dir / "root"
        root.mkdir()
        write(root, "a.txt", b"a")

        await engine.add_directory(self.directory(root, "one", "remote-one"))
        try:
            await eventually(lambda: transports["one"].content("remote-one", "a.txt") == b"a")
        finally:
            await engine.shutdown()

    @pytest.mark.asyncio
    async def test_backing_off_directory_does_not_stall_others(self, temp_dir, settings):
        """Test that a directory stuck in error backoff leaves the other directory syncing."""
        settings = settings.model_copy(update={
            "retry_max_attempts": 1,
            "retry_initial_delay_s": 0.0,
            "error_backoff_initial_s": 0.05,
            "remote_poll_interval_s": 0.1,
        })
        transports = {}

        def factory(directory):
            transports[directory.id] = InMemoryTransport()
            if directory.id == "flaky":
                transports[directory.id].fail_next("list_remote", transient(), times=1000)
            return transports[directory.id], None

        engine = SyncEngine(settings, client_factory=factory, source_factory=lambda d: FakeNotificationSource())
        flaky_root = temp_dir / "flaky"
        good_root = temp_dir / "good"
        flaky_root.mkdir()
        good_root.mkdir()
        write(flaky_root, "x.txt", b"x")
        write(good_root, "a.txt", b"a")

        assert await engine.add_directory(self.directory(flaky_root, "flaky", "remote-flaky"))
        assert await engine.add_directory(self.directory(good_root, "good", "remote-good"))
        try:
            flaky = engine.get_supervisor("flaky")
            good = engine.get_supervisor("good")

            await eventually(lambda: flaky.error_backoffs >= 2)
            await eventually(lambda: transports["good"].content("remote-good", "a.txt") == b"a")

            transports["good"].put("remote-good", "b.txt", b"from elsewhere")
            await eventually(lambda: (good_root / "b.txt").exists())

            assert read_bytes(good_root / "b.txt") == b"from elsewhere"
            assert good.error_backoffs == 0
            assert flaky.state in (SyncState.ERROR_BACKOFF, SyncState.CATCHING_UP)
            assert engine.directories["flaky"].failed is False
            assert transports["flaky"].content("remote-flaky", "x.txt") is None
        finally:
            await engine.shutdown()


def read_bytes(path: Path) -> bytes:
    return path.read_bytes()
