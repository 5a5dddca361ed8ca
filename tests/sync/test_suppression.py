"""
Tests for ExpectedWriteRegistry suppression of the daemon's own changes.
"""

import pytest

from core.sync.suppression import ExpectedWriteRegistry


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class TestExpectedWriteRegistry:
    """Test suite for expected write bookkeeping."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def registry(self, clock):
        return ExpectedWriteRegistry(ttl_s=5.0, max_entries=3, clock=clock)

    def test_matching_write_is_consumed_once(self, registry):
        """Test that an expected write suppresses exactly one notification."""
        registry.expect_write("a.txt", "hash-a")

        assert registry.consume_write("a.txt", "hash-a") is True
        assert registry.consume_write("a.txt", "hash-a") is False
        assert registry.get_stats()["suppressed"] == 1

    def test_different_content_is_not_suppressed(self, registry):
        """Test that a user edit right after a download is still reported."""
        registry.expect_write("a.txt", "hash-a")

        assert registry.consume_write("a.txt", "hash-user") is False
        # The entry survives for the notification of the real write
        assert registry.is_expected("a.txt")

    def test_removal_entries(self, registry):
        """Test that expected removals only match removals."""
        registry.expect_removal("gone.txt")

        assert registry.consume_write("gone.txt", "hash") is False
        assert registry.consume_removal("gone.txt") is True
        assert registry.consume_removal("gone.txt") is False

    def test_entries_expire(self, registry, clock):
        """Test that entries are ignored after their lifetime."""
        registry.expect_write("a.txt", "hash-a")
        clock.now += 6.0

        assert registry.consume_write("a.txt", "hash-a") is False
        assert registry.get_stats()["expired"] == 1

    def test_purge_expired(self, registry, clock):
        """Test that the periodic purge drops only expired entries."""
        registry.expect_write("old.txt", "h1")
        clock.now += 4.0
        registry.expect_write("new.txt", "h2")
        clock.now += 2.0

        assert registry.purge_expired() == 1
        assert len(registry) == 1
        assert registry.is_expected("new.txt")

    def test_bounded_size_evicts_oldest(self, registry):
        """Test that the registry never grows past max_entries."""
        for name in ("a", "b", "c", "d"):
            registry.expect_write(f"{name}.txt", name)

        assert len(registry) == 3
        assert not registry.is_expected("a.txt")
        assert registry.is_expected("d.txt")
