"""Shared pytest fixtures for mcp-diary tests."""

import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from mcp_diary.audit import AuditLog
from mcp_diary.config import DiaryConfig
from mcp_diary.registry import EntryRegistry
from mcp_diary.storage import JsonStore, PersistenceError


START = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = START):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


class RecordingNotifier:
    """Keeps every notification for later assertions."""

    def __init__(self):
        self.messages = []

    def notify(self, message, *, level="info", undo=None):
        self.messages.append((message, level, undo))

    @property
    def errors(self):
        return [m for m, level, _ in self.messages if level == "error"]


class FailingStore(JsonStore):
    """JsonStore whose writes can be switched to fail.

    ``fail_keys`` limits failures to those keys; empty means every key.
    """

    def __init__(self, root, **kwargs):
        super().__init__(root, **kwargs)
        self.failing = False
        self.fail_keys = set()
        self.save_calls = []

    def _should_fail(self, key):
        return self.failing and (not self.fail_keys or key in self.fail_keys)

    def save(self, key, value):
        self.save_calls.append(key)
        if self._should_fail(key):
            raise PersistenceError(f"Simulated write failure for '{key}'", key=key)
        super().save(key, value)

    def remove(self, key):
        if self._should_fail(key):
            raise PersistenceError(f"Simulated remove failure for '{key}'", key=key)
        super().remove(key)


@pytest.fixture
def temp_project():
    """Create a temporary diary root directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def config(temp_project):
    """Create a test configuration."""
    return DiaryConfig(
        project_name="test-diary",
        project_root=temp_project,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def store(temp_project):
    """Store whose writes succeed until ``store.failing`` is set."""
    return FailingStore(temp_project / "data")


@pytest.fixture
def audit(store, clock):
    log = AuditLog(store=store, clock=clock)
    log.load()
    return log


@pytest.fixture
def registry_factory(store, audit, clock, notifier):
    """Factory fixture that builds initialized registries and closes them.

    Usage:
        def test_example(registry_factory):
            registry = registry_factory(per_entry_records=True)
    """
    registries = []

    def _create(**kwargs):
        options = {
            "store": store,
            "audit": audit,
            "clock": clock,
            "notifier": notifier,
        }
        options.update(kwargs)
        reg = EntryRegistry(**options)
        reg.initialize()
        registries.append(reg)
        return reg

    yield _create

    for reg in registries:
        reg.close()


@pytest.fixture
def registry(registry_factory):
    """Initialized registry without a scheduler (expiry via the sweep only)."""
    return registry_factory()
