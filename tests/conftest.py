# tests/conftest.py

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from types import SimpleNamespace

import pytest

from shiftops.cli.bootstrap import create_initial_state
from shiftops.clock.clock_source import ClockSource
from shiftops.core.state import AppState
from shiftops.periods.period_catalog import PeriodCatalog
from shiftops.sync.memory_transport import LocalChannelHub, MemoryShadowStore
from shiftops.tasks.record_store import RecordStore
from shiftops.tasks.task_catalog import TaskCatalog

from .fakes import UTC, FakeMedia, FakeNotifier, FakeWallClock, at


@pytest.fixture()
def settings(tmp_path: Path) -> SimpleNamespace:
    """
    Minimal settings object compatible with the composition root.

    We intentionally use a SimpleNamespace rather than importing real config,
    to keep unit tests isolated and deterministic.
    """
    return SimpleNamespace(
        app_name="shiftops-test",
        log_level="DEBUG",
        # Paths (tmp per test run)
        data_dir=tmp_path,
        records_db_path=tmp_path / "records.sqlite3",
        shadow_db_path=tmp_path / "shadow.sqlite3",
        snapshot_path=tmp_path / "snapshot.json",
        media_dir=tmp_path / "media",
        catalog_path=None,
        # Clock / scheduling
        timezone=None,
        tick_interval_seconds=0.01,
        snapshot_every_ticks=3,
        clock_offset_ttl_seconds=3600.0,
        # Sync
        sync_transport="memory",
        redis_url="redis://localhost:6379/0",
        # Review workflow
        coalesce_window_seconds=30.0,
        max_submissions=None,
        # Outbox: retry on every tick, flag unsynced after 3 failures
        persist_retry_budget=3,
        persist_retry_base_seconds=0.0,
        persist_retry_max_seconds=0.0,
        # Session identity
        user_id="manager-1",
        role="manager",
    )


@pytest.fixture()
def periods() -> PeriodCatalog:
    return PeriodCatalog.default()


@pytest.fixture()
def tasks(periods: PeriodCatalog) -> TaskCatalog:
    return TaskCatalog.default(periods)


@pytest.fixture()
def wall() -> FakeWallClock:
    return FakeWallClock(at(10, 5))


@pytest.fixture()
def hub() -> LocalChannelHub:
    return LocalChannelHub()


@pytest.fixture()
def shadow() -> MemoryShadowStore:
    return MemoryShadowStore()


@pytest.fixture()
def store(settings: SimpleNamespace) -> RecordStore:
    return RecordStore(settings.records_db_path)


@pytest.fixture()
def make_state(
    settings: SimpleNamespace,
    hub: LocalChannelHub,
    shadow: MemoryShadowStore,
    store: RecordStore,
    wall: FakeWallClock,
) -> Callable[..., AppState]:
    """
    Factory for sessions that share one hub, shadow, store and wall clock.

    NOTE: We keep the real SQLite RecordStore here because convergence through
    the store is part of what we want to test.
    """

    def _make(
        user_id: str = "manager-1",
        role: str = "manager",
        *,
        media=None,
        notifier=None,
        persistence=None,
    ) -> AppState:
        return create_initial_state(
            settings=settings,
            user_id=user_id,
            role=role,
            store=persistence or store,
            channel=hub.channel(),
            shadow=shadow,
            media=media or FakeMedia(),
            notifier=notifier or FakeNotifier(),
            clock=ClockSource(tz=UTC, shadow=shadow, wall_clock=wall),
        )

    return _make


@pytest.fixture()
def state(make_state) -> AppState:
    return make_state()
