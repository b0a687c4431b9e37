# src/shiftops/cli/bootstrap.py

"""
CLI bootstrap helpers.

This module is the "composition root":
- loads settings once,
- ensures local (gitignored) directories exist,
- reads the period/task catalog once (code defaults or one JSON file),
- picks the sync transport (memory / sqlite / redis),
- wires concrete implementations into AppState.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import timedelta, tzinfo
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..clock.clock_source import ClockSource
from ..config import get_settings
from ..connectors.local_media import LocalMediaUploader
from ..connectors.notifier import LoggingNotifier
from ..core.ports import EphemeralChannel, MediaUploader, Notifier, PersistenceAdapter, ShadowStore
from ..core.state import AppState, SessionContext
from ..periods.period_catalog import PeriodCatalog
from ..periods.period_scheduler import PeriodScheduler
from ..session.session_runner import Session
from ..sync.memory_transport import LocalChannelHub, MemoryShadowStore
from ..sync.shadow_store import SqliteShadowStore
from ..sync.sync_bus import SyncBus
from ..tasks.outbox import PersistenceOutbox
from ..tasks.record_store import RecordStore
from ..tasks.review_workflow import ReviewWorkflowController
from ..tasks.task_catalog import TaskCatalog
from ..tasks.task_state_machine import TaskStateMachine

logger = logging.getLogger(__name__)


def _ensure_local_dirs(settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.records_db_path.parent.mkdir(parents=True, exist_ok=True)
    settings.shadow_db_path.parent.mkdir(parents=True, exist_ok=True)
    settings.snapshot_path.parent.mkdir(parents=True, exist_ok=True)
    settings.media_dir.mkdir(parents=True, exist_ok=True)


def resolve_timezone(name: str | None) -> tzinfo | None:
    """None means the host's local time (naive datetimes)."""
    if not name:
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r; using host local time", name)
        return None


def load_catalogs(path: Path | None) -> tuple[PeriodCatalog, TaskCatalog]:
    """
    Build the period and task catalogs.

    The optional JSON file has two lists, "periods" and "tasks"; a missing list
    falls back to the built-in defaults. Read once at startup.
    """
    if path is None:
        periods = PeriodCatalog.default()
        return periods, TaskCatalog.default(periods)

    data = json.loads(Path(path).read_text("utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"{path}: catalog must be a JSON object")

    raw_periods = data.get("periods")
    periods = PeriodCatalog.from_records(raw_periods) if raw_periods else PeriodCatalog.default()
    raw_tasks = data.get("tasks")
    tasks = TaskCatalog.from_records(raw_tasks, periods) if raw_tasks else TaskCatalog.default(periods)
    logger.info("Loaded catalog from %s: %d periods, %d tasks", path, len(periods), len(tasks))
    return periods, tasks


def build_sync_tiers(settings, *, hub: LocalChannelHub | None = None) -> tuple[EphemeralChannel | None, ShadowStore]:
    transport = getattr(settings, "sync_transport", "memory")

    if transport == "redis":
        from ..sync.redis_transport import RedisChannel, RedisShadowStore, connect

        client = connect(settings.redis_url)
        return RedisChannel(client), RedisShadowStore(client)

    if transport == "sqlite":
        # Shadow-only: sessions in other processes converge by re-reading the slots each tick.
        return None, SqliteShadowStore(settings.shadow_db_path)

    hub = hub or LocalChannelHub()
    return hub.channel(), MemoryShadowStore()


def create_initial_state(
    *,
    settings=None,
    user_id: str | None = None,
    role: str | None = None,
    store: PersistenceAdapter | None = None,
    channel: EphemeralChannel | None = None,
    shadow: ShadowStore | None = None,
    media: MediaUploader | None = None,
    notifier: Notifier | None = None,
    clock: ClockSource | None = None,
) -> AppState:
    """
    Create AppState from the provided settings.

    Keeping settings and adapters injectable makes the app easier to test and avoids
    hidden global config reads. If settings is None, falls back to get_settings().
    """
    if settings is None:
        settings = get_settings()

    _ensure_local_dirs(settings)

    tz = clock.tz if clock is not None else resolve_timezone(getattr(settings, "timezone", None))
    periods, tasks = load_catalogs(getattr(settings, "catalog_path", None))

    if channel is None and shadow is None:
        channel, shadow = build_sync_tiers(settings)
    elif shadow is None:
        shadow = MemoryShadowStore()

    user_id = user_id or settings.user_id
    role = role or settings.role
    context = SessionContext(user_id=user_id, role=role, session_id=f"{user_id}-{uuid.uuid4().hex[:8]}")

    store = store or RecordStore(settings.records_db_path)
    media = media or LocalMediaUploader(settings.media_dir)
    notifier = notifier or LoggingNotifier()

    if clock is None:
        clock = ClockSource(tz=tz, shadow=shadow, offset_ttl_seconds=settings.clock_offset_ttl_seconds)
    scheduler = PeriodScheduler(periods, max_catchup=timedelta(days=7))
    machine = TaskStateMachine(
        tasks,
        periods,
        tz=tz,
        coalesce_window_seconds=settings.coalesce_window_seconds,
        max_submissions=settings.max_submissions,
    )
    outbox = PersistenceOutbox(
        store,
        retry_budget=settings.persist_retry_budget,
        base_delay_seconds=settings.persist_retry_base_seconds,
        max_delay_seconds=settings.persist_retry_max_seconds,
    )
    bus = SyncBus(context.session_id, channel, shadow)
    controller = ReviewWorkflowController(
        machine,
        bus,
        outbox,
        clock=clock,
        scheduler=scheduler,
        store=store,
        media=media,
        notifier=notifier,
    )

    state = AppState(
        settings=settings,
        clock=clock,
        periods=periods,
        tasks=tasks,
        scheduler=scheduler,
        machine=machine,
        store=store,
        outbox=outbox,
        bus=bus,
        controller=controller,
        notifier=notifier,
        media=media,
        context=context,
    )
    logger.info("Session state ready: %s as %s (sync=%s)", user_id, role, getattr(settings, "sync_transport", "memory"))
    return state


def create_session(state: AppState) -> Session:
    settings = state.settings
    return Session(
        state,
        snapshot_path=getattr(settings, "snapshot_path", None),
        snapshot_every_ticks=getattr(settings, "snapshot_every_ticks", 12),
    )
