# src/shiftops/core/state.py

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ..clock.clock_source import ClockSource
    from ..periods.period_catalog import PeriodCatalog
    from ..periods.period_scheduler import PeriodScheduler
    from ..sync.sync_bus import SyncBus
    from ..tasks.outbox import PersistenceOutbox
    from ..tasks.review_workflow import ReviewWorkflowController
    from ..tasks.task_catalog import TaskCatalog
    from ..tasks.task_state_machine import TaskStateMachine
    from .ports import MediaUploader, Notifier, PersistenceAdapter


@dataclass(slots=True, frozen=True)
class SessionContext:
    """Who is acting. Passed explicitly into every controller call."""

    user_id: str
    role: str
    session_id: str


@dataclass
class AppState:
    # Store Settings on the state for easy access in other modules later.
    settings: Any

    clock: ClockSource
    periods: PeriodCatalog
    tasks: TaskCatalog
    scheduler: PeriodScheduler
    machine: TaskStateMachine
    store: PersistenceAdapter
    outbox: PersistenceOutbox
    bus: SyncBus
    controller: ReviewWorkflowController
    notifier: Notifier
    media: MediaUploader | None
    context: SessionContext

    # Console commands and the background tick loop share one session.
    lock: threading.RLock = field(default_factory=threading.RLock)
