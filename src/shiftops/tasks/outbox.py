# src/shiftops/tasks/outbox.py

from __future__ import annotations

"""
Persistence outbox.

Local state is applied first; the matching store writes are queued here and
flushed fire-and-forget. A failed write is retried on a later tick with
exponential backoff. Once an entry has used up its retry budget the instance
it belongs to is reported as "unsynced" until a retry finally succeeds.
"""

import copy
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date

from ..core.errors import PersistenceFailure
from ..core.ports import PersistenceAdapter
from .task_models import ReviewTransition, TaskInstance

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PendingWrite:
    key: tuple
    instance: TaskInstance | None = None
    transition: ReviewTransition | None = None
    attempts: int = 0
    next_attempt_at: float = 0.0

    @property
    def instance_key(self) -> tuple[str, date]:
        if self.instance is not None:
            return self.instance.key
        assert self.transition is not None
        return (self.transition.target_id, self.transition.calendar_date)


class PersistenceOutbox:
    def __init__(
        self,
        store: PersistenceAdapter,
        *,
        retry_budget: int = 5,
        base_delay_seconds: float = 1.0,
        max_delay_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._budget = max(1, int(retry_budget))
        self._base = max(0.0, float(base_delay_seconds))
        self._max = max(self._base, float(max_delay_seconds))
        self._clock = clock
        self._pending: dict[tuple, PendingWrite] = {}
        self._unsynced: set[tuple[str, date]] = set()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def unsynced_keys(self) -> set[tuple[str, date]]:
        return set(self._unsynced)

    def is_unsynced(self, task_def_id: str, day: date) -> bool:
        return (task_def_id, day) in self._unsynced

    def enqueue_transition(self, transition: ReviewTransition) -> None:
        key = ("transition", transition.identity)
        if key not in self._pending:
            self._pending[key] = PendingWrite(key=key, transition=transition)

    def enqueue_instance(self, instance: TaskInstance) -> None:
        key = ("instance", instance.key)
        snapshot = copy.deepcopy(instance)
        pending = self._pending.get(key)
        if pending is None:
            self._pending[key] = PendingWrite(key=key, instance=snapshot)
        else:
            # latest state wins; keep the retry bookkeeping
            pending.instance = snapshot

    def flush(self, *, force: bool = False) -> int:
        """Try every due write once. Returns how many were persisted."""
        now = self._clock()
        written = 0
        for key, pending in list(self._pending.items()):
            if not force and pending.next_attempt_at > now:
                continue
            try:
                if pending.transition is not None:
                    self._store.insert_transition(pending.transition)
                if pending.instance is not None:
                    self._store.upsert_task_instance(pending.instance)
            except Exception as e:
                self._on_failure(pending, PersistenceFailure(str(e)), now)
                continue

            del self._pending[key]
            written += 1
            ikey = pending.instance_key
            if ikey in self._unsynced and not self._has_pending_for(ikey):
                self._unsynced.discard(ikey)
                logger.info("%s (%s) is synced again", ikey[0], ikey[1].isoformat())
        return written

    def _on_failure(self, pending: PendingWrite, err: PersistenceFailure, now: float) -> None:
        pending.attempts += 1
        delay = min(self._max, self._base * (2 ** (pending.attempts - 1)))
        pending.next_attempt_at = now + delay
        logger.warning(
            "Persistence write failed (attempt %d, retry in %.1fs): %s",
            pending.attempts,
            delay,
            err,
        )
        if pending.attempts >= self._budget:
            ikey = pending.instance_key
            if ikey not in self._unsynced:
                self._unsynced.add(ikey)
                logger.warning("%s (%s) marked unsynced after %d attempts", ikey[0], ikey[1].isoformat(), pending.attempts)

    def _has_pending_for(self, ikey: tuple[str, date]) -> bool:
        return any(p.instance_key == ikey for p in self._pending.values())
