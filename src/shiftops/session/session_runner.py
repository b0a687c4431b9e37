# src/shiftops/session/session_runner.py

from __future__ import annotations

"""
Session runner.

One Session = one open client (user + role). Each tick:
- re-reads the shared clock offset,
- advances the period scheduler and applies every crossed event in order
  (activate tasks on enter/day roll, log enter/exit, announce the batch),
- flags overdue instances,
- flushes the persistence outbox,
- drains the sync channel,
- periodically writes the local snapshot.

Inbound sync messages are invalidation hints: the session re-fetches the
affected calendar date from the store instead of trusting the payload.
"""

import asyncio
import contextlib
import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from pathlib import Path

from ..core.errors import CorruptSnapshot
from ..core.state import AppState, SessionContext
from ..periods.period_models import PeriodEvent, PeriodEventKind
from ..sync.sync_models import MessageType, SyncMessage
from ..tasks.task_models import TaskStatus
from .snapshot import load_snapshot, restore_snapshot, save_snapshot

logger = logging.getLogger(__name__)

_REFRESH_TYPES = (
    MessageType.PERIOD_CHANGED,
    MessageType.TASK_SUBMITTED,
    MessageType.REVIEW_DECIDED,
    MessageType.TASK_COMPLETED,
    MessageType.BUSINESS_CLOSED,
    MessageType.TRIGGER,
)


class Session:
    def __init__(
        self,
        state: AppState,
        *,
        snapshot_path: str | Path | None = None,
        snapshot_every_ticks: int = 12,
    ) -> None:
        self.state = state
        self._snapshot_path = Path(snapshot_path) if snapshot_path else None
        self._snapshot_every = max(1, int(snapshot_every_ticks))
        self._ticks = 0
        self._started = False
        self._unsubscribe = [state.bus.subscribe(t, self._on_state_changed) for t in _REFRESH_TYPES]
        self._unsubscribe.append(state.bus.subscribe(MessageType.CLOCK_OFFSET, self._on_clock_offset))
        self._unsubscribe.append(state.bus.subscribe(MessageType.TRIGGER, self._on_trigger))

    @property
    def context(self) -> SessionContext:
        return self.state.context

    @property
    def tick_count(self) -> int:
        return self._ticks

    # ---- lifecycle ----

    def start(self) -> None:
        """Restore local state, catch up on the shadow tier, then re-fetch today from the store."""
        st = self.state
        st.clock.refresh()
        now = st.clock.now()

        observed_at = self._restore()
        applied = st.bus.catch_up()
        st.controller.refresh(now.date())

        # Resume from the last saved instant so periods crossed while closed still fire.
        if observed_at is not None and observed_at <= now:
            st.scheduler.baseline(observed_at)
        self._started = True
        logger.info(
            "Session %s started user=%s role=%s (catch-up applied %d)",
            self.context.session_id,
            self.context.user_id,
            self.context.role,
            applied,
        )

    def close(self) -> None:
        st = self.state
        with contextlib.suppress(Exception):
            st.outbox.flush(force=True)
        self.save_snapshot()
        for unsub in self._unsubscribe:
            unsub()
        self._unsubscribe.clear()
        st.bus.close()
        logger.info("Session %s closed", self.context.session_id)

    def tick(self, now: datetime | None = None) -> list[PeriodEvent]:
        st = self.state
        if not self._started:
            self.start()

        st.clock.refresh()
        now = now or st.clock.now()

        events = st.scheduler.advance(now)
        for event in events:
            self._apply_event(event)
        self._flag_overdue(now)
        st.outbox.flush()

        # Announce only after the store has the instances the receivers will re-fetch.
        if events:
            st.bus.publish(
                SyncMessage(
                    type=MessageType.PERIOD_CHANGED,
                    sender_id=st.bus.session_id,
                    timestamp=now.timestamp(),
                    payload={"events": [e.to_payload() for e in events]},
                )
            )
        st.bus.poll()

        self._ticks += 1
        if self._ticks % self._snapshot_every == 0:
            self.save_snapshot(now)
        return events

    # ---- clock offset (shared through the bus) ----

    def set_offset(self, delta: timedelta) -> None:
        st = self.state
        st.clock.set_offset(delta)
        self._announce_offset(enabled=True, offset_seconds=delta.total_seconds())

    def clear_offset(self) -> None:
        self.state.clock.clear_offset()
        self._announce_offset(enabled=False, offset_seconds=0.0)

    def _announce_offset(self, **payload: object) -> None:
        bus = self.state.bus
        bus.publish(
            SyncMessage(
                type=MessageType.CLOCK_OFFSET,
                sender_id=bus.session_id,
                timestamp=self.state.clock.real_now().timestamp(),
                payload=dict(payload),
            )
        )

    # ---- snapshot ----

    def save_snapshot(self, now: datetime | None = None) -> None:
        if self._snapshot_path is None:
            return
        last = self.state.scheduler.last_observation
        observed_at = now or (last.at if last else None)
        try:
            save_snapshot(self.state.machine, self._snapshot_path, observed_at=observed_at)
        except Exception:
            logger.exception("Failed to save snapshot to %s", self._snapshot_path)

    def _restore(self) -> datetime | None:
        if self._snapshot_path is None:
            return None
        try:
            snap = load_snapshot(self._snapshot_path)
        except CorruptSnapshot as e:
            logger.warning("%s; resetting from the record store", e)
            with contextlib.suppress(OSError):
                self._snapshot_path.unlink()
            return None
        if snap is None:
            return None
        restore_snapshot(self.state.machine, snap)
        return snap.observed_at

    # ---- internals ----

    def _apply_event(self, event: PeriodEvent) -> None:
        st = self.state
        if event.kind in (PeriodEventKind.ENTER, PeriodEventKind.DAY_ROLLED) and event.period_id:
            for inst in st.controller.activate_period(event.period_id, event.calendar_date, event.at):
                st.outbox.enqueue_instance(inst)
        if event.kind == PeriodEventKind.DAY_ROLLED:
            logger.info("Calendar date rolled to %s", event.calendar_date.isoformat())
        st.controller.record_period_event(self.context, event)

    def _flag_overdue(self, now: datetime) -> None:
        st = self.state
        for inst in st.machine.all_instances():
            if inst.status not in (TaskStatus.PENDING, TaskStatus.IN_PROGRESS):
                continue
            if st.machine.flag_overdue(inst, now):
                st.outbox.enqueue_instance(inst)

    def _on_state_changed(self, message: SyncMessage) -> None:
        st = self.state
        days: set[date] = set()
        raw = message.payload.get("calendar_date")
        if raw:
            days.add(date.fromisoformat(str(raw)))
        for ev in message.payload.get("events") or ():
            with contextlib.suppress(KeyError, TypeError, ValueError):
                days.add(date.fromisoformat(ev["calendar_date"]))
        if not days:
            days.add(st.clock.now().date())
        for day in sorted(days):
            st.controller.refresh(day)

        if message.type == MessageType.TASK_SUBMITTED and message.payload.get("reviewer_role") == self.context.role:
            self._alert("review_requested", f"{message.payload.get('task_id')} is waiting for review")
        elif (
            message.type == MessageType.REVIEW_DECIDED
            and message.payload.get("verdict") == "reject"
            and self._owns_task(str(message.payload.get("task_id")))
        ):
            reason = message.payload.get("reason") or "no reason given"
            self._alert("rejected", f"{message.payload.get('task_id')} was rejected: {reason}")

    def _on_clock_offset(self, message: SyncMessage) -> None:
        self.state.clock.refresh()

    def _on_trigger(self, message: SyncMessage) -> None:
        self._alert(str(message.payload.get("kind", "trigger")), str(message.payload.get("message", "")))

    def _owns_task(self, task_id: str) -> bool:
        d = self.state.tasks.get(task_id)
        return d is not None and d.role == self.context.role

    def _alert(self, kind: str, message: str) -> None:
        try:
            self.state.notifier.alert(kind, message)
        except Exception:
            logger.exception("Notifier failed for %s", kind)


async def run_session(
        session: Session,
        *,
        interval_seconds: float = 1.0,
        stop_event: asyncio.Event | None = None,
        lock: threading.RLock | None = None,
) -> None:
    """
    Simple polling loop around Session.tick().

    A failing tick is logged and the loop keeps going.
    To stop, cancel the coroutine/task or set stop_event.
    """
    sleep_s = max(0.05, float(interval_seconds))

    while True:
        try:
            if lock is not None:
                with lock:
                    session.tick()
            else:
                session.tick()
        except Exception:
            logger.exception("Session tick failed")

        if stop_event is None:
            await asyncio.sleep(sleep_s)
            continue
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=sleep_s)
        except asyncio.TimeoutError:
            continue
        break


@dataclass(slots=True)
class SessionBackgroundRunner:
    thread: threading.Thread
    loop: asyncio.AbstractEventLoop
    stop_event: asyncio.Event

    def stop(self) -> None:
        try:
            self.loop.call_soon_threadsafe(self.stop_event.set)
        except Exception:
            logger.debug("Failed to signal session stop.", exc_info=True)

    def join(self, timeout: float | None = None) -> None:
        self.thread.join(timeout=timeout)


def start_session_in_background(
    session: Session,
    *,
    interval_seconds: float,
    lock: threading.RLock | None = None,
) -> SessionBackgroundRunner | None:
    """Run the tick loop on its own event loop in a daemon thread (the console REPL blocks on input())."""
    ready = threading.Event()
    holder: dict[str, object] = {}

    def runner() -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        stop_event = asyncio.Event()

        holder["loop"] = loop
        holder["stop_event"] = stop_event
        ready.set()

        try:
            loop.run_until_complete(
                run_session(session, interval_seconds=interval_seconds, stop_event=stop_event, lock=lock)
            )
        finally:
            with contextlib.suppress(Exception):
                loop.close()

    t = threading.Thread(target=runner, name="shiftops-session", daemon=True)
    t.start()

    ready.wait(timeout=5.0)
    loop = holder.get("loop")
    stop_event = holder.get("stop_event")
    if not isinstance(loop, asyncio.AbstractEventLoop) or not isinstance(stop_event, asyncio.Event):
        logger.error("Session thread did not initialize properly.")
        return None

    logger.info("Session tick loop started (every %.1fs).", interval_seconds)
    return SessionBackgroundRunner(thread=t, loop=loop, stop_event=stop_event)
