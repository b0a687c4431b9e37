# src/shiftops/periods/period_scheduler.py

from __future__ import annotations

"""
Period scheduler.

Resolves the active period for an instant and turns a sequence of polled
instants into an ordered stream of enter/exit/day_rolled events.

Clock jumps are replayed boundary by boundary: every period window crossed
between two polls yields its own exit/enter pair, in chronological order, so
consumers see exactly the same events whether the clock moved one minute at
a time or leapt across half the day.
"""

import logging
from datetime import datetime, time, timedelta

from ..core.errors import ClockAnomaly
from .period_catalog import PeriodCatalog
from .period_models import (
    BusinessState,
    BusinessStatus,
    Observation,
    Period,
    PeriodEvent,
    PeriodEventKind,
    Transition,
)

logger = logging.getLogger(__name__)


def detect_transition(previous: Observation | None, current: Observation) -> Transition:
    """
    Compare two observations.

    A calendar-date change is reported as day_rolled even when the period is the
    same (midnight-spanning window), because it forces fresh task instances.
    """
    if previous is None:
        return Transition(entered=current.period)

    prev_id = previous.period.id if previous.period else None
    cur_id = current.period.id if current.period else None

    entered = exited = None
    if prev_id != cur_id:
        exited = previous.period
        entered = current.period

    return Transition(
        entered=entered,
        exited=exited,
        day_rolled=current.calendar_date != previous.calendar_date,
    )


def transition_events(previous: Observation | None, current: Observation) -> list[PeriodEvent]:
    """Expand a Transition into events ordered exit -> day_rolled -> enter."""
    tr = detect_transition(previous, current)
    events: list[PeriodEvent] = []
    if tr.exited is not None and previous is not None:
        events.append(PeriodEvent(PeriodEventKind.EXIT, tr.exited.id, previous.calendar_date, current.at))
    if tr.day_rolled:
        period_id = current.period.id if current.period else None
        events.append(PeriodEvent(PeriodEventKind.DAY_ROLLED, period_id, current.calendar_date, current.at))
    if tr.entered is not None:
        events.append(PeriodEvent(PeriodEventKind.ENTER, tr.entered.id, current.calendar_date, current.at))
    return events


class PeriodScheduler:
    def __init__(self, catalog: PeriodCatalog, *, max_catchup: timedelta = timedelta(days=7)) -> None:
        self._catalog = catalog
        self._max_catchup = max_catchup
        self._last: Observation | None = None

    @property
    def catalog(self) -> PeriodCatalog:
        return self._catalog

    @property
    def last_observation(self) -> Observation | None:
        return self._last

    # ---- pure queries ----

    def current_period(self, now: datetime) -> Period | None:
        tod = now.time()
        for period in self._catalog:
            if period.matches(tod):
                return period
        return None

    def observe(self, now: datetime) -> Observation:
        return Observation(period=self.current_period(now), calendar_date=now.date(), at=now)

    def next_period(self, now: datetime) -> Period | None:
        """Next period to start after now; wraps to tomorrow's first period."""
        if not len(self._catalog):
            return None
        tod = now.time()
        by_start = sorted(self._catalog, key=lambda p: (p.start, p.order))
        for period in by_start:
            if period.start > tod:
                return period
        return by_start[0]

    def business_status(self, now: datetime) -> BusinessStatus:
        period = self.current_period(now)
        upcoming = self.next_period(now)
        first, last = self._catalog.first, self._catalog.last

        if period is None:
            tod = now.time()
            if first is not None and tod < first.start:
                label = "Pre-opening"
            elif last is not None and not last.spans_midnight and tod >= last.end:
                label = "Closed"
            else:
                label = "Afternoon break"
            return BusinessStatus(BusinessState.CLOSED, None, upcoming, label)

        if first is not None and period.id == first.id:
            state = BusinessState.OPENING
        elif last is not None and period.id == last.id:
            state = BusinessState.CLOSING
        else:
            state = BusinessState.OPERATING
        return BusinessStatus(state, period, upcoming, period.display_name)

    # ---- polling ----

    def baseline(self, now: datetime) -> Observation:
        """Adopt now as the last observation without emitting anything (restore path)."""
        self._last = self.observe(now)
        return self._last

    def advance(self, now: datetime) -> list[PeriodEvent]:
        """
        Move the scheduler to now and return every event crossed since the last call.

        - first call: enter the current period (if any)
        - forward move: replay each boundary in (last, now] in order
        - backward move: ClockAnomaly is logged and the scheduler re-baselines
          with a direct diff (no backward replay)
        """
        previous = self._last
        current = self.observe(now)

        if previous is None:
            self._last = current
            return transition_events(None, current)

        if now < previous.at:
            err = ClockAnomaly(f"clock moved backwards: {previous.at.isoformat()} -> {now.isoformat()}")
            logger.warning("%s; re-baselining scheduler", err)
            self._last = current
            return transition_events(previous, current)

        events: list[PeriodEvent] = []
        cursor = previous

        if now - previous.at > self._max_catchup:
            logger.warning(
                "Clock jump of %s exceeds catch-up limit %s; replaying only %s",
                now - previous.at,
                self._max_catchup,
                now.date().isoformat(),
            )
            day_start = datetime.combine(now.date(), time(0), tzinfo=now.tzinfo)
            restart = self.observe(day_start)
            events.extend(transition_events(cursor, restart))
            cursor = restart

        for boundary in self._boundaries(cursor.at, now):
            obs = self.observe(boundary)
            events.extend(transition_events(cursor, obs))
            cursor = obs

        events.extend(transition_events(cursor, current))
        self._last = current
        if events:
            logger.debug("Scheduler advanced to %s: %d events", now.isoformat(), len(events))
        return events

    def _boundaries(self, start: datetime, end: datetime) -> list[datetime]:
        """Every instant in (start, end] where the active period or calendar date can change."""
        tz = start.tzinfo
        instants: set[datetime] = set()
        day = start.date() - timedelta(days=1)
        while day <= end.date():
            instants.add(datetime.combine(day, time(0), tzinfo=tz))
            for period in self._catalog:
                instants.add(datetime.combine(day, period.start, tzinfo=tz))
                instants.add(datetime.combine(day, period.end, tzinfo=tz))
            day += timedelta(days=1)
        return sorted(b for b in instants if start < b <= end)
