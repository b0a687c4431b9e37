# src/shiftops/periods/period_models.py

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time
from enum import StrEnum


@dataclass(slots=True, frozen=True)
class Period:
    """
    Time-of-day window of the business day.

    end < start spans midnight; end == start is an empty window.
    """

    id: str
    display_name: str
    start: time
    end: time
    order: int

    @property
    def spans_midnight(self) -> bool:
        return self.end < self.start

    def matches(self, tod: time) -> bool:
        if self.start == self.end:
            return False
        if self.spans_midnight:
            return tod >= self.start or tod < self.end
        return self.start <= tod < self.end


class PeriodEventKind(StrEnum):
    ENTER = "enter"
    EXIT = "exit"
    DAY_ROLLED = "day_rolled"


@dataclass(slots=True, frozen=True)
class PeriodEvent:
    kind: PeriodEventKind
    period_id: str | None
    calendar_date: date
    at: datetime

    def to_payload(self) -> dict[str, str | None]:
        return {
            "kind": self.kind.value,
            "period_id": self.period_id,
            "calendar_date": self.calendar_date.isoformat(),
            "at": self.at.isoformat(),
        }


@dataclass(slots=True, frozen=True)
class Observation:
    """What the scheduler saw at one instant."""

    period: Period | None
    calendar_date: date
    at: datetime


@dataclass(slots=True, frozen=True)
class Transition:
    entered: Period | None = None
    exited: Period | None = None
    day_rolled: bool = False


class BusinessState(StrEnum):
    CLOSED = "closed"
    OPENING = "opening"
    OPERATING = "operating"
    CLOSING = "closing"


@dataclass(slots=True, frozen=True)
class BusinessStatus:
    status: BusinessState
    period: Period | None
    next_period: Period | None
    label: str
