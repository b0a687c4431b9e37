# src/shiftops/periods/period_catalog.py

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from datetime import time
from typing import Any

from .period_models import Period

logger = logging.getLogger(__name__)


def parse_hhmm(raw: str) -> time:
    """'21:30' -> time(21, 30). Raises ValueError on anything else."""
    parts = str(raw).strip().split(":")
    if len(parts) not in (2, 3):
        raise ValueError(f"bad time of day: {raw!r}")
    hh, mm = int(parts[0]), int(parts[1])
    ss = int(parts[2]) if len(parts) == 3 else 0
    return time(hh, mm, ss)


DEFAULT_PERIODS: tuple[Period, ...] = (
    Period("opening", "Opening", time(10, 0), time(10, 30), 1),
    Period("lunch-prep", "Lunch prep", time(10, 35), time(11, 25), 2),
    Period("lunch-service", "Lunch service", time(11, 30), time(14, 0), 3),
    Period("lunch-closing", "Lunch closing", time(14, 0), time(14, 30), 4),
    Period("dinner-prep", "Dinner prep", time(16, 30), time(17, 0), 5),
    Period("dinner-service", "Dinner service", time(17, 0), time(21, 30), 6),
    Period("closing", "Closing", time(21, 30), time(23, 0), 7),
)


class PeriodCatalog:
    """
    Static ordered list of periods.

    Built once at load time (code defaults or a JSON catalog file);
    never rescanned while the engine runs.
    """

    def __init__(self, periods: Iterable[Period]) -> None:
        ordered = sorted(periods, key=lambda p: p.order)
        ids = [p.id for p in ordered]
        if len(set(ids)) != len(ids):
            raise ValueError(f"duplicate period ids in catalog: {ids}")
        orders = [p.order for p in ordered]
        if len(set(orders)) != len(orders):
            raise ValueError(f"duplicate period order values in catalog: {orders}")
        self._periods: tuple[Period, ...] = tuple(ordered)
        self._by_id = {p.id: p for p in ordered}

    @classmethod
    def default(cls) -> PeriodCatalog:
        return cls(DEFAULT_PERIODS)

    @classmethod
    def from_records(cls, records: Iterable[dict[str, Any]]) -> PeriodCatalog:
        periods: list[Period] = []
        for i, rec in enumerate(records):
            try:
                periods.append(
                    Period(
                        id=str(rec["id"]),
                        display_name=str(rec.get("display_name") or rec["id"]),
                        start=parse_hhmm(rec["start"]),
                        end=parse_hhmm(rec["end"]),
                        order=int(rec.get("order", i + 1)),
                    )
                )
            except (KeyError, TypeError, ValueError) as e:
                raise ValueError(f"invalid period record #{i}: {e}") from e
        catalog = cls(periods)
        logger.info("Period catalog loaded: %d periods", len(catalog))
        return catalog

    def __iter__(self) -> Iterator[Period]:
        return iter(self._periods)

    def __len__(self) -> int:
        return len(self._periods)

    def __contains__(self, period_id: object) -> bool:
        return period_id in self._by_id

    @property
    def periods(self) -> tuple[Period, ...]:
        return self._periods

    def get(self, period_id: str) -> Period | None:
        return self._by_id.get(period_id)

    def require(self, period_id: str) -> Period:
        period = self._by_id.get(period_id)
        if period is None:
            raise KeyError(f"unknown period: {period_id}")
        return period

    @property
    def first(self) -> Period | None:
        return self._periods[0] if self._periods else None

    @property
    def last(self) -> Period | None:
        return self._periods[-1] if self._periods else None
