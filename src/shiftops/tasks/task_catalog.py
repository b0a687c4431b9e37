# src/shiftops/tasks/task_catalog.py

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from datetime import timedelta
from typing import Any

from ..periods.period_catalog import PeriodCatalog
from .task_models import EvidenceKind, TaskDefinition

logger = logging.getLogger(__name__)


def _task(
    task_id: str,
    role: str,
    period_id: str,
    start_min: int,
    end_min: int,
    kind: EvidenceKind,
    text: str,
    *,
    reviewer_role: str = "manager",
    notice: bool = False,
    trigger: str | None = None,
) -> TaskDefinition:
    return TaskDefinition(
        id=task_id,
        role=role,
        period_id=period_id,
        offset_start=timedelta(minutes=start_min),
        offset_end=timedelta(minutes=end_min),
        evidence_kind=kind,
        display_text=text,
        reviewer_role=reviewer_role,
        notice=notice,
        trigger=trigger,
    )


# Duty-manager closing work waits for a manager to report the dining room empty.
LAST_CUSTOMER_LUNCH = "last-customer-left-lunch"
LAST_CUSTOMER_DINNER = "last-customer-left-dinner"

P, R, L, A, N = EvidenceKind.PHOTO, EvidenceKind.RECORD, EvidenceKind.LIST, EvidenceKind.AUDIO, EvidenceKind.NONE

DEFAULT_TASKS: tuple[TaskDefinition, ...] = (
    # opening
    _task("opening-1", "manager", "opening", 0, 10, P, "Open up: check equipment and utility meters", reviewer_role="owner"),
    _task("opening-2", "manager", "opening", 10, 20, N, "Run the morning briefing and assign stations"),
    _task("opening-3", "chef", "opening", 0, 10, P, "Check kitchen equipment and cold-room temperatures"),
    _task("opening-4", "chef", "opening", 10, 30, R, "Log delivered goods against the order sheet"),
    # lunch prep
    _task("lunch-prep-1", "manager", "lunch-prep", 0, 25, L, "Confirm reservations and table layout", reviewer_role="owner"),
    _task("lunch-prep-2", "chef", "lunch-prep", 0, 40, P, "Mise en place for lunch service"),
    # lunch service (announcements only)
    _task("lunch-service-1", "manager", "lunch-service", 0, 150, N, "Watch table turnover and guest wait times", notice=True),
    _task("lunch-service-2", "chef", "lunch-service", 0, 150, N, "Keep ticket times under fifteen minutes", notice=True),
    # lunch closing
    _task(
        "lunch-closing-1", "duty_manager", "lunch-closing", 0, 30, P, "Reset the dining room after lunch",
        trigger=LAST_CUSTOMER_LUNCH,
    ),
    _task("lunch-closing-2", "chef", "lunch-closing", 0, 30, P, "Clean down the line after lunch"),
    # dinner prep
    _task("dinner-prep-1", "manager", "dinner-prep", 0, 30, L, "Confirm dinner reservations and staffing", reviewer_role="owner"),
    _task("dinner-prep-2", "chef", "dinner-prep", 0, 30, P, "Mise en place for dinner service"),
    # dinner service (announcements only)
    _task("dinner-service-1", "manager", "dinner-service", 0, 270, N, "Watch table turnover and guest wait times", notice=True),
    _task("dinner-service-2", "chef", "dinner-service", 0, 270, N, "Keep ticket times under fifteen minutes", notice=True),
    # closing
    _task("closing-1", "manager", "closing", 0, 90, R, "Count the day's receipts and file them", reviewer_role="owner"),
    _task("closing-2", "duty_manager", "closing", 0, 90, P, "Lock up: doors, gas valves, lights", trigger=LAST_CUSTOMER_DINNER),
    _task("closing-3", "chef", "closing", 0, 90, A, "Record the stock handover note"),
    _task("closing-4", "manager", "closing", 0, 30, N, "Assign tonight's duty roster"),
)


class TaskCatalog:
    """Static per-role task definitions bound to periods (load-time only)."""

    def __init__(self, definitions: Iterable[TaskDefinition], periods: PeriodCatalog | None = None) -> None:
        defs = list(definitions)
        ids = [d.id for d in defs]
        if len(set(ids)) != len(ids):
            raise ValueError("duplicate task definition ids in catalog")
        self_reviewed = sorted(d.id for d in defs if d.requires_review and d.reviewer_role == d.role)
        if self_reviewed:
            raise ValueError(f"reviewer_role must differ from the submitting role: {self_reviewed}")
        if periods is not None:
            unknown = sorted({d.period_id for d in defs if d.period_id not in periods})
            if unknown:
                raise ValueError(f"task definitions reference unknown periods: {unknown}")
            order = {p.id: p.order for p in periods}
            defs.sort(key=lambda d: (order[d.period_id], d.offset_start, d.id))
        self._defs: tuple[TaskDefinition, ...] = tuple(defs)
        self._by_id = {d.id: d for d in defs}

    @classmethod
    def default(cls, periods: PeriodCatalog | None = None) -> TaskCatalog:
        return cls(DEFAULT_TASKS, periods)

    @classmethod
    def from_records(cls, records: Iterable[dict[str, Any]], periods: PeriodCatalog | None = None) -> TaskCatalog:
        defs: list[TaskDefinition] = []
        for i, rec in enumerate(records):
            try:
                defs.append(
                    TaskDefinition(
                        id=str(rec["id"]),
                        role=str(rec["role"]),
                        period_id=str(rec["period_id"]),
                        offset_start=timedelta(minutes=float(rec.get("offset_start_minutes", 0))),
                        offset_end=timedelta(minutes=float(rec["offset_end_minutes"])),
                        evidence_kind=EvidenceKind(str(rec.get("evidence_kind", "none"))),
                        display_text=str(rec.get("display_text") or rec["id"]),
                        reviewer_role=str(rec.get("reviewer_role", "manager")),
                        notice=bool(rec.get("notice", False)),
                        trigger=str(rec["trigger"]) if rec.get("trigger") else None,
                    )
                )
            except (KeyError, TypeError, ValueError) as e:
                raise ValueError(f"invalid task record #{i}: {e}") from e
        catalog = cls(defs, periods)
        logger.info("Task catalog loaded: %d definitions", len(catalog))
        return catalog

    def __iter__(self) -> Iterator[TaskDefinition]:
        return iter(self._defs)

    def __len__(self) -> int:
        return len(self._defs)

    def get(self, task_def_id: str) -> TaskDefinition | None:
        return self._by_id.get(task_def_id)

    def require(self, task_def_id: str) -> TaskDefinition:
        d = self._by_id.get(task_def_id)
        if d is None:
            raise KeyError(f"unknown task definition: {task_def_id}")
        return d

    def for_period(self, period_id: str, role: str | None = None) -> list[TaskDefinition]:
        return [d for d in self._defs if d.period_id == period_id and (role is None or d.role == role)]
