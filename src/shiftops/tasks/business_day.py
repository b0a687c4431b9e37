# src/shiftops/tasks/business_day.py

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date

from .task_catalog import TaskCatalog
from .task_models import TaskStatus
from .task_state_machine import TaskStateMachine


@dataclass(slots=True, frozen=True)
class BusinessDaySummary:
    calendar_date: date
    total: int
    completed: int
    missing: list[str] = field(default_factory=list)

    @property
    def pending(self) -> int:
        return self.total - self.completed

    @property
    def completion_rate(self) -> float:
        if self.total == 0:
            return 100.0
        return round(self.completed / self.total * 100.0, 2)


def summarize_day(
    machine: TaskStateMachine,
    catalog: TaskCatalog,
    day: date,
    roles: Iterable[str] = ("manager", "duty_manager"),
) -> BusinessDaySummary:
    """Completion of every non-notice task of the given roles on one calendar date."""
    wanted = set(roles)
    total = completed = 0
    missing: list[str] = []
    for d in catalog:
        if d.notice or d.role not in wanted:
            continue
        total += 1
        inst = machine.get(d.id, day)
        if inst is not None and inst.status == TaskStatus.COMPLETED:
            completed += 1
        else:
            missing.append(d.id)
    return BusinessDaySummary(calendar_date=day, total=total, completed=completed, missing=missing)


def can_close(summary: BusinessDaySummary) -> tuple[bool, str | None]:
    if summary.pending == 0:
        return True, None
    return False, f"{summary.pending} task(s) still open: {', '.join(summary.missing)}"
