# src/shiftops/tasks/task_models.py

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import StrEnum


class EvidenceKind(StrEnum):
    PHOTO = "photo"
    RECORD = "record"
    LIST = "list"
    AUDIO = "audio"
    NONE = "none"


class TaskStatus(StrEnum):
    """
    Task lifecycle status.

    Notes:
    - "in_progress" is optional; a task may go straight from pending to completed.
    - "overdue" is a flag set by the caller, the task stays actionable.
    """

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    OVERDUE = "overdue"

    @classmethod
    def from_db(cls, raw: str | None) -> TaskStatus:
        if not raw:
            return cls.PENDING
        try:
            return cls(raw)
        except ValueError:
            return cls.PENDING


class ReviewStatus(StrEnum):
    NOT_SUBMITTED = "not_submitted"
    IN_REVIEW = "in_review"
    APPROVED = "approved"
    REJECTED = "rejected"

    @classmethod
    def from_db(cls, raw: str | None) -> ReviewStatus | None:
        if not raw:
            return None
        try:
            return cls(raw)
        except ValueError:
            return None


class TransitionAction(StrEnum):
    ENTER = "enter"
    EXIT = "exit"
    MANUAL_CLOSE = "manual_close"
    SUBMIT = "submit"
    APPROVE = "approve"
    REJECT = "reject"
    COMPLETE = "complete"
    TRIGGER = "trigger"


class Verdict(StrEnum):
    APPROVE = "approve"
    REJECT = "reject"


@dataclass(slots=True, frozen=True)
class TaskDefinition:
    """
    Static checklist item bound to a period.

    offset_start/offset_end are measured from the period start, so a task in a
    midnight-spanning period can end on the next calendar day.
    A task with `trigger` set is held back until someone fires that trigger
    on the same calendar date.
    """

    id: str
    role: str
    period_id: str
    offset_start: timedelta
    offset_end: timedelta
    evidence_kind: EvidenceKind
    display_text: str
    reviewer_role: str = "manager"
    notice: bool = False
    trigger: str | None = None

    @property
    def requires_review(self) -> bool:
        return self.evidence_kind != EvidenceKind.NONE and not self.notice


@dataclass(slots=True)
class TaskInstance:
    task_def_id: str
    calendar_date: date
    status: TaskStatus
    review_status: ReviewStatus | None
    submission_count: int = 0
    evidence_refs: list[str] = field(default_factory=list)
    completed_at: datetime | None = None
    rejected_at: datetime | None = None
    rejection_reason: str | None = None
    updated_at: datetime | None = None

    @property
    def key(self) -> tuple[str, date]:
        return (self.task_def_id, self.calendar_date)


@dataclass(slots=True, frozen=True)
class ReviewTransition:
    """
    One append-only log entry.

    target_id is a task definition id for task actions and a period id for
    enter/exit/manual_close; trigger entries use the trigger kind.
    """

    user_id: str
    target_id: str
    action: TransitionAction
    timestamp: datetime
    calendar_date: date
    submission_no: int | None = None
    evidence_fingerprint: str | None = None
    detail: str | None = None

    @property
    def identity(self) -> tuple[str, str, str, str, int | None, str]:
        return (
            self.user_id,
            self.target_id,
            self.action.value,
            self.calendar_date.isoformat(),
            self.submission_no,
            self.timestamp.isoformat(),
        )
