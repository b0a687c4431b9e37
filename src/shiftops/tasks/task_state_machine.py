# src/shiftops/tasks/task_state_machine.py

from __future__ import annotations

"""
Task state machine.

Owns the in-memory TaskInstances of a session and the append-only
ReviewTransition log. Every mutating operation:
- validates first (InvalidTransition leaves the instance untouched),
- mutates the instance,
- appends one log entry and returns it, or returns transition=None when the
  call was a duplicate that got coalesced.

Lifecycle:
  status:        pending -> in_progress (optional) -> completed | overdue
  review_status: not_submitted -> in_review -> approved | rejected -> in_review ...
"""

import hashlib
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime, timedelta, tzinfo

from ..core.errors import InvalidTransition
from ..periods.period_catalog import PeriodCatalog
from .task_catalog import TaskCatalog
from .task_models import (
    ReviewStatus,
    ReviewTransition,
    TaskDefinition,
    TaskInstance,
    TaskStatus,
    TransitionAction,
)

logger = logging.getLogger(__name__)


def evidence_fingerprint(evidence_refs: Iterable[str]) -> str:
    joined = "\n".join(sorted(str(r) for r in evidence_refs))
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()[:32]


@dataclass(slots=True, frozen=True)
class StepResult:
    instance: TaskInstance
    transition: ReviewTransition | None

    @property
    def changed(self) -> bool:
        return self.transition is not None


class TaskStateMachine:
    def __init__(
        self,
        tasks: TaskCatalog,
        periods: PeriodCatalog,
        *,
        tz: tzinfo | None = None,
        coalesce_window_seconds: float = 30.0,
        max_submissions: int | None = None,
    ) -> None:
        self._tasks = tasks
        self._periods = periods
        self._tz = tz
        self._coalesce_window = timedelta(seconds=max(0.0, float(coalesce_window_seconds)))
        self._max_submissions = max_submissions
        self._instances: dict[tuple[str, date], TaskInstance] = {}
        self._log: list[ReviewTransition] = []
        self._log_ids: set[tuple] = set()

    @property
    def tasks(self) -> TaskCatalog:
        return self._tasks

    # ---- queries ----

    def get(self, task_def_id: str, day: date) -> TaskInstance | None:
        return self._instances.get((task_def_id, day))

    def instances_for(self, day: date) -> list[TaskInstance]:
        return [inst for (_, d), inst in self._instances.items() if d == day]

    def all_instances(self) -> list[TaskInstance]:
        return list(self._instances.values())

    @property
    def log(self) -> tuple[ReviewTransition, ...]:
        return tuple(self._log)

    def transitions(
        self,
        *,
        day: date | None = None,
        user_id: str | None = None,
        action: TransitionAction | None = None,
        target_id: str | None = None,
    ) -> list[ReviewTransition]:
        return [
            t
            for t in self._log
            if (day is None or t.calendar_date == day)
            and (user_id is None or t.user_id == user_id)
            and (action is None or t.action == action)
            and (target_id is None or t.target_id == target_id)
        ]

    def definition(self, instance: TaskInstance) -> TaskDefinition:
        return self._tasks.require(instance.task_def_id)

    def scheduled_window(self, instance: TaskInstance) -> tuple[datetime, datetime]:
        """Task window on the instance date, anchored at the period start (midnight-safe)."""
        d = self.definition(instance)
        period = self._periods.require(d.period_id)
        anchor = datetime.combine(instance.calendar_date, period.start, tzinfo=self._tz)
        return anchor + d.offset_start, anchor + d.offset_end

    def is_overdue(self, instance: TaskInstance, now: datetime) -> bool:
        """Pure check; the caller decides whether overdue blocks or only flags."""
        d = self.definition(instance)
        if d.notice or instance.status == TaskStatus.COMPLETED:
            return False
        if instance.review_status in (ReviewStatus.IN_REVIEW, ReviewStatus.APPROVED):
            return False
        _, end = self.scheduled_window(instance)
        return now > end

    # ---- lifecycle ----

    def activate(self, task_def: TaskDefinition, day: date, now: datetime | None = None) -> TaskInstance:
        """Create-or-fetch the instance for (task_def, day). Never overwrites."""
        key = (task_def.id, day)
        existing = self._instances.get(key)
        if existing is not None:
            return existing
        instance = TaskInstance(
            task_def_id=task_def.id,
            calendar_date=day,
            status=TaskStatus.PENDING,
            review_status=ReviewStatus.NOT_SUBMITTED if task_def.requires_review else None,
            updated_at=now,
        )
        self._instances[key] = instance
        logger.debug("Activated %s for %s", task_def.id, day.isoformat())
        return instance

    def flag_overdue(self, instance: TaskInstance, now: datetime) -> bool:
        if instance.status not in (TaskStatus.PENDING, TaskStatus.IN_PROGRESS):
            return False
        if not self.is_overdue(instance, now):
            return False
        instance.status = TaskStatus.OVERDUE
        instance.updated_at = now
        logger.info("Task %s (%s) is overdue", instance.task_def_id, instance.calendar_date.isoformat())
        return True

    def start(self, instance: TaskInstance, by: str, now: datetime) -> StepResult:
        if instance.status == TaskStatus.IN_PROGRESS:
            return StepResult(instance, None)
        if instance.status not in (TaskStatus.PENDING, TaskStatus.OVERDUE):
            raise InvalidTransition(f"{instance.task_def_id}: cannot start from {instance.status.value}")
        instance.status = TaskStatus.IN_PROGRESS
        instance.updated_at = now
        return StepResult(instance, None)

    def complete(self, instance: TaskInstance, by: str, now: datetime) -> StepResult:
        d = self.definition(instance)
        if d.notice:
            raise InvalidTransition(f"{d.id}: notices are not completable")
        if d.requires_review:
            raise InvalidTransition(f"{d.id}: requires review; submit evidence instead")
        if instance.status == TaskStatus.COMPLETED:
            return StepResult(instance, None)

        instance.status = TaskStatus.COMPLETED
        instance.completed_at = now
        instance.updated_at = now
        return StepResult(instance, self._append(by, d.id, TransitionAction.COMPLETE, now, instance.calendar_date))

    def submit(self, instance: TaskInstance, evidence_refs: Iterable[str], by: str, now: datetime) -> StepResult:
        d = self.definition(instance)
        refs = [str(r) for r in evidence_refs if str(r).strip()]
        if not d.requires_review:
            raise InvalidTransition(f"{d.id}: does not take review submissions")
        if not refs:
            raise InvalidTransition(f"{d.id}: evidence is required")

        fp = evidence_fingerprint(refs)
        review = instance.review_status

        if review == ReviewStatus.APPROVED:
            raise InvalidTransition(f"{d.id}: already approved")

        if review == ReviewStatus.IN_REVIEW:
            prior = self._find_submit(instance, instance.submission_count)
            if (
                prior is not None
                and prior.evidence_fingerprint == fp
                and now - prior.timestamp <= self._coalesce_window
            ):
                logger.info("Coalesced duplicate submit of %s #%s", d.id, instance.submission_count)
                return StepResult(instance, None)
            raise InvalidTransition(f"{d.id}: already in review")

        if self._max_submissions is not None and instance.submission_count >= self._max_submissions:
            raise InvalidTransition(f"{d.id}: submission limit {self._max_submissions} reached")

        instance.submission_count += 1
        instance.review_status = ReviewStatus.IN_REVIEW
        instance.evidence_refs = refs
        if instance.status in (TaskStatus.PENDING, TaskStatus.OVERDUE):
            instance.status = TaskStatus.IN_PROGRESS
        instance.updated_at = now

        tr = self._append(
            by,
            d.id,
            TransitionAction.SUBMIT,
            now,
            instance.calendar_date,
            submission_no=instance.submission_count,
            evidence_fingerprint=fp,
        )
        logger.info("Submitted %s #%s by %s", d.id, instance.submission_count, by)
        return StepResult(instance, tr)

    def approve(self, instance: TaskInstance, by: str, now: datetime) -> StepResult:
        if instance.review_status != ReviewStatus.IN_REVIEW:
            raise InvalidTransition(f"{instance.task_def_id}: cannot approve from {instance.review_status}")
        instance.review_status = ReviewStatus.APPROVED
        instance.status = TaskStatus.COMPLETED
        instance.completed_at = now
        instance.updated_at = now
        tr = self._append(
            by,
            instance.task_def_id,
            TransitionAction.APPROVE,
            now,
            instance.calendar_date,
            submission_no=instance.submission_count,
        )
        logger.info("Approved %s #%s by %s", instance.task_def_id, instance.submission_count, by)
        return StepResult(instance, tr)

    def reject(self, instance: TaskInstance, reason: str, by: str, now: datetime) -> StepResult:
        reason = (reason or "").strip()
        if not reason:
            raise InvalidTransition(f"{instance.task_def_id}: a rejection needs a reason")
        if instance.review_status != ReviewStatus.IN_REVIEW:
            raise InvalidTransition(f"{instance.task_def_id}: cannot reject from {instance.review_status}")
        instance.review_status = ReviewStatus.REJECTED
        instance.status = TaskStatus.PENDING
        instance.rejected_at = now
        instance.rejection_reason = reason
        instance.updated_at = now
        tr = self._append(
            by,
            instance.task_def_id,
            TransitionAction.REJECT,
            now,
            instance.calendar_date,
            submission_no=instance.submission_count,
            detail=reason,
        )
        logger.info("Rejected %s #%s by %s: %s", instance.task_def_id, instance.submission_count, by, reason)
        return StepResult(instance, tr)

    # ---- log ----

    def record(self, transition: ReviewTransition) -> bool:
        """Append a non-task transition (enter/exit/manual_close/trigger). False if already logged."""
        if transition.identity in self._log_ids:
            return False
        self._log.append(transition)
        self._log_ids.add(transition.identity)
        return True

    def merge_instance(self, remote: TaskInstance) -> bool:
        """Last-writer-wins merge of a re-fetched instance. True if local state changed."""
        if self._tasks.get(remote.task_def_id) is None:
            logger.warning("Ignoring instance of unknown task %s", remote.task_def_id)
            return False
        local = self._instances.get(remote.key)
        if local is None:
            self._instances[remote.key] = remote
            return True
        if remote.updated_at is None:
            return False
        if local.updated_at is not None and remote.updated_at <= local.updated_at:
            return False
        self._instances[remote.key] = remote
        return True

    def replay(self, transitions: Iterable[ReviewTransition]) -> int:
        """
        Rebuild state from log entries (e.g. re-fetched from the store).

        Entries already in the local log are skipped, so replaying the same
        log twice is a no-op. Returns the number of newly applied entries.
        """
        applied = 0
        for tr in sorted(transitions, key=lambda t: t.timestamp):
            if tr.identity in self._log_ids:
                continue
            self._apply_replayed(tr)
            self._log.append(tr)
            self._log_ids.add(tr.identity)
            applied += 1
        if applied:
            logger.info("Replayed %d transitions", applied)
        return applied

    def _apply_replayed(self, tr: ReviewTransition) -> None:
        d = self._tasks.get(tr.target_id)
        if d is None:
            return
        instance = self.activate(d, tr.calendar_date, tr.timestamp)
        n = tr.submission_no or 0

        if tr.action == TransitionAction.SUBMIT and n > instance.submission_count:
            instance.submission_count = n
            instance.review_status = ReviewStatus.IN_REVIEW
            if instance.status in (TaskStatus.PENDING, TaskStatus.OVERDUE):
                instance.status = TaskStatus.IN_PROGRESS
        elif tr.action == TransitionAction.APPROVE and n >= instance.submission_count:
            instance.submission_count = n
            instance.review_status = ReviewStatus.APPROVED
            instance.status = TaskStatus.COMPLETED
            instance.completed_at = tr.timestamp
        elif tr.action == TransitionAction.REJECT and n >= instance.submission_count:
            if instance.review_status == ReviewStatus.APPROVED and n == instance.submission_count:
                return
            instance.submission_count = n
            instance.review_status = ReviewStatus.REJECTED
            instance.status = TaskStatus.PENDING
            instance.rejected_at = tr.timestamp
            instance.rejection_reason = tr.detail
        elif tr.action == TransitionAction.COMPLETE:
            instance.status = TaskStatus.COMPLETED
            instance.completed_at = instance.completed_at or tr.timestamp
        else:
            return
        if instance.updated_at is None or tr.timestamp > instance.updated_at:
            instance.updated_at = tr.timestamp

    def _find_submit(self, instance: TaskInstance, submission_no: int) -> ReviewTransition | None:
        for tr in reversed(self._log):
            if (
                tr.action == TransitionAction.SUBMIT
                and tr.target_id == instance.task_def_id
                and tr.calendar_date == instance.calendar_date
                and tr.submission_no == submission_no
            ):
                return tr
        return None

    def _append(
        self,
        user_id: str,
        target_id: str,
        action: TransitionAction,
        now: datetime,
        day: date,
        *,
        submission_no: int | None = None,
        evidence_fingerprint: str | None = None,
        detail: str | None = None,
    ) -> ReviewTransition:
        tr = ReviewTransition(
            user_id=user_id,
            target_id=target_id,
            action=action,
            timestamp=now,
            calendar_date=day,
            submission_no=submission_no,
            evidence_fingerprint=evidence_fingerprint,
            detail=detail,
        )
        self._log.append(tr)
        self._log_ids.add(tr.identity)
        return tr
