# src/shiftops/tasks/review_workflow.py

from __future__ import annotations

"""
Review workflow controller.

Orchestrates the submitter/approver handoff on top of TaskStateMachine:
- local state changes first (authoritative for the running session),
- store writes go through the outbox (fire-and-forget, retried),
- a SyncMessage tells the other sessions to re-fetch.

Every call takes an explicit SessionContext; nothing here reads "the current user".
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from ..clock.clock_source import ClockSource
from ..core.errors import EvidenceUploadFailure, InvalidTransition, RoleMismatch
from ..core.ports import MediaUploader, Notifier, PersistenceAdapter
from ..core.state import SessionContext
from ..periods.period_models import PeriodEvent, PeriodEventKind
from ..periods.period_scheduler import PeriodScheduler
from ..sync.sync_bus import SyncBus
from ..sync.sync_models import MessageType, SyncMessage
from .business_day import can_close, summarize_day
from .outbox import PersistenceOutbox
from .task_models import (
    ReviewStatus,
    ReviewTransition,
    TaskDefinition,
    TaskInstance,
    TaskStatus,
    TransitionAction,
    Verdict,
)
from .task_state_machine import StepResult, TaskStateMachine

logger = logging.getLogger(__name__)

BUSINESS_TARGET = "business"


@dataclass(slots=True, frozen=True)
class EvidenceUpload:
    """Raw evidence to push through the media port before submitting."""

    data: bytes
    metadata: dict[str, Any] = field(default_factory=dict)


Evidence = str | EvidenceUpload


class ReviewWorkflowController:
    def __init__(
        self,
        machine: TaskStateMachine,
        bus: SyncBus,
        outbox: PersistenceOutbox,
        *,
        clock: ClockSource,
        scheduler: PeriodScheduler,
        store: PersistenceAdapter | None = None,
        media: MediaUploader | None = None,
        notifier: Notifier | None = None,
        close_roles: Sequence[str] = ("manager", "duty_manager"),
    ) -> None:
        self._machine = machine
        self._bus = bus
        self._outbox = outbox
        self._clock = clock
        self._scheduler = scheduler
        self._store = store
        self._media = media
        self._notifier = notifier
        self._close_roles = tuple(close_roles)

    @property
    def machine(self) -> TaskStateMachine:
        return self._machine

    # ---- task actions ----

    def request_review(self, ctx: SessionContext, task_id: str, evidence: Sequence[Evidence]) -> TaskInstance:
        now = self._clock.now()
        d = self._definition(task_id)
        self._require_role(ctx, d.role, d.id)
        instance = self._instance(d, now)
        if instance.review_status == ReviewStatus.APPROVED:
            raise InvalidTransition(f"{d.id}: already approved")

        # Upload before touching the instance: a failed upload leaves no partial state.
        refs = [self._upload(ctx, d, item, now) for item in evidence]

        result = self._machine.submit(instance, refs, ctx.user_id, now)
        if result.changed:
            self._persist(result)
            self._publish(
                MessageType.TASK_SUBMITTED,
                now,
                task_id=d.id,
                calendar_date=instance.calendar_date.isoformat(),
                submission_count=instance.submission_count,
                reviewer_role=d.reviewer_role,
                submitted_by=ctx.user_id,
            )
        return instance

    def decide(self, ctx: SessionContext, task_id: str, verdict: Verdict | str, reason: str | None = None) -> TaskInstance:
        now = self._clock.now()
        d = self._definition(task_id)
        self._require_role(ctx, d.reviewer_role, d.id)
        verdict = Verdict(verdict)
        instance = self._instance(d, now)
        if self._submitted_by(instance) == ctx.user_id:
            raise InvalidTransition(f"{d.id}: {ctx.user_id} may not review their own submission")

        if verdict == Verdict.APPROVE:
            result = self._machine.approve(instance, ctx.user_id, now)
        else:
            result = self._machine.reject(instance, reason or "", ctx.user_id, now)

        self._persist(result)
        self._publish(
            MessageType.REVIEW_DECIDED,
            now,
            task_id=d.id,
            calendar_date=instance.calendar_date.isoformat(),
            verdict=verdict.value,
            reason=instance.rejection_reason if verdict == Verdict.REJECT else None,
            submission_count=instance.submission_count,
            decided_by=ctx.user_id,
        )
        return instance

    def complete(self, ctx: SessionContext, task_id: str) -> TaskInstance:
        now = self._clock.now()
        d = self._definition(task_id)
        self._require_role(ctx, d.role, d.id)
        instance = self._instance(d, now)
        result = self._machine.complete(instance, ctx.user_id, now)
        if result.changed:
            self._persist(result)
            self._publish(
                MessageType.TASK_COMPLETED,
                now,
                task_id=d.id,
                calendar_date=instance.calendar_date.isoformat(),
                completed_by=ctx.user_id,
            )
        return instance

    def start(self, ctx: SessionContext, task_id: str) -> TaskInstance:
        now = self._clock.now()
        d = self._definition(task_id)
        self._require_role(ctx, d.role, d.id)
        instance = self._instance(d, now)
        self._machine.start(instance, ctx.user_id, now)
        self._outbox.enqueue_instance(instance)
        self._outbox.flush()
        return instance

    # ---- one-per-day actions ----

    def has_acted_today(
        self,
        user_id: str,
        action: TransitionAction | str,
        now: datetime | None = None,
        target_id: str | None = None,
    ) -> bool:
        """
        Whether user_id already logged `action` on today's calendar date (local log, then store).

        Best-effort: when the store cannot be queried only the local log counts.
        """
        return bool(self._acted_today(user_id, TransitionAction(action), now, target_id))

    def trigger_fired(self, kind: str, day: date) -> bool:
        """Whether anyone fired `kind` on `day`. An unreachable store counts as not fired."""
        if self._machine.transitions(day=day, action=TransitionAction.TRIGGER, target_id=kind):
            return True
        if self._store is None:
            return False
        try:
            remote = self._store.list_transitions(day)
        except Exception:
            logger.exception("list_transitions failed for %s; trigger %s held back", day.isoformat(), kind)
            return False
        return any(t.action == TransitionAction.TRIGGER and t.target_id == kind for t in remote)

    def fire_trigger(self, ctx: SessionContext, kind: str, message: str) -> bool:
        """
        One-time operational event (e.g. "last customer left lunch").

        Records a trigger transition and alerts at most once per user and day,
        however often the triggering action repeats, then releases the tasks
        gated on `kind`. Returns False when it was a repeat, or when the store
        cannot tell whether it was one.
        """
        now = self._clock.now()
        acted = self._acted_today(ctx.user_id, TransitionAction.TRIGGER, now, kind)
        if acted is None:
            logger.warning("Trigger %s not fired: cannot check earlier triggers by %s", kind, ctx.user_id)
            return False
        if acted:
            logger.info("Trigger %s already fired today by %s", kind, ctx.user_id)
            return False

        tr = ReviewTransition(
            user_id=ctx.user_id,
            target_id=kind,
            action=TransitionAction.TRIGGER,
            timestamp=now,
            calendar_date=now.date(),
            detail=message,
        )
        self._record(tr)
        released = [d for d in self._machine.tasks if d.trigger == kind]
        for d in released:
            self._outbox.enqueue_instance(self._machine.activate(d, now.date(), now))
        if released:
            self._outbox.flush()
            logger.info("Trigger %s released %s", kind, ", ".join(d.id for d in released))
        self._publish(
            MessageType.TRIGGER,
            now,
            kind=kind,
            message=message,
            fired_by=ctx.user_id,
            calendar_date=now.date().isoformat(),
        )
        self._alert(kind, message)
        return True

    def close_business(self, ctx: SessionContext) -> bool:
        """Manual close of the business day. Refused while close-relevant tasks are open."""
        now = self._clock.now()
        day = now.date()
        if self._closed_on(day):
            return False

        summary = summarize_day(self._machine, self._machine.tasks, day, self._close_roles)
        ok, reason = can_close(summary)
        if not ok:
            raise InvalidTransition(f"cannot close: {reason}")

        period = self._scheduler.current_period(now)
        tr = ReviewTransition(
            user_id=ctx.user_id,
            target_id=period.id if period else BUSINESS_TARGET,
            action=TransitionAction.MANUAL_CLOSE,
            timestamp=now,
            calendar_date=day,
        )
        self._record(tr)
        self._publish(MessageType.BUSINESS_CLOSED, now, calendar_date=day.isoformat(), closed_by=ctx.user_id)
        logger.info("Business day %s closed by %s", day.isoformat(), ctx.user_id)
        return True

    def record_period_event(self, ctx: SessionContext, event: PeriodEvent) -> bool:
        """Log enter/exit for this session's user. Day-roll events are not logged."""
        if event.kind == PeriodEventKind.DAY_ROLLED or event.period_id is None:
            return False
        action = TransitionAction.ENTER if event.kind == PeriodEventKind.ENTER else TransitionAction.EXIT
        tr = ReviewTransition(
            user_id=ctx.user_id,
            target_id=event.period_id,
            action=action,
            timestamp=event.at,
            calendar_date=event.calendar_date,
        )
        return self._record(tr)

    # ---- views ----

    def activate_period(self, period_id: str, day: date, now: datetime) -> list[TaskInstance]:
        """Create the period's instances for `day`; trigger-gated tasks wait for their trigger."""
        return [
            self._machine.activate(d, day, now)
            for d in self._machine.tasks.for_period(period_id)
            if self._released(d, day)
        ]

    def actionable_tasks(self, ctx: SessionContext, now: datetime | None = None) -> list[TaskInstance]:
        """
        Instances ctx.role should act on right now.

        Open tasks of the current period, plus today's rejected tasks whatever
        period they belong to (a rejection re-arms the task for its submitter).
        """
        now = now or self._clock.now()
        day = now.date()
        period = self._scheduler.current_period(now)
        out: list[TaskInstance] = []
        if period is not None:
            for d in self._machine.tasks.for_period(period.id, ctx.role):
                if d.notice or not self._released(d, day):
                    continue
                inst = self._machine.activate(d, day, now)
                if inst.status == TaskStatus.COMPLETED or inst.review_status == ReviewStatus.IN_REVIEW:
                    continue
                out.append(inst)

        listed = {inst.key for inst in out}
        for inst in self._machine.instances_for(day):
            d = self._machine.tasks.get(inst.task_def_id)
            if d is None or d.role != ctx.role or inst.key in listed:
                continue
            if inst.review_status == ReviewStatus.REJECTED:
                out.append(inst)
        return out

    def pending_reviews(self, ctx: SessionContext, day: date | None = None) -> list[TaskInstance]:
        day = day or self._clock.now().date()
        out: list[TaskInstance] = []
        for inst in self._machine.instances_for(day):
            d = self._machine.tasks.get(inst.task_def_id)
            if d is not None and d.reviewer_role == ctx.role and inst.review_status == ReviewStatus.IN_REVIEW:
                out.append(inst)
        return out

    def is_unsynced(self, task_id: str, day: date) -> bool:
        return self._outbox.is_unsynced(task_id, day)

    def refresh(self, day: date) -> int:
        """
        Re-fetch one calendar date from the store and merge it in.

        Instances merge last-writer-wins on updated_at; the transition log is
        replayed idempotently. Returns the number of local changes.
        """
        if self._store is None:
            return 0
        changed = 0
        try:
            for remote in self._store.list_task_instances(day):
                if self._outbox.is_unsynced(*remote.key):
                    continue
                if self._machine.merge_instance(remote):
                    changed += 1
            changed += self._machine.replay(self._store.list_transitions(day))
        except Exception:
            logger.exception("Refresh from store failed for %s", day.isoformat())
        return changed

    # ---- internals ----

    def _definition(self, task_id: str) -> TaskDefinition:
        d = self._machine.tasks.get(task_id)
        if d is None:
            raise InvalidTransition(f"unknown task: {task_id}")
        return d

    def _instance(self, d: TaskDefinition, now: datetime) -> TaskInstance:
        if not self._released(d, now.date()):
            raise InvalidTransition(f"{d.id}: waiting for trigger {d.trigger!r}")
        return self._machine.activate(d, now.date(), now)

    def _released(self, d: TaskDefinition, day: date) -> bool:
        if d.trigger is None or self._machine.get(d.id, day) is not None:
            return True
        return self.trigger_fired(d.trigger, day)

    def _submitted_by(self, instance: TaskInstance) -> str | None:
        """User behind the submission currently under review, if the log knows it."""
        for tr in reversed(self._machine.transitions(day=instance.calendar_date, action=TransitionAction.SUBMIT)):
            if tr.target_id == instance.task_def_id and tr.submission_no == instance.submission_count:
                return tr.user_id
        return None

    def _acted_today(
        self,
        user_id: str,
        action: TransitionAction,
        now: datetime | None,
        target_id: str | None,
    ) -> bool | None:
        """True/False from the local log and the store; None when only the store could answer and it failed."""
        day = (now or self._clock.now()).date()
        if self._machine.transitions(day=day, user_id=user_id, action=action, target_id=target_id):
            return True
        if self._store is None:
            return False
        try:
            remote = self._store.query_transitions(user_id, day)
        except Exception:
            logger.exception("query_transitions failed user=%s", user_id)
            return None
        return any(t.action == action and (target_id is None or t.target_id == target_id) for t in remote)

    @staticmethod
    def _require_role(ctx: SessionContext, role: str, task_id: str) -> None:
        if ctx.role != role:
            raise RoleMismatch(f"{task_id}: role {ctx.role!r} may not do this (needs {role!r})")

    def _upload(self, ctx: SessionContext, d: TaskDefinition, item: Evidence, now: datetime) -> str:
        if isinstance(item, str):
            return item
        if self._media is None:
            raise EvidenceUploadFailure("no media uploader configured")
        metadata = {
            "task_id": d.id,
            "calendar_date": now.date().isoformat(),
            "evidence_kind": d.evidence_kind.value,
            "user_id": ctx.user_id,
            **item.metadata,
        }
        try:
            url = self._media.upload_evidence(item.data, metadata)
        except Exception as e:
            logger.warning("Evidence upload failed for %s: %s", d.id, e)
            raise EvidenceUploadFailure(f"{d.id}: evidence upload failed: {e}") from e
        if not url:
            raise EvidenceUploadFailure(f"{d.id}: uploader returned no reference")
        return url

    def _persist(self, result: StepResult) -> None:
        if result.transition is not None:
            self._outbox.enqueue_transition(result.transition)
        self._outbox.enqueue_instance(result.instance)
        self._outbox.flush()

    def _record(self, tr: ReviewTransition) -> bool:
        if not self._machine.record(tr):
            return False
        self._outbox.enqueue_transition(tr)
        self._outbox.flush()
        return True

    def _closed_on(self, day: date) -> bool:
        if self._machine.transitions(day=day, action=TransitionAction.MANUAL_CLOSE):
            return True
        if self._store is None:
            return False
        try:
            return any(t.action == TransitionAction.MANUAL_CLOSE for t in self._store.list_transitions(day))
        except Exception:
            logger.exception("list_transitions failed for %s", day.isoformat())
            return False

    def _publish(self, msg_type: MessageType, now: datetime, **payload: Any) -> None:
        self._bus.publish(
            SyncMessage(type=msg_type, sender_id=self._bus.session_id, timestamp=now.timestamp(), payload=payload)
        )

    def _alert(self, kind: str, message: str) -> None:
        if self._notifier is None:
            return
        try:
            self._notifier.alert(kind, message)
        except Exception:
            logger.exception("Notifier failed for %s", kind)
