# src/shiftops/cli/commands.py

from __future__ import annotations

import inspect
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path
from typing import cast

from ..core.errors import ClockAnomaly, EvidenceUploadFailure, InvalidTransition
from ..periods.period_catalog import parse_hhmm
from ..session.session_runner import Session
from ..tasks.business_day import summarize_day
from ..tasks.review_workflow import Evidence, EvidenceUpload
from ..tasks.task_models import TaskInstance, Verdict

CommandEmitter = Callable[[str], None]
CommandHandler2 = Callable[[Session, list[str]], str]
CommandHandler3 = Callable[[Session, list[str], CommandEmitter | None], str]
CommandHandler = CommandHandler2 | CommandHandler3

logger = logging.getLogger(__name__)


class CommandRegistry:
    """Simple slash-command registry used by connectors (/help, /tasks, /submit, ...)."""

    def __init__(self) -> None:
        self._handlers: dict[str, CommandHandler] = {}
        self._help: dict[str, str] = {}

    def register(
        self,
        name: str,
        handler: CommandHandler,
        help_text: str,
        aliases: list[str] | None = None,
    ) -> None:
        aliases = aliases or []
        key = name.lower()
        self._handlers[key] = handler
        self._help[key] = help_text
        for alias in aliases:
            self._handlers[alias.lower()] = handler

    def handle(self, session: Session, line: str, emit: CommandEmitter | None = None) -> str | None:
        """
        Handle a string like "/command args".
        Returns a reply string or None if not a command.
        """
        if not line.startswith("/"):
            return None

        parts = line[1:].split()
        if not parts:
            return "Empty command. Use /help to list available commands."

        name = parts[0].lower()
        args = parts[1:]

        handler = self._handlers.get(name)
        if not handler:
            return f"Unknown command: /{name}. Use /help to list available commands."

        try:
            nparams = len(inspect.signature(handler).parameters)
        except (TypeError, ValueError):
            nparams = 3

        try:
            if nparams >= 3:
                return cast(CommandHandler3, handler)(session, args, emit)
            return cast(CommandHandler2, handler)(session, args)
        except InvalidTransition as e:
            return f"Not allowed: {e}"
        except EvidenceUploadFailure as e:
            return f"Upload failed, nothing was submitted: {e}"

    def build_help(self) -> str:
        lines = ["Available commands:"]
        for name, help_text in self._help.items():
            lines.append(f"  /{name} - {help_text}")
        return "\n".join(lines)


registry = CommandRegistry()


def _fmt_time(value: datetime) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S")


def _fmt_instance(session: Session, inst: TaskInstance) -> str:
    st = session.state
    d = st.tasks.require(inst.task_def_id)
    review = f" review={inst.review_status.value}" if inst.review_status else ""
    count = f" #{inst.submission_count}" if inst.submission_count else ""
    flag = " [unsynced]" if st.controller.is_unsynced(inst.task_def_id, inst.calendar_date) else ""
    reason = f" (rejected: {inst.rejection_reason})" if inst.rejection_reason and inst.review_status else ""
    return f"{d.id} [{inst.status.value}{review}{count}] {d.display_text} <{d.evidence_kind.value}>{reason}{flag}"


def cmd_help(session: Session, args: list[str]) -> str:
    return registry.build_help()


def cmd_status(session: Session, args: list[str]) -> str:
    st = session.state
    now = st.clock.now()
    bs = st.scheduler.business_status(now)
    summary = summarize_day(st.machine, st.tasks, now.date())
    offset = st.clock.offset
    nxt = bs.next_period.display_name if bs.next_period else "-"
    return (
        "Status:\n"
        f"  Session: {session.context.user_id} as {session.context.role} ({session.context.session_id})\n"
        f"  Now: {_fmt_time(now)}" + (f" (offset {offset})" if offset is not None else "") + "\n"
        f"  Business: {bs.status.value} - {bs.label} (next: {nxt})\n"
        f"  Day completion: {summary.completed}/{summary.total} ({summary.completion_rate:.0f}%)\n"
        f"  Pending writes: {st.outbox.pending_count}, unsynced: {len(st.outbox.unsynced_keys)}"
    )


def cmd_tasks(session: Session, args: list[str]) -> str:
    st = session.state
    ctx = session.context
    now = st.clock.now()
    actionable = st.controller.actionable_tasks(ctx, now)
    reviews = st.controller.pending_reviews(ctx, now.date())

    lines: list[str] = []
    period = st.scheduler.current_period(now)
    lines.append(f"Period: {period.display_name if period else 'none'}")
    if actionable:
        lines.append("Your tasks:")
        lines.extend(f"  {_fmt_instance(session, i)}" for i in actionable)
    else:
        lines.append("Nothing to do right now.")
    if reviews:
        lines.append("Waiting for your review:")
        lines.extend(f"  {_fmt_instance(session, i)}" for i in reviews)
    return "\n".join(lines)


def _evidence_arg(raw: str) -> Evidence:
    path = Path(raw).expanduser()
    if path.is_file():
        return EvidenceUpload(
            data=path.read_bytes(),
            metadata={"filename": path.name, "extension": path.suffix.lstrip(".") or "bin"},
        )
    return raw


def cmd_submit(session: Session, args: list[str]) -> str:
    """
    /submit <task_id> <file-or-ref> [...]
    Files are uploaded through the media port; anything else is taken as an existing reference.
    """
    if len(args) < 2:
        return "Usage: /submit <task_id> <file-or-ref> [...]"
    task_id, raw = args[0], args[1:]
    inst = session.state.controller.request_review(session.context, task_id, [_evidence_arg(r) for r in raw])
    return f"Submitted: {_fmt_instance(session, inst)}"


def cmd_approve(session: Session, args: list[str]) -> str:
    if len(args) != 1:
        return "Usage: /approve <task_id>"
    inst = session.state.controller.decide(session.context, args[0], Verdict.APPROVE)
    return f"Approved: {_fmt_instance(session, inst)}"


def cmd_reject(session: Session, args: list[str]) -> str:
    if len(args) < 2:
        return "Usage: /reject <task_id> <reason...>"
    inst = session.state.controller.decide(session.context, args[0], Verdict.REJECT, " ".join(args[1:]))
    return f"Rejected: {_fmt_instance(session, inst)}"


def cmd_complete(session: Session, args: list[str]) -> str:
    if len(args) != 1:
        return "Usage: /complete <task_id>"
    inst = session.state.controller.complete(session.context, args[0])
    return f"Completed: {_fmt_instance(session, inst)}"


def cmd_offset(session: Session, args: list[str]) -> str:
    """
    /offset HH:MM    -> simulate that time of day today
    /offset +90      -> shift the clock by minutes (negative allowed)
    """
    if len(args) != 1:
        return "Usage: /offset HH:MM | /offset <+/-minutes>"
    st = session.state
    raw = args[0]
    try:
        if ":" in raw:
            real = st.clock.real_now()
            target = datetime.combine(real.date(), parse_hhmm(raw), tzinfo=real.tzinfo)
            delta = target - real
        else:
            delta = timedelta(minutes=float(raw))
        session.set_offset(delta)
    except (ValueError, OverflowError):
        return f"Invalid offset: {raw}"
    except ClockAnomaly as e:
        return f"Invalid offset: {e}"
    return f"Clock now reads {_fmt_time(st.clock.now())} (offset {delta})."


def cmd_clear_offset(session: Session, args: list[str]) -> str:
    session.clear_offset()
    return f"Clock offset cleared; now {_fmt_time(session.state.clock.now())}."


def cmd_trigger(session: Session, args: list[str]) -> str:
    if not args:
        return "Usage: /trigger <kind> [message...]"
    kind = args[0]
    message = " ".join(args[1:]) or kind.replace("-", " ")
    fired = session.state.controller.fire_trigger(session.context, kind, message)
    if fired:
        return f"Trigger {kind} fired."
    return f"Trigger {kind} not fired: already fired today, or the store is unreachable."


def cmd_close(session: Session, args: list[str]) -> str:
    closed = session.state.controller.close_business(session.context)
    return "Business day closed." if closed else "Business day is already closed."


def cmd_cleanup(session: Session, args: list[str], emit: CommandEmitter | None = None) -> str:
    st = session.state
    remove_orphans = getattr(st.media, "remove_orphans", None)
    if remove_orphans is None:
        return "The configured media store has no local cleanup."
    if emit:
        emit("[MEDIA] Reconciling stored evidence against live references...")
    removed = remove_orphans(st.store.list_evidence_refs())
    return f"Removed {removed} orphaned evidence file(s)."


registry.register("help", cmd_help, help_text="Show available commands.", aliases=["h", "?"])
registry.register("status", cmd_status, help_text="Show session, clock and business-day status.")
registry.register("tasks", cmd_tasks, help_text="List your tasks for the current period and pending reviews.")
registry.register("submit", cmd_submit, help_text="Submit evidence: /submit <task_id> <file-or-ref> [...].")
registry.register("approve", cmd_approve, help_text="Approve a submission: /approve <task_id>.")
registry.register("reject", cmd_reject, help_text="Reject a submission: /reject <task_id> <reason...>.")
registry.register("complete", cmd_complete, help_text="Complete a task without evidence: /complete <task_id>.")
registry.register("offset", cmd_offset, help_text="Test clock offset: /offset HH:MM | /offset <+/-minutes>.")
registry.register("clear-offset", cmd_clear_offset, help_text="Return to the real clock.")
registry.register("trigger", cmd_trigger, help_text="Fire a one-time event: /trigger <kind> [message...].")
registry.register("close", cmd_close, help_text="Close the business day (all close tasks must be done).")
registry.register("cleanup", cmd_cleanup, help_text="Delete stored evidence no task references any more.")
