# tests/test_commands.py

from __future__ import annotations

from datetime import timedelta
from pathlib import Path

from shiftops.cli.commands import CommandRegistry, registry
from shiftops.connectors.local_media import LocalMediaUploader
from shiftops.session.session_runner import Session
from shiftops.tasks.task_models import ReviewStatus, TaskStatus

from .fakes import DAY, FakeMedia


def test_command_registry_routes_2_and_3_params(state) -> None:
    reg = CommandRegistry()
    called = {"h2": 0, "h3": 0}

    def h2(session, args):
        called["h2"] += 1
        return "h2:" + ",".join(args)

    def h3(session, args, emit):
        called["h3"] += 1
        if emit is not None:
            emit("note")
        return "h3"

    reg.register("a", h2, "a")
    reg.register("b", h3, "b", aliases=["bee"])
    notes: list[str] = []
    session = Session(state)

    assert reg.handle(session, "/a x y") == "h2:x,y"
    assert reg.handle(session, "/BEE", emit=notes.append) == "h3"
    assert called == {"h2": 1, "h3": 1}
    assert notes == ["note"]


def test_command_registry_unknown_and_non_command(state) -> None:
    reg = CommandRegistry()
    session = Session(state)
    assert reg.handle(session, "hello") is None
    assert "Unknown command" in (reg.handle(session, "/nope") or "")
    assert "Empty command" in (reg.handle(session, "/") or "")


def test_help_lists_registered_commands(state) -> None:
    reply = registry.handle(Session(state), "/help")
    for name in ("/status", "/tasks", "/submit", "/approve", "/reject", "/offset", "/trigger", "/close"):
        assert name in reply


def test_status_and_tasks(state) -> None:
    session = Session(state)
    session.tick()

    status = registry.handle(session, "/status")
    assert status.startswith("Status:")
    assert "manager-1 as manager" in status
    assert "Opening" in status
    assert "Day completion: 0/8" in status

    tasks = registry.handle(session, "/tasks")
    assert "Period: Opening" in tasks
    assert "opening-1 [pending review=not_submitted]" in tasks
    assert "opening-3" not in tasks


def test_submit_reject_approve_flow(make_state) -> None:
    chef = Session(make_state("chef-1", "chef", media=FakeMedia()))
    manager = Session(make_state("manager-1", "manager"))
    chef.start()
    manager.start()

    reply = registry.handle(chef, "/submit opening-3 mem://fridge.jpg")
    assert reply.startswith("Submitted: opening-3 [in_progress review=in_review #1]")
    assert "opening-3" in registry.handle(manager, "/tasks")

    reply = registry.handle(manager, "/reject opening-3 door seal is torn")
    assert reply.startswith("Rejected:")
    assert "(rejected: door seal is torn)" in reply
    assert chef.state.machine.get("opening-3", DAY).review_status == ReviewStatus.REJECTED

    # The chef may not approve their own work.
    assert registry.handle(chef, "/approve opening-3").startswith("Not allowed:")


def test_submit_uploads_local_files(tmp_path: Path, settings, make_state) -> None:
    media = LocalMediaUploader(settings.media_dir)
    session = Session(make_state("chef-1", "chef", media=media))
    photo = tmp_path / "fridge.jpg"
    photo.write_bytes(b"\xff\xd8 not really a jpeg")

    reply = registry.handle(session, f"/submit opening-3 {photo}")

    assert reply.startswith("Submitted:")
    [ref] = session.state.machine.get("opening-3", DAY).evidence_refs
    assert ref.startswith("file://")
    assert ref.endswith(".jpg")

    # Referenced blobs survive cleanup; orphans are removed.
    orphan = media.upload_evidence(b"stale", {"task_id": "opening-3", "calendar_date": DAY.isoformat()})
    assert registry.handle(session, "/cleanup") == "Removed 1 orphaned evidence file(s)."
    assert orphan != ref


def test_complete_and_usage_errors(state) -> None:
    session = Session(state)

    assert registry.handle(session, "/complete") == "Usage: /complete <task_id>"
    assert registry.handle(session, "/reject opening-1").startswith("Usage:")
    assert registry.handle(session, "/complete opening-2").startswith("Completed: opening-2 [completed]")
    assert state.machine.get("opening-2", DAY).status == TaskStatus.COMPLETED
    assert "requires review" in registry.handle(session, "/complete opening-1")
    assert registry.handle(session, "/complete nope") == "Not allowed: unknown task: nope"


def test_offset_commands(state) -> None:
    session = Session(state)

    assert "2026-03-02 21:35:00" in registry.handle(session, "/offset 21:35")
    assert "2026-03-02 10:35:00" in registry.handle(session, "/offset +30")
    assert registry.handle(session, "/offset soon") == "Invalid offset: soon"
    assert registry.handle(session, "/offset inf") == "Invalid offset: inf"
    assert registry.handle(session, "/offset 1e12").startswith("Invalid offset:")
    assert state.clock.offset == timedelta(minutes=30)
    assert "2026-03-02 10:05:00" in registry.handle(session, "/clear-offset")
    assert state.clock.offset is None


def test_trigger_and_close(state) -> None:
    session = Session(state)

    assert registry.handle(session, "/trigger last-customer-left") == "Trigger last-customer-left fired."
    assert registry.handle(session, "/trigger last-customer-left") == (
        "Trigger last-customer-left not fired: already fired today, or the store is unreachable."
    )
    assert registry.handle(session, "/close").startswith("Not allowed: cannot close: 8 task(s) still open")
