# tests/test_review_workflow.py

from __future__ import annotations

from datetime import timedelta

import pytest

from shiftops.core.errors import EvidenceUploadFailure, InvalidTransition, RoleMismatch
from shiftops.session.session_runner import Session
from shiftops.sync.sync_bus import slot_key
from shiftops.sync.sync_models import MessageType
from shiftops.tasks.business_day import can_close, summarize_day
from shiftops.tasks.review_workflow import EvidenceUpload
from shiftops.tasks.task_catalog import LAST_CUSTOMER_DINNER, LAST_CUSTOMER_LUNCH, TaskCatalog
from shiftops.tasks.task_models import (
    EvidenceKind,
    ReviewStatus,
    TaskDefinition,
    TaskStatus,
    TransitionAction,
    Verdict,
)

from .fakes import DAY, FakeMedia, FakeNotifier, FlakyStore, at


def test_role_mismatch_is_refused(make_state) -> None:
    chef = make_state("chef-1", "chef")

    with pytest.raises(RoleMismatch):
        chef.controller.request_review(chef.context, "opening-1", ["mem://a.jpg"])
    with pytest.raises(RoleMismatch):
        chef.controller.decide(chef.context, "opening-3", Verdict.APPROVE)
    assert chef.machine.log == ()


def test_unknown_task_is_an_invalid_transition(state) -> None:
    with pytest.raises(InvalidTransition):
        state.controller.complete(state.context, "does-not-exist")


def test_failed_upload_leaves_no_trace(make_state, shadow) -> None:
    media = FakeMedia(fail=True)
    chef = make_state("chef-1", "chef", media=media)

    with pytest.raises(EvidenceUploadFailure):
        chef.controller.request_review(chef.context, "opening-3", [EvidenceUpload(b"\xff\xd8jpeg")])

    inst = chef.machine.get("opening-3", DAY)
    assert inst.review_status == ReviewStatus.NOT_SUBMITTED
    assert inst.submission_count == 0
    assert chef.store.list_transitions(DAY) == []
    assert shadow.read_slot(slot_key(MessageType.TASK_SUBMITTED)) is None


def test_upload_then_submit_keeps_only_the_reference(make_state) -> None:
    media = FakeMedia()
    chef = make_state("chef-1", "chef", media=media)

    inst = chef.controller.request_review(
        chef.context,
        "opening-3",
        [EvidenceUpload(b"\xff\xd8jpeg", {"extension": "jpg"}), "mem://existing.jpg"],
    )

    assert inst.evidence_refs == ["mem://evidence/opening-3/1", "mem://existing.jpg"]
    data, metadata = media.uploads[0]
    assert data == b"\xff\xd8jpeg"
    assert metadata["task_id"] == "opening-3"
    assert metadata["user_id"] == "chef-1"
    assert metadata["extension"] == "jpg"
    stored = chef.store.get_task_instance("opening-3", DAY)
    assert stored.review_status == ReviewStatus.IN_REVIEW
    assert stored.evidence_refs == inst.evidence_refs


def test_submit_reject_resubmit_approve_across_sessions(make_state, wall) -> None:
    chef_alerts, manager_alerts = FakeNotifier(), FakeNotifier()
    chef = Session(make_state("chef-1", "chef", notifier=chef_alerts))
    manager = Session(make_state("manager-1", "manager", notifier=manager_alerts))
    chef.start()
    manager.start()

    chef.state.controller.request_review(chef.context, "opening-3", ["mem://fridge-1.jpg"])

    assert manager_alerts.kinds() == ["review_requested"]
    [waiting] = manager.state.controller.pending_reviews(manager.context, DAY)
    assert waiting.task_def_id == "opening-3"
    assert waiting.review_status == ReviewStatus.IN_REVIEW

    wall.advance(60)
    manager.state.controller.decide(manager.context, "opening-3", Verdict.REJECT, "fridge door left open")

    chef_inst = chef.state.machine.get("opening-3", DAY)
    assert chef_inst.review_status == ReviewStatus.REJECTED
    assert chef_inst.rejection_reason == "fridge door left open"
    assert chef_alerts.kinds() == ["rejected"]
    assert "fridge door left open" in chef_alerts.alerts[0][1]

    wall.advance(60)
    chef.state.controller.request_review(chef.context, "opening-3", ["mem://fridge-2.jpg"])
    wall.advance(60)
    manager.state.controller.decide(manager.context, "opening-3", Verdict.APPROVE)

    final = chef.state.machine.get("opening-3", DAY)
    assert final.review_status == ReviewStatus.APPROVED
    assert final.status == TaskStatus.COMPLETED
    assert final.submission_count == 2

    rejects = [t for t in chef.state.store.query_target_transitions("opening-3", DAY) if t.action == TransitionAction.REJECT]
    assert [(t.submission_no, t.detail) for t in rejects] == [(1, "fridge door left open")]


def test_duplicate_submit_is_published_once(make_state, shadow) -> None:
    chef = make_state("chef-1", "chef")

    chef.controller.request_review(chef.context, "opening-3", ["mem://a.jpg"])
    first = shadow.read_slot(slot_key(MessageType.TASK_SUBMITTED))
    inst = chef.controller.request_review(chef.context, "opening-3", ["mem://a.jpg"])

    assert inst.submission_count == 1
    assert shadow.read_slot(slot_key(MessageType.TASK_SUBMITTED)) == first
    submits = [t for t in chef.store.list_transitions(DAY) if t.action == TransitionAction.SUBMIT]
    assert len(submits) == 1


def test_trigger_fires_once_per_user_and_day(make_state) -> None:
    alerts = FakeNotifier()
    first = make_state("manager-1", "manager", notifier=alerts)

    assert first.controller.fire_trigger(first.context, "last-customer-left", "Last lunch guest has left")
    assert not first.controller.fire_trigger(first.context, "last-customer-left", "Last lunch guest has left")
    assert alerts.alerts == [("last-customer-left", "Last lunch guest has left")]

    # A second session of the same user sees the stored transition.
    again = make_state("manager-1", "manager")
    assert again.controller.has_acted_today("manager-1", TransitionAction.TRIGGER, target_id="last-customer-left")
    assert not again.controller.fire_trigger(again.context, "last-customer-left", "again")

    # Other users keep their own once-per-day budget.
    other = make_state("manager-2", "manager")
    assert other.controller.fire_trigger(other.context, "last-customer-left", "Last lunch guest has left")


def test_notifier_failure_does_not_block_trigger(make_state, caplog) -> None:
    st = make_state(notifier=FakeNotifier(fail=True))

    assert st.controller.fire_trigger(st.context, "last-customer-left", "bye")
    assert st.machine.transitions(action=TransitionAction.TRIGGER)
    assert "Notifier failed" in caplog.text


def test_close_business_requires_close_tasks_done(state, wall) -> None:
    wall.set(at(22, 0))
    ctrl, machine = state.controller, state.machine

    with pytest.raises(InvalidTransition, match="cannot close"):
        ctrl.close_business(state.context)

    summary = summarize_day(machine, state.tasks, DAY)
    assert summary.total == 8
    for task_id in summary.missing:
        d = state.tasks.require(task_id)
        inst = machine.activate(d, DAY, at(22, 0))
        if d.requires_review:
            machine.submit(inst, [f"mem://{task_id}.jpg"], "staff", at(22, 0))
            machine.approve(inst, "owner", at(22, 0))
        else:
            machine.complete(inst, "staff", at(22, 0))

    ok, reason = can_close(summarize_day(machine, state.tasks, DAY))
    assert ok and reason is None

    assert ctrl.close_business(state.context)
    assert not ctrl.close_business(state.context)
    closes = [t for t in state.store.list_transitions(DAY) if t.action == TransitionAction.MANUAL_CLOSE]
    assert len(closes) == 1
    assert closes[0].target_id == "closing"


def test_actionable_tasks_follow_role_and_period(make_state, wall) -> None:
    manager = make_state("manager-1", "manager")
    chef = make_state("chef-1", "chef")

    assert [i.task_def_id for i in manager.controller.actionable_tasks(manager.context)] == ["opening-1", "opening-2"]
    assert [i.task_def_id for i in chef.controller.actionable_tasks(chef.context)] == ["opening-3", "opening-4"]

    manager.controller.complete(manager.context, "opening-2")
    manager.controller.request_review(manager.context, "opening-1", ["mem://meters.jpg"])
    assert manager.controller.actionable_tasks(manager.context) == []

    # Service periods only carry notices.
    wall.set(at(12, 0))
    assert manager.controller.actionable_tasks(manager.context) == []
    wall.set(at(15, 0))
    assert chef.controller.actionable_tasks(chef.context) == []


def test_reviewer_role_must_differ_from_submitter_role(periods) -> None:
    selfish = TaskDefinition(
        id="audit-1",
        role="manager",
        period_id="opening",
        offset_start=timedelta(0),
        offset_end=timedelta(minutes=10),
        evidence_kind=EvidenceKind.PHOTO,
        display_text="Audit the till",
        reviewer_role="manager",
    )
    with pytest.raises(ValueError, match="reviewer_role"):
        TaskCatalog([selfish], periods)


def test_manager_work_goes_to_the_owner(make_state, wall) -> None:
    manager = Session(make_state("manager-1", "manager"))
    owner = Session(make_state("owner-1", "owner"))
    manager.start()
    owner.start()

    manager.state.controller.request_review(manager.context, "opening-1", ["mem://meters.jpg"])
    with pytest.raises(RoleMismatch):
        manager.state.controller.decide(manager.context, "opening-1", Verdict.APPROVE)
    assert manager.state.machine.get("opening-1", DAY).review_status == ReviewStatus.IN_REVIEW

    wall.advance(60)
    owner.state.controller.decide(owner.context, "opening-1", Verdict.APPROVE)
    assert manager.state.machine.get("opening-1", DAY).review_status == ReviewStatus.APPROVED


def test_same_user_may_not_review_own_submission(make_state) -> None:
    as_chef = Session(make_state("pat", "chef"))
    as_manager = Session(make_state("pat", "manager"))
    as_chef.start()
    as_manager.start()

    as_chef.state.controller.request_review(as_chef.context, "opening-3", ["mem://cold-room.jpg"])

    with pytest.raises(InvalidTransition, match="own submission"):
        as_manager.state.controller.decide(as_manager.context, "opening-3", Verdict.APPROVE)
    assert as_manager.state.machine.get("opening-3", DAY).review_status == ReviewStatus.IN_REVIEW


def test_rejection_after_period_end_is_actionable_again(make_state, wall) -> None:
    chef = Session(make_state("chef-1", "chef"))
    manager = Session(make_state("manager-1", "manager"))
    chef.start()
    manager.start()

    wall.set(at(11, 0))
    chef.state.controller.request_review(chef.context, "lunch-prep-2", ["mem://mise.jpg"])
    assert "lunch-prep-2" not in [i.task_def_id for i in chef.state.controller.actionable_tasks(chef.context)]

    wall.set(at(14, 10))
    manager.state.controller.decide(manager.context, "lunch-prep-2", Verdict.REJECT, "herbs not labelled")

    actionable = chef.state.controller.actionable_tasks(chef.context)
    assert [i.task_def_id for i in actionable] == ["lunch-closing-2", "lunch-prep-2"]
    assert actionable[1].rejection_reason == "herbs not labelled"

    # Between periods only the rejected task is left.
    wall.set(at(15, 0))
    assert [i.task_def_id for i in chef.state.controller.actionable_tasks(chef.context)] == ["lunch-prep-2"]


def test_duty_manager_closing_waits_for_trigger(make_state, wall) -> None:
    wall.set(at(14, 5))
    duty = Session(make_state("duty-1", "duty_manager"))
    manager = Session(make_state("manager-1", "manager"))
    duty.start()
    manager.start()

    assert [e.period_id for e in duty.tick()] == ["lunch-closing"]
    assert duty.state.machine.get("lunch-closing-1", DAY) is None
    assert duty.state.controller.actionable_tasks(duty.context) == []
    with pytest.raises(InvalidTransition, match="waiting for trigger"):
        duty.state.controller.request_review(duty.context, "lunch-closing-1", ["mem://room.jpg"])

    assert manager.state.controller.fire_trigger(manager.context, LAST_CUSTOMER_LUNCH, "Last lunch guest has left")

    assert [i.task_def_id for i in duty.state.controller.actionable_tasks(duty.context)] == ["lunch-closing-1"]

    # A session opened later restores the released task from the store.
    late = Session(make_state("duty-2", "duty_manager"))
    late.start()
    assert [i.task_def_id for i in late.state.controller.actionable_tasks(late.context)] == ["lunch-closing-1"]

    # The dinner trigger is separate.
    wall.set(at(21, 40))
    duty.tick()
    assert not duty.state.controller.trigger_fired(LAST_CUSTOMER_DINNER, DAY)
    assert duty.state.machine.get("closing-2", DAY) is None


def test_trigger_is_not_fired_when_the_store_cannot_answer(make_state, store, caplog) -> None:
    class BlindStore(FlakyStore):
        def query_transitions(self, user_id, day):
            raise ConnectionError("store unreachable")

    st = make_state(persistence=BlindStore(store))

    assert not st.controller.has_acted_today(st.context.user_id, TransitionAction.TRIGGER)
    assert not st.controller.fire_trigger(st.context, LAST_CUSTOMER_LUNCH, "Last lunch guest has left")
    assert st.machine.transitions(action=TransitionAction.TRIGGER) == []
    assert "cannot check earlier triggers" in caplog.text
