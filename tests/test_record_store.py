# tests/test_record_store.py

from __future__ import annotations

import sqlite3
from pathlib import Path

from shiftops.tasks.record_store import RecordStore
from shiftops.tasks.task_models import (
    ReviewStatus,
    ReviewTransition,
    TaskInstance,
    TaskStatus,
    TransitionAction,
)

from .fakes import DAY, at


def _instance(task_id: str = "opening-1", **overrides) -> TaskInstance:
    fields = dict(
        task_def_id=task_id,
        calendar_date=DAY,
        status=TaskStatus.IN_PROGRESS,
        review_status=ReviewStatus.IN_REVIEW,
        submission_count=1,
        evidence_refs=["mem://a.jpg"],
        updated_at=at(10, 5),
    )
    fields.update(overrides)
    return TaskInstance(**fields)


def _transition(user: str = "manager-1", target: str = "opening-1", action=TransitionAction.SUBMIT, **kw) -> ReviewTransition:
    return ReviewTransition(
        user_id=user,
        target_id=target,
        action=action,
        timestamp=kw.pop("timestamp", at(10, 5)),
        calendar_date=kw.pop("calendar_date", DAY),
        **kw,
    )


def test_upsert_is_idempotent_and_keeps_latest(store: RecordStore) -> None:
    store.upsert_task_instance(_instance())
    store.upsert_task_instance(_instance())
    store.upsert_task_instance(
        _instance(
            status=TaskStatus.PENDING,
            review_status=ReviewStatus.REJECTED,
            rejected_at=at(10, 6),
            rejection_reason="blurry",
            updated_at=at(10, 6),
        )
    )

    [row] = store.list_task_instances(DAY)
    assert row.review_status == ReviewStatus.REJECTED
    assert row.rejection_reason == "blurry"
    assert row.rejected_at == at(10, 6)
    assert row.updated_at == at(10, 6)
    assert row.evidence_refs == ["mem://a.jpg"]


def test_missing_instance_is_none(store: RecordStore) -> None:
    assert store.get_task_instance("nope", DAY) is None


def test_reinserting_a_transition_is_a_noop(store: RecordStore) -> None:
    tr = _transition(submission_no=1, evidence_fingerprint="abc")

    store.insert_transition(tr)
    store.insert_transition(tr)

    assert store.count_transitions() == 1
    assert store.list_transitions(DAY) == [tr]


def test_transitions_without_submission_no_also_deduplicate(store: RecordStore) -> None:
    tr = _transition(action=TransitionAction.ENTER, target="opening")
    store.insert_transition(tr)
    store.insert_transition(tr)
    assert store.count_transitions() == 1


def test_query_filters_by_user_target_and_date(store: RecordStore) -> None:
    store.insert_transition(_transition("manager-1", "opening-1", timestamp=at(10, 7), submission_no=1))
    store.insert_transition(_transition("chef-1", "opening-3", timestamp=at(10, 6), submission_no=1))
    store.insert_transition(_transition("manager-1", "opening", TransitionAction.ENTER, timestamp=at(10, 0)))
    store.insert_transition(
        _transition("manager-1", "opening", TransitionAction.ENTER, timestamp=at(10, 0, day=1), calendar_date=DAY.replace(day=3))
    )

    mine = store.query_transitions("manager-1", DAY)
    assert [t.target_id for t in mine] == ["opening", "opening-1"]
    assert [t.user_id for t in store.query_target_transitions("opening-3", DAY)] == ["chef-1"]
    # Ordered by timestamp across users.
    assert [t.timestamp for t in store.list_transitions(DAY)] == [at(10, 0), at(10, 6), at(10, 7)]


def test_evidence_refs_are_collected_across_instances(store: RecordStore) -> None:
    store.upsert_task_instance(_instance("opening-1", evidence_refs=["mem://a.jpg"]))
    store.upsert_task_instance(_instance("opening-3", evidence_refs=["mem://b.jpg", "mem://c.jpg"]))
    store.upsert_task_instance(_instance("opening-2", review_status=None, evidence_refs=[]))

    assert store.list_evidence_refs() == {"mem://a.jpg", "mem://b.jpg", "mem://c.jpg"}


def test_old_schema_is_migrated_in_place(tmp_path: Path) -> None:
    db = tmp_path / "old.sqlite3"
    conn = sqlite3.connect(db)
    conn.executescript(
        """
        CREATE TABLE task_instances (
            task_def_id TEXT NOT NULL,
            calendar_date TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending',
            review_status TEXT,
            submission_count INTEGER NOT NULL DEFAULT 0,
            evidence_refs TEXT NOT NULL DEFAULT '[]',
            completed_at TEXT,
            rejected_at TEXT,
            PRIMARY KEY (task_def_id, calendar_date)
        );
        CREATE TABLE review_transitions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            target_id TEXT NOT NULL,
            action TEXT NOT NULL,
            timestamp TEXT NOT NULL,
            calendar_date TEXT NOT NULL,
            submission_no INTEGER
        );
        INSERT INTO task_instances(task_def_id, calendar_date, status, review_status)
            VALUES ('opening-1', '2026-03-02', 'completed', 'approved');
        """
    )
    conn.commit()
    conn.close()

    store = RecordStore(db)

    old = store.get_task_instance("opening-1", DAY)
    assert old.status == TaskStatus.COMPLETED
    assert old.rejection_reason is None
    assert old.updated_at is None

    tr = _transition(action=TransitionAction.REJECT, submission_no=1, detail="too dark")
    store.insert_transition(tr)
    assert store.list_transitions(DAY) == [tr]
