# src/shiftops/session/snapshot.py

from __future__ import annotations

"""
Local snapshot of a session's in-memory state.

Instances and the transition log are written as one JSON document so a restarted
session can resume without waiting for the store. The file is only a cache:
if it fails validation, CorruptSnapshot is raised and the caller reloads from
the PersistenceAdapter instead.
"""

import contextlib
import json
import logging
import os
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Any

from ..core.errors import CorruptSnapshot
from ..tasks.task_models import (
    ReviewStatus,
    ReviewTransition,
    TaskInstance,
    TaskStatus,
    TransitionAction,
)
from ..tasks.task_state_machine import TaskStateMachine

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


def _dt(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _instance_to_dict(inst: TaskInstance) -> dict[str, Any]:
    return {
        "task_def_id": inst.task_def_id,
        "calendar_date": inst.calendar_date.isoformat(),
        "status": inst.status.value,
        "review_status": inst.review_status.value if inst.review_status else None,
        "submission_count": inst.submission_count,
        "evidence_refs": list(inst.evidence_refs),
        "completed_at": _dt(inst.completed_at),
        "rejected_at": _dt(inst.rejected_at),
        "rejection_reason": inst.rejection_reason,
        "updated_at": _dt(inst.updated_at),
    }


def _transition_to_dict(tr: ReviewTransition) -> dict[str, Any]:
    return {
        "user_id": tr.user_id,
        "target_id": tr.target_id,
        "action": tr.action.value,
        "timestamp": tr.timestamp.isoformat(),
        "calendar_date": tr.calendar_date.isoformat(),
        "submission_no": tr.submission_no,
        "evidence_fingerprint": tr.evidence_fingerprint,
        "detail": tr.detail,
    }


def _opt_dt(raw: Any) -> datetime | None:
    if raw is None:
        return None
    return datetime.fromisoformat(str(raw))


def _instance_from_dict(raw: dict[str, Any]) -> TaskInstance:
    refs = raw.get("evidence_refs", [])
    if not isinstance(refs, list):
        raise ValueError("evidence_refs must be a list")
    review = raw.get("review_status")
    return TaskInstance(
        task_def_id=str(raw["task_def_id"]),
        calendar_date=date.fromisoformat(raw["calendar_date"]),
        status=TaskStatus(raw["status"]),
        review_status=ReviewStatus(review) if review is not None else None,
        submission_count=int(raw.get("submission_count", 0)),
        evidence_refs=[str(r) for r in refs],
        completed_at=_opt_dt(raw.get("completed_at")),
        rejected_at=_opt_dt(raw.get("rejected_at")),
        rejection_reason=raw.get("rejection_reason"),
        updated_at=_opt_dt(raw.get("updated_at")),
    )


def _transition_from_dict(raw: dict[str, Any]) -> ReviewTransition:
    n = raw.get("submission_no")
    return ReviewTransition(
        user_id=str(raw["user_id"]),
        target_id=str(raw["target_id"]),
        action=TransitionAction(raw["action"]),
        timestamp=datetime.fromisoformat(raw["timestamp"]),
        calendar_date=date.fromisoformat(raw["calendar_date"]),
        submission_no=int(n) if n is not None else None,
        evidence_fingerprint=raw.get("evidence_fingerprint"),
        detail=raw.get("detail"),
    )


def save_snapshot(machine: TaskStateMachine, path: str | Path, *, observed_at: datetime | None = None) -> None:
    """Atomically write the machine state to path (tmp file + os.replace, mode 0600)."""
    path = Path(path)
    doc = {
        "version": SNAPSHOT_VERSION,
        "observed_at": _dt(observed_at),
        "instances": [_instance_to_dict(i) for i in machine.all_instances()],
        "transitions": [_transition_to_dict(t) for t in machine.log],
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    tmp.write_text(json.dumps(doc, ensure_ascii=False, indent=2), "utf-8")
    os.replace(tmp, path)
    with contextlib.suppress(OSError):
        os.chmod(path, 0o600)
    logger.debug("Saved snapshot: %d instances, %d transitions -> %s", len(doc["instances"]), len(doc["transitions"]), path)


@dataclass(slots=True, frozen=True)
class Snapshot:
    instances: list[TaskInstance]
    transitions: list[ReviewTransition]
    observed_at: datetime | None


def load_snapshot(path: str | Path) -> Snapshot | None:
    """
    Read and validate a snapshot.

    Returns None when no snapshot exists; raises CorruptSnapshot when the file
    is unreadable or any entry fails validation (a partial restore is never done).
    """
    path = Path(path)
    if not path.exists():
        return None
    try:
        doc = json.loads(path.read_text("utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise CorruptSnapshot(f"{path}: unreadable snapshot: {e}") from e

    if not isinstance(doc, dict) or doc.get("version") != SNAPSHOT_VERSION:
        raise CorruptSnapshot(f"{path}: unsupported snapshot format")
    raw_instances = doc.get("instances")
    raw_transitions = doc.get("transitions")
    if not isinstance(raw_instances, list) or not isinstance(raw_transitions, list):
        raise CorruptSnapshot(f"{path}: instances/transitions must be lists")

    try:
        instances = [_instance_from_dict(r) for r in raw_instances]
        transitions = [_transition_from_dict(r) for r in raw_transitions]
        observed_at = _opt_dt(doc.get("observed_at"))
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise CorruptSnapshot(f"{path}: invalid entry: {e}") from e

    keys = [i.key for i in instances]
    if len(set(keys)) != len(keys):
        raise CorruptSnapshot(f"{path}: duplicate task instances")

    logger.info("Loaded snapshot: %d instances, %d transitions from %s", len(instances), len(transitions), path)
    return Snapshot(instances=instances, transitions=transitions, observed_at=observed_at)


def restore_snapshot(machine: TaskStateMachine, snapshot: Snapshot) -> int:
    """Merge a loaded snapshot into the machine. Returns the number of instances taken."""
    taken = sum(1 for inst in snapshot.instances if machine.merge_instance(inst))
    machine.replay(snapshot.transitions)
    return taken
