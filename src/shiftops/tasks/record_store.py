# src/shiftops/tasks/record_store.py

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
from datetime import date, datetime
from pathlib import Path

from .task_models import (
    ReviewStatus,
    ReviewTransition,
    TaskInstance,
    TaskStatus,
    TransitionAction,
)

logger = logging.getLogger(__name__)


def _dt_to_str(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _str_to_dt(raw: str | None) -> datetime | None:
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        return None


class RecordStore:
    """
    SQLite persistence adapter for task instances and review transitions.

    - task_instances: one row per (task_def_id, calendar_date), upserted
    - review_transitions: append-only; a unique index on the entry identity
      makes re-inserting the same entry (outbox retry) a no-op

    The schema is migration-safe:
    - create table if missing
    - use PRAGMA table_info to detect missing columns
    - add columns with ALTER TABLE only when needed

    Thread-safety:
    - each method opens its own SQLite connection
    """

    def __init__(self, db_path: str | Path = "records.sqlite3") -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()
        logger.info("RecordStore ready db=%s", self._db_path)

    def close(self) -> None:
        """Compatibility hook for shutdown (no persistent connections to close)."""
        return

    # ---- low-level helpers ----

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        self._configure_conn(conn)
        return conn

    @staticmethod
    def _configure_conn(conn: sqlite3.Connection) -> None:
        with contextlib.suppress(sqlite3.Error):
            conn.execute("PRAGMA journal_mode=WAL")

    def _ensure_schema(self) -> None:
        conn = self._get_conn()
        try:
            cur = conn.cursor()

            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS task_instances (
                    task_def_id TEXT NOT NULL,
                    calendar_date TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    review_status TEXT,
                    submission_count INTEGER NOT NULL DEFAULT 0,
                    evidence_refs TEXT NOT NULL DEFAULT '[]',
                    completed_at TEXT,
                    rejected_at TEXT,
                    rejection_reason TEXT,
                    updated_at TEXT,
                    PRIMARY KEY (task_def_id, calendar_date)
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS review_transitions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    target_id TEXT NOT NULL,
                    action TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    calendar_date TEXT NOT NULL,
                    submission_no INTEGER,
                    evidence_fingerprint TEXT,
                    detail TEXT
                )
                """
            )

            # Migrations (safe): add missing columns.
            def add_col(table: str, name: str, decl: str) -> None:
                cur.execute(f"PRAGMA table_info({table})")
                cols = {row["name"] for row in cur.fetchall()}
                if name in cols:
                    return
                cur.execute(f"ALTER TABLE {table} ADD COLUMN {name} {decl}")
                logger.info("RecordStore migration: added column %s.%s", table, name)

            add_col("task_instances", "rejection_reason", "TEXT")
            add_col("task_instances", "updated_at", "TEXT")
            add_col("review_transitions", "evidence_fingerprint", "TEXT")
            add_col("review_transitions", "detail", "TEXT")

            cur.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS idx_transitions_identity "
                "ON review_transitions(user_id, target_id, action, calendar_date, "
                "COALESCE(submission_no, -1), timestamp)"
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_transitions_user_date ON review_transitions(user_id, calendar_date)"
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_transitions_target_date "
                "ON review_transitions(target_id, calendar_date)"
            )
            cur.execute("CREATE INDEX IF NOT EXISTS idx_instances_date ON task_instances(calendar_date)")

            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def _refs_to_str(refs: list[str]) -> str:
        return json.dumps(list(refs), ensure_ascii=False)

    @staticmethod
    def _str_to_refs(raw: str | None) -> list[str]:
        if not raw:
            return []
        try:
            val = json.loads(raw)
        except json.JSONDecodeError:
            return []
        return [str(v) for v in val] if isinstance(val, list) else []

    def _row_to_instance(self, row: sqlite3.Row) -> TaskInstance:
        return TaskInstance(
            task_def_id=str(row["task_def_id"]),
            calendar_date=date.fromisoformat(row["calendar_date"]),
            status=TaskStatus.from_db(row["status"]),
            review_status=ReviewStatus.from_db(row["review_status"]),
            submission_count=int(row["submission_count"] or 0),
            evidence_refs=self._str_to_refs(row["evidence_refs"]),
            completed_at=_str_to_dt(row["completed_at"]),
            rejected_at=_str_to_dt(row["rejected_at"]),
            rejection_reason=row["rejection_reason"],
            updated_at=_str_to_dt(row["updated_at"]),
        )

    @staticmethod
    def _row_to_transition(row: sqlite3.Row) -> ReviewTransition:
        return ReviewTransition(
            user_id=str(row["user_id"]),
            target_id=str(row["target_id"]),
            action=TransitionAction(row["action"]),
            timestamp=datetime.fromisoformat(row["timestamp"]),
            calendar_date=date.fromisoformat(row["calendar_date"]),
            submission_no=int(row["submission_no"]) if row["submission_no"] is not None else None,
            evidence_fingerprint=row["evidence_fingerprint"],
            detail=row["detail"],
        )

    # ---- transitions ----

    def insert_transition(self, record: ReviewTransition) -> None:
        conn = self._get_conn()
        try:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO review_transitions(
                    user_id, target_id, action, timestamp, calendar_date,
                    submission_no, evidence_fingerprint, detail
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.user_id,
                    record.target_id,
                    record.action.value,
                    record.timestamp.isoformat(),
                    record.calendar_date.isoformat(),
                    record.submission_no,
                    record.evidence_fingerprint,
                    record.detail,
                ),
            )
            conn.commit()
            if cur.rowcount == 0:
                logger.debug("Transition already stored: %s", record.identity)
        finally:
            conn.close()

    def _query_transitions(self, where: str, params: tuple) -> list[ReviewTransition]:
        conn = self._get_conn()
        try:
            rows = conn.execute(
                f"SELECT * FROM review_transitions WHERE {where} ORDER BY timestamp ASC, id ASC",
                params,
            ).fetchall()
        finally:
            conn.close()
        out: list[ReviewTransition] = []
        for row in rows:
            try:
                out.append(self._row_to_transition(row))
            except ValueError:
                logger.warning("Skipping unreadable transition row id=%s", row["id"])
        return out

    def query_transitions(self, user_id: str, day: date) -> list[ReviewTransition]:
        return self._query_transitions("user_id = ? AND calendar_date = ?", (user_id, day.isoformat()))

    def query_target_transitions(self, target_id: str, day: date) -> list[ReviewTransition]:
        return self._query_transitions("target_id = ? AND calendar_date = ?", (target_id, day.isoformat()))

    def list_transitions(self, day: date) -> list[ReviewTransition]:
        return self._query_transitions("calendar_date = ?", (day.isoformat(),))

    def count_transitions(self) -> int:
        conn = self._get_conn()
        try:
            (n,) = conn.execute("SELECT COUNT(*) FROM review_transitions").fetchone()
            return int(n)
        finally:
            conn.close()

    # ---- instances ----

    def upsert_task_instance(self, instance: TaskInstance) -> None:
        conn = self._get_conn()
        try:
            conn.execute(
                """
                INSERT INTO task_instances(
                    task_def_id, calendar_date, status, review_status, submission_count,
                    evidence_refs, completed_at, rejected_at, rejection_reason, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(task_def_id, calendar_date) DO UPDATE SET
                    status = excluded.status,
                    review_status = excluded.review_status,
                    submission_count = excluded.submission_count,
                    evidence_refs = excluded.evidence_refs,
                    completed_at = excluded.completed_at,
                    rejected_at = excluded.rejected_at,
                    rejection_reason = excluded.rejection_reason,
                    updated_at = excluded.updated_at
                """,
                (
                    instance.task_def_id,
                    instance.calendar_date.isoformat(),
                    instance.status.value,
                    instance.review_status.value if instance.review_status else None,
                    int(instance.submission_count),
                    self._refs_to_str(instance.evidence_refs),
                    _dt_to_str(instance.completed_at),
                    _dt_to_str(instance.rejected_at),
                    instance.rejection_reason,
                    _dt_to_str(instance.updated_at),
                ),
            )
            conn.commit()
        finally:
            conn.close()

    def get_task_instance(self, task_def_id: str, day: date) -> TaskInstance | None:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT * FROM task_instances WHERE task_def_id = ? AND calendar_date = ?",
                (task_def_id, day.isoformat()),
            ).fetchone()
            return self._row_to_instance(row) if row else None
        finally:
            conn.close()

    def list_task_instances(self, day: date) -> list[TaskInstance]:
        conn = self._get_conn()
        try:
            rows = conn.execute(
                "SELECT * FROM task_instances WHERE calendar_date = ? ORDER BY task_def_id ASC",
                (day.isoformat(),),
            ).fetchall()
            return [self._row_to_instance(r) for r in rows]
        finally:
            conn.close()

    def list_evidence_refs(self) -> set[str]:
        """Every evidence reference still held by an instance (for the external blob cleanup)."""
        conn = self._get_conn()
        try:
            rows = conn.execute("SELECT evidence_refs FROM task_instances WHERE evidence_refs != '[]'").fetchall()
        finally:
            conn.close()
        refs: set[str] = set()
        for row in rows:
            refs.update(self._str_to_refs(row["evidence_refs"]))
        return refs
