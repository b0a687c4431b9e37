# src/shiftops/sync/shadow_store.py

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
import time
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class SqliteShadowStore:
    """
    SQLite-backed shadow slots: one row per key, last write wins.

    Several processes on one host can share the file; each method opens its
    own short-lived connection.
    """

    def __init__(self, db_path: str | Path = "shadow.sqlite3") -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()
        logger.info("SqliteShadowStore ready db=%s", self._db_path)

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        with contextlib.suppress(sqlite3.Error):
            conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _ensure_schema(self) -> None:
        conn = self._get_conn()
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS shadow_slots (
                    key TEXT PRIMARY KEY,
                    payload TEXT NOT NULL,
                    updated_at REAL NOT NULL
                )
                """
            )
            conn.commit()
        finally:
            conn.close()

    def write_slot(self, key: str, payload: dict[str, Any]) -> None:
        body = json.dumps(payload, ensure_ascii=False)
        conn = self._get_conn()
        try:
            conn.execute(
                """
                INSERT INTO shadow_slots(key, payload, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET payload = excluded.payload, updated_at = excluded.updated_at
                """,
                (key, body, time.time()),
            )
            conn.commit()
        finally:
            conn.close()

    def read_slot(self, key: str) -> dict[str, Any] | None:
        conn = self._get_conn()
        try:
            row = conn.execute("SELECT payload FROM shadow_slots WHERE key = ?", (key,)).fetchone()
        finally:
            conn.close()
        return self._decode(key, row["payload"]) if row else None

    def list_slots(self) -> dict[str, dict[str, Any]]:
        conn = self._get_conn()
        try:
            rows = conn.execute("SELECT key, payload FROM shadow_slots ORDER BY updated_at ASC").fetchall()
        finally:
            conn.close()
        out: dict[str, dict[str, Any]] = {}
        for row in rows:
            val = self._decode(row["key"], row["payload"])
            if val is not None:
                out[row["key"]] = val
        return out

    @staticmethod
    def _decode(key: str, raw: str | None) -> dict[str, Any] | None:
        if not raw:
            return None
        try:
            val = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Shadow slot %s holds invalid JSON; ignoring", key)
            return None
        return val if isinstance(val, dict) else None
