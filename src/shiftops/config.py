# src/shiftops/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Design goals:
- One Settings object for the whole app (normal "settings layer").
- No secrets required at import time.
- Each process is one session: user/role come from the environment or CLI flags.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

ENV_PREFIX = "SHIFTOPS"

SYNC_TRANSPORTS = ("memory", "sqlite", "redis")


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix}"


load_dotenv(override=False)


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None else v


def _env_opt(name: str) -> str | None:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return None
    return v.strip()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_opt_int(name: str) -> int | None:
    raw = _env_opt(name)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return Path(raw).expanduser()


@dataclass(frozen=True, slots=True)
class Settings:
    # ---- App / logging ----
    app_name: str
    log_level: str

    # ---- Local data paths (ignored by git) ----
    data_dir: Path
    records_db_path: Path
    shadow_db_path: Path
    snapshot_path: Path
    media_dir: Path
    catalog_path: Path | None

    # ---- Clock / scheduling ----
    timezone: str | None
    tick_interval_seconds: float
    snapshot_every_ticks: int
    clock_offset_ttl_seconds: float

    # ---- Sync ----
    sync_transport: str
    redis_url: str

    # ---- Review workflow ----
    coalesce_window_seconds: float
    max_submissions: int | None

    # ---- Persistence outbox ----
    persist_retry_budget: int
    persist_retry_base_seconds: float
    persist_retry_max_seconds: float

    # ---- Session identity ----
    user_id: str
    role: str

    @staticmethod
    def from_env() -> Settings:
        app_name = _env(_k("APP_NAME"), "shiftops") or "shiftops"
        log_level = _env(_k("LOG_LEVEL"), "INFO")

        data_dir = _env_path(_k("DATA_DIR"), Path(".local/shiftops"))
        records_db_path = _env_path(_k("RECORDS_DB_PATH"), data_dir / "records.sqlite3")
        shadow_db_path = _env_path(_k("SHADOW_DB_PATH"), data_dir / "shadow.sqlite3")
        snapshot_path = _env_path(_k("SNAPSHOT_PATH"), data_dir / "snapshot.json")
        media_dir = _env_path(_k("MEDIA_DIR"), data_dir / "media")
        catalog_raw = _env_opt(_k("CATALOG_PATH"))
        catalog_path = Path(catalog_raw).expanduser() if catalog_raw else None

        timezone = _env_opt(_k("TIMEZONE"))
        tick_interval_seconds = _env_float(_k("TICK_INTERVAL_SECONDS"), 1.0)
        snapshot_every_ticks = _env_int(_k("SNAPSHOT_EVERY_TICKS"), 12)
        clock_offset_ttl_seconds = _env_float(_k("CLOCK_OFFSET_TTL_SECONDS"), 3600.0)

        sync_transport = _env(_k("SYNC_TRANSPORT"), "sqlite").strip().lower()
        if sync_transport not in SYNC_TRANSPORTS:
            sync_transport = "sqlite"
        redis_url = _env(_k("REDIS_URL"), "redis://localhost:6379/0")

        coalesce_window_seconds = _env_float(_k("COALESCE_WINDOW_SECONDS"), 30.0)
        max_submissions = _env_opt_int(_k("MAX_SUBMISSIONS"))

        persist_retry_budget = _env_int(_k("PERSIST_RETRY_BUDGET"), 5)
        persist_retry_base_seconds = _env_float(_k("PERSIST_RETRY_BASE_SECONDS"), 1.0)
        persist_retry_max_seconds = _env_float(_k("PERSIST_RETRY_MAX_SECONDS"), 60.0)

        user_id = _env(_k("USER_ID"), "manager-1").strip() or "manager-1"
        role = _env(_k("ROLE"), "manager").strip() or "manager"

        return Settings(
            app_name=app_name,
            log_level=log_level,
            data_dir=data_dir,
            records_db_path=records_db_path,
            shadow_db_path=shadow_db_path,
            snapshot_path=snapshot_path,
            media_dir=media_dir,
            catalog_path=catalog_path,
            timezone=timezone,
            tick_interval_seconds=tick_interval_seconds,
            snapshot_every_ticks=snapshot_every_ticks,
            clock_offset_ttl_seconds=clock_offset_ttl_seconds,
            sync_transport=sync_transport,
            redis_url=redis_url,
            coalesce_window_seconds=coalesce_window_seconds,
            max_submissions=max_submissions,
            persist_retry_budget=persist_retry_budget,
            persist_retry_base_seconds=persist_retry_base_seconds,
            persist_retry_max_seconds=persist_retry_max_seconds,
            user_id=user_id,
            role=role,
        )


SETTINGS = Settings.from_env()


def get_settings() -> Settings:
    return SETTINGS
