# config.example.py

"""
Documentation-only module (safe to commit).

The real configuration is loaded from environment variables (optionally via a local .env file).
Use .env (local, gitignored) for anything machine-specific.

This file exists to make the repo self-documenting even without opening .env.example.
"""

ENV_VARS = {
    # App / logging
    "SHIFTOPS_APP_NAME": "App display name (default: shiftops).",
    "SHIFTOPS_LOG_LEVEL": "Console logging level (default: INFO). The log file always gets DEBUG.",
    # Paths (gitignored)
    "SHIFTOPS_DATA_DIR": "Local data directory (default: .local/shiftops).",
    "SHIFTOPS_RECORDS_DB_PATH": "RecordStore SQLite path (default: <data_dir>/records.sqlite3).",
    "SHIFTOPS_SHADOW_DB_PATH": "Shadow slot SQLite path for the sqlite transport (default: <data_dir>/shadow.sqlite3).",
    "SHIFTOPS_SNAPSHOT_PATH": "Local session snapshot JSON (default: <data_dir>/snapshot.json).",
    "SHIFTOPS_MEDIA_DIR": "Where uploaded evidence is stored (default: <data_dir>/media).",
    "SHIFTOPS_CATALOG_PATH": (
        "Optional JSON with 'periods' and/or 'tasks' lists; read once at startup (default: built-in catalog)."
    ),
    # Clock / scheduling
    "SHIFTOPS_TIMEZONE": "IANA timezone for periods, e.g. Europe/Berlin (default: host local time).",
    "SHIFTOPS_TICK_INTERVAL_SECONDS": "Session tick interval in seconds (default: 1).",
    "SHIFTOPS_SNAPSHOT_EVERY_TICKS": "Write the snapshot every N ticks (default: 12).",
    "SHIFTOPS_CLOCK_OFFSET_TTL_SECONDS": "A shared test clock offset older than this is dropped (default: 3600).",
    # Sync
    "SHIFTOPS_SYNC_TRANSPORT": "memory | sqlite | redis (default: sqlite).",
    "SHIFTOPS_REDIS_URL": "Redis URL for the redis transport (default: redis://localhost:6379/0).",
    # Review workflow
    "SHIFTOPS_COALESCE_WINDOW_SECONDS": "Identical re-submits within this window collapse into one (default: 30).",
    "SHIFTOPS_MAX_SUBMISSIONS": "Optional cap on submissions per task and day (default: unbounded).",
    # Persistence outbox
    "SHIFTOPS_PERSIST_RETRY_BUDGET": "Failed writes before an instance is flagged unsynced (default: 5).",
    "SHIFTOPS_PERSIST_RETRY_BASE_SECONDS": "First retry delay; doubles per attempt (default: 1).",
    "SHIFTOPS_PERSIST_RETRY_MAX_SECONDS": "Retry delay cap (default: 60).",
    # Session identity
    "SHIFTOPS_USER_ID": "User id of this session (default: manager-1; --user overrides).",
    "SHIFTOPS_ROLE": "Role of this session: manager | duty_manager | chef (default: manager; --role overrides).",
}
