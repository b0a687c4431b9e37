# src/shiftops/connectors/local_media.py

from __future__ import annotations

import hashlib
import json
import logging
import os
import uuid
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class LocalMediaUploader:
    """
    Default MediaUploader: stores evidence blobs under the local data dir.

    Layout: <media_dir>/<calendar_date>/<task_id>/<uuid>.<ext> plus a .json sidecar
    with the upload metadata. Returns a file:// URI, which is all the core keeps.
    """

    def __init__(self, media_dir: str | Path) -> None:
        self._root = Path(media_dir)
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def upload_evidence(self, data: bytes, metadata: dict[str, Any]) -> str:
        if not data:
            raise ValueError("empty evidence payload")

        day = str(metadata.get("calendar_date") or "undated")
        task_id = str(metadata.get("task_id") or "unknown")
        ext = str(metadata.get("extension") or "bin").lstrip(".")

        target_dir = self._root / day / task_id
        target_dir.mkdir(parents=True, exist_ok=True)
        name = f"{uuid.uuid4().hex}.{ext}"
        path = target_dir / name

        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_bytes(data)
        os.replace(tmp, path)

        sidecar = {**metadata, "sha256": hashlib.sha256(data).hexdigest(), "size": len(data)}
        path.with_suffix(".json").write_text(json.dumps(sidecar, ensure_ascii=False, default=str), "utf-8")

        logger.info("Stored evidence for %s (%d bytes) at %s", task_id, len(data), path)
        return path.resolve().as_uri()

    def remove_orphans(self, live_refs: set[str]) -> int:
        """Delete stored blobs no instance references any more. Returns how many were removed."""
        removed = 0
        for path in self._root.rglob("*"):
            if not path.is_file() or path.suffix in (".json", ".tmp"):
                continue
            if path.resolve().as_uri() in live_refs:
                continue
            path.unlink(missing_ok=True)
            path.with_suffix(".json").unlink(missing_ok=True)
            removed += 1
        if removed:
            logger.info("Removed %d orphaned evidence blobs", removed)
        return removed
