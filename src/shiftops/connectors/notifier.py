# src/shiftops/connectors/notifier.py

from __future__ import annotations

import logging
from collections.abc import Callable

logger = logging.getLogger(__name__)


class LoggingNotifier:
    """Default Notifier: logs the alert and echoes it to an attached console, if any."""

    def __init__(self, emit: Callable[[str], None] | None = None) -> None:
        self.emit = emit

    def alert(self, kind: str, message: str) -> None:
        logger.info("ALERT [%s] %s", kind, message)
        if self.emit is not None:
            self.emit(f"[ALERT:{kind}] {message}")
