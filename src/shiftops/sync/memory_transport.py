# src/shiftops/sync/memory_transport.py

from __future__ import annotations

import copy
import logging
from typing import Any

from ..core.errors import SyncDeliveryFailure
from ..core.ports import MessageReceiver
from .sync_models import SyncMessage

logger = logging.getLogger(__name__)


class LocalChannelHub:
    """
    In-process fan-out shared by every session of one process.

    Delivery is synchronous and at-most-once: a session that is not attached
    at post time never sees the message (it has to catch up from the shadow).
    """

    def __init__(self) -> None:
        self._receivers: dict[str, MessageReceiver] = {}
        self.available = True

    def channel(self) -> LocalChannel:
        return LocalChannel(self)

    @property
    def session_ids(self) -> list[str]:
        return list(self._receivers)

    def _attach(self, session_id: str, receiver: MessageReceiver) -> None:
        self._receivers[session_id] = receiver

    def _detach(self, session_id: str) -> None:
        self._receivers.pop(session_id, None)

    def _fan_out(self, message: SyncMessage) -> None:
        if not self.available:
            raise SyncDeliveryFailure("local hub is unavailable")
        for session_id, receiver in list(self._receivers.items()):
            if session_id == message.sender_id:
                continue
            try:
                receiver(message)
            except Exception:
                logger.exception("Receiver %s failed", session_id)


class LocalChannel:
    def __init__(self, hub: LocalChannelHub) -> None:
        self._hub = hub

    def attach(self, session_id: str, receiver: MessageReceiver) -> None:
        self._hub._attach(session_id, receiver)

    def detach(self, session_id: str) -> None:
        self._hub._detach(session_id)

    def post(self, message: SyncMessage) -> None:
        self._hub._fan_out(message)

    def poll(self) -> int:
        # Push-based: nothing to drain, but an outage must still surface.
        if not self._hub.available:
            raise SyncDeliveryFailure("local hub is unavailable")
        return 0


class MemoryShadowStore:
    """Dict-backed shadow slots (tests, single process)."""

    def __init__(self) -> None:
        self._slots: dict[str, dict[str, Any]] = {}

    def write_slot(self, key: str, payload: dict[str, Any]) -> None:
        self._slots[key] = copy.deepcopy(payload)

    def read_slot(self, key: str) -> dict[str, Any] | None:
        val = self._slots.get(key)
        return copy.deepcopy(val) if val is not None else None

    def list_slots(self) -> dict[str, dict[str, Any]]:
        return copy.deepcopy(self._slots)
