# src/shiftops/sync/sync_models.py

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class MessageType(StrEnum):
    PERIOD_CHANGED = "period_changed"
    TASK_SUBMITTED = "task_submitted"
    REVIEW_DECIDED = "review_decided"
    TASK_COMPLETED = "task_completed"
    TRIGGER = "trigger"
    CLOCK_OFFSET = "clock_offset"
    BUSINESS_CLOSED = "business_closed"


@dataclass(slots=True, frozen=True)
class SyncMessage:
    """
    Invalidation hint exchanged between sessions.

    timestamp is epoch seconds of the sender's (possibly simulated) clock.
    Receivers must re-fetch state instead of trusting the payload.
    """

    type: MessageType
    sender_id: str
    timestamp: float
    payload: dict[str, Any] = field(default_factory=dict)
    message_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "sender_id": self.sender_id,
            "timestamp": self.timestamp,
            "payload": dict(self.payload),
            "message_id": self.message_id,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> SyncMessage:
        """Parse a shadow/transport dict. Raises ValueError on malformed input."""
        if not isinstance(raw, dict):
            raise ValueError("sync message must be a dict")
        try:
            msg_type = MessageType(str(raw["type"]))
            sender = str(raw["sender_id"])
            ts = float(raw["timestamp"])
            message_id = str(raw["message_id"])
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"malformed sync message: {e}") from e
        payload = raw.get("payload") or {}
        if not isinstance(payload, dict):
            raise ValueError("sync message payload must be a dict")
        return cls(type=msg_type, sender_id=sender, timestamp=ts, payload=payload, message_id=message_id)
