# src/shiftops/core/ports.py

from __future__ import annotations

"""
Ports (interfaces) used by the core.

The core depends on Protocols instead of concrete implementations.
This keeps storage/transport/media/notification swappable and makes testing easier.
"""

from collections.abc import Callable
from datetime import date
from typing import Any, Protocol

from ..sync.sync_models import SyncMessage
from ..tasks.task_models import ReviewTransition, TaskInstance

MessageReceiver = Callable[[SyncMessage], None]


class PersistenceAdapter(Protocol):
    """
    External durable store.

    - instances: idempotent upsert on (task_def_id, calendar_date)
    - transitions: append-only
    """

    def insert_transition(self, record: ReviewTransition) -> None: ...
    def query_transitions(self, user_id: str, day: date) -> list[ReviewTransition]: ...
    def query_target_transitions(self, target_id: str, day: date) -> list[ReviewTransition]: ...
    def list_transitions(self, day: date) -> list[ReviewTransition]: ...

    def upsert_task_instance(self, instance: TaskInstance) -> None: ...
    def get_task_instance(self, task_def_id: str, day: date) -> TaskInstance | None: ...
    def list_task_instances(self, day: date) -> list[TaskInstance]: ...

    def list_evidence_refs(self) -> set[str]: ...


class MediaUploader(Protocol):
    """Blob upload: bytes in, URL out. The core only keeps the returned reference."""

    def upload_evidence(self, data: bytes, metadata: dict[str, Any]) -> str: ...


class Notifier(Protocol):
    """Fire-and-forget alerts (sound, push, toast...)."""

    def alert(self, kind: str, message: str) -> None: ...


class EphemeralChannel(Protocol):
    """
    Low-latency tier of the SyncBus.

    post() and poll() raise SyncDeliveryFailure while the channel is down; the bus
    then degrades to the shadow tier until a poll succeeds again.
    poll() drains pending inbound messages for transports that are not push-based.
    """

    def attach(self, session_id: str, receiver: MessageReceiver) -> None: ...
    def detach(self, session_id: str) -> None: ...
    def post(self, message: SyncMessage) -> None: ...
    def poll(self) -> int: ...


class ShadowStore(Protocol):
    """Durable tier of the SyncBus: one keyed slot per message type."""

    def write_slot(self, key: str, payload: dict[str, Any]) -> None: ...
    def read_slot(self, key: str) -> dict[str, Any] | None: ...
    def list_slots(self) -> dict[str, dict[str, Any]]: ...
