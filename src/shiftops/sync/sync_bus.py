# src/shiftops/sync/sync_bus.py

from __future__ import annotations

"""
Two-tier pub/sub between sessions.

publish() always originates a message:
  1. ephemeral channel: delivered to sessions that are open right now (best-effort)
  2. durable shadow: written to the slot for the message type (last value wins)

apply() is strictly local dispatch and never republishes, so a receiver can
never echo what it just got back onto the channel.

When the ephemeral channel fails (attach, post or poll) the bus is degraded:
every poll() re-reads the shadow slots until the channel answers again, and
one last catch-up covers what was missed during the outage.

Handlers must treat messages as invalidation hints and re-fetch state.
"""

import logging
from collections import OrderedDict
from collections.abc import Callable

from ..core.errors import SyncDeliveryFailure
from ..core.ports import EphemeralChannel, ShadowStore
from .sync_models import MessageType, SyncMessage

logger = logging.getLogger(__name__)

Handler = Callable[[SyncMessage], None]
ALL = "*"


def slot_key(msg_type: MessageType) -> str:
    return f"sync:{msg_type.value}"


class SyncBus:
    def __init__(
        self,
        session_id: str,
        channel: EphemeralChannel | None,
        shadow: ShadowStore | None,
        *,
        seen_limit: int = 1024,
    ) -> None:
        self._session_id = session_id
        self._channel = channel
        self._shadow = shadow
        self._handlers: dict[str, list[Handler]] = {}
        self._seen: OrderedDict[str, None] = OrderedDict()
        self._seen_limit = seen_limit
        self._degraded = False
        self._attached = False
        if channel is not None:
            self._attach()

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def degraded(self) -> bool:
        return self._degraded

    def close(self) -> None:
        if self._channel is not None and self._attached:
            self._channel.detach(self._session_id)
        self._handlers.clear()

    def subscribe(self, msg_type: MessageType | str, handler: Handler) -> Callable[[], None]:
        key = msg_type.value if isinstance(msg_type, MessageType) else str(msg_type)
        self._handlers.setdefault(key, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(key)
            if handlers and handler in handlers:
                handlers.remove(handler)
                if not handlers:
                    del self._handlers[key]

        return unsubscribe

    def publish(self, message: SyncMessage) -> None:
        if message.sender_id != self._session_id:
            raise ValueError("publish() only sends messages originated by this session")
        self._mark_seen(message.message_id)

        if self._channel is not None:
            try:
                self._channel.post(message)
            except SyncDeliveryFailure as e:
                self._degrade(f"delivery failed ({e})")
            except Exception:
                logger.exception("Ephemeral channel error; shadow tier only")
                self._degraded = True

        if self._shadow is not None:
            try:
                self._shadow.write_slot(slot_key(message.type), message.to_dict())
            except Exception:
                logger.exception("Shadow write failed for %s", message.type.value)

        logger.debug("Published %s id=%s", message.type.value, message.message_id)

    def apply(self, message: SyncMessage) -> bool:
        """Deliver an inbound message to local handlers. Own and already-seen messages are dropped."""
        if message.sender_id == self._session_id:
            return False
        if message.message_id in self._seen:
            return False
        self._mark_seen(message.message_id)

        handlers = list(self._handlers.get(message.type.value, ())) + list(self._handlers.get(ALL, ()))
        for handler in handlers:
            try:
                handler(message)
            except Exception:
                logger.exception("Sync handler failed for %s", message.type.value)
        return True

    def catch_up(self) -> int:
        """Read every shadow slot and apply unseen messages in timestamp order."""
        if self._shadow is None:
            return 0
        try:
            slots = self._shadow.list_slots()
        except Exception:
            logger.exception("Shadow catch-up read failed")
            return 0

        messages: list[SyncMessage] = []
        for key, raw in slots.items():
            if not key.startswith("sync:"):
                continue
            try:
                messages.append(SyncMessage.from_dict(raw))
            except ValueError:
                logger.warning("Skipping malformed shadow slot %s", key)

        applied = 0
        for msg in sorted(messages, key=lambda m: m.timestamp):
            if self.apply(msg):
                applied += 1
        if applied:
            logger.info("Shadow catch-up applied %d messages", applied)
        return applied

    def poll(self) -> int:
        """
        Drain non-push transports once per tick.

        Without an ephemeral tier, or while the channel is down, re-read the
        shadow slots instead.
        """
        if self._channel is None or not (self._attached or self._attach()):
            return self.catch_up()
        try:
            delivered = self._channel.poll()
        except SyncDeliveryFailure as e:
            self._degrade(f"poll failed ({e})")
            return self.catch_up()
        except Exception:
            logger.exception("Channel poll failed; reading the shadow tier")
            self._degraded = True
            return self.catch_up()

        if self._degraded:
            self._degraded = False
            logger.info("Ephemeral channel is back")
            delivered += self.catch_up()
        return delivered

    def _attach(self) -> bool:
        try:
            self._channel.attach(self._session_id, self.apply)
        except Exception as e:
            self._degrade(f"attach failed ({e})")
            return False
        self._attached = True
        return True

    def _degrade(self, why: str) -> None:
        if not self._degraded:
            logger.warning("Ephemeral channel %s; falling back to shadow catch-up", why)
        self._degraded = True

    def _mark_seen(self, message_id: str) -> None:
        self._seen[message_id] = None
        while len(self._seen) > self._seen_limit:
            self._seen.popitem(last=False)
