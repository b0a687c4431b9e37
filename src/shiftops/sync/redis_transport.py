# src/shiftops/sync/redis_transport.py

from __future__ import annotations

"""
Redis transport for the SyncBus.

- ephemeral tier: PUBLISH on one channel, drained with pubsub.get_message() on every tick
- shadow tier: one string key per slot (SET/GET), optional expiry

Sessions on different hosts converge through the same Redis instance.
"""

import json
import logging
from typing import Any

import redis

from ..core.errors import SyncDeliveryFailure
from ..core.ports import MessageReceiver
from .sync_models import SyncMessage

logger = logging.getLogger(__name__)


def connect(redis_url: str) -> redis.Redis:
    client = redis.Redis.from_url(redis_url, decode_responses=True)
    client.ping()
    logger.info("Redis sync transport connected: %s", redis_url)
    return client


class RedisChannel:
    def __init__(self, client: Any, *, channel_name: str = "shiftops:sync", max_drain: int = 256) -> None:
        self._client = client
        self._channel_name = channel_name
        self._max_drain = max_drain
        self._receivers: dict[str, MessageReceiver] = {}
        self._pubsub: Any = None

    def attach(self, session_id: str, receiver: MessageReceiver) -> None:
        self._receivers[session_id] = receiver
        if self._pubsub is None:
            try:
                self._subscribe()
            except SyncDeliveryFailure:
                logger.exception("Redis subscribe failed; relying on shadow catch-up")

    def _subscribe(self) -> None:
        try:
            pubsub = self._client.pubsub(ignore_subscribe_messages=True)
            pubsub.subscribe(self._channel_name)
        except redis.RedisError as e:
            self._pubsub = None
            raise SyncDeliveryFailure(f"redis subscribe failed: {e}") from e
        self._pubsub = pubsub

    def _drop_pubsub(self) -> None:
        try:
            self._pubsub.close()
        except redis.RedisError:
            logger.debug("Redis pubsub close failed", exc_info=True)
        self._pubsub = None

    def detach(self, session_id: str) -> None:
        self._receivers.pop(session_id, None)
        if not self._receivers and self._pubsub is not None:
            self._drop_pubsub()

    def post(self, message: SyncMessage) -> None:
        try:
            self._client.publish(self._channel_name, json.dumps(message.to_dict(), ensure_ascii=False))
        except redis.RedisError as e:
            raise SyncDeliveryFailure(f"redis publish failed: {e}") from e

    def poll(self) -> int:
        if not self._receivers:
            return 0
        if self._pubsub is None:
            # Lost or never established: re-subscribe, or report the outage.
            self._subscribe()
            logger.info("Redis pubsub re-subscribed to %s", self._channel_name)
        delivered = 0
        for _ in range(self._max_drain):
            try:
                item = self._pubsub.get_message(timeout=0.0)
            except redis.RedisError as e:
                self._drop_pubsub()
                raise SyncDeliveryFailure(f"redis pubsub read failed: {e}") from e
            if item is None:
                break
            if item.get("type") != "message":
                continue
            try:
                message = SyncMessage.from_dict(json.loads(item["data"]))
            except (TypeError, ValueError):
                logger.warning("Dropping malformed message on %s", self._channel_name)
                continue
            for session_id, receiver in list(self._receivers.items()):
                if session_id == message.sender_id:
                    continue
                try:
                    receiver(message)
                except Exception:
                    logger.exception("Receiver %s failed", session_id)
            delivered += 1
        return delivered


class RedisShadowStore:
    def __init__(self, client: Any, *, key_prefix: str = "shiftops:shadow:", ttl_seconds: int | None = 86400) -> None:
        self._client = client
        self._prefix = key_prefix
        self._ttl = ttl_seconds

    def write_slot(self, key: str, payload: dict[str, Any]) -> None:
        body = json.dumps(payload, ensure_ascii=False)
        if self._ttl:
            self._client.set(self._prefix + key, body, ex=self._ttl)
        else:
            self._client.set(self._prefix + key, body)

    def read_slot(self, key: str) -> dict[str, Any] | None:
        return self._decode(key, self._client.get(self._prefix + key))

    def list_slots(self) -> dict[str, dict[str, Any]]:
        out: dict[str, dict[str, Any]] = {}
        for full_key in self._client.scan_iter(match=self._prefix + "*"):
            key = full_key[len(self._prefix):]
            val = self._decode(key, self._client.get(full_key))
            if val is not None:
                out[key] = val
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
