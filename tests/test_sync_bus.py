# tests/test_sync_bus.py

from __future__ import annotations

import pytest

from shiftops.sync.memory_transport import LocalChannelHub, MemoryShadowStore
from shiftops.sync.shadow_store import SqliteShadowStore
from shiftops.sync.sync_bus import SyncBus, slot_key
from shiftops.sync.sync_models import MessageType, SyncMessage


def _msg(sender: str, msg_type: MessageType = MessageType.TASK_SUBMITTED, ts: float = 100.0, **payload) -> SyncMessage:
    return SyncMessage(type=msg_type, sender_id=sender, timestamp=ts, payload=payload)


def _recorder(bus: SyncBus, msg_type: MessageType = MessageType.TASK_SUBMITTED) -> list[SyncMessage]:
    got: list[SyncMessage] = []
    bus.subscribe(msg_type, got.append)
    return got


def test_publish_reaches_other_sessions_but_not_self(hub: LocalChannelHub, shadow: MemoryShadowStore) -> None:
    a = SyncBus("a", hub.channel(), shadow)
    b = SyncBus("b", hub.channel(), shadow)
    got_a, got_b = _recorder(a), _recorder(b)

    msg = _msg("a", task_id="opening-1")
    a.publish(msg)

    assert got_a == []
    assert got_b == [msg]
    assert shadow.read_slot(slot_key(MessageType.TASK_SUBMITTED))["message_id"] == msg.message_id


def test_apply_never_republishes(hub: LocalChannelHub, shadow: MemoryShadowStore) -> None:
    a = SyncBus("a", hub.channel(), shadow)
    b = SyncBus("b", hub.channel(), shadow)
    c = SyncBus("c", hub.channel(), shadow)
    got_c = _recorder(c)

    msg = _msg("a")
    a.publish(msg)
    # b applying the message again must not fan it out a second time.
    assert not b.apply(msg)

    assert got_c == [msg]
    assert shadow.read_slot(slot_key(MessageType.TASK_SUBMITTED))["sender_id"] == "a"


def test_apply_drops_own_and_seen_messages(shadow: MemoryShadowStore) -> None:
    bus = SyncBus("a", None, shadow)
    got = _recorder(bus)

    assert not bus.apply(_msg("a"))
    foreign = _msg("b")
    assert bus.apply(foreign)
    assert not bus.apply(foreign)
    assert got == [foreign]


def test_publish_rejects_foreign_sender(shadow: MemoryShadowStore) -> None:
    bus = SyncBus("a", None, shadow)
    with pytest.raises(ValueError):
        bus.publish(_msg("b"))


def test_channel_outage_degrades_to_shadow(hub: LocalChannelHub, shadow: MemoryShadowStore) -> None:
    a = SyncBus("a", hub.channel(), shadow)
    b = SyncBus("b", hub.channel(), shadow)
    got_b = _recorder(b)

    hub.available = False
    msg = _msg("a")
    a.publish(msg)
    assert got_b == []
    assert a.degraded

    assert b.poll() == 1
    assert got_b == [msg]
    assert b.degraded

    # Back online: the first good poll clears the flag and stops re-reading the slots.
    hub.available = True
    assert b.poll() == 0
    assert not b.degraded
    later = _msg("a", ts=200.0)
    a.publish(later)
    assert got_b == [msg, later]


def test_failed_attach_starts_degraded(shadow: MemoryShadowStore, caplog) -> None:
    class DeadChannel:
        def attach(self, session_id, receiver) -> None:
            raise ConnectionError("no route to hub")

        def detach(self, session_id) -> None:
            pass

        def post(self, message) -> None:
            pass

        def poll(self) -> int:
            return 0

    writer = SyncBus("w", None, shadow)
    writer.publish(_msg("w"))

    bus = SyncBus("b", DeadChannel(), shadow)
    got = _recorder(bus)

    assert bus.degraded
    assert "attach failed" in caplog.text
    # Each poll retries the attach and reads the shadow meanwhile.
    assert bus.poll() == 1
    assert len(got) == 1
    assert bus.degraded


def test_catch_up_applies_slots_in_timestamp_order(shadow: MemoryShadowStore) -> None:
    writer = SyncBus("w", None, shadow)
    writer.publish(_msg("w", MessageType.REVIEW_DECIDED, ts=300.0))
    writer.publish(_msg("w", MessageType.TASK_SUBMITTED, ts=100.0))
    writer.publish(_msg("w", MessageType.PERIOD_CHANGED, ts=200.0))
    shadow.write_slot("clock_offset", {"enabled": False})
    shadow.write_slot("sync:task_completed", {"type": "nonsense"})

    late = SyncBus("late", None, shadow)
    order: list[str] = []
    late.subscribe("*", lambda m: order.append(m.type.value))

    assert late.catch_up() == 3
    assert order == ["task_submitted", "period_changed", "review_decided"]
    assert late.catch_up() == 0


def test_poll_without_channel_reads_the_shadow(tmp_path) -> None:
    shadow = SqliteShadowStore(tmp_path / "shadow.sqlite3")
    a = SyncBus("a", None, shadow)
    b = SyncBus("b", None, SqliteShadowStore(tmp_path / "shadow.sqlite3"))
    got_b = _recorder(b)

    msg = _msg("a")
    a.publish(msg)

    assert b.poll() == 1
    assert [m.message_id for m in got_b] == [msg.message_id]
    assert b.poll() == 0


def test_failing_handler_does_not_stop_others(shadow: MemoryShadowStore, caplog) -> None:
    bus = SyncBus("a", None, shadow)

    def boom(_: SyncMessage) -> None:
        raise RuntimeError("handler bug")

    bus.subscribe(MessageType.TASK_SUBMITTED, boom)
    got = _recorder(bus)

    assert bus.apply(_msg("b"))
    assert len(got) == 1
    assert "Sync handler failed" in caplog.text


def test_unsubscribe_and_close(hub: LocalChannelHub, shadow: MemoryShadowStore) -> None:
    a = SyncBus("a", hub.channel(), shadow)
    b = SyncBus("b", hub.channel(), shadow)
    got: list[SyncMessage] = []
    unsubscribe = b.subscribe(MessageType.TASK_SUBMITTED, got.append)

    unsubscribe()
    a.publish(_msg("a"))
    assert got == []

    b.close()
    assert hub.session_ids == ["a"]


def test_message_dict_roundtrip_rejects_malformed() -> None:
    msg = _msg("a", task_id="x")
    assert SyncMessage.from_dict(msg.to_dict()) == msg

    with pytest.raises(ValueError):
        SyncMessage.from_dict({"type": "task_submitted", "sender_id": "a"})
    with pytest.raises(ValueError):
        SyncMessage.from_dict({**msg.to_dict(), "payload": ["not", "a", "dict"]})
