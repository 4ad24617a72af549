import asyncio
import json

import pytest
from websockets.protocol import State

from botrelay.core.connection import BotConnection, ConnectionManager, ConnectionRegistry
from botrelay.types import BotStatus, ConnectionState, OutboundMessage, ReconnectPolicy, TextFrame

LADDER = [1, 2, 5, 10, 30, 60, 120, 300, 600, 1800]


def make_manager(store, sender, factory, sleep, **kwargs):
    kwargs.setdefault("replace_wait_sec", 0)
    kwargs.setdefault("liveness_interval_sec", 3600)
    return ConnectionManager(
        store,
        sender,
        "ws://gateway.test",
        socket_factory=factory,
        sleep=sleep,
        **kwargs,
    )


@pytest.fixture
def manager(recording_store, fake_sender, socket_factory, sleep_recorder):
    return make_manager(recording_store, fake_sender, socket_factory, sleep_recorder)


# ═══════════════════════════════════════════════════════════════════════════════
#                               注册表 / 重连策略
# ═══════════════════════════════════════════════════════════════════════════════

def test_registry_instances_are_isolated():
    first = ConnectionRegistry()
    second = ConnectionRegistry()
    first.upsert(BotConnection(bot_id="bot1", auth_key="key1"))

    assert "bot1" in first
    assert "bot1" not in second
    assert first.find_by_auth_key("key1").bot_id == "bot1"
    assert first.find_by_auth_key("missing") is None
    assert first.remove("bot1").bot_id == "bot1"
    assert len(first) == 0


def test_policy_delay_is_capped_at_last_value():
    policy = ReconnectPolicy()
    assert [policy.delay_for(i) for i in range(10)] == LADDER
    assert policy.delay_for(25) == 1800


def test_socket_url_quotes_key(manager):
    assert manager.socket_url("a b/c") == "ws://gateway.test/GetSyncMsg?key=a%20b%2Fc"


# ═══════════════════════════════════════════════════════════════════════════════
#                               建立连接
# ═══════════════════════════════════════════════════════════════════════════════

@pytest.mark.asyncio
async def test_connect_opens_socket_and_sends_ping(manager, socket_factory, recording_store):
    await manager.connect("key1", "bot1")

    conn = manager.registry.get("bot1")
    assert conn.state == ConnectionState.OPEN
    assert conn.is_open
    assert socket_factory.urls == ["ws://gateway.test/GetSyncMsg?key=key1"]
    assert socket_factory.sockets[0].sent == ["ping"]
    assert recording_store.statuses == [("bot1", "online")]
    await manager.disconnect_all()


@pytest.mark.asyncio
async def test_connect_ignores_empty_arguments(manager, socket_factory):
    await manager.connect("", "bot1")
    await manager.connect("key1", "")
    assert socket_factory.urls == []
    assert len(manager.registry) == 0


@pytest.mark.asyncio
async def test_sequential_connect_keeps_single_open_socket(manager, socket_factory):
    await manager.connect("key1", "bot1")
    await manager.connect("key1", "bot1")

    assert len(socket_factory.sockets) == 2
    assert socket_factory.sockets[0].state is State.CLOSED
    assert socket_factory.open_sockets == [socket_factory.sockets[1]]
    assert manager.registry.get("bot1").socket is socket_factory.sockets[1]
    await manager.disconnect_all()


@pytest.mark.asyncio
async def test_concurrent_connect_is_deduplicated(manager, socket_factory):
    await asyncio.gather(manager.connect("key1", "bot1"), manager.connect("key1", "bot1"))

    assert len(socket_factory.urls) == 1
    assert len(socket_factory.open_sockets) == 1
    await manager.disconnect_all()


@pytest.mark.asyncio
async def test_backoff_follows_ladder_and_gives_up(
    manager, socket_factory, sleep_recorder, recording_store, wait_until
):
    socket_factory.always_fail = True

    await manager.connect("key1", "bot1")
    assert await wait_until(lambda: "bot1" not in manager.registry)
    await manager.join_background()

    assert sleep_recorder.delays == LADDER
    # 首次连接 + 9 次重连尝试，第 10 次排期到点后放弃，不会有第 11 次
    assert len(socket_factory.urls) == 10
    assert recording_store.statuses[-1] == ("bot1", "offline")
    assert ("bot1", "error") in recording_store.statuses


@pytest.mark.asyncio
async def test_fresh_connect_after_give_up_resets_retries(manager, socket_factory, wait_until):
    socket_factory.always_fail = True
    await manager.connect("key1", "bot1")
    assert await wait_until(lambda: "bot1" not in manager.registry)
    await manager.join_background()

    socket_factory.always_fail = False
    await manager.connect("key1", "bot1", fresh=True)

    conn = manager.registry.get("bot1")
    assert conn.is_open
    assert conn.retries == 0
    await manager.disconnect_all()


@pytest.mark.asyncio
async def test_retry_counter_resets_after_successful_open(
    manager, socket_factory, sleep_recorder, wait_until
):
    socket_factory.failures_left = 2

    await manager.connect("key1", "bot1")
    assert await wait_until(lambda: bool(socket_factory.open_sockets))

    conn = manager.registry.get("bot1")
    assert sleep_recorder.delays == [1, 2]
    assert conn.retries == 0
    assert conn.state == ConnectionState.OPEN
    await manager.disconnect_all()


# ═══════════════════════════════════════════════════════════════════════════════
#                               断线 / 存活检测 / 心跳
# ═══════════════════════════════════════════════════════════════════════════════

@pytest.mark.asyncio
async def test_remote_close_triggers_reconnect(
    manager, socket_factory, sleep_recorder, recording_store, wait_until
):
    await manager.connect("key1", "bot1")
    socket_factory.sockets[0].remote_close()

    assert await wait_until(lambda: len(socket_factory.open_sockets) == 1 and len(socket_factory.sockets) == 2)
    assert ("bot1", "offline") in recording_store.statuses
    assert sleep_recorder.delays == [1]
    assert manager.registry.get("bot1").is_open
    await manager.disconnect_all()


@pytest.mark.asyncio
async def test_zombie_connection_is_replaced(
    recording_store, fake_sender, socket_factory, sleep_recorder, wait_until
):
    now = [100.0]
    manager = make_manager(
        recording_store,
        fake_sender,
        socket_factory,
        sleep_recorder,
        clock=lambda: now[0],
        liveness_interval_sec=0.01,
        zombie_timeout_sec=60,
    )
    await manager.connect("key1", "bot1")
    await asyncio.sleep(0.03)
    assert len(socket_factory.sockets) == 1

    now[0] += 61
    assert await wait_until(lambda: len(socket_factory.sockets) == 2)
    assert socket_factory.sockets[0].state is State.CLOSED
    assert await wait_until(lambda: manager.registry.get("bot1").is_open)
    await manager.disconnect_all()


@pytest.mark.asyncio
async def test_heartbeat_pings_open_connections(manager, socket_factory):
    await manager.connect("key1", "bot1")
    await manager.heartbeat_once()

    assert socket_factory.sockets[0].sent == ["ping", "ping"]
    await manager.disconnect_all()


@pytest.mark.asyncio
async def test_heartbeat_failure_reconnects_with_error_status(
    manager, socket_factory, recording_store, wait_until
):
    await manager.connect("key1", "bot1")
    socket_factory.sockets[0].fail_send = True

    await manager.heartbeat_once()

    assert ("bot1", "error") in recording_store.statuses
    assert await wait_until(lambda: len(socket_factory.open_sockets) == 1 and len(socket_factory.sockets) == 2)
    await manager.disconnect_all()


@pytest.mark.asyncio
async def test_gateway_ping_is_answered_with_pong(manager, socket_factory, wait_until):
    await manager.connect("key1", "bot1")
    socket_factory.sockets[0].feed("ping")

    assert await wait_until(lambda: "pong" in socket_factory.sockets[0].sent)
    await manager.disconnect_all()


@pytest.mark.asyncio
async def test_message_frames_reach_handler_and_garbage_is_dropped(
    recording_store, fake_sender, socket_factory, sleep_recorder, wait_until
):
    received = []

    async def handler(bot_id, auth_key, frame):
        received.append((bot_id, auth_key, frame))

    manager = make_manager(
        recording_store, fake_sender, socket_factory, sleep_recorder, frame_handler=handler
    )
    await manager.connect("key1", "bot1")
    socket = socket_factory.sockets[0]
    socket.feed("not json at all")
    socket.feed(json.dumps({"content": {"str": "no sender"}}))
    socket.feed(json.dumps({
        "new_msg_id": 7,
        "from_user_name": {"str": "wxid_friend"},
        "to_user_name": {"str": "wxid_bot"},
        "content": {"str": "hello"},
        "msg_type": 1,
    }))

    assert await wait_until(lambda: len(received) == 1)
    bot_id, auth_key, frame = received[0]
    assert (bot_id, auth_key) == ("bot1", "key1")
    assert isinstance(frame, TextFrame)
    assert frame.content == "hello"
    # 无法解析的帧不影响连接
    assert manager.registry.get("bot1").is_open
    await manager.disconnect_all()


# ═══════════════════════════════════════════════════════════════════════════════
#                               出站消息队列
# ═══════════════════════════════════════════════════════════════════════════════

@pytest.mark.asyncio
async def test_pending_messages_flush_in_fifo_order(manager, fake_sender):
    manager.registry.upsert(
        BotConnection(bot_id="bot1", auth_key="key1", state=ConnectionState.RECONNECTING)
    )
    first = OutboundMessage(to_user="wxid_friend", content="first")
    second = OutboundMessage(to_user="wxid_friend", content="second")
    third = OutboundMessage(to_user="wxid_friend", content="third")
    for message in (first, second, third):
        await manager.send_message("key1", message)

    assert fake_sender.deliveries == []
    assert len(manager.registry.get("bot1").pending) == 3

    await manager.connect("key1", "bot1")

    assert [m.content for _, m in fake_sender.deliveries] == ["first", "second", "third"]
    assert len(manager.registry.get("bot1").pending) == 0
    await manager.disconnect_all()


@pytest.mark.asyncio
async def test_send_message_delivers_directly_when_open(manager, fake_sender):
    await manager.connect("key1", "bot1")
    message = OutboundMessage(to_user="wxid_friend", content="hi")

    await manager.send_message("key1", message)

    assert fake_sender.deliveries == [("key1", message)]
    await manager.disconnect_all()


@pytest.mark.asyncio
async def test_send_message_without_connection_is_delivered(manager, fake_sender):
    message = OutboundMessage(to_user="wxid_friend", content="hi")
    await manager.send_message("unknown-key", message)
    assert fake_sender.deliveries == [("unknown-key", message)]


@pytest.mark.asyncio
async def test_disconnect_drops_pending_and_closes_socket(manager, socket_factory):
    await manager.connect("key1", "bot1")
    await manager.disconnect("bot1")

    assert "bot1" not in manager.registry
    assert socket_factory.sockets[0].state is State.CLOSED


# ═══════════════════════════════════════════════════════════════════════════════
#                               数据库变更
# ═══════════════════════════════════════════════════════════════════════════════

@pytest.mark.asyncio
async def test_bot_going_online_connects(manager, socket_factory):
    await manager.handle_bot_change("UPDATE", {"id": "bot1", "auth_key": "key1", "status": "online"}, {})
    await manager.join_background()

    assert manager.registry.get("bot1").is_open
    assert len(socket_factory.sockets) == 1
    await manager.disconnect_all()


@pytest.mark.asyncio
async def test_bot_going_offline_disconnects(manager, socket_factory):
    await manager.connect("key1", "bot1")

    await manager.handle_bot_change("UPDATE", {"id": "bot1", "auth_key": "key1", "status": "offline"}, {})

    assert "bot1" not in manager.registry
    assert socket_factory.sockets[0].state is State.CLOSED


@pytest.mark.asyncio
async def test_bot_delete_disconnects(manager, socket_factory):
    await manager.connect("key1", "bot1")

    await manager.handle_bot_change("DELETE", {}, {"id": "bot1"})

    assert "bot1" not in manager.registry


@pytest.mark.asyncio
async def test_own_status_write_is_not_treated_as_external_change(manager, socket_factory):
    await manager.connect("key1", "bot1")
    await manager.handle_bot_change("UPDATE", {"id": "bot1", "auth_key": "key1", "status": "online"}, {})
    await manager.join_background()

    assert len(socket_factory.sockets) == 1
    assert manager.registry.get("bot1").is_open
    await manager.disconnect_all()


@pytest.mark.asyncio
async def test_bot_toggled_offline_then_online_reconnects(manager, socket_factory):
    await manager.connect("key1", "bot1", fresh=True)

    await manager.handle_bot_change("UPDATE", {"id": "bot1", "auth_key": "key1", "status": "offline"}, {})
    assert "bot1" not in manager.registry

    await manager.handle_bot_change("UPDATE", {"id": "bot1", "auth_key": "key1", "status": "online"}, {})
    await manager.join_background()

    assert manager.registry.get("bot1").is_open
    assert len(socket_factory.sockets) == 2
    await manager.disconnect_all()


@pytest.mark.asyncio
async def test_manual_disconnect_then_online_reconnects(manager, socket_factory):
    await manager.connect("key1", "bot1", fresh=True)
    await manager.disconnect("bot1")
    await manager.update_status("bot1", BotStatus.OFFLINE)

    # 断开时写入的 offline 回传被忽略
    await manager.handle_bot_change("UPDATE", {"id": "bot1", "auth_key": "key1", "status": "offline"}, {})
    await manager.handle_bot_change("UPDATE", {"id": "bot1", "auth_key": "key1", "status": "online"}, {})
    await manager.join_background()

    assert manager.registry.get("bot1").is_open
    assert len(socket_factory.sockets) == 2
    await manager.disconnect_all()


@pytest.mark.asyncio
async def test_snapshot_reports_connection_state(manager):
    await manager.connect("key1", "bot1")
    snapshot = manager.snapshot()

    assert snapshot[0]["bot_id"] == "bot1"
    assert snapshot[0]["state"] == "open"
    assert snapshot[0]["open"] is True
    assert snapshot[0]["pending"] == 0
    await manager.disconnect_all()
