import json

import httpx
import pytest

from botrelay.core.realtime import build_realtime_url, parse_change_message
from botrelay.core.sqlite_store import PollingSubscription
from botrelay.core.store import SupabaseStore
from botrelay.errors import StoreError, StoreUnavailableError
from botrelay.schemas import MessageRecord


def record(content, created_at, source="user_message", from_user="wxid_friend", to_user="wxid_bot"):
    return MessageRecord(
        bot_id="bot1",
        content=content,
        created_at=created_at,
        source=source,
        from_user=from_user,
        to_user=to_user,
    )


# ═══════════════════════════════════════════════════════════════════════════════
#                               SqliteStore
# ═══════════════════════════════════════════════════════════════════════════════

@pytest.mark.asyncio
async def test_online_bots_and_bot_info(sqlite_store):
    sqlite_store.upsert_bot({"id": "bot2", "auth_key": "key2", "status": "offline"})

    online = await sqlite_store.get_bots_online()
    assert [b.id for b in online] == ["bot1"]

    info = await sqlite_store.get_bot_info("bot1")
    assert info.auth_key == "key1"
    assert info.wxid == "wxid_bot"
    assert await sqlite_store.get_bot_info("ghost") is None


@pytest.mark.asyncio
async def test_update_bot_status_sets_last_active(sqlite_store):
    await sqlite_store.update_bot_status("bot1", "error")

    info = await sqlite_store.get_bot_info("bot1")
    assert info.status == "error"
    assert info.last_active_at


@pytest.mark.asyncio
async def test_config_rows_keep_insertion_order_and_skip_disabled(sqlite_store):
    sqlite_store.add_keyword_reply("u1", {"keyword": "a", "reply": "1"})
    sqlite_store.add_keyword_reply("u1", {"keyword": "b", "reply": "2", "is_active": False})
    sqlite_store.add_keyword_reply("u1", {"keyword": "c", "reply": "3"})
    sqlite_store.add_keyword_reply("u2", {"keyword": "d", "reply": "4"})

    rules = await sqlite_store.get_keyword_replies("u1")
    assert [r.keyword for r in rules] == ["a", "c"]


@pytest.mark.asyncio
async def test_history_filters_peer_and_source_newest_first(sqlite_store):
    for item in (
        record("q1", "2024-01-01T00:00:01.000Z"),
        record("a1", "2024-01-01T00:00:02.000Z", source="ai_response", from_user="assistant", to_user="wxid_friend"),
        record("plain", "2024-01-01T00:00:03.000Z", source=None),
        record("other", "2024-01-01T00:00:04.000Z", from_user="wxid_other"),
        record("q2", "2024-01-01T00:00:05.000Z"),
    ):
        await sqlite_store.record_message(item)

    history = await sqlite_store.get_history("bot1", "wxid_friend", 10)
    assert [r.content for r in history] == ["q2", "a1", "q1"]

    limited = await sqlite_store.get_history("bot1", "wxid_friend", 2)
    assert [r.content for r in limited] == ["q2", "a1"]

    assert await sqlite_store.get_history("bot1", "wxid_friend", 0) == []


@pytest.mark.asyncio
async def test_polling_subscription_emits_changes(sqlite_store):
    events = []

    async def callback(event_type, new, old):
        events.append((event_type, new.get("id") or old.get("id"), new.get("status")))

    subscription = PollingSubscription(sqlite_store, callback, interval_sec=60)
    subscription._snapshot = sqlite_store.snapshot_bots()

    sqlite_store.upsert_bot({"id": "bot2", "auth_key": "key2", "status": "online"})
    await sqlite_store.update_bot_status("bot1", "offline")
    await subscription.poll_once()

    assert sorted(events) == [("INSERT", "bot2", "online"), ("UPDATE", "bot1", "offline")]

    events.clear()
    sqlite_store.delete_bot("bot2")
    await subscription.poll_once()
    assert events == [("DELETE", "bot2", None)]

    events.clear()
    await subscription.poll_once()
    assert events == []


@pytest.mark.asyncio
async def test_polling_callback_errors_are_logged(sqlite_store, caplog):
    async def callback(event_type, new, old):
        raise RuntimeError("callback failed")

    subscription = PollingSubscription(sqlite_store, callback, interval_sec=60)
    sqlite_store.upsert_bot({"id": "bot3", "auth_key": "k", "status": "online"})

    await subscription.poll_once()

    assert "callback failed" in caplog.text


# ═══════════════════════════════════════════════════════════════════════════════
#                               SupabaseStore
# ═══════════════════════════════════════════════════════════════════════════════

def make_supabase(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SupabaseStore("https://demo.supabase.co/", "service-key", client=client), client


@pytest.mark.asyncio
async def test_supabase_select_uses_postgrest_filters():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json=[{"id": "bot1", "auth_key": "key1", "status": "online"}])

    store, client = make_supabase(handler)
    async with client:
        bots = await store.get_bots_online()

    assert [b.id for b in bots] == ["bot1"]
    request = requests[0]
    assert request.url.path == "/rest/v1/bots"
    assert request.url.params["status"] == "eq.online"
    assert request.url.params["select"] == "*"
    assert request.headers["apikey"] == "service-key"
    assert request.headers["Authorization"] == "Bearer service-key"


@pytest.mark.asyncio
async def test_supabase_history_query():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json=[])

    store, client = make_supabase(handler)
    async with client:
        assert await store.get_history("bot1", "wxid_friend", 4) == []
        assert await store.get_history("bot1", "wxid_friend", 0) == []

    assert len(requests) == 1
    params = requests[0].url.params
    assert params["or"] == '(from_user.eq."wxid_friend",to_user.eq."wxid_friend")'
    assert params["source"] == "in.(user_message,ai_response)"
    assert params["order"] == "created_at.desc"
    assert params["limit"] == "4"


@pytest.mark.asyncio
async def test_supabase_writes():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(201)

    store, client = make_supabase(handler)
    async with client:
        await store.record_message(record("hi", "2024-01-01T00:00:01.000Z"))
        await store.update_bot_status("bot1", "offline")

    insert, patch = requests
    assert insert.method == "POST"
    assert json.loads(insert.content)[0]["content"] == "hi"
    assert insert.headers["Prefer"] == "return=minimal"
    assert patch.method == "PATCH"
    assert patch.url.params["id"] == "eq.bot1"
    assert json.loads(patch.content)["status"] == "offline"


@pytest.mark.asyncio
async def test_supabase_errors():
    store, client = make_supabase(lambda request: httpx.Response(500, text="db down"))
    async with client:
        with pytest.raises(StoreError):
            await store.get_plugins("u1")
        with pytest.raises(StoreUnavailableError):
            await store.ping()


# ═══════════════════════════════════════════════════════════════════════════════
#                               Realtime
# ═══════════════════════════════════════════════════════════════════════════════

def test_realtime_url():
    assert build_realtime_url("https://demo.supabase.co/", "k") == (
        "wss://demo.supabase.co/realtime/v1/websocket?apikey=k&vsn=1.0.0"
    )


def test_parse_postgres_changes_message():
    message = {
        "event": "postgres_changes",
        "payload": {
            "data": {
                "type": "UPDATE",
                "record": {"id": "bot1", "status": "offline"},
                "old_record": {"id": "bot1"},
            }
        },
    }
    assert parse_change_message(message) == ("UPDATE", {"id": "bot1", "status": "offline"}, {"id": "bot1"})


def test_parse_legacy_change_message():
    message = {"event": "DELETE", "payload": {"old_record": {"id": "bot1"}}}
    assert parse_change_message(message) == ("DELETE", {}, {"id": "bot1"})


def test_non_change_messages_are_ignored():
    assert parse_change_message({"event": "phx_reply", "payload": {}}) is None
    assert parse_change_message({"event": "postgres_changes", "payload": {"data": {"type": "TRUNCATE"}}}) is None
    assert parse_change_message("garbage") is None
