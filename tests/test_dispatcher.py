import pytest

from botrelay.core.cache import ConfigRepository
from botrelay.core.context_cache import ContextCache
from botrelay.core.dispatcher import MessageDispatcher
from botrelay.handlers.ai_reply import AIModelStrategy
from botrelay.handlers.base import ReplyStrategy
from botrelay.handlers.converters import parse_frame
from botrelay.handlers.keyword_reply import KeywordReplyStrategy
from botrelay.handlers.plugin import PluginStrategy
from botrelay.types import MessageType


class StubStrategy(ReplyStrategy):
    def __init__(self, name, result=False, error=None):
        self.name = name
        self.result = result
        self.error = error
        self.calls = []

    async def process(self, ctx):
        self.calls.append(ctx)
        if self.error is not None:
            raise self.error
        return self.result


class FakeAIClient:
    def __init__(self, replies=("hi there",)):
        self.replies = list(replies)
        self.calls = []

    async def chat(self, profile, messages):
        self.calls.append((profile, messages))
        return self.replies[min(len(self.calls), len(self.replies)) - 1]


class SendCollector:
    def __init__(self):
        self.sent = []

    async def __call__(self, auth_key, message):
        self.sent.append((auth_key, message))


def make_dispatcher(store, plugin, ai, keyword, send=None):
    return MessageDispatcher(
        ConfigRepository(store),
        store,
        plugin=plugin,
        ai=ai,
        keyword=keyword,
        send=send or SendCollector(),
    )


# ═══════════════════════════════════════════════════════════════════════════════
#                               策略顺序
# ═══════════════════════════════════════════════════════════════════════════════

@pytest.mark.asyncio
async def test_plugin_short_circuits_other_strategies(sqlite_store, text_frame):
    plugin = StubStrategy("plugin", result=True)
    ai = StubStrategy("ai")
    keyword = StubStrategy("keyword")
    dispatcher = make_dispatcher(sqlite_store, plugin, ai, keyword)

    handled = await dispatcher.dispatch("bot1", "key1", text_frame("天气 北京"))

    assert handled is True
    assert len(plugin.calls) == 1
    assert ai.calls == []
    assert keyword.calls == []
    assert len(sqlite_store.get_all_messages("bot1")) == 1


@pytest.mark.asyncio
async def test_ai_and_keyword_both_run_when_plugin_declines(sqlite_store, text_frame):
    plugin = StubStrategy("plugin")
    ai = StubStrategy("ai", result=False)
    keyword = StubStrategy("keyword", result=True)
    dispatcher = make_dispatcher(sqlite_store, plugin, ai, keyword)

    handled = await dispatcher.dispatch("bot1", "key1", text_frame("hello"))

    assert handled is True
    assert len(ai.calls) == 1
    assert len(keyword.calls) == 1


@pytest.mark.asyncio
async def test_failing_strategy_does_not_affect_sibling(sqlite_store, text_frame):
    plugin = StubStrategy("plugin")
    ai = StubStrategy("ai", error=RuntimeError("boom"))
    keyword = StubStrategy("keyword", result=True)
    dispatcher = make_dispatcher(sqlite_store, plugin, ai, keyword)

    assert await dispatcher.dispatch("bot1", "key1", text_frame("hello")) is True
    assert len(keyword.calls) == 1


@pytest.mark.asyncio
async def test_unhandled_message_is_still_recorded_once(sqlite_store, text_frame):
    dispatcher = make_dispatcher(
        sqlite_store, StubStrategy("plugin"), StubStrategy("ai"), StubStrategy("keyword")
    )

    assert await dispatcher.dispatch("bot1", "key1", text_frame("hello")) is False

    records = sqlite_store.get_all_messages("bot1")
    assert len(records) == 1
    assert records[0].from_user == "wxid_friend"
    assert records[0].content == "hello"
    assert records[0].msg_id == "1001"
    assert records[0].status == 3


@pytest.mark.asyncio
async def test_non_text_message_is_recorded_without_strategies(sqlite_store):
    plugin = StubStrategy("plugin", result=True)
    dispatcher = make_dispatcher(sqlite_store, plugin, StubStrategy("ai"), StubStrategy("keyword"))
    frame = parse_frame(
        '{"new_msg_id": 5, "from_user_name": {"str": "wxid_friend"}, '
        '"to_user_name": {"str": "wxid_bot"}, "msg_type": 3, '
        '"image": {"image_url": "http://img.test/a.jpg"}}'
    )

    assert await dispatcher.dispatch("bot1", "key1", frame) is False

    assert plugin.calls == []
    records = sqlite_store.get_all_messages("bot1")
    assert records[0].content == "http://img.test/a.jpg"
    assert records[0].media_url == "http://img.test/a.jpg"
    assert records[0].msg_type == 3


@pytest.mark.asyncio
async def test_unknown_bot_is_recorded_without_strategies(sqlite_store, text_frame):
    plugin = StubStrategy("plugin", result=True)
    dispatcher = make_dispatcher(sqlite_store, plugin, StubStrategy("ai"), StubStrategy("keyword"))

    assert await dispatcher.dispatch("ghost", "key-x", text_frame("hello")) is False
    assert plugin.calls == []
    assert len(sqlite_store.get_all_messages("ghost")) == 1


# ═══════════════════════════════════════════════════════════════════════════════
#                               群聊 @ 过滤
# ═══════════════════════════════════════════════════════════════════════════════

@pytest.mark.asyncio
async def test_group_message_without_mention_is_skipped(sqlite_store, text_frame):
    sqlite_store.upsert_bot({
        "id": "bot1", "auth_key": "key1", "status": "online", "user_id": "u1",
        "wxid": "wxid_bot", "at_reply_enabled": True,
    })
    plugin = StubStrategy("plugin", result=True)
    dispatcher = make_dispatcher(sqlite_store, plugin, StubStrategy("ai"), StubStrategy("keyword"))

    frame = text_frame("alice:\n大家好", from_user="123@chatroom")
    assert await dispatcher.dispatch("bot1", "key1", frame) is False

    assert plugin.calls == []
    records = sqlite_store.get_all_messages("bot1")
    assert records[0].from_user == "alice"
    assert records[0].content == "大家好"


@pytest.mark.asyncio
async def test_group_message_with_mention_is_dispatched(sqlite_store, text_frame):
    sqlite_store.upsert_bot({
        "id": "bot1", "auth_key": "key1", "status": "online", "user_id": "u1",
        "wxid": "wxid_bot", "at_reply_enabled": True,
    })
    plugin = StubStrategy("plugin", result=True)
    dispatcher = make_dispatcher(sqlite_store, plugin, StubStrategy("ai"), StubStrategy("keyword"))

    frame = text_frame(
        "alice:\n@小助手 在吗",
        from_user="123@chatroom",
        push_content="alice在群聊中@了你",
    )
    assert await dispatcher.dispatch("bot1", "key1", frame) is True

    ctx = plugin.calls[0]
    assert ctx.message.mentioned is True
    assert ctx.message.parsed_sender == "alice"


# ═══════════════════════════════════════════════════════════════════════════════
#                               端到端
# ═══════════════════════════════════════════════════════════════════════════════

def make_real_dispatcher(store, ai_client, send):
    return make_dispatcher(
        store,
        PluginStrategy(),
        AIModelStrategy(ai_client, store, ContextCache()),
        KeywordReplyStrategy(),
        send=send,
    )


@pytest.mark.asyncio
async def test_private_ai_message_end_to_end(sqlite_store, text_frame):
    sqlite_store.add_ai_model("u1", {
        "name": "助手",
        "model": "gpt-test",
        "base_url": "http://ai.test/v1",
        "api_key": "sk-test",
        "system_prompt": "你是一个助手",
        "trigger_prefix": "ai",
        "context_count": 0,
    })
    ai_client = FakeAIClient(["hi there"])
    send = SendCollector()
    dispatcher = make_real_dispatcher(sqlite_store, ai_client, send)

    assert await dispatcher.dispatch("bot1", "key1", text_frame("ai hello")) is True

    assert len(ai_client.calls) == 1
    _, messages = ai_client.calls[0]
    assert messages == [
        {"role": "system", "content": "你是一个助手"},
        {"role": "user", "content": "hello"},
    ]
    assert len(send.sent) == 1
    auth_key, outbound = send.sent[0]
    assert auth_key == "key1"
    assert outbound.to_user == "wxid_friend"
    assert outbound.content == "hi there"
    assert outbound.msg_type == MessageType.TEXT

    sources = sorted(r.source or "" for r in sqlite_store.get_all_messages("bot1"))
    assert sources == ["", "ai_response", "user_message"]


@pytest.mark.asyncio
async def test_plugin_match_prevents_ai_call(sqlite_store, text_frame):
    sqlite_store.add_ai_model("u1", {"model": "gpt-test", "trigger_prefix": "ai"})
    sqlite_store.add_plugin("u1", {
        "name": "echo",
        "trigger": "ai?",
        "code": "function main() { sendText('plugin:' + param(1)); }",
    })
    ai_client = FakeAIClient()
    send = SendCollector()
    dispatcher = make_real_dispatcher(sqlite_store, ai_client, send)

    assert await dispatcher.dispatch("bot1", "key1", text_frame("ai hello")) is True

    assert ai_client.calls == []
    assert [m.content for _, m in send.sent] == ["plugin:hello"]


@pytest.mark.asyncio
async def test_keyword_and_ai_reply_independently(sqlite_store, text_frame):
    sqlite_store.add_ai_model("u1", {"model": "gpt-test", "trigger_prefix": ""})
    sqlite_store.add_keyword_reply("u1", {"keyword": "hello", "reply": "关键词回复", "match_type": "fuzzy"})
    ai_client = FakeAIClient(["AI 回复"])
    send = SendCollector()
    dispatcher = make_real_dispatcher(sqlite_store, ai_client, send)

    assert await dispatcher.dispatch("bot1", "key1", text_frame("hello")) is True

    assert sorted(m.content for _, m in send.sent) == sorted(["AI 回复", "关键词回复"])
