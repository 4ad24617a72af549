import unittest
from datetime import datetime

import pytest

from botrelay.core.cache import ConfigRepository
from botrelay.core.context_cache import ContextCache, ContextTurn
from botrelay.errors import AIRateLimitError
from botrelay.handlers.ai_reply import (
    AIModelStrategy,
    build_prompt_values,
    is_profile_applicable,
    match_profile,
    strip_prefix,
    turns_from_history,
)
from botrelay.handlers.base import DispatchContext
from botrelay.schemas import AIModelProfile, BotInfo, MessageRecord
from botrelay.types import InboundMessage, MessageType
from botrelay.utils.message import render_prompt


def make_message(content, from_user="wxid_friend", is_group=False, sender="", mentioned=False):
    return InboundMessage(
        bot_id="bot1",
        msg_id="1",
        from_user=from_user,
        to_user="wxid_bot",
        is_group=is_group,
        raw_content=content,
        msg_type=MessageType.TEXT,
        parsed_sender=sender,
        parsed_content=content,
        mentioned=mentioned,
    )


class ProfileMatchTest(unittest.TestCase):
    def test_strip_prefix_is_case_and_whitespace_insensitive(self):
        self.assertEqual(strip_prefix("  AI   hello  world ", "ai"), "hello world")
        self.assertIsNone(strip_prefix("hello", "ai"))
        self.assertEqual(strip_prefix("hello", ""), "hello")

    def test_block_list_matches_chat_or_group_sender(self):
        profile = AIModelProfile(trigger_prefix="ai", block_list=["wxid_spam", "bob"])
        self.assertFalse(is_profile_applicable(profile, make_message("ai x", from_user="wxid_spam")))
        group_msg = make_message("ai x", from_user="1@chatroom", is_group=True, sender="bob")
        self.assertFalse(is_profile_applicable(profile, group_msg))
        self.assertTrue(is_profile_applicable(profile, make_message("ai x")))

    def test_send_type_and_group_whitelist(self):
        private_only = AIModelProfile(send_type="private")
        group_only = AIModelProfile(send_type="group", group_whitelist=["1@chatroom"])
        open_group = AIModelProfile(send_type="group", group_whitelist=["all"])
        group_msg = make_message("x", from_user="2@chatroom", is_group=True)

        self.assertFalse(is_profile_applicable(private_only, group_msg))
        self.assertFalse(is_profile_applicable(group_only, make_message("x")))
        self.assertFalse(is_profile_applicable(group_only, group_msg))
        self.assertTrue(is_profile_applicable(open_group, group_msg))

    def test_first_matching_profile_wins(self):
        profiles = [
            AIModelProfile(name="disabled", trigger_prefix="ai", enabled=False),
            AIModelProfile(name="first", trigger_prefix="ai"),
            AIModelProfile(name="second", trigger_prefix="ai"),
        ]
        profile, text = match_profile(profiles, make_message("ai 你好"))
        self.assertEqual(profile.name, "first")
        self.assertEqual(text, "你好")

    def test_mention_bypasses_prefix(self):
        profiles = [AIModelProfile(name="at", trigger_prefix="ai", at_reply_enabled=True)]
        message = make_message("@小助手 在吗", from_user="1@chatroom", is_group=True, mentioned=True)
        profile, text = match_profile(profiles, message)
        self.assertEqual(profile.name, "at")
        self.assertEqual(text, "@小助手 在吗")

    def test_no_match_returns_none(self):
        self.assertIsNone(match_profile([AIModelProfile(trigger_prefix="ai")], make_message("hello")))


class PromptTest(unittest.TestCase):
    def test_placeholders_are_rendered(self):
        profile = AIModelProfile(name="小助手", trigger_prefix="ai")
        message = make_message("ai hi", from_user="1@chatroom", is_group=True, sender="alice")
        values = build_prompt_values(profile, message, datetime(2024, 3, 5, 8, 7, 6))
        prompt = render_prompt(
            "[time]|[date]|[hour]|[发送人昵称]|[群号]|[消息类型]|[触发前缀]|[模型名称]", values
        )
        self.assertEqual(prompt, "2024/3/5 08:07:06|2024/3/5|8|alice|1@chatroom|群聊|ai|小助手")

    def test_history_is_paired_oldest_first_with_prefix_stripped(self):
        records = [
            MessageRecord(bot_id="b", content="r2", created_at="2024-01-01T00:00:04.000Z", source="ai_response"),
            MessageRecord(bot_id="b", content="AI second", created_at="2024-01-01T00:00:03.000Z", source="user_message"),
            MessageRecord(bot_id="b", content="r1", created_at="2024-01-01T00:00:02.000Z", source="ai_response"),
            MessageRecord(bot_id="b", content="ai first", created_at="2024-01-01T00:00:01.000Z", source="user_message"),
            MessageRecord(bot_id="b", content="orphan", created_at="2024-01-01T00:00:05.000Z", source="user_message"),
        ]
        self.assertEqual(
            turns_from_history(records, "ai"),
            [ContextTurn("first", "r1"), ContextTurn("second", "r2")],
        )


class ContextCacheTest(unittest.TestCase):
    def test_window_keeps_most_recent_turns(self):
        cache = ContextCache(ttl_sec=30)
        key = cache.make_key("bot1", "wxid_friend", "private")
        for i in range(5):
            cache.push(key, f"u{i}", f"a{i}", limit=3)
        self.assertEqual([t.user for t in cache.get(key)], ["u2", "u3", "u4"])

    def test_entries_expire(self):
        now = [0.0]
        cache = ContextCache(ttl_sec=30, clock=lambda: now[0])
        key = cache.make_key("bot1", "wxid_friend", "private")
        cache.push(key, "u", "a", limit=2)
        now[0] = 31
        self.assertIsNone(cache.get(key))

    def test_keys_separate_chat_kinds(self):
        cache = ContextCache()
        cache.push(cache.make_key("bot1", "peer", "private"), "u", "a", limit=2)
        self.assertIsNone(cache.get(cache.make_key("bot1", "peer", "group")))


# ═══════════════════════════════════════════════════════════════════════════════
#                               策略
# ═══════════════════════════════════════════════════════════════════════════════

class FakeAIClient:
    def __init__(self, replies=None, error=None):
        self.replies = list(replies or ["ok"])
        self.error = error
        self.calls = []

    async def chat(self, profile, messages):
        self.calls.append(messages)
        if self.error is not None:
            raise self.error
        return self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]


class Sent:
    def __init__(self):
        self.messages = []

    async def __call__(self, auth_key, message):
        self.messages.append(message)


def make_ctx(store, content, send):
    return DispatchContext(
        bot_id="bot1",
        auth_key="key1",
        message=make_message(content),
        bot=BotInfo(id="bot1", user_id="u1", wxid="wxid_bot"),
        repository=ConfigRepository(store),
        send=send,
    )


@pytest.mark.asyncio
async def test_context_cache_feeds_follow_up_question(sqlite_store):
    sqlite_store.add_ai_model("u1", {"model": "m", "trigger_prefix": "ai", "context_count": 2})
    client = FakeAIClient(["r1", "r2"])
    strategy = AIModelStrategy(client, sqlite_store, ContextCache())
    send = Sent()

    assert await strategy.handle(make_ctx(sqlite_store, "ai hello", send)) is True
    assert await strategy.handle(make_ctx(sqlite_store, "ai again", send)) is True

    assert client.calls[1][1:] == [
        {"role": "user", "content": "hello"},
        {"role": "assistant", "content": "r1"},
        {"role": "user", "content": "again"},
    ]
    assert [m.content for m in send.messages] == ["r1", "r2"]


@pytest.mark.asyncio
async def test_context_is_rebuilt_from_history_on_cache_miss(sqlite_store):
    sqlite_store.add_ai_model("u1", {"model": "m", "trigger_prefix": "ai", "context_count": 1})
    for content, source, created_at, from_user, to_user in (
        ("ai old question", "user_message", "2024-01-01T00:00:01.000Z", "wxid_friend", "wxid_bot"),
        ("old answer", "ai_response", "2024-01-01T00:00:02.000Z", "assistant", "wxid_friend"),
        ("ai recent question", "user_message", "2024-01-01T00:00:03.000Z", "wxid_friend", "wxid_bot"),
        ("recent answer", "ai_response", "2024-01-01T00:00:04.000Z", "assistant", "wxid_friend"),
        ("other chat", "user_message", "2024-01-01T00:00:05.000Z", "wxid_other", "wxid_bot"),
    ):
        await sqlite_store.record_message(MessageRecord(
            bot_id="bot1", content=content, source=source, created_at=created_at,
            from_user=from_user, to_user=to_user,
        ))
    client = FakeAIClient(["new answer"])
    strategy = AIModelStrategy(client, sqlite_store, ContextCache())

    assert await strategy.handle(make_ctx(sqlite_store, "ai now", Sent())) is True

    assert client.calls[0][1:] == [
        {"role": "user", "content": "recent question"},
        {"role": "assistant", "content": "recent answer"},
        {"role": "user", "content": "now"},
    ]


@pytest.mark.asyncio
async def test_probability_gate(sqlite_store):
    sqlite_store.add_ai_model("u1", {"model": "m", "trigger_prefix": "ai", "reply_probability": 30})
    client = FakeAIClient()

    skipped = AIModelStrategy(client, sqlite_store, ContextCache(), rng=lambda: 0.5)
    assert await skipped.handle(make_ctx(sqlite_store, "ai hi", Sent())) is False
    assert client.calls == []

    answered = AIModelStrategy(client, sqlite_store, ContextCache(), rng=lambda: 0.1)
    assert await answered.handle(make_ctx(sqlite_store, "ai hi", Sent())) is True
    assert len(client.calls) == 1


@pytest.mark.asyncio
async def test_empty_message_after_prefix_is_not_handled(sqlite_store):
    sqlite_store.add_ai_model("u1", {"model": "m", "trigger_prefix": "ai"})
    client = FakeAIClient()
    strategy = AIModelStrategy(client, sqlite_store, ContextCache())

    assert await strategy.handle(make_ctx(sqlite_store, "  AI  ", Sent())) is False
    assert client.calls == []


@pytest.mark.asyncio
async def test_ai_error_is_swallowed_without_reply(sqlite_store):
    sqlite_store.add_ai_model("u1", {"model": "m", "trigger_prefix": "ai"})
    client = FakeAIClient(error=AIRateLimitError())
    send = Sent()
    strategy = AIModelStrategy(client, sqlite_store, ContextCache())

    assert await strategy.handle(make_ctx(sqlite_store, "ai hi", send)) is False
    assert send.messages == []


@pytest.mark.asyncio
async def test_split_send_flag_is_forwarded(sqlite_store):
    sqlite_store.add_ai_model("u1", {
        "model": "m", "trigger_prefix": "ai", "enable_split_send": True, "split_send_interval": 500,
    })
    send = Sent()
    strategy = AIModelStrategy(FakeAIClient(["第一句。第二句！"]), sqlite_store, ContextCache())

    assert await strategy.handle(make_ctx(sqlite_store, "ai hi", send)) is True
    assert send.messages[0].should_split is True
    assert send.messages[0].interval_sec == 0.5
