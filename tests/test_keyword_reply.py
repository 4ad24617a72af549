import unittest

import pytest

from botrelay.core.cache import ConfigRepository
from botrelay.handlers.base import DispatchContext
from botrelay.handlers.keyword_reply import KeywordReplyStrategy, rule_matches, scope_allows
from botrelay.schemas import BotInfo, KeywordRule
from botrelay.types import InboundMessage, MessageType


def make_message(content, is_group=False):
    return InboundMessage(
        bot_id="bot1",
        msg_id="1",
        from_user="123@chatroom" if is_group else "wxid_friend",
        to_user="wxid_bot",
        is_group=is_group,
        raw_content=content,
        msg_type=MessageType.TEXT,
        parsed_content=content,
    )


class RuleMatchTest(unittest.TestCase):
    def test_exact_requires_full_equality(self):
        rule = KeywordRule(keyword="hi", match_type="exact")
        self.assertTrue(rule_matches(rule, "hi"))
        self.assertFalse(rule_matches(rule, "hi there"))

    def test_fuzzy_is_case_insensitive_substring(self):
        rule = KeywordRule(keyword="hi", match_type="fuzzy")
        self.assertTrue(rule_matches(rule, "hi"))
        self.assertTrue(rule_matches(rule, "oh HI there"))
        self.assertFalse(rule_matches(rule, "hello"))

    def test_regex_search(self):
        rule = KeywordRule(keyword=r"^\d+$", match_type="regex")
        self.assertTrue(rule_matches(rule, "12345"))
        self.assertFalse(rule_matches(rule, "12a45"))

    def test_regex_ignores_case(self):
        rule = KeywordRule(keyword="^hello", match_type="regex")
        self.assertTrue(rule_matches(rule, "HELLO world"))

    def test_invalid_regex_does_not_match(self):
        rule = KeywordRule(keyword="([", match_type="regex")
        with self.assertLogs("botrelay.handlers.keyword_reply", level="ERROR"):
            self.assertFalse(rule_matches(rule, "(["))

    def test_unknown_match_type_never_matches(self):
        rule = KeywordRule(keyword="hi", match_type="sounds_like")
        self.assertFalse(rule_matches(rule, "hi"))

    def test_scope(self):
        private_rule = KeywordRule(keyword="hi", scope="private")
        group_rule = KeywordRule(keyword="hi", scope="group")
        all_rule = KeywordRule(keyword="hi", scope="all")
        self.assertTrue(scope_allows(private_rule, make_message("hi")))
        self.assertFalse(scope_allows(private_rule, make_message("hi", is_group=True)))
        self.assertTrue(scope_allows(group_rule, make_message("hi", is_group=True)))
        self.assertFalse(scope_allows(group_rule, make_message("hi")))
        self.assertTrue(scope_allows(all_rule, make_message("hi", is_group=True)))


class FakeRepository:
    def __init__(self, rules):
        self.rules = rules

    async def get_keyword_replies(self, user_id):
        return self.rules


def make_ctx(content, rules, send, is_group=False):
    return DispatchContext(
        bot_id="bot1",
        auth_key="key1",
        message=make_message(content, is_group=is_group),
        bot=BotInfo(id="bot1", user_id="u1"),
        repository=FakeRepository(rules),
        send=send,
    )


@pytest.mark.asyncio
async def test_first_matching_rule_wins():
    sent = []

    async def send(auth_key, message):
        sent.append(message)

    rules = [
        KeywordRule(keyword="价格", reply="第一条", match_type="fuzzy"),
        KeywordRule(keyword="价格", reply="第二条", match_type="fuzzy"),
    ]
    assert await KeywordReplyStrategy().handle(make_ctx("请问价格", rules, send)) is True
    assert [m.content for m in sent] == ["第一条"]


@pytest.mark.asyncio
async def test_send_failure_falls_through_to_next_rule():
    sent = []

    async def send(auth_key, message):
        if message.msg_type == MessageType.IMAGE:
            raise RuntimeError("gateway down")
        sent.append(message)

    rules = [
        KeywordRule(keyword="图", reply="http://img.test/a.jpg", reply_type="image", match_type="fuzzy"),
        KeywordRule(keyword="图", reply="图片暂时发不出去", match_type="fuzzy"),
    ]
    assert await KeywordReplyStrategy().handle(make_ctx("来张图", rules, send)) is True
    assert [m.content for m in sent] == ["图片暂时发不出去"]


@pytest.mark.asyncio
async def test_inactive_and_out_of_scope_rules_are_skipped():
    sent = []

    async def send(auth_key, message):
        sent.append(message)

    rules = [
        KeywordRule(keyword="hi", reply="inactive", is_active=False),
        KeywordRule(keyword="hi", reply="group only", scope="group"),
        KeywordRule(keyword="hi", reply="unknown type", reply_type="video"),
    ]
    assert await KeywordReplyStrategy().handle(make_ctx("hi", rules, send)) is False
    assert sent == []


@pytest.mark.asyncio
async def test_rules_are_loaded_through_repository(sqlite_store):
    sqlite_store.add_keyword_reply("u1", {"keyword": "hi", "reply": "hello!"})
    sent = []

    async def send(auth_key, message):
        sent.append((auth_key, message))

    ctx = make_ctx("hi", [], send)
    ctx.repository = ConfigRepository(sqlite_store)

    assert await KeywordReplyStrategy().handle(ctx) is True
    assert sent[0][0] == "key1"
    assert sent[0][1].content == "hello!"
    assert sent[0][1].to_user == "wxid_friend"
