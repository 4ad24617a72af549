"""
关键词回复策略 - 按 exact / fuzzy / regex 匹配预设回复。
"""

import logging
import re
from typing import List

from ..schemas import KeywordRule
from ..types import InboundMessage, MessageType
from .base import DispatchContext, ReplyStrategy

__all__ = [
    "scope_allows",
    "rule_matches",
    "KeywordReplyStrategy",
]

logger = logging.getLogger(__name__)

_REPLY_TYPES = {
    "text": MessageType.TEXT,
    "image": MessageType.IMAGE,
    "voice": MessageType.VOICE,
}


def scope_allows(rule: KeywordRule, message: InboundMessage) -> bool:
    if rule.scope == "private":
        return not message.is_group
    if rule.scope == "group":
        return message.is_group
    return True


def rule_matches(rule: KeywordRule, content: str) -> bool:
    """
    判断规则是否匹配。

    - exact: 完全相等
    - fuzzy: 忽略大小写的子串匹配
    - regex: 忽略大小写的正则搜索，非法表达式记录日志后视为不匹配
    """
    if rule.match_type == "exact":
        return content == rule.keyword
    if rule.match_type == "fuzzy":
        return rule.keyword.lower() in content.lower()
    if rule.match_type == "regex":
        try:
            return re.search(rule.keyword, content, re.IGNORECASE) is not None
        except re.error as exc:
            logger.error("无效的正则表达式 %r: %s", rule.keyword, exc)
            return False
    return False


class KeywordReplyStrategy(ReplyStrategy):
    """关键词回复策略：第一个匹配且发送成功的规则生效。"""

    name = "keyword"

    async def process(self, ctx: DispatchContext) -> bool:
        if not ctx.user_id:
            return False
        rules: List[KeywordRule] = await ctx.repository.get_keyword_replies(ctx.user_id)
        content = ctx.content
        for rule in rules:
            if not rule.is_active or not scope_allows(rule, ctx.message):
                continue
            if not rule_matches(rule, content):
                continue
            msg_type = _REPLY_TYPES.get(rule.reply_type)
            if msg_type is None:
                logger.warning("关键词规则 %s 的回复类型未知: %s", rule.keyword, rule.reply_type)
                continue
            logger.info("关键词匹配成功: %s", rule.keyword)
            try:
                await ctx.reply(rule.reply, msg_type=msg_type)
            except Exception as exc:
                logger.error("关键词回复发送失败，尝试下一条规则: %s", exc)
                continue
            return True
        return False
