"""
AI 模型策略 - 按触发前缀或群聊 @ 匹配 AI 模型配置并调用对话补全接口。

流程:
    1. 按配置顺序过滤（屏蔽名单、私聊/群聊范围、群白名单），第一个匹配的模型生效
    2. 按概率决定是否回复
    3. 渲染系统提示词占位符，拼接上下文（缓存未命中时从消息历史重建）
    4. 调用接口，按需分句发送，写回上下文缓存和消息历史
"""

import logging
import random
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..core.context_cache import ContextCache, ContextTurn
from ..errors import AIServiceError
from ..schemas import AIModelProfile, MessageRecord
from ..types import InboundMessage
from ..utils.common import iso_from_ms, now_ms
from ..utils.logging import format_log_text
from ..utils.message import normalize_whitespace, render_prompt
from .base import DispatchContext, ReplyStrategy

__all__ = [
    "USER_MESSAGE_SOURCE",
    "AI_RESPONSE_SOURCE",
    "is_profile_applicable",
    "match_profile",
    "strip_prefix",
    "build_prompt_values",
    "turns_from_history",
    "AIModelStrategy",
]

logger = logging.getLogger(__name__)

USER_MESSAGE_SOURCE = "user_message"
AI_RESPONSE_SOURCE = "ai_response"
ASSISTANT_ID = "assistant"


def is_profile_applicable(profile: AIModelProfile, message: InboundMessage) -> bool:
    """屏蔽名单、发送范围和群白名单检查。"""
    block_list = profile.block_list
    if message.from_user in block_list:
        return False
    if message.parsed_sender and message.parsed_sender in block_list:
        return False
    if profile.send_type == "private" and message.is_group:
        return False
    if profile.send_type == "group":
        if not message.is_group:
            return False
        whitelist = profile.group_whitelist
        if whitelist and "all" not in whitelist and message.from_user not in whitelist:
            return False
    return True


def strip_prefix(content: str, prefix: str) -> Optional[str]:
    """
    大小写不敏感地去掉触发前缀（先合并空白）。

    不以前缀开头时返回 None。
    """
    text = normalize_whitespace(content)
    normalized_prefix = normalize_whitespace(prefix)
    if not text.lower().startswith(normalized_prefix.lower()):
        return None
    return text[len(normalized_prefix):].strip()


def match_profile(
    profiles: List[AIModelProfile], message: InboundMessage
) -> Optional[Tuple[AIModelProfile, str]]:
    """
    返回第一个匹配的 (模型配置, 用户消息)。

    群聊中被 @ 且模型开启了 @ 回复时直接使用完整内容，不再检查前缀。
    """
    for profile in profiles:
        if not profile.enabled or not is_profile_applicable(profile, message):
            continue
        if message.is_group and profile.at_reply_enabled and message.mentioned:
            return profile, message.parsed_content.strip()
        remainder = strip_prefix(message.parsed_content, profile.trigger_prefix)
        if remainder is not None:
            return profile, remainder
    return None


def build_prompt_values(
    profile: AIModelProfile, message: InboundMessage, now: datetime
) -> Dict[str, str]:
    """系统提示词占位符的取值，每次调用重新计算。"""
    return {
        "time": f"{now.year}/{now.month}/{now.day} {now:%H:%M:%S}",
        "date": f"{now.year}/{now.month}/{now.day}",
        "year": str(now.year),
        "month": str(now.month),
        "day": str(now.day),
        "hour": str(now.hour),
        "minute": str(now.minute),
        "second": str(now.second),
        "发送人id": message.from_user,
        "发送人昵称": message.parsed_sender or message.from_user,
        "群号": message.from_user if message.is_group else "",
        "消息类型": "群聊" if message.is_group else "私聊",
        "触发前缀": profile.trigger_prefix,
        "模型名称": profile.name,
    }


def turns_from_history(records: List[MessageRecord], prefix: str) -> List[ContextTurn]:
    """
    把持久化的 user_message / ai_response 记录按时间顺序配对成轮次。

    历史用户消息去掉触发前缀；没有对应回复的用户消息被丢弃。
    """
    ordered = sorted(records, key=lambda record: record.created_at)
    turns: List[ContextTurn] = []
    pending_user: Optional[str] = None
    for record in ordered:
        if record.source == USER_MESSAGE_SOURCE:
            stripped = strip_prefix(record.content, prefix) if prefix else None
            pending_user = stripped if stripped else record.content
        elif record.source == AI_RESPONSE_SOURCE and pending_user is not None:
            turns.append(ContextTurn(user=pending_user, assistant=record.content))
            pending_user = None
    return turns


class AIModelStrategy(ReplyStrategy):
    """AI 模型回复策略。"""

    name = "ai_model"

    def __init__(
        self,
        ai_client: Any,
        store: Any,
        context_cache: ContextCache,
        rng: Callable[[], float] = random.random,
        clock: Callable[[], datetime] = datetime.now,
        log_message_content: bool = True,
        log_reply_content: bool = True,
    ) -> None:
        self.ai_client = ai_client
        self.store = store
        self.context_cache = context_cache
        self.rng = rng
        self.clock = clock
        self.log_message_content = log_message_content
        self.log_reply_content = log_reply_content

    async def process(self, ctx: DispatchContext) -> bool:
        if not ctx.user_id:
            return False
        profiles = await ctx.repository.get_ai_models(ctx.user_id)
        if not profiles:
            return False
        matched = match_profile(profiles, ctx.message)
        if matched is None:
            return False

        profile, user_message = matched
        if not user_message:
            logger.info("去掉触发前缀后消息为空，跳过 AI 回复")
            return False
        if profile.reply_probability < 100 and self.rng() * 100 >= profile.reply_probability:
            logger.info("模型 %s 按回复概率 (%s%%) 跳过本次回复", profile.name, profile.reply_probability)
            return False

        logger.info(
            "AI 模型匹配: %s，用户消息: %s",
            profile.name or profile.model,
            format_log_text(user_message, self.log_message_content),
        )
        try:
            return await self._respond(ctx, profile, user_message)
        except AIServiceError as exc:
            logger.error("调用 AI 模型 %s 失败: %s", profile.name or profile.model, exc)
            return False

    async def _respond(self, ctx: DispatchContext, profile: AIModelProfile, user_message: str) -> bool:
        message = ctx.message
        key = ContextCache.make_key(ctx.bot_id, message.from_user, message.chat_kind.value)
        context = await self._load_context(ctx.bot_id, message.from_user, key, profile)

        system_prompt = render_prompt(
            profile.system_prompt, build_prompt_values(profile, message, self.clock())
        )
        messages: List[Dict[str, str]] = [{"role": "system", "content": system_prompt}]
        for turn in context:
            messages.extend(turn.to_messages())
        messages.append({"role": "user", "content": user_message})

        reply = await self.ai_client.chat(profile, messages)
        logger.info("AI 回复: %s", format_log_text(reply, self.log_reply_content))

        await ctx.reply(
            reply,
            should_split=profile.enable_split_send,
            interval_sec=profile.split_send_interval / 1000,
        )

        if profile.context_count > 0:
            self.context_cache.push(key, user_message, reply, profile.context_count)
        await self._persist_turn(ctx, user_message, reply)
        return True

    async def _load_context(
        self, bot_id: str, peer_id: str, key: Tuple[str, str, str], profile: AIModelProfile
    ) -> List[ContextTurn]:
        limit = profile.context_count
        if limit <= 0:
            return []
        cached = self.context_cache.get(key)
        if cached is not None:
            return cached[-limit:]
        try:
            records = await self.store.get_history(bot_id, peer_id, limit * 3)
        except Exception as exc:
            logger.warning("读取对话历史失败，使用空上下文: %s", exc)
            return []
        turns = turns_from_history(records, profile.trigger_prefix)
        return self.context_cache.replace(key, turns, limit)

    async def _persist_turn(self, ctx: DispatchContext, user_message: str, reply: str) -> None:
        ts = now_ms()
        created_at = iso_from_ms(ts)
        peer = ctx.message.from_user
        bot_account = ctx.bot.wxid or ctx.bot_id
        records = [
            MessageRecord(
                bot_id=ctx.bot_id,
                msg_id=f"user_message_{ts}",
                from_user=peer,
                to_user=bot_account,
                msg_type=1,
                content=user_message,
                status=2,
                created_at=created_at,
                source=USER_MESSAGE_SOURCE,
            ),
            MessageRecord(
                bot_id=ctx.bot_id,
                msg_id=f"ai_reply_{ts}",
                from_user=ASSISTANT_ID,
                to_user=peer,
                msg_type=1,
                content=reply,
                status=2,
                created_at=iso_from_ms(ts + 1),
                source=AI_RESPONSE_SOURCE,
            ),
        ]
        for record in records:
            try:
                await self.store.record_message(record)
            except Exception as exc:
                logger.error("保存 AI 对话记录失败: %s", exc)
