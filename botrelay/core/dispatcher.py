"""
消息分发器 - 规范化入站消息、记录历史并按优先级执行回复策略。

策略顺序: 插件 -> (AI 模型 ‖ 关键词回复)
插件处理后不再执行其他策略；AI 模型与关键词回复并发执行、互不影响。
消息记录与策略执行并发进行，无论是否有策略处理都只记录一次。
"""

import asyncio
import logging
from typing import Any, Optional

from ..handlers.base import DispatchContext, ReplyStrategy, SendCallable
from ..handlers.converters import build_message_record, normalize_message
from ..schemas import BotInfo
from ..types import Frame, InboundMessage, MessageType
from ..utils.logging import format_log_text

__all__ = [
    "MessageDispatcher",
]

logger = logging.getLogger(__name__)


class MessageDispatcher:
    """
    入站消息分发器。

    Attributes:
        repository: 配置读穿缓存（ConfigRepository）
        store: 持久化存储（记录消息）
        plugin / ai / keyword: 三个回复策略
        send: 出站发送函数
    """

    def __init__(
        self,
        repository: Any,
        store: Any,
        plugin: ReplyStrategy,
        ai: ReplyStrategy,
        keyword: ReplyStrategy,
        send: Optional[SendCallable] = None,
        log_message_content: bool = True,
    ) -> None:
        self.repository = repository
        self.store = store
        self.plugin = plugin
        self.ai = ai
        self.keyword = keyword
        self.send = send
        self.log_message_content = log_message_content

    async def dispatch(self, bot_id: str, auth_key: str, frame: Frame) -> bool:
        """
        处理一帧消息。

        Returns:
            是否有策略处理了该消息
        """
        bot = await self._get_bot(bot_id)
        message = normalize_message(frame, bot_id, bot.wxid if bot else None)
        logger.info(
            "收到消息 - 机器人 %s: 发送者=%s 类型=%s(%s) 内容=%s",
            bot_id,
            message.sender_id,
            "群聊" if message.is_group else "私聊",
            message.msg_type.value,
            format_log_text(message.parsed_content, self.log_message_content),
        )

        record_task = self._record(message)
        if bot is None or message.msg_type != MessageType.TEXT:
            await record_task
            return False
        if message.is_group and bot.at_reply_enabled and not message.mentioned:
            logger.info("群聊未被@，跳过回复")
            await record_task
            return False

        ctx = DispatchContext(
            bot_id=bot_id,
            auth_key=auth_key,
            message=message,
            bot=bot,
            repository=self.repository,
            send=self._send,
        )
        _, handled = await asyncio.gather(record_task, self.run_strategies(ctx))
        return handled

    async def run_strategies(self, ctx: DispatchContext) -> bool:
        if await self.plugin.handle(ctx):
            logger.info("插件已处理消息，跳过其他策略")
            return True
        results = await asyncio.gather(
            self.ai.handle(ctx), self.keyword.handle(ctx), return_exceptions=True
        )
        for result in results:
            if isinstance(result, BaseException):
                logger.error("回复策略异常: %s", result)
        return any(result is True for result in results)

    async def _send(self, auth_key: str, message: Any) -> None:
        if self.send is None:
            raise RuntimeError("分发器未配置发送函数")
        await self.send(auth_key, message)

    async def _get_bot(self, bot_id: str) -> Optional[BotInfo]:
        try:
            bot = await self.repository.get_bot_info(bot_id)
        except Exception as exc:
            logger.error("获取机器人 %s 信息失败: %s", bot_id, exc)
            return None
        if bot is None:
            logger.warning("未找到机器人 %s 的信息，只记录消息", bot_id)
        return bot

    async def _record(self, message: InboundMessage) -> None:
        try:
            await self.store.record_message(build_message_record(message))
        except Exception as exc:
            logger.error("记录消息失败: %s", exc)
