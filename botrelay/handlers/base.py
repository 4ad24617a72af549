"""
回复策略基类 - 定义策略接口与一次分发周期内共享的上下文。
"""

import abc
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from ..schemas import BotInfo
from ..types import InboundMessage, MessageType, OutboundMessage

__all__ = [
    "SendCallable",
    "DispatchContext",
    "ReplyStrategy",
]

logger = logging.getLogger(__name__)

SendCallable = Callable[[str, OutboundMessage], Awaitable[Any]]


@dataclass
class DispatchContext:
    """
    单条消息的分发上下文。

    Attributes:
        bot_id (str): 机器人 ID
        auth_key (str): 网关鉴权 key
        message (InboundMessage): 规范化后的消息
        bot (BotInfo): 机器人信息
        repository: 配置读穿缓存（ConfigRepository）
        send (SendCallable): 出站发送函数，连接未就绪时由连接管理器入队
    """
    bot_id: str
    auth_key: str
    message: InboundMessage
    bot: BotInfo
    repository: Any
    send: SendCallable

    @property
    def user_id(self) -> Optional[str]:
        return self.bot.user_id

    @property
    def content(self) -> str:
        return self.message.parsed_content or ""

    async def reply(
        self,
        content: str,
        msg_type: MessageType = MessageType.TEXT,
        should_split: bool = False,
        interval_sec: float = 1.0,
    ) -> None:
        """向消息来源会话回复（群聊回复到群）。"""
        await self.send(
            self.auth_key,
            OutboundMessage(
                to_user=self.message.from_user,
                content=content,
                msg_type=msg_type,
                should_split=should_split,
                interval_sec=interval_sec,
            ),
        )


class ReplyStrategy(abc.ABC):
    """
    回复策略。

    process() 返回是否已处理该消息；handle() 捕获所有异常并返回 False，
    保证并发分发时一个策略的异常不会影响其他策略。
    """

    name = "strategy"

    @abc.abstractmethod
    async def process(self, ctx: DispatchContext) -> bool:
        ...

    async def handle(self, ctx: DispatchContext) -> bool:
        try:
            return bool(await self.process(ctx))
        except Exception as exc:
            logger.exception("%s 策略处理消息失败: %s", self.name, exc)
            return False
