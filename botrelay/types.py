"""
类型定义模块 - 定义连接状态、网关帧和消息等数据类。
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Tuple, Union

__all__ = [
    "BotStatus",
    "ConnectionState",
    "ChatKind",
    "MessageType",
    "ReconnectPolicy",
    "ControlFrame",
    "TextFrame",
    "ImageFrame",
    "VoiceFrame",
    "Frame",
    "InboundMessage",
    "OutboundMessage",
]


class BotStatus(str, Enum):
    """机器人状态（与数据库 bots.status 一致）。"""
    ONLINE = "online"
    OFFLINE = "offline"
    AUTHENTICATING = "authenticating"
    ERROR = "error"


class ConnectionState(str, Enum):
    """
    单个机器人连接的状态机。

    IDLE -> CONNECTING -> OPEN -> RECONNECTING -> CONNECTING ... -> GAVE_UP
    """
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    RECONNECTING = "reconnecting"
    GAVE_UP = "gave_up"


class ChatKind(str, Enum):
    PRIVATE = "private"
    GROUP = "group"


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VOICE = "voice"


DEFAULT_RETRY_DELAYS_SEC: Tuple[float, ...] = (
    1, 2, 5, 10, 30, 60, 120, 300, 600, 1800,
)


@dataclass
class ReconnectPolicy:
    """
    重连策略配置。

    Attributes:
        max_retries (int): 最大重试次数，达到后放弃并标记离线
        delays_sec (tuple): 退避阶梯（秒），按重试次数取值，超出取最后一项
    """
    max_retries: int = 10
    delays_sec: Tuple[float, ...] = DEFAULT_RETRY_DELAYS_SEC

    def delay_for(self, attempt: int) -> float:
        if not self.delays_sec:
            return 0.0
        index = min(max(0, attempt), len(self.delays_sec) - 1)
        return float(self.delays_sec[index])


# ═══════════════════════════════════════════════════════════════════════════════
#                               网关帧
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ControlFrame:
    """心跳控制帧："ping" 或 "pong"。"""
    kind: str


@dataclass(frozen=True)
class _MessageFrame:
    msg_id: str
    from_user: str
    to_user: str
    content: str
    create_time: Optional[int] = None
    push_content: str = ""
    msg_source: str = ""
    raw_type: int = 1
    status: int = 0
    raw: Any = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class TextFrame(_MessageFrame):
    """文本消息帧。"""


@dataclass(frozen=True)
class ImageFrame(_MessageFrame):
    """图片消息帧，media_url 为图片地址。"""
    media_url: str = ""


@dataclass(frozen=True)
class VoiceFrame(_MessageFrame):
    """语音消息帧，media_url 为语音地址。"""
    media_url: str = ""


Frame = Union[ControlFrame, TextFrame, ImageFrame, VoiceFrame]


# ═══════════════════════════════════════════════════════════════════════════════
#                               消息
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class InboundMessage:
    """
    规范化后的入站消息，只在一次分发周期内存在。

    Attributes:
        bot_id (str): 收到消息的机器人 ID
        msg_id (str): 网关消息 ID
        from_user (str): 会话 ID（私聊为好友 wxid，群聊为群 ID）
        to_user (str): 接收方 ID
        is_group (bool): 是否为群聊
        raw_content (str): 原始内容
        msg_type (MessageType): text / image / voice
        parsed_sender (str): 群聊中解析出的真实发送者，私聊为空
        parsed_content (str): 去掉发送者前缀后的内容，图片/语音为媒体地址
        media_url (str): 图片/语音地址
        mentioned (bool): 群聊中是否 @ 了机器人
        create_time (int | None): 网关时间戳（秒）
        source (str): 原始 msg_source
        raw_type (int): 网关原始消息类型编号
        status (int): 网关消息状态
    """
    bot_id: str
    msg_id: str
    from_user: str
    to_user: str
    is_group: bool
    raw_content: str
    msg_type: MessageType
    parsed_sender: str = ""
    parsed_content: str = ""
    media_url: str = ""
    mentioned: bool = False
    create_time: Optional[int] = None
    source: str = ""
    raw_type: int = 1
    status: int = 0

    @property
    def chat_kind(self) -> ChatKind:
        return ChatKind.GROUP if self.is_group else ChatKind.PRIVATE

    @property
    def sender_id(self) -> str:
        """实际发送者：群聊取解析出的发送者，否则为会话 ID。"""
        if self.is_group and self.parsed_sender:
            return self.parsed_sender
        return self.from_user


@dataclass
class OutboundMessage:
    """待发送的出站消息（连接未打开时进入待发送队列）。"""
    to_user: str
    content: str
    msg_type: MessageType = MessageType.TEXT
    should_split: bool = False
    interval_sec: float = 1.0
