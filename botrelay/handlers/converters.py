"""
消息转换模块 - 将网关推送的原始帧解析为类型化的帧和规范化消息。
"""

import json
import re
from typing import Any, Optional

from ..errors import FrameParseError
from ..schemas import MessageRecord
from ..types import (
    ControlFrame,
    Frame,
    ImageFrame,
    InboundMessage,
    MessageType,
    TextFrame,
    VoiceFrame,
)
from ..utils.common import as_int, iso_from_ms, truncate_text
from ..utils.message import is_group_id, split_group_message

__all__ = [
    "PING",
    "PONG",
    "GATEWAY_IMAGE_TYPE",
    "GATEWAY_VOICE_TYPE",
    "MENTION_MARKERS",
    "parse_frame",
    "is_mentioned",
    "normalize_message",
    "build_message_record",
]

PING = "ping"
PONG = "pong"

# 网关 msg_type 编号
GATEWAY_TEXT_TYPE = 1
GATEWAY_IMAGE_TYPE = 3
GATEWAY_VOICE_TYPE = 34

# 群聊 @ 机器人时网关推送摘要中的标记
MENTION_MARKERS = ("在群聊中@了你", "@了你")

_AT_USER_LIST_PATTERN = re.compile(r"<atuserlist>(.*?)</atuserlist>", re.S)


def _str_field(value: Any) -> str:
    """网关的字符串字段形如 {"str": "..."}，也兼容直接给出字符串。"""
    if isinstance(value, dict):
        value = value.get("str")
    if value is None:
        return ""
    return str(value)


def parse_frame(raw: Any) -> Frame:
    """
    解析一帧网关数据。

    "ping" / "pong" 解析为 ControlFrame；其余必须是带发送者的 JSON 消息，
    否则抛出 FrameParseError。
    """
    if isinstance(raw, (bytes, bytearray)):
        raw = bytes(raw).decode("utf-8", errors="replace")
    if not isinstance(raw, str):
        raise FrameParseError(f"不支持的帧类型: {type(raw).__name__}")

    text = raw.strip()
    if text in (PING, PONG):
        return ControlFrame(kind=text)

    try:
        data = json.loads(text)
    except ValueError as exc:
        raise FrameParseError(f"帧不是合法 JSON: {truncate_text(text, 80)}") from exc
    if not isinstance(data, dict):
        raise FrameParseError("帧不是 JSON 对象")

    from_user = _str_field(data.get("from_user_name")).strip()
    if not from_user:
        raise FrameParseError("消息缺少发送者")

    raw_type = as_int(data.get("msg_type"), GATEWAY_TEXT_TYPE)
    common = dict(
        msg_id=str(data.get("new_msg_id") or data.get("msg_id") or ""),
        from_user=from_user,
        to_user=_str_field(data.get("to_user_name")).strip(),
        content=_str_field(data.get("content")),
        create_time=as_int(data.get("create_time"), 0) or None,
        push_content=str(data.get("push_content") or ""),
        msg_source=str(data.get("msg_source") or ""),
        raw_type=raw_type,
        status=as_int(data.get("status"), 0),
        raw=data,
    )

    if raw_type == GATEWAY_IMAGE_TYPE:
        image = data.get("image") or {}
        media_url = image.get("image_url") if isinstance(image, dict) else None
        return ImageFrame(media_url=str(media_url or ""), **common)
    if raw_type == GATEWAY_VOICE_TYPE:
        voice = data.get("voice") or {}
        media_url = voice.get("voice_url") if isinstance(voice, dict) else None
        return VoiceFrame(media_url=str(media_url or ""), **common)
    return TextFrame(**common)


def is_mentioned(frame: Frame, bot_wxid: Optional[str] = None) -> bool:
    """
    群消息是否 @ 了机器人。

    依据推送摘要中的 "@了你" 标记，或 msg_source 的 atuserlist 包含机器人 wxid。
    """
    if isinstance(frame, ControlFrame):
        return False
    if any(marker in frame.push_content for marker in MENTION_MARKERS):
        return True
    if bot_wxid and frame.msg_source:
        match = _AT_USER_LIST_PATTERN.search(frame.msg_source)
        if match:
            at_list = match.group(1).replace("<![CDATA[", "").replace("]]>", "")
            return bot_wxid in [item.strip() for item in at_list.split(",")]
    return False


def normalize_message(frame: Frame, bot_id: str, bot_wxid: Optional[str] = None) -> InboundMessage:
    """
    将消息帧规范化为 InboundMessage。

    群聊文本消息按 "发送者: 内容" 拆分；图片/语音消息的内容替换为媒体地址。
    """
    if isinstance(frame, ControlFrame):
        raise FrameParseError("控制帧不能转换为消息")

    is_group = is_group_id(frame.from_user)
    parsed_sender = ""
    parsed_content = frame.content
    media_url = ""

    if isinstance(frame, ImageFrame):
        msg_type = MessageType.IMAGE
        media_url = frame.media_url
        parsed_content = media_url
    elif isinstance(frame, VoiceFrame):
        msg_type = MessageType.VOICE
        media_url = frame.media_url
        parsed_content = media_url
    else:
        msg_type = MessageType.TEXT
        if is_group:
            parsed_sender, parsed_content = split_group_message(frame.content)

    return InboundMessage(
        bot_id=bot_id,
        msg_id=frame.msg_id,
        from_user=frame.from_user,
        to_user=frame.to_user,
        is_group=is_group,
        raw_content=frame.content,
        msg_type=msg_type,
        parsed_sender=parsed_sender,
        parsed_content=parsed_content,
        media_url=media_url,
        mentioned=is_group and is_mentioned(frame, bot_wxid),
        create_time=frame.create_time,
        source=frame.msg_source,
        raw_type=frame.raw_type,
        status=frame.status,
    )


def build_message_record(message: InboundMessage) -> MessageRecord:
    """构造写入消息历史的记录。"""
    if message.create_time:
        created_at = iso_from_ms(message.create_time * 1000)
    else:
        created_at = iso_from_ms()
    return MessageRecord(
        bot_id=message.bot_id,
        msg_id=message.msg_id,
        from_user=message.sender_id,
        to_user=message.to_user,
        msg_type=message.raw_type,
        content=message.parsed_content,
        media_url=message.media_url or None,
        status=message.status,
        created_at=created_at,
        source=message.source or None,
    )
