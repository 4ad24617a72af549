"""
消息处理工具模块 - 提供群消息解析、分句、emoji 过滤和提示词模板等功能。
"""

import re
from typing import Dict, List, Optional, Tuple

# 群聊会话 ID 标记
GROUP_MARKER = "@chatroom"

# 分句使用的句末标点
SENTENCE_DELIMITERS = "。！？"
_SENTENCE_SPLIT_PATTERN = re.compile(f"[{SENTENCE_DELIMITERS}]")

# 群消息格式 "发送者: 内容"，内容可跨行
_GROUP_MESSAGE_PATTERN = re.compile(r"^([^:]+):\s*(.*)$", re.S)

_WHITESPACE_PATTERN = re.compile(r"\s+")

EMOJI_PATTERN = re.compile(
    "["
    "\U0001F1E6-\U0001F1FF"
    "\U0001F300-\U0001F5FF"
    "\U0001F600-\U0001F64F"
    "\U0001F680-\U0001F6FF"
    "\U0001F700-\U0001F77F"
    "\U0001F780-\U0001F7FF"
    "\U0001F800-\U0001F8FF"
    "\U0001F900-\U0001F9FF"
    "\U0001FA00-\U0001FAFF"
    "\U00002600-\U000026FF"
    "\U00002700-\U000027BF"
    "\U0000FE0F"
    "\U0000200D"
    "]"
)

__all__ = [
    "GROUP_MARKER",
    "SENTENCE_DELIMITERS",
    "EMOJI_PATTERN",
    "is_group_id",
    "split_group_message",
    "split_sentences",
    "strip_emoji",
    "normalize_whitespace",
    "render_prompt",
]


def is_group_id(user_id: Optional[str]) -> bool:
    """会话 ID 是否为群聊。"""
    return bool(user_id) and GROUP_MARKER in str(user_id)


def split_group_message(text: str) -> Tuple[str, str]:
    """
    分离群消息中的发送者和内容。

    网关推送的群消息格式为 "发送者:\\n内容" 或 "发送者: 内容"。
    发送者和内容都去掉首尾空白；没有冒号时发送者为空字符串，内容保持原样。
    """
    if not text:
        return "", text or ""
    match = _GROUP_MESSAGE_PATTERN.match(text)
    if not match:
        return "", text
    return match.group(1).strip(), match.group(2).strip()


def split_sentences(text: str) -> List[str]:
    """按中文句末标点（。！？）分句，丢弃空白片段。"""
    if not text:
        return []
    parts = _SENTENCE_SPLIT_PATTERN.split(text)
    return [p.strip() for p in parts if p and p.strip()]


def strip_emoji(text: str) -> str:
    """移除文本中的 emoji 字符。"""
    if not text:
        return ""
    return EMOJI_PATTERN.sub("", str(text))


def normalize_whitespace(text: str) -> str:
    """合并连续空白并去除首尾空白。"""
    if not text:
        return ""
    return _WHITESPACE_PATTERN.sub(" ", str(text)).strip()


def render_prompt(template: str, values: Dict[str, str]) -> str:
    """
    替换提示词中的 [占位符]。

    按字面量替换，每次调用都重新计算，时间类占位符不会被缓存。
    """
    if not template:
        return ""
    result = template
    for key, value in values.items():
        result = result.replace(f"[{key}]", "" if value is None else str(value))
    return result
