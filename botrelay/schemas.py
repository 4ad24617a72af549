"""
数据模型模块 - 持久化存储中各表行的 Pydantic 模型。

数据由管理后台写入，字段可能缺失或类型不一致，这里统一做宽松转换。
"""

from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .utils.common import as_float, as_int, as_str_list

__all__ = [
    "BotInfo",
    "AIModelProfile",
    "KeywordRule",
    "PluginDef",
    "MessageRecord",
]


def _as_flag(value: Any) -> bool:
    """数据库中的开关字段可能是 0/1、"true"/"false" 或布尔值。"""
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


class BotInfo(BaseModel):
    """机器人信息（bots 表）"""
    id: str
    auth_key: str = ""
    status: str = "offline"
    user_id: Optional[str] = None
    wxid: Optional[str] = None
    nickname: Optional[str] = None
    avatar_url: Optional[str] = None
    at_reply_enabled: bool = False
    last_active_at: Optional[str] = None

    model_config = ConfigDict(extra="ignore")

    @field_validator("id", "auth_key", mode="before")
    @classmethod
    def _coerce_str(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @field_validator("at_reply_enabled", mode="before")
    @classmethod
    def _coerce_flag(cls, value: Any) -> bool:
        return _as_flag(value)


class AIModelProfile(BaseModel):
    """AI 模型配置（ai_models 表）"""
    id: Optional[str] = None
    enabled: bool = True
    name: str = ""
    model: str = ""
    base_url: str = ""
    api_key: str = ""
    system_prompt: str = ""
    trigger_prefix: str = ""
    block_list: List[str] = Field(default_factory=list)
    send_type: Literal["all", "private", "group"] = "all"
    group_whitelist: List[str] = Field(default_factory=list)
    enable_split_send: bool = False
    split_send_interval: int = 3000  # 毫秒
    reply_probability: float = 100.0
    context_count: int = 0
    at_reply_enabled: bool = False

    model_config = ConfigDict(extra="ignore")

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Optional[str]:
        return None if value is None else str(value)

    @field_validator(
        "name", "model", "base_url", "api_key", "system_prompt", "trigger_prefix",
        mode="before",
    )
    @classmethod
    def _coerce_text(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @field_validator("block_list", "group_whitelist", mode="before")
    @classmethod
    def _coerce_list(cls, value: Any) -> List[str]:
        return as_str_list(value)

    @field_validator("send_type", mode="before")
    @classmethod
    def _coerce_send_type(cls, value: Any) -> str:
        text = str(value or "all").strip().lower()
        return text if text in ("all", "private", "group") else "all"

    @field_validator("enabled", "enable_split_send", "at_reply_enabled", mode="before")
    @classmethod
    def _coerce_flag(cls, value: Any) -> bool:
        return _as_flag(value)

    @field_validator("split_send_interval", mode="before")
    @classmethod
    def _coerce_interval(cls, value: Any) -> int:
        return as_int(value, 3000, min_value=0)

    @field_validator("context_count", mode="before")
    @classmethod
    def _coerce_context_count(cls, value: Any) -> int:
        return as_int(value, 0, min_value=0)

    @field_validator("reply_probability", mode="before")
    @classmethod
    def _coerce_probability(cls, value: Any) -> float:
        if value is None or value == "":
            return 100.0
        return min(100.0, as_float(value, 100.0, min_value=0.0))


class KeywordRule(BaseModel):
    """关键词回复规则（keyword_replies 表）"""
    id: Optional[str] = None
    keyword: str = ""
    reply: str = ""
    reply_type: str = "text"
    match_type: str = "exact"
    scope: str = "all"
    is_active: bool = True

    model_config = ConfigDict(extra="ignore")

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Optional[str]:
        return None if value is None else str(value)

    @field_validator("keyword", "reply", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @field_validator("reply_type", "match_type", "scope", mode="before")
    @classmethod
    def _coerce_enum_text(cls, value: Any) -> str:
        return str(value or "").strip().lower()

    @field_validator("is_active", mode="before")
    @classmethod
    def _coerce_flag(cls, value: Any) -> bool:
        return _as_flag(value)


class PluginDef(BaseModel):
    """插件定义（plugins 表）"""
    id: Optional[str] = None
    name: str = ""
    trigger: str = ""
    code: str = ""
    is_active: bool = True

    model_config = ConfigDict(extra="ignore")

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Optional[str]:
        return None if value is None else str(value)

    @field_validator("name", "trigger", "code", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @field_validator("is_active", mode="before")
    @classmethod
    def _coerce_flag(cls, value: Any) -> bool:
        return _as_flag(value)

    @property
    def accepts_params(self) -> bool:
        """触发词以 ? 结尾表示前缀匹配，剩余部分作为参数。"""
        return self.trigger.endswith("?")

    @property
    def trigger_text(self) -> str:
        return self.trigger[:-1] if self.accepts_params else self.trigger


class MessageRecord(BaseModel):
    """消息记录（bot_messages 表）"""
    bot_id: str
    msg_id: str = ""
    from_user: str = ""
    to_user: str = ""
    msg_type: int = 1
    content: str = ""
    media_url: Optional[str] = None
    status: int = 1
    created_at: str
    source: Optional[str] = None

    model_config = ConfigDict(extra="ignore")
