"""
通用工具模块 - 提供基础的类型转换和工具函数。
"""

import time
from datetime import datetime, timezone
from typing import Any, List, Optional

__all__ = [
    "as_int",
    "as_float",
    "as_optional_str",
    "as_str_list",
    "truncate_text",
    "now_ms",
    "iso_from_ms",
]


def as_int(value: Any, default: int, min_value: Optional[int] = None) -> int:
    """如果转换失败则返回默认值，支持可选的最小值限制。"""
    if isinstance(value, bool):
        value = int(value)
    try:
        val = int(value)
    except (TypeError, ValueError):
        try:
            val = int(float(value))
        except (TypeError, ValueError):
            return default
    if min_value is not None and val < min_value:
        return min_value
    return val


def as_float(value: Any, default: float, min_value: Optional[float] = None) -> float:
    """如果转换失败则返回默认值，支持可选的最小值限制。"""
    try:
        val = float(value)
    except (TypeError, ValueError):
        return default
    if min_value is not None and val < min_value:
        return min_value
    return val


def as_optional_str(value: Any) -> Optional[str]:
    """去除空白字符后，如果为空字符串则返回 None。"""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def as_str_list(value: Any) -> List[str]:
    """
    将数据库中的列表字段统一为字符串列表。

    兼容 JSON 数组、逗号/换行分隔的字符串以及 None。
    """
    if value is None:
        return []
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return []
        if text.startswith("["):
            import json
            try:
                parsed = json.loads(text)
            except ValueError:
                parsed = None
            if isinstance(parsed, list):
                return [str(v).strip() for v in parsed if str(v).strip()]
        parts = text.replace("，", ",").replace("\n", ",").split(",")
        return [p.strip() for p in parts if p.strip()]
    if isinstance(value, (list, tuple, set)):
        return [str(v).strip() for v in value if v is not None and str(v).strip()]
    return [str(value).strip()]


def truncate_text(text: str, max_len: int = 50) -> str:
    """截断文本，超出部分用省略号表示。"""
    if not text:
        return ""
    if len(text) <= max_len:
        return text
    return text[:max_len] + "..."


def now_ms() -> int:
    """当前时间戳（毫秒）。"""
    return int(time.time() * 1000)


def iso_from_ms(ts_ms: Optional[float] = None) -> str:
    """毫秒时间戳转 ISO 8601 字符串（UTC），为空时取当前时间。"""
    if ts_ms is None:
        ts_ms = now_ms()
    dt = datetime.fromtimestamp(float(ts_ms) / 1000.0, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")
