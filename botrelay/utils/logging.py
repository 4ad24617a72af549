"""
日志工具模块 - 负责日志配置、格式化以及最近日志读取。
"""

import logging
import os
import json
import re
import traceback
from collections import deque
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, List, Literal, Optional, Tuple

from .common import as_int, truncate_text


__all__ = [
    "LOG_FORMAT",
    "setup_logging",
    "get_logging_settings",
    "get_log_behavior",
    "format_log_text",
    "read_recent_logs",
    "JSONFormatter",
]

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"

# 与 LOG_FORMAT 对应：2024-05-01 12:00:00,123 [INFO] message
_LOG_LINE_PATTERN = re.compile(
    r"^(\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}(?:[,.]\d{3})?) \[(\w+)\] (.*)$"
)


class JSONFormatter(logging.Formatter):
    """JSON 格式日志格式化器"""

    def format(self, record: logging.LogRecord) -> str:
        log_obj = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        if record.exc_info:
            log_obj["exception"] = "".join(traceback.format_exception(*record.exc_info))

        if hasattr(record, "extra_data"):
            log_obj.update(record.extra_data)

        return json.dumps(log_obj, ensure_ascii=False)


def setup_logging(
    level: str,
    log_file: Optional[str] = None,
    max_bytes: int = 5 * 1024 * 1024,
    backup_count: int = 5,
    format_type: Literal['text', 'json'] = 'text',
) -> None:
    """
    配置全局日志系统。

    同时输出到控制台和回滚文件日志。
    """
    root = logging.getLogger()
    if root.handlers:
        for handler in list(root.handlers):
            root.removeHandler(handler)

    handlers: List[logging.Handler] = [logging.StreamHandler()]

    if log_file:
        log_path = os.path.abspath(log_file)
        log_dir = os.path.dirname(log_path)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                log_path,
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
            )
        )

    if format_type == 'json':
        formatter: logging.Formatter = JSONFormatter(None, "%Y-%m-%d %H:%M:%S")
    else:
        formatter = logging.Formatter(LOG_FORMAT)

    for handler in handlers:
        handler.setFormatter(formatter)

    logging.basicConfig(
        level=str(level or "INFO").upper(),
        handlers=handlers,
        force=True,
    )
    # 第三方库日志过于详细
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)


def get_logging_settings(config: Dict[str, Any]) -> Tuple[str, Optional[str], int, int, str]:
    """从配置字典中提取日志相关设置。"""
    logging_cfg = config.get("logging", {}) or {}
    level = str(logging_cfg.get("level", "INFO"))
    log_file = logging_cfg.get("file")
    max_bytes = as_int(
        logging_cfg.get("max_bytes", 5 * 1024 * 1024),
        5 * 1024 * 1024,
        min_value=1024,
    )
    backup_count = as_int(logging_cfg.get("backup_count", 5), 5, min_value=0)
    format_type = str(logging_cfg.get("format", "text"))
    return level, log_file, max_bytes, backup_count, format_type


def get_log_behavior(config: Dict[str, Any]) -> Tuple[bool, bool]:
    """获取日志记录行为配置（是否记录消息内容/回复内容）。"""
    logging_cfg = config.get("logging", {}) or {}
    log_message_content = bool(logging_cfg.get("log_message_content", True))
    log_reply_content = bool(logging_cfg.get("log_reply_content", True))
    return log_message_content, log_reply_content


def format_log_text(text: str, enabled: bool, max_len: int = 120) -> str:
    """格式化日志文本，支持隐藏和截断。"""
    if not enabled:
        return "[hidden]"
    return truncate_text(text, max_len=max_len)


def _parse_log_line(line: str) -> Dict[str, str]:
    match = _LOG_LINE_PATTERN.match(line)
    if match:
        return {
            "timestamp": match.group(1),
            "type": match.group(2).lower(),
            "message": match.group(3),
        }
    if line.startswith("{"):
        try:
            data = json.loads(line)
        except ValueError:
            data = None
        if isinstance(data, dict):
            return {
                "timestamp": str(data.get("timestamp", "")),
                "type": str(data.get("level", "")).lower(),
                "message": str(data.get("message", "")),
            }
    return {"timestamp": "", "type": "raw", "message": line}


def read_recent_logs(log_file: Optional[str], limit: int = 200) -> List[Dict[str, str]]:
    """
    读取日志文件最后 limit 行并解析为 {timestamp, type, message}。

    文件不存在时返回空列表。
    """
    if not log_file or not os.path.exists(log_file):
        return []
    limit = max(1, int(limit))
    with open(log_file, "r", encoding="utf-8", errors="replace") as f:
        tail = deque((line.rstrip("\n") for line in f if line.strip()), maxlen=limit)
    return [_parse_log_line(line) for line in tail]
