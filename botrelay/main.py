"""
中继服务进程入口

加载配置、初始化日志、启动中继服务和 HTTP API，收到 SIGINT/SIGTERM 后优雅退出。
启动时无法连接持久化存储或缺少必要配置时以退出码 1 结束。
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from typing import Optional

from .api import run_server_async
from .errors import ConfigError, StoreUnavailableError
from .relay_manager import get_relay_service
from .utils.config import load_config, validate_required
from .utils.logging import get_logging_settings, setup_logging

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = os.path.join(
    os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "config.py"
)


def resolve_config_path(config_path: Optional[str] = None) -> str:
    """命令行参数优先，其次 BOTRELAY_CONFIG 环境变量，最后项目根目录 config.py"""
    return config_path or os.environ.get("BOTRELAY_CONFIG") or DEFAULT_CONFIG_PATH


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Windows 事件循环不支持 add_signal_handler
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop_event.set))


async def main(config_path: Optional[str] = None) -> int:
    """运行中继服务，返回进程退出码。"""
    config = load_config(resolve_config_path(config_path))
    level, log_file, max_bytes, backup_count, format_type = get_logging_settings(config)
    setup_logging(level, log_file, max_bytes, backup_count, format_type)

    missing = validate_required(config)
    if missing:
        logger.error("缺少必要配置: %s", ", ".join(missing))
        return 1

    service = get_relay_service()
    try:
        service.configure(config)
        logger.info("正在初始化中继服务...")
        await service.start()
    except (ConfigError, StoreUnavailableError) as exc:
        logger.error("初始化中继服务失败: %s", exc)
        await service.stop()
        return 1

    stop_event = asyncio.Event()
    _install_signal_handlers(stop_event)

    server_cfg = config.get("server", {}) or {}
    try:
        await run_server_async(
            host=server_cfg.get("host", "0.0.0.0"),
            port=int(server_cfg.get("port", 3031)),
            shutdown_trigger=stop_event.wait,
        )
    finally:
        logger.info("正在停止中继服务...")
        await service.stop()
    return 0


def run(config_path: Optional[str] = None) -> int:
    """同步入口"""
    try:
        return asyncio.run(main(config_path))
    except KeyboardInterrupt:
        return 0
