"""
中继服务管理器

组装存储、网关客户端、缓存、回复策略、分发器和连接管理器，
提供启动、停止、状态查询、缓存刷新和手动发送等操作。
使用单例模式确保全局唯一实例。
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional

from .core.ai_client import AIClient
from .core.cache import ConfigRepository, TTLCache
from .core.connection import ConnectionManager, open_gateway_socket
from .core.context_cache import ContextCache
from .core.dispatcher import MessageDispatcher
from .core.sqlite_store import SqliteStore
from .core.store import BaseStore, SupabaseStore
from .errors import ConfigError, GatewayError, GatewayTimeoutError
from .handlers.ai_reply import AIModelStrategy
from .handlers.keyword_reply import KeywordReplyStrategy
from .handlers.plugin import PluginStrategy
from .handlers.sender import (
    DEFAULT_USER_AGENT,
    FALLBACK_USER_AGENT,
    GatewayClient,
    OutboundSender,
)
from .types import BotStatus, MessageType, OutboundMessage, ReconnectPolicy
from .utils.http import close_shared_client, get_shared_client
from .utils.logging import get_log_behavior

__all__ = [
    "build_store",
    "RelayService",
    "get_relay_service",
]

logger = logging.getLogger(__name__)


def build_store(config: Dict[str, Any]) -> BaseStore:
    """根据 store.backend 创建持久化存储。"""
    store_cfg = config.get("store", {}) or {}
    backend = store_cfg.get("backend", "supabase")
    if backend == "sqlite":
        return SqliteStore(
            store_cfg.get("sqlite_path", "data/botrelay.db"),
            poll_interval_sec=float(store_cfg.get("poll_interval_sec", 5.0)),
        )
    if backend == "supabase":
        url = store_cfg.get("supabase_url")
        key = store_cfg.get("supabase_key")
        if not url or not key:
            raise ConfigError("缺少 SUPABASE_URL 或 SUPABASE_SERVICE_ROLE_KEY 配置")
        return SupabaseStore(
            url,
            key,
            timeout_sec=float(store_cfg.get("timeout_sec", 10.0)),
            realtime_enabled=bool(store_cfg.get("realtime_enabled", True)),
        )
    raise ConfigError(f"不支持的存储后端: {backend}")


class RelayService:
    """
    中继服务（单例）

    负责：
    - 启动时连接所有在线机器人并订阅 bots 表变更
    - 停止时断开所有连接并释放 HTTP 客户端
    - 为 HTTP 接口提供状态查询、缓存刷新、连接控制和手动发送
    """

    _instance: Optional['RelayService'] = None
    _lock = asyncio.Lock()

    def __new__(cls) -> 'RelayService':
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self._initialized = True
        self.config: Dict[str, Any] = {}
        self.configured = False
        self.is_running = False
        self.start_time: Optional[float] = None

        # 组件（configure 时创建）
        self.store: Optional[BaseStore] = None
        self.gateway: Optional[GatewayClient] = None
        self.sender: Optional[OutboundSender] = None
        self.repository: Optional[ConfigRepository] = None
        self.context_cache: Optional[ContextCache] = None
        self.request_cache: Optional[TTLCache] = None
        self.ai_client: Optional[AIClient] = None
        self.dispatcher: Optional[MessageDispatcher] = None
        self.manager: Optional[ConnectionManager] = None
        self._subscription: Any = None

    @classmethod
    def get_instance(cls) -> 'RelayService':
        """获取单例实例"""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        cls._instance = None

    def configure(
        self,
        config: Dict[str, Any],
        store: Optional[BaseStore] = None,
        gateway: Optional[GatewayClient] = None,
        ai_client: Optional[AIClient] = None,
        http_client: Any = None,
        socket_factory: Callable[[str], Any] = open_gateway_socket,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> 'RelayService':
        """
        根据配置创建全部组件。

        各组件均可注入，便于测试时替换存储、网关和 WebSocket 连接。
        """
        self.config = config
        gateway_cfg = config.get("gateway", {}) or {}
        relay_cfg = config.get("relay", {}) or {}
        plugin_cfg = config.get("plugin", {}) or {}
        log_message_content, log_reply_content = get_log_behavior(config)

        self.store = store or build_store(config)
        self.gateway = gateway or GatewayClient(
            gateway_cfg.get("api_base_url", ""),
            timeout_sec=float(gateway_cfg.get("request_timeout_sec", 30.0)),
            user_agent=gateway_cfg.get("user_agent") or DEFAULT_USER_AGENT,
            fallback_user_agent=gateway_cfg.get("fallback_user_agent") or FALLBACK_USER_AGENT,
        )
        self.sender = OutboundSender(self.gateway)
        self.repository = ConfigRepository(
            self.store, ttl_sec=float(relay_cfg.get("config_cache_ttl_sec", 300.0))
        )
        self.context_cache = ContextCache(ttl_sec=float(relay_cfg.get("context_cache_ttl_sec", 30.0)))
        self.request_cache = TTLCache(float(plugin_cfg.get("request_cache_ttl_sec", 60.0)))
        self.ai_client = ai_client or AIClient(
            timeout_sec=float(relay_cfg.get("ai_timeout_sec", 60.0)),
            temperature=float(relay_cfg.get("ai_temperature", 0.7)),
            max_tokens=int(relay_cfg.get("ai_max_tokens", 1000)),
        )

        plugin = PluginStrategy(
            refresh=self.clear_all_caches,
            http_client=http_client or get_shared_client(),
            request_cache=self.request_cache,
            timeout_sec=float(plugin_cfg.get("timeout_sec", 60.0)),
            max_steps=int(plugin_cfg.get("max_steps", 200000)),
            request_timeout_sec=float(plugin_cfg.get("request_timeout_sec", 30.0)),
            image_timeout_sec=float(plugin_cfg.get("image_timeout_sec", 15.0)),
            refresh_command=relay_cfg.get("refresh_command") or "刷新配置",
        )
        ai = AIModelStrategy(
            self.ai_client,
            self.store,
            self.context_cache,
            log_message_content=log_message_content,
            log_reply_content=log_reply_content,
        )
        self.dispatcher = MessageDispatcher(
            self.repository,
            self.store,
            plugin=plugin,
            ai=ai,
            keyword=KeywordReplyStrategy(),
            log_message_content=log_message_content,
        )
        self.manager = ConnectionManager(
            self.store,
            self.sender,
            gateway_cfg.get("ws_base_url", ""),
            ws_path=gateway_cfg.get("ws_path") or "/GetSyncMsg",
            policy=ReconnectPolicy(
                max_retries=int(relay_cfg.get("max_retries", 10)),
                delays_sec=tuple(relay_cfg.get("retry_delays_sec") or ReconnectPolicy().delays_sec),
            ),
            frame_handler=self.dispatcher.dispatch,
            socket_factory=socket_factory,
            sleep=sleep,
            liveness_interval_sec=float(relay_cfg.get("liveness_interval_sec", 10.0)),
            zombie_timeout_sec=float(relay_cfg.get("zombie_timeout_sec", 60.0)),
            heartbeat_interval_sec=float(relay_cfg.get("heartbeat_interval_sec", 25.0)),
            connect_timeout_sec=float(relay_cfg.get("connect_timeout_sec", 15.0)),
            replace_wait_sec=float(relay_cfg.get("replace_wait_sec", 1.0)),
        )
        self.dispatcher.send = self.manager.send_message
        self.configured = True
        logger.info("中继服务组件初始化完成")
        return self

    def _require_configured(self) -> None:
        if not self.configured:
            raise ConfigError("中继服务尚未配置")

    # ═══════════════════════════════════════════════════════════════════════════
    #                               生命周期
    # ═══════════════════════════════════════════════════════════════════════════

    async def start(self) -> Dict[str, Any]:
        """
        启动中继服务

        Raises:
            StoreUnavailableError: 无法连接持久化存储（进程应退出）
        """
        self._require_configured()
        async with self._lock:
            if self.is_running:
                return {'success': False, 'message': '中继服务已在运行'}

            logger.info("正在连接数据库...")
            await self.store.ping()
            bots = await self.store.get_bots_online()
            logger.info("找到 %s 个在线机器人", len(bots))
            for bot in bots:
                logger.info("- ID: %s, 用户ID: %s, 状态: %s", bot.id, bot.user_id, bot.status)

            await asyncio.gather(
                *(self.manager.connect(bot.auth_key, bot.id, fresh=True) for bot in bots)
            )

            logger.info("正在设置数据库变化监听...")
            self._subscription = await self.store.subscribe_bot_changes(self.manager.handle_bot_change)
            self.manager.start_heartbeat()

            self.is_running = True
            self.start_time = time.time()
            logger.info("中继服务启动完成")
            return {'success': True, 'message': f'中继服务已启动，在线机器人 {len(bots)} 个'}

    async def stop(self) -> Dict[str, Any]:
        """停止中继服务并释放资源"""
        async with self._lock:
            if not self.configured:
                return {'success': False, 'message': '中继服务未配置'}
            if self._subscription is not None:
                try:
                    await self._subscription.close()
                except Exception as e:
                    logger.error(f"关闭数据库变化监听失败: {e}")
                self._subscription = None

            await self.manager.disconnect_all()
            await self.gateway.close()
            await self.ai_client.close()
            await self.store.close()
            await close_shared_client()

            was_running = self.is_running
            self.is_running = False
            self.start_time = None
            logger.info("中继服务已停止")
            if not was_running:
                return {'success': False, 'message': '中继服务未在运行'}
            return {'success': True, 'message': '中继服务已停止'}

    # ═══════════════════════════════════════════════════════════════════════════
    #                               运维操作
    # ═══════════════════════════════════════════════════════════════════════════

    def clear_all_caches(self) -> None:
        """清空机器人信息、AI 模型、关键词、插件、上下文和请求缓存"""
        self._require_configured()
        self.repository.clear()
        self.context_cache.clear()
        self.request_cache.clear()
        logger.info("所有缓存已清理")

    def get_status(self) -> Dict[str, Any]:
        """获取中继服务状态"""
        if not self.configured:
            return {'running': False, 'configured': False, 'bots': []}
        bots = self.manager.snapshot()
        return {
            'running': self.is_running,
            'configured': True,
            'uptime': int(time.time() - self.start_time) if self.start_time else 0,
            'bots': bots,
            'open_connections': sum(1 for bot in bots if bot['open']),
            'ai_stats': self.ai_client.get_stats(),
            'context_entries': len(self.context_cache),
        }

    async def connect_bot(self, bot_id: str) -> Dict[str, Any]:
        """按数据库中的 auth_key 为机器人建立连接（重置重试计数）"""
        self._require_configured()
        try:
            bot = await self.store.get_bot_info(bot_id)
        except Exception as e:
            logger.error(f"获取机器人信息失败: {e}")
            return {'success': False, 'message': f'获取机器人信息失败: {str(e)}'}
        if bot is None:
            return {'success': False, 'message': '机器人不存在'}
        if not bot.auth_key:
            return {'success': False, 'message': '机器人缺少 auth_key'}

        self.repository.bot_info.delete(bot_id)
        await self.manager.connect(bot.auth_key, bot.id, fresh=True)
        conn = self.manager.registry.get(bot.id)
        state = conn.state.value if conn else 'gave_up'
        return {'success': True, 'message': '连接请求已处理', 'state': state}

    async def disconnect_bot(self, bot_id: str) -> Dict[str, Any]:
        """断开机器人连接并标记为离线"""
        self._require_configured()
        if bot_id not in self.manager.registry:
            return {'success': False, 'message': '机器人未连接'}
        await self.manager.disconnect(bot_id)
        await self.manager.update_status(bot_id, BotStatus.OFFLINE)
        return {'success': True, 'message': '已断开连接'}

    async def send_message(
        self,
        auth_key: str,
        to_user: str,
        content: str,
        msg_type: str = "text",
        should_split: bool = False,
        interval_ms: float = 1000,
    ) -> Dict[str, Any]:
        """手动发送消息（连接未就绪时进入待发送队列）"""
        self._require_configured()
        try:
            message = OutboundMessage(
                to_user=to_user,
                content=content,
                msg_type=MessageType(msg_type),
                should_split=should_split,
                interval_sec=max(0.0, float(interval_ms)) / 1000,
            )
        except ValueError:
            return {'success': False, 'message': f'不支持的消息类型: {msg_type}'}
        try:
            await self.manager.send_message(auth_key, message)
        except (GatewayError, GatewayTimeoutError) as e:
            return {'success': False, 'message': f'发送失败: {str(e)}'}
        return {'success': True, 'message': '发送成功'}

    async def call_gateway(self, action: str, auth_key: str, **kwargs: Any) -> Dict[str, Any]:
        """代理网关登录/资料接口"""
        self._require_configured()
        handlers = {
            'login_qrcode': self.gateway.get_login_qrcode,
            'check_login': self.gateway.check_login_status,
            'login_status': self.gateway.get_login_status,
            'profile': self.gateway.get_profile,
        }
        handler = handlers.get(action)
        if handler is None:
            return {'success': False, 'message': f'未知操作: {action}'}
        try:
            data = await handler(auth_key, **kwargs)
        except (GatewayError, GatewayTimeoutError) as e:
            logger.error(f"网关请求失败 [{action}]: {e}")
            return {'success': False, 'message': str(e)}
        return {'success': True, 'data': data}


def get_relay_service() -> RelayService:
    """获取 RelayService 实例"""
    return RelayService.get_instance()
