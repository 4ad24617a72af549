"""
连接管理器 - 为每个机器人维护一条到网关的 WebSocket 长连接。

每个机器人对应一个 BotConnection 记录，状态流转:

    IDLE -> CONNECTING -> OPEN -> RECONNECTING -> CONNECTING -> ... -> GAVE_UP

- 同一机器人同时最多一条打开的连接，新建连接前先关闭旧连接
- 连接断开（close/error/假死/心跳失败）后按退避阶梯重连，重试计数保存在记录中
- 达到重试上限后标记离线并移除记录，等待外部状态变更重新触发连接
- 连接未打开时的出站消息进入待发送队列，连接打开后按先进先出顺序发送
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, Iterator, List, Optional, Set
from urllib.parse import quote

import websockets
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from ..errors import FrameParseError
from ..handlers.converters import PING, PONG, parse_frame
from ..types import BotStatus, ConnectionState, ControlFrame, Frame, OutboundMessage, ReconnectPolicy
from ..utils.common import truncate_text

__all__ = [
    "BotConnection",
    "ConnectionRegistry",
    "ConnectionManager",
]

logger = logging.getLogger(__name__)

FrameHandler = Callable[[str, str, Frame], Awaitable[Any]]
SocketFactory = Callable[[str], Awaitable[Any]]

MAX_FRAME_BYTES = 16 * 1024 * 1024
MAX_PENDING_ECHOES = 8


async def open_gateway_socket(url: str) -> Any:
    """默认的连接工厂：心跳由连接管理器在应用层完成，关闭协议层 ping。"""
    return await websockets.connect(url, ping_interval=None, max_size=MAX_FRAME_BYTES)


def _socket_open(socket: Any) -> bool:
    return socket is not None and getattr(socket, "state", None) is State.OPEN


@dataclass
class BotConnection:
    """
    单个机器人的连接记录（仅存在于内存）。

    Attributes:
        bot_id (str): 机器人 ID
        auth_key (str): 网关鉴权 key
        state (ConnectionState): 当前状态
        socket: 当前 WebSocket 连接
        retries (int): 连续重连次数，连接成功后清零
        pending (deque): 连接未就绪时积压的出站消息
        last_message_at (float): 最近一次收到数据的时间（monotonic）
    """
    bot_id: str
    auth_key: str
    state: ConnectionState = ConnectionState.IDLE
    socket: Any = None
    retries: int = 0
    pending: Deque[OutboundMessage] = field(default_factory=deque)
    last_message_at: float = 0.0
    reader_task: Optional[asyncio.Task] = None
    liveness_task: Optional[asyncio.Task] = None
    reconnect_task: Optional[asyncio.Task] = None

    @property
    def is_open(self) -> bool:
        return self.state == ConnectionState.OPEN and _socket_open(self.socket)


class ConnectionRegistry:
    """按机器人 ID 保存连接记录，只由 ConnectionManager 修改。"""

    def __init__(self) -> None:
        self._connections: Dict[str, BotConnection] = {}

    def get(self, bot_id: str) -> Optional[BotConnection]:
        return self._connections.get(bot_id)

    def upsert(self, connection: BotConnection) -> BotConnection:
        self._connections[connection.bot_id] = connection
        return connection

    def remove(self, bot_id: str) -> Optional[BotConnection]:
        return self._connections.pop(bot_id, None)

    def find_by_auth_key(self, auth_key: str) -> Optional[BotConnection]:
        for connection in self._connections.values():
            if connection.auth_key == auth_key:
                return connection
        return None

    def items(self) -> List[BotConnection]:
        return list(self._connections.values())

    def __contains__(self, bot_id: object) -> bool:
        return bot_id in self._connections

    def __len__(self) -> int:
        return len(self._connections)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._connections))


class ConnectionManager:
    """
    网关连接管理器。

    Args:
        store: 持久化存储（更新机器人状态）
        sender: 出站发送器（OutboundSender）
        ws_base_url: 网关 WebSocket 基础地址
        frame_handler: 收到消息帧时的回调 (bot_id, auth_key, frame)
        socket_factory: 建立连接的协程函数，默认 websockets.connect
        sleep: 重连等待使用的 sleep 函数
    """

    def __init__(
        self,
        store: Any,
        sender: Any,
        ws_base_url: str,
        ws_path: str = "/GetSyncMsg",
        policy: Optional[ReconnectPolicy] = None,
        frame_handler: Optional[FrameHandler] = None,
        socket_factory: SocketFactory = open_gateway_socket,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        liveness_interval_sec: float = 10.0,
        zombie_timeout_sec: float = 60.0,
        heartbeat_interval_sec: float = 25.0,
        connect_timeout_sec: float = 15.0,
        replace_wait_sec: float = 1.0,
        registry: Optional[ConnectionRegistry] = None,
    ) -> None:
        self.store = store
        self.sender = sender
        self.ws_base_url = ws_base_url.rstrip("/")
        self.ws_path = ws_path
        self.policy = policy or ReconnectPolicy()
        self.frame_handler = frame_handler
        self._socket_factory = socket_factory
        self._sleep = sleep
        self._clock = clock
        self.liveness_interval_sec = liveness_interval_sec
        self.zombie_timeout_sec = zombie_timeout_sec
        self.heartbeat_interval_sec = heartbeat_interval_sec
        self.connect_timeout_sec = connect_timeout_sec
        self.replace_wait_sec = replace_wait_sec
        self.registry = registry or ConnectionRegistry()
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        # 本进程写入、尚未收到回传的状态；每条回传只抵消一次
        self._pending_echoes: Dict[str, List[str]] = {}

    def socket_url(self, auth_key: str) -> str:
        return f"{self.ws_base_url}{self.ws_path}?key={quote(auth_key, safe='')}"

    # ═══════════════════════════════════════════════════════════════════
    #                               连接生命周期
    # ═══════════════════════════════════════════════════════════════════

    async def connect(self, auth_key: str, bot_id: str, fresh: bool = False) -> None:
        """
        为机器人建立连接。

        Args:
            fresh: 外部触发（启动、状态变更）时为 True，重置重试计数
        """
        if not auth_key or not bot_id:
            return
        conn = self.registry.get(bot_id)
        if conn is not None and conn.state == ConnectionState.CONNECTING:
            logger.info("机器人 %s 正在建立连接，跳过重复连接请求", bot_id)
            return
        if conn is None:
            conn = self.registry.upsert(BotConnection(bot_id=bot_id, auth_key=auth_key))
        conn.auth_key = auth_key
        if fresh:
            conn.retries = 0
        if conn.retries >= self.policy.max_retries:
            await self._give_up(conn)
            return

        was_open = conn.is_open
        conn.state = ConnectionState.CONNECTING
        await self._teardown(conn)
        if was_open:
            logger.info("机器人 %s 已有活跃连接，断开旧连接", bot_id)
            await asyncio.sleep(self.replace_wait_sec)
            if self.registry.get(bot_id) is not conn:
                return

        logger.info("正在为机器人 %s 建立 WebSocket 连接...", bot_id)
        await self.update_status(bot_id, BotStatus.ONLINE)
        try:
            socket = await asyncio.wait_for(
                self._socket_factory(self.socket_url(auth_key)), timeout=self.connect_timeout_sec
            )
        except asyncio.TimeoutError:
            if self.registry.get(bot_id) is not conn:
                return
            logger.warning("机器人 %s 连接超时，重新尝试...", bot_id)
            conn.state = ConnectionState.RECONNECTING
            self.reconnect(bot_id, auth_key)
            return
        except Exception as exc:
            if self.registry.get(bot_id) is not conn:
                return
            logger.error("创建机器人 %s WebSocket 连接失败: %s", bot_id, exc)
            conn.state = ConnectionState.RECONNECTING
            await self.update_status(bot_id, BotStatus.ERROR)
            self.reconnect(bot_id, auth_key)
            return

        if self.registry.get(bot_id) is not conn or conn.state != ConnectionState.CONNECTING:
            # 建立连接期间已被断开
            await self._close_socket(bot_id, socket)
            return
        await self._on_open(conn, socket)

    async def _on_open(self, conn: BotConnection, socket: Any) -> None:
        conn.socket = socket
        conn.state = ConnectionState.OPEN
        conn.retries = 0
        conn.last_message_at = self._clock()
        logger.info("机器人 %s WebSocket 连接成功", conn.bot_id)
        try:
            await socket.send(PING)
        except Exception as exc:
            logger.error("向机器人 %s 发送初始 ping 失败: %s", conn.bot_id, exc)
        conn.reader_task = asyncio.create_task(self._read_loop(conn, socket))
        conn.liveness_task = asyncio.create_task(self._liveness_loop(conn, socket))
        await self._flush_pending(conn)

    async def _flush_pending(self, conn: BotConnection) -> None:
        if not conn.pending:
            return
        queued = list(conn.pending)
        conn.pending.clear()
        logger.info("处理机器人 %s 的 %s 条待发送消息", conn.bot_id, len(queued))
        for message in queued:
            try:
                await self.sender.deliver(conn.auth_key, message)
            except Exception as exc:
                logger.error("发送待处理消息失败: %s", exc)

    def reconnect(self, bot_id: str, auth_key: str) -> None:
        """按退避阶梯安排一次重连。"""
        conn = self.registry.get(bot_id)
        if conn is None:
            conn = self.registry.upsert(
                BotConnection(bot_id=bot_id, auth_key=auth_key, state=ConnectionState.RECONNECTING)
            )
        if conn.state == ConnectionState.CONNECTING:
            logger.info("机器人 %s 正在连接中，跳过重复重连请求", bot_id)
            return
        if conn.reconnect_task is not None and not conn.reconnect_task.done():
            logger.info("机器人 %s 已安排重连，跳过重复重连请求", bot_id)
            return
        if conn.retries >= self.policy.max_retries:
            logger.info("机器人 %s 达到最大重试次数，停止重连", bot_id)
            self._spawn(self._give_up(conn))
            return

        delay = self.policy.delay_for(conn.retries)
        conn.retries += 1
        conn.state = ConnectionState.RECONNECTING
        logger.info("机器人 %s 将在 %s 秒后重连... (第 %s 次重试)", bot_id, delay, conn.retries)
        conn.reconnect_task = asyncio.create_task(self._reconnect_after(conn, delay))

    async def _reconnect_after(self, conn: BotConnection, delay: float) -> None:
        await self._sleep(delay)
        conn.reconnect_task = None
        if self.registry.get(conn.bot_id) is not conn:
            return
        await self.connect(conn.auth_key, conn.bot_id)

    async def _give_up(self, conn: BotConnection) -> None:
        logger.error("机器人 %s 连接失败次数过多，停止重试", conn.bot_id)
        conn.state = ConnectionState.GAVE_UP
        await self._teardown(conn)
        if self.registry.get(conn.bot_id) is conn:
            self.registry.remove(conn.bot_id)
        if conn.pending:
            logger.warning("机器人 %s 放弃连接，丢弃 %s 条待发送消息", conn.bot_id, len(conn.pending))
            conn.pending.clear()
        self._pending_echoes.pop(conn.bot_id, None)
        await self.update_status(conn.bot_id, BotStatus.OFFLINE)

    async def disconnect(self, bot_id: str) -> None:
        logger.info("正在断开机器人 %s 的连接...", bot_id)
        await self.cleanup(bot_id)

    async def cleanup(self, bot_id: str) -> None:
        """取消定时任务、关闭连接并移除该机器人的全部记录。"""
        self._pending_echoes.pop(bot_id, None)
        conn = self.registry.remove(bot_id)
        if conn is None:
            return
        conn.state = ConnectionState.IDLE
        await self._teardown(conn)
        if conn.pending:
            logger.warning("机器人 %s 断开连接，丢弃 %s 条待发送消息", bot_id, len(conn.pending))
            conn.pending.clear()

    async def disconnect_all(self) -> None:
        self.stop_heartbeat()
        for bot_id in list(self.registry):
            await self.cleanup(bot_id)
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        logger.info("所有机器人连接已断开")

    # ═══════════════════════════════════════════════════════════════════
    #                               读取与存活检测
    # ═══════════════════════════════════════════════════════════════════

    async def _read_loop(self, conn: BotConnection, socket: Any) -> None:
        try:
            async for raw in socket:
                conn.last_message_at = self._clock()
                await self._handle_raw(conn, socket, raw)
        except ConnectionClosed as exc:
            await self._handle_lost(conn, socket, BotStatus.OFFLINE, str(exc))
            return
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("机器人 %s WebSocket 错误: %s", conn.bot_id, exc)
            await self._handle_lost(conn, socket, BotStatus.ERROR, str(exc))
            return
        await self._handle_lost(conn, socket, BotStatus.OFFLINE, "连接已关闭")

    async def _handle_raw(self, conn: BotConnection, socket: Any, raw: Any) -> None:
        try:
            frame = parse_frame(raw)
        except FrameParseError as exc:
            logger.warning("机器人 %s 收到无法解析的消息，已丢弃: %s", conn.bot_id, exc)
            return
        if isinstance(frame, ControlFrame):
            if frame.kind == PING:
                try:
                    await socket.send(PONG)
                except Exception as exc:
                    logger.error("机器人 %s 响应 ping 失败: %s", conn.bot_id, exc)
            return
        if self.frame_handler is None:
            return
        self._spawn(self._dispatch(conn.bot_id, conn.auth_key, frame))

    async def _dispatch(self, bot_id: str, auth_key: str, frame: Frame) -> None:
        try:
            await self.frame_handler(bot_id, auth_key, frame)
        except Exception as exc:
            logger.error("处理机器人 %s 的消息失败: %s", bot_id, exc, exc_info=True)

    async def _liveness_loop(self, conn: BotConnection, socket: Any) -> None:
        while conn.socket is socket:
            await asyncio.sleep(self.liveness_interval_sec)
            if conn.socket is not socket:
                return
            if not _socket_open(socket):
                logger.info("检测到机器人 %s 连接不正常，重连", conn.bot_id)
                await self._handle_lost(conn, socket, BotStatus.OFFLINE, "连接状态异常")
                return
            if self._clock() - conn.last_message_at > self.zombie_timeout_sec:
                logger.info("检测到机器人 %s 假死，主动断开重连", conn.bot_id)
                await self._handle_lost(conn, socket, BotStatus.OFFLINE, "长时间未收到数据")
                return

    async def _handle_lost(self, conn: BotConnection, socket: Any, status: BotStatus, reason: str) -> None:
        """连接丢失：更新状态、清理资源并安排重连。过期连接的事件直接忽略。"""
        if conn.socket is not socket or self.registry.get(conn.bot_id) is not conn:
            return
        logger.info("机器人 %s WebSocket 连接关闭: %s", conn.bot_id, truncate_text(reason, 200))
        conn.state = ConnectionState.RECONNECTING
        await self._teardown(conn)
        await self.update_status(conn.bot_id, status)
        self.reconnect(conn.bot_id, conn.auth_key)

    # ═══════════════════════════════════════════════════════════════════
    #                               心跳
    # ═══════════════════════════════════════════════════════════════════

    def start_heartbeat(self) -> None:
        self.stop_heartbeat()
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        logger.info("心跳机制已启动")

    def stop_heartbeat(self) -> None:
        if self._heartbeat_task is not None and not self._heartbeat_task.done():
            self._heartbeat_task.cancel()
        self._heartbeat_task = None

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval_sec)
            await self.heartbeat_once()

    async def heartbeat_once(self) -> None:
        """向所有打开的连接发送 ping；发送失败或状态异常的连接触发重连。"""
        for conn in self.registry.items():
            if conn.state != ConnectionState.OPEN:
                continue
            socket = conn.socket
            if not _socket_open(socket):
                logger.info("检测到机器人 %s 连接状态异常，尝试重连", conn.bot_id)
                await self._handle_lost(conn, socket, BotStatus.OFFLINE, "心跳检测到连接未打开")
                continue
            try:
                await socket.send(PING)
            except Exception as exc:
                logger.error("发送心跳到机器人 %s 失败: %s", conn.bot_id, exc)
                await self._handle_lost(conn, socket, BotStatus.ERROR, str(exc))

    # ═══════════════════════════════════════════════════════════════════
    #                               发送
    # ═══════════════════════════════════════════════════════════════════

    async def send_message(self, auth_key: str, message: OutboundMessage) -> None:
        """
        发送出站消息；对应机器人的连接未打开时加入待发送队列。

        Raises:
            GatewayError / GatewayTimeoutError: 网关调用失败
        """
        conn = self.registry.find_by_auth_key(auth_key)
        if conn is not None and not conn.is_open:
            logger.info("机器人 %s 连接未就绪，消息添加到待发送队列", conn.bot_id)
            conn.pending.append(message)
            return
        logger.info("发送 %s 消息到 %s", message.msg_type.value, message.to_user)
        try:
            await self.sender.deliver(auth_key, message)
        except Exception as exc:
            logger.error("发送消息失败: %s", exc)
            raise

    # ═══════════════════════════════════════════════════════════════════
    #                               数据库变更
    # ═══════════════════════════════════════════════════════════════════

    async def handle_bot_change(
        self, event_type: str, record: Dict[str, Any], old_record: Dict[str, Any]
    ) -> None:
        """
        响应 bots 表变更。

        状态变为 online 且没有连接时建立连接；状态离开 online 或记录被删除时断开。
        与本进程尚未收到回传的写入状态相同的变更视为回传，忽略并抵消该次写入。
        连接记录清理后不再等待回传，之后的状态变更都按外部变更处理。
        """
        record = record or {}
        old_record = old_record or {}
        bot_id = str(record.get("id") or old_record.get("id") or "")
        if not bot_id:
            return
        event_type = str(event_type).upper()

        if event_type == "DELETE":
            self._pending_echoes.pop(bot_id, None)
            if bot_id in self.registry:
                logger.info("机器人 %s 被删除，断开连接", bot_id)
                await self.disconnect(bot_id)
            return
        if event_type not in ("INSERT", "UPDATE"):
            return

        status = record.get("status")
        echoes = self._pending_echoes.get(bot_id)
        if status is not None and echoes and status in echoes:
            del echoes[: echoes.index(status) + 1]
            logger.debug("忽略机器人 %s 的状态回传: %s", bot_id, status)
            return

        if status == BotStatus.ONLINE.value and bot_id not in self.registry:
            logger.info("机器人 %s 上线，建立连接", bot_id)
            self._spawn(self.connect(str(record.get("auth_key") or ""), bot_id, fresh=True))
        elif status != BotStatus.ONLINE.value and bot_id in self.registry:
            logger.info("机器人 %s 下线，断开连接", bot_id)
            await self.disconnect(bot_id)

    # ═══════════════════════════════════════════════════════════════════
    #                               工具
    # ═══════════════════════════════════════════════════════════════════

    def snapshot(self) -> List[Dict[str, Any]]:
        now = self._clock()
        return [
            {
                "bot_id": conn.bot_id,
                "state": conn.state.value,
                "open": conn.is_open,
                "retries": conn.retries,
                "pending": len(conn.pending),
                "idle_sec": round(now - conn.last_message_at, 1) if conn.last_message_at else None,
            }
            for conn in self.registry.items()
        ]

    async def join_background(self) -> None:
        """等待当前所有后台任务（消息分发、状态变更触发的连接）完成。"""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def update_status(self, bot_id: str, status: BotStatus) -> None:
        echoes = self._pending_echoes.setdefault(bot_id, [])
        echoes.append(status.value)
        del echoes[:-MAX_PENDING_ECHOES]
        try:
            await self.store.update_bot_status(bot_id, status.value)
        except Exception as exc:
            logger.error("更新机器人 %s 状态失败: %s", bot_id, exc)

    async def _teardown(self, conn: BotConnection) -> None:
        current = asyncio.current_task()
        for name in ("reader_task", "liveness_task", "reconnect_task"):
            task = getattr(conn, name)
            if task is not None and task is not current and not task.done():
                task.cancel()
            if task is not current:
                setattr(conn, name, None)
        socket, conn.socket = conn.socket, None
        if socket is not None:
            await self._close_socket(conn.bot_id, socket)

    async def _close_socket(self, bot_id: str, socket: Any) -> None:
        try:
            await socket.close()
        except Exception as exc:
            logger.debug("关闭机器人 %s 的连接时出错: %s", bot_id, exc)
