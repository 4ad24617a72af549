"""
Supabase Realtime 订阅 - 通过 Phoenix Channel 协议监听数据表变更。

只实现中继服务需要的部分：加入 postgres_changes 频道、心跳、断线重连，
把 INSERT/UPDATE/DELETE 事件以 (event_type, record, old_record) 形式回调。
"""

import asyncio
import itertools
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, Tuple
from urllib.parse import urlencode

import websockets

__all__ = [
    "ChangeCallback",
    "build_realtime_url",
    "parse_change_message",
    "RealtimeSubscription",
]

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[str, Dict[str, Any], Dict[str, Any]], Awaitable[None]]

HEARTBEAT_INTERVAL_SEC = 25.0
RECONNECT_DELAYS_SEC: Tuple[float, ...] = (1, 2, 5, 10, 30)
_CHANGE_EVENTS = frozenset({"INSERT", "UPDATE", "DELETE"})


def build_realtime_url(supabase_url: str, api_key: str) -> str:
    """https://xxx.supabase.co -> wss://xxx.supabase.co/realtime/v1/websocket?..."""
    base = supabase_url.rstrip("/")
    if base.startswith("https://"):
        base = "wss://" + base[len("https://"):]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://"):]
    query = urlencode({"apikey": api_key, "vsn": "1.0.0"})
    return f"{base}/realtime/v1/websocket?{query}"


def parse_change_message(message: Dict[str, Any]) -> Optional[Tuple[str, Dict[str, Any], Dict[str, Any]]]:
    """
    解析 Realtime 推送，返回 (事件类型, 新记录, 旧记录)，非变更消息返回 None。

    兼容新版 postgres_changes 事件和旧版直接以 INSERT/UPDATE/DELETE 为事件名的格式。
    """
    if not isinstance(message, dict):
        return None
    event = message.get("event")
    payload = message.get("payload") or {}
    if event == "postgres_changes":
        data = payload.get("data") or {}
        change_type = str(data.get("type") or data.get("eventType") or "").upper()
    elif event in _CHANGE_EVENTS:
        data = payload
        change_type = str(payload.get("type") or event).upper()
    else:
        return None
    if change_type not in _CHANGE_EVENTS:
        return None
    record = data.get("record") or data.get("new") or {}
    old_record = data.get("old_record") or data.get("old") or {}
    return change_type, dict(record), dict(old_record)


class RealtimeSubscription:
    """
    单个数据表的变更订阅。

    Example:
        sub = RealtimeSubscription(url, key, "bots", on_change)
        await sub.start()
        ...
        await sub.close()
    """

    def __init__(
        self,
        url: str,
        api_key: str,
        table: str,
        callback: ChangeCallback,
        schema: str = "public",
        heartbeat_sec: float = HEARTBEAT_INTERVAL_SEC,
        reconnect_delays: Sequence[float] = RECONNECT_DELAYS_SEC,
        connect: Callable[..., Any] = websockets.connect,
    ) -> None:
        self.url = url
        self.api_key = api_key
        self.table = table
        self.schema = schema
        self.callback = callback
        self.heartbeat_sec = heartbeat_sec
        self.reconnect_delays = tuple(reconnect_delays) or RECONNECT_DELAYS_SEC
        self._connect = connect
        self._refs = itertools.count(1)
        self._task: Optional[asyncio.Task] = None
        self._closed = False
        self.topic = f"realtime:{schema}:{table}"

    def _next_ref(self) -> str:
        return str(next(self._refs))

    def _join_message(self) -> Dict[str, Any]:
        ref = self._next_ref()
        return {
            "topic": self.topic,
            "event": "phx_join",
            "payload": {
                "config": {
                    "broadcast": {"self": False},
                    "presence": {"key": ""},
                    "postgres_changes": [
                        {"event": "*", "schema": self.schema, "table": self.table}
                    ],
                },
                "access_token": self.api_key,
            },
            "ref": ref,
            "join_ref": ref,
        }

    def _heartbeat_message(self) -> Dict[str, Any]:
        return {"topic": "phoenix", "event": "heartbeat", "payload": {}, "ref": self._next_ref()}

    async def start(self) -> None:
        if self._task is None or self._task.done():
            self._closed = False
            self._task = asyncio.create_task(self._run())

    async def close(self) -> None:
        self._closed = True
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    async def _heartbeat(self, ws: Any) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_sec)
            await ws.send(json.dumps(self._heartbeat_message()))

    async def _run(self) -> None:
        attempt = 0
        while not self._closed:
            heartbeat_task: Optional[asyncio.Task] = None
            try:
                async with self._connect(self.url) as ws:
                    await ws.send(json.dumps(self._join_message()))
                    logger.info("已订阅数据表变更：%s.%s", self.schema, self.table)
                    attempt = 0
                    heartbeat_task = asyncio.create_task(self._heartbeat(ws))
                    async for raw in ws:
                        await self._handle_raw(raw)
                logger.warning("数据表变更订阅连接已关闭：%s", self.table)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("数据表变更订阅异常：%s", exc)
            finally:
                if heartbeat_task is not None:
                    heartbeat_task.cancel()
            if self._closed:
                break
            delay = self.reconnect_delays[min(attempt, len(self.reconnect_delays) - 1)]
            attempt += 1
            await asyncio.sleep(delay)

    async def _handle_raw(self, raw: Any) -> None:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.debug("忽略无法解析的订阅消息：%r", raw)
            return
        if message.get("event") == "phx_reply":
            status = (message.get("payload") or {}).get("status")
            if status and status != "ok":
                logger.error("订阅请求被拒绝：%s", message.get("payload"))
            return
        change = parse_change_message(message)
        if change is None:
            return
        try:
            await self.callback(*change)
        except Exception as exc:
            logger.error("处理数据表变更失败：%s", exc, exc_info=True)
