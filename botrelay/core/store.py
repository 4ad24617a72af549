"""
持久化存储适配层 - 机器人、配置和消息历史的读写接口。

BaseStore 定义中继核心依赖的最小接口；SupabaseStore 通过 PostgREST
接口读写 Supabase，数据表变更通过 Realtime 订阅推送。
"""

import abc
import logging
from typing import Any, Dict, List, Optional

import httpx

from ..errors import StoreError, StoreUnavailableError
from ..schemas import AIModelProfile, BotInfo, KeywordRule, MessageRecord, PluginDef
from ..utils.common import iso_from_ms, truncate_text
from .realtime import ChangeCallback, RealtimeSubscription, build_realtime_url

__all__ = [
    "HISTORY_SOURCES",
    "BaseStore",
    "SupabaseStore",
]

logger = logging.getLogger(__name__)

# 用于重建上下文的历史消息来源
HISTORY_SOURCES = ("user_message", "ai_response")


class BaseStore(abc.ABC):
    """中继核心使用的持久化存储接口。"""

    @abc.abstractmethod
    async def ping(self) -> None:
        """检查存储是否可用，不可用时抛出 StoreUnavailableError。"""

    @abc.abstractmethod
    async def get_bots_online(self) -> List[BotInfo]:
        ...

    @abc.abstractmethod
    async def get_bot_info(self, bot_id: str) -> Optional[BotInfo]:
        ...

    @abc.abstractmethod
    async def get_ai_models(self, user_id: str) -> List[AIModelProfile]:
        """返回已启用的 AI 模型配置。"""

    @abc.abstractmethod
    async def get_keyword_replies(self, user_id: str) -> List[KeywordRule]:
        """返回已启用的关键词规则。"""

    @abc.abstractmethod
    async def get_plugins(self, user_id: str) -> List[PluginDef]:
        """返回已启用的插件。"""

    @abc.abstractmethod
    async def record_message(self, record: MessageRecord) -> None:
        ...

    @abc.abstractmethod
    async def update_bot_status(self, bot_id: str, status: str) -> None:
        ...

    @abc.abstractmethod
    async def get_history(self, bot_id: str, peer_id: str, limit: int) -> List[MessageRecord]:
        """返回与 peer_id 相关的 AI 对话历史（新到旧）。"""

    @abc.abstractmethod
    async def subscribe_bot_changes(self, callback: ChangeCallback) -> Any:
        """订阅 bots 表变更，返回带 close() 协程方法的订阅对象。"""

    async def close(self) -> None:
        return None


class SupabaseStore(BaseStore):
    """
    基于 Supabase PostgREST 的存储实现。

    Attributes:
        url (str): Supabase 项目地址
        rest_url (str): PostgREST 接口地址
    """

    def __init__(
        self,
        url: str,
        service_key: str,
        timeout_sec: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
        realtime_enabled: bool = True,
    ) -> None:
        self.url = url.rstrip("/")
        self.rest_url = f"{self.url}/rest/v1"
        self.service_key = service_key
        self.timeout_sec = timeout_sec
        self.realtime_enabled = realtime_enabled
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_sec)

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {
            "apikey": self.service_key,
            "Authorization": f"Bearer {self.service_key}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        if extra:
            headers.update(extra)
        return headers

    async def _request(
        self,
        method: str,
        table: str,
        params: Optional[Dict[str, str]] = None,
        json_body: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        url = f"{self.rest_url}/{table}"
        try:
            resp = await self._client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=self._headers(headers),
                timeout=self.timeout_sec,
            )
        except httpx.HTTPError as exc:
            raise StoreError(f"{method} {table} 请求失败: {exc}") from exc
        if resp.status_code >= 400:
            raise StoreError(
                f"{method} {table} 失败: HTTP {resp.status_code} {truncate_text(resp.text, 200)}"
            )
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            raise StoreError(f"{method} {table} 返回内容不是 JSON") from exc

    async def _select(self, table: str, params: Dict[str, str]) -> List[Dict[str, Any]]:
        query = {"select": "*"}
        query.update(params)
        data = await self._request("GET", table, params=query)
        return data if isinstance(data, list) else []

    async def ping(self) -> None:
        try:
            await self._request("GET", "bots", params={"select": "id", "limit": "1"})
        except StoreError as exc:
            raise StoreUnavailableError(f"无法连接 Supabase: {exc}") from exc

    async def get_bots_online(self) -> List[BotInfo]:
        rows = await self._select("bots", {"status": "eq.online"})
        return [BotInfo.model_validate(row) for row in rows]

    async def get_bot_info(self, bot_id: str) -> Optional[BotInfo]:
        rows = await self._select("bots", {"id": f"eq.{bot_id}", "limit": "1"})
        if not rows:
            return None
        return BotInfo.model_validate(rows[0])

    async def get_ai_models(self, user_id: str) -> List[AIModelProfile]:
        rows = await self._select(
            "ai_models", {"user_id": f"eq.{user_id}", "enabled": "eq.true"}
        )
        return [AIModelProfile.model_validate(row) for row in rows]

    async def get_keyword_replies(self, user_id: str) -> List[KeywordRule]:
        rows = await self._select(
            "keyword_replies", {"user_id": f"eq.{user_id}", "is_active": "eq.true"}
        )
        return [KeywordRule.model_validate(row) for row in rows]

    async def get_plugins(self, user_id: str) -> List[PluginDef]:
        rows = await self._select(
            "plugins", {"user_id": f"eq.{user_id}", "is_active": "eq.true"}
        )
        return [PluginDef.model_validate(row) for row in rows]

    async def record_message(self, record: MessageRecord) -> None:
        await self._request(
            "POST",
            "bot_messages",
            json_body=[record.model_dump(mode="json")],
            headers={"Prefer": "return=minimal"},
        )

    async def update_bot_status(self, bot_id: str, status: str) -> None:
        await self._request(
            "PATCH",
            "bots",
            params={"id": f"eq.{bot_id}"},
            json_body={"status": status, "last_active_at": iso_from_ms()},
            headers={"Prefer": "return=minimal"},
        )

    async def get_history(self, bot_id: str, peer_id: str, limit: int) -> List[MessageRecord]:
        if limit <= 0:
            return []
        sources = ",".join(HISTORY_SOURCES)
        rows = await self._select(
            "bot_messages",
            {
                "bot_id": f"eq.{bot_id}",
                "or": f'(from_user.eq."{peer_id}",to_user.eq."{peer_id}")',
                "source": f"in.({sources})",
                "order": "created_at.desc",
                "limit": str(limit),
            },
        )
        return [MessageRecord.model_validate(row) for row in rows]

    async def subscribe_bot_changes(self, callback: ChangeCallback) -> Optional[RealtimeSubscription]:
        if not self.realtime_enabled:
            logger.info("Realtime 订阅已关闭，不监听 bots 表变更")
            return None
        subscription = RealtimeSubscription(
            build_realtime_url(self.url, self.service_key), self.service_key, "bots", callback
        )
        await subscription.start()
        return subscription

    async def close(self) -> None:
        if self._owns_client and not self._client.is_closed:
            await self._client.aclose()
