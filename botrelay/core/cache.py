"""
配置缓存模块 - 带过期时间的内存缓存和配置读穿缓存。

同一键的并发未命中可能导致重复读库，读取是幂等的，不加锁。
"""

import logging
import time
from typing import Any, Callable, Dict, Hashable, List, Optional, Tuple

from ..schemas import AIModelProfile, BotInfo, KeywordRule, PluginDef

__all__ = [
    "TTLCache",
    "ConfigRepository",
]

logger = logging.getLogger(__name__)

_MISSING = object()


class TTLCache:
    """
    简单的 TTL 缓存。

    过期项在读取时删除；ttl_sec <= 0 表示永不过期。
    """

    def __init__(self, ttl_sec: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_sec = float(ttl_sec)
        self._clock = clock
        self._data: Dict[Hashable, Tuple[float, Any]] = {}

    def get(self, key: Hashable, default: Any = None) -> Any:
        item = self._data.get(key)
        if item is None:
            return default
        stored_at, value = item
        if self.ttl_sec > 0 and self._clock() - stored_at >= self.ttl_sec:
            del self._data[key]
            return default
        return value

    def set(self, key: Hashable, value: Any) -> None:
        self._data[key] = (self._clock(), value)

    def delete(self, key: Hashable) -> None:
        self._data.pop(key, None)

    def clear(self) -> None:
        self._data.clear()

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def __len__(self) -> int:
        return len(self._data)


class ConfigRepository:
    """
    机器人配置读穿缓存：机器人信息、AI 模型、关键词规则、插件列表。

    未命中或过期时从持久化存储读取后写回缓存。
    """

    def __init__(
        self,
        store: Any,
        ttl_sec: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.bot_info = TTLCache(ttl_sec, clock)
        self.ai_models = TTLCache(ttl_sec, clock)
        self.keyword_replies = TTLCache(ttl_sec, clock)
        self.plugins = TTLCache(ttl_sec, clock)

    async def get_bot_info(self, bot_id: str) -> Optional[BotInfo]:
        cached = self.bot_info.get(bot_id)
        if cached is not None:
            return cached
        info = await self.store.get_bot_info(bot_id)
        if info is not None:
            self.bot_info.set(bot_id, info)
        return info

    async def get_ai_models(self, user_id: str) -> List[AIModelProfile]:
        cached = self.ai_models.get(user_id)
        if cached is not None:
            return cached
        models = await self.store.get_ai_models(user_id)
        self.ai_models.set(user_id, models)
        return models

    async def get_keyword_replies(self, user_id: str) -> List[KeywordRule]:
        cached = self.keyword_replies.get(user_id)
        if cached is not None:
            return cached
        rules = await self.store.get_keyword_replies(user_id)
        self.keyword_replies.set(user_id, rules)
        return rules

    async def get_plugins(self, user_id: str) -> List[PluginDef]:
        cached = self.plugins.get(user_id)
        if cached is not None:
            return cached
        plugins = await self.store.get_plugins(user_id)
        self.plugins.set(user_id, plugins)
        return plugins

    def clear(self) -> None:
        self.bot_info.clear()
        self.ai_models.clear()
        self.keyword_replies.clear()
        self.plugins.clear()
        logger.info("配置缓存已清空")
