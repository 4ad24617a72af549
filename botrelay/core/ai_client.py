"""
OpenAI 兼容 /chat/completions 的 AI 客户端封装。

与旧版本不同，这里的客户端不保存会话历史：上下文由调用方
（AI 模型策略 + 上下文缓存）组装后整体传入，每次调用使用
对应 AI 模型配置中的 base_url / api_key / model。

失败时抛出 AIServiceError 的子类，便于调用方只记录日志而不把
错误透传给聊天用户：
    401 AIAuthError / 403 AIForbiddenError / 404 AIEndpointNotFoundError
    429 AIRateLimitError / 500 AIServerError / 超时 AITimeoutError
    连接失败 AIConnectionError / 响应缺少内容 AIResponseFormatError

依赖:
    - httpx: 异步 HTTP 客户端（不依赖官方 OpenAI SDK）
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

import httpx

from ..errors import (
    AIConnectionError,
    AIResponseFormatError,
    AIServiceError,
    AITimeoutError,
    ai_error_for_status,
)
from ..schemas import AIModelProfile
from ..utils.common import truncate_text

__all__ = [
    "DEFAULT_TIMEOUT_SEC",
    "DEFAULT_TEMPERATURE",
    "DEFAULT_MAX_TOKENS",
    "AIClient",
]

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
#                               常量定义
# ═══════════════════════════════════════════════════════════════════════════════

DEFAULT_TIMEOUT_SEC = 60.0  # AI 请求超时（秒）
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 1000


# ═══════════════════════════════════════════════════════════════════════════════
#                               AI 客户端类
# ═══════════════════════════════════════════════════════════════════════════════

class AIClient:
    """
    OpenAI 兼容聊天接口的轻量封装。

    Attributes:
        timeout_sec (float): 请求超时时间（秒）
        temperature (float): 生成温度
        max_tokens (int): 最大输出 token 数
    """

    def __init__(
        self,
        timeout_sec: float = DEFAULT_TIMEOUT_SEC,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.timeout_sec = timeout_sec
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._owns_client = client is None
        self._client = client
        self._stats = {
            "total_requests": 0,
            "successful_requests": 0,
            "failed_requests": 0,
        }

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout_sec,
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
            )
            self._owns_client = True
        return self._client

    @staticmethod
    def _build_headers(api_key: str) -> dict:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    @staticmethod
    def completions_url(base_url: str) -> str:
        return f"{base_url.rstrip('/')}/chat/completions"

    async def chat(self, profile: AIModelProfile, messages: List[Dict[str, str]]) -> str:
        """
        调用对话补全接口并返回助手回复文本。

        Raises:
            AIServiceError: 任何失败（不在这一层重试）
        """
        payload = {
            "model": profile.model,
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        url = self.completions_url(profile.base_url)
        self._stats["total_requests"] += 1
        try:
            reply = await self._post(url, profile.api_key, payload)
        except AIServiceError:
            self._stats["failed_requests"] += 1
            raise
        self._stats["successful_requests"] += 1
        return reply

    async def _post(self, url: str, api_key: str, payload: dict) -> str:
        client = self._get_client()
        try:
            resp = await client.post(
                url,
                headers=self._build_headers(api_key),
                json=payload,
                timeout=self.timeout_sec,
            )
        except httpx.TimeoutException as exc:
            raise AITimeoutError() from exc
        except httpx.ConnectError as exc:
            raise AIConnectionError() from exc
        except httpx.HTTPError as exc:
            raise AIServiceError(f"AI服务错误: {exc}") from exc

        if resp.status_code >= 400:
            logger.warning(
                "AI 接口返回错误（HTTP %s）：%s", resp.status_code, truncate_text(resp.text, 200)
            )
            raise ai_error_for_status(resp.status_code)

        try:
            data = resp.json()
        except ValueError as exc:
            raise AIResponseFormatError() from exc
        if not isinstance(data, dict):
            raise AIResponseFormatError()

        choices = data.get("choices") or []
        message = choices[0].get("message") if choices and isinstance(choices[0], dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str) or not content.strip():
            raise AIResponseFormatError()
        return content.strip()

    def get_stats(self) -> Dict[str, int]:
        return dict(self._stats)

    async def close(self) -> None:
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()
