"""
通用 HTTP 请求工具 - 带超时、指数退避重试和 JSON/文本解码。

供插件 request 能力及其他需要调用外部接口的模块使用。
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Mapping, Optional

import httpx

from ..errors import RequestError, RequestTimeoutError
from .common import as_float, as_int, truncate_text

__all__ = [
    "DEFAULT_BROWSER_HEADERS",
    "DEFAULT_TIMEOUT_MS",
    "DEFAULT_RETRIES",
    "get_shared_client",
    "close_shared_client",
    "backoff_delay_sec",
    "make_request",
]

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 30000
DEFAULT_RETRIES = 2
MAX_BACKOFF_MS = 10000

DEFAULT_BROWSER_HEADERS = {
    "Accept": "application/json, text/plain, */*",
    "Accept-Language": "zh-CN,zh;q=0.9,en;q=0.8",
    "Cache-Control": "no-cache",
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
}

# 共享的 HTTP 客户端实例（连接池复用）
_shared_client: Optional[httpx.AsyncClient] = None


def get_shared_client() -> httpx.AsyncClient:
    """获取或创建共享的 HTTP 客户端实例。"""
    global _shared_client
    if _shared_client is None or _shared_client.is_closed:
        _shared_client = httpx.AsyncClient(
            timeout=DEFAULT_TIMEOUT_MS / 1000,
            follow_redirects=True,
            limits=httpx.Limits(max_connections=50, max_keepalive_connections=20),
        )
    return _shared_client


async def close_shared_client() -> None:
    global _shared_client
    if _shared_client is not None and not _shared_client.is_closed:
        await _shared_client.aclose()
    _shared_client = None


def backoff_delay_sec(attempt: int) -> float:
    """第 attempt 次失败后的等待时间：min(1000 * 2^attempt, 10000) 毫秒。"""
    return min(1000 * (2 ** max(0, attempt)), MAX_BACKOFF_MS) / 1000


def _decode_response(resp: httpx.Response, data_type: str) -> Any:
    if data_type == "arraybuffer":
        return resp.content
    if data_type == "json":
        try:
            return resp.json()
        except ValueError as exc:
            raise RequestError(
                f"响应不是有效的JSON: {truncate_text(resp.text, 100)}",
                status=resp.status_code,
            ) from exc
    return resp.text


async def make_request(
    options: Mapping[str, Any],
    client: Optional[httpx.AsyncClient] = None,
    cache: Optional[Any] = None,
    max_timeout_sec: Optional[float] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Any:
    """
    发起 HTTP 请求。

    Args:
        options: 请求参数
            - url (str): 必填
            - method (str): 默认 GET
            - headers (dict): 覆盖默认浏览器请求头
            - data: 字符串/bytes 原样发送，其他类型按 JSON 编码
            - timeout (int): 超时时间（毫秒），默认 30000
            - dataType (str): text / json / arraybuffer，默认 text
            - retries (int): 失败重试次数，默认 2
        client: 可选的 httpx 客户端，默认使用共享客户端
        cache: 可选缓存（get/set），GET 请求结果会被缓存
        max_timeout_sec: 超时时间上限（秒）

    Raises:
        RequestError: 参数错误、非 2xx 响应或解码失败
        RequestTimeoutError: 请求超时
    """
    if not isinstance(options, Mapping):
        raise RequestError("请求参数必须是对象")
    url = str(options.get("url") or "").strip()
    if not url:
        raise RequestError("请求URL不能为空")

    method = str(options.get("method") or "GET").upper()
    data_type = str(options.get("dataType") or "text").lower()
    retries = as_int(options.get("retries", DEFAULT_RETRIES), DEFAULT_RETRIES, min_value=0)
    timeout_sec = as_float(
        options.get("timeout", DEFAULT_TIMEOUT_MS), DEFAULT_TIMEOUT_MS, min_value=1
    ) / 1000
    if max_timeout_sec:
        timeout_sec = min(timeout_sec, max_timeout_sec)

    headers = httpx.Headers(DEFAULT_BROWSER_HEADERS)
    extra_headers = options.get("headers") or {}
    if isinstance(extra_headers, Mapping):
        for key, value in extra_headers.items():
            headers[str(key)] = str(value)

    body: Optional[bytes] = None
    data = options.get("data")
    if data is not None and method not in ("GET", "HEAD"):
        if isinstance(data, bytes):
            body = data
        elif isinstance(data, str):
            body = data.encode("utf-8")
        else:
            body = json.dumps(data, ensure_ascii=False).encode("utf-8")
            if "content-type" not in headers:
                headers["Content-Type"] = "application/json"

    cache_key = None
    if cache is not None and method == "GET":
        cache_key = f"{method}:{url}:{data_type}"
        cached = cache.get(cache_key)
        if cached is not None:
            return cached

    http = client or get_shared_client()
    last_error: Optional[RequestError] = None
    for attempt in range(retries + 1):
        try:
            resp = await http.request(
                method, url, headers=headers, content=body, timeout=timeout_sec
            )
            if not 200 <= resp.status_code < 300:
                raise RequestError(
                    f"HTTP error! status: {resp.status_code}", status=resp.status_code
                )
            result = _decode_response(resp, data_type)
            if cache_key is not None:
                cache.set(cache_key, result)
            return result
        except httpx.TimeoutException:
            last_error = RequestTimeoutError(f"请求超时: {url}")
        except RequestError as exc:
            last_error = exc
        except httpx.HTTPError as exc:
            last_error = RequestError(f"请求失败: {exc}")

        if attempt < retries:
            delay = backoff_delay_sec(attempt)
            logger.warning(
                "请求失败（第 %s 次）：%s，%s 秒后重试", attempt + 1, last_error, delay
            )
            await sleep(delay)

    raise last_error or RequestError("请求失败")
