"""
消息发送模块 - 调用网关 HTTP 接口发送文本/图片/语音消息。

网关以 ?key=<auth_key> 识别机器人；遇到 403 时换用备用 User-Agent
重试一次（网关已知问题），其他非 2xx 直接抛出 GatewayError。
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from ..errors import GatewayError, GatewayTimeoutError
from ..types import MessageType, OutboundMessage
from ..utils.common import truncate_text
from ..utils.message import split_sentences

__all__ = [
    "SEND_TEXT_ENDPOINT",
    "SEND_IMAGE_ENDPOINT",
    "SEND_VOICE_ENDPOINT",
    "DEFAULT_USER_AGENT",
    "FALLBACK_USER_AGENT",
    "build_text_body",
    "build_image_body",
    "build_voice_body",
    "GatewayClient",
    "OutboundSender",
]

logger = logging.getLogger(__name__)

SEND_TEXT_ENDPOINT = "/message/SendTextMessage"
SEND_IMAGE_ENDPOINT = "/message/SendImageNewMessage"
SEND_VOICE_ENDPOINT = "/message/SendVoice"
LOGIN_QRCODE_ENDPOINT = "/login/GetLoginQrCodeNewX"
CHECK_LOGIN_ENDPOINT = "/login/CheckLoginStatus"
LOGIN_STATUS_ENDPOINT = "/login/GetLoginStatus"
PROFILE_ENDPOINT = "/user/GetProfile"

DEFAULT_USER_AGENT = "PostmanRuntime/7.36.0"
FALLBACK_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
    "AppleWebKit/537.36 (KHTML, like Gecko)"
)


def build_text_body(to_user: str, text: str) -> Dict[str, Any]:
    return {
        "MsgItem": [
            {
                "AtWxIDList": [],
                "ImageContent": "",
                "MsgType": 0,
                "TextContent": text,
                "ToUserName": to_user,
            }
        ]
    }


def build_image_body(to_user: str, image_content: str) -> Dict[str, Any]:
    return {
        "MsgItem": [
            {
                "AtWxIDList": [],
                "ImageContent": image_content,
                "MsgType": 0,
                "TextContent": "",
                "ToUserName": to_user,
            }
        ]
    }


def build_voice_body(to_user: str, voice_data: str) -> Dict[str, Any]:
    return {
        "ToUserName": to_user,
        "VoiceData": voice_data,
        "VoiceFormat": 0,
        "VoiceSecond": 0,
    }


class GatewayClient:
    """
    网关 HTTP 接口客户端。

    Attributes:
        api_base_url (str): 网关接口基础地址
        timeout_sec (float): 请求超时（秒）
    """

    def __init__(
        self,
        api_base_url: str,
        timeout_sec: float = 30.0,
        user_agent: str = DEFAULT_USER_AGENT,
        fallback_user_agent: str = FALLBACK_USER_AGENT,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.api_base_url = api_base_url.rstrip("/")
        self.timeout_sec = timeout_sec
        self.user_agent = user_agent
        self.fallback_user_agent = fallback_user_agent
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_sec)

    def _headers(self, user_agent: str) -> Dict[str, str]:
        return {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "User-Agent": user_agent,
            "Connection": "keep-alive",
        }

    async def _send_once(
        self, method: str, url: str, auth_key: str, data: Any, user_agent: str
    ) -> httpx.Response:
        try:
            return await self._client.request(
                method,
                url,
                params={"key": auth_key},
                json=data if method != "GET" else None,
                headers=self._headers(user_agent),
                timeout=self.timeout_sec,
            )
        except httpx.TimeoutException as exc:
            raise GatewayTimeoutError() from exc
        except httpx.HTTPError as exc:
            raise GatewayError(0, str(exc), message=f"API请求失败: {exc}") from exc

    async def send_request(
        self, endpoint: str, auth_key: str, data: Any = None, method: str = "POST"
    ) -> Any:
        """
        向网关发送请求并返回解析后的 JSON（非 JSON 时返回文本）。

        Raises:
            GatewayError: 非 2xx 响应（403 重试一次后仍失败也抛出）
            GatewayTimeoutError: 请求超时
        """
        url = f"{self.api_base_url}{endpoint}"
        resp = await self._send_once(method, url, auth_key, data, self.user_agent)
        if resp.status_code == 403:
            logger.warning("网关返回 403，使用备用 User-Agent 重试：%s", endpoint)
            resp = await self._send_once(method, url, auth_key, data, self.fallback_user_agent)
        if not 200 <= resp.status_code < 300:
            raise GatewayError(
                resp.status_code,
                resp.reason_phrase or truncate_text(resp.text, 100),
            )
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError:
            return resp.text

    async def send_text(self, auth_key: str, to_user: str, text: str) -> Any:
        return await self.send_request(SEND_TEXT_ENDPOINT, auth_key, build_text_body(to_user, text))

    async def send_image(self, auth_key: str, to_user: str, image_content: str) -> Any:
        return await self.send_request(
            SEND_IMAGE_ENDPOINT, auth_key, build_image_body(to_user, image_content)
        )

    async def send_voice(self, auth_key: str, to_user: str, voice_data: str) -> Any:
        return await self.send_request(
            SEND_VOICE_ENDPOINT, auth_key, build_voice_body(to_user, voice_data)
        )

    # ───────────────────────────── 登录 / 资料 ─────────────────────────────

    async def get_login_qrcode(self, auth_key: str, proxy: str = "") -> Any:
        return await self.send_request(
            LOGIN_QRCODE_ENDPOINT, auth_key, {"Check": False, "Proxy": proxy}
        )

    async def check_login_status(self, auth_key: str) -> Any:
        return await self.send_request(CHECK_LOGIN_ENDPOINT, auth_key, method="GET")

    async def get_login_status(self, auth_key: str) -> Any:
        return await self.send_request(LOGIN_STATUS_ENDPOINT, auth_key, method="GET")

    async def get_profile(self, auth_key: str) -> Any:
        return await self.send_request(PROFILE_ENDPOINT, auth_key, method="GET")

    async def close(self) -> None:
        if self._owns_client and not self._client.is_closed:
            await self._client.aclose()


class OutboundSender:
    """
    按消息类型把 OutboundMessage 转换为网关调用。

    文本消息 should_split 时按句末标点分段发送，段间等待 interval_sec。
    """

    def __init__(
        self,
        gateway: GatewayClient,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.gateway = gateway
        self._sleep = sleep

    async def deliver(self, auth_key: str, message: OutboundMessage) -> None:
        msg_type = MessageType(message.msg_type)
        if msg_type == MessageType.IMAGE:
            await self.gateway.send_image(auth_key, message.to_user, message.content)
            return
        if msg_type == MessageType.VOICE:
            await self.gateway.send_voice(auth_key, message.to_user, message.content)
            return

        if not message.should_split:
            await self.gateway.send_text(auth_key, message.to_user, message.content)
            return
        segments = split_sentences(message.content) or [message.content]
        for idx, segment in enumerate(segments):
            if idx > 0 and message.interval_sec > 0:
                await self._sleep(message.interval_sec)
            await self.gateway.send_text(auth_key, message.to_user, segment)
