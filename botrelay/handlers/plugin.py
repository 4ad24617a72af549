"""
插件策略 - 按触发词匹配用户插件并在沙箱中执行。

触发词以 ? 结尾时为前缀匹配，剩余内容作为参数；否则要求整条消息完全一致。
插件只能通过注入的能力对象与外界交互（发送消息、HTTP 请求、消息元数据等）。
"""

import asyncio
import inspect
import logging
import math
import random
import re
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..errors import RequestError
from ..sandbox import ScriptSyntaxError, SandboxError, run_script
from ..sandbox.builtins import decode_uri_component, encode_uri_component, parse_date
from ..sandbox.values import UNDEFINED, JSDate, to_number, to_python, to_string
from ..schemas import PluginDef
from ..types import MessageType
from ..utils.common import truncate_text
from ..utils.http import make_request
from ..utils.image import is_data_uri, to_data_uri
from ..utils.message import is_group_id, strip_emoji
from .base import DispatchContext, ReplyStrategy

__all__ = [
    "REFRESH_COMMAND",
    "match_plugin",
    "format_date",
    "PluginCapabilities",
    "PluginStrategy",
]

logger = logging.getLogger(__name__)
script_logger = logging.getLogger("botrelay.plugin_script")

REFRESH_COMMAND = "刷新配置"
REFRESH_OK = "刷新成功"
REFRESH_FAILED = "刷新失败"
IMAGE_DOWNLOAD_FAILED = "图片下载失败"

_HTTP_URL_PATTERN = re.compile(r"^https?://")
_DATE_TOKENS = ("YYYY", "MM", "DD", "HH", "mm", "ss")


def match_plugin(plugins: List[PluginDef], content: str) -> Optional[Tuple[PluginDef, str]]:
    """
    按列表顺序匹配插件，返回 (插件, 参数串)，第一个匹配的插件生效。
    """
    text = (content or "").strip()
    for plugin in plugins:
        if not plugin.trigger:
            continue
        if plugin.accepts_params:
            if text.startswith(plugin.trigger_text):
                return plugin, text[len(plugin.trigger_text):].strip()
        elif text == plugin.trigger:
            return plugin, ""
    return None


def format_date(date: Any = UNDEFINED, fmt: Any = UNDEFINED) -> str:
    """
    按 YYYY/MM/DD/HH/mm/ss 格式化日期，每个占位符只替换第一次出现。

    date 可以是 Date 对象、毫秒时间戳或日期字符串，缺省为当前时间。
    """
    if isinstance(date, JSDate):
        value = date
    elif date is UNDEFINED or date is None:
        value = JSDate.now()
    elif isinstance(date, str):
        value = JSDate(parse_date(date))
    else:
        value = JSDate(to_number(date))
    if not value.valid:
        raise ValueError("Invalid Date")

    dt = value.local()
    parts = {
        "YYYY": str(dt.year),
        "MM": f"{dt.month:02d}",
        "DD": f"{dt.day:02d}",
        "HH": f"{dt.hour:02d}",
        "mm": f"{dt.minute:02d}",
        "ss": f"{dt.second:02d}",
    }
    result = "YYYY-MM-DD HH:mm:ss" if fmt is UNDEFINED or fmt is None else to_string(fmt)
    for token in _DATE_TOKENS:
        result = result.replace(token, parts[token], 1)
    return result


class PluginCapabilities:
    """
    构造注入插件脚本的能力对象。

    每次插件执行创建一个实例，能力函数只能作用于当前消息的来源会话。
    """

    def __init__(
        self,
        ctx: DispatchContext,
        params: str,
        http_client: Any = None,
        request_cache: Any = None,
        request_timeout_sec: float = 30.0,
        image_timeout_sec: float = 15.0,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.ctx = ctx
        self.params = params
        self.http_client = http_client
        self.request_cache = request_cache
        self.request_timeout_sec = request_timeout_sec
        self.image_timeout_sec = image_timeout_sec
        self.rng = rng

    # ── 发送 ─────────────────────────────────────────────

    async def send_text(self, text: Any = UNDEFINED) -> None:
        await self.ctx.reply(to_string(text))

    async def send_image(self, image: Any = UNDEFINED) -> None:
        if isinstance(image, str) and _HTTP_URL_PATTERN.match(image):
            try:
                image = await make_request(
                    {
                        "url": image,
                        "dataType": "arraybuffer",
                        "timeout": int(self.image_timeout_sec * 1000),
                        "retries": 0,
                    },
                    client=self.http_client,
                )
            except RequestError as exc:
                logger.error("下载图片失败: %s", exc)
                await self.ctx.reply(IMAGE_DOWNLOAD_FAILED)
                return

        if isinstance(image, (bytes, bytearray)):
            await self.ctx.reply(to_data_uri(image), msg_type=MessageType.IMAGE)
            return
        if is_data_uri(image):
            await self.ctx.reply(image, msg_type=MessageType.IMAGE)
            return
        content = image if isinstance(image, str) else to_string(image)
        await self.ctx.reply(content, msg_type=MessageType.IMAGE)

    async def send_voice(self, url: Any = UNDEFINED) -> None:
        await self.ctx.reply(to_string(url), msg_type=MessageType.VOICE)

    async def request(self, options: Any = UNDEFINED) -> Any:
        return await make_request(
            to_python(options) or {},
            client=self.http_client,
            cache=self.request_cache,
            max_timeout_sec=self.request_timeout_sec,
        )

    # ── 消息元数据 ─────────────────────────────────────────

    def param(self, index: Any = UNDEFINED) -> str:
        """第 index 个参数（从 1 开始，按空白分隔），不存在时返回空字符串。"""
        if not self.params:
            return ""
        position = to_number(index)
        if math.isnan(position) or math.isinf(position):
            return ""
        parts = self.params.split()
        position = int(position)
        if 1 <= position <= len(parts):
            return parts[position - 1]
        return ""

    def get_user_id(self) -> str:
        return self.ctx.message.from_user

    def get_chat_id(self) -> str:
        return self.ctx.message.to_user

    def get_sender_name(self) -> str:
        return self.ctx.message.from_user.split("@")[0]

    def is_private_chat(self) -> bool:
        return not is_group_id(self.ctx.message.from_user)

    def is_group_chat(self) -> bool:
        return is_group_id(self.ctx.message.from_user)

    def get_message_type(self) -> int:
        return self.ctx.message.raw_type

    # ── 工具 ─────────────────────────────────────────────

    def filter_emoji(self, text: Any = UNDEFINED) -> str:
        return strip_emoji(to_string(text))

    def random_int(self, low: Any = UNDEFINED, high: Any = UNDEFINED) -> float:
        low_num, high_num = to_number(low), to_number(high)
        return math.floor(self.rng() * (high_num - low_num + 1)) + low_num

    async def sleep(self, ms: Any = UNDEFINED) -> None:
        delay = to_number(ms)
        if math.isnan(delay) or delay <= 0:
            delay = 0
        await asyncio.sleep(delay / 1000)

    def log(self, *args: Any) -> None:
        script_logger.info("[插件] %s", " ".join(to_string(arg) for arg in args))

    def log_error(self, *args: Any) -> None:
        script_logger.error("[插件] %s", " ".join(to_string(arg) for arg in args))

    def build(self) -> Dict[str, Any]:
        return {
            "sendText": self.send_text,
            "sendImage": self.send_image,
            "sendVoice": self.send_voice,
            "request": self.request,
            "param": self.param,
            "getUserId": self.get_user_id,
            "getChatId": self.get_chat_id,
            "getSenderName": self.get_sender_name,
            "isPrivateChat": self.is_private_chat,
            "isGroupChat": self.is_group_chat,
            "getMessageType": self.get_message_type,
            "filterEmoji": self.filter_emoji,
            "encodeURIComponent": encode_uri_component,
            "decodeURIComponent": decode_uri_component,
            "formatDate": format_date,
            "random": self.random_int,
            "sleep": self.sleep,
            "log": self.log,
            "logError": self.log_error,
        }


class PluginStrategy(ReplyStrategy):
    """
    插件策略（优先级最高）。

    插件匹配后无论执行成功与否都视为已处理，避免继续触发 AI 和关键词回复。
    """

    name = "plugin"

    def __init__(
        self,
        refresh: Optional[Callable[[], Any]] = None,
        http_client: Any = None,
        request_cache: Any = None,
        timeout_sec: float = 60.0,
        max_steps: int = 200000,
        request_timeout_sec: float = 30.0,
        image_timeout_sec: float = 15.0,
        refresh_command: str = REFRESH_COMMAND,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.refresh = refresh
        self.http_client = http_client
        self.request_cache = request_cache
        self.timeout_sec = timeout_sec
        self.max_steps = max_steps
        self.request_timeout_sec = request_timeout_sec
        self.image_timeout_sec = image_timeout_sec
        self.refresh_command = refresh_command
        self.rng = rng

    async def process(self, ctx: DispatchContext) -> bool:
        if ctx.content.strip() == self.refresh_command:
            await self._refresh(ctx)
            return True

        if not ctx.user_id:
            return False
        plugins = await ctx.repository.get_plugins(ctx.user_id)
        if not plugins:
            return False
        matched = match_plugin(plugins, ctx.content)
        if matched is None:
            return False

        plugin, params = matched
        logger.info("插件触发匹配: %s (%s)", plugin.trigger, plugin.name or plugin.id)
        await self._execute(ctx, plugin, params)
        return True

    async def _refresh(self, ctx: DispatchContext) -> None:
        if self.refresh is None:
            await ctx.reply(REFRESH_FAILED)
            return
        try:
            result = self.refresh()
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.error("刷新配置失败: %s", exc)
            await ctx.reply(REFRESH_FAILED)
            return
        logger.info("机器人 %s 通过指令刷新了配置缓存", ctx.bot_id)
        await ctx.reply(REFRESH_OK)

    async def _execute(self, ctx: DispatchContext, plugin: PluginDef, params: str) -> None:
        capabilities = PluginCapabilities(
            ctx,
            params,
            http_client=self.http_client,
            request_cache=self.request_cache,
            request_timeout_sec=self.request_timeout_sec,
            image_timeout_sec=self.image_timeout_sec,
            rng=self.rng,
        ).build()
        try:
            await run_script(
                plugin.code,
                capabilities,
                timeout_sec=self.timeout_sec,
                max_steps=self.max_steps,
                script_logger=script_logger,
            )
        except ScriptSyntaxError as exc:
            logger.error("插件执行失败 [%s]: %s", plugin.trigger, exc)
            await self._report(ctx, f"插件执行失败: {exc}")
        except SandboxError as exc:
            logger.error("插件执行错误 [%s]: %s", plugin.trigger, exc)
            await self._report(ctx, f"插件执行错误: {exc}")
        except Exception as exc:
            logger.exception("插件执行异常 [%s]", plugin.trigger)
            await self._report(ctx, f"插件执行错误: {exc}")

    async def _report(self, ctx: DispatchContext, text: str) -> None:
        try:
            await ctx.reply(truncate_text(text, 500))
        except Exception as exc:
            logger.error("发送插件错误提示失败: %s", exc)
