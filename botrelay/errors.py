"""
异常定义模块 - 中继服务内部使用的异常类型。
"""

from typing import Optional

__all__ = [
    "RelayError",
    "ConfigError",
    "StoreError",
    "StoreUnavailableError",
    "GatewayError",
    "GatewayTimeoutError",
    "RequestError",
    "RequestTimeoutError",
    "AIServiceError",
    "AIAuthError",
    "AIForbiddenError",
    "AIEndpointNotFoundError",
    "AIRateLimitError",
    "AIServerError",
    "AITimeoutError",
    "AIConnectionError",
    "AIResponseFormatError",
    "ai_error_for_status",
    "FrameParseError",
    "PluginError",
]


class RelayError(Exception):
    """所有中继服务异常的基类。"""


class ConfigError(RelayError):
    """配置缺失或非法。"""


# ═══════════════════════════════════════════════════════════════════════════════
#                               存储
# ═══════════════════════════════════════════════════════════════════════════════

class StoreError(RelayError):
    """持久化存储读写失败。"""


class StoreUnavailableError(StoreError):
    """启动时无法连接持久化存储（进程级致命错误）。"""


# ═══════════════════════════════════════════════════════════════════════════════
#                               网关 / HTTP
# ═══════════════════════════════════════════════════════════════════════════════

class GatewayError(RelayError):
    """网关接口返回非 2xx。"""

    def __init__(self, status: int, text: str = "", message: Optional[str] = None) -> None:
        self.status = status
        self.text = text
        super().__init__(message or f"API请求失败: {status} {text}".strip())


class GatewayTimeoutError(RelayError):
    """网关请求超时。"""

    def __init__(self, message: str = "请求超时") -> None:
        super().__init__(message)


class RequestError(RelayError):
    """通用 HTTP 请求失败（插件 request 能力使用）。"""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        self.status = status
        super().__init__(message)


class RequestTimeoutError(RequestError):
    """通用 HTTP 请求超时。"""


# ═══════════════════════════════════════════════════════════════════════════════
#                               AI 接口
# ═══════════════════════════════════════════════════════════════════════════════

class AIServiceError(RelayError):
    """调用对话补全接口失败。"""

    default_message = "AI服务错误"

    def __init__(self, message: Optional[str] = None, status: Optional[int] = None) -> None:
        self.status = status
        super().__init__(message or self.default_message)


class AIAuthError(AIServiceError):
    default_message = "API密钥无效，请检查配置"


class AIForbiddenError(AIServiceError):
    default_message = "API权限不足，请检查配置"


class AIEndpointNotFoundError(AIServiceError):
    default_message = "API端点不存在，请检查base_url配置"


class AIRateLimitError(AIServiceError):
    default_message = "API调用次数超限"


class AIServerError(AIServiceError):
    default_message = "AI服务器内部错误"


class AITimeoutError(AIServiceError):
    default_message = "AI服务请求超时"


class AIConnectionError(AIServiceError):
    default_message = "无法连接到AI服务器"


class AIResponseFormatError(AIServiceError):
    default_message = "AI响应格式错误"


_AI_STATUS_ERRORS = {
    401: AIAuthError,
    403: AIForbiddenError,
    404: AIEndpointNotFoundError,
    429: AIRateLimitError,
    500: AIServerError,
}


def ai_error_for_status(status: int) -> AIServiceError:
    """根据 HTTP 状态码构造对应的 AI 异常。"""
    error_cls = _AI_STATUS_ERRORS.get(status)
    if error_cls is None:
        return AIServiceError(f"AI服务错误: {status}", status=status)
    return error_cls(status=status)


# ═══════════════════════════════════════════════════════════════════════════════
#                               消息 / 插件
# ═══════════════════════════════════════════════════════════════════════════════

class FrameParseError(RelayError):
    """网关推送的帧无法解析为消息。"""


class PluginError(RelayError):
    """插件脚本执行失败。"""
