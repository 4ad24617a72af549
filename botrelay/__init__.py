"""
botrelay - 微信机器人网关中继服务。

为每个机器人维护一条网关 WebSocket 长连接，并将收到的消息依次交给
插件、AI 模型、关键词回复三类策略处理。
"""

__version__ = "0.3.0"
