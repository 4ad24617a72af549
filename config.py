"""
配置文件，请按需修改。

敏感项（SUPABASE_SERVICE_ROLE_KEY、ADMIN_KEY 等）建议通过环境变量提供，
环境变量的值会覆盖这里的同名配置。
"""


CONFIG = {  # 全局配置字典
    "gateway": {  # 消息网关
        "api_base_url": "",  # HTTP 接口地址（API_BASE_URL）
        "ws_base_url": "",  # WebSocket 地址（WS_BASE_URL）
        "ws_path": "/GetSyncMsg",  # 同步消息路径
        "request_timeout_sec": 30,  # 发送请求超时（秒）
        "user_agent": "PostmanRuntime/7.36.0",  # 默认 User-Agent
        "fallback_user_agent": (  # 返回 403 时使用的浏览器 User-Agent
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
            "AppleWebKit/537.36 (KHTML, like Gecko)"
        ),
    },
    "store": {  # 持久化存储
        "backend": "supabase",  # supabase / sqlite
        "supabase_url": "",  # SUPABASE_URL
        "supabase_key": "",  # SUPABASE_SERVICE_ROLE_KEY
        "sqlite_path": "data/botrelay.db",  # 本地数据库路径（sqlite 后端）
        "timeout_sec": 10,  # 数据库请求超时（秒）
        "realtime_enabled": True,  # 订阅 bots 表变更
        "poll_interval_sec": 5,  # sqlite 后端轮询间隔（秒）
    },
    "relay": {  # 连接与回复
        "max_retries": 10,  # 最大重连次数
        "retry_delays_sec": [1, 2, 5, 10, 30, 60, 120, 300, 600, 1800],  # 重连退避（秒）
        "liveness_interval_sec": 10,  # 存活检查间隔（秒）
        "zombie_timeout_sec": 60,  # 无消息视为僵尸连接（秒）
        "heartbeat_interval_sec": 25,  # 心跳间隔（秒）
        "connect_timeout_sec": 15,  # 建连超时（秒）
        "replace_wait_sec": 1,  # 替换旧连接前等待（秒）
        "config_cache_ttl_sec": 300,  # 机器人配置缓存（秒）
        "context_cache_ttl_sec": 30,  # 对话上下文缓存（秒）
        "ai_timeout_sec": 60,  # AI 请求超时（秒）
        "ai_temperature": 0.7,  # 温度
        "ai_max_tokens": 1000,  # 最大生成长度
        "refresh_command": "刷新配置",  # 清空缓存的聊天指令
    },
    "plugin": {  # 插件脚本
        "timeout_sec": 60,  # 单次执行超时（秒）
        "max_steps": 200000,  # 最大执行步数
        "request_timeout_sec": 30,  # request() 超时上限（秒）
        "image_timeout_sec": 15,  # 图片下载超时（秒）
        "request_cache_ttl_sec": 60,  # request() 缓存（秒）
    },
    "server": {  # HTTP 服务
        "host": "0.0.0.0",  # 监听地址
        "port": 3031,  # 监听端口（PORT）
        "admin_key": None,  # 管理接口密钥（ADMIN_KEY），为空不校验
        "service_name": "botrelay",  # 欢迎信息中的服务名
    },
    "logging": {  # 日志
        "level": "INFO",  # 日志级别
        "file": "logs/relay.log",  # 日志文件
        "max_bytes": 10 * 1024 * 1024,  # 单个日志文件大小
        "backup_count": 5,  # 保留的日志文件数
        "format": "text",  # text / json
        "log_message_content": False,  # 记录收到的消息内容
        "log_reply_content": False,  # 记录回复内容
    },
}
