from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class GatewayConfig(BaseModel):
    api_base_url: str = ""
    ws_base_url: str = ""
    ws_path: str = "/GetSyncMsg"
    request_timeout_sec: float = 30.0
    user_agent: str = "PostmanRuntime/7.36.0"
    fallback_user_agent: str = (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
        "AppleWebKit/537.36 (KHTML, like Gecko)"
    )


class StoreConfig(BaseModel):
    backend: Literal["supabase", "sqlite"] = "supabase"
    supabase_url: str = ""
    supabase_key: str = ""
    sqlite_path: str = "data/botrelay.db"
    timeout_sec: float = 10.0
    realtime_enabled: bool = True
    poll_interval_sec: float = 5.0


class RelayConfig(BaseModel):
    max_retries: int = 10
    retry_delays_sec: List[float] = Field(
        default_factory=lambda: [1, 2, 5, 10, 30, 60, 120, 300, 600, 1800]
    )
    liveness_interval_sec: float = 10.0
    zombie_timeout_sec: float = 60.0
    heartbeat_interval_sec: float = 25.0
    connect_timeout_sec: float = 15.0
    replace_wait_sec: float = 1.0
    config_cache_ttl_sec: float = 300.0
    context_cache_ttl_sec: float = 30.0
    ai_timeout_sec: float = 60.0
    ai_temperature: float = 0.7
    ai_max_tokens: int = 1000
    refresh_command: str = "刷新配置"


class PluginConfig(BaseModel):
    timeout_sec: float = 60.0
    max_steps: int = 200000
    request_timeout_sec: float = 30.0
    image_timeout_sec: float = 15.0
    request_cache_ttl_sec: float = 60.0


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 3031
    admin_key: Optional[str] = None
    service_name: str = "botrelay"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: str = "logs/relay.log"
    max_bytes: int = 10 * 1024 * 1024
    backup_count: int = 5
    format: Literal['text', 'json'] = 'text'
    log_message_content: bool = False
    log_reply_content: bool = False


class AppConfig(BaseModel):
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    relay: RelayConfig = Field(default_factory=RelayConfig)
    plugin: PluginConfig = Field(default_factory=PluginConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
