"""
配置工具模块 - 负责配置文件加载、环境变量覆盖和校验。
"""

import copy
import importlib.util
import logging
import os
from typing import Any, Dict, List, Mapping, Optional

from ..config_schemas import AppConfig
from ..errors import ConfigError
from .common import as_int

__all__ = [
    "ENV_OVERRIDES",
    "load_config_py",
    "load_config",
    "apply_env_overrides",
    "validate_required",
]

logger = logging.getLogger(__name__)

# 环境变量 -> (配置段, 配置项)
ENV_OVERRIDES = {
    "SUPABASE_URL": ("store", "supabase_url"),
    "SUPABASE_SERVICE_ROLE_KEY": ("store", "supabase_key"),
    "STORE_BACKEND": ("store", "backend"),
    "SQLITE_PATH": ("store", "sqlite_path"),
    "API_BASE_URL": ("gateway", "api_base_url"),
    "WS_BASE_URL": ("gateway", "ws_base_url"),
    "ADMIN_KEY": ("server", "admin_key"),
    "PORT": ("server", "port"),
    "LOG_LEVEL": ("logging", "level"),
    "LOG_FILE": ("logging", "file"),
}


def load_config_py(path: str) -> Dict[str, Any]:
    """动态加载 .py 配置文件，返回 CONFIG 字典。"""
    spec = importlib.util.spec_from_file_location("botrelay_config_module", path)
    if spec is None or spec.loader is None:
        raise ConfigError(f"无法加载配置文件: {path}")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return copy.deepcopy(getattr(module, "CONFIG", {}))


def apply_env_overrides(
    config: Dict[str, Any], environ: Optional[Mapping[str, str]] = None
) -> Dict[str, Any]:
    """用环境变量覆盖配置项（空值忽略）。"""
    env = os.environ if environ is None else environ
    for env_name, (section, key) in ENV_OVERRIDES.items():
        value = env.get(env_name)
        if value is None or str(value).strip() == "":
            continue
        value = str(value).strip()
        if key == "port":
            value = as_int(value, 3031, min_value=1)
        config.setdefault(section, {})[key] = value
    return config


def load_config(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """
    加载配置文件（.py），应用环境变量覆盖，并使用 Pydantic 验证。

    path 为空或文件不存在时只使用默认值和环境变量。
    """
    raw_config: Dict[str, Any] = {}
    if path and os.path.exists(path):
        raw_config = load_config_py(path)
    elif path:
        logger.warning("配置文件不存在，使用默认配置: %s", path)
    apply_env_overrides(raw_config, environ)

    try:
        app_config = AppConfig(**raw_config)
        return app_config.model_dump(mode='json')
    except Exception as e:
        logger.error("配置验证失败: %s。将使用原始配置。", e)
        return raw_config


def validate_required(config: Dict[str, Any]) -> List[str]:
    """返回缺失的必要配置项名称列表。"""
    missing: List[str] = []
    gateway = config.get("gateway", {}) or {}
    store = config.get("store", {}) or {}
    if not gateway.get("api_base_url"):
        missing.append("API_BASE_URL")
    if not gateway.get("ws_base_url"):
        missing.append("WS_BASE_URL")
    if store.get("backend", "supabase") == "supabase":
        if not store.get("supabase_url"):
            missing.append("SUPABASE_URL")
        if not store.get("supabase_key"):
            missing.append("SUPABASE_SERVICE_ROLE_KEY")
    return missing
