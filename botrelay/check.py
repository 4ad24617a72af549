"""
中继服务环境自检。

运行方式:
    python run.py check

功能:
    - 检测 Python 版本
    - 检测依赖安装
    - 检测必要配置
    - 检测持久化存储连接
    - 提供修复建议
"""

import asyncio
import sys
from typing import Any, Dict, List, Optional, Tuple

from .errors import RelayError

REQUIRED_PACKAGES = [
    ("httpx", "httpx"),
    ("quart", "quart"),
    ("quart_cors", "quart-cors"),
    ("pydantic", "pydantic"),
    ("PIL", "Pillow"),
    ("websockets", "websockets"),
]

# ═══════════════════════════════════════════════════════════════════════════════
#                               检测项
# ═══════════════════════════════════════════════════════════════════════════════


def check_python_version() -> Tuple[bool, str]:
    """检查 Python 版本"""
    version = sys.version_info
    version_str = f"{version.major}.{version.minor}.{version.micro}"
    if version >= (3, 10):
        return True, f"Python {version_str}"
    return False, f"Python {version_str}（需要 3.10+）"


def check_dependencies() -> Tuple[bool, str, List[str]]:
    """检查依赖安装，返回缺失的包名（PyPI 名称）"""
    missing = []
    installed = []
    for module_name, package_name in REQUIRED_PACKAGES:
        try:
            __import__(module_name)
            installed.append(package_name)
        except ImportError:
            missing.append(package_name)

    if missing:
        return False, f"缺少: {', '.join(missing)}", missing
    return True, f"已安装: {', '.join(installed)}", []


def check_config(config: Dict[str, Any]) -> Tuple[bool, str]:
    """检查必要配置"""
    from .utils.config import validate_required

    missing = validate_required(config)
    if missing:
        return False, f"缺少: {', '.join(missing)}"
    backend = (config.get("store", {}) or {}).get("backend", "supabase")
    return True, f"配置完整（存储后端: {backend}）"


async def check_store(config: Dict[str, Any]) -> Tuple[Optional[bool], str]:
    """检查持久化存储连接"""
    from .relay_manager import build_store

    try:
        store = build_store(config)
    except RelayError as e:
        return None, f"跳过（{e}）"
    try:
        await store.ping()
        bots = await store.get_bots_online()
        return True, f"连接正常，在线机器人 {len(bots)} 个"
    except RelayError as e:
        return False, f"连接失败: {str(e)[:80]}"
    finally:
        await store.close()


# ═══════════════════════════════════════════════════════════════════════════════
#                               主程序
# ═══════════════════════════════════════════════════════════════════════════════


def _print_result(ok: Optional[bool], label: str, msg: str) -> None:
    icon = "✅" if ok else ("⚪" if ok is None else "❌")
    print(f"{icon} {label}: {msg}")


def _summary(issues: List[str], suggestions: List[str]) -> int:
    print()
    print("━" * 50)
    if not issues:
        print("🎉 环境检测通过，可以运行: python run.py start")
        return 0

    print(f"⚠️  发现 {len(issues)} 个问题:")
    for suggestion in suggestions:
        print(f"   • {suggestion}")
    return 1


def main(config_path: Optional[str] = None) -> int:
    """运行自检，返回退出码"""
    print()
    print("🔍 中继服务环境检测")
    print("━" * 50)
    print()

    issues = []
    suggestions = []

    ok, msg = check_python_version()
    _print_result(ok, "Python 版本", msg)
    if not ok:
        issues.append("Python 版本过低")
        suggestions.append("请升级到 Python 3.10 或更高版本")

    ok, msg, missing = check_dependencies()
    _print_result(ok, "依赖安装", msg)
    if not ok:
        issues.append("缺少必要依赖")
        suggestions.append(f"运行: pip install {' '.join(missing)}")

    # 依赖缺失时延迟导入会失败，先完成依赖检测
    if missing:
        return _summary(issues, suggestions)

    from .main import resolve_config_path
    from .utils.config import load_config

    config = load_config(resolve_config_path(config_path))
    ok, msg = check_config(config)
    _print_result(ok, "必要配置", msg)
    if not ok:
        issues.append("配置不完整")
        suggestions.append("编辑 config.py 或设置对应的环境变量")

    ok, msg = asyncio.run(check_store(config))
    _print_result(ok, "存储连接", msg)
    if ok is False:
        issues.append("无法连接持久化存储")
        suggestions.append("检查 SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY 或本地数据库路径")

    return _summary(issues, suggestions)
