import json
import os
from unittest.mock import patch

import pytest

from botrelay import check
from botrelay.check import check_config, check_dependencies, check_store
from botrelay.utils.config import apply_env_overrides, load_config, validate_required
from botrelay.utils.logging import format_log_text, get_logging_settings, read_recent_logs


def write_config(tmp_path, body):
    path = tmp_path / "config.py"
    path.write_text(body, encoding="utf-8")
    return str(path)


def test_load_config_merges_file_env_and_defaults(tmp_path):
    path = write_config(
        tmp_path,
        'CONFIG = {\n'
        '    "gateway": {"api_base_url": "http://gw.test"},\n'
        '    "server": {"port": 8080},\n'
        '}\n',
    )
    config = load_config(path, environ={"PORT": "9000", "WS_BASE_URL": "ws://gw.test", "ADMIN_KEY": "  "})

    assert config["gateway"]["api_base_url"] == "http://gw.test"
    assert config["gateway"]["ws_base_url"] == "ws://gw.test"
    assert config["server"]["port"] == 9000
    assert config["server"]["admin_key"] is None
    assert config["relay"]["retry_delays_sec"] == [1, 2, 5, 10, 30, 60, 120, 300, 600, 1800]
    assert config["relay"]["max_retries"] == 10


def test_missing_file_uses_defaults(tmp_path):
    config = load_config(str(tmp_path / "absent.py"), environ={})
    assert config["server"]["port"] == 3031
    assert config["store"]["backend"] == "supabase"
    assert config["plugin"]["timeout_sec"] == 60.0


def test_invalid_config_falls_back_to_raw_values(tmp_path):
    path = write_config(tmp_path, 'CONFIG = {"store": {"backend": "mysql"}}\n')
    config = load_config(path, environ={})
    assert config == {"store": {"backend": "mysql"}}


def test_env_override_creates_missing_section():
    config = apply_env_overrides({}, {"SUPABASE_URL": "https://demo.supabase.co", "PORT": "abc"})
    assert config["store"]["supabase_url"] == "https://demo.supabase.co"
    assert config["server"]["port"] == 3031


def test_validate_required():
    assert validate_required({}) == [
        "API_BASE_URL",
        "WS_BASE_URL",
        "SUPABASE_URL",
        "SUPABASE_SERVICE_ROLE_KEY",
    ]
    sqlite_config = {
        "gateway": {"api_base_url": "http://gw", "ws_base_url": "ws://gw"},
        "store": {"backend": "sqlite"},
    }
    assert validate_required(sqlite_config) == []


# ═══════════════════════════════════════════════════════════════════════════════
#                               环境检查
# ═══════════════════════════════════════════════════════════════════════════════

def test_check_dependencies_reports_installed_stack():
    ok, _, missing = check_dependencies()
    assert ok is True
    assert missing == []


def test_check_config(sample_config):
    ok, msg = check_config(sample_config)
    assert ok is True
    assert "sqlite" in msg

    ok, msg = check_config({})
    assert ok is False
    assert "API_BASE_URL" in msg


@pytest.mark.asyncio
async def test_check_store_with_sqlite(sample_config):
    ok, msg = await check_store(sample_config)
    assert ok is True
    assert "0" in msg


@pytest.mark.asyncio
async def test_check_store_skips_without_credentials():
    ok, msg = await check_store({"store": {"backend": "supabase"}})
    assert ok is None
    assert msg.startswith("跳过")


# ═══════════════════════════════════════════════════════════════════════════════
#                               日志
# ═══════════════════════════════════════════════════════════════════════════════

def test_logging_settings_defaults():
    assert get_logging_settings({}) == ("INFO", None, 5 * 1024 * 1024, 5, "text")


def test_format_log_text():
    assert format_log_text("secret message", False) == "[hidden]"
    assert format_log_text("a" * 10, True, max_len=4) == "aaaa..."


def test_read_recent_logs(tmp_path):
    log_file = tmp_path / "relay.log"
    lines = [
        "2024-05-01 12:00:00,123 [INFO] 服务已启动",
        json.dumps({"timestamp": "2024-05-01 12:00:01", "level": "ERROR", "message": "连接失败"}),
        "plain line",
    ]
    log_file.write_text("\n".join(lines) + "\n", encoding="utf-8")

    entries = read_recent_logs(str(log_file), limit=2)
    assert entries == [
        {"timestamp": "2024-05-01 12:00:01", "type": "error", "message": "连接失败"},
        {"timestamp": "", "type": "raw", "message": "plain line"},
    ]
    assert read_recent_logs(str(tmp_path / "missing.log")) == []


# ═══════════════════════════════════════════════════════════════════════════════
#                               自检入口
# ═══════════════════════════════════════════════════════════════════════════════

def test_check_main_passes_with_local_store(tmp_path, capsys):
    path = write_config(
        tmp_path,
        'CONFIG = {\n'
        '    "gateway": {"api_base_url": "http://gw.test", "ws_base_url": "ws://gw.test"},\n'
        '    "store": {"backend": "sqlite", "sqlite_path": ":memory:"},\n'
        '}\n',
    )
    with patch.dict(os.environ, {"BOTRELAY_CONFIG": path}):
        assert check.main() == 0
    assert "环境检测通过" in capsys.readouterr().out


def test_check_main_stops_when_dependencies_missing(capsys):
    with patch.object(check, "check_dependencies", return_value=(False, "缺少: quart", ["quart"])):
        with patch.object(check, "check_config") as check_config_mock:
            assert check.main() == 1
            check_config_mock.assert_not_called()
    assert "pip install quart" in capsys.readouterr().out
