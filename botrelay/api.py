"""
中继服务 - Quart 异步 API

提供服务状态、日志查看、缓存刷新、机器人连接控制、手动发送，
以及网关登录/资料接口的代理。修改状态的接口在配置了 admin_key 时
需要携带 X-Admin-Key 请求头。
"""

import logging
from functools import wraps

from quart import Quart, jsonify, request
from quart_cors import cors

from .relay_manager import get_relay_service
from .utils.logging import read_recent_logs

logger = logging.getLogger(__name__)

ADMIN_KEY_HEADER = 'X-Admin-Key'

# 创建 Quart 应用
app = Quart(__name__)
app = cors(app, allow_origin="*")


def require_admin(func):
    """校验 X-Admin-Key（未配置 admin_key 时不校验）"""
    @wraps(func)
    async def wrapper(*args, **kwargs):
        service = get_relay_service()
        admin_key = (service.config.get('server', {}) or {}).get('admin_key')
        if admin_key and request.headers.get(ADMIN_KEY_HEADER) != admin_key:
            logger.warning(f"拒绝未授权的请求: {request.path}")
            return jsonify({'success': False, 'message': '未授权'}), 401
        return await func(*args, **kwargs)
    return wrapper


def _auth_key_from_request(data=None):
    key = request.args.get('key')
    if not key and isinstance(data, dict):
        key = data.get('key') or data.get('auth_key')
    return key


# ═══════════════════════════════════════════════════════════════════════════════
#                               服务信息
# ═══════════════════════════════════════════════════════════════════════════════

@app.route('/', methods=['GET'])
async def index():
    """服务欢迎信息"""
    service = get_relay_service()
    name = (service.config.get('server', {}) or {}).get('service_name') or 'botrelay'
    return jsonify({'code': 200, 'msg': f'欢迎使用 {name}'})


@app.route('/wss_log', methods=['GET'])
async def get_logs():
    """获取最近的日志"""
    try:
        service = get_relay_service()
        log_file = (service.config.get('logging', {}) or {}).get('file')
        limit = request.args.get('limit', 200, type=int)
        logs = read_recent_logs(log_file, limit=max(1, min(limit, 2000)))
        return jsonify({'success': True, 'logs': logs})
    except Exception as e:
        logger.error(f"读取日志失败: {e}")
        return jsonify({'success': False, 'message': f'读取日志失败: {str(e)}'})


@app.route('/api/status', methods=['GET'])
async def get_status():
    """获取中继服务状态"""
    return jsonify(get_relay_service().get_status())


# ═══════════════════════════════════════════════════════════════════════════════
#                               运维操作
# ═══════════════════════════════════════════════════════════════════════════════

@app.route('/refresh_cache', methods=['POST'])
@require_admin
async def refresh_cache():
    """清理所有缓存"""
    try:
        get_relay_service().clear_all_caches()
        return jsonify({'success': True, 'message': '缓存已清理'})
    except Exception as e:
        logger.error(f"清理缓存失败: {e}")
        return jsonify({'success': False, 'message': f'清理缓存失败: {str(e)}'})


@app.route('/api/bots/<bot_id>/connect', methods=['POST'])
@require_admin
async def connect_bot(bot_id):
    """为机器人建立连接"""
    try:
        result = await get_relay_service().connect_bot(bot_id)
        return jsonify(result)
    except Exception as e:
        logger.error(f"连接机器人失败: {e}")
        return jsonify({'success': False, 'message': f'连接失败: {str(e)}'})


@app.route('/api/bots/<bot_id>/disconnect', methods=['POST'])
@require_admin
async def disconnect_bot(bot_id):
    """断开机器人连接"""
    try:
        result = await get_relay_service().disconnect_bot(bot_id)
        return jsonify(result)
    except Exception as e:
        logger.error(f"断开机器人失败: {e}")
        return jsonify({'success': False, 'message': f'断开失败: {str(e)}'})


@app.route('/api/send', methods=['POST'])
@require_admin
async def send_message():
    """手动发送消息"""
    try:
        data = await request.get_json(silent=True) or {}
        auth_key = _auth_key_from_request(data)
        to_user = data.get('to_user') or data.get('target')
        content = data.get('content')

        if not auth_key or not to_user or not content:
            return jsonify({'success': False, 'message': '缺少 key、目标或内容'})

        result = await get_relay_service().send_message(
            auth_key,
            to_user,
            str(content),
            msg_type=data.get('msg_type', 'text'),
            should_split=bool(data.get('should_split', False)),
            interval_ms=data.get('interval', 1000),
        )
        return jsonify(result)
    except Exception as e:
        logger.error(f"发送消息异常: {e}")
        return jsonify({'success': False, 'message': f'发送异常: {str(e)}'})


# ═══════════════════════════════════════════════════════════════════════════════
#                               网关代理
# ═══════════════════════════════════════════════════════════════════════════════

async def _proxy(action, **kwargs):
    data = await request.get_json(silent=True) if request.method == 'POST' else None
    auth_key = _auth_key_from_request(data)
    if not auth_key:
        return jsonify({'success': False, 'message': '缺少 key 参数'}), 400
    try:
        result = await get_relay_service().call_gateway(action, auth_key, **kwargs)
        return jsonify(result)
    except Exception as e:
        logger.error(f"网关代理请求失败: {e}")
        return jsonify({'success': False, 'message': f'请求失败: {str(e)}'})


@app.route('/login/GetLoginQrCodeNewX', methods=['GET', 'POST'])
async def get_login_qrcode():
    """获取登录二维码"""
    return await _proxy('login_qrcode')


@app.route('/login/CheckLoginStatus', methods=['GET'])
async def check_login_status():
    """检查扫码状态"""
    return await _proxy('check_login')


@app.route('/login/GetLoginStatus', methods=['GET'])
async def get_login_status():
    """获取登录状态"""
    return await _proxy('login_status')


@app.route('/user/GetProfile', methods=['GET'])
async def get_profile():
    """获取账号资料"""
    return await _proxy('profile')


# ═══════════════════════════════════════════════════════════════════════════════
#                               启动入口
# ═══════════════════════════════════════════════════════════════════════════════

async def run_server_async(host='0.0.0.0', port=3031, shutdown_trigger=None):
    """异步启动 API 服务"""
    logger.info(f"API 服务启动于 http://{host}:{port}")
    await app.run_task(host=host, port=port, shutdown_trigger=shutdown_trigger)
