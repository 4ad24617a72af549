import asyncio
import json
import time

import pytest
from websockets.protocol import State

from botrelay.core.sqlite_store import SqliteStore
from botrelay.handlers.converters import parse_frame

_END = object()


class FakeSocket:
    """内存中的 WebSocket 连接，模拟 websockets 客户端连接的接口。"""

    def __init__(self, url=""):
        self.url = url
        self.state = State.OPEN
        self.sent = []
        self.fail_send = False
        self._queue = asyncio.Queue()

    async def send(self, data):
        if self.fail_send or self.state is not State.OPEN:
            raise ConnectionError("broken pipe")
        self.sent.append(data)

    def feed(self, raw):
        self._queue.put_nowait(raw)

    def remote_close(self):
        """模拟网关主动关闭连接"""
        self.state = State.CLOSED
        self._queue.put_nowait(_END)

    async def close(self):
        self.state = State.CLOSED
        self._queue.put_nowait(_END)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._queue.get()
        if item is _END:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item


class FakeSocketFactory:
    """连接工厂：记录请求地址，可按次数模拟连接失败。"""

    def __init__(self):
        self.urls = []
        self.sockets = []
        self.failures_left = 0
        self.always_fail = False

    async def __call__(self, url):
        self.urls.append(url)
        await asyncio.sleep(0)
        if self.always_fail or self.failures_left > 0:
            self.failures_left = max(0, self.failures_left - 1)
            raise OSError("connection refused")
        socket = FakeSocket(url)
        self.sockets.append(socket)
        return socket

    @property
    def open_sockets(self):
        return [s for s in self.sockets if s.state is State.OPEN]


class RecordingStore:
    """只记录状态更新的存储替身（连接管理器只调用 update_bot_status）。"""

    def __init__(self):
        self.statuses = []

    async def update_bot_status(self, bot_id, status):
        self.statuses.append((bot_id, status))


class FakeSender:
    def __init__(self):
        self.deliveries = []

    async def deliver(self, auth_key, message):
        self.deliveries.append((auth_key, message))


class SleepRecorder:
    """替换重连等待：记录时长并立即让出事件循环。"""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)
        await asyncio.sleep(0)


async def _wait_until(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.005)
    return predicate()


def make_text_frame(content, from_user="wxid_friend", to_user="wxid_bot", **extra):
    data = {
        "new_msg_id": 1001,
        "from_user_name": {"str": from_user},
        "to_user_name": {"str": to_user},
        "content": {"str": content},
        "msg_type": 1,
        "create_time": 1700000000,
        "status": 3,
    }
    data.update(extra)
    return parse_frame(json.dumps(data, ensure_ascii=False))


@pytest.fixture
def socket_factory():
    return FakeSocketFactory()


@pytest.fixture
def recording_store():
    return RecordingStore()


@pytest.fixture
def fake_sender():
    return FakeSender()


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()


@pytest.fixture
def wait_until():
    return _wait_until


@pytest.fixture
def text_frame():
    return make_text_frame


@pytest.fixture
def sqlite_store():
    store = SqliteStore(":memory:", poll_interval_sec=0.05)
    store.upsert_bot(
        {
            "id": "bot1",
            "auth_key": "key1",
            "status": "online",
            "user_id": "u1",
            "wxid": "wxid_bot",
            "nickname": "小助手",
        }
    )
    yield store
    store._conn.close()


@pytest.fixture
def sample_config():
    return {
        "gateway": {
            "api_base_url": "http://gateway.test",
            "ws_base_url": "ws://gateway.test",
        },
        "store": {"backend": "sqlite", "sqlite_path": ":memory:"},
        "relay": {},
        "plugin": {},
        "server": {"admin_key": "secret"},
        "logging": {"level": "INFO", "file": None},
    }
