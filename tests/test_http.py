import json
from io import BytesIO

import httpx
import pytest
from PIL import Image

from botrelay.core.ai_client import AIClient
from botrelay.core.cache import ConfigRepository, TTLCache
from botrelay.errors import (
    AIAuthError,
    AIResponseFormatError,
    AIServiceError,
    AITimeoutError,
    RequestError,
    RequestTimeoutError,
)
from botrelay.schemas import AIModelProfile
from botrelay.utils.http import backoff_delay_sec, make_request
from botrelay.utils.image import sniff_mime, to_data_uri


def mock_client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ═══════════════════════════════════════════════════════════════════════════════
#                               make_request
# ═══════════════════════════════════════════════════════════════════════════════

def test_backoff_ladder():
    assert [backoff_delay_sec(n) for n in range(6)] == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]


@pytest.mark.asyncio
async def test_retries_with_backoff_then_succeeds(sleep_recorder):
    statuses = [503, 502, 200]

    def handler(request):
        return httpx.Response(statuses.pop(0), text="ok")

    async with mock_client(handler) as client:
        result = await make_request({"url": "http://api.test/x"}, client=client, sleep=sleep_recorder)

    assert result == "ok"
    assert sleep_recorder.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_exhausted_retries_raise_last_error(sleep_recorder):
    async with mock_client(lambda r: httpx.Response(500)) as client:
        with pytest.raises(RequestError) as excinfo:
            await make_request(
                {"url": "http://api.test/x", "retries": 1}, client=client, sleep=sleep_recorder
            )

    assert str(excinfo.value) == "HTTP error! status: 500"
    assert sleep_recorder.delays == [1.0]


@pytest.mark.asyncio
async def test_timeout_is_reported(sleep_recorder):
    def handler(request):
        raise httpx.ConnectTimeout("slow", request=request)

    async with mock_client(handler) as client:
        with pytest.raises(RequestTimeoutError):
            await make_request(
                {"url": "http://api.test/x", "retries": 0}, client=client, sleep=sleep_recorder
            )


@pytest.mark.asyncio
async def test_post_json_body_and_custom_headers():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"ok": True})

    async with mock_client(handler) as client:
        result = await make_request(
            {
                "url": "http://api.test/submit",
                "method": "post",
                "data": {"name": "小明"},
                "headers": {"X-Token": "abc"},
                "dataType": "json",
            },
            client=client,
        )

    assert result == {"ok": True}
    request = seen[0]
    assert request.method == "POST"
    assert json.loads(request.content) == {"name": "小明"}
    assert request.headers["Content-Type"] == "application/json"
    assert request.headers["X-Token"] == "abc"


@pytest.mark.asyncio
async def test_invalid_json_is_not_retried(sleep_recorder):
    async with mock_client(lambda r: httpx.Response(200, text="<html>")) as client:
        with pytest.raises(RequestError):
            await make_request(
                {"url": "http://api.test/x", "dataType": "json", "retries": 0},
                client=client,
                sleep=sleep_recorder,
            )
    assert sleep_recorder.delays == []


@pytest.mark.asyncio
async def test_get_results_are_cached():
    hits = []

    def handler(request):
        hits.append(request)
        return httpx.Response(200, content=b"\x00\x01")

    cache = TTLCache(60)
    async with mock_client(handler) as client:
        first = await make_request({"url": "http://api.test/bin", "dataType": "arraybuffer"}, client=client, cache=cache)
        second = await make_request({"url": "http://api.test/bin", "dataType": "arraybuffer"}, client=client, cache=cache)

    assert first == second == b"\x00\x01"
    assert len(hits) == 1


@pytest.mark.asyncio
async def test_missing_url_is_rejected():
    with pytest.raises(RequestError):
        await make_request({"url": "  "})


# ═══════════════════════════════════════════════════════════════════════════════
#                               缓存
# ═══════════════════════════════════════════════════════════════════════════════

def test_ttl_cache_expiry():
    now = [0.0]
    cache = TTLCache(10, clock=lambda: now[0])
    cache.set("k", "v")
    assert cache.get("k") == "v"
    now[0] = 11
    assert cache.get("k") is None
    assert "k" not in cache


@pytest.mark.asyncio
async def test_config_repository_reads_through_and_clears(sqlite_store):
    repository = ConfigRepository(sqlite_store)
    sqlite_store.add_plugin("u1", {"trigger": "a", "code": ""})

    assert len(await repository.get_plugins("u1")) == 1
    sqlite_store.add_plugin("u1", {"trigger": "b", "code": ""})
    assert len(await repository.get_plugins("u1")) == 1

    repository.clear()
    assert len(await repository.get_plugins("u1")) == 2


# ═══════════════════════════════════════════════════════════════════════════════
#                               AI 客户端
# ═══════════════════════════════════════════════════════════════════════════════

PROFILE = AIModelProfile(model="gpt-test", base_url="http://ai.test/v1/", api_key="sk-test")


@pytest.mark.asyncio
async def test_ai_chat_returns_stripped_content():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"choices": [{"message": {"content": "  你好  "}}]})

    async with mock_client(handler) as client:
        ai = AIClient(client=client)
        reply = await ai.chat(PROFILE, [{"role": "user", "content": "hi"}])

    assert reply == "你好"
    assert str(seen[0].url) == "http://ai.test/v1/chat/completions"
    assert seen[0].headers["Authorization"] == "Bearer sk-test"
    body = json.loads(seen[0].content)
    assert body["model"] == "gpt-test"
    assert body["messages"] == [{"role": "user", "content": "hi"}]
    assert ai.get_stats()["successful_requests"] == 1


@pytest.mark.asyncio
async def test_ai_status_errors_are_classified():
    async with mock_client(lambda r: httpx.Response(401, text="bad key")) as client:
        ai = AIClient(client=client)
        with pytest.raises(AIAuthError):
            await ai.chat(PROFILE, [])
    assert ai.get_stats()["failed_requests"] == 1

    async with mock_client(lambda r: httpx.Response(418)) as client:
        with pytest.raises(AIServiceError) as excinfo:
            await AIClient(client=client).chat(PROFILE, [])
    assert excinfo.value.status == 418


@pytest.mark.asyncio
async def test_ai_malformed_response():
    async with mock_client(lambda r: httpx.Response(200, json={"choices": []})) as client:
        with pytest.raises(AIResponseFormatError):
            await AIClient(client=client).chat(PROFILE, [])


@pytest.mark.asyncio
async def test_ai_timeout():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    async with mock_client(handler) as client:
        with pytest.raises(AITimeoutError):
            await AIClient(client=client).chat(PROFILE, [])


# ═══════════════════════════════════════════════════════════════════════════════
#                               图片
# ═══════════════════════════════════════════════════════════════════════════════

def _image_bytes(fmt):
    buf = BytesIO()
    Image.new("RGB", (2, 2)).save(buf, fmt)
    return buf.getvalue()


def test_sniff_mime():
    assert sniff_mime(_image_bytes("PNG")) == "image/png"
    assert sniff_mime(_image_bytes("GIF")) == "image/gif"
    assert sniff_mime(b"not an image") == "image/jpeg"


def test_to_data_uri():
    assert to_data_uri(_image_bytes("PNG")).startswith("data:image/png;base64,iVBOR")
