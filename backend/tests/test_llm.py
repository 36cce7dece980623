from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from tutor import config
from tutor.llm import (
    CompletionCancelled,
    CompletionClient,
    CompletionOptions,
    CompletionServiceError,
    PromptMessage,
)
from tutor.models import MessageRole

pytestmark = pytest.mark.anyio

BASE_URL = "https://openrouter.test/api/v1"

MESSAGES = [
    PromptMessage(role=MessageRole.SYSTEM, content="system prompt"),
    PromptMessage(role=MessageRole.USER, content="2 + 2?"),
]


def _client(handler) -> CompletionClient:
    http = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))
    return CompletionClient(api_key="test-key", default_model="test/model", client=http)


async def test_complete_posts_openai_compatible_payload() -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "model": "test/model",
                "choices": [{"message": {"role": "assistant", "content": "4"}}],
                "usage": {"prompt_tokens": 10, "completion_tokens": 1, "total_tokens": 11},
            },
        )

    result = await _client(handler).complete(MESSAGES)

    assert result.content == "4"
    assert result.model == "test/model"
    assert result.usage is not None and result.usage.total_tokens == 11
    assert seen["url"] == f"{BASE_URL}/chat/completions"
    assert seen["auth"] == "Bearer test-key"
    body = seen["body"]
    assert body["model"] == "test/model"
    assert body["max_tokens"] == config.COMPLETION_MAX_TOKENS
    assert body["temperature"] == config.COMPLETION_TEMPERATURE
    assert body["messages"] == [
        {"role": "system", "content": "system prompt"},
        {"role": "user", "content": "2 + 2?"},
    ]
    assert "stream" not in body


async def test_options_override_defaults() -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]})

    await _client(handler).complete(
        MESSAGES, CompletionOptions(model="other/model", max_tokens=100, temperature=0.0)
    )

    assert seen["body"]["model"] == "other/model"
    assert seen["body"]["max_tokens"] == 100
    assert seen["body"]["temperature"] == 0.0


async def test_http_error_status_raises() -> None:
    client = _client(lambda request: httpx.Response(500, text="upstream down"))

    with pytest.raises(CompletionServiceError) as excinfo:
        await client.complete(MESSAGES)

    assert str(excinfo.value) == "OpenRouter API error: 500 Internal Server Error"
    assert excinfo.value.status_code == 500
    assert excinfo.value.response_body == "upstream down"


async def test_empty_choice_raises() -> None:
    client = _client(lambda request: httpx.Response(200, json={"choices": []}))

    with pytest.raises(CompletionServiceError, match="Empty response from OpenRouter API"):
        await client.complete(MESSAGES)


async def test_non_json_body_raises_service_error() -> None:
    client = _client(lambda request: httpx.Response(200, text="<html>Bad gateway</html>"))

    with pytest.raises(CompletionServiceError, match="Malformed response") as excinfo:
        await client.complete(MESSAGES)

    assert excinfo.value.status_code == 200
    assert excinfo.value.response_body == "<html>Bad gateway</html>"


async def test_non_object_json_body_raises_service_error() -> None:
    client = _client(lambda request: httpx.Response(200, json=[{"content": "4"}]))

    with pytest.raises(CompletionServiceError, match="Malformed response"):
        await client.complete(MESSAGES)


async def test_transport_error_is_wrapped() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(CompletionServiceError):
        await _client(handler).complete(MESSAGES)


async def test_stream_yields_deltas_and_usage() -> None:
    seen: dict = {}
    body = "".join(
        [
            'data: {"choices":[{"delta":{"content":"Отв"}}]}\n\n',
            ": keep-alive\n\n",
            'data: {"choices":[{"delta":{"content":"ет"}}]}\n\n',
            'data: {"choices":[],"usage":{"prompt_tokens":5,"completion_tokens":2,"total_tokens":7}}\n\n',
            "data: [DONE]\n\n",
        ]
    )

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200, content=body.encode("utf-8"), headers={"content-type": "text/event-stream"}
        )

    chunks = [chunk async for chunk in _client(handler).stream(MESSAGES)]

    assert "".join(chunk.text for chunk in chunks) == "Ответ"
    assert chunks[-1].usage is not None
    assert chunks[-1].usage.completion_tokens == 2
    assert seen["body"]["stream"] is True
    assert seen["body"]["stream_options"] == {"include_usage": True}


async def test_stream_error_status_raises() -> None:
    client = _client(lambda request: httpx.Response(429, text="slow down"))

    with pytest.raises(CompletionServiceError) as excinfo:
        async for _ in client.stream(MESSAGES):
            pass

    assert excinfo.value.status_code == 429


async def test_preset_abort_never_sends_request() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]})

    abort = asyncio.Event()
    abort.set()

    with pytest.raises(CompletionCancelled):
        await _client(handler).complete(MESSAGES, abort=abort)
    assert calls == []


async def test_abort_cancels_in_flight_request() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(5)
        return httpx.Response(200, json={"choices": [{"message": {"content": "late"}}]})

    abort = asyncio.Event()
    loop = asyncio.get_running_loop()
    loop.call_later(0.05, abort.set)

    with pytest.raises(CompletionCancelled):
        await asyncio.wait_for(_client(handler).complete(MESSAGES, abort=abort), timeout=2)
