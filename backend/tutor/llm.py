"""
Chat-completion client for OpenAI-compatible endpoints (OpenRouter by default).

:class:`CompletionClient` offers a one-shot :meth:`~CompletionClient.complete`
and an SSE-based :meth:`~CompletionClient.stream`. Both accept an ``abort``
event: once it is set the in-flight request is cancelled and
:class:`CompletionCancelled` is raised. Non-2xx responses and responses
without content raise :class:`CompletionServiceError`.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
from collections.abc import AsyncIterator, Awaitable, Sequence
from dataclasses import dataclass
from typing import Any, TypeVar

import httpx
from loguru import logger
from pydantic import BaseModel

from tutor import config
from tutor.models import CompletionResult, CompletionUsage, MessageRole

T = TypeVar("T")


class CompletionServiceError(RuntimeError):
    """Transport or HTTP failure of the completion service."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class CompletionCancelled(Exception):
    """The caller aborted generation (e.g. the client disconnected)."""


class PromptMessage(BaseModel):
    role: MessageRole
    content: str


class CompletionOptions(BaseModel):
    model: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None


@dataclass(slots=True)
class StreamChunk:
    text: str = ""
    usage: CompletionUsage | None = None


class CompletionClient:
    """Thin OpenRouter chat-completions client."""

    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        default_model: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key or config.OPENROUTER_API_KEY
        self.base_url = (base_url or config.OPENROUTER_API_BASE).rstrip("/")
        self.default_model = default_model or config.OPENROUTER_DEFAULT_MODEL
        self.timeout = timeout or config.COMPLETION_TIMEOUT_SECONDS
        self._client: httpx.AsyncClient | None = client
        self._owns_client = client is None

    async def __aenter__(self) -> CompletionClient:
        await self._ensure_client()
        return self

    async def __aexit__(self, exc_type: object, exc: object, tb: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client and self._owns_client:
            await self._client.aclose()
        if self._owns_client:
            self._client = None

    # ------------------------------------------------------------------ public
    async def complete(
        self,
        messages: Sequence[PromptMessage],
        options: CompletionOptions | None = None,
        *,
        abort: asyncio.Event | None = None,
    ) -> CompletionResult:
        client = await self._ensure_client()
        payload = self._build_payload(messages, options, stream=False)
        logger.debug(
            f"Sending completion request ({len(messages)} messages, model {payload['model']})"
        )
        try:
            response = await _race_abort(
                client.post("/chat/completions", json=payload, headers=self._headers()),
                abort,
            )
        except httpx.HTTPError as exc:
            raise CompletionServiceError(f"Completion request failed: {exc!r}") from exc

        if response.status_code >= 400:
            raise CompletionServiceError(
                f"OpenRouter API error: {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
                response_body=response.text,
            )

        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            raise CompletionServiceError(
                "Malformed response from OpenRouter API",
                status_code=response.status_code,
                response_body=response.text,
            )
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            content = None
        if not content:
            raise CompletionServiceError(
                "Empty response from OpenRouter API",
                status_code=response.status_code,
                response_body=response.text,
            )

        return CompletionResult(
            content=str(content),
            model=str(data.get("model") or payload["model"]),
            usage=_parse_usage(data.get("usage")),
        )

    async def stream(
        self,
        messages: Sequence[PromptMessage],
        options: CompletionOptions | None = None,
        *,
        abort: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Yield content deltas as they arrive; the final chunk may carry usage only."""
        client = await self._ensure_client()
        payload = self._build_payload(messages, options, stream=True)
        logger.debug(
            f"Opening completion stream ({len(messages)} messages, model {payload['model']})"
        )
        try:
            async with client.stream(
                "POST", "/chat/completions", json=payload, headers=self._headers()
            ) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise CompletionServiceError(
                        f"OpenRouter API error: {response.status_code} {response.reason_phrase}",
                        status_code=response.status_code,
                        response_body=body,
                    )
                lines = response.aiter_lines()
                while True:
                    try:
                        line = await _race_abort(lines.__anext__(), abort)
                    except StopAsyncIteration:
                        break
                    chunk = _parse_sse_line(line)
                    if chunk is _DONE:
                        break
                    if chunk is not None:
                        yield chunk
        except httpx.HTTPError as exc:
            raise CompletionServiceError(f"Completion stream failed: {exc!r}") from exc

    # ----------------------------------------------------------------- helpers
    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
            )
        return self._client

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _build_payload(
        self,
        messages: Sequence[PromptMessage],
        options: CompletionOptions | None,
        *,
        stream: bool,
    ) -> dict[str, Any]:
        options = options or CompletionOptions()
        payload: dict[str, Any] = {
            "model": options.model or self.default_model,
            "messages": [message.model_dump(mode="json") for message in messages],
            "max_tokens": options.max_tokens or config.COMPLETION_MAX_TOKENS,
            "temperature": (
                config.COMPLETION_TEMPERATURE
                if options.temperature is None
                else options.temperature
            ),
        }
        if stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}
        return payload


_DONE = StreamChunk()


def _parse_sse_line(line: str) -> StreamChunk | None:
    line = line.strip()
    if not line.startswith("data:"):
        return None
    data = line[len("data:") :].strip()
    if data == "[DONE]":
        return _DONE
    try:
        parsed = json.loads(data)
    except json.JSONDecodeError:
        logger.warning(f"Skipping malformed stream payload: {data[:200]!r}")
        return None
    if not isinstance(parsed, dict):
        return None
    text = ""
    choices = parsed.get("choices") or []
    if choices:
        delta = choices[0].get("delta") or {}
        text = delta.get("content") or ""
    usage = _parse_usage(parsed.get("usage"))
    if not text and usage is None:
        return None
    return StreamChunk(text=text, usage=usage)


def _parse_usage(raw: object) -> CompletionUsage | None:
    if not isinstance(raw, dict):
        return None
    return CompletionUsage(
        prompt_tokens=int(raw.get("prompt_tokens") or 0),
        completion_tokens=int(raw.get("completion_tokens") or 0),
        total_tokens=int(raw.get("total_tokens") or 0),
    )


async def _race_abort(awaitable: Awaitable[T], abort: asyncio.Event | None) -> T:
    if abort is None:
        return await awaitable
    if abort.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise CompletionCancelled("Generation aborted before the request was sent")
    work = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(abort.wait())
    try:
        done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
    if work in done:
        return work.result()
    work.cancel()
    with contextlib.suppress(asyncio.CancelledError, Exception):
        await work
    raise CompletionCancelled("Generation aborted by caller")
