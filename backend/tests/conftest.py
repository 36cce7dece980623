from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Sequence

import pytest

from tutor.llm import CompletionCancelled, CompletionOptions, PromptMessage, StreamChunk
from tutor.memory_store import InMemoryChatStore
from tutor.models import CompletionResult, CompletionUsage, OCRResult, StreamEvent
from tutor.ocr_providers import OCRProvider
from tutor.pipeline import MessagePipeline


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class FakeProvider(OCRProvider):
    def __init__(
        self,
        name: str,
        *,
        text: str = "",
        confidence: float = 1.0,
        error: Exception | None = None,
        delay: float = 0.0,
    ) -> None:
        self.name = name
        self.text = text
        self.confidence = confidence
        self.error = error
        self.delay = delay
        self.calls = 0

    async def extract_text(self, image: bytes) -> OCRResult:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return OCRResult(text=self.text, confidence=self.confidence, provider=self.name)


class FakeCompletionClient:
    def __init__(self) -> None:
        self.reply = "Перенесём 3 вправо: 2x = 4, значит x = 2."
        self.chunks: list[str] | None = None
        self.error: Exception | None = None
        self.usage: CompletionUsage | None = CompletionUsage(
            prompt_tokens=12, completion_tokens=8, total_tokens=20
        )
        self.calls: list[list[PromptMessage]] = []

    async def aclose(self) -> None:
        pass

    async def complete(
        self,
        messages: Sequence[PromptMessage],
        options: CompletionOptions | None = None,
        *,
        abort: asyncio.Event | None = None,
    ) -> CompletionResult:
        self.calls.append(list(messages))
        if abort is not None and abort.is_set():
            raise CompletionCancelled("aborted")
        if self.error is not None:
            raise self.error
        return CompletionResult(content=self.reply, model="fake/model", usage=self.usage)

    async def stream(
        self,
        messages: Sequence[PromptMessage],
        options: CompletionOptions | None = None,
        *,
        abort: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamChunk]:
        self.calls.append(list(messages))
        if abort is not None and abort.is_set():
            raise CompletionCancelled("aborted")
        if self.error is not None:
            raise self.error
        for piece in self.chunks or [self.reply]:
            yield StreamChunk(text=piece)
        if self.usage is not None:
            yield StreamChunk(usage=self.usage)


class RecordingPublisher:
    def __init__(self) -> None:
        self.events: list[tuple[str, StreamEvent]] = []

    async def publish(self, session_id: str, event: StreamEvent) -> None:
        self.events.append((session_id, event))

    @property
    def types(self) -> list[str]:
        return [event.type for _, event in self.events]


@pytest.fixture
def make_provider() -> type[FakeProvider]:
    return FakeProvider


@pytest.fixture
def store() -> InMemoryChatStore:
    return InMemoryChatStore()


@pytest.fixture
def completion() -> FakeCompletionClient:
    return FakeCompletionClient()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def pipeline(store: InMemoryChatStore, completion: FakeCompletionClient) -> MessagePipeline:
    return MessagePipeline(repository=store, completion_client=completion)
