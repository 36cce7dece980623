"""
High-level orchestration of one student message.

``received -> input check -> (OCR) -> prompt -> completion -> output check -> persisted``

Unsafe input short-circuits before the completion client is ever called.
Completion outages are recovered into an apology message. OCR exhaustion and
storage errors propagate to the caller.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
from collections.abc import AsyncGenerator, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

import httpx
from loguru import logger

from tutor import config
from tutor.llm import (
    CompletionCancelled,
    CompletionOptions,
    CompletionServiceError,
    PromptMessage,
    StreamChunk,
)
from tutor.models import (
    ChatMessage,
    ChatSession,
    CompletionResult,
    CompletionUsage,
    DoneEvent,
    ErrorEvent,
    MessageRole,
    OCRResult,
    SafetyCheckResult,
    SafetyEvent,
    SafetyEventKind,
    Severity,
    SourceType,
    StreamEvent,
    StreamUsage,
    TemplatePreset,
    TokenEvent,
)
from tutor.ocr import OCRExtractor
from tutor.prompts import build_system_prompt
from tutor.safety import (
    check_prompt_safety,
    check_response_safety,
    get_blocked_message,
    get_filtered_response_message,
)
from tutor.safety_events import SafetyEventRecorder

COMPLETION_FAILED_MESSAGE = (
    "Извини, произошла ошибка при генерации ответа. "
    "Попробуй отправить вопрос ещё раз чуть позже."
)

OCR_TEXT_HEADER = "[Текст с изображения]:"


class ChatRepository(Protocol):
    async def get_session(self, session_id: str, user_id: str) -> ChatSession | None: ...

    async def create_message(
        self,
        session_id: str,
        role: MessageRole,
        content: str,
        *,
        source_type: SourceType = SourceType.TEXT,
        flagged: bool = False,
        is_error: bool = False,
    ) -> ChatMessage: ...

    async def list_recent_messages(self, session_id: str, limit: int) -> list[ChatMessage]: ...

    async def touch_session(self, session_id: str) -> None: ...

    async def get_template(self, template_id: str, user_id: str) -> TemplatePreset | None: ...

    async def get_default_template(self, user_id: str) -> TemplatePreset | None: ...

    async def create_safety_event(self, event: SafetyEvent) -> None: ...


class StreamPublisher(Protocol):
    async def publish(self, session_id: str, event: StreamEvent) -> None: ...


class CompletionBackend(Protocol):
    async def complete(
        self,
        messages: Sequence[PromptMessage],
        options: CompletionOptions | None = None,
        *,
        abort: asyncio.Event | None = None,
    ) -> CompletionResult: ...

    def stream(
        self,
        messages: Sequence[PromptMessage],
        options: CompletionOptions | None = None,
        *,
        abort: asyncio.Event | None = None,
    ) -> AsyncGenerator[StreamChunk, None]: ...


class PipelineOutcome(str, Enum):
    COMPLETED = "completed"
    BLOCKED = "blocked"
    FILTERED = "filtered"
    RECOVERED = "recovered"


@dataclass(slots=True)
class PipelineResult:
    user_message: ChatMessage
    assistant_message: ChatMessage
    outcome: PipelineOutcome
    input_safety: SafetyCheckResult
    output_safety: SafetyCheckResult | None = None
    ocr_result: OCRResult | None = None
    usage: CompletionUsage | None = None


class MessagePipeline:
    def __init__(
        self,
        *,
        repository: ChatRepository,
        completion_client: CompletionBackend,
        ocr_extractor: OCRExtractor | None = None,
        safety_recorder: SafetyEventRecorder | None = None,
        publisher: StreamPublisher | None = None,
        completion_options: CompletionOptions | None = None,
        max_context_messages: int | None = None,
    ) -> None:
        self.repository = repository
        self.completion_client = completion_client
        self.ocr_extractor = ocr_extractor
        self.safety_recorder = safety_recorder or SafetyEventRecorder(repository)
        self.publisher = publisher
        self.completion_options = completion_options or CompletionOptions()
        self.max_context_messages = max_context_messages or config.MAX_CONTEXT_MESSAGES

    async def handle_message(
        self,
        session: ChatSession,
        content: str,
        *,
        image: bytes | None = None,
        template_id: str | None = None,
        abort: asyncio.Event | None = None,
    ) -> PipelineResult:
        source_type = SourceType.IMAGE if image is not None else SourceType.TEXT

        input_safety = check_prompt_safety(content)
        if not input_safety.safe:
            return await self._block(session, content, source_type, input_safety, source="prompt")

        ocr_result: OCRResult | None = None
        if image is not None:
            if self.ocr_extractor is None:
                raise RuntimeError("Image message received but no OCR extractor is configured")
            ocr_result = await self.ocr_extractor.extract_text(image)
            logger.info(
                f"OCR for session {session.id} via {ocr_result.provider} "
                f"(confidence {ocr_result.confidence:.2f}, {len(ocr_result.text)} chars)"
            )
            content = merge_ocr_text(content, ocr_result.text)
            input_safety = check_prompt_safety(content)
            if not input_safety.safe:
                return await self._block(
                    session,
                    content,
                    source_type,
                    input_safety,
                    source="image",
                    ocr_result=ocr_result,
                )

        template = await self._resolve_template(session, template_id)
        system_prompt = build_system_prompt(session.mode, template)

        user_message = await self.repository.create_message(
            session.id, MessageRole.USER, content, source_type=source_type
        )
        history = await self._history(session.id)
        prompt = [PromptMessage(role=MessageRole.SYSTEM, content=system_prompt)]
        prompt.extend(PromptMessage(role=m.role, content=m.content) for m in history)

        try:
            completion = await self._complete(session.id, prompt, abort)
        except CompletionCancelled:
            logger.info(f"Generation cancelled for session {session.id}; no reply stored")
            raise
        except (CompletionServiceError, httpx.HTTPError) as exc:
            logger.error(f"Completion failed for session {session.id}: {exc}")
            await self._publish_quietly(
                session.id, ErrorEvent(code=_error_code(exc), message=COMPLETION_FAILED_MESSAGE)
            )
            assistant_message = await self.repository.create_message(
                session.id, MessageRole.ASSISTANT, COMPLETION_FAILED_MESSAGE, is_error=True
            )
            await self.repository.touch_session(session.id)
            return PipelineResult(
                user_message=user_message,
                assistant_message=assistant_message,
                outcome=PipelineOutcome.RECOVERED,
                input_safety=input_safety,
                ocr_result=ocr_result,
            )

        output_safety = check_response_safety(completion.content)
        reply = completion.content
        outcome = PipelineOutcome.COMPLETED
        if not output_safety.safe:
            logger.warning(
                f"Filtered unsafe model response in session {session.id} ({output_safety.reason})"
            )
            reply = get_filtered_response_message()
            outcome = PipelineOutcome.FILTERED
            await self._record(
                session,
                output_safety,
                {"reason": output_safety.reason, "source": "response", "model": completion.model},
            )
            await self._publish_quietly(
                session.id,
                ErrorEvent(code=SafetyEventKind.UNSAFE_RESPONSE_FILTERED.value, message=reply),
            )

        assistant_message = await self.repository.create_message(
            session.id, MessageRole.ASSISTANT, reply
        )
        await self.repository.touch_session(session.id)

        if self.publisher is not None and outcome is PipelineOutcome.COMPLETED:
            usage = completion.usage
            await self.publisher.publish(
                session.id,
                DoneEvent(
                    usage=StreamUsage(
                        input_tokens=usage.prompt_tokens, output_tokens=usage.completion_tokens
                    )
                    if usage
                    else None
                ),
            )

        return PipelineResult(
            user_message=user_message,
            assistant_message=assistant_message,
            outcome=outcome,
            input_safety=input_safety,
            output_safety=output_safety,
            ocr_result=ocr_result,
            usage=completion.usage,
        )

    # ----------------------------------------------------------------- stages
    async def _block(
        self,
        session: ChatSession,
        content: str,
        source_type: SourceType,
        verdict: SafetyCheckResult,
        *,
        source: str,
        ocr_result: OCRResult | None = None,
    ) -> PipelineResult:
        logger.warning(
            f"Blocked {source} in session {session.id} for user {session.user_id} ({verdict.reason})"
        )
        user_message = await self.repository.create_message(
            session.id, MessageRole.USER, content, source_type=source_type, flagged=True
        )
        reply = get_blocked_message(verdict.reason)
        assistant_message = await self.repository.create_message(
            session.id, MessageRole.ASSISTANT, reply, flagged=True
        )
        await self.repository.touch_session(session.id)
        await self._record(session, verdict, {"reason": verdict.reason, "source": source})
        await self._publish_quietly(
            session.id, ErrorEvent(code=SafetyEventKind.BLOCKED_PROMPT.value, message=reply)
        )
        return PipelineResult(
            user_message=user_message,
            assistant_message=assistant_message,
            outcome=PipelineOutcome.BLOCKED,
            input_safety=verdict,
            ocr_result=ocr_result,
        )

    async def _resolve_template(
        self, session: ChatSession, template_id: str | None
    ) -> TemplatePreset | None:
        if template_id:
            template = await self.repository.get_template(template_id, session.user_id)
            if template is not None:
                return template
            logger.warning(
                f"User {session.user_id} requested template {template_id} they do not own"
            )
            await self.safety_recorder.record(
                SafetyEvent(
                    user_id=session.user_id,
                    session_id=session.id,
                    event_kind=SafetyEventKind.ACCESS_VIOLATION,
                    severity=Severity.MEDIUM,
                    details=json.dumps(
                        {"reason": "template_not_owned", "template_id": template_id},
                        ensure_ascii=False,
                    ),
                )
            )
        return await self.repository.get_default_template(session.user_id)

    async def _history(self, session_id: str) -> list[ChatMessage]:
        recent = await self.repository.list_recent_messages(session_id, self.max_context_messages)
        return [m for m in recent if not m.flagged and not m.is_error]

    async def _complete(
        self,
        session_id: str,
        prompt: list[PromptMessage],
        abort: asyncio.Event | None,
    ) -> CompletionResult:
        if self.publisher is None:
            return await self.completion_client.complete(
                prompt, self.completion_options, abort=abort
            )

        # A delta is published only if the text so far, including it, passes the
        # output check. Once it fails, the rest of the stream is dropped and the
        # caller's output check turns the reply into the filtered message.
        parts: list[str] = []
        usage: CompletionUsage | None = None
        stream = self.completion_client.stream(prompt, self.completion_options, abort=abort)
        async with contextlib.aclosing(stream):
            async for chunk in stream:
                if chunk.usage is not None:
                    usage = chunk.usage
                if not chunk.text:
                    continue
                parts.append(chunk.text)
                if not check_response_safety("".join(parts)).safe:
                    logger.warning(f"Stopped streaming unsafe reply in session {session_id}")
                    break
                await self.publisher.publish(session_id, TokenEvent(text=chunk.text))
        content = "".join(parts)
        if not content:
            raise CompletionServiceError("Empty response from completion stream")
        return CompletionResult(
            content=content,
            model=self.completion_options.model or "default",
            usage=usage,
        )

    async def _record(
        self, session: ChatSession, verdict: SafetyCheckResult, details: dict[str, object]
    ) -> None:
        if verdict.event_kind is None:
            return
        await self.safety_recorder.record(
            SafetyEvent(
                user_id=session.user_id,
                session_id=session.id,
                event_kind=verdict.event_kind,
                severity=verdict.severity,
                details=json.dumps(details, ensure_ascii=False),
            )
        )

    async def _publish_quietly(self, session_id: str, event: StreamEvent) -> None:
        if self.publisher is None:
            return
        try:
            await self.publisher.publish(session_id, event)
        except Exception as exc:  # noqa: BLE001 - the reply is already decided
            logger.opt(exception=exc).warning(
                f"Failed to publish {event.type} event for session {session_id}"
            )


def merge_ocr_text(content: str, ocr_text: str) -> str:
    """Append recognised image text to the typed message."""
    ocr_text = ocr_text.strip()
    content = content.strip()
    if not ocr_text:
        return content
    if not content:
        return f"{OCR_TEXT_HEADER}\n{ocr_text}"
    return f"{content}\n\n{OCR_TEXT_HEADER}\n{ocr_text}"


def _error_code(exc: Exception) -> str:
    status = getattr(exc, "status_code", None)
    if status == 429:
        return "rate_limit"
    if status == 408 or isinstance(exc, httpx.TimeoutException):
        return "timeout"
    if isinstance(exc.__cause__, httpx.TimeoutException):
        return "timeout"
    return "llm_error"
