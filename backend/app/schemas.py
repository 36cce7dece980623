from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from tutor.models import (
    ChatMessage,
    ConversationMode,
    SafetyCheckResult,
)
from tutor.pipeline import PipelineOutcome, PipelineResult


class ChatCreateRequest(BaseModel):
    title: str = Field(default="Новый чат", min_length=1, max_length=200)
    mode: ConversationMode = ConversationMode.FAST


class ChatResponse(BaseModel):
    id: str
    title: str
    mode: ConversationMode
    created_at: datetime
    updated_at: datetime


class MessageRequest(BaseModel):
    content: str = Field(min_length=1, max_length=10_000)
    template_id: str | None = None


class MessageQueuedResponse(BaseModel):
    session_id: str
    job_id: str | None = None
    channel: str


class OCRSummary(BaseModel):
    provider: str
    confidence: float
    text: str


class MessageExchangeResponse(BaseModel):
    outcome: PipelineOutcome
    user_message: ChatMessage
    assistant_message: ChatMessage
    input_safety: SafetyCheckResult
    output_safety: SafetyCheckResult | None = None
    ocr: OCRSummary | None = None

    @classmethod
    def from_result(cls, result: PipelineResult) -> MessageExchangeResponse:
        ocr = None
        if result.ocr_result is not None:
            ocr = OCRSummary(
                provider=result.ocr_result.provider,
                confidence=result.ocr_result.confidence,
                text=result.ocr_result.text,
            )
        return cls(
            outcome=result.outcome,
            user_message=result.user_message,
            assistant_message=result.assistant_message,
            input_safety=result.input_safety,
            output_safety=result.output_safety,
            ocr=ocr,
        )


class TemplateCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    tone: str = "friendly"
    knowledge_level: str = "basic"
    output_format: str = "full"
    output_language: str = "ru"
    response_length: str = "medium"
    is_default: bool = False
