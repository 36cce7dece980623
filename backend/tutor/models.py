from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _now() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return str(uuid4())


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class SafetyEventKind(str, Enum):
    BLOCKED_PROMPT = "blocked_prompt"
    UNSAFE_RESPONSE_FILTERED = "unsafe_response_filtered"
    WARNING_SHOWN = "warning_shown"
    ACCESS_VIOLATION = "access_violation"


class ConversationMode(str, Enum):
    FAST = "fast"
    LEARNING = "learning"


class MessageRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class SourceType(str, Enum):
    TEXT = "text"
    IMAGE = "image"


# ---------------------------------------------------------------------------
# OCR


class OCRResult(BaseModel):
    text: str = ""
    confidence: float = 0.0
    provider: str

    model_config = ConfigDict(frozen=True)

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: object) -> float:
        confidence = float(value or 0.0)  # type: ignore[arg-type]
        return max(0.0, min(1.0, confidence))


class ProviderAttempt(BaseModel):
    provider: str
    error: str | None = None
    low_confidence: bool = False
    duration_ms: int = 0

    model_config = ConfigDict(frozen=True)


# ---------------------------------------------------------------------------
# Safety


class SafetyCheckResult(BaseModel):
    safe: bool
    severity: Severity = Severity.LOW
    reason: str | None = None
    event_kind: SafetyEventKind | None = None

    model_config = ConfigDict(frozen=True)


class SafetyEvent(BaseModel):
    id: str = Field(default_factory=_new_id)
    user_id: str
    session_id: str | None = None
    event_kind: SafetyEventKind
    severity: Severity
    details: str | None = None
    created_at: datetime = Field(default_factory=_now)


# ---------------------------------------------------------------------------
# Chat entities (owned by the persistence collaborator)


class TemplatePreset(BaseModel):
    id: str = Field(default_factory=_new_id)
    user_id: str
    name: str
    tone: str = "friendly"
    knowledge_level: str = "basic"
    output_format: str = "full"
    output_language: str = "ru"
    response_length: str = "medium"
    is_default: bool = False
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    model_config = ConfigDict(extra="ignore")


class ChatSession(BaseModel):
    id: str = Field(default_factory=_new_id)
    user_id: str
    title: str
    mode: ConversationMode = ConversationMode.FAST
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    model_config = ConfigDict(extra="ignore")


class ChatMessage(BaseModel):
    id: str = Field(default_factory=_new_id)
    session_id: str
    role: MessageRole
    content: str
    source_type: SourceType = SourceType.TEXT
    flagged: bool = False
    is_error: bool = False
    created_at: datetime = Field(default_factory=_now)

    model_config = ConfigDict(extra="ignore")


# ---------------------------------------------------------------------------
# Completion


class CompletionUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class CompletionResult(BaseModel):
    content: str
    model: str
    usage: CompletionUsage | None = None


# ---------------------------------------------------------------------------
# Real-time stream events


class StreamUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0


class TokenEvent(BaseModel):
    type: Literal["token"] = "token"
    v: Literal[1] = 1
    text: str


class DoneEvent(BaseModel):
    type: Literal["done"] = "done"
    v: Literal[1] = 1
    usage: StreamUsage | None = None


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    v: Literal[1] = 1
    code: str
    message: str


StreamEvent = TokenEvent | DoneEvent | ErrorEvent
