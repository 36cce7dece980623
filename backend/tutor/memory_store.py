"""Process-local chat store used by the CLI and the test-suite."""

from __future__ import annotations

from datetime import UTC, datetime

from tutor.models import (
    ChatMessage,
    ChatSession,
    ConversationMode,
    MessageRole,
    SafetyEvent,
    SourceType,
    TemplatePreset,
)


class InMemoryChatStore:
    def __init__(self) -> None:
        self.sessions: dict[str, ChatSession] = {}
        self.messages: dict[str, list[ChatMessage]] = {}
        self.templates: dict[str, TemplatePreset] = {}
        self.safety_events: list[SafetyEvent] = []

    async def create_session(
        self,
        user_id: str,
        title: str = "Новый чат",
        mode: ConversationMode = ConversationMode.FAST,
    ) -> ChatSession:
        session = ChatSession(user_id=user_id, title=title, mode=mode)
        self.sessions[session.id] = session
        self.messages[session.id] = []
        return session

    async def get_session(self, session_id: str, user_id: str) -> ChatSession | None:
        session = self.sessions.get(session_id)
        if session is None or session.user_id != user_id:
            return None
        return session

    async def touch_session(self, session_id: str) -> None:
        session = self.sessions.get(session_id)
        if session is not None:
            self.sessions[session_id] = session.model_copy(
                update={"updated_at": datetime.now(UTC)}
            )

    async def create_message(
        self,
        session_id: str,
        role: MessageRole,
        content: str,
        *,
        source_type: SourceType = SourceType.TEXT,
        flagged: bool = False,
        is_error: bool = False,
    ) -> ChatMessage:
        message = ChatMessage(
            session_id=session_id,
            role=role,
            content=content,
            source_type=source_type,
            flagged=flagged,
            is_error=is_error,
        )
        self.messages.setdefault(session_id, []).append(message)
        return message

    async def list_messages(self, session_id: str) -> list[ChatMessage]:
        return list(self.messages.get(session_id, []))

    async def list_recent_messages(self, session_id: str, limit: int) -> list[ChatMessage]:
        return list(self.messages.get(session_id, [])[-limit:])

    async def create_template(self, template: TemplatePreset) -> TemplatePreset:
        if template.is_default:
            self._clear_default(template.user_id)
        self.templates[template.id] = template
        return template

    async def get_template(self, template_id: str, user_id: str) -> TemplatePreset | None:
        template = self.templates.get(template_id)
        if template is None or template.user_id != user_id:
            return None
        return template

    async def get_default_template(self, user_id: str) -> TemplatePreset | None:
        for template in self.templates.values():
            if template.user_id == user_id and template.is_default:
                return template
        return None

    async def create_safety_event(self, event: SafetyEvent) -> None:
        self.safety_events.append(event)

    def _clear_default(self, user_id: str) -> None:
        for template_id, template in self.templates.items():
            if template.user_id == user_id and template.is_default:
                self.templates[template_id] = template.model_copy(update={"is_default": False})
