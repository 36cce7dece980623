from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import TypeVar

from arq.connections import ArqRedis
from loguru import logger
from pydantic import BaseModel

from app.settings import settings
from tutor.models import (
    ChatMessage,
    ChatSession,
    ConversationMode,
    MessageRole,
    SafetyEvent,
    SourceType,
    TemplatePreset,
)

ModelT = TypeVar("ModelT", bound=BaseModel)


def _now() -> datetime:
    return datetime.now(UTC)


class RedisChatStore:
    """Chat persistence on Redis.

    Entities are stored as JSON strings. Per-user sessions and templates are
    indexed by sorted sets scored by timestamp; messages of a session are kept
    in insertion order in a list.
    """

    def __init__(self, redis: ArqRedis) -> None:
        self.redis = redis

    # --------------------------------------------------------------- sessions
    async def create_session(
        self,
        user_id: str,
        title: str = "Новый чат",
        mode: ConversationMode = ConversationMode.FAST,
    ) -> ChatSession:
        session = ChatSession(user_id=user_id, title=title, mode=mode)
        await self._save_session(session)
        logger.info(f"Created chat session {session.id} for user {user_id}")
        return session

    async def get_session(self, session_id: str, user_id: str) -> ChatSession | None:
        session = await self._load(settings.session_key(session_id), ChatSession)
        if session is None or session.user_id != user_id:
            return None
        return session

    async def list_sessions(self, user_id: str, limit: int = 100) -> list[ChatSession]:
        ids = await self.redis.zrevrange(settings.user_sessions_key(user_id), 0, limit - 1)
        sessions: list[ChatSession] = []
        for session_id in ids:
            session = await self._load(settings.session_key(_decode(session_id)), ChatSession)
            if session is not None:
                sessions.append(session)
        return sessions

    async def touch_session(self, session_id: str) -> None:
        session = await self._load(settings.session_key(session_id), ChatSession)
        if session is None:
            return
        await self._save_session(session.model_copy(update={"updated_at": _now()}))

    async def _save_session(self, session: ChatSession) -> None:
        await self.redis.set(settings.session_key(session.id), session.model_dump_json())
        await self.redis.zadd(
            settings.user_sessions_key(session.user_id),
            {session.id: session.updated_at.timestamp()},
        )

    # --------------------------------------------------------------- messages
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
        await self.redis.set(settings.message_key(message.id), message.model_dump_json())
        await self.redis.rpush(settings.session_messages_key(session_id), message.id)
        return message

    async def list_messages(self, session_id: str) -> list[ChatMessage]:
        return await self._messages(session_id, 0, -1)

    async def list_recent_messages(self, session_id: str, limit: int) -> list[ChatMessage]:
        if limit <= 0:
            return []
        return await self._messages(session_id, -limit, -1)

    async def _messages(self, session_id: str, start: int, end: int) -> list[ChatMessage]:
        ids = await self.redis.lrange(settings.session_messages_key(session_id), start, end)
        messages: list[ChatMessage] = []
        for message_id in ids:
            message = await self._load(settings.message_key(_decode(message_id)), ChatMessage)
            if message is not None:
                messages.append(message)
        return messages

    # -------------------------------------------------------------- templates
    async def create_template(self, template: TemplatePreset) -> TemplatePreset:
        if template.is_default:
            await self._clear_default(template.user_id)
        await self._save_template(template)
        return template

    async def get_template(self, template_id: str, user_id: str) -> TemplatePreset | None:
        template = await self._load(settings.template_key(template_id), TemplatePreset)
        if template is None or template.user_id != user_id:
            return None
        return template

    async def list_templates(self, user_id: str) -> list[TemplatePreset]:
        ids = await self.redis.zrange(settings.user_templates_key(user_id), 0, -1)
        templates: list[TemplatePreset] = []
        for template_id in ids:
            template = await self._load(
                settings.template_key(_decode(template_id)), TemplatePreset
            )
            if template is not None:
                templates.append(template)
        return templates

    async def get_default_template(self, user_id: str) -> TemplatePreset | None:
        for template in await self.list_templates(user_id):
            if template.is_default:
                return template
        return None

    async def set_default_template(self, template_id: str, user_id: str) -> TemplatePreset | None:
        template = await self.get_template(template_id, user_id)
        if template is None:
            return None
        await self._clear_default(user_id)
        template = template.model_copy(update={"is_default": True, "updated_at": _now()})
        await self._save_template(template)
        return template

    async def _clear_default(self, user_id: str) -> None:
        for template in await self.list_templates(user_id):
            if template.is_default:
                await self._save_template(
                    template.model_copy(update={"is_default": False, "updated_at": _now()})
                )

    async def _save_template(self, template: TemplatePreset) -> None:
        await self.redis.set(settings.template_key(template.id), template.model_dump_json())
        await self.redis.zadd(
            settings.user_templates_key(template.user_id),
            {template.id: template.created_at.timestamp()},
        )

    # ---------------------------------------------------------- safety events
    async def create_safety_event(self, event: SafetyEvent) -> None:
        await self.redis.lpush(
            settings.user_safety_events_key(event.user_id), event.model_dump_json()
        )

    async def list_safety_events(self, user_id: str, limit: int = 100) -> list[SafetyEvent]:
        raw = await self.redis.lrange(settings.user_safety_events_key(user_id), 0, limit - 1)
        events: list[SafetyEvent] = []
        for item in raw:
            try:
                events.append(SafetyEvent.model_validate_json(_decode(item)))
            except (json.JSONDecodeError, ValueError):
                continue
        return events

    # ---------------------------------------------------------------- helpers
    async def _load(self, key: str, model: type[ModelT]) -> ModelT | None:
        data = await self.redis.get(key)
        if not data:
            return None
        try:
            return model.model_validate_json(_decode(data))
        except (json.JSONDecodeError, ValueError):
            logger.warning(f"Ignoring malformed record at {key}")
            return None


def _decode(value: bytes | str) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return value
