from __future__ import annotations

from arq.connections import ArqRedis

from app.settings import settings
from tutor.models import StreamEvent


class RedisStreamPublisher:
    """Publishes stream events on the per-session pub/sub channel."""

    def __init__(self, redis: ArqRedis) -> None:
        self.redis = redis

    async def publish(self, session_id: str, event: StreamEvent) -> None:
        await self.redis.publish(settings.chat_channel(session_id), event.model_dump_json())
