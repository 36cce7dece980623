from __future__ import annotations

import sys
from datetime import timedelta
from typing import Any

from arq.connections import ArqRedis, RedisSettings
from arq.typing import WorkerSettingsBase
from arq.worker import run_worker
from loguru import logger

from app.settings import settings
from app.store import RedisChatStore
from app.stream import RedisStreamPublisher
from tutor.llm import CompletionClient
from tutor.models import ErrorEvent
from tutor.pipeline import MessagePipeline
from tutor.safety_events import SafetyEventRecorder


async def startup(ctx: dict[str, Any]) -> None:
    logger.remove()
    logger.add(sys.stderr, level=settings.log_level)
    logger.info("Starting up arq worker")
    ctx["completion_client"] = CompletionClient()
    ctx["safety_recorder"] = SafetyEventRecorder(RedisChatStore(ctx["redis"]))


async def generate_reply(
    ctx: dict[str, Any],
    session_id: str,
    user_id: str,
    content: str,
    template_id: str | None = None,
) -> str | None:
    """Run the pipeline for one queued message, streaming tokens over pub/sub."""
    redis: ArqRedis = ctx["redis"]
    store = RedisChatStore(redis)
    publisher = RedisStreamPublisher(redis)

    session = await store.get_session(session_id, user_id)
    if session is None:
        logger.error(f"Session {session_id} not found for user {user_id}")
        await publisher.publish(
            session_id, ErrorEvent(code="session_not_found", message="Чат не найден.")
        )
        return None

    pipeline = MessagePipeline(
        repository=store,
        completion_client=ctx["completion_client"],
        safety_recorder=ctx["safety_recorder"],
        publisher=publisher,
    )
    try:
        result = await pipeline.handle_message(session, content, template_id=template_id)
    except Exception:
        logger.exception(f"Reply generation failed for session {session_id}")
        await publisher.publish(
            session_id,
            ErrorEvent(code="internal_error", message="Не удалось обработать сообщение."),
        )
        raise
    logger.info(f"Session {session_id}: reply {result.assistant_message.id} ({result.outcome.value})")
    return result.assistant_message.id


async def shutdown(ctx: dict[str, Any]) -> None:
    logger.info("Shutting down arq worker")
    recorder: SafetyEventRecorder | None = ctx.get("safety_recorder")
    if recorder is not None:
        await recorder.aclose()
    client: CompletionClient | None = ctx.get("completion_client")
    if client is not None:
        await client.aclose()


class WorkerSettings(WorkerSettingsBase):
    redis_settings: RedisSettings = settings.redis_settings
    functions = [generate_reply]
    on_shutdown = shutdown  # type: ignore[assignment]
    on_startup = startup  # type: ignore[assignment]


if __name__ == "__main__":
    run_worker(WorkerSettings, job_timeout=timedelta(minutes=5))
