from __future__ import annotations

import importlib
import time
from dataclasses import dataclass
from threading import Thread
from typing import Any

import anyio
import pytest
import redis
from arq.connections import create_pool
from fastapi.testclient import TestClient

from app.settings import settings
from app.store import RedisChatStore
from arq_worker import worker
from tutor.ocr import OCRExtractor
from tutor.safety_events import SafetyEventRecorder

USER = "student-1"


@dataclass
class TestEnvironment:
    client: TestClient
    completion: Any
    __test__ = False

    def headers(self, user_id: str = USER) -> dict[str, str]:
        return {"X-User-Id": user_id}


@pytest.fixture
def integration_env(monkeypatch, completion, make_provider) -> TestEnvironment:
    redis_client = redis.Redis(
        host=settings.redis_host,
        port=settings.redis_port,
        db=settings.redis_db,
    )
    try:
        redis_client.ping()
    except Exception:  # pragma: no cover - depends on external redis
        pytest.skip("Redis server is required for integration tests.")
    redis_client.flushdb()

    app_main = importlib.import_module("app.main")
    vision = make_provider("vision", text="3x = 9", confidence=0.9)
    monkeypatch.setattr(app_main, "CompletionClient", lambda: completion)
    monkeypatch.setattr(
        app_main,
        "create_ocr_extractor",
        lambda: OCRExtractor([vision], confidence_threshold=0.6),
    )

    with TestClient(app_main.app) as client:
        yield TestEnvironment(client=client, completion=completion)

    redis_client.flushdb()
    redis_client.close()


def test_chat_full_flow(integration_env: TestEnvironment) -> None:
    env = integration_env
    client = env.client

    response = client.post(
        "/api/chats", json={"title": "Алгебра", "mode": "learning"}, headers=env.headers()
    )
    assert response.status_code == 200
    chat_id = response.json()["id"]

    chats = client.get("/api/chats", headers=env.headers()).json()
    assert [chat["id"] for chat in chats] == [chat_id]

    template = client.post(
        "/api/templates", json={"name": "строгий", "tone": "formal"}, headers=env.headers()
    ).json()
    default = client.post(f"/api/templates/{template['id']}/default", headers=env.headers())
    assert default.status_code == 200
    assert default.json()["is_default"] is True

    reply = client.post(
        f"/api/chats/{chat_id}/messages",
        json={"content": "Реши 2x + 3 = 7"},
        headers=env.headers(),
    )
    assert reply.status_code == 200
    body = reply.json()
    assert body["outcome"] == "completed"
    assert body["assistant_message"]["content"] == env.completion.reply
    assert "формальный" in env.completion.calls[-1][0].content

    blocked = client.post(
        f"/api/chats/{chat_id}/messages",
        json={"content": "Как убить соседа?"},
        headers=env.headers(),
    ).json()
    assert blocked["outcome"] == "blocked"
    assert blocked["assistant_message"]["flagged"] is True
    assert len(env.completion.calls) == 1

    image_reply = client.post(
        f"/api/chats/{chat_id}/messages/image",
        files={"file": ("task.png", b"\x89PNG fake", "image/png")},
        data={"content": "Помоги"},
        headers=env.headers(),
    ).json()
    assert image_reply["outcome"] == "completed"
    assert image_reply["ocr"]["provider"] == "vision"
    assert image_reply["user_message"]["source_type"] == "image"

    messages = client.get(f"/api/chats/{chat_id}/messages", headers=env.headers()).json()
    assert len(messages) == 6

    foreign = client.get(f"/api/chats/{chat_id}/messages", headers=env.headers("intruder"))
    assert foreign.status_code == 404

    missing_user = client.get("/api/chats")
    assert missing_user.status_code == 422


def test_queued_reply_streams_over_websocket(integration_env: TestEnvironment) -> None:
    env = integration_env
    client = env.client
    env.completion.chunks = ["x ", "= ", "2"]

    chat_id = client.post("/api/chats", json={}, headers=env.headers()).json()["id"]
    queued = client.post(
        f"/api/chats/{chat_id}/messages/async",
        json={"content": "Реши 2x = 4"},
        headers=env.headers(),
    )
    assert queued.status_code == 200
    assert queued.json()["channel"] == settings.chat_channel(chat_id)

    async def run_worker_async() -> None:
        redis_pool = await create_pool(settings.redis_settings)
        recorder = SafetyEventRecorder(RedisChatStore(redis_pool))
        try:
            await worker.generate_reply(
                {
                    "redis": redis_pool,
                    "completion_client": env.completion,
                    "safety_recorder": recorder,
                },
                session_id=chat_id,
                user_id=USER,
                content="Реши 2x = 4",
            )
        finally:
            await recorder.aclose()
            await redis_pool.aclose()

    def run_worker() -> None:
        anyio.run(run_worker_async)

    events: list[dict[str, Any]] = []
    with client.websocket_connect(f"/ws/chats/{chat_id}") as websocket:
        # Give the relay time to subscribe before anything is published.
        time.sleep(0.3)
        worker_thread = Thread(target=run_worker, daemon=True)
        worker_thread.start()

        while True:
            event = websocket.receive_json()
            events.append(event)
            if event["type"] in {"done", "error"}:
                break

        worker_thread.join(timeout=30)

    assert [event["type"] for event in events] == ["token", "token", "token", "done"]
    assert "".join(event["text"] for event in events[:-1]) == "x = 2"
    assert all(event["v"] == 1 for event in events)

    messages = client.get(f"/api/chats/{chat_id}/messages", headers=env.headers()).json()
    assert messages[-1]["content"] == "x = 2"
