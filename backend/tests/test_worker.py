from __future__ import annotations

import pytest

from arq_worker import worker
from tutor.llm import CompletionClient
from tutor.safety_events import SafetyEventRecorder

pytestmark = pytest.mark.anyio


async def test_startup_builds_only_what_replies_need() -> None:
    ctx: dict = {"redis": object()}

    await worker.startup(ctx)
    try:
        assert isinstance(ctx["completion_client"], CompletionClient)
        assert isinstance(ctx["safety_recorder"], SafetyEventRecorder)
        assert "ocr_extractor" not in ctx
    finally:
        await worker.shutdown(ctx)
