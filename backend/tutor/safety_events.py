"""
Background writer for safety audit events.

A logging outage must never block or fail message delivery, so writes go
through a bounded queue drained by one worker task. ``record`` waits for its
own write to finish, up to a timeout, which keeps tests deterministic. It
never raises: failures and timeouts are logged and collected on
:attr:`SafetyEventRecorder.failures`.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from typing import Protocol

from loguru import logger

from tutor import config
from tutor.models import SafetyEvent


class SafetyEventSink(Protocol):
    async def create_safety_event(self, event: SafetyEvent) -> None: ...


@dataclass(slots=True)
class SafetyEventFailure:
    event: SafetyEvent
    error: str


class SafetyEventRecorder:
    def __init__(
        self,
        sink: SafetyEventSink,
        *,
        max_queue_size: int | None = None,
        timeout: float | None = None,
    ) -> None:
        self._sink = sink
        self._max_queue_size = max_queue_size or config.SAFETY_EVENT_QUEUE_SIZE
        self._timeout = timeout or config.SAFETY_EVENT_TIMEOUT_SECONDS
        self._queue: asyncio.Queue[tuple[SafetyEvent, asyncio.Future[bool]]] | None = None
        self._worker: asyncio.Task[None] | None = None
        self.failures: list[SafetyEventFailure] = []

    async def record(self, event: SafetyEvent) -> bool:
        """Queue ``event`` and wait for the write. Returns ``False`` if it was not stored."""
        queue = self._ensure_worker()
        future: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        try:
            queue.put_nowait((event, future))
        except asyncio.QueueFull:
            logger.warning(
                f"Safety event queue is full; dropping {event.event_kind.value} event for user {event.user_id}"
            )
            self.failures.append(SafetyEventFailure(event=event, error="queue full"))
            return False
        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.error(
                f"[safety] Timed out after {self._timeout}s logging {event.event_kind.value} event for user {event.user_id}"
            )
            self.failures.append(SafetyEventFailure(event=event, error="timeout"))
            return False

    async def aclose(self) -> None:
        if self._queue is not None:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._queue.join(), timeout=self._timeout)
        if self._worker is not None:
            self._worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker
        self._worker = None
        self._queue = None

    def _ensure_worker(self) -> asyncio.Queue[tuple[SafetyEvent, asyncio.Future[bool]]]:
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self._max_queue_size)
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._drain(self._queue))
        return self._queue

    async def _drain(
        self, queue: asyncio.Queue[tuple[SafetyEvent, asyncio.Future[bool]]]
    ) -> None:
        while True:
            event, future = await queue.get()
            stored = False
            try:
                await self._sink.create_safety_event(event)
                stored = True
            except Exception as exc:  # noqa: BLE001 - audit writes never fail the caller
                logger.opt(exception=exc).error(
                    f"[safety] Failed to log {event.event_kind.value} event for user {event.user_id}"
                )
                self.failures.append(SafetyEventFailure(event=event, error=str(exc)))
            finally:
                queue.task_done()
                if not future.done():
                    future.set_result(stored)
