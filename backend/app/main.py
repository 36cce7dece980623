from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from arq.connections import ArqRedis, create_pool
from fastapi import (
    Depends,
    FastAPI,
    File,
    Form,
    Header,
    HTTPException,
    Request,
    UploadFile,
    WebSocket,
    WebSocketDisconnect,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from loguru import logger

from app.schemas import (
    ChatCreateRequest,
    ChatResponse,
    MessageExchangeResponse,
    MessageQueuedResponse,
    MessageRequest,
    TemplateCreateRequest,
)
from app.settings import settings
from app.store import RedisChatStore
from tutor.llm import CompletionCancelled, CompletionClient
from tutor.models import ChatMessage, ChatSession, TemplatePreset
from tutor.ocr import OCRError, create_ocr_extractor
from tutor.pipeline import MessagePipeline
from tutor.safety_events import SafetyEventRecorder

OCR_FAILED_DETAIL = (
    "Не удалось распознать текст на изображении. "
    "Попробуй сфотографировать задачу чётче или введи её текстом."
)

MAX_IMAGE_BYTES = 10 * 1024 * 1024


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifecycle: startup and shutdown."""
    app.state.redis = await create_pool(settings.redis_settings)
    app.state.completion_client = CompletionClient()
    app.state.ocr_extractor = create_ocr_extractor()
    app.state.safety_recorder = SafetyEventRecorder(RedisChatStore(app.state.redis))
    logger.info(f"OCR chain: {' -> '.join(app.state.ocr_extractor.provider_names)}")
    yield
    await app.state.safety_recorder.aclose()
    await app.state.completion_client.aclose()
    redis: ArqRedis | None = getattr(app.state, "redis", None)
    if redis:
        await redis.aclose()


app = FastAPI(title="StudentHelper Chat API", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
    allow_credentials=True,
)


@app.exception_handler(OCRError)
async def ocr_error_handler(request: Request, exc: OCRError) -> JSONResponse:
    logger.warning(f"OCR failed for {request.url.path}: {[a.provider for a in exc.attempts]}")
    return JSONResponse(status_code=422, content={"detail": OCR_FAILED_DETAIL})


@app.exception_handler(CompletionCancelled)
async def cancelled_handler(request: Request, exc: CompletionCancelled) -> Response:
    # Client Closed Request; nobody is listening for the body.
    return Response(status_code=499)


async def redis_dep() -> ArqRedis:
    redis: ArqRedis | None = getattr(app.state, "redis", None)
    if not redis:
        raise HTTPException(status_code=500, detail="Redis connection missing")
    return redis


async def store_dep(redis: ArqRedis = Depends(redis_dep)) -> RedisChatStore:
    return RedisChatStore(redis)


async def user_dep(x_user_id: str = Header(..., min_length=1)) -> str:
    return x_user_id


async def pipeline_dep(store: RedisChatStore = Depends(store_dep)) -> MessagePipeline:
    return MessagePipeline(
        repository=store,
        completion_client=app.state.completion_client,
        ocr_extractor=app.state.ocr_extractor,
        safety_recorder=app.state.safety_recorder,
    )


async def _owned_session(store: RedisChatStore, chat_id: str, user_id: str) -> ChatSession:
    session = await store.get_session(chat_id, user_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Chat not found.")
    return session


@app.post("/api/chats", response_model=ChatResponse)
async def create_chat(
    body: ChatCreateRequest,
    user_id: str = Depends(user_dep),
    store: RedisChatStore = Depends(store_dep),
) -> ChatResponse:
    session = await store.create_session(user_id, title=body.title, mode=body.mode)
    return ChatResponse.model_validate(session.model_dump())


@app.get("/api/chats", response_model=list[ChatResponse])
async def list_chats(
    user_id: str = Depends(user_dep),
    store: RedisChatStore = Depends(store_dep),
) -> list[ChatResponse]:
    sessions = await store.list_sessions(user_id)
    return [ChatResponse.model_validate(session.model_dump()) for session in sessions]


@app.get("/api/chats/{chat_id}/messages", response_model=list[ChatMessage])
async def list_chat_messages(
    chat_id: str,
    user_id: str = Depends(user_dep),
    store: RedisChatStore = Depends(store_dep),
) -> list[ChatMessage]:
    await _owned_session(store, chat_id, user_id)
    return await store.list_messages(chat_id)


@app.post("/api/chats/{chat_id}/messages", response_model=MessageExchangeResponse)
async def send_message(
    chat_id: str,
    body: MessageRequest,
    request: Request,
    user_id: str = Depends(user_dep),
    store: RedisChatStore = Depends(store_dep),
    pipeline: MessagePipeline = Depends(pipeline_dep),
) -> MessageExchangeResponse:
    session = await _owned_session(store, chat_id, user_id)
    async with _abort_on_disconnect(request) as abort:
        result = await pipeline.handle_message(
            session, body.content, template_id=body.template_id, abort=abort
        )
    return MessageExchangeResponse.from_result(result)


@app.post("/api/chats/{chat_id}/messages/image", response_model=MessageExchangeResponse)
async def send_image_message(
    chat_id: str,
    request: Request,
    file: UploadFile = File(...),
    content: str = Form(default=""),
    template_id: str | None = Form(default=None),
    user_id: str = Depends(user_dep),
    store: RedisChatStore = Depends(store_dep),
    pipeline: MessagePipeline = Depends(pipeline_dep),
) -> MessageExchangeResponse:
    if file.content_type and not file.content_type.startswith("image/"):
        raise HTTPException(status_code=400, detail="Only image uploads are supported.")
    image = await file.read()
    await file.close()
    if not image:
        raise HTTPException(status_code=400, detail="Uploaded image is empty.")
    if len(image) > MAX_IMAGE_BYTES:
        raise HTTPException(status_code=413, detail="Image is too large.")

    session = await _owned_session(store, chat_id, user_id)
    async with _abort_on_disconnect(request) as abort:
        result = await pipeline.handle_message(
            session, content, image=image, template_id=template_id or None, abort=abort
        )
    return MessageExchangeResponse.from_result(result)


@app.post("/api/chats/{chat_id}/messages/async", response_model=MessageQueuedResponse)
async def enqueue_message(
    chat_id: str,
    body: MessageRequest,
    user_id: str = Depends(user_dep),
    store: RedisChatStore = Depends(store_dep),
    redis: ArqRedis = Depends(redis_dep),
) -> MessageQueuedResponse:
    await _owned_session(store, chat_id, user_id)
    job = await redis.enqueue_job(
        "generate_reply",
        session_id=chat_id,
        user_id=user_id,
        content=body.content,
        template_id=body.template_id,
    )
    return MessageQueuedResponse(
        session_id=chat_id,
        job_id=job.job_id if job else None,
        channel=settings.chat_channel(chat_id),
    )


@app.post("/api/templates", response_model=TemplatePreset)
async def create_template(
    body: TemplateCreateRequest,
    user_id: str = Depends(user_dep),
    store: RedisChatStore = Depends(store_dep),
) -> TemplatePreset:
    return await store.create_template(TemplatePreset(user_id=user_id, **body.model_dump()))


@app.get("/api/templates", response_model=list[TemplatePreset])
async def list_templates(
    user_id: str = Depends(user_dep),
    store: RedisChatStore = Depends(store_dep),
) -> list[TemplatePreset]:
    return await store.list_templates(user_id)


@app.post("/api/templates/{template_id}/default", response_model=TemplatePreset)
async def make_default_template(
    template_id: str,
    user_id: str = Depends(user_dep),
    store: RedisChatStore = Depends(store_dep),
) -> TemplatePreset:
    template = await store.set_default_template(template_id, user_id)
    if template is None:
        raise HTTPException(status_code=404, detail="Template not found.")
    return template


@app.websocket("/ws/chats/{chat_id}")
async def chat_events(websocket: WebSocket, chat_id: str) -> None:
    await websocket.accept()
    redis: ArqRedis | None = getattr(app.state, "redis", None)
    if not redis:
        await websocket.close(code=1011)
        return

    pubsub = redis.pubsub()
    channel = settings.chat_channel(chat_id)
    await pubsub.subscribe(channel)

    async def sender() -> None:
        try:
            async for message in pubsub.listen():
                if message["type"] != "message":
                    continue
                payload = message["data"]
                if isinstance(payload, bytes):
                    payload = payload.decode("utf-8")
                await websocket.send_text(payload)
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()  # type: ignore[no-untyped-call]

    send_task = asyncio.create_task(sender())
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        send_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await send_task


@asynccontextmanager
async def _abort_on_disconnect(request: Request) -> AsyncIterator[asyncio.Event]:
    """Set the yielded event once the HTTP client goes away."""
    abort = asyncio.Event()

    async def watch() -> None:
        while not await request.is_disconnected():
            await asyncio.sleep(0.5)
        logger.info(f"Client disconnected from {request.url.path}; aborting generation")
        abort.set()

    watcher = asyncio.create_task(watch())
    try:
        yield abort
    finally:
        watcher.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await watcher
