# cerebr/api/server.py
"""
FastAPI server for the cerebr chat core:

- /chats/*       : list, create, inspect, switch and delete chats
- /chat          : send a message; the reply streams back as NDJSON snapshots
- /chat/cancel   : abort the reply being generated
- /health        : basic health check

One AppContext per process, created in the lifespan handler and shared by
all requests. Chat state errors map to explicit HTTP codes: unknown chat
404, nothing selected or a reply already running 409, storage rejected 503.
"""

import asyncio
import json
import os
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from cerebr.core.context import AppContext
from cerebr.core.errors import (
    CerebrError,
    ChatBusyError,
    NoActiveChatError,
    NotFoundError,
    StorageFailure,
)
from cerebr.core.messages import WebpageInfo
from cerebr.memory.models import Chat
from cerebr.memory.repository import DEFAULT_CHAT_TITLE
from cerebr.utils.logging import get_logger

logger = get_logger(__name__)

ContextFactory = Callable[[], AppContext]

# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class ChatSummary(BaseModel):
    id: str
    title: str
    created_at: str
    updated_at: str
    message_count: int
    current: bool = False


class ChatDetail(ChatSummary):
    messages: List[Dict[str, Any]] = Field(default_factory=list)


class CreateChatRequest(BaseModel):
    title: Optional[str] = Field(default=None, description="Title; defaults to 'New chat'.")
    switch: bool = Field(default=True, description="Make the new chat the current one.")


class WebpageModel(BaseModel):
    title: str = ""
    url: str = ""
    content: str = ""


class SendMessageRequest(BaseModel):
    message: str = Field(default="", description="User message in plain text; may be empty when images are attached.")
    images: List[str] = Field(default_factory=list, description="Image data URLs to attach.")
    webpage: Optional[WebpageModel] = Field(default=None, description="Page the user is reading.")


class CancelResponse(BaseModel):
    cancelled: bool


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _summary(chat: Chat, current_id: Optional[str]) -> ChatSummary:
    return ChatSummary(
        id=chat.id,
        title=chat.title,
        created_at=chat.created_at,
        updated_at=chat.updated_at,
        message_count=len(chat.messages),
        current=chat.id == current_id,
    )


def _detail(chat: Chat, current_id: Optional[str]) -> ChatDetail:
    return ChatDetail(
        **_summary(chat, current_id).model_dump(),
        messages=[m.to_dict() for m in chat.messages],
    )


def _http_error(tag: str, request_id: str, e: Exception) -> HTTPException:
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (NoActiveChatError, ChatBusyError)):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, StorageFailure):
        logger.error("[%s] request_id=%s storage failure: %s", tag, request_id, e)
        return HTTPException(status_code=503, detail="Chat storage is unavailable.")
    if isinstance(e, ValueError):
        return HTTPException(status_code=400, detail=str(e))
    logger.error("[%s] request_id=%s unexpected error: %r", tag, request_id, e)
    return HTTPException(status_code=500, detail=f"Unexpected error in {tag}.")


def _ctx(request: Request) -> AppContext:
    return request.app.state.ctx


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(context_factory: Optional[ContextFactory] = None) -> FastAPI:
    factory = context_factory or AppContext.from_env

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Build, restore and finally flush the shared context."""
        ctx = factory()
        await ctx.initialize()
        app.state.ctx = ctx
        try:
            yield
        finally:
            await ctx.dispose()

    app = FastAPI(
        title="Cerebr Chat API",
        description="Local API for the cerebr chat persistence and streaming core.",
        version="0.1.0",
        lifespan=lifespan,
    )

    @app.get("/health")
    async def health_check(request: Request) -> dict:
        ctx = _ctx(request)
        return {
            "status": "ok",
            "chats": len(ctx.manager.chats),
            "current_chat_id": ctx.manager.current_chat_id,
            "streaming": ctx.chat.busy,
            "migration_complete": ctx.manager.migration_complete.is_set(),
        }

    # ---------- chats ----------

    @app.get("/chats", response_model=List[ChatSummary])
    async def list_chats(request: Request) -> List[ChatSummary]:
        manager = _ctx(request).manager
        return [_summary(c, manager.current_chat_id) for c in manager.get_all_chats()]

    @app.post("/chats", response_model=ChatDetail)
    async def create_chat(req: CreateChatRequest, request: Request) -> ChatDetail:
        request_id = str(uuid.uuid4())
        manager = _ctx(request).manager
        chat = manager.create_new_chat((req.title or "").strip() or DEFAULT_CHAT_TITLE)
        if req.switch:
            try:
                await manager.switch_chat(chat.id)
            except CerebrError as e:
                raise _http_error("create_chat", request_id, e)
        logger.info("[create_chat] request_id=%s chat_id=%s switch=%s", request_id, chat.id, req.switch)
        return _detail(chat, manager.current_chat_id)

    @app.get("/chats/current", response_model=ChatDetail)
    async def current_chat(request: Request) -> ChatDetail:
        manager = _ctx(request).manager
        chat = manager.get_current_chat()
        if chat is None:
            raise HTTPException(status_code=409, detail=str(NoActiveChatError()))
        return _detail(chat, manager.current_chat_id)

    @app.get("/chats/{chat_id}", response_model=ChatDetail)
    async def get_chat(chat_id: str, request: Request) -> ChatDetail:
        manager = _ctx(request).manager
        chat = manager.get_chat(chat_id)
        if chat is None:
            raise HTTPException(status_code=404, detail=str(NotFoundError(chat_id)))
        return _detail(chat, manager.current_chat_id)

    @app.post("/chats/{chat_id}/switch", response_model=ChatDetail)
    async def switch_chat(chat_id: str, request: Request) -> ChatDetail:
        request_id = str(uuid.uuid4())
        manager = _ctx(request).manager
        try:
            chat = await manager.switch_chat(chat_id)
        except CerebrError as e:
            raise _http_error("switch_chat", request_id, e)
        logger.info("[switch_chat] request_id=%s chat_id=%s", request_id, chat_id)
        return _detail(chat, manager.current_chat_id)

    @app.delete("/chats/{chat_id}", response_model=ChatSummary)
    async def delete_chat(chat_id: str, request: Request) -> ChatSummary:
        request_id = str(uuid.uuid4())
        manager = _ctx(request).manager
        try:
            await manager.delete_chat(chat_id)
        except CerebrError as e:
            raise _http_error("delete_chat", request_id, e)
        current = manager.get_current_chat()
        if current is None:
            raise HTTPException(status_code=409, detail=str(NoActiveChatError()))
        logger.info("[delete_chat] request_id=%s chat_id=%s now_current=%s", request_id, chat_id, current.id)
        return _summary(current, manager.current_chat_id)

    # ---------- streaming chat ----------

    @app.post("/chat")
    async def send_message(req: SendMessageRequest, request: Request) -> StreamingResponse:
        """
        Send a message to the current chat. The body is newline-delimited
        JSON: {"type": "snapshot", ...} per throttled update, then one
        {"type": "done", ...} or {"type": "error", ...} record.
        """
        request_id = str(uuid.uuid4())
        start_time = time.monotonic()
        ctx = _ctx(request)
        if not req.message.strip() and not req.images:
            raise HTTPException(status_code=400, detail="Cannot send an empty message.")
        if ctx.chat.busy:
            raise HTTPException(status_code=409, detail=str(ChatBusyError()))
        if ctx.manager.get_current_chat() is None:
            raise HTTPException(status_code=409, detail=str(NoActiveChatError()))

        logger.info("[chat] request_id=%s message_len=%d images=%d webpage=%s",
                    request_id, len(req.message), len(req.images), req.webpage is not None)

        queue: "asyncio.Queue[Optional[Dict[str, Any]]]" = asyncio.Queue()

        async def on_update(chat_id: str, snapshot: Dict[str, Any]) -> None:
            await queue.put({"type": "snapshot", "chat_id": chat_id, **snapshot})

        webpage = WebpageInfo(**req.webpage.model_dump()) if req.webpage is not None else None
        task = asyncio.ensure_future(
            ctx.chat.send_message(req.message, images=req.images, on_update=on_update, webpage_info=webpage)
        )
        task.add_done_callback(lambda _t: queue.put_nowait(None))

        async def stream_records():
            try:
                while True:
                    item = await queue.get()
                    if item is None:
                        break
                    yield json.dumps(item, ensure_ascii=False).encode("utf-8") + b"\n"

                try:
                    result = task.result()
                except Exception as e:
                    logger.error("[chat] request_id=%s FAIL err=%s", request_id, e)
                    record = {"type": "error", "error": e.__class__.__name__, "detail": str(e)}
                else:
                    latency_ms = int((time.monotonic() - start_time) * 1000)
                    logger.info("[chat] request_id=%s OK latency_ms=%d aborted=%s attempts=%d",
                                request_id, latency_ms, result.aborted, result.attempts)
                    record = {
                        "type": "done",
                        "chat_id": result.chat_id,
                        "content": result.content,
                        "reasoning_content": result.reasoning_content,
                        "aborted": result.aborted,
                        "title": result.title,
                    }
                yield json.dumps(record, ensure_ascii=False).encode("utf-8") + b"\n"
            finally:
                # Client went away mid-stream
                if not task.done():
                    ctx.chat.cancel()

        return StreamingResponse(stream_records(), media_type="application/x-ndjson")

    @app.post("/chat/cancel", response_model=CancelResponse)
    async def cancel_reply(request: Request) -> CancelResponse:
        cancelled = _ctx(request).chat.cancel()
        logger.info("[chat_cancel] cancelled=%s", cancelled)
        return CancelResponse(cancelled=cancelled)

    return app


app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run(
        "cerebr.api.server:app",
        host=os.getenv("CEREBR_HOST", "127.0.0.1"),
        port=int(os.getenv("CEREBR_PORT", "8000")),
    )


if __name__ == "__main__":
    run()
