"""
Shared test helpers for cerebr.

- Scripted SSE transports built on httpx.MockTransport
- Store doubles that record or reject writes
- A ChatManager factory backed by the in-memory store
"""

import asyncio
import json
import os
import tempfile
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

# Keep test runs from writing into the project's logs/ directory.
os.environ.setdefault("CEREBR_LOG_DIR", tempfile.mkdtemp(prefix="cerebr-test-logs-"))

import httpx
import pytest

from cerebr.clients.openai_client import ApiConfig
from cerebr.memory.models import Chat, Message
from cerebr.memory.repository import ChatManager, chat_key
from cerebr.memory.scheduler import AsyncioIdleScheduler, BackgroundScheduler, ScheduledHandle
from cerebr.memory.store import InMemoryKeyValueStore

# ========================================================================
# SSE scripting
# ========================================================================

# A step is either raw bytes sent immediately or (delay_seconds, bytes).
Step = Union[bytes, Tuple[float, bytes]]


def sse_event(content: Optional[str] = None, reasoning: Optional[str] = None) -> bytes:
    delta: Dict[str, Any] = {}
    if content is not None:
        delta["content"] = content
    if reasoning is not None:
        delta["reasoning_content"] = reasoning
    payload = {"choices": [{"index": 0, "delta": delta}]}
    return f"data: {json.dumps(payload)}\n\n".encode("utf-8")


SSE_DONE = b"data: [DONE]\n\n"


def sse_body(*contents: str) -> List[Step]:
    """Immediate deltas followed by the [DONE] sentinel."""
    return [sse_event(c) for c in contents] + [SSE_DONE]


class ScriptedStream:
    """
    Async byte stream that plays back steps, recording the loop time at
    which each chunk was handed to the reader.
    """

    def __init__(self, steps: Sequence[Step]) -> None:
        self.steps = list(steps)
        self.sent_at: List[float] = []

    async def __aiter__(self):
        loop = asyncio.get_running_loop()
        for step in self.steps:
            delay, chunk = step if isinstance(step, tuple) else (0.0, step)
            if delay:
                await asyncio.sleep(delay)
            else:
                await asyncio.sleep(0)
            self.sent_at.append(loop.time())
            yield chunk


class ScriptedTransport:
    """
    httpx.MockTransport wrapper. Each request consumes the next scripted
    response: a list of steps (200 + SSE) or an (status, text) pair.
    """

    def __init__(self, *responses: Union[Sequence[Step], Tuple[int, str]]) -> None:
        self.responses = list(responses)
        self.requests: List[httpx.Request] = []
        self.streams: List[ScriptedStream] = []
        self.transport = httpx.MockTransport(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.responses:
            return httpx.Response(500, text="no scripted response left")
        scripted = self.responses.pop(0)
        if isinstance(scripted, tuple) and len(scripted) == 2 and isinstance(scripted[0], int):
            status, text = scripted
            return httpx.Response(status, text=text)
        stream = ScriptedStream(scripted)
        self.streams.append(stream)
        return httpx.Response(200, content=stream, headers={"content-type": "text/event-stream"})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self.transport)

    def bodies(self) -> List[Dict[str, Any]]:
        return [json.loads(r.content) for r in self.requests]


def api_config(**overrides: Any) -> ApiConfig:
    values: Dict[str, Any] = {
        "base_url": "https://llm.example.com",
        "api_key": "sk-test",
        "model": "test-model",
        "throttle_ms": 100,
    }
    values.update(overrides)
    return ApiConfig(**values)


# ========================================================================
# Stores and schedulers
# ========================================================================


class RecordingStore(InMemoryKeyValueStore):
    """In-memory store that remembers every set()/remove() call."""

    def __init__(self, quota_bytes: Optional[int] = None) -> None:
        super().__init__(quota_bytes=quota_bytes)
        self.set_calls: List[List[str]] = []
        self.remove_calls: List[List[str]] = []

    async def set(self, items):
        self.set_calls.append(list(items))
        await super().set(items)

    async def remove(self, keys):
        self.remove_calls.append([keys] if isinstance(keys, str) else list(keys))
        await super().remove(keys)

    def shard_writes(self) -> List[str]:
        return [k for call in self.set_calls for k in call if k.startswith("cerebr_chat_v2_")]


class FlakyStore(RecordingStore):
    """Rejects set() calls while `fail_writes` is True."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_writes = False
        self.fail_reads = False

    async def get(self, keys):
        if self.fail_reads:
            raise OSError("disk unavailable")
        return await super().get(keys)

    async def set(self, items):
        if self.fail_writes:
            self.set_calls.append(list(items))
            raise OSError("disk full")
        await super().set(items)


class ManualScheduler(BackgroundScheduler):
    """Collects scheduled tasks; tests run them explicitly."""

    def __init__(self, yield_after_tiers: bool = False) -> None:
        self.tasks: List[Any] = []
        self.yield_after_tiers = yield_after_tiers

    def schedule(self, task, timeout_ms):
        self.tasks.append(task)
        loop = asyncio.get_running_loop()
        # Never fires on its own
        return ScheduledHandle(loop.call_later(3600, lambda: None))

    def should_yield(self) -> bool:
        return self.yield_after_tiers


async def make_manager(
    store: Optional[InMemoryKeyValueStore] = None,
    scheduler: Optional[BackgroundScheduler] = None,
    session_id: str = "default",
    **kwargs: Any,
) -> ChatManager:
    manager = ChatManager(
        store if store is not None else InMemoryKeyValueStore(),
        scheduler or AsyncioIdleScheduler(budget_ms=1000.0),
        session_id=session_id,
        **kwargs,
    )
    await manager.initialize()
    return manager


def make_chat(chat_id: str, *texts: str, title: str = "Chat", updated_at: str = "2024-01-01T00:00:00.000Z") -> Chat:
    """Chat with alternating user/assistant messages."""
    roles = ("user", "assistant")
    return Chat(
        id=chat_id,
        title=title,
        created_at=updated_at,
        updated_at=updated_at,
        messages=[Message(role=roles[i % 2], content=t) for i, t in enumerate(texts)],
    )


async def seed_sharded(store: InMemoryKeyValueStore, *chats: Chat) -> None:
    """Write chats in the current sharded layout."""
    await store.set({"cerebr_chats_index_v2": [c.id for c in chats]})
    await store.set({chat_key(c.id): c.to_dict() for c in chats})


@pytest.fixture
def store() -> RecordingStore:
    return RecordingStore()
