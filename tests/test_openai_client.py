"""
Tests for cerebr.clients.openai_client.

Covers:
  - Endpoint normalization and config validation
  - Lazy request start and request shape
  - Throttled snapshot emission
  - Misfiled reasoning detection
  - Cancellation and upstream failures
  - One-shot JSON completions via the openai SDK
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock

import httpx
import pytest

from cerebr.clients.openai_client import (
    ApiConfig,
    _classify_error,
    call_api,
    complete_json,
    normalize_chat_completions_url,
    sdk_base_url,
)
from cerebr.core.errors import CompletionRequestError, MisfiledReasoning
from cerebr.memory.models import Message

from .conftest import SSE_DONE, ManualScheduler, ScriptedTransport, api_config, make_manager, sse_body, sse_event


class Updates:
    """Async on_update callback that records snapshots and loop times."""

    def __init__(self):
        self.items = []
        self.times = []

    async def __call__(self, chat_id, snapshot):
        self.items.append(dict(snapshot))
        self.times.append(asyncio.get_running_loop().time())


async def _chat_with_question(text="Hi"):
    manager = await make_manager(scheduler=ManualScheduler())
    manager.add_message_to_current_chat(Message(role="user", content=text))
    return manager, manager.current_chat_id


def _handle(manager, chat_id, transport, config=None, on_update=None, **kwargs):
    chat = manager.get_chat(chat_id)
    return call_api(
        chat.messages,
        config or api_config(),
        manager,
        chat_id,
        on_update=on_update,
        http_client=transport.client(),
        **kwargs,
    )


# ========================================================================
# Endpoint + config
# ========================================================================


class TestEndpointNormalization:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("https://host", "https://host/v1/chat/completions"),
            ("https://host/", "https://host/v1/chat/completions"),
            ("https://host/v1/", "https://host/v1/chat/completions"),
            ("https://host/v1/chat/completions", "https://host/v1/chat/completions"),
            ('"https://host/v1"', "https://host/v1/chat/completions"),
            ("https://host/openai", "https://host/openai/v1/chat/completions"),
            ("https://host/api/v1/custom", "https://host/api/v1/custom"),
            ("http://localhost:8080", "http://localhost:8080/v1/chat/completions"),
            ("", ""),
            (None, ""),
        ],
    )
    def test_normalize(self, raw, expected):
        assert normalize_chat_completions_url(raw) == expected

    def test_sdk_base_url(self):
        assert sdk_base_url("https://host/v1/chat/completions") == "https://host/v1"
        assert sdk_base_url("https://host/api/v1/custom") == "https://host/api/v1/custom"


class TestApiConfig:
    def test_missing_key_or_url_is_rejected(self):
        with pytest.raises(ValueError):
            ApiConfig(base_url="https://host", api_key=" ").validate()
        with pytest.raises(ValueError):
            ApiConfig(base_url="", api_key="sk").validate()

    @pytest.mark.asyncio
    async def test_call_api_validates_before_building(self):
        manager, chat_id = await _chat_with_question()
        with pytest.raises(ValueError):
            call_api([], api_config(api_key=""), manager, chat_id)


def test_classify_error():
    assert _classify_error(CompletionRequestError(401, "")) == "auth"
    assert _classify_error(CompletionRequestError(429, "")) == "rate_limit"
    assert _classify_error(CompletionRequestError(503, "")) == "upstream_503"
    assert _classify_error(CompletionRequestError(400, "")) == "http_400"
    assert _classify_error(httpx.ConnectTimeout("slow")) == "timeout"
    assert _classify_error(httpx.ConnectError("refused")) == "network"
    assert _classify_error(RuntimeError("read timed out")) == "timeout"
    assert _classify_error(RuntimeError("boom")) == "unknown"


# ========================================================================
# Streaming
# ========================================================================


class TestStreamRequest:
    @pytest.mark.asyncio
    async def test_no_request_until_process_stream(self):
        manager, chat_id = await _chat_with_question()
        transport = ScriptedTransport(sse_body("Hello"))
        handle = _handle(manager, chat_id, transport, config=api_config(system_prompt="Be kind."))
        await asyncio.sleep(0.01)
        assert transport.requests == []

        result = await handle.process_stream()
        assert result == {"content": "Hello", "reasoning_content": ""}

        request = transport.requests[0]
        assert str(request.url) == "https://llm.example.com/v1/chat/completions"
        assert request.headers["authorization"] == "Bearer sk-test"
        assert transport.bodies()[0] == {
            "model": "test-model",
            "messages": [
                {"role": "system", "content": "Be kind."},
                {"role": "user", "content": "Hi"},
            ],
            "stream": True,
        }

    @pytest.mark.asyncio
    async def test_final_snapshot_is_stored_and_settled(self):
        manager, chat_id = await _chat_with_question()
        transport = ScriptedTransport([sse_event(reasoning="hmm"), sse_event("ok"), SSE_DONE])
        updates = Updates()
        handle = _handle(manager, chat_id, transport, on_update=updates)

        await handle.process_stream()
        assert updates.items[-1] == {"content": "ok", "reasoning_content": "hmm"}
        last = manager.get_chat(chat_id).last_message
        assert (last.role, last.content, last.reasoning_content, last.updating) == ("assistant", "ok", "hmm", False)

    @pytest.mark.asyncio
    async def test_process_stream_is_single_use(self):
        manager, chat_id = await _chat_with_question()
        transport = ScriptedTransport(sse_body("a"))
        handle = _handle(manager, chat_id, transport)
        await handle.process_stream()
        with pytest.raises(RuntimeError):
            await handle.process_stream()

    @pytest.mark.asyncio
    async def test_malformed_chunk_is_skipped(self):
        manager, chat_id = await _chat_with_question()
        transport = ScriptedTransport([b"data: {broken\n\n", sse_event("ok"), SSE_DONE])
        result = await _handle(manager, chat_id, transport).process_stream()
        assert result["content"] == "ok"

    @pytest.mark.asyncio
    async def test_http_error_raises_and_leaves_no_placeholder(self):
        manager, chat_id = await _chat_with_question()
        transport = ScriptedTransport((500, "upstream exploded"))
        handle = _handle(manager, chat_id, transport)

        with pytest.raises(CompletionRequestError) as info:
            await handle.process_stream()
        assert info.value.status_code == 500
        assert "upstream exploded" in info.value.body
        assert [m.role for m in manager.get_chat(chat_id).messages] == ["user"]

    @pytest.mark.asyncio
    async def test_injected_client_is_not_closed(self):
        manager, chat_id = await _chat_with_question()
        transport = ScriptedTransport(sse_body("a"))
        client = transport.client()
        handle = call_api(
            manager.get_chat(chat_id).messages, api_config(), manager, chat_id, http_client=client
        )
        await handle.process_stream()
        assert not client.is_closed
        await client.aclose()


class TestThrottle:
    @pytest.mark.asyncio
    async def test_deltas_inside_interval_coalesce(self):
        manager, chat_id = await _chat_with_question()
        transport = ScriptedTransport([sse_event("He"), (0.03, sse_event("llo")), (0.2, SSE_DONE)])
        updates = Updates()
        handle = _handle(manager, chat_id, transport, on_update=updates)

        await handle.process_stream()
        first_delta_at = transport.streams[0].sent_at[0]

        assert handle.emissions == 2
        assert updates.items == [{"content": "Hello"}, {"content": "Hello"}]
        assert updates.times[0] - first_delta_at >= 0.099
        assert manager.get_chat(chat_id).last_message.content == "Hello"

    @pytest.mark.asyncio
    async def test_short_stream_emits_once_at_end(self):
        manager, chat_id = await _chat_with_question()
        transport = ScriptedTransport(sse_body("a", "b", "c"))
        updates = Updates()
        handle = _handle(manager, chat_id, transport, on_update=updates)

        await handle.process_stream()
        assert updates.items == [{"content": "abc"}]

    @pytest.mark.asyncio
    async def test_delta_after_quiet_interval_emits_immediately(self):
        manager, chat_id = await _chat_with_question()
        transport = ScriptedTransport(
            [sse_event("a"), (0.15, sse_event("b")), (0.35, sse_event("c")), SSE_DONE]
        )
        updates = Updates()
        handle = _handle(manager, chat_id, transport, on_update=updates)

        await handle.process_stream()
        sent = transport.streams[0].sent_at
        # "a" via the timer, "ab" on a delayed timer, "abc" as soon as it arrives
        assert [u["content"] for u in updates.items][:3] == ["a", "ab", "abc"]
        assert updates.times[2] - sent[2] < 0.05


class TestMisfiledReasoning:
    @pytest.mark.asyncio
    async def test_marker_split_across_deltas_is_detected(self):
        manager, chat_id = await _chat_with_question()
        transport = ScriptedTransport([sse_event("thi"), (0.03, sse_event("nk:")), (0.2, SSE_DONE)])
        updates = Updates()
        config = api_config(detect_misfiled_reasoning=True, misfiled_reasoning_markers=("think",))
        handle = _handle(manager, chat_id, transport, config=config, on_update=updates)

        with pytest.raises(MisfiledReasoning) as info:
            await handle.process_stream()
        assert info.value.marker == "think"
        assert updates.items == []
        assert [m.role for m in manager.get_chat(chat_id).messages] == ["user"]

    @pytest.mark.asyncio
    async def test_undecided_prefix_is_withheld_until_end(self):
        manager, chat_id = await _chat_with_question()
        transport = ScriptedTransport([sse_event("th"), (0.15, SSE_DONE)])
        updates = Updates()
        config = api_config(detect_misfiled_reasoning=True, misfiled_reasoning_markers=("think",))
        handle = _handle(manager, chat_id, transport, config=config, on_update=updates)

        await handle.process_stream()
        assert updates.items == [{"content": "th"}]

    @pytest.mark.asyncio
    async def test_detection_off_passes_marker_through(self):
        manager, chat_id = await _chat_with_question()
        transport = ScriptedTransport(sse_body("<think>", " plan"))
        handle = _handle(manager, chat_id, transport, detect_misfiled_reasoning=False)

        result = await handle.process_stream()
        assert result["content"] == "<think> plan"


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_mid_stream_keeps_partial_reply(self):
        manager, chat_id = await _chat_with_question()
        transport = ScriptedTransport([sse_event("He"), (0.3, sse_event("llo")), (1.0, SSE_DONE)])
        updates = Updates()
        handle = _handle(manager, chat_id, transport, on_update=updates)

        task = asyncio.ensure_future(handle.process_stream())
        while not updates.items:
            await asyncio.sleep(0.01)
        handle.cancel()
        result = await asyncio.wait_for(task, timeout=1)

        assert handle.aborted
        assert result["content"] == "He"
        assert updates.items == [{"content": "He"}]
        last = manager.get_chat(chat_id).last_message
        assert (last.content, last.updating) == ("He", False)

    @pytest.mark.asyncio
    async def test_cancel_before_start_sends_nothing(self):
        manager, chat_id = await _chat_with_question()
        transport = ScriptedTransport(sse_body("never"))
        handle = _handle(manager, chat_id, transport)
        handle.cancel()

        assert await handle.process_stream() == {"content": "", "reasoning_content": ""}
        assert transport.requests == []
        assert handle.emissions == 0


# ========================================================================
# JSON completions
# ========================================================================


def _fake_openai(content):
    create = AsyncMock(
        return_value=SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])
    )
    client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)), close=AsyncMock())
    return client, create


class TestCompleteJson:
    @pytest.mark.asyncio
    async def test_returns_object_and_requests_json_mode(self):
        client, create = _fake_openai('{"title": "🐱 Cats"}')
        data = await complete_json([{"role": "user", "content": "x"}], api_config(), client=client)

        assert data == {"title": "🐱 Cats"}
        kwargs = create.await_args.kwargs
        assert kwargs["model"] == "test-model"
        assert kwargs["response_format"] == {"type": "json_object"}
        client.close.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content", ["not json", "[1, 2]", None])
    async def test_non_object_reply_raises(self, content):
        client, _ = _fake_openai(content)
        with pytest.raises(ValueError):
            await complete_json([{"role": "user", "content": "x"}], api_config(), client=client)

    @pytest.mark.asyncio
    async def test_sdk_errors_propagate(self):
        client, create = _fake_openai("{}")
        create.side_effect = RuntimeError("connection reset")
        with pytest.raises(RuntimeError):
            await complete_json([{"role": "user", "content": "x"}], api_config(), client=client)
