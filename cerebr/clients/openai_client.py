# cerebr/clients/openai_client.py
#
# Single integration layer for the OpenAI-compatible chat completions endpoint:
# - streaming replies over raw SSE (httpx), throttled into chat snapshots
# - one-shot JSON completions through the openai SDK (titles)

import asyncio
import inspect
import json
import random
import re
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union
from urllib.parse import urlsplit, urlunsplit

import httpx
import openai

from cerebr.clients.sse import delta_of, iter_sse_data, parse_chunk
from cerebr.config.settings import DEFAULT_MISFILED_REASONING_MARKERS, Settings
from cerebr.core.errors import (
    CompletionRequestError,
    MalformedChunk,
    MisfiledReasoning,
    StreamAborted,
)
from cerebr.core.messages import WebpageInfo, prepare_messages
from cerebr.core.serializer import Snapshot, UpdateSerializer
from cerebr.memory.models import Message
from cerebr.utils.logging import get_logger

logger = get_logger(__name__)

OnUpdate = Callable[[str, Snapshot], Union[None, Awaitable[None]]]

# ---------------------------------------------------------------------------
# Endpoint URL normalization
# ---------------------------------------------------------------------------

_V1_SEGMENT = re.compile(r"(^|/)v1(/|$)")


def _strip_outer_quotes(s: str) -> str:
    """
    Users sometimes put OPENAI_BASE_URL="https://..." including quotes.
    This removes a single pair of matching outer quotes.
    """
    s2 = (s or "").strip()
    if len(s2) >= 2 and ((s2[0] == s2[-1]) and s2[0] in ("'", '"')):
        return s2[1:-1].strip()
    return s2


def _normalize_path(path: str) -> str:
    base = (path or "/").rstrip("/")
    if base.endswith("/chat/completions"):
        return base
    if base.endswith("/v1"):
        return base + "/chat/completions"
    if not _V1_SEGMENT.search(base + "/"):
        return base + "/v1/chat/completions"
    # Custom layout with a v1 segment elsewhere: trust the user
    return base or "/"


def normalize_chat_completions_url(value: Optional[str]) -> str:
    """
    Turn a configured endpoint into a full chat completions URL.

      https://host                     -> https://host/v1/chat/completions
      https://host/v1/                 -> https://host/v1/chat/completions
      https://host/v1/chat/completions -> unchanged
      https://host/api/v1/custom       -> unchanged

    Returns "" for an empty value.
    """
    raw = _strip_outer_quotes(value or "")
    if not raw:
        return ""
    parts = urlsplit(raw)
    if parts.scheme and parts.netloc:
        return urlunsplit(parts._replace(path=_normalize_path(parts.path)))

    # Not an absolute URL; apply the same rules to the bare string.
    trimmed = raw.rstrip("/")
    if trimmed.endswith("/chat/completions"):
        return trimmed
    if trimmed.endswith("/v1"):
        return trimmed + "/chat/completions"
    if not re.search(r"/v1(/|$)", trimmed):
        return trimmed + "/v1/chat/completions"
    return trimmed


def sdk_base_url(chat_completions_url: str) -> str:
    """The openai SDK wants the API root, i.e. the URL without /chat/completions."""
    url = chat_completions_url.rstrip("/")
    suffix = "/chat/completions"
    return url[: -len(suffix)] if url.endswith(suffix) else url


# ---------------------------------------------------------------------------
# Request ids + error classification for logs
# ---------------------------------------------------------------------------

def _mk_req_id(prefix: str = "req") -> str:
    return f"{prefix}_{int(time.time()*1000)}_{random.randint(1000, 9999)}"


def _safe_host_from_url(url: str) -> str:
    return urlsplit(url).netloc or "unknown-host"


def _classify_error(e: BaseException) -> str:
    if isinstance(e, CompletionRequestError):
        code = e.status_code
        if code in (401, 403):
            return "auth"
        if code == 404:
            return "not_found"
        if code == 429:
            return "rate_limit"
        if code >= 500:
            return f"upstream_{code}"
        return f"http_{code}"

    if isinstance(e, httpx.TimeoutException):
        return "timeout"
    if isinstance(e, (httpx.ConnectError, httpx.NetworkError)):
        return "network"
    if isinstance(e, openai.AuthenticationError):
        return "auth"
    if isinstance(e, openai.RateLimitError):
        return "rate_limit"
    if isinstance(e, openai.APITimeoutError):
        return "timeout"
    if isinstance(e, openai.APIConnectionError):
        return "network"

    msg = (str(e) or "").lower()
    if "timeout" in msg or "timed out" in msg:
        return "timeout"
    return "unknown"


# ---------------------------------------------------------------------------
# Configuration for one request
# ---------------------------------------------------------------------------

@dataclass
class ApiConfig:
    base_url: str
    api_key: str
    model: str = "gpt-4o"
    system_prompt: str = ""
    user_language: str = "en"
    throttle_ms: int = 100
    detect_misfiled_reasoning: bool = False
    misfiled_reasoning_markers: Tuple[str, ...] = field(
        default_factory=lambda: DEFAULT_MISFILED_REASONING_MARKERS
    )
    timeout_seconds: float = 60.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "ApiConfig":
        return cls(
            base_url=settings.openai_base_url,
            api_key=settings.openai_api_key,
            model=settings.openai_model,
            system_prompt=settings.system_prompt,
            user_language=settings.user_language,
            throttle_ms=settings.stream_throttle_ms,
            detect_misfiled_reasoning=settings.detect_misfiled_reasoning,
            misfiled_reasoning_markers=tuple(settings.misfiled_reasoning_markers),
            timeout_seconds=settings.openai_timeout_seconds,
        )

    def validate(self) -> None:
        if not (self.base_url or "").strip() or not (self.api_key or "").strip():
            raise ValueError("API configuration is incomplete: base URL and API key are required.")


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------

class StreamHandle:
    """
    One streaming completion request.

    Creating the handle does no I/O, so a caller can expose cancel() before
    the first byte arrives. process_stream() opens the request, consumes it
    and returns the accumulated {"content", "reasoning_content"}.

    Snapshots are emitted at most once per throttle interval, immediately
    when a delta arrives after a full quiet interval, and once more when the
    stream ends. Every emission goes through the serializer, which applies
    the same dict to storage and to the view.
    """

    def __init__(
        self,
        url: str,
        api_key: str,
        body: Dict[str, Any],
        chat_manager: Any,
        chat_id: str,
        serializer: UpdateSerializer,
        throttle_ms: int = 100,
        misfiled_markers: Sequence[str] = (),
        http_client: Optional[httpx.AsyncClient] = None,
        req_id: Optional[str] = None,
    ) -> None:
        self.url = url
        self._api_key = api_key
        self.body = body
        self.chat_manager = chat_manager
        self.chat_id = chat_id
        self.serializer = serializer
        self.interval = max(0, throttle_ms) / 1000.0
        self._markers = [m.lower() for m in misfiled_markers if m]
        self._detecting = bool(self._markers)
        self._http_client = http_client
        self.req_id = req_id or _mk_req_id("stream")

        self.content = ""
        self.reasoning_content = ""
        self.emissions = 0
        self._got_delta = False
        self._mark: Optional[float] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task] = None
        self._aborted = False
        self._settled = False

    @property
    def aborted(self) -> bool:
        return self._aborted

    def result(self) -> Dict[str, str]:
        return {"content": self.content, "reasoning_content": self.reasoning_content}

    def cancel(self) -> None:
        """Abort the request. Safe to call before, during or after consumption."""
        if self._aborted:
            return
        self._aborted = True
        self._cancel_timer()
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def process_stream(self) -> Dict[str, str]:
        if self._task is not None:
            raise RuntimeError("process_stream() can only be called once per handle.")
        if self._aborted:
            logger.info("[stream] req_id=%s cancelled before the request was sent", self.req_id)
            await self._settle()
            return self.result()

        self._task = asyncio.ensure_future(self._run())
        try:
            await self._task
        except (asyncio.CancelledError, StreamAborted):
            if not self._aborted:
                await self._settle()
                raise
            logger.info("[stream] req_id=%s aborted by user after %d emission(s)", self.req_id, self.emissions)
        except Exception as e:
            logger.warning("[stream] req_id=%s FAIL code=%s err=%s", self.req_id, _classify_error(e), e)
            await self._settle()
            raise

        await self._settle()
        return self.result()

    async def _run(self) -> None:
        owned = self._http_client is None
        client = self._http_client or httpx.AsyncClient(timeout=None)
        t0 = time.monotonic()
        try:
            request = client.build_request(
                "POST",
                self.url,
                headers={
                    "Authorization": f"Bearer {self._api_key}",
                    "Content-Type": "application/json",
                },
                json=self.body,
                timeout=None,
            )
            logger.info(
                "[stream] req_id=%s start model=%s host=%s msg_count=%d",
                self.req_id,
                self.body.get("model"),
                _safe_host_from_url(self.url),
                len(self.body.get("messages") or []),
            )
            response = await client.send(request, stream=True)
            try:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise CompletionRequestError(response.status_code, body, self.req_id)
                await self._consume(response)
            finally:
                await response.aclose()
            logger.info(
                "[stream] req_id=%s OK latency_ms=%d emissions=%d content_chars=%d reasoning_chars=%d",
                self.req_id,
                int((time.monotonic() - t0) * 1000),
                self.emissions,
                len(self.content),
                len(self.reasoning_content),
            )
        finally:
            if owned:
                await client.aclose()

    async def _consume(self, response: httpx.Response) -> None:
        async for data in iter_sse_data(response.aiter_bytes()):
            if self._aborted:
                raise StreamAborted("Stream cancelled by user.")
            try:
                payload = parse_chunk(data)
            except MalformedChunk as e:
                logger.warning("[stream] req_id=%s skipping chunk: %s", self.req_id, e)
                continue
            content, reasoning = delta_of(payload)
            if not content and not reasoning:
                continue
            self.content += content
            self.reasoning_content += reasoning
            self._got_delta = True
            self._on_delta()

        # Natural end: always publish the final state.
        self._cancel_timer()
        if self._got_delta and not self._aborted:
            self._emit(force=True)

    # ---------- throttle ----------

    def _on_delta(self) -> None:
        if self._detecting:
            self._check_misfiled_reasoning()

        loop = asyncio.get_running_loop()
        now = loop.time()
        if self._mark is None:
            # First delta opens the window
            self._mark = now
        elapsed = now - self._mark
        if elapsed >= self.interval:
            self._cancel_timer()
            self._emit()
        elif self._timer is None:
            self._timer = loop.call_later(max(0.0, self.interval - elapsed), self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        if self._aborted or self._settled:
            return
        self._emit()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _emit(self, force: bool = False) -> None:
        if self._aborted or self._settled:
            return
        if self._detecting and not force and self._undecided():
            return
        self._detecting = False
        self._mark = asyncio.get_running_loop().time()
        self.emissions += 1
        self.serializer.push(self.chat_id, self._snapshot())

    def _snapshot(self) -> Snapshot:
        snapshot: Snapshot = {"content": self.content}
        if self.reasoning_content:
            snapshot["reasoning_content"] = self.reasoning_content
        return snapshot

    # ---------- misfiled reasoning ----------

    def _head(self) -> str:
        return self.content.lstrip().lower()

    def _check_misfiled_reasoning(self) -> None:
        head = self._head()
        if not head:
            return
        for marker in self._markers:
            if head.startswith(marker):
                self._cancel_timer()
                raise MisfiledReasoning(marker, head[:40])

    def _undecided(self) -> bool:
        """True while the content is too short to tell whether it opens with a marker."""
        head = self._head()
        if not head:
            return False
        return any(marker.startswith(head) and marker != head for marker in self._markers)

    async def _settle(self) -> None:
        if self._settled:
            return
        self._settled = True
        self._cancel_timer()
        await self.serializer.wait_idle()
        if self.chat_manager is not None:
            self.chat_manager.finish_last_message(self.chat_id)


def call_api(
    messages: Sequence[Union[Message, Dict[str, Any]]],
    api_config: ApiConfig,
    chat_manager: Any,
    chat_id: str,
    on_update: Optional[OnUpdate] = None,
    webpage_info: Optional[WebpageInfo] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    detect_misfiled_reasoning: Optional[bool] = None,
) -> StreamHandle:
    """
    Prepare one streaming request and return its handle without sending it.

    Raises ValueError when the endpoint or API key is missing.
    """
    api_config.validate()

    detect = api_config.detect_misfiled_reasoning if detect_misfiled_reasoning is None else detect_misfiled_reasoning
    body = {
        "model": api_config.model or "gpt-4o",
        "messages": prepare_messages(
            messages,
            system_prompt=api_config.system_prompt,
            user_language=api_config.user_language,
            webpage_info=webpage_info,
        ),
        "stream": True,
    }

    async def _apply(target_chat_id: str, snapshot: Snapshot) -> None:
        chat_manager.update_last_message(target_chat_id, snapshot)
        if on_update is not None:
            result = on_update(target_chat_id, snapshot)
            if inspect.isawaitable(result):
                await result

    return StreamHandle(
        url=normalize_chat_completions_url(api_config.base_url),
        api_key=api_config.api_key,
        body=body,
        chat_manager=chat_manager,
        chat_id=chat_id,
        serializer=UpdateSerializer(_apply),
        throttle_ms=api_config.throttle_ms,
        misfiled_markers=api_config.misfiled_reasoning_markers if detect else (),
        http_client=http_client,
    )


# ---------------------------------------------------------------------------
# One-shot JSON completion (title generation)
# ---------------------------------------------------------------------------

async def complete_json(
    messages: List[Dict[str, Any]],
    api_config: ApiConfig,
    client: Optional[openai.AsyncOpenAI] = None,
) -> Dict[str, Any]:
    """
    Non-streaming completion that must answer with a JSON object.
    Raises ValueError if the reply is not a JSON object.
    """
    api_config.validate()
    req_id = _mk_req_id("json")
    owned = client is None
    if client is None:
        client = openai.AsyncOpenAI(
            api_key=api_config.api_key,
            base_url=sdk_base_url(normalize_chat_completions_url(api_config.base_url)),
            timeout=api_config.timeout_seconds,
        )

    t0 = time.monotonic()
    try:
        resp = await client.chat.completions.create(
            model=api_config.model or "gpt-4o",
            messages=messages,
            stream=False,
            response_format={"type": "json_object"},
        )
    except Exception as e:
        logger.warning("[json] req_id=%s FAIL latency_ms=%d code=%s err=%s",
                       req_id, int((time.monotonic() - t0) * 1000), _classify_error(e), e)
        raise
    finally:
        if owned:
            await client.close()

    raw = ""
    if resp.choices:
        raw = resp.choices[0].message.content or ""
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"Model did not return JSON: {raw[:200]!r}") from e
    if not isinstance(data, dict):
        raise ValueError(f"Model returned JSON that is not an object: {raw[:200]!r}")

    logger.info("[json] req_id=%s OK latency_ms=%d", req_id, int((time.monotonic() - t0) * 1000))
    return data
