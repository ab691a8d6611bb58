# cerebr/core/chat.py

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Sequence

import httpx

from cerebr.clients.openai_client import ApiConfig, OnUpdate, StreamHandle, call_api
from cerebr.core.errors import ChatBusyError, MisfiledReasoning, NoActiveChatError, NotFoundError
from cerebr.core.messages import WebpageInfo, build_user_content
from cerebr.core.titles import generate_title
from cerebr.memory.models import Chat, Message
from cerebr.memory.repository import DEFAULT_CHAT_TITLE, ChatManager
from cerebr.utils.logging import get_logger

logger = get_logger(__name__)

# Bound on a single user message
MAX_USER_TEXT_CHARS = 32000

TitleGenerator = Callable[[Sequence[Message], ApiConfig], Awaitable[Optional[str]]]


@dataclass
class TurnResult:
    chat_id: str
    content: str
    reasoning_content: str
    aborted: bool = False
    attempts: int = 1
    title: Optional[str] = None


class ChatCore:
    """
    One conversation turn at a time on top of a ChatManager.

    The user message is appended optimistically; the reply streams into an
    assistant placeholder. A failed turn removes both again, an aborted one
    keeps whatever was already written.
    """

    def __init__(
        self,
        manager: ChatManager,
        api_config: ApiConfig,
        http_client: Optional[httpx.AsyncClient] = None,
        max_stream_retries: int = 3,
        auto_title: bool = True,
        title_generator: TitleGenerator = generate_title,
    ) -> None:
        self.manager = manager
        self.api_config = api_config
        self.http_client = http_client
        self.max_stream_retries = max_stream_retries
        self.auto_title = auto_title
        self.title_generator = title_generator

        self._lock = asyncio.Lock()
        self._active: Optional[StreamHandle] = None
        self._pending_abort = False

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def cancel(self) -> bool:
        """
        Abort the reply being generated. If the request is not open yet the
        abort is remembered and applied as soon as it is. Returns False when
        nothing is running.
        """
        if self._active is not None:
            self._active.cancel()
            return True
        if self.busy:
            self._pending_abort = True
            return True
        return False

    # ---------- MAIN USER ENTRY POINTS ----------

    async def send_message(
        self,
        text: str,
        images: Sequence[str] = (),
        on_update: Optional[OnUpdate] = None,
        webpage_info: Optional[WebpageInfo] = None,
    ) -> TurnResult:
        cleaned = (text or "").strip()
        if not cleaned and not images:
            raise ValueError("Cannot send an empty message.")
        if len(cleaned) > MAX_USER_TEXT_CHARS:
            logger.warning(
                "User text length %d exceeds MAX_USER_TEXT_CHARS=%d; truncating.",
                len(cleaned),
                MAX_USER_TEXT_CHARS,
            )
            cleaned = cleaned[:MAX_USER_TEXT_CHARS]

        if self.busy:
            raise ChatBusyError()
        async with self._lock:
            self._pending_abort = False
            chat = self.manager.get_current_chat()
            if chat is None:
                raise NoActiveChatError()

            self.manager.add_message_to_current_chat(
                Message(role="user", content=build_user_content(cleaned, images))
            )
            try:
                result = await self._stream_reply(chat.id, on_update, webpage_info)
            except BaseException:
                self._rollback(chat.id, drop_user=True)
                raise

            await self.manager.flush_now()
            if not result.aborted:
                result.title = await self._maybe_generate_title(chat.id)
            return result

    async def regenerate(
        self,
        on_update: Optional[OnUpdate] = None,
        webpage_info: Optional[WebpageInfo] = None,
    ) -> TurnResult:
        """Drop the trailing assistant reply of the current chat and stream a new one."""
        if self.busy:
            raise ChatBusyError()
        async with self._lock:
            self._pending_abort = False
            chat = self.manager.get_current_chat()
            if chat is None:
                raise NoActiveChatError()

            last = chat.last_message
            if last is not None and last.role == "assistant":
                self.manager.pop_message(chat.id)
            if not chat.messages or chat.messages[-1].role != "user":
                raise ValueError("There is no user message to answer.")

            try:
                result = await self._stream_reply(chat.id, on_update, webpage_info)
            except BaseException:
                self._rollback(chat.id, drop_user=False)
                raise

            await self.manager.flush_now()
            return result

    # ---------- streaming with retries ----------

    async def _stream_reply(
        self,
        chat_id: str,
        on_update: Optional[OnUpdate],
        webpage_info: Optional[WebpageInfo],
    ) -> TurnResult:
        detect = self.api_config.detect_misfiled_reasoning
        attempts = 0
        while True:
            attempts += 1
            chat = self.manager.get_chat(chat_id)
            if chat is None:
                raise NotFoundError(chat_id)

            handle = call_api(
                chat.messages,
                self.api_config,
                self.manager,
                chat_id,
                on_update=on_update,
                webpage_info=webpage_info,
                http_client=self.http_client,
                detect_misfiled_reasoning=detect,
            )
            self._active = handle
            if self._pending_abort:
                self._pending_abort = False
                handle.cancel()

            try:
                reply = await handle.process_stream()
            except MisfiledReasoning as e:
                if not detect:
                    raise
                # Restart once, treating the whole reply as the answer.
                logger.info("[turn] chat=%s reasoning marker %r in content; restarting without detection",
                            chat_id, e.marker)
                detect = False
                self._drop_trailing_assistant(chat_id)
                continue
            finally:
                self._active = None

            result = TurnResult(
                chat_id=chat_id,
                content=reply["content"],
                reasoning_content=reply["reasoning_content"],
                aborted=handle.aborted,
                attempts=attempts,
            )
            if result.aborted:
                return result

            truncated = not result.content.strip() and bool(result.reasoning_content.strip())
            if truncated and attempts <= self.max_stream_retries:
                logger.warning("[turn] chat=%s reply had reasoning but no content; retry %d/%d",
                               chat_id, attempts, self.max_stream_retries)
                self._drop_trailing_assistant(chat_id)
                continue
            return result

    def _drop_trailing_assistant(self, chat_id: str) -> None:
        chat = self.manager.get_chat(chat_id)
        if chat is not None and chat.last_message is not None and chat.last_message.role == "assistant":
            self.manager.pop_message(chat_id)

    def _rollback(self, chat_id: str, drop_user: bool) -> None:
        chat = self.manager.get_chat(chat_id)
        if chat is None:
            return
        self._drop_trailing_assistant(chat_id)
        last = chat.last_message
        if drop_user and last is not None and last.role == "user":
            self.manager.pop_message(chat_id)
        logger.info("[turn] chat=%s rolled back failed turn", chat_id)

    # ---------- titles ----------

    async def _maybe_generate_title(self, chat_id: str) -> Optional[str]:
        if not self.auto_title:
            return None
        chat: Optional[Chat] = self.manager.get_chat(chat_id)
        if chat is None or chat.title != DEFAULT_CHAT_TITLE:
            return None
        if not any(m.role == "assistant" and m.content for m in chat.messages):
            return None

        title = await self.title_generator(chat.messages, self.api_config)
        # The chat may have been renamed or deleted meanwhile
        chat = self.manager.get_chat(chat_id)
        if not title or chat is None or chat.title != DEFAULT_CHAT_TITLE:
            return None
        self.manager.rename_chat(chat_id, title)
        return title
