# cerebr/memory/repository.py

import asyncio
import time
from collections import deque
from enum import Enum
from typing import Any, Deque, Dict, Iterable, List, Mapping, Optional, Set

from cerebr.core.errors import NoActiveChatError, NotFoundError, StorageFailure
from cerebr.memory.models import Chat, Message, RefEntry, now_iso
from cerebr.memory.scheduler import BackgroundScheduler, ScheduledHandle
from cerebr.memory.store import KeyValueStore
from cerebr.utils.logging import get_logger

logger = get_logger(__name__)

INDEX_KEY = "cerebr_chats_index_v2"
CHAT_KEY_PREFIX = "cerebr_chat_v2_"
SESSION_CURRENT_KEY_PREFIX = "cerebr_current_chat_id_v2_"
LAST_ACTIVE_KEY = "cerebr_last_active_chat_id_v2"
LEGACY_CHATS_KEY = "cerebr_chats"
LEGACY_CURRENT_KEY = "cerebr_current_chat_id"

DEFAULT_CHAT_TITLE = "New chat"


def chat_key(chat_id: str) -> str:
    return CHAT_KEY_PREFIX + chat_id


class SaveState(str, Enum):
    IDLE = "idle"
    SCHEDULED = "scheduled"
    FLUSHING = "flushing"


def _consume_save_result(fut: "asyncio.Future[None]") -> None:
    # Mutations save fire-and-forget; the failure is already logged by the
    # flush pass, so mark it retrieved to keep asyncio quiet.
    if not fut.cancelled():
        fut.exception()


class ChatManager:
    """
    Authoritative in-memory set of chats, mirrored into a key-value store.

    Layout in the store:
      - INDEX_KEY                 -> list of chat ids that have shards
      - cerebr_chat_v2_<id>       -> one full chat per key
      - per-session current id, process-wide last-active id
      - LEGACY_CHATS_KEY          -> pre-shard array of chats, migrated lazily

    Every mutating method is synchronous up to its first await and marks what
    it touched as dirty. Writes happen later in small flush passes driven by
    the background scheduler; a pass always writes the whole current chat, so
    a later write is never older than an earlier one.
    """

    def __init__(
        self,
        store: KeyValueStore,
        scheduler: BackgroundScheduler,
        session_id: str = "default",
        flush_timeout_ms: float = 1000.0,
        flush_max_rounds: int = 50,
    ) -> None:
        self.store = store
        self.scheduler = scheduler
        self.session_id = session_id
        self.flush_timeout_ms = flush_timeout_ms
        self.flush_max_rounds = flush_max_rounds

        self.chats: Dict[str, Chat] = {}
        self.current_chat_id: Optional[str] = None

        # Dicts used as insertion-ordered sets
        self.dirty_chat_ids: Dict[str, None] = {}
        self.pending_removals: Dict[str, None] = {}
        self.index_dirty = False
        self.migration_queue: Deque[str] = deque()
        self.migration_complete = asyncio.Event()
        self._legacy_pending = False

        self.state = SaveState.IDLE
        self._save_requested = False
        self._save_future: Optional["asyncio.Future[None]"] = None
        self._scheduled: Optional[ScheduledHandle] = None

        self._restore_task: Optional["asyncio.Task[None]"] = None
        self._initialized = False
        self._last_id = 0
        self._background: Set[asyncio.Task] = set()

    @property
    def session_key(self) -> str:
        return SESSION_CURRENT_KEY_PREFIX + self.session_id

    # =====================================================
    # Restore
    # =====================================================

    async def initialize(self) -> None:
        """
        Load chats from the store and pick the active chat. Safe to call more
        than once; concurrent callers share a single restore.
        """
        if self._initialized:
            return
        if self._restore_task is None:
            self._restore_task = asyncio.ensure_future(self._restore())
        try:
            await self._restore_task
        except BaseException:
            self._restore_task = None
            raise

    async def _read(self, keys: Any) -> Dict[str, Any]:
        try:
            return await self.store.get(keys)
        except StorageFailure:
            raise
        except Exception as e:
            raise StorageFailure(f"Store read failed: {e}") from e

    def _parse_chat(self, chat_id: str, raw: Any) -> Optional[Chat]:
        if not isinstance(raw, dict):
            return None
        try:
            return Chat.from_dict({**raw, "id": chat_id})
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("[restore] chat %s is unreadable and was skipped: %s", chat_id, e)
            return None

    async def _load_legacy_chats(self) -> Dict[str, Chat]:
        raw = (await self._read(LEGACY_CHATS_KEY)).get(LEGACY_CHATS_KEY)
        if raw is None:
            return {}
        self._legacy_pending = True
        if not isinstance(raw, list):
            logger.warning("[restore] legacy chat list has unexpected type %s; ignoring it", type(raw).__name__)
            return {}
        legacy: Dict[str, Chat] = {}
        for item in raw:
            if not isinstance(item, dict) or "id" not in item:
                continue
            chat = self._parse_chat(str(item["id"]), item)
            if chat is not None:
                legacy[chat.id] = chat
        return legacy

    async def _restore(self) -> None:
        index = (await self._read(INDEX_KEY)).get(INDEX_KEY)

        if isinstance(index, list):
            ids = [str(i) for i in index]
            shards = await self._read([chat_key(i) for i in ids]) if ids else {}
            missing: List[str] = []
            for chat_id in ids:
                chat = self._parse_chat(chat_id, shards.get(chat_key(chat_id)))
                if chat is None:
                    missing.append(chat_id)
                else:
                    self.chats[chat_id] = chat

            if missing:
                logger.warning("[restore] %d indexed chat(s) have no shard; trying legacy data", len(missing))
                legacy = await self._load_legacy_chats()
                for chat_id in missing:
                    chat = legacy.get(chat_id)
                    if chat is None:
                        logger.warning("[restore] chat %s could not be recovered; dropping it from the index", chat_id)
                        self.index_dirty = True
                        continue
                    self.chats[chat_id] = chat
                    self.migration_queue.append(chat_id)
        else:
            legacy = await self._load_legacy_chats()
            for chat in legacy.values():
                self.chats[chat.id] = chat
                self.migration_queue.append(chat.id)
            if legacy:
                logger.info("[restore] queued %d legacy chat(s) for migration", len(legacy))
            self.index_dirty = self.index_dirty or bool(legacy)

        for chat in self.chats.values():
            self._settle_stale_placeholder(chat)
            if chat.id.isdigit():
                self._last_id = max(self._last_id, int(chat.id))

        if not self.migration_queue and not self._legacy_pending:
            self.migration_complete.set()

        self.current_chat_id = await self._resolve_current_chat_id()
        try:
            await self.store.set({self.session_key: self.current_chat_id})
        except Exception as e:
            logger.warning("[restore] could not persist session pointer: %s", e)

        self._initialized = True
        logger.info(
            "[restore] loaded %d chat(s), current=%s, migration_pending=%d",
            len(self.chats),
            self.current_chat_id,
            len(self.migration_queue),
        )
        if self._has_pending_work():
            self.save_chats()

    def _settle_stale_placeholder(self, chat: Chat) -> None:
        # Nothing is streaming right after a restart.
        for message in chat.messages:
            if message.updating:
                message.updating = False
                self._mark_dirty(chat.id)

    async def _resolve_current_chat_id(self) -> str:
        pointers = await self._read([self.session_key, LAST_ACTIVE_KEY, LEGACY_CURRENT_KEY])

        # A new session follows the user's latest activity before any legacy value.
        for key in (self.session_key, LAST_ACTIVE_KEY):
            candidate = pointers.get(key)
            if candidate in self.chats:
                return candidate

        recent = self._most_recent_chat()
        if recent is not None:
            return recent.id

        legacy_current = pointers.get(LEGACY_CURRENT_KEY)
        if legacy_current in self.chats:
            return legacy_current

        return self.create_new_chat(DEFAULT_CHAT_TITLE).id

    # =====================================================
    # Queries
    # =====================================================

    def get_current_chat(self) -> Optional[Chat]:
        if self.current_chat_id is None:
            return None
        return self.chats.get(self.current_chat_id)

    def get_chat(self, chat_id: str) -> Optional[Chat]:
        return self.chats.get(chat_id)

    def get_all_chats(self) -> List[Chat]:
        """All chats, most recently updated first."""
        return sorted(self.chats.values(), key=lambda c: (c.updated_at, c.id), reverse=True)

    def _most_recent_chat(self) -> Optional[Chat]:
        if not self.chats:
            return None
        return max(self.chats.values(), key=lambda c: (c.updated_at, c.id))

    def _require_current(self) -> Chat:
        chat = self.get_current_chat()
        if chat is None:
            raise NoActiveChatError()
        return chat

    def _require_chat(self, chat_id: str) -> Chat:
        chat = self.chats.get(chat_id)
        if chat is None:
            raise NotFoundError(chat_id)
        return chat

    # =====================================================
    # Chat CRUD
    # =====================================================

    def _allocate_id(self) -> str:
        candidate = max(int(time.time() * 1000), self._last_id + 1)
        while str(candidate) in self.chats:
            candidate += 1
        self._last_id = candidate
        return str(candidate)

    def create_new_chat(self, title: str = DEFAULT_CHAT_TITLE) -> Chat:
        """
        Create an empty chat and return it immediately. The chat is only
        in memory until the next flush writes it.
        """
        now = now_iso()
        chat = Chat(id=self._allocate_id(), title=title, created_at=now, updated_at=now)
        self.chats[chat.id] = chat
        self._mark_dirty(chat.id)
        self.index_dirty = True
        self.save_chats()
        return chat

    async def switch_chat(self, chat_id: str) -> Chat:
        chat = self._require_chat(chat_id)
        self.current_chat_id = chat_id
        chat.touch()
        self._mark_dirty(chat_id)
        self.save_chats()
        try:
            await self.store.set({self.session_key: chat_id, LAST_ACTIVE_KEY: chat_id})
        except Exception as e:
            raise StorageFailure(f"Could not persist current chat pointer: {e}") from e
        return chat

    async def delete_chat(self, chat_id: str) -> None:
        chat = self._require_chat(chat_id)
        del self.chats[chat_id]
        self.dirty_chat_ids.pop(chat_id, None)
        if chat_id in self.migration_queue:
            self.migration_queue.remove(chat_id)
        self.pending_removals[chat_key(chat_id)] = None
        self.index_dirty = True

        was_current = chat_id == self.current_chat_id
        next_chat: Optional[Chat] = None
        if was_current:
            next_chat = self._most_recent_chat() or self.create_new_chat(DEFAULT_CHAT_TITLE)
            self.current_chat_id = next_chat.id
        self.save_chats()

        orphans = self._orphaned_ref_keys(chat)
        if orphans:
            try:
                await self.store.remove(orphans)
                logger.info("[delete] removed %d orphaned resource key(s) of chat %s", len(orphans), chat_id)
            except Exception as e:
                logger.warning("[delete] could not remove orphaned resource keys %s: %s", orphans, e)

        if next_chat is not None and next_chat.id in self.chats:
            await self.switch_chat(next_chat.id)

    def _orphaned_ref_keys(self, deleted: Chat) -> List[str]:
        own = {ref.key for ref in deleted.transcript_refs or []}
        if not own:
            return []
        still_used = {
            ref.key
            for chat in self.chats.values()
            for ref in chat.transcript_refs or []
        }
        return sorted(own - still_used)

    def rename_chat(self, chat_id: str, title: str) -> Chat:
        chat = self._require_chat(chat_id)
        chat.title = title
        chat.touch()
        self._mark_dirty(chat_id)
        self.save_chats()
        return chat

    def add_transcript_ref(self, chat_id: str, ref: RefEntry) -> None:
        """Attach an external resource reference, replacing any entry with the same key."""
        chat = self._require_chat(chat_id)
        refs = [r for r in chat.transcript_refs or [] if r.key != ref.key]
        refs.append(ref)
        chat.transcript_refs = refs
        self._mark_dirty(chat_id)
        self.save_chats()

    # =====================================================
    # Message mutation
    # =====================================================

    def add_message_to_current_chat(self, message: Message) -> None:
        chat = self._require_current()
        last = chat.last_message
        if last is not None and last.updating:
            last.updating = False
        chat.messages.append(message)
        chat.touch()
        self._mark_dirty(chat.id)
        self.save_chats()
        self._spawn(self._record_last_active(chat.id))

    async def _record_last_active(self, chat_id: str) -> None:
        try:
            await self.store.set({LAST_ACTIVE_KEY: chat_id})
        except Exception as e:
            logger.debug("last-active pointer not recorded: %s", e)

    def update_last_message(self, chat_id: str, partial: Mapping[str, Any]) -> None:
        """
        Apply a streaming snapshot to the trailing message of a chat.

        Values in `partial` replace the stored ones (they are accumulated
        snapshots, not deltas), so repeating a snapshot changes nothing. A
        trailing user message gets an assistant placeholder first. Unknown or
        empty chats are ignored: a stream may outlive the chat it targets.
        """
        chat = self.chats.get(chat_id)
        if chat is None or not chat.messages:
            return
        last = chat.messages[-1]
        if last.role == "user":
            last = Message(role="assistant", content="", updating=True)
            chat.messages.append(last)

        content = partial.get("content")
        if content is not None:
            last.content = content
        reasoning = partial.get("reasoning_content")
        if reasoning is not None:
            last.reasoning_content = reasoning

        self._mark_dirty(chat_id)
        self.save_chats()

    def finish_last_message(self, chat_id: str) -> bool:
        """Mark the trailing placeholder as settled. Returns False if nothing was updating."""
        chat = self.chats.get(chat_id)
        last = chat.last_message if chat is not None else None
        if last is None or not last.updating:
            return False
        last.updating = False
        self._mark_dirty(chat_id)
        self.save_chats()
        return True

    def pop_message(self, chat_id: Optional[str] = None) -> Optional[Message]:
        """Remove and return the last message of the current (or given) chat."""
        chat = self._require_chat(chat_id) if chat_id is not None else self._require_current()
        if not chat.messages:
            return None
        message = chat.messages.pop()
        self._mark_dirty(chat.id)
        self.save_chats()
        return message

    def clear_current_chat(self) -> None:
        chat = self._require_current()
        chat.messages = []
        chat.touch()
        self._mark_dirty(chat.id)
        self.save_chats()

    # =====================================================
    # Save scheduling
    # =====================================================

    def _mark_dirty(self, chat_id: str) -> None:
        self.dirty_chat_ids[chat_id] = None

    def _spawn(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _has_pending_work(self) -> bool:
        return bool(
            self._save_requested
            or self.pending_removals
            or self.index_dirty
            or self.migration_queue
            or self.dirty_chat_ids
            or self._legacy_pending
        )

    @property
    def has_unsaved_changes(self) -> bool:
        return self._has_pending_work()

    def save_chats(self) -> "asyncio.Future[None]":
        """
        Request a flush. Returns the save future shared by every caller since
        the last completed flush; it fails with StorageFailure if a store
        write is rejected.
        """
        self._save_requested = True
        if self._save_future is None:
            self._save_future = asyncio.get_running_loop().create_future()
            self._save_future.add_done_callback(_consume_save_result)
        self._request_flush()
        return self._save_future

    def _request_flush(self) -> None:
        # SCHEDULED: the queued pass will see the new work.
        # FLUSHING: the running pass reschedules when it finishes.
        if self.state is not SaveState.IDLE:
            return
        self.state = SaveState.SCHEDULED
        self._scheduled = self.scheduler.schedule(self._flush_pass, timeout_ms=self.flush_timeout_ms)

    async def _flush_pass(self) -> bool:
        if self.state is SaveState.FLUSHING:
            return True
        self.state = SaveState.FLUSHING
        self._scheduled = None
        self._save_requested = False
        try:
            await self._flush_once()
        except asyncio.CancelledError:
            self.state = SaveState.IDLE
            raise
        except Exception as e:
            failure = e if isinstance(e, StorageFailure) else StorageFailure(f"Store write failed: {e}")
            if failure is not e:
                failure.__cause__ = e
            logger.error("[flush] store write failed; changes stay dirty until the next save: %s", e)
            self.state = SaveState.IDLE
            fut, self._save_future = self._save_future, None
            if fut is not None and not fut.done():
                fut.set_exception(failure)
            return False

        self.state = SaveState.IDLE
        if self._has_pending_work():
            self._request_flush()
        else:
            fut, self._save_future = self._save_future, None
            if fut is not None and not fut.done():
                fut.set_result(None)
        return True

    async def _flush_once(self) -> None:
        """One unit of work per tier, highest priority first."""
        if self.pending_removals:
            keys = list(self.pending_removals)
            await self.store.remove(keys)
            for key in keys:
                self.pending_removals.pop(key, None)
        if self.scheduler.should_yield():
            return

        if self.index_dirty:
            self.index_dirty = False
            try:
                await self.store.set({INDEX_KEY: list(self.chats)})
            except BaseException:
                self.index_dirty = True
                raise
        if self.scheduler.should_yield():
            return

        if self.migration_queue:
            await self._migrate_one()
        elif self._legacy_pending and not self.index_dirty:
            await self.store.remove(LEGACY_CHATS_KEY)
            self._legacy_pending = False
            self.migration_complete.set()
            logger.info("[flush] legacy chat data migrated and removed")
        if self.scheduler.should_yield():
            return

        if self.dirty_chat_ids:
            await self._write_shard(next(iter(self.dirty_chat_ids)))

    async def _migrate_one(self) -> None:
        chat_id = self.migration_queue.popleft()
        if chat_id not in self.chats:
            return
        try:
            await self._write_shard(chat_id)
        except BaseException:
            self.migration_queue.appendleft(chat_id)
            raise

    async def _write_shard(self, chat_id: str) -> None:
        was_dirty = chat_id in self.dirty_chat_ids
        self.dirty_chat_ids.pop(chat_id, None)
        chat = self.chats.get(chat_id)
        if chat is None:
            return
        try:
            await self.store.set({chat_key(chat_id): chat.to_dict()})
        except BaseException:
            if was_dirty and chat_id in self.chats:
                self.dirty_chat_ids[chat_id] = None
            raise

    async def flush_now(self, max_rounds: Optional[int] = None) -> bool:
        """
        Drain all dirty state as soon as possible. Returns False (and logs a
        warning) if a pass failed or the work did not drain in time.
        """
        rounds = max_rounds or self.flush_max_rounds
        for _ in range(rounds):
            if self.state is SaveState.IDLE and not self._has_pending_work():
                return True
            if self.state is SaveState.FLUSHING:
                await asyncio.sleep(0)
                continue
            if self._scheduled is not None:
                self._scheduled.cancel()
                self._scheduled = None
            self.state = SaveState.IDLE
            if not await self._flush_pass():
                logger.warning("[flush] flush_now stopped after a failed pass")
                return False
            await asyncio.sleep(0)

        drained = self.state is SaveState.IDLE and not self._has_pending_work()
        if not drained:
            logger.warning("[flush] flush_now could not drain within %d rounds", rounds)
        return drained

    async def dispose(self) -> None:
        await self.flush_now()
        if self._scheduled is not None:
            self._scheduled.cancel()
            self._scheduled = None
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self.scheduler.close()


def chat_ids_in(keys: Iterable[str]) -> Set[str]:
    """Chat ids of every shard key in `keys`."""
    return {k[len(CHAT_KEY_PREFIX):] for k in keys if k.startswith(CHAT_KEY_PREFIX)}
