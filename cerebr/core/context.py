# cerebr/core/context.py

from typing import Optional

import httpx

from cerebr.clients.openai_client import ApiConfig
from cerebr.config.settings import Settings, load_settings
from cerebr.core.chat import ChatCore
from cerebr.memory.db import SqliteKeyValueStore
from cerebr.memory.repository import ChatManager
from cerebr.memory.scheduler import AsyncioIdleScheduler, BackgroundScheduler
from cerebr.memory.store import KeyValueStore
from cerebr.utils.logging import get_logger, mask_secret

logger = get_logger(__name__)


class AppContext:
    """
    Everything one process needs, built once at startup and passed to the
    CLI or the HTTP app. Nothing here touches the store or the network until
    initialize() is awaited.
    """

    def __init__(
        self,
        settings: Settings,
        store: Optional[KeyValueStore] = None,
        scheduler: Optional[BackgroundScheduler] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.settings = settings
        self.store = store if store is not None else SqliteKeyValueStore(settings.db_path)
        self.scheduler = scheduler if scheduler is not None else AsyncioIdleScheduler(budget_ms=settings.flush_budget_ms)
        self.http_client = http_client
        self.api_config = ApiConfig.from_settings(settings)
        self.manager = ChatManager(
            self.store,
            self.scheduler,
            session_id=settings.session_id,
            flush_timeout_ms=settings.flush_timeout_ms,
            flush_max_rounds=settings.flush_max_rounds,
        )
        self.chat = ChatCore(
            self.manager,
            self.api_config,
            http_client=http_client,
            max_stream_retries=settings.max_stream_retries,
            auto_title=settings.auto_title,
        )

    @classmethod
    def from_env(cls) -> "AppContext":
        return cls(load_settings())

    async def initialize(self) -> None:
        await self.manager.initialize()
        logger.info(
            "Context ready: db=%s session=%s model=%s endpoint=%s api_key=%s",
            self.settings.db_path,
            self.settings.session_id,
            self.settings.openai_model,
            self.settings.openai_base_url,
            mask_secret(self.settings.openai_api_key),
        )

    async def flush_now(self) -> bool:
        return await self.manager.flush_now()

    async def dispose(self) -> None:
        self.chat.cancel()
        await self.manager.dispose()
        await self.store.close()
        if self.http_client is not None:
            await self.http_client.aclose()
