from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import httpx
from loguru import logger

from chat_relay.app_config import AppConfig, RuntimeEnv
from chat_relay.cache import TTLCache
from chat_relay.logging_config import setup_logging
from chat_relay.memory import EventEmitter, MemoryStore, SessionManager, VariantManager, VersionAllocator
from chat_relay.provider import AIConfig
from chat_relay.relay import RelayTasks
from chat_relay.services.chat_service import ChatService
from chat_relay.services.variant_service import VariantService

CONFIG_CACHE_TTL_SECONDS = 5.0


@dataclass
class AppRuntime:
    app: AppConfig
    store: MemoryStore
    events: EventEmitter
    sessions: SessionManager
    variants: VariantManager
    allocator: VersionAllocator
    http: httpx.AsyncClient
    tasks: RelayTasks
    config_cache: TTLCache[AIConfig]
    chat: ChatService
    variant_service: VariantService
    log_descriptions: list[str] = field(default_factory=list)

    async def aclose(self) -> None:
        await self.tasks.aclose()
        await self.http.aclose()
        self.store.close()


def bootstrap_runtime(
    app: AppConfig,
    env: RuntimeEnv,
    *,
    http: httpx.AsyncClient | None = None,
    configure_logging: bool = True,
) -> AppRuntime:
    log_descriptions: list[str] = []
    if configure_logging:
        log_descriptions = setup_logging(
            level=app.log_level, consumers=app.log_consumers, debug_capture=app.debug_capture
        )

    if app.db_path == ":memory:":
        db_path = app.db_path
    else:
        path = Path(app.db_path)
        if not path.is_absolute():
            path = Path.cwd() / path
        db_path = str(path)
    store = MemoryStore(db_path)
    events = EventEmitter(store)
    sessions = SessionManager(store, events)
    variants = VariantManager(store, events)
    allocator = VersionAllocator(variants, max_attempts=app.variant_max_attempts)

    http = http or httpx.AsyncClient()
    tasks = RelayTasks()
    config_cache: TTLCache[AIConfig] = TTLCache(CONFIG_CACHE_TTL_SECONDS)

    logger.info(f"Chat relay ready: provider={app.provider_name}, db={db_path}")
    return AppRuntime(
        app=app,
        store=store,
        events=events,
        sessions=sessions,
        variants=variants,
        allocator=allocator,
        http=http,
        tasks=tasks,
        config_cache=config_cache,
        chat=ChatService(sessions, events, app, env, http, tasks, config_cache),
        variant_service=VariantService(sessions, variants, allocator, app, env, http, tasks, config_cache),
        log_descriptions=log_descriptions,
    )
