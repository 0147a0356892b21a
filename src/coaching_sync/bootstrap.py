from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from coaching_sync.app_config import AppConfig, RuntimeEnv, SyncSettings, sync_settings_for
from coaching_sync.conversation import CoachingConversation
from coaching_sync.coordinator import DisplayCallback, SyncCoordinator
from coaching_sync.logging_config import setup_logging
from coaching_sync.producer import ContentProducer, create_content_producer
from coaching_sync.store import LocalCacheStore, SqliteSessionStore, load_or_create_cache_key
from coaching_sync.system_prompt import build_system_prompt


@dataclass
class AppRuntime:
    coordinator: SyncCoordinator
    conversation: CoachingConversation
    remote: SqliteSessionStore
    cache: LocalCacheStore
    producer: ContentProducer
    settings: SyncSettings
    log_descriptions: list[str]

    async def close(self) -> None:
        await self.coordinator.close()
        close_producer = getattr(self.producer, "close", None)
        if close_producer is not None:
            await close_producer()
        self.remote.close()
        self.cache.close()


def _resolve(path: str) -> str:
    resolved = Path(path)
    if not resolved.is_absolute():
        resolved = Path.cwd() / resolved
    return str(resolved)


async def bootstrap_runtime(
    app: AppConfig,
    env: RuntimeEnv,
    *,
    on_display_changed: DisplayCallback | None = None,
) -> AppRuntime:
    log_descriptions = setup_logging(level=app.log_level, consumers=app.log_consumers)
    settings = sync_settings_for(app)

    remote = SqliteSessionStore.open(_resolve(app.remote_db_path))
    encryption_key = env.cache_key.encode("ascii") if env.cache_key else load_or_create_cache_key(
        _resolve(app.cache_key_path)
    )
    cache = LocalCacheStore.open(
        _resolve(app.cache_db_path),
        encryption_key=encryption_key,
        max_messages=settings.cache_max_messages,
    )
    removed = cache.cleanup(app.cache_retention_days)
    if removed:
        logger.info(f"Pruned {removed} stale cache entries")

    producer = create_content_producer(
        app.provider_name,
        env.provider_api_key,
        model=app.model,
        max_tokens=app.max_tokens,
        temperature=app.temperature,
        system_prompt=build_system_prompt(app.user_first_name),
        base_url=app.coaching_api_url,
    )

    coordinator = SyncCoordinator(
        remote,
        cache,
        settings=settings,
        first_name=app.user_first_name,
        on_display_changed=on_display_changed,
    )

    return AppRuntime(
        coordinator=coordinator,
        conversation=CoachingConversation(coordinator, producer),
        remote=remote,
        cache=cache,
        producer=producer,
        settings=settings,
        log_descriptions=log_descriptions,
    )
