from __future__ import annotations

import asyncio
from collections.abc import Callable
from enum import Enum

from loguru import logger

from coaching_sync import markers
from coaching_sync.app_config import SyncSettings
from coaching_sync.dedupe import dedupe
from coaching_sync.models import (
    FetchResult,
    Message,
    SessionKey,
    SessionKind,
    breakout_greeting,
    greeting_message,
)
from coaching_sync.pagination import PaginationWindow
from coaching_sync.persistence import DebouncedPersistenceQueue, WriteState
from coaching_sync.reconciliation import ReconciliationListener
from coaching_sync.store.local_cache import LocalCacheStore
from coaching_sync.store.remote_store import RemoteSessionStore

DisplayCallback = Callable[[list[Message]], None]


class SyncState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"


class SyncCoordinator:
    """Owns the message history of the open session and wires the stores together.

    The coordinator is the single writer of local state: the pagination
    window, the reconciliation listener and the persistence queue all act
    through it, so a session open, a user switch and a reset each happen as
    one state transition.
    """

    def __init__(
        self,
        remote: RemoteSessionStore,
        cache: LocalCacheStore | None = None,
        *,
        settings: SyncSettings | None = None,
        persistence: DebouncedPersistenceQueue | None = None,
        first_name: str | None = None,
        on_display_changed: DisplayCallback | None = None,
    ):
        self._settings = settings or SyncSettings()
        self._remote = remote
        self._cache = cache
        self._persistence = persistence or DebouncedPersistenceQueue(
            remote,
            cache,
            delay_seconds=self._settings.debounce_seconds,
        )
        self._window = PaginationWindow(
            initial_window=self._settings.initial_window,
            page_size=self._settings.page_size,
            throttle_seconds=self._settings.load_throttle_seconds,
            load_delay_seconds=self._settings.load_delay_seconds,
        )
        self._listener = ReconciliationListener(remote, self)
        self._first_name = first_name
        self._on_display_changed = on_display_changed
        self._state = SyncState.UNINITIALIZED
        self._key: SessionKey | None = None
        self._document_id: str | None = None
        self._title: str | None = None
        self._goal: str | None = None
        self._turn_in_flight = False
        self._open_task: asyncio.Task | None = None
        self._epoch = 0

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def active_key(self) -> SessionKey | None:
        return self._key

    @property
    def document_id(self) -> str | None:
        return self._document_id

    @property
    def persistence(self) -> DebouncedPersistenceQueue:
        return self._persistence

    @property
    def listener(self) -> ReconciliationListener:
        return self._listener

    @property
    def session_title(self) -> str | None:
        return self._title

    @property
    def session_goal(self) -> str | None:
        return self._goal

    @property
    def turn_in_flight(self) -> bool:
        return self._turn_in_flight

    @property
    def writes_pending(self) -> bool:
        if self._key is None:
            return False
        return self._persistence.state_of(self._key.user_id) is not WriteState.IDLE

    @property
    def full_history(self) -> list[Message]:
        return self._window.full_history

    @property
    def has_more(self) -> bool:
        return self._window.has_more

    @property
    def displayed_count(self) -> int:
        return self._window.displayed_count

    def displayed(self) -> list[Message]:
        return self._window.displayed()

    def find_message(self, message_id: str) -> Message:
        for message in self._window.full_history:
            if message.id == message_id:
                return message
        raise ValueError(f"Message not found: {message_id}")

    async def open_session(
        self,
        key: SessionKey,
        *,
        title: str | None = None,
        goal: str | None = None,
    ) -> list[Message]:
        if self._key == key:
            if self._state is SyncState.READY:
                return self.displayed()
            if self._state is SyncState.INITIALIZING and self._open_task is not None:
                logger.debug(f"Open already in progress for {key.describe()}")
                await self._open_task
                return self.displayed()

        if self._key is not None and self._key.user_id != key.user_id:
            await self.switch_user()
        elif self._key is not None:
            await self._persistence.flush_now(self._key.user_id)
            self._listener.stop()

        self._epoch += 1
        self._key = key
        self._document_id = None
        self._title = title
        self._goal = goal
        self._turn_in_flight = False
        self._state = SyncState.INITIALIZING
        task = asyncio.create_task(self._initialize(key, self._epoch, title, goal))
        self._open_task = task
        try:
            await task
        finally:
            if self._open_task is task:
                self._open_task = None
        return self.displayed()

    async def _initialize(self, key: SessionKey, epoch: int, title: str | None, goal: str | None) -> None:
        logger.info(f"Opening session {key.describe()}")
        if self._cache is not None and key.kind is SessionKind.DEFAULT:
            cached = self._cache.load(key.user_id)
            if cached:
                logger.debug(f"Painting {len(cached)} cached messages for {key.describe()}")
                self._window.initialize(dedupe(cached))
                self._notify()

        try:
            result = await self._remote.fetch_session(key)
        except asyncio.CancelledError:
            raise
        except Exception as ex:
            logger.warning(f"Failed to fetch session {key.describe()}, starting fresh: {ex}")
            result = FetchResult.missing()

        if epoch != self._epoch:
            logger.debug(f"Discarding stale open of {key.describe()}")
            return

        if result.snapshot is not None:
            self._document_id = result.snapshot.document_id
            self._title = title or result.snapshot.title
            self._goal = goal or result.snapshot.goal

        if result.exists and result.messages:
            history = dedupe(result.messages)
            self._window.initialize(history)
            self._save_cache(key, history)
            logger.info(f"Loaded {len(history)} messages for {key.describe()}")
        else:
            self._window.initialize([self._greeting(key, self._title, self._goal)])
            if self._cache is not None and key.kind is SessionKind.DEFAULT:
                self._cache.clear(key.user_id)
            logger.info(f"No stored history for {key.describe()}, showing greeting")

        await self._listener.start(key)
        if epoch != self._epoch:
            return
        self._state = SyncState.READY
        self._notify()

    def _greeting(self, key: SessionKey, title: str | None, goal: str | None) -> Message:
        if key.kind is SessionKind.BREAKOUT:
            return breakout_greeting(key.session_id, title=title, goal=goal)
        return greeting_message(self._first_name)

    def _require_ready(self) -> SessionKey:
        if self._state is not SyncState.READY or self._key is None:
            raise RuntimeError("No session is open")
        return self._key

    def append_message(self, message: Message) -> None:
        key = self._require_ready()
        if any(existing.id == message.id for existing in self._window.full_history):
            raise ValueError(f"Duplicate message id: {message.id}")
        self._window.append([message])
        self._notify()
        self._persist(key)

    def update_message(
        self,
        message_id: str,
        content: str,
        *,
        is_error: bool | None = None,
        original_user_message: str | None = None,
    ) -> Message:
        key = self._require_ready()
        updated = self.find_message(message_id).with_content(
            content,
            is_error=is_error,
            original_user_message=original_user_message,
        )
        self._window.replace_message(updated)
        self._notify()
        self._persist(key, force=True)
        return updated

    def update_marker(
        self,
        message_id: str,
        type_name: str,
        occurrence: int = 0,
        *,
        state: str | None = None,
        attributes: dict[str, str] | None = None,
    ) -> Message:
        message = self.find_message(message_id)
        content = markers.update_marker(
            message.content,
            type_name,
            occurrence,
            state=state,
            attributes=attributes,
        )
        return self.update_message(message_id, content)

    def replace_marker(self, message_id: str, type_name: str, occurrence: int, replacement: str) -> Message:
        message = self.find_message(message_id)
        content = markers.replace_marker(message.content, type_name, occurrence, replacement)
        return self.update_message(message_id, content)

    def begin_turn(self) -> None:
        self._require_ready()
        if self._turn_in_flight:
            raise ValueError("A turn is already running")
        self._turn_in_flight = True

    def end_turn(self) -> None:
        if not self._turn_in_flight:
            return
        self._turn_in_flight = False
        if self._key is not None and self._state is SyncState.READY:
            self._persist(self._key, force=True)

    async def load_more(self) -> list[Message]:
        self._require_ready()
        before = self._window.displayed_count
        displayed = await self._window.load_more(self._settings.page_size)
        if self._window.displayed_count != before:
            self._notify()
        return displayed

    def replace_history(self, messages: list[Message]) -> None:
        """Adopt a reconciled remote history."""
        if self._key is None:
            return
        self._window.replace_history(messages)
        self._save_cache(self._key, self._window.full_history)
        self._notify()

    async def reset_session(self) -> list[Message]:
        key = self._require_ready()
        if self._turn_in_flight:
            raise ValueError("Cannot reset while a turn is running")
        self._listener.stop()
        await self._persistence.cancel(key.user_id)
        try:
            deleted = await self._remote.delete_session(key)
            logger.info(f"Reset session {key.describe()} ({deleted} document(s) removed)")
        except asyncio.CancelledError:
            raise
        except Exception as ex:
            logger.warning(f"Failed to delete remote session {key.describe()}: {ex}")
        if self._cache is not None and key.kind is SessionKind.DEFAULT:
            self._cache.clear(key.user_id)
        self._document_id = None
        self._window.initialize([self._greeting(key, self._title, self._goal)])
        await self._listener.start(key)
        self._notify()
        return self.displayed()

    async def spawn_breakout(self, *, title: str | None = None, goal: str | None = None) -> SessionKey:
        key = self._require_ready()
        if key.kind is not SessionKind.DEFAULT:
            raise ValueError("Breakout sessions are spawned from the default session")
        await self._persistence.flush_now(key.user_id)
        breakout = await self._remote.create_breakout_session(
            key.user_id,
            parent_session_id=self._document_id,
            title=title,
            goal=goal,
        )
        return breakout

    async def switch_user(self) -> None:
        """Tear down the open session: pending writes flushed, cache cleared, state reset."""
        previous = self._key
        self._epoch += 1
        self._listener.stop()
        if previous is not None:
            await self._persistence.flush_now(previous.user_id)
            await self._persistence.cancel(previous.user_id)
            if self._cache is not None:
                self._cache.clear(previous.user_id)
            logger.info(f"Closed session for user {previous.user_id}")
        self._key = None
        self._document_id = None
        self._title = None
        self._goal = None
        self._turn_in_flight = False
        self._window.reset()
        self._state = SyncState.UNINITIALIZED
        self._notify()

    async def logout(self) -> None:
        await self.switch_user()

    async def close(self) -> None:
        self._listener.stop()
        await self._persistence.close()

    def _persist(self, key: SessionKey, *, force: bool = False) -> None:
        if self._turn_in_flight:
            return
        self._persistence.schedule(self._window.full_history, key, force=force)

    def _save_cache(self, key: SessionKey, messages: list[Message]) -> None:
        if self._cache is not None and key.kind is SessionKind.DEFAULT:
            self._cache.save(key.user_id, messages)

    def _notify(self) -> None:
        if self._on_display_changed is None:
            return
        try:
            self._on_display_changed(self.displayed())
        except Exception as ex:
            logger.warning(f"Display callback failed: {ex}")
