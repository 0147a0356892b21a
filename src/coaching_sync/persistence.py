from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum

from loguru import logger

from coaching_sync.models import Message, SessionKey, SessionKind, has_user_message
from coaching_sync.store.local_cache import LocalCacheStore
from coaching_sync.store.remote_store import RemoteSessionStore


class WriteState(str, Enum):
    IDLE = "idle"
    SCHEDULED = "scheduled"
    WRITING = "writing"


def write_fingerprint(key: SessionKey, messages: list[Message]) -> str:
    last_id = messages[-1].id if messages else ""
    return f"{key.describe()}:{len(messages)}:{last_id}"


@dataclass
class _UserWrites:
    pending: tuple[SessionKey, list[Message]] | None = None
    force: bool = False
    timer: asyncio.Task | None = None
    in_flight: bool = False
    idle: asyncio.Event = field(default_factory=asyncio.Event)
    last_fingerprint: str | None = None
    flushes: set[asyncio.Task] = field(default_factory=set)

    def __post_init__(self) -> None:
        self.idle.set()

    @property
    def state(self) -> WriteState:
        if self.in_flight:
            return WriteState.WRITING
        if self.pending is not None or self.timer is not None:
            return WriteState.SCHEDULED
        return WriteState.IDLE


class DebouncedPersistenceQueue:
    """Coalesces message mutations into one remote write per quiet period.

    Each user has its own countdown, pending payload and in-flight marker, so
    writes for one user are serialized while different users never block
    each other. The countdown only ever cancels a sleeping timer; a write
    that has started always runs to completion.
    """

    def __init__(
        self,
        remote: RemoteSessionStore,
        cache: LocalCacheStore | None = None,
        *,
        delay_seconds: float = 1.0,
    ):
        self._remote = remote
        self._cache = cache
        self._delay_seconds = max(0.0, delay_seconds)
        self._users: dict[str, _UserWrites] = {}
        self._closed = False

    def state_of(self, user_id: str) -> WriteState:
        writes = self._users.get(user_id)
        return writes.state if writes is not None else WriteState.IDLE

    def is_writing(self, user_id: str) -> bool:
        writes = self._users.get(user_id)
        return bool(writes and writes.in_flight)

    def schedule(self, messages: list[Message], key: SessionKey, *, force: bool = False) -> bool:
        """Restart the countdown for ``key.user_id`` with ``messages`` as the payload.

        Returns False when nothing was scheduled: the queue is closed or the
        conversation has no user message yet (a lone greeting is never
        persisted).
        """
        if self._closed:
            logger.debug(f"Persistence queue closed, dropping schedule for {key.describe()}")
            return False
        if not has_user_message(messages):
            logger.debug(f"Skipping persistence for {key.describe()}: no user message yet")
            return False

        writes = self._users.setdefault(key.user_id, _UserWrites())
        writes.pending = (key, list(messages))
        writes.force = writes.force or force
        if writes.timer is not None:
            writes.timer.cancel()
        writes.timer = asyncio.create_task(self._countdown(key.user_id, writes))
        return True

    async def flush_now(self, user_id: str | None = None) -> None:
        """Skip the countdown and write any pending payload immediately."""
        user_ids = [user_id] if user_id is not None else list(self._users)
        for uid in user_ids:
            writes = self._users.get(uid)
            if writes is None:
                continue
            if writes.timer is not None:
                writes.timer.cancel()
                writes.timer = None
            if writes.pending is not None:
                self._start_flush(uid, writes)
        await self.drain(user_id)

    async def drain(self, user_id: str | None = None) -> None:
        """Wait for every started write (and any countdown) to finish."""
        user_ids = [user_id] if user_id is not None else list(self._users)
        for uid in user_ids:
            writes = self._users.get(uid)
            if writes is None:
                continue
            while writes.timer is not None or writes.flushes:
                waiting = [t for t in [writes.timer, *writes.flushes] if t is not None]
                await asyncio.gather(*waiting, return_exceptions=True)

    async def cancel(self, user_id: str) -> None:
        """Drop the pending payload and countdown for ``user_id``.

        A write that is already running is awaited, so once this returns
        nothing for the user can still reach the remote store.
        """
        writes = self._users.get(user_id)
        if writes is None:
            return
        if writes.timer is not None:
            writes.timer.cancel()
            writes.timer = None
        writes.pending = None
        writes.force = False
        await self.drain(user_id)
        if self._users.get(user_id) is writes:
            del self._users[user_id]
        logger.debug(f"Cancelled pending persistence for user {user_id}")

    async def close(self) -> None:
        await self.flush_now()
        self._closed = True

    async def _countdown(self, user_id: str, writes: _UserWrites) -> None:
        await asyncio.sleep(self._delay_seconds)
        if writes.timer is asyncio.current_task():
            writes.timer = None
        self._start_flush(user_id, writes)

    def _start_flush(self, user_id: str, writes: _UserWrites) -> None:
        task = asyncio.create_task(self._flush(user_id, writes))
        writes.flushes.add(task)
        task.add_done_callback(writes.flushes.discard)

    async def _flush(self, user_id: str, writes: _UserWrites) -> None:
        while writes.in_flight:
            await writes.idle.wait()

        if writes.pending is None:
            return
        key, messages = writes.pending
        force = writes.force
        writes.pending = None
        writes.force = False

        fingerprint = write_fingerprint(key, messages)
        if not force and fingerprint == writes.last_fingerprint:
            logger.debug(f"Skipping unchanged write for {key.describe()} ({len(messages)} messages)")
            return

        writes.in_flight = True
        writes.idle.clear()
        try:
            if self._cache is not None and key.kind is SessionKind.DEFAULT:
                self._cache.save(user_id, messages)
            document_id = await self._remote.upsert_messages(key, messages)
            writes.last_fingerprint = fingerprint
            logger.info(f"Persisted {len(messages)} messages for {key.describe()} to {document_id}")
        except asyncio.CancelledError:
            raise
        except Exception as ex:
            logger.warning(f"Failed to persist messages for {key.describe()}, will retry on next change: {ex}")
        finally:
            writes.in_flight = False
            writes.idle.set()
