from __future__ import annotations

from typing import Protocol

from loguru import logger

from coaching_sync.dedupe import dedupe, same_history
from coaching_sync.models import Message, SessionKey, SessionSnapshot
from coaching_sync.store.remote_store import RemoteSessionStore, Unsubscribe


class ReconciliationTarget(Protocol):
    @property
    def turn_in_flight(self) -> bool: ...

    @property
    def writes_pending(self) -> bool: ...

    @property
    def full_history(self) -> list[Message]: ...

    def replace_history(self, messages: list[Message]) -> None: ...


class ReconciliationListener:
    """Keeps local history in step with the remote document for one session."""

    def __init__(self, remote: RemoteSessionStore, target: ReconciliationTarget):
        self._remote = remote
        self._target = target
        self._key: SessionKey | None = None
        self._unsubscribe: Unsubscribe | None = None
        self._generation = 0
        self.applied_count = 0
        self.suppressed_count = 0

    @property
    def active_key(self) -> SessionKey | None:
        return self._key

    async def start(self, key: SessionKey) -> None:
        if self._key == key and self._unsubscribe is not None:
            return
        self.stop()
        self._key = key
        self._generation += 1
        generation = self._generation
        unsubscribe = await self._remote.subscribe(key, self._on_change)
        if generation != self._generation:
            # Superseded by another start() while subscribing.
            unsubscribe()
            return
        self._unsubscribe = unsubscribe
        logger.debug(f"Listening for remote changes on {key.describe()}")

    def stop(self) -> None:
        self._generation += 1
        if self._unsubscribe is not None:
            self._unsubscribe()
            logger.debug(f"Stopped listening on {self._key.describe() if self._key else '?'}")
        self._unsubscribe = None
        self._key = None

    def _on_change(self, snapshot: SessionSnapshot | None) -> None:
        if snapshot is None or self._key is None:
            return
        if self._target.turn_in_flight:
            self.suppressed_count += 1
            logger.debug(f"Ignoring remote snapshot for {self._key.describe()}: turn in flight")
            return
        if self._target.writes_pending:
            # The pending write carries newer local state and will echo back.
            self.suppressed_count += 1
            logger.debug(f"Ignoring remote snapshot for {self._key.describe()}: local write pending")
            return

        incoming = dedupe(snapshot.messages)
        if not incoming:
            return
        if same_history(incoming, self._target.full_history):
            return
        logger.info(f"Applying remote snapshot for {self._key.describe()} ({len(incoming)} messages)")
        self._target.replace_history(incoming)
        self.applied_count += 1
