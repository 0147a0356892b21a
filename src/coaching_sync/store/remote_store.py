from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Protocol, runtime_checkable
from uuid import uuid4

from loguru import logger

from coaching_sync.models import (
    BREAKOUT_SESSION_PREFIX,
    FetchResult,
    Message,
    SessionKey,
    SessionKind,
    SessionSnapshot,
    messages_from_dicts,
    messages_to_dicts,
    utc_now,
    validate_user_id,
)
from coaching_sync.store.database import REMOTE_SCHEMA, SqliteDatabase

SnapshotCallback = Callable[[SessionSnapshot | None], None]
Unsubscribe = Callable[[], None]


@runtime_checkable
class RemoteSessionStore(Protocol):
    async def fetch_session(self, key: SessionKey) -> FetchResult:
        """Look up the single document for ``key``; absence is not an error."""
        ...

    async def upsert_messages(self, key: SessionKey, messages: list[Message]) -> str:
        """Replace the document's messages, creating it only when none exists. Returns the document id."""
        ...

    async def subscribe(self, key: SessionKey, on_change: SnapshotCallback) -> Unsubscribe:
        """Push every change of the document to ``on_change`` until unsubscribed."""
        ...

    async def delete_session(self, key: SessionKey) -> int:
        ...

    async def create_breakout_session(
        self,
        user_id: str,
        *,
        parent_session_id: str | None,
        title: str | None = None,
        goal: str | None = None,
        messages: list[Message] | None = None,
    ) -> SessionKey:
        ...


def _timestamp() -> str:
    return utc_now().isoformat(timespec="microseconds")


class Subscription:
    """One listener: a queue of snapshots drained by its own task."""

    def __init__(self, key: SessionKey, on_change: SnapshotCallback):
        self.key = key
        self._on_change = on_change
        self._queue: asyncio.Queue[SessionSnapshot | None] = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    def push(self, snapshot: SessionSnapshot | None) -> None:
        if self._closed:
            return
        self._queue.put_nowait(snapshot)

    def cancel(self) -> None:
        self._closed = True
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _run(self) -> None:
        while True:
            snapshot = await self._queue.get()
            if self._closed:
                return
            try:
                self._on_change(snapshot)
            except Exception as ex:
                logger.warning(f"Snapshot listener for {self.key.describe()} failed: {ex}")


class SqliteSessionStore:
    """Document store with one messages array per session document.

    Documents are located by field query (user id and session type) for the
    default session and by document id for breakouts, the way a hosted
    document database is queried. Subscribers receive snapshots after every
    committed write made through this store.
    """

    def __init__(self, db: SqliteDatabase):
        self._db = db
        self._subscriptions: list[Subscription] = []

    @classmethod
    def open(cls, db_path: str) -> SqliteSessionStore:
        return cls(SqliteDatabase(db_path, REMOTE_SCHEMA))

    def close(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.cancel()
        self._subscriptions.clear()
        self._db.close()

    async def fetch_session(self, key: SessionKey) -> FetchResult:
        rows = self._find_rows(key)
        if not rows:
            logger.debug(f"No session document for {key.describe()}")
            return FetchResult.missing()
        if len(rows) > 1:
            logger.warning(
                f"Found {len(rows)} documents for {key.describe()}; using most recently updated {rows[0]['id']}"
            )
        snapshot = self._to_snapshot(rows[0])
        return FetchResult(exists=True, messages=snapshot.messages, snapshot=snapshot)

    async def upsert_messages(self, key: SessionKey, messages: list[Message]) -> str:
        payload = json.dumps(messages_to_dicts(messages), ensure_ascii=True)
        now = _timestamp()
        with self._db.transaction():
            # Re-query inside the write lock so concurrent creators converge on one document.
            rows = self._find_rows(key)
            if rows:
                document_id = str(rows[0]["id"])
                if len(rows) > 1:
                    logger.warning(
                        f"Duplicate documents for {key.describe()}; updating most recent {document_id}"
                    )
                self._db.execute(
                    "UPDATE session_documents SET messages_json = ?, updated_at = ? WHERE id = ?",
                    (payload, now, document_id),
                )
            else:
                document_id = key.session_id or str(uuid4())
                self._db.execute(
                    """
                    INSERT INTO session_documents
                        (id, user_id, session_type, parent_session_id, title, goal, messages_json, created_at, updated_at)
                    VALUES (?, ?, ?, NULL, NULL, NULL, ?, ?, ?)
                    """,
                    (document_id, key.user_id, key.kind.value, payload, now, now),
                )
                logger.info(f"Created session document {document_id} for {key.describe()}")
        self._notify(key, document_id)
        return document_id

    async def subscribe(self, key: SessionKey, on_change: SnapshotCallback) -> Unsubscribe:
        subscription = Subscription(key, on_change)
        self._subscriptions.append(subscription)
        subscription.start()
        rows = self._find_rows(key)
        if rows:
            subscription.push(self._to_snapshot(rows[0]))

        def _unsubscribe() -> None:
            subscription.cancel()
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

        return _unsubscribe

    async def delete_session(self, key: SessionKey) -> int:
        with self._db.transaction():
            rows = self._find_rows(key)
            if rows:
                self._db.executemany(
                    "DELETE FROM session_documents WHERE id = ?",
                    [(str(row["id"]),) for row in rows],
                )
        if rows:
            logger.info(f"Deleted {len(rows)} session document(s) for {key.describe()}")
            for subscription in self._matching(key):
                subscription.push(None)
        return len(rows)

    async def create_breakout_session(
        self,
        user_id: str,
        *,
        parent_session_id: str | None,
        title: str | None = None,
        goal: str | None = None,
        messages: list[Message] | None = None,
    ) -> SessionKey:
        validate_user_id(user_id)
        key = SessionKey.breakout(user_id, f"{BREAKOUT_SESSION_PREFIX}{uuid4().hex}")
        now = _timestamp()
        with self._db.transaction():
            self._db.execute(
                """
                INSERT INTO session_documents
                    (id, user_id, session_type, parent_session_id, title, goal, messages_json, created_at, updated_at)
                VALUES (?, ?, 'breakout', ?, ?, ?, ?, ?, ?)
                """,
                (
                    key.session_id,
                    user_id,
                    parent_session_id,
                    title,
                    goal,
                    json.dumps(messages_to_dicts(messages or []), ensure_ascii=True),
                    now,
                    now,
                ),
            )
        logger.info(f"Created breakout session {key.session_id} (parent={parent_session_id})")
        return key

    def count_documents(self, key: SessionKey) -> int:
        return len(self._find_rows(key))

    def _find_rows(self, key: SessionKey) -> list:
        if key.kind is SessionKind.BREAKOUT:
            return self._db.execute(
                "SELECT * FROM session_documents WHERE id = ? AND user_id = ?",
                (key.session_id, key.user_id),
            ).fetchall()
        return self._db.execute(
            """
            SELECT *
            FROM session_documents
            WHERE user_id = ? AND session_type = 'default'
            ORDER BY updated_at DESC, created_at DESC, rowid DESC
            """,
            (key.user_id,),
        ).fetchall()

    def _matching(self, key: SessionKey) -> list[Subscription]:
        return [s for s in self._subscriptions if s.key == key and not s.closed]

    def _notify(self, key: SessionKey, document_id: str) -> None:
        subscribers = self._matching(key)
        if not subscribers:
            return
        row = self._db.execute(
            "SELECT * FROM session_documents WHERE id = ? LIMIT 1",
            (document_id,),
        ).fetchone()
        snapshot = self._to_snapshot(row) if row is not None else None
        for subscription in subscribers:
            subscription.push(snapshot)

    def _to_snapshot(self, row) -> SessionSnapshot:
        try:
            messages = messages_from_dicts(json.loads(row["messages_json"]))
        except (ValueError, TypeError) as ex:
            logger.warning(f"Unreadable messages in session document {row['id']}: {ex}")
            messages = []
        return SessionSnapshot(
            document_id=str(row["id"]),
            user_id=str(row["user_id"]),
            kind=SessionKind(row["session_type"]),
            messages=messages,
            created_at=str(row["created_at"]),
            updated_at=str(row["updated_at"]),
            parent_session_id=row["parent_session_id"],
            title=row["title"],
            goal=row["goal"],
        )
