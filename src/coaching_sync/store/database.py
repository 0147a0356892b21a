from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

REMOTE_SCHEMA = """
CREATE TABLE IF NOT EXISTS session_documents (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    session_type TEXT NOT NULL CHECK (session_type IN ('default', 'breakout')),
    parent_session_id TEXT NULL,
    title TEXT NULL,
    goal TEXT NULL,
    messages_json TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_session_documents_user_type
    ON session_documents(user_id, session_type, updated_at);
"""

CACHE_SCHEMA = """
CREATE TABLE IF NOT EXISTS cache_entries (
    user_id TEXT PRIMARY KEY,
    payload BLOB NOT NULL,
    message_count INTEGER NOT NULL DEFAULT 0,
    last_accessed TEXT NOT NULL,
    last_updated TEXT NOT NULL
);
"""


class SqliteDatabase:
    def __init__(self, db_path: str, schema: str):
        self._db_path = Path(db_path)
        if db_path != ":memory:":
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(schema)
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    def execute(self, query: str, params: tuple[Any, ...] = ()) -> sqlite3.Cursor:
        return self._conn.execute(query, params)

    def executemany(self, query: str, seq_of_params: list[tuple[Any, ...]]) -> sqlite3.Cursor:
        return self._conn.executemany(query, seq_of_params)

    def commit(self) -> None:
        self._conn.commit()

    def rollback(self) -> None:
        self._conn.rollback()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Write transaction that takes the database lock before the first read."""
        self._conn.execute("BEGIN IMMEDIATE")
        try:
            yield
        except BaseException:
            self._conn.rollback()
            raise
        self._conn.commit()
