from __future__ import annotations

import json
import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken
from loguru import logger

from coaching_sync.models import (
    Message,
    messages_from_dicts,
    messages_to_dicts,
    utc_now,
    validate_user_id,
)
from coaching_sync.store.database import CACHE_SCHEMA, SqliteDatabase

DEFAULT_MAX_CACHED_MESSAGES = 300


@dataclass(frozen=True)
class CacheStats:
    total_users: int
    total_messages: int
    oldest_entry: str | None
    newest_entry: str | None


def load_or_create_cache_key(path: str) -> bytes:
    """Return the Fernet key stored at ``path``, generating one on first use."""
    key_path = Path(path)
    if key_path.exists():
        return key_path.read_bytes().strip()
    key_path.parent.mkdir(parents=True, exist_ok=True)
    key = Fernet.generate_key()
    key_path.write_bytes(key)
    try:
        os.chmod(key_path, 0o600)
    except OSError as ex:
        logger.warning(f"Could not restrict permissions on cache key {key_path}: {ex}")
    logger.info(f"Generated new cache key at {key_path}")
    return key


class LocalCacheStore:
    """Encrypted per-user copy of the newest messages.

    Saves are best effort: any failure is logged and dropped so the cache can
    never block a conversation. Unreadable entries are removed on load.
    """

    def __init__(
        self,
        db: SqliteDatabase,
        *,
        encryption_key: bytes,
        max_messages: int = DEFAULT_MAX_CACHED_MESSAGES,
    ):
        self._db = db
        self._fernet = Fernet(encryption_key)
        self._max_messages = max(1, max_messages)
        self._memory: dict[str, list[Message]] = {}

    @classmethod
    def open(cls, db_path: str, *, encryption_key: bytes, max_messages: int = DEFAULT_MAX_CACHED_MESSAGES) -> LocalCacheStore:
        return cls(SqliteDatabase(db_path, CACHE_SCHEMA), encryption_key=encryption_key, max_messages=max_messages)

    @property
    def max_messages(self) -> int:
        return self._max_messages

    def close(self) -> None:
        self._memory.clear()
        self._db.close()

    def save(self, user_id: str, messages: list[Message]) -> None:
        try:
            validate_user_id(user_id)
        except ValueError:
            logger.warning(f"Refusing to cache messages for invalid user id {user_id!r}")
            return

        trimmed = list(messages[-self._max_messages:])
        try:
            payload = json.dumps(messages_to_dicts(trimmed), ensure_ascii=True).encode("utf-8")
            token = self._fernet.encrypt(payload)
            now = utc_now().isoformat(timespec="microseconds")
            self._db.execute(
                """
                INSERT INTO cache_entries (user_id, payload, message_count, last_accessed, last_updated)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    payload = excluded.payload,
                    message_count = excluded.message_count,
                    last_accessed = excluded.last_accessed,
                    last_updated = excluded.last_updated
                """,
                (user_id, token, len(trimmed), now, now),
            )
            self._db.commit()
        except Exception as ex:
            logger.warning(f"Failed to save cache for user {user_id}: {ex}")
            return
        self._memory[user_id] = trimmed
        logger.debug(f"Cached {len(trimmed)} messages for user {user_id}")

    def load(self, user_id: str) -> list[Message]:
        try:
            validate_user_id(user_id)
        except ValueError:
            return []

        cached = self._memory.get(user_id)
        if cached is not None:
            return list(cached)

        try:
            row = self._db.execute(
                "SELECT payload FROM cache_entries WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        except sqlite3.DatabaseError as ex:
            logger.warning(f"Cache database unreadable for user {user_id}: {ex}")
            return []
        if row is None:
            return []

        try:
            payload = self._fernet.decrypt(bytes(row["payload"]))
            messages = messages_from_dicts(json.loads(payload.decode("utf-8")))
        except (InvalidToken, ValueError, TypeError) as ex:
            logger.warning(f"Discarding unreadable cache for user {user_id}: {ex}")
            self._discard(user_id)
            return []

        try:
            self._db.execute(
                "UPDATE cache_entries SET last_accessed = ? WHERE user_id = ?",
                (utc_now().isoformat(timespec="microseconds"), user_id),
            )
            self._db.commit()
        except sqlite3.DatabaseError as ex:
            logger.warning(f"Failed to touch cache entry for user {user_id}: {ex}")
        self._memory[user_id] = messages
        return list(messages)

    def _discard(self, user_id: str) -> None:
        try:
            self.clear(user_id)
        except sqlite3.DatabaseError as ex:
            logger.warning(f"Failed to discard cache for user {user_id}: {ex}")

    def clear(self, user_id: str) -> None:
        self._memory.pop(user_id, None)
        self._db.execute("DELETE FROM cache_entries WHERE user_id = ?", (user_id,))
        self._db.commit()
        logger.debug(f"Cleared cache for user {user_id}")

    def clear_all(self) -> int:
        self._memory.clear()
        cur = self._db.execute("DELETE FROM cache_entries")
        self._db.commit()
        logger.info(f"Cleared {cur.rowcount} cache entries")
        return int(cur.rowcount)

    def stats(self) -> CacheStats:
        row = self._db.execute(
            """
            SELECT COUNT(*) AS users,
                   COALESCE(SUM(message_count), 0) AS messages,
                   MIN(last_updated) AS oldest,
                   MAX(last_updated) AS newest
            FROM cache_entries
            """
        ).fetchone()
        return CacheStats(
            total_users=int(row["users"]),
            total_messages=int(row["messages"]),
            oldest_entry=row["oldest"],
            newest_entry=row["newest"],
        )

    def cleanup(self, retention_days: int, *, now: datetime | None = None) -> int:
        """Delete entries not accessed within ``retention_days``."""
        cutoff = ((now or utc_now()) - timedelta(days=retention_days)).isoformat(timespec="microseconds")
        stale = self._db.execute(
            "SELECT user_id FROM cache_entries WHERE last_accessed < ?",
            (cutoff,),
        ).fetchall()
        if not stale:
            return 0
        self._db.executemany(
            "DELETE FROM cache_entries WHERE user_id = ?",
            [(row["user_id"],) for row in stale],
        )
        self._db.commit()
        for row in stale:
            self._memory.pop(row["user_id"], None)
        logger.info(f"Removed {len(stale)} cache entries older than {retention_days} days")
        return len(stale)
