from coaching_sync.store.database import CACHE_SCHEMA, REMOTE_SCHEMA, SqliteDatabase
from coaching_sync.store.local_cache import CacheStats, LocalCacheStore, load_or_create_cache_key
from coaching_sync.store.remote_store import RemoteSessionStore, SqliteSessionStore

__all__ = [
    "CACHE_SCHEMA",
    "CacheStats",
    "LocalCacheStore",
    "REMOTE_SCHEMA",
    "RemoteSessionStore",
    "SqliteDatabase",
    "SqliteSessionStore",
    "load_or_create_cache_key",
]
