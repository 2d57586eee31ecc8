import logging
from pathlib import Path
from typing import Optional, Union

from readingroom.config import get_settings
from readingroom.db.interfaces.sqlite import SQLiteDatabase
from readingroom.db.kv import RedisKV
from readingroom.db.redis.redis import get_redis_client
from readingroom.exceptions import LibraryValidationError
from readingroom.repositories import KVStore, LibraryStore, MemoryStore, SQLStore

logger = logging.getLogger(__name__)


def make_database(path: Optional[Union[str, Path]] = None) -> SQLiteDatabase:
    """Create and start the SQLite database at path (settings.database_path by default)."""
    settings = get_settings()
    database = SQLiteDatabase(path=Path(path) if path else settings.database_path)
    database.startup()
    return database


def make_store(backend: Optional[str] = None, location: Optional[str] = None) -> LibraryStore:
    """
    Open the library store for the chosen engine.

    Args:
        backend: "sql", "kv" or "memory"; settings.backend when omitted.
        location: SQLite file for "sql", redis URL for "kv"; ignored for "memory".
    """
    settings = get_settings()
    backend = backend or settings.backend

    if backend == "sql":
        store: LibraryStore = SQLStore(make_database(location))
    elif backend == "kv":
        kv = RedisKV(get_redis_client(location))
        store = KVStore(kv, namespace=settings.kv_namespace, cas_retries=settings.kv_cas_retries)
    elif backend == "memory":
        store = MemoryStore(namespace=settings.kv_namespace)
    else:
        raise LibraryValidationError(f"unknown storage backend: {backend}")

    logger.info(f"Opened {store.backend_name} library store")
    return store
