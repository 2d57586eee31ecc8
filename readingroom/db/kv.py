"""Flat key-value backends for the key-value library engine.

Backends store opaque byte blobs under string keys and offer nothing
else: no transactions, no key enumeration, no secondary lookup. Those
are built on top by ``readingroom.repositories.indexes.IndexManager``.
"""
import logging
from typing import Dict, Optional, Protocol, runtime_checkable

from redis import Redis
from redis.exceptions import RedisError, WatchError

from readingroom.exceptions import StorageError

logger = logging.getLogger(__name__)


@runtime_checkable
class KeyValueBackend(Protocol):
    """Protocol for single-key blob storage."""

    name: str

    def get(self, key: str) -> Optional[bytes]:
        """Return the blob under key, or None when absent."""
        ...

    def set(self, key: str, value: bytes) -> None:
        ...

    def delete(self, key: str) -> None:
        """Remove key; deleting an absent key is not an error."""
        ...

    def compare_and_set(self, key: str, expected: Optional[bytes], value: Optional[bytes]) -> bool:
        """Write value (or delete when None) only if key still holds expected.

        Returns False when another writer got there first.
        """
        ...

    def close(self) -> None:
        ...


class MemoryKV:
    """Volatile dict-backed store. Several library stores may share one instance."""

    name = "memory"

    def __init__(self, data: Optional[Dict[str, bytes]] = None):
        self._data: Dict[str, bytes] = data if data is not None else {}

    def get(self, key: str) -> Optional[bytes]:
        return self._data.get(key)

    def set(self, key: str, value: bytes) -> None:
        self._data[key] = bytes(value)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def compare_and_set(self, key: str, expected: Optional[bytes], value: Optional[bytes]) -> bool:
        if self._data.get(key) != expected:
            return False
        if value is None:
            self._data.pop(key, None)
        else:
            self._data[key] = bytes(value)
        return True

    def keys(self):
        return list(self._data)

    def close(self) -> None:
        pass

    def __len__(self) -> int:
        return len(self._data)


class RedisKV:
    """Redis-backed store. Compare-and-set uses WATCH/MULTI optimistic locking."""

    name = "redis"

    def __init__(self, client: Redis):
        self._redis = client

    def get(self, key: str) -> Optional[bytes]:
        try:
            value = self._redis.get(key)
        except RedisError as e:
            raise StorageError(f"redis get {key}: {e}") from e
        if isinstance(value, str):
            value = value.encode("utf-8")
        return value

    def set(self, key: str, value: bytes) -> None:
        try:
            self._redis.set(key, value)
        except RedisError as e:
            raise StorageError(f"redis set {key}: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self._redis.delete(key)
        except RedisError as e:
            raise StorageError(f"redis delete {key}: {e}") from e

    def compare_and_set(self, key: str, expected: Optional[bytes], value: Optional[bytes]) -> bool:
        try:
            with self._redis.pipeline() as pipe:
                pipe.watch(key)
                current = pipe.get(key)
                if isinstance(current, str):
                    current = current.encode("utf-8")
                if current != expected:
                    pipe.unwatch()
                    return False
                pipe.multi()
                if value is None:
                    pipe.delete(key)
                else:
                    pipe.set(key, value)
                pipe.execute()
                return True
        except WatchError:
            logger.debug(f"Concurrent write detected on {key}")
            return False
        except RedisError as e:
            raise StorageError(f"redis compare-and-set {key}: {e}") from e

    def close(self) -> None:
        self._redis.close()
