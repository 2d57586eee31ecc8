from readingroom.repositories.base import LibraryStore
from readingroom.repositories.kv import KVStore
from readingroom.repositories.memory import MemoryStore
from readingroom.repositories.sql import SQLStore

__all__ = ["KVStore", "LibraryStore", "MemoryStore", "SQLStore"]
