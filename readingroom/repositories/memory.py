from typing import Optional

from readingroom.db.kv import MemoryKV
from readingroom.repositories.kv import KVStore
from readingroom.services.scheduling.sm2 import Scheduler


class MemoryStore(KVStore):
    """The key-value engine over a volatile in-process map. Nothing is persisted."""

    backend_name = "memory"

    def __init__(
        self,
        data: Optional[MemoryKV] = None,
        namespace: str = "readingroom",
        scheduler: Optional[Scheduler] = None,
    ):
        super().__init__(data if data is not None else MemoryKV(), namespace=namespace, scheduler=scheduler)
