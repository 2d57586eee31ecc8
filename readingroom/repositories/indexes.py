"""Hand-built indexes for flat key-value storage.

Three index shapes are kept apart from entity payloads:

- roster:     ``<ns>:index:<kind>`` -> JSON list of every live id, in insertion order
- secondary:  ``<ns>:index:<kind>:secondary:<field>:<value>`` -> one owning id
- children:   ``<ns>:index:<parent>:children:<parent_id>:<child>`` -> JSON list of child ids

List updates are read-modify-write cycles. Each write goes through the
backend's compare-and-set, so a cycle that loses a race is retried; on a
backend without real optimistic concurrency (MemoryKV) the store is only
safe for a single writer. Unparseable index blobs read as empty.
"""
import json
import logging
from enum import Enum
from typing import Callable, List, Optional, Tuple

from readingroom.db.kv import KeyValueBackend
from readingroom.exceptions import IndexInconsistencyError, StorageError

logger = logging.getLogger(__name__)


class EntityKind(str, Enum):
    DOCUMENT = "document"
    COLLECTION = "collection"
    ANNOTATION = "annotation"
    SESSION = "session"
    FLASHCARD = "flashcard"
    REVIEW = "review"


def source_index_value(source: str, source_id: str) -> str:
    # length prefix keeps ("a:b", "c") and ("a", "b:c") apart
    return f"{len(source)}:{source}:{source_id}"


class IndexManager:
    """Roster, unique secondary and child-reference indexes over a KeyValueBackend."""

    def __init__(self, kv: KeyValueBackend, namespace: str, cas_retries: int = 5):
        self.kv = kv
        self.namespace = namespace
        self.cas_retries = max(1, cas_retries)

    # Key layout

    def entity_key(self, kind: EntityKind, entity_id: str) -> str:
        return f"{self.namespace}:{kind.value}:{entity_id}"

    def roster_key(self, kind: EntityKind) -> str:
        return f"{self.namespace}:index:{kind.value}"

    def secondary_key(self, kind: EntityKind, field: str, value: str) -> str:
        return f"{self.namespace}:index:{kind.value}:secondary:{field}:{value}"

    def children_key(self, parent: EntityKind, parent_id: str, child: EntityKind) -> str:
        return f"{self.namespace}:index:{parent.value}:children:{parent_id}:{child.value}"

    # Roster

    def roster(self, kind: EntityKind) -> List[str]:
        return self._read_ids(self.roster_key(kind))[1]

    def add_to_roster(self, kind: EntityKind, entity_id: str) -> None:
        self._update_ids(self.roster_key(kind), lambda ids: _append_unique(ids, entity_id))

    def remove_from_roster(self, kind: EntityKind, entity_id: str) -> None:
        self._update_ids(self.roster_key(kind), lambda ids: _without(ids, entity_id))

    # Child references

    def children(self, parent: EntityKind, parent_id: str, child: EntityKind) -> List[str]:
        return self._read_ids(self.children_key(parent, parent_id, child))[1]

    def add_child(self, parent: EntityKind, parent_id: str, child: EntityKind, child_id: str) -> None:
        key = self.children_key(parent, parent_id, child)
        self._update_ids(key, lambda ids: _append_unique(ids, child_id))

    def remove_child(self, parent: EntityKind, parent_id: str, child: EntityKind, child_id: str) -> None:
        key = self.children_key(parent, parent_id, child)
        self._update_ids(key, lambda ids: _without(ids, child_id))

    def drop_children(self, parent: EntityKind, parent_id: str, child: EntityKind) -> None:
        key = self.children_key(parent, parent_id, child)
        try:
            self.kv.delete(key)
        except StorageError as e:
            raise IndexInconsistencyError(key, str(e)) from e

    # Unique secondary lookups

    def lookup(self, kind: EntityKind, field: str, value: str) -> Optional[str]:
        raw = self.kv.get(self.secondary_key(kind, field, value))
        if not raw:
            return None
        return raw.decode("utf-8")

    def set_secondary(self, kind: EntityKind, field: str, value: str, entity_id: str) -> None:
        key = self.secondary_key(kind, field, value)
        try:
            self.kv.set(key, entity_id.encode("utf-8"))
        except StorageError as e:
            raise IndexInconsistencyError(key, str(e)) from e

    def remove_secondary(self, kind: EntityKind, field: str, value: str, entity_id: str) -> None:
        """Drop the entry only while it still points at entity_id."""
        key = self.secondary_key(kind, field, value)
        expected = entity_id.encode("utf-8")
        try:
            if self.kv.get(key) == expected:
                self.kv.compare_and_set(key, expected, None)
        except StorageError as e:
            raise IndexInconsistencyError(key, str(e)) from e

    def move_secondary(
        self, kind: EntityKind, field: str, old: str, new: str, entity_id: str
    ) -> None:
        """Retract the stale entry for old and point new at entity_id."""
        if old == new:
            return
        if old:
            self.remove_secondary(kind, field, old, entity_id)
        if new:
            self.set_secondary(kind, field, new, entity_id)

    # Internals

    def _read_ids(self, key: str) -> Tuple[Optional[bytes], List[str]]:
        raw = self.kv.get(key)
        if raw is None:
            return None, []
        try:
            ids = json.loads(raw)
        except (ValueError, UnicodeDecodeError):
            logger.warning(f"Index {key} is corrupted; treating it as empty")
            return raw, []
        if not isinstance(ids, list) or not all(isinstance(i, str) for i in ids):
            logger.warning(f"Index {key} does not hold a list of ids; treating it as empty")
            return raw, []
        return raw, ids

    def _update_ids(self, key: str, mutate: Callable[[List[str]], List[str]]) -> None:
        try:
            for _ in range(self.cas_retries):
                raw, ids = self._read_ids(key)
                updated = mutate(list(ids))
                if updated == ids and raw is not None:
                    return
                encoded = json.dumps(updated).encode("utf-8") if updated else None
                if raw is None and encoded is None:
                    return
                if self.kv.compare_and_set(key, raw, encoded):
                    return
        except StorageError as e:
            raise IndexInconsistencyError(key, str(e)) from e
        raise IndexInconsistencyError(key, f"gave up after {self.cas_retries} concurrent updates")


def _append_unique(ids: List[str], entity_id: str) -> List[str]:
    if entity_id not in ids:
        ids.append(entity_id)
    return ids


def _without(ids: List[str], entity_id: str) -> List[str]:
    return [i for i in ids if i != entity_id]
