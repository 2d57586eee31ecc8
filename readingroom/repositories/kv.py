import logging
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from readingroom.db.kv import KeyValueBackend
from readingroom.exceptions import (
    EntityNotFoundError,
    IndexInconsistencyError,
    LibraryValidationError,
    StorageError,
    UnsupportedOperationError,
)
from readingroom.repositories.base import LibraryStore
from readingroom.repositories.filters import (
    apply_limit,
    filter_documents,
    matches_flashcard,
    order_annotations,
    order_collections,
    order_flashcards,
    order_reviews,
    order_sessions,
)
from readingroom.repositories.indexes import EntityKind, IndexManager, source_index_value
from readingroom.schemas.library import (
    Annotation,
    Collection,
    Document,
    Flashcard,
    FlashcardListOptions,
    FlashcardReview,
    ListOptions,
    ReadingSession,
    SavedSearch,
    Task,
    TaskListOptions,
    new_id,
    utc_now,
)
from readingroom.services.scheduling.sm2 import Scheduler

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

PATH = "path"
SOURCE = "source"
NAME = "name"


class KVStore(LibraryStore):
    """Library store over flat key-value storage.

    Entity payloads are JSON blobs; every lookup other than by primary id
    goes through IndexManager. Index maintenance is best effort: a failed
    index write is logged and never fails the entity write that caused it.
    Tasks and saved searches are not available on this engine.
    """

    backend_name = "kv"

    def __init__(
        self,
        kv: KeyValueBackend,
        namespace: str = "readingroom",
        cas_retries: int = 5,
        scheduler: Optional[Scheduler] = None,
    ):
        super().__init__(scheduler=scheduler)
        self.kv = kv
        self.indexes = IndexManager(kv, namespace, cas_retries=cas_retries)

    # Blob helpers

    def _put(self, kind: EntityKind, entity: BaseModel) -> None:
        self.kv.set(self.indexes.entity_key(kind, entity.id), entity.model_dump_json().encode("utf-8"))

    def _load(self, kind: EntityKind, entity_id: str, model: Type[M]) -> Optional[M]:
        if not entity_id:
            return None
        raw = self.kv.get(self.indexes.entity_key(kind, entity_id))
        if raw is None:
            return None
        try:
            return model.model_validate_json(raw)
        except ValidationError as e:
            raise StorageError(f"corrupted {kind.value} record {entity_id}: {e}") from e

    def _load_many(self, kind: EntityKind, ids: Iterable[str], model: Type[M]) -> List[M]:
        """Load ids, skipping dangling and unreadable entries."""
        out = []
        for entity_id in ids:
            try:
                entity = self._load(kind, entity_id, model)
            except StorageError as e:
                logger.warning(f"Skipping {kind.value} {entity_id}: {e}")
                continue
            if entity is not None:
                out.append(entity)
        return out

    def _remove(self, kind: EntityKind, entity_id: str) -> None:
        self.kv.delete(self.indexes.entity_key(kind, entity_id))

    def _load_for_delete(self, kind: EntityKind, entity_id: str, model: Type[M]) -> Optional[M]:
        """Like _load, but an unreadable blob reads as None so it can still be deleted."""
        try:
            return self._load(kind, entity_id, model)
        except StorageError as e:
            logger.warning(f"Deleting unreadable {kind.value} {entity_id}: {e}")
            return None

    def _best_effort(self, action: str, fn: Callable, *args) -> None:
        try:
            fn(*args)
        except IndexInconsistencyError as e:
            logger.warning(f"Index maintenance failed while {action}: {e}")

    # Documents

    def _path_owner(self, path: str) -> Optional[str]:
        doc = self.get_document_by_path(path)
        return doc.id if doc else None

    def _source_owner(self, source: str, source_id: str) -> Optional[str]:
        doc = self.get_document_by_source_id(source, source_id)
        return doc.id if doc else None

    def _check_document_unique(self, doc: Document) -> None:
        if doc.path:
            owner = self._path_owner(doc.path)
            if owner and owner != doc.id:
                raise LibraryValidationError(f"path already in library: {doc.path}")
        if doc.source and doc.source_id:
            owner = self._source_owner(doc.source, doc.source_id)
            if owner and owner != doc.id:
                raise LibraryValidationError(
                    f"document already in library: {doc.source}:{doc.source_id}"
                )

    def add_document(self, doc: Document) -> Document:
        self._normalize(doc)
        if not doc.id:
            doc.id = new_id()
        elif self.get_document(doc.id) is not None:
            raise LibraryValidationError(f"document already exists: {doc.id}")
        self._check_document_unique(doc)

        now = utc_now()
        doc.created_at = now
        doc.updated_at = now
        self._put(EntityKind.DOCUMENT, doc)

        if doc.path:
            self._best_effort("indexing path", self.indexes.set_secondary,
                              EntityKind.DOCUMENT, PATH, doc.path, doc.id)
        if doc.source and doc.source_id:
            self._best_effort("indexing source", self.indexes.set_secondary,
                              EntityKind.DOCUMENT, SOURCE,
                              source_index_value(doc.source, doc.source_id), doc.id)
        self._best_effort("adding to roster", self.indexes.add_to_roster, EntityKind.DOCUMENT, doc.id)
        return doc

    def get_document(self, doc_id: str) -> Optional[Document]:
        return self._load(EntityKind.DOCUMENT, doc_id, Document)

    def get_document_by_path(self, path: str) -> Optional[Document]:
        if not path:
            return None
        doc = self.get_document(self.indexes.lookup(EntityKind.DOCUMENT, PATH, path) or "")
        # A stale entry may survive a failed index write; trust only a match.
        if doc is None or doc.path != path:
            return None
        return doc

    def get_document_by_source_id(self, source: str, source_id: str) -> Optional[Document]:
        if not source or not source_id:
            return None
        value = source_index_value(source, source_id)
        doc = self.get_document(self.indexes.lookup(EntityKind.DOCUMENT, SOURCE, value) or "")
        if doc is None or (doc.source, doc.source_id) != (source, source_id):
            return None
        return doc

    def list_documents(self, opts: Optional[ListOptions] = None) -> List[Document]:
        ids = self.indexes.roster(EntityKind.DOCUMENT)
        return filter_documents(self._load_many(EntityKind.DOCUMENT, ids, Document), opts)

    def update_document(self, doc: Document) -> Document:
        self._normalize(doc)
        existing = self.get_document(doc.id)
        if existing is None:
            raise EntityNotFoundError("document", doc.id)
        self._check_document_unique(doc)

        doc.created_at = existing.created_at
        doc.updated_at = utc_now()
        self._put(EntityKind.DOCUMENT, doc)

        self._best_effort("re-indexing path", self.indexes.move_secondary,
                          EntityKind.DOCUMENT, PATH, existing.path, doc.path, doc.id)
        old_source = (
            source_index_value(existing.source, existing.source_id)
            if existing.source and existing.source_id else ""
        )
        new_source = source_index_value(doc.source, doc.source_id) if doc.source and doc.source_id else ""
        self._best_effort("re-indexing source", self.indexes.move_secondary,
                          EntityKind.DOCUMENT, SOURCE, old_source, new_source, doc.id)
        return doc

    def delete_document(self, doc_id: str) -> None:
        doc = self._load_for_delete(EntityKind.DOCUMENT, doc_id, Document)
        if doc is None and self.kv.get(self.indexes.entity_key(EntityKind.DOCUMENT, doc_id)) is None:
            self._best_effort("pruning roster", self.indexes.remove_from_roster, EntityKind.DOCUMENT, doc_id)
            return

        for annotation_id in self.indexes.children(EntityKind.DOCUMENT, doc_id, EntityKind.ANNOTATION):
            self._remove(EntityKind.ANNOTATION, annotation_id)
            self._best_effort("pruning annotation roster", self.indexes.remove_from_roster,
                              EntityKind.ANNOTATION, annotation_id)
        self._best_effort("dropping annotation index", self.indexes.drop_children,
                          EntityKind.DOCUMENT, doc_id, EntityKind.ANNOTATION)

        for session_id in self.indexes.children(EntityKind.DOCUMENT, doc_id, EntityKind.SESSION):
            self._remove(EntityKind.SESSION, session_id)
            self._best_effort("pruning session roster", self.indexes.remove_from_roster,
                              EntityKind.SESSION, session_id)
        self._best_effort("dropping session index", self.indexes.drop_children,
                          EntityKind.DOCUMENT, doc_id, EntityKind.SESSION)

        for card_id in self.indexes.children(EntityKind.DOCUMENT, doc_id, EntityKind.FLASHCARD):
            self.delete_flashcard(card_id)
        self._best_effort("dropping flashcard index", self.indexes.drop_children,
                          EntityKind.DOCUMENT, doc_id, EntityKind.FLASHCARD)

        for collection in self.list_collections():
            if doc_id in collection.document_ids:
                collection.document_ids = [d for d in collection.document_ids if d != doc_id]
                collection.updated_at = utc_now()
                self._put(EntityKind.COLLECTION, collection)

        self._remove(EntityKind.DOCUMENT, doc_id)

        if doc is not None and doc.path:
            self._best_effort("unindexing path", self.indexes.remove_secondary,
                              EntityKind.DOCUMENT, PATH, doc.path, doc_id)
        if doc is not None and doc.source and doc.source_id:
            self._best_effort("unindexing source", self.indexes.remove_secondary,
                              EntityKind.DOCUMENT, SOURCE,
                              source_index_value(doc.source, doc.source_id), doc_id)
        self._best_effort("pruning roster", self.indexes.remove_from_roster, EntityKind.DOCUMENT, doc_id)

    # Collections

    def create_collection(self, name: str, description: str = "") -> Collection:
        name = name.strip()
        if not name:
            raise LibraryValidationError("collection name must not be empty")
        if self._collection_by_name(name) is not None:
            raise LibraryValidationError(f"collection already exists: {name}")

        now = utc_now()
        collection = Collection(id=new_id(), name=name, description=description,
                                created_at=now, updated_at=now)
        self._put(EntityKind.COLLECTION, collection)
        self._best_effort("indexing collection name", self.indexes.set_secondary,
                          EntityKind.COLLECTION, NAME, name, collection.id)
        self._best_effort("adding to roster", self.indexes.add_to_roster,
                          EntityKind.COLLECTION, collection.id)
        return collection

    def _collection_by_name(self, name: str) -> Optional[Collection]:
        collection_id = self.indexes.lookup(EntityKind.COLLECTION, NAME, name)
        collection = self._load(EntityKind.COLLECTION, collection_id or "", Collection)
        if collection is None or collection.name != name:
            return None
        return collection

    def get_collection(self, id_or_name: str) -> Optional[Collection]:
        collection = self._load(EntityKind.COLLECTION, id_or_name, Collection)
        if collection is not None:
            return collection
        return self._collection_by_name(id_or_name)

    def _require_collection(self, collection_id: str) -> Collection:
        collection = self._load(EntityKind.COLLECTION, collection_id, Collection)
        if collection is None:
            raise EntityNotFoundError("collection", collection_id)
        return collection

    def list_collections(self) -> List[Collection]:
        ids = self.indexes.roster(EntityKind.COLLECTION)
        return order_collections(self._load_many(EntityKind.COLLECTION, ids, Collection))

    def add_to_collection(self, collection_id: str, doc_id: str) -> None:
        collection = self._require_collection(collection_id)
        if self.get_document(doc_id) is None:
            raise LibraryValidationError(f"cannot add missing document {doc_id} to a collection")
        if doc_id in collection.document_ids:
            return
        collection.document_ids.append(doc_id)
        collection.updated_at = utc_now()
        self._put(EntityKind.COLLECTION, collection)

    def remove_from_collection(self, collection_id: str, doc_id: str) -> None:
        collection = self._require_collection(collection_id)
        if doc_id not in collection.document_ids:
            return
        collection.document_ids = [d for d in collection.document_ids if d != doc_id]
        collection.updated_at = utc_now()
        self._put(EntityKind.COLLECTION, collection)

    def delete_collection(self, collection_id: str) -> None:
        collection = self._load_for_delete(EntityKind.COLLECTION, collection_id, Collection)
        self._remove(EntityKind.COLLECTION, collection_id)
        if collection is not None:
            self._best_effort("unindexing collection name", self.indexes.remove_secondary,
                              EntityKind.COLLECTION, NAME, collection.name, collection_id)
        self._best_effort("pruning roster", self.indexes.remove_from_roster,
                          EntityKind.COLLECTION, collection_id)

    # Annotations

    def add_annotation(self, annotation: Annotation) -> Annotation:
        self._normalize(annotation)
        self._require_parent_document(annotation.document_id, "annotation")
        if not annotation.id:
            annotation.id = new_id()
        annotation.created_at = utc_now()
        self._put(EntityKind.ANNOTATION, annotation)
        self._best_effort("indexing annotation", self.indexes.add_child, EntityKind.DOCUMENT,
                          annotation.document_id, EntityKind.ANNOTATION, annotation.id)
        self._best_effort("adding to roster", self.indexes.add_to_roster,
                          EntityKind.ANNOTATION, annotation.id)
        return annotation

    def get_annotations(self, doc_id: str) -> List[Annotation]:
        ids = self.indexes.children(EntityKind.DOCUMENT, doc_id, EntityKind.ANNOTATION)
        return order_annotations(self._load_many(EntityKind.ANNOTATION, ids, Annotation))

    def delete_annotation(self, annotation_id: str) -> None:
        annotation = self._load_for_delete(EntityKind.ANNOTATION, annotation_id, Annotation)
        self._remove(EntityKind.ANNOTATION, annotation_id)
        if annotation is not None:
            self._best_effort("unindexing annotation", self.indexes.remove_child, EntityKind.DOCUMENT,
                              annotation.document_id, EntityKind.ANNOTATION, annotation_id)
        self._best_effort("pruning roster", self.indexes.remove_from_roster,
                          EntityKind.ANNOTATION, annotation_id)

    # Reading sessions

    def start_session(self, doc_id: str) -> ReadingSession:
        self._require_parent_document(doc_id, "reading session")
        session = ReadingSession(id=new_id(), document_id=doc_id, start_at=utc_now())
        self._put(EntityKind.SESSION, session)
        self._best_effort("indexing session", self.indexes.add_child, EntityKind.DOCUMENT,
                          doc_id, EntityKind.SESSION, session.id)
        self._best_effort("adding to roster", self.indexes.add_to_roster, EntityKind.SESSION, session.id)
        return session

    def end_session(self, session_id: str, pages_read: int = 0, notes: str = "") -> ReadingSession:
        session = self._load(EntityKind.SESSION, session_id, ReadingSession)
        if session is None:
            raise EntityNotFoundError("reading session", session_id)
        if pages_read < 0:
            raise LibraryValidationError("pages_read must not be negative")
        session.end_at = utc_now()
        session.pages_read = pages_read
        session.notes = notes
        self._put(EntityKind.SESSION, session)
        return session

    def list_sessions(self, doc_id: str) -> List[ReadingSession]:
        ids = self.indexes.children(EntityKind.DOCUMENT, doc_id, EntityKind.SESSION)
        return order_sessions(self._load_many(EntityKind.SESSION, ids, ReadingSession))

    # Flashcards

    def add_flashcard(self, card: Flashcard) -> Flashcard:
        self._normalize(card)
        if card.document_id:
            self._require_parent_document(card.document_id, "flashcard")
        if not card.id:
            card.id = new_id()
        now = utc_now()
        card.created_at = now
        card.updated_at = now
        if card.due_at is None:
            card.due_at = now
        self._put(EntityKind.FLASHCARD, card)
        if card.document_id:
            self._best_effort("indexing flashcard", self.indexes.add_child, EntityKind.DOCUMENT,
                              card.document_id, EntityKind.FLASHCARD, card.id)
        self._best_effort("adding to roster", self.indexes.add_to_roster, EntityKind.FLASHCARD, card.id)
        return card

    def get_flashcard(self, card_id: str) -> Optional[Flashcard]:
        return self._load(EntityKind.FLASHCARD, card_id, Flashcard)

    def list_flashcards(self, opts: Optional[FlashcardListOptions] = None) -> List[Flashcard]:
        if opts is not None and opts.document_id:
            ids = self.indexes.children(EntityKind.DOCUMENT, opts.document_id, EntityKind.FLASHCARD)
        else:
            ids = self.indexes.roster(EntityKind.FLASHCARD)
        now = utc_now()
        cards = [c for c in self._load_many(EntityKind.FLASHCARD, ids, Flashcard)
                 if matches_flashcard(c, opts, now)]
        return apply_limit(order_flashcards(cards), opts.limit if opts else 0)

    def update_flashcard(self, card: Flashcard) -> Flashcard:
        self._normalize(card)
        existing = self.get_flashcard(card.id)
        if existing is None:
            raise EntityNotFoundError("flashcard", card.id)
        if card.document_id and card.document_id != existing.document_id:
            self._require_parent_document(card.document_id, "flashcard")
        self._write_flashcard(card, existing)
        return card

    def _write_flashcard(self, card: Flashcard, existing: Flashcard, now: Optional[datetime] = None) -> None:
        card.created_at = existing.created_at
        card.updated_at = now or utc_now()
        self._put(EntityKind.FLASHCARD, card)
        if card.document_id != existing.document_id:
            if existing.document_id:
                self._best_effort("unindexing flashcard", self.indexes.remove_child, EntityKind.DOCUMENT,
                                  existing.document_id, EntityKind.FLASHCARD, card.id)
            if card.document_id:
                self._best_effort("indexing flashcard", self.indexes.add_child, EntityKind.DOCUMENT,
                                  card.document_id, EntityKind.FLASHCARD, card.id)

    def delete_flashcard(self, card_id: str) -> None:
        card = self._load_for_delete(EntityKind.FLASHCARD, card_id, Flashcard)
        for review_id in self.indexes.children(EntityKind.FLASHCARD, card_id, EntityKind.REVIEW):
            self._remove(EntityKind.REVIEW, review_id)
            self._best_effort("pruning review roster", self.indexes.remove_from_roster,
                              EntityKind.REVIEW, review_id)
        self._best_effort("dropping review index", self.indexes.drop_children,
                          EntityKind.FLASHCARD, card_id, EntityKind.REVIEW)
        self._remove(EntityKind.FLASHCARD, card_id)
        if card is not None and card.document_id:
            self._best_effort("unindexing flashcard", self.indexes.remove_child, EntityKind.DOCUMENT,
                              card.document_id, EntityKind.FLASHCARD, card_id)
        self._best_effort("pruning roster", self.indexes.remove_from_roster, EntityKind.FLASHCARD, card_id)

    def _save_review(self, card: Flashcard, review: FlashcardReview) -> None:
        existing = self.get_flashcard(card.id)
        if existing is None:
            raise EntityNotFoundError("flashcard", card.id)
        # Review first: a failed card write then leaves the old schedule in place.
        self._put(EntityKind.REVIEW, review)
        self._write_flashcard(card, existing, now=card.updated_at)
        self._best_effort("indexing review", self.indexes.add_child, EntityKind.FLASHCARD,
                          card.id, EntityKind.REVIEW, review.id)
        self._best_effort("adding to roster", self.indexes.add_to_roster, EntityKind.REVIEW, review.id)

    def list_flashcard_reviews(self, card_id: str) -> List[FlashcardReview]:
        ids = self.indexes.children(EntityKind.FLASHCARD, card_id, EntityKind.REVIEW)
        return order_reviews(self._load_many(EntityKind.REVIEW, ids, FlashcardReview))

    # Tasks and saved searches

    def _unsupported(self, capability: str):
        return UnsupportedOperationError(capability, self.backend_name)

    def add_task(self, task: Task) -> Task:
        raise self._unsupported("tasks")

    def get_task(self, task_id: str) -> Optional[Task]:
        raise self._unsupported("tasks")

    def list_tasks(self, opts: Optional[TaskListOptions] = None) -> List[Task]:
        raise self._unsupported("tasks")

    def update_task(self, task: Task) -> Task:
        raise self._unsupported("tasks")

    def delete_task(self, task_id: str) -> None:
        raise self._unsupported("tasks")

    def save_search(self, search: SavedSearch) -> SavedSearch:
        raise self._unsupported("saved searches")

    def get_saved_search(self, id_or_name: str) -> Optional[SavedSearch]:
        raise self._unsupported("saved searches")

    def list_saved_searches(self) -> List[SavedSearch]:
        raise self._unsupported("saved searches")

    def delete_saved_search(self, search_id: str) -> None:
        raise self._unsupported("saved searches")

    def close(self) -> None:
        self.kv.close()
