import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional, TypeVar

from pydantic import BaseModel, ValidationError

from readingroom.exceptions import EntityNotFoundError, LibraryValidationError
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
    TaskStatus,
    as_utc,
    utc_now,
)
from readingroom.services.scheduling.sm2 import Scheduler, default_scheduler

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class LibraryStore(ABC):
    """Persistence contract shared by every storage engine.

    Getters return None for absent entities. Mutations of an absent
    entity raise EntityNotFoundError; unique-key and parent-reference
    violations raise LibraryValidationError. Stores are meant for a
    single writer; callers serialize concurrent mutations themselves.
    """

    backend_name = "abstract"

    def __init__(self, scheduler: Optional[Scheduler] = None):
        self.scheduler = scheduler or default_scheduler

    # Documents

    @abstractmethod
    def add_document(self, doc: Document) -> Document:
        ...

    @abstractmethod
    def get_document(self, doc_id: str) -> Optional[Document]:
        ...

    @abstractmethod
    def get_document_by_path(self, path: str) -> Optional[Document]:
        ...

    @abstractmethod
    def get_document_by_source_id(self, source: str, source_id: str) -> Optional[Document]:
        ...

    @abstractmethod
    def list_documents(self, opts: Optional[ListOptions] = None) -> List[Document]:
        """Documents matching opts, newest update first, ties by id."""
        ...

    @abstractmethod
    def update_document(self, doc: Document) -> Document:
        ...

    @abstractmethod
    def delete_document(self, doc_id: str) -> None:
        """Delete doc_id with its annotations, sessions, flashcards and memberships."""
        ...

    # Tags

    def add_tag(self, doc_id: str, tag: str) -> Document:
        tag = tag.strip()
        if not tag:
            raise LibraryValidationError("tag must not be empty")
        doc = self._require_document(doc_id)
        if doc.has_tag(tag):
            return doc
        doc.tags.append(tag)
        return self.update_document(doc)

    def remove_tag(self, doc_id: str, tag: str) -> Document:
        doc = self._require_document(doc_id)
        wanted = tag.strip().casefold()
        remaining = [t for t in doc.tags if t.casefold() != wanted]
        if len(remaining) == len(doc.tags):
            return doc
        doc.tags = remaining
        return self.update_document(doc)

    def list_tags(self) -> Dict[str, int]:
        """Tag usage counts across all documents."""
        counts: Dict[str, int] = {}
        for doc in self.list_documents():
            for tag in doc.tags:
                counts[tag] = counts.get(tag, 0) + 1
        return counts

    # Collections

    @abstractmethod
    def create_collection(self, name: str, description: str = "") -> Collection:
        ...

    @abstractmethod
    def get_collection(self, id_or_name: str) -> Optional[Collection]:
        ...

    @abstractmethod
    def list_collections(self) -> List[Collection]:
        ...

    @abstractmethod
    def add_to_collection(self, collection_id: str, doc_id: str) -> None:
        """Idempotent: a document appears at most once in a collection."""
        ...

    @abstractmethod
    def remove_from_collection(self, collection_id: str, doc_id: str) -> None:
        ...

    @abstractmethod
    def delete_collection(self, collection_id: str) -> None:
        ...

    # Annotations

    @abstractmethod
    def add_annotation(self, annotation: Annotation) -> Annotation:
        ...

    @abstractmethod
    def get_annotations(self, doc_id: str) -> List[Annotation]:
        ...

    @abstractmethod
    def delete_annotation(self, annotation_id: str) -> None:
        ...

    # Reading sessions

    @abstractmethod
    def start_session(self, doc_id: str) -> ReadingSession:
        ...

    @abstractmethod
    def end_session(self, session_id: str, pages_read: int = 0, notes: str = "") -> ReadingSession:
        ...

    @abstractmethod
    def list_sessions(self, doc_id: str) -> List[ReadingSession]:
        ...

    # Flashcards

    @abstractmethod
    def add_flashcard(self, card: Flashcard) -> Flashcard:
        ...

    @abstractmethod
    def get_flashcard(self, card_id: str) -> Optional[Flashcard]:
        ...

    @abstractmethod
    def list_flashcards(self, opts: Optional[FlashcardListOptions] = None) -> List[Flashcard]:
        ...

    @abstractmethod
    def update_flashcard(self, card: Flashcard) -> Flashcard:
        ...

    @abstractmethod
    def delete_flashcard(self, card_id: str) -> None:
        ...

    @abstractmethod
    def list_flashcard_reviews(self, card_id: str) -> List[FlashcardReview]:
        ...

    @abstractmethod
    def _save_review(self, card: Flashcard, review: FlashcardReview) -> None:
        """Persist a rescheduled card and append its review record."""
        ...

    def review_flashcard(self, card_id: str, quality: int, now: Optional[datetime] = None) -> Flashcard:
        """Grade card_id with SM-2 and persist the new schedule."""
        self.scheduler.validate_quality(quality)
        now = as_utc(now) if now else utc_now()
        card = self.get_flashcard(card_id)
        if card is None:
            raise EntityNotFoundError("flashcard", card_id)
        result = self.scheduler.review(card, quality, now=now)
        self._save_review(result.card, result.review)
        logger.debug(
            f"Reviewed flashcard {card_id}: quality={quality} "
            f"interval {card.interval}->{result.card.interval}"
        )
        return result.card

    def get_due_flashcards(self, now: Optional[datetime] = None) -> List[Flashcard]:
        now = as_utc(now) if now else utc_now()
        return [c for c in self.list_flashcards() if c.due_at is not None and c.due_at <= now]

    # Tasks

    @abstractmethod
    def add_task(self, task: Task) -> Task:
        ...

    @abstractmethod
    def get_task(self, task_id: str) -> Optional[Task]:
        ...

    @abstractmethod
    def list_tasks(self, opts: Optional[TaskListOptions] = None) -> List[Task]:
        ...

    @abstractmethod
    def update_task(self, task: Task) -> Task:
        ...

    @abstractmethod
    def delete_task(self, task_id: str) -> None:
        ...

    # Saved searches

    @abstractmethod
    def save_search(self, search: SavedSearch) -> SavedSearch:
        """Insert or replace the saved search with the same name."""
        ...

    @abstractmethod
    def get_saved_search(self, id_or_name: str) -> Optional[SavedSearch]:
        ...

    @abstractmethod
    def list_saved_searches(self) -> List[SavedSearch]:
        ...

    @abstractmethod
    def delete_saved_search(self, search_id: str) -> None:
        ...

    # Lifecycle

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    # Helpers

    @staticmethod
    def _normalize(entity: M) -> M:
        """Re-run model validation on entity in place. Assignment alone is never validated."""
        try:
            checked = type(entity).model_validate(entity.model_dump())
        except ValidationError as e:
            raise LibraryValidationError(f"invalid {type(entity).__name__.lower()}: {e}") from e
        for name in type(entity).model_fields:
            setattr(entity, name, getattr(checked, name))
        return entity

    def _require_document(self, doc_id: str) -> Document:
        doc = self.get_document(doc_id)
        if doc is None:
            raise EntityNotFoundError("document", doc_id)
        return doc

    def _require_parent_document(self, doc_id: Optional[str], child: str) -> None:
        if not doc_id:
            raise LibraryValidationError(f"{child} requires a document_id")
        if self.get_document(doc_id) is None:
            raise LibraryValidationError(f"{child} references missing document {doc_id}")

    @staticmethod
    def _stamp_task_completion(task: Task, now: datetime) -> None:
        if task.status == TaskStatus.DONE and task.completed_at is None:
            task.completed_at = now
        elif task.status != TaskStatus.DONE:
            task.completed_at = None
