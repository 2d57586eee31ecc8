import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional

from pydantic import ValidationError
from sqlalchemy import delete, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from readingroom.db.interfaces.sqlite import SQLiteDatabase
from readingroom.exceptions import EntityNotFoundError, LibraryValidationError, StorageError
from readingroom.models import (
    AnnotationRecord,
    CollectionDocumentRecord,
    CollectionRecord,
    DocumentRecord,
    FlashcardRecord,
    FlashcardReviewRecord,
    ReadingSessionRecord,
    SavedSearchRecord,
    TaskRecord,
)
from readingroom.repositories.base import LibraryStore
from readingroom.repositories.filters import fts_query
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
    as_utc,
    new_id,
    utc_now,
)
from readingroom.services.scheduling.sm2 import Scheduler

logger = logging.getLogger(__name__)

# Stemmed full-text match through the trigger-maintained shadow table.
_FTS_MATCH = "documents.id IN (SELECT doc_id FROM documents_fts WHERE documents_fts MATCH :fts_query)"
_HAS_TAG = "EXISTS (SELECT 1 FROM json_each({table}.tags) WHERE casefold(json_each.value) = :{param})"


def _none_if_empty(value: Optional[str]) -> Optional[str]:
    return value or None


def _to_document(r: DocumentRecord) -> Document:
    return Document(
        id=r.id,
        type=r.type,
        path=r.path or "",
        source=r.source or "",
        source_id=r.source_id or "",
        title=r.title or "",
        authors=r.authors or [],
        abstract=r.abstract or "",
        full_text=r.full_text or "",
        tags=r.tags or [],
        notes=r.notes or "",
        rating=r.rating or 0,
        status=r.status,
        read_at=r.read_at,
        meta=r.meta or {},
        created_at=r.created_at,
        updated_at=r.updated_at,
    )


def _fill_document(r: DocumentRecord, doc: Document) -> None:
    r.type = doc.type.value
    r.path = _none_if_empty(doc.path)
    r.source = _none_if_empty(doc.source)
    r.source_id = _none_if_empty(doc.source_id)
    r.title = doc.title
    r.authors = list(doc.authors)
    r.abstract = doc.abstract
    r.full_text = doc.full_text
    r.tags = list(doc.tags)
    r.notes = doc.notes
    r.rating = doc.rating
    r.status = doc.status.value
    r.read_at = doc.read_at
    r.meta = dict(doc.meta)
    r.created_at = doc.created_at
    r.updated_at = doc.updated_at


def _to_annotation(r: AnnotationRecord) -> Annotation:
    return Annotation(
        id=r.id,
        document_id=r.document_id,
        type=r.type,
        content=r.content or "",
        page=r.page or 0,
        position=r.position or "",
        color=r.color or "",
        created_at=r.created_at,
    )


def _to_session(r: ReadingSessionRecord) -> ReadingSession:
    return ReadingSession(
        id=r.id,
        document_id=r.document_id,
        start_at=r.start_at,
        end_at=r.end_at,
        pages_read=r.pages_read or 0,
        notes=r.notes or "",
    )


def _to_flashcard(r: FlashcardRecord) -> Flashcard:
    return Flashcard(
        id=r.id,
        document_id=r.document_id,
        type=r.type,
        front=r.front or "",
        back=r.back or "",
        cloze=r.cloze or "",
        tags=r.tags or [],
        due_at=r.due_at,
        interval=r.interval,
        ease=r.ease,
        last_review=r.last_review,
        created_at=r.created_at,
        updated_at=r.updated_at,
    )


def _fill_flashcard(r: FlashcardRecord, card: Flashcard) -> None:
    r.document_id = card.document_id or None
    r.type = card.type.value
    r.front = card.front
    r.back = card.back
    r.cloze = card.cloze
    r.tags = list(card.tags)
    r.due_at = card.due_at
    r.interval = card.interval
    r.ease = card.ease
    r.last_review = card.last_review
    r.created_at = card.created_at
    r.updated_at = card.updated_at


def _to_review(r: FlashcardReviewRecord) -> FlashcardReview:
    return FlashcardReview(
        id=r.id,
        flashcard_id=r.flashcard_id,
        quality=r.quality,
        reviewed_at=r.reviewed_at,
        prev_interval=r.prev_interval,
        prev_ease=r.prev_ease,
    )


def _to_task(r: TaskRecord) -> Task:
    return Task(
        id=r.id,
        description=r.description,
        collection_id=r.collection_id,
        status=r.status,
        priority=r.priority,
        tags=r.tags or [],
        due_at=r.due_at,
        completed_at=r.completed_at,
        created_at=r.created_at,
        updated_at=r.updated_at,
    )


def _fill_task(r: TaskRecord, task: Task) -> None:
    r.description = task.description
    r.collection_id = task.collection_id or None
    r.status = task.status.value
    r.priority = task.priority.value
    r.tags = list(task.tags)
    r.due_at = task.due_at
    r.completed_at = task.completed_at
    r.created_at = task.created_at
    r.updated_at = task.updated_at


def _to_saved_search(r: SavedSearchRecord) -> SavedSearch:
    return SavedSearch(
        id=r.id,
        name=r.name,
        query=r.query or "",
        tag=r.tag or "",
        source=r.source or "",
        type=r.type or "",
        description=r.description or "",
        created_at=r.created_at,
        updated_at=r.updated_at,
    )


class SQLStore(LibraryStore):
    """Relational library store on SQLite through SQLAlchemy.

    Referential cleanup is left to foreign-key cascades and the
    documents_fts shadow table to triggers. Each public call runs in its
    own session and commits once.
    """

    backend_name = "sql"

    def __init__(self, database: SQLiteDatabase, scheduler: Optional[Scheduler] = None):
        super().__init__(scheduler=scheduler)
        self.database = database

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with self.database.get_session() as session:
                yield session
        except IntegrityError as e:
            raise LibraryValidationError(f"constraint violated: {e.orig}") from e
        except SQLAlchemyError as e:
            logger.error(f"Database failure: {e}")
            raise StorageError(f"database failure: {e}") from e
        except ValidationError as e:
            raise StorageError(f"unreadable row: {e}") from e

    # Documents

    def add_document(self, doc: Document) -> Document:
        self._normalize(doc)
        if not doc.id:
            doc.id = new_id()
        now = utc_now()
        doc.created_at = now
        doc.updated_at = now

        with self._session() as session:
            if session.get(DocumentRecord, doc.id) is not None:
                raise LibraryValidationError(f"document already exists: {doc.id}")
            record = DocumentRecord(id=doc.id)
            _fill_document(record, doc)
            session.add(record)
            session.commit()
        return doc

    def get_document(self, doc_id: str) -> Optional[Document]:
        with self._session() as session:
            record = session.get(DocumentRecord, doc_id)
            return _to_document(record) if record else None

    def get_document_by_path(self, path: str) -> Optional[Document]:
        if not path:
            return None
        with self._session() as session:
            record = session.scalar(select(DocumentRecord).where(DocumentRecord.path == path))
            return _to_document(record) if record else None

    def get_document_by_source_id(self, source: str, source_id: str) -> Optional[Document]:
        if not source or not source_id:
            return None
        stmt = select(DocumentRecord).where(
            DocumentRecord.source == source, DocumentRecord.source_id == source_id
        )
        with self._session() as session:
            record = session.scalar(stmt)
            return _to_document(record) if record else None

    def list_documents(self, opts: Optional[ListOptions] = None) -> List[Document]:
        stmt = select(DocumentRecord)

        if opts is not None:
            # ---- Full-text search ----
            if opts.search:
                query = fts_query(opts.search)
                if query is None:
                    return []
                stmt = stmt.where(text(_FTS_MATCH).bindparams(fts_query=query))

            # ---- Tag filter (case-insensitive membership) ----
            if opts.tag:
                clause = _HAS_TAG.format(table="documents", param="tag")
                stmt = stmt.where(text(clause).bindparams(tag=opts.tag.casefold()))

            if opts.source:
                stmt = stmt.where(DocumentRecord.source == opts.source)
            if opts.type:
                stmt = stmt.where(DocumentRecord.type == opts.type)

        stmt = stmt.order_by(DocumentRecord.updated_at.desc(), DocumentRecord.id.asc())
        if opts is not None and opts.limit:
            stmt = stmt.limit(opts.limit)

        with self._session() as session:
            return [_to_document(r) for r in session.scalars(stmt)]

    def update_document(self, doc: Document) -> Document:
        self._normalize(doc)
        with self._session() as session:
            record = session.get(DocumentRecord, doc.id)
            if record is None:
                raise EntityNotFoundError("document", doc.id)
            doc.created_at = record.created_at
            doc.updated_at = utc_now()
            _fill_document(record, doc)
            session.commit()
        return doc

    def delete_document(self, doc_id: str) -> None:
        with self._session() as session:
            # Membership rows go with the FK cascade; their collections still count as changed.
            members_of = select(CollectionDocumentRecord.collection_id).where(
                CollectionDocumentRecord.document_id == doc_id
            )
            session.execute(
                update(CollectionRecord)
                .where(CollectionRecord.id.in_(members_of))
                .values(updated_at=utc_now())
                .execution_options(synchronize_session=False)
            )
            session.execute(delete(DocumentRecord).where(DocumentRecord.id == doc_id))
            session.commit()

    def list_tags(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        with self._session() as session:
            for tags in session.scalars(select(DocumentRecord.tags)):
                for tag in tags or []:
                    counts[tag] = counts.get(tag, 0) + 1
        return counts

    # Collections

    def _members(self, session: Session, collection_ids: List[str]) -> Dict[str, List[str]]:
        members: Dict[str, List[str]] = {cid: [] for cid in collection_ids}
        if not collection_ids:
            return members
        stmt = (
            select(CollectionDocumentRecord)
            .where(CollectionDocumentRecord.collection_id.in_(collection_ids))
            .order_by(CollectionDocumentRecord.added_at, CollectionDocumentRecord.document_id)
        )
        for row in session.scalars(stmt):
            members[row.collection_id].append(row.document_id)
        return members

    @staticmethod
    def _to_collection(r: CollectionRecord, document_ids: List[str]) -> Collection:
        return Collection(
            id=r.id,
            name=r.name,
            description=r.description or "",
            document_ids=document_ids,
            created_at=r.created_at,
            updated_at=r.updated_at,
        )

    def create_collection(self, name: str, description: str = "") -> Collection:
        name = name.strip()
        if not name:
            raise LibraryValidationError("collection name must not be empty")
        now = utc_now()
        collection = Collection(id=new_id(), name=name, description=description,
                                created_at=now, updated_at=now)
        with self._session() as session:
            exists = session.scalar(select(CollectionRecord.id).where(CollectionRecord.name == name))
            if exists is not None:
                raise LibraryValidationError(f"collection already exists: {name}")
            session.add(CollectionRecord(
                id=collection.id,
                name=name,
                description=description,
                created_at=now,
                updated_at=now,
            ))
            session.commit()
        return collection

    def get_collection(self, id_or_name: str) -> Optional[Collection]:
        with self._session() as session:
            record = session.get(CollectionRecord, id_or_name)
            if record is None:
                record = session.scalar(select(CollectionRecord).where(CollectionRecord.name == id_or_name))
            if record is None:
                return None
            return self._to_collection(record, self._members(session, [record.id])[record.id])

    def list_collections(self) -> List[Collection]:
        with self._session() as session:
            records = list(session.scalars(
                select(CollectionRecord).order_by(CollectionRecord.name, CollectionRecord.id)
            ))
            members = self._members(session, [r.id for r in records])
            return [self._to_collection(r, members[r.id]) for r in records]

    def add_to_collection(self, collection_id: str, doc_id: str) -> None:
        with self._session() as session:
            collection = session.get(CollectionRecord, collection_id)
            if collection is None:
                raise EntityNotFoundError("collection", collection_id)
            if session.get(DocumentRecord, doc_id) is None:
                raise LibraryValidationError(f"cannot add missing document {doc_id} to a collection")
            if session.get(CollectionDocumentRecord, (collection_id, doc_id)) is not None:
                return
            now = utc_now()
            session.add(CollectionDocumentRecord(collection_id=collection_id, document_id=doc_id, added_at=now))
            collection.updated_at = now
            session.commit()

    def remove_from_collection(self, collection_id: str, doc_id: str) -> None:
        with self._session() as session:
            collection = session.get(CollectionRecord, collection_id)
            if collection is None:
                raise EntityNotFoundError("collection", collection_id)
            membership = session.get(CollectionDocumentRecord, (collection_id, doc_id))
            if membership is None:
                return
            session.delete(membership)
            collection.updated_at = utc_now()
            session.commit()

    def delete_collection(self, collection_id: str) -> None:
        with self._session() as session:
            session.execute(delete(CollectionRecord).where(CollectionRecord.id == collection_id))
            session.commit()

    # Annotations

    def _check_document(self, session: Session, doc_id: Optional[str], child: str) -> None:
        if not doc_id:
            raise LibraryValidationError(f"{child} requires a document_id")
        if session.get(DocumentRecord, doc_id) is None:
            raise LibraryValidationError(f"{child} references missing document {doc_id}")

    def add_annotation(self, annotation: Annotation) -> Annotation:
        self._normalize(annotation)
        if not annotation.id:
            annotation.id = new_id()
        annotation.created_at = utc_now()
        with self._session() as session:
            self._check_document(session, annotation.document_id, "annotation")
            session.add(AnnotationRecord(
                id=annotation.id,
                document_id=annotation.document_id,
                type=annotation.type.value,
                content=annotation.content,
                page=annotation.page,
                position=annotation.position,
                color=annotation.color,
                created_at=annotation.created_at,
            ))
            session.commit()
        return annotation

    def get_annotations(self, doc_id: str) -> List[Annotation]:
        stmt = (
            select(AnnotationRecord)
            .where(AnnotationRecord.document_id == doc_id)
            .order_by(AnnotationRecord.page, AnnotationRecord.created_at, AnnotationRecord.id)
        )
        with self._session() as session:
            return [_to_annotation(r) for r in session.scalars(stmt)]

    def delete_annotation(self, annotation_id: str) -> None:
        with self._session() as session:
            session.execute(delete(AnnotationRecord).where(AnnotationRecord.id == annotation_id))
            session.commit()

    # Reading sessions

    def start_session(self, doc_id: str) -> ReadingSession:
        reading = ReadingSession(id=new_id(), document_id=doc_id, start_at=utc_now())
        with self._session() as session:
            self._check_document(session, doc_id, "reading session")
            session.add(ReadingSessionRecord(
                id=reading.id,
                document_id=doc_id,
                start_at=reading.start_at,
                pages_read=0,
            ))
            session.commit()
        return reading

    def end_session(self, session_id: str, pages_read: int = 0, notes: str = "") -> ReadingSession:
        if pages_read < 0:
            raise LibraryValidationError("pages_read must not be negative")
        with self._session() as session:
            record = session.get(ReadingSessionRecord, session_id)
            if record is None:
                raise EntityNotFoundError("reading session", session_id)
            record.end_at = utc_now()
            record.pages_read = pages_read
            record.notes = notes
            session.commit()
            return _to_session(record)

    def list_sessions(self, doc_id: str) -> List[ReadingSession]:
        stmt = (
            select(ReadingSessionRecord)
            .where(ReadingSessionRecord.document_id == doc_id)
            .order_by(ReadingSessionRecord.start_at.desc(), ReadingSessionRecord.id)
        )
        with self._session() as session:
            return [_to_session(r) for r in session.scalars(stmt)]

    # Flashcards

    def add_flashcard(self, card: Flashcard) -> Flashcard:
        self._normalize(card)
        if not card.id:
            card.id = new_id()
        now = utc_now()
        card.created_at = now
        card.updated_at = now
        if card.due_at is None:
            card.due_at = now
        with self._session() as session:
            if card.document_id:
                self._check_document(session, card.document_id, "flashcard")
            if session.get(FlashcardRecord, card.id) is not None:
                raise LibraryValidationError(f"flashcard already exists: {card.id}")
            record = FlashcardRecord(id=card.id)
            _fill_flashcard(record, card)
            session.add(record)
            session.commit()
        return card

    def get_flashcard(self, card_id: str) -> Optional[Flashcard]:
        with self._session() as session:
            record = session.get(FlashcardRecord, card_id)
            return _to_flashcard(record) if record else None

    def list_flashcards(self, opts: Optional[FlashcardListOptions] = None) -> List[Flashcard]:
        stmt = select(FlashcardRecord)
        if opts is not None:
            if opts.document_id:
                stmt = stmt.where(FlashcardRecord.document_id == opts.document_id)
            if opts.tag:
                clause = _HAS_TAG.format(table="flashcards", param="tag")
                stmt = stmt.where(text(clause).bindparams(tag=opts.tag.casefold()))
            if opts.due:
                stmt = stmt.where(FlashcardRecord.due_at <= utc_now())
        stmt = stmt.order_by(FlashcardRecord.due_at, FlashcardRecord.id)
        if opts is not None and opts.limit:
            stmt = stmt.limit(opts.limit)
        with self._session() as session:
            return [_to_flashcard(r) for r in session.scalars(stmt)]

    def get_due_flashcards(self, now: Optional[datetime] = None) -> List[Flashcard]:
        stmt = (
            select(FlashcardRecord)
            .where(FlashcardRecord.due_at <= (as_utc(now) if now else utc_now()))
            .order_by(FlashcardRecord.due_at, FlashcardRecord.id)
        )
        with self._session() as session:
            return [_to_flashcard(r) for r in session.scalars(stmt)]

    def update_flashcard(self, card: Flashcard) -> Flashcard:
        self._normalize(card)
        with self._session() as session:
            record = session.get(FlashcardRecord, card.id)
            if record is None:
                raise EntityNotFoundError("flashcard", card.id)
            if card.document_id and card.document_id != record.document_id:
                self._check_document(session, card.document_id, "flashcard")
            card.created_at = record.created_at
            card.updated_at = utc_now()
            _fill_flashcard(record, card)
            session.commit()
        return card

    def delete_flashcard(self, card_id: str) -> None:
        with self._session() as session:
            session.execute(delete(FlashcardRecord).where(FlashcardRecord.id == card_id))
            session.commit()

    def _save_review(self, card: Flashcard, review: FlashcardReview) -> None:
        with self._session() as session:
            record = session.get(FlashcardRecord, card.id)
            if record is None:
                raise EntityNotFoundError("flashcard", card.id)
            card.created_at = record.created_at
            _fill_flashcard(record, card)
            session.add(FlashcardReviewRecord(
                id=review.id,
                flashcard_id=review.flashcard_id,
                quality=review.quality,
                reviewed_at=review.reviewed_at,
                prev_interval=review.prev_interval,
                prev_ease=review.prev_ease,
            ))
            session.commit()

    def list_flashcard_reviews(self, card_id: str) -> List[FlashcardReview]:
        stmt = (
            select(FlashcardReviewRecord)
            .where(FlashcardReviewRecord.flashcard_id == card_id)
            .order_by(FlashcardReviewRecord.reviewed_at.desc(), FlashcardReviewRecord.id)
        )
        with self._session() as session:
            return [_to_review(r) for r in session.scalars(stmt)]

    # Tasks

    def _check_collection(self, session: Session, collection_id: Optional[str]) -> None:
        if collection_id and session.get(CollectionRecord, collection_id) is None:
            raise LibraryValidationError(f"task references missing collection {collection_id}")

    def add_task(self, task: Task) -> Task:
        self._normalize(task)
        if not task.id:
            task.id = new_id()
        now = utc_now()
        task.created_at = now
        task.updated_at = now
        self._stamp_task_completion(task, now)
        with self._session() as session:
            self._check_collection(session, task.collection_id)
            record = TaskRecord(id=task.id)
            _fill_task(record, task)
            session.add(record)
            session.commit()
        return task

    def get_task(self, task_id: str) -> Optional[Task]:
        with self._session() as session:
            record = session.get(TaskRecord, task_id)
            return _to_task(record) if record else None

    def list_tasks(self, opts: Optional[TaskListOptions] = None) -> List[Task]:
        stmt = select(TaskRecord)
        if opts is not None:
            if opts.collection_id:
                stmt = stmt.where(TaskRecord.collection_id == opts.collection_id)
            if opts.status:
                stmt = stmt.where(TaskRecord.status == opts.status)
        stmt = stmt.order_by(TaskRecord.created_at.desc(), TaskRecord.id)
        if opts is not None and opts.limit:
            stmt = stmt.limit(opts.limit)
        with self._session() as session:
            return [_to_task(r) for r in session.scalars(stmt)]

    def update_task(self, task: Task) -> Task:
        self._normalize(task)
        with self._session() as session:
            record = session.get(TaskRecord, task.id)
            if record is None:
                raise EntityNotFoundError("task", task.id)
            if task.collection_id != record.collection_id:
                self._check_collection(session, task.collection_id)
            now = utc_now()
            task.created_at = record.created_at
            task.updated_at = now
            self._stamp_task_completion(task, now)
            _fill_task(record, task)
            session.commit()
        return task

    def delete_task(self, task_id: str) -> None:
        with self._session() as session:
            session.execute(delete(TaskRecord).where(TaskRecord.id == task_id))
            session.commit()

    # Saved searches

    def save_search(self, search: SavedSearch) -> SavedSearch:
        self._normalize(search)
        search.name = search.name.strip()
        if not search.name:
            raise LibraryValidationError("saved search name must not be empty")
        now = utc_now()
        with self._session() as session:
            record = session.scalar(select(SavedSearchRecord).where(SavedSearchRecord.name == search.name))
            if record is None:
                search.id = search.id or new_id()
                search.created_at = now
                record = SavedSearchRecord(id=search.id, name=search.name, created_at=now)
                session.add(record)
            else:
                search.id = record.id
                search.created_at = record.created_at
            search.updated_at = now
            record.query = search.query
            record.tag = search.tag
            record.source = search.source
            record.type = search.type
            record.description = search.description
            record.updated_at = now
            session.commit()
        return search

    def get_saved_search(self, id_or_name: str) -> Optional[SavedSearch]:
        with self._session() as session:
            record = session.get(SavedSearchRecord, id_or_name)
            if record is None:
                record = session.scalar(
                    select(SavedSearchRecord).where(SavedSearchRecord.name == id_or_name)
                )
            return _to_saved_search(record) if record else None

    def list_saved_searches(self) -> List[SavedSearch]:
        stmt = select(SavedSearchRecord).order_by(SavedSearchRecord.updated_at.desc(), SavedSearchRecord.id)
        with self._session() as session:
            return [_to_saved_search(r) for r in session.scalars(stmt)]

    def delete_saved_search(self, search_id: str) -> None:
        with self._session() as session:
            session.execute(delete(SavedSearchRecord).where(SavedSearchRecord.id == search_id))
            session.commit()

    def close(self) -> None:
        self.database.teardown()
