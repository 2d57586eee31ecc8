"""List filtering and ordering shared by every engine.

The relational engine expresses these rules in SQL; the key-value
engines evaluate them in Python over roster scans. Search is the one
intended difference: here it is a case-insensitive substring test, the
relational engine uses stemmed full-text matching.
"""
import re
from datetime import datetime, timezone
from typing import Iterable, List, Optional, TypeVar

from readingroom.schemas.library import (
    Annotation,
    Collection,
    Document,
    Flashcard,
    FlashcardListOptions,
    FlashcardReview,
    ListOptions,
    ReadingSession,
)

T = TypeVar("T")

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)
_WORD = re.compile(r"\w+", re.UNICODE)


def _ts(value: Optional[datetime]) -> datetime:
    return value or _EPOCH


def apply_limit(items: List[T], limit: int) -> List[T]:
    if limit and limit > 0:
        return items[:limit]
    return items


def matches_document(doc: Document, opts: Optional[ListOptions]) -> bool:
    if opts is None:
        return True
    if opts.tag and not doc.has_tag(opts.tag):
        return False
    if opts.source and doc.source != opts.source:
        return False
    if opts.type and doc.type.value != opts.type:
        return False
    if opts.search:
        needle = opts.search.casefold()
        haystacks = (doc.title, doc.abstract, doc.notes, doc.full_text)
        if not any(needle in (text or "").casefold() for text in haystacks):
            return False
    return True


def order_documents(docs: Iterable[Document]) -> List[Document]:
    """updated_at descending, ties broken by id ascending."""
    ordered = sorted(docs, key=lambda d: d.id)
    ordered.sort(key=lambda d: _ts(d.updated_at), reverse=True)
    return ordered


def filter_documents(docs: Iterable[Document], opts: Optional[ListOptions]) -> List[Document]:
    selected = order_documents(d for d in docs if matches_document(d, opts))
    return apply_limit(selected, opts.limit if opts else 0)


def matches_flashcard(card: Flashcard, opts: Optional[FlashcardListOptions], now: datetime) -> bool:
    if opts is None:
        return True
    if opts.document_id and card.document_id != opts.document_id:
        return False
    if opts.tag and not card.has_tag(opts.tag):
        return False
    if opts.due and _ts(card.due_at) > now:
        return False
    return True


def order_flashcards(cards: Iterable[Flashcard]) -> List[Flashcard]:
    return sorted(cards, key=lambda c: (_ts(c.due_at), c.id))


def order_annotations(annotations: Iterable[Annotation]) -> List[Annotation]:
    return sorted(annotations, key=lambda a: (a.page, _ts(a.created_at), a.id))


def order_sessions(sessions: Iterable[ReadingSession]) -> List[ReadingSession]:
    ordered = sorted(sessions, key=lambda s: s.id)
    ordered.sort(key=lambda s: _ts(s.start_at), reverse=True)
    return ordered


def order_reviews(reviews: Iterable[FlashcardReview]) -> List[FlashcardReview]:
    ordered = sorted(reviews, key=lambda r: r.id)
    ordered.sort(key=lambda r: _ts(r.reviewed_at), reverse=True)
    return ordered


def order_collections(collections: Iterable[Collection]) -> List[Collection]:
    return sorted(collections, key=lambda c: (c.name, c.id))


def fts_query(search: str) -> Optional[str]:
    """Turn free text into an FTS5 query: every word must match (stemmed).

    Words are quoted so user input never reaches the FTS5 query grammar.
    """
    words = _WORD.findall(search)
    if not words:
        return None
    return " ".join(f'"{w}"' for w in words)
