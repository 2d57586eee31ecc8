import logging
from datetime import datetime
from typing import Optional

from readingroom.repositories.base import LibraryStore
from readingroom.schemas.library import as_utc, utc_now
from readingroom.schemas.stats import LibraryStats

logger = logging.getLogger(__name__)


def library_stats(store: LibraryStore, now: Optional[datetime] = None) -> LibraryStats:
    """Collect library statistics through the store contract only."""
    now = as_utc(now) if now else utc_now()
    stats = LibraryStats()

    documents = store.list_documents()
    stats.documents = len(documents)
    for doc in documents:
        stats.by_type[doc.type.value] = stats.by_type.get(doc.type.value, 0) + 1
        stats.by_status[doc.status.value] = stats.by_status.get(doc.status.value, 0) + 1
        stats.annotations += len(store.get_annotations(doc.id))
        for session in store.list_sessions(doc.id):
            stats.reading_sessions += 1
            stats.pages_read += session.pages_read

    stats.tags = store.list_tags()
    stats.collections = len(store.list_collections())

    cards = store.list_flashcards()
    stats.flashcards = len(cards)
    stats.due_flashcards = sum(1 for c in cards if c.due_at is not None and c.due_at <= now)

    logger.debug(f"Computed stats for {stats.documents} documents on {store.backend_name}")
    return stats
