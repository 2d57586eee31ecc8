from readingroom.models.annotation import AnnotationRecord, ReadingSessionRecord
from readingroom.models.collection import CollectionDocumentRecord, CollectionRecord
from readingroom.models.document import DocumentRecord
from readingroom.models.flashcard import FlashcardRecord, FlashcardReviewRecord
from readingroom.models.task import SavedSearchRecord, TaskRecord

__all__ = [
    "AnnotationRecord",
    "CollectionDocumentRecord",
    "CollectionRecord",
    "DocumentRecord",
    "FlashcardRecord",
    "FlashcardReviewRecord",
    "ReadingSessionRecord",
    "SavedSearchRecord",
    "TaskRecord",
]
