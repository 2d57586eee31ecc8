from typing import Dict

from pydantic import BaseModel, Field


class LibraryStats(BaseModel):
    """Aggregate counts over the whole library."""

    documents: int = 0
    by_type: Dict[str, int] = Field(default_factory=dict)
    by_status: Dict[str, int] = Field(default_factory=dict)
    tags: Dict[str, int] = Field(default_factory=dict)
    collections: int = 0
    annotations: int = 0
    reading_sessions: int = 0
    pages_read: int = 0
    flashcards: int = 0
    due_flashcards: int = 0
