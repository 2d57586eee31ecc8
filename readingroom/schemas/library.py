import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Optional

from pydantic import AfterValidator, BaseModel, Field, field_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


Timestamp = Annotated[datetime, AfterValidator(as_utc)]


def new_id() -> str:
    return str(uuid.uuid4())


def dedupe_tags(tags: List[str]) -> List[str]:
    """Drop blank and case-insensitively repeated tags, keeping the first spelling."""
    seen = set()
    out = []
    for tag in tags:
        tag = tag.strip()
        key = tag.casefold()
        if not tag or key in seen:
            continue
        seen.add(key)
        out.append(tag)
    return out


class DocumentType(str, Enum):
    PAPER = "paper"
    BOOK = "book"
    ARTICLE = "article"
    VIDEO = "video"
    NOTE = "note"
    REPO = "repo"
    OTHER = "other"


class ReadingStatus(str, Enum):
    UNREAD = "unread"
    READING = "reading"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class AnnotationType(str, Enum):
    NOTE = "note"
    HIGHLIGHT = "highlight"
    BOOKMARK = "bookmark"


class FlashcardType(str, Enum):
    BASIC = "basic"
    CLOZE = "cloze"


class TaskStatus(str, Enum):
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    DONE = "done"


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Document(BaseModel):
    """Any item in the library: paper, book, article, video, note, repo."""

    id: str = ""
    type: DocumentType = DocumentType.PAPER
    path: str = Field("", description="Local file or directory; unique when set")
    source: str = Field("", description="arxiv, local, url, doi, ...")
    source_id: str = Field("", description="Identifier within source, unique with source")
    title: str = ""
    authors: List[str] = Field(default_factory=list)
    abstract: str = ""
    full_text: str = ""
    tags: List[str] = Field(default_factory=list)
    notes: str = ""
    rating: int = Field(0, ge=0, le=5)
    status: ReadingStatus = ReadingStatus.UNREAD
    read_at: Optional[Timestamp] = None
    meta: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[Timestamp] = None
    updated_at: Optional[Timestamp] = None

    @field_validator("tags")
    @classmethod
    def normalize_tags(cls, value: List[str]) -> List[str]:
        return dedupe_tags(value)

    def has_tag(self, tag: str) -> bool:
        wanted = tag.casefold()
        return any(t.casefold() == wanted for t in self.tags)


class Collection(BaseModel):
    """A named group of documents. Membership is ordered and unique."""

    id: str = ""
    name: str
    description: str = ""
    document_ids: List[str] = Field(default_factory=list)
    created_at: Optional[Timestamp] = None
    updated_at: Optional[Timestamp] = None


class Annotation(BaseModel):
    id: str = ""
    document_id: str
    type: AnnotationType = AnnotationType.NOTE
    content: str = ""
    page: int = 0
    position: str = Field("", description="JSON coordinates within the page")
    color: str = ""
    created_at: Optional[Timestamp] = None


class ReadingSession(BaseModel):
    id: str = ""
    document_id: str
    start_at: Optional[Timestamp] = None
    end_at: Optional[Timestamp] = None
    pages_read: int = Field(0, ge=0)
    notes: str = ""


class Flashcard(BaseModel):
    """A spaced repetition card scheduled with SM-2."""

    id: str = ""
    document_id: Optional[str] = None
    type: FlashcardType = FlashcardType.BASIC
    front: str = ""
    back: str = ""
    cloze: str = Field("", description="Cloze deletion pattern: {{c1::text}}")
    tags: List[str] = Field(default_factory=list)
    due_at: Optional[Timestamp] = None
    interval: int = Field(0, ge=0, description="Days until next review")
    ease: float = Field(2.5, ge=1.3, le=2.5, description="SM-2 ease factor")
    last_review: Optional[Timestamp] = None
    created_at: Optional[Timestamp] = None
    updated_at: Optional[Timestamp] = None

    @field_validator("tags")
    @classmethod
    def normalize_tags(cls, value: List[str]) -> List[str]:
        return dedupe_tags(value)

    def has_tag(self, tag: str) -> bool:
        wanted = tag.casefold()
        return any(t.casefold() == wanted for t in self.tags)


class FlashcardReview(BaseModel):
    """Append-only audit record of a single review."""

    id: str = ""
    flashcard_id: str
    quality: int = Field(..., ge=0, le=5)
    reviewed_at: Optional[Timestamp] = None
    prev_interval: int = 0
    prev_ease: float = 2.5


class Task(BaseModel):
    id: str = ""
    description: str
    collection_id: Optional[str] = None
    status: TaskStatus = TaskStatus.TODO
    priority: TaskPriority = TaskPriority.MEDIUM
    tags: List[str] = Field(default_factory=list)
    due_at: Optional[Timestamp] = None
    completed_at: Optional[Timestamp] = None
    created_at: Optional[Timestamp] = None
    updated_at: Optional[Timestamp] = None

    @field_validator("tags")
    @classmethod
    def normalize_tags(cls, value: List[str]) -> List[str]:
        return dedupe_tags(value)


class SavedSearch(BaseModel):
    """A named document query; names are unique."""

    id: str = ""
    name: str
    query: str = ""
    tag: str = ""
    source: str = ""
    type: str = ""
    description: str = ""
    created_at: Optional[Timestamp] = None
    updated_at: Optional[Timestamp] = None

    def to_list_options(self, limit: int = 0) -> "ListOptions":
        return ListOptions(tag=self.tag, source=self.source, type=self.type, search=self.query, limit=limit)


class ListOptions(BaseModel):
    """Document listing filters. Empty fields do not filter."""

    tag: str = ""
    source: str = ""
    type: str = ""
    search: str = ""
    limit: int = Field(0, ge=0, description="0 means unlimited")

    @field_validator("tag")
    @classmethod
    def strip_tag(cls, value: str) -> str:
        return value.strip()


class FlashcardListOptions(BaseModel):
    document_id: str = ""
    tag: str = ""
    due: bool = False
    limit: int = Field(0, ge=0)

    @field_validator("tag")
    @classmethod
    def strip_tag(cls, value: str) -> str:
        return value.strip()


class TaskListOptions(BaseModel):
    collection_id: str = ""
    status: str = ""
    limit: int = Field(0, ge=0)
