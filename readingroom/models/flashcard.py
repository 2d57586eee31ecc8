from sqlalchemy import JSON, Column, Float, ForeignKey, Integer, String, Text

from readingroom.db.interfaces.sqlite import Base, UTCDateTime


class FlashcardRecord(Base):
    __tablename__ = "flashcards"

    id = Column(String, primary_key=True)
    document_id = Column(
        String, ForeignKey("documents.id", ondelete="CASCADE"), nullable=True, index=True
    )
    type = Column(String, nullable=False)
    front = Column(Text, nullable=False, default="")
    back = Column(Text, nullable=True)
    cloze = Column(Text, nullable=True)
    tags = Column(JSON, nullable=False, default=list)

    # SM-2 scheduling state
    due_at = Column(UTCDateTime, nullable=False, index=True)
    interval = Column(Integer, nullable=False, default=0)
    ease = Column(Float, nullable=False, default=2.5)
    last_review = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, nullable=False)
    updated_at = Column(UTCDateTime, nullable=False)


class FlashcardReviewRecord(Base):
    __tablename__ = "flashcard_reviews"

    id = Column(String, primary_key=True)
    flashcard_id = Column(
        String, ForeignKey("flashcards.id", ondelete="CASCADE"), nullable=False, index=True
    )
    quality = Column(Integer, nullable=False)
    reviewed_at = Column(UTCDateTime, nullable=False)
    prev_interval = Column(Integer, nullable=False, default=0)
    prev_ease = Column(Float, nullable=False, default=2.5)
