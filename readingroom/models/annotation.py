from sqlalchemy import Column, ForeignKey, Integer, String, Text

from readingroom.db.interfaces.sqlite import Base, UTCDateTime


class AnnotationRecord(Base):
    __tablename__ = "annotations"

    id = Column(String, primary_key=True)
    document_id = Column(
        String, ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True
    )
    type = Column(String, nullable=False)
    content = Column(Text, nullable=True)
    page = Column(Integer, nullable=False, default=0)
    position = Column(String, nullable=True)
    color = Column(String, nullable=True)
    created_at = Column(UTCDateTime, nullable=False)


class ReadingSessionRecord(Base):
    __tablename__ = "reading_sessions"

    id = Column(String, primary_key=True)
    document_id = Column(
        String, ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True
    )
    start_at = Column(UTCDateTime, nullable=False)
    end_at = Column(UTCDateTime, nullable=True)
    pages_read = Column(Integer, nullable=False, default=0)
    notes = Column(Text, nullable=True)
