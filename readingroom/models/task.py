from sqlalchemy import JSON, Column, ForeignKey, String, Text

from readingroom.db.interfaces.sqlite import Base, UTCDateTime


class TaskRecord(Base):
    __tablename__ = "tasks"

    id = Column(String, primary_key=True)
    description = Column(Text, nullable=False)
    collection_id = Column(
        String, ForeignKey("collections.id", ondelete="SET NULL"), nullable=True, index=True
    )
    status = Column(String, nullable=False, default="todo", index=True)
    priority = Column(String, nullable=False, default="medium")
    tags = Column(JSON, nullable=False, default=list)
    due_at = Column(UTCDateTime, nullable=True, index=True)
    completed_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False)
    updated_at = Column(UTCDateTime, nullable=False)


class SavedSearchRecord(Base):
    __tablename__ = "saved_searches"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False, unique=True)
    query = Column(Text, nullable=False, default="")
    tag = Column(String, nullable=True)
    source = Column(String, nullable=True)
    type = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, nullable=False)
    updated_at = Column(UTCDateTime, nullable=False)
