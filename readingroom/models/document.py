from sqlalchemy import DDL, JSON, Column, Index, Integer, String, Text, UniqueConstraint, event

from readingroom.db.interfaces.sqlite import Base, UTCDateTime


class DocumentRecord(Base):
    __tablename__ = "documents"

    __table_args__ = (
        UniqueConstraint("source", "source_id", name="uq_documents_source_source_id"),
        Index("ix_documents_updated_at", "updated_at"),
        Index("ix_documents_type", "type"),
    )

    id = Column(String, primary_key=True)
    type = Column(String, nullable=False, default="paper")
    # NULL (not "") when absent so the unique constraints skip it
    path = Column(String, nullable=True, unique=True)
    source = Column(String, nullable=True)
    source_id = Column(String, nullable=True)

    title = Column(String, nullable=False, default="")
    authors = Column(JSON, nullable=False, default=list)
    abstract = Column(Text, nullable=True)
    full_text = Column(Text, nullable=True)
    tags = Column(JSON, nullable=False, default=list)
    notes = Column(Text, nullable=True)
    rating = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default="unread")
    read_at = Column(UTCDateTime, nullable=True)
    meta = Column(JSON, nullable=False, default=dict)

    created_at = Column(UTCDateTime, nullable=False)
    updated_at = Column(UTCDateTime, nullable=False)


# Full-text shadow table, kept in step with documents by triggers.
FTS_DDL = [
    """
    CREATE VIRTUAL TABLE IF NOT EXISTS documents_fts USING fts5(
        doc_id UNINDEXED,
        title,
        abstract,
        full_text,
        tags,
        notes,
        tokenize='porter unicode61'
    )
    """,
    """
    CREATE TRIGGER IF NOT EXISTS documents_ai AFTER INSERT ON documents BEGIN
        INSERT INTO documents_fts (doc_id, title, abstract, full_text, tags, notes)
        VALUES (new.id, new.title, new.abstract, new.full_text, new.tags, new.notes);
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS documents_ad AFTER DELETE ON documents BEGIN
        DELETE FROM documents_fts WHERE doc_id = old.id;
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS documents_au AFTER UPDATE ON documents BEGIN
        DELETE FROM documents_fts WHERE doc_id = old.id;
        INSERT INTO documents_fts (doc_id, title, abstract, full_text, tags, notes)
        VALUES (new.id, new.title, new.abstract, new.full_text, new.tags, new.notes);
    END
    """,
]

for statement in FTS_DDL:
    event.listen(Base.metadata, "after_create", DDL(statement).execute_if(dialect="sqlite"))
