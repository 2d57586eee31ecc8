from sqlalchemy import Column, ForeignKey, Index, String, Text

from readingroom.db.interfaces.sqlite import Base, UTCDateTime


class CollectionRecord(Base):
    __tablename__ = "collections"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False, unique=True)
    description = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, nullable=False)
    updated_at = Column(UTCDateTime, nullable=False)


class CollectionDocumentRecord(Base):
    __tablename__ = "collection_documents"

    __table_args__ = (
        Index("ix_collection_documents_document_id", "document_id"),
    )

    collection_id = Column(
        String, ForeignKey("collections.id", ondelete="CASCADE"), primary_key=True
    )
    document_id = Column(
        String, ForeignKey("documents.id", ondelete="CASCADE"), primary_key=True
    )
    added_at = Column(UTCDateTime, nullable=False)
