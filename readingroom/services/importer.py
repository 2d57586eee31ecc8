import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from readingroom.exceptions import LibraryValidationError
from readingroom.repositories.base import LibraryStore
from readingroom.schemas.library import Document, DocumentType

logger = logging.getLogger(__name__)

DOI_SOURCE = "doi"

DoiResolver = Callable[[str], Dict[str, Any]]
TextExtractor = Callable[[Path], str]


def merge_metadata(document: Document, metadata: Dict[str, Any]) -> Document:
    """Fold resolver output into document, keeping existing values for empty fields."""
    for key, value in metadata.items():
        if value in (None, "", [], {}):
            continue
        if key == "title":
            document.title = str(value)
        elif key == "authors":
            document.authors = [str(a) for a in value]
        elif key == "abstract":
            document.abstract = str(value)
        else:
            document.meta[key] = value
    return document


def normalize_doi(doi: str) -> str:
    doi = doi.strip()
    for prefix in ("https://doi.org/", "http://doi.org/", "doi:"):
        if doi.lower().startswith(prefix):
            doi = doi[len(prefix):]
    return doi


class DocumentImporter:
    """
    Adds files and DOIs to a library store without creating duplicates.

    Network and file-format work is delegated to the optional resolve_doi
    and extract_text collaborators.
    """

    def __init__(
        self,
        store: LibraryStore,
        resolve_doi: Optional[DoiResolver] = None,
        extract_text: Optional[TextExtractor] = None,
    ):
        self.store = store
        self.resolve_doi = resolve_doi
        self.extract_text = extract_text

    def import_file(
        self,
        path: Union[str, Path],
        type: DocumentType = DocumentType.PAPER,
        tags: Optional[List[str]] = None,
        collection: Optional[str] = None,
    ) -> Document:
        path = Path(path).expanduser().resolve()
        if not path.exists():
            raise LibraryValidationError(f"path not found: {path}")

        existing = self.store.get_document_by_path(str(path))
        if existing is not None:
            logger.info(f"Skipping {path}: already in library as {existing.id}")
            return existing

        doc = Document(type=type, path=str(path), source="local", title=path.stem, tags=tags or [])
        if self.extract_text is not None and path.is_file():
            try:
                doc.full_text = self.extract_text(path)
            except Exception as e:
                logger.warning(f"Text extraction failed for {path}: {e}")

        doc = self.store.add_document(doc)
        self._file_into(collection, doc)
        logger.info(f"Imported {path} as {doc.id}")
        return doc

    def import_doi(
        self,
        doi: str,
        tags: Optional[List[str]] = None,
        collection: Optional[str] = None,
    ) -> Document:
        doi = normalize_doi(doi)
        if not doi:
            raise LibraryValidationError("DOI must not be empty")

        existing = self.store.get_document_by_source_id(DOI_SOURCE, doi)
        if existing is not None:
            logger.info(f"Skipping DOI {doi}: already in library as {existing.id}")
            return existing

        doc = Document(type=DocumentType.PAPER, source=DOI_SOURCE, source_id=doi,
                       title=doi, tags=tags or [], meta={"doi": doi})
        if self.resolve_doi is not None:
            try:
                metadata = self.resolve_doi(doi)
            except Exception as e:
                logger.warning(f"DOI lookup failed for {doi}: {e}")
            else:
                merge_metadata(doc, metadata)

        doc = self.store.add_document(doc)
        self._file_into(collection, doc)
        logger.info(f"Imported DOI {doi} as {doc.id}")
        return doc

    def _file_into(self, collection: Optional[str], doc: Document) -> None:
        if not collection:
            return
        target = self.store.get_collection(collection)
        if target is None:
            target = self.store.create_collection(collection)
            logger.info(f"Created collection: {collection}")
        self.store.add_to_collection(target.id, doc.id)
