import logging

import pytest

from readingroom.exceptions import LibraryValidationError
from readingroom.schemas.library import Document, DocumentType
from readingroom.services.importer import DocumentImporter, merge_metadata, normalize_doi


@pytest.fixture
def pdf(tmp_path):
    path = tmp_path / "attention-is-all-you-need.pdf"
    path.write_bytes(b"%PDF-1.4")
    return path


class FakeResolver:
    def __init__(self, metadata=None, error=None):
        self.metadata = metadata or {}
        self.error = error
        self.calls = []

    def __call__(self, doi):
        self.calls.append(doi)
        if self.error:
            raise self.error
        return dict(self.metadata)


def test_import_file_creates_document(store, pdf):
    doc = DocumentImporter(store).import_file(pdf, tags=["ml"])

    assert doc.title == "attention-is-all-you-need"
    assert doc.path == str(pdf.resolve())
    assert doc.source == "local"
    assert doc.tags == ["ml"]
    assert store.get_document_by_path(str(pdf.resolve())).id == doc.id


def test_import_file_skips_known_path(store, pdf):
    importer = DocumentImporter(store)
    first = importer.import_file(pdf)
    second = importer.import_file(pdf)

    assert second.id == first.id
    assert len(store.list_documents()) == 1


def test_import_file_stores_extracted_text(store, pdf):
    importer = DocumentImporter(store, extract_text=lambda path: "multi-head attention")
    doc = importer.import_file(pdf, type=DocumentType.ARTICLE)

    loaded = store.get_document(doc.id)
    assert loaded.full_text == "multi-head attention"
    assert loaded.type == DocumentType.ARTICLE


def test_import_file_survives_extractor_failure(store, pdf, caplog):
    def broken(path):
        raise RuntimeError("pdftotext not installed")

    with caplog.at_level(logging.WARNING):
        doc = DocumentImporter(store, extract_text=broken).import_file(pdf)

    assert store.get_document(doc.id).full_text == ""
    assert "pdftotext not installed" in caplog.text


def test_import_file_into_new_collection(store, pdf):
    doc = DocumentImporter(store).import_file(pdf, collection="thesis")

    collection = store.get_collection("thesis")
    assert collection is not None
    assert collection.document_ids == [doc.id]


def test_import_missing_file(store, tmp_path):
    with pytest.raises(LibraryValidationError):
        DocumentImporter(store).import_file(tmp_path / "missing.pdf")


def test_import_doi_merges_resolver_metadata(store):
    resolver = FakeResolver({
        "title": "Deep Residual Learning",
        "authors": ["Kaiming He", "Xiangyu Zhang"],
        "abstract": "Deeper networks are harder to train.",
        "year": 2016,
        "journal": "CVPR",
        "url": "",
    })
    doc = DocumentImporter(store, resolve_doi=resolver).import_doi("https://doi.org/10.1109/CVPR.2016.90")

    loaded = store.get_document_by_source_id("doi", "10.1109/CVPR.2016.90")
    assert loaded.id == doc.id
    assert loaded.title == "Deep Residual Learning"
    assert loaded.authors == ["Kaiming He", "Xiangyu Zhang"]
    assert loaded.meta == {"doi": "10.1109/CVPR.2016.90", "year": 2016, "journal": "CVPR"}


def test_import_doi_is_deduplicated(store):
    resolver = FakeResolver({"title": "Once"})
    importer = DocumentImporter(store, resolve_doi=resolver)
    first = importer.import_doi("10.1/abc", collection="reading")
    second = importer.import_doi("doi:10.1/abc")

    assert second.id == first.id
    assert resolver.calls == ["10.1/abc"]
    assert store.get_collection("reading").document_ids == [first.id]


def test_import_doi_without_resolver_data(store):
    resolver = FakeResolver(error=ConnectionError("offline"))
    doc = DocumentImporter(store, resolve_doi=resolver).import_doi("10.1/xyz", tags=["later"])

    assert doc.title == "10.1/xyz"
    assert doc.tags == ["later"]


def test_import_empty_doi(store):
    with pytest.raises(LibraryValidationError):
        DocumentImporter(store).import_doi("  ")


def test_normalize_doi():
    assert normalize_doi(" https://doi.org/10.1/x ") == "10.1/x"
    assert normalize_doi("doi:10.1/x") == "10.1/x"
    assert normalize_doi("10.1/x") == "10.1/x"


def test_merge_metadata_keeps_existing_values_for_blanks():
    doc = Document(title="Kept", abstract="Kept too")
    merge_metadata(doc, {"title": "", "abstract": None, "publisher": "ACM"})

    assert doc.title == "Kept"
    assert doc.abstract == "Kept too"
    assert doc.meta == {"publisher": "ACM"}
