"""Behaviour every storage engine must share."""
from datetime import datetime, timedelta, timezone

import pytest

from readingroom.exceptions import EntityNotFoundError, LibraryValidationError
from readingroom.schemas.library import (
    Annotation,
    AnnotationType,
    Document,
    DocumentType,
    Flashcard,
    FlashcardListOptions,
    ListOptions,
    ReadingStatus,
    utc_now,
)


# Documents

def test_add_and_get_document_round_trip(store, paper):
    assert paper.id
    assert paper.created_at is not None
    assert paper.created_at == paper.updated_at

    loaded = store.get_document(paper.id)
    assert loaded is not None
    assert loaded.title == "Attention Is All You Need"
    assert loaded.authors == ["Ashish Vaswani", "Noam Shazeer"]
    assert loaded.tags == ["ml", "NLP"]
    assert loaded.source_id == "1706.03762"
    assert loaded.status == ReadingStatus.UNREAD
    assert loaded.created_at == paper.created_at
    assert loaded.updated_at == paper.updated_at


def test_meta_and_optional_fields_survive(store):
    doc = store.add_document(Document(title="Notes", type=DocumentType.NOTE, meta={"year": 2017, "venue": "NeurIPS"}))
    loaded = store.get_document(doc.id)
    assert loaded.meta == {"year": 2017, "venue": "NeurIPS"}
    assert loaded.type == DocumentType.NOTE
    assert loaded.path == ""
    assert loaded.source == ""


def test_missing_entities_read_as_none(store):
    assert store.get_document("nope") is None
    assert store.get_document_by_path("/nowhere.pdf") is None
    assert store.get_document_by_source_id("arxiv", "0000.00000") is None
    assert store.get_collection("nope") is None
    assert store.get_flashcard("nope") is None


def test_lookup_by_path_and_source(store, paper):
    assert store.get_document_by_path("/papers/attention.pdf").id == paper.id
    assert store.get_document_by_source_id("arxiv", "1706.03762").id == paper.id
    assert store.get_document_by_source_id("doi", "1706.03762") is None


def test_duplicate_path_is_rejected(store, paper):
    with pytest.raises(LibraryValidationError):
        store.add_document(Document(title="Copy", path="/papers/attention.pdf"))


def test_duplicate_source_identity_is_rejected(store, paper):
    with pytest.raises(LibraryValidationError):
        store.add_document(Document(title="Copy", source="arxiv", source_id="1706.03762"))


def test_same_source_id_under_other_source_is_allowed(store, paper):
    other = store.add_document(Document(title="Other", source="doi", source_id="1706.03762"))
    assert store.get_document_by_source_id("doi", "1706.03762").id == other.id


def test_duplicate_explicit_id_is_rejected(store, paper):
    with pytest.raises(LibraryValidationError):
        store.add_document(Document(id=paper.id, title="Clash"))


def test_documents_without_path_do_not_collide(store):
    first = store.add_document(Document(title="One"))
    second = store.add_document(Document(title="Two"))
    assert first.id != second.id
    assert len(store.list_documents()) == 2


def test_update_keeps_created_at_and_bumps_updated_at(store, paper):
    paper.notes = "read section 3"
    paper.rating = 5
    updated = store.update_document(paper)

    assert updated.updated_at > updated.created_at
    loaded = store.get_document(paper.id)
    assert loaded.notes == "read section 3"
    assert loaded.rating == 5
    assert loaded.created_at == paper.created_at


def test_update_moves_path_lookup(store, paper):
    paper.path = "/papers/renamed.pdf"
    store.update_document(paper)

    assert store.get_document_by_path("/papers/attention.pdf") is None
    assert store.get_document_by_path("/papers/renamed.pdf").id == paper.id
    # the released path can be claimed again
    store.add_document(Document(title="Newcomer", path="/papers/attention.pdf"))


def test_update_moves_source_lookup(store, paper):
    paper.source_id = "1706.03762v5"
    store.update_document(paper)

    assert store.get_document_by_source_id("arxiv", "1706.03762") is None
    assert store.get_document_by_source_id("arxiv", "1706.03762v5").id == paper.id


def test_update_to_taken_path_is_rejected(store, paper):
    other = store.add_document(Document(title="Other", path="/papers/other.pdf"))
    other.path = "/papers/attention.pdf"
    with pytest.raises(LibraryValidationError):
        store.update_document(other)
    assert store.get_document_by_path("/papers/attention.pdf").id == paper.id


def test_update_missing_document_raises(store):
    with pytest.raises(EntityNotFoundError):
        store.update_document(Document(id="ghost", title="Ghost"))


def test_delete_document_is_idempotent(store, paper):
    store.delete_document(paper.id)
    store.delete_document(paper.id)

    assert store.get_document(paper.id) is None
    assert store.get_document_by_path("/papers/attention.pdf") is None
    assert store.get_document_by_source_id("arxiv", "1706.03762") is None
    assert store.list_documents() == []


def test_delete_document_cascades(store, paper):
    collection = store.create_collection("reading-list")
    store.add_to_collection(collection.id, paper.id)
    store.add_annotation(Annotation(document_id=paper.id, content="key idea", page=3))
    store.start_session(paper.id)
    card = store.add_flashcard(Flashcard(document_id=paper.id, front="Q", back="A"))
    store.review_flashcard(card.id, 4)
    loose = store.add_flashcard(Flashcard(front="unattached"))

    store.delete_document(paper.id)

    assert store.get_annotations(paper.id) == []
    assert store.list_sessions(paper.id) == []
    assert store.get_flashcard(card.id) is None
    assert store.list_flashcard_reviews(card.id) == []
    assert store.get_collection(collection.id).document_ids == []
    assert [c.id for c in store.list_flashcards()] == [loose.id]


# Listing

def test_list_orders_by_most_recent_update(store):
    a = store.add_document(Document(title="A"))
    b = store.add_document(Document(title="B"))
    c = store.add_document(Document(title="C"))
    store.update_document(a)

    assert [d.id for d in store.list_documents()] == [a.id, c.id, b.id]


def test_list_limit(store):
    for title in ("A", "B", "C"):
        store.add_document(Document(title=title))
    assert len(store.list_documents(ListOptions(limit=2))) == 2
    assert len(store.list_documents(ListOptions(limit=0))) == 3


def test_tag_filter_ignores_case(store, paper):
    store.add_document(Document(title="Unrelated", tags=["biology"]))

    for tag in ("nlp", "NLP", "Nlp", " ml ", " NLP "):
        assert [d.id for d in store.list_documents(ListOptions(tag=tag))] == [paper.id]
    assert store.list_documents(ListOptions(tag="chemistry")) == []


def test_source_and_type_filters(store, paper):
    book = store.add_document(Document(title="SICP", type=DocumentType.BOOK, source="local"))

    assert [d.id for d in store.list_documents(ListOptions(source="arxiv"))] == [paper.id]
    assert [d.id for d in store.list_documents(ListOptions(type="book"))] == [book.id]


def test_search_matches_title_and_abstract(store, paper):
    store.add_document(Document(title="Gardening basics", abstract="Soil and water."))

    assert [d.id for d in store.list_documents(ListOptions(search="attention"))] == [paper.id]
    assert [d.id for d in store.list_documents(ListOptions(search="recurrent"))] == [paper.id]
    assert store.list_documents(ListOptions(search="quantum")) == []


def test_filters_combine(store, paper):
    store.add_document(Document(title="Attention in biology", tags=["biology"]))
    found = store.list_documents(ListOptions(search="attention", tag="nlp"))
    assert [d.id for d in found] == [paper.id]


# Tags

def test_add_tag_is_case_insensitively_idempotent(store, paper):
    store.add_tag(paper.id, "nlp")
    store.add_tag(paper.id, "transformers")

    assert store.get_document(paper.id).tags == ["ml", "NLP", "transformers"]


def test_remove_tag_ignores_case(store, paper):
    store.remove_tag(paper.id, "nlp")
    assert store.get_document(paper.id).tags == ["ml"]


def test_tags_are_deduplicated_on_construction():
    doc = Document(title="x", tags=["ML", "ml", " ", "nlp"])
    assert doc.tags == ["ML", "nlp"]


def test_add_tag_to_missing_document_raises(store):
    with pytest.raises(EntityNotFoundError):
        store.add_tag("ghost", "ml")


def test_empty_tag_is_rejected(store, paper):
    with pytest.raises(LibraryValidationError):
        store.add_tag(paper.id, "  ")


def test_list_tags_counts(store, paper):
    store.add_document(Document(title="Other", tags=["ml"]))
    counts = store.list_tags()
    assert counts["ml"] == 2
    assert counts["NLP"] == 1


# Collections

def test_collection_membership_is_idempotent(store, paper):
    collection = store.create_collection("thesis", "sources for chapter 2")
    store.add_to_collection(collection.id, paper.id)
    store.add_to_collection(collection.id, paper.id)

    loaded = store.get_collection(collection.id)
    assert loaded.document_ids == [paper.id]
    assert loaded.description == "sources for chapter 2"


def test_collection_membership_keeps_insertion_order(store):
    collection = store.create_collection("ordered")
    docs = [store.add_document(Document(title=t)) for t in ("first", "second", "third")]
    for doc in docs:
        store.add_to_collection(collection.id, doc.id)
    store.remove_from_collection(collection.id, docs[1].id)

    assert store.get_collection(collection.id).document_ids == [docs[0].id, docs[2].id]


def test_get_collection_by_name(store):
    collection = store.create_collection("thesis")
    assert store.get_collection("thesis").id == collection.id


def test_collection_names_are_unique(store):
    store.create_collection("thesis")
    with pytest.raises(LibraryValidationError):
        store.create_collection("thesis")
    with pytest.raises(LibraryValidationError):
        store.create_collection("   ")


def test_list_collections_by_name(store):
    for name in ("zeta", "alpha", "mid"):
        store.create_collection(name)
    assert [c.name for c in store.list_collections()] == ["alpha", "mid", "zeta"]


def test_collection_references_are_checked(store, paper):
    collection = store.create_collection("thesis")
    with pytest.raises(EntityNotFoundError):
        store.add_to_collection("missing", paper.id)
    with pytest.raises(LibraryValidationError):
        store.add_to_collection(collection.id, "missing")


def test_delete_collection_keeps_documents(store, paper):
    collection = store.create_collection("thesis")
    store.add_to_collection(collection.id, paper.id)
    store.delete_collection(collection.id)
    store.delete_collection(collection.id)

    assert store.get_collection(collection.id) is None
    assert store.get_collection("thesis") is None
    assert store.get_document(paper.id) is not None
    # the name is free again
    store.create_collection("thesis")


# Annotations and reading sessions

def test_annotations_ordered_by_page(store, paper):
    late = store.add_annotation(Annotation(document_id=paper.id, content="conclusion", page=9))
    early = store.add_annotation(
        Annotation(document_id=paper.id, type=AnnotationType.HIGHLIGHT, content="intro", page=1, color="yellow")
    )

    annotations = store.get_annotations(paper.id)
    assert [a.id for a in annotations] == [early.id, late.id]
    assert annotations[0].type == AnnotationType.HIGHLIGHT
    assert annotations[0].color == "yellow"


def test_annotation_needs_existing_document(store):
    with pytest.raises(LibraryValidationError):
        store.add_annotation(Annotation(document_id="missing", content="orphan"))


def test_delete_annotation(store, paper):
    note = store.add_annotation(Annotation(document_id=paper.id, content="x"))
    store.delete_annotation(note.id)
    store.delete_annotation(note.id)
    assert store.get_annotations(paper.id) == []


def test_reading_session_lifecycle(store, paper):
    first = store.start_session(paper.id)
    assert first.start_at is not None
    assert first.end_at is None

    ended = store.end_session(first.id, pages_read=12, notes="chapter 1")
    assert ended.end_at is not None
    assert ended.pages_read == 12

    second = store.start_session(paper.id)
    sessions = store.list_sessions(paper.id)
    assert [s.id for s in sessions] == [second.id, first.id]
    assert sessions[1].notes == "chapter 1"


def test_reading_session_errors(store, paper):
    with pytest.raises(LibraryValidationError):
        store.start_session("missing")
    with pytest.raises(EntityNotFoundError):
        store.end_session("missing", pages_read=1)
    session = store.start_session(paper.id)
    with pytest.raises(LibraryValidationError):
        store.end_session(session.id, pages_read=-1)


# Flashcards

def test_new_flashcard_is_due_immediately(store, paper):
    card = store.add_flashcard(Flashcard(document_id=paper.id, front="What is attention?", back="Weighted sum"))
    assert card.interval == 0
    assert card.ease == 2.5
    assert card.due_at is not None

    due = store.get_due_flashcards(utc_now() + timedelta(seconds=1))
    assert [c.id for c in due] == [card.id]


def test_flashcard_needs_existing_document(store):
    with pytest.raises(LibraryValidationError):
        store.add_flashcard(Flashcard(document_id="missing", front="Q"))


def test_review_reschedules_and_records_history(store, paper):
    card = store.add_flashcard(Flashcard(document_id=paper.id, front="Q", back="A"))
    start = utc_now()

    first = store.review_flashcard(card.id, 5, now=start)
    assert first.interval == 1
    assert first.due_at == start + timedelta(days=1)

    second = store.review_flashcard(card.id, 5, now=start + timedelta(days=1))
    assert second.interval == 6

    third = store.review_flashcard(card.id, 2, now=start + timedelta(days=7))
    assert third.interval == 1
    assert third.ease == pytest.approx(2.18)

    loaded = store.get_flashcard(card.id)
    assert loaded.interval == 1
    assert loaded.last_review == start + timedelta(days=7)

    reviews = store.list_flashcard_reviews(card.id)
    assert [r.quality for r in reviews] == [2, 5, 5]
    assert [r.prev_interval for r in reviews] == [6, 1, 0]
    assert reviews[0].prev_ease == pytest.approx(2.5)


def test_review_rejects_bad_quality_without_writing(store, paper):
    card = store.add_flashcard(Flashcard(document_id=paper.id, front="Q"))
    for quality in (-1, 6):
        with pytest.raises(LibraryValidationError):
            store.review_flashcard(card.id, quality)

    assert store.get_flashcard(card.id).interval == 0
    assert store.list_flashcard_reviews(card.id) == []


def test_review_missing_flashcard_raises(store):
    with pytest.raises(EntityNotFoundError):
        store.review_flashcard("missing", 4)


def test_due_flashcards_exclude_future_cards(store):
    now = utc_now()
    reviewed = store.add_flashcard(Flashcard(front="reviewed"))
    store.review_flashcard(reviewed.id, 5, now=now)
    fresh = store.add_flashcard(Flashcard(front="fresh"))

    assert [c.id for c in store.get_due_flashcards(now + timedelta(hours=1))] == [fresh.id]
    assert {c.id for c in store.get_due_flashcards(now + timedelta(days=2))} == {reviewed.id, fresh.id}


def test_list_flashcards_filters(store, paper):
    other = store.add_document(Document(title="Other"))
    mine = store.add_flashcard(Flashcard(document_id=paper.id, front="mine", tags=["Vocab"]))
    theirs = store.add_flashcard(Flashcard(document_id=other.id, front="theirs"))

    assert [c.id for c in store.list_flashcards(FlashcardListOptions(document_id=paper.id))] == [mine.id]
    assert [c.id for c in store.list_flashcards(FlashcardListOptions(tag="vocab"))] == [mine.id]
    assert [c.id for c in store.list_flashcards(FlashcardListOptions(tag=" vocab "))] == [mine.id]
    assert {c.id for c in store.list_flashcards()} == {mine.id, theirs.id}
    assert len(store.list_flashcards(FlashcardListOptions(limit=1))) == 1


def test_list_flashcards_ordered_by_due_date(store):
    now = utc_now()
    later = store.add_flashcard(Flashcard(front="later", due_at=now + timedelta(days=3)))
    sooner = store.add_flashcard(Flashcard(front="sooner", due_at=now + timedelta(days=1)))

    assert [c.id for c in store.list_flashcards()] == [sooner.id, later.id]
    assert store.list_flashcards(FlashcardListOptions(due=True)) == []


def test_update_and_delete_flashcard(store, paper):
    card = store.add_flashcard(Flashcard(document_id=paper.id, front="Q"))
    card.back = "A"
    store.update_flashcard(card)
    assert store.get_flashcard(card.id).back == "A"

    store.delete_flashcard(card.id)
    store.delete_flashcard(card.id)
    assert store.get_flashcard(card.id) is None
    with pytest.raises(EntityNotFoundError):
        store.update_flashcard(card)


@pytest.mark.parametrize("field, value", [("ease", 3.0), ("ease", 1.0), ("interval", -3)])
def test_update_flashcard_revalidates(store, paper, field, value):
    card = store.add_flashcard(Flashcard(document_id=paper.id, front="Q"))
    setattr(card, field, value)
    with pytest.raises(LibraryValidationError):
        store.update_flashcard(card)

    loaded = store.get_flashcard(card.id)
    assert loaded.ease == 2.5
    assert loaded.interval == 0
    assert [c.id for c in store.list_flashcards()] == [card.id]
    store.delete_flashcard(card.id)
    assert store.get_flashcard(card.id) is None


def test_add_flashcard_revalidates(store):
    card = Flashcard(front="Q")
    card.ease = 3.0
    with pytest.raises(LibraryValidationError):
        store.add_flashcard(card)
    assert store.list_flashcards() == []


def test_update_document_revalidates(store, paper):
    paper.title = None
    with pytest.raises(LibraryValidationError):
        store.update_document(paper)
    assert store.get_document(paper.id).title == "Attention Is All You Need"


def test_naive_review_time_is_taken_as_utc(store, paper):
    card = store.add_flashcard(Flashcard(document_id=paper.id, front="Q"))
    naive = datetime.now(timezone.utc).replace(tzinfo=None)

    reviewed = store.review_flashcard(card.id, 4, now=naive)
    assert reviewed.due_at.tzinfo is not None
    assert reviewed.due_at == naive.replace(tzinfo=timezone.utc) + timedelta(days=1)

    store.add_flashcard(Flashcard(front="fresh"))
    assert [c.front for c in store.list_flashcards()] == ["fresh", "Q"]
    assert [c.front for c in store.get_due_flashcards(naive + timedelta(hours=1))] == ["fresh"]
    assert len(store.get_due_flashcards(naive + timedelta(days=2))) == 2


def test_deleting_member_document_touches_collection(store, paper):
    collection = store.create_collection("thesis")
    store.add_to_collection(collection.id, paper.id)
    before = store.get_collection(collection.id).updated_at

    store.delete_document(paper.id)

    after = store.get_collection(collection.id)
    assert after.document_ids == []
    assert after.updated_at > before


def test_store_is_a_context_manager(store):
    with store as opened:
        assert opened is store
