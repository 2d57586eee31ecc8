from datetime import timedelta

import pytest

from readingroom.db.interfaces.sqlite import SQLiteDatabase
from readingroom.db.kv import MemoryKV
from readingroom.repositories import KVStore, MemoryStore, SQLStore
from readingroom.schemas.library import Document, utc_now


@pytest.fixture
def sql_store(tmp_path):
    database = SQLiteDatabase(tmp_path / "library.db")
    database.startup()
    store = SQLStore(database)
    yield store
    store.close()


@pytest.fixture
def shared_kv():
    return MemoryKV()


@pytest.fixture
def kv_store(shared_kv):
    store = KVStore(shared_kv, namespace="test")
    yield store
    store.close()


@pytest.fixture
def memory_store():
    store = MemoryStore()
    yield store
    store.close()


@pytest.fixture(params=["sql", "kv", "memory"])
def store(request):
    """Every storage engine behind the same contract."""
    return request.getfixturevalue(f"{request.param}_store")


@pytest.fixture(params=["kv", "memory"])
def flat_store(request):
    """Engines built on flat key-value storage."""
    return request.getfixturevalue(f"{request.param}_store")


@pytest.fixture
def paper(store):
    return store.add_document(
        Document(
            title="Attention Is All You Need",
            authors=["Ashish Vaswani", "Noam Shazeer"],
            abstract="The dominant sequence transduction models are based on recurrent networks.",
            path="/papers/attention.pdf",
            source="arxiv",
            source_id="1706.03762",
            tags=["ml", "NLP"],
        )
    )


@pytest.fixture
def later():
    return utc_now() + timedelta(days=365)
