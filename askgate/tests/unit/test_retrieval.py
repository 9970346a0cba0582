from types import SimpleNamespace

import pytest
from sqlalchemy.exc import NoSuchModuleError, OperationalError

from askgate.config import ProviderConfig
from askgate.directory import TenantCredentials
from askgate.errors import NotFoundError, UpstreamError
from askgate.retrieval import DocumentRetriever
from askgate.store import DocumentStoreFactory

from conftest import FakeDocumentStore, FakeEmbedder, FakeStoreFactory


def _retriever(directory, store, **kwargs):
    config = ProviderConfig("k", "k", "k", datastore_default_url=kwargs.pop("default_url", ""))
    embedder = kwargs.pop("embedder", None) or FakeEmbedder()
    return DocumentRetriever(directory, FakeStoreFactory(store), embedder, config, **kwargs)


async def test_vector_hits_are_returned(directory, registered, product_store):
    retriever = _retriever(directory, product_store)
    rows = await retriever.retrieve("t1", "P1", "how big is it?")

    assert [r["id"] for r in rows] == [1]
    assert rows[0]["similarity"] == 0.9
    assert product_store.calls == ["similarity_search"]


async def test_falls_back_to_exact_match_when_no_embedded_rows(directory, registered):
    store = FakeDocumentStore([{"id": 7, "product_code": "P9", "name": "Lamp", "embedding": None}])
    retriever = _retriever(directory, store)
    rows = await retriever.retrieve("t1", "P9", "is it dimmable?")

    assert rows == [{"id": 7, "product_code": "P9", "name": "Lamp"}]
    assert store.calls == ["similarity_search", "find_by_product_code"]


async def test_empty_when_nothing_matches(directory, registered, product_store):
    rows = await _retriever(directory, product_store).retrieve("t1", "NOPE", "anything?")
    assert rows == []


async def test_precomputed_embedding_is_reused(directory, registered, product_store):
    retriever = _retriever(directory, product_store)
    rows, vector = await retriever.search("t1", "P1", "q", embedding=[0.5, 0.5, 0.5])

    assert vector == [0.5, 0.5, 0.5]
    assert retriever.embedder.queries == []
    assert len(rows) == 1


async def test_unknown_tenant_without_default_store(directory, product_store):
    with pytest.raises(NotFoundError):
        await _retriever(directory, product_store).retrieve("ghost", "P1", "q")


async def test_unknown_tenant_uses_default_store_only_when_enabled(directory, product_store):
    retriever = _retriever(directory, product_store, default_url="postgresql://default/db", allow_default_store=True)
    rows = await retriever.retrieve("ghost", "P1", "q")
    assert len(rows) == 1

    disabled = _retriever(directory, product_store, default_url="postgresql://default/db")
    with pytest.raises(NotFoundError):
        await disabled.retrieve("ghost", "P1", "q")


async def test_datastore_query_failure_is_upstream_error(directory, registered):
    store = FakeDocumentStore(error=OperationalError("SELECT 1", {}, Exception("connection refused")))
    with pytest.raises(UpstreamError) as info:
        await _retriever(directory, store).retrieve("t1", "P1", "q")

    assert info.value.message.startswith("Datastore query failed")
    assert info.value.context == {"customer_id": "t1", "product_code": "P1"}


async def test_unbuildable_datastore_url_is_upstream_error():
    directory = SimpleNamespace(
        resolve_tenant=lambda customer_id: TenantCredentials(customer_id, "https://abc.supabase.co", "k")
    )
    stores = DocumentStoreFactory()
    retriever = DocumentRetriever(directory, stores, FakeEmbedder(), ProviderConfig("k", "k", "k"))
    try:
        with pytest.raises(UpstreamError) as info:
            await retriever.retrieve("sb", "P1", "q")
    finally:
        stores.dispose()

    assert info.value.context["customer_id"] == "sb"
    assert isinstance(info.value.__cause__, NoSuchModuleError)


async def test_embedding_failure_stops_before_search(directory, registered, product_store):
    embedder = FakeEmbedder(error=UpstreamError("Embedding request failed: timeout"))
    with pytest.raises(UpstreamError, match="Embedding request failed"):
        await _retriever(directory, product_store, embedder=embedder).retrieve("t1", "P1", "q")
    assert product_store.calls == []


async def test_both_concurrent_branches_failing_raise_a_single_error(directory, product_store):
    embedder = FakeEmbedder(error=UpstreamError("Embedding request failed: timeout"))
    with pytest.raises((NotFoundError, UpstreamError)):
        await _retriever(directory, product_store, embedder=embedder).retrieve("ghost", "P1", "q")
    assert product_store.calls == []
