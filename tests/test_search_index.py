"""Tests for the Elasticsearch document index."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from elastic_transport import ApiResponseMeta, HttpHeaders, NodeConfig
from elasticsearch import ApiError, NotFoundError

from indexer.search_index import DocumentIndex, LEXICAL_FIELDS, index_mapping
from pipelines.errors import SearchIndexError
from pipelines.models import Document


def doc(path, title, content, embedding=None, tags=None):
    return Document.for_url(
        f"https://example.com/{path}", title=title, content=content,
        embedding=embedding, tags=tags or [],
    )


async def seed(index, *documents):
    await index.ensure_index()
    for document in documents:
        await index.upsert(document)
    await index.refresh()


class TestMapping:
    """Index creation"""

    def test_embedding_width(self):
        """The dense vector field carries the configured width and cosine similarity"""
        mapping = index_mapping(1024)
        embedding = mapping["properties"]["embedding"]
        assert embedding == {"type": "dense_vector", "dims": 1024, "index": True, "similarity": "cosine"}
        assert mapping["properties"]["id"]["type"] == "keyword"
        assert mapping["properties"]["content"]["analyzer"] == "english"

    @pytest.mark.asyncio
    async def test_ensure_index_is_idempotent(self, index, fake_es):
        """An existing index is left alone"""
        await index.ensure_index()
        await index.ensure_index()
        assert fake_es.created == 1
        assert fake_es.mappings["docfeed-test"]["properties"]["embedding"]["dims"] == 3

    def test_index_name_required(self, fake_es):
        with pytest.raises(SearchIndexError):
            DocumentIndex(fake_es, "")


class TestUpsertAndGet:
    """Writes keyed by document id"""

    @pytest.mark.asyncio
    async def test_upsert_replaces(self, index, fake_es):
        """Writing the same URL twice leaves one document with the latest content"""
        await seed(index, doc("a", "A", "first"), doc("a", "A", "second"))

        assert len(fake_es.visible) == 1
        fetched = await index.get(doc("a", "", "").id)
        assert fetched.content == "second"

    @pytest.mark.asyncio
    async def test_get_missing(self, index):
        """Unknown ids return None"""
        await index.ensure_index()
        assert await index.get("0000000000000000") is None

    @pytest.mark.asyncio
    async def test_get_not_found_error(self):
        """A 404 from the client is reported as a missing document"""
        meta = ApiResponseMeta(
            status=404, http_version="1.1", headers=HttpHeaders(), duration=0.0,
            node=NodeConfig("http", "localhost", 9200),
        )
        client = MagicMock()
        client.get = AsyncMock(side_effect=NotFoundError("not found", meta=meta, body={}))
        index = DocumentIndex(client, "docfeed-test")

        assert await index.get("abc") is None

    @pytest.mark.asyncio
    async def test_write_visible_after_refresh(self, index):
        """Search sees writes only after a refresh"""
        await index.ensure_index()
        await index.upsert(doc("a", "Install", "Run install."))
        assert await index.search("install") == []

        await index.refresh()
        results = await index.search("install")
        assert [r.url for r in results] == ["https://example.com/a"]


class TestSearch:
    """Lexical and hybrid queries"""

    @pytest.mark.asyncio
    async def test_lexical_query_shape(self, index, fake_es):
        """Lexical search is a multi_match over content, title, boosted tags and summary"""
        await seed(index, doc("a", "Install", "Run install."))
        await index.search("install", limit=5)

        body = fake_es.searches[-1]
        assert body["query"] == {"multi_match": {"query": "install", "fields": LEXICAL_FIELDS}}
        assert body["size"] == 5
        assert "tags^2" in LEXICAL_FIELDS

    @pytest.mark.asyncio
    async def test_limit_respected(self, index):
        """No more than ``limit`` results come back"""
        await seed(index, *(doc(f"p{i}", f"Page {i}", "install guide") for i in range(5)))
        assert len(await index.search("install", limit=3)) == 3

    @pytest.mark.asyncio
    async def test_hybrid_without_embedding_is_lexical(self, index, fake_es):
        """Hybrid search with no query vector returns the lexical results"""
        await seed(index, doc("a", "Install", "Run install."), doc("b", "Config", "Edit config."))

        lexical = await index.search("install", limit=10)
        hybrid = await index.hybrid_search("install", None, limit=10)

        assert [d.id for d in hybrid] == [d.id for d in lexical]
        assert fake_es.searches[-1]["retriever"] is None

    @pytest.mark.asyncio
    async def test_hybrid_with_empty_embedding_is_lexical(self, index, fake_es):
        """An empty query vector never reaches the kNN leg"""
        await seed(index, doc("a", "Install", "Run install."))

        results = await index.hybrid_search("install", [], limit=10)

        assert [d.title for d in results] == ["Install"]
        body = fake_es.searches[-1]
        assert body["knn"] is None
        assert body["retriever"] is None

    @pytest.mark.asyncio
    async def test_native_rrf_body(self, index, fake_es):
        """Native hybrid search sends one rrf retriever with a standard and a knn leg"""
        await seed(index, doc("a", "Install", "Run install.", embedding=[1.0, 0.0, 0.0]))

        await index.hybrid_search("install", [1.0, 0.0, 0.0], limit=4)

        retrievers = fake_es.searches[-1]["retriever"]["rrf"]["retrievers"]
        assert retrievers[0] == {"standard": {"query": {"multi_match": {
            "query": "install", "fields": ["content", "title"]}}}}
        assert retrievers[1]["knn"] == {
            "field": "embedding", "query_vector": [1.0, 0.0, 0.0], "k": 4, "num_candidates": 8,
        }

    @pytest.mark.asyncio
    async def test_client_side_fusion(self, fake_es):
        """Without native rrf both rankings are fetched and fused locally"""
        index = DocumentIndex(fake_es, "docfeed-test", dims=3, native_rrf=False)
        both = doc("both", "Install", "Run install.", embedding=[1.0, 0.0, 0.0])
        lexical_only = doc("lex", "Install notes", "install install", embedding=[0.0, 1.0, 0.0])
        vector_only = doc("vec", "Other", "unrelated", embedding=[0.9, 0.1, 0.0])
        await seed(index, both, lexical_only, vector_only)

        results = await index.hybrid_search("install", [1.0, 0.0, 0.0], limit=10)

        assert len(fake_es.searches) == 2
        assert fake_es.searches[0]["query"] is not None
        assert fake_es.searches[1]["knn"] is not None
        ids = [d.id for d in results]
        assert ids[0] == both.id
        assert set(ids) == {both.id, lexical_only.id, vector_only.id}
        assert len(ids) == len(set(ids))

    @pytest.mark.asyncio
    async def test_search_failure(self):
        """Transport failures surface as index errors"""
        meta = ApiResponseMeta(
            status=500, http_version="1.1", headers=HttpHeaders(), duration=0.0,
            node=NodeConfig("http", "localhost", 9200),
        )
        client = MagicMock()
        client.search = AsyncMock(side_effect=ApiError("boom", meta=meta, body={}))
        index = DocumentIndex(client, "docfeed-test")

        with pytest.raises(SearchIndexError):
            await index.search("anything")
