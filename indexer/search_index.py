"""Hybrid (lexical + vector) document index backed by Elasticsearch."""

import logging
from typing import Any, Dict, List, Optional, Sequence

from elasticsearch import ApiError, AsyncElasticsearch, NotFoundError, TransportError

from config.settings import ElasticsearchConfig
from observability.prometheus_metrics import record_indexing, record_search
from pipelines.errors import SearchIndexError
from pipelines.models import Document
from .embeddings import DEFAULT_DIMENSIONS, reciprocal_rank_fusion

logger = logging.getLogger(__name__)

LEXICAL_FIELDS = ["content", "title", "tags^2", "summary"]
HYBRID_LEXICAL_FIELDS = ["content", "title"]
RRF_K = 60


def index_mapping(dims: int) -> Dict[str, Any]:
    """Field mapping for the document index."""
    return {
        "properties": {
            "id": {"type": "keyword"},
            "url": {"type": "keyword"},
            "title": {"type": "text"},
            "content": {"type": "text", "analyzer": "english"},
            "content_type": {"type": "keyword"},
            "scraped_at": {"type": "date"},
            "tags": {"type": "text", "analyzer": "english"},
            "summary": {"type": "text", "analyzer": "english"},
            "embedding": {
                "type": "dense_vector",
                "dims": dims,
                "index": True,
                "similarity": "cosine",
            },
        }
    }


class DocumentIndex:
    """Thin async wrapper over one Elasticsearch index.

    Args:
        client: Async Elasticsearch client
        index: Index name
        dims: Width of the ``embedding`` dense vector field
        native_rrf: Fuse hybrid results with the cluster's ``rrf`` retriever;
            when False both rankings are fetched and fused here
    """

    def __init__(self, client: AsyncElasticsearch, index: str,
                 dims: int = DEFAULT_DIMENSIONS, native_rrf: bool = True):
        if not index:
            raise SearchIndexError("index name is required")
        self.client = client
        self.index = index
        self.dims = dims
        self.native_rrf = native_rrf

    @classmethod
    def from_config(cls, config: ElasticsearchConfig, dims: int = DEFAULT_DIMENSIONS) -> 'DocumentIndex':
        kwargs: Dict[str, Any] = {"request_timeout": config.request_timeout}
        if config.username:
            kwargs["basic_auth"] = (config.username, config.password)
        client = AsyncElasticsearch(config.addresses, **kwargs)
        return cls(client, config.index, dims=dims, native_rrf=config.native_rrf)

    async def close(self):
        await self.client.close()

    async def ping(self) -> bool:
        """True when the cluster answers."""
        try:
            return bool(await self.client.ping())
        except (ApiError, TransportError) as e:
            logger.debug(f"Elasticsearch ping failed: {e}")
            return False

    async def ensure_index(self) -> None:
        """Create the index with its mapping unless it already exists."""
        try:
            if await self.client.indices.exists(index=self.index):
                return
            await self.client.indices.create(index=self.index, mappings=index_mapping(self.dims))
        except (ApiError, TransportError) as e:
            raise SearchIndexError(f"failed to create index {self.index}: {e}") from e
        logger.info(f"Created index {self.index} (embedding dims={self.dims})")

    async def delete_index(self) -> None:
        try:
            await self.client.indices.delete(index=self.index, ignore_unavailable=True)
        except (ApiError, TransportError) as e:
            raise SearchIndexError(f"failed to delete index {self.index}: {e}") from e

    async def upsert(self, document: Document) -> None:
        """Insert or replace ``document`` keyed by its id."""
        try:
            await self.client.index(index=self.index, id=document.id, document=document.to_dict())
        except (ApiError, TransportError) as e:
            record_indexing(error=str(e))
            raise SearchIndexError(f"failed to index document {document.id}: {e}") from e
        record_indexing()

    async def refresh(self) -> None:
        """Make everything written so far visible to search."""
        try:
            await self.client.indices.refresh(index=self.index)
        except (ApiError, TransportError) as e:
            raise SearchIndexError(f"failed to refresh index {self.index}: {e}") from e

    @staticmethod
    def _hits(response: Any) -> List[Dict[str, Any]]:
        return list(response["hits"]["hits"])

    @staticmethod
    def _to_document(hit: Dict[str, Any]) -> Document:
        source = dict(hit.get("_source") or {})
        source.setdefault("id", hit.get("_id"))
        return Document.from_dict(source)

    async def _search(self, search_type: str, **body) -> List[Dict[str, Any]]:
        try:
            response = await self.client.search(index=self.index, **body)
        except (ApiError, TransportError) as e:
            record_search(search_type, error=str(e))
            raise SearchIndexError(f"{search_type} search failed: {e}") from e
        record_search(search_type)
        return self._hits(response)

    async def search(self, query: str, limit: int = 10) -> List[Document]:
        """Lexical search over content, title, tags (boosted) and summary."""
        hits = await self._search(
            "lexical",
            query={"multi_match": {"query": query, "fields": LEXICAL_FIELDS}},
            size=limit,
        )
        return [self._to_document(hit) for hit in hits]

    async def hybrid_search(self, query: str, embedding: Optional[Sequence[float]],
                            limit: int = 10) -> List[Document]:
        """Fuse lexical and nearest-neighbour rankings with RRF.

        Without an embedding (None or empty) this is exactly
        ``search(query, limit)``.
        """
        if not embedding:
            return await self.search(query, limit)

        lexical = {"multi_match": {"query": query, "fields": HYBRID_LEXICAL_FIELDS}}
        knn = {
            "field": "embedding",
            "query_vector": list(embedding),
            "k": limit,
            "num_candidates": limit * 2,
        }

        if self.native_rrf:
            hits = await self._search(
                "hybrid",
                retriever={"rrf": {"retrievers": [{"standard": {"query": lexical}}, {"knn": knn}]}},
                size=limit,
            )
            return [self._to_document(hit) for hit in hits]

        lexical_hits = await self._search("hybrid", query=lexical, size=limit)
        vector_hits = await self._search("hybrid", knn=knn, size=limit)

        by_id: Dict[str, Dict[str, Any]] = {}
        for hit in lexical_hits + vector_hits:
            by_id.setdefault(hit["_id"], hit)

        fused = reciprocal_rank_fusion(
            [[hit["_id"] for hit in lexical_hits], [hit["_id"] for hit in vector_hits]],
            k=RRF_K,
        )
        return [self._to_document(by_id[doc_id]) for doc_id, _ in fused[:limit]]

    async def get(self, doc_id: str) -> Optional[Document]:
        """Fetch a document by id, or None when it does not exist."""
        try:
            response = await self.client.get(index=self.index, id=doc_id)
        except NotFoundError:
            return None
        except (ApiError, TransportError) as e:
            raise SearchIndexError(f"failed to get document {doc_id}: {e}") from e

        if not response["found"]:
            return None
        return self._to_document({"_id": response["_id"], "_source": response["_source"]})
