"""Shared fixtures: in-memory object store and search index, a local
aiohttp site for crawler tests, and a scripted model runner."""

import io
import math
import re
import sys
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import aiohttp
import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer
from minio.error import S3Error

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from config.settings import CrawlerConfig  # noqa: E402
from indexer.search_index import DocumentIndex  # noqa: E402
from pipelines.storage import SnapshotStore  # noqa: E402

_TOKEN_RE = re.compile(r"[a-z0-9]+")


def _tokens(text: str) -> List[str]:
    return _TOKEN_RE.findall((text or "").lower())


class FakeObjectResponse:
    def __init__(self, data: bytes):
        self._data = data
        self.closed = False

    def read(self) -> bytes:
        return self._data

    def close(self):
        self.closed = True

    def release_conn(self):
        pass


class FakeMinio:
    """In-memory stand-in for the ``minio.Minio`` calls the store makes."""

    def __init__(self):
        self.buckets: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.fail_puts_for: List[str] = []

    def bucket_exists(self, bucket_name: str) -> bool:
        return bucket_name in self.buckets

    def make_bucket(self, bucket_name: str):
        self.buckets.setdefault(bucket_name, {})

    def put_object(self, bucket_name: str, object_name: str, data, length: int, content_type: str = ""):
        if any(marker in object_name for marker in self.fail_puts_for):
            raise OSError(f"simulated write failure for {object_name}")
        payload = data.read()
        assert len(payload) == length
        self.buckets.setdefault(bucket_name, {})[object_name] = {
            "data": payload,
            "content_type": content_type,
        }

    def get_object(self, bucket_name: str, object_name: str) -> FakeObjectResponse:
        obj = self.buckets.get(bucket_name, {}).get(object_name)
        if obj is None:
            raise S3Error(
                code="NoSuchKey",
                message="The specified key does not exist.",
                resource=f"/{bucket_name}/{object_name}",
                request_id="",
                host_id="",
                response=None,
                bucket_name=bucket_name,
                object_name=object_name,
            )
        return FakeObjectResponse(obj["data"])

    def list_objects(self, bucket_name: str, prefix: str = "", recursive: bool = False):
        for name in sorted(self.buckets.get(bucket_name, {})):
            if name.startswith(prefix):
                yield SimpleNamespace(object_name=name)

    # Test helpers
    def text(self, bucket_name: str, object_name: str) -> str:
        return self.buckets[bucket_name][object_name]["data"].decode("utf-8")

    def put_text(self, bucket_name: str, object_name: str, text: str):
        data = text.encode("utf-8")
        self.put_object(bucket_name, object_name, io.BytesIO(data), len(data))


class _FakeIndices:
    def __init__(self, es: "FakeElasticsearch"):
        self.es = es

    async def exists(self, index: str) -> bool:
        return index in self.es.mappings

    async def create(self, index: str, mappings: Dict[str, Any]):
        self.es.mappings[index] = mappings
        self.es.created += 1
        return {"acknowledged": True}

    async def refresh(self, index: str):
        self.es.visible = {doc_id: dict(doc) for doc_id, doc in self.es.stored.items()}
        self.es.refreshes += 1
        return {}

    async def delete(self, index: str, ignore_unavailable: bool = False):
        self.es.mappings.pop(index, None)
        self.es.stored.clear()
        self.es.visible.clear()
        return {"acknowledged": True}


class FakeElasticsearch:
    """In-memory stand-in for the ``AsyncElasticsearch`` calls the index makes.

    Writes become searchable only after ``indices.refresh``. Lexical scoring
    counts query-term hits per field (with ``^N`` boosts); kNN ranks by
    cosine similarity; the ``rrf`` retriever fuses the two.
    """

    def __init__(self):
        self.indices = _FakeIndices(self)
        self.mappings: Dict[str, Dict[str, Any]] = {}
        self.stored: Dict[str, Dict[str, Any]] = {}
        self.visible: Dict[str, Dict[str, Any]] = {}
        self.searches: List[Dict[str, Any]] = []
        self.created = 0
        self.refreshes = 0
        self.closed = False

    async def ping(self) -> bool:
        return True

    async def close(self):
        self.closed = True

    async def index(self, index: str, id: str, document: Dict[str, Any]):
        self.stored[id] = dict(document)
        return {"_id": id, "result": "created"}

    async def get(self, index: str, id: str):
        if id not in self.visible and id not in self.stored:
            return {"_index": index, "_id": id, "found": False}
        source = self.stored.get(id) or self.visible[id]
        return {"_index": index, "_id": id, "found": True, "_source": dict(source)}

    def _lexical(self, multi_match: Dict[str, Any]) -> List[str]:
        terms = set(_tokens(multi_match["query"]))
        scored = []
        for doc_id, doc in self.visible.items():
            score = 0.0
            for field in multi_match["fields"]:
                name, _, boost = field.partition("^")
                value = doc.get(name) or ""
                if isinstance(value, list):
                    value = " ".join(value)
                hits = sum(1 for token in _tokens(value) if token in terms)
                score += hits * (float(boost) if boost else 1.0)
            if score > 0:
                scored.append((doc_id, score))
        scored.sort(key=lambda item: item[1], reverse=True)
        return [doc_id for doc_id, _ in scored]

    def _knn(self, knn: Dict[str, Any]) -> List[str]:
        query = knn["query_vector"]
        scored = []
        for doc_id, doc in self.visible.items():
            vector = doc.get(knn["field"])
            if not vector:
                continue
            dot = sum(a * b for a, b in zip(query, vector))
            norm = math.sqrt(sum(a * a for a in query)) * math.sqrt(sum(b * b for b in vector))
            scored.append((doc_id, dot / norm if norm else 0.0))
        scored.sort(key=lambda item: item[1], reverse=True)
        return [doc_id for doc_id, _ in scored[:knn["k"]]]

    def _hit(self, doc_id: str) -> Dict[str, Any]:
        return {"_id": doc_id, "_source": dict(self.visible[doc_id])}

    async def search(self, index: str, size: int = 10, query: Optional[Dict[str, Any]] = None,
                     knn: Optional[Dict[str, Any]] = None, retriever: Optional[Dict[str, Any]] = None):
        self.searches.append({"query": query, "knn": knn, "retriever": retriever, "size": size})

        if retriever is not None:
            rankings = []
            for sub in retriever["rrf"]["retrievers"]:
                if "standard" in sub:
                    rankings.append(self._lexical(sub["standard"]["query"]["multi_match"]))
                else:
                    rankings.append(self._knn(sub["knn"]))
            scores: Dict[str, float] = {}
            for ranking in rankings:
                for rank, doc_id in enumerate(ranking, start=1):
                    scores[doc_id] = scores.get(doc_id, 0.0) + 1.0 / (60 + rank)
            ids = [doc_id for doc_id, _ in sorted(scores.items(), key=lambda item: item[1], reverse=True)]
        elif knn is not None:
            ids = self._knn(knn)
        else:
            ids = self._lexical(query["multi_match"])

        return {"hits": {"hits": [self._hit(doc_id) for doc_id in ids[:size]]}}


@pytest.fixture
def fake_minio():
    return FakeMinio()


@pytest.fixture
def store(fake_minio):
    return SnapshotStore(fake_minio, "docfeed-test")


@pytest.fixture
def fake_es():
    return FakeElasticsearch()


@pytest.fixture
def index(fake_es):
    return DocumentIndex(fake_es, "docfeed-test", dims=3)


@pytest.fixture
def crawler_config():
    """Fast crawl settings for local test sites."""
    return CrawlerConfig(
        delay=0,
        max_depth=3,
        follow_links=True,
        timeout=5,
        try_markdown_first=False,
        parallelism=2,
        max_retries=0,
    )


@pytest.fixture
def site_factory():
    """Serve a dict of ``path -> (status, content_type, body)`` on localhost.

    Returns a coroutine that starts a server for the given routes, plus the
    list of started servers for ``local_site`` to close at teardown. Request
    paths are recorded on ``server.requests``; ``on_request``, if given, is
    called with each path before the response is built.
    """
    servers: List[TestServer] = []

    async def start(routes: Dict[str, tuple], on_request=None) -> TestServer:
        requests: List[str] = []

        async def handler(request: web.Request) -> web.Response:
            requests.append(request.path)
            if on_request is not None:
                on_request(request.path)
            if request.path not in routes:
                return web.Response(status=404, text="not found")
            status, content_type, body = routes[request.path]
            return web.Response(status=status, body=body.encode("utf-8"),
                                headers={"Content-Type": content_type})

        app = web.Application()
        app.router.add_route("GET", "/{tail:.*}", handler)
        server = TestServer(app)
        await server.start_server()
        server.requests = requests
        servers.append(server)
        return server

    return start, servers


@pytest_asyncio.fixture
async def local_site(site_factory):
    start, servers = site_factory
    yield start
    for server in servers:
        await server.close()


class FakeRunner:
    """Scripted OpenAI-compatible model runner.

    Responses are ``(status, body)`` pairs; ``body`` is JSON-serializable,
    a string, or raw bytes sent as-is.
    """

    def __init__(self):
        self.chat_responses: List[tuple] = []
        self.embedding_responses: List[tuple] = []
        self.requests: List[tuple] = []

    async def chat(self, request: web.Request) -> web.Response:
        payload = await request.json()
        self.requests.append(("chat", payload))
        return self._respond(self.chat_responses.pop(0))

    async def embeddings(self, request: web.Request) -> web.Response:
        payload = await request.json()
        self.requests.append(("embeddings", payload))
        return self._respond(self.embedding_responses.pop(0))

    @staticmethod
    def _respond(response) -> web.Response:
        status, body = response
        if isinstance(body, bytes):
            return web.Response(status=status, body=body, content_type="application/json")
        if isinstance(body, str):
            return web.Response(status=status, text=body)
        return web.json_response(body, status=status)


@pytest_asyncio.fixture
async def runner():
    """A ``FakeRunner`` served over TCP, with ``base_url`` and a client ``session``."""
    fake = FakeRunner()
    app = web.Application()
    app.router.add_post("/v1/chat/completions", fake.chat)
    app.router.add_post("/v1/embeddings", fake.embeddings)
    server = TestServer(app)
    await server.start_server()
    session = aiohttp.ClientSession()
    fake.base_url = str(server.make_url("/v1"))
    fake.session = session
    yield fake
    await session.close()
    await server.close()
