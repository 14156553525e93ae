"""Prometheus metrics for the docfeed ingestion pipeline."""

from prometheus_client import Counter, Histogram, Info, generate_latest
from prometheus_client.core import CollectorRegistry
from typing import Optional, Dict, Any
import logging

logger = logging.getLogger(__name__)

# Create custom registry for docfeed metrics
docfeed_registry = CollectorRegistry()

# Crawl metrics
crawl_pages = Counter(
    'docfeed_crawl_pages_total',
    'Pages seen by the crawler',
    ['outcome'],
    registry=docfeed_registry
)

crawl_duration = Histogram(
    'docfeed_crawl_duration_seconds',
    'Duration of one crawl run in seconds',
    buckets=[1.0, 5.0, 15.0, 30.0, 60.0, 300.0, 900.0],
    registry=docfeed_registry
)

# Indexing metrics
indexing_documents = Counter(
    'docfeed_indexing_documents_total',
    'Documents sent to the search index',
    ['status'],
    registry=docfeed_registry
)

ingestion_duration = Histogram(
    'docfeed_ingestion_duration_seconds',
    'Duration of one ingestion run in seconds',
    ['mode'],
    buckets=[0.5, 1.0, 5.0, 15.0, 60.0, 300.0, 900.0],
    registry=docfeed_registry
)

enrichment_failures = Counter(
    'docfeed_enrichment_failures_total',
    'Model calls that failed during enrichment',
    ['kind'],
    registry=docfeed_registry
)

enrichment_duration = Histogram(
    'docfeed_enrichment_duration_seconds',
    'Model call duration in seconds',
    ['kind'],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
    registry=docfeed_registry
)

# Search metrics
search_requests = Counter(
    'docfeed_search_requests_total',
    'Search requests',
    ['search_type', 'status'],
    registry=docfeed_registry
)

app_info = Info(
    'docfeed_app_info',
    'docfeed application information',
    registry=docfeed_registry
)


def record_crawl_page(outcome: str) -> None:
    """Count one page by outcome: ``stored``, ``skipped`` or ``failed``."""
    crawl_pages.labels(outcome=outcome).inc()


def record_crawl_run(duration: float) -> None:
    crawl_duration.observe(duration)


def record_indexing(error: Optional[str] = None) -> None:
    """Record one document indexing attempt."""
    status = "failed" if error else "indexed"
    indexing_documents.labels(status=status).inc()


def record_ingestion_run(mode: str, duration: float) -> None:
    ingestion_duration.labels(mode=mode).observe(duration)


def record_enrichment(kind: str, duration: float, error: Optional[str] = None) -> None:
    """Record a tag/summary or embedding model call."""
    enrichment_duration.labels(kind=kind).observe(duration)
    if error:
        enrichment_failures.labels(kind=kind).inc()


def record_search(search_type: str, error: Optional[str] = None) -> None:
    status = "error" if error else "success"
    search_requests.labels(search_type=search_type, status=status).inc()


def set_app_info(name: str, version: str) -> None:
    app_info.info({'name': name, 'version': version})


def _sample(name: str, labels: Dict[str, str]) -> float:
    return docfeed_registry.get_sample_value(name, labels) or 0.0


def get_metrics_summary() -> Dict[str, Any]:
    """Get a summary of current metrics."""
    return {
        "pages_stored": _sample('docfeed_crawl_pages_total', {'outcome': 'stored'}),
        "pages_skipped": _sample('docfeed_crawl_pages_total', {'outcome': 'skipped'}),
        "pages_failed": _sample('docfeed_crawl_pages_total', {'outcome': 'failed'}),
        "documents_indexed": _sample('docfeed_indexing_documents_total', {'status': 'indexed'}),
        "documents_failed": _sample('docfeed_indexing_documents_total', {'status': 'failed'}),
        "tag_failures": _sample('docfeed_enrichment_failures_total', {'kind': 'tags'}),
        "embedding_failures": _sample('docfeed_enrichment_failures_total', {'kind': 'embedding'}),
    }


def render_latest() -> bytes:
    """Prometheus text exposition of the docfeed registry."""
    return generate_latest(docfeed_registry)
