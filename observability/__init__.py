"""Observability package for docfeed."""

from .logging import setup_logging
from .prometheus_metrics import (
    record_crawl_page,
    record_crawl_run,
    record_indexing,
    record_ingestion_run,
    record_enrichment,
    record_search,
    set_app_info,
    get_metrics_summary,
    render_latest,
    docfeed_registry
)

__all__ = [
    'setup_logging',
    'record_crawl_page',
    'record_crawl_run',
    'record_indexing',
    'record_ingestion_run',
    'record_enrichment',
    'record_search',
    'set_app_info',
    'get_metrics_summary',
    'render_latest',
    'docfeed_registry'
]
