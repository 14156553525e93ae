#!/usr/bin/env python3

import asyncio
import json
import logging
import signal
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

from config.settings import Settings, load_settings
from indexer.embeddings import EmbeddingClient, embedding_dimensions
from indexer.llm import LLMClient
from indexer.search_index import DocumentIndex
from observability.logging import setup_logging
from observability.prometheus_metrics import get_metrics_summary, render_latest, set_app_info
from pipelines.cancellation import CancellationToken
from pipelines.coordinator import CoordinatorResult, EventDrivenCoordinator
from pipelines.crawler import WebCrawler
from pipelines.enrichment import Enricher
from pipelines.errors import ConfigurationError, DocfeedError, ModelError
from pipelines.ingestion import IngestionEngine
from pipelines.models import Document, IngestionResult, PipelineResult
from pipelines.pipeline import Pipeline
from pipelines.storage import SnapshotStore
from server.mcp_server import MCPServer
from sources.loader import SourceLoader, select_targets

logger = logging.getLogger(__name__)

console = Console()
err_console = Console(stderr=True)
app = typer.Typer(help="docfeed - crawl documentation sites into a hybrid search index")


def _install_signal_handlers(cancel: CancellationToken) -> None:
    loop = asyncio.get_event_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, cancel.cancel, f"received {sig.name}")
        except NotImplementedError:
            logger.debug(f"Signal handlers not supported for {sig.name}")


def _build_index(settings: Settings) -> DocumentIndex:
    return DocumentIndex.from_config(settings.elasticsearch, dims=embedding_dimensions(settings.embeddings.model))


def _build_enricher(settings: Settings) -> Optional[Enricher]:
    llm = LLMClient(settings.llm) if settings.llm.enabled else None
    embedder = EmbeddingClient(settings.embeddings) if settings.embeddings.enabled else None
    if llm is None and embedder is None:
        return None
    if llm:
        logger.info(f"LLM enrichment enabled (model={settings.llm.model})")
    if embedder:
        logger.info(f"Embeddings enabled (model={settings.embeddings.model})")
    return Enricher(llm=llm, embedder=embedder)


def _print_warnings(warnings: List[str]) -> None:
    for warning in warnings:
        console.print(f"  ⚠️  {warning}", style="yellow")


def _print_totals(title: str, rows: List[tuple], cancelled: bool) -> None:
    table = Table(title=title)
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    for name, value in rows:
        table.add_row(name, str(value))
    console.print(table)
    if cancelled:
        console.print("⏹  Stopped early: run was cancelled", style="bold yellow")


def _write_metrics(path: Optional[Path]) -> None:
    if path:
        path.write_bytes(render_latest())
        logger.debug(f"Wrote metrics to {path}")


async def _run_event_driven(settings: Settings, urls: List[str], ingest: bool) -> CoordinatorResult:
    cancel = CancellationToken()
    _install_signal_handlers(cancel)

    store = SnapshotStore.from_config(settings.storage)
    index = _build_index(settings) if ingest else None
    enricher = _build_enricher(settings) if ingest else None
    engine = IngestionEngine(store, index, enricher=enricher) if ingest else None

    async with WebCrawler(settings.crawler) as crawler:
        coordinator = EventDrivenCoordinator(crawler, store, engine)
        try:
            return await coordinator.run(urls, cancel, ingest=ingest)
        finally:
            if enricher:
                await enricher.close()
            if index:
                await index.close()


async def _run_direct(settings: Settings, urls: List[str]) -> List[PipelineResult]:
    cancel = CancellationToken()
    _install_signal_handlers(cancel)

    index = _build_index(settings)
    enricher = _build_enricher(settings)
    results: List[PipelineResult] = []

    async with WebCrawler(settings.crawler) as crawler:
        pipeline = Pipeline(crawler, index, enricher=enricher)
        try:
            for url in urls:
                if cancel.cancelled:
                    break
                console.print(f"Scraping: {url}")
                try:
                    result = await pipeline.run(url, cancel)
                except DocfeedError as e:
                    console.print(f"  ❌ {e}", style="bold red")
                    continue
                console.print(f"  Pages: {result.pages_scraped}, Docs indexed: {result.docs_indexed}, "
                              f"Duration: {result.duration.total_seconds():.2f}s")
                _print_warnings(result.errors + result.warnings)
                results.append(result)
        finally:
            if enricher:
                await enricher.close()
            await index.close()
    return results


async def _run_ingest(settings: Settings, prefix: str) -> IngestionResult:
    cancel = CancellationToken()
    _install_signal_handlers(cancel)

    store = SnapshotStore.from_config(settings.storage)
    index = _build_index(settings)
    enricher = _build_enricher(settings)
    try:
        return await IngestionEngine(store, index, enricher=enricher).ingest(prefix, cancel)
    finally:
        if enricher:
            await enricher.close()
        await index.close()


async def _run_search(settings: Settings, query: str, limit: int, hybrid: bool) -> List[Document]:
    index = _build_index(settings)
    embedder = EmbeddingClient(settings.embeddings) if hybrid and settings.embeddings.enabled else None
    try:
        if embedder is None:
            return await index.search(query, limit)
        try:
            embedding = await embedder.embed(query)
        except ModelError as e:
            logger.warning(f"Failed to embed query, falling back to lexical search: {e}")
            embedding = None
        return await index.hybrid_search(query, embedding, limit)
    finally:
        if embedder:
            await embedder.close()
        await index.close()


async def _run_server(settings: Settings) -> None:
    index = _build_index(settings)
    try:
        await MCPServer(index, settings.mcp).serve_stdio()
    finally:
        await index.close()


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML config file (defaults to $DOCFEED_CONFIG)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit logs as JSON lines"),
):
    """Load configuration and set up logging for every command"""
    setup_logging("DEBUG" if verbose else "INFO", use_json=json_logs)
    try:
        settings = load_settings(config)
    except ConfigurationError as e:
        console.print(f"❌ {e}", style="bold red")
        raise typer.Exit(1)
    set_app_info(settings.mcp.name, settings.mcp.version)
    ctx.obj = settings


@app.command()
def scrape(
    ctx: typer.Context,
    url: Optional[str] = typer.Option(None, "--url", help="URL to scrape directly"),
    source: Optional[str] = typer.Option(None, "--source", help="Source name from config to scrape"),
    no_ingest: bool = typer.Option(False, "--no-ingest", help="Scrape to the object store only, skip ingestion"),
    sources_dir: Optional[Path] = typer.Option(None, "--sources-dir", help="Directory of per-source YAML files"),
    metrics_file: Optional[Path] = typer.Option(None, "--metrics-file", help="Write Prometheus metrics here on exit"),
):
    """Scrape configured sources or a single URL, then index them"""
    settings: Settings = ctx.obj
    try:
        loader = SourceLoader(sources_dir) if sources_dir else None
        urls = select_targets(settings, url=url, source=source, loader=loader)
        settings.validate_for_run(need_index=not no_ingest)
        if no_ingest and not settings.storage.enabled:
            raise ConfigurationError("--no-ingest requires storage.endpoint to be configured")
    except ConfigurationError as e:
        console.print(f"❌ {e}", style="bold red")
        raise typer.Exit(1)

    try:
        if settings.storage.enabled:
            result = asyncio.run(_run_event_driven(settings, urls, ingest=not no_ingest))
            for scrape_result in result.scrapes:
                console.print(f"Scraped: {scrape_result.source_url}")
                console.print(f"  Pages: {scrape_result.page_count}, Prefix: {scrape_result.prefix}")
            for ingestion in result.ingestions:
                console.print(f"Ingested: {ingestion.prefix}")
                console.print(f"  Docs indexed: {ingestion.docs_indexed}, "
                              f"Duration: {ingestion.duration.total_seconds():.2f}s")
            _print_warnings(result.warnings)
            rows = [("Pages scraped", result.total_pages)]
            if not no_ingest:
                rows.append(("Docs indexed", result.docs_indexed))
            rows.append(("Duration", f"{result.duration.total_seconds():.2f}s"))
            _print_totals("📊 Scrape totals", rows, result.cancelled)
            if no_ingest and result.prefixes:
                console.print("Run 'docfeed ingest --prefix <prefix>' to index these documents")
        else:
            results = asyncio.run(_run_direct(settings, urls))
            _print_totals("📊 Scrape totals", [
                ("Pages scraped", sum(r.pages_scraped for r in results)),
                ("Docs indexed", sum(r.docs_indexed for r in results)),
                ("Duration", f"{sum(r.duration.total_seconds() for r in results):.2f}s"),
            ], any(r.cancelled for r in results))
    except DocfeedError as e:
        console.print(f"❌ Scrape failed: {e}", style="bold red")
        raise typer.Exit(1)
    finally:
        logger.debug(f"Metrics: {get_metrics_summary()}")
        _write_metrics(metrics_file)


@app.command()
def ingest(
    ctx: typer.Context,
    prefix: str = typer.Option(..., "--prefix", help="Stored crawl prefix, e.g. scrapes/go.dev/2024-12-04T17-30-00-abc123"),
):
    """Index a previously scraped prefix without re-crawling"""
    settings: Settings = ctx.obj
    try:
        settings.validate_for_run()
        if not settings.storage.enabled:
            raise ConfigurationError("ingest requires storage.endpoint to be configured")
    except ConfigurationError as e:
        console.print(f"❌ {e}", style="bold red")
        raise typer.Exit(1)

    try:
        with console.status(f"[bold blue]Ingesting {prefix}..."):
            result = asyncio.run(_run_ingest(settings, prefix))
    except DocfeedError as e:
        console.print(f"❌ Ingestion failed: {e}", style="bold red")
        raise typer.Exit(1)

    _print_warnings(result.errors + result.warnings)
    _print_totals(f"📊 Ingestion of {prefix}", [
        ("Docs indexed", result.docs_indexed),
        ("Errors", len(result.errors)),
        ("Duration", f"{result.duration.total_seconds():.2f}s"),
    ], result.cancelled)


@app.command()
def search(
    ctx: typer.Context,
    query: str = typer.Argument(..., help="Search query"),
    limit: int = typer.Option(10, "--limit", "-n", help="Number of results"),
    hybrid: bool = typer.Option(False, "--hybrid", help="Fuse lexical and vector rankings (needs embeddings)"),
    as_json: bool = typer.Option(False, "--json", help="Print results as JSON"),
):
    """Query the document index"""
    settings: Settings = ctx.obj
    try:
        settings.validate_for_run()
    except ConfigurationError as e:
        console.print(f"❌ {e}", style="bold red")
        raise typer.Exit(1)

    try:
        with console.status(f"[bold blue]Searching for: {query}"):
            docs = asyncio.run(_run_search(settings, query, limit, hybrid))
    except DocfeedError as e:
        console.print(f"❌ Search failed: {e}", style="bold red")
        raise typer.Exit(1)

    if as_json:
        payload = []
        for doc in docs:
            data = doc.to_dict()
            data.pop("embedding", None)
            payload.append(data)
        console.print_json(json.dumps(payload))
        return

    console.print(f"\n🔍 Query: [bold]{query}[/bold]")
    console.print(f"📊 Found {len(docs)} results\n")

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("#", style="dim", width=3)
    table.add_column("ID", style="dim")
    table.add_column("Title", style="bold")
    table.add_column("URL")

    for i, doc in enumerate(docs, 1):
        title = doc.title[:60] + "..." if len(doc.title) > 60 else doc.title
        table.add_row(str(i), doc.id, title, doc.url)

    console.print(table)
    if docs and docs[0].summary:
        console.print(Panel.fit(docs[0].summary, title="Top result summary"))


@app.command()
def serve(ctx: typer.Context):
    """Run the MCP server over stdio"""
    settings: Settings = ctx.obj
    try:
        settings.validate_for_run()
    except ConfigurationError as e:
        err_console.print(f"❌ {e}", style="bold red")
        raise typer.Exit(1)

    asyncio.run(_run_server(settings))


if __name__ == "__main__":
    app()
