"""Data model shared by the crawl, storage, enrichment and indexing stages."""

import hashlib
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

DOCUMENT_ID_LENGTH = 16


def generate_document_id(url: str) -> str:
    """Create a deterministic ID from a URL.

    The ID is the first 16 hex characters of the SHA-256 digest of the URL,
    so re-crawling the same URL always overwrites the same index entry.
    """
    return hashlib.sha256(url.encode("utf-8")).hexdigest()[:DOCUMENT_ID_LENGTH]


def page_filename(url: str) -> str:
    """Stored filename for a page: content-addressed by URL hash."""
    return f"{generate_document_id(url)}.md"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RawPage:
    """A page as fetched by the crawler, before classification or conversion."""
    url: str
    content: str
    content_type: str = ""
    status_code: int = 200
    scraped_at: datetime = field(default_factory=utcnow)


@dataclass
class Document:
    """The unit of retrieval committed to the search index."""
    id: str
    url: str
    title: str
    content: str
    content_type: str = ""
    scraped_at: datetime = field(default_factory=utcnow)
    tags: List[str] = field(default_factory=list)
    summary: str = ""
    embedding: Optional[List[float]] = None

    @classmethod
    def for_url(cls, url: str, **kwargs) -> "Document":
        return cls(id=generate_document_id(url), url=url, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for the search index, omitting empty optional fields."""
        data = {
            "id": self.id,
            "url": self.url,
            "title": self.title,
            "content": self.content,
            "content_type": self.content_type,
            "scraped_at": self.scraped_at.isoformat(),
        }
        if self.tags:
            data["tags"] = list(self.tags)
        if self.summary:
            data["summary"] = self.summary
        if self.embedding:
            data["embedding"] = list(self.embedding)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Document":
        scraped_at = data.get("scraped_at")
        if isinstance(scraped_at, str):
            scraped_at = datetime.fromisoformat(scraped_at.replace("Z", "+00:00"))
        elif scraped_at is None:
            scraped_at = utcnow()
        return cls(
            id=data.get("id") or generate_document_id(data["url"]),
            url=data["url"],
            title=data.get("title", ""),
            content=data.get("content", ""),
            content_type=data.get("content_type", ""),
            scraped_at=scraped_at,
            tags=list(data.get("tags") or []),
            summary=data.get("summary", ""),
            embedding=data.get("embedding"),
        )


@dataclass
class ScrapeManifest:
    """One per crawl run; written last, after every page of the run."""
    source_url: str
    timestamp: str
    page_count: int
    pages: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScrapeManifest":
        pages = list(data.get("pages") or [])
        return cls(
            source_url=data.get("source_url", ""),
            timestamp=data.get("timestamp", ""),
            page_count=int(data.get("page_count", len(pages))),
            pages=pages,
        )

    def filename_to_url(self) -> Dict[str, str]:
        """Map stored page filenames back to the URLs they were crawled from."""
        return {page_filename(url): url for url in self.pages}


@dataclass
class ScrapeResult:
    """Outcome of crawling one start URL into the snapshot store."""
    prefix: str
    page_count: int
    source_url: str
    cancelled: bool = False


@dataclass
class ScrapeCompleteEvent:
    """Sent once per crawl run when its checkpoint is complete."""
    bucket: str
    prefix: str
    source_url: str
    page_count: int
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class IngestionResult:
    """Aggregate outcome of ingesting one stored prefix."""
    prefix: str = ""
    docs_indexed: int = 0
    duration: timedelta = field(default_factory=timedelta)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    cancelled: bool = False


@dataclass
class PipelineResult:
    """Aggregate outcome of a direct crawl-and-index run."""
    pages_scraped: int = 0
    docs_indexed: int = 0
    duration: timedelta = field(default_factory=timedelta)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    cancelled: bool = False


@dataclass
class IngestionCompleteEvent:
    """Reported once per ingested prefix by the event-driven flow."""
    prefix: str
    docs_indexed: int
    duration: timedelta
    errors: List[str] = field(default_factory=list)
