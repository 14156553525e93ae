"""HTML to Markdown conversion and document construction.

Turns a fetched or stored page body into a ``Document``: classify the body,
convert HTML with trafilatura (falling back to plain text extraction for
pages too small for trafilatura to keep), and pick a title.
"""

import logging
import re
from datetime import datetime
from typing import Optional

from bs4 import BeautifulSoup
from trafilatura import extract

from .errors import ConversionError
from .markdown import ContentKind, classify
from .models import Document, utcnow

logger = logging.getLogger(__name__)

MIN_EXTRACTED_CHARS = 40

_BLANK_LINES_RE = re.compile(r"\n{3,}")


class HTMLConverter:
    """Converts HTML content into Markdown."""

    def __init__(self, include_links: bool = True, include_tables: bool = True):
        self.include_links = include_links
        self.include_tables = include_tables

    def convert(self, html: str) -> str:
        """Convert an HTML document to Markdown.

        Raises:
            ConversionError: if neither trafilatura nor the plain-text
                fallback could process the document.
        """
        if not html or not html.strip():
            return ""

        try:
            md = extract(
                html,
                output_format="markdown",
                include_links=self.include_links,
                include_tables=self.include_tables,
            )
        except Exception as e:
            logger.debug(f"trafilatura failed, using text fallback: {e}")
            md = None

        if not md or len(md.strip()) < MIN_EXTRACTED_CHARS:
            try:
                soup = BeautifulSoup(html, "html.parser")
                for tag in soup(["script", "style", "noscript"]):
                    tag.decompose()
                md = soup.get_text("\n")
            except Exception as e:
                raise ConversionError(f"failed to convert HTML: {e}") from e

        md = "\n".join(line.rstrip() for line in md.splitlines())
        return _BLANK_LINES_RE.sub("\n\n", md).strip()

    def extract_title(self, html: str) -> str:
        """Text of the <title> element, else the first <h1>, else empty."""
        if not html:
            return ""
        soup = BeautifulSoup(html, "html.parser")
        if soup.title and soup.title.string:
            title = soup.title.string.strip()
            if title:
                return title
        h1 = soup.find("h1")
        if h1:
            return h1.get_text(" ", strip=True)
        return ""


def extract_markdown_title(content: str) -> str:
    """First level-one heading (``# Title``) in Markdown content."""
    for line in content.splitlines():
        line = line.strip()
        if line.startswith("# "):
            return line[2:].strip()
    return ""


class DocumentProcessor:
    """Builds indexable documents from raw page bodies."""

    def __init__(self, converter: Optional[HTMLConverter] = None):
        self.converter = converter or HTMLConverter()

    def process(self, url: str, content: str, content_type: str = "",
                scraped_at: Optional[datetime] = None) -> Document:
        """Classify, convert and title a page body.

        Args:
            url: Page URL; the document ID derives from it
            content: Fetched or stored body
            content_type: Content-Type the body was served with, if known
            scraped_at: Fetch time; defaults to now

        Returns:
            Document without enrichment fields

        Raises:
            ConversionError: if the HTML body could not be converted
        """
        if classify(url, content_type, content) is ContentKind.MARKDOWN:
            md_content = content
            title = extract_markdown_title(content)
        else:
            title = self.converter.extract_title(content)
            md_content = self.converter.convert(content)

        if not title:
            title = url

        return Document.for_url(
            url,
            title=title,
            content=md_content,
            content_type=content_type,
            scraped_at=scraped_at or utcnow(),
        )
