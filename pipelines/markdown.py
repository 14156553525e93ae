"""Content classification: is a fetched body already Markdown, or HTML?

All functions here are pure and total; they never raise on odd input.
"""

import re
from enum import Enum
from typing import List, Optional
from urllib.parse import urlparse, urlunparse

MARKDOWN_CONTENT_TYPES = ("text/markdown", "text/x-markdown")
MARKDOWN_SUFFIXES = (".md", ".markdown")
HTML_PREFIXES = ("<!doctype", "<html", "<head", "<body")

# One to six '#' then whitespace then text, at the start of any line.
# "#5" or "#hashtag" is not a heading.
_HEADING_RE = re.compile(r"^#{1,6}[ \t]+\S", re.MULTILINE)
_BULLET_RE = re.compile(r"^[-*+][ \t]+\S", re.MULTILINE)
_LINK_RE = re.compile(r"\[.+?\]\(.+?\)")


class ContentKind(str, Enum):
    MARKDOWN = "markdown"
    HTML = "html"


def is_markdown_content_type(content_type: Optional[str]) -> bool:
    """Check if a Content-Type header declares Markdown."""
    ct = (content_type or "").strip().lower()
    return ct.startswith(MARKDOWN_CONTENT_TYPES)


def is_markdown_url(url: Optional[str]) -> bool:
    """Check if the URL path names a Markdown file."""
    lower = (url or "").lower()
    return lower.endswith(MARKDOWN_SUFFIXES)


def looks_like_html(content: str) -> bool:
    lower = content.lstrip().lower()
    return lower.startswith(HTML_PREFIXES)


def has_markdown_patterns(content: str) -> bool:
    return bool(
        _HEADING_RE.search(content)
        or _BULLET_RE.search(content)
        or _LINK_RE.search(content)
    )


def is_markdown_content(content: Optional[str]) -> bool:
    """Heuristic check on the body itself.

    A body that starts like an HTML document is never Markdown, whatever
    else it contains.
    """
    if not content:
        return False
    trimmed = content.strip()
    if looks_like_html(trimmed):
        return False
    return has_markdown_patterns(trimmed)


def classify(url: Optional[str], content_type: Optional[str], content: Optional[str]) -> ContentKind:
    """Decide how to treat a fetched body.

    Checks in order, first match wins: declared media type, URL suffix,
    body heuristics.
    """
    if is_markdown_content_type(content_type):
        return ContentKind.MARKDOWN
    if is_markdown_url(url):
        return ContentKind.MARKDOWN
    if is_markdown_content(content):
        return ContentKind.MARKDOWN
    return ContentKind.HTML


def detect(url: Optional[str], content_type: Optional[str], content: Optional[str]) -> bool:
    """Shorthand for ``classify(...) is ContentKind.MARKDOWN``."""
    return classify(url, content_type, content) is ContentKind.MARKDOWN


def markdown_url_variants(url: str) -> List[str]:
    """Candidate URLs where the Markdown source of a page may live.

    - GitHub blob URL: exactly the raw.githubusercontent.com URL, nothing else.
    - Already a Markdown URL: no candidates.
    - Anything else: the path without its trailing slash plus ``.md``, or
      ``/index.md`` for a site root. Query and fragment are dropped.
    """
    if "github.com" in url and "/blob/" in url:
        raw = url.replace("github.com", "raw.githubusercontent.com", 1)
        raw = raw.replace("/blob/", "/", 1)
        return [raw]

    if is_markdown_url(url):
        return []

    parsed = urlparse(url)
    path = parsed.path.rstrip("/")
    path = f"{path}.md" if path else "/index.md"
    return [urlunparse(parsed._replace(path=path, params="", query="", fragment=""))]
