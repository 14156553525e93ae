"""Exception hierarchy for docfeed.

Per-page and per-document failures are absorbed by the pipelines and
reported in result error lists; the exceptions below are what escapes a run.
"""

from typing import Any, Optional


class DocfeedError(Exception):
    """Base class for all docfeed errors."""


class ConfigurationError(DocfeedError):
    """Missing or invalid configuration, raised before any work starts."""


class CrawlError(DocfeedError):
    """The crawl could not begin or produced nothing at all."""


class StorageError(DocfeedError):
    """Object store read/write/list failure."""


class SearchIndexError(DocfeedError):
    """The search index is unreachable or rejected a request."""


class ModelError(DocfeedError):
    """A model endpoint call failed."""


class ConversionError(DocfeedError):
    """HTML to Markdown conversion failed."""


class RunCancelled(DocfeedError):
    """The run was stopped by an external cancellation signal.

    Kept apart from the failures above so callers can tell "stopped early"
    from "failed". ``partial`` carries whatever was completed before the stop.
    """

    def __init__(self, message: str = "run cancelled", partial: Optional[Any] = None):
        super().__init__(message)
        self.partial = partial
