"""Sources package for docfeed.

Provides crawl target loading and selection.
"""

from .loader import (
    SourceConfig,
    SourceLoader,
    select_targets
)

__all__ = [
    'SourceConfig',
    'SourceLoader',
    'select_targets'
]
