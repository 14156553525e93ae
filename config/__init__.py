"""Configuration module for docfeed.

Provides the settings model and its YAML/environment loader.
"""

from .settings import (
    Settings,
    ElasticsearchConfig,
    EmbeddingsConfig,
    LLMConfig,
    CrawlerConfig,
    StorageConfig,
    MCPConfig,
    Source,
    load_settings
)

__all__ = [
    'Settings',
    'ElasticsearchConfig',
    'EmbeddingsConfig',
    'LLMConfig',
    'CrawlerConfig',
    'StorageConfig',
    'MCPConfig',
    'Source',
    'load_settings'
]
