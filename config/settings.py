"""Settings for docfeed.

One explicit ``Settings`` value is built at startup (defaults, then an
optional YAML file, then ``DOCFEED_*`` environment overrides) and handed to
each component's constructor. Nothing reads configuration from module state.
"""

import os
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError

from pipelines.errors import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "DOCFEED_"


class ElasticsearchConfig(BaseModel):
    """Search index connection."""
    addresses: List[str] = Field(default_factory=lambda: ["http://localhost:9200"], description="Cluster URLs")
    index: str = Field(default="docfeed-documents", description="Index name")
    username: str = Field(default="", description="Basic auth user")
    password: str = Field(default="", description="Basic auth password")
    native_rrf: bool = Field(default=True, description="Use the cluster's RRF retriever for hybrid search")
    request_timeout: float = Field(default=30.0, description="Request timeout in seconds")


class EmbeddingsConfig(BaseModel):
    """Embedding model endpoint (HTTP over a Unix socket)."""
    enabled: bool = False
    socket_path: str = ""
    model: str = "ai/embeddinggemma"
    base_url: str = "http://localhost/exp/vDD4.40/engines/llama.cpp/v1"
    max_input_chars: int = Field(default=20000, gt=0)
    timeout: float = 120.0


class LLMConfig(BaseModel):
    """Text generation endpoint used for tags and summaries."""
    enabled: bool = False
    socket_path: str = ""
    model: str = "ai/gemma3"
    base_url: str = "http://localhost/exp/vDD4.40/engines/llama.cpp/v1"
    max_content_chars: int = Field(default=20000, gt=0)
    max_tokens: int = Field(default=0, ge=0, description="0 means no limit")
    timeout: float = 300.0


class CrawlerConfig(BaseModel):
    """Crawl behaviour."""
    delay: float = Field(default=1.0, ge=0, description="Per-domain delay between requests in seconds")
    max_depth: int = Field(default=3, ge=0, description="Link-following depth (hops from the start URL)")
    follow_links: bool = True
    timeout: float = Field(default=30.0, gt=0)
    user_agent: str = "docfeed/1.0"
    try_markdown_first: bool = True
    parallelism: int = Field(default=2, ge=1, le=16)
    max_retries: int = Field(default=2, ge=0)


class StorageConfig(BaseModel):
    """S3-compatible object store used as the crawl checkpoint."""
    endpoint: str = "localhost:9002"
    bucket: str = "docfeed"
    access_key_id: str = "minioadmin"
    secret_access_key: str = "minioadmin"
    use_ssl: bool = False

    @property
    def enabled(self) -> bool:
        return bool(self.endpoint)


class MCPConfig(BaseModel):
    name: str = "docfeed"
    version: str = "1.0.0"


class Source(BaseModel):
    """A named documentation site to crawl."""
    name: str
    url: str
    enabled: bool = True


class Settings(BaseModel):
    """Complete application configuration."""
    elasticsearch: ElasticsearchConfig = Field(default_factory=ElasticsearchConfig)
    embeddings: EmbeddingsConfig = Field(default_factory=EmbeddingsConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    crawler: CrawlerConfig = Field(default_factory=CrawlerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    mcp: MCPConfig = Field(default_factory=MCPConfig)
    sources: List[Source] = Field(default_factory=list)

    @classmethod
    def from_env(cls, base: Optional[Dict[str, Any]] = None) -> 'Settings':
        """Create settings from a base mapping plus environment overrides.

        Variables are named ``DOCFEED_<SECTION>_<FIELD>``, e.g.
        ``DOCFEED_ELASTICSEARCH_INDEX`` or ``DOCFEED_LLM_ENABLED``.
        ``DOCFEED_ELASTICSEARCH_ADDRESSES`` is comma separated.
        """
        data: Dict[str, Any] = {k: dict(v) if isinstance(v, dict) else v for k, v in (base or {}).items()}

        for section, model in (
            ("elasticsearch", ElasticsearchConfig),
            ("embeddings", EmbeddingsConfig),
            ("llm", LLMConfig),
            ("crawler", CrawlerConfig),
            ("storage", StorageConfig),
            ("mcp", MCPConfig),
        ):
            for field_name in model.model_fields:
                value = os.getenv(f"{ENV_PREFIX}{section.upper()}_{field_name.upper()}")
                if value is None:
                    continue
                if field_name == "addresses":
                    value = [a.strip() for a in value.split(",") if a.strip()]
                data.setdefault(section, {})[field_name] = value

        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"invalid configuration: {e}") from e

    def validate_for_run(self, need_index: bool = True) -> None:
        """Check connection parameters before any work starts.

        Raises:
            ConfigurationError: on the first missing required parameter
        """
        if need_index and not self.elasticsearch.addresses:
            raise ConfigurationError("elasticsearch.addresses is required")
        if need_index and not self.elasticsearch.index:
            raise ConfigurationError("elasticsearch.index is required")
        if self.embeddings.enabled:
            if not self.embeddings.socket_path:
                raise ConfigurationError("embeddings.socket_path is required when embeddings are enabled")
            if not self.embeddings.model:
                raise ConfigurationError("embeddings.model is required when embeddings are enabled")
        if self.llm.enabled:
            if not self.llm.socket_path:
                raise ConfigurationError("llm.socket_path is required when LLM enrichment is enabled")
            if not self.llm.model:
                raise ConfigurationError("llm.model is required when LLM enrichment is enabled")
        if self.storage.enabled and not self.storage.bucket:
            raise ConfigurationError("storage.bucket is required when storage.endpoint is set")


def load_settings(path: Optional[Union[str, Path]] = None) -> Settings:
    """Load settings from an optional YAML file plus environment overrides.

    Args:
        path: YAML config file. ``DOCFEED_CONFIG`` is used when omitted;
            with neither, only defaults and environment apply.

    Raises:
        ConfigurationError: if the file is unreadable or invalid
    """
    path = path or os.getenv(f"{ENV_PREFIX}CONFIG")
    data: Dict[str, Any] = {}

    if path:
        config_path = Path(path)
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"failed to read config {config_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"config {config_path} must be a mapping")
        logger.debug(f"Loaded configuration from {config_path}")

    return Settings.from_env(data)
