"""Crawl target loader for docfeed.

Targets come from three places, in priority order: an explicit URL, the
``sources`` list of the main settings, and per-source YAML files in a
sources directory (one ``<name>.yaml`` per site).
"""

import yaml
from pathlib import Path
from typing import Dict, List, Any, Optional
from dataclasses import dataclass
from urllib.parse import urlparse
import logging

from config.settings import Settings
from pipelines.errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass
class SourceConfig:
    """A documentation site to crawl."""
    name: str
    url: str
    enabled: bool = True

    def __post_init__(self):
        """Validate configuration after initialization."""
        if not self.name:
            raise ValueError("Source name cannot be empty")

        parsed = urlparse(self.url or "")
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"Source {self.name!r} has an invalid URL: {self.url!r}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SourceConfig':
        """Create SourceConfig from dictionary."""
        return cls(
            name=data['name'],
            url=data['url'],
            enabled=data.get('enabled', True),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {'name': self.name, 'url': self.url, 'enabled': self.enabled}


class SourceLoader:
    """Loads source definitions from YAML files in a directory."""

    def __init__(self, sources_dir: Optional[Path] = None):
        """Initialize source loader.

        Args:
            sources_dir: Directory containing source YAML files.
                        Defaults to the directory of this module.
        """
        if sources_dir is None:
            sources_dir = Path(__file__).parent

        self.sources_dir = Path(sources_dir)
        self._cache: Dict[str, SourceConfig] = {}
        self._last_modified: Dict[str, float] = {}

    def load_source_config(self, source_name: str) -> Optional[SourceConfig]:
        """Load configuration for a specific source.

        Args:
            source_name: Name of the source (without .yaml extension)

        Returns:
            SourceConfig if found and valid, None otherwise
        """
        yaml_file = self.sources_dir / f"{source_name}.yaml"

        if not yaml_file.exists():
            logger.debug(f"Source configuration not found: {yaml_file}")
            return None

        current_mtime = yaml_file.stat().st_mtime
        if (source_name in self._cache and
                self._last_modified.get(source_name, 0) >= current_mtime):
            return self._cache[source_name]

        try:
            with open(yaml_file, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)

            if not data:
                logger.error(f"Empty or invalid YAML file: {yaml_file}")
                return None

            if data.get('name', source_name) != source_name:
                logger.warning(f"Source name mismatch in {yaml_file}: {data['name']} != {source_name}")
            data['name'] = source_name

            config = SourceConfig.from_dict(data)

            self._cache[source_name] = config
            self._last_modified[source_name] = current_mtime

            logger.info(f"Loaded source configuration: {source_name}")
            return config

        except yaml.YAMLError as e:
            logger.error(f"Failed to parse YAML file {yaml_file}: {e}")
            return None
        except (ValueError, KeyError) as e:
            logger.error(f"Invalid source configuration in {yaml_file}: {e}")
            return None

    def load_all_sources(self) -> Dict[str, SourceConfig]:
        """Load all source configurations from the sources directory."""
        sources = {}

        if not self.sources_dir.exists():
            logger.warning(f"Sources directory not found: {self.sources_dir}")
            return sources

        for yaml_file in sorted(self.sources_dir.glob("*.yaml")):
            config = self.load_source_config(yaml_file.stem)
            if config:
                sources[yaml_file.stem] = config

        logger.debug(f"Loaded {len(sources)} source configurations")
        return sources

    def get_enabled_sources(self) -> Dict[str, SourceConfig]:
        all_sources = self.load_all_sources()
        return {name: config for name, config in all_sources.items() if config.enabled}


def select_targets(settings: Settings,
                   url: Optional[str] = None,
                   source: Optional[str] = None,
                   loader: Optional[SourceLoader] = None) -> List[str]:
    """Resolve the start URLs for a crawl run.

    Args:
        settings: Application settings (its ``sources`` list is consulted)
        url: Explicit URL; when given it is the only target
        source: Restrict configured sources to this name
        loader: Optional loader for per-source YAML files

    Returns:
        Start URLs in dispatch order

    Raises:
        ConfigurationError: if nothing is configured or the named source is unknown
    """
    if url:
        return [url]

    configured: Dict[str, SourceConfig] = {}
    for entry in settings.sources:
        try:
            configured[entry.name] = SourceConfig(name=entry.name, url=entry.url, enabled=entry.enabled)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e
    if loader is not None:
        for name, config in loader.load_all_sources().items():
            configured.setdefault(name, config)

    if not configured:
        raise ConfigurationError("no sources configured and no URL provided")

    if source:
        if source not in configured:
            raise ConfigurationError(f"source {source!r} not found in config")
        return [configured[source].url]

    urls = [config.url for config in configured.values() if config.enabled]
    if not urls:
        raise ConfigurationError("no enabled sources found in config")
    return urls
