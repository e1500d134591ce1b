"""
Configuration management for the site indexer.
"""

import yaml
import logging
from pathlib import Path
from typing import Dict, List, Any, Optional
from dataclasses import dataclass, field


@dataclass
class SiteConfig:
    """A site to index."""
    url: str
    name: str


@dataclass
class IndexingConfig:
    """Configuration for the indexing run."""
    sites: List[SiteConfig]
    parallelism: Optional[int] = None
    stop_grace_period: float = 0.0


@dataclass
class FetcherConfig:
    """Configuration for page fetching."""
    user_agent: str = "SiteIndexerBot/1.0"
    referrer: str = "http://www.google.com"
    request_timeout: int = 30
    max_concurrent_requests: int = 50
    max_content_bytes: int = 10 * 1024 * 1024


@dataclass
class SaverConfig:
    """Configuration for the page persistence pipeline."""
    batch_size: int = 100
    flush_interval: float = 1.0
    retry_attempts: int = 3
    retry_delay: float = 0.5


@dataclass
class DatabaseConfig:
    """Configuration for database storage."""
    type: str = "file"
    cassandra: Dict[str, Any] = field(default_factory=dict)
    file: Dict[str, Any] = field(default_factory=lambda: {'data_directory': 'data'})


@dataclass
class RedisConfig:
    """Configuration for Redis."""
    enabled: bool = False
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    visited_key_prefix: str = "indexer:visited:"


@dataclass
class LoggingConfig:
    """Configuration for logging."""
    level: str = "INFO"
    file: str = "logs/indexer.log"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    json: bool = False


@dataclass
class MonitoringConfig:
    """Configuration for monitoring."""
    prometheus_port: int = 8000
    metrics_enabled: bool = False


@dataclass
class Config:
    """Main configuration class."""
    indexing: IndexingConfig
    fetcher: FetcherConfig = field(default_factory=FetcherConfig)
    saver: SaverConfig = field(default_factory=SaverConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)


class ConfigManager:
    """Manages configuration loading and validation."""

    def __init__(self, config_path: str = "config.yaml"):
        self.config_path = Path(config_path)
        self._config: Optional[Config] = None

    def load_config(self) -> Config:
        """Load configuration from YAML file."""
        if not self.config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

        with open(self.config_path, 'r') as file:
            config_data = yaml.safe_load(file) or {}

        if not isinstance(config_data, dict):
            raise ValueError(f"Top level of {self.config_path} must be a mapping")

        self._config = parse_config(config_data)
        self._validate_config()
        return self._config

    def _validate_config(self):
        """Validate configuration values."""
        if not self._config:
            raise ValueError("Configuration not loaded")
        validate_config(self._config)
        logging.getLogger(__name__).info("Configuration validation passed")

    @property
    def config(self) -> Config:
        """Get the loaded configuration."""
        if not self._config:
            raise ValueError("Configuration not loaded. Call load_config() first.")
        return self._config


def parse_config(config_data: Dict[str, Any]) -> Config:
    """Build a Config from a raw mapping, filling omitted sections with defaults."""
    indexing_data = dict(config_data.get('indexing') or {})
    sites = [SiteConfig(**site) for site in indexing_data.pop('sites', None) or []]

    return Config(
        indexing=IndexingConfig(sites=sites, **indexing_data),
        fetcher=FetcherConfig(**(config_data.get('fetcher') or {})),
        saver=SaverConfig(**(config_data.get('saver') or {})),
        database=DatabaseConfig(**(config_data.get('database') or {})),
        redis=RedisConfig(**(config_data.get('redis') or {})),
        logging=LoggingConfig(**(config_data.get('logging') or {})),
        monitoring=MonitoringConfig(**(config_data.get('monitoring') or {}))
    )


def validate_config(config: Config):
    """Raise ValueError when a configuration value is out of range."""
    if not config.indexing.sites:
        raise ValueError("At least one site must be configured")

    from ..storage.models import normalize_site_url

    seen = {}
    for site in config.indexing.sites:
        if not site.url.lower().startswith(('http://', 'https://')):
            raise ValueError(f"Site URL must be http(s): {site.url}")
        root = normalize_site_url(site.url)
        if root in seen:
            raise ValueError(f"Duplicate site URL: {site.url} and {seen[root]} share the root {root}")
        seen[root] = site.url

    if config.indexing.parallelism is not None and config.indexing.parallelism < 1:
        raise ValueError("parallelism must be at least 1")

    if config.indexing.stop_grace_period < 0:
        raise ValueError("stop_grace_period must be non-negative")

    if config.fetcher.max_concurrent_requests < 1:
        raise ValueError("max_concurrent_requests must be at least 1")

    if config.saver.batch_size < 1:
        raise ValueError("batch_size must be at least 1")

    if config.saver.retry_attempts < 0:
        raise ValueError("retry_attempts must be non-negative")

    if config.database.type not in ['memory', 'file', 'cassandra']:
        raise ValueError("Database type must be 'memory', 'file' or 'cassandra'")


def load_config(config_path: str = "config.yaml") -> Config:
    """Load configuration from file."""
    return ConfigManager(config_path).load_config()
