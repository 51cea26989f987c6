"""
Configuration management for the site audit crawler.
"""

import yaml
import logging
from pathlib import Path
from typing import Dict, Any, Optional
from dataclasses import dataclass, field, fields


class ConfigError(ValueError):
    """Raised when the configuration is missing or invalid."""
    pass


@dataclass
class CrawlerConfig:
    """Configuration for crawl behavior."""
    seed_url: str = ""
    base_url: Optional[str] = None
    max_parallel_crawl: int = 5
    max_parallel_checks: int = 10
    request_timeout: float = 30.0
    retry_attempts: int = 2
    retry_backoff: float = 1.0
    max_pages: int = 0
    checkpoint_every: int = 5
    oversized_response_bytes: int = 5 * 1024 * 1024
    oversized_hard_multiple: int = 2
    max_redirects_internal: int = 5
    max_redirects_external: int = 3
    max_external_links: int = 0
    user_agent: str = "SiteAuditCrawler/1.0"


@dataclass
class StorageConfig:
    """Configuration for crawl state and page data storage."""
    backend: str = "file"
    output_dir: str = "audits"
    state_file: str = "crawl-state.json"
    chunk_max_records: int = 100
    chunk_max_bytes: int = 8 * 1024 * 1024
    compression_threshold: int = 10 * 1024
    resume: bool = True


@dataclass
class RedisConfig:
    """Configuration for the Redis checkpoint backend."""
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    key_prefix: str = "site_audit"


@dataclass
class LoggingConfig:
    """Configuration for logging."""
    level: str = "INFO"
    file: str = "logs/crawler.log"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    json: bool = False


@dataclass
class MonitoringConfig:
    """Configuration for monitoring."""
    metrics_enabled: bool = False
    prometheus_port: int = 8000
    stats_interval: float = 30.0


@dataclass
class Config:
    """Main configuration class."""
    crawler: CrawlerConfig = field(default_factory=CrawlerConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'Config':
        """Build a Config from a parsed YAML mapping; missing sections take defaults."""
        data = data or {}
        sections = {f.name: f for f in fields(cls)}

        unknown = set(data) - set(sections)
        if unknown:
            raise ConfigError(f"Unknown configuration sections: {', '.join(sorted(unknown))}")

        kwargs = {}
        for name, section_field in sections.items():
            section_cls = section_field.default_factory
            section_data = data.get(name) or {}
            if not isinstance(section_data, dict):
                raise ConfigError(f"Configuration section '{name}' must be a mapping")
            try:
                kwargs[name] = section_cls(**section_data)
            except TypeError as e:
                raise ConfigError(f"Invalid keys in '{name}' section: {e}")

        return cls(**kwargs)


class ConfigManager:
    """Manages configuration loading and validation."""

    def __init__(self, config_path: str = "config.yaml"):
        self.config_path = Path(config_path)
        self._config: Optional[Config] = None

    def load_config(self, overrides: Optional[Dict[str, Dict[str, Any]]] = None) -> Config:
        """
        Load configuration from YAML file.

        Args:
            overrides: Per-section values (e.g. from the command line) applied
                on top of the file before validation
        """
        if not self.config_path.exists():
            raise ConfigError(f"Configuration file not found: {self.config_path}")

        with open(self.config_path, 'r') as file:
            try:
                config_data = yaml.safe_load(file) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Could not parse {self.config_path}: {e}")

        if not isinstance(config_data, dict):
            raise ConfigError(f"{self.config_path} must contain a mapping of sections")

        for section, values in (overrides or {}).items():
            merged = dict(config_data.get(section) or {})
            merged.update({k: v for k, v in values.items() if v is not None})
            config_data[section] = merged

        self._config = Config.from_dict(config_data)
        validate_config(self._config)
        return self._config

    @property
    def config(self) -> Config:
        """Get the loaded configuration."""
        if not self._config:
            raise ConfigError("Configuration not loaded. Call load_config() first.")
        return self._config


def validate_config(config: Config):
    """Validate configuration values."""
    crawler = config.crawler

    if not crawler.seed_url:
        raise ConfigError("crawler.seed_url must be provided")

    if not crawler.seed_url.startswith(('http://', 'https://')):
        raise ConfigError(f"crawler.seed_url must be an http(s) URL: {crawler.seed_url}")

    if crawler.max_parallel_crawl < 1:
        raise ConfigError("crawler.max_parallel_crawl must be at least 1")

    if crawler.max_parallel_checks < 1:
        raise ConfigError("crawler.max_parallel_checks must be at least 1")

    if crawler.request_timeout <= 0:
        raise ConfigError("crawler.request_timeout must be positive")

    if crawler.retry_attempts < 0 or crawler.retry_backoff < 0:
        raise ConfigError("crawler.retry_attempts and retry_backoff must be non-negative")

    if crawler.max_pages < 0 or crawler.max_external_links < 0:
        raise ConfigError("crawler.max_pages and max_external_links must be non-negative (0 = unlimited)")

    if crawler.checkpoint_every < 1:
        raise ConfigError("crawler.checkpoint_every must be at least 1")

    if crawler.oversized_response_bytes < 1 or crawler.oversized_hard_multiple < 1:
        raise ConfigError("crawler.oversized_response_bytes and oversized_hard_multiple must be positive")

    if crawler.max_redirects_internal < 1 or crawler.max_redirects_external < 1:
        raise ConfigError("crawler redirect caps must be at least 1")

    if config.storage.backend not in ('file', 'redis'):
        raise ConfigError("storage.backend must be 'file' or 'redis'")

    if config.storage.chunk_max_records < 1 or config.storage.chunk_max_bytes < 1:
        raise ConfigError("storage chunk bounds must be positive")

    logging.getLogger(__name__).debug("Configuration validation passed")


# Global config manager instance
config_manager = ConfigManager()


def get_config() -> Config:
    """Get the global configuration instance."""
    return config_manager.config


def load_config(config_path: str = "config.yaml",
                overrides: Optional[Dict[str, Dict[str, Any]]] = None) -> Config:
    """Load configuration from file."""
    global config_manager
    config_manager = ConfigManager(config_path)
    return config_manager.load_config(overrides)
