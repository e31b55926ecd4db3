"""
Configuration management for the link crawler.
"""

import yaml
import logging
from pathlib import Path
from typing import Dict, Any, Optional
from dataclasses import dataclass, field, fields

from .retry import RetryPolicy


SCHEDULING_MODES = ('batch', 'pool')
SUPPORTED_DATABASE_SCHEMES = ('sqlite', 'postgres', 'postgresql')


@dataclass
class CrawlerConfig:
    """Configuration for the crawl engine."""
    max_workers: int = 20
    request_timeout: float = 120.0
    user_agent: str = "linkcrawler/1.0"
    scheduling_mode: str = "batch"
    poll_interval: float = 1.0
    stale_claim_timeout: float = 600.0
    max_content_size: int = 10 * 1024 * 1024


@dataclass
class DatabaseConfig:
    """Configuration for the task queue and page graph storage."""
    url: str = "sqlite:///data/crawler.db"
    pool_size: int = 10
    connect_retries: int = 4
    retry_delay: float = 5.0
    retry_backoff: float = 3.0

    @property
    def scheme(self) -> str:
        return self.url.split(':', 1)[0].lower()

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            retries=self.connect_retries,
            delay=self.retry_delay,
            backoff=self.retry_backoff
        )


@dataclass
class ApiConfig:
    """Configuration for the HTTP API."""
    host: str = "0.0.0.0"
    port: int = 8080


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
    prometheus_port: int = 8000
    metrics_enabled: bool = False


@dataclass
class Config:
    """Main configuration class."""
    crawler: CrawlerConfig = field(default_factory=CrawlerConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)


def _build_section(section_cls, data: Optional[Dict[str, Any]]):
    """Build a config section, rejecting keys the section does not define."""
    data = data or {}
    known = {f.name for f in fields(section_cls)}
    unknown = set(data) - known
    if unknown:
        raise ValueError(
            f"Unknown {section_cls.__name__} option(s): {', '.join(sorted(unknown))}"
        )
    return section_cls(**data)


class ConfigManager:
    """Manages configuration loading and validation."""

    def __init__(self, config_path: Optional[str] = "config.yaml"):
        self.config_path = Path(config_path) if config_path else None
        self._config: Optional[Config] = None

    def load_config(self) -> Config:
        """
        Load configuration from the YAML file.

        A missing path (None) yields the defaults; a path that does not exist
        is an error.
        """
        config_data: Dict[str, Any] = {}
        if self.config_path is not None:
            if not self.config_path.exists():
                raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

            with open(self.config_path, 'r') as file:
                config_data = yaml.safe_load(file) or {}

        self._config = self.from_dict(config_data)
        self._validate_config()
        return self._config

    @staticmethod
    def from_dict(config_data: Dict[str, Any]) -> Config:
        """Parse configuration sections from a plain dictionary."""
        return Config(
            crawler=_build_section(CrawlerConfig, config_data.get('crawler')),
            database=_build_section(DatabaseConfig, config_data.get('database')),
            api=_build_section(ApiConfig, config_data.get('api')),
            logging=_build_section(LoggingConfig, config_data.get('logging')),
            monitoring=_build_section(MonitoringConfig, config_data.get('monitoring'))
        )

    def _validate_config(self):
        """Validate configuration values."""
        if not self._config:
            raise ValueError("Configuration not loaded")
        validate_config(self._config)
        logging.getLogger(__name__).debug("Configuration validation passed")

    @property
    def config(self) -> Config:
        """Get the loaded configuration."""
        if not self._config:
            raise ValueError("Configuration not loaded. Call load_config() first.")
        return self._config


def validate_config(config: Config):
    """Raise ValueError if any configured value is out of range."""
    crawler = config.crawler
    if crawler.max_workers < 1:
        raise ValueError("max_workers must be at least 1")

    if crawler.request_timeout <= 0:
        raise ValueError("request_timeout must be positive")

    if crawler.poll_interval < 0:
        raise ValueError("poll_interval must be non-negative")

    if crawler.stale_claim_timeout <= 0:
        raise ValueError("stale_claim_timeout must be positive")

    # A claim can only look stale once its fetch has timed out
    if crawler.stale_claim_timeout <= crawler.request_timeout:
        raise ValueError("stale_claim_timeout must be longer than request_timeout")

    if crawler.scheduling_mode not in SCHEDULING_MODES:
        raise ValueError(f"scheduling_mode must be one of {', '.join(SCHEDULING_MODES)}")

    if config.database.scheme not in SUPPORTED_DATABASE_SCHEMES:
        raise ValueError(
            "Database url must start with sqlite:// or postgresql:// "
            f"(got {config.database.url!r})"
        )

    if config.database.pool_size < 1:
        raise ValueError("pool_size must be at least 1")

    # Raises ValueError for negative retry settings
    config.database.retry_policy()


# Global config manager instance
config_manager = ConfigManager(None)


def get_config() -> Config:
    """Get the global configuration instance."""
    return config_manager.config


def load_config(config_path: Optional[str] = "config.yaml") -> Config:
    """Load configuration from file."""
    global config_manager
    config_manager = ConfigManager(config_path)
    return config_manager.load_config()
