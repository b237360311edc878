"""
Application configuration for the field sync client.
"""
import logging
import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.collect.fikiri.co"
DEFAULT_TIMEOUT = 30.0
MIN_TIMEOUT = 1.0


@dataclass
class ApiConfig:
    """Remote API and request orchestration settings."""
    base_url: str = DEFAULT_BASE_URL
    timeout: float = DEFAULT_TIMEOUT
    retry_limit: int = 3
    retry_delay: float = 1.0
    cache_ttl: float = 300.0
    dedup_window: float = 1.0
    refresh_endpoint: str = "/auth/refresh"
    login_endpoint: str = "/auth/login"
    health_endpoint: str = "/health"
    user_agent: str = "FieldSync/1.0"


@dataclass
class StorageConfig:
    """Local persistence settings."""
    path: str = "fieldsync.db"
    namespace: str = "fieldsync"
    retention_days: int = 7


@dataclass
class SyncConfig:
    """Background synchronization settings."""
    interval: float = 10.0
    records_endpoint: str = "/records"
    campaign_endpoint: str = "/campaigns/{campaign_id}/submissions"
    campaign_field: str = "campaignId"
    max_record_attempts: Optional[int] = 10
    health_check_interval: float = 30.0
    housekeeping_interval: float = 600.0
    enabled: bool = True


@dataclass
class AppConfig:
    """Main application configuration."""
    api: ApiConfig = field(default_factory=ApiConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    debug: bool = False

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'AppConfig':
        """
        Build configuration from FIELDSYNC_* environment variables.

        Invalid values fall back to their defaults with a warning.

        Args:
            environ: Mapping to read from. Defaults to os.environ.

        Returns:
            A validated AppConfig
        """
        env = os.environ if environ is None else environ
        config = cls()

        base_url = env.get("FIELDSYNC_API_BASE_URL", "").strip()
        if base_url:
            config.api.base_url = base_url.rstrip("/")

        raw_timeout = env.get("FIELDSYNC_API_TIMEOUT")
        if raw_timeout:
            try:
                config.api.timeout = float(raw_timeout)
            except ValueError:
                logger.warning(f"Invalid FIELDSYNC_API_TIMEOUT value: {raw_timeout!r}")

        if env.get("FIELDSYNC_DB_PATH"):
            config.storage.path = env["FIELDSYNC_DB_PATH"]

        raw_interval = env.get("FIELDSYNC_SYNC_INTERVAL")
        if raw_interval:
            try:
                config.sync.interval = float(raw_interval)
            except ValueError:
                logger.warning(f"Invalid FIELDSYNC_SYNC_INTERVAL value: {raw_interval!r}")

        config.debug = env.get("FIELDSYNC_DEBUG", "").lower() in ("1", "true", "yes")
        config.validate()
        return config

    def validate(self) -> None:
        """Replace out-of-range critical values with safe defaults."""
        if not self.api.base_url:
            logger.error("API base URL missing, using default")
            self.api.base_url = DEFAULT_BASE_URL

        if not self.api.timeout or self.api.timeout < MIN_TIMEOUT:
            logger.warning(f"Invalid API timeout {self.api.timeout}, using default")
            self.api.timeout = DEFAULT_TIMEOUT

        if self.sync.interval <= 0:
            logger.warning(f"Invalid sync interval {self.sync.interval}, using default")
            self.sync.interval = SyncConfig.interval
