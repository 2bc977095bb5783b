"""
config.py - Configuration for the CheckMyHouse dashboard service
"""
import os
from typing import Dict, Any, Optional
from dataclasses import dataclass, field


@dataclass
class DashboardConfig:
    """Configuration for the dashboard service"""

    # Default ClickHouse connection (used when no session cookie is present)
    clickhouse_url: Optional[str] = None
    clickhouse_user: str = "default"
    clickhouse_password: str = ""
    clickhouse_database: str = "default"

    # Settings sent with every query
    clickhouse_settings: Dict[str, Any] = field(default_factory=lambda: {
        "max_execution_time": 300,
        "max_memory_usage": 10000000000,
    })
    query_timeout: int = 300  # seconds

    # Retry helper
    max_retries: int = 3
    retry_delay: float = 1.0  # linear backoff base, seconds

    # Response cache
    cache_max_entries: int = 1000
    cache_soft_limit: int = 500
    enable_cache: bool = True

    # Rate limiting
    enable_rate_limit: bool = True

    # Query analyzer limits
    default_days: int = 7
    max_aggregate_limit: int = 500
    max_drilldown_limit: int = 1000
    slow_query_threshold_ms: int = 1000

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
    cookie_secure: bool = False

    def from_env(self) -> 'DashboardConfig':
        """Load configuration from environment variables"""
        config = DashboardConfig()

        # Connection settings
        config.clickhouse_url = os.getenv('CLICKHOUSE_URL', config.clickhouse_url)
        config.clickhouse_user = os.getenv('CLICKHOUSE_USER', config.clickhouse_user)
        config.clickhouse_password = os.getenv('CLICKHOUSE_PASSWORD', config.clickhouse_password)
        config.clickhouse_database = os.getenv('CLICKHOUSE_DATABASE', config.clickhouse_database)

        # Query execution
        config.query_timeout = int(os.getenv('QUERY_TIMEOUT', str(config.query_timeout)))
        config.max_retries = int(os.getenv('QUERY_MAX_RETRIES', str(config.max_retries)))
        config.retry_delay = float(os.getenv('QUERY_RETRY_DELAY', str(config.retry_delay)))

        # Cache settings
        config.cache_max_entries = int(os.getenv('CACHE_MAX_ENTRIES', str(config.cache_max_entries)))
        config.cache_soft_limit = int(os.getenv('CACHE_SOFT_LIMIT', str(config.cache_soft_limit)))
        config.enable_cache = os.getenv('ENABLE_CACHE', 'true').lower() != 'false'
        config.enable_rate_limit = os.getenv('ENABLE_RATE_LIMIT', 'true').lower() != 'false'

        # Query analyzer
        config.default_days = int(os.getenv('DEFAULT_DAYS', str(config.default_days)))
        config.slow_query_threshold_ms = int(
            os.getenv('SLOW_QUERY_THRESHOLD_MS', str(config.slow_query_threshold_ms))
        )

        # Server settings
        config.host = os.getenv('CHECKMYHOUSE_HOST', config.host)
        config.port = int(os.getenv('CHECKMYHOUSE_PORT', str(config.port)))
        config.log_level = os.getenv('LOG_LEVEL', config.log_level).upper()
        config.cookie_secure = os.getenv('COOKIE_SECURE', 'false').lower() == 'true'

        return config

    def validate(self) -> None:
        """Validate configuration settings"""
        errors = []

        if self.query_timeout <= 0:
            errors.append("query_timeout must be positive")

        if self.max_retries <= 0:
            errors.append("max_retries must be positive")

        if self.retry_delay < 0:
            errors.append("retry_delay must not be negative")

        if self.default_days <= 0:
            errors.append("default_days must be positive")

        if self.cache_max_entries <= 0:
            errors.append("cache_max_entries must be positive")

        if not 0 < self.cache_soft_limit <= self.cache_max_entries:
            errors.append("cache_soft_limit must be positive and not exceed cache_max_entries")

        if self.clickhouse_url and not self.clickhouse_url.startswith(("http://", "https://")):
            errors.append("clickhouse_url must be an http(s) URL")

        if not 0 < self.port < 65536:
            errors.append("port must be between 1 and 65535")

        if errors:
            raise ValueError(f"Configuration validation errors: {'; '.join(errors)}")


class ConfigManager:
    """Manager for configuration loading and validation"""

    def __init__(self):
        self.config: Optional[DashboardConfig] = None

    def load_config(self, config_source: Optional[str] = None) -> DashboardConfig:
        """Load configuration from various sources"""
        if config_source == 'env':
            self.config = DashboardConfig().from_env()
        else:
            self.config = DashboardConfig()

        self.config.validate()
        return self.config

    def get_config(self) -> DashboardConfig:
        """Get the loaded configuration"""
        if self.config is None:
            self.config = self.load_config('env')
        return self.config


# Global configuration manager
config_manager = ConfigManager()


def get_config() -> DashboardConfig:
    """Get the global configuration"""
    return config_manager.get_config()
