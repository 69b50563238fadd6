"""
Configuration Module
====================
Centralized environment variable loading, validation, and access.
Validates configuration at startup to fail fast.

NO BUSINESS LOGIC - Pure configuration management only.
"""

import os
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any
from pathlib import Path
from dotenv import load_dotenv


# ============================================================================
# LOGGING
# ============================================================================

logger = logging.getLogger(__name__)


# ============================================================================
# ENVIRONMENT LOADING
# ============================================================================

def load_environment():
    """
    Load environment variables from .env file if present.
    Safe to call multiple times.
    """
    env_path = Path(".env")
    if env_path.exists():
        load_dotenv(env_path)
        logger.info("Loaded environment from .env file")
    else:
        logger.info("No .env file found, using system environment variables")


# Load on module import
load_environment()


# ============================================================================
# CONFIGURATION EXCEPTION
# ============================================================================

class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


# ============================================================================
# VALIDATION HELPERS
# ============================================================================

def _get_required_env(key: str, description: str = None) -> str:
    """
    Get required environment variable.

    Raises:
        ConfigurationError: If variable is missing or empty
    """
    value = os.getenv(key)

    if not value or value.strip() == "":
        desc = f" ({description})" if description else ""
        raise ConfigurationError(
            f"Missing required environment variable: {key}{desc}"
        )

    return value.strip()


def _get_optional_env(key: str, default: str = None) -> Optional[str]:
    """Get optional environment variable."""
    value = os.getenv(key, default)
    return value.strip() if value else default


def _get_int_env(key: str, default: int = None) -> Optional[int]:
    """
    Get integer environment variable.

    Raises:
        ConfigurationError: If value is not a valid integer
    """
    value = os.getenv(key)

    if not value:
        return default

    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(
            f"Invalid integer value for {key}: {value}"
        )


def _get_float_env(key: str, default: float = None) -> Optional[float]:
    """
    Get float environment variable.

    Raises:
        ConfigurationError: If value is not a valid number
    """
    value = os.getenv(key)

    if not value:
        return default

    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(
            f"Invalid numeric value for {key}: {value}"
        )


# ============================================================================
# SYNC ENGINE CONFIGURATION
# ============================================================================

@dataclass
class SyncConfig:
    """
    Timing and sizing knobs for the order board engine.

    Defaults match the counter deployment; every field can be
    overridden from the environment via from_env().
    """
    revert_window_seconds: float = 25.0
    poll_interval_seconds: float = 1.0
    prune_interval_seconds: float = 1.0
    stock_attempt_timeout_seconds: float = 8.0
    stock_max_retries: int = 3
    stock_backoff_base_seconds: float = 1.0
    remote_call_timeout_seconds: float = 10.0
    activity_display_limit: int = 20
    activity_retention: int = 100
    fetch_page_size: int = 1000
    takeaway_surcharge: float = 10.0
    app_user_id: Optional[str] = None

    @classmethod
    def from_env(cls) -> "SyncConfig":
        """Build from environment variables, falling back to defaults."""
        defaults = cls()
        config = cls(
            revert_window_seconds=_get_float_env(
                "REVERT_WINDOW_SECONDS", defaults.revert_window_seconds
            ),
            poll_interval_seconds=_get_float_env(
                "POLL_INTERVAL_SECONDS", defaults.poll_interval_seconds
            ),
            prune_interval_seconds=_get_float_env(
                "PRUNE_INTERVAL_SECONDS", defaults.prune_interval_seconds
            ),
            stock_attempt_timeout_seconds=_get_float_env(
                "STOCK_ATTEMPT_TIMEOUT_SECONDS", defaults.stock_attempt_timeout_seconds
            ),
            stock_max_retries=_get_int_env(
                "STOCK_MAX_RETRIES", defaults.stock_max_retries
            ),
            stock_backoff_base_seconds=_get_float_env(
                "STOCK_BACKOFF_BASE_SECONDS", defaults.stock_backoff_base_seconds
            ),
            remote_call_timeout_seconds=_get_float_env(
                "REMOTE_CALL_TIMEOUT_SECONDS", defaults.remote_call_timeout_seconds
            ),
            activity_display_limit=_get_int_env(
                "ACTIVITY_DISPLAY_LIMIT", defaults.activity_display_limit
            ),
            activity_retention=_get_int_env(
                "ACTIVITY_RETENTION", defaults.activity_retention
            ),
            fetch_page_size=_get_int_env(
                "FETCH_PAGE_SIZE", defaults.fetch_page_size
            ),
            takeaway_surcharge=_get_float_env(
                "TAKEAWAY_SURCHARGE", defaults.takeaway_surcharge
            ),
            app_user_id=_get_optional_env("APP_USER_ID"),
        )
        config.validate()
        return config

    def validate(self):
        """
        Validate ranges.

        Raises:
            ConfigurationError: If any value is out of range
        """
        positive = {
            "REVERT_WINDOW_SECONDS": self.revert_window_seconds,
            "POLL_INTERVAL_SECONDS": self.poll_interval_seconds,
            "PRUNE_INTERVAL_SECONDS": self.prune_interval_seconds,
            "STOCK_ATTEMPT_TIMEOUT_SECONDS": self.stock_attempt_timeout_seconds,
            "REMOTE_CALL_TIMEOUT_SECONDS": self.remote_call_timeout_seconds,
        }
        for key, value in positive.items():
            if value <= 0:
                raise ConfigurationError(f"{key} must be positive: {value}")

        if self.stock_max_retries < 0:
            raise ConfigurationError(
                f"STOCK_MAX_RETRIES must be >= 0: {self.stock_max_retries}"
            )

        if self.stock_backoff_base_seconds < 0:
            raise ConfigurationError(
                f"STOCK_BACKOFF_BASE_SECONDS must be >= 0: {self.stock_backoff_base_seconds}"
            )

        if self.fetch_page_size < 1:
            raise ConfigurationError(
                f"FETCH_PAGE_SIZE must be >= 1: {self.fetch_page_size}"
            )

        if self.activity_display_limit < 1 or self.activity_retention < self.activity_display_limit:
            raise ConfigurationError(
                "ACTIVITY_RETENTION must be >= ACTIVITY_DISPLAY_LIMIT >= 1"
            )

        if self.takeaway_surcharge < 0:
            raise ConfigurationError(
                f"TAKEAWAY_SURCHARGE must be >= 0: {self.takeaway_surcharge}"
            )


# ============================================================================
# SUPABASE CONFIGURATION
# ============================================================================

class SupabaseConfig:
    """Supabase database configuration."""

    def __init__(self):
        self.url = _get_required_env(
            "SUPABASE_URL",
            "Supabase project URL"
        )

        self.key = _get_required_env(
            "SUPABASE_KEY",
            "Supabase anon or service role key"
        )

        # Validate URL format
        if not self.url.startswith("https://"):
            raise ConfigurationError(
                f"SUPABASE_URL must start with https://: {self.url}"
            )

        self.orders_table = _get_optional_env("SUPABASE_ORDERS_TABLE", "orders")
        self.stock_table = _get_optional_env("SUPABASE_STOCK_TABLE", "food_items")
        self.realtime_channel = _get_optional_env(
            "SUPABASE_REALTIME_CHANNEL",
            "orders-board"
        )


# ============================================================================
# SERVER CONFIGURATION
# ============================================================================

class ServerConfig:
    """Web server configuration."""

    def __init__(self):
        self.host = _get_optional_env("HOST", "0.0.0.0")
        self.port = _get_int_env("PORT", 8000)

        # Logging
        self.log_level = _get_optional_env("LOG_LEVEL", "INFO").upper()

        if self.log_level not in ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
            raise ConfigurationError(
                f"Invalid LOG_LEVEL: {self.log_level}"
            )


# ============================================================================
# MAIN CONFIGURATION CLASS
# ============================================================================

class Config:
    """
    Main configuration container.
    Loads and validates all configuration on initialization.
    """

    def __init__(self):
        """
        Initialize and validate all configuration.

        Raises:
            ConfigurationError: If any required configuration is missing or invalid
        """
        try:
            self.supabase = SupabaseConfig()
            self.sync = SyncConfig.from_env()
            self.server = ServerConfig()

            logger.info("Configuration loaded and validated successfully")

        except ConfigurationError as e:
            logger.error(f"Configuration error: {str(e)}")
            raise
        except Exception as e:
            logger.error(f"Unexpected error loading configuration: {str(e)}")
            raise ConfigurationError(f"Configuration initialization failed: {str(e)}")

    def get_safe_summary(self) -> Dict[str, Any]:
        """
        Get safe configuration summary (no secrets).
        """
        return {
            "supabase_url": self.supabase.url,
            "orders_table": self.supabase.orders_table,
            "stock_table": self.supabase.stock_table,
            "sync": {
                "revert_window_seconds": self.sync.revert_window_seconds,
                "poll_interval_seconds": self.sync.poll_interval_seconds,
                "stock_attempt_timeout_seconds": self.sync.stock_attempt_timeout_seconds,
                "stock_max_retries": self.sync.stock_max_retries,
                "remote_call_timeout_seconds": self.sync.remote_call_timeout_seconds,
            },
            "server": {
                "host": self.server.host,
                "port": self.server.port,
                "log_level": self.server.log_level,
            },
        }


# ============================================================================
# SINGLETON INSTANCE
# ============================================================================

_config: Optional[Config] = None


def get_config() -> Config:
    """
    Get global configuration instance.
    Initializes on first call.

    Raises:
        ConfigurationError: If configuration is invalid
    """
    global _config

    if _config is None:
        _config = Config()

    return _config


def reload_config():
    """
    Reload configuration from environment.
    Useful for testing or dynamic reconfiguration.
    """
    global _config
    load_environment()
    _config = Config()
    logger.info("Configuration reloaded")
