#!/usr/bin/env python3
"""
Configuration management for the feed aggregator.

This module centralizes configuration loading, validation and logging setup.
Values come from environment variables, an optional .env file and an optional
YAML secrets file, and are exposed through the global ``config`` instance.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv


def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    All modules should use get_logger() to create module-specific loggers that
    inherit this configuration.
    """
    level_str = environ.get("LOG_LEVEL", "INFO").upper()
    level_map = {
        "DEBUG": DEBUG,
        "INFO": INFO,
        "WARNING": WARNING,
        "ERROR": ERROR
    }
    level = level_map.get(level_str, INFO)

    show_timestamps = environ.get("LOG_TIMESTAMPS", "true").lower() != "false"
    if show_timestamps:
        log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    else:
        log_format = '%(name)s - %(levelname)s - %(message)s'

    basicConfig(
        level=level,
        format=log_format,
        handlers=[StreamHandler(sys.stdout)],
        force=True
    )

    # Third-party chatter stays at WARNING unless asked for
    library_level = level_map.get(environ.get("LIBRARY_LOG_LEVEL", "WARNING").upper(), WARNING)
    for name in ("aiohttp.access", "aiohttp.client", "readability", "readability.readability"):
        getLogger(name).setLevel(library_level)

    return getLogger("FeedAggregator")


def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Loggers are named "FeedAggregator.{name}" and inherit the global
    configuration set by _setup_global_logger().

    Example:
        logger = get_logger("fetcher")
        logger.info("shows up as 'FeedAggregator.fetcher - INFO - ...'")
    """
    return getLogger(f"FeedAggregator.{name}")


logger = _setup_global_logger()


class Config:
    """Configuration manager for the feed aggregator.

    Loading order:
    1. Environment variables
    2. .env file next to this module (if present)
    3. YAML secrets file (if SECRETS_FILE is set), which overrides both

    Example secrets.yaml format:
    ```yaml
    DATABASE_PATH: "/data/aggregator.db"
    USER_AGENT: "MyAggregator/1.0 (+https://example.com)"
    ```
    """

    def __init__(self):
        self._load_environment()
        self._validate_and_set_config()

    def _load_environment(self):
        """Load environment variables from .env file and secrets file if present."""
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Loaded environment variables from {dotenv_path}")

        self._load_secrets_file()

    def _validate_positive_int(self, env_var: str, default: int, min_val: int = 1) -> int:
        """Validate and parse a positive integer environment variable."""
        try:
            value = int(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_positive_float(self, env_var: str, default: float, min_val: float = 0.1) -> float:
        """Validate and parse a positive float environment variable."""
        try:
            value = float(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_bool(self, env_var: str, default: bool) -> bool:
        raw = environ.get(env_var)
        if raw is None:
            return default
        return raw.strip().lower() in ("1", "true", "yes", "on")

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        base_dir = path.dirname(path.abspath(__file__))

        # Storage
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "aggregator.db")
        self.SCHEMA_FILE_PATH = environ.get("SCHEMA_FILE_PATH", path.join(base_dir, "schema.sql"))
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 10, 1)

        # HTTP identity
        self.USER_AGENT = environ.get(
            "USER_AGENT", "Mozilla/5.0 (compatible; FeedAggregator/1.0; RSS Reader/1.0)"
        )
        self.BROWSER_USER_AGENT = environ.get(
            "BROWSER_USER_AGENT",
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
        )

        # Timeouts (seconds)
        self.FEED_FETCH_TIMEOUT = self._validate_positive_float("FEED_FETCH_TIMEOUT", 10.0, 0.1)
        self.PAGE_FETCH_TIMEOUT = self._validate_positive_float("PAGE_FETCH_TIMEOUT", 10.0, 0.1)
        self.PROBE_TIMEOUT = self._validate_positive_float("PROBE_TIMEOUT", 5.0, 0.1)
        self.MAX_REDIRECTS = self._validate_positive_int("MAX_REDIRECTS", 5, 0)

        # Extraction retry policy (additional attempts after the first one)
        self.EXTRACT_MAX_RETRIES = self._validate_positive_int("EXTRACT_MAX_RETRIES", 2, 0)
        self.RETRY_DELAY_BASE = self._validate_positive_float("RETRY_DELAY_BASE", 1.0, 0.0)
        self.RETRY_DELAY_MAX = self._validate_positive_float("RETRY_DELAY_MAX", 30.0, 0.0)

        # Derived metrics
        self.WORDS_PER_MINUTE = self._validate_positive_int("WORDS_PER_MINUTE", 250, 1)
        self.EXCERPT_LENGTH = self._validate_positive_int("EXCERPT_LENGTH", 300, 10)

        # Sync orchestration
        self.SYNC_CONCURRENCY = self._validate_positive_int("SYNC_CONCURRENCY", 4, 1)
        self.SYNC_BATCH_LIMIT = self._validate_positive_int("SYNC_BATCH_LIMIT", 50, 1)
        self.MAX_ENTRIES_PER_SOURCE = self._validate_positive_int("MAX_ENTRIES_PER_SOURCE", 25, 1)
        self.RECENT_WINDOW_HOURS = self._validate_positive_int("RECENT_WINDOW_HOURS", 24, 1)

        # Inline extraction for entries whose feed body is too thin
        self.EXTRACT_INLINE = self._validate_bool("EXTRACT_INLINE", True)
        self.EXTRACT_MIN_WORDS = self._validate_positive_int("EXTRACT_MIN_WORDS", 150, 0)
        self.EXTRACT_CONCURRENCY = self._validate_positive_int("EXTRACT_CONCURRENCY", 3, 1)

        # Per-host request spacing shared by classifier, fetcher and extractor
        self.REQUESTS_PER_MINUTE_PER_HOST = self._validate_positive_int("REQUESTS_PER_MINUTE_PER_HOST", 60, 0)
        self.RATE_LIMIT_MAX_KEYS = self._validate_positive_int("RATE_LIMIT_MAX_KEYS", 1000, 1)

        # Status reporting
        self.STATUS_RECENT_MINUTES = self._validate_positive_int("STATUS_RECENT_MINUTES", 30, 1)

        # Trigger endpoint
        self.API_HOST = environ.get("API_HOST", "127.0.0.1")
        self.API_PORT = self._validate_positive_int("API_PORT", 8080, 1)

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        Expected YAML formats (both supported):
        ```yaml
        # Preferred: top-level mapping
        DATABASE_PATH: "/data/aggregator.db"

        # Nested under `environment`
        # environment:
        #   DATABASE_PATH: "/data/aggregator.db"
        ```
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env")
            return

        secrets_config = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if secrets_config is None:
            return

        if not isinstance(secrets_config, dict):
            logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
            return

        if isinstance(secrets_config.get('environment'), dict):
            env_vars = secrets_config['environment']
        else:
            env_vars = secrets_config

        secrets_loaded = 0
        for key, value in env_vars.items():
            if isinstance(key, str) and value is not None:
                environ[key] = str(value)
                secrets_loaded += 1
            else:
                logger.warning(f"Skipping invalid environment variable in secrets file: {key}={value}")

        logger.info(f"Loaded {secrets_loaded} environment variables from secrets file {secrets_file_path}")

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Safely read a YAML file with consistent validation.

        Returns:
            Parsed YAML (mapping/list/primitive) or None on failure.
        """
        try:
            if not path.isfile(file_path):
                logger.warning(f"{kind.capitalize()} file not found at {file_path}")
                return None
            if not access(file_path, R_OK):
                logger.error(f"No read permission for {kind} file at {file_path}")
                return None
            size = path.getsize(file_path)
            if size > max_size:
                logger.error(f"{kind.capitalize()} file too large: {size} bytes (limit: {max_size} bytes)")
                return None
            with open(file_path, 'r') as f:
                data = yaml.safe_load(f)
            if not data:
                logger.warning(f"Empty or invalid YAML in {kind} file {file_path}")
                return None
            return data
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML in {kind} file {file_path}: {e}")
        except OSError as e:
            logger.error(f"Error loading {kind} file {file_path}: {e}")
        return None

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "database_path": self.DATABASE_PATH,
            "feed_fetch_timeout": self.FEED_FETCH_TIMEOUT,
            "page_fetch_timeout": self.PAGE_FETCH_TIMEOUT,
            "extract_max_retries": self.EXTRACT_MAX_RETRIES,
            "words_per_minute": self.WORDS_PER_MINUTE,
            "sync_concurrency": self.SYNC_CONCURRENCY,
            "sync_batch_limit": self.SYNC_BATCH_LIMIT,
            "max_entries_per_source": self.MAX_ENTRIES_PER_SOURCE,
            "recent_window_hours": self.RECENT_WINDOW_HOURS,
            "extract_inline": self.EXTRACT_INLINE,
            "requests_per_minute_per_host": self.REQUESTS_PER_MINUTE_PER_HOST,
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }


# Global configuration instance
config = Config()
