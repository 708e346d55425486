#!/usr/bin/env python3
"""
Configuration management for Feed Refiner.

This module centralizes configuration loading, validation, and logging setup.
It reads environment variables (optionally from a .env file or a YAML secrets
file) and the per-feed descriptors declared in feeds.yaml.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)


def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    The logger outputs to stdout with line buffering. All modules should use
    get_logger() to create module-specific loggers that inherit this configuration.
    """
    environ["PYTHONUNBUFFERED"] = "1"

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
        force=True  # Force reconfiguration if already configured
    )

    sys.stdout.reconfigure(line_buffering=True)
    sys.stderr.reconfigure(line_buffering=True)

    # Keep Azure exporter chatter down unless explicitly asked for
    azure_level = level_map.get(environ.get("AZURE_LOG_LEVEL", "WARNING").upper(), WARNING)
    for name in ("azure", "azure.core", "azure.monitor.opentelemetry.exporter"):
        getLogger(name).setLevel(azure_level)

    return getLogger("FeedRefiner")


def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Args:
        name: The logger name (e.g., "fetcher", "resolver", "publisher")

    Returns:
        A logger named "FeedRefiner.{name}"
    """
    return getLogger(f"FeedRefiner.{name}")


# Create single global logger instance
logger = _setup_global_logger()


class Config:
    """Configuration manager for Feed Refiner.

    Values are loaded from, in increasing order of precedence:
    1. Environment variables
    2. .env file (if present)
    3. YAML secrets file (if SECRETS_FILE environment variable is set)

    Per-feed descriptors come from feeds.yaml and are kept as raw mappings in
    FEED_CONFIGS; they are validated when a feed is built (see feeds.py).
    """

    def __init__(self):
        """Initialize configuration with environment variables and validation."""
        self._load_environment()
        self._validate_and_set_config()
        self._load_feed_configs()

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

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        base_dir = path.dirname(path.abspath(__file__))

        # Workspace/data paths
        self.DATA_PATH = environ.get("DATA_PATH", base_dir)
        self.CACHE_DB_PATH = environ.get("CACHE_DB_PATH", path.join(self.DATA_PATH, "cache.db"))
        self.COOKIE_JAR_PATH = environ.get("COOKIE_JAR_PATH", path.join(self.DATA_PATH, "cookies.jar"))
        self.IP_POOL_PATH = environ.get("IP_POOL_PATH", path.join(self.DATA_PATH, "outbound_ips"))
        # PUBLIC_DIR: where enclosures and podcast images are stored and served from
        self.PUBLIC_DIR = environ.get("PUBLIC_DIR", path.join(self.DATA_PATH, "public"))
        self.PUBLIC_BASE_URL = environ.get("PUBLIC_BASE_URL", "http://localhost/public").rstrip("/")
        self.OUTPUT_DIR = environ.get("OUTPUT_DIR", path.join(self.PUBLIC_DIR, "feeds"))
        self.SCHEMA_FILE_PATH = path.join(base_dir, "schema.sql")
        self.FEEDS_CONFIG_PATH = environ.get("FEEDS_CONFIG_PATH", path.join(base_dir, "feeds.yaml"))

        # Outbound identity
        self.USER_AGENT = environ.get("USER_AGENT", DEFAULT_USER_AGENT)
        self.ACCEPT_LANGUAGE = environ.get("ACCEPT_LANGUAGE", "en-GB,en-US;q=0.9,en;q=0.8")

        # HTTP request configuration
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 30, 5)
        self.MAX_REDIRECTS = self._validate_positive_int("MAX_REDIRECTS", 10, 0)
        # Retries apply to network-level failures only; HTTP error codes are returned as-is
        self.MAX_RETRIES = self._validate_positive_int("MAX_RETRIES", 1, 0)
        self.RETRY_DELAY_BASE = self._validate_positive_float("RETRY_DELAY_BASE", 1.0, 0.1)

        # External tools
        self.DOWNLOADER_BIN = environ.get("DOWNLOADER_BIN", "yt-dlp")
        self.MEDIAINFO_BIN = environ.get("MEDIAINFO_BIN", "mediainfo")
        self.FILE_BIN = environ.get("FILE_BIN", "file")
        self.DOWNLOAD_TIMEOUT = self._validate_positive_int("DOWNLOAD_TIMEOUT", 900, 10)
        self.PROBE_TIMEOUT = self._validate_positive_int("PROBE_TIMEOUT", 60, 5)

        # Per-feed processing
        self.ITEM_CONCURRENCY = self._validate_positive_int("ITEM_CONCURRENCY", 4, 1)

        # File size limits
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 10, 1)

        # Azure storage mirror for media files (optional)
        self.AZURE_STORAGE_ACCOUNT = environ.get("AZURE_STORAGE_ACCOUNT")
        self.AZURE_STORAGE_KEY = environ.get("AZURE_STORAGE_KEY")
        self.AZURE_STORAGE_CONTAINER = environ.get("AZURE_STORAGE_CONTAINER", "$web")

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        If SECRETS_FILE is set, loads the YAML mapping it points to and exports
        each entry as an environment variable. Both a top-level mapping and a
        mapping nested under `environment` are accepted:

        ```yaml
        AZURE_STORAGE_ACCOUNT: "yourstorageaccount"
        AZURE_STORAGE_KEY: "your-storage-key"
        ```
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env for secrets")
            return

        secrets_config = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if not secrets_config:
            return
        if not isinstance(secrets_config, dict):
            logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
            return

        env_vars = secrets_config.get('environment')
        if not isinstance(env_vars, dict):
            env_vars = secrets_config

        secrets_loaded = 0
        for key, value in env_vars.items():
            if isinstance(key, str) and value is not None:
                environ[key] = str(value)
                secrets_loaded += 1
            else:
                logger.warning(f"Skipping invalid environment variable in secrets file: {key}")
        logger.info(f"Loaded {secrets_loaded} environment variables from secrets file {secrets_file_path}")

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Safely read a YAML file with consistent validation.

        Args:
            file_path: Path to the YAML file
            max_size: Maximum allowed file size in bytes
            kind: Short label for logging context (e.g. 'secrets', 'feeds')

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
            with open(file_path, 'r', encoding='utf-8') as f:
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

    def _load_feed_configs(self) -> None:
        """Populate self.FEED_CONFIGS from feeds.yaml.

        Entries are kept as raw mappings; descriptor validation happens when a
        feed is requested so that one broken entry does not hide the others.
        """
        feeds_path = self.FEEDS_CONFIG_PATH
        config_data = self._safe_read_yaml(feeds_path, 5 * 1024 * 1024, 'feeds')
        feeds_section = config_data.get('feeds') if isinstance(config_data, dict) else None
        if not isinstance(feeds_section, dict):
            if config_data:
                logger.warning(f"No valid feeds found in {feeds_path}")
            self.FEED_CONFIGS = {}
            return

        new_configs: Dict[str, Dict[str, Any]] = {}
        for feed_name, feed_cfg in feeds_section.items():
            if isinstance(feed_cfg, dict):
                new_configs[str(feed_name)] = feed_cfg
                logger.debug(f"Loaded feed {feed_name}: {feed_cfg.get('url')}")
            else:
                logger.warning(f"Skipping invalid feed configuration for '{feed_name}': {feed_cfg}")

        self.FEED_CONFIGS = new_configs
        logger.info(f"Loaded {len(self.FEED_CONFIGS)} feeds from {feeds_path}")

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "cache_db_path": self.CACHE_DB_PATH,
            "public_dir": self.PUBLIC_DIR,
            "public_base_url": self.PUBLIC_BASE_URL,
            "http_timeout": self.HTTP_TIMEOUT,
            "max_retries": self.MAX_RETRIES,
            "item_concurrency": self.ITEM_CONCURRENCY,
            "feed_count": len(self.FEED_CONFIGS),
            "ip_pool_configured": path.isfile(self.IP_POOL_PATH),
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
            "has_azure_storage": bool(self.AZURE_STORAGE_ACCOUNT and self.AZURE_STORAGE_KEY),
        }


# Global configuration instance
config = Config()
