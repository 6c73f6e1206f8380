#!/usr/bin/env python3
"""
Configuration management for the feed refresher.

This module centralizes all configuration loading, validation, and management.
It handles environment variables, validation, and provides a clean interface
for accessing configuration values throughout the application.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any, List
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    The logger outputs to stdout with line buffering for real-time logging.
    All modules should use get_logger() to create module-specific loggers that inherit this configuration.
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
        force=True  # Force reconfiguration if already configured
    )

    try:
        sys.stdout.reconfigure(line_buffering=True)
    except AttributeError:
        # Replaced streams (e.g. under test capture) may not support reconfigure
        pass

    # aiohttp access/client chatter is only useful when debugging
    getLogger("aiohttp").setLevel(WARNING if level < WARNING else level)

    return getLogger("FeedRefresher")

def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Args:
        name: The logger name (e.g., "fetcher", "worker", "models")

    Returns:
        A logger instance named "FeedRefresher.{name}"
    """
    return getLogger(f"FeedRefresher.{name}")

# Create single global logger instance
logger = _setup_global_logger()

class Config:
    """Configuration manager for the feed refresher.

    Configuration is loaded from multiple sources:
    1. Environment variables
    2. .env file (if present)
    3. YAML secrets file (if SECRETS_FILE environment variable is set)
    4. feeds.yaml configuration file

    .env only fills in variables that are not already set. Secrets file values
    override the process environment, so deployments can keep sensitive values
    (e.g. a DATABASE_PATH on a mounted volume) out of the image.
    """

    def __init__(self):
        """Initialize configuration with environment variables and validation."""
        self._load_environment()
        self._validate_and_set_config()
        self._load_feed_sources()

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
        # Basic configuration
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "feeds.db")
        self.USER_AGENT = environ.get("USER_AGENT", "Mozilla/5.0 (compatible; feed-refresher/1.0)")

        # Refresh loop timing
        self.REFRESH_INTERVAL_MINUTES = self._validate_positive_int("REFRESH_INTERVAL_MINUTES", 60, 1)
        self.REFRESH_THROTTLE_MINUTES = self._validate_positive_int("REFRESH_THROTTLE_MINUTES", 10, 0)
        self.REFRESH_ON_STARTUP = environ.get("REFRESH_ON_STARTUP", "false").lower() == "true"
        if self.REFRESH_INTERVAL_MINUTES <= self.REFRESH_THROTTLE_MINUTES:
            logger.warning(
                f"REFRESH_INTERVAL_MINUTES ({self.REFRESH_INTERVAL_MINUTES}) should be larger than "
                f"REFRESH_THROTTLE_MINUTES ({self.REFRESH_THROTTLE_MINUTES}); periodic ticks may be throttled"
            )

        # HTTP request configuration
        self.FEED_REFRESH_TIMEOUT = self._validate_positive_float("FEED_REFRESH_TIMEOUT", 15.0, 1.0)
        self.MAX_REDIRECTS = self._validate_positive_int("MAX_REDIRECTS", 5, 0)

        # Fan-out configuration
        self.MAX_CONCURRENT_REFRESHES = self._validate_positive_int("MAX_CONCURRENT_REFRESHES", 5, 1)

        # Read/unread view
        self.PAGE_SIZE = self._validate_positive_int("PAGE_SIZE", 5, 1)

        # File paths
        base_dir = path.dirname(path.abspath(__file__))
        self.FEEDS_CONFIG_PATH = environ.get("FEEDS_CONFIG_PATH", path.join(base_dir, "feeds.yaml"))

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        If SECRETS_FILE is set, loads the specified YAML file and sets
        environment variables from it. Both a top-level mapping and a mapping
        nested under `environment` are accepted:

        ```yaml
        DATABASE_PATH: "/data/feeds.db"
        # or
        environment:
          DATABASE_PATH: "/data/feeds.db"
        ```
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env")
            return

        secrets_config = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if not secrets_config:
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
                logger.debug(f"Set environment variable {key} from secrets file")
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

    def _load_feed_sources(self) -> None:
        """Populate FEED_SOURCES and IGNORED_LINK_PATTERNS from feeds.yaml.

        Any failure results in an empty mapping; feeds can still be registered
        through the CLI.
        """
        self.FEED_SOURCES: Dict[str, Dict[str, Any]] = {}
        self.IGNORED_LINK_PATTERNS: List[str] = []

        feeds_path = self.FEEDS_CONFIG_PATH
        config_data = self._safe_read_yaml(feeds_path, 5 * 1024 * 1024, 'feeds')
        if not isinstance(config_data, dict):
            return

        feeds_section = config_data.get('feeds')
        if isinstance(feeds_section, dict):
            for feed_slug, feed_cfg in feeds_section.items():
                if isinstance(feed_cfg, dict) and isinstance(feed_cfg.get('url'), str):
                    self.FEED_SOURCES[feed_slug] = {
                        'url': feed_cfg['url'].strip(),
                        'title': str(feed_cfg.get('title') or feed_slug),
                    }
                    logger.debug(f"Loaded feed {feed_slug}: {feed_cfg['url']}")
                else:
                    logger.warning(f"Skipping invalid feed configuration for '{feed_slug}': {feed_cfg}")
        else:
            logger.warning(f"No valid feeds found in {feeds_path}")

        filters_section = config_data.get('filters')
        if isinstance(filters_section, dict):
            patterns = filters_section.get('ignored_links') or []
            if isinstance(patterns, list):
                self.IGNORED_LINK_PATTERNS = [str(p) for p in patterns if p]
            else:
                logger.warning(f"filters.ignored_links in {feeds_path} must be a list; ignoring")

        logger.info(f"Loaded {len(self.FEED_SOURCES)} feeds from {feeds_path}")

    def reload_feed_sources(self):
        """Reload feed sources from configuration file."""
        logger.info("Reloading feed sources configuration")
        self._load_feed_sources()

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "database_path": self.DATABASE_PATH,
            "refresh_interval_minutes": self.REFRESH_INTERVAL_MINUTES,
            "refresh_throttle_minutes": self.REFRESH_THROTTLE_MINUTES,
            "feed_refresh_timeout": self.FEED_REFRESH_TIMEOUT,
            "max_concurrent_refreshes": self.MAX_CONCURRENT_REFRESHES,
            "feed_count": len(self.FEED_SOURCES),
            "ignored_link_patterns": len(self.IGNORED_LINK_PATTERNS),
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }

# Global configuration instance
config = Config()
