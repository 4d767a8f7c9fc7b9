#!/usr/bin/env python3
"""
Configuration management for the Feed Updater.

This module centralizes all configuration loading, validation, and management.
It handles environment variables, validation, and provides a clean interface
for accessing configuration values throughout the application.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

def _setup_global_logger():
    """Setup a single global logger for the entire application.

    This function configures the logging system for the whole feed updater.
    It sets up a unified logging configuration that can be controlled via environment variables:

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true
        THIRD_PARTY_LOG_LEVEL: Level for aiohttp/opentelemetry loggers - defaults to WARNING

    The logger outputs to stdout with line buffering for real-time logging.
    All modules should use get_logger() to create module-specific loggers that inherit this configuration.
    """
    # Ensure unbuffered I/O for Python and any child processes
    try:
        environ["PYTHONUNBUFFERED"] = "1"
    except Exception:
        pass

    # Determine log level
    level_str = environ.get("LOG_LEVEL", "INFO").upper()
    level_map = {
        "DEBUG": DEBUG,
        "INFO": INFO,
        "WARNING": WARNING,
        "ERROR": ERROR
    }
    level = level_map.get(level_str, INFO)

    # Check if timestamps should be disabled
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

    # Test runners may swap the standard streams for objects without reconfigure()
    for stream in (sys.stdout, sys.stderr):
        reconfigure = getattr(stream, "reconfigure", None)
        if callable(reconfigure):
            reconfigure(line_buffering=True)

    # Keep library chatter down unless explicitly overridden
    third_party_level = level_map.get(environ.get("THIRD_PARTY_LOG_LEVEL", "WARNING").upper(), WARNING)
    for name in ("aiohttp", "aiohttp.access", "aiohttp.client", "opentelemetry"):
        getLogger(name).setLevel(third_party_level)

    return getLogger("FeedUpdater")

def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    This function creates a logger with a name in the format "FeedUpdater.{name}".
    All loggers created this way inherit the global logging configuration set by _setup_global_logger().

    Args:
        name: The logger name (e.g., "fetcher", "updater", "scheduler")

    Returns:
        A logger instance with the unified configuration

    Example:
        logger = get_logger("mymodule")
        logger.info("This will appear as 'FeedUpdater.mymodule - INFO - This will appear...'")
    """
    return getLogger(f"FeedUpdater.{name}")

# Create single global logger instance
logger = _setup_global_logger()

class Config:
    """Configuration manager for the Feed Updater.

    This class handles loading and validation of configuration from multiple sources:
    1. Environment variables
    2. .env file (if present)
    3. YAML secrets file (if SECRETS_FILE environment variable is set)
    4. update_policy.yaml (refresh cadence and retry backoff rules)

    The loading order ensures that:
    - .env file variables override system environment variables
    - Secrets file variables override both system and .env variables

    Example secrets.yaml format:
    ```yaml
    USER_AGENT: "MyReader/2.0 (+https://example.com/reader)"
    DATABASE_PATH: "/var/lib/feeds/feeds.db"
    ```
    """

    def __init__(self):
        """Initialize configuration with environment variables and validation."""
        self._load_environment()
        self._validate_and_set_config()
        self._load_update_policy()

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
        self.USER_AGENT = environ.get("USER_AGENT", "Mozilla/5.0 (compatible; FeedUpdater/1.0)")

        # HTTP request configuration
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 30, 5)
        self.MAX_REDIRECTS = self._validate_positive_int("MAX_REDIRECTS", 5, 0)

        # Batch update configuration
        self.MAX_CONCURRENT_UPDATES = self._validate_positive_int("MAX_CONCURRENT_UPDATES", 5, 1)
        # On app launch, sources due within this many minutes are updated early
        self.APP_LAUNCH_LOOKAHEAD_MINUTES = self._validate_positive_int("APP_LAUNCH_LOOKAHEAD_MINUTES", 10, 0)

        # Background trigger configuration
        # Fixed update intervals are aligned to wall-clock boundaries in this timezone
        self.SCHEDULER_TIMEZONE = environ.get("SCHEDULER_TIMEZONE", "UTC")
        self.SCHEDULER_MAX_SLEEP_MINUTES = self._validate_positive_int("SCHEDULER_MAX_SLEEP_MINUTES", 60, 1)
        self.SCHEDULER_ERROR_DELAY_SECONDS = self._validate_positive_float("SCHEDULER_ERROR_DELAY_SECONDS", 60.0, 1.0)

        # File size limits
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 10, 1)

        # File paths
        base_dir = path.dirname(path.abspath(__file__))
        self.SCHEMA_FILE_PATH = environ.get("SCHEMA_FILE_PATH", path.join(base_dir, "schema.sql"))
        self.UPDATE_POLICY_PATH = environ.get("UPDATE_POLICY_PATH", path.join(base_dir, "update_policy.yaml"))

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        If SECRETS_FILE environment variable is set, loads the specified YAML file
        and sets environment variables from it.

        Expected YAML formats (both supported):
        ```yaml
        # Preferred: top-level mapping
        USER_AGENT: "MyReader/2.0"

        # Backward-compatible: nested under `environment`
        # environment:
        #   USER_AGENT: "MyReader/2.0"
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
            logger.debug(f"Using 'environment' section from secrets file {secrets_file_path}")
        else:
            env_vars = secrets_config

        secrets_loaded = 0
        for key, value in env_vars.items():
            if isinstance(key, str) and value is not None:
                environ[key] = str(value)
                secrets_loaded += 1
                logger.debug(f"Set environment variable {key} from secrets file")
            else:
                logger.warning(f"Skipping invalid environment variable in secrets file: {key}={value}")

        logger.info(f"Loaded {secrets_loaded} environment variables from secrets file {secrets_file_path}")

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Safely read a YAML file with consistent validation.

        Args:
            file_path: Path to the YAML file
            max_size: Maximum allowed file size in bytes
            kind: Short label for logging context (e.g. 'secrets', 'policy')

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

    def _policy_int(self, section: Dict[str, Any], key: str, default: int, min_val: int) -> int:
        raw = section.get(key)
        if raw is None:
            return default
        try:
            value = int(str(raw).strip())
        except (TypeError, ValueError):
            logger.warning(f"Invalid update policy value {key}='{raw}'; using default {default}")
            return default
        if value < min_val:
            logger.warning(f"Update policy {key} must be >= {min_val}; keeping default {default} (got {raw})")
            return default
        return value

    def _load_update_policy(self) -> None:
        """Populate refresh cadence and retry backoff settings from update_policy.yaml.

        Idempotent and resilient: a missing or broken file leaves the defaults in place.
        """
        data = self._safe_read_yaml(self.UPDATE_POLICY_PATH, 1024 * 1024, 'policy')
        if not isinstance(data, dict):
            data = {}

        retry = data.get('retry') if isinstance(data.get('retry'), dict) else {}
        adaptive = data.get('adaptive') if isinstance(data.get('adaptive'), dict) else {}

        self.DEFAULT_UPDATE_MODE = str(data.get('default_update_mode') or 'ADAPTIVE').strip().upper()
        self.RETRY_BASE_MINUTES = self._policy_int(retry, 'base_minutes', 5, 1)
        self.RETRY_MAX_HOURS = self._policy_int(retry, 'max_hours', 24, 1)
        self.ADAPTIVE_MIN_MINUTES = self._policy_int(adaptive, 'min_minutes', 15, 1)
        self.ADAPTIVE_MAX_MINUTES = self._policy_int(adaptive, 'max_minutes', 24 * 60, 1)
        self.ADAPTIVE_FALLBACK_MINUTES = self._policy_int(adaptive, 'fallback_minutes', 60, 1)
        self.ADAPTIVE_SAMPLE_SIZE = self._policy_int(adaptive, 'sample_size', 10, 2)

        if self.ADAPTIVE_MAX_MINUTES < self.ADAPTIVE_MIN_MINUTES:
            logger.warning(
                "adaptive.max_minutes (%s) is below adaptive.min_minutes (%s); using min for both",
                self.ADAPTIVE_MAX_MINUTES,
                self.ADAPTIVE_MIN_MINUTES,
            )
            self.ADAPTIVE_MAX_MINUTES = self.ADAPTIVE_MIN_MINUTES

        logger.info(
            "Loaded update policy: DEFAULT_UPDATE_MODE=%s RETRY_BASE_MINUTES=%s RETRY_MAX_HOURS=%s",
            self.DEFAULT_UPDATE_MODE,
            self.RETRY_BASE_MINUTES,
            self.RETRY_MAX_HOURS,
        )

    def reload_update_policy(self):
        """Reload the update policy from its configuration file."""
        logger.info("Reloading update policy configuration")
        self._load_update_policy()

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "database_path": self.DATABASE_PATH,
            "http_timeout": self.HTTP_TIMEOUT,
            "max_redirects": self.MAX_REDIRECTS,
            "max_concurrent_updates": self.MAX_CONCURRENT_UPDATES,
            "app_launch_lookahead_minutes": self.APP_LAUNCH_LOOKAHEAD_MINUTES,
            "default_update_mode": self.DEFAULT_UPDATE_MODE,
            "retry_base_minutes": self.RETRY_BASE_MINUTES,
            "retry_max_hours": self.RETRY_MAX_HOURS,
            "scheduler_timezone": self.SCHEDULER_TIMEZONE,
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }

# Global configuration instance
config = Config()
