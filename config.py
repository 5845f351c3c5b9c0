#!/usr/bin/env python3
"""
Configuration management for Feed Notifier.

This module centralizes all configuration loading, validation, and management.
It handles environment variables, validation, and provides a clean interface
for accessing configuration values throughout the application.

Note on IDENTITY_FIELDS: the seen-state file stores digests of the configured
article fields. Changing the field set after a deployment has delivered items
invalidates every stored identity, and the next run will re-send everything
still present in the feeds. Pick one value per deployment and keep it.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any, List, Tuple
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

from errors import ConfigurationError
from models import IDENTITY_FIELD_CHOICES, FeedSource

GEMINI_OPENAI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"


def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    The logger outputs to stdout with line buffering for real-time logging.
    All modules should use get_logger() to create module-specific loggers that inherit this configuration.
    """
    try:
        environ["PYTHONUNBUFFERED"] = "1"
    except Exception:
        pass

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

    # Test runners may swap stdout for objects without reconfigure()
    for stream in (sys.stdout, sys.stderr):
        if hasattr(stream, "reconfigure"):
            stream.reconfigure(line_buffering=True)

    # The HTTP client libraries are chatty at DEBUG
    for name in ("aiohttp", "openai", "httpx", "httpcore"):
        getLogger(name).setLevel(max(level, WARNING))

    return getLogger("FeedNotifier")


def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Args:
        name: The logger name (e.g., "fetcher", "notifier", "telegram")

    Returns:
        A logger instance named "FeedNotifier.{name}"
    """
    return getLogger(f"FeedNotifier.{name}")


logger = _setup_global_logger()


class Config:
    """Configuration manager for Feed Notifier.

    Loading order:
    1. Environment variables
    2. .env file (if present)
    3. YAML secrets file (if SECRETS_FILE environment variable is set)
    4. feeds.yaml configuration file (feed list and optional run settings)

    Example secrets.yaml format:
    ```yaml
    TG_BOT_TOKEN: "123456:ABC..."
    TG_CHANNEL_ID: "@my_channel"
    OPENAI_API_KEY: "your-api-key"
    ```
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

    def _parse_identity_fields(self, raw: str) -> Tuple[str, ...]:
        fields = tuple(f.strip().lower() for f in raw.split(",") if f.strip())
        unknown = [f for f in fields if f not in IDENTITY_FIELD_CHOICES]
        if not fields or unknown:
            logger.warning(f"Invalid IDENTITY_FIELDS '{raw}', using default 'link'")
            return ("link",)
        return fields

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        base_dir = path.dirname(path.abspath(__file__))

        # Delivery target (required, checked by validate_delivery)
        self.TG_BOT_TOKEN = (environ.get("TG_BOT_TOKEN") or "").strip() or None
        self.TG_CHANNEL_ID = (environ.get("TG_CHANNEL_ID") or "").strip() or None
        self.TELEGRAM_DISABLE_PREVIEW = environ.get("TELEGRAM_DISABLE_PREVIEW", "false").lower() == "true"

        # Seen-state
        self.STATE_FILE = environ.get("STATE_FILE", "state.json")
        self.IDENTITY_FIELDS = self._parse_identity_fields(environ.get("IDENTITY_FIELDS", "link"))

        # Run limits and pacing
        self.MAX_POSTS_PER_RUN = self._validate_positive_int("MAX_POSTS_PER_RUN", 1, 1)
        self.SEND_PACING_SECONDS = self._validate_positive_float("SEND_PACING_SECONDS", 2.0, 0.0)
        self.RATE_LIMIT_MAX_RETRIES = self._validate_positive_int("RATE_LIMIT_MAX_RETRIES", 3, 0)
        self.DEFAULT_RETRY_AFTER = self._validate_positive_int("DEFAULT_RETRY_AFTER", 5, 1)

        # HTTP request configuration
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 15, 1)
        self.USER_AGENT = environ.get("USER_AGENT", "Mozilla/5.0 (compatible; FeedNotifier/1.0)")
        self.ARTICLE_TEXT_LIMIT = self._validate_positive_int("ARTICLE_TEXT_LIMIT", 3000, 200)

        # Summarization (optional)
        self.ENABLE_SUMMARIES = environ.get("ENABLE_SUMMARIES", "true").lower() != "false"
        self.OPENAI_API_KEY = environ.get("OPENAI_API_KEY")
        self.OPENAI_BASE_URL = environ.get("OPENAI_BASE_URL")
        self.OPENAI_MODEL = environ.get("OPENAI_MODEL", "gpt-4o-mini")
        # Gemini aliases map onto Gemini's OpenAI-compatible endpoint
        gemini_key = environ.get("GEMINI_API_TOKEN")
        if gemini_key and not self.OPENAI_API_KEY:
            self.OPENAI_API_KEY = gemini_key
            self.OPENAI_BASE_URL = self.OPENAI_BASE_URL or GEMINI_OPENAI_BASE_URL
            self.OPENAI_MODEL = environ.get("GEMINI_MODEL", "gemini-2.0-flash")
            logger.info("Using GEMINI_API_TOKEN via the OpenAI-compatible endpoint")

        self.AZURE_ENDPOINT = environ.get("AZURE_ENDPOINT")
        if self.AZURE_ENDPOINT:
            normalized = self.AZURE_ENDPOINT.strip()
            if normalized.lower().startswith("https://"):
                normalized = normalized[8:]
            elif normalized.lower().startswith("http://"):
                normalized = normalized[7:]
            normalized = normalized.strip("/")
            if normalized != self.AZURE_ENDPOINT:
                logger.info(f"Normalized AZURE_ENDPOINT to '{normalized}'")
            self.AZURE_ENDPOINT = normalized
        self.DEPLOYMENT_NAME = environ.get("DEPLOYMENT_NAME")
        self.OPENAI_API_VERSION = environ.get("OPENAI_API_VERSION")

        self.SUMMARIZER_HTTP_TIMEOUT = self._validate_positive_int("SUMMARIZER_HTTP_TIMEOUT", 60, 10)
        self.SUMMARIZER_MAX_RETRIES = self._validate_positive_int("SUMMARIZER_MAX_RETRIES", 3, 0)
        self.SUMMARIZER_RETRY_DELAY_BASE = self._validate_positive_float("SUMMARIZER_RETRY_DELAY_BASE", 1.0, 0.1)

        # File paths
        self.FEEDS_CONFIG_PATH = environ.get("FEEDS_CONFIG_PATH", path.join(base_dir, "feeds.yaml"))
        self.PROMPT_CONFIG_PATH = environ.get("PROMPT_CONFIG_PATH", path.join(base_dir, "prompt.yaml"))

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        Both a top-level mapping and the nested `environment:` form are accepted.
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

    def _load_feed_sources(self) -> None:
        """Populate self.FEED_SOURCES (ordered) from feeds.yaml.

        Any failure results in an empty list. An optional `settings:` section
        overrides run limits that were not set through the environment.
        """
        feeds_path = self.FEEDS_CONFIG_PATH
        config_data = self._safe_read_yaml(feeds_path, 5 * 1024 * 1024, 'feeds')
        self.FEED_SOURCES: List[FeedSource] = []
        if not isinstance(config_data, dict):
            return

        feeds_section = config_data.get('feeds')
        if not isinstance(feeds_section, dict):
            logger.warning(f"No valid feeds found in {feeds_path}")
            return

        for name, feed_cfg in feeds_section.items():
            if isinstance(feed_cfg, str) and feed_cfg.strip():
                url = feed_cfg.strip()
            elif isinstance(feed_cfg, dict) and isinstance(feed_cfg.get('url'), str):
                if feed_cfg.get('enabled') is False:
                    logger.info(f"Feed '{name}' disabled in {feeds_path}")
                    continue
                url = feed_cfg['url'].strip()
            else:
                logger.warning(f"Skipping invalid feed configuration for '{name}': {feed_cfg}")
                continue
            self.FEED_SOURCES.append(FeedSource(name=str(name), url=url))
            logger.debug(f"Loaded feed {name}: {url}")

        logger.info(f"Loaded {len(self.FEED_SOURCES)} feeds from {feeds_path}")

        settings = config_data.get('settings')
        if isinstance(settings, dict):
            self._apply_feed_settings(settings, feeds_path)

    def _apply_feed_settings(self, settings: Dict[str, Any], feeds_path: str) -> None:
        """Apply numeric run settings from feeds.yaml unless the environment set them."""
        overridable = {
            "max_posts_per_run": ("MAX_POSTS_PER_RUN", int, 1),
            "send_pacing_seconds": ("SEND_PACING_SECONDS", float, 0.0),
            "rate_limit_max_retries": ("RATE_LIMIT_MAX_RETRIES", int, 0),
        }
        for key, (attr, cast, minimum) in overridable.items():
            if key not in settings or attr in environ:
                continue
            raw = settings[key]
            try:
                value = cast(str(raw).strip())
            except (TypeError, ValueError):
                logger.warning(f"Invalid {key} value '{raw}' in {feeds_path}; keeping {getattr(self, attr)}")
                continue
            if value < minimum:
                logger.warning(f"{key} must be >= {minimum} in {feeds_path}; keeping {getattr(self, attr)}")
                continue
            setattr(self, attr, value)

    def validate_delivery(self) -> None:
        """Raise ConfigurationError when delivery credentials are missing."""
        missing = [name for name in ("TG_BOT_TOKEN", "TG_CHANNEL_ID") if not getattr(self, name)]
        if missing:
            raise ConfigurationError(f"Missing {' or '.join(missing)}", missing=missing)

    def summaries_enabled(self) -> bool:
        """True when summarization is switched on and an AI client can be configured."""
        if not self.ENABLE_SUMMARIES or not self.OPENAI_API_KEY:
            return False
        if self.AZURE_ENDPOINT:
            return bool(self.OPENAI_API_VERSION and self.DEPLOYMENT_NAME)
        return bool(self.OPENAI_MODEL)

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "feed_count": len(self.FEED_SOURCES),
            "state_file": self.STATE_FILE,
            "identity_fields": ",".join(self.IDENTITY_FIELDS),
            "max_posts_per_run": self.MAX_POSTS_PER_RUN,
            "send_pacing_seconds": self.SEND_PACING_SECONDS,
            "rate_limit_max_retries": self.RATE_LIMIT_MAX_RETRIES,
            "http_timeout": self.HTTP_TIMEOUT,
            "has_telegram_token": bool(self.TG_BOT_TOKEN),
            "has_telegram_channel": bool(self.TG_CHANNEL_ID),
            "summaries_enabled": self.summaries_enabled(),
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }


# Global configuration instance
config = Config()
