#!/usr/bin/env python3
"""
Configuration and logging for the Podcast Feed API.

Settings come from the process environment, optionally topped up by a .env
file next to this module and overridden by a YAML secrets file named in
SECRETS_FILE. Every numeric setting is range-checked; a bad value logs a
warning and falls back to its default instead of failing startup.
"""

from os import environ, path, access, R_OK
from typing import Any, Callable, Dict, Optional, Union
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

LOG_LEVELS = {"DEBUG": DEBUG, "INFO": INFO, "WARNING": WARNING, "ERROR": ERROR}

SECRETS_MAX_BYTES = 2 * 1024 * 1024

Number = Union[int, float]


def _setup_global_logger():
    """Configure root logging once for the whole process.

    Environment Variables:
        LOG_LEVEL: DEBUG, INFO, WARNING or ERROR (default INFO)
        LOG_TIMESTAMPS: false to drop timestamps (default true)
        ACCESS_LOG_LEVEL: level for aiohttp's per-request access log (default WARNING)
    """
    level = LOG_LEVELS.get(environ.get("LOG_LEVEL", "INFO").upper(), INFO)
    fields = ["%(name)s", "%(levelname)s", "%(message)s"]
    if environ.get("LOG_TIMESTAMPS", "true").lower() != "false":
        fields.insert(0, "%(asctime)s")

    basicConfig(
        level=level,
        format=" - ".join(fields),
        handlers=[StreamHandler(sys.stdout)],
        force=True,
    )
    getLogger("aiohttp.access").setLevel(LOG_LEVELS.get(environ.get("ACCESS_LOG_LEVEL", "WARNING").upper(), WARNING))
    return getLogger("PodcastFeed")


def get_logger(name: str):
    """Module logger under the shared "PodcastFeed" hierarchy (e.g. PodcastFeed.fetcher)."""
    return getLogger(f"PodcastFeed.{name}")


logger = _setup_global_logger()


class Config:
    """Validated runtime settings.

    Precedence, lowest first: process environment, .env file, YAML secrets
    file (``SECRETS_FILE``). The secrets file is a flat mapping or has the
    mapping under an ``environment`` key:

    ```yaml
    environment:
      USER_AGENT: "PodcastFeed/1.0 (+https://example.com)"
      MAX_FEED_BYTES: 2097152
    ```
    """

    def __init__(self):
        self._load_environment()
        self._validate_and_set_config()

    def _load_environment(self):
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Loaded environment variables from {dotenv_path}")
        self._load_secrets_file()

    def _env_number(self, env_var: str, default: Number, min_val: Number, cast: Callable[[str], Number]) -> Number:
        """Read a numeric setting; out-of-range or unparseable values fall back to default."""
        raw = environ.get(env_var)
        if raw is None or not raw.strip():
            return default
        try:
            value = cast(raw.strip())
        except ValueError:
            logger.warning(f"Invalid {env_var}={raw!r}, using default {default}")
            return default
        if value < min_val:
            logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
            return default
        return value

    def _validate_and_set_config(self):
        # Outbound fetches
        self.USER_AGENT = environ.get("USER_AGENT", "PodcastFeedAPI/1.0 (+rss-parser)")
        self.HTTP_TIMEOUT = self._env_number("HTTP_TIMEOUT", 10.0, 0.1, float)
        self.MAX_REDIRECTS = self._env_number("MAX_REDIRECTS", 3, 0, int)
        self.MAX_FEED_BYTES = self._env_number("MAX_FEED_BYTES", 5 * 1024 * 1024, 1024, int)
        self.MAX_DECODED_BYTES = self._env_number("MAX_DECODED_BYTES", 20 * 1024 * 1024, 1024, int)
        self.READ_CHUNK_SIZE = self._env_number("READ_CHUNK_SIZE", 64 * 1024, 512, int)

        # Pagination
        self.MAX_PAGE_SIZE = self._env_number("MAX_PAGE_SIZE", 50, 1, int)
        self.DEFAULT_PAGE_SIZE = self._env_number("DEFAULT_PAGE_SIZE", 10, 1, int)
        if self.DEFAULT_PAGE_SIZE > self.MAX_PAGE_SIZE:
            logger.warning(f"DEFAULT_PAGE_SIZE {self.DEFAULT_PAGE_SIZE} clamped to MAX_PAGE_SIZE {self.MAX_PAGE_SIZE}")
            self.DEFAULT_PAGE_SIZE = self.MAX_PAGE_SIZE

        # Shared-cache lifetimes advertised via Cache-Control (0 disables)
        self.PODCAST_CACHE_SECONDS = self._env_number("PODCAST_CACHE_SECONDS", 5 * 60 * 60, 0, int)
        self.EPISODES_CACHE_SECONDS = self._env_number("EPISODES_CACHE_SECONDS", 36 * 60 * 60, 0, int)

        # HTTP server
        self.HOST = environ.get("HOST", "0.0.0.0")
        self.PORT = self._env_number("PORT", 3000, 1, int)

    def _load_secrets_file(self):
        """Copy SECRETS_FILE entries into the environment, overriding existing values."""
        secrets_path = environ.get("SECRETS_FILE")
        if not secrets_path:
            return

        secrets = self._safe_read_yaml(secrets_path, SECRETS_MAX_BYTES)
        if not isinstance(secrets, dict):
            if secrets is not None:
                logger.warning(f"Secrets file {secrets_path} must be a YAML mapping at the top level")
            return

        entries = secrets["environment"] if isinstance(secrets.get("environment"), dict) else secrets
        loaded = 0
        for key, value in entries.items():
            if not isinstance(key, str) or value is None:
                logger.warning(f"Skipping invalid entry {key!r} in secrets file")
                continue
            environ[key] = str(value)
            loaded += 1
        logger.info(f"Loaded {loaded} settings from secrets file {secrets_path}")

    def _safe_read_yaml(self, file_path: str, max_size: int) -> Optional[Any]:
        """Parse a YAML file after existence, permission and size checks; None on any failure."""
        if not path.isfile(file_path):
            logger.warning(f"Secrets file not found at {file_path}")
            return None
        if not access(file_path, R_OK):
            logger.error(f"No read permission for secrets file at {file_path}")
            return None
        try:
            size = path.getsize(file_path)
            if size > max_size:
                logger.error(f"Secrets file too large: {size} bytes (limit: {max_size} bytes)")
                return None
            with open(file_path, 'r') as f:
                return yaml.safe_load(f) or None
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML in secrets file {file_path}: {e}")
        except OSError as e:
            logger.error(f"Error loading secrets file {file_path}: {e}")
        return None

    def get_config_summary(self) -> Dict[str, Any]:
        """Non-secret view of the active settings for startup diagnostics."""
        return {
            "user_agent": self.USER_AGENT,
            "http_timeout": self.HTTP_TIMEOUT,
            "max_redirects": self.MAX_REDIRECTS,
            "max_feed_bytes": self.MAX_FEED_BYTES,
            "max_decoded_bytes": self.MAX_DECODED_BYTES,
            "read_chunk_size": self.READ_CHUNK_SIZE,
            "default_page_size": self.DEFAULT_PAGE_SIZE,
            "max_page_size": self.MAX_PAGE_SIZE,
            "podcast_cache_seconds": self.PODCAST_CACHE_SECONDS,
            "episodes_cache_seconds": self.EPISODES_CACHE_SECONDS,
            "host": self.HOST,
            "port": self.PORT,
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }


# Global configuration instance
config = Config()
