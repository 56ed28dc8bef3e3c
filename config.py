#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Configuration module for Vidrich.

Defines configuration parameters and loads values from environment variables.
"""

import os
import logging
from typing import List, Dict, Any

# Initialize a basic logger for config loading issues
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Default configuration values
_CONFIG_DEFAULTS: Dict[str, Any] = {
    # YouTube Data API
    "API_KEY": "",
    "API_KEY_ENV_VAR": "YOUTUBE_API_KEY",
    "API_KEY_SALT_ENV_VAR": "YOUTUBE_API_KEY_SALT",
    "API_KEY_PASSWORD_ENV_VAR": "YOUTUBE_API_KEY_PASSWORD",
    "API_BATCH_SIZE": 50,  # Max ids accepted by videos.list
    "API_QUOTA_LIMIT": 10000,  # Daily quota units
    "API_TIMEOUT_SECONDS": 20.0,
    "MIN_DELAY_MS": 100,  # Min delay between API calls
    "MAX_DELAY_MS": 400,  # Max delay between API calls

    # Orchestration
    "BATCH_SIZE": 50,
    "CONCURRENCY_LIMIT": 5,
    "STRATEGY_ORDER": ["api", "scraping", "llm"],
    "ENABLE_FALLBACK": True,
    "FALLBACK_ON_UNAVAILABLE": False,  # Try the next strategy after ContentUnavailable
    "MAX_IDENTIFIERS_PER_REQUEST": 500,

    # Retry & Timeouts
    "RETRY_ATTEMPTS": 3,
    "RETRY_BASE_DELAY_MS": 1000,
    "RETRY_MAX_DELAY_MS": 10000,
    "CALL_TIMEOUT_SECONDS": 30.0,  # Hard per-call timeout

    # Scraping
    "REQUEST_DELAY_MS": 2000,  # Min delay between requests to the same host
    "SCRAPE_TIMEOUT_SECONDS": 15.0,
    "WATCH_URL_TEMPLATE": "https://www.youtube.com/watch?v={video_id}",

    # Circuit Breaker
    "CIRCUIT_BREAKER_THRESHOLD": 10,  # Consecutive failures before opening
    "CIRCUIT_BREAKER_RESET_TIMEOUT": 300,  # Seconds before trying half-open state
    "CIRCUIT_HALF_OPEN_REQUESTS": 1,  # Trial calls allowed while half-open

    # LLM
    "LLM_PROVIDER": "openrouter",
    "LLM_BASE_URL": "https://openrouter.ai/api/v1",
    "LLM_API_KEY": "",
    "LLM_API_KEY_ENV_VAR": "OPENROUTER_API_KEY",
    "LLM_API_KEY_SALT_ENV_VAR": "OPENROUTER_API_KEY_SALT",
    "LLM_API_KEY_PASSWORD_ENV_VAR": "OPENROUTER_API_KEY_PASSWORD",
    "LLM_MODEL": "claude-3-haiku",
    "LLM_MAX_TOKENS": 2000,
    "LLM_TEMPERATURE": 0.1,
    "LLM_MAX_CONTENT_CHARS": 80000,
    "LLM_APP_URL": "https://github.com/vidrich/vidrich",
    "LLM_APP_TITLE": "Vidrich Metadata Enrichment",

    # Budget
    "COST_CEILING": 10.0,  # USD per process lifetime until an operator reset

    # Caching
    "CACHE_BACKEND": "memory",  # memory, remote or tiered
    "CACHE_TTL_SECONDS": 7200,
    "CACHE_MAX_SIZE": 10000,
    "CACHE_EVICTION_PERCENT": 20,  # Percentage of entries to evict when cache is full
    "REMOTE_CACHE_URL": "http://localhost:8080",
    "REMOTE_CACHE_TIMEOUT_SECONDS": 2.0,

    # Web Server
    "DEFAULT_ENCODING": "utf-8",

    # CORS
    "ALLOWED_ORIGINS": [
        "http://localhost:8000",
        "http://127.0.0.1:8000",
    ],
}


class Config:
    """Configuration class that loads values from environment variables."""

    def __init__(self, load_from_env=True):
        """Initialize configuration with default values and optionally from environment.

        Args:
            load_from_env: Whether to load values from environment variables
        """
        # Set all default values as attributes (copy lists so instances stay independent)
        for key, value in _CONFIG_DEFAULTS.items():
            setattr(self, key, list(value) if isinstance(value, list) else value)

        # Load from environment if requested
        if load_from_env:
            self.load_from_env()

    def load_from_env(self):
        """Load configuration values from environment variables."""
        # Load API keys
        self.API_KEY = os.environ.get(self.API_KEY_ENV_VAR, self.API_KEY)
        self.LLM_API_KEY = os.environ.get(self.LLM_API_KEY_ENV_VAR, self.LLM_API_KEY)

        # Load list values
        self._load_list_from_env("ALLOWED_ORIGINS")
        self._load_list_from_env("STRATEGY_ORDER")

        # Load string values
        for key in ("LLM_PROVIDER", "LLM_BASE_URL", "LLM_MODEL", "LLM_APP_URL",
                    "LLM_APP_TITLE", "CACHE_BACKEND", "REMOTE_CACHE_URL"):
            env_value = os.environ.get(key)
            if env_value:
                setattr(self, key, env_value.strip())

        # Load numeric values with type conversion
        self._load_int_from_env("API_BATCH_SIZE")
        self._load_int_from_env("API_QUOTA_LIMIT")
        self._load_float_from_env("API_TIMEOUT_SECONDS")
        self._load_int_from_env("MIN_DELAY_MS")
        self._load_int_from_env("MAX_DELAY_MS")
        self._load_int_from_env("BATCH_SIZE")
        self._load_int_from_env("CONCURRENCY_LIMIT")
        self._load_int_from_env("MAX_IDENTIFIERS_PER_REQUEST")
        self._load_int_from_env("RETRY_ATTEMPTS")
        self._load_int_from_env("RETRY_BASE_DELAY_MS")
        self._load_int_from_env("RETRY_MAX_DELAY_MS")
        self._load_float_from_env("CALL_TIMEOUT_SECONDS")
        self._load_int_from_env("REQUEST_DELAY_MS")
        self._load_float_from_env("SCRAPE_TIMEOUT_SECONDS")
        self._load_int_from_env("CIRCUIT_BREAKER_THRESHOLD")
        self._load_int_from_env("CIRCUIT_BREAKER_RESET_TIMEOUT")
        self._load_int_from_env("CIRCUIT_HALF_OPEN_REQUESTS")
        self._load_int_from_env("LLM_MAX_TOKENS")
        self._load_float_from_env("LLM_TEMPERATURE")
        self._load_int_from_env("LLM_MAX_CONTENT_CHARS")
        self._load_float_from_env("COST_CEILING")
        self._load_int_from_env("CACHE_TTL_SECONDS")
        self._load_int_from_env("CACHE_MAX_SIZE")
        self._load_float_from_env("REMOTE_CACHE_TIMEOUT_SECONDS")

        # Load boolean values
        self._load_bool_from_env("ENABLE_FALLBACK")
        self._load_bool_from_env("FALLBACK_ON_UNAVAILABLE")

        # Warn if API keys are missing
        if not self.API_KEY:
            logger.warning(f"YouTube API key not found in env var {self.API_KEY_ENV_VAR}. The api strategy will be disabled.")
        if not self.LLM_API_KEY:
            logger.warning(f"LLM API key not found in env var {self.LLM_API_KEY_ENV_VAR}. The llm strategy will be disabled.")

    def _load_int_from_env(self, key):
        """Load an integer value from environment variable.

        Args:
            key: The configuration key to load

        Returns:
            bool: True if the value was loaded, False otherwise
        """
        env_value = os.environ.get(key)
        if env_value is not None:
            try:
                setattr(self, key, int(env_value))
                return True
            except ValueError:
                logger.warning(f"Invalid integer value for {key}: {env_value}")
        return False

    def _load_float_from_env(self, key):
        """Load a float value from environment variable.

        Args:
            key: The configuration key to load

        Returns:
            bool: True if the value was loaded, False otherwise
        """
        env_value = os.environ.get(key)
        if env_value is not None:
            try:
                setattr(self, key, float(env_value))
                return True
            except ValueError:
                logger.warning(f"Invalid float value for {key}: {env_value}")
        return False

    def _load_bool_from_env(self, key):
        """Load a boolean value from environment variable.

        Returns:
            bool: True if the value was loaded, False otherwise
        """
        env_value = os.environ.get(key)
        if env_value is None:
            return False
        normalized = env_value.strip().lower()
        if normalized in ("true", "1", "yes", "y", "on"):
            setattr(self, key, True)
        elif normalized in ("false", "0", "no", "n", "off"):
            setattr(self, key, False)
        else:
            logger.warning(f"Invalid boolean value for {key}: {env_value}")
            return False
        return True

    def _load_list_from_env(self, key) -> bool:
        """Load a comma-separated list from environment variable."""
        env_value = os.environ.get(key, "")
        if not env_value:
            return False
        items: List[str] = [item.strip() for item in env_value.split(",")]
        items = [item for item in items if item]
        if not items:
            logger.warning(f"Empty list value for {key}, keeping default.")
            return False
        setattr(self, key, items)
        logger.info(f"{key} set from environment: {items}")
        return True


# Create a single instance of Config to be imported by other modules
config = Config(load_from_env=True)
