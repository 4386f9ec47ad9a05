"""
Configuration management for the profile crawler.

Settings come from ``config.json`` when it exists (validated against
``CONFIG_SCHEMA``) or from defaults, and are then overridden by ``SCRAPER_*``
environment variables, optionally loaded from a ``.env`` file. Numeric
environment overrides are clamped to safe ranges instead of rejected.
"""

import os
import threading
from typing import Dict, Any, Optional, Tuple
from dataclasses import dataclass, field, asdict
from pathlib import Path
import json
import logging

from jsonschema import validate, ValidationError

from profile_crawler.utils.errors import ConfigurationError


@dataclass
class RateLimitConfig:
    """Rate limiter and circuit breaker settings."""
    max_requests_per_minute: float = 30
    min_delay_ms: int = 1000
    max_delay_ms: int = 10000
    error_threshold: int = 5
    circuit_reset_time_ms: int = 60000
    window_seconds: float = 60.0
    poll_interval_seconds: float = 1.0
    max_backoff_penalty: float = 5.0


@dataclass
class ConcurrencyConfig:
    """Adaptive concurrency controller settings."""
    global_max_concurrency: int = 12
    requested_concurrency: Optional[int] = None
    adjust_interval_seconds: float = 15.0
    window_seconds: float = 60.0
    default_target_profiles_per_min: float = 20.0
    base_profile_delay_ms: int = 2500
    min_profile_delay_ms: int = 700
    max_profile_delay_ms: int = 8000


@dataclass
class BatchConfig:
    """Worker pool batching settings."""
    max_batch_size: int = 50
    item_delay_ms: int = 300
    chunk_cooldown_ms: int = 2000
    parallel_min_items: int = 3


@dataclass
class AuthConfig:
    """Re-authentication settings."""
    reauth_retry_limit: int = 3
    reauth_backoff_ms: int = 5000
    max_auth_retries_per_item: int = 2
    max_validation_retries_per_item: int = 1


@dataclass
class NavigationConfig:
    """Pagination and navigation retry settings."""
    page_delay_ms: int = 2000
    max_pages: int = 5
    navigation_retry_attempts: int = 3
    navigation_retry_delay_ms: int = 1000
    stall_page_limit: int = 2


@dataclass
class DatabaseConfig:
    """Database configuration settings."""
    sqlite_path: str = "data/profile_crawler.db"


@dataclass
class BrowserConfig:
    """Browser execution context settings."""
    headless: bool = True
    browser_type: str = "chromium"
    viewport_width: int = 1366
    viewport_height: int = 768
    page_timeout_ms: int = 30000
    user_agent: Optional[str] = None


@dataclass
class SystemConfig:
    """Main system configuration."""
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    concurrency: ConcurrencyConfig = field(default_factory=ConcurrencyConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    navigation: NavigationConfig = field(default_factory=NavigationConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    browser: BrowserConfig = field(default_factory=BrowserConfig)
    log_level: str = "INFO"
    log_file: Optional[str] = None
    checkpoint_retention_days: int = 30


SECTION_TYPES = {
    "rate_limit": RateLimitConfig,
    "concurrency": ConcurrencyConfig,
    "batch": BatchConfig,
    "auth": AuthConfig,
    "navigation": NavigationConfig,
    "database": DatabaseConfig,
    "browser": BrowserConfig,
}


# Configuration schema for validation
CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "rate_limit": {
            "type": "object",
            "properties": {
                "max_requests_per_minute": {"type": "number", "minimum": 1, "maximum": 600},
                "min_delay_ms": {"type": "integer", "minimum": 0, "maximum": 600000},
                "max_delay_ms": {"type": "integer", "minimum": 0, "maximum": 600000},
                "error_threshold": {"type": "integer", "minimum": 1, "maximum": 100},
                "circuit_reset_time_ms": {"type": "integer", "minimum": 0, "maximum": 3600000},
                "window_seconds": {"type": "number", "minimum": 1, "maximum": 3600},
                "poll_interval_seconds": {"type": "number", "minimum": 0, "maximum": 60},
                "max_backoff_penalty": {"type": "number", "minimum": 0, "maximum": 100}
            },
            "additionalProperties": False
        },
        "concurrency": {
            "type": "object",
            "properties": {
                "global_max_concurrency": {"type": "integer", "minimum": 1, "maximum": 64},
                "requested_concurrency": {"type": ["integer", "null"], "minimum": 1, "maximum": 64},
                "adjust_interval_seconds": {"type": "number", "minimum": 0, "maximum": 3600},
                "window_seconds": {"type": "number", "minimum": 1, "maximum": 3600},
                "default_target_profiles_per_min": {"type": "number", "exclusiveMinimum": 0},
                "base_profile_delay_ms": {"type": "integer", "minimum": 0, "maximum": 600000},
                "min_profile_delay_ms": {"type": "integer", "minimum": 0, "maximum": 600000},
                "max_profile_delay_ms": {"type": "integer", "minimum": 0, "maximum": 600000}
            },
            "additionalProperties": False
        },
        "batch": {
            "type": "object",
            "properties": {
                "max_batch_size": {"type": "integer", "minimum": 1, "maximum": 1000},
                "item_delay_ms": {"type": "integer", "minimum": 0, "maximum": 600000},
                "chunk_cooldown_ms": {"type": "integer", "minimum": 0, "maximum": 600000},
                "parallel_min_items": {"type": "integer", "minimum": 1, "maximum": 1000}
            },
            "additionalProperties": False
        },
        "auth": {
            "type": "object",
            "properties": {
                "reauth_retry_limit": {"type": "integer", "minimum": 1, "maximum": 10},
                "reauth_backoff_ms": {"type": "integer", "minimum": 0, "maximum": 600000},
                "max_auth_retries_per_item": {"type": "integer", "minimum": 0, "maximum": 10},
                "max_validation_retries_per_item": {"type": "integer", "minimum": 0, "maximum": 10}
            },
            "additionalProperties": False
        },
        "navigation": {
            "type": "object",
            "properties": {
                "page_delay_ms": {"type": "integer", "minimum": 0, "maximum": 600000},
                "max_pages": {"type": "integer", "minimum": 1, "maximum": 10000},
                "navigation_retry_attempts": {"type": "integer", "minimum": 1, "maximum": 20},
                "navigation_retry_delay_ms": {"type": "integer", "minimum": 0, "maximum": 600000},
                "stall_page_limit": {"type": "integer", "minimum": 1, "maximum": 100}
            },
            "additionalProperties": False
        },
        "database": {
            "type": "object",
            "properties": {
                "sqlite_path": {"type": "string", "minLength": 1}
            },
            "additionalProperties": False
        },
        "browser": {
            "type": "object",
            "properties": {
                "headless": {"type": "boolean"},
                "browser_type": {"type": "string", "enum": ["chromium", "firefox", "webkit"]},
                "viewport_width": {"type": "integer", "minimum": 320, "maximum": 7680},
                "viewport_height": {"type": "integer", "minimum": 240, "maximum": 4320},
                "page_timeout_ms": {"type": "integer", "minimum": 1000, "maximum": 600000},
                "user_agent": {"type": ["string", "null"]}
            },
            "additionalProperties": False
        },
        "log_level": {
            "type": "string",
            "enum": ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        },
        "log_file": {"type": ["string", "null"]},
        "checkpoint_retention_days": {"type": "integer", "minimum": 1, "maximum": 3650}
    },
    "additionalProperties": False
}


# name -> (section, attribute, minimum, maximum, integer)
ENV_NUMBER_OVERRIDES: Dict[str, Tuple[str, str, float, float, bool]] = {
    "SCRAPER_CONCURRENCY": ("concurrency", "requested_concurrency", 1, 12, True),
    "SCRAPER_MAX_RPM": ("rate_limit", "max_requests_per_minute", 6, 40, False),
    "SCRAPER_RPM_LIMIT": ("rate_limit", "max_requests_per_minute", 6, 40, False),
    "SCRAPER_PROFILE_DELAY_MS": ("concurrency", "base_profile_delay_ms", 500, 12000, True),
    "SCRAPER_PAGE_DELAY_MS": ("navigation", "page_delay_ms", 1000, 10000, True),
    "SCRAPER_MAX_PAGES": ("navigation", "max_pages", 1, 500, True),
    "SCRAPER_REAUTH_RETRY_LIMIT": ("auth", "reauth_retry_limit", 1, 10, True),
    "SCRAPER_REAUTH_BACKOFF_MS": ("auth", "reauth_backoff_ms", 2000, 60000, True),
    "SCRAPER_BATCH_SIZE": ("batch", "max_batch_size", 1, 200, True),
}


def get_env_number(name: str, fallback: Optional[float], minimum: float, maximum: float,
                   integer: bool = True) -> Optional[float]:
    """
    Read a numeric environment variable and clamp it into ``[minimum, maximum]``.

    Returns ``fallback`` when the variable is unset or not a number.
    """
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return fallback
    try:
        value = float(raw)
    except ValueError:
        logging.warning(f"Ignoring non-numeric environment variable {name}={raw!r}")
        return fallback
    value = max(minimum, min(maximum, value))
    return int(round(value)) if integer else value


class ConfigManager:
    """Configuration manager with schema validation and environment overrides."""

    def __init__(self, config_path: str = "config.json", env_file: Optional[str] = ".env"):
        self.config_path = Path(config_path)
        self.env_file = Path(env_file) if env_file else None
        self._config: Optional[SystemConfig] = None
        self._last_modified: Optional[float] = None
        self._lock = threading.RLock()

    def validate_config(self, config_data: Dict[str, Any]) -> None:
        """Validate configuration data against schema."""
        try:
            validate(instance=config_data, schema=CONFIG_SCHEMA)
        except ValidationError as e:
            raise ConfigurationError(
                f"Configuration validation failed: {e.message}",
                {"path": list(e.absolute_path)}
            )

    def load_config(self) -> SystemConfig:
        """Load configuration from file (or defaults) and apply environment overrides."""
        with self._lock:
            if self.config_path.exists():
                current_modified = self.config_path.stat().st_mtime
                if self._config is None or current_modified != self._last_modified:
                    self._load_from_file()
                    self._last_modified = current_modified
            elif self._config is None:
                self._config = SystemConfig()
                self._apply_env_overrides()
                logging.info("Configuration loaded from defaults and environment variables")

            return self._config

    def _load_from_file(self) -> None:
        """Load configuration from JSON file with validation."""
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                config_data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(
                f"Failed to read configuration file {self.config_path}",
                {"error": str(e)}
            )

        self.validate_config(config_data)
        self._config = self._dict_to_config(config_data)
        self._apply_env_overrides()

        logging.info(f"Configuration loaded and validated from {self.config_path}")

    def _load_env_file(self) -> None:
        """Copy ``KEY=VALUE`` lines from the .env file into the environment."""
        if self.env_file is None or not self.env_file.exists():
            return
        try:
            with open(self.env_file, 'r', encoding='utf-8') as f:
                for line in f:
                    line = line.strip()
                    if line and not line.startswith('#') and '=' in line:
                        key, value = line.split('=', 1)
                        os.environ[key.strip()] = value.strip().strip('"').strip("'")
            logging.info(f"Loaded environment variables from {self.env_file}")
        except OSError as e:
            logging.warning(f"Failed to load {self.env_file}: {e}")

    def _apply_env_overrides(self) -> None:
        """Override configuration with ``SCRAPER_*`` environment variables."""
        self._load_env_file()
        config = self._config

        for name, (section, attribute, minimum, maximum, integer) in ENV_NUMBER_OVERRIDES.items():
            target = getattr(config, section)
            current = getattr(target, attribute)
            value = get_env_number(name, current, minimum, maximum, integer)
            if value != current:
                setattr(target, attribute, value)
                logging.info(f"Environment override {name}: {section}.{attribute} = {value}")

        if os.getenv("SCRAPER_DB_PATH"):
            config.database.sqlite_path = os.getenv("SCRAPER_DB_PATH")

        if os.getenv("SCRAPER_HEADLESS"):
            config.browser.headless = os.getenv("SCRAPER_HEADLESS").lower() not in ("0", "false", "no")

        if os.getenv("LOG_LEVEL"):
            config.log_level = os.getenv("LOG_LEVEL").upper()

    def _dict_to_config(self, data: Dict[str, Any]) -> SystemConfig:
        """Convert dictionary to SystemConfig object."""
        config = SystemConfig()

        for section, section_type in SECTION_TYPES.items():
            if section in data:
                setattr(config, section, section_type(**data[section]))

        config.log_level = data.get("log_level", config.log_level)
        config.log_file = data.get("log_file", config.log_file)
        config.checkpoint_retention_days = data.get(
            "checkpoint_retention_days", config.checkpoint_retention_days
        )

        return config

    def reload_if_changed(self) -> bool:
        """Reload the configuration if the file changed on disk."""
        with self._lock:
            if not self.config_path.exists():
                return False

            current_modified = self.config_path.stat().st_mtime
            if current_modified != self._last_modified:
                self.load_config()
                return True
            return False

    def export_config(self) -> Dict[str, Any]:
        """Export current configuration as dictionary."""
        with self._lock:
            if not self._config:
                return {}

            exported = {
                section: asdict(getattr(self._config, section))
                for section in SECTION_TYPES
            }
            exported["log_level"] = self._config.log_level
            exported["log_file"] = self._config.log_file
            exported["checkpoint_retention_days"] = self._config.checkpoint_retention_days
            return exported

    def save_config(self, config_path: Optional[str] = None) -> None:
        """Save current configuration to file."""
        with self._lock:
            if not self._config:
                raise ConfigurationError("No configuration loaded to save")

            save_path = Path(config_path) if config_path else self.config_path
            config_dict = self.export_config()
            self.validate_config(config_dict)

            save_path.parent.mkdir(parents=True, exist_ok=True)
            with open(save_path, 'w', encoding='utf-8') as f:
                json.dump(config_dict, f, indent=2, ensure_ascii=False)

            logging.info(f"Configuration saved to {save_path}")


# Global config manager instance
config_manager = ConfigManager()


def get_config() -> SystemConfig:
    """Get the current system configuration."""
    return config_manager.load_config()


def reload_config() -> SystemConfig:
    """Force reload configuration and return updated config."""
    with config_manager._lock:
        config_manager._config = None
        config_manager._last_modified = None
    return config_manager.load_config()
