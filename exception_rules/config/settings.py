"""
Engine settings and configuration.

This module provides a centralized configuration management system using Pydantic.
It loads settings from environment variables, .env files, or falls back to defaults.
"""

import os
import logging
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator
from dotenv import load_dotenv

# Load environment variables from .env file if present
load_dotenv()

# Base directories
ROOT_DIR = Path(__file__).parent.parent.parent
LOG_DIR = ROOT_DIR / "logs"

ENV_PREFIX = "RULES_"


class CacheSettings(BaseModel):
    """Rule cache configuration settings."""

    default_ttl: float = Field(
        default=300.0,
        description="Lifetime of a cached chain rule list in seconds"
    )

    search_ttl: float = Field(
        default=120.0,
        description="Lifetime of cached search results in seconds"
    )

    @field_validator("default_ttl", "search_ttl")
    @classmethod
    def ttl_must_be_positive(cls, v):
        """Validate that TTLs are positive."""
        if v <= 0:
            raise ValueError("Cache TTL must be greater than zero")
        return v


class SearchSettings(BaseModel):
    """Search index configuration settings."""

    debounce_delay: float = Field(
        default=0.15,
        description="Quiescence window for debounced searches in seconds"
    )

    suggestion_limit: int = Field(
        default=5,
        description="Maximum number of autocomplete suggestions"
    )

    max_prefix_length: int = Field(
        default=10,
        description="Longest name prefix stored in the prefix index"
    )

    history_size: int = Field(
        default=50,
        description="Number of recent queries kept in search history"
    )


class DuplicationSettings(BaseModel):
    """Duplicate detection configuration settings."""

    similarity_threshold: float = Field(
        default=0.6,
        description="Minimum similarity (0.0-1.0) for a near-duplicate warning"
    )

    strong_similarity_threshold: float = Field(
        default=0.9,
        description="Similarity above which an existing rule is suggested for reuse"
    )

    max_name_length: int = Field(
        default=100,
        description="Maximum length of a rule name"
    )

    @field_validator("similarity_threshold", "strong_similarity_threshold")
    @classmethod
    def threshold_in_range(cls, v):
        """Validate that thresholds are ratios."""
        if not 0.0 < v <= 1.0:
            raise ValueError("Similarity thresholds must be within (0.0, 1.0]")
        return v


class UsageSettings(BaseModel):
    """Usage tracking configuration settings."""

    retention_days: int = Field(
        default=90,
        description="Usage records older than this are removed by cleanup"
    )

    stale_usage_days: int = Field(
        default=30,
        description="Days without any rule usage before health reports a warning"
    )


class LoggingSettings(BaseModel):
    """Logging configuration settings."""

    level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log message format"
    )

    file_enabled: bool = Field(
        default=False,
        description="Whether to write logs to a file"
    )

    console_enabled: bool = Field(
        default=True,
        description="Whether to write logs to console"
    )

    @field_validator("level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate that log level is valid."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v.upper()


class Settings(BaseModel):
    """Main engine settings."""

    app_name: str = Field(
        default="Exception Rule Engine",
        description="Application name"
    )

    app_version: str = Field(
        default="0.1.0",
        description="Application version"
    )

    # Sub-configurations
    cache: CacheSettings = Field(default_factory=lambda: CacheSettings(
        default_ttl=float(_env("CACHE_TTL", "300")),
        search_ttl=float(_env("SEARCH_CACHE_TTL", "120"))
    ))

    search: SearchSettings = Field(default_factory=lambda: SearchSettings(
        debounce_delay=float(_env("SEARCH_DEBOUNCE_DELAY", "0.15")),
        suggestion_limit=int(_env("SEARCH_SUGGESTION_LIMIT", "5")),
        max_prefix_length=int(_env("SEARCH_MAX_PREFIX_LENGTH", "10")),
        history_size=int(_env("SEARCH_HISTORY_SIZE", "50"))
    ))

    duplication: DuplicationSettings = Field(default_factory=lambda: DuplicationSettings(
        similarity_threshold=float(_env("SIMILARITY_THRESHOLD", "0.6")),
        strong_similarity_threshold=float(_env("STRONG_SIMILARITY_THRESHOLD", "0.9")),
        max_name_length=int(_env("MAX_NAME_LENGTH", "100"))
    ))

    usage: UsageSettings = Field(default_factory=lambda: UsageSettings(
        retention_days=int(_env("USAGE_RETENTION_DAYS", "90")),
        stale_usage_days=int(_env("STALE_USAGE_DAYS", "30"))
    ))

    logging: LoggingSettings = Field(default_factory=lambda: LoggingSettings(
        level=_env("LOG_LEVEL", "INFO"),
        format=_env("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"),
        file_enabled=_parse_bool(_env("LOG_FILE_ENABLED", "False")),
        console_enabled=_parse_bool(_env("LOG_CONSOLE_ENABLED", "True"))
    ))

    # Paths
    root_dir: Path = ROOT_DIR
    logs_dir: Path = LOG_DIR

    # Runtime configs
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )

    def __init__(self, **data: Any):
        """Initialize settings and apply environment overrides."""
        super().__init__(**data)

        # Allow debug mode override from environment
        self.debug_mode = _parse_bool(_env("DEBUG_MODE", str(self.debug_mode)))

    def ensure_log_dir(self) -> Path:
        """Create the log directory if needed and return it."""
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        if not os.access(self.logs_dir, os.W_OK):
            logging.warning(f"Directory {self.logs_dir} is not writable")
        return self.logs_dir


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    """Read a prefixed environment variable."""
    return os.environ.get(f"{ENV_PREFIX}{name}", default)


def _parse_bool(value: str) -> bool:
    """Parse string to boolean."""
    return value.lower() in ("true", "1", "t", "yes", "y")
