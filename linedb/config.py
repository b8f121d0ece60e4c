"""
Configuration management for linedb.

Settings come from environment variables (prefix LINEDB_) or from explicit
constructor arguments. Each section is its own settings class so it can be
built and overridden independently in tests.

Invariants:
    - All settings have sensible defaults for local development
    - Durability settings (fsync) default to the safe choice

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep environment variable names stable, deployments depend on them
"""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class StorageBackend(str, Enum):
    """Supported backing stores."""

    FILE = "file"
    MEMORY = "memory"


class StorageConfig(BaseSettings):
    """Backing store configuration.

    Attributes:
        backend: Where collection bytes live
        data_dir: Directory holding one file per collection
        file_pattern: File name pattern for a collection
        fsync: fsync on every commit and on compaction swaps
    """

    backend: StorageBackend = Field(default=StorageBackend.FILE)
    data_dir: Path = Field(default=Path("./data"))
    file_pattern: str = Field(default="{collection}.jsonl")
    fsync: bool = Field(default=True)

    model_config = {"env_prefix": "LINEDB_"}

    @field_validator("file_pattern")
    @classmethod
    def _pattern_has_placeholder(cls, value: str) -> str:
        if "{collection}" not in value:
            raise ValueError("file_pattern must contain '{collection}'")
        return value


class CompactionConfig(BaseSettings):
    """Compaction policy.

    Attributes:
        enabled: Whether automatic compaction runs at all
        interval_seconds: Period of the database-wide compaction loop
        min_superseded_lines: Lines compaction would drop before an automatic
            compaction is considered
        garbage_ratio: Fraction of superseded lines in the file that triggers
            automatic compaction once min_superseded_lines is reached
        compact_on_close: Compact collections with garbage when closing
    """

    enabled: bool = Field(default=True)
    interval_seconds: float = Field(default=300.0, gt=0)
    min_superseded_lines: int = Field(default=1000, ge=1)
    garbage_ratio: float = Field(default=0.5, ge=0.0, le=1.0)
    compact_on_close: bool = Field(default=True)

    model_config = {"env_prefix": "LINEDB_COMPACT_"}


class FeedConfig(BaseSettings):
    """Change feed configuration.

    Attributes:
        retention: Number of most recent events kept in memory (0 = all)
    """

    retention: int = Field(default=0, ge=0)

    model_config = {"env_prefix": "LINEDB_FEED_"}


class MutationConfig(BaseSettings):
    """Write path configuration.

    Attributes:
        default_timeout: Seconds a mutation may wait to be accepted
            (None = wait indefinitely). Never interrupts an accepted write.
    """

    default_timeout: float | None = Field(default=None, gt=0)

    model_config = {"env_prefix": "LINEDB_MUTATION_"}


class ObservabilityConfig(BaseSettings):
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")

    model_config = {"env_prefix": "LINEDB_"}


class LinedbConfig(BaseSettings):
    """Complete configuration.

    Attributes:
        storage: Backing store configuration
        compaction: Compaction policy
        feed: Change feed configuration
        mutation: Write path configuration
        observability: Logging configuration
    """

    storage: StorageConfig = Field(default_factory=StorageConfig)
    compaction: CompactionConfig = Field(default_factory=CompactionConfig)
    feed: FeedConfig = Field(default_factory=FeedConfig)
    mutation: MutationConfig = Field(default_factory=MutationConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    model_config = {"env_prefix": "LINEDB_", "env_nested_delimiter": "__"}

    @classmethod
    def from_env(cls) -> LinedbConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If configuration is invalid.
        """
        config = cls()
        config.validate_config()
        return config

    def validate_config(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.observability.log_format not in ("json", "text"):
            raise ValueError(f"Invalid log format '{self.observability.log_format}'. Must be one of: json, text")

        if self.storage.backend == StorageBackend.FILE and not self.storage.data_dir.exists():
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first write."
            )

        if self.storage.backend == StorageBackend.FILE and not self.storage.fsync:
            logger.warning("fsync is disabled; committed writes may be lost on power failure")

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "linedb configuration loaded",
            extra={
                "backend": self.storage.backend.value,
                "data_dir": str(self.storage.data_dir),
                "fsync": self.storage.fsync,
                "compaction_enabled": self.compaction.enabled,
                "compaction_interval_seconds": self.compaction.interval_seconds,
                "feed_retention": self.feed.retention,
                "log_level": self.observability.log_level,
            },
        )
