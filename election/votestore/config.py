"""
Configuration management for VoteStore.

Settings are loaded from environment variables (prefix ``VOTESTORE_``)
with pydantic-settings, then split into small frozen config sections that
the store, the query cache and the reconciliation engine consume.

Invariants:
    - All settings have sensible defaults for local development
    - Components never read the environment themselves; they receive
      their config section at construction time

How to change safely:
    - Add new settings with defaults that keep existing behavior
    - Expose new settings through the matching section dataclass
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StorageConfig:
    """Local storage configuration.

    Attributes:
        data_dir: Directory holding the SQLite files
        db_filename: Document store database file name
        cache_db_filename: Optimistic course cache database file name
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    data_dir: str = "./data"
    db_filename: str = "votaciones.db"
    cache_db_filename: str = "course_status.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000

    @property
    def db_path(self) -> Path:
        return Path(self.data_dir) / self.db_filename

    @property
    def cache_db_path(self) -> Path:
        return Path(self.data_dir) / self.cache_db_filename


@dataclass(frozen=True)
class CacheConfig:
    """Query cache configuration.

    Attributes:
        enabled: Whether find() may serve results from the cache
        max_entries: Maximum entries before least-used eviction
        ttl_seconds: Entry lifetime in seconds (0 = until invalidated)
        tag_ttl_seconds: Per-collection lifetimes overriding ttl_seconds
    """

    enabled: bool = True
    max_entries: int = 50
    ttl_seconds: float = 0.0
    tag_ttl_seconds: Mapping[str, float] = field(default_factory=dict)

    def ttl_for(self, tag: str) -> float:
        return self.tag_ttl_seconds.get(tag, self.ttl_seconds)


@dataclass(frozen=True)
class ReconcileConfig:
    """Reconciliation engine configuration.

    Attributes:
        revalidate_delay_seconds: Delay before the background revalidation
            pass that follows a course load
        revalidate_enabled: Whether the background pass is scheduled
    """

    revalidate_delay_seconds: float = 1.0
    revalidate_enabled: bool = True


class Settings(BaseSettings):
    """VoteStore configuration loaded from environment."""

    # Storage
    data_dir: str = Field(default="./data", description="Directory for SQLite files")
    db_filename: str = Field(default="votaciones.db", description="Document store file")
    cache_db_filename: str = Field(
        default="course_status.db", description="Optimistic course cache file"
    )
    sqlite_wal_mode: bool = Field(default=True, description="Enable SQLite WAL journal")
    sqlite_busy_timeout_ms: int = Field(default=5000, description="SQLite busy timeout")

    # Query cache
    cache_enabled: bool = Field(default=True, description="Serve cacheable finds from memory")
    cache_max_entries: int = Field(default=50, description="Max cached query results")
    cache_ttl_seconds: float = Field(
        default=0.0, description="Cached result lifetime in seconds (0=until invalidated)"
    )
    cache_tag_ttl_seconds: dict[str, float] = Field(
        default_factory=dict,
        description="Per-collection result lifetime, e.g. {\"students\": 120, \"votes\": 60}",
    )

    # Reconciliation
    revalidate_delay_seconds: float = Field(
        default=1.0, description="Delay before background cache/store revalidation"
    )
    revalidate_enabled: bool = Field(default=True, description="Schedule revalidation passes")

    # Observability
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="text", description="Log format (json, text)")

    model_config = {"env_prefix": "VOTESTORE_"}

    @property
    def storage(self) -> StorageConfig:
        return StorageConfig(
            data_dir=self.data_dir,
            db_filename=self.db_filename,
            cache_db_filename=self.cache_db_filename,
            wal_mode=self.sqlite_wal_mode,
            busy_timeout_ms=self.sqlite_busy_timeout_ms,
        )

    @property
    def cache(self) -> CacheConfig:
        return CacheConfig(
            enabled=self.cache_enabled,
            max_entries=self.cache_max_entries,
            ttl_seconds=self.cache_ttl_seconds,
            tag_ttl_seconds=dict(self.cache_tag_ttl_seconds),
        )

    @property
    def reconcile(self) -> ReconcileConfig:
        return ReconcileConfig(
            revalidate_delay_seconds=self.revalidate_delay_seconds,
            revalidate_enabled=self.revalidate_enabled,
        )

    def validate_settings(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.cache_max_entries < 1:
            raise ValueError("VOTESTORE_CACHE_MAX_ENTRIES must be at least 1")
        if self.cache_ttl_seconds < 0:
            raise ValueError("VOTESTORE_CACHE_TTL_SECONDS cannot be negative")
        for tag, ttl in self.cache_tag_ttl_seconds.items():
            if ttl < 0:
                raise ValueError(f"VOTESTORE_CACHE_TAG_TTL_SECONDS for '{tag}' cannot be negative")
        if self.revalidate_delay_seconds < 0:
            raise ValueError("VOTESTORE_REVALIDATE_DELAY_SECONDS cannot be negative")
        if self.log_format not in ("json", "text"):
            raise ValueError(f"Invalid VOTESTORE_LOG_FORMAT '{self.log_format}'. Must be json or text")
        if self.db_filename == self.cache_db_filename:
            raise ValueError("Document store and course cache must use different files")

        if not os.path.exists(self.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.data_dir}. "
                "It will be created on open."
            )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "VoteStore configuration loaded",
            extra={
                "data_dir": self.data_dir,
                "db_filename": self.db_filename,
                "cache_enabled": self.cache_enabled,
                "cache_max_entries": self.cache_max_entries,
                "revalidate_delay_seconds": self.revalidate_delay_seconds,
                "log_level": self.log_level,
            },
        )
