"""
VoteStore runtime - wiring and lifecycle.

This module builds the components of one election session:
- DocumentStore (documents, indexes, query cache)
- OptimisticCacheStore (per-course status cache)
- ReconciliationEngine (injected with both)

Usage:
    python -m election.votestore.main

Runs a storage health check: opens both stores, logs document counts
and exits. Configuration is entirely via environment variables (see
config.py).

Invariants:
    - Components are constructed once per session and passed explicitly
    - A failed start is reported as a StartupResult, never raised
    - stop() cancels background revalidation before closing the stores

How to change safely:
    - Add new components to start() and tear them down in stop() in
      reverse order
"""

from __future__ import annotations

import asyncio
import logging
import sys
from dataclasses import dataclass

import json_log_formatter

from .config import Settings
from .errors import VoteStoreError
from .reconcile import OptimisticCacheStore, ReconciliationEngine
from .store import DocumentStore, QueryCache

logger = logging.getLogger(__name__)


def setup_logging(settings: Settings) -> None:
    """Configure logging based on configuration.

    Args:
        settings: VoteStore settings
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    if settings.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]


@dataclass
class StartupResult:
    """Outcome of ElectionRuntime.start().

    Attributes:
        success: Whether every component is open
        error: Failure description if not
    """

    success: bool
    error: str | None = None


class ElectionRuntime:
    """Owns the store, the optimistic cache and the engine of a session.

    Example:
        >>> async with ElectionRuntime(Settings()) as runtime:
        ...     result = await runtime.engine.load_course(context)
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or Settings()
        storage = self.settings.storage

        self.store = DocumentStore(
            data_dir=storage.data_dir,
            cache=QueryCache(self.settings.cache),
            db_filename=storage.db_filename,
            wal_mode=storage.wal_mode,
            busy_timeout_ms=storage.busy_timeout_ms,
        )
        self.cache = OptimisticCacheStore(
            data_dir=storage.data_dir,
            db_filename=storage.cache_db_filename,
            wal_mode=storage.wal_mode,
            busy_timeout_ms=storage.busy_timeout_ms,
        )
        self.engine = ReconciliationEngine(self.store, self.cache, self.settings.reconcile)
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> StartupResult:
        """Open both stores.

        Returns:
            StartupResult; the UI shows a degraded state on failure
        """
        if self._running:
            logger.warning("Runtime already running")
            return StartupResult(success=True)

        logger.info("Starting VoteStore runtime")
        try:
            self.settings.validate_settings()
            self.settings.log_config()
            await self.store.open()
            await self.cache.open()
        except (VoteStoreError, ValueError) as e:
            logger.error(f"Runtime startup failed: {e}", exc_info=True)
            await self.stop()
            return StartupResult(success=False, error=str(e))

        self._running = True
        logger.info("VoteStore runtime started")
        return StartupResult(success=True)

    async def stop(self) -> None:
        """Cancel background work and close the stores."""
        await self.engine.close()
        await self.cache.close()
        await self.store.close()
        if self._running:
            self._running = False
            logger.info("VoteStore runtime stopped")

    async def __aenter__(self) -> ElectionRuntime:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()


async def _health_check(settings: Settings) -> int:
    runtime = ElectionRuntime(settings)
    result = await runtime.start()
    if not result.success:
        return 1
    try:
        stats = await runtime.store.get_stats()
        logger.info("Storage healthy", extra={"collections": stats["collections"]})
    finally:
        await runtime.stop()
    return 0


def main() -> None:
    """Main entry point."""
    try:
        settings = Settings()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(settings)
    sys.exit(asyncio.run(_health_check(settings)))


if __name__ == "__main__":
    main()
