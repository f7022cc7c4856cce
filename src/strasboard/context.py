"""
Application context for dependency injection.

This module provides a central container for all application dependencies,
eliminating the need for global singletons and enabling clean testing.

Usage:
    config = load_config()
    context = AppContext.create(config)
    await context.start()

    app = create_app(context=context)

    # On shutdown
    await context.shutdown()
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from strasboard.aggregator import Aggregator
from strasboard.cache import ResponseCache
from strasboard.config import Config
from strasboard.datasources.base import utcnow
from strasboard.datasources.registry import DataSourceRegistry, build_sources

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """
    Application context containing all shared dependencies.

    This class owns the lifecycle of all major components:
    - Configuration
    - Data sources (via the registry)
    - Response cache
    - Aggregator serving requests through the cache

    Attributes:
        config: Application configuration loaded from YAML
        registry: Registered data sources
        cache: ResponseCache shared by every fetch path
        aggregator: Fetch-with-cache and fan-out entry point
    """

    config: Config
    registry: DataSourceRegistry
    cache: ResponseCache
    aggregator: Aggregator
    _started: bool = field(default=False, repr=False)

    @classmethod
    def create(
        cls,
        config: Config,
        registry: Optional[DataSourceRegistry] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> "AppContext":
        """
        Factory method to create AppContext.

        Args:
            config: Application configuration
            registry: Data sources to serve; defaults to every built-in
                source configured from `config`
            clock: Current-time function shared by the cache

        Returns:
            Configured AppContext instance, not yet started
        """
        if registry is None:
            registry = build_sources(config)
        cache = ResponseCache(clock=clock)
        aggregator = Aggregator(cache, registry, fetch_timeout=config.cache.fetch_timeout)
        logger.debug(
            f"Created AppContext with {len(registry)} source(s), "
            f"fetch timeout={config.cache.fetch_timeout}s"
        )
        return cls(config=config, registry=registry, cache=cache, aggregator=aggregator)

    async def start(self, warmup: Optional[bool] = None) -> None:
        """
        Initialize all data sources and optionally warm up the cache.

        Args:
            warmup: Fetch every source once; defaults to config.server.warmup

        Note:
            If a data source fails to initialize, it is logged but other
            sources continue to be initialized.
        """
        if self._started:
            logger.warning("AppContext already started, ignoring start() call")
            return

        logger.info(f"Starting AppContext with {len(self.registry)} data source(s)...")
        initialized = await self.registry.initialize_all()
        self._started = True
        logger.info(f"AppContext started: {initialized}/{len(self.registry)} sources initialized")

        if warmup is None:
            warmup = self.config.server.warmup
        if warmup:
            await self.aggregator.warm_up()

    async def shutdown(self) -> None:
        """
        Clean shutdown of all data sources.

        Safe to call multiple times or before start().
        """
        if not self._started:
            logger.debug("AppContext not started, nothing to shutdown")
            return

        logger.info("Shutting down AppContext...")
        await self.registry.shutdown_all()
        self._started = False
        logger.info("AppContext shutdown complete")

    @property
    def is_started(self) -> bool:
        """Check if context has been started."""
        return self._started

    def __repr__(self) -> str:
        return f"AppContext(started={self._started}, sources={self.registry.names()})"
