"""
Fetch-with-cache and concurrent fan-out across data sources.

The aggregator is the only place that talks to both the sources and the
response cache. A request for one source goes through fetch_cached(); a
request for the combined view fans out one task per source and joins them
all before returning.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from .cache import ResponseCache
from .datasources.base import DataSource, MultiItemSource, Result, format_timestamp
from .datasources.registry import DataSourceRegistry
from .errors import TRANSIENT_TTL

logger = logging.getLogger(__name__)

DEFAULT_FETCH_TIMEOUT = 15.0
INVALID_ITEM_TTL = timedelta(minutes=1)


@dataclass
class AggregateResult:
    """Results of every configured source plus the assembly timestamp."""

    results: dict[str, Result]
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        encoded: dict[str, Any] = {name: r.to_dict() for name, r in self.results.items()}
        encoded["timestamp"] = format_timestamp(self.timestamp)
        return encoded


class Aggregator:
    """
    Serves source results through the response cache.

    Concurrent cold fetches of the same key are not deduplicated: each
    caller may reach the upstream, and the cache keeps the last write.
    """

    def __init__(
        self,
        cache: ResponseCache,
        registry: DataSourceRegistry,
        fetch_timeout: float = DEFAULT_FETCH_TIMEOUT,
    ):
        """
        Initialize the aggregator.

        Args:
            cache: Shared response cache
            registry: Configured sources, keyed by unique name
            fetch_timeout: Ceiling in seconds on a single upstream fetch
        """
        self.cache = cache
        self.fetch_timeout = fetch_timeout
        self.registry = registry

    @property
    def source_names(self) -> list[str]:
        return self.registry.names()

    def get_source(self, name: str) -> Optional[DataSource]:
        return self.registry.get(name)

    async def _guarded_fetch(self, key: str, call) -> Result:
        """Run a source call under the timeout ceiling, never raising."""
        try:
            return await asyncio.wait_for(call(), timeout=self.fetch_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Fetch timed out after {self.fetch_timeout}s: {key}")
            return Result.failure("timeout", TRANSIENT_TTL, now=self.cache.clock())
        except Exception as e:
            logger.error(f"Unhandled error fetching {key}: {e}", exc_info=True)
            message = str(e) or type(e).__name__
            return Result.failure(message, TRANSIENT_TTL, now=self.cache.clock())

    async def _fetch_with_cache(self, key: str, call, degraded_ttl: timedelta) -> Result:
        cached = await self.cache.get(key)
        if cached is not None:
            return cached

        result = await self._guarded_fetch(key, call)
        if not result.ok:
            backup = await self.cache.get_backup(key)
            if backup is not None:
                logger.info(f"Serving degraded data for {key}: {result.error}")
                result = Result.compose_degraded(backup, result)
            else:
                logger.warning(f"No data available for {key}: {result.error}")

        await self.cache.set(key, result, degraded_ttl)
        return result

    async def fetch_cached(self, source: DataSource) -> Result:
        """
        Fetch a source through the cache, falling back to degraded data.

        Args:
            source: Data source to fetch

        Returns:
            A fresh cached result, a newly fetched result, a degraded result
            (backup data plus the new error) or an error-only result
        """
        return await self._fetch_with_cache(source.name(), source.fetch, source.degraded_ttl())

    async def fetch_cached_by_name(self, name: str) -> Result:
        """
        Fetch a configured source by name.

        Raises:
            KeyError: If no source has that name
        """
        source = self.registry.get(name)
        if source is None:
            raise KeyError(name)
        return await self.fetch_cached(source)

    async def fetch_one(self, name: str, item_id: Any) -> Result:
        """
        Fetch a single sub-entity of a source through the shared cache.

        The cache key is derived from the source name and the item id, so
        sub-entities get their own current and backup results. A source that
        cannot serve any item (e.g. not configured) and unknown item ids are
        answered with an error and never reach the cache.

        Raises:
            KeyError: If no source has that name
        """
        source = self.registry.get(name)
        if source is None:
            raise KeyError(name)

        now = self.cache.clock()
        if not isinstance(source, MultiItemSource):
            return Result.failure(f"{name} has no sub-entities", INVALID_ITEM_TTL, now=now)
        error = source.unavailable()
        if error is not None:
            return Result.from_error(error, now=now)
        if not source.has_item(item_id):
            return Result.failure("invalid id", INVALID_ITEM_TTL, now=now)

        key = f"{name}/{item_id}"
        return await self._fetch_with_cache(
            key, lambda: source.fetch_one(item_id), source.degraded_ttl()
        )

    async def fetch_all(self) -> AggregateResult:
        """
        Fetch every configured source concurrently.

        One task per source; all are joined before returning. A failing or
        slow source only affects its own entry.
        """
        sources = self.registry.get_all()
        results = await asyncio.gather(*(self.fetch_cached(source) for source in sources))
        return AggregateResult(
            results={source.name(): result for source, result in zip(sources, results)},
            timestamp=self.cache.clock(),
        )

    async def warm_up(self) -> AggregateResult:
        """Populate the cache once so the first request is not cold."""
        logger.info(f"Warming up cache for {len(self.registry)} source(s)...")
        aggregate = await self.fetch_all()
        healthy = sum(1 for r in aggregate.results.values() if r.ok)
        logger.info(f"Cache warm-up complete: {healthy}/{len(aggregate.results)} healthy")
        return aggregate
