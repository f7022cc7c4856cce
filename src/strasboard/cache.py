"""
Response cache for StrasBoard.

This module provides the in-memory layer that:
- Keeps the latest Result per source key, served while it is fresh
- Keeps a separate backup of the latest success with a longer degraded TTL
- Provides async-safe access to both from concurrent fetch paths
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from .datasources.base import Result, format_timestamp, utcnow

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    """
    Per-key cache state.

    Attributes:
        current: Most recent result, success or failure
        backup: Most recent success only, with its own degraded expiration
    """

    current: Optional[Result] = None
    backup: Optional[Result] = None


class ResponseCache:
    """
    Keyed store of source results with a degraded-mode backup.

    Entries are created lazily on first write and never evicted; the key
    set is bounded by the configured sources. Each read or write holds the
    lock for that single operation only, so a get() followed by a set() is
    not atomic and concurrent cold fetches of the same key may both reach
    the upstream. The last writer wins.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        """
        Initialize the response cache.

        Args:
            clock: Returns the current aware datetime (injectable for tests)
        """
        self.clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[Result]:
        """
        Get the current result if it is still fresh.

        Args:
            key: Source name or sub-entity key

        Returns:
            Fresh Result, or None on miss or expiry
        """
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.current is None:
                logger.debug(f"Cache miss: {key}")
                return None

            now = self.clock()
            if not entry.current.is_fresh(now):
                logger.debug(f"Cache expired: {key} (at {format_timestamp(entry.current.expires_at)})")
                return None

            logger.debug(f"Cache hit: {key}")
            return entry.current

    async def get_backup(self, key: str) -> Optional[Result]:
        """
        Get the backup success for degraded mode if it is still valid.

        Args:
            key: Source name or sub-entity key

        Returns:
            Backup Result, or None if absent or past its degraded TTL
        """
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.backup is None:
                return None
            if not entry.backup.is_fresh(self.clock()):
                logger.debug(f"Backup expired: {key}")
                return None
            return entry.backup

    async def set(self, key: str, result: Result, degraded_ttl: timedelta) -> None:
        """
        Store a result and refresh the backup on success.

        Args:
            key: Source name or sub-entity key
            result: Result to store as current (unconditionally)
            degraded_ttl: Backup lifetime measured from now, used only if
                result is a success
        """
        async with self._lock:
            entry = self._entries.setdefault(key, CacheEntry())
            entry.current = result
            if result.ok:
                entry.backup = result.as_backup(degraded_ttl, now=self.clock())
                logger.debug(f"Cache updated: {key} (backup refreshed)")
            else:
                logger.debug(f"Cache updated: {key} (error: {result.error})")

    async def get_status(self) -> dict[str, Any]:
        """
        Get cache status information.

        Returns:
            Dictionary with per-key freshness details
        """
        async with self._lock:
            now = self.clock()
            entries = {}
            for key, entry in self._entries.items():
                current = entry.current
                backup = entry.backup
                entries[key] = {
                    "fresh": current is not None and current.is_fresh(now),
                    "error": current.error if current else None,
                    "expires_at": format_timestamp(current.expires_at) if current else None,
                    "backup_valid": backup is not None and backup.is_fresh(now),
                    "backup_expires_at": format_timestamp(backup.expires_at) if backup else None,
                }
            return {
                "total_entries": len(self._entries),
                "fresh_entries": sum(1 for e in entries.values() if e["fresh"]),
                "entries": entries,
            }

    async def clear(self) -> None:
        """Clear all cached data."""
        async with self._lock:
            self._entries.clear()
            logger.info("Cache cleared")

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries
