"""
Freshness policies: when does a freshly fetched result stop being current?

Most sources use a flat TTL. Sources whose upstream publishes on a civil
schedule (daily consumption figures, next-day tariff colors) instead expire
exactly at the local-time publication cutoff, so the next fetch happens as
soon as new data should exist and not before.

All policies are pure functions of the current instant and the fetched data.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import date, datetime, time, timedelta
from typing import Any, Optional
from zoneinfo import ZoneInfo


def local_datetime(day: date, hour: int, tz: ZoneInfo) -> datetime:
    """Wall-clock instant `hour`:00 on `day` in timezone `tz`."""
    return datetime.combine(day, time(hour=hour), tzinfo=tz)


class FreshnessPolicy(ABC):
    """Computes the expiration instant of a successful result."""

    @abstractmethod
    def expires_at(self, now: datetime, data: Any = None) -> datetime:
        """
        Compute when data fetched at `now` stops being fresh.

        Args:
            now: Aware datetime of the fetch
            data: The fetched payload, for policies that inspect it

        Returns:
            Aware datetime expiration instant
        """


class FlatTTL(FreshnessPolicy):
    """Constant time-to-live."""

    def __init__(self, ttl: timedelta):
        self.ttl = ttl

    def expires_at(self, now: datetime, data: Any = None) -> datetime:
        return now + self.ttl

    def __repr__(self) -> str:
        return f"FlatTTL({self.ttl})"


class MidnightCapped(FreshnessPolicy):
    """
    Flat TTL that never crosses local midnight.

    Used for payloads filtered relative to the current day, which must be
    rebuilt when the day changes.
    """

    def __init__(self, ttl: timedelta, tz: ZoneInfo):
        self.ttl = ttl
        self.tz = tz

    def expires_at(self, now: datetime, data: Any = None) -> datetime:
        local_now = now.astimezone(self.tz)
        midnight = local_datetime(local_now.date() + timedelta(days=1), 0, self.tz)
        if midnight - local_now < self.ttl:
            return midnight
        return now + self.ttl


class PublicationCutoff(FreshnessPolicy):
    """
    Expire on the daily local-time publication schedule of an upstream.

    Before `first_cutoff` the data is provisional and expires at today's
    cutoff. Once the data is known to be published (`is_published` returns
    True) or `final_cutoff` has passed, it stays fresh until tomorrow's first
    cutoff. In between, publication time is not guaranteed, so the source is
    retried on `retry_ttl`.

    Args:
        tz: Timezone in which the cutoffs are defined
        first_cutoff: Hour at which new data may first appear
        final_cutoff: Hour after which data is considered definitive
        retry_ttl: Flat TTL while waiting for publication
        is_published: Predicate (data, local_now) -> bool
    """

    def __init__(
        self,
        tz: ZoneInfo,
        first_cutoff: int,
        final_cutoff: Optional[int] = None,
        retry_ttl: timedelta = timedelta(hours=1),
        is_published: Optional[Callable[[Any, datetime], bool]] = None,
    ):
        if not 0 <= first_cutoff <= 23:
            raise ValueError(f"first_cutoff out of range: {first_cutoff}")
        if final_cutoff is not None and not first_cutoff <= final_cutoff <= 23:
            raise ValueError(f"final_cutoff must be between {first_cutoff} and 23")
        self.tz = tz
        self.first_cutoff = first_cutoff
        self.final_cutoff = final_cutoff
        self.retry_ttl = retry_ttl
        self.is_published = is_published

    def expires_at(self, now: datetime, data: Any = None) -> datetime:
        local_now = now.astimezone(self.tz)
        today = local_now.date()

        if local_now.hour < self.first_cutoff:
            return local_datetime(today, self.first_cutoff, self.tz)

        next_cutoff = local_datetime(today + timedelta(days=1), self.first_cutoff, self.tz)
        if self.final_cutoff is not None and local_now.hour >= self.final_cutoff:
            return next_cutoff
        if self.is_published is not None and self.is_published(data, local_now):
            return next_cutoff

        return now + self.retry_ttl

    def __repr__(self) -> str:
        return (
            f"PublicationCutoff(tz={self.tz.key}, first={self.first_cutoff}, "
            f"final={self.final_cutoff}, retry={self.retry_ttl})"
        )
