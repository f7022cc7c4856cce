"""
Base interface for all data sources in strasboard.

Data sources are responsible for fetching fresh data from upstream APIs and
sensors. They do NOT consult the response cache - the aggregator does that,
and decides when a source needs to be called at all. Each fetch produces a
single Result envelope carrying either a payload or an error, plus the
instant after which that envelope must not be served as fresh.
"""

import dataclasses
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Generic, Optional, TypeVar

from ..errors import SourceError

T = TypeVar("T")


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Format an instant as ISO-8601 UTC with second precision."""
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def encode_payload(value: Any) -> Any:
    """Convert a payload into JSON-compatible primitives."""
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: encode_payload(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, (list, tuple)):
        return [encode_payload(v) for v in value]
    if isinstance(value, dict):
        return {k: encode_payload(v) for k, v in value.items()}
    return value


@dataclass(frozen=True)
class Result(Generic[T]):
    """
    Envelope exchanged between a data source and the response cache.

    Attributes:
        data: Source-specific payload, None when nothing can be rendered
        timestamp: When the payload was produced (or the failed attempt made)
        expires_at: Instant after which this result is no longer fresh
        error: Failure message, None on full success

    A result holding both data and an error is a degraded result: stale but
    valid data served while the upstream is known to be failing.
    """

    data: Optional[T]
    timestamp: datetime
    expires_at: datetime
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        """True for a fully healthy result."""
        return self.error is None

    @property
    def degraded(self) -> bool:
        return self.error is not None and self.data is not None

    @classmethod
    def success(cls, data: T, ttl: timedelta, now: Optional[datetime] = None) -> "Result[T]":
        now = now or utcnow()
        return cls(data=data, timestamp=now, expires_at=now + ttl)

    @classmethod
    def success_until(
        cls, data: T, expires_at: datetime, now: Optional[datetime] = None
    ) -> "Result[T]":
        return cls(data=data, timestamp=now or utcnow(), expires_at=expires_at)

    @classmethod
    def failure(cls, message: str, ttl: timedelta, now: Optional[datetime] = None) -> "Result[T]":
        now = now or utcnow()
        return cls(data=None, timestamp=now, expires_at=now + ttl, error=message)

    @classmethod
    def from_error(cls, exc: SourceError, now: Optional[datetime] = None) -> "Result[T]":
        """Build an error result using the retry TTL of a classified failure."""
        return cls.failure(exc.message, exc.retry_ttl, now=now)

    @classmethod
    def compose_degraded(cls, backup: "Result[T]", failure: "Result[T]") -> "Result[T]":
        """
        Combine a backup success with a fresh failure.

        The payload and production timestamp come from the backup so callers
        know how old the data is; the error and expiration come from the
        failure so the source is retried on its short failure schedule.
        """
        return cls(
            data=backup.data,
            timestamp=backup.timestamp,
            expires_at=failure.expires_at,
            error=failure.error,
        )

    def as_backup(self, degraded_ttl: timedelta, now: Optional[datetime] = None) -> "Result[T]":
        """Copy of this result whose expiration is pushed to now + degraded_ttl."""
        now = now or utcnow()
        return dataclasses.replace(self, expires_at=now + degraded_ttl)

    def is_fresh(self, now: datetime) -> bool:
        return now < self.expires_at

    def to_dict(self) -> dict[str, Any]:
        """Wire encoding; the expiration instant is internal and not serialized."""
        encoded: dict[str, Any] = {}
        if self.data is not None:
            encoded["data"] = encode_payload(self.data)
        encoded["timestamp"] = format_timestamp(self.timestamp)
        if self.error is not None:
            encoded["error"] = self.error
        return encoded


class DataSource(ABC):
    """
    Abstract base class for all data sources.

    A data source wraps one upstream integration. fetch() must return within
    a bounded time and must never raise for upstream problems: failures are
    classified (see errors.py) and returned as error Results.

    Sources MAY keep private sub-caches (tokens, resolved identifiers,
    partial responses) but those are theirs to guard; the response cache is
    owned by the aggregator.
    """

    description: str = ""

    @abstractmethod
    def name(self) -> str:
        """Stable identity used as the cache key."""

    @abstractmethod
    async def fetch(self) -> Result:
        """
        Fetch a fresh result from upstream.

        Returns:
            A success Result with its freshness-policy expiration, or an
            error Result with a retry TTL
        """

    @abstractmethod
    def degraded_ttl(self) -> timedelta:
        """How long the last success stays servable once fetches start failing."""

    async def initialize(self) -> None:
        """Open connections; called once at startup."""

    async def shutdown(self) -> None:
        """Release connections; called once at shutdown."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name()!r})"


class MultiItemSource(DataSource):
    """
    A data source that can also fetch one of its sub-entities on its own.

    Sub-entity results go through the same response cache as the source,
    keyed by "{name}/{item_id}", usually with a shorter freshness window.
    """

    def unavailable(self) -> Optional[SourceError]:
        """Error shared by every sub-entity, such as missing credentials."""
        return None

    @abstractmethod
    def has_item(self, item_id: Any) -> bool:
        """Whether item_id names a known sub-entity."""

    @abstractmethod
    async def fetch_one(self, item_id: Any) -> Result:
        """Fetch a single sub-entity; same contract as fetch()."""
