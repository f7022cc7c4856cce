"""
Error taxonomy for data sources.

Every upstream failure is classified into one of these exceptions inside a
source and then converted into an error Result. The retry TTL carried by the
exception decides how long that error Result stays in the cache before the
source is asked again.
"""

from datetime import timedelta

NOT_CONFIGURED_TTL = timedelta(hours=1)
TRANSIENT_TTL = timedelta(minutes=10)
NO_DATA_TTL = timedelta(minutes=5)


class SourceError(Exception):
    """Base class for classified data source failures."""

    default_ttl = TRANSIENT_TTL

    def __init__(self, message: str, retry_ttl: timedelta | None = None):
        super().__init__(message)
        self.message = message
        self.retry_ttl = retry_ttl if retry_ttl is not None else self.default_ttl

    def __str__(self) -> str:
        return self.message


class NotConfiguredError(SourceError):
    """Source is missing credentials or endpoints; no upstream I/O is attempted."""

    default_ttl = NOT_CONFIGURED_TTL


class UpstreamError(SourceError):
    """Network failure, non-2xx status or malformed payload."""


class UpstreamSemanticError(UpstreamError):
    """Well-formed upstream response carrying its own application-level error."""


class NoDataError(SourceError):
    """Upstream answered but produced nothing usable."""

    default_ttl = NO_DATA_TTL
