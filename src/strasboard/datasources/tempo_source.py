"""Tempo tariff calendar data source (RTE open data API)"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional
from zoneinfo import ZoneInfo

from ..config import TempoConfig
from ..errors import NoDataError, NotConfiguredError, SourceError, UpstreamError
from ..freshness import PublicationCutoff, local_datetime
from ..http_client import UpstreamClient
from ..log import get_structured_logger
from .base import DataSource, Result, utcnow

logger = get_structured_logger(__name__, component="tempo")

RETRY_TTL = timedelta(hours=1)
# Renew the token this long before it actually expires
TOKEN_MARGIN = timedelta(minutes=5)


@dataclass
class TempoDay:
    date: str
    color: str


@dataclass
class _TokenState:
    access_token: str = ""
    expires_at: Optional[datetime] = None

    def valid(self, now: datetime) -> bool:
        return bool(self.access_token) and self.expires_at is not None and now + TOKEN_MARGIN < self.expires_at


def check_rte_error(body: Any) -> Optional[str]:
    """RTE reports errors as {"error": "...", "error_description": "..."}"""
    if not isinstance(body, dict) or not body.get("error"):
        return None
    if body.get("error_description"):
        return f"{body['error']}: {body['error_description']}"
    return str(body["error"])


class TempoDataSource(DataSource):
    """
    Today's and tomorrow's Tempo day colors.

    Tomorrow's color is provisional from `provisional_hour` and definitive
    from `definitive_hour` (local time); expiration follows that schedule.
    """

    description = "Tempo tariff colors for today and tomorrow"

    def __init__(self, config: TempoConfig, clock: Callable[[], datetime] = utcnow):
        self._config = config
        self._clock = clock
        self._tz = ZoneInfo(config.timezone)
        self._http = UpstreamClient()
        self._policy = PublicationCutoff(
            self._tz,
            first_cutoff=config.provisional_hour,
            final_cutoff=config.definitive_hour,
            retry_ttl=RETRY_TTL,
        )
        self._token_lock = asyncio.Lock()
        self._token = _TokenState()

    def name(self) -> str:
        return "tempo"

    def degraded_ttl(self) -> timedelta:
        return timedelta(hours=24)

    async def shutdown(self) -> None:
        await self._http.close()

    async def fetch(self) -> Result[list[TempoDay]]:
        now = self._clock()
        try:
            if not self._config.auth_token:
                raise NotConfiguredError("tempo not configured")
            data = await self._fetch_calendar(now)
        except SourceError as e:
            logger.warning("Tempo fetch failed", error=str(e))
            return Result.from_error(e, now=now)

        return Result.success_until(data, self._policy.expires_at(now, data), now=now)

    async def _ensure_token(self) -> str:
        """Return a valid access token, authenticating at most once at a time"""
        async with self._token_lock:
            now = self._clock()
            if self._token.valid(now):
                return self._token.access_token

            logger.debug("Authenticating with RTE")
            body = await self._http.post_json(
                self._config.auth_url,
                headers={"Authorization": f"Basic {self._config.auth_token}"},
                error_check=check_rte_error,
            )
            token = (body or {}).get("access_token")
            if not token:
                raise UpstreamError("auth: no access token")

            expires_in = int((body or {}).get("expires_in") or 0)
            self._token = _TokenState(token, now + timedelta(seconds=expires_in))
            return token

    async def _fetch_calendar(self, now: datetime) -> list[TempoDay]:
        token = await self._ensure_token()

        today = local_datetime(now.astimezone(self._tz).date(), 0, self._tz)
        end = local_datetime(today.date() + timedelta(days=2), 0, self._tz)
        body = await self._http.get_json(
            f"{self._config.api_url}/tempo_like_calendars",
            params={"start_date": today.isoformat(), "end_date": end.isoformat()},
            headers={"Authorization": f"Bearer {token}"},
            error_check=check_rte_error,
        )

        values = ((body or {}).get("tempo_like_calendars") or {}).get("values") or []
        if not values:
            raise NoDataError("no tempo data")

        try:
            return [
                TempoDay(date=v["start_date"][:10], color=v["value"].lower())
                for v in values
            ]
        except (KeyError, TypeError, AttributeError) as e:
            raise UpstreamError(f"malformed calendar: {e}") from e
