"""Weather data source implementation using the Open-Meteo API"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Generic, Optional, TypeVar
from zoneinfo import ZoneInfo

from ..config import WeatherConfig
from ..errors import NotConfiguredError, SourceError, UpstreamError
from ..freshness import MidnightCapped, local_datetime
from ..http_client import UpstreamClient
from ..log import get_structured_logger
from .base import DataSource, Result, utcnow

logger = get_structured_logger(__name__, component="weather")

CURRENT_TTL = timedelta(hours=1)
HOURLY_TTL = timedelta(hours=3)
DAILY_TTL = timedelta(hours=6)
RESPONSE_TTL = timedelta(minutes=15)
UNAVAILABLE_TTL = timedelta(minutes=5)

MODEL = "meteofrance_seamless"
VARIABLES = "temperature_2m,apparent_temperature,is_day,weather_code"
LOCAL_FORMAT = "%Y-%m-%dT%H:%M"

T = TypeVar("T")


@dataclass
class WeatherSlot:
    """Conditions for a 15-minute or hourly slot"""

    time: str
    temperature: float
    feels_like: float
    is_day: bool
    code: int


@dataclass
class WeatherDay:
    date: str
    temp_max: float
    temp_min: float
    code: int


@dataclass
class WeatherData:
    current: Optional[WeatherSlot] = None
    hourly: list[WeatherSlot] = field(default_factory=list)
    daily: list[WeatherDay] = field(default_factory=list)


@dataclass
class _SubCache(Generic[T]):
    data: T
    expires_at: datetime

    def valid(self, now: datetime) -> bool:
        return now < self.expires_at


def _valid(cache: Optional[_SubCache], now: datetime) -> bool:
    return cache is not None and cache.valid(now)


def check_open_meteo_error(body: Any) -> Optional[str]:
    """Open-Meteo reports errors as {"error": true, "reason": "..."}"""
    if isinstance(body, dict) and body.get("error"):
        return str(body.get("reason") or "unknown error")
    return None


class WeatherDataSource(DataSource):
    """
    Weather data source using Open-Meteo.

    The forecast is assembled from three upstream queries with different
    lifetimes (15-minutely, hourly, daily). Each is cached inside the source
    and only refetched once expired; a response is built as long as at
    least one of them is valid.
    """

    description = "Current conditions and 7-day forecast from Open-Meteo"

    def __init__(self, config: WeatherConfig, clock: Callable[[], datetime] = utcnow):
        """
        Initialize weather data source.

        Args:
            config: Weather configuration with API URL and location
            clock: Returns the current aware datetime
        """
        self._config = config
        self._clock = clock
        self._tz = ZoneInfo(config.timezone)
        self._lat = f"{config.latitude:.4f}"
        self._lon = f"{config.longitude:.4f}"
        self._http = UpstreamClient()
        self._policy = MidnightCapped(RESPONSE_TTL, self._tz)

        self._lock = asyncio.Lock()
        self._current: Optional[_SubCache[list[WeatherSlot]]] = None
        self._hourly: Optional[_SubCache[list[WeatherSlot]]] = None
        self._daily: Optional[_SubCache[list[WeatherDay]]] = None

    def name(self) -> str:
        return "weather"

    def degraded_ttl(self) -> timedelta:
        return timedelta(hours=24)

    async def shutdown(self) -> None:
        """Clean up HTTP client"""
        await self._http.close()
        logger.debug("Weather data source shut down")

    async def fetch(self) -> Result[WeatherData]:
        """
        Fetch weather data, refreshing only expired sub-resources.

        Returns:
            Result with WeatherData, possibly partial
        """
        if not self._config.api_url:
            return Result.from_error(NotConfiguredError("weather not configured"), now=self._clock())

        async with self._lock:
            now = self._clock()
            last_error: Optional[SourceError] = None

            for label, valid, refresh in (
                ("current", _valid(self._current, now), self._fetch_current),
                ("hourly", _valid(self._hourly, now), self._fetch_hourly),
                ("daily", _valid(self._daily, now), self._fetch_daily),
            ):
                if valid:
                    continue
                try:
                    await refresh(now)
                except SourceError as e:
                    logger.warning("Weather fetch failed", part=label, error=str(e))
                    last_error = e

            if not any(_valid(c, now) for c in (self._current, self._hourly, self._daily)):
                return Result.failure(f"weather unavailable: {last_error}", UNAVAILABLE_TTL, now=now)

            data = WeatherData()
            if _valid(self._current, now):
                data.current = self._filter_current(self._current.data, now)
            if _valid(self._hourly, now):
                data.hourly = self._filter_hourly(self._hourly.data, now)
            if _valid(self._daily, now):
                data.daily = self._filter_daily(self._daily.data, now)

        return Result.success_until(data, self._policy.expires_at(now, data), now=now)

    def _base_query(self) -> dict[str, str]:
        return {
            "latitude": self._lat,
            "longitude": self._lon,
            "timezone": self._config.timezone,
        }

    async def _fetch_current(self, now: datetime) -> None:
        """Fetch the 15-minutely series for the next 2 hours"""
        query = {
            **self._base_query(),
            "models": MODEL,
            "minutely_15": VARIABLES,
            "forecast_minutely_15": "8",
        }
        body = await self._http.get_json(
            self._config.api_url, params=query, error_check=check_open_meteo_error
        )
        slots = self._parse_slots(body, "minutely_15")
        if not slots:
            raise UpstreamError("no data")
        self._current = _SubCache(slots, now + CURRENT_TTL)
        logger.debug("Fetched current weather", slots=len(slots))

    async def _fetch_hourly(self, now: datetime) -> None:
        """Fetch hourly data from 4 hours ago to 3 days ahead"""
        local_now = now.astimezone(self._tz)
        end = local_now + timedelta(days=3) + HOURLY_TTL + RESPONSE_TTL
        query = {
            **self._base_query(),
            "models": MODEL,
            "hourly": VARIABLES,
            "start_date": (local_now - timedelta(hours=4)).date().isoformat(),
            "end_date": end.date().isoformat(),
        }
        body = await self._http.get_json(
            self._config.api_url, params=query, error_check=check_open_meteo_error
        )
        self._hourly = _SubCache(self._parse_slots(body, "hourly"), now + HOURLY_TTL)

    async def _fetch_daily(self, now: datetime) -> None:
        """Fetch daily data from day+4 to day+7"""
        local_now = now.astimezone(self._tz)
        end = local_now + timedelta(days=7) + DAILY_TTL + RESPONSE_TTL
        query = {
            **self._base_query(),
            "daily": "weather_code,temperature_2m_max,temperature_2m_min",
            "start_date": (local_now + timedelta(days=4)).date().isoformat(),
            "end_date": end.date().isoformat(),
        }
        body = await self._http.get_json(
            self._config.api_url, params=query, error_check=check_open_meteo_error
        )
        try:
            daily = body["daily"]
            days = [
                WeatherDay(
                    date=date,
                    temp_max=daily["temperature_2m_max"][i],
                    temp_min=daily["temperature_2m_min"][i],
                    code=daily["weather_code"][i],
                )
                for i, date in enumerate(daily["time"])
            ]
        except (KeyError, IndexError, TypeError) as e:
            raise UpstreamError(f"malformed daily data: {e}") from e
        self._daily = _SubCache(days, now + DAILY_TTL)

    @staticmethod
    def _parse_slots(body: Any, key: str) -> list[WeatherSlot]:
        try:
            series = body[key]
            return [
                WeatherSlot(
                    time=t,
                    temperature=series["temperature_2m"][i],
                    feels_like=series["apparent_temperature"][i],
                    is_day=series["is_day"][i] == 1,
                    code=series["weather_code"][i],
                )
                for i, t in enumerate(series["time"])
            ]
        except (KeyError, IndexError, TypeError) as e:
            raise UpstreamError(f"malformed {key} data: {e}") from e

    def _parse_local(self, value: str, fmt: str = LOCAL_FORMAT) -> Optional[datetime]:
        try:
            return datetime.strptime(value, fmt).replace(tzinfo=self._tz)
        except ValueError:
            return None

    def _filter_current(self, slots: list[WeatherSlot], now: datetime) -> WeatherSlot:
        """Pick the first slot after the midpoint of the response TTL"""
        midpoint = now + (RESPONSE_TTL - timedelta(minutes=15)) / 2
        for slot in slots:
            slot_time = self._parse_local(slot.time)
            if slot_time is not None and slot_time > midpoint:
                return slot
        return slots[-1]

    def _filter_hourly(self, hours: list[WeatherSlot], now: datetime) -> list[WeatherSlot]:
        """Keep hours from 4 hours ago until day+4 at 00:00"""
        local_now = now.astimezone(self._tz)
        start = local_now - timedelta(hours=4)
        end = local_datetime(local_now.date() + timedelta(days=4), 0, self._tz)

        result = []
        for hour in hours:
            hour_time = self._parse_local(hour.time)
            if hour_time is None or hour_time < start or hour_time > end:
                continue
            result.append(hour)
        return result

    def _filter_daily(self, days: list[WeatherDay], now: datetime) -> list[WeatherDay]:
        """Keep days from day+4 to day+7"""
        local_now = now.astimezone(self._tz)
        start = local_datetime(local_now.date() + timedelta(days=4), 0, self._tz)
        end = start + timedelta(days=3)

        result = []
        for day in days:
            day_time = self._parse_local(day.date, "%Y-%m-%d")
            if day_time is None or day_time < start or day_time > end:
                continue
            result.append(day)
        return result
