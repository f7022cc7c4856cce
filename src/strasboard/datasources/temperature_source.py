"""Indoor temperature sensor data source"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from ..config import TemperatureConfig
from ..errors import NotConfiguredError, SourceError, UpstreamError
from ..freshness import FlatTTL
from ..http_client import UpstreamClient
from ..log import get_structured_logger
from .base import DataSource, Result, utcnow

logger = get_structured_logger(__name__, component="temperature")


@dataclass
class TemperatureData:
    temperature: float
    humidity: int
    location: str


class TemperatureDataSource(DataSource):
    """
    Reads an indoor sensor exposing a small JSON document:
    {"temperature": 21.5, "humidity": 45, "location": "Living Room"}
    """

    description = "Indoor temperature and humidity sensor"

    def __init__(self, config: TemperatureConfig, clock: Callable[[], datetime] = utcnow):
        self._config = config
        self._clock = clock
        self._http = UpstreamClient()
        self._policy = FlatTTL(timedelta(seconds=config.cache_duration))

    def name(self) -> str:
        return "temperature"

    def degraded_ttl(self) -> timedelta:
        return timedelta(hours=4)

    async def shutdown(self) -> None:
        await self._http.close()

    async def fetch(self) -> Result[TemperatureData]:
        now = self._clock()
        try:
            if not self._config.sensor_url:
                raise NotConfiguredError("temperature not configured")
            data = await self._read_sensor()
        except SourceError as e:
            logger.warning("Temperature fetch failed", error=str(e))
            return Result.from_error(e, now=now)

        return Result.success_until(data, self._policy.expires_at(now, data), now=now)

    async def _read_sensor(self) -> TemperatureData:
        body = await self._http.get_json(self._config.sensor_url)
        try:
            return TemperatureData(
                temperature=float(body["temperature"]),
                humidity=int(body["humidity"]),
                location=str(body.get("location", "")),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise UpstreamError(f"malformed sensor data: {e}") from e
