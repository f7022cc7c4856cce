"""Public transport departures data source (SIRI-Lite stop monitoring)"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

from ..config import TransportConfig
from ..errors import (
    NOT_CONFIGURED_TTL,
    NoDataError,
    NotConfiguredError,
    SourceError,
    UpstreamError,
)
from ..freshness import FlatTTL
from ..http_client import UpstreamClient
from ..log import get_structured_logger
from .base import MultiItemSource, Result, utcnow

logger = get_structured_logger(__name__, component="transport")

TRANSPORT_TTL = timedelta(minutes=2)
LIVE_TTL = timedelta(seconds=20)
LIVE_ERROR_TTL = timedelta(minutes=1)


@dataclass
class Departure:
    time: str
    realtime: bool


@dataclass
class Destination:
    name: str
    departures: list[Departure] = field(default_factory=list)


@dataclass
class StopData:
    id: int
    name: str
    line: str
    color: str
    color_text: str
    destinations: list[Destination] = field(default_factory=list)


@dataclass
class TransportData:
    stops: list[StopData] = field(default_factory=list)


@dataclass
class _Stop:
    """Configured stop; stop_ref and colors are filled in by resolution"""

    line: str
    name: str
    destination: str
    stop_ref: str = ""
    color: str = ""
    color_text: str = ""


@dataclass
class _DepartureCache:
    destinations: list[Destination]
    fetched_at: datetime


def check_siri_error(body: Any) -> Optional[str]:
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return None


def parse_departure_time(value: str) -> Optional[datetime]:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        return None
    return parsed if parsed.tzinfo is not None else None


class TransportDataSource(MultiItemSource):
    """
    Next departures for a configured list of stops.

    Stops are configured by line, stop name and a destination (to pick a
    direction); they are resolved to upstream stop references on the first
    fetch. Departures are cached per stop: the combined view accepts data up
    to 2 minutes old, the single-stop live view up to 20 seconds.
    """

    description = "Next departures at configured stops"

    def __init__(self, config: TransportConfig, clock: Callable[[], datetime] = utcnow):
        self._config = config
        self._clock = clock
        self._http = UpstreamClient()
        self._policy = FlatTTL(TRANSPORT_TTL)
        self._live_policy = FlatTTL(LIVE_TTL)

        self._stops = [
            _Stop(line=s.line, name=s.stop, destination=s.destination) for s in config.stops
        ]
        self._ready = False
        self._resolve_lock = asyncio.Lock()
        self._departures: dict[int, _DepartureCache] = {}
        self._departure_locks = [asyncio.Lock() for _ in self._stops]

    def name(self) -> str:
        return "transport"

    def degraded_ttl(self) -> timedelta:
        return timedelta(hours=1)

    async def shutdown(self) -> None:
        await self._http.close()

    def unavailable(self) -> Optional[SourceError]:
        if not self._config.api_key:
            return NotConfiguredError("transport not configured")
        return None

    def has_item(self, item_id: Any) -> bool:
        return (
            isinstance(item_id, int)
            and self._ready
            and 0 <= item_id < len(self._stops)
            and bool(self._stops[item_id].stop_ref)
        )

    async def fetch(self) -> Result[TransportData]:
        now = self._clock()
        try:
            if not self._config.api_key:
                raise NotConfiguredError("transport not configured")
            if not self._stops:
                raise NotConfiguredError("no stops configured")
            try:
                await self._ensure_resolved()
            except SourceError as e:
                raise type(e)(f"resolve: {e.message}", NOT_CONFIGURED_TTL) from e

            ids = [i for i, stop in enumerate(self._stops) if stop.stop_ref]
            results = await asyncio.gather(*(self._get_stop_data(i, TRANSPORT_TTL) for i in ids))
            stops = [r for r in results if r is not None]
            if not stops:
                raise NoDataError("no departure data")
        except SourceError as e:
            logger.warning("Transport fetch failed", error=str(e))
            return Result.from_error(e, now=now)

        data = TransportData(stops=stops)
        return Result.success_until(data, self._policy.expires_at(now, data), now=now)

    async def fetch_one(self, item_id: int) -> Result[StopData]:
        """Fetch live departures for one resolved stop"""
        now = self._clock()
        error = self.unavailable()
        if error is not None:
            return Result.from_error(error, now=now)
        if not self.has_item(item_id):
            return Result.failure("invalid stop", LIVE_ERROR_TTL, now=now)

        data = await self._get_stop_data(item_id, LIVE_TTL)
        if data is None:
            return Result.failure("fetch failed", LIVE_ERROR_TTL, now=now)
        return Result.success_until(data, self._live_policy.expires_at(now, data), now=now)

    async def _get_stop_data(self, stop_id: int, max_age: timedelta) -> Optional[StopData]:
        """Build StopData from static info and (possibly cached) departures"""
        stop = self._stops[stop_id]
        try:
            destinations = await self._get_departures(stop_id, max_age)
        except SourceError as e:
            logger.warning("Departures fetch failed", line=stop.line, stop=stop.name, error=str(e))
            return None

        return StopData(
            id=stop_id,
            name=stop.name,
            line=stop.line,
            color=stop.color,
            color_text=stop.color_text,
            destinations=destinations,
        )

    async def _get_departures(self, stop_id: int, max_age: timedelta) -> list[Destination]:
        """Cached departures for one stop; a per-stop lock lets one caller refresh"""
        async with self._departure_locks[stop_id]:
            cached = self._departures.get(stop_id)
            if cached is not None and self._clock() - cached.fetched_at < max_age:
                return cached.destinations

            destinations = await self._fetch_departures(stop_id)
            self._departures[stop_id] = _DepartureCache(destinations, self._clock())
            return destinations

    async def _fetch_departures(self, stop_id: int) -> list[Destination]:
        stop = self._stops[stop_id]
        body = await self._http.get_json(
            f"{self._config.api_url}/stop-monitoring",
            params={
                "LineRef": stop.line,
                "MonitoringRef": stop.stop_ref,
                "MinimumStopVisitsPerLine": "4",
            },
            headers={"Authorization": f"Basic {self._config.api_key}"},
            error_check=check_siri_error,
        )

        try:
            deliveries = body["ServiceDelivery"].get("StopMonitoringDelivery") or [{}]
            visits = deliveries[0].get("MonitoredStopVisit") or []
        except (KeyError, TypeError, AttributeError) as e:
            raise UpstreamError(f"malformed stop monitoring data: {e}") from e

        now = self._clock()
        by_destination: dict[str, list[Departure]] = {}
        for visit in visits:
            journey = visit.get("MonitoredVehicleJourney") or {}
            call = journey.get("MonitoredCall") or {}
            departure_time = parse_departure_time(call.get("ExpectedDepartureTime", ""))
            if departure_time is None or departure_time < now:
                continue
            by_destination.setdefault(journey.get("DestinationName", ""), []).append(
                Departure(
                    time=departure_time.isoformat(),
                    realtime=bool((call.get("Extension") or {}).get("IsRealTime")),
                )
            )

        return [Destination(name=name, departures=deps) for name, deps in by_destination.items()]

    async def _ensure_resolved(self) -> None:
        """Resolve configured stops to stop references, once"""
        async with self._resolve_lock:
            if self._ready:
                return

            body = await self._http.get_json(
                f"{self._config.api_url}/stoppoints-discovery",
                params={"includeLinesDestinations": "true"},
                headers={"Authorization": f"Basic {self._config.api_key}"},
                error_check=check_siri_error,
            )
            try:
                points = body["StopPointsDelivery"].get("AnnotatedStopPointRef") or []
            except (KeyError, TypeError, AttributeError) as e:
                raise UpstreamError(f"malformed stop points data: {e}") from e

            for stop in self._stops:
                self._resolve_stop(stop, points)
            self._ready = True

    def _resolve_stop(self, stop: _Stop, points: list[dict[str, Any]]) -> None:
        for point in points:
            if stop.name not in point.get("StopName", ""):
                continue
            for line in point.get("Lines") or []:
                if line.get("LineRef") != stop.line:
                    continue
                for destination in line.get("Destinations") or []:
                    for name in destination.get("DestinationName") or []:
                        if stop.destination in name:
                            extension = line.get("Extension") or {}
                            stop.stop_ref = point.get("StopPointRef", "")
                            stop.color = "#" + extension.get("RouteColor", "")
                            stop.color_text = "#" + extension.get("RouteTextColor", "")
                            logger.info(
                                "Resolved stop", line=stop.line, stop=stop.name, ref=stop.stop_ref
                            )
                            return
        logger.warning(
            "Unresolved stop", line=stop.line, stop=stop.name, destination=stop.destination
        )
