"""Tests for the transport departures source"""

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest
import respx

from strasboard.aggregator import Aggregator
from strasboard.cache import ResponseCache
from strasboard.config import TransportConfig, TransportStopConfig
from strasboard.datasources.registry import DataSourceRegistry
from strasboard.datasources.transport_source import TransportDataSource, parse_departure_time
from tests.mock_datasource import FakeClock

API = "https://transport.test/v1"

STOP_POINTS = {
    "StopPointsDelivery": {
        "AnnotatedStopPointRef": [
            {
                "StopPointRef": "HDF_B",
                "StopName": "Homme de Fer",
                "Lines": [
                    {
                        "LineRef": "A",
                        "Destinations": [{"DestinationName": ["Hautepierre"]}],
                        "Extension": {"RouteColor": "E10D19", "RouteTextColor": "FFFFFF"},
                    }
                ],
            },
            {
                "StopPointRef": "HDF_A",
                "StopName": "Homme de Fer",
                "Lines": [
                    {
                        "LineRef": "A",
                        "Destinations": [{"DestinationName": ["Parc des Sports", "Illkirch"]}],
                        "Extension": {"RouteColor": "E10D19", "RouteTextColor": "FFFFFF"},
                    }
                ],
            },
        ]
    }
}


def visit(destination, departure, realtime=True):
    return {
        "MonitoredVehicleJourney": {
            "DestinationName": destination,
            "MonitoredCall": {
                "ExpectedDepartureTime": departure,
                "Extension": {"IsRealTime": realtime},
            },
        }
    }


STOP_MONITORING = {
    "ServiceDelivery": {
        "StopMonitoringDelivery": [
            {
                "MonitoredStopVisit": [
                    visit("Parc des Sports", "2024-03-10T11:55:00+01:00"),
                    visit("Parc des Sports", "2024-03-10T12:04:00+01:00"),
                    visit("Illkirch", "2024-03-10T12:07:00+01:00", realtime=False),
                    visit("Parc des Sports", "2024-03-10T12:12:00+01:00"),
                ]
            }
        ]
    }
}


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 10, 11, 0, tzinfo=timezone.utc))  # 12:00 in Paris


@pytest.fixture
def config():
    return TransportConfig(
        api_url=API,
        api_key="secret",
        stops=[
            TransportStopConfig("A", "Homme de Fer", "Parc des Sports"),
            TransportStopConfig("C", "Nowhere", "Neuhof"),
        ],
    )


def mock_upstream():
    discovery = respx.get(f"{API}/stoppoints-discovery").mock(
        return_value=httpx.Response(200, json=STOP_POINTS)
    )
    monitoring = respx.get(f"{API}/stop-monitoring").mock(
        return_value=httpx.Response(200, json=STOP_MONITORING)
    )
    return discovery, monitoring


class TestTransportDataSource:
    """Test stop resolution and departure grouping"""

    async def test_not_configured(self, clock):
        result = await TransportDataSource(TransportConfig(), clock=clock).fetch()
        assert result.error == "transport not configured"

    async def test_no_stops(self, clock):
        source = TransportDataSource(TransportConfig(api_url=API, api_key="k"), clock=clock)
        result = await source.fetch()
        assert result.error == "no stops configured"

    @respx.mock
    async def test_fetch(self, clock, config):
        discovery, monitoring = mock_upstream()
        source = TransportDataSource(config, clock=clock)

        result = await source.fetch()
        assert result.ok
        assert result.expires_at == clock() + timedelta(minutes=2)

        stops = result.data.stops
        assert len(stops) == 1  # "Nowhere" is not resolved
        stop = stops[0]
        assert (stop.id, stop.line, stop.color, stop.color_text) == (0, "A", "#E10D19", "#FFFFFF")

        by_name = {d.name: d.departures for d in stop.destinations}
        assert [d.time for d in by_name["Parc des Sports"]] == [
            "2024-03-10T12:04:00+01:00",
            "2024-03-10T12:12:00+01:00",
        ]
        assert by_name["Illkirch"][0].realtime is False

        request = monitoring.calls.last.request
        assert request.url.params["MonitoringRef"] == "HDF_A"
        assert request.url.params["LineRef"] == "A"
        assert request.headers["Authorization"] == "Basic secret"
        assert discovery.call_count == 1
        await source.shutdown()

    @respx.mock
    async def test_resolution_happens_once(self, clock, config):
        discovery, _ = mock_upstream()
        source = TransportDataSource(config, clock=clock)

        await source.fetch()
        clock.advance(timedelta(minutes=3))
        await source.fetch()
        assert discovery.call_count == 1
        await source.shutdown()

    @respx.mock
    async def test_resolution_failure(self, clock, config):
        respx.get(f"{API}/stoppoints-discovery").mock(
            return_value=httpx.Response(500, text="down")
        )
        source = TransportDataSource(config, clock=clock)

        result = await source.fetch()
        assert result.error == "resolve: server returned 500: down"
        assert result.expires_at == clock() + timedelta(hours=1)
        assert not source.has_item(0)
        await source.shutdown()

    @respx.mock
    async def test_monitoring_failure_is_no_data(self, clock, config):
        respx.get(f"{API}/stoppoints-discovery").mock(
            return_value=httpx.Response(200, json=STOP_POINTS)
        )
        respx.get(f"{API}/stop-monitoring").mock(return_value=httpx.Response(502))
        source = TransportDataSource(config, clock=clock)

        result = await source.fetch()
        assert result.error == "no departure data"
        await source.shutdown()

    @respx.mock
    async def test_has_item(self, clock, config):
        mock_upstream()
        source = TransportDataSource(config, clock=clock)
        assert not source.has_item(0)  # not resolved yet

        await source.fetch()
        assert source.has_item(0)
        assert not source.has_item(1)
        assert not source.has_item(2)
        assert not source.has_item("0")
        await source.shutdown()

    @respx.mock
    async def test_live_departures_share_stop_cache(self, clock, config):
        """A live request right after the combined fetch reuses its departures"""
        _, monitoring = mock_upstream()
        source = TransportDataSource(config, clock=clock)

        await source.fetch()
        live = await source.fetch_one(0)
        assert live.ok
        assert live.data.name == "Homme de Fer"
        assert live.expires_at == clock() + timedelta(seconds=20)
        assert monitoring.call_count == 1

        clock.advance(timedelta(seconds=30))
        await source.fetch_one(0)
        assert monitoring.call_count == 2
        await source.shutdown()

    @respx.mock
    async def test_concurrent_live_requests_share_one_refresh(self, clock, config):
        """Stale departures are refreshed once when several requests race"""
        _, monitoring = mock_upstream()
        source = TransportDataSource(config, clock=clock)
        await source.fetch()

        clock.advance(timedelta(seconds=30))
        results = await asyncio.gather(*(source.fetch_one(0) for _ in range(5)))
        assert all(r.ok for r in results)
        assert monitoring.call_count == 2
        await source.shutdown()

    async def test_live_not_configured_before_stop_check(self, clock):
        source = TransportDataSource(TransportConfig(), clock=clock)
        result = await source.fetch_one(3)
        assert result.error == "transport not configured"
        assert result.expires_at == clock() + timedelta(hours=1)


class TestTransportLiveThroughAggregator:
    """Test single-stop requests through the shared cache"""

    @respx.mock
    async def test_live_keyed_per_stop(self, clock, config):
        mock_upstream()
        source = TransportDataSource(config, clock=clock)
        aggregator = Aggregator(ResponseCache(clock=clock), DataSourceRegistry([source]))

        invalid = await aggregator.fetch_one("transport", 0)
        assert invalid.error == "invalid id"

        await aggregator.fetch_cached(source)
        live = await aggregator.fetch_one("transport", 0)
        assert live.ok
        assert "transport/0" in aggregator.cache
        assert "transport/1" not in aggregator.cache
        await source.shutdown()

    async def test_unconfigured_reports_configuration_error(self, clock):
        """Missing credentials take precedence over the stop id check"""
        source = TransportDataSource(TransportConfig(), clock=clock)
        aggregator = Aggregator(ResponseCache(clock=clock), DataSourceRegistry([source]))

        result = await aggregator.fetch_one("transport", 0)
        assert result.error == "transport not configured"
        assert result.expires_at == clock() + timedelta(hours=1)
        assert "transport/0" not in aggregator.cache


def test_parse_departure_time():
    parsed = parse_departure_time("2024-03-10T12:04:00Z")
    assert parsed == datetime(2024, 3, 10, 12, 4, tzinfo=timezone.utc)
    assert parse_departure_time("2024-03-10T12:04:00") is None
    assert parse_departure_time("soon") is None
