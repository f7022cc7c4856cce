"""Tests for the electricity consumption source"""

import asyncio
import json
from datetime import date, datetime, timedelta, timezone
from urllib.parse import parse_qs
from zoneinfo import ZoneInfo

import httpx
import pytest
import respx

from strasboard.config import ElectricityConfig
from strasboard.datasources.electricity_source import (
    Consumption,
    ElectricityData,
    ElectricityDataSource,
    aggregate_consumption,
    check_ser_error,
    generate_pkce,
    has_yesterday,
    history_start,
    parse_consumption,
)
from tests.mock_datasource import FakeClock

API = "https://portal.test"
PARIS = ZoneInfo("Europe/Paris")


def contract(daily, monthly=()):
    """One contract with an HC/HP split; daily is [(dd/mm/yyyy, hc, hp)]"""
    postes = []
    for index, tariff in enumerate(("HC", "HP")):
        postes.append(
            {
                "etiquette": {"mnemo": tariff},
                "consommationsJournalieres": [
                    {"date": d, "consommation": values[index]} for d, *values in daily
                ],
                "consommationsMensuelles": [
                    {"annee": y, "mois": m, "consommation": values[index]}
                    for y, m, *values in monthly
                ],
            }
        )
    return {"blocFournisseur": {"postesHorosaisonnier": postes}}


class TestConsumptionParsing:
    """Test flattening and aggregation of portal data"""

    def test_parse_consumption(self):
        data = parse_consumption(
            [
                contract(
                    [("08/03/2024", 4.6, 10.2), ("09/03/2024", 5.4, 0.3)],
                    [(2024, 1, 150.2, 300.7), (2024, 2, 140.0, 280.0)],
                )
            ]
        )

        assert data.days == [
            Consumption("2024-03-08", {"HC": 5, "HP": 10}),
            Consumption("2024-03-09", {"HC": 5}),
        ]
        assert data.months[0].to_dict() == {"date": "2024-01", "HC": 150, "HP": 301}

    def test_aggregate_keeps_latest(self):
        periods = {f"2024-03-{d:02d}": {"HC": 1.0} for d in range(1, 21)}
        days = aggregate_consumption(periods, 14)
        assert len(days) == 14
        assert days[0].date == "2024-03-07"
        assert days[-1].date == "2024-03-20"

    def test_aggregate_drops_unknown_tariffs(self):
        days = aggregate_consumption({"2024-03-01": {"HC": 2.0, "XYZ": 5.0}}, 14)
        assert days[0].values == {"HC": 2}

    def test_has_yesterday(self):
        local_now = datetime(2024, 3, 10, 9, 0, tzinfo=PARIS)
        assert has_yesterday(ElectricityData(days=[Consumption("2024-03-09")]), local_now)
        assert not has_yesterday(ElectricityData(days=[Consumption("2024-03-08")]), local_now)
        assert not has_yesterday(ElectricityData(), local_now)

    @pytest.mark.parametrize(
        "today,expected",
        [
            (date(2024, 3, 10), date(2023, 12, 31)),
            (date(2024, 5, 15), date(2024, 2, 29)),
            (date(2024, 2, 5), date(2023, 11, 30)),
        ],
    )
    def test_history_start(self, today, expected):
        assert history_start(today) == expected

    def test_generate_pkce(self):
        verifier, challenge = generate_pkce()
        assert len(verifier) == 43
        assert verifier != challenge
        assert "=" not in challenge

    def test_check_ser_error(self):
        assert check_ser_error({"messagesInformatifs": ["a", "b"]}) == "a; b"
        assert check_ser_error({"periodesActivite": []}) is None


def mock_portal(consumption_body, login_body=None, router=respx):
    """Register the full login / authorize / token / service point flow"""
    routes = {}
    routes["login"] = router.post(f"{API}/auth/externe/authentification").mock(
        return_value=httpx.Response(
            200,
            json=login_body or {"code": "0"},
            headers={"Set-Cookie": "cookieOauth=session123; Path=/"},
        )
    )
    routes["authorize"] = router.get(f"{API}/auth/authorize-internet").mock(
        return_value=httpx.Response(
            302, headers={"Location": "https://app.test/callback?code=authcode"}
        )
    )
    routes["token"] = router.post(f"{API}/auth/tokenUtilisateurInternet").mock(
        return_value=httpx.Response(
            200, json={"access_token": "tok", "token_type": "Bearer", "expires_in": 3600}
        )
    )
    routes["service_point"] = router.get(f"{API}/rest/produits/pointsAccesServicesClient").mock(
        return_value=httpx.Response(
            200, json=[{"id": 42, "pointDeService": {"reference": "PDL123"}}]
        )
    )
    routes["consumption"] = router.post(f"{API}/rest/interfaces/abc/historiqueDeMesure").mock(
        return_value=httpx.Response(200, json=consumption_body)
    )
    return routes


class TestElectricityDataSource:
    """Test the authenticated fetch flow and its freshness"""

    @pytest.fixture
    def clock(self):
        return FakeClock(datetime(2024, 3, 10, 8, 0, tzinfo=timezone.utc))  # 09:00 in Paris

    @pytest.fixture
    def config(self):
        return ElectricityConfig(api_url=API, client_id="ABC", username="me", password="pw")

    async def test_not_configured(self, clock):
        result = await ElectricityDataSource(ElectricityConfig(), clock=clock).fetch()
        assert result.error == "electricity not configured"

    @respx.mock
    async def test_published_expires_next_cutoff(self, clock, config):
        """Yesterday's figures present: fresh until tomorrow at the publication hour"""
        routes = mock_portal({"periodesActivite": [contract([("09/03/2024", 5.0, 12.0)])]})
        source = ElectricityDataSource(config, clock=clock)

        result = await source.fetch()
        assert result.ok
        assert result.to_dict()["data"]["days"] == [{"date": "2024-03-09", "HC": 5, "HP": 12}]
        assert result.expires_at == datetime(2024, 3, 11, 4, 0, tzinfo=PARIS)

        authorize = routes["authorize"].calls.last.request
        assert authorize.headers["Cookie"] == "cookieOauth=session123"
        assert authorize.url.params["code_challenge_method"] == "S256"

        token_form = parse_qs(routes["token"].calls.last.request.content.decode())
        assert token_form["code"] == ["authcode"]

        consumption = routes["consumption"].calls.last.request
        assert consumption.headers["Authorization"] == "Bearer tok"
        payload = json.loads(consumption.content)
        assert payload["pointAccesServicesClient"]["id"] == "42"
        assert payload["dateDebut"] == "2023-12-31T00:00:00+01:00"
        assert payload["dateFin"] == "2024-03-11T00:00:00+01:00"
        await source.shutdown()

    @respx.mock
    async def test_unpublished_retries_hourly(self, clock, config):
        mock_portal({"periodesActivite": [contract([("08/03/2024", 5.0, 12.0)])]})
        source = ElectricityDataSource(config, clock=clock)

        result = await source.fetch()
        assert result.ok
        assert result.expires_at == clock() + timedelta(hours=1)
        await source.shutdown()

    @respx.mock
    async def test_before_publication_hour(self, config):
        """At 03:00 local with a 04:00 publication hour, expire at exactly 04:00"""
        clock = FakeClock(datetime(2024, 3, 10, 2, 0, tzinfo=timezone.utc))
        mock_portal({"periodesActivite": [contract([("08/03/2024", 5.0, 12.0)])]})
        source = ElectricityDataSource(config, clock=clock)

        result = await source.fetch()
        assert result.expires_at == datetime(2024, 3, 10, 4, 0, tzinfo=PARIS)
        await source.shutdown()

    @respx.mock
    async def test_auth_reused(self, clock, config):
        routes = mock_portal({"periodesActivite": [contract([("09/03/2024", 5.0, 12.0)])]})
        source = ElectricityDataSource(config, clock=clock)

        await source.fetch()
        clock.advance(timedelta(minutes=30))
        await source.fetch()
        assert routes["login"].call_count == 1
        assert routes["service_point"].call_count == 1
        assert routes["consumption"].call_count == 2
        await source.shutdown()

    @respx.mock
    async def test_concurrent_cold_fetches_login_once(self, clock, config):
        """Fetches racing on a cold source share a single handshake"""
        routes = mock_portal({"periodesActivite": [contract([("09/03/2024", 5.0, 12.0)])]})
        source = ElectricityDataSource(config, clock=clock)

        results = await asyncio.gather(*(source.fetch() for _ in range(5)))
        assert all(r.ok for r in results)
        assert routes["login"].call_count == 1
        assert routes["token"].call_count == 1
        assert routes["service_point"].call_count == 1
        assert routes["consumption"].call_count == 5
        await source.shutdown()

    @respx.mock
    async def test_service_point_retried_with_valid_token(self, clock, config):
        """A failed delivery point lookup is retried without logging in again"""
        routes = mock_portal({"periodesActivite": [contract([("09/03/2024", 5.0, 12.0)])]})
        routes["service_point"].mock(
            side_effect=[
                httpx.Response(500, text="boom"),
                httpx.Response(200, json=[{"id": 42, "pointDeService": {"reference": "PDL123"}}]),
            ]
        )
        source = ElectricityDataSource(config, clock=clock)

        first = await source.fetch()
        assert first.error == "auth: server returned 500: boom"
        assert routes["consumption"].call_count == 0

        clock.advance(timedelta(minutes=10))
        second = await source.fetch()
        assert second.ok
        assert routes["login"].call_count == 1
        assert routes["service_point"].call_count == 2
        payload = json.loads(routes["consumption"].calls.last.request.content)
        assert payload["pointAccesServicesClient"]["id"] == "42"
        await source.shutdown()

    @respx.mock(assert_all_called=False)
    async def test_login_rejected(self, clock, config, respx_mock):
        mock_portal({}, login_body={"code": "1", "libelle": "bad password"}, router=respx_mock)
        source = ElectricityDataSource(config, clock=clock)

        result = await source.fetch()
        assert result.error == "auth: login: bad password"
        assert result.expires_at == clock() + timedelta(minutes=10)
        await source.shutdown()

    @respx.mock
    async def test_portal_error_messages(self, clock, config):
        mock_portal({"messagesInformatifs": ["service indisponible"]})
        source = ElectricityDataSource(config, clock=clock)

        result = await source.fetch()
        assert result.error == "service indisponible"
        await source.shutdown()

    @respx.mock
    async def test_no_contracts(self, clock, config):
        mock_portal({"periodesActivite": []})
        source = ElectricityDataSource(config, clock=clock)

        result = await source.fetch()
        assert result.error == "no contract data"
        assert result.expires_at == clock() + timedelta(minutes=5)
        await source.shutdown()
