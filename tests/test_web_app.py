"""Tests for the web application and its routes."""

import pytest
from fastapi.testclient import TestClient

from strasboard.config import Config
from strasboard.context import AppContext
from strasboard.datasources.registry import DataSourceRegistry
from strasboard.errors import NotConfiguredError
from strasboard.web.app import create_app
from tests.mock_datasource import MockDataSource


@pytest.fixture
def sources():
    return {
        "weather": MockDataSource("weather", data={"current": {"temperature": 12.5}}),
        "transport": MockDataSource("transport", data={"stops": []}, items={0: {"name": "Gallia"}}),
        "tempo": MockDataSource("tempo"),
    }


@pytest.fixture
def context(sources):
    return AppContext.create(Config(), registry=DataSourceRegistry(list(sources.values())))


@pytest.fixture
def client(context):
    return TestClient(create_app(context=context))


class TestWebAppCreation:
    """Test web app creation with and without context."""

    def test_create_app_without_context(self):
        app = create_app(context=None)
        assert app.state.context is None

    def test_create_app_with_context(self, context):
        """Test app receives injected context."""
        app = create_app(context=context)
        assert app.state.context is context

    def test_routes_require_context(self):
        client = TestClient(create_app(context=None), raise_server_exceptions=False)
        assert client.get("/api/all").status_code == 500

    def test_lifespan_with_unstarted_context(self, context):
        with TestClient(create_app(context=context)) as client:
            assert client.get("/health").status_code == 200


class TestRoutes:
    """Test the JSON API."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["timestamp"].endswith("Z")

    def test_list_sources(self, client):
        data = client.get("/api/sources").json()
        assert [s["name"] for s in data["sources"]] == ["weather", "transport", "tempo"]
        assert data["sources"][0]["description"].startswith("Mock data source")

    def test_single_source(self, client, sources):
        response = client.get("/api/weather")
        assert response.status_code == 200
        data = response.json()
        assert data["data"] == {"current": {"temperature": 12.5}}
        assert "error" not in data

        client.get("/api/weather")
        assert sources["weather"].fetch_count == 1

    def test_unknown_source(self, client):
        response = client.get("/api/nope")
        assert response.status_code == 404

    def test_error_source(self, client, sources):
        sources["tempo"].fail_with(NotConfiguredError("tempo not configured"))
        data = client.get("/api/tempo").json()
        assert data["error"] == "tempo not configured"
        assert "data" not in data

    def test_all(self, client, sources):
        sources["tempo"].fail_with(NotConfiguredError("tempo not configured"))
        data = client.get("/api/all").json()

        assert set(data) == {"weather", "transport", "tempo", "timestamp"}
        assert data["weather"]["data"]["current"]["temperature"] == 12.5
        assert data["tempo"] == {
            "timestamp": data["tempo"]["timestamp"],
            "error": "tempo not configured",
        }

    def test_cache_status(self, client):
        client.get("/api/weather")
        data = client.get("/api/cache").json()
        assert data["total_entries"] == 1
        assert data["entries"]["weather"]["fresh"] is True

    def test_transport_live(self, client):
        data = client.get("/api/transport/live", params={"id": "0"}).json()
        assert data["data"] == {"name": "Gallia"}
        assert client.get("/api/cache").json()["entries"]["transport/0"]["fresh"] is True

    @pytest.mark.parametrize("stop_id", ["abc", "", "7"])
    def test_transport_live_invalid_id(self, client, stop_id):
        response = client.get("/api/transport/live", params={"id": stop_id})
        assert response.status_code == 200
        assert response.json()["error"] == "invalid id"
        assert "data" not in response.json()

    def test_transport_live_without_transport(self):
        context = AppContext.create(
            Config(), registry=DataSourceRegistry([MockDataSource("weather")])
        )
        client = TestClient(create_app(context=context))
        assert client.get("/api/transport/live", params={"id": "0"}).status_code == 404
