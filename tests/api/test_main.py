from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Iterator

import pytest
from fastapi.testclient import TestClient

from src.api import main
from src.services.alert_pipeline import AlertGenerator
from src.services.config import Settings
from src.services.errors import GenerationError, SearchError
from src.services.geo_agent import GeoAgent
from src.services.geocoding import GeocodeResult
from src.services.incident_store import IncidentStore
from src.services.web_search import SearchResult

RESULTS = [
    SearchResult(title="Store robbery in Sandton", url="https://news.example/1", source="News24", snippet="Armed robbery."),
    SearchResult(title="Hijacking spike", url="https://news.example/2", source="IOL", snippet="Motorists warned."),
]

REQUEST = {
    "location": "1 Rivonia Rd, Sandton, Johannesburg, South Africa",
    "radius": 5,
    "coordinates": {"lat": -26.1076, "lng": 28.0567},
    "userCountry": "South Africa",
}


class FakeSearch:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error

    def search(self, query: str) -> list[SearchResult]:
        if self.error:
            raise self.error
        return RESULTS


class FakeLLM:
    def __init__(self, text: str = "", error: Exception | None = None) -> None:
        self.text = text
        self.error = error

    def generate(self, context: str) -> str:
        if self.error:
            raise self.error
        return self.text


class FakeGeocoder:
    def lookup(self, location: str, country: str | None = None) -> GeocodeResult | None:
        if location == "Sandton":
            return GeocodeResult(query=location, latitude=-26.1076, longitude=28.0567, address="Sandton", source="cache")
        return None

    def reverse(self, latitude: float, longitude: float) -> GeocodeResult | None:
        return GeocodeResult(query="reverse", latitude=latitude, longitude=longitude, address="Sandton", source="cache")


def alert_payload(url: str, index: int) -> dict[str, Any]:
    return {
        "id": f"SA-2025-00{index}",
        "title": f"Alert {index}",
        "shortDescription": "Short",
        "longDescription": "Long",
        "severity": "high",
        "location": "Sandton",
        "area": "Sandton",
        "timestamp": "2025-03-04T10:00:00Z",
        "source": "News24",
        "sourceUrl": url,
        "alertType": "crime",
        "keywords": ["robbery"],
        "recommendations": "Stay alert",
    }


@pytest.fixture
def store(tmp_path: Path) -> Iterator[IncidentStore]:
    incident_store = IncidentStore(tmp_path / "incidents.sqlite")
    yield incident_store
    incident_store.close()


@pytest.fixture
def client(tmp_path: Path, store: IncidentStore) -> Iterator[TestClient]:
    settings = Settings(results_dir=tmp_path / "results", geo_agent_enabled=False)
    main.app.dependency_overrides[main.get_settings] = lambda: settings
    main.app.dependency_overrides[main.get_store] = lambda: store
    main.app.dependency_overrides[main.get_search_client] = lambda: FakeSearch()
    main.app.dependency_overrides[main.get_geo_agent] = lambda: GeoAgent(None, settings.results_dir)
    main.app.dependency_overrides[main.get_geocoder] = lambda: FakeGeocoder()
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def use_generator(store: IncidentStore, search: FakeSearch, llm: FakeLLM) -> None:
    main.app.dependency_overrides[main.get_alert_generator] = lambda: AlertGenerator(search, llm, store=store)  # type: ignore[arg-type]


def test_health(client: TestClient) -> None:
    assert client.get("/health").json() == {"status": "ok"}


def test_generate_returns_grounded_alerts(client: TestClient, store: IncidentStore) -> None:
    text = json.dumps(
        {"alerts": [alert_payload("https://news.example/1", 1), alert_payload("https://fake.example/9", 2)]}
    )
    use_generator(store, FakeSearch(), FakeLLM(text))

    response = client.post("/api/alerts/generate", json=REQUEST)

    assert response.status_code == 200
    alerts = response.json()["alerts"]
    assert [alert["sourceUrl"] for alert in alerts] == ["https://news.example/1"]
    assert alerts[0]["description"] == "Short"
    assert alerts[0]["isRead"] is False
    assert alerts[0]["isSaved"] is False
    assert len(store.recent_incidents()) == 1


def test_generate_without_location_is_400(client: TestClient, store: IncidentStore) -> None:
    use_generator(store, FakeSearch(), FakeLLM("{}"))

    response = client.post("/api/alerts/generate", json={"radius": 5})

    assert response.status_code == 400
    assert response.json()["details"] == "Location is required"


def test_generate_without_coordinates_is_400(client: TestClient, store: IncidentStore) -> None:
    use_generator(store, FakeSearch(), FakeLLM("{}"))

    response = client.post("/api/alerts/generate", json={"location": REQUEST["location"], "radius": 5})

    assert response.status_code == 400
    assert response.json()["error"] == "Failed to generate alerts"


def test_generate_provider_failure_is_500(client: TestClient, store: IncidentStore) -> None:
    use_generator(store, FakeSearch(), FakeLLM(error=GenerationError("OpenRouter API error: 401 - bad key", status_code=401)))

    response = client.post("/api/alerts/generate", json=REQUEST)

    assert response.status_code == 500
    assert response.json() == {
        "error": "Failed to generate alerts",
        "details": "OpenRouter API error: 401 - bad key",
    }
    assert store.recent_incidents() == []


def test_search_failure_is_500(client: TestClient) -> None:
    main.app.dependency_overrides[main.get_search_client] = lambda: FakeSearch(error=SearchError("SerpAPI search failed: 429"))

    response = client.post("/api/search", json={"query": "robbery in Sandton"})

    assert response.status_code == 500
    assert response.json()["error"] == "Search failed"


def test_search_returns_results(client: TestClient) -> None:
    response = client.post("/api/search", json={"query": "robbery in Sandton"})

    body = response.json()
    assert response.status_code == 200
    assert body["success"] is True
    assert body["totalResults"] == 2
    assert body["results"][0]["url"] == "https://news.example/1"


def test_geolocate_writes_incident_file(client: TestClient, tmp_path: Path) -> None:
    response = client.post(
        "/api/geolocate",
        json={"query": "robbery in Sandton", "searchResults": [result.to_serializable() for result in RESULTS]},
    )

    body = response.json()
    assert response.status_code == 200
    assert body["success"] is True
    assert body["incidentsGenerated"] == 2
    assert Path(body["filePath"]).parent == tmp_path / "results"


def test_geolocate_failure_is_500(client: TestClient, tmp_path: Path) -> None:
    blocker = tmp_path / "blocked"
    blocker.write_text("x", encoding="utf-8")
    main.app.dependency_overrides[main.get_geo_agent] = lambda: GeoAgent(None, blocker)

    response = client.post(
        "/api/geolocate",
        json={"query": "robbery in Sandton", "searchResults": [result.to_serializable() for result in RESULTS]},
    )

    assert response.status_code == 500
    assert response.json()["error"] == "Geolocation processing failed"


def test_crime_reports_round_trip(client: TestClient) -> None:
    created = client.post(
        "/api/crime/reports",
        json={"type": "Burglary", "severity": "high", "address": "3 Beach Rd", "countryId": "ZA", "createdBy": "u1"},
    )

    assert created.status_code == 201
    listed = client.get("/api/crime/reports", params={"countryId": "ZA"}).json()
    assert [row["type"] for row in listed] == ["Burglary"]
    recent = client.get("/api/crime/reports/recent").json()
    assert recent[0]["address"] == "3 Beach Rd"


def test_recent_incidents_endpoint(client: TestClient, store: IncidentStore) -> None:
    text = json.dumps({"alerts": [alert_payload("https://news.example/1", 1)]})
    use_generator(store, FakeSearch(), FakeLLM(text))
    client.post("/api/alerts/generate", json=REQUEST)

    rows = client.get("/api/incidents/recent", params={"limit": 5, "alert_type": "crime"}).json()

    assert len(rows) == 1
    assert rows[0]["severity"] == 4


def test_geocoding_endpoints(client: TestClient) -> None:
    found = client.get("/api/geocoding/search", params={"q": "Sandton"})
    missing = client.get("/api/geocoding/search", params={"q": "Atlantis"})
    reverse = client.get("/api/geocoding/reverse", params={"lat": -26.1, "lng": 28.05})

    assert found.json()["coordinates"] == [28.0567, -26.1076]
    assert missing.status_code == 404
    assert reverse.json()["address"] == "Sandton"
