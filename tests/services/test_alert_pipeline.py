from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import Any

import pytest

from src.services import alert_pipeline
from src.services.alert_pipeline import AlertGenerator
from src.services.config import Settings
from src.services.errors import AlertParseError, GenerationError, MissingLocationError, SearchError
from src.services.incident_store import IncidentStore
from src.services.web_search import SearchResult

LOCATION = "12 Main Rd, Sea Point, Cape Town, South Africa"
COORDS = {"lat": -33.918, "lng": 18.3817}

RESULTS = [
    SearchResult(title="Store robbery", url="https://news.example/1", source="News24", snippet="Armed men robbed a store."),
    SearchResult(title="Hijacking spike", url="https://news.example/2", source="IOL", snippet="Motorists warned."),
]


class FakeSearch:
    def __init__(self, results: list[SearchResult] | None = None, error: Exception | None = None) -> None:
        self.results = RESULTS if results is None else results
        self.error = error
        self.queries: list[str] = []

    def search(self, query: str) -> list[SearchResult]:
        self.queries.append(query)
        if self.error:
            raise self.error
        return self.results


class FakeLLM:
    def __init__(self, text: str = "", error: Exception | None = None) -> None:
        self.text = text
        self.error = error
        self.contexts: list[str] = []

    def generate(self, context: str) -> str:
        self.contexts.append(context)
        if self.error:
            raise self.error
        return self.text


def alert_json(url: str, index: int, severity: str = "high") -> dict[str, Any]:
    return {
        "id": f"SA-2025-00{index}",
        "title": f"Alert {index}",
        "shortDescription": "Short",
        "longDescription": "Long",
        "severity": severity,
        "location": "Sea Point",
        "area": "Sea Point",
        "timestamp": "2025-03-04T10:00:00Z",
        "source": "News24",
        "sourceUrl": url,
        "alertType": "crime",
        "keywords": ["robbery"],
        "recommendations": "Stay alert",
    }


def make_generator(tmp_path: Path, search: FakeSearch, llm: FakeLLM) -> tuple[AlertGenerator, IncidentStore]:
    store = IncidentStore(tmp_path / "incidents.sqlite")
    return AlertGenerator(search, llm, store=store), store  # type: ignore[arg-type]


def test_happy_path_returns_grounded_alerts_and_persists(tmp_path: Path) -> None:
    llm = FakeLLM(
        json.dumps(
            {
                "alerts": [
                    alert_json("https://news.example/1", 1, severity="critical"),
                    alert_json("https://news.example/2", 2, severity="low"),
                ]
            }
        )
    )
    search = FakeSearch()
    generator, store = make_generator(tmp_path, search, llm)

    alerts = generator.generate_alerts(LOCATION, 5, COORDS, "South Africa")

    assert [alert.source_url for alert in alerts] == ["https://news.example/1", "https://news.example/2"]
    assert search.queries == ['"Sea Point" crime incidents safety news recent today']
    assert "Generate EXACTLY 2 safety alerts" in llm.contexts[0]
    rows = store.recent_incidents(limit=10)
    assert sorted(row["severity"] for row in rows) == [1, 5]
    assert {row["latitude"] for row in rows} == {-33.918}
    assert {row["longitude"] for row in rows} == {18.3817}


def test_hallucinated_urls_are_removed(tmp_path: Path) -> None:
    llm = FakeLLM(
        json.dumps(
            {
                "alerts": [
                    alert_json("https://news.example/1", 1),
                    alert_json("https://made-up.example/z", 2),
                ]
            }
        )
    )
    generator, store = make_generator(tmp_path, FakeSearch(), llm)

    alerts = generator.generate_alerts(LOCATION, 5, COORDS)

    assert [alert.id for alert in alerts] == ["SA-2025-001"]
    assert len(store.recent_incidents()) == 1


def test_truncated_generation_is_recovered(tmp_path: Path) -> None:
    complete = json.dumps({"alerts": [alert_json("https://news.example/1", 1), alert_json("https://news.example/2", 2)]})
    truncated = complete[:-2] + ', {"id": "SA-2025-003", "title": "Trunc'
    generator, _ = make_generator(tmp_path, FakeSearch(), FakeLLM(truncated))

    alerts = generator.generate_alerts(LOCATION, 5, COORDS)

    assert [alert.id for alert in alerts] == ["SA-2025-001", "SA-2025-002"]


def test_missing_coordinates_raise_before_any_io(tmp_path: Path) -> None:
    search = FakeSearch()
    llm = FakeLLM("{}")
    generator, _ = make_generator(tmp_path, search, llm)

    with pytest.raises(MissingLocationError):
        generator.generate_alerts(LOCATION, 5, None)
    with pytest.raises(MissingLocationError):
        generator.generate_alerts("", 5, COORDS)

    assert search.queries == []
    assert llm.contexts == []


def test_search_failure_propagates_and_skips_generation(tmp_path: Path) -> None:
    llm = FakeLLM("{}")
    generator, _ = make_generator(tmp_path, FakeSearch(error=SearchError("quota exceeded")), llm)

    with pytest.raises(SearchError, match="quota"):
        generator.generate_alerts(LOCATION, 5, COORDS)

    assert llm.contexts == []


def test_empty_search_results_raise(tmp_path: Path) -> None:
    generator, _ = make_generator(tmp_path, FakeSearch(results=[]), FakeLLM("{}"))

    with pytest.raises(SearchError):
        generator.generate_alerts(LOCATION, 5, COORDS)


def test_generation_failure_propagates(tmp_path: Path) -> None:
    error = GenerationError("OpenRouter API error: 429 - rate limited", status_code=429)
    generator, store = make_generator(tmp_path, FakeSearch(), FakeLLM(error=error))

    with pytest.raises(GenerationError) as excinfo:
        generator.generate_alerts(LOCATION, 5, COORDS)

    assert excinfo.value.status_code == 429
    assert store.recent_incidents() == []


def test_unparseable_generation_raises(tmp_path: Path) -> None:
    generator, _ = make_generator(tmp_path, FakeSearch(), FakeLLM("not json at all"))

    with pytest.raises(AlertParseError):
        generator.generate_alerts(LOCATION, 5, COORDS)


def test_recent_reports_feed_the_context(tmp_path: Path) -> None:
    llm = FakeLLM(json.dumps({"alerts": []}))
    generator, store = make_generator(tmp_path, FakeSearch(), llm)
    store.add_crime_report(type="Burglary", severity="high", address="3 Beach Rd")

    assert generator.generate_alerts(LOCATION, 5, COORDS) == []
    assert "Recent crime reports: Burglary (high)" in llm.contexts[0]


def test_insert_failure_is_logged_and_skipped(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    llm = FakeLLM(
        json.dumps({"alerts": [alert_json("https://news.example/1", 1), alert_json("https://news.example/2", 2)]})
    )
    generator, store = make_generator(tmp_path, FakeSearch(), llm)
    real_insert = store.insert_incident
    calls = {"count": 0}

    def flaky_insert(record: Any) -> int:
        calls["count"] += 1
        if calls["count"] == 1:
            raise sqlite3.OperationalError("database is locked")
        return real_insert(record)

    store.insert_incident = flaky_insert  # type: ignore[method-assign]

    alerts = generator.generate_alerts(LOCATION, 5, COORDS)

    assert len(alerts) == 2
    assert len(store.recent_incidents()) == 1
    assert "Failed to insert incident" in caplog.text


def test_runs_without_a_store() -> None:
    llm = FakeLLM(json.dumps({"alerts": [alert_json("https://news.example/1", 1)]}))
    generator = AlertGenerator(FakeSearch(), llm)  # type: ignore[arg-type]

    assert len(generator.generate_alerts(LOCATION, 5, COORDS)) == 1


def test_edgemead_address_searches_on_suburb(tmp_path: Path) -> None:
    search = FakeSearch()
    generator, _ = make_generator(tmp_path, search, FakeLLM(json.dumps({"alerts": []})))

    generator.generate_alerts("Coetzenberg Way, Edgemead, Milnerton, Cape Town, South Africa", 5, COORDS)

    assert '"Edgemead"' in search.queries[0]


def test_three_grounded_alerts_keep_search_order(tmp_path: Path) -> None:
    results = [
        SearchResult(title=f"R{i}", url=f"https://news.example/r{i}", source="News24", snippet="s") for i in range(3)
    ]
    llm = FakeLLM(json.dumps({"alerts": [alert_json(result.url, index + 1) for index, result in enumerate(results)]}))
    generator, _ = make_generator(tmp_path, FakeSearch(results=results), llm)

    alerts = generator.generate_alerts(LOCATION, 5, COORDS)

    assert [alert.source_url for alert in alerts] == [result.url for result in results]


def test_single_complete_record_recovered_from_broken_json(tmp_path: Path) -> None:
    record = json.dumps(alert_json("https://news.example/1", 1))
    raw = '{"alerts": [ ' + record + ', {"id": "SA-2025-002", "title": "Half'
    generator, _ = make_generator(tmp_path, FakeSearch(), FakeLLM(raw))

    alerts = generator.generate_alerts(LOCATION, 5, COORDS)

    assert [alert.id for alert in alerts] == ["SA-2025-001"]


class RecordingStore(IncidentStore):
    opened: list["RecordingStore"] = []

    def __init__(self, db_path: Path) -> None:
        super().__init__(db_path)
        self.closed = False
        RecordingStore.opened.append(self)

    def close(self) -> None:
        self.closed = True
        super().close()


def test_module_generate_alerts_closes_the_store_it_opens(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    RecordingStore.opened = []
    monkeypatch.setattr(alert_pipeline, "IncidentStore", RecordingStore)
    monkeypatch.setattr(
        alert_pipeline.AlertGenerator,
        "from_settings",
        classmethod(lambda cls, settings, store=None: cls(FakeSearch(), FakeLLM(error=GenerationError("down")), store=store)),
    )

    with pytest.raises(GenerationError):
        alert_pipeline.generate_alerts(LOCATION, 5, COORDS, settings=Settings(db_path=tmp_path / "incidents.sqlite"))

    assert len(RecordingStore.opened) == 1
    assert RecordingStore.opened[0].closed


def test_module_generate_alerts_leaves_caller_store_open(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    store = IncidentStore(tmp_path / "incidents.sqlite")
    llm = FakeLLM(json.dumps({"alerts": [alert_json("https://news.example/1", 1)]}))
    monkeypatch.setattr(
        alert_pipeline.AlertGenerator,
        "from_settings",
        classmethod(lambda cls, settings, store=None: cls(FakeSearch(), llm, store=store)),
    )

    alerts = alert_pipeline.generate_alerts(LOCATION, 5, COORDS, settings=Settings(), store=store)

    assert len(alerts) == 1
    assert len(store.recent_incidents()) == 1
