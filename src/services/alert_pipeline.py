"""
Strict safety alert pipeline.

require location -> search -> build context -> generate -> parse/recover -> validate
-> persist. Every stage failure propagates to the caller; there is no mock-data path.
Only individual insert failures during persistence are logged and skipped.
"""

from __future__ import annotations

import argparse
import json
import logging
import sqlite3
import sys
from pathlib import Path
from typing import List, Mapping, Sequence

from src.services.alert_parsing import ResponseParser, StrictThenRecoverParser
from src.services.alert_prompts import RecentReport, build_context
from src.services.alert_validation import SafetyAlert, validate_alerts
from src.services.config import Settings
from src.services.errors import MissingLocationError, SearchError
from src.services.incident_store import IncidentRecord, IncidentStore
from src.services.llm_client import OpenRouterClient
from src.services.web_search import SerpApiSearch, build_search_query

LOGGER = logging.getLogger(__name__)

RECENT_REPORT_DAYS = 7
RECENT_REPORT_LIMIT = 10


class AlertGenerator:
    """Wires the search, generation, parsing, validation and storage collaborators."""

    def __init__(
        self,
        search_client: SerpApiSearch,
        llm_client: OpenRouterClient,
        store: IncidentStore | None = None,
        parser: ResponseParser | None = None,
    ) -> None:
        self.search_client = search_client
        self.llm_client = llm_client
        self.store = store
        self.parser = parser or StrictThenRecoverParser()

    @classmethod
    def from_settings(cls, settings: Settings, store: IncidentStore | None = None) -> "AlertGenerator":
        return cls(
            search_client=SerpApiSearch(settings.serpapi_key, timeout=settings.http_timeout),
            llm_client=OpenRouterClient(
                settings.openrouter_api_key,
                base_url=settings.openrouter_base_url,
                model=settings.model,
                timeout=settings.http_timeout,
                referer=settings.site_url,
            ),
            store=store,
        )

    def generate_alerts(
        self,
        location: str,
        radius: float,
        coordinates: Mapping[str, float] | None = None,
        country: str | None = None,
    ) -> List[SafetyAlert]:
        if not location or not coordinates:
            raise MissingLocationError("Location and coordinates are required. Refusing to guess a location.")
        LOGGER.info("Generating alerts for %s (radius=%skm, country=%s)", location, radius, country)

        query = build_search_query(location)
        search_results = self.search_client.search(query)
        if not search_results:
            raise SearchError("Search returned no results. Cannot proceed to generation.")
        for index, result in enumerate(search_results, start=1):
            LOGGER.debug("Search result %s: %s (%s)", index, result.title, result.url)

        context = build_context(
            location,
            radius,
            coordinates,
            country,
            self._recent_reports(),
            search_results,
        )
        raw_text = self.llm_client.generate(context)
        candidates = self.parser.parse(raw_text)
        LOGGER.info("Model produced %s candidate alerts", len(candidates))

        alerts = validate_alerts(candidates, search_results)
        self._persist(alerts, coordinates)
        return alerts

    def _recent_reports(self) -> list[RecentReport]:
        if self.store is None:
            return []
        try:
            return self.store.recent_reports(days=RECENT_REPORT_DAYS, limit=RECENT_REPORT_LIMIT)
        except sqlite3.Error:
            LOGGER.exception("Could not read recent crime reports; continuing without them.")
            return []

    def _persist(self, alerts: Sequence[SafetyAlert], coordinates: Mapping[str, float] | None) -> int:
        if self.store is None:
            LOGGER.debug("No incident store configured; skipping persistence.")
            return 0
        saved = 0
        for alert in alerts:
            try:
                incident_id = self.store.insert_incident(IncidentRecord.from_alert(alert, coordinates))
            except (sqlite3.Error, TypeError, ValueError):
                LOGGER.exception("Failed to insert incident for alert %s", alert.id)
                continue
            saved += 1
            LOGGER.info("Saved incident %s for alert %s", incident_id, alert.id)
        LOGGER.info("Persisted %s of %s alerts", saved, len(alerts))
        return saved


def generate_alerts(
    location: str,
    radius: float,
    coordinates: Mapping[str, float] | None = None,
    country: str | None = None,
    settings: Settings | None = None,
    store: IncidentStore | None = None,
) -> List[SafetyAlert]:
    settings = settings or Settings.from_env()
    owns_store = store is None
    if store is None:
        store = IncidentStore(settings.db_path)
    try:
        generator = AlertGenerator.from_settings(settings, store=store)
        return generator.generate_alerts(location, radius, coordinates, country)
    finally:
        if owns_store:
            store.close()


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Generate grounded safety alerts for a location.")
    parser.add_argument("location", help='Structured address, e.g. "Street, Suburb, City, Country".')
    parser.add_argument("--lat", type=float, required=True, help="Latitude of the location.")
    parser.add_argument("--lng", type=float, required=True, help="Longitude of the location.")
    parser.add_argument("--radius", type=float, default=5, help="Search radius in km (default: 5).")
    parser.add_argument("--country", default=None, help="Optional country name for prompt context.")
    parser.add_argument(
        "--db-path",
        type=Path,
        default=None,
        help="SQLite incident store (default: SAFETY_DB_PATH or datasets/safety/incidents.sqlite).",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Python logging level (default: INFO).",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
        force=True,
    )
    settings = Settings.from_env()
    if args.db_path:
        settings.db_path = args.db_path
    try:
        alerts = generate_alerts(
            args.location,
            args.radius,
            {"lat": args.lat, "lng": args.lng},
            args.country,
            settings=settings,
        )
    except Exception:  # noqa: BLE001
        LOGGER.exception("Alert generation failed.")
        return 1
    json.dump([alert.to_serializable() for alert in alerts], sys.stdout, indent=2, ensure_ascii=False)
    sys.stdout.write("\n")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
