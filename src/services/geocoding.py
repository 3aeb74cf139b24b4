"""
Address geocoding backed by a SQLite cache and OpenStreetMap's Nominatim API.

Used by the address lookup endpoints; the alert pipeline itself never geocodes and
refuses to run without caller-supplied coordinates.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

import requests

LOGGER = logging.getLogger(__name__)


@dataclass
class GeocodeResult:
    query: str
    latitude: float
    longitude: float
    address: str
    confidence: float = 0.5
    source: str = "unknown"

    def to_serializable(self) -> dict[str, Any]:
        return {
            "query": self.query,
            # GeoJSON ordering.
            "coordinates": [self.longitude, self.latitude],
            "address": self.address,
            "confidence": self.confidence,
            "source": self.source,
        }


class SQLiteCache:
    """Query -> coordinates cache; failed lookups are stored with null coordinates."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS geocache (
                query TEXT PRIMARY KEY,
                latitude REAL,
                longitude REAL,
                raw_response TEXT,
                fetched_at TEXT
            )
            """
        )
        self.conn.commit()
        self.lock = threading.Lock()

    def get(self, key: str) -> Optional[tuple[float | None, float | None, dict[str, Any], str | None]]:
        with self.lock:
            row = self.conn.execute(
                "SELECT latitude, longitude, raw_response, fetched_at FROM geocache WHERE query = ?",
                (key,),
            ).fetchone()
        if not row:
            return None
        raw: dict[str, Any] = {}
        if row[2]:
            try:
                raw = json.loads(row[2])
            except json.JSONDecodeError:
                raw = {}
        return (row[0], row[1], raw, row[3])

    def set(self, key: str, latitude: float | None, longitude: float | None, raw: dict[str, Any]) -> None:
        raw_blob = json.dumps(raw) if raw else None
        with self.lock:
            self.conn.execute(
                """
                INSERT OR REPLACE INTO geocache (query, latitude, longitude, raw_response, fetched_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (key, latitude, longitude, raw_blob, datetime.now(timezone.utc).isoformat()),
            )
            self.conn.commit()


def is_valid_coordinate(lat: Any, lon: Any) -> bool:
    try:
        lat_f = float(lat)
        lon_f = float(lon)
    except (TypeError, ValueError):
        return False
    return -90.0 <= lat_f <= 90.0 and -180.0 <= lon_f <= 180.0


class NominatimGeocoder:
    """Forward and reverse lookups against Nominatim with a local cache."""

    search_endpoint = "https://nominatim.openstreetmap.org/search"
    reverse_endpoint = "https://nominatim.openstreetmap.org/reverse"

    def __init__(
        self,
        cache_path: Path,
        min_interval: float = 1.1,
        user_agent: str = "SafetyNewsApp/1.0",
        failure_ttl_days: int = 7,
        google_api_key: str | None = None,
        timeout: float = 25.0,
    ) -> None:
        self.cache = SQLiteCache(cache_path)
        self.min_interval = min_interval
        self.user_agent = user_agent
        self.failure_ttl_days = failure_ttl_days
        self.google_api_key = google_api_key
        self.timeout = timeout
        self._last_request = 0.0
        self.stats: dict[str, int] = {
            "cache_hits": 0,
            "nominatim_hits": 0,
            "google_hits": 0,
            "failures": 0,
        }

    def lookup(self, location: str, country: str | None = None) -> Optional[GeocodeResult]:
        query = location.strip()
        if not query:
            return None
        if country:
            query = f"{query}, {country.strip()}"
        cached = self._from_cache(query)
        if cached is not False:
            return cached
        payload = self._fetch_search(query)
        source = "nominatim"
        if not payload and self.google_api_key:
            payload = self._fetch_google(query)
            source = "google"
        return self._store(query, payload, source)

    def reverse(self, latitude: float, longitude: float) -> Optional[GeocodeResult]:
        if not is_valid_coordinate(latitude, longitude):
            return None
        key = f"reverse:{latitude:.5f},{longitude:.5f}"
        cached = self._from_cache(key)
        if cached is not False:
            return cached
        payload = self._fetch_reverse(latitude, longitude)
        return self._store(key, payload, "nominatim")

    def _from_cache(self, key: str) -> GeocodeResult | None | bool:
        """Return a cached hit, None for a fresh cached failure, or False on miss."""
        cached = self.cache.get(key)
        if not cached:
            return False
        lat, lon, raw, fetched_at = cached
        if lat is not None and lon is not None:
            self.stats["cache_hits"] += 1
            return self._result(key, lat, lon, raw, "cache")
        if fetched_at:
            try:
                ts = datetime.fromisoformat(fetched_at)
            except ValueError:
                return False
            if ts.tzinfo is None:
                ts = ts.replace(tzinfo=timezone.utc)
            if datetime.now(timezone.utc) - ts < timedelta(days=self.failure_ttl_days):
                LOGGER.debug("Skipping geocode for '%s' due to recent failure cache.", key)
                return None
        return False

    def _store(self, key: str, payload: dict[str, Any] | None, source: str) -> Optional[GeocodeResult]:
        if not payload or not is_valid_coordinate(payload.get("lat"), payload.get("lon")):
            self.cache.set(key, None, None, raw={})
            self.stats["failures"] += 1
            return None
        lat = float(payload["lat"])
        lon = float(payload["lon"])
        self.cache.set(key, lat, lon, payload)
        self.stats[f"{source}_hits"] += 1
        return self._result(key, lat, lon, payload, source)

    @staticmethod
    def _result(key: str, lat: float, lon: float, raw: dict[str, Any], source: str) -> GeocodeResult:
        importance = raw.get("importance")
        return GeocodeResult(
            query=key,
            latitude=lat,
            longitude=lon,
            address=str(raw.get("display_name") or key),
            confidence=float(importance) if isinstance(importance, (int, float)) else 0.5,
            source=source,
        )

    def _throttle(self) -> None:
        elapsed = time.monotonic() - self._last_request
        if elapsed < self.min_interval:
            time.sleep(self.min_interval - elapsed)

    def _get(self, url: str, params: dict[str, Any]) -> Any:
        self._throttle()
        try:
            response = requests.get(
                url,
                params=params,
                headers={"User-Agent": self.user_agent},
                timeout=self.timeout,
            )
            self._last_request = time.monotonic()
            response.raise_for_status()
            return response.json()
        except requests.RequestException:
            LOGGER.exception("Geocoding request failed for %s", params)
        except ValueError:
            LOGGER.warning("Geocoder returned non-JSON response for %s", params)
        return None

    def _fetch_search(self, query: str) -> Optional[dict[str, Any]]:
        results = self._get(
            self.search_endpoint,
            {"q": query, "format": "json", "limit": 1, "addressdetails": 1},
        )
        if isinstance(results, list) and results and isinstance(results[0], dict):
            return results[0]
        return None

    def _fetch_reverse(self, latitude: float, longitude: float) -> Optional[dict[str, Any]]:
        result = self._get(
            self.reverse_endpoint,
            {"lat": latitude, "lon": longitude, "format": "json", "addressdetails": 1},
        )
        if isinstance(result, dict) and "error" not in result:
            return result
        return None

    def _fetch_google(self, query: str) -> Optional[dict[str, Any]]:
        url = "https://maps.googleapis.com/maps/api/geocode/json"
        try:
            response = requests.get(
                url,
                params={"address": query, "key": self.google_api_key},
                timeout=15,
            )
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError):
            LOGGER.exception("Google geocoding failed for query '%s'", query)
            return None
        if payload.get("status") != "OK" or not payload.get("results"):
            return None
        result = payload["results"][0]
        location = result["geometry"]["location"]
        return {
            "lat": location.get("lat"),
            "lon": location.get("lng"),
            "display_name": result.get("formatted_address"),
        }
