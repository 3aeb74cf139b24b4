"""
Best-effort geolocation of search results into map incidents.

Unlike the alert pipeline this never raises: the LLM is asked for coordinates and a
crime category when a key is configured, and any failure drops to deterministic
keyword/place heuristics. Every incident passes the same final validator, and the
batch is written to a timestamped JSON file.
"""

from __future__ import annotations

import argparse
import json
import logging
import math
import re
import sys
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Mapping, Optional, Sequence

from src.services.config import Settings
from src.services.llm_client import OpenRouterClient
from src.services.web_search import SearchResult, SerpApiSearch

LOGGER = logging.getLogger(__name__)

CRIME_TYPES = (
    "Violent Crimes",
    "Property & Financial Crimes",
    "Public Order & Social Crimes",
    "Cyber & Communication Crimes",
    "Organised Crime & Syndicate Operations",
    "Sexual Offences",
)
DEFAULT_CRIME_TYPE = "Public Order & Social Crimes"

TYPE_SEVERITY = {
    "Violent Crimes": 4,
    "Property & Financial Crimes": 3,
    "Public Order & Social Crimes": 2,
    "Cyber & Communication Crimes": 2,
    "Organised Crime & Syndicate Operations": 3,
    "Sexual Offences": 3,
}
DEFAULT_SEVERITY = 2

# Checked in order; first hit wins.
CRIME_TYPE_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    (
        "Violent Crimes",
        ("murder", "killing", "homicide", "shot", "stabbed", "assault", "attack", "violence", "robbery", "robbed", "mugging", "hijack"),
    ),
    ("Sexual Offences", ("rape", "sexual", "harassment")),
    (
        "Property & Financial Crimes",
        ("theft", "stolen", "burglary", "break-in", "fraud", "scam", "embezzlement", "shoplifting"),
    ),
    ("Cyber & Communication Crimes", ("cyber", "online", "internet", "phishing", "hacking", "digital")),
    (
        "Organised Crime & Syndicate Operations",
        ("gang", "syndicate", "organized", "organised", "trafficking", "money laundering", "racketeering"),
    ),
]

KEYWORD_VOCABULARY = (
    "robbery",
    "theft",
    "burglary",
    "break-in",
    "assault",
    "murder",
    "shooting",
    "stabbing",
    "hijacking",
    "carjacking",
    "drugs",
    "fraud",
    "scam",
    "gang",
    "firearm",
    "weapon",
    "police",
    "arrest",
    "protest",
    "vandalism",
)

# [longitude, latitude]
KNOWN_LOCATIONS: dict[str, tuple[float, float]] = {
    "sandton": (28.0567, -26.1076),
    "rosebank": (28.0436, -26.1467),
    "parkhurst": (28.0178, -26.1386),
    "soweto": (27.8546, -26.2485),
    "johannesburg": (28.0473, -26.2041),
    "joburg": (28.0473, -26.2041),
    "pretoria": (28.1881, -25.7479),
    "tshwane": (28.1881, -25.7479),
    "sea point": (18.3817, -33.9180),
    "camps bay": (18.3771, -33.9509),
    "stellenbosch": (18.8602, -33.9321),
    "bellville": (18.6292, -33.9022),
    "milnerton": (18.4941, -33.8708),
    "cape town": (18.4241, -33.9249),
    "durban": (31.0218, -29.8587),
    "bloemfontein": (26.1596, -29.0852),
    "gqeberha": (25.6022, -33.9608),
    "port elizabeth": (25.6022, -33.9608),
}
DEFAULT_PLACE = "johannesburg"

LOCATION_PHRASE_PATTERN = re.compile(
    r"\b(?:in|at|near|around|within)\s+([a-z][a-z' -]{1,40}?)(?=\s*(?:,|\.|$|\b(?:crime|safety|news|today|recent|area)\b))",
    re.IGNORECASE,
)

GEO_SYSTEM_PROMPT = """You are a geolocation expert for safety news. Your task is to:
1. Extract or infer coordinates from news articles
2. Categorize incidents by type
3. Assign severity ratings (1-5)
4. Generate unique news IDs linking to source articles
5. Create concise summaries with source attribution
6. Extract relevant keywords and location details
7. Output valid JSON matching the required schema

IMPORTANT:
- Return ONLY a valid JSON array, no other text
- Include source URLs when available in the newsID field
- If you cannot determine accurate coordinates, do not generate that incident"""


@dataclass
class GeolocationResult:
    success: bool
    incidents_generated: int
    file_path: Optional[str] = None
    error: Optional[str] = None
    incidents: List[dict[str, Any]] = field(default_factory=list, repr=False)

    def to_serializable(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": self.success,
            "incidentsGenerated": self.incidents_generated,
        }
        if self.file_path:
            payload["filePath"] = self.file_path
        if self.error:
            payload["error"] = self.error
        return payload


def extract_location_phrase(query: str) -> str | None:
    if not query:
        return None
    match = LOCATION_PHRASE_PATTERN.search(query)
    if match:
        return match.group(1).strip().lower()
    quoted = re.search(r'"([^"]{2,60})"', query)
    if quoted:
        return quoted.group(1).strip().lower()
    return None


def lookup_known_coordinates(*texts: str | None) -> tuple[float, float]:
    for text in texts:
        if not text:
            continue
        lowered = text.lower()
        for place, coords in KNOWN_LOCATIONS.items():
            if place in lowered:
                return coords
    return KNOWN_LOCATIONS[DEFAULT_PLACE]


def classify_crime_type(text: str) -> str:
    lowered = (text or "").lower()
    for crime_type, needles in CRIME_TYPE_KEYWORDS:
        if any(needle in lowered for needle in needles):
            return crime_type
    return DEFAULT_CRIME_TYPE


def extract_keywords(text: str) -> list[str]:
    lowered = (text or "").lower()
    return [word for word in KEYWORD_VOCABULARY if word in lowered]


def _coerce_severity(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_SEVERITY
    if isinstance(value, int):
        return min(max(value, 1), 5)
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return DEFAULT_SEVERITY
    if not isinstance(value, (int, float)) or not math.isfinite(value):
        return DEFAULT_SEVERITY
    return int(min(max(round(value), 1), 5))


def _coerce_point(value: Any) -> dict[str, Any]:
    pair = value.get("coordinates") if isinstance(value, dict) else value
    if isinstance(pair, (list, tuple)) and len(pair) == 2:
        try:
            lon, lat = float(pair[0]), float(pair[1])
        except (TypeError, ValueError, OverflowError):
            lon = lat = math.nan
        if math.isfinite(lon) and math.isfinite(lat) and -180 <= lon <= 180 and -90 <= lat <= 90:
            return {"type": "Point", "coordinates": [lon, lat]}
    return {"type": "Point", "coordinates": [0, 0]}


def _coerce_datetime(value: Any, now: datetime) -> str:
    if isinstance(value, str) and value.strip():
        raw = value.strip()
        try:
            datetime.fromisoformat(raw[:-1] + "+00:00" if raw.endswith("Z") else raw)
            return raw
        except ValueError:
            pass
    return now.isoformat()


def validate_incident(incident: Mapping[str, Any], position: int = 0, now: datetime | None = None) -> dict[str, Any]:
    """Clamp and default one incident so every consumer sees the same shape."""
    now = now or datetime.now(timezone.utc)
    crime_type = incident.get("type")
    if crime_type not in CRIME_TYPES:
        crime_type = DEFAULT_CRIME_TYPE
    keywords = incident.get("keywords")
    news_id = incident.get("newsID")
    summary = incident.get("summary")
    return {
        "datetime": _coerce_datetime(incident.get("datetime"), now),
        "coordinates": _coerce_point(incident.get("coordinates")),
        "type": crime_type,
        "newsID": news_id if isinstance(news_id, str) and news_id.strip() else f"incident_{int(now.timestamp())}_{position}",
        "severity": _coerce_severity(incident.get("severity")),
        "keywords": [item for item in keywords if isinstance(item, str)] if isinstance(keywords, list) else [],
        "summary": summary if isinstance(summary, str) and summary.strip() else "Incident details not available",
    }


def heuristic_incidents(query: str, results: Sequence[SearchResult], now: datetime | None = None) -> list[dict[str, Any]]:
    now = now or datetime.now(timezone.utc)
    phrase = extract_location_phrase(query)
    incidents = []
    for result in results:
        crime_type = classify_crime_type(result.title)
        lon, lat = lookup_known_coordinates(phrase, result.title, result.snippet)
        keywords = extract_keywords(f"{result.title} {result.snippet}")
        if phrase and phrase not in keywords:
            keywords.append(phrase)
        incidents.append(
            {
                "datetime": now.isoformat(),
                "coordinates": {"type": "Point", "coordinates": [lon, lat]},
                "type": crime_type,
                "newsID": result.url,
                "severity": TYPE_SEVERITY.get(crime_type, DEFAULT_SEVERITY),
                "keywords": keywords,
                "summary": f"{result.snippet} (Source: {result.source or 'unknown'})",
            }
        )
    return incidents


def build_incident_prompt(query: str, results: Sequence[SearchResult]) -> str:
    results_text = "\n".join(
        f"{index}. {result.title}\n   Source: {result.source}\n   URL: {result.url}\n   Summary: {result.snippet}\n"
        for index, result in enumerate(results, start=1)
    )
    types = ", ".join(f'"{crime_type}"' for crime_type in CRIME_TYPES)
    return (
        f'Query: "{query}"\n\n'
        "Based on these search results, generate a JSON array of incident reports. "
        "Each incident should have:\n\n"
        "- datetime: ISO 8601 timestamp (use current time if not specified)\n"
        "- coordinates: GeoJSON Point with [longitude, latitude] inferred from location names\n"
        f"- type: One of: {types}\n"
        "- newsID: Unique identifier linking to the source (include the source URL when available)\n"
        "- severity: Rating 1-5 (1=low, 5=critical)\n"
        "- keywords: Array of relevant terms including location names\n"
        "- summary: ~100 word summary with source attribution\n\n"
        f"Search Results:\n{results_text}\n"
        "Only generate incidents where you can reasonably infer the location. "
        "Return ONLY a valid JSON array."
    )


def _parse_incident_array(text: str) -> list[dict[str, Any]]:
    first_bracket = text.find("[")
    last_bracket = text.rfind("]")
    if first_bracket == -1 or last_bracket <= first_bracket:
        raise ValueError("Model response contains no JSON array")
    payload = json.loads(text[first_bracket : last_bracket + 1])
    if not isinstance(payload, list):
        raise ValueError("Model response is not a JSON array")
    return [item for item in payload if isinstance(item, dict)]


class GeoAgent:
    """Turns search results into validated, geolocated incidents on disk."""

    def __init__(
        self,
        llm_client: OpenRouterClient | None,
        results_dir: Path,
    ) -> None:
        self.llm_client = llm_client
        self.results_dir = Path(results_dir)
        if not (llm_client and llm_client.configured):
            LOGGER.warning("GeoAgent: no LLM key configured; heuristic geolocation only.")

    @classmethod
    def from_settings(cls, settings: Settings) -> "GeoAgent":
        client = OpenRouterClient(
            settings.openrouter_api_key,
            base_url=settings.openrouter_base_url,
            model=settings.model,
            temperature=0.2,
            max_tokens=1000,
            timeout=settings.http_timeout,
            referer=settings.site_url,
            title="Safety News App - GeoAgent",
        )
        return cls(client, settings.results_dir)

    def process(self, query: str, search_results: Sequence[SearchResult]) -> GeolocationResult:
        try:
            LOGGER.info("GeoAgent: processing %s results for %r", len(search_results), query)
            now = datetime.now(timezone.utc)
            raw_incidents = self._generate(query, search_results)
            incidents = [validate_incident(item, position, now) for position, item in enumerate(raw_incidents)]
            file_path = self._write(incidents, now)
            LOGGER.info("GeoAgent: wrote %s incidents to %s", len(incidents), file_path)
            return GeolocationResult(
                success=True,
                incidents_generated=len(incidents),
                file_path=str(file_path),
                incidents=incidents,
            )
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("GeoAgent: processing failed")
            return GeolocationResult(success=False, incidents_generated=0, error=str(exc) or exc.__class__.__name__)

    def _generate(self, query: str, search_results: Sequence[SearchResult]) -> list[dict[str, Any]]:
        client = self.llm_client
        if client is not None and client.configured and search_results:
            try:
                incidents = self._generate_with_llm(client, query, search_results)
                LOGGER.info("GeoAgent: LLM produced %s incidents", len(incidents))
                return incidents
            except Exception as exc:  # noqa: BLE001
                LOGGER.warning("GeoAgent: LLM geolocation failed (%s); using heuristics.", exc)
        return heuristic_incidents(query, search_results)

    def _generate_with_llm(
        self,
        client: OpenRouterClient,
        query: str,
        search_results: Sequence[SearchResult],
    ) -> list[dict[str, Any]]:
        content = client.complete(
            [
                {"role": "system", "content": GEO_SYSTEM_PROMPT},
                {"role": "user", "content": build_incident_prompt(query, search_results)},
            ]
        )
        return _parse_incident_array(content)

    def _write(self, incidents: list[dict[str, Any]], now: datetime) -> Path:
        self.results_dir.mkdir(parents=True, exist_ok=True)
        stamp = re.sub(r"[:.]", "-", now.isoformat())
        path = self.results_dir / f"safety-news-{stamp}.json"
        with path.open("w", encoding="utf-8") as handle:
            json.dump(incidents, handle, indent=2, ensure_ascii=False)
        return path


class GeolocationTask:
    """Handle for a geolocation run started in the background.

    Callers either `wait()` for the result or `detach()` to make the decision not to
    await explicit. There is no cancellation.
    """

    def __init__(self, agent: GeoAgent, query: str, search_results: Sequence[SearchResult]) -> None:
        self._agent = agent
        self._query = query
        self._results = list(search_results)
        self._result: GeolocationResult | None = None
        self._done = threading.Event()
        self.detached = False
        self._thread = threading.Thread(target=self._run, name="geo-agent", daemon=True)

    def start(self) -> "GeolocationTask":
        self._thread.start()
        return self

    def _run(self) -> None:
        try:
            self._result = self._agent.process(self._query, self._results)
            if not self._result.success:
                LOGGER.error("Background geolocation failed: %s", self._result.error)
        finally:
            self._done.set()

    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: float | None = None) -> GeolocationResult | None:
        self._done.wait(timeout)
        return self._result

    def detach(self) -> None:
        self.detached = True
        LOGGER.debug("Geolocation task for %r detached; result will only be logged.", self._query)


def spawn_geolocation(agent: GeoAgent, query: str, search_results: Sequence[SearchResult]) -> GeolocationTask:
    return GeolocationTask(agent, query, search_results).start()


def process_geolocation(
    query: str,
    search_results: Sequence[SearchResult | Mapping[str, Any]],
    settings: Settings | None = None,
) -> GeolocationResult:
    try:
        agent = GeoAgent.from_settings(settings or Settings.from_env())
        results = [item if isinstance(item, SearchResult) else SearchResult.from_mapping(item) for item in search_results]
    except Exception as exc:  # noqa: BLE001
        LOGGER.exception("GeoAgent: setup failed")
        return GeolocationResult(success=False, incidents_generated=0, error=str(exc) or exc.__class__.__name__)
    return agent.process(query, results)


def _load_results_file(path: Path) -> list[SearchResult]:
    with path.open("r", encoding="utf-8") as handle:
        payload = json.load(handle)
    if isinstance(payload, dict):
        payload = payload.get("results") or payload.get("searchResults") or []
    return [SearchResult.from_mapping(item) for item in payload if isinstance(item, dict)]


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Geolocate crime news search results into map incidents.")
    parser.add_argument("query", help="Free-text query, e.g. 'robbery in Sandton'.")
    parser.add_argument(
        "--results-file",
        type=Path,
        default=None,
        help="JSON file of search results; when omitted the query is sent to SerpAPI.",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=None,
        help="Directory for safety-news-*.json output (default: GEO_RESULTS_DIR or data/results).",
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
        stream=sys.stdout,
        force=True,
    )
    settings = Settings.from_env()
    if args.output_dir:
        settings.results_dir = args.output_dir
    try:
        if args.results_file:
            results = _load_results_file(args.results_file)
        else:
            results = SerpApiSearch(settings.serpapi_key, timeout=settings.http_timeout).search(args.query)
    except Exception:  # noqa: BLE001
        LOGGER.exception("Could not load search results.")
        return 1
    outcome = process_geolocation(args.query, results, settings=settings)
    LOGGER.info("Geolocation result: %s", outcome.to_serializable())
    return 0 if outcome.success else 1


if __name__ == "__main__":
    raise SystemExit(main())
