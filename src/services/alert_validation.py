"""
Grounding and normalization of model-generated safety alerts.

An alert survives only if its `sourceUrl` is one of the URLs the search step actually
returned; survivors then have every field defaulted or coerced into the allowed shape.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, List, Mapping, Sequence

from src.services.alert_prompts import ALERT_TYPES, SEVERITY_LEVELS
from src.services.web_search import SearchResult

LOGGER = logging.getLogger(__name__)

DEFAULT_SEVERITY = "medium"
DEFAULT_ALERT_TYPE = "safety"


@dataclass
class SafetyAlert:
    id: str
    title: str
    short_description: str
    long_description: str
    severity: str
    location: str
    area: str
    timestamp: str
    source: str
    source_url: str
    alert_type: str
    keywords: List[str] = field(default_factory=list)
    recommendations: str = ""

    def to_serializable(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "shortDescription": self.short_description,
            "longDescription": self.long_description,
            "severity": self.severity,
            "location": self.location,
            "area": self.area,
            "timestamp": self.timestamp,
            "source": self.source,
            "sourceUrl": self.source_url,
            "alertType": self.alert_type,
            "keywords": list(self.keywords),
            "recommendations": self.recommendations,
        }


def _clean_string(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    cleaned = value.strip()
    return cleaned or None


def _parse_iso_datetime(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    raw = value.strip()
    iso_candidate = raw[:-1] + "+00:00" if raw.endswith("Z") else raw
    try:
        return datetime.fromisoformat(iso_candidate)
    except ValueError:
        LOGGER.debug("Unable to parse alert timestamp %s", raw)
        return None


def _normalize_keywords(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


def validate_alert(candidate: Mapping[str, Any], position: int = 0, now: datetime | None = None) -> SafetyAlert:
    """Substitute defaults for missing fields and coerce enums; does not check grounding."""
    now = now or datetime.now(timezone.utc)
    severity = candidate.get("severity")
    if severity not in SEVERITY_LEVELS:
        severity = DEFAULT_SEVERITY
    alert_type = candidate.get("alertType")
    if alert_type not in ALERT_TYPES:
        alert_type = DEFAULT_ALERT_TYPE
    timestamp = candidate.get("timestamp")
    if _parse_iso_datetime(timestamp) is None:
        timestamp = now.isoformat()
    location = _clean_string(candidate.get("location"))
    return SafetyAlert(
        id=_clean_string(candidate.get("id")) or f"SA-{now.year}-{position + 1:03d}",
        title=_clean_string(candidate.get("title")) or "No title available",
        short_description=_clean_string(candidate.get("shortDescription")) or "No short description available",
        long_description=_clean_string(candidate.get("longDescription")) or "No long description available",
        severity=severity,
        location=location or "Location not specified",
        area=_clean_string(candidate.get("area")) or location or "Area not specified",
        timestamp=timestamp,
        source=_clean_string(candidate.get("source")) or "Source not specified",
        source_url=_clean_string(candidate.get("sourceUrl")) or "No URL available",
        alert_type=alert_type,
        keywords=_normalize_keywords(candidate.get("keywords")),
        recommendations=_clean_string(candidate.get("recommendations")) or "No recommendations available",
    )


def grounded_urls(search_results: Iterable[SearchResult]) -> set[str]:
    return {result.url for result in search_results}


def validate_alerts(
    candidates: Sequence[Mapping[str, Any]],
    search_results: Sequence[SearchResult],
    now: datetime | None = None,
) -> List[SafetyAlert]:
    """Keep alerts citing a search result URL, in order, at most one per URL.

    A second alert citing an already-used URL is dropped even though it is
    grounded; that trade keeps the batch no larger than the result set.
    """
    valid_urls = grounded_urls(search_results)
    cited: set[str] = set()
    validated: List[SafetyAlert] = []
    for position, candidate in enumerate(candidates):
        source_url = candidate.get("sourceUrl")
        if not isinstance(source_url, str) or source_url not in valid_urls:
            LOGGER.warning("Removing alert %r with ungrounded URL: %s", candidate.get("id"), source_url)
            continue
        # At most one alert per search result.
        if source_url in cited:
            LOGGER.warning("Removing alert %r citing already-used URL: %s", candidate.get("id"), source_url)
            continue
        cited.add(source_url)
        validated.append(validate_alert(candidate, position=position, now=now))
    LOGGER.info("Validated %s of %s candidate alerts", len(validated), len(candidates))
    return validated
