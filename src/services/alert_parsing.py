"""
Parsing of raw model output into candidate alert dicts.

Strict JSON parsing is attempted first; only when that fails is the text scanned for
complete alert records so a truncated tail does not discard the whole batch.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, List, Pattern

from src.services.errors import AlertParseError

LOGGER = logging.getLogger(__name__)

# Matches one complete alert in the field order the prompt asks for. `timestamp`
# is deliberately not captured.
ALERT_RECORD_PATTERN: Pattern[str] = re.compile(
    r'"id":\s*"([^"]+)"[^}]*'
    r'"title":\s*"([^"]+)"[^}]*'
    r'"shortDescription":\s*"([^"]+)"[^}]*'
    r'"longDescription":\s*"([^"]+)"[^}]*'
    r'"severity":\s*"([^"]+)"[^}]*'
    r'"location":\s*"([^"]+)"[^}]*'
    r'"area":\s*"([^"]+)"[^}]*'
    r'"source":\s*"([^"]+)"[^}]*'
    r'"sourceUrl":\s*"([^"]+)"[^}]*'
    r'"alertType":\s*"([^"]+)"[^}]*'
    r'"keywords":\s*\[([^\]]+)\][^}]*'
    r'"recommendations":\s*"([^"]+)"'
)

RECOVERED_FIELDS = (
    "id",
    "title",
    "shortDescription",
    "longDescription",
    "severity",
    "location",
    "area",
    "source",
    "sourceUrl",
    "alertType",
    "keywords",
    "recommendations",
)


class ResponseParser:
    """Interface for turning raw model text into candidate alert dicts."""

    name: str = "base"

    def parse(self, raw_text: str) -> List[dict[str, Any]]:
        raise NotImplementedError


class StrictJsonParser(ResponseParser):
    """Whole-document JSON parse; raises `json.JSONDecodeError` on any syntax error."""

    name = "strict"

    def parse(self, raw_text: str) -> List[dict[str, Any]]:
        payload = json.loads(raw_text)
        if isinstance(payload, dict):
            alerts = payload.get("alerts")
        else:
            alerts = payload
        if not isinstance(alerts, list):
            raise AlertParseError("Model response is valid JSON but has no 'alerts' array")
        return [item for item in alerts if isinstance(item, dict)]


def _split_keywords(blob: str) -> list[str]:
    keywords = []
    for part in blob.split(","):
        cleaned = part.strip().strip('"').strip()
        if cleaned:
            keywords.append(cleaned)
    return keywords


class RegexRecoveryParser(ResponseParser):
    """Extract every structurally complete alert record, ignoring trailing fragments."""

    name = "recovery"

    def __init__(self, pattern: Pattern[str] = ALERT_RECORD_PATTERN) -> None:
        self.pattern = pattern

    def parse(self, raw_text: str) -> List[dict[str, Any]]:
        now = datetime.now(timezone.utc).isoformat()
        alerts: List[dict[str, Any]] = []
        for match in self.pattern.finditer(raw_text):
            record: dict[str, Any] = dict(zip(RECOVERED_FIELDS, match.groups()))
            record["keywords"] = _split_keywords(record["keywords"])
            record["timestamp"] = now
            alerts.append(record)
        return alerts


class StrictThenRecoverParser(ResponseParser):
    """Default strategy: strict parse, falling back to recovery only on a syntax error."""

    name = "strict_then_recover"

    def __init__(
        self,
        strict: ResponseParser | None = None,
        recovery: ResponseParser | None = None,
    ) -> None:
        self.strict = strict or StrictJsonParser()
        self.recovery = recovery or RegexRecoveryParser()

    def parse(self, raw_text: str) -> List[dict[str, Any]]:
        try:
            return self.strict.parse(raw_text)
        except json.JSONDecodeError as exc:
            LOGGER.warning("Strict JSON parse failed (%s); attempting partial recovery.", exc)
            alerts = self.recovery.parse(raw_text)
            if not alerts:
                raise AlertParseError(f"Failed to parse model response as JSON: {exc}") from exc
            LOGGER.info("Recovered %s complete alerts from malformed JSON", len(alerts))
            return alerts


def parse_alerts(raw_text: str, parser: ResponseParser | None = None) -> List[dict[str, Any]]:
    return (parser or StrictThenRecoverParser()).parse(raw_text)
