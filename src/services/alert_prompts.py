"""Prompt rendering for safety alert generation."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Mapping, Sequence

from src.services.web_search import SearchResult

SEVERITY_LEVELS = ("low", "medium", "high", "critical")
ALERT_TYPES = ("crime", "safety", "weather", "traffic", "emergency")

SYSTEM_PROMPT = (
    "You are a safety intelligence analyst. Generate safety alerts using ONLY the "
    "provided search results. Return valid JSON only."
)


@dataclass(frozen=True)
class RecentReport:
    type: str
    severity: str
    address: str
    created_at: str


def _format_location(location: str, radius: float, coordinates: Mapping[str, float] | None) -> str:
    if coordinates:
        location = f"{location} ({float(coordinates['lat']):.4f}, {float(coordinates['lng']):.4f})"
    return f"{location} ({radius:g}km radius)"


def _format_reports(recent_reports: Sequence[RecentReport]) -> str:
    if not recent_reports:
        return "No recent crime reports in the area."
    summary = ", ".join(f"{report.type} ({report.severity})" for report in recent_reports)
    return f"Recent crime reports: {summary}"


def _format_results(search_results: Sequence[SearchResult]) -> str:
    if not search_results:
        return "No search results found."
    blocks = []
    for index, result in enumerate(search_results, start=1):
        blocks.append(
            f"SEARCH RESULT {index}:\n"
            f'Title: "{result.title}"\n'
            f"URL: {result.url}\n"
            f"Source: {result.source}\n"
            f"Content: {result.snippet}\n"
            "---"
        )
    return "\n\n".join(blocks)


def build_context(
    location: str,
    radius: float,
    coordinates: Mapping[str, float] | None,
    country: str | None,
    recent_reports: Sequence[RecentReport],
    search_results: Sequence[SearchResult],
    now: datetime | None = None,
) -> str:
    """Render the user message that grounds generation in `search_results`.

    The model is asked for exactly one alert per search result, each citing that
    result's URL unmodified. `now` only feeds the example timestamp and id year.
    """
    now = now or datetime.now(timezone.utc)
    timestamp = now.isoformat()
    count = len(search_results)
    country_line = f"Country: {country}" if country else ""
    severity_choices = "|".join(SEVERITY_LEVELS)
    type_choices = "|".join(ALERT_TYPES)
    return f"""Location: {_format_location(location, radius, coordinates)}
{country_line}
{_format_reports(recent_reports)}

WEB SEARCH RESULTS (use these URLs exactly):
{_format_results(search_results)}

TASK: Generate EXACTLY {count} safety alerts - one for each search result above.

CRITICAL REQUIREMENTS:
- Generate EXACTLY {count} alerts (one per search result)
- Each alert must use one URL from the search results above
- Copy the URL exactly - no modifications
- Base ALL content on the actual search results provided
- Use current timestamp: {timestamp}
- ID format: SA-{now.year}-001, SA-{now.year}-002, etc.

CONTENT REQUIREMENTS:
- title: Create a specific, descriptive title based on the search result
- shortDescription: 1-2 sentence summary of the incident/alert
- longDescription: 3-4 sentence detailed description with context, implications, and specific details from the search result
- area: Extract the specific area/suburb from the search result
- keywords: 3-5 relevant keywords from the content
- recommendations: Specific safety advice based on the incident

Return ONLY valid JSON in this exact format:
{{
  "alerts": [
    {{
      "id": "SA-{now.year}-001",
      "title": "Specific title based on search result 1",
      "shortDescription": "Brief summary of the incident",
      "longDescription": "Detailed description with context and implications",
      "severity": "{severity_choices}",
      "location": "Specific location from search result",
      "area": "Specific area/suburb mentioned",
      "timestamp": "{timestamp}",
      "source": "Real news source name",
      "sourceUrl": "Exact URL from search results",
      "alertType": "{type_choices}",
      "keywords": ["keyword1", "keyword2", "keyword3"],
      "recommendations": "Specific safety advice for residents"
    }}
    // ... continue for ALL {count} search results
  ]
}}"""
