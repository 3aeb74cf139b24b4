"""
Web search step for the alert pipeline.

Builds a suburb-scoped crime query from a structured address and fetches organic
and news results from SerpAPI. The results returned here are the only sources the
generation step is allowed to cite.
"""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass
from typing import Any, Iterable, List, Mapping

import requests
from bs4 import BeautifulSoup

from src.services.errors import SearchError

LOGGER = logging.getLogger(__name__)

MAX_RESULTS = 10
QUERY_TEMPLATE = '"{suburb}" crime incidents safety news recent today'


@dataclass(frozen=True)
class SearchResult:
    title: str
    url: str
    source: str
    snippet: str

    def to_serializable(self) -> dict[str, str]:
        return asdict(self)

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "SearchResult":
        """Accept both our own shape and raw provider entries (`link` instead of `url`)."""
        title = str(payload.get("title") or "")
        url = str(payload.get("url") or payload.get("link") or "")
        return cls(
            title=title,
            url=url,
            source=str(payload.get("source") or ""),
            snippet=str(payload.get("snippet") or title),
        )


def extract_suburb(location: str) -> str:
    # Assumes "street, suburb, city, ..." ordering.
    parts = location.split(", ")
    if len(parts) < 2 or not parts[1].strip():
        LOGGER.warning("Location %r has no suburb segment; searching on the full string.", location)
        return location.strip()
    return parts[1].strip()


def build_search_query(location: str) -> str:
    suburb = extract_suburb(location)
    query = QUERY_TEMPLATE.format(suburb=suburb)
    LOGGER.info("Built search query %r (suburb=%s)", query, suburb)
    return query


def _clean_html_fragment(value: str | None) -> str:
    if not value:
        return ""
    if "<" not in value and "&" not in value:
        return value.strip()
    text = BeautifulSoup(value, "html.parser").get_text(" ", strip=True)
    return re.sub(r"\s+", " ", text).strip()


def merge_provider_results(payload: Mapping[str, Any], limit: int = MAX_RESULTS) -> List[SearchResult]:
    """Merge `organic_results` then `news_results`, keeping entries with a title and link."""
    results: List[SearchResult] = []
    seen_urls: set[str] = set()
    sections: Iterable[tuple[str, str]] = (
        ("organic_results", "Google Search"),
        ("news_results", "News"),
    )
    for key, default_source in sections:
        entries = payload.get(key)
        if not isinstance(entries, list):
            continue
        LOGGER.debug("Provider returned %s %s", len(entries), key)
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            title = entry.get("title")
            link = entry.get("link")
            if not title or not link:
                continue
            if link in seen_urls:
                LOGGER.debug("Skipping duplicate search result %s", link)
                continue
            seen_urls.add(link)
            source = entry.get("source")
            if isinstance(source, dict):
                # News results carry {"name": ..., "icon": ...}.
                source = source.get("name")
            clean_title = _clean_html_fragment(str(title))
            results.append(
                SearchResult(
                    title=clean_title,
                    url=str(link),
                    source=str(source or default_source),
                    snippet=_clean_html_fragment(entry.get("snippet")) or clean_title,
                )
            )
    return results[:limit]


class SerpApiSearch:
    """Thin wrapper over the SerpAPI Google engine."""

    endpoint = "https://serpapi.com/search.json"

    def __init__(
        self,
        api_key: str | None,
        num_results: int = MAX_RESULTS,
        timeout: float = 30.0,
        engine: str = "google",
    ) -> None:
        self.name = "serpapi"
        self.api_key = api_key
        self.num_results = num_results
        self.timeout = timeout
        self.engine = engine

    def search(self, query: str) -> List[SearchResult]:
        if not self.api_key:
            raise SearchError("SERPAPI_KEY not configured. Please set SERPAPI_KEY in your environment.")
        params = {
            "engine": self.engine,
            "q": query,
            "api_key": self.api_key,
            "num": self.num_results,
        }
        try:
            response = requests.get(self.endpoint, params=params, timeout=self.timeout)
        except requests.RequestException as exc:
            raise SearchError(f"SerpAPI request failed: {exc}") from exc
        if not response.ok:
            LOGGER.warning("SerpAPI error response (%s): %s", response.status_code, response.text[:300])
            raise SearchError(f"SerpAPI search failed: {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise SearchError("SerpAPI returned a non-JSON response") from exc
        results = merge_provider_results(payload, limit=self.num_results)
        LOGGER.info("SerpAPI returned %s usable results for %r", len(results), query)
        if not results:
            raise SearchError("SerpAPI search returned no results. Cannot proceed to generation.")
        return results
