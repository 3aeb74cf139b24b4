"""
Environment-driven settings shared by the alert pipeline, geolocation agent and API.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

LOGGER = logging.getLogger(__name__)

REPO_ROOT = Path(__file__).resolve().parents[2]

DEFAULT_OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_MODEL = "anthropic/claude-3.5-sonnet"
DEFAULT_DB_PATH = Path("datasets/safety/incidents.sqlite")
DEFAULT_RESULTS_DIR = Path("data/results")
DEFAULT_GEOCODE_CACHE = Path("datasets/safety/geocache.sqlite")


def _bool_env(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _float_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        LOGGER.warning("Ignoring non-numeric %s=%r; using %s", name, value, default)
        return default


@dataclass
class Settings:
    serpapi_key: str | None = None
    openrouter_api_key: str | None = None
    openrouter_base_url: str = DEFAULT_OPENROUTER_BASE_URL
    model: str = DEFAULT_MODEL
    site_url: str = "http://localhost:3000"
    db_path: Path = DEFAULT_DB_PATH
    results_dir: Path = DEFAULT_RESULTS_DIR
    geocode_cache_path: Path = DEFAULT_GEOCODE_CACHE
    google_geocode_key: str | None = None
    http_timeout: float = 30.0
    geo_agent_enabled: bool = True

    @classmethod
    def from_env(cls, dotenv_path: Path | None = None) -> "Settings":
        dotenv_loaded = load_dotenv(dotenv_path=dotenv_path or REPO_ROOT / ".env")
        if dotenv_loaded:
            LOGGER.debug("Loaded environment variables from .env file.")
        return cls(
            serpapi_key=os.getenv("SERPAPI_KEY") or None,
            openrouter_api_key=os.getenv("OPENROUTER_API_KEY") or None,
            openrouter_base_url=os.getenv("OPENROUTER_BASE_URL") or DEFAULT_OPENROUTER_BASE_URL,
            model=os.getenv("OPENROUTER_MODEL") or DEFAULT_MODEL,
            site_url=os.getenv("SITE_URL") or "http://localhost:3000",
            db_path=Path(os.getenv("SAFETY_DB_PATH") or DEFAULT_DB_PATH),
            results_dir=Path(os.getenv("GEO_RESULTS_DIR") or DEFAULT_RESULTS_DIR),
            geocode_cache_path=Path(os.getenv("GEOCODE_CACHE_PATH") or DEFAULT_GEOCODE_CACHE),
            google_geocode_key=os.getenv("GOOGLE_ACC_KEY") or None,
            http_timeout=_float_env("HTTP_TIMEOUT", 30.0),
            geo_agent_enabled=_bool_env("GEO_AGENT_ENABLED", default=True),
        )
