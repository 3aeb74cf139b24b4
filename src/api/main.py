"""
FastAPI app exposing alert generation, search/geolocation and the incident store.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from src.services.alert_pipeline import AlertGenerator
from src.services.config import Settings
from src.services.errors import AlertPipelineError, MissingLocationError
from src.services.geo_agent import GeoAgent, spawn_geolocation
from src.services.geocoding import NominatimGeocoder
from src.services.incident_store import IncidentStore
from src.services.web_search import SearchResult, SerpApiSearch

MAX_ROWS = 200
ERROR_MESSAGES = {
    "/api/alerts/generate": "Failed to generate alerts",
    "/api/search": "Search failed",
}
LOGGER = logging.getLogger("safety_api")
if not LOGGER.handlers:
    LOGGER.setLevel(logging.INFO)
    LOG_PATH = Path("logs")
    LOG_PATH.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(LOG_PATH / "api_requests.log")
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    file_handler.setFormatter(formatter)
    LOGGER.addHandler(file_handler)


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()


@lru_cache
def _store_for(db_path: str) -> IncidentStore:
    return IncidentStore(Path(db_path))


def get_store(settings: Settings = Depends(get_settings)) -> IncidentStore:
    return _store_for(str(settings.db_path))


def get_alert_generator(
    settings: Settings = Depends(get_settings),
    store: IncidentStore = Depends(get_store),
) -> AlertGenerator:
    return AlertGenerator.from_settings(settings, store=store)


def get_search_client(settings: Settings = Depends(get_settings)) -> SerpApiSearch:
    return SerpApiSearch(settings.serpapi_key, timeout=settings.http_timeout)


def get_geo_agent(settings: Settings = Depends(get_settings)) -> GeoAgent:
    return GeoAgent.from_settings(settings)


@lru_cache
def _geocoder_for(cache_path: str, google_key: Optional[str]) -> NominatimGeocoder:
    return NominatimGeocoder(cache_path=Path(cache_path), google_api_key=google_key)


def get_geocoder(settings: Settings = Depends(get_settings)) -> NominatimGeocoder:
    return _geocoder_for(str(settings.geocode_cache_path), settings.google_geocode_key)


class Coordinates(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class GenerateAlertsRequest(BaseModel):
    location: str = ""
    radius: float = Field(5, gt=0)
    coordinates: Optional[Coordinates] = None
    userCountry: Optional[str] = None


class AlertOut(BaseModel):
    id: str
    title: str
    description: str
    shortDescription: str
    longDescription: str
    severity: Literal["low", "medium", "high", "critical"]
    location: str
    area: str
    timestamp: str
    source: str
    sourceUrl: str
    alertType: Literal["crime", "safety", "weather", "traffic", "emergency"]
    keywords: list[str]
    recommendations: str
    isRead: bool = False
    isSaved: bool = False


class GenerateAlertsResponse(BaseModel):
    alerts: list[AlertOut]


class SearchResultIn(BaseModel):
    title: str
    url: str
    snippet: str = ""
    source: str = ""


class SearchRequest(BaseModel):
    query: str = Field(..., min_length=1)


class SearchResponse(BaseModel):
    success: bool
    results: list[SearchResultIn]
    totalResults: int
    message: str


class GeolocateRequest(BaseModel):
    query: str = Field(..., min_length=1)
    searchResults: list[SearchResultIn]


class CrimeReportIn(BaseModel):
    type: str = Field(..., min_length=1)
    severity: str = Field(..., min_length=1)
    address: Optional[str] = None
    description: Optional[str] = None
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    countryId: Optional[str] = None
    createdBy: Optional[str] = None


app = FastAPI(title="Safety Alerts API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:5173"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AlertPipelineError)
async def pipeline_error_handler(request: Request, exc: AlertPipelineError) -> JSONResponse:
    status_code = 400 if isinstance(exc, MissingLocationError) else 500
    LOGGER.warning("%s %s failed (%s): %s", request.method, request.url.path, status_code, exc)
    return JSONResponse(
        status_code=status_code,
        content={"error": ERROR_MESSAGES.get(request.url.path, "Request failed"), "details": str(exc)},
    )


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/api/alerts/generate", response_model=GenerateAlertsResponse)
def generate_alerts(
    payload: GenerateAlertsRequest,
    generator: AlertGenerator = Depends(get_alert_generator),
) -> GenerateAlertsResponse:
    if not payload.location:
        raise MissingLocationError("Location is required")
    LOGGER.info(
        "Generating alerts location=%s radius=%s country=%s",
        payload.location,
        payload.radius,
        payload.userCountry,
    )
    coordinates = payload.coordinates.model_dump() if payload.coordinates else None
    alerts = generator.generate_alerts(payload.location, payload.radius, coordinates, payload.userCountry)
    LOGGER.info("Generated %s alerts", len(alerts))
    return GenerateAlertsResponse(
        alerts=[
            AlertOut(description=alert.short_description, **alert.to_serializable())
            for alert in alerts
        ]
    )


@app.post("/api/search", response_model=SearchResponse)
def search(
    payload: SearchRequest,
    search_client: SerpApiSearch = Depends(get_search_client),
    agent: GeoAgent = Depends(get_geo_agent),
    settings: Settings = Depends(get_settings),
) -> SearchResponse:
    LOGGER.info("Search query=%s", payload.query)
    results = search_client.search(payload.query)
    message = "Search completed."
    if settings.geo_agent_enabled:
        spawn_geolocation(agent, payload.query, results).detach()
        message = "Search completed. Background processing started for detailed analysis."
    return SearchResponse(
        success=True,
        results=[SearchResultIn(**result.to_serializable()) for result in results],
        totalResults=len(results),
        message=message,
    )


@app.post("/api/geolocate")
def geolocate(
    payload: GeolocateRequest,
    agent: GeoAgent = Depends(get_geo_agent),
) -> dict[str, Any]:
    LOGGER.info("Geolocating %s results for query=%s", len(payload.searchResults), payload.query)
    results = [SearchResult.from_mapping(item.model_dump()) for item in payload.searchResults]
    outcome = agent.process(payload.query, results)
    if not outcome.success:
        return JSONResponse(
            status_code=500,
            content={"error": "Geolocation processing failed", "details": outcome.error},
        )
    return outcome.to_serializable()


@app.get("/api/incidents/recent")
def recent_incidents(
    limit: int = Query(10, ge=1, le=MAX_ROWS),
    alert_type: Optional[str] = Query(default=None, description="Filter by alert type, e.g. 'crime'."),
    store: IncidentStore = Depends(get_store),
) -> list[dict[str, Any]]:
    return store.recent_incidents(limit=limit, alert_type=alert_type)


@app.get("/api/crime/reports")
def list_crime_reports(
    countryId: str = Query(..., min_length=1),
    userId: Optional[str] = Query(default=None),
    limit: int = Query(50, ge=1, le=MAX_ROWS),
    store: IncidentStore = Depends(get_store),
) -> list[dict[str, Any]]:
    return store.list_crime_reports(country_id=countryId, user_id=userId, limit=limit)


@app.post("/api/crime/reports", status_code=201)
def create_crime_report(
    payload: CrimeReportIn,
    store: IncidentStore = Depends(get_store),
) -> dict[str, Any]:
    report_id = store.add_crime_report(
        type=payload.type,
        severity=payload.severity,
        address=payload.address,
        description=payload.description,
        latitude=payload.latitude,
        longitude=payload.longitude,
        country_id=payload.countryId,
        created_by=payload.createdBy,
    )
    LOGGER.info("Stored crime report %s (%s)", report_id, payload.type)
    return {"id": report_id}


@app.get("/api/crime/reports/recent")
def recent_crime_reports(
    days: int = Query(7, ge=1, le=90),
    limit: int = Query(10, ge=1, le=MAX_ROWS),
    store: IncidentStore = Depends(get_store),
) -> list[dict[str, Any]]:
    return [asdict(report) for report in store.recent_reports(days=days, limit=limit)]


@app.get("/api/geocoding/reverse")
def reverse_geocode(
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    geocoder: NominatimGeocoder = Depends(get_geocoder),
) -> dict[str, Any]:
    result = geocoder.reverse(lat, lng)
    if result is None:
        raise HTTPException(status_code=404, detail={"error": "No address found for coordinates"})
    return result.to_serializable()


@app.get("/api/geocoding/search")
def forward_geocode(
    q: str = Query(..., min_length=2),
    country: Optional[str] = Query(default=None),
    geocoder: NominatimGeocoder = Depends(get_geocoder),
) -> dict[str, Any]:
    result = geocoder.lookup(q, country=country)
    if result is None:
        raise HTTPException(status_code=404, detail={"error": "Location not found"})
    return result.to_serializable()
