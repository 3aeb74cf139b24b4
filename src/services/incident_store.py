"""
SQLite-backed store for generated incidents and user-submitted crime reports.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, List, Mapping, Optional

from src.services.alert_prompts import RecentReport
from src.services.alert_validation import SafetyAlert

LOGGER = logging.getLogger(__name__)

SEVERITY_SCORES = {
    "low": 1,
    "medium": 2,
    "high": 4,
    "critical": 5,
}
DEFAULT_SEVERITY_SCORE = 2


@dataclass
class IncidentRecord:
    alert_id: str
    title: str
    short_description: str
    long_description: str
    severity: int
    location: str
    area: str
    source: str
    source_url: str
    alert_type: str
    recommendations: str
    incident_date: str
    keywords: List[str] = field(default_factory=list)
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @classmethod
    def from_alert(cls, alert: SafetyAlert, coordinates: Mapping[str, float] | None = None) -> "IncidentRecord":
        lat = lng = None
        if coordinates:
            lat = float(coordinates["lat"])
            lng = float(coordinates["lng"])
        return cls(
            alert_id=alert.id,
            title=alert.title,
            short_description=alert.short_description,
            long_description=alert.long_description,
            severity=SEVERITY_SCORES.get(alert.severity, DEFAULT_SEVERITY_SCORE),
            location=alert.location,
            area=alert.area,
            source=alert.source,
            source_url=alert.source_url,
            alert_type=alert.alert_type,
            recommendations=alert.recommendations,
            incident_date=alert.timestamp,
            keywords=list(alert.keywords),
            latitude=lat,
            longitude=lng,
        )


class IncidentStore:
    """Incident and crime report tables in a single SQLite file."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.lock = threading.Lock()
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS crime_incidents (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                alert_id TEXT,
                title TEXT NOT NULL,
                short_description TEXT,
                long_description TEXT,
                severity INTEGER NOT NULL,
                location TEXT,
                area TEXT,
                latitude REAL,
                longitude REAL,
                source TEXT,
                source_url TEXT NOT NULL,
                alert_type TEXT,
                keywords TEXT,
                recommendations TEXT,
                incident_date TEXT,
                created_at TEXT NOT NULL
            )
            """
        )
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS crime_reports (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                type TEXT NOT NULL,
                severity TEXT NOT NULL,
                address TEXT,
                description TEXT,
                latitude REAL,
                longitude REAL,
                country_id TEXT,
                created_by TEXT,
                created_at TEXT NOT NULL
            )
            """
        )
        self._ensure_column("crime_incidents", "alert_id", "TEXT")
        self.conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_incidents_created ON crime_incidents(created_at)"
        )
        self.conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_reports_created ON crime_reports(created_at)"
        )
        self.conn.commit()

    def _ensure_column(self, table: str, column: str, ddl: str) -> None:
        cursor = self.conn.execute(f"PRAGMA table_info({table})")
        existing = {row[1] for row in cursor.fetchall()}
        if column not in existing:
            self.conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")
            self.conn.commit()

    def close(self) -> None:
        self.conn.close()

    def insert_incident(self, record: IncidentRecord) -> int:
        with self.lock, self.conn:
            cursor = self.conn.execute(
                """
                INSERT INTO crime_incidents (
                    alert_id, title, short_description, long_description, severity,
                    location, area, latitude, longitude, source, source_url,
                    alert_type, keywords, recommendations, incident_date, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.alert_id,
                    record.title,
                    record.short_description,
                    record.long_description,
                    record.severity,
                    record.location,
                    record.area,
                    record.latitude,
                    record.longitude,
                    record.source,
                    record.source_url,
                    record.alert_type,
                    json.dumps(record.keywords, ensure_ascii=False),
                    record.recommendations,
                    record.incident_date,
                    datetime.now(timezone.utc).isoformat(),
                ),
            )
        return int(cursor.lastrowid)

    def recent_incidents(self, limit: int = 10, alert_type: str | None = None) -> list[dict[str, Any]]:
        sql = "SELECT * FROM crime_incidents"
        params: list[object] = []
        if alert_type:
            sql += " WHERE alert_type = ?"
            params.append(alert_type)
        sql += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)
        with self.lock:
            rows = self.conn.execute(sql, params).fetchall()
        incidents = []
        for row in rows:
            item = dict(row)
            try:
                item["keywords"] = json.loads(item.get("keywords") or "[]")
            except json.JSONDecodeError:
                item["keywords"] = []
            incidents.append(item)
        return incidents

    def add_crime_report(
        self,
        type: str,
        severity: str,
        address: str | None = None,
        description: str | None = None,
        latitude: float | None = None,
        longitude: float | None = None,
        country_id: str | None = None,
        created_by: str | None = None,
        created_at: datetime | None = None,
    ) -> int:
        created = (created_at or datetime.now(timezone.utc)).isoformat()
        with self.lock, self.conn:
            cursor = self.conn.execute(
                """
                INSERT INTO crime_reports (
                    type, severity, address, description, latitude, longitude,
                    country_id, created_by, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (type, severity, address, description, latitude, longitude, country_id, created_by, created),
            )
        return int(cursor.lastrowid)

    def list_crime_reports(
        self,
        country_id: str | None = None,
        user_id: str | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        sql = "SELECT * FROM crime_reports WHERE 1 = 1"
        params: list[object] = []
        if country_id:
            sql += " AND country_id = ?"
            params.append(country_id)
        if user_id:
            sql += " AND created_by = ?"
            params.append(user_id)
        sql += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)
        with self.lock:
            rows = self.conn.execute(sql, params).fetchall()
        return [dict(row) for row in rows]

    def recent_reports(
        self,
        days: int = 7,
        limit: int = 10,
        now: datetime | None = None,
    ) -> list[RecentReport]:
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=days)
        with self.lock:
            rows = self.conn.execute(
                """
                SELECT type, severity, address, created_at
                FROM crime_reports
                WHERE created_at >= ?
                ORDER BY created_at DESC
                LIMIT ?
                """,
                (cutoff.isoformat(), limit),
            ).fetchall()
        return [
            RecentReport(
                type=row["type"],
                severity=row["severity"],
                address=row["address"] or "",
                created_at=row["created_at"],
            )
            for row in rows
        ]
