"""Live data collaborators feeding the snapshot orchestrator."""
from __future__ import annotations

import logging
import sqlite3
from contextlib import closing
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, List, Optional, Protocol, Sequence, runtime_checkable

from .http_metrics import HttpAggregation, aggregate_http_metrics
from .logs import LogIssueStore
from .models import (
    AggregatedDevice,
    HttpRequestRecord,
    HttpSummary,
    LogIssue,
    MetricSample,
    PeakHour,
    SessionSegment,
    TrafficSource,
    UptimeHeartbeat,
    parse_timestamp,
    utcnow,
)

logger = logging.getLogger(__name__)

_DB_SCHEMA = """
CREATE TABLE IF NOT EXISTS http_requests (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    area TEXT NOT NULL,
    status_code INTEGER NOT NULL,
    duration_ms REAL NOT NULL,
    payload_bytes REAL NOT NULL DEFAULT 0,
    cache_hit INTEGER
);
CREATE INDEX IF NOT EXISTS idx_http_requests_timestamp
    ON http_requests (timestamp);
CREATE TABLE IF NOT EXISTS uptime_heartbeats (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    observed_at TEXT NOT NULL,
    is_healthy INTEGER NOT NULL
);
CREATE TABLE IF NOT EXISTS page_views (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    recorded_at TEXT NOT NULL,
    path TEXT,
    scope TEXT,
    device_hint TEXT,
    load_time_ms REAL,
    lcp_ms REAL,
    weight REAL
);
CREATE INDEX IF NOT EXISTS idx_page_views_recorded_at
    ON page_views (recorded_at);
CREATE TABLE IF NOT EXISTS device_metrics (
    device TEXT PRIMARY KEY,
    sessions REAL NOT NULL,
    avg_load_ms REAL NOT NULL,
    share REAL
);
CREATE TABLE IF NOT EXISTS session_insights (
    segment TEXT PRIMARY KEY,
    avg_session_duration_seconds REAL NOT NULL,
    pages_per_session REAL NOT NULL,
    retention_rate REAL NOT NULL,
    share REAL NOT NULL
);
CREATE TABLE IF NOT EXISTS traffic_sources (
    channel TEXT PRIMARY KEY,
    sessions INTEGER NOT NULL,
    avg_session_duration_seconds REAL NOT NULL,
    conversion_rate REAL NOT NULL,
    change_percent REAL NOT NULL
);
"""


@runtime_checkable
class AnalyticsDataSource(Protocol):
    """Read contract the orchestrator needs from the storage layer.

    Implementations may define these as plain or ``async`` methods.
    """

    def fetch_http_summary(self) -> Optional[HttpSummary]: ...

    def fetch_peak_hours(self) -> List[PeakHour]: ...

    def fetch_device_overrides(self) -> List[AggregatedDevice]: ...

    def fetch_page_samples(self) -> List[MetricSample]: ...

    def fetch_session_insights(self) -> List[SessionSegment]: ...

    def fetch_traffic_sources(self) -> List[TrafficSource]: ...

    def fetch_critical_logs(self) -> List[LogIssue]: ...


def _db_time(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


class SQLiteAnalyticsSource:
    """Row-returning analytics source backed by a SQLite database."""

    def __init__(
        self,
        db_path: Path,
        *,
        log_store: Optional[LogIssueStore] = None,
        clock: Callable[[], datetime] = utcnow,
        window_hours: float = 24,
        bucket_minutes: int = 60,
        top_buckets: int = 6,
        log_limit: int = 20,
        log_window_hours: float = 48,
    ) -> None:
        self.db_path = db_path
        self._log_store = log_store
        self._clock = clock
        self._window = timedelta(hours=window_hours)
        self._bucket_minutes = bucket_minutes
        self._top_buckets = top_buckets
        self._log_limit = log_limit
        self._log_window = timedelta(hours=log_window_hours)
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        with closing(sqlite3.connect(self.db_path)) as conn:
            conn.executescript(_DB_SCHEMA)
            conn.commit()

    def _query(self, sql: str, params: Sequence[Any] = ()) -> List[tuple]:
        with closing(sqlite3.connect(self.db_path)) as conn:
            return conn.execute(sql, params).fetchall()

    def _window_bounds(self) -> tuple[datetime, datetime]:
        end = self._clock()
        return end - self._window, end

    # Ingestion ---------------------------------------------------------
    def record_request(self, request: HttpRequestRecord) -> None:
        with closing(sqlite3.connect(self.db_path)) as conn:
            conn.execute(
                "INSERT INTO http_requests "
                "(timestamp, area, status_code, duration_ms, payload_bytes, cache_hit) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    _db_time(request.timestamp),
                    request.area,
                    int(request.status_code),
                    float(request.duration_ms),
                    float(request.payload_bytes or 0),
                    None if request.cache_hit is None else int(bool(request.cache_hit)),
                ),
            )
            conn.commit()

    def record_heartbeat(self, heartbeat: UptimeHeartbeat) -> None:
        with closing(sqlite3.connect(self.db_path)) as conn:
            conn.execute(
                "INSERT INTO uptime_heartbeats (observed_at, is_healthy) VALUES (?, ?)",
                (_db_time(heartbeat.observed_at), int(heartbeat.is_healthy)),
            )
            conn.commit()

    def record_page_view(self, sample: MetricSample, recorded_at: Optional[datetime] = None) -> None:
        with closing(sqlite3.connect(self.db_path)) as conn:
            conn.execute(
                "INSERT INTO page_views "
                "(recorded_at, path, scope, device_hint, load_time_ms, lcp_ms, weight) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    _db_time(recorded_at or self._clock()),
                    sample.path,
                    sample.scope,
                    sample.device_hint,
                    sample.load_time_ms,
                    sample.lcp_ms,
                    sample.weight,
                ),
            )
            conn.commit()

    def upsert_device_metric(self, device: AggregatedDevice) -> None:
        with closing(sqlite3.connect(self.db_path)) as conn:
            conn.execute(
                "REPLACE INTO device_metrics (device, sessions, avg_load_ms, share) "
                "VALUES (?, ?, ?, ?)",
                (device.device, device.sessions, device.avg_load_ms, device.share),
            )
            conn.commit()

    def upsert_session_insight(self, segment: SessionSegment) -> None:
        with closing(sqlite3.connect(self.db_path)) as conn:
            conn.execute(
                "REPLACE INTO session_insights "
                "(segment, avg_session_duration_seconds, pages_per_session, retention_rate, share) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    segment.segment,
                    segment.avg_session_duration_seconds,
                    segment.pages_per_session,
                    segment.retention_rate,
                    segment.share,
                ),
            )
            conn.commit()

    def upsert_traffic_source(self, source: TrafficSource) -> None:
        with closing(sqlite3.connect(self.db_path)) as conn:
            conn.execute(
                "REPLACE INTO traffic_sources "
                "(channel, sessions, avg_session_duration_seconds, conversion_rate, change_percent) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    source.channel,
                    source.sessions,
                    source.avg_session_duration_seconds,
                    source.conversion_rate,
                    source.change_percent,
                ),
            )
            conn.commit()

    # Read contract -----------------------------------------------------
    def _aggregate_http(self) -> HttpAggregation:
        start, end = self._window_bounds()
        request_rows = self._query(
            "SELECT timestamp, area, status_code, duration_ms, payload_bytes, cache_hit "
            "FROM http_requests WHERE timestamp >= ? AND timestamp <= ?",
            (_db_time(start), _db_time(end)),
        )
        heartbeat_rows = self._query(
            "SELECT observed_at, is_healthy FROM uptime_heartbeats "
            "WHERE observed_at >= ? AND observed_at <= ?",
            (_db_time(start), _db_time(end)),
        )
        requests = [
            HttpRequestRecord(
                timestamp=parse_timestamp(row[0]),
                area=row[1],
                status_code=int(row[2]),
                duration_ms=float(row[3]),
                payload_bytes=float(row[4] or 0),
                cache_hit=None if row[5] is None else bool(row[5]),
            )
            for row in request_rows
        ]
        heartbeats = [
            UptimeHeartbeat(observed_at=parse_timestamp(row[0]), is_healthy=bool(row[1]))
            for row in heartbeat_rows
        ]
        return aggregate_http_metrics(
            requests,
            window_start=start,
            window_end=end,
            heartbeats=heartbeats,
            bucket_minutes=self._bucket_minutes,
            top_buckets=self._top_buckets,
        )

    def fetch_http_summary(self) -> Optional[HttpSummary]:
        summary = self._aggregate_http().summary
        if summary.total_requests == 0:
            return None
        return summary

    def fetch_peak_hours(self) -> List[PeakHour]:
        return self._aggregate_http().peak_hours

    def fetch_device_overrides(self) -> List[AggregatedDevice]:
        rows = self._query("SELECT device, sessions, avg_load_ms, share FROM device_metrics")
        total = sum(float(row[1]) for row in rows if row[1] and row[1] > 0)
        devices = []
        for device, sessions, avg_load_ms, share in rows:
            if not sessions or sessions <= 0:
                continue
            if share is None:
                share = float(sessions) / total if total > 0 else 0.0
            devices.append(
                AggregatedDevice(
                    device=str(device),
                    sessions=float(sessions),
                    avg_load_ms=int(round(avg_load_ms)),
                    share=float(share),
                )
            )
        devices.sort(key=lambda item: (-item.sessions, item.device))
        return devices

    def fetch_page_samples(self) -> List[MetricSample]:
        start, end = self._window_bounds()
        rows = self._query(
            "SELECT path, scope, load_time_ms, lcp_ms, weight, device_hint FROM page_views "
            "WHERE recorded_at >= ? AND recorded_at <= ? ORDER BY recorded_at, id",
            (_db_time(start), _db_time(end)),
        )
        return [
            MetricSample(
                path=row[0],
                scope=row[1],
                load_time_ms=row[2],
                lcp_ms=row[3],
                weight=row[4] if row[4] is not None else 1.0,
                device_hint=row[5],
            )
            for row in rows
        ]

    def fetch_session_insights(self) -> List[SessionSegment]:
        rows = self._query(
            "SELECT segment, avg_session_duration_seconds, pages_per_session, retention_rate, share "
            "FROM session_insights ORDER BY share DESC, segment"
        )
        return [
            SessionSegment(
                segment=row[0],
                avg_session_duration_seconds=float(row[1]),
                pages_per_session=float(row[2]),
                retention_rate=float(row[3]),
                share=float(row[4]),
            )
            for row in rows
        ]

    def fetch_traffic_sources(self) -> List[TrafficSource]:
        rows = self._query(
            "SELECT channel, sessions, avg_session_duration_seconds, conversion_rate, change_percent "
            "FROM traffic_sources ORDER BY sessions DESC, channel"
        )
        return [
            TrafficSource(
                channel=row[0],
                sessions=int(row[1]),
                avg_session_duration_seconds=float(row[2]),
                conversion_rate=float(row[3]),
                change_percent=float(row[4]),
            )
            for row in rows
        ]

    def fetch_critical_logs(self) -> List[LogIssue]:
        if self._log_store is None:
            return []
        return self._log_store.list_critical(self._log_limit, self._log_window)


__all__ = ["AnalyticsDataSource", "SQLiteAnalyticsSource"]
