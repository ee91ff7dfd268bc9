"""Generate synthetic analytics records for local dashboards and dry runs."""
from __future__ import annotations

import argparse
import random
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Optional

from ..logs import LogIssueStore
from ..models import (
    AggregatedDevice,
    HttpRequestRecord,
    LogEvent,
    LogSeverity,
    MetricSample,
    SessionSegment,
    TrafficSource,
    UptimeHeartbeat,
)
from ..sources import SQLiteAnalyticsSource

PUBLIC_PATHS = ("/", "/chronik", "/termine", "/ueber-uns", "/kontakt")
MEMBER_PATHS = ("/mitglieder", "/mitglieder/proben", "/mitglieder/galerie", "/mitglieder/dateisystem")
DEVICE_HINTS = ("iPhone Safari", "Android Chrome", "Desktop Firefox", "Windows Laptop", "iPad")
AREAS = ("public", "public", "public", "members", "api")

SESSION_SEGMENTS = (
    SessionSegment("returning-members", 505.0, 6.1, 0.76, 0.32),
    SessionSegment("new-visitors", 138.0, 2.0, 0.34, 0.5),
    SessionSegment("returning-visitors", 271.0, 3.6, 0.57, 0.18),
)
TRAFFIC = (
    TrafficSource("direct", 4700, 298.0, 0.041, 0.02),
    TrafficSource("search", 3850, 190.0, 0.026, 0.07),
    TrafficSource("social", 1690, 118.0, 0.013, -0.04),
)
LOG_EVENTS = (
    (LogSeverity.ERROR, "api", "Upstream timeout while loading rehearsal plan", ["timeout", "api"]),
    (LogSeverity.WARNING, "frontend", "Gallery thumbnail exceeded 1 MB", ["images"]),
    (LogSeverity.WARNING, "realtime", "Presence channel reconnect storm", ["realtime"]),
    (LogSeverity.INFO, "jobs", "Nightly export finished", ["jobs"]),
)


def _generate_hour(
    source: SQLiteAnalyticsSource,
    *,
    hour_start: datetime,
    rng: random.Random,
    requests_per_hour: int,
) -> None:
    for _ in range(requests_per_hour):
        area = rng.choice(AREAS)
        timestamp = hour_start + timedelta(seconds=rng.randint(0, 3599))
        base = {"public": 150, "members": 240, "api": 190}[area]
        source.record_request(
            HttpRequestRecord(
                timestamp=timestamp,
                area=area,
                status_code=500 if rng.random() < 0.01 else 404 if rng.random() < 0.02 else 200,
                duration_ms=max(5.0, rng.gauss(base, base * 0.35)),
                payload_bytes=float(rng.randint(40_000, 520_000)) if area == "public" else float(rng.randint(2_000, 60_000)),
                cache_hit=(rng.random() < 0.85) if area == "public" else None,
            )
        )

    for _ in range(max(1, requests_per_hour // 4)):
        member = rng.random() < 0.35
        path = rng.choice(MEMBER_PATHS if member else PUBLIC_PATHS)
        load = max(200.0, rng.gauss(1700 if member else 1300, 350))
        source.record_page_view(
            MetricSample(
                path=path + ("?utm_source=newsletter" if rng.random() < 0.1 else ""),
                scope="members" if member else "public",
                load_time_ms=load,
                lcp_ms=load * rng.uniform(1.05, 1.35) if rng.random() < 0.8 else None,
                weight=1.0,
                device_hint=rng.choice(DEVICE_HINTS),
            ),
            recorded_at=hour_start + timedelta(seconds=rng.randint(0, 3599)),
        )

    source.record_heartbeat(
        UptimeHeartbeat(observed_at=hour_start + timedelta(minutes=30), is_healthy=rng.random() > 0.002)
    )


def generate(
    analytics_db: Path,
    *,
    log_db: Optional[Path] = None,
    hours: int = 24,
    requests_per_hour: int = 120,
    seed: int = 42,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    """Seed ``analytics_db`` (and optionally ``log_db``) with deterministic data."""

    rng = random.Random(seed)
    current = (now or datetime.now(timezone.utc)).replace(minute=0, second=0, microsecond=0)
    source = SQLiteAnalyticsSource(analytics_db)

    for offset in range(hours, 0, -1):
        _generate_hour(
            source,
            hour_start=current - timedelta(hours=offset),
            rng=rng,
            requests_per_hour=requests_per_hour,
        )

    for segment in SESSION_SEGMENTS:
        source.upsert_session_insight(segment)
    for traffic in TRAFFIC:
        source.upsert_traffic_source(traffic)
    source.upsert_device_metric(AggregatedDevice("mobile", 6200, 1510, 0.57))
    source.upsert_device_metric(AggregatedDevice("desktop", 4000, 1080, 0.37))
    source.upsert_device_metric(AggregatedDevice("tablet", 650, 1330, 0.06))

    issues = 0
    if log_db is not None:
        store = LogIssueStore(log_db)
        for severity, service, message, tags in LOG_EVENTS:
            for repeat in range(rng.randint(1, 5)):
                store.record(
                    LogEvent(
                        severity=severity,
                        service=service,
                        message=message,
                        timestamp=current - timedelta(minutes=rng.randint(5, 600)),
                        tags=list(tags),
                        metadata={"sample": True, "repeat": repeat},
                    )
                )
        issues = store.count()

    return {
        "hours": hours,
        "requests": hours * requests_per_hour,
        "log_issues": issues,
    }


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate synthetic analytics data for local dashboards.")
    parser.add_argument(
        "--analytics-db",
        type=Path,
        default=Path("analytics.db"),
        help="Path to analytics SQLite database (default: analytics.db).",
    )
    parser.add_argument(
        "--log-db",
        type=Path,
        default=Path("analytics_logs.db"),
        help="Path to log issue SQLite database (default: analytics_logs.db).",
    )
    parser.add_argument(
        "--hours",
        type=int,
        default=24,
        help="Number of trailing hours to generate (default: 24).",
    )
    parser.add_argument(
        "--requests-per-hour",
        type=int,
        default=120,
        help="Synthetic HTTP requests per hour (default: 120).",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=42,
        help="Seed for the pseudo-random generator (default: 42).",
    )
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    generate(
        args.analytics_db,
        log_db=args.log_db,
        hours=max(1, args.hours),
        requests_per_hour=max(1, args.requests_per_hour),
        seed=args.seed,
    )


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    main()
