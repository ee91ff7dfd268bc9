"""Request-volume aggregation: summary counters and peak-hour buckets."""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Sequence

from .aggregation import round_half_up
from .models import HttpRequestRecord, HttpSummary, PeakHour, UptimeHeartbeat

DEFAULT_BUCKET_MINUTES = 60
DEFAULT_TOP_BUCKETS = 6
KNOWN_AREAS = ("public", "members", "api")


@dataclass
class HttpAggregation:
    summary: HttpSummary
    peak_hours: List[PeakHour] = field(default_factory=list)


def _clamp(value: float, low: float, high: float) -> float:
    if not math.isfinite(value):
        return low
    return min(max(value, low), high)


def _average(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    total = sum(values)
    if not math.isfinite(total) or total <= 0:
        return 0.0
    return total / len(values)


def percentile(values: Sequence[float], pct: float) -> Optional[float]:
    """Nearest-rank percentile; ``None`` for an empty sequence."""

    if not values:
        return None
    ordered = sorted(values)
    index = int(_clamp(math.ceil(pct / 100 * len(ordered)) - 1, 0, len(ordered) - 1))
    return ordered[index]


def _normalize_area(area: Optional[str]) -> str:
    value = (area or "").strip().lower()
    return value if value in KNOWN_AREAS else "unknown"


def _sanitize(value: Optional[float]) -> float:
    try:
        number = float(value) if value is not None else 0.0
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(number):
        return 0.0
    return max(0.0, number)


def _error_rate(requests: Sequence[HttpRequestRecord]) -> float:
    if not requests:
        return 0.0
    errors = sum(1 for request in requests if request.status_code >= 400)
    return _clamp(errors / len(requests), 0.0, 1.0)


def _cache_hit_rate(requests: Sequence[HttpRequestRecord]) -> Optional[float]:
    flagged = [request for request in requests if request.cache_hit is not None]
    if not flagged:
        return None
    hits = sum(1 for request in flagged if request.cache_hit)
    return hits / len(flagged)


def _uptime_percentage(heartbeats: Sequence[UptimeHeartbeat]) -> Optional[float]:
    if not heartbeats:
        return None
    healthy = sum(1 for heartbeat in heartbeats if heartbeat.is_healthy)
    return _clamp(healthy / len(heartbeats), 0.0, 1.0) * 100


def aggregate_peak_hours(
    requests: Sequence[HttpRequestRecord],
    *,
    bucket_minutes: int = DEFAULT_BUCKET_MINUTES,
    top_buckets: int = DEFAULT_TOP_BUCKETS,
) -> List[PeakHour]:
    """Return the busiest time buckets, most requests first."""

    total = len(requests)
    if total == 0:
        return []
    bucket_seconds = max(bucket_minutes, 1) * 60
    counts: Dict[int, int] = {}
    for request in requests:
        epoch = int(request.timestamp.timestamp())
        start = epoch - (epoch % bucket_seconds)
        counts[start] = counts.get(start, 0) + 1

    ordered = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    peaks = []
    for start, count in ordered[: max(top_buckets, 1)]:
        bucket_start = datetime.fromtimestamp(start, tz=timezone.utc)
        peaks.append(
            PeakHour(
                bucket_start=bucket_start,
                bucket_end=bucket_start + timedelta(seconds=bucket_seconds),
                requests=count,
                share=_clamp(count / total, 0.0, 1.0),
            )
        )
    return peaks


def aggregate_http_metrics(
    requests: Iterable[HttpRequestRecord],
    *,
    window_start: datetime,
    window_end: datetime,
    heartbeats: Optional[Iterable[UptimeHeartbeat]] = None,
    bucket_minutes: int = DEFAULT_BUCKET_MINUTES,
    top_buckets: int = DEFAULT_TOP_BUCKETS,
) -> HttpAggregation:
    """Summarise raw requests inside ``[window_start, window_end]``."""

    in_window = [
        HttpRequestRecord(
            timestamp=request.timestamp,
            area=_normalize_area(request.area),
            status_code=int(request.status_code or 0),
            duration_ms=round_half_up(_sanitize(request.duration_ms)),
            payload_bytes=_sanitize(request.payload_bytes),
            cache_hit=request.cache_hit,
        )
        for request in requests
        if window_start <= request.timestamp <= window_end
    ]
    beats = [
        heartbeat
        for heartbeat in (heartbeats or [])
        if window_start <= heartbeat.observed_at <= window_end
    ]

    by_area: Dict[str, List[HttpRequestRecord]] = {area: [] for area in KNOWN_AREAS}
    by_area["unknown"] = []
    for request in in_window:
        by_area[request.area].append(request)

    durations = [request.duration_ms for request in in_window]
    public = by_area["public"]
    members = by_area["members"]
    api = by_area["api"]

    summary = HttpSummary(
        window_start=window_start,
        window_end=window_end,
        total_requests=len(in_window),
        successful_requests=sum(1 for r in in_window if r.status_code < 400),
        client_error_requests=sum(1 for r in in_window if 400 <= r.status_code < 500),
        server_error_requests=sum(1 for r in in_window if r.status_code >= 500),
        average_duration_ms=_average(durations),
        p95_duration_ms=percentile(durations, 95),
        average_payload_bytes=_average([r.payload_bytes for r in in_window]),
        uptime_percentage=_uptime_percentage(beats),
        cache_hit_rate=_cache_hit_rate(in_window),
        frontend_requests=len(public),
        frontend_avg_response_ms=_average([r.duration_ms for r in public]),
        frontend_avg_payload_bytes=_average([r.payload_bytes for r in public]),
        members_requests=len(members),
        members_avg_response_ms=_average([r.duration_ms for r in members]),
        api_requests=len(api),
        api_avg_response_ms=_average([r.duration_ms for r in api]),
        api_error_rate=_error_rate(api),
    )
    peak_hours = aggregate_peak_hours(
        in_window, bucket_minutes=bucket_minutes, top_buckets=top_buckets
    )
    return HttpAggregation(summary=summary, peak_hours=peak_hours)


__all__ = ["HttpAggregation", "aggregate_http_metrics", "aggregate_peak_hours", "percentile"]
