"""Core data models for the server analytics pipeline."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class Scope(str, Enum):
    PUBLIC = "public"
    MEMBERS = "members"


class LogSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class LogStatus(str, Enum):
    OPEN = "open"
    MONITORING = "monitoring"
    RESOLVED = "resolved"


class SnapshotSource(str, Enum):
    LIVE = "live"
    CACHED = "cached"
    FALLBACK = "fallback"


class InsightArea(str, Enum):
    FRONTEND = "frontend"
    MEMBERS = "members"
    INFRASTRUCTURE = "infrastructure"


class InsightImpact(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Coerce ISO strings, epoch seconds or datetimes into aware UTC datetimes."""

    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        parsed = datetime.fromtimestamp(float(value), tz=timezone.utc)
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Page and device metrics
# ---------------------------------------------------------------------------


@dataclass
class MetricSample:
    """One raw page-load observation as returned by the storage layer."""

    path: Optional[str]
    scope: Optional[str] = None
    load_time_ms: Optional[float] = None
    lcp_ms: Optional[float] = None
    weight: float = 1.0
    device_hint: Optional[str] = None


@dataclass
class AggregatedPage:
    path: str
    scope: Optional[Scope]
    avg_load_ms: int
    lcp_ms: Optional[int]
    weight: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "scope": self.scope.value if self.scope else None,
            "avg_load_ms": self.avg_load_ms,
            "lcp_ms": self.lcp_ms,
            "weight": self.weight,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AggregatedPage":
        scope = data.get("scope")
        return cls(
            path=str(data["path"]),
            scope=Scope(scope) if scope else None,
            avg_load_ms=int(data.get("avg_load_ms", 0)),
            lcp_ms=int(data["lcp_ms"]) if data.get("lcp_ms") is not None else None,
            weight=float(data.get("weight", 0)),
        )


@dataclass
class AggregatedDevice:
    device: str
    sessions: float
    avg_load_ms: int
    share: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AggregatedDevice":
        return cls(
            device=str(data["device"]),
            sessions=float(data.get("sessions", 0)),
            avg_load_ms=int(data.get("avg_load_ms", 0)),
            share=float(data.get("share", 0.0)),
        )


# ---------------------------------------------------------------------------
# HTTP request volume
# ---------------------------------------------------------------------------


@dataclass
class HttpRequestRecord:
    timestamp: datetime
    area: str
    status_code: int
    duration_ms: float
    payload_bytes: float = 0.0
    cache_hit: Optional[bool] = None


@dataclass
class UptimeHeartbeat:
    observed_at: datetime
    is_healthy: bool


@dataclass
class HttpSummary:
    """Request-volume summary over a time window."""

    window_start: datetime
    window_end: datetime
    total_requests: int = 0
    successful_requests: int = 0
    client_error_requests: int = 0
    server_error_requests: int = 0
    average_duration_ms: float = 0.0
    p95_duration_ms: Optional[float] = None
    average_payload_bytes: float = 0.0
    uptime_percentage: Optional[float] = None
    cache_hit_rate: Optional[float] = None
    frontend_requests: int = 0
    frontend_avg_response_ms: float = 0.0
    frontend_avg_payload_bytes: float = 0.0
    members_requests: int = 0
    members_avg_response_ms: float = 0.0
    api_requests: int = 0
    api_avg_response_ms: float = 0.0
    api_error_rate: float = 0.0

    @property
    def error_rate(self) -> float:
        if self.total_requests <= 0:
            return 0.0
        return (self.total_requests - self.successful_requests) / self.total_requests

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["window_start"] = iso(self.window_start)
        data["window_end"] = iso(self.window_end)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HttpSummary":
        values = dict(data)
        values["window_start"] = parse_timestamp(values.get("window_start")) or utcnow()
        values["window_end"] = parse_timestamp(values.get("window_end")) or utcnow()
        known = set(cls.__dataclass_fields__)
        return cls(**{key: value for key, value in values.items() if key in known})


@dataclass
class PeakHour:
    bucket_start: datetime
    bucket_end: datetime
    requests: int
    share: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bucket_start": iso(self.bucket_start),
            "bucket_end": iso(self.bucket_end),
            "requests": self.requests,
            "share": self.share,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PeakHour":
        return cls(
            bucket_start=parse_timestamp(data["bucket_start"]),
            bucket_end=parse_timestamp(data["bucket_end"]),
            requests=int(data.get("requests", 0)),
            share=float(data.get("share", 0.0)),
        )


# ---------------------------------------------------------------------------
# Sessions and traffic
# ---------------------------------------------------------------------------


@dataclass
class SessionSegment:
    segment: str
    avg_session_duration_seconds: float
    pages_per_session: float
    retention_rate: float
    share: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionSegment":
        return cls(
            segment=str(data["segment"]),
            avg_session_duration_seconds=float(data.get("avg_session_duration_seconds", 0)),
            pages_per_session=float(data.get("pages_per_session", 0)),
            retention_rate=float(data.get("retention_rate", 0)),
            share=float(data.get("share", 0)),
        )


@dataclass
class TrafficSource:
    channel: str
    sessions: int
    avg_session_duration_seconds: float
    conversion_rate: float
    change_percent: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrafficSource":
        return cls(
            channel=str(data["channel"]),
            sessions=int(data.get("sessions", 0)),
            avg_session_duration_seconds=float(data.get("avg_session_duration_seconds", 0)),
            conversion_rate=float(data.get("conversion_rate", 0)),
            change_percent=float(data.get("change_percent", 0)),
        )


# ---------------------------------------------------------------------------
# Log issues
# ---------------------------------------------------------------------------


@dataclass
class LogEvent:
    """A structured log observation fed to the deduplication store."""

    severity: LogSeverity
    service: str
    message: str
    timestamp: datetime = field(default_factory=utcnow)
    description: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    status: Optional[LogStatus] = None
    occurrences: Optional[int] = None
    affected_users: Optional[int] = None
    recommended_action: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    fingerprint: Optional[str] = None


@dataclass
class LogIssue:
    id: str
    fingerprint: str
    severity: LogSeverity
    service: str
    message: str
    description: str
    tags: List[str]
    status: LogStatus
    occurrences: int
    first_seen: datetime
    last_seen: datetime
    affected_users: Optional[int] = None
    recommended_action: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "fingerprint": self.fingerprint,
            "severity": self.severity.value,
            "service": self.service,
            "message": self.message,
            "description": self.description,
            "tags": list(self.tags),
            "status": self.status.value,
            "occurrences": self.occurrences,
            "affected_users": self.affected_users,
            "recommended_action": self.recommended_action,
            "metadata": dict(self.metadata),
            "first_seen": iso(self.first_seen),
            "last_seen": iso(self.last_seen),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LogIssue":
        return cls(
            id=str(data["id"]),
            fingerprint=str(data.get("fingerprint", data["id"])),
            severity=LogSeverity(data.get("severity", "error")),
            service=str(data.get("service", "application")),
            message=str(data.get("message", "")),
            description=str(data.get("description") or data.get("message", "")),
            tags=list(data.get("tags") or []),
            status=LogStatus(data.get("status", "open")),
            occurrences=int(data.get("occurrences", 1)),
            first_seen=parse_timestamp(data["first_seen"]),
            last_seen=parse_timestamp(data["last_seen"]),
            affected_users=data.get("affected_users"),
            recommended_action=data.get("recommended_action"),
            metadata=dict(data.get("metadata") or {}),
        )


# ---------------------------------------------------------------------------
# Insights and snapshots
# ---------------------------------------------------------------------------


@dataclass
class OptimizationInsight:
    id: str
    area: InsightArea
    title: str
    description: str
    impact: InsightImpact
    metric: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "area": self.area.value,
            "title": self.title,
            "description": self.description,
            "impact": self.impact.value,
            "metric": self.metric,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OptimizationInsight":
        return cls(
            id=str(data["id"]),
            area=InsightArea(data["area"]),
            title=str(data["title"]),
            description=str(data.get("description", "")),
            impact=InsightImpact(data["impact"]),
            metric=str(data.get("metric", "")),
        )


@dataclass
class ServerSummary:
    uptime_percentage: Optional[float]
    requests_last_24h: int
    average_response_time_ms: float
    error_rate: float
    cache_hit_rate: Optional[float]
    p95_response_time_ms: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServerSummary":
        return cls(
            uptime_percentage=data.get("uptime_percentage"),
            requests_last_24h=int(data.get("requests_last_24h", 0)),
            average_response_time_ms=float(data.get("average_response_time_ms", 0)),
            error_rate=float(data.get("error_rate", 0)),
            cache_hit_rate=data.get("cache_hit_rate"),
            p95_response_time_ms=data.get("p95_response_time_ms"),
        )


@dataclass
class SnapshotMetadata:
    source: SnapshotSource
    attempts: int
    stale_since: Optional[datetime] = None
    fallback_reasons: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source.value,
            "attempts": self.attempts,
            "stale_since": iso(self.stale_since),
            "fallback_reasons": list(self.fallback_reasons),
        }


@dataclass
class AnalyticsSnapshot:
    generated_at: datetime
    summary: ServerSummary
    pages: List[AggregatedPage]
    devices: List[AggregatedDevice]
    insights: List[OptimizationInsight]
    logs: List[LogIssue]
    metadata: SnapshotMetadata
    peak_hours: List[PeakHour] = field(default_factory=list)
    sessions: List[SessionSegment] = field(default_factory=list)
    traffic_sources: List[TrafficSource] = field(default_factory=list)
    request_breakdown: Dict[str, Dict[str, float]] = field(default_factory=dict)

    @property
    def public_pages(self) -> List[AggregatedPage]:
        return [page for page in self.pages if page.scope != Scope.MEMBERS]

    @property
    def member_pages(self) -> List[AggregatedPage]:
        return [page for page in self.pages if page.scope == Scope.MEMBERS]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "generated_at": iso(self.generated_at),
            "summary": self.summary.to_dict(),
            "pages": [page.to_dict() for page in self.pages],
            "devices": [device.to_dict() for device in self.devices],
            "insights": [insight.to_dict() for insight in self.insights],
            "logs": [issue.to_dict() for issue in self.logs],
            "peak_hours": [bucket.to_dict() for bucket in self.peak_hours],
            "sessions": [segment.to_dict() for segment in self.sessions],
            "traffic_sources": [source.to_dict() for source in self.traffic_sources],
            "request_breakdown": {key: dict(value) for key, value in self.request_breakdown.items()},
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], metadata: SnapshotMetadata) -> "AnalyticsSnapshot":
        """Rebuild a snapshot from its serialised form (metadata is supplied by the caller)."""

        return cls(
            generated_at=parse_timestamp(data.get("generated_at")) or utcnow(),
            summary=ServerSummary.from_dict(data.get("summary", {})),
            pages=[AggregatedPage.from_dict(item) for item in data.get("pages", [])],
            devices=[AggregatedDevice.from_dict(item) for item in data.get("devices", [])],
            insights=[OptimizationInsight.from_dict(item) for item in data.get("insights", [])],
            logs=[LogIssue.from_dict(item) for item in data.get("logs", [])],
            metadata=metadata,
            peak_hours=[PeakHour.from_dict(item) for item in data.get("peak_hours", [])],
            sessions=[SessionSegment.from_dict(item) for item in data.get("sessions", [])],
            traffic_sources=[
                TrafficSource.from_dict(item) for item in data.get("traffic_sources", [])
            ],
            request_breakdown={
                key: dict(value) for key, value in data.get("request_breakdown", {}).items()
            },
        )


@dataclass
class ResourceUsage:
    id: str
    label: str
    usage_percent: float
    change_percent: float
    capacity: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResourceUsage":
        return cls(
            id=str(data["id"]),
            label=str(data.get("label", data["id"])),
            usage_percent=float(data.get("usage_percent", 0.0)),
            change_percent=float(data.get("change_percent", 0.0)),
            capacity=str(data.get("capacity", "")),
        )


@dataclass
class ServerOverview:
    """Static dashboard payload merged with live host resource usage."""

    generated_at: datetime
    resource_usage: List[ResourceUsage]
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        payload = {key: value for key, value in self.data.items() if key != "resource_usage"}
        payload["generated_at"] = iso(self.generated_at)
        payload["resource_usage"] = [usage.to_dict() for usage in self.resource_usage]
        return payload
