"""Server analytics pipeline: aggregation, insights, log issues and snapshots."""
from .aggregation import aggregate
from .insights import InsightInputs, derive_insights
from .logs import LogIssueStore
from .orchestrator import LastKnownGoodCache, SnapshotOrchestrator
from .service import AnalyticsService, build_service, get_analytics_service
from .snapshot_cache import TTLSnapshotCache

__all__ = [
    "AnalyticsService",
    "InsightInputs",
    "LastKnownGoodCache",
    "LogIssueStore",
    "SnapshotOrchestrator",
    "TTLSnapshotCache",
    "aggregate",
    "build_service",
    "derive_insights",
    "get_analytics_service",
]
