"""Process-level facade over the analytics pipeline."""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Union

from .aggregation import PageMetricsResult, aggregate
from .alerting import AlertRouter, get_alert_router
from .config import Settings, get_settings
from .insights import InsightInputs, derive_insights
from .logs import LogIssueStore, StatusUpdate
from .models import (
    AnalyticsSnapshot,
    LogEvent,
    LogIssue,
    LogStatus,
    MetricSample,
    OptimizationInsight,
    ServerOverview,
)
from .orchestrator import LastKnownGoodCache, SnapshotOrchestrator
from .resources import ResourceProbe
from .snapshot_cache import TTLSnapshotCache, load_enhancer
from .sources import AnalyticsDataSource, SQLiteAnalyticsSource

logger = logging.getLogger(__name__)


class AnalyticsService:
    """Entry point used by the dashboard and CLI tools."""

    def __init__(
        self,
        *,
        settings: Settings,
        log_store: LogIssueStore,
        orchestrator: SnapshotOrchestrator,
        snapshot_cache: TTLSnapshotCache,
        source: Optional[AnalyticsDataSource] = None,
    ) -> None:
        self.settings = settings
        self.log_store = log_store
        self.orchestrator = orchestrator
        self.snapshot_cache = snapshot_cache
        self.source = source

    # Snapshots ---------------------------------------------------------
    async def collect_snapshot(self) -> AnalyticsSnapshot:
        return await self.orchestrator.collect_snapshot()

    def get_snapshot(self) -> ServerOverview:
        return self.snapshot_cache.get_snapshot()

    def refresh(self) -> ServerOverview:
        return self.snapshot_cache.refresh()

    # Pure computations -------------------------------------------------
    def aggregate(self, samples: Iterable[MetricSample]) -> PageMetricsResult:
        return aggregate(samples)

    def derive_insights(
        self,
        inputs: InsightInputs,
        *,
        fallback: Optional[Sequence[OptimizationInsight]] = None,
        use_fallback_only: bool = False,
    ) -> List[OptimizationInsight]:
        return derive_insights(
            inputs,
            thresholds=self.settings.insights,
            fallback=fallback,
            use_fallback_only=use_fallback_only,
        )

    # Log issues --------------------------------------------------------
    def record_log_event(self, event: Union[LogEvent, Mapping[str, Any]]) -> LogIssue:
        return self.log_store.record(event)

    def list_recent_log_issues(
        self,
        limit: Optional[int] = None,
        window: Optional[timedelta] = None,
    ) -> List[LogIssue]:
        return self.log_store.list_recent(
            limit if limit is not None else self.settings.log_recent_limit,
            window if window is not None else timedelta(hours=self.settings.log_window_hours),
        )

    def set_log_issue_status(self, issue_id: str, status: Union[LogStatus, str]) -> LogIssue:
        update = StatusUpdate(issue_id=issue_id, status=status)
        issue = self.log_store.set_status(update.issue_id, update.status)
        logger.info("Log issue %s marked %s", issue.id, issue.status.value)
        return issue

    def close(self) -> None:
        self.orchestrator.close()


def build_service(
    settings: Optional[Settings] = None,
    *,
    alert_router: Optional[AlertRouter] = None,
) -> AnalyticsService:
    """Wire the SQLite-backed pipeline from settings."""

    settings = settings or get_settings()
    log_store = LogIssueStore(
        settings.log_db_path,
        retry_attempts=settings.log_retry_attempts,
        retry_delay=settings.log_retry_delay_seconds,
    )
    source = SQLiteAnalyticsSource(
        settings.analytics_db_path,
        log_store=log_store,
        window_hours=settings.http_window_hours,
        bucket_minutes=settings.peak_bucket_minutes,
        top_buckets=settings.peak_top_buckets,
        log_limit=settings.log_recent_limit,
        log_window_hours=settings.log_window_hours,
    )
    orchestrator = SnapshotOrchestrator(
        source,
        settings=settings,
        cache=LastKnownGoodCache(),
        alert_router=alert_router or get_alert_router(
            settings.alert_timeout_seconds, settings.alert_cooldown_seconds
        ),
    )
    snapshot_cache = TTLSnapshotCache(
        resource_probe=ResourceProbe(settings.disk_usage_path),
        enhancer=load_enhancer(settings.snapshot_enhancer_module),
        max_age_seconds=settings.snapshot_max_age_seconds,
    )
    return AnalyticsService(
        settings=settings,
        log_store=log_store,
        orchestrator=orchestrator,
        snapshot_cache=snapshot_cache,
        source=source,
    )


_analytics_service: Optional[AnalyticsService] = None


def get_analytics_service() -> AnalyticsService:
    """Return the lazily instantiated analytics service."""

    global _analytics_service
    if _analytics_service is None:
        _analytics_service = build_service()
    return _analytics_service


def set_analytics_service(service: Optional[AnalyticsService]) -> None:
    """Override the global analytics service (primarily for testing)."""

    global _analytics_service
    _analytics_service = service


__all__ = [
    "AnalyticsService",
    "build_service",
    "get_analytics_service",
    "set_analytics_service",
]
