"""Snapshot assembly with a live, cached and static fallback chain."""
from __future__ import annotations

import asyncio
import copy
import functools
import inspect
import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .aggregation import aggregate, split_by_scope
from .alerting import AlertRouter
from .config import Settings, get_settings
from .insights import InsightInputs, derive_insights
from .models import (
    AnalyticsSnapshot,
    HttpSummary,
    OptimizationInsight,
    ServerSummary,
    SnapshotMetadata,
    SnapshotSource,
    utcnow,
)
from .sources import AnalyticsDataSource

logger = logging.getLogger(__name__)

STATIC_SNAPSHOT_PATH = Path(__file__).parent / "data" / "static_snapshot.json"
NO_CACHE_REASON = "no cached snapshot available"

REQUIRED_CALLS = ("fetch_http_summary", "fetch_page_samples")
OPTIONAL_CALLS = (
    "fetch_peak_hours",
    "fetch_device_overrides",
    "fetch_session_insights",
    "fetch_traffic_sources",
    "fetch_critical_logs",
)

_static_lock = threading.Lock()
_static_payload: Optional[Dict[str, Any]] = None


class LiveCollectionError(RuntimeError):
    """Raised internally when the live tier cannot produce a snapshot."""


def load_static_payload(path: Optional[Path] = None) -> Dict[str, Any]:
    """Return a private deep copy of the bundled static snapshot payload."""

    global _static_payload
    if path is not None:
        with path.open("r", encoding="utf-8") as fh:
            return json.load(fh)
    with _static_lock:
        if _static_payload is None:
            with STATIC_SNAPSHOT_PATH.open("r", encoding="utf-8") as fh:
                _static_payload = json.load(fh)
        return copy.deepcopy(_static_payload)


class LastKnownGoodCache:
    """Holds the most recent successful live snapshot.

    Construct one per process and hand it to every orchestrator that should
    share it; values are copied on the way in and on the way out.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._snapshot: Optional[AnalyticsSnapshot] = None

    def get(self) -> Optional[AnalyticsSnapshot]:
        with self._lock:
            if self._snapshot is None:
                return None
            return copy.deepcopy(self._snapshot)

    def put(self, snapshot: AnalyticsSnapshot) -> None:
        with self._lock:
            self._snapshot = copy.deepcopy(snapshot)

    def clear(self) -> None:
        with self._lock:
            self._snapshot = None


def _describe(exc: BaseException) -> str:
    text = str(exc)
    return f"{type(exc).__name__}: {text}" if text else type(exc).__name__


def _server_summary(http_summary: Optional[HttpSummary]) -> ServerSummary:
    if http_summary is None:
        return ServerSummary(
            uptime_percentage=None,
            requests_last_24h=0,
            average_response_time_ms=0.0,
            error_rate=0.0,
            cache_hit_rate=None,
        )
    return ServerSummary(
        uptime_percentage=http_summary.uptime_percentage,
        requests_last_24h=http_summary.total_requests,
        average_response_time_ms=http_summary.average_duration_ms,
        error_rate=http_summary.error_rate,
        cache_hit_rate=http_summary.cache_hit_rate,
        p95_response_time_ms=http_summary.p95_duration_ms,
    )


def _request_breakdown(http_summary: Optional[HttpSummary]) -> Dict[str, Dict[str, float]]:
    if http_summary is None:
        return {}
    return {
        "frontend": {
            "requests": http_summary.frontend_requests,
            "avg_response_time_ms": http_summary.frontend_avg_response_ms,
            "avg_payload_kb": round(http_summary.frontend_avg_payload_bytes / 1024, 1),
        },
        "members": {
            "requests": http_summary.members_requests,
            "avg_response_time_ms": http_summary.members_avg_response_ms,
        },
        "api": {
            "requests": http_summary.api_requests,
            "avg_response_time_ms": http_summary.api_avg_response_ms,
            "error_rate": http_summary.api_error_rate,
        },
    }


class SnapshotOrchestrator:
    """Builds analytics snapshots, degrading to cached or static data on failure."""

    def __init__(
        self,
        source: AnalyticsDataSource,
        *,
        settings: Optional[Settings] = None,
        cache: Optional[LastKnownGoodCache] = None,
        static_loader: Callable[[], Dict[str, Any]] = load_static_payload,
        alert_router: Optional[AlertRouter] = None,
        clock: Callable[[], datetime] = utcnow,
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        self._source = source
        self._settings = settings or get_settings()
        self._cache = cache if cache is not None else LastKnownGoodCache()
        self._static_loader = static_loader
        self._alert_router = alert_router
        self._clock = clock
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max(self._settings.collection_workers, 1),
            thread_name_prefix="analytics-collect",
        )
        self._alert_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="analytics-alert")
        self._inflight: Optional[asyncio.Task] = None

    @property
    def cache(self) -> LastKnownGoodCache:
        return self._cache

    def close(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False)
        self._alert_executor.shutdown(wait=False)

    async def collect_snapshot(self) -> AnalyticsSnapshot:
        """Return a snapshot; live failures are served from the cached or static tier.

        Concurrent callers share one in-flight collection. Cancelling a
        caller leaves the shared collection running for the others.
        """

        task = self._inflight
        if task is None or task.done():
            task = asyncio.get_running_loop().create_task(self._run_cycle())
            task.add_done_callback(self._clear_inflight)
            self._inflight = task
        snapshot = await asyncio.shield(task)
        return copy.deepcopy(snapshot)

    def _clear_inflight(self, task: asyncio.Task) -> None:
        if self._inflight is task:
            self._inflight = None

    async def _run_cycle(self) -> AnalyticsSnapshot:
        try:
            snapshot = await self._collect_live()
        except LiveCollectionError as exc:
            return await self._degrade(str(exc))
        except Exception as exc:
            logger.exception("Live analytics snapshot could not be assembled")
            return await self._degrade(f"live collection failed ({_describe(exc)})")
        self._cache.put(snapshot)
        logger.debug(
            "Collected live snapshot with %d pages and %d insights",
            len(snapshot.pages),
            len(snapshot.insights),
        )
        return snapshot

    async def _call(self, name: str) -> Any:
        method = getattr(self._source, name)
        if inspect.iscoroutinefunction(method):
            pending = method()
        else:
            pending = asyncio.get_running_loop().run_in_executor(self._executor, method)
        return await asyncio.wait_for(pending, timeout=self._settings.collection_timeout_seconds)

    def _failure_reason(self, name: str, exc: BaseException) -> str:
        if isinstance(exc, asyncio.TimeoutError):
            return f"{name} timed out after {self._settings.collection_timeout_seconds:g}s"
        return f"{name} failed ({_describe(exc)})"

    async def _collect_live(self) -> AnalyticsSnapshot:
        names = REQUIRED_CALLS + OPTIONAL_CALLS
        outcomes = await asyncio.gather(
            *(self._call(name) for name in names), return_exceptions=True
        )
        results: Dict[str, Any] = {}
        for name, outcome in zip(names, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, Exception):
                if name in REQUIRED_CALLS:
                    raise LiveCollectionError(self._failure_reason(name, outcome))
                logger.warning(
                    "Optional analytics call %s", self._failure_reason(name, outcome)
                )
                outcome = []
            results[name] = outcome

        http_summary: Optional[HttpSummary] = results["fetch_http_summary"]
        metrics = aggregate(results["fetch_page_samples"] or [])
        has_requests = http_summary is not None and http_summary.total_requests > 0
        if not has_requests and not metrics.pages:
            raise LiveCollectionError("insufficient live data: no requests and no page samples")

        devices = list(results["fetch_device_overrides"] or []) or metrics.devices
        sessions = list(results["fetch_session_insights"] or [])
        public_pages, member_pages = split_by_scope(metrics.pages)
        insights = derive_insights(
            InsightInputs(
                public_pages=public_pages,
                member_pages=member_pages,
                devices=devices,
                sessions=sessions,
                http_summary=http_summary,
            ),
            thresholds=self._settings.insights,
            fallback=self._static_insights(),
        )
        return AnalyticsSnapshot(
            generated_at=self._clock(),
            summary=_server_summary(http_summary),
            pages=metrics.pages,
            devices=devices,
            insights=insights,
            logs=list(results["fetch_critical_logs"] or []),
            metadata=SnapshotMetadata(source=SnapshotSource.LIVE, attempts=1),
            peak_hours=list(results["fetch_peak_hours"] or []),
            sessions=sessions,
            traffic_sources=list(results["fetch_traffic_sources"] or []),
            request_breakdown=_request_breakdown(http_summary),
        )

    def _static_insights(self) -> List[OptimizationInsight]:
        payload = self._static_loader()
        return [OptimizationInsight.from_dict(item) for item in payload.get("insights", [])]

    async def _degrade(self, reason: str) -> AnalyticsSnapshot:
        cached = self._cache.get()
        if cached is not None:
            cached.metadata = SnapshotMetadata(
                source=SnapshotSource.CACHED,
                attempts=2,
                stale_since=cached.generated_at,
                fallback_reasons=[*cached.metadata.fallback_reasons, reason],
            )
            snapshot = cached
        else:
            snapshot = AnalyticsSnapshot.from_dict(
                self._static_loader(),
                SnapshotMetadata(
                    source=SnapshotSource.FALLBACK,
                    attempts=3,
                    fallback_reasons=[reason, NO_CACHE_REASON],
                ),
            )
        logger.warning(
            "Serving %s analytics snapshot after %d attempts: %s",
            snapshot.metadata.source.value,
            snapshot.metadata.attempts,
            "; ".join(snapshot.metadata.fallback_reasons),
        )
        await self._notify_degraded(snapshot.metadata)
        return snapshot

    async def _notify_degraded(self, metadata: SnapshotMetadata) -> None:
        if self._alert_router is None:
            return
        notify = functools.partial(
            self._alert_router.notify_snapshot_degraded,
            metadata.to_dict(),
            source="snapshot_orchestrator",
        )
        try:
            pending = asyncio.get_running_loop().run_in_executor(self._alert_executor, notify)
            await asyncio.wait_for(pending, timeout=self._settings.alert_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                "Snapshot degradation alert still pending after %gs; not waiting for it",
                self._settings.alert_timeout_seconds,
            )
        except Exception:
            logger.exception("Failed to route snapshot degradation alert")


__all__ = [
    "LastKnownGoodCache",
    "LiveCollectionError",
    "SnapshotOrchestrator",
    "load_static_payload",
]
