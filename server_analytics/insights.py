"""Threshold rule engine that turns aggregated metrics into optimization insights.

Rules are declared as data: each :class:`InsightRule` pairs a ``select``
function, which picks the single worst subject (or ``None``), with a
``build`` function that renders the insight for that subject. Rules run in
the order of :data:`RULES` and each may fire independently of the others.
Insight ids are derived from the rule and a slug of its subject so that
identical inputs always yield identical lists.
"""
from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence

from .config import InsightThresholds
from .models import (
    AggregatedDevice,
    AggregatedPage,
    HttpSummary,
    InsightArea,
    InsightImpact,
    OptimizationInsight,
    SessionSegment,
)

MEMBER_PATH_PREFIXES = ("/mitglieder", "/members")


@dataclass
class InsightInputs:
    public_pages: List[AggregatedPage] = field(default_factory=list)
    member_pages: List[AggregatedPage] = field(default_factory=list)
    devices: List[AggregatedDevice] = field(default_factory=list)
    sessions: List[SessionSegment] = field(default_factory=list)
    http_summary: Optional[HttpSummary] = None


@dataclass(frozen=True)
class InsightRule:
    name: str
    select: Callable[[InsightInputs, InsightThresholds], Optional[Any]]
    build: Callable[[Any, InsightThresholds], OptimizationInsight]


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")[:48]
    return slug or "unknown"


def format_ms(value: float) -> str:
    if value <= 0:
        return "0 ms"
    if value >= 1000:
        return f"{value / 1000:.1f} s"
    return f"{round(value)} ms"


def format_share(value: float) -> str:
    return f"{value * 100:.1f} %"


def grade_impact(value: float, high: float, medium: float) -> InsightImpact:
    if value >= high:
        return InsightImpact.HIGH
    if value >= medium:
        return InsightImpact.MEDIUM
    return InsightImpact.LOW


def area_for_path(path: str) -> InsightArea:
    if path.lower().startswith(MEMBER_PATH_PREFIXES):
        return InsightArea.MEMBERS
    return InsightArea.FRONTEND


# ---------------------------------------------------------------------------
# Rule definitions
# ---------------------------------------------------------------------------


def _select_slow_public_page(inputs: InsightInputs, limits: InsightThresholds) -> Optional[AggregatedPage]:
    candidates = [
        page
        for page in inputs.public_pages
        if page.weight >= limits.min_page_weight and page.avg_load_ms >= limits.page_load_medium_ms
    ]
    candidates.sort(key=lambda page: (-page.avg_load_ms, -page.weight, page.path))
    return candidates[0] if candidates else None


def _build_page_speed(page: AggregatedPage, limits: InsightThresholds) -> OptimizationInsight:
    return OptimizationInsight(
        id=f"page-speed-{slugify(page.path)}",
        area=area_for_path(page.path),
        title=f"Reduce response time of {page.path}",
        description=(
            "This page loads too slowly on average. Compressed assets and less "
            "render-blocking JavaScript shorten the load time."
        ),
        impact=grade_impact(page.avg_load_ms, limits.page_load_high_ms, limits.page_load_medium_ms),
        metric=f"Average load time {format_ms(page.avg_load_ms)}",
    )


def _select_slow_lcp(inputs: InsightInputs, limits: InsightThresholds) -> Optional[AggregatedPage]:
    candidates = [
        page
        for page in [*inputs.public_pages, *inputs.member_pages]
        if page.lcp_ms is not None and page.lcp_ms >= limits.page_load_medium_ms
    ]
    candidates.sort(key=lambda page: (-(page.lcp_ms or 0), -page.weight, page.path))
    return candidates[0] if candidates else None


def _build_lcp(page: AggregatedPage, limits: InsightThresholds) -> OptimizationInsight:
    lcp = page.lcp_ms or 0
    return OptimizationInsight(
        id=f"lcp-{slugify(page.path)}",
        area=area_for_path(page.path),
        title=f"Improve LCP on {page.path}",
        description=(
            "Largest Contentful Paint is above target. Large hero elements should be "
            "deferred or served compressed."
        ),
        impact=grade_impact(lcp, limits.page_load_high_ms, limits.page_load_medium_ms),
        metric=f"LCP {format_ms(lcp)}",
    )


def _select_slow_member_page(inputs: InsightInputs, limits: InsightThresholds) -> Optional[AggregatedPage]:
    candidates = [page for page in inputs.member_pages if page.avg_load_ms >= limits.member_load_ms]
    candidates.sort(key=lambda page: (-page.avg_load_ms, -page.weight, page.path))
    return candidates[0] if candidates else None


def _build_member_speed(page: AggregatedPage, limits: InsightThresholds) -> OptimizationInsight:
    return OptimizationInsight(
        id=f"member-speed-{slugify(page.path)}",
        area=InsightArea.MEMBERS,
        title=f"Speed up {page.path}",
        description=(
            "This members-area page responds sluggishly. Caching server-side "
            "computations or streaming the response can help."
        ),
        impact=grade_impact(page.avg_load_ms, limits.page_load_high_ms, limits.member_load_ms),
        metric=f"Response time {format_ms(page.avg_load_ms)}",
    )


def _select_struggling_segment(inputs: InsightInputs, limits: InsightThresholds) -> Optional[SessionSegment]:
    candidates = [
        segment
        for segment in inputs.sessions
        if segment.share >= limits.segment_share_min
        and segment.retention_rate <= limits.retention_warning
    ]
    candidates.sort(key=lambda segment: (segment.retention_rate, -segment.share, segment.segment))
    return candidates[0] if candidates else None


def _build_segment(segment: SessionSegment, limits: InsightThresholds) -> OptimizationInsight:
    lowered = segment.segment.lower()
    member_segment = "member" in lowered or "mitglied" in lowered
    return OptimizationInsight(
        id=f"segment-{slugify(segment.segment)}",
        area=InsightArea.MEMBERS if member_segment else InsightArea.FRONTEND,
        title=f"{segment.segment}: raise the return rate",
        description=(
            "This segment drops off early. Tailored onboarding content or personalised "
            "recommendations can improve retention."
        ),
        impact=(
            InsightImpact.HIGH
            if segment.retention_rate <= limits.retention_critical
            else InsightImpact.MEDIUM
        ),
        metric=(
            f"Retention {format_share(segment.retention_rate)} "
            f"at {format_share(segment.share)} share"
        ),
    )


def _select_slow_device(inputs: InsightInputs, limits: InsightThresholds) -> Optional[AggregatedDevice]:
    candidates = [
        device
        for device in inputs.devices
        if device.share >= limits.device_share_min and device.avg_load_ms >= limits.device_load_ms
    ]
    candidates.sort(key=lambda device: (-device.share, -device.avg_load_ms, device.device))
    return candidates[0] if candidates else None


def _build_device(device: AggregatedDevice, limits: InsightThresholds) -> OptimizationInsight:
    return OptimizationInsight(
        id=f"device-{slugify(device.device)}",
        area=InsightArea.FRONTEND,
        title=f"Improve performance on {device.device} devices",
        description=(
            "Visitors on this device class wait longer for the first paint. Adaptive "
            "image sizes and resource splitting help."
        ),
        impact=grade_impact(
            device.avg_load_ms, limits.page_load_high_ms, limits.device_load_ms + 200
        ),
        metric=f"Load time {format_ms(device.avg_load_ms)} at {format_share(device.share)} share",
    )


def _select_api_errors(inputs: InsightInputs, limits: InsightThresholds) -> Optional[HttpSummary]:
    summary = inputs.http_summary
    if summary is None or summary.api_error_rate < limits.api_error_rate_warning:
        return None
    return summary


def _build_api_errors(summary: HttpSummary, limits: InsightThresholds) -> OptimizationInsight:
    return OptimizationInsight(
        id="api-error-rate",
        area=InsightArea.INFRASTRUCTURE,
        title="Lower the API error rate",
        description=(
            "Several API calls are failing. Check the logs for timeouts and adjust "
            "timeout and retry strategies."
        ),
        impact=(
            InsightImpact.HIGH
            if summary.api_error_rate >= limits.api_error_rate_warning * 2
            else InsightImpact.MEDIUM
        ),
        metric=f"API error rate {format_share(summary.api_error_rate)}",
    )


def _select_cache_misses(inputs: InsightInputs, limits: InsightThresholds) -> Optional[HttpSummary]:
    summary = inputs.http_summary
    if summary is None or summary.cache_hit_rate is None:
        return None
    if summary.cache_hit_rate > limits.cache_hit_rate_warning:
        return None
    return summary


def _build_cache_misses(summary: HttpSummary, limits: InsightThresholds) -> OptimizationInsight:
    rate = summary.cache_hit_rate or 0.0
    return OptimizationInsight(
        id="cache-hit-rate",
        area=InsightArea.INFRASTRUCTURE,
        title="Extend edge caching",
        description=(
            "The cache is hit too rarely. Additional cache tags or longer TTLs reduce "
            "backend load and response times."
        ),
        impact=(
            InsightImpact.HIGH
            if rate <= limits.cache_hit_rate_warning / 2
            else InsightImpact.MEDIUM
        ),
        metric=f"Cache hit rate {format_share(rate)}",
    )


def _select_member_latency(inputs: InsightInputs, limits: InsightThresholds) -> Optional[HttpSummary]:
    summary = inputs.http_summary
    if summary is None or summary.members_avg_response_ms < limits.member_load_ms:
        return None
    return summary


def _build_member_latency(summary: HttpSummary, limits: InsightThresholds) -> OptimizationInsight:
    return OptimizationInsight(
        id="member-api-latency",
        area=InsightArea.MEMBERS,
        title="Speed up member endpoints",
        description=(
            "Server response times for signed-in users exceed the target. Review "
            "database queries and enable caching."
        ),
        impact=grade_impact(
            summary.members_avg_response_ms, limits.page_load_high_ms, limits.member_load_ms
        ),
        metric=f"Member endpoint response time {format_ms(summary.members_avg_response_ms)}",
    )


def _select_heavy_payload(inputs: InsightInputs, limits: InsightThresholds) -> Optional[HttpSummary]:
    summary = inputs.http_summary
    if summary is None or summary.frontend_avg_payload_bytes < limits.payload_warning_bytes:
        return None
    return summary


def _build_heavy_payload(summary: HttpSummary, limits: InsightThresholds) -> OptimizationInsight:
    size_kb = summary.frontend_avg_payload_bytes / 1024
    return OptimizationInsight(
        id="frontend-payload",
        area=InsightArea.FRONTEND,
        title="Shrink the frontend payload",
        description=(
            "The average response size is high. Lazy-load non-critical scripts and "
            "compress assets more aggressively."
        ),
        impact=(
            InsightImpact.HIGH
            if summary.frontend_avg_payload_bytes >= limits.payload_warning_bytes * 1.5
            else InsightImpact.MEDIUM
        ),
        metric=f"Average payload {size_kb:.0f} KB",
    )


RULES: Sequence[InsightRule] = (
    InsightRule("page-speed", _select_slow_public_page, _build_page_speed),
    InsightRule("lcp", _select_slow_lcp, _build_lcp),
    InsightRule("member-speed", _select_slow_member_page, _build_member_speed),
    InsightRule("segment", _select_struggling_segment, _build_segment),
    InsightRule("device", _select_slow_device, _build_device),
    InsightRule("api-error-rate", _select_api_errors, _build_api_errors),
    InsightRule("cache-hit-rate", _select_cache_misses, _build_cache_misses),
    InsightRule("member-api-latency", _select_member_latency, _build_member_latency),
    InsightRule("frontend-payload", _select_heavy_payload, _build_heavy_payload),
)


def derive_insights(
    inputs: InsightInputs,
    *,
    thresholds: Optional[InsightThresholds] = None,
    fallback: Optional[Sequence[OptimizationInsight]] = None,
    use_fallback_only: bool = False,
    rules: Sequence[InsightRule] = RULES,
) -> List[OptimizationInsight]:
    """Evaluate ``rules`` in order and return the insights that fired.

    When ``use_fallback_only`` is set or no rule fires, a deep copy of
    ``fallback`` is returned instead.
    """

    limits = thresholds or InsightThresholds()
    if use_fallback_only:
        return copy.deepcopy(list(fallback or []))

    insights: List[OptimizationInsight] = []
    seen: set[str] = set()
    for rule in rules:
        subject = rule.select(inputs, limits)
        if subject is None:
            continue
        insight = rule.build(subject, limits)
        if insight.id in seen:
            continue
        seen.add(insight.id)
        insights.append(insight)

    if not insights:
        return copy.deepcopy(list(fallback or []))
    return insights[: max(limits.max_insights, 1)]


__all__ = [
    "InsightInputs",
    "InsightRule",
    "RULES",
    "derive_insights",
    "grade_impact",
    "slugify",
]
