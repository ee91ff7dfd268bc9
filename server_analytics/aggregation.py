"""Weighted aggregation of raw page-load samples into page and device stats."""
from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlsplit

from .models import AggregatedDevice, AggregatedPage, MetricSample, Scope

MAX_DURATION_MS = 900_000

_MEMBER_SCOPE_MARKERS = ("member", "intern", "mitglieder", "protected")
_PUBLIC_SCOPE_MARKERS = ("public", "extern")

# Checked in order; the first matching category wins.
DEVICE_PATTERNS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("desktop", ("desktop", "laptop", "pc")),
    ("tablet", ("tablet", "ipad")),
    ("mobile", ("mobile", "phone", "smartphone", "handy", "android", "iphone")),
    ("tv", ("smarttv", "hbbtv", "tv")),
    ("console", ("playstation", "xbox", "nintendo", "console")),
    ("wearable", ("watch", "wearable")),
    ("other", ("other", "unknown")),
)


@dataclass
class PageMetricsResult:
    pages: List[AggregatedPage] = field(default_factory=list)
    devices: List[AggregatedDevice] = field(default_factory=list)


@dataclass
class _WeightedBucket:
    key: str
    scope: Optional[Scope] = None
    total_weight: float = 0.0
    load_sum: float = 0.0
    lcp_sum: float = 0.0
    lcp_weight: float = 0.0


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def normalize_path(raw: Optional[str]) -> Optional[str]:
    """Strip query and fragment, collapse slashes and drop a trailing slash."""

    if raw is None:
        return None
    path = str(raw).strip()
    if not path:
        return None
    if "://" in path:
        path = urlsplit(path).path or "/"
    path = path.split("?", 1)[0].split("#", 1)[0]
    if not path.startswith("/"):
        path = f"/{path}"
    path = re.sub(r"/+", "/", path)
    if len(path) > 1 and path.endswith("/"):
        path = path[:-1]
    return path


def normalize_scope(raw: Optional[str]) -> Optional[Scope]:
    if raw is None:
        return None
    value = str(raw).strip().lower()
    if not value:
        return None
    if value in (Scope.PUBLIC.value, Scope.MEMBERS.value):
        return Scope(value)
    if any(marker in value for marker in _MEMBER_SCOPE_MARKERS):
        return Scope.MEMBERS
    if any(marker in value for marker in _PUBLIC_SCOPE_MARKERS):
        return Scope.PUBLIC
    return None


def canonical_device(hint: Optional[str]) -> Optional[str]:
    """Map a free-text device hint onto a device category.

    Returns ``None`` when the hint is missing or blank so callers can skip
    the sample for device grouping.
    """

    if hint is None:
        return None
    value = str(hint).strip().lower()
    if not value:
        return None
    for category, markers in DEVICE_PATTERNS:
        if any(marker in value for marker in markers):
            return category
    return re.sub(r"\s+", "_", value)


def _usable_number(value: Optional[float]) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


def _normalize_duration(value: Optional[float]) -> Optional[float]:
    number = _usable_number(value)
    if number is None or number <= 0:
        return None
    return min(number, MAX_DURATION_MS)


def _normalize_weight(value: Optional[float]) -> float:
    if value is None:
        return 1.0
    number = _usable_number(value)
    if number is None or number <= 0:
        return 0.0
    return number


def aggregate(samples: Iterable[MetricSample]) -> PageMetricsResult:
    """Weight-merge samples into per-path and per-device statistics."""

    page_buckets: Dict[str, _WeightedBucket] = {}
    device_buckets: Dict[str, _WeightedBucket] = {}

    for sample in samples:
        path = normalize_path(sample.path)
        load_ms = _normalize_duration(sample.load_time_ms)
        weight = _normalize_weight(sample.weight)
        if path is None or load_ms is None or weight <= 0:
            continue
        lcp_ms = _normalize_duration(sample.lcp_ms)

        bucket = page_buckets.get(path)
        if bucket is None:
            bucket = page_buckets[path] = _WeightedBucket(key=path)
        if bucket.scope is None:
            bucket.scope = normalize_scope(sample.scope)
        bucket.total_weight += weight
        bucket.load_sum += load_ms * weight
        if lcp_ms is not None:
            bucket.lcp_sum += lcp_ms * weight
            bucket.lcp_weight += weight

        device = canonical_device(sample.device_hint)
        if device is None:
            continue
        device_bucket = device_buckets.get(device)
        if device_bucket is None:
            device_bucket = device_buckets[device] = _WeightedBucket(key=device)
        device_bucket.total_weight += weight
        device_bucket.load_sum += load_ms * weight

    pages = [
        AggregatedPage(
            path=bucket.key,
            scope=bucket.scope,
            avg_load_ms=round_half_up(bucket.load_sum / bucket.total_weight),
            lcp_ms=(
                round_half_up(bucket.lcp_sum / bucket.lcp_weight)
                if bucket.lcp_weight > 0
                else None
            ),
            weight=bucket.total_weight,
        )
        for bucket in page_buckets.values()
        if bucket.total_weight > 0
    ]
    pages.sort(key=lambda page: (-page.weight, page.path))

    total_sessions = sum(bucket.total_weight for bucket in device_buckets.values())
    devices = [
        AggregatedDevice(
            device=bucket.key,
            sessions=bucket.total_weight,
            avg_load_ms=round_half_up(bucket.load_sum / bucket.total_weight),
            share=bucket.total_weight / total_sessions,
        )
        for bucket in device_buckets.values()
        if bucket.total_weight > 0
    ]
    devices.sort(key=lambda device: (-device.sessions, device.device))

    return PageMetricsResult(pages=pages, devices=devices)


def split_by_scope(pages: Iterable[AggregatedPage]) -> Tuple[List[AggregatedPage], List[AggregatedPage]]:
    """Return ``(public_pages, member_pages)``; unscoped pages count as public."""

    public: List[AggregatedPage] = []
    members: List[AggregatedPage] = []
    for page in pages:
        if page.scope == Scope.MEMBERS:
            members.append(page)
        else:
            public.append(page)
    return public, members


__all__ = [
    "PageMetricsResult",
    "aggregate",
    "canonical_device",
    "normalize_path",
    "normalize_scope",
    "round_half_up",
    "split_by_scope",
]
