"""Tests for page and device metric aggregation."""
import math

import pytest

from server_analytics.aggregation import (
    MAX_DURATION_MS,
    aggregate,
    canonical_device,
    normalize_path,
    normalize_scope,
    split_by_scope,
)
from server_analytics.models import MetricSample, Scope


def test_aggregate_empty_input():
    """Aggregating nothing yields no pages and no devices."""
    result = aggregate([])
    assert result.pages == []
    assert result.devices == []


def test_query_string_variants_merge_into_one_page():
    """Query strings are stripped and weights merged."""
    result = aggregate(
        [
            MetricSample(path="/chronik?utm=1", scope="Public", load_time_ms=1500, lcp_ms=None, weight=1),
            MetricSample(path="/chronik", scope="public", load_time_ms=1200, lcp_ms=900, weight=2),
        ]
    )

    assert len(result.pages) == 1
    page = result.pages[0]
    assert page.path == "/chronik"
    assert page.scope == Scope.PUBLIC
    assert page.avg_load_ms == 1300
    assert page.lcp_ms == 900
    assert page.weight == 3


def test_invalid_samples_contribute_nowhere():
    """Missing loads and non-positive weights are dropped from pages and devices."""
    result = aggregate(
        [
            MetricSample(path="/a", load_time_ms=None, weight=5, device_hint="iPhone"),
            MetricSample(path="/b", load_time_ms=800, weight=0, device_hint="iPhone"),
            MetricSample(path="/c", load_time_ms=800, weight=-2, device_hint="Desktop"),
            MetricSample(path=None, load_time_ms=800, weight=1, device_hint="Desktop"),
            MetricSample(path="/d", load_time_ms=600, weight=1, device_hint="Android"),
        ]
    )

    assert [page.path for page in result.pages] == ["/d"]
    assert [device.device for device in result.devices] == ["mobile"]
    assert result.devices[0].sessions == 1


def test_pages_sorted_by_weight_then_path():
    """Heaviest pages come first; ties are ordered by path."""
    result = aggregate(
        [
            MetricSample(path="/b", load_time_ms=100, weight=1),
            MetricSample(path="/a", load_time_ms=100, weight=1),
            MetricSample(path="/c", load_time_ms=100, weight=4),
        ]
    )
    assert [page.path for page in result.pages] == ["/c", "/a", "/b"]


def test_group_scope_is_first_recognized_scope():
    """A page takes the first recognised scope among its samples."""
    result = aggregate(
        [
            MetricSample(path="/mitglieder", scope="???", load_time_ms=1000),
            MetricSample(path="/mitglieder", scope="Members", load_time_ms=1000),
            MetricSample(path="/mitglieder", scope="public", load_time_ms=1000),
        ]
    )
    assert result.pages[0].scope == Scope.MEMBERS


def test_lcp_is_weighted_over_samples_that_have_it():
    """LCP is averaged only over samples carrying a value."""
    result = aggregate(
        [
            MetricSample(path="/", load_time_ms=1000, lcp_ms=2000, weight=1),
            MetricSample(path="/", load_time_ms=1000, lcp_ms=1000, weight=3),
            MetricSample(path="/", load_time_ms=1000, lcp_ms=None, weight=10),
        ]
    )
    assert result.pages[0].lcp_ms == 1250


def test_page_without_any_lcp_reports_none():
    result = aggregate([MetricSample(path="/x", load_time_ms=500)])
    assert result.pages[0].lcp_ms is None


def test_device_shares_sum_to_one():
    """Device shares add up to one whenever sessions exist."""
    samples = [
        MetricSample(path="/", load_time_ms=900, weight=2.5, device_hint="iPhone 14"),
        MetricSample(path="/", load_time_ms=700, weight=1, device_hint="Windows Desktop"),
        MetricSample(path="/", load_time_ms=1100, weight=0.5, device_hint="iPad"),
        MetricSample(path="/", load_time_ms=1300, weight=3, device_hint="Samsung Smart TV"),
        MetricSample(path="/", load_time_ms=1300, weight=3, device_hint=None),
    ]
    result = aggregate(samples)

    assert math.isclose(sum(device.share for device in result.devices), 1.0, rel_tol=1e-9)
    assert {device.device for device in result.devices} == {"mobile", "desktop", "tablet", "tv"}
    assert result.devices[0].device == "tv"


def test_device_average_is_weighted():
    result = aggregate(
        [
            MetricSample(path="/", load_time_ms=1000, weight=1, device_hint="android"),
            MetricSample(path="/x", load_time_ms=2000, weight=3, device_hint="mobile"),
        ]
    )
    assert result.devices[0].avg_load_ms == 1750
    assert result.devices[0].sessions == 4


def test_durations_are_capped():
    result = aggregate([MetricSample(path="/slow", load_time_ms=5_000_000)])
    assert result.pages[0].avg_load_ms == MAX_DURATION_MS


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("/chronik/", "/chronik"),
        ("/", "/"),
        ("chronik", "/chronik"),
        ("//a//b/?q=1#top", "/a/b"),
        ("https://example.org/termine?x=1", "/termine"),
        ("   ", None),
        (None, None),
    ],
)
def test_normalize_path(raw, expected):
    assert normalize_path(raw) == expected


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("PUBLIC", Scope.PUBLIC),
        ("members", Scope.MEMBERS),
        ("Mitgliederbereich", Scope.MEMBERS),
        ("extern", Scope.PUBLIC),
        ("backoffice", None),
        ("", None),
    ],
)
def test_normalize_scope(raw, expected):
    assert normalize_scope(raw) == expected


@pytest.mark.parametrize(
    "hint, expected",
    [
        ("iPhone Safari", "mobile"),
        ("Android", "mobile"),
        ("iPad", "tablet"),
        ("Laptop", "desktop"),
        ("PlayStation 5", "console"),
        ("Apple Watch", "wearable"),
        ("Kiosk Terminal", "kiosk_terminal"),
        ("  ", None),
    ],
)
def test_canonical_device(hint, expected):
    assert canonical_device(hint) == expected


def test_split_by_scope_treats_unscoped_pages_as_public():
    result = aggregate(
        [
            MetricSample(path="/", scope=None, load_time_ms=100),
            MetricSample(path="/mitglieder", scope="members", load_time_ms=100),
        ]
    )
    public, members = split_by_scope(result.pages)
    assert [page.path for page in public] == ["/"]
    assert [page.path for page in members] == ["/mitglieder"]
