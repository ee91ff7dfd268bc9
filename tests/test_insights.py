"""Tests for the optimization insight rule engine."""
from datetime import datetime, timezone

from server_analytics.config import InsightThresholds
from server_analytics.insights import (
    RULES,
    InsightInputs,
    derive_insights,
    grade_impact,
    slugify,
)
from server_analytics.models import (
    AggregatedDevice,
    AggregatedPage,
    HttpSummary,
    InsightArea,
    InsightImpact,
    OptimizationInsight,
    Scope,
    SessionSegment,
)


def _summary(**overrides):
    now = datetime(2025, 3, 1, tzinfo=timezone.utc)
    values = {
        "window_start": now,
        "window_end": now,
        "total_requests": 1000,
        "successful_requests": 990,
        "cache_hit_rate": 0.9,
        "members_avg_response_ms": 300.0,
        "frontend_avg_payload_bytes": 120_000.0,
        "api_error_rate": 0.01,
    }
    values.update(overrides)
    return HttpSummary(**values)


def _busy_inputs():
    return InsightInputs(
        public_pages=[
            AggregatedPage("/", Scope.PUBLIC, 1200, 1500, 50),
            AggregatedPage("/chronik", Scope.PUBLIC, 3500, 3900, 12),
            AggregatedPage("/termine", Scope.PUBLIC, 2100, 1700, 30),
        ],
        member_pages=[
            AggregatedPage("/mitglieder/galerie", Scope.MEMBERS, 1900, 2400, 8),
        ],
        devices=[
            AggregatedDevice("mobile", 60, 1800, 0.6),
            AggregatedDevice("desktop", 40, 900, 0.4),
        ],
        sessions=[
            SessionSegment("new-visitors", 120, 2.0, 0.35, 0.5),
            SessionSegment("returning-members", 500, 6.0, 0.8, 0.3),
        ],
        http_summary=_summary(
            api_error_rate=0.12,
            cache_hit_rate=0.5,
            members_avg_response_ms=1750.0,
            frontend_avg_payload_bytes=700_000.0,
        ),
    )


def test_slugify():
    assert slugify("/Mitglieder/Galerie") == "mitglieder-galerie"
    assert slugify("///") == "unknown"
    assert len(slugify("/" + "a" * 100)) == 48


def test_grade_impact():
    assert grade_impact(3500, 3200, 1800) == InsightImpact.HIGH
    assert grade_impact(2000, 3200, 1800) == InsightImpact.MEDIUM
    assert grade_impact(100, 3200, 1800) == InsightImpact.LOW


def test_all_rules_fire_in_fixed_order():
    """Every rule produces one insight for its worst subject, in rule order."""
    insights = derive_insights(_busy_inputs(), thresholds=InsightThresholds(max_insights=20))

    assert [insight.id for insight in insights] == [
        "page-speed-chronik",
        "lcp-chronik",
        "member-speed-mitglieder-galerie",
        "segment-new-visitors",
        "device-mobile",
        "api-error-rate",
        "cache-hit-rate",
        "member-api-latency",
        "frontend-payload",
    ]
    assert len(RULES) == 9


def test_impacts_and_areas():
    insights = {i.id: i for i in derive_insights(_busy_inputs(), thresholds=InsightThresholds(max_insights=20))}

    assert insights["page-speed-chronik"].impact == InsightImpact.HIGH
    assert insights["page-speed-chronik"].area == InsightArea.FRONTEND
    assert insights["member-speed-mitglieder-galerie"].area == InsightArea.MEMBERS
    assert insights["segment-new-visitors"].impact == InsightImpact.HIGH
    assert insights["api-error-rate"].impact == InsightImpact.HIGH
    assert insights["api-error-rate"].area == InsightArea.INFRASTRUCTURE
    assert insights["cache-hit-rate"].impact == InsightImpact.MEDIUM
    assert insights["frontend-payload"].impact == InsightImpact.HIGH


def test_results_are_capped():
    insights = derive_insights(_busy_inputs())
    assert len(insights) == InsightThresholds().max_insights


def test_deriving_twice_is_deterministic():
    """Identical inputs produce identical ids and ordering."""
    first = derive_insights(_busy_inputs())
    second = derive_insights(_busy_inputs())
    assert [i.id for i in first] == [i.id for i in second]
    assert first == second


def test_light_pages_are_ignored_for_page_speed():
    inputs = InsightInputs(
        public_pages=[AggregatedPage("/rare", Scope.PUBLIC, 5000, None, 0.5)],
        http_summary=_summary(),
    )
    assert derive_insights(inputs) == []


def test_segment_retention_between_thresholds_is_medium():
    inputs = InsightInputs(
        sessions=[SessionSegment("returning-visitors", 200, 3.0, 0.5, 0.2)],
    )
    insights = derive_insights(inputs)
    assert insights[0].id == "segment-returning-visitors"
    assert insights[0].impact == InsightImpact.MEDIUM


def test_small_segments_do_not_fire():
    inputs = InsightInputs(sessions=[SessionSegment("tiny", 10, 1.0, 0.1, 0.05)])
    assert derive_insights(inputs) == []


def test_fallback_returned_as_copy_when_nothing_fires():
    """Quiet inputs return the fallback list without aliasing it."""
    fallback = [
        OptimizationInsight(
            "static-hint", InsightArea.FRONTEND, "Title", "Body", InsightImpact.LOW, "metric"
        )
    ]
    result = derive_insights(InsightInputs(http_summary=_summary()), fallback=fallback)

    assert result == fallback
    assert result is not fallback
    assert result[0] is not fallback[0]
    result[0].title = "changed"
    assert fallback[0].title == "Title"


def test_use_fallback_only_skips_rules():
    fallback = [
        OptimizationInsight("a", InsightArea.MEMBERS, "t", "d", InsightImpact.MEDIUM, "m")
    ]
    result = derive_insights(_busy_inputs(), fallback=fallback, use_fallback_only=True)
    assert [insight.id for insight in result] == ["a"]


def test_no_fallback_yields_empty_list():
    assert derive_insights(InsightInputs()) == []


def test_custom_thresholds_change_firing():
    inputs = InsightInputs(
        public_pages=[AggregatedPage("/", Scope.PUBLIC, 1000, None, 10)],
    )
    assert derive_insights(inputs) == []
    strict = InsightThresholds(page_load_medium_ms=900, page_load_high_ms=1500)
    insights = derive_insights(inputs, thresholds=strict)
    assert [insight.id for insight in insights] == ["page-speed-unknown"]
    assert insights[0].impact == InsightImpact.MEDIUM
