"""Tests for the log issue deduplication store."""
import logging
import sqlite3
import threading
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from server_analytics.logs import (
    LOCK_STRIPES,
    MAX_TAGS,
    LogIssueHandler,
    LogIssueNotFoundError,
    LogIssueStore,
    LogStoreError,
    fingerprint_for,
    parse_log_event,
)
from server_analytics.models import LogEvent, LogSeverity, LogStatus


NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def _event(message="Upstream timeout", minutes_ago=0, **kwargs):
    values = {
        "severity": LogSeverity.ERROR,
        "service": "api",
        "message": message,
        "timestamp": NOW - timedelta(minutes=minutes_ago),
    }
    values.update(kwargs)
    return LogEvent(**values)


@pytest.fixture
def store(tmp_path):
    return LogIssueStore(tmp_path / "logs.db", clock=lambda: NOW)


def test_first_occurrence_creates_issue(store):
    issue = store.record(_event(tags=["timeout"], affected_users=3))

    assert issue.occurrences == 1
    assert issue.status == LogStatus.OPEN
    assert issue.description == "Upstream timeout"
    assert issue.first_seen == issue.last_seen == NOW
    assert issue.fingerprint == fingerprint_for(LogSeverity.ERROR, "api", "Upstream timeout")
    assert store.get(issue.id) == issue


def test_repeat_occurrence_merges_fields(store):
    """A repeat sums occurrences, unions tags and only overwrites supplied fields."""
    first = store.record(
        _event(
            minutes_ago=10,
            tags=["timeout"],
            occurrences=2,
            affected_users=5,
            recommended_action="Raise timeout",
            metadata={"region": "eu", "node": "a"},
        )
    )
    second = store.record(
        _event(
            tags=["api", "timeout"],
            description="Second sighting",
            status=LogStatus.MONITORING,
            metadata={"node": "b"},
        )
    )

    assert store.count() == 1
    assert second.id == first.id
    assert second.occurrences == 3
    assert second.tags == ["timeout", "api"]
    assert second.affected_users == 5
    assert second.recommended_action == "Raise timeout"
    assert second.description == "Second sighting"
    assert second.status == LogStatus.MONITORING
    assert second.metadata == {"region": "eu", "node": "b"}
    assert second.first_seen == NOW - timedelta(minutes=10)
    assert second.last_seen == NOW


def test_last_seen_never_moves_back(store):
    store.record(_event(minutes_ago=1))
    issue = store.record(_event(minutes_ago=30))
    assert issue.last_seen == NOW - timedelta(minutes=1)
    assert issue.occurrences == 2


def test_explicit_fingerprint_groups_different_messages(store):
    store.record(_event("Timeout on /a", fingerprint="upstream-timeout"))
    issue = store.record(_event("Timeout on /b", fingerprint="upstream-timeout"))
    assert store.count() == 1
    assert issue.message == "Timeout on /b"


def test_tags_are_capped(store):
    issue = store.record(_event(tags=[f"tag-{i}" for i in range(40)]))
    assert len(issue.tags) == MAX_TAGS


def test_concurrent_records_do_not_lose_increments(store):
    """Parallel reports of the same fault serialize on the fingerprint."""
    errors = []

    def worker():
        try:
            for _ in range(10):
                store.record(_event())
        except Exception as exc:  # pragma: no cover - surfaced by the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    issues = store.list_recent(10)
    assert len(issues) == 1
    assert issues[0].occurrences == 40


def test_list_recent_orders_and_filters_by_window(store):
    store.record(_event("old", minutes_ago=60 * 72))
    store.record(_event("busy", minutes_ago=5, occurrences=9))
    store.record(_event("quiet", minutes_ago=5))
    store.record(_event("latest", minutes_ago=1))

    issues = store.list_recent(10, timedelta(hours=48))
    assert [issue.message for issue in issues] == ["latest", "busy", "quiet"]

    assert [issue.message for issue in store.list_recent(1)] == ["latest"]


def test_list_critical_skips_info(store):
    store.record(_event("noise", severity=LogSeverity.INFO))
    store.record(_event("warn", severity=LogSeverity.WARNING))
    assert [issue.message for issue in store.list_critical()] == ["warn"]


def test_set_status(store):
    issue = store.record(_event())
    updated = store.set_status(issue.id, "resolved")
    assert updated.status == LogStatus.RESOLVED
    assert store.get(issue.id).status == LogStatus.RESOLVED


def test_set_status_unknown_issue(store):
    with pytest.raises(LogIssueNotFoundError):
        store.set_status("missing", LogStatus.OPEN)


def test_set_status_rejects_invalid_value(store):
    issue = store.record(_event())
    with pytest.raises(ValueError):
        store.set_status(issue.id, "archived")


def test_record_accepts_raw_mappings(store):
    """Raw payloads are validated and normalised before recording."""
    issue = store.record(
        {"severity": "WARN", "service": "  ", "message": "Disk almost full", "tags": ["disk", 3, " "]}
    )
    assert issue.severity == LogSeverity.WARNING
    assert issue.service == "application"
    assert issue.tags == ["disk"]
    assert issue.last_seen == NOW


def test_parse_log_event_rejects_unknown_severity():
    with pytest.raises(ValidationError):
        parse_log_event({"severity": "catastrophic", "message": "x"})


def test_parse_log_event_clamps_occurrences():
    event = parse_log_event({"message": "x", "occurrences": -4}, now=NOW)
    assert event.occurrences == 1
    assert event.severity == LogSeverity.ERROR
    assert event.timestamp == NOW


def test_persistent_database_errors_surface(tmp_path, monkeypatch):
    store = LogIssueStore(tmp_path / "logs.db", retry_attempts=2, retry_delay=0)

    def broken_connect():
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(store, "_connect", broken_connect)
    with pytest.raises(LogStoreError):
        store.record(_event())


def test_logging_handler_records_warnings(store):
    logger = logging.getLogger("tests.handler")
    logger.setLevel(logging.INFO)
    handler = LogIssueHandler(store)
    logger.addHandler(handler)
    try:
        logger.info("ignored")
        logger.warning("Cache refresh slow", extra={"service": "cache", "tags": ["perf"]})
        logger.warning("Cache refresh slow", extra={"service": "cache"})
    finally:
        logger.removeHandler(handler)

    issues = store.list_recent(10, None)
    assert len(issues) == 1
    assert issues[0].service == "cache"
    assert issues[0].severity == LogSeverity.WARNING
    assert issues[0].occurrences == 2
    assert issues[0].tags == ["perf"]


def test_list_recent_with_non_positive_limit_or_window(store):
    """A zero limit or an empty window selects nothing; only ``None`` disables the window."""
    store.record(_event("old", minutes_ago=60 * 24 * 30))
    store.record(_event("fresh"))

    assert store.list_recent(0) == []
    assert store.list_recent(-3, None) == []
    assert store.list_recent(10, timedelta(0)) == []
    assert store.list_recent(10, timedelta(hours=-1)) == []
    assert [issue.message for issue in store.list_recent(10, None)] == ["fresh", "old"]


def test_fingerprint_locks_come_from_a_fixed_pool(store):
    messages = [f"distinct failure {index}" for index in range(LOCK_STRIPES * 3)]
    for message in messages:
        store.record(_event(message))

    fingerprints = [fingerprint_for(LogSeverity.ERROR, "api", message) for message in messages]
    locks = {id(store._lock_for(fingerprint)) for fingerprint in fingerprints}
    assert len(locks) <= LOCK_STRIPES
    assert store._lock_for("same") is store._lock_for("same")
    assert store.count() == LOCK_STRIPES * 3
