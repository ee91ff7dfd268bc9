"""Tests for the sample-data and export command line tools."""
import dataclasses
import json

import pytest

from server_analytics.alerting import AlertRouter
from server_analytics.config import Settings
from server_analytics.service import build_service
from server_analytics.tools.export_snapshot import export_snapshot
from server_analytics.tools.generate_sample_analytics import LOG_EVENTS, generate


@pytest.fixture
def seeded(tmp_path):
    analytics_db = tmp_path / "analytics.db"
    log_db = tmp_path / "logs.db"
    summary = generate(analytics_db, log_db=log_db, hours=3, requests_per_hour=20, seed=7)
    settings = dataclasses.replace(
        Settings.from_dict({}),
        analytics_db_path=analytics_db,
        log_db_path=log_db,
        disk_usage_path=tmp_path,
    )
    service = build_service(settings, alert_router=AlertRouter())
    yield summary, service
    service.close()


def test_generate_reports_counts(seeded):
    summary, service = seeded
    assert summary == {"hours": 3, "requests": 60, "log_issues": len(LOG_EVENTS)}
    assert service.log_store.count() == len(LOG_EVENTS)


def test_export_snapshot_to_file(seeded, tmp_path):
    """Seeded databases export a live snapshot as JSON."""
    _, service = seeded
    output = tmp_path / "out" / "snapshot.json"

    payload = export_snapshot(service, output=output)

    assert json.loads(output.read_text(encoding="utf-8")) == payload
    assert payload["metadata"]["source"] == "live"
    assert payload["summary"]["requests_last_24h"] == 60
    assert payload["pages"]
    assert {device["device"] for device in payload["devices"]} == {"mobile", "desktop", "tablet"}
    assert all(issue["severity"] != "info" for issue in payload["logs"])


def test_export_overview_to_stdout(seeded, capsys):
    _, service = seeded
    payload = export_snapshot(service, overview=True)

    printed = json.loads(capsys.readouterr().out)
    assert printed == payload
    assert [usage["id"] for usage in payload["resource_usage"]][0] == "app-cpu"
