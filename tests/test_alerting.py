"""Tests for degraded-snapshot alert routing."""
import json
import os
from unittest.mock import MagicMock, patch

from server_analytics.alerting import (
    DEGRADED_EVENT,
    AlertPayload,
    AlertRouter,
    degraded_message,
    get_alert_router,
    set_alert_router,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def _response(status=204):
    response = MagicMock()
    response.__enter__.return_value.status = status
    return response


def test_payload_body_has_chat_fields():
    body = AlertPayload(DEGRADED_EVENT, "Serving cached data", "warning", timestamp=1.0).to_body()
    assert body["text"] == "[WARNING] Serving cached data"
    assert body["content"] == body["text"]
    assert body["metadata"] == {}
    assert body["timestamp"] == 1.0


def test_degraded_message_names_first_reason():
    message = degraded_message({"source": "cached", "fallback_reasons": ["fetch_http_summary timed out after 5s"]})
    assert message == "Analytics snapshot served from cached data: fetch_http_summary timed out after 5s"
    assert degraded_message({}) == "Analytics snapshot served from unknown data"


def test_notify_without_webhooks_logs_only(caplog):
    router = AlertRouter()
    with patch("server_analytics.alerting.urllib.request.urlopen") as urlopen:
        assert router.notify(event=DEGRADED_EVENT, message="fallback") is False
    urlopen.assert_not_called()
    assert "not delivered" in caplog.text


def test_muted_events_are_skipped():
    router = AlertRouter(["https://hooks.example.test/a"], muted_events=[DEGRADED_EVENT])
    with patch("server_analytics.alerting.urllib.request.urlopen") as urlopen:
        assert router.notify(event=DEGRADED_EVENT, message="fallback") is False
    urlopen.assert_not_called()


def test_notify_posts_to_every_webhook():
    router = AlertRouter(
        ["https://hooks.example.test/a", "", "https://hooks.example.test/b"],
        timeout=2.0,
    )
    with patch("server_analytics.alerting.urllib.request.urlopen", return_value=_response()) as urlopen:
        sent = router.notify(
            event=DEGRADED_EVENT,
            message="Serving static fallback",
            metadata={"attempts": 3},
        )

    assert sent is True
    assert router.webhook_urls == ["https://hooks.example.test/a", "https://hooks.example.test/b"]
    assert urlopen.call_count == 2
    request = urlopen.call_args_list[0].args[0]
    assert request.full_url == "https://hooks.example.test/a"
    assert request.get_method() == "POST"
    assert urlopen.call_args_list[0].kwargs["timeout"] == 2.0
    body = json.loads(request.data.decode("utf-8"))
    assert body["event"] == DEGRADED_EVENT
    assert body["metadata"] == {"attempts": 3}


def test_repeats_are_suppressed_during_cooldown():
    """An outage produces one alert per cooldown window, not one per request."""
    clock = FakeClock()
    router = AlertRouter(["https://hooks.example.test/a"], cooldown_seconds=60, clock=clock)
    with patch("server_analytics.alerting.urllib.request.urlopen", return_value=_response()) as urlopen:
        assert router.notify(event=DEGRADED_EVENT, message="first") is True
        clock.now += 30
        assert router.notify(event=DEGRADED_EVENT, message="second") is False
        assert router.notify(event="other_event", message="unrelated") is True
        clock.now += 31
        assert router.notify(event=DEGRADED_EVENT, message="third") is True
    assert urlopen.call_count == 3


def test_snapshot_degraded_severity_follows_tier():
    router = AlertRouter(["https://hooks.example.test/a"], cooldown_seconds=0)
    with patch("server_analytics.alerting.urllib.request.urlopen", return_value=_response()) as urlopen:
        router.notify_snapshot_degraded({"source": "fallback", "attempts": 3}, source="tests")
        router.notify_snapshot_degraded({"source": "cached", "attempts": 2}, source="tests")

    bodies = [json.loads(call.args[0].data.decode("utf-8")) for call in urlopen.call_args_list]
    assert [body["severity"] for body in bodies] == ["critical", "warning"]
    assert bodies[0]["source"] == "tests"
    assert bodies[1]["metadata"]["attempts"] == 2


def test_failed_delivery_returns_false(caplog):
    router = AlertRouter(["https://hooks.example.test/a"])
    with patch("server_analytics.alerting.urllib.request.urlopen", side_effect=OSError("refused")):
        assert router.notify(event=DEGRADED_EVENT, message="x") is False
    assert "refused" in caplog.text


def test_router_singleton_reads_environment():
    env = {
        "SERVER_ANALYTICS_ALERT_WEBHOOK_URLS": "https://a.test, https://b.test",
        "SERVER_ANALYTICS_ALERT_WEBHOOK_URL": "https://c.test",
        "SERVER_ANALYTICS_ALERT_MUTED_EVENTS": "noise",
    }
    set_alert_router(None)
    try:
        with patch.dict(os.environ, env):
            router = get_alert_router()
        assert router.webhook_urls == ["https://a.test", "https://b.test", "https://c.test"]
        assert get_alert_router() is router
        assert router.notify(event="noise", message="ignored") is False

        replacement = AlertRouter()
        set_alert_router(replacement)
        assert get_alert_router() is replacement
    finally:
        set_alert_router(None)
