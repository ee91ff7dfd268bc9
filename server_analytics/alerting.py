"""Webhook alerts raised when analytics snapshots degrade."""

from __future__ import annotations

import json
import logging
import os
import threading
import time
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

logger = logging.getLogger(__name__)

DEGRADED_EVENT = "snapshot_degraded"
ENV_PREFIX = "SERVER_ANALYTICS_ALERT_"


@dataclass
class AlertPayload:
    """Structured payload for alert notifications."""

    event: str
    message: str
    severity: str
    source: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    @property
    def summary_line(self) -> str:
        return f"[{self.severity.upper()}] {self.message}"

    def to_body(self) -> Dict[str, Any]:
        # text/content are read by Slack and Discord style receivers.
        return {
            "event": self.event,
            "severity": self.severity,
            "message": self.message,
            "source": self.source,
            "metadata": dict(self.metadata),
            "timestamp": self.timestamp,
            "text": self.summary_line,
            "content": self.summary_line,
            "username": "Server Analytics",
        }


def degraded_message(metadata: Mapping[str, Any]) -> str:
    tier = metadata.get("source", "unknown")
    reasons = metadata.get("fallback_reasons") or []
    message = f"Analytics snapshot served from {tier} data"
    if reasons:
        message = f"{message}: {reasons[0]}"
    return message


class AlertRouter:
    """Posts alerts to webhooks.

    Only the first alert per event inside ``cooldown_seconds`` is delivered.
    """

    def __init__(
        self,
        webhook_urls: Optional[Iterable[str]] = None,
        *,
        timeout: float = 5.0,
        cooldown_seconds: float = 300.0,
        muted_events: Optional[Iterable[str]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._webhook_urls = [url for url in (webhook_urls or []) if url]
        self._timeout = timeout
        self._cooldown = max(0.0, cooldown_seconds)
        self._muted_events = set(muted_events or ())
        self._clock = clock
        self._last_sent: Dict[str, float] = {}
        self._lock = threading.Lock()

    @property
    def webhook_urls(self) -> List[str]:
        return list(self._webhook_urls)

    def _claim(self, event: str) -> bool:
        now = self._clock()
        with self._lock:
            last = self._last_sent.get(event)
            if last is not None and now - last < self._cooldown:
                return False
            self._last_sent[event] = now
            return True

    def notify(
        self,
        *,
        event: str,
        message: str,
        severity: str = "warning",
        source: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Deliver an alert; returns True when at least one webhook accepted it."""

        if event in self._muted_events:
            logger.debug("Alert event '%s' is muted; skipping notification", event)
            return False
        if not self._claim(event):
            logger.debug("Alert event '%s' is cooling down; skipping notification", event)
            return False

        payload = AlertPayload(
            event=event,
            message=message,
            severity=severity,
            source=source,
            metadata=dict(metadata or {}),
        )
        delivered = [self._post_webhook(payload, url) for url in self._webhook_urls]
        if not any(delivered):
            logger.warning("Alert not delivered to any webhook: %s", payload.summary_line)
            return False
        return True

    def notify_snapshot_degraded(self, metadata: Mapping[str, Any], *, source: str) -> bool:
        severity = "critical" if metadata.get("source") == "fallback" else "warning"
        return self.notify(
            event=DEGRADED_EVENT,
            message=degraded_message(metadata),
            severity=severity,
            source=source,
            metadata=dict(metadata),
        )

    def _post_webhook(self, payload: AlertPayload, webhook_url: str) -> bool:
        request = urllib.request.Request(
            webhook_url,
            data=json.dumps(payload.to_body()).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                logger.debug("Webhook %s answered %s for %s", webhook_url, response.status, payload.event)
        except (OSError, ValueError) as exc:
            logger.error("Failed to deliver %s alert to %s: %s", payload.event, webhook_url, exc)
            return False
        return True


_alert_router: Optional[AlertRouter] = None


def _split_env(name: str) -> List[str]:
    return [value.strip() for value in os.getenv(name, "").split(",") if value.strip()]


def get_alert_router(timeout: float = 5.0, cooldown_seconds: float = 300.0) -> AlertRouter:
    """Return the lazily instantiated alert router.

    Webhooks come from ``SERVER_ANALYTICS_ALERT_WEBHOOK_URLS`` (comma
    separated) and ``SERVER_ANALYTICS_ALERT_WEBHOOK_URL``; muted events from
    ``SERVER_ANALYTICS_ALERT_MUTED_EVENTS``.
    """

    global _alert_router
    if _alert_router is None:
        urls = _split_env(f"{ENV_PREFIX}WEBHOOK_URLS") + _split_env(f"{ENV_PREFIX}WEBHOOK_URL")
        _alert_router = AlertRouter(
            urls,
            timeout=timeout,
            cooldown_seconds=cooldown_seconds,
            muted_events=_split_env(f"{ENV_PREFIX}MUTED_EVENTS"),
        )
    return _alert_router


def set_alert_router(router: Optional[AlertRouter]) -> None:
    """Override the global alert router (primarily for testing)."""

    global _alert_router
    _alert_router = router


__all__ = [
    "DEGRADED_EVENT",
    "AlertPayload",
    "AlertRouter",
    "degraded_message",
    "get_alert_router",
    "set_alert_router",
]
