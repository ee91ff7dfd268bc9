"""Configuration loading utilities for server analytics."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


DEFAULT_SETTINGS_PATH = Path(__file__).parent / "data" / "settings.yaml"
ENV_PREFIX = "SERVER_ANALYTICS_"


def _get_env_float(env_key: str, default: float) -> float:
    """Return a float environment variable with a fallback."""

    value = os.getenv(env_key)
    if value is None:
        return float(default)
    try:
        return float(value)
    except (TypeError, ValueError):
        return float(default)


def _get_env_str(env_key: str, default: Optional[str]) -> Optional[str]:
    value = os.getenv(env_key)
    if value is None or not value.strip():
        return default
    return value.strip()


@dataclass(frozen=True)
class InsightThresholds:
    """Tunable limits for the optimization rule engine."""

    page_load_high_ms: float = 3200.0
    page_load_medium_ms: float = 1800.0
    member_load_ms: float = 1700.0
    device_load_ms: float = 1400.0
    min_page_weight: float = 1.0
    retention_critical: float = 0.4
    retention_warning: float = 0.55
    segment_share_min: float = 0.12
    device_share_min: float = 0.2
    api_error_rate_warning: float = 0.05
    cache_hit_rate_warning: float = 0.6
    payload_warning_bytes: float = 450_000.0
    max_insights: int = 8

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "InsightThresholds":
        defaults = InsightThresholds()
        page_cfg = data.get("page_load_ms", {})
        retention_cfg = data.get("retention", {})
        share_cfg = data.get("share_minimum", {})
        return InsightThresholds(
            page_load_high_ms=float(page_cfg.get("high", defaults.page_load_high_ms)),
            page_load_medium_ms=float(page_cfg.get("medium", defaults.page_load_medium_ms)),
            member_load_ms=float(data.get("member_load_ms", defaults.member_load_ms)),
            device_load_ms=float(data.get("device_load_ms", defaults.device_load_ms)),
            min_page_weight=float(data.get("min_page_weight", defaults.min_page_weight)),
            retention_critical=float(retention_cfg.get("critical", defaults.retention_critical)),
            retention_warning=float(retention_cfg.get("warning", defaults.retention_warning)),
            segment_share_min=float(share_cfg.get("segment", defaults.segment_share_min)),
            device_share_min=float(share_cfg.get("device", defaults.device_share_min)),
            api_error_rate_warning=float(
                data.get("api_error_rate_warning", defaults.api_error_rate_warning)
            ),
            cache_hit_rate_warning=float(
                data.get("cache_hit_rate_warning", defaults.cache_hit_rate_warning)
            ),
            payload_warning_bytes=float(
                data.get("payload_warning_bytes", defaults.payload_warning_bytes)
            ),
            max_insights=int(data.get("max_insights", defaults.max_insights)),
        )


@dataclass(frozen=True)
class Settings:
    """Typed view over the settings YAML file."""

    insights: InsightThresholds
    collection_timeout_seconds: float
    collection_workers: int
    http_window_hours: float
    peak_bucket_minutes: int
    peak_top_buckets: int
    snapshot_max_age_seconds: float
    snapshot_enhancer_module: Optional[str]
    disk_usage_path: Path
    log_recent_limit: int
    log_window_hours: float
    log_retry_attempts: int
    log_retry_delay_seconds: float
    analytics_db_path: Path
    log_db_path: Path
    alert_timeout_seconds: float
    alert_cooldown_seconds: float

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Settings":
        collection_cfg = data.get("collection", {})
        http_cfg = data.get("http", {})
        cache_cfg = data.get("snapshot_cache", {})
        logs_cfg = data.get("logs", {})
        storage_cfg = data.get("storage", {})
        alerts_cfg = data.get("alerts", {})
        enhancer = cache_cfg.get("enhancer_module") or None
        return Settings(
            insights=InsightThresholds.from_dict(data.get("insights", {})),
            collection_timeout_seconds=_get_env_float(
                f"{ENV_PREFIX}COLLECTION_TIMEOUT",
                float(collection_cfg.get("timeout_seconds", 5.0)),
            ),
            collection_workers=int(collection_cfg.get("workers", 4)),
            http_window_hours=float(http_cfg.get("window_hours", 24)),
            peak_bucket_minutes=int(http_cfg.get("peak_bucket_minutes", 60)),
            peak_top_buckets=int(http_cfg.get("peak_top_buckets", 6)),
            snapshot_max_age_seconds=_get_env_float(
                f"{ENV_PREFIX}SNAPSHOT_MAX_AGE",
                float(cache_cfg.get("max_age_seconds", 60.0)),
            ),
            snapshot_enhancer_module=_get_env_str(f"{ENV_PREFIX}ENHANCER_MODULE", enhancer),
            disk_usage_path=Path(cache_cfg.get("disk_usage_path", ".")),
            log_recent_limit=int(logs_cfg.get("recent_limit", 20)),
            log_window_hours=float(logs_cfg.get("window_hours", 48)),
            log_retry_attempts=int(logs_cfg.get("retry_attempts", 3)),
            log_retry_delay_seconds=float(logs_cfg.get("retry_delay_seconds", 0.05)),
            analytics_db_path=Path(
                _get_env_str(
                    f"{ENV_PREFIX}DB_PATH", storage_cfg.get("analytics_db", "analytics.db")
                )
            ),
            log_db_path=Path(
                _get_env_str(
                    f"{ENV_PREFIX}LOG_DB_PATH", storage_cfg.get("log_db", "analytics_logs.db")
                )
            ),
            alert_timeout_seconds=float(alerts_cfg.get("timeout_seconds", 5.0)),
            alert_cooldown_seconds=float(alerts_cfg.get("cooldown_seconds", 300.0)),
        )


class SettingsLoader:
    """Loads and caches settings from YAML configuration files."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or DEFAULT_SETTINGS_PATH
        self._cache: Settings | None = None

    @property
    def path(self) -> Path:
        return self._path

    def load(self, force: bool = False) -> Settings:
        if self._cache is not None and not force:
            return self._cache
        with self._path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
        self._cache = Settings.from_dict(data)
        return self._cache


def get_settings() -> Settings:
    """Convenience accessor for default settings."""

    return SettingsLoader().load()


__all__ = ["InsightThresholds", "Settings", "SettingsLoader", "get_settings"]
