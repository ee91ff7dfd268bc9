"""Collect an analytics snapshot and write it as JSON."""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from ..config import DEFAULT_SETTINGS_PATH, SettingsLoader
from ..service import AnalyticsService, build_service


async def _collect(service: AnalyticsService) -> Dict[str, Any]:
    snapshot = await service.collect_snapshot()
    return snapshot.to_dict()


def export_snapshot(
    service: AnalyticsService,
    *,
    output: Optional[Path] = None,
    overview: bool = False,
) -> Dict[str, Any]:
    """Gather a snapshot (or the host overview) and optionally dump it to disk."""

    if overview:
        payload = service.get_snapshot().to_dict()
    else:
        payload = asyncio.run(_collect(service))

    text = json.dumps(payload, indent=2, ensure_ascii=False)
    if output is None:
        sys.stdout.write(text + "\n")
    else:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(text, encoding="utf-8")
    return payload


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Export the current analytics snapshot as JSON."
    )
    parser.add_argument(
        "--settings",
        type=Path,
        default=DEFAULT_SETTINGS_PATH,
        help="Path to the settings YAML file.",
    )
    parser.add_argument(
        "--analytics-db",
        type=Path,
        default=None,
        help="Override the analytics SQLite database path.",
    )
    parser.add_argument(
        "--log-db",
        type=Path,
        default=None,
        help="Override the log issue SQLite database path.",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Write JSON to this file instead of stdout.",
    )
    parser.add_argument(
        "--overview",
        action="store_true",
        help="Export the cached host overview instead of the full snapshot.",
    )
    return parser.parse_args()


def main() -> None:  # pragma: no cover - CLI wrapper
    args = _parse_args()
    settings = SettingsLoader(args.settings).load()
    overrides = {}
    if args.analytics_db is not None:
        overrides["analytics_db_path"] = args.analytics_db
    if args.log_db is not None:
        overrides["log_db_path"] = args.log_db
    if overrides:
        settings = dataclasses.replace(settings, **overrides)
    service = build_service(settings)
    try:
        export_snapshot(service, output=args.output, overview=args.overview)
    finally:
        service.close()


if __name__ == "__main__":
    main()
