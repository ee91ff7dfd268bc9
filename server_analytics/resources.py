"""Host resource probe (CPU, memory, disk) backed by psutil."""
from __future__ import annotations

import logging
import math
import os
from pathlib import Path
from typing import Dict, List, Optional

import psutil

from .models import ResourceUsage

logger = logging.getLogger(__name__)

MAX_CHANGE_RATIO = 5.0


class ResourceProbeError(RuntimeError):
    """Raised when no host resource could be measured."""


def _clamp(value: float, low: float, high: float) -> float:
    if not math.isfinite(value):
        return low
    return min(max(value, low), high)


def format_bytes(size: float) -> str:
    if not math.isfinite(size) or size <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB", "TB", "PB"]
    value = float(size)
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    decimals = 0 if value >= 100 else 1 if value >= 10 else 2
    return f"{value:.{decimals}f} {units[index]}"


class ResourceProbe:
    """Measures host resources and tracks change against the previous reading.

    Previous readings live on the instance, so one probe should be kept per
    process and reused between refreshes.
    """

    def __init__(self, disk_path: Optional[Path] = None, cpu_interval: float = 0.2) -> None:
        self._disk_path = Path(disk_path) if disk_path is not None else Path(os.getcwd())
        self._cpu_interval = cpu_interval
        self._previous: Dict[str, float] = {}

    def _change_ratio(self, resource_id: str, current: float) -> float:
        previous = self._previous.get(resource_id)
        self._previous[resource_id] = current
        if previous is None or previous <= 0:
            return 0.0
        ratio = (current - previous) / previous
        return _clamp(ratio, -MAX_CHANGE_RATIO, MAX_CHANGE_RATIO)

    def _finalize(self, resource_id: str, label: str, usage: float, capacity: str) -> ResourceUsage:
        rounded = round(_clamp(usage, 0.0, 100.0), 1)
        return ResourceUsage(
            id=resource_id,
            label=label,
            usage_percent=rounded,
            change_percent=round(self._change_ratio(resource_id, rounded), 2),
            capacity=capacity,
        )

    def collect(self) -> List[ResourceUsage]:
        measurements: List[ResourceUsage] = []

        try:
            cpu_percent = psutil.cpu_percent(interval=self._cpu_interval)
            cpu_count = max(psutil.cpu_count() or 1, 1)
            try:
                load_one = psutil.getloadavg()[0]
            except (AttributeError, OSError):
                load_one = 0.0
            cores = "core" if cpu_count == 1 else "cores"
            measurements.append(
                self._finalize(
                    "app-cpu",
                    "App server CPU",
                    cpu_percent,
                    f"{cpu_count} {cores} · load 1m {load_one:.2f}",
                )
            )
        except (psutil.Error, OSError):
            logger.exception("CPU usage probe failed")

        try:
            memory = psutil.virtual_memory()
            measurements.append(
                self._finalize(
                    "app-ram",
                    "Memory",
                    memory.percent,
                    f"{format_bytes(memory.total)} total · {format_bytes(memory.available)} free",
                )
            )
        except (psutil.Error, OSError):
            logger.exception("Memory usage probe failed")

        try:
            disk = psutil.disk_usage(str(self._disk_path))
            measurements.append(
                self._finalize(
                    "app-disk",
                    f"Filesystem ({self._disk_path})",
                    disk.percent,
                    f"{format_bytes(disk.total)} total · {format_bytes(disk.free)} free",
                )
            )
        except (psutil.Error, OSError):
            logger.exception("Disk usage probe failed for %s", self._disk_path)

        if not measurements:
            raise ResourceProbeError("No host resources could be measured")
        return measurements


__all__ = ["ResourceProbe", "ResourceProbeError", "format_bytes"]
