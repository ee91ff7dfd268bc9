"""Time-bounded snapshot cache for the lightweight server overview."""
from __future__ import annotations

import importlib
import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol, runtime_checkable

from .models import ResourceUsage, ServerOverview, utcnow
from .orchestrator import load_static_payload
from .resources import ResourceProbe, ResourceProbeError

logger = logging.getLogger(__name__)

ENHANCER_ENTRYPOINT = "enhance_snapshot"


class SnapshotEnhancementError(RuntimeError):
    """Raised when a configured enhancer fails to apply."""


@runtime_checkable
class SnapshotEnhancer(Protocol):
    def enhance(self, overview: ServerOverview) -> Optional[ServerOverview]: ...


class NullEnhancer:
    """Enhancer used when no enhancement module is configured or installed."""

    def enhance(self, overview: ServerOverview) -> ServerOverview:
        return overview


class ModuleEnhancer:
    """Adapts a module exposing ``enhance_snapshot(overview)``."""

    def __init__(self, module_path: str, func: Callable[[ServerOverview], Optional[ServerOverview]]) -> None:
        self.module_path = module_path
        self._func = func

    def enhance(self, overview: ServerOverview) -> Optional[ServerOverview]:
        return self._func(overview)


def _is_missing(exc: ModuleNotFoundError, module_path: str) -> bool:
    missing = exc.name or ""
    return missing == module_path or module_path.startswith(f"{missing}.")


def load_enhancer(module_path: Optional[str]) -> SnapshotEnhancer:
    """Resolve the enhancement capability once, at construction time.

    An uninstalled module yields a :class:`NullEnhancer` with a warning.
    Anything else that goes wrong while importing is a configuration defect
    and raises :class:`SnapshotEnhancementError`.
    """

    if not module_path:
        return NullEnhancer()
    try:
        module = importlib.import_module(module_path)
    except ModuleNotFoundError as exc:
        if not _is_missing(exc, module_path):
            logger.error("Enhancer module %s failed to import: %s", module_path, exc)
            raise SnapshotEnhancementError(f"Enhancer module {module_path} failed to import") from exc
        logger.warning("Snapshot enhancer module %s not found; continuing without it", module_path)
        return NullEnhancer()
    except Exception as exc:
        logger.error("Enhancer module %s failed to import: %s", module_path, exc)
        raise SnapshotEnhancementError(f"Enhancer module {module_path} failed to import") from exc

    func = getattr(module, ENHANCER_ENTRYPOINT, None)
    if not callable(func):
        raise SnapshotEnhancementError(
            f"Enhancer module {module_path} does not define {ENHANCER_ENTRYPOINT}()"
        )
    return ModuleEnhancer(module_path, func)


class TTLSnapshotCache:
    """Holds one :class:`ServerOverview` and rebuilds it once it is too old.

    Within ``max_age_seconds`` every caller receives the same object. A
    refresh starts from a fresh deep copy of the static baseline, so callers
    mutating an earlier overview never leak into the next one.
    """

    def __init__(
        self,
        *,
        baseline_loader: Callable[[], Dict[str, Any]] = load_static_payload,
        resource_probe: Optional[ResourceProbe] = None,
        enhancer: Optional[SnapshotEnhancer] = None,
        max_age_seconds: float = 60.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._baseline_loader = baseline_loader
        self._resource_probe = resource_probe or ResourceProbe()
        self._enhancer = enhancer or NullEnhancer()
        self._max_age_seconds = max_age_seconds
        self._clock = clock
        self._state_lock = threading.Lock()
        self._refresh_lock = threading.Lock()
        self._snapshot: Optional[ServerOverview] = None
        self._generation = 0

    def _is_fresh(self, snapshot: ServerOverview) -> bool:
        age = (self._clock() - snapshot.generated_at).total_seconds()
        return age <= self._max_age_seconds

    def get_snapshot(self) -> ServerOverview:
        with self._state_lock:
            snapshot = self._snapshot
            generation = self._generation
        if snapshot is not None and self._is_fresh(snapshot):
            return snapshot
        return self._refresh_after(generation)

    def refresh(self) -> ServerOverview:
        with self._state_lock:
            generation = self._generation
        return self._refresh_after(generation)

    def invalidate(self) -> None:
        with self._state_lock:
            self._snapshot = None

    def _refresh_after(self, generation: int) -> ServerOverview:
        with self._refresh_lock:
            with self._state_lock:
                if self._generation != generation and self._snapshot is not None:
                    return self._snapshot
            overview = self._build()
            with self._state_lock:
                self._snapshot = overview
                self._generation += 1
            return overview

    def _resource_usage(self, baseline: Dict[str, Any]) -> List[ResourceUsage]:
        try:
            return self._resource_probe.collect()
        except (ResourceProbeError, OSError) as exc:
            logger.error("Using static resource usage values: %s", exc)
            return [ResourceUsage.from_dict(item) for item in baseline.get("resource_usage", [])]

    def _build(self) -> ServerOverview:
        baseline = self._baseline_loader()
        overview = ServerOverview(
            generated_at=self._clock(),
            resource_usage=self._resource_usage(baseline),
            data=baseline,
        )
        try:
            enhanced = self._enhancer.enhance(overview)
        except Exception as exc:
            logger.error("Snapshot enhancement failed: %s", exc)
            raise SnapshotEnhancementError("Snapshot enhancement failed") from exc
        if enhanced is not None:
            overview = enhanced
        overview.generated_at = self._clock()
        return overview


__all__ = [
    "ModuleEnhancer",
    "NullEnhancer",
    "SnapshotEnhancementError",
    "SnapshotEnhancer",
    "TTLSnapshotCache",
    "load_enhancer",
]
