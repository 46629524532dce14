"""Run state shared between the orchestrator and its observers.

A ``RunSession`` is owned by one ``Orchestrator``.  Observers subscribe to
it and receive an immutable ``RunSnapshot`` each time the orchestrator (or
the reference client) publishes a change.  Observers must not mutate the
session themselves.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Callable, Mapping

from benchpilot.compare import Comparison, compare
from benchpilot.models import BenchmarkDescriptor, BenchmarkResult

log = logging.getLogger("benchpilot")


class Phase(str, enum.Enum):
    """Advisory phase of the active benchmark."""

    CALIBRATING = "calibrating"
    MEASURING = "measuring"


# ---------------------------------------------------------------------------
# Projection
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RunSnapshot:
    """Read-only view of a session at one instant."""

    benchmarks: tuple[BenchmarkDescriptor, ...]
    requested_ids: tuple[str, ...]
    queued: frozenset[str]
    active_id: str | None
    phase: Phase | None
    results: Mapping[str, BenchmarkResult]
    is_running: bool
    cancel_requested: bool
    baseline: Mapping[str, BenchmarkResult]
    loaded_reference: str | None
    simd_level: str | None

    def status_of(self, benchmark_id: str) -> str:
        """One of ``idle``, ``queued``, ``calibrating``, ``measuring``, ``done``."""
        if benchmark_id == self.active_id and self.phase is not None:
            return self.phase.value
        if benchmark_id in self.queued:
            return "queued"
        if benchmark_id in self.results:
            return "done"
        return "idle"

    def comparison_for(self, benchmark_id: str) -> Comparison | None:
        """Compare the current result for *benchmark_id* with the baseline."""
        result = self.results.get(benchmark_id)
        ref = self.baseline.get(benchmark_id)
        if result is None or ref is None:
            return None
        return compare(result.mean_ns, ref.mean_ns)

    @property
    def completed_count(self) -> int:
        return len(self.results)


Observer = Callable[[RunSnapshot], None]


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


@dataclass
class RunSession:
    """Mutable run state plus a publish/subscribe channel."""

    benchmarks: list[BenchmarkDescriptor] = field(default_factory=list)
    requested_ids: list[str] = field(default_factory=list)
    queued: set[str] = field(default_factory=set)
    active_id: str | None = None
    phase: Phase | None = None
    results: dict[str, BenchmarkResult] = field(default_factory=dict)
    is_running: bool = False
    cancel_requested: bool = False
    baseline: dict[str, BenchmarkResult] = field(default_factory=dict)
    loaded_reference: str | None = None
    simd_level: str | None = None
    _observers: list[Observer] = field(default_factory=list, repr=False)

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register *observer*; return a function that unregisters it."""
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def snapshot(self) -> RunSnapshot:
        return RunSnapshot(
            benchmarks=tuple(self.benchmarks),
            requested_ids=tuple(self.requested_ids),
            queued=frozenset(self.queued),
            active_id=self.active_id,
            phase=self.phase,
            results=MappingProxyType(dict(self.results)),
            is_running=self.is_running,
            cancel_requested=self.cancel_requested,
            baseline=MappingProxyType(dict(self.baseline)),
            loaded_reference=self.loaded_reference,
            simd_level=self.simd_level,
        )

    def publish(self) -> None:
        """Send a fresh snapshot to every observer.

        An observer that raises is logged and skipped.
        """
        snap = self.snapshot()
        for observer in list(self._observers):
            try:
                observer(snap)
            except Exception:  # noqa: BLE001
                log.exception("Run state observer %r failed", observer)

    def results_in_listed_order(self) -> list[BenchmarkResult]:
        """Current results ordered as the benchmarks are listed.

        Results for ids that are no longer listed follow, in insertion order.
        """
        listed = [self.results[b.id] for b in self.benchmarks if b.id in self.results]
        listed_ids = {r.id for r in listed}
        listed.extend(r for bid, r in self.results.items() if bid not in listed_ids)
        return listed
