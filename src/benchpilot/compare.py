"""Comparison of benchmark results against a reference baseline.

``compare`` classifies a single pair of mean timings; ``compare_results``
applies it to a whole run and gathers the counts a summary needs.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Iterable, Mapping

from benchpilot.models import BenchmarkResult

# Changes within this band (inclusive) count as noise.
SIMILAR_BAND_PCT = 5.0
# Below half the displayed precision (one decimal); keeps "-0.0%" off screen.
ZERO_SNAP_PCT = 0.05

FASTER = "faster"
SLOWER = "slower"
SIMILAR = "similar"


@dataclass(frozen=True)
class Comparison:
    """Current timing relative to a reference timing."""

    diff_ns: float
    percent_change: float
    speedup: float  # reference / current; > 1 means current is faster
    status: str  # "faster", "slower" or "similar"


def compare(current_ns: float, reference_ns: float | None) -> Comparison | None:
    """Compare a current mean time against a reference mean time.

    Args:
        current_ns: Mean time of the current run.
        reference_ns: Mean time from the reference, or None.

    Returns:
        A Comparison, or None if there is no usable reference.
    """
    if not reference_ns:
        return None

    diff = current_ns - reference_ns
    percent_change = diff / reference_ns * 100
    if abs(percent_change) < ZERO_SNAP_PCT:
        percent_change = 0.0
    speedup = reference_ns / current_ns if current_ns else math.inf

    if abs(percent_change) <= SIMILAR_BAND_PCT:
        status = SIMILAR
    elif percent_change < 0:
        status = FASTER
    else:
        status = SLOWER

    return Comparison(
        diff_ns=diff,
        percent_change=percent_change,
        speedup=speedup,
        status=status,
    )


# ---------------------------------------------------------------------------
# Whole-run comparison
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ComparisonEntry:
    """One benchmark present in both the run and the baseline."""

    id: str
    current_ns: float
    reference_ns: float
    comparison: Comparison


@dataclass
class ComparisonReport:
    """A run compared against a baseline."""

    entries: list[ComparisonEntry] = field(default_factory=list)
    missing_in_baseline: list[str] = field(default_factory=list)
    missing_in_run: list[str] = field(default_factory=list)

    def _count(self, status: str) -> int:
        return sum(1 for e in self.entries if e.comparison.status == status)

    @property
    def faster(self) -> int:
        return self._count(FASTER)

    @property
    def slower(self) -> int:
        return self._count(SLOWER)

    @property
    def similar(self) -> int:
        return self._count(SIMILAR)

    @property
    def geomean_speedup(self) -> float | None:
        """Geometric mean of the finite, positive speedups."""
        logs = [
            math.log(e.comparison.speedup)
            for e in self.entries
            if 0 < e.comparison.speedup < math.inf
        ]
        if not logs:
            return None
        return math.exp(sum(logs) / len(logs))


def compare_results(
    results: Iterable[BenchmarkResult],
    baseline: Mapping[str, BenchmarkResult],
) -> ComparisonReport:
    """Compare every result against its baseline entry.

    Entries keep the order of *results*.  Results whose baseline mean is
    zero are treated as missing from the baseline.
    """
    report = ComparisonReport()
    seen: set[str] = set()

    for result in results:
        seen.add(result.id)
        ref = baseline.get(result.id)
        cmp = compare(result.mean_ns, ref.mean_ns) if ref is not None else None
        if ref is None or cmp is None:
            report.missing_in_baseline.append(result.id)
            continue
        report.entries.append(
            ComparisonEntry(
                id=result.id,
                current_ns=result.mean_ns,
                reference_ns=ref.mean_ns,
                comparison=cmp,
            )
        )

    report.missing_in_run = [bid for bid in baseline if bid not in seen]
    return report
