"""Terminal display formatting for benchmark state and comparisons.

Produces aligned plain-text tables.  No external dependencies.
"""

from __future__ import annotations

import math
from typing import Sequence

from benchpilot.compare import FASTER, SLOWER, Comparison, ComparisonReport
from benchpilot.models import (
    BenchmarkDescriptor,
    PlatformInfo,
    ReferenceInfo,
    SimdLevelInfo,
)
from benchpilot.session import RunSnapshot


# ---------------------------------------------------------------------------
# Table formatting utilities
# ---------------------------------------------------------------------------


def format_table(
    headers: list[str],
    rows: list[list[str]],
    *,
    alignments: list[str] | None = None,
    indent: int = 2,
) -> str:
    """Format rows as an aligned text table.

    Args:
        headers: Column header strings.
        rows: List of rows, each a list of cell strings.
        alignments: Per-column alignment, ``'l'`` or ``'r'``.
        indent: Number of leading spaces per line.
    """
    if not headers:
        return ""

    ncols = len(headers)
    aligns = list(alignments or [])
    aligns += ["l"] * (ncols - len(aligns))

    cells = [(list(row) + [""] * ncols)[:ncols] for row in rows]
    widths = [len(h) for h in headers]
    for row in cells:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(cell))

    def _line(row: list[str]) -> str:
        parts = [
            cell.rjust(widths[i]) if aligns[i] == "r" else cell.ljust(widths[i])
            for i, cell in enumerate(row)
        ]
        return (" " * indent + "  ".join(parts)).rstrip()

    lines = [_line(headers), " " * indent + "─" * (sum(widths) + 2 * (ncols - 1))]
    lines.extend(_line(row) for row in cells)
    return "\n".join(lines)


def format_time(ns: float | None, precision: int = 3) -> str:
    """Format a duration in nanoseconds with an adaptive unit."""
    if ns is None or math.isnan(ns):
        return "-"
    if ns >= 1_000_000_000:
        return f"{ns / 1_000_000_000:.{precision}f} s"
    if ns >= 1_000_000:
        return f"{ns / 1_000_000:.{precision}f} ms"
    if ns >= 1_000:
        return f"{ns / 1_000:.{precision}f} µs"
    return f"{ns:.{precision}f} ns"


def _format_factor(factor: float) -> str:
    return "∞x" if math.isinf(factor) else f"{factor:.2f}x"


def format_change(comparison: Comparison | None) -> str:
    """``+12.3% (1.12x)`` style change text; ``-`` without a comparison.

    The factor is shown only outside the similar band, as how many times
    faster or slower the current run is.
    """
    if comparison is None:
        return "-"
    sign = "+" if comparison.percent_change > 0 else ""
    text = f"{sign}{comparison.percent_change:.1f}%"
    if comparison.status == FASTER:
        text += f" ({_format_factor(comparison.speedup)})"
    elif comparison.status == SLOWER:
        text += f" ({_format_factor(1 / comparison.speedup)})"
    return text


# ---------------------------------------------------------------------------
# Listings
# ---------------------------------------------------------------------------


def format_benchmark_list(benchmarks: Sequence[BenchmarkDescriptor]) -> str:
    if not benchmarks:
        return "No benchmarks available."
    rows = [[b.id, b.category, b.simd_variant or "-"] for b in benchmarks]
    return format_table(["Benchmark", "Category", "Variant"], rows)


def format_levels(levels: Sequence[SimdLevelInfo], current: str | None = None) -> str:
    if not levels:
        return "No capability levels reported."
    lines = []
    for lvl in levels:
        marker = "*" if lvl.id == current else " "
        lines.append(f"{marker} {lvl.id:<12s} {lvl.name}")
    return "\n".join(lines)


def format_platform(info: PlatformInfo) -> str:
    features = ", ".join(info.simd_features) or "none"
    return f"Architecture: {info.arch}\nOS: {info.os}\nFeatures: {features}"


def format_reference_list(references: Sequence[ReferenceInfo], loaded: str | None = None) -> str:
    """Table of saved references, newest first as given."""
    if not references:
        return "No saved references."
    rows = []
    for ref in references:
        platform = f"{ref.platform.arch}/{ref.platform.os}" if ref.platform else "-"
        name = f"{ref.name} *" if ref.name == loaded else ref.name
        rows.append([name, ref.created_at, str(ref.result_count), platform])
    return format_table(
        ["Reference", "Created", "Results", "Platform"],
        rows,
        alignments=["l", "l", "r", "l"],
    )


# ---------------------------------------------------------------------------
# Run state
# ---------------------------------------------------------------------------


def format_results_table(snapshot: RunSnapshot, ids: Sequence[str] | None = None) -> str:
    """One row per benchmark: status, mean, reference mean and change.

    Args:
        snapshot: The run state to render.
        ids: Restrict to these ids (kept in listed order).  Default: every
            listed benchmark.
    """
    wanted = set(ids) if ids is not None else None
    rows: list[list[str]] = []
    for bench in snapshot.benchmarks:
        if wanted is not None and bench.id not in wanted:
            continue
        result = snapshot.results.get(bench.id)
        ref = snapshot.baseline.get(bench.id)
        rows.append(
            [
                bench.id,
                snapshot.status_of(bench.id),
                format_time(result.mean_ns) if result else "-",
                format_time(ref.mean_ns) if ref else "-",
                format_change(snapshot.comparison_for(bench.id)),
            ]
        )
    if not rows:
        return "No benchmarks to show."
    return format_table(
        ["Benchmark", "Status", "Mean", "Reference", "Change"],
        rows,
        alignments=["l", "l", "r", "r", "r"],
    )


def format_comparison_report(report: ComparisonReport, reference: str | None = None) -> str:
    """Summary lines for a run compared against a baseline."""
    title = f"Compared with '{reference}'" if reference else "Compared with baseline"
    lines = [title, "─" * len(title)]
    if not report.entries:
        lines.append("No benchmarks in common with the baseline.")
    else:
        lines.append(
            f"{report.faster} faster, {report.slower} slower, {report.similar} similar"
        )
        geomean = report.geomean_speedup
        if geomean is not None:
            lines.append(f"Geometric mean speedup: {geomean:.3f}x")
    if report.missing_in_baseline:
        lines.append(f"Not in baseline: {', '.join(report.missing_in_baseline)}")
    if report.missing_in_run:
        lines.append(f"Not run: {len(report.missing_in_run)} baseline benchmark(s)")
    return "\n".join(lines)
