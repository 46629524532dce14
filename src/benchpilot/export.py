"""Export run results to JSON and CSV.

JSON format: the full result records plus the platform they ran on and,
when a reference is loaded, its name.  This is what "export results"
writes and what a reference file stores.

CSV format: one row per result with comparison columns filled in when
the baseline has the same id.
"""

from __future__ import annotations

import csv
import io
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Mapping, Sequence

from benchpilot.compare import compare
from benchpilot.models import BenchmarkResult, PlatformInfo


# ---------------------------------------------------------------------------
# JSON export
# ---------------------------------------------------------------------------


def export_json(
    results: Sequence[BenchmarkResult],
    *,
    platform: PlatformInfo | None = None,
    reference: str | None = None,
) -> str:
    """Export results as a JSON document."""
    if platform is None:
        platform = next((r.platform for r in results if r.platform is not None), None)
    doc: dict[str, object] = {
        "exported_at": datetime.now(timezone.utc).isoformat(timespec="seconds"),
        "platform": platform.to_dict() if platform else None,
        "results": [r.to_dict() for r in results],
    }
    if reference:
        doc["reference"] = reference
    return json.dumps(doc, indent=2) + "\n"


# ---------------------------------------------------------------------------
# CSV export
# ---------------------------------------------------------------------------


def export_csv(
    results: Sequence[BenchmarkResult],
    baseline: Mapping[str, BenchmarkResult] | None = None,
) -> str:
    """Export results as CSV.

    Columns:
        id, category, name, simd_variant, mean_ns, iterations,
        reference_ns, percent_change, speedup, status
    """
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(
        [
            "id",
            "category",
            "name",
            "simd_variant",
            "mean_ns",
            "iterations",
            "reference_ns",
            "percent_change",
            "speedup",
            "status",
        ]
    )

    baseline = baseline or {}
    for r in results:
        ref = baseline.get(r.id)
        cmp = compare(r.mean_ns, ref.mean_ns) if ref is not None else None
        writer.writerow(
            [
                r.id,
                r.category,
                r.name,
                r.simd_variant,
                f"{r.mean_ns:.3f}",
                r.statistics.iterations,
                f"{ref.mean_ns:.3f}" if ref is not None else "",
                f"{cmp.percent_change:.2f}" if cmp else "",
                f"{cmp.speedup:.4f}" if cmp else "",
                cmp.status if cmp else "",
            ]
        )

    return output.getvalue()


def write_export(
    path: Path,
    results: Sequence[BenchmarkResult],
    baseline: Mapping[str, BenchmarkResult] | None = None,
    *,
    reference: str | None = None,
) -> str:
    """Write results to *path*; CSV for ``.csv`` suffixes, JSON otherwise.

    Returns:
        The format written, ``"csv"`` or ``"json"``.
    """
    if path.suffix.lower() == ".csv":
        text, fmt = export_csv(results, baseline), "csv"
    else:
        text, fmt = export_json(results, reference=reference), "json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return fmt
