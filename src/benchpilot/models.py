"""Benchmark records exchanged between backends, the orchestrator and the
reference store.

Hierarchy::

    BenchmarkDescriptor     (one listed benchmark)
    BenchmarkResult         (one finished run of a benchmark)
      → statistics: Statistics
      → platform: PlatformInfo
    ReferenceEntry          (a named, frozen snapshot of results)
      → results: dict[id, BenchmarkResult]

Every record serializes with ``to_dict()`` / ``from_dict()``.  Unknown
keys are tolerated on input so that backends may send richer payloads.
"""

from __future__ import annotations

import platform as _platform
import sys
from dataclasses import asdict, dataclass, field
from typing import Any

MIN_PHASE_MS = 100
DEFAULT_CALIBRATION_MS = 100
DEFAULT_MEASUREMENT_MS = 250


# ---------------------------------------------------------------------------
# Descriptors
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BenchmarkDescriptor:
    """A benchmark offered by a backend."""

    id: str
    name: str
    category: str  # slash-delimited, e.g. "text/json"
    simd_variant: str = ""

    def in_category(self, category: str | None) -> bool:
        """True if this benchmark sits in *category* or one of its children.

        ``None``, ``""`` and ``"all"`` match everything.
        """
        if not category or category == "all":
            return True
        return self.category == category or self.category.startswith(category + "/")

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"id": self.id, "name": self.name, "category": self.category}
        if self.simd_variant:
            d["simd_variant"] = self.simd_variant
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BenchmarkDescriptor:
        return cls(
            id=data["id"],
            name=data.get("name", data["id"].rsplit("/", 1)[-1]),
            category=data.get("category", ""),
            simd_variant=data.get("simd_variant", ""),
        )


@dataclass(frozen=True)
class SimdLevelInfo:
    """A capability level a backend can run benchmarks at."""

    id: str
    name: str

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SimdLevelInfo:
        return cls(id=data["id"], name=data.get("name", data["id"]))


@dataclass
class PlatformInfo:
    """Where a benchmark ran."""

    arch: str = "unknown"
    os: str = "unknown"
    simd_features: list[str] = field(default_factory=list)

    @classmethod
    def detect(cls) -> PlatformInfo:
        """Describe the current host."""
        return cls(
            arch=_platform.machine() or "unknown",
            os=sys.platform,
            simd_features=["scalar"],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PlatformInfo:
        return cls(
            arch=data.get("arch", "unknown"),
            os=data.get("os", "unknown"),
            simd_features=list(data.get("simd_features", [])),
        )


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Statistics:
    """Statistics reported by a backend.

    Only ``mean_ns`` is interpreted by benchpilot.  Anything else the
    backend reports is carried along untouched in ``extra``.
    """

    mean_ns: float
    iterations: int = 0
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = dict(self.extra)
        d["mean_ns"] = self.mean_ns
        d["iterations"] = self.iterations
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Statistics:
        extra = {k: v for k, v in data.items() if k not in ("mean_ns", "iterations")}
        return cls(
            mean_ns=float(data["mean_ns"]),
            iterations=int(data.get("iterations", 0)),
            extra=extra,
        )


@dataclass(frozen=True)
class BenchmarkResult:
    """The outcome of one successful benchmark run.

    Created once per run and never modified; a later run of the same id
    replaces it.
    """

    id: str
    statistics: Statistics
    category: str = ""
    name: str = ""
    simd_variant: str = ""
    timestamp_ms: int = 0
    platform: PlatformInfo | None = None

    @property
    def mean_ns(self) -> float:
        """The canonical comparison metric."""
        return self.statistics.mean_ns

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "category": self.category,
            "name": self.name,
            "simd_variant": self.simd_variant,
            "statistics": self.statistics.to_dict(),
            "timestamp_ms": self.timestamp_ms,
        }
        if self.platform is not None:
            d["platform"] = self.platform.to_dict()
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BenchmarkResult:
        """Deserialize a result.

        Raises:
            KeyError: If ``id`` or ``statistics.mean_ns`` is missing.
        """
        platform = data.get("platform")
        return cls(
            id=data["id"],
            statistics=Statistics.from_dict(data["statistics"]),
            category=data.get("category", ""),
            name=data.get("name", ""),
            simd_variant=data.get("simd_variant", ""),
            timestamp_ms=int(data.get("timestamp_ms", 0)),
            platform=PlatformInfo.from_dict(platform) if platform else None,
        )


# ---------------------------------------------------------------------------
# Timing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TimingConfig:
    """Per-run phase budgets in milliseconds."""

    calibration_ms: int = DEFAULT_CALIBRATION_MS
    measurement_ms: int = DEFAULT_MEASUREMENT_MS

    @classmethod
    def clamped(
        cls,
        calibration_ms: int | float | None = None,
        measurement_ms: int | float | None = None,
    ) -> TimingConfig:
        """Build a TimingConfig, flooring both budgets at ``MIN_PHASE_MS``.

        Missing or zero values fall back to the defaults first.
        """
        cal = int(calibration_ms or DEFAULT_CALIBRATION_MS)
        meas = int(measurement_ms or DEFAULT_MEASUREMENT_MS)
        return cls(
            calibration_ms=max(MIN_PHASE_MS, cal),
            measurement_ms=max(MIN_PHASE_MS, meas),
        )


# ---------------------------------------------------------------------------
# References
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReferenceInfo:
    """Listing entry for a saved reference."""

    name: str
    created_at: str  # ISO-8601, UTC
    platform: PlatformInfo | None = None
    result_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "name": self.name,
            "created_at": self.created_at,
            "result_count": self.result_count,
        }
        if self.platform is not None:
            d["platform"] = self.platform.to_dict()
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ReferenceInfo:
        platform = data.get("platform")
        return cls(
            name=data["name"],
            created_at=data.get("created_at", ""),
            platform=PlatformInfo.from_dict(platform) if platform else None,
            result_count=int(data.get("result_count", 0)),
        )


@dataclass(frozen=True)
class ReferenceEntry:
    """A named snapshot of benchmark results, keyed by benchmark id."""

    name: str
    created_at: str
    results: dict[str, BenchmarkResult] = field(default_factory=dict)
    platform: PlatformInfo | None = None

    @property
    def info(self) -> ReferenceInfo:
        return ReferenceInfo(
            name=self.name,
            created_at=self.created_at,
            platform=self.platform,
            result_count=len(self.results),
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "name": self.name,
            "created_at": self.created_at,
            "results": [r.to_dict() for r in self.results.values()],
        }
        if self.platform is not None:
            d["platform"] = self.platform.to_dict()
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ReferenceEntry:
        platform = data.get("platform")
        results = [BenchmarkResult.from_dict(r) for r in data.get("results", [])]
        return cls(
            name=data["name"],
            created_at=data.get("created_at", ""),
            results={r.id: r for r in results},
            platform=PlatformInfo.from_dict(platform) if platform else None,
        )
