"""Benchmark suites: the code that actually gets timed.

A suite is a registry of benchmark bodies plus a calibrate-then-measure
runner.  Backends load suites; the orchestrator never sees them and only
consumes the finished ``BenchmarkResult``.

Timing strategy:

1. Calibration: run the body in batches, doubling the batch size until
   one batch takes at least ``calibration_ms``.
2. Measurement: from the calibration rate, run enough iterations to
   fill ``measurement_ms`` in one go and report the mean.

Example::

    suite = BenchmarkSuite("mysuite")

    @suite.benchmark("text/json", "dumps_small")
    def dumps_small():
        json.dumps({"a": 1})
"""

from __future__ import annotations

import importlib
import importlib.util
import logging
import math
import time
from dataclasses import dataclass
from typing import Callable

from benchpilot.models import (
    BenchmarkDescriptor,
    BenchmarkResult,
    PlatformInfo,
    SimdLevelInfo,
    Statistics,
)

log = logging.getLogger("benchpilot")

BenchmarkBody = Callable[[], object]

# Calibration stops doubling here even if the target was not reached.
_MAX_BATCH = 1 << 40


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


@dataclass
class BenchRunner:
    """Calibrate-then-measure timing loop."""

    calibration_ms: int
    measurement_ms: int
    clock: Callable[[], int] = time.perf_counter_ns

    def calibrate(self, body: BenchmarkBody) -> tuple[int, float]:
        """Find a batch size that takes at least ``calibration_ms``.

        Returns:
            Tuple of (batch_size, elapsed_ns for that batch).
        """
        target_ns = self.calibration_ms * 1_000_000
        batch = 1
        while True:
            start = self.clock()
            for _ in range(batch):
                body()
            elapsed = self.clock() - start
            if elapsed >= target_ns or batch >= _MAX_BATCH:
                return batch, float(max(elapsed, 1))
            batch *= 2

    def measure(self, body: BenchmarkBody, iterations: int) -> Statistics:
        start = self.clock()
        for _ in range(iterations):
            body()
        elapsed = self.clock() - start
        return Statistics(mean_ns=elapsed / iterations, iterations=iterations)

    def run(
        self,
        descriptor: BenchmarkDescriptor,
        body: BenchmarkBody,
        *,
        on_calibrated: Callable[[], None] | None = None,
    ) -> BenchmarkResult:
        """Time *body* and return a result for *descriptor*."""
        batch, batch_ns = self.calibrate(body)
        if on_calibrated is not None:
            on_calibrated()

        iters_per_ns = batch / batch_ns
        total = max(1, math.ceil(iters_per_ns * self.measurement_ms * 1_000_000))
        stats = self.measure(body, total)
        log.debug(
            "%s: batch=%d total=%d mean=%.1fns",
            descriptor.id,
            batch,
            total,
            stats.mean_ns,
        )
        return BenchmarkResult(
            id=descriptor.id,
            statistics=stats,
            category=descriptor.category,
            name=descriptor.name,
            simd_variant=descriptor.simd_variant,
            timestamp_ms=time.time_ns() // 1_000_000,
            platform=PlatformInfo.detect(),
        )


# ---------------------------------------------------------------------------
# Suite registry
# ---------------------------------------------------------------------------


class BenchmarkSuite:
    """An ordered registry of benchmark bodies."""

    def __init__(
        self,
        name: str,
        *,
        simd_variant: str = "scalar",
        levels: list[SimdLevelInfo] | None = None,
    ) -> None:
        self.name = name
        self.simd_variant = simd_variant
        self.levels = levels or [SimdLevelInfo(id="scalar", name="Scalar")]
        self._entries: dict[str, tuple[BenchmarkDescriptor, BenchmarkBody]] = {}

    def add(self, category: str, name: str, body: BenchmarkBody) -> BenchmarkDescriptor:
        """Register *body* as ``category/name``.

        Raises:
            ValueError: If the id is already registered.
        """
        bench_id = f"{category}/{name}" if category else name
        if bench_id in self._entries:
            raise ValueError(f"Duplicate benchmark id: {bench_id}")
        desc = BenchmarkDescriptor(
            id=bench_id,
            name=name,
            category=category,
            simd_variant=self.simd_variant,
        )
        self._entries[bench_id] = (desc, body)
        return desc

    def benchmark(
        self,
        category: str,
        name: str | None = None,
    ) -> Callable[[BenchmarkBody], BenchmarkBody]:
        """Decorator form of :meth:`add`; the name defaults to the function name."""

        def decorator(fn: BenchmarkBody) -> BenchmarkBody:
            self.add(category, name or fn.__name__, fn)
            return fn

        return decorator

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, bench_id: object) -> bool:
        return bench_id in self._entries

    def list_benchmarks(self) -> list[BenchmarkDescriptor]:
        return [desc for desc, _ in self._entries.values()]

    def run_benchmark(
        self,
        bench_id: str,
        calibration_ms: int,
        measurement_ms: int,
        *,
        on_calibrated: Callable[[], None] | None = None,
    ) -> BenchmarkResult | None:
        """Run one benchmark; None if the id is unknown."""
        entry = self._entries.get(bench_id)
        if entry is None:
            log.warning("Unknown benchmark id %r in suite %s", bench_id, self.name)
            return None
        desc, body = entry
        runner = BenchRunner(calibration_ms=calibration_ms, measurement_ms=measurement_ms)
        return runner.run(desc, body, on_calibrated=on_calibrated)


def load_suite(spec: str) -> BenchmarkSuite:
    """Import a suite from ``"package.module"`` or ``"package.module:attr"``.

    Without an attribute, the module's ``suite`` attribute is used.

    Raises:
        ImportError: If the module cannot be imported.
        TypeError: If the attribute is not a BenchmarkSuite.
    """
    module_name, _, attr = spec.partition(":")
    module = importlib.import_module(module_name)
    suite = getattr(module, attr or "suite", None)
    if not isinstance(suite, BenchmarkSuite):
        raise TypeError(f"{spec} does not name a BenchmarkSuite")
    return suite


def suite_available(spec: str) -> bool:
    """True if the module part of *spec* can be found without importing it."""
    module_name = spec.partition(":")[0]
    try:
        return importlib.util.find_spec(module_name) is not None
    except (ImportError, ValueError):
        return False
