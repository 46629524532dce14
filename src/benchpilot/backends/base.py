"""The contract every execution backend implements."""

from __future__ import annotations

import abc
from typing import Any

from benchpilot.errors import RunFailure
from benchpilot.models import (
    BenchmarkDescriptor,
    BenchmarkResult,
    PlatformInfo,
    SimdLevelInfo,
)


class Backend(abc.ABC):
    """An execution backend.

    All operations are coroutines.  A backend may be slow (a run can take
    seconds) but must either return a result for the requested id, return
    None, or raise; it never returns a result for a different id.
    """

    #: Short name used in logs and the CLI ("command", "isolated").
    kind: str = ""

    @abc.abstractmethod
    async def list_benchmarks(self) -> list[BenchmarkDescriptor]:
        """List the benchmarks the backend can run, in display order."""

    @abc.abstractmethod
    async def run_benchmark(
        self,
        benchmark_id: str,
        simd_level: str | None,
        calibration_ms: int,
        measurement_ms: int,
    ) -> BenchmarkResult | None:
        """Run one benchmark to completion."""

    @abc.abstractmethod
    async def simd_levels(self) -> list[SimdLevelInfo]:
        """Capability levels on offer, best first."""

    @abc.abstractmethod
    async def platform_info(self) -> PlatformInfo:
        """Describe where benchmarks execute."""

    @abc.abstractmethod
    async def reload(self, level: str | None) -> bool:
        """Switch to capability *level*.

        Outstanding requests do not survive a reload.  Callers must await
        this before issuing new requests.

        Returns:
            True if the backend is ready at the requested level.
        """

    async def close(self) -> None:  # noqa: B027
        """Release any resources held by the backend."""


def check_result(benchmark_id: str, payload: Any) -> BenchmarkResult | None:
    """Turn a raw response into a BenchmarkResult for *benchmark_id*.

    Args:
        benchmark_id: The id that was requested.
        payload: A dict (or None) received from the backend.

    Returns:
        The result, or None if the backend produced none.

    Raises:
        RunFailure: If the payload is malformed or belongs to another id.
    """
    if payload is None:
        return None
    if isinstance(payload, BenchmarkResult):
        result = payload
    elif isinstance(payload, dict):
        try:
            result = BenchmarkResult.from_dict(payload)
        except (KeyError, TypeError, ValueError) as exc:
            raise RunFailure(
                f"Malformed result for {benchmark_id}: {exc!r}",
                benchmark_id=benchmark_id,
            ) from exc
    else:
        raise RunFailure(
            f"Unexpected result type for {benchmark_id}: {type(payload).__name__}",
            benchmark_id=benchmark_id,
        )

    if result.id != benchmark_id:
        raise RunFailure(
            f"Backend returned a result for {result.id!r} when {benchmark_id!r} was requested",
            benchmark_id=benchmark_id,
        )
    return result
