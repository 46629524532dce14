"""Run orchestration: queue, phase state machine, cancellation.

The orchestrator owns a ``RunSession`` and is the only thing that mutates
its run state.  A run walks the requested ids strictly in order, one at a
time::

    for each id:
        stop here if cancellation was requested
        dequeue, mark active + CALIBRATING, publish
        start the advisory phase timer
        yield once so observers can render the new state
        await the backend call (through the timeout strategy)
        stop the timer, store the result or log the failure
        clear active, publish

The phase timer is cosmetic.  It flips the active id to MEASURING after
``calibration_ms`` so progress displays have something to show; the
backend does its own calibrate/measure split and returns one result.

Cancellation is cooperative.  It is checked only between ids, so the
backend call already in flight always finishes and keeps its result.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable, Sequence

from benchpilot.backends.base import Backend
from benchpilot.errors import BackendUnavailable, ConcurrencyViolation, RunFailure
from benchpilot.models import BenchmarkDescriptor, BenchmarkResult, TimingConfig
from benchpilot.session import Phase, RunSession

log = logging.getLogger("benchpilot")

Notify = Callable[[str], None]


# ---------------------------------------------------------------------------
# Timeout strategies
# ---------------------------------------------------------------------------


class NoTimeout:
    """Await the backend for as long as it takes."""

    async def run(self, call: Awaitable[Any]) -> Any:
        return await call

    def __repr__(self) -> str:
        return "NoTimeout()"


class FixedTimeout:
    """Give up on a backend call after *seconds*.

    A timed-out call counts as a failure of that benchmark.  The work may
    still be running on the backend side; only the wait is abandoned.
    """

    def __init__(self, seconds: float) -> None:
        if seconds <= 0:
            raise ValueError("timeout must be positive")
        self.seconds = seconds

    async def run(self, call: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(call, self.seconds)
        except asyncio.TimeoutError as exc:
            raise RunFailure(f"backend call timed out after {self.seconds:g}s") from exc

    def __repr__(self) -> str:
        return f"FixedTimeout({self.seconds:g})"


TimeoutStrategy = NoTimeout | FixedTimeout


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------


def select_run_ids(
    benchmarks: Sequence[BenchmarkDescriptor],
    selected: Iterable[str] = (),
    category: str | None = None,
) -> list[str]:
    """Ids to run, in listed order.

    Args:
        benchmarks: Benchmarks in display order.
        selected: Ids the user picked.  The order they were picked in is
            ignored.  Empty means every visible benchmark.
        category: Only benchmarks in this category (or below it) are
            visible.

    Returns:
        The ids to pass to ``Orchestrator.start_run``.
    """
    visible = [b for b in benchmarks if b.in_category(category)]
    wanted = set(selected)
    if not wanted:
        return [b.id for b in visible]
    return [b.id for b in visible if b.id in wanted]


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class Orchestrator:
    """Drive a backend through sequential benchmark runs.

    Args:
        backend: Where benchmarks execute.
        session: Run state to publish through.  A fresh one by default.
        timing: Default phase budgets for runs.
        timeout: Timeout strategy for each backend call.  ``NoTimeout`` by
            default, so a hung backend hangs the run.
        notify: Called with a short message for user-visible notices.
    """

    def __init__(
        self,
        backend: Backend,
        session: RunSession | None = None,
        *,
        timing: TimingConfig | None = None,
        timeout: TimeoutStrategy | None = None,
        notify: Notify | None = None,
    ) -> None:
        self.backend = backend
        self.session = session if session is not None else RunSession()
        self.timing = timing or TimingConfig()
        self.timeout = timeout or NoTimeout()
        self.notices: list[str] = []
        self._notify = notify
        self._phase_timer: asyncio.TimerHandle | None = None
        self._reconfiguring = False

    # -- notices ------------------------------------------------------------

    def _notice(self, message: str) -> None:
        self.notices.append(message)
        if self._notify is not None:
            self._notify(message)

    # -- listing ------------------------------------------------------------

    async def refresh_benchmarks(self) -> list[BenchmarkDescriptor]:
        """Ask the backend for its benchmarks and publish them.

        A backend failure yields an empty list and a notice.  Nothing is
        retried.
        """
        try:
            benchmarks = await self.backend.list_benchmarks()
        except BackendUnavailable as exc:
            log.error("No backend available: %s", exc)
            self._notice(f"Backend unavailable: {exc}")
            benchmarks = []
        except Exception as exc:  # noqa: BLE001
            log.error("Listing benchmarks failed: %s", exc)
            self._notice(f"Could not list benchmarks: {exc}")
            benchmarks = []

        self.session.benchmarks = list(benchmarks)
        self.session.publish()
        log.info("%d benchmark(s) available from %s backend", len(benchmarks), self.backend.kind)
        return list(benchmarks)

    # -- running ------------------------------------------------------------

    async def start_run(
        self,
        ids: Sequence[str],
        timing: TimingConfig | None = None,
    ) -> bool:
        """Run *ids* in the given order.

        Returns:
            False if the call was rejected (a run is active or *ids* is
            empty), True once the run has settled.
        """
        session = self.session
        if session.is_running or self._reconfiguring:
            busy = "a run is already active" if session.is_running else "backend is reconfiguring"
            log.warning("Ignoring run request: %s", ConcurrencyViolation(busy))
            return False
        ids = list(dict.fromkeys(ids))
        if not ids:
            log.debug("Ignoring run request with no benchmarks")
            return False

        timing = timing or self.timing
        session.is_running = True
        session.cancel_requested = False
        session.requested_ids = ids
        for bench_id in ids:
            session.results.pop(bench_id, None)
        session.queued = set(ids)
        session.publish()
        log.info(
            "Running %d benchmark(s) (calibration %dms, measurement %dms)",
            len(ids),
            timing.calibration_ms,
            timing.measurement_ms,
        )

        completed = failed = 0
        try:
            for bench_id in ids:
                if session.cancel_requested:
                    log.info("Run cancelled; %d benchmark(s) not started", len(session.queued))
                    break
                if await self._run_one(bench_id, timing):
                    completed += 1
                else:
                    failed += 1
        finally:
            self._cancel_phase_timer()
            session.active_id = None
            session.phase = None
            session.queued.clear()
            session.cancel_requested = False
            session.is_running = False
            session.publish()

        log.info("Run finished: %d completed, %d failed", completed, failed)
        return True

    async def _run_one(self, bench_id: str, timing: TimingConfig) -> bool:
        session = self.session
        session.queued.discard(bench_id)
        session.active_id = bench_id
        session.phase = Phase.CALIBRATING
        session.publish()

        loop = asyncio.get_running_loop()
        self._phase_timer = loop.call_later(
            timing.calibration_ms / 1000,
            self._advance_phase,
            bench_id,
        )
        await asyncio.sleep(0)

        result: BenchmarkResult | None = None
        try:
            result = await self.timeout.run(
                self.backend.run_benchmark(
                    bench_id,
                    session.simd_level,
                    timing.calibration_ms,
                    timing.measurement_ms,
                )
            )
            if result is None:
                log.error("%s: backend returned no result", bench_id)
        except BackendUnavailable as exc:
            log.error("%s: backend unavailable: %s", bench_id, exc)
            self._notice(f"Backend unavailable: {exc}")
        except Exception as exc:  # noqa: BLE001
            log.error("%s: run failed: %s", bench_id, exc)
        finally:
            self._cancel_phase_timer()

        if result is not None:
            session.results[bench_id] = result
            log.debug("%s: mean %.1fns", bench_id, result.mean_ns)
        session.active_id = None
        session.phase = None
        session.publish()
        return result is not None

    def _advance_phase(self, bench_id: str) -> None:
        self._phase_timer = None
        session = self.session
        if session.active_id == bench_id and session.phase is Phase.CALIBRATING:
            session.phase = Phase.MEASURING
            session.publish()

    def _cancel_phase_timer(self) -> None:
        if self._phase_timer is not None:
            self._phase_timer.cancel()
            self._phase_timer = None

    def request_cancel(self) -> bool:
        """Stop the run after the benchmark currently executing.

        Returns:
            True if a run was active and will stop.
        """
        if not self.session.is_running:
            return False
        if not self.session.cancel_requested:
            log.info("Cancellation requested")
            self.session.cancel_requested = True
            self.session.publish()
        return True

    # -- reconfiguration ----------------------------------------------------

    async def reconfigure(
        self,
        level: str | None = None,
        backend: Backend | None = None,
    ) -> bool:
        """Switch capability level and/or backend, then re-list benchmarks.

        Rejected while a run is active or another reconfiguration is in
        progress.  Runs requested before this returns are rejected too.
        Results from earlier runs are kept.

        Returns:
            True if the backend reported ready at *level*.
        """
        if self.session.is_running or self._reconfiguring:
            busy = "a run is active" if self.session.is_running else "already reconfiguring"
            log.warning("Ignoring reconfiguration: %s", ConcurrencyViolation(busy))
            return False

        self._reconfiguring = True
        try:
            return await self._reconfigure(level, backend)
        finally:
            self._reconfiguring = False

    async def _reconfigure(self, level: str | None, backend: Backend | None) -> bool:
        target = backend or self.backend
        try:
            ok = await target.reload(level)
        except Exception as exc:  # noqa: BLE001
            log.error("Reconfiguring %s backend failed: %s", target.kind, exc)
            ok = False
        if not ok:
            self._notice(f"Could not switch {target.kind} backend to level {level or 'default'}")
            return False

        if self.session.is_running:
            log.warning(
                "Not committing reconfiguration: %s",
                ConcurrencyViolation("a run started during reload"),
            )
            return False

        if backend is not None and backend is not self.backend:
            previous, self.backend = self.backend, backend
            log.info("Switched backend %s -> %s", previous.kind, backend.kind)
        self.session.simd_level = level
        await self.refresh_benchmarks()
        return True
