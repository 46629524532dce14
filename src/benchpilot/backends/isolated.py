"""Isolated-context backend: a long-lived worker reached by message passing.

The worker is a thread that owns its own loaded suite.  Nothing is shared
with the caller except plain dict messages::

    caller -> worker    {"type": "load", "request_id": n, "suite": "pkg.mod"}
                        {"type": "list", "request_id": n}
                        {"type": "run", "request_id": n, "id": ..., ...}
                        {"type": "platform", "request_id": n}
    worker -> caller    {"type": "loaded", "request_id": n, "success": bool}
                        {"type": "benchmarks", "request_id": n, "benchmarks": [...]}
                        {"type": "result", "request_id": n, "result": {...} | None}
                        {"type": "platformInfo", "request_id": n, "info": {...}}
                        {"type": "error", "request_id": n, "error": "..."}

Responses are matched to requests through a request-id table, so a late
answer to an abandoned request can never resolve a newer one.  The worker
still executes one message at a time, and the backend keeps the
one-request-in-flight discipline: issuing a second request while one is
outstanding raises ``ConcurrencyViolation`` instead of queueing it.

Each capability level maps to a different suite module; switching levels
reloads the worker.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import queue
import threading
from typing import Any, Callable, Mapping

from benchpilot.backends.base import Backend, check_result
from benchpilot.errors import BackendUnavailable, ConcurrencyViolation, RunFailure
from benchpilot.models import (
    BenchmarkDescriptor,
    BenchmarkResult,
    PlatformInfo,
    SimdLevelInfo,
)
from benchpilot.suite import BenchmarkSuite, load_suite, suite_available

log = logging.getLogger("benchpilot")

Message = dict[str, Any]


# ---------------------------------------------------------------------------
# Worker side
# ---------------------------------------------------------------------------


class WorkerContext:
    """A thread that loads a suite and answers messages about it."""

    def __init__(self, reply: Callable[[Message], None]) -> None:
        self._reply = reply
        self._inbox: queue.Queue[Message | None] = queue.Queue()
        self._suite: BenchmarkSuite | None = None
        self._thread = threading.Thread(
            target=self._serve,
            name="benchpilot-worker",
            daemon=True,
        )

    @property
    def alive(self) -> bool:
        return self._thread.is_alive()

    def start(self) -> None:
        self._thread.start()

    def post(self, message: Message) -> None:
        self._inbox.put(dict(message))

    def stop(self, timeout: float | None = None) -> None:
        """Ask the worker to exit after the message it is handling."""
        self._inbox.put(None)
        if self._thread.is_alive():
            self._thread.join(timeout)

    def _serve(self) -> None:
        while True:
            message = self._inbox.get()
            if message is None:
                return
            rid = message.get("request_id")
            try:
                self._reply(self._handle(message))
            except Exception as exc:  # noqa: BLE001
                log.debug("Worker failed on %s: %s", message.get("type"), exc)
                self._reply({"type": "error", "request_id": rid, "error": str(exc)})

    def _handle(self, message: Message) -> Message:
        kind = message.get("type")
        rid = message.get("request_id")

        if kind == "load":
            try:
                self._suite = load_suite(message["suite"])
            except (ImportError, TypeError) as exc:
                log.error("Worker could not load %s: %s", message["suite"], exc)
                return {"type": "loaded", "request_id": rid, "success": False, "error": str(exc)}
            return {"type": "loaded", "request_id": rid, "success": True}

        if kind == "list":
            benchmarks = self._suite.list_benchmarks() if self._suite else []
            return {
                "type": "benchmarks",
                "request_id": rid,
                "benchmarks": [b.to_dict() for b in benchmarks],
            }

        if kind == "platform":
            return {
                "type": "platformInfo",
                "request_id": rid,
                "info": PlatformInfo.detect().to_dict(),
            }

        if kind == "run":
            if self._suite is None:
                return {"type": "error", "request_id": rid, "error": "suite not loaded"}
            result = self._suite.run_benchmark(
                message["id"],
                message["calibration_ms"],
                message["measurement_ms"],
            )
            return {
                "type": "result",
                "request_id": rid,
                "result": result.to_dict() if result is not None else None,
            }

        return {"type": "error", "request_id": rid, "error": f"unknown message type {kind!r}"}


# ---------------------------------------------------------------------------
# Caller side
# ---------------------------------------------------------------------------


class IsolatedContextBackend(Backend):
    """Backend that runs a suite inside a worker context.

    Args:
        levels: Capability level id -> suite spec (``"pkg.mod[:attr]"``),
            best level first.
        level: Level to load on first use.  Defaults to the best
            available one.
        max_in_flight: Outstanding requests allowed at once.
    """

    kind = "isolated"

    def __init__(
        self,
        levels: Mapping[str, str],
        *,
        level: str | None = None,
        max_in_flight: int = 1,
    ) -> None:
        if not levels:
            raise ValueError("IsolatedContextBackend needs at least one level")
        self.levels = dict(levels)
        self.level: str | None = None
        self.max_in_flight = max_in_flight
        self._initial_level = level
        self._worker: WorkerContext | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._pending: dict[int, asyncio.Future[Message]] = {}
        self._request_ids = itertools.count(1)

    # -- plumbing -----------------------------------------------------------

    @property
    def in_flight(self) -> int:
        return len(self._pending)

    def available_levels(self) -> list[str]:
        """Configured levels whose suite module can be found."""
        return [lvl for lvl, spec in self.levels.items() if suite_available(spec)]

    def _spawn(self) -> None:
        if self._worker is not None and self._worker.alive:
            return
        self._loop = asyncio.get_running_loop()
        self._worker = WorkerContext(self._deliver)
        self._worker.start()

    def _deliver(self, message: Message) -> None:
        # Runs on the worker thread.
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._on_message, message)
        except RuntimeError:
            log.debug("Event loop gone; dropping %s", message.get("type"))

    def _on_message(self, message: Message) -> None:
        rid = message.get("request_id")
        fut = self._pending.get(rid) if isinstance(rid, int) else None
        if fut is None or fut.done():
            log.debug("Dropping %s for unknown request %r", message.get("type"), rid)
            return
        if message.get("type") == "error":
            fut.set_exception(RunFailure(message.get("error") or "worker error"))
        else:
            fut.set_result(message)

    def _fail_pending(self, reason: str) -> None:
        for fut in self._pending.values():
            if not fut.done():
                fut.set_exception(BackendUnavailable(reason))

    async def _request(self, kind: str, *, exclusive: bool = True, **payload: Any) -> Message:
        if self._worker is None or self._loop is None:
            raise BackendUnavailable("worker context is not running")
        if exclusive and len(self._pending) >= self.max_in_flight:
            raise ConcurrencyViolation(
                f"{kind!r} requested while {len(self._pending)} request(s) are outstanding"
            )
        rid = next(self._request_ids)
        fut: asyncio.Future[Message] = self._loop.create_future()
        self._pending[rid] = fut
        self._worker.post({"type": kind, "request_id": rid, **payload})
        try:
            return await fut
        finally:
            self._pending.pop(rid, None)

    async def _ensure_loaded(self) -> None:
        if self.level is not None and self._worker is not None and self._worker.alive:
            return
        if not await self.reload(self._initial_level):
            raise BackendUnavailable("no suite could be loaded in the worker context")

    # -- Backend API --------------------------------------------------------

    async def reload(self, level: str | None) -> bool:
        """Load the suite for *level* into the worker.

        Requests still outstanding fail with ``BackendUnavailable``.
        """
        if level is None:
            available = self.available_levels()
            level = available[0] if available else next(iter(self.levels))
        spec = self.levels.get(level)
        if spec is None:
            log.warning("Unknown level %r (have: %s)", level, ", ".join(self.levels))
            return False

        self._spawn()
        self._fail_pending("worker context reloaded")
        reply = await self._request("load", exclusive=False, suite=spec)
        success = bool(reply.get("success"))
        if success:
            self.level = level
            log.info("Worker context loaded %s (%s)", level, spec)
        else:
            log.error("Worker context failed to load %s: %s", level, reply.get("error", ""))
        return success

    async def list_benchmarks(self) -> list[BenchmarkDescriptor]:
        await self._ensure_loaded()
        reply = await self._request("list")
        return [BenchmarkDescriptor.from_dict(d) for d in reply.get("benchmarks", [])]

    async def run_benchmark(
        self,
        benchmark_id: str,
        simd_level: str | None,
        calibration_ms: int,
        measurement_ms: int,
    ) -> BenchmarkResult | None:
        # The level is baked into the loaded suite; *simd_level* is informational.
        await self._ensure_loaded()
        reply = await self._request(
            "run",
            id=benchmark_id,
            calibration_ms=calibration_ms,
            measurement_ms=measurement_ms,
        )
        return check_result(benchmark_id, reply.get("result"))

    async def simd_levels(self) -> list[SimdLevelInfo]:
        return [SimdLevelInfo(id=lvl, name=lvl) for lvl in self.available_levels()]

    async def platform_info(self) -> PlatformInfo:
        await self._ensure_loaded()
        reply = await self._request("platform")
        return PlatformInfo.from_dict(reply.get("info", {}))

    async def close(self) -> None:
        self._fail_pending("worker context closed")
        worker, self._worker = self._worker, None
        self.level = None
        if worker is not None:
            await asyncio.to_thread(worker.stop, 5.0)
