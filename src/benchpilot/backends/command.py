"""Command-channel backend: one synchronous request/response per operation.

The benchmarks execute out of process.  Each call sends a command name
and a JSON argument object over a *transport* and blocks until the other
side answers with a JSON value.  Two transports are provided:

- ``SubprocessTransport`` spawns a command per request
  (by default ``python -m benchpilot invoke --suite MODULE``).
- ``HttpTransport`` POSTs to ``<base_url>/<command>``.

Commands understood by the other side (see ``dispatch_command``)::

    list_benchmarks     {}                                   -> [descriptor, ...]
    run_benchmark       {id, simd_level, calibration_ms,
                         measurement_ms}                     -> result | null
    get_simd_levels     {}                                   -> [{id, name}, ...]
    get_platform_info   {}                                   -> {arch, os, simd_features}
"""

from __future__ import annotations

import asyncio
import json
import logging
import subprocess
import sys
from typing import Any, Protocol

import requests

from benchpilot.backends.base import Backend, check_result
from benchpilot.errors import BackendUnavailable, RunFailure
from benchpilot.models import (
    DEFAULT_CALIBRATION_MS,
    DEFAULT_MEASUREMENT_MS,
    BenchmarkDescriptor,
    BenchmarkResult,
    PlatformInfo,
    SimdLevelInfo,
)
from benchpilot.suite import BenchmarkSuite

log = logging.getLogger("benchpilot")

COMMANDS = ("list_benchmarks", "run_benchmark", "get_simd_levels", "get_platform_info")


# ---------------------------------------------------------------------------
# Transports
# ---------------------------------------------------------------------------


class Transport(Protocol):
    """Blocking request/response channel."""

    def invoke(self, command: str, args: dict[str, Any]) -> Any: ...


class SubprocessTransport:
    """Run one process per command and read its JSON answer from stdout."""

    def __init__(
        self,
        argv: list[str],
        *,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
    ) -> None:
        if not argv:
            raise ValueError("SubprocessTransport needs a non-empty argv")
        self.argv = list(argv)
        self.env = env
        self.cwd = cwd

    @classmethod
    def for_suite(cls, suite: str) -> SubprocessTransport:
        """Transport that serves *suite* through ``benchpilot invoke``."""
        return cls([sys.executable, "-m", "benchpilot", "invoke", "--suite", suite])

    def invoke(self, command: str, args: dict[str, Any]) -> Any:
        cmd = self.argv + [command, "--args", json.dumps(args)]
        log.debug("Invoking %s", " ".join(cmd))
        try:
            proc = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                env=self.env,
                cwd=self.cwd,
            )
        except OSError as exc:
            raise BackendUnavailable(f"Cannot start {self.argv[0]}: {exc}") from exc

        if proc.returncode != 0:
            tail = proc.stderr.strip().splitlines()[-1:] or ["no output"]
            raise RunFailure(f"{command} exited with code {proc.returncode}: {tail[0]}")

        try:
            return json.loads(proc.stdout)
        except ValueError as exc:
            raise RunFailure(f"{command} produced invalid JSON: {exc}") from exc


class HttpTransport:
    """POST each command to an HTTP endpoint."""

    def __init__(
        self,
        base_url: str,
        *,
        session: requests.Session | None = None,
        connect_timeout: float = 10.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        # Only the connection is bounded; a run may legitimately take long.
        self.connect_timeout = connect_timeout

    def invoke(self, command: str, args: dict[str, Any]) -> Any:
        url = f"{self.base_url}/{command}"
        try:
            resp = self.session.post(url, json=args, timeout=(self.connect_timeout, None))
        except requests.ConnectionError as exc:
            raise BackendUnavailable(f"Cannot reach {url}: {exc}") from exc
        except requests.RequestException as exc:
            raise RunFailure(f"Request to {url} failed: {exc}") from exc

        if resp.status_code != 200:
            raise RunFailure(f"{url} returned HTTP {resp.status_code}")

        try:
            return resp.json()
        except (ValueError, requests.JSONDecodeError) as exc:
            raise RunFailure(f"Invalid JSON from {url}") from exc


# ---------------------------------------------------------------------------
# Backend
# ---------------------------------------------------------------------------


class CommandChannelBackend(Backend):
    """Backend that drives an out-of-process benchmark host."""

    kind = "command"

    def __init__(self, transport: Transport, *, level: str | None = None) -> None:
        self.transport = transport
        self.level = level
        # The host runs one benchmark at a time.
        self._lock = asyncio.Lock()

    async def _invoke(self, command: str, **args: Any) -> Any:
        return await asyncio.to_thread(self.transport.invoke, command, args)

    async def list_benchmarks(self) -> list[BenchmarkDescriptor]:
        data = await self._invoke("list_benchmarks")
        if not isinstance(data, list):
            raise RunFailure("list_benchmarks did not return a list")
        return [BenchmarkDescriptor.from_dict(d) for d in data]

    async def run_benchmark(
        self,
        benchmark_id: str,
        simd_level: str | None,
        calibration_ms: int,
        measurement_ms: int,
    ) -> BenchmarkResult | None:
        async with self._lock:
            payload = await self._invoke(
                "run_benchmark",
                id=benchmark_id,
                simd_level=simd_level or self.level,
                calibration_ms=calibration_ms,
                measurement_ms=measurement_ms,
            )
        return check_result(benchmark_id, payload)

    async def simd_levels(self) -> list[SimdLevelInfo]:
        data = await self._invoke("get_simd_levels")
        return [SimdLevelInfo.from_dict(d) for d in data or []]

    async def platform_info(self) -> PlatformInfo:
        return PlatformInfo.from_dict(await self._invoke("get_platform_info") or {})

    async def reload(self, level: str | None) -> bool:
        """Select *level* for subsequent runs.

        The host applies the level per run, so nothing is restarted; the
        level only has to be one the host offers.
        """
        if level is None:
            self.level = None
            return True
        try:
            offered = {lvl.id for lvl in await self.simd_levels()}
        except (BackendUnavailable, RunFailure) as exc:
            log.error("Cannot query capability levels: %s", exc)
            return False
        if level not in offered:
            log.warning("Level %r not offered (have: %s)", level, ", ".join(sorted(offered)))
            return False
        self.level = level
        return True


# ---------------------------------------------------------------------------
# Host side
# ---------------------------------------------------------------------------


def dispatch_command(suite: BenchmarkSuite, command: str, args: dict[str, Any]) -> Any:
    """Answer one command against *suite* with a JSON-compatible value.

    Raises:
        ValueError: For an unknown command or missing arguments.
    """
    if command == "list_benchmarks":
        return [d.to_dict() for d in suite.list_benchmarks()]
    if command == "get_simd_levels":
        return [lvl.to_dict() for lvl in suite.levels]
    if command == "get_platform_info":
        return PlatformInfo.detect().to_dict()
    if command == "run_benchmark":
        if "id" not in args:
            raise ValueError("run_benchmark needs an 'id'")
        result = suite.run_benchmark(
            args["id"],
            int(args.get("calibration_ms", DEFAULT_CALIBRATION_MS)),
            int(args.get("measurement_ms", DEFAULT_MEASUREMENT_MS)),
        )
        return result.to_dict() if result is not None else None
    raise ValueError(f"Unknown command {command!r}; expected one of {', '.join(COMMANDS)}")
