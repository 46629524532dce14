"""Tests for benchpilot.orchestrator — run queue, phases, cancellation."""

from __future__ import annotations

import asyncio
import unittest

from benchpilot.backends.isolated import IsolatedContextBackend
from benchpilot.errors import BackendUnavailable
from benchpilot.models import TimingConfig
from benchpilot.orchestrator import FixedTimeout, NoTimeout, Orchestrator, select_run_ids
from benchpilot.session import Phase, RunSession, RunSnapshot

from orch_test_helpers import (
    DEFAULT_IDS,
    FakeBackend,
    UnavailableBackend,
    make_descriptor,
    make_result,
)

SLOW_SUITE = "orch_test_helpers:slow_suite"


class OrchestratorTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.backend = FakeBackend()
        self.orch = Orchestrator(self.backend)
        self.snaps: list[RunSnapshot] = []
        self.orch.session.subscribe(self.snaps.append)


# ---------------------------------------------------------------------------
# start_run
# ---------------------------------------------------------------------------


class TestStartRun(OrchestratorTestCase):
    async def test_every_id_gets_a_result(self) -> None:
        ok = await self.orch.start_run(DEFAULT_IDS)
        self.assertTrue(ok)
        session = self.orch.session
        self.assertEqual(set(session.results), set(DEFAULT_IDS))
        self.assertFalse(session.is_running)
        self.assertEqual(session.queued, set())
        self.assertIsNone(session.active_id)
        self.assertIsNone(session.phase)

    async def test_runs_in_given_order(self) -> None:
        ids = list(reversed(DEFAULT_IDS))
        await self.orch.start_run(ids)
        self.assertEqual(self.backend.calls, ids)

    async def test_empty_run_is_rejected(self) -> None:
        self.assertFalse(await self.orch.start_run([]))
        self.assertEqual(self.backend.calls, [])
        self.assertFalse(self.orch.session.is_running)

    async def test_duplicate_ids_run_once(self) -> None:
        await self.orch.start_run(["hash/sha256", "hash/sha256"])
        self.assertEqual(self.backend.calls, ["hash/sha256"])

    async def test_second_run_while_active_is_noop(self) -> None:
        gate = asyncio.Event()
        self.backend.gates["text/json/dumps"] = gate
        task = asyncio.create_task(self.orch.start_run(["text/json/dumps", "hash/sha256"]))
        await asyncio.sleep(0.01)
        self.assertTrue(self.orch.session.is_running)

        with self.assertLogs("benchpilot", "WARNING"):
            rejected = await self.orch.start_run(["text/regex/findall"])
        self.assertFalse(rejected)

        gate.set()
        self.assertTrue(await task)
        self.assertEqual(self.backend.calls, ["text/json/dumps", "hash/sha256"])
        self.assertNotIn("text/regex/findall", self.orch.session.results)

    async def test_passes_timing_and_level(self) -> None:
        self.orch.session.simd_level = "scalar"
        timing = TimingConfig(calibration_ms=150, measurement_ms=300)
        await self.orch.start_run(["hash/sha256"], timing)
        self.assertEqual(self.backend.run_args, [("hash/sha256", "scalar", 150, 300)])

    async def test_default_timing(self) -> None:
        await self.orch.start_run(["hash/sha256"])
        self.assertEqual(self.backend.run_args[0][2:], (100, 250))

    async def test_failures_do_not_abort_the_run(self) -> None:
        self.backend.fail_ids = {"text/json/loads"}
        self.backend.none_ids = {"text/regex/findall"}
        with self.assertLogs("benchpilot", "ERROR") as logs:
            ok = await self.orch.start_run(DEFAULT_IDS)
        self.assertTrue(ok)
        self.assertEqual(self.backend.calls, DEFAULT_IDS)
        self.assertEqual(
            set(self.orch.session.results), {"text/json/dumps", "hash/sha256"}
        )
        self.assertTrue(any("text/json/loads" in line for line in logs.output))
        self.assertFalse(self.orch.session.is_running)

    async def test_backend_unavailable_mid_run_is_a_notice(self) -> None:
        def drop(bench_id: str) -> None:
            if bench_id == "text/json/loads":
                raise BackendUnavailable("gone")

        self.backend.on_run = drop
        with self.assertLogs("benchpilot", "ERROR"):
            await self.orch.start_run(DEFAULT_IDS)
        self.assertEqual(len(self.orch.notices), 1)
        self.assertNotIn("text/json/loads", self.orch.session.results)
        self.assertIn("hash/sha256", self.orch.session.results)

    async def test_rerun_clears_previous_results_first(self) -> None:
        await self.orch.start_run(DEFAULT_IDS)
        gate = asyncio.Event()
        self.backend.gates["text/json/dumps"] = gate
        task = asyncio.create_task(self.orch.start_run(["text/json/dumps", "text/json/loads"]))
        await asyncio.sleep(0.01)

        results = self.orch.session.results
        self.assertNotIn("text/json/dumps", results)
        self.assertNotIn("text/json/loads", results)
        # Ids outside this run keep their results.
        self.assertIn("hash/sha256", results)

        gate.set()
        await task

    async def test_rerun_drops_results_of_ids_that_fail(self) -> None:
        await self.orch.start_run(DEFAULT_IDS)
        self.assertEqual(set(self.orch.session.results), set(DEFAULT_IDS))

        self.backend.fail_ids = {"text/json/loads"}
        self.backend.none_ids = {"text/regex/findall"}
        with self.assertLogs("benchpilot", "ERROR"):
            self.assertTrue(await self.orch.start_run(DEFAULT_IDS[:3]))

        results = self.orch.session.results
        self.assertNotIn("text/json/loads", results)
        self.assertNotIn("text/regex/findall", results)
        self.assertIn("text/json/dumps", results)
        # Not part of the re-run, so the earlier result stays.
        self.assertIn("hash/sha256", results)
        snap = self.orch.session.snapshot()
        self.assertEqual(snap.status_of("text/json/loads"), "idle")

    async def test_results_belong_to_their_id(self) -> None:
        self.backend.means = {i: float(n + 1) for n, i in enumerate(DEFAULT_IDS)}
        await self.orch.start_run(DEFAULT_IDS)
        for bench_id, result in self.orch.session.results.items():
            self.assertEqual(result.id, bench_id)
            self.assertEqual(result.mean_ns, self.backend.means[bench_id])

    async def test_observer_failure_does_not_break_run(self) -> None:
        def broken(snap: RunSnapshot) -> None:
            raise RuntimeError("observer bug")

        self.orch.session.subscribe(broken)
        with self.assertLogs("benchpilot", "ERROR"):
            ok = await self.orch.start_run(["hash/sha256"])
        self.assertTrue(ok)
        self.assertIn("hash/sha256", self.orch.session.results)

    async def test_publishes_queue_then_active_states(self) -> None:
        await self.orch.start_run(["text/json/dumps", "hash/sha256"])
        first = self.snaps[0]
        self.assertTrue(first.is_running)
        self.assertEqual(first.queued, frozenset({"text/json/dumps", "hash/sha256"}))
        self.assertEqual(first.status_of("hash/sha256"), "queued")

        active = [s for s in self.snaps if s.active_id == "text/json/dumps"]
        self.assertEqual(active[0].phase, Phase.CALIBRATING)
        self.assertNotIn("text/json/dumps", active[0].queued)

        last = self.snaps[-1]
        self.assertFalse(last.is_running)
        self.assertEqual(last.status_of("hash/sha256"), "done")

    async def test_calibrating_state_published_before_backend_call(self) -> None:
        events: list[tuple[str, str | None]] = []
        self.orch.session.subscribe(
            lambda s: events.append(("snap", s.phase.value if s.phase else None))
        )
        self.backend.on_run = lambda bench_id: events.append(("run", bench_id))
        await self.orch.start_run(["hash/sha256"])
        self.assertLess(
            events.index(("snap", "calibrating")),
            events.index(("run", "hash/sha256")),
        )


# ---------------------------------------------------------------------------
# Phase timer
# ---------------------------------------------------------------------------


class TestPhaseTimer(OrchestratorTestCase):
    async def test_flips_to_measuring_while_active(self) -> None:
        gate = asyncio.Event()
        self.backend.gates["hash/sha256"] = gate
        timing = TimingConfig(calibration_ms=10, measurement_ms=10)
        task = asyncio.create_task(self.orch.start_run(["hash/sha256"], timing))
        await asyncio.sleep(0.1)

        self.assertEqual(self.orch.session.phase, Phase.MEASURING)
        self.assertEqual(self.orch.session.snapshot().status_of("hash/sha256"), "measuring")
        gate.set()
        await task
        self.assertIsNone(self.orch.session.phase)

    async def test_never_fires_after_benchmark_finished(self) -> None:
        timing = TimingConfig(calibration_ms=20, measurement_ms=20)
        await self.orch.start_run(["hash/sha256"], timing)
        await asyncio.sleep(0.06)
        self.assertIsNone(self.orch.session.phase)
        self.assertFalse(any(s.phase is Phase.MEASURING for s in self.snaps))

    async def test_stale_timer_ignored_for_other_id(self) -> None:
        self.orch.session.active_id = "other"
        self.orch.session.phase = Phase.CALIBRATING
        self.orch._advance_phase("hash/sha256")
        self.assertEqual(self.orch.session.phase, Phase.CALIBRATING)


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestCancel(OrchestratorTestCase):
    async def test_cancel_when_idle_is_rejected(self) -> None:
        self.assertFalse(self.orch.request_cancel())
        self.assertFalse(self.orch.session.cancel_requested)

    async def test_active_id_finishes_and_later_ids_never_run(self) -> None:
        cancel_results: list[bool] = []

        def cancel_on_second(bench_id: str) -> None:
            if bench_id == DEFAULT_IDS[1]:
                cancel_results.append(self.orch.request_cancel())

        self.backend.on_run = cancel_on_second
        await self.orch.start_run(DEFAULT_IDS)

        self.assertEqual(cancel_results, [True])
        self.assertEqual(self.backend.calls, DEFAULT_IDS[:2])
        results = self.orch.session.results
        self.assertEqual(set(results), set(DEFAULT_IDS[:2]))
        session = self.orch.session
        self.assertFalse(session.cancel_requested)
        self.assertFalse(session.is_running)
        self.assertEqual(session.queued, set())

    async def test_cancelled_rerun_leaves_no_stale_results(self) -> None:
        await self.orch.start_run(DEFAULT_IDS)
        self.backend.on_run = lambda bench_id: self.orch.request_cancel()
        await self.orch.start_run(DEFAULT_IDS)
        self.assertEqual(set(self.orch.session.results), {DEFAULT_IDS[0]})

    async def test_in_flight_call_drains(self) -> None:
        gate = asyncio.Event()
        self.backend.gates[DEFAULT_IDS[0]] = gate
        task = asyncio.create_task(self.orch.start_run(DEFAULT_IDS))
        await asyncio.sleep(0.01)
        self.assertTrue(self.orch.request_cancel())
        self.assertTrue(self.orch.session.snapshot().cancel_requested)
        gate.set()
        await task
        self.assertEqual(list(self.orch.session.results), [DEFAULT_IDS[0]])

    async def test_new_run_after_cancel_starts_clean(self) -> None:
        self.backend.on_run = lambda bench_id: self.orch.request_cancel()
        await self.orch.start_run(DEFAULT_IDS)
        self.backend.on_run = None
        await self.orch.start_run(DEFAULT_IDS)
        self.assertEqual(set(self.orch.session.results), set(DEFAULT_IDS))


# ---------------------------------------------------------------------------
# Timeouts
# ---------------------------------------------------------------------------


class TestTimeouts(unittest.IsolatedAsyncioTestCase):
    async def test_no_timeout_is_default(self) -> None:
        orch = Orchestrator(FakeBackend())
        self.assertIsInstance(orch.timeout, NoTimeout)

    async def test_fixed_timeout_counts_as_failure(self) -> None:
        backend = FakeBackend()
        backend.gates[DEFAULT_IDS[0]] = asyncio.Event()  # never set
        orch = Orchestrator(backend, timeout=FixedTimeout(0.05))
        with self.assertLogs("benchpilot", "ERROR") as logs:
            await orch.start_run(DEFAULT_IDS[:2])
        self.assertEqual(list(orch.session.results), [DEFAULT_IDS[1]])
        self.assertTrue(any("timed out" in line for line in logs.output))

    def test_fixed_timeout_must_be_positive(self) -> None:
        with self.assertRaises(ValueError):
            FixedTimeout(0)


# ---------------------------------------------------------------------------
# Listing and reconfiguration
# ---------------------------------------------------------------------------


class TestRefreshBenchmarks(unittest.IsolatedAsyncioTestCase):
    async def test_lists_and_publishes(self) -> None:
        orch = Orchestrator(FakeBackend())
        snaps: list[RunSnapshot] = []
        orch.session.subscribe(snaps.append)
        benchmarks = await orch.refresh_benchmarks()
        self.assertEqual([b.id for b in benchmarks], DEFAULT_IDS)
        self.assertEqual([b.id for b in snaps[-1].benchmarks], DEFAULT_IDS)

    async def test_unavailable_backend_gives_empty_list_and_notice(self) -> None:
        notices: list[str] = []
        orch = Orchestrator(UnavailableBackend(), notify=notices.append)
        with self.assertLogs("benchpilot", "ERROR"):
            benchmarks = await orch.refresh_benchmarks()
        self.assertEqual(benchmarks, [])
        self.assertEqual(len(notices), 1)
        self.assertIn("unavailable", notices[0])

    async def test_other_failures_give_empty_list(self) -> None:
        backend = FakeBackend()
        backend.list_error = ValueError("bad payload")
        orch = Orchestrator(backend)
        with self.assertLogs("benchpilot", "ERROR"):
            self.assertEqual(await orch.refresh_benchmarks(), [])
        self.assertEqual(backend.list_calls, 1)


class TestReconfigure(unittest.IsolatedAsyncioTestCase):
    async def test_reloads_then_relists(self) -> None:
        backend = FakeBackend()
        orch = Orchestrator(backend)
        self.assertTrue(await orch.reconfigure(level="scalar"))
        self.assertEqual(backend.reload_calls, ["scalar"])
        self.assertEqual(backend.list_calls, 1)
        self.assertEqual(orch.session.simd_level, "scalar")
        self.assertEqual(len(orch.session.benchmarks), len(DEFAULT_IDS))

    async def test_failed_reload_keeps_state(self) -> None:
        backend = FakeBackend()
        backend.reload_ok = False
        orch = Orchestrator(backend)
        orch.session.simd_level = "scalar"
        self.assertFalse(await orch.reconfigure(level="avx2"))
        self.assertEqual(orch.session.simd_level, "scalar")
        self.assertEqual(backend.list_calls, 0)
        self.assertEqual(len(orch.notices), 1)

    async def test_rejected_while_running(self) -> None:
        backend = FakeBackend()
        orch = Orchestrator(backend)
        gate = asyncio.Event()
        backend.gates[DEFAULT_IDS[0]] = gate
        task = asyncio.create_task(orch.start_run(DEFAULT_IDS[:1]))
        await asyncio.sleep(0.01)
        with self.assertLogs("benchpilot", "WARNING"):
            self.assertFalse(await orch.reconfigure(level="scalar"))
        self.assertEqual(backend.reload_calls, [])
        gate.set()
        await task

    async def test_run_rejected_while_reload_pending(self) -> None:
        backend = FakeBackend(levels=("avx2", "scalar"))
        backend.reload_gate = asyncio.Event()
        orch = Orchestrator(backend)
        reconf = asyncio.create_task(orch.reconfigure(level="avx2"))
        await asyncio.sleep(0.01)

        with self.assertLogs("benchpilot", "WARNING") as logs:
            self.assertFalse(await orch.start_run(DEFAULT_IDS[:2]))
        self.assertTrue(any("reconfiguring" in line for line in logs.output))
        self.assertFalse(orch.session.is_running)

        backend.reload_gate.set()
        self.assertTrue(await reconf)
        self.assertEqual(backend.run_args, [])

        await orch.start_run(DEFAULT_IDS[:2])
        self.assertEqual([args[1] for args in backend.run_args], ["avx2", "avx2"])

    async def test_second_reconfigure_rejected_while_pending(self) -> None:
        backend = FakeBackend()
        backend.reload_gate = asyncio.Event()
        orch = Orchestrator(backend)
        reconf = asyncio.create_task(orch.reconfigure(level="scalar"))
        await asyncio.sleep(0.01)
        with self.assertLogs("benchpilot", "WARNING"):
            self.assertFalse(await orch.reconfigure(level="avx2"))
        backend.reload_gate.set()
        self.assertTrue(await reconf)
        self.assertEqual(backend.reload_calls, ["scalar"])
        self.assertEqual(orch.session.simd_level, "scalar")

    async def test_run_allowed_after_failed_reload(self) -> None:
        backend = FakeBackend()
        backend.reload_ok = False
        orch = Orchestrator(backend)
        self.assertFalse(await orch.reconfigure(level="avx2"))
        self.assertTrue(await orch.start_run(DEFAULT_IDS[:1]))
        self.assertIn(DEFAULT_IDS[0], orch.session.results)

    async def test_isolated_reload_then_run_keeps_result(self) -> None:
        backend = IsolatedContextBackend({"a": SLOW_SUITE, "b": SLOW_SUITE})
        orch = Orchestrator(backend)
        try:
            reconf = asyncio.create_task(orch.reconfigure(level="b"))
            await asyncio.sleep(0)
            with self.assertLogs("benchpilot", "WARNING"):
                self.assertFalse(await orch.start_run(["slow/nap"]))
            self.assertTrue(await reconf)

            timing = TimingConfig(calibration_ms=1, measurement_ms=1)
            self.assertTrue(await orch.start_run(["slow/nap"], timing))
            self.assertEqual(list(orch.session.results), ["slow/nap"])
        finally:
            await backend.close()

    async def test_switching_backend_keeps_results(self) -> None:
        first = FakeBackend()
        orch = Orchestrator(first)
        await orch.start_run(DEFAULT_IDS[:2])

        second = FakeBackend(["other/bench"])
        self.assertTrue(await orch.reconfigure(backend=second))
        self.assertIs(orch.backend, second)
        self.assertEqual([b.id for b in orch.session.benchmarks], ["other/bench"])
        self.assertEqual(set(orch.session.results), set(DEFAULT_IDS[:2]))


class TestSharedSession(unittest.IsolatedAsyncioTestCase):
    async def test_uses_given_session(self) -> None:
        session = RunSession()
        session.results["old/x"] = make_result("old/x")
        orch = Orchestrator(FakeBackend(), session)
        await orch.start_run(DEFAULT_IDS[:1])
        self.assertIs(orch.session, session)
        self.assertEqual(set(session.results), {"old/x", DEFAULT_IDS[0]})


# ---------------------------------------------------------------------------
# select_run_ids
# ---------------------------------------------------------------------------


class TestSelectRunIds(unittest.TestCase):
    def setUp(self) -> None:
        self.benchmarks = [
            make_descriptor(i)
            for i in ["text/json/dumps", "text/regex/findall", "textual/x", "hash/sha256"]
        ]

    def test_empty_selection_runs_everything(self) -> None:
        self.assertEqual(
            select_run_ids(self.benchmarks),
            ["text/json/dumps", "text/regex/findall", "textual/x", "hash/sha256"],
        )

    def test_listed_order_not_selection_order(self) -> None:
        ids = select_run_ids(self.benchmarks, ["hash/sha256", "text/json/dumps"])
        self.assertEqual(ids, ["text/json/dumps", "hash/sha256"])

    def test_category_includes_children_only(self) -> None:
        ids = select_run_ids(self.benchmarks, category="text")
        self.assertEqual(ids, ["text/json/dumps", "text/regex/findall"])

    def test_category_and_selection(self) -> None:
        ids = select_run_ids(self.benchmarks, ["hash/sha256", "text/regex/findall"], "text")
        self.assertEqual(ids, ["text/regex/findall"])

    def test_all_category(self) -> None:
        self.assertEqual(len(select_run_ids(self.benchmarks, category="all")), 4)


if __name__ == "__main__":
    unittest.main()
