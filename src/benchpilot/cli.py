"""Command-line interface for benchpilot.

Provides the ``benchpilot`` entry point with ``list``, ``levels``,
``platform``, ``run``, ``references`` and ``invoke`` subcommands.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import click
import yaml

from benchpilot import __version__
from benchpilot.backends.base import Backend
from benchpilot.backends.command import dispatch_command
from benchpilot.compare import compare_results
from benchpilot.config import (
    BenchPilotConfig,
    build_backend,
    build_timeout,
    config_from_profile,
    load_profile,
    validate_config,
)
from benchpilot.display import (
    format_benchmark_list,
    format_comparison_report,
    format_levels,
    format_platform,
    format_reference_list,
    format_results_table,
    format_table,
    format_time,
)
from benchpilot.errors import BenchPilotError, ReferenceOperationFailure
from benchpilot.export import write_export
from benchpilot.logging import setup_logging
from benchpilot.orchestrator import Orchestrator, select_run_ids
from benchpilot.references import FileReferenceStore, ReferenceClient
from benchpilot.session import RunSession, RunSnapshot
from benchpilot.suite import load_suite

log = logging.getLogger("benchpilot")


@dataclass
class CliState:
    """Group-level options shared by every subcommand."""

    profile: dict[str, Any] = field(default_factory=dict)
    overrides: dict[str, Any] = field(default_factory=dict)

    def config(self, **extra: Any) -> BenchPilotConfig:
        """Merge the profile, group options and *extra*, then validate.

        Fatal validation errors abort the command with exit code 1.
        """
        try:
            config = config_from_profile(
                self.profile,
                cli_overrides={**self.overrides, **extra},
            )
        except ValueError as exc:
            raise click.ClickException(str(exc)) from exc

        fatal = False
        for err in validate_config(config):
            if err.severity == "warning":
                log.warning("%s: %s", err.field, err.message)
            else:
                click.echo(f"Error: {err.field}: {err.message}", err=True)
                fatal = True
        if fatal:
            raise SystemExit(1)
        return config


def _notify(message: str) -> None:
    click.echo(f"Notice: {message}", err=True)


async def _with_backend(config: BenchPilotConfig, action: Any) -> Any:
    backend = build_backend(config)
    try:
        return await action(backend)
    finally:
        await backend.close()


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--profile",
    "profile_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="YAML profile with backend and timing settings.",
)
@click.option(
    "--backend",
    type=click.Choice(["command", "isolated"]),
    default=None,
    help="Execution backend.  [default: isolated]",
)
@click.option("--suite", default=None, help="Suite module, e.g. benchpilot.demo.")
@click.option("--url", default=None, help="HTTP benchmark host (command backend).")
@click.option(
    "--references-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory holding saved references.",
)
@click.option("-v", "--verbose", is_flag=True, help="Show detailed output.")
@click.option("-q", "--quiet", is_flag=True, help="Only show warnings and errors.")
@click.option("--log-file", type=click.Path(dir_okay=False, path_type=Path), default=None)
@click.pass_context
def main(
    ctx: click.Context,
    profile_path: Path | None,
    backend: str | None,
    suite: str | None,
    url: str | None,
    references_dir: Path | None,
    verbose: bool,
    quiet: bool,
    log_file: Path | None,
) -> None:
    """benchpilot — run micro-benchmarks and compare them with saved references."""
    setup_logging(verbose=verbose, quiet=quiet, log_file=log_file)

    profile: dict[str, Any] = {}
    if profile_path is not None:
        try:
            profile = load_profile(profile_path)
        except (ValueError, yaml.YAMLError) as exc:
            raise click.ClickException(str(exc)) from exc

    ctx.obj = CliState(
        profile=profile,
        overrides={
            "backend": backend,
            "suite": suite,
            "url": url,
            "references_dir": references_dir,
        },
    )


# ---------------------------------------------------------------------------
# Inspection commands
# ---------------------------------------------------------------------------


@main.command("list")
@click.option("--category", default=None, help="Only this category and its children.")
@click.pass_obj
def list_cmd(state: CliState, category: str | None) -> None:
    """List the benchmarks the backend offers."""
    config = state.config()

    async def action(backend: Backend) -> list[Any]:
        orch = Orchestrator(backend, notify=_notify)
        return await orch.refresh_benchmarks()

    benchmarks = asyncio.run(_with_backend(config, action))
    click.echo(format_benchmark_list([b for b in benchmarks if b.in_category(category)]))


@main.command("levels")
@click.pass_obj
def levels_cmd(state: CliState) -> None:
    """Show the capability levels the backend offers, best first."""
    config = state.config()

    async def action(backend: Backend) -> Any:
        return await backend.simd_levels()

    try:
        levels = asyncio.run(_with_backend(config, action))
    except BenchPilotError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(format_levels(levels, current=config.simd_level))


@main.command("platform")
@click.pass_obj
def platform_cmd(state: CliState) -> None:
    """Describe the platform benchmarks run on."""
    config = state.config()

    async def action(backend: Backend) -> Any:
        return await backend.platform_info()

    try:
        info = asyncio.run(_with_backend(config, action))
    except BenchPilotError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(format_platform(info))


# ---------------------------------------------------------------------------
# run
# ---------------------------------------------------------------------------


class _ProgressPrinter:
    """Echo one line each time a benchmark starts."""

    def __init__(self, total: int) -> None:
        self.total = total
        self._last_active: str | None = None
        self._started = 0

    def __call__(self, snap: RunSnapshot) -> None:
        if snap.active_id and snap.active_id != self._last_active:
            self._started += 1
            click.echo(f"[{self._started}/{self.total}] {snap.active_id}")
        self._last_active = snap.active_id


@main.command("run")
@click.argument("ids", nargs=-1)
@click.option("--category", default=None, help="Only benchmarks in this category.")
@click.option("--simd-level", default=None, help="Capability level to run at.")
@click.option("--calibration-ms", type=int, default=None, help="Calibration budget (min 100).")
@click.option("--measurement-ms", type=int, default=None, help="Measurement budget (min 100).")
@click.option("--reference", default=None, help="Compare against this saved reference.")
@click.option("--save-reference", default=None, help="Save this run's results under NAME.")
@click.option(
    "--export",
    "export_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write results to a .json or .csv file.",
)
@click.option(
    "--timeout",
    "timeout_s",
    type=float,
    default=None,
    help="Give up on a single benchmark after this many seconds.",
)
@click.pass_obj
def run_cmd(  # noqa: PLR0913
    state: CliState,
    ids: tuple[str, ...],
    category: str | None,
    simd_level: str | None,
    calibration_ms: int | None,
    measurement_ms: int | None,
    reference: str | None,
    save_reference: str | None,
    export_path: Path | None,
    timeout_s: float | None,
) -> None:
    """Run benchmarks, optionally comparing against a saved reference.

    IDS selects benchmarks; without IDS every benchmark (in --category)
    runs.  Benchmarks always run in listed order.  Ctrl-C stops the run
    after the benchmark currently executing.

    \b
    Examples:
        benchpilot run
        benchpilot run --category text --reference main
        benchpilot --backend command run text/json/dumps --save-reference pr-42
    """
    config = state.config(
        simd_level=simd_level,
        calibration_ms=calibration_ms,
        measurement_ms=measurement_ms,
        timeout_s=timeout_s,
    )
    code = asyncio.run(
        _with_backend(
            config,
            lambda backend: _run_session(
                config,
                backend,
                ids=ids,
                category=category,
                reference=reference,
                save_reference=save_reference,
                export_path=export_path,
            ),
        )
    )
    if code:
        raise SystemExit(code)


async def _run_session(
    config: BenchPilotConfig,
    backend: Backend,
    *,
    ids: tuple[str, ...],
    category: str | None,
    reference: str | None,
    save_reference: str | None,
    export_path: Path | None,
) -> int:
    orch = Orchestrator(
        backend,
        timing=config.timing,
        timeout=build_timeout(config),
        notify=_notify,
    )
    session = orch.session
    session.simd_level = config.simd_level
    refs = ReferenceClient(FileReferenceStore(config.references_dir), session, notify=_notify)

    benchmarks = await orch.refresh_benchmarks()
    if not benchmarks:
        click.echo("No benchmarks available.", err=True)
        return 1

    if reference and not refs.load(reference):
        return 1

    listed = {b.id for b in benchmarks}
    for unknown in [i for i in ids if i not in listed]:
        log.warning("Unknown benchmark id: %s", unknown)
    known = [i for i in ids if i in listed]
    run_ids = select_run_ids(benchmarks, known, category) if known or not ids else []
    if not run_ids:
        click.echo("Nothing to run.", err=True)
        return 1

    unsubscribe = session.subscribe(_ProgressPrinter(len(run_ids)))
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, _cancel_handler(orch))
        handler_installed = True
    except (NotImplementedError, RuntimeError, ValueError):
        handler_installed = False
    try:
        await orch.start_run(run_ids)
    finally:
        unsubscribe()
        if handler_installed:
            loop.remove_signal_handler(signal.SIGINT)

    snap = session.snapshot()
    click.echo()
    click.echo(format_results_table(snap, run_ids))
    if snap.baseline:
        click.echo()
        report = compare_results(session.results_in_listed_order(), snap.baseline)
        click.echo(format_comparison_report(report, snap.loaded_reference))

    if save_reference and refs.save(save_reference):
        click.echo(f"Saved reference '{save_reference}'.")
    if export_path is not None:
        results = session.results_in_listed_order()
        fmt = write_export(export_path, results, snap.baseline, reference=snap.loaded_reference)
        click.echo(f"Exported {len(results)} result(s) as {fmt} to {export_path}")

    missing = [i for i in run_ids if i not in snap.results]
    if missing:
        click.echo(f"{len(missing)} benchmark(s) without a result.", err=True)
    return 0


def _cancel_handler(orch: Orchestrator) -> Any:
    def handler() -> None:
        if orch.request_cancel():
            click.echo("\nStopping after the current benchmark...", err=True)

    return handler


# ---------------------------------------------------------------------------
# references
# ---------------------------------------------------------------------------


@main.group()
def references() -> None:
    """Manage saved references."""


def _reference_client(state: CliState) -> ReferenceClient:
    config = state.config()
    return ReferenceClient(FileReferenceStore(config.references_dir), RunSession(), _notify)


@references.command("list")
@click.pass_obj
def references_list(state: CliState) -> None:
    """List saved references, newest first."""
    client = _reference_client(state)
    click.echo(format_reference_list(client.refresh()))


@references.command("show")
@click.argument("name")
@click.pass_obj
def references_show(state: CliState, name: str) -> None:
    """Show the results stored in reference NAME."""
    client = _reference_client(state)
    try:
        entry = client.store.load_reference(name)
    except ReferenceOperationFailure as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"{entry.name} (saved {entry.created_at})")
    if entry.platform is not None:
        click.echo(format_platform(entry.platform))
    click.echo()
    rows = [
        [r.id, format_time(r.mean_ns), str(r.statistics.iterations)]
        for r in entry.results.values()
    ]
    click.echo(format_table(["Benchmark", "Mean", "Iterations"], rows, alignments=["l", "r", "r"]))


@references.command("delete")
@click.argument("name")
@click.pass_obj
def references_delete(state: CliState, name: str) -> None:
    """Delete reference NAME."""
    client = _reference_client(state)
    if not client.delete(name):
        raise SystemExit(1)
    click.echo(f"Deleted reference '{name}'.")


# ---------------------------------------------------------------------------
# invoke (host side of the subprocess command channel)
# ---------------------------------------------------------------------------


@main.command("invoke", hidden=True)
@click.argument("command")
@click.option("--suite", "suite_spec", required=True, help="Suite module to serve.")
@click.option("--args", "args_json", default="{}", help="JSON object of command arguments.")
def invoke_cmd(command: str, suite_spec: str, args_json: str) -> None:
    """Answer one command-channel COMMAND as JSON on stdout."""
    try:
        args = json.loads(args_json)
    except ValueError as exc:
        raise click.ClickException(f"--args is not valid JSON: {exc}") from exc
    if not isinstance(args, dict):
        raise click.ClickException("--args must be a JSON object")

    try:
        suite = load_suite(suite_spec)
        answer = dispatch_command(suite, command, args)
    except (ImportError, TypeError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(answer))
