"""Configuration: YAML profiles, CLI overrides, validation, backend wiring.

Profile format::

    backend: isolated          # or "command"
    suite: benchpilot.demo     # suite module (command backend / default level)
    simd_level: scalar
    calibration_ms: 100
    measurement_ms: 250
    timeout_s: 30              # omit for no timeout
    references_dir: .benchpilot/references

    # isolated backend: one suite module per capability level, best first
    levels:
      scalar: benchpilot.demo

    # command backend: either an HTTP host...
    url: http://localhost:8123
    # ...or the command to spawn per request
    command: ["python", "-m", "benchpilot", "invoke", "--suite", "benchpilot.demo"]
"""

from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from benchpilot.backends.base import Backend
from benchpilot.backends.command import (
    CommandChannelBackend,
    HttpTransport,
    SubprocessTransport,
)
from benchpilot.backends.isolated import IsolatedContextBackend
from benchpilot.models import (
    DEFAULT_CALIBRATION_MS,
    DEFAULT_MEASUREMENT_MS,
    MIN_PHASE_MS,
    TimingConfig,
)
from benchpilot.orchestrator import FixedTimeout, NoTimeout, TimeoutStrategy

log = logging.getLogger("benchpilot")

BACKEND_KINDS = ("command", "isolated")
DEFAULT_SUITE = "benchpilot.demo"


# ---------------------------------------------------------------------------
# BenchPilotConfig
# ---------------------------------------------------------------------------


@dataclass
class BenchPilotConfig:
    """Resolved configuration for one benchpilot session."""

    backend: str = "isolated"
    suite: str = DEFAULT_SUITE

    # Command channel
    command: list[str] | None = None  # Default: python -m benchpilot invoke
    url: str | None = None  # HTTP host; wins over command

    # Isolated context
    levels: dict[str, str] = field(default_factory=dict)  # level -> suite

    simd_level: str | None = None
    calibration_ms: int = DEFAULT_CALIBRATION_MS
    measurement_ms: int = DEFAULT_MEASUREMENT_MS
    timeout_s: float | None = None  # None = wait forever

    references_dir: Path = field(default_factory=lambda: Path(".benchpilot/references"))

    @property
    def timing(self) -> TimingConfig:
        return TimingConfig.clamped(self.calibration_ms, self.measurement_ms)

    @property
    def effective_levels(self) -> dict[str, str]:
        """Isolated-context levels; a single ``scalar`` level for *suite* by default."""
        return dict(self.levels) if self.levels else {"scalar": self.suite}


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


@dataclass
class ValidationError:
    """A single configuration validation error."""

    field: str
    message: str
    severity: str = "error"  # "error" or "warning"


def validate_config(config: BenchPilotConfig) -> list[ValidationError]:
    """Validate a configuration.

    Returns a list of validation errors.  Empty list means valid.
    """
    errors: list[ValidationError] = []

    if config.backend not in BACKEND_KINDS:
        errors.append(
            ValidationError(
                field="backend",
                message=(
                    f"Unknown backend '{config.backend}'. "
                    f"Expected one of: {', '.join(BACKEND_KINDS)}."
                ),
            )
        )

    if not config.suite:
        errors.append(ValidationError(field="suite", message="No suite module configured."))

    if config.backend == "command" and config.command is not None and not config.command:
        errors.append(ValidationError(field="command", message="Host command must not be empty."))

    if config.url and not config.url.startswith(("http://", "https://")):
        errors.append(
            ValidationError(
                field="url",
                message=f"Backend URL must start with http:// or https:// (got {config.url}).",
            )
        )

    if config.backend == "isolated" and config.url:
        errors.append(
            ValidationError(
                field="url",
                message="url is ignored by the isolated backend.",
                severity="warning",
            )
        )

    for name, value in (
        ("calibration_ms", config.calibration_ms),
        ("measurement_ms", config.measurement_ms),
    ):
        if value < MIN_PHASE_MS:
            errors.append(
                ValidationError(
                    field=name,
                    message=f"{name} below {MIN_PHASE_MS} will be raised to {MIN_PHASE_MS}.",
                    severity="warning",
                )
            )

    if config.timeout_s is not None and config.timeout_s <= 0:
        errors.append(
            ValidationError(
                field="timeout_s",
                message=f"Timeout must be positive (got {config.timeout_s}).",
            )
        )

    if (
        config.backend == "isolated"
        and config.simd_level
        and config.simd_level not in config.effective_levels
    ):
        errors.append(
            ValidationError(
                field="simd_level",
                message=(
                    f"Level '{config.simd_level}' is not configured. "
                    f"Available: {', '.join(config.effective_levels)}."
                ),
            )
        )

    for level, suite in config.levels.items():
        if not level or not suite:
            errors.append(
                ValidationError(
                    field="levels",
                    message="Level names and suite modules must be non-empty.",
                )
            )

    return errors


# ---------------------------------------------------------------------------
# YAML profile loading
# ---------------------------------------------------------------------------


def load_profile(profile_path: Path) -> dict[str, Any]:
    """Load a profile from a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is not a YAML mapping.
    """
    if not profile_path.exists():
        raise FileNotFoundError(f"Profile not found: {profile_path}")

    data = yaml.safe_load(profile_path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Profile must be a YAML mapping, got {type(data).__name__}")
    return data


def _as_argv(value: Any) -> list[str] | None:
    if value is None:
        return None
    if isinstance(value, str):
        return shlex.split(value)
    if isinstance(value, list):
        return [str(v) for v in value]
    raise ValueError(f"'command' must be a string or a list, got {type(value).__name__}")


def config_from_profile(
    profile_data: dict[str, Any],
    *,
    cli_overrides: dict[str, Any] | None = None,
) -> BenchPilotConfig:
    """Build a BenchPilotConfig from a parsed YAML profile.

    Args:
        profile_data: Parsed YAML profile dict (may be empty).
        cli_overrides: CLI option values.  Keys match BenchPilotConfig
            field names; ``None`` values are ignored.

    Returns:
        The merged configuration.
    """
    cli = {k: v for k, v in (cli_overrides or {}).items() if v is not None}
    merged = {**profile_data, **cli}

    levels = merged.get("levels") or {}
    if not isinstance(levels, dict):
        raise ValueError("Profile 'levels' must be a mapping of level -> suite module")

    config = BenchPilotConfig(
        backend=str(merged.get("backend", "isolated")),
        suite=str(merged.get("suite", DEFAULT_SUITE)),
        command=_as_argv(merged.get("command")),
        url=merged.get("url") or None,
        levels={str(k): str(v) for k, v in levels.items()},
        simd_level=merged.get("simd_level") or None,
        calibration_ms=int(merged.get("calibration_ms", DEFAULT_CALIBRATION_MS)),
        measurement_ms=int(merged.get("measurement_ms", DEFAULT_MEASUREMENT_MS)),
    )

    timeout = merged.get("timeout_s")
    config.timeout_s = float(timeout) if timeout is not None else None

    if merged.get("references_dir"):
        config.references_dir = Path(merged["references_dir"])

    return config


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_backend(config: BenchPilotConfig) -> Backend:
    """Construct the backend *config* describes."""
    if config.backend == "command":
        if config.url:
            log.debug("Command channel over HTTP: %s", config.url)
            transport: Any = HttpTransport(config.url)
        elif config.command:
            transport = SubprocessTransport(config.command)
        else:
            transport = SubprocessTransport.for_suite(config.suite)
        return CommandChannelBackend(transport, level=config.simd_level)

    if config.backend == "isolated":
        return IsolatedContextBackend(config.effective_levels, level=config.simd_level)

    raise ValueError(f"Unknown backend: {config.backend}")


def build_timeout(config: BenchPilotConfig) -> TimeoutStrategy:
    if config.timeout_s:
        return FixedTimeout(config.timeout_s)
    return NoTimeout()
