"""Tests for benchpilot.config — profiles, overrides, validation and wiring."""

from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from benchpilot.backends.command import CommandChannelBackend, HttpTransport, SubprocessTransport
from benchpilot.backends.isolated import IsolatedContextBackend
from benchpilot.config import (
    BenchPilotConfig,
    build_backend,
    build_timeout,
    config_from_profile,
    load_profile,
    validate_config,
)
from benchpilot.orchestrator import FixedTimeout, NoTimeout


class TestBenchPilotConfig(unittest.TestCase):
    def test_defaults(self) -> None:
        config = BenchPilotConfig()
        self.assertEqual(config.backend, "isolated")
        self.assertEqual(config.suite, "benchpilot.demo")
        self.assertIsNone(config.timeout_s)
        self.assertEqual(config.effective_levels, {"scalar": "benchpilot.demo"})

    def test_timing_is_clamped(self) -> None:
        config = BenchPilotConfig(calibration_ms=10, measurement_ms=400)
        self.assertEqual(config.timing.calibration_ms, 100)
        self.assertEqual(config.timing.measurement_ms, 400)


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------


class TestLoadProfile(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.dir = Path(self._tmp.name)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_load_mapping(self) -> None:
        path = self.dir / "p.yaml"
        path.write_text("backend: command\nurl: http://localhost:9000\nlevels:\n  avx2: pkg.avx2\n")
        data = load_profile(path)
        self.assertEqual(data["backend"], "command")
        self.assertEqual(data["levels"], {"avx2": "pkg.avx2"})

    def test_missing_file(self) -> None:
        with self.assertRaises(FileNotFoundError):
            load_profile(self.dir / "nope.yaml")

    def test_not_a_mapping(self) -> None:
        path = self.dir / "p.yaml"
        path.write_text("- a\n- b\n")
        with self.assertRaises(ValueError):
            load_profile(path)

    def test_empty_file(self) -> None:
        path = self.dir / "p.yaml"
        path.write_text("")
        self.assertEqual(load_profile(path), {})


class TestConfigFromProfile(unittest.TestCase):
    def test_profile_values(self) -> None:
        config = config_from_profile(
            {
                "backend": "command",
                "command": "host --serve 'my suite'",
                "calibration_ms": 200,
                "timeout_s": 30,
                "references_dir": "refs",
            }
        )
        self.assertEqual(config.backend, "command")
        self.assertEqual(config.command, ["host", "--serve", "my suite"])
        self.assertEqual(config.calibration_ms, 200)
        self.assertEqual(config.measurement_ms, 250)
        self.assertEqual(config.timeout_s, 30.0)
        self.assertEqual(config.references_dir, Path("refs"))

    def test_cli_overrides_win(self) -> None:
        config = config_from_profile(
            {"backend": "command", "suite": "a.b", "simd_level": "avx2"},
            cli_overrides={"backend": "isolated", "simd_level": "scalar", "suite": None},
        )
        self.assertEqual(config.backend, "isolated")
        self.assertEqual(config.simd_level, "scalar")
        self.assertEqual(config.suite, "a.b")

    def test_levels_must_be_mapping(self) -> None:
        with self.assertRaises(ValueError):
            config_from_profile({"levels": ["a", "b"]})

    def test_zero_timeout_is_kept_for_validation(self) -> None:
        config = config_from_profile({"timeout_s": 0})
        self.assertEqual(config.timeout_s, 0.0)
        fields = [e.field for e in validate_config(config) if e.severity == "error"]
        self.assertIn("timeout_s", fields)

    def test_command_list(self) -> None:
        config = config_from_profile({"command": ["python", "-m", "host"]})
        self.assertEqual(config.command, ["python", "-m", "host"])


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class TestValidateConfig(unittest.TestCase):
    def _fields(self, config: BenchPilotConfig, severity: str = "error") -> list[str]:
        return [e.field for e in validate_config(config) if e.severity == severity]

    def test_default_is_valid(self) -> None:
        self.assertEqual(validate_config(BenchPilotConfig()), [])

    def test_unknown_backend(self) -> None:
        self.assertIn("backend", self._fields(BenchPilotConfig(backend="gpu")))

    def test_bad_url(self) -> None:
        config = BenchPilotConfig(backend="command", url="ftp://host")
        self.assertIn("url", self._fields(config))

    def test_url_ignored_by_isolated(self) -> None:
        config = BenchPilotConfig(url="http://host")
        self.assertIn("url", self._fields(config, "warning"))
        self.assertEqual(self._fields(config), [])

    def test_short_phases_warn(self) -> None:
        config = BenchPilotConfig(calibration_ms=10)
        self.assertEqual(self._fields(config, "warning"), ["calibration_ms"])

    def test_non_positive_timeout(self) -> None:
        self.assertIn("timeout_s", self._fields(BenchPilotConfig(timeout_s=-1)))

    def test_unconfigured_level(self) -> None:
        config = BenchPilotConfig(levels={"scalar": "x"}, simd_level="avx2")
        self.assertIn("simd_level", self._fields(config))

    def test_empty_command(self) -> None:
        self.assertIn("command", self._fields(BenchPilotConfig(backend="command", command=[])))


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


class TestBuildBackend(unittest.TestCase):
    def test_isolated(self) -> None:
        backend = build_backend(BenchPilotConfig(levels={"a": "x.y"}, simd_level="a"))
        self.assertIsInstance(backend, IsolatedContextBackend)
        assert isinstance(backend, IsolatedContextBackend)
        self.assertEqual(backend.levels, {"a": "x.y"})

    def test_command_http(self) -> None:
        backend = build_backend(BenchPilotConfig(backend="command", url="http://h:1"))
        assert isinstance(backend, CommandChannelBackend)
        self.assertIsInstance(backend.transport, HttpTransport)

    def test_command_subprocess_default(self) -> None:
        backend = build_backend(BenchPilotConfig(backend="command", suite="my.suite"))
        assert isinstance(backend, CommandChannelBackend)
        transport = backend.transport
        assert isinstance(transport, SubprocessTransport)
        self.assertEqual(transport.argv[-3:], ["invoke", "--suite", "my.suite"])

    def test_command_custom_argv(self) -> None:
        backend = build_backend(BenchPilotConfig(backend="command", command=["host"]))
        assert isinstance(backend, CommandChannelBackend)
        assert isinstance(backend.transport, SubprocessTransport)
        self.assertEqual(backend.transport.argv, ["host"])

    def test_unknown(self) -> None:
        with self.assertRaises(ValueError):
            build_backend(BenchPilotConfig(backend="gpu"))

    def test_timeout_strategy(self) -> None:
        self.assertIsInstance(build_timeout(BenchPilotConfig()), NoTimeout)
        strategy = build_timeout(BenchPilotConfig(timeout_s=2.5))
        assert isinstance(strategy, FixedTimeout)
        self.assertEqual(strategy.seconds, 2.5)


if __name__ == "__main__":
    unittest.main()
