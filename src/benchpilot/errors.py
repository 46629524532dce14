"""Exception types shared by the backends, orchestrator and reference client.

None of these escape the orchestrator's or the reference client's public
operations: they are caught there and turned into log records, notices
and session state.
"""

from __future__ import annotations


class BenchPilotError(RuntimeError):
    """Base class for benchpilot errors."""


class BackendUnavailable(BenchPilotError):
    """No backend could be reached, or it went away mid-request."""


class RunFailure(BenchPilotError):
    """A single benchmark run failed or produced an unusable result."""

    def __init__(self, message: str, *, benchmark_id: str | None = None) -> None:
        super().__init__(message)
        self.benchmark_id = benchmark_id


class ReferenceOperationFailure(BenchPilotError):
    """Saving, loading, listing or deleting a reference failed."""


class ConcurrencyViolation(BenchPilotError):
    """A run or backend request was issued while another was outstanding."""
