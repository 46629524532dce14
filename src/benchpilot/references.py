"""Named references: saved snapshots of results used as a comparison baseline.

``ReferenceStore`` is the storage side; ``FileReferenceStore`` keeps one
JSON file per reference::

    <directory>/<name>.json   {"name", "created_at", "platform", "results": [...]}

``ReferenceClient`` sits between a store and a ``RunSession``.  It turns
every store failure into a logged notice and a ``False`` return, and it
never leaves the session half-updated.
"""

from __future__ import annotations

import abc
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Sequence

from benchpilot.errors import ReferenceOperationFailure
from benchpilot.models import BenchmarkResult, PlatformInfo, ReferenceEntry, ReferenceInfo
from benchpilot.session import RunSession

log = logging.getLogger("benchpilot")

Notify = Callable[[str], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


class ReferenceStore(abc.ABC):
    """Persistent storage for named references.

    Every method raises ``ReferenceOperationFailure`` when it cannot do
    what was asked.
    """

    @abc.abstractmethod
    def list_references(self) -> list[ReferenceInfo]:
        """All saved references, newest first."""

    @abc.abstractmethod
    def save_reference(
        self,
        name: str,
        results: Sequence[BenchmarkResult],
        platform: PlatformInfo | None = None,
    ) -> ReferenceInfo:
        """Save *results* under *name*, replacing any reference of that name."""

    @abc.abstractmethod
    def load_reference(self, name: str) -> ReferenceEntry:
        """Load the reference called *name*."""

    @abc.abstractmethod
    def delete_reference(self, name: str) -> None:
        """Delete the reference called *name*."""


def validate_reference_name(name: str) -> str:
    """Return *name* stripped, or raise if it cannot name a reference file.

    Raises:
        ReferenceOperationFailure: For empty names, ``.``/``..``, or names
            containing a path separator.
    """
    cleaned = name.strip()
    if not cleaned:
        raise ReferenceOperationFailure("Reference name must not be empty")
    if "/" in cleaned or "\\" in cleaned or cleaned in (".", ".."):
        raise ReferenceOperationFailure(f"Invalid reference name: {name!r}")
    return cleaned


class FileReferenceStore(ReferenceStore):
    """References stored as ``<name>.json`` files in one directory."""

    def __init__(self, directory: Path | str, *, clock: Callable[[], datetime] = _utcnow) -> None:
        self.directory = Path(directory)
        self._clock = clock

    def _path(self, name: str) -> Path:
        return self.directory / f"{validate_reference_name(name)}.json"

    def _read(self, path: Path) -> ReferenceEntry:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return ReferenceEntry.from_dict(data)
        except FileNotFoundError as exc:
            raise ReferenceOperationFailure(f"No reference named {path.stem!r}") from exc
        except OSError as exc:
            raise ReferenceOperationFailure(f"Cannot read {path}: {exc}") from exc
        except (ValueError, KeyError, TypeError) as exc:
            raise ReferenceOperationFailure(f"Corrupt reference file {path}: {exc!r}") from exc

    def list_references(self) -> list[ReferenceInfo]:
        if not self.directory.is_dir():
            return []
        infos: list[ReferenceInfo] = []
        for path in sorted(self.directory.glob("*.json")):
            try:
                infos.append(self._read(path).info)
            except ReferenceOperationFailure as exc:
                log.warning("Skipping reference file: %s", exc)
        infos.sort(key=lambda i: (i.created_at, i.name), reverse=True)
        return infos

    def save_reference(
        self,
        name: str,
        results: Sequence[BenchmarkResult],
        platform: PlatformInfo | None = None,
    ) -> ReferenceInfo:
        path = self._path(name)
        if platform is None:
            platform = next((r.platform for r in results if r.platform is not None), None)
        entry = ReferenceEntry(
            name=path.stem,
            created_at=self._clock().isoformat(timespec="microseconds"),
            results={r.id: r for r in results},
            platform=platform,
        )
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(entry.to_dict(), indent=2) + "\n", encoding="utf-8")
        except OSError as exc:
            raise ReferenceOperationFailure(f"Cannot write {path}: {exc}") from exc
        log.debug("Saved reference %s (%d results) to %s", entry.name, len(results), path)
        return entry.info

    def load_reference(self, name: str) -> ReferenceEntry:
        return self._read(self._path(name))

    def delete_reference(self, name: str) -> None:
        path = self._path(name)
        try:
            path.unlink()
        except FileNotFoundError as exc:
            raise ReferenceOperationFailure(f"No reference named {path.stem!r}") from exc
        except OSError as exc:
            raise ReferenceOperationFailure(f"Cannot delete {path}: {exc}") from exc
        log.debug("Deleted reference %s", path)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class ReferenceClient:
    """Reference operations bound to a run session.

    Args:
        store: Where references live.
        session: The session whose baseline and results are used.
        notify: Called with a short message whenever an operation fails.
    """

    def __init__(
        self,
        store: ReferenceStore,
        session: RunSession,
        notify: Notify | None = None,
    ) -> None:
        self.store = store
        self.session = session
        self.references: list[ReferenceInfo] = []
        self.notices: list[str] = []
        self._notify = notify

    def _fail(self, action: str, exc: Exception) -> bool:
        message = f"Failed to {action}: {exc}"
        log.error(message)
        self.notices.append(message)
        if self._notify is not None:
            self._notify(message)
        return False

    def refresh(self) -> list[ReferenceInfo]:
        """Re-read the reference list from the store.

        On failure the previous list is kept.
        """
        try:
            self.references = self.store.list_references()
        except ReferenceOperationFailure as exc:
            self._fail("list references", exc)
        return list(self.references)

    def list(self) -> list[ReferenceInfo]:
        return list(self.references)

    def save(self, name: str, results: Sequence[BenchmarkResult] | None = None) -> bool:
        """Save *results* (default: the session's current results) as *name*."""
        if results is None:
            results = self.session.results_in_listed_order()
        try:
            if not results:
                raise ReferenceOperationFailure("no results to save")
            info = self.store.save_reference(validate_reference_name(name), list(results))
        except ReferenceOperationFailure as exc:
            return self._fail(f"save reference {name!r}", exc)
        log.info("Saved reference %s with %d result(s)", info.name, info.result_count)
        self.refresh()
        return True

    def load(self, name: str | None) -> bool:
        """Make reference *name* the comparison baseline.

        An empty or missing name unloads the current baseline instead.
        """
        if not name or not name.strip():
            return self.unload()
        try:
            entry = self.store.load_reference(name)
        except ReferenceOperationFailure as exc:
            return self._fail(f"load reference {name!r}", exc)
        self.session.baseline = dict(entry.results)
        self.session.loaded_reference = entry.name
        self.session.publish()
        log.info("Loaded reference %s (%d result(s))", entry.name, len(entry.results))
        return True

    def unload(self) -> bool:
        """Clear the baseline.  Run results are untouched."""
        self.session.baseline = {}
        self.session.loaded_reference = None
        self.session.publish()
        return True

    def delete(self, name: str) -> bool:
        """Delete reference *name*, unloading it first if it is the baseline."""
        try:
            self.store.delete_reference(name)
        except ReferenceOperationFailure as exc:
            return self._fail(f"delete reference {name!r}", exc)
        log.info("Deleted reference %s", name)
        if self.session.loaded_reference == name.strip():
            self.unload()
        self.refresh()
        return True
