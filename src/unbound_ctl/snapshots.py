"""Snapshot capture and restore for the managed durable files."""

from __future__ import annotations

import hashlib
import json
import logging
import re
import shutil
import stat
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping

from .atomic import atomic_remove, atomic_write
from .models import (
    RestoreResult,
    Snapshot,
    SnapshotError,
    SnapshotInfo,
    SnapshotNotFoundError,
)

LOG = logging.getLogger("unbound_ctl.snapshots")

MANIFEST_NAME = "manifest.json"
FILES_DIR = "files"
ID_PATTERN = re.compile(r"^snapshot-(?P<stamp>\d{8}T\d{12}Z)(?:-(?P<seq>\d{4}))?$")
LOGICAL_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_-]*$")
DEFAULT_FILE_MODE = 0o644


def _utcnow() -> datetime:
    """Return the current UTC time."""
    return datetime.now(tz=timezone.utc)


def _snapshot_id(captured_at: datetime) -> str:
    """Return an identifier that sorts lexicographically by capture time."""
    stamp = captured_at.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
    return f"snapshot-{stamp}"


def _next_after(snapshot_id: str) -> str:
    """Return the smallest identifier ordered after ``snapshot_id``."""
    match = ID_PATTERN.match(snapshot_id)
    if not match:
        raise SnapshotError(f"Malformed snapshot id {snapshot_id!r}")
    sequence = int(match.group("seq") or 0) + 1
    return f"snapshot-{match.group('stamp')}-{sequence:04d}"


def _digest(content: bytes) -> str:
    """Return the hex sha256 of ``content``."""
    return hashlib.sha256(content).hexdigest()


def _restore_mode(entry: Mapping[str, Any], target: Path) -> int:
    """Return the captured permission bits, else the current ones, else the default."""
    recorded = entry.get("mode")
    if recorded is not None:
        return int(recorded, 8)
    try:
        return stat.S_IMODE(target.stat().st_mode)
    except OSError:
        return DEFAULT_FILE_MODE


class SnapshotStore:
    """Stores point-in-time captures of a fixed set of logical files.

    ``tracked_files`` maps logical names (``managed_config``,
    ``upstream_descriptor``) to the durable paths they stand for. Each capture
    lives in its own directory holding the raw file bytes plus a manifest that
    is written last, so a directory without a manifest is an incomplete
    capture and is never listed or restored.
    """

    def __init__(
        self,
        directory: Path,
        tracked_files: Mapping[str, Path],
        clock: Callable[[], datetime] = _utcnow,
    ):
        for name in tracked_files:
            if not LOGICAL_NAME_PATTERN.match(name):
                raise ValueError(f"Invalid logical file name {name!r}")
        self.directory = Path(directory)
        self.tracked_files = dict(tracked_files)
        self._clock = clock

    def capture(self, names: Iterable[str] | None = None) -> Snapshot:
        """Capture the current content of the named files (default: all)."""
        selected = list(names) if names is not None else list(self.tracked_files)
        unknown = [name for name in selected if name not in self.tracked_files]
        if unknown:
            raise SnapshotError(f"Unknown logical files: {', '.join(unknown)}")

        files: dict[str, bytes | None] = {}
        modes: dict[str, int] = {}
        for name in selected:
            path = self.tracked_files[name]
            try:
                files[name] = path.read_bytes()
                modes[name] = stat.S_IMODE(path.stat().st_mode)
            except FileNotFoundError:
                files[name] = None
            except OSError as exc:
                raise SnapshotError(f"Cannot read {path} for snapshot: {exc}") from exc

        captured_at = self._clock()
        snapshot_dir, snapshot_id = self._reserve(captured_at)
        try:
            self._persist(snapshot_dir, snapshot_id, captured_at, files, modes)
        except SnapshotError:
            self._discard(snapshot_dir)
            raise
        LOG.info("Captured %s (%s)", snapshot_id, ", ".join(sorted(files)))
        return Snapshot(id=snapshot_id, captured_at=captured_at, files=files)

    def _reserve(self, captured_at: datetime) -> tuple[Path, str]:
        """Create a fresh snapshot directory ordered after every existing one."""
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            existing = self._all_ids()
        except OSError as exc:
            raise SnapshotError(f"Snapshot directory {self.directory} unavailable: {exc}") from exc
        candidate = _snapshot_id(captured_at)
        if existing and candidate <= existing[-1]:
            candidate = _next_after(existing[-1])
        while True:
            snapshot_dir = self.directory / candidate
            try:
                snapshot_dir.mkdir()
            except FileExistsError:
                candidate = _next_after(candidate)
                continue
            except OSError as exc:
                raise SnapshotError(f"Cannot create {snapshot_dir}: {exc}") from exc
            return snapshot_dir, candidate

    def _persist(
        self,
        snapshot_dir: Path,
        snapshot_id: str,
        captured_at: datetime,
        files: Mapping[str, bytes | None],
        modes: Mapping[str, int],
    ) -> None:
        """Write the captured bytes, then the manifest that completes the snapshot."""
        entries: dict[str, dict[str, Any]] = {}
        for name, content in files.items():
            if content is None:
                entries[name] = {"present": False}
                continue
            result = atomic_write(snapshot_dir / FILES_DIR / name, content, mode=0o600)
            if not result.success:
                raise SnapshotError(f"Cannot store {name} in {snapshot_id}: {result.error}")
            entries[name] = {
                "present": True,
                "size": len(content),
                "sha256": _digest(content),
                "mode": f"{modes.get(name, DEFAULT_FILE_MODE):04o}",
            }
        manifest = {
            "id": snapshot_id,
            "captured_at": captured_at.isoformat(),
            "files": entries,
        }
        result = atomic_write(
            snapshot_dir / MANIFEST_NAME,
            json.dumps(manifest, indent=2, sort_keys=True) + "\n",
            mode=0o600,
        )
        if not result.success:
            raise SnapshotError(f"Cannot write manifest for {snapshot_id}: {result.error}")

    def _discard(self, snapshot_dir: Path) -> None:
        """Remove an incomplete snapshot directory."""
        try:
            shutil.rmtree(snapshot_dir)
        except OSError as exc:
            LOG.warning("Could not remove incomplete snapshot %s: %s", snapshot_dir, exc)

    def _all_ids(self) -> list[str]:
        """Return every snapshot directory name, oldest first."""
        if not self.directory.is_dir():
            return []
        return sorted(
            entry.name
            for entry in self.directory.iterdir()
            if entry.is_dir() and ID_PATTERN.match(entry.name)
        )

    def _read_manifest(self, snapshot_id: str) -> dict[str, Any]:
        """Load the manifest of a complete snapshot."""
        if not ID_PATTERN.match(snapshot_id):
            raise SnapshotNotFoundError(f"Snapshot not found: {snapshot_id}")
        manifest_path = self.directory / snapshot_id / MANIFEST_NAME
        try:
            return json.loads(manifest_path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise SnapshotNotFoundError(f"Snapshot not found: {snapshot_id}") from exc
        except (OSError, ValueError) as exc:
            raise SnapshotError(f"Unreadable manifest for {snapshot_id}: {exc}") from exc

    def _read_file(self, snapshot_id: str, name: str, entry: Mapping[str, Any]) -> bytes | None:
        """Return verified captured bytes, or None for an absent file."""
        if not entry.get("present"):
            return None
        path = self.directory / snapshot_id / FILES_DIR / name
        try:
            content = path.read_bytes()
        except OSError as exc:
            raise SnapshotError(f"Cannot read {name} from {snapshot_id}: {exc}") from exc
        if _digest(content) != entry.get("sha256"):
            raise SnapshotError(f"Checksum mismatch for {name} in {snapshot_id}")
        return content

    def exists(self, snapshot_id: str) -> bool:
        """Return True when a complete snapshot with this id is stored."""
        return bool(ID_PATTERN.match(snapshot_id)) and (
            self.directory / snapshot_id / MANIFEST_NAME
        ).is_file()

    def load(self, snapshot_id: str) -> Snapshot:
        """Load a stored snapshot including its captured bytes."""
        manifest = self._read_manifest(snapshot_id)
        files = {
            name: self._read_file(snapshot_id, name, entry)
            for name, entry in manifest.get("files", {}).items()
        }
        return Snapshot(
            id=snapshot_id,
            captured_at=datetime.fromisoformat(manifest["captured_at"]),
            files=files,
        )

    def restore(self, snapshot_id: str) -> RestoreResult:
        """Rewrite every captured file back to its captured state.

        A failure on one file does not stop the others; the result lists
        what was restored and what failed.
        """
        result = RestoreResult(snapshot_id=snapshot_id)
        try:
            manifest = self._read_manifest(snapshot_id)
        except SnapshotError as exc:
            result.failed[MANIFEST_NAME] = str(exc)
            return result

        for name, entry in sorted(manifest.get("files", {}).items()):
            target = self.tracked_files.get(name)
            if target is None:
                result.failed[name] = "not a tracked file"
                continue
            try:
                content = self._read_file(snapshot_id, name, entry)
            except SnapshotError as exc:
                result.failed[name] = str(exc)
                continue
            if content is None:
                outcome = atomic_remove(target)
            else:
                outcome = atomic_write(target, content, mode=_restore_mode(entry, target))
            if outcome.success:
                result.restored.append(name)
            else:
                result.failed[name] = outcome.error or "write failed"

        if result.success:
            LOG.info("Restored %s (%s)", snapshot_id, ", ".join(result.restored))
        else:
            LOG.error("Restore of %s incomplete: %s", snapshot_id, result.describe())
        return result

    def list_snapshots(self) -> list[SnapshotInfo]:
        """Return complete snapshots, newest first."""
        infos: list[SnapshotInfo] = []
        for snapshot_id in reversed(self._all_ids()):
            try:
                manifest = self._read_manifest(snapshot_id)
            except SnapshotNotFoundError:
                continue
            except SnapshotError as exc:
                LOG.warning("Skipping snapshot %s: %s", snapshot_id, exc)
                continue
            files = manifest.get("files", {})
            infos.append(
                SnapshotInfo(
                    id=snapshot_id,
                    captured_at=datetime.fromisoformat(manifest["captured_at"]),
                    present=tuple(sorted(name for name, entry in files.items() if entry.get("present"))),
                    absent=tuple(sorted(name for name, entry in files.items() if not entry.get("present"))),
                )
            )
        return infos

    def latest_snapshot_id(self) -> str | None:
        """Return the newest complete snapshot id, if any."""
        snapshots = self.list_snapshots()
        return snapshots[0].id if snapshots else None

    def prune(self, keep: int) -> list[str]:
        """Delete the oldest snapshots so that at most ``keep`` remain."""
        if keep < 1:
            raise ValueError("keep must be at least 1")
        ids = self._all_ids()
        doomed = ids[: max(0, len(ids) - keep)]
        for snapshot_id in doomed:
            shutil.rmtree(self.directory / snapshot_id)
            LOG.info("Pruned %s", snapshot_id)
        return doomed
