"""Atomic file persistence helpers."""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

from .models import WriteResult

LOG = logging.getLogger("unbound_ctl.atomic")

TEMP_SUFFIX = ".tmp"


def _temp_prefix(target: Path) -> str:
    """Return the prefix used for temporary siblings of ``target``."""
    return f".{target.name}."


def _fsync_directory(directory: Path) -> None:
    """Flush a directory entry update to disk where the platform allows it."""
    try:
        fd = os.open(directory, os.O_RDONLY)
    except OSError as exc:
        LOG.debug("Cannot open %s for fsync: %s", directory, exc)
        return
    try:
        os.fsync(fd)
    except OSError as exc:
        LOG.debug("Directory fsync unsupported for %s: %s", directory, exc)
    finally:
        os.close(fd)


def atomic_write(path: Path, content: str | bytes, mode: int = 0o644) -> WriteResult:
    """Write ``content`` to ``path`` so readers never observe a partial file.

    The payload lands in a temporary sibling in the same directory, is synced,
    and is then renamed over the target. On failure the target is untouched
    and the temporary file is removed. Text is encoded as UTF-8 verbatim.
    """
    target = Path(path)
    payload = content.encode("utf-8") if isinstance(content, str) else bytes(content)
    temp_path: Path | None = None
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(
            prefix=_temp_prefix(target),
            suffix=TEMP_SUFFIX,
            dir=str(target.parent),
        )
        temp_path = Path(temp_name)
        with os.fdopen(fd, "wb") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(temp_path, mode)
        os.replace(temp_path, target)
        temp_path = None
    except OSError as exc:
        LOG.error("Atomic write to %s failed: %s", target, exc)
        if temp_path is not None:
            _discard(temp_path)
        return WriteResult(success=False, path=target, error=str(exc))
    _fsync_directory(target.parent)
    LOG.debug("Wrote %s bytes to %s", len(payload), target)
    return WriteResult(success=True, path=target)


def atomic_remove(path: Path) -> WriteResult:
    """Remove ``path``; a file that is already absent counts as success."""
    target = Path(path)
    try:
        target.unlink(missing_ok=True)
    except OSError as exc:
        LOG.error("Removing %s failed: %s", target, exc)
        return WriteResult(success=False, path=target, error=str(exc))
    _fsync_directory(target.parent)
    return WriteResult(success=True, path=target)


def _discard(temp_path: Path) -> None:
    """Best-effort removal of a temporary file after a failed write."""
    try:
        temp_path.unlink(missing_ok=True)
    except OSError as exc:
        LOG.warning("Could not remove temporary file %s: %s", temp_path, exc)


def sweep_temp_files(directory: Path, target_name: str | None = None) -> list[Path]:
    """Delete temporary files left behind by interrupted writes.

    Only files following the ``.<name>.<random>.tmp`` pattern produced by
    :func:`atomic_write` are touched. Returns the removed paths.
    """
    root = Path(directory)
    if not root.is_dir():
        return []
    prefix = f".{target_name}." if target_name else "."
    removed: list[Path] = []
    for candidate in sorted(root.iterdir()):
        name = candidate.name
        if not (name.startswith(prefix) and name.endswith(TEMP_SUFFIX) and candidate.is_file()):
            continue
        candidate.unlink(missing_ok=True)
        removed.append(candidate)
        LOG.info("Removed stray temporary file %s", candidate)
    return removed
