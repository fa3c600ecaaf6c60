"""Disk space preflight for backups and restores.

Three formulas apply, depending on direction and repository state:

* first backup (empty repository): used bytes of the backup paths, scanned
  with the backup's own exclusion set, plus a 10% buffer;
* later backups: a fixed free-space floor, since incremental backups only
  write deltas;
* restore: the file sizes recorded in the snapshot's content listing, plus a
  5% buffer, checked against the live root filesystem.

All arithmetic is integer and rounds down.
"""
from __future__ import annotations

import fnmatch
import logging
import os
import shutil
import stat
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from .config import GIB, BackupConfig, RestoreConfig

LOGGER = logging.getLogger(__name__)

FIRST_BACKUP_BUFFER = (11, 10)
RESTORE_BUFFER = (105, 100)


class ContentLister(Protocol):
    """The slice of the snapshot store the estimator needs."""

    def content_listing(self, snapshot_id: str) -> Sequence[object]:
        """Return entries exposing a ``size`` attribute."""
        ...


@dataclass(frozen=True, slots=True)
class SpaceEstimate:
    """Required versus available capacity for one pending operation."""

    direction: str
    basis: str
    required_bytes: int
    available_bytes: int
    checked_path: Path

    @property
    def ok(self) -> bool:
        """Return True when the operation fits; an unreadable (zero) reading never fits."""
        return self.available_bytes > 0 and self.available_bytes >= self.required_bytes

    def describe(self) -> str:
        """Return ``Required: ~X GB | Available: Y GB`` for operator messages."""
        available = (
            f"{_gib(self.available_bytes)} GB" if self.available_bytes > 0 else "unknown"
        )
        return f"Required: ~{_gib(self.required_bytes)} GB | Available: {available}"

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "direction": self.direction,
            "basis": self.basis,
            "required_bytes": self.required_bytes,
            "available_bytes": self.available_bytes,
            "checked_path": str(self.checked_path),
            "ok": self.ok,
        }


def _gib(value: int) -> str:
    return f"{value / GIB:.1f}"


def apply_buffer(value: int, ratio: tuple[int, int]) -> int:
    """Scale *value* by ``numerator / denominator``, rounding down."""
    numerator, denominator = ratio
    return value * numerator // denominator


def available_bytes(path: Path) -> int:
    """Return free bytes on the filesystem holding *path* (0 when unreadable)."""
    probe = Path(path)
    while not probe.exists() and probe != probe.parent:
        probe = probe.parent
    try:
        return int(shutil.disk_usage(probe).free)
    except OSError as exc:
        LOGGER.warning("Unable to read free space for %s: %s", path, exc)
        return 0


def _split(path: str) -> list[str]:
    return [part for part in path.split("/") if part]


def _match_prefix(pattern: Sequence[str], parts: Sequence[str]) -> bool:
    """Return True when *pattern* matches the leading components of *parts*."""
    if not pattern:
        return True
    head, rest = pattern[0], pattern[1:]
    if head == "**":
        return any(_match_prefix(rest, parts[index:]) for index in range(len(parts) + 1))
    if not parts or not fnmatch.fnmatchcase(parts[0], head):
        return False
    return _match_prefix(rest, parts[1:])


def _is_excluded(path: str, patterns: Sequence[str]) -> bool:
    """Apply restic's exclude semantics to *path*.

    Wildcards never cross a ``/``. A pattern starting with ``/`` is anchored at
    the root; any other pattern may match starting at any component. Matching a
    directory excludes everything below it.
    """
    parts = _split(path)
    for pattern in patterns:
        pattern_parts = _split(pattern)
        if not pattern_parts:
            continue
        starts = [0] if pattern.startswith("/") else range(len(parts))
        if any(_match_prefix(pattern_parts, parts[start:]) for start in starts):
            return True
    return False


def scan_used_bytes(paths: Iterable[Path], excludes: Sequence[str] = ()) -> int:
    """Return the allocated size of *paths*, like ``du -skx``, honouring *excludes*.

    Each root is scanned without crossing into other filesystems; inodes seen
    twice (hard links, overlapping roots) are counted once.
    """
    seen: set[tuple[int, int]] = set()
    total = 0
    for root in paths:
        root_text = str(root)
        if _is_excluded(root_text, excludes):
            continue
        try:
            root_stat = os.lstat(root_text)
        except OSError as exc:
            LOGGER.warning("Skipping %s during space scan: %s", root_text, exc)
            continue
        device = root_stat.st_dev
        if (device, root_stat.st_ino) in seen:
            continue
        seen.add((device, root_stat.st_ino))
        total += root_stat.st_blocks * 512
        if not stat.S_ISDIR(root_stat.st_mode):
            continue
        stack = [root_text]
        while stack:
            current = stack.pop()
            try:
                with os.scandir(current) as entries:
                    for entry in entries:
                        if _is_excluded(entry.path, excludes):
                            continue
                        try:
                            info = entry.stat(follow_symlinks=False)
                        except OSError:
                            continue
                        if info.st_dev != device:
                            continue
                        key = (info.st_dev, info.st_ino)
                        if key in seen:
                            continue
                        if info.st_nlink > 1 or stat.S_ISDIR(info.st_mode):
                            seen.add(key)
                        total += info.st_blocks * 512
                        if stat.S_ISDIR(info.st_mode):
                            stack.append(entry.path)
            except OSError as exc:
                LOGGER.debug("Cannot scan %s: %s", current, exc)
    return total


@dataclass(slots=True)
class DiskSpaceEstimator:
    """Compute :class:`SpaceEstimate` values for pending backups and restores."""

    backup: BackupConfig
    restore: RestoreConfig
    repository_path: Path
    store: ContentLister
    usage_scanner: Callable[[Iterable[Path], Sequence[str]], int] = field(
        default=scan_used_bytes
    )
    free_space: Callable[[Path], int] = field(default=available_bytes)

    def estimate_backup(self, repo_is_empty: bool) -> SpaceEstimate:
        """Estimate the space a backup needs on the repository's filesystem."""
        available = self._available(self.repository_path)
        if repo_is_empty:
            used = self.usage_scanner(self.backup.paths, self.backup.excludes)
            required = apply_buffer(used, FIRST_BACKUP_BUFFER)
            basis = "first-backup-scan"
            LOGGER.info("First backup: %d bytes in use under the backup paths.", used)
        else:
            required = self.backup.min_free_space_bytes
            basis = "min-free-floor"
        return SpaceEstimate(
            direction="backup",
            basis=basis,
            required_bytes=required,
            available_bytes=available,
            checked_path=self.repository_path,
        )

    def estimate_restore(self, snapshot_id: str) -> SpaceEstimate:
        """Estimate the space restoring *snapshot_id* needs on the live root."""
        entries = self.store.content_listing(snapshot_id)
        content_bytes = sum(int(getattr(entry, "size", 0) or 0) for entry in entries)
        required = apply_buffer(content_bytes, RESTORE_BUFFER)
        checked = self.restore.space_check_path
        return SpaceEstimate(
            direction="restore",
            basis="snapshot-contents",
            required_bytes=required,
            available_bytes=self._available(checked),
            checked_path=checked,
        )

    def _available(self, path: Path) -> int:
        try:
            value = int(self.free_space(path) or 0)
        except OSError as exc:
            LOGGER.warning("Unable to read free space for %s: %s", path, exc)
            return 0
        return max(value, 0)


__all__ = [
    "DiskSpaceEstimator",
    "FIRST_BACKUP_BUFFER",
    "RESTORE_BUFFER",
    "SpaceEstimate",
    "apply_buffer",
    "available_bytes",
    "scan_used_bytes",
]
