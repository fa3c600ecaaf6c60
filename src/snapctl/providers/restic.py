"""Snapshot store client backed by the ``restic`` command line tool."""
from __future__ import annotations

import json
import logging
import subprocess
from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from ..errors import ProviderError
from ..snapshots import Snapshot

LOGGER = logging.getLogger(__name__)


class ResticError(ProviderError):
    """Raised when a restic invocation fails or returns unreadable output."""


@dataclass(frozen=True, slots=True)
class ContentEntry:
    """One file recorded in a snapshot's content listing."""

    path: str
    size: int


@dataclass(frozen=True, slots=True)
class BackupSummary:
    """Byte counts reported by ``restic backup --json``."""

    snapshot_id: str | None
    files_new: int = 0
    files_changed: int = 0
    data_added: int = 0
    total_bytes_processed: int = 0

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "snapshot_id": self.snapshot_id,
            "files_new": self.files_new,
            "files_changed": self.files_changed,
            "data_added": self.data_added,
            "total_bytes_processed": self.total_bytes_processed,
        }


@dataclass(slots=True)
class ResticProvider:
    """Issue repository operations through ``restic``."""

    repository: Path
    password_file: Path
    restic_bin: str = "restic"

    def is_initialized(self) -> bool:
        """Return True when the repository exists and the credential opens it."""
        try:
            result = self._run_command(["cat", "config"], check=False)
        except ResticError:
            return False
        return result.returncode == 0

    def init(self) -> None:
        """Create a new repository at the configured location."""
        self._run_command(["init"], error_prefix="restic init")

    def snapshots(self) -> list[Snapshot]:
        """Return every snapshot in repository order."""
        result = self._run_command(["snapshots", "--json"], error_prefix="restic snapshots")
        text = (result.stdout or "").strip()
        if not text:
            return []
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ResticError(f"restic snapshots returned invalid JSON: {exc}") from exc
        if payload is None:
            return []
        if not isinstance(payload, list):
            raise ResticError("restic snapshots returned an unexpected payload.")
        snapshots: list[Snapshot] = []
        for item in payload:
            if not isinstance(item, Mapping):
                continue
            try:
                snapshots.append(Snapshot.from_json(item))
            except ValueError as exc:
                LOGGER.warning("Skipping unreadable snapshot entry: %s", exc)
        return snapshots

    def snapshot_count(self) -> int:
        """Return the number of snapshots in the repository."""
        return len(self.snapshots())

    def backup(
        self,
        paths: Sequence[Path | str],
        excludes: Iterable[str] = (),
        tags: Iterable[str] = (),
    ) -> BackupSummary:
        """Back up *paths*, skipping *excludes*, labelled with *tags*."""
        args: list[str] = ["backup", "--json"]
        for tag in tags:
            args.extend(["--tag", tag])
        for pattern in excludes:
            args.extend(["--exclude", pattern])
        args.extend(str(path) for path in paths)
        result = self._run_command(args, error_prefix="restic backup")
        return _parse_backup_summary(result.stdout or "")

    def restore(self, snapshot_id: str, target: Path) -> None:
        """Restore *snapshot_id* in full underneath *target*."""
        self._run_command(
            ["restore", snapshot_id, "--target", str(target)],
            error_prefix=f"restic restore {snapshot_id}",
        )

    def content_listing(self, snapshot_id: str) -> list[ContentEntry]:
        """Return the files recorded in *snapshot_id* with their sizes."""
        result = self._run_command(
            ["ls", "--json", snapshot_id],
            error_prefix=f"restic ls {snapshot_id}",
        )
        return list(_parse_content_listing(result.stdout or ""))

    def forget(self, snapshot_id: str, *, prune: bool = True) -> None:
        """Delete *snapshot_id* and, by default, prune unreferenced data."""
        args = ["forget", snapshot_id]
        if prune:
            args.append("--prune")
        self._run_command(args, error_prefix=f"restic forget {snapshot_id}")

    # ------------------------------------------------------------------
    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        error_prefix: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        command = [
            self.restic_bin,
            "-r",
            str(self.repository),
            "--password-file",
            str(self.password_file),
            *args,
        ]
        try:
            result = subprocess.run(  # noqa: S603, S607
                command,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise ResticError(f"{self.restic_bin} not found: {exc}") from exc
        if check and result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            prefix = error_prefix or f"{self.restic_bin} {args[0]}"
            raise ResticError(f"{prefix} failed (exit {result.returncode}): {message}")
        return result


def _json_lines(text: str) -> Iterator[Mapping[str, object]]:
    for line in text.splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, Mapping):
            yield payload


def _as_int(value: object) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    return 0


def _parse_backup_summary(text: str) -> BackupSummary:
    summary: Mapping[str, object] | None = None
    for payload in _json_lines(text):
        if payload.get("message_type") == "summary":
            summary = payload
    if summary is None:
        raise ResticError("restic backup finished without a summary line.")
    snapshot_id = summary.get("snapshot_id")
    return BackupSummary(
        snapshot_id=str(snapshot_id)[:8] if snapshot_id else None,
        files_new=_as_int(summary.get("files_new")),
        files_changed=_as_int(summary.get("files_changed")),
        data_added=_as_int(summary.get("data_added")),
        total_bytes_processed=_as_int(summary.get("total_bytes_processed")),
    )


def _parse_content_listing(text: str) -> Iterator[ContentEntry]:
    """Yield file entries, skipping the snapshot header and any summary record."""
    for payload in _json_lines(text):
        kind = payload.get("message_type") or payload.get("struct_type")
        if kind not in (None, "node"):
            continue
        if payload.get("type") != "file":
            continue
        yield ContentEntry(
            path=str(payload.get("path", "")),
            size=_as_int(payload.get("size")),
        )


__all__ = ["BackupSummary", "ContentEntry", "ResticError", "ResticProvider"]
