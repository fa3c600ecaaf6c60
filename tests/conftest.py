"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from snapctl.config import BackupConfig, RestoreConfig
from snapctl.errors import ProviderError
from snapctl.providers.docker import (
    COMPOSE_PROJECT_LABEL,
    COMPOSE_WORKING_DIR_LABEL,
    ContainerInfo,
)
from snapctl.providers.restic import BackupSummary, ContentEntry
from snapctl.snapshots import Snapshot


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


class DummyResult:
    """Simple stand-in for ``subprocess.CompletedProcess``."""

    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Initialise the dummy result."""
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


def make_snapshot(short_id: str, *, time: str = "2024-05-01T10:00:00.123456+00:00") -> Snapshot:
    """Return a snapshot with a predictable full id."""
    return Snapshot(
        id=short_id * 8,
        short_id=short_id,
        time=time,
        hostname="host",
        tags=("manual-snapshot",),
        paths=("/", "/boot"),
    )


def compose_container(cid: str, name: str, project: str, working_dir: str | None) -> ContainerInfo:
    """Return a container carrying compose labels."""
    labels = {COMPOSE_PROJECT_LABEL: project}
    if working_dir is not None:
        labels[COMPOSE_WORKING_DIR_LABEL] = working_dir
    return ContainerInfo(id=cid, name=name, labels=labels)


@dataclass
class FakeStore:
    """In-memory snapshot store recording the calls made to it."""

    snapshots_list: list[Snapshot] = field(default_factory=list)
    contents: dict[str, list[ContentEntry]] = field(default_factory=dict)
    initialized: bool = True
    fail_backup: bool = False
    restore_error: BaseException | None = None
    restore_files: dict[str, str] = field(default_factory=dict)
    calls: list[tuple[object, ...]] = field(default_factory=list)

    def is_initialized(self) -> bool:
        return self.initialized

    def init(self) -> None:
        self.calls.append(("init",))
        self.initialized = True

    def snapshots(self) -> list[Snapshot]:
        return list(self.snapshots_list)

    def snapshot_count(self) -> int:
        return len(self.snapshots_list)

    def backup(
        self,
        paths: Sequence[Path | str],
        excludes: Iterable[str] = (),
        tags: Iterable[str] = (),
    ) -> BackupSummary:
        self.calls.append(("backup", tuple(paths), tuple(excludes), tuple(tags)))
        if self.fail_backup:
            raise ProviderError("restic backup failed (exit 1): boom")
        short_id = f"{len(self.snapshots_list) + 1:08x}"
        self.snapshots_list.append(make_snapshot(short_id))
        return BackupSummary(snapshot_id=short_id, files_new=3)

    def restore(self, snapshot_id: str, target: Path) -> None:
        self.calls.append(("restore", snapshot_id, target))
        for relative, content in self.restore_files.items():
            path = target / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        if self.restore_error is not None:
            raise self.restore_error

    def content_listing(self, snapshot_id: str) -> list[ContentEntry]:
        return list(self.contents.get(snapshot_id, []))

    def forget(self, snapshot_id: str, *, prune: bool = True) -> None:
        self.calls.append(("forget", snapshot_id, prune))
        self.snapshots_list = [s for s in self.snapshots_list if s.short_id != snapshot_id]


@dataclass
class FakeSync:
    """File sync client recording mirror and additive passes."""

    calls: list[tuple[str, Path, Path, tuple[str, ...]]] = field(default_factory=list)
    error: BaseException | None = None

    def mirror(self, source: Path, dest: Path, excludes: Iterable[str] = ()) -> None:
        self.calls.append(("mirror", source, dest, tuple(excludes)))
        if self.error is not None:
            raise self.error

    def additive(self, source: Path, dest: Path, excludes: Iterable[str] = ()) -> None:
        self.calls.append(("additive", source, dest, tuple(excludes)))


@dataclass
class FakeRuntime:
    """Container runtime with a scripted set of running containers."""

    containers: list[ContainerInfo] = field(default_factory=list)
    installed: bool = True
    active: bool = True
    fail_start: bool = False
    fail_stop: bool = False
    calls: list[tuple[object, ...]] = field(default_factory=list)

    def is_installed(self) -> bool:
        return self.installed

    def is_active(self) -> bool:
        return self.active

    def list_running_ids(self) -> list[str]:
        return [info.id for info in self.containers]

    def inspect(self, container_ids: Sequence[str]) -> list[ContainerInfo]:
        return [info for info in self.containers if info.id in container_ids]

    def stop(self, containers: Sequence[str]) -> None:
        self.calls.append(("stop", tuple(containers)))
        if self.fail_stop:
            raise ProviderError("docker stop failed (exit 1): timed out stopping b")

    def start(self, containers: Sequence[str]) -> None:
        self.calls.append(("start", tuple(containers)))
        if self.fail_start:
            raise ProviderError("docker start failed (exit 1): nope")

    def compose_up(self, working_dir: Path) -> None:
        self.calls.append(("compose_up", working_dir))


@dataclass
class FakeDaemon:
    """Daemon control that flips the paired runtime's liveness."""

    runtime: FakeRuntime
    fail_stop: bool = False
    calls: list[str] = field(default_factory=list)

    def start(self) -> None:
        self.calls.append("start")
        self.runtime.active = True

    def stop(self) -> None:
        self.calls.append("stop")
        self.runtime.active = False
        if self.fail_stop:
            raise ProviderError("systemctl stop failed (exit 1): docker.service timed out")


def make_backup_config(tmp_path: Path, **overrides: object) -> BackupConfig:
    """Return a backup config rooted in *tmp_path*."""
    values: dict[str, object] = {
        "paths": (tmp_path / "data",),
        "excludes": (str(tmp_path / "repo"),),
        "tags": ("manual-snapshot",),
        "min_free_space_gb": 5,
    }
    values.update(overrides)
    return BackupConfig(**values)  # type: ignore[arg-type]


def make_restore_config(tmp_path: Path, **overrides: object) -> RestoreConfig:
    """Return a restore config whose live root is a directory under *tmp_path*."""
    live_root = tmp_path / "live"
    live_root.mkdir(exist_ok=True)
    values: dict[str, object] = {
        "staging_root": tmp_path / "staging",
        "live_root": live_root,
        "space_check_path": live_root,
        "runtime_data_dir": Path("/var/lib/docker"),
        "additive_paths": (Path("/usr"),),
        "sync_excludes": ("/var/backups/restic-repo", "/var/lib/docker", "/proc"),
        "confirmation_phrase": "PROCEED",
    }
    values.update(overrides)
    return RestoreConfig(**values)  # type: ignore[arg-type]
