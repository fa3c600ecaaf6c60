"""Backup and restore orchestration.

The restore path is a small state machine::

    Idle -> SpacePreflight -> CaptureState -> Staging -> SwapData
         -> SelectiveSync -> Cleanup -> Resume -> Done

``Aborted`` is reachable from ``SpacePreflight`` (not enough space, operator
declined) and from any point inside the staging window (signal, sync
failure); ``Failed`` is reachable only from ``Staging`` when the snapshot
store cannot restore into the staging area. The staging window is owned by a
:class:`~snapctl.staging.StagingGuard`, so every exit path removes the staging
directory and brings a stopped runtime back.

Once ``SwapData`` has begun the live system has been modified; a later
failure leaves it partially restored.
"""
from __future__ import annotations

import logging
import os
import secrets
import shutil
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Protocol

from .config import BackupConfig, RestoreConfig
from .containers import ContainerStateManager, ResumeReport, WorkloadState
from .diskspace import DiskSpaceEstimator, SpaceEstimate
from .errors import (
    ConfirmationDeclinedError,
    InsufficientSpaceError,
    ProviderError,
    RestoreInterrupted,
    StagedRestoreError,
)
from .logging import OperationScope
from .providers.restic import BackupSummary
from .snapshots import Snapshot, SnapshotListing
from .staging import StagingGuard

LOGGER = logging.getLogger(__name__)


class SnapshotStore(Protocol):
    """Snapshot store operations used by the orchestrators."""

    def snapshot_count(self) -> int: ...

    def backup(
        self,
        paths: Sequence[Path | str],
        excludes: Iterable[str] = (),
        tags: Iterable[str] = (),
    ) -> BackupSummary: ...

    def restore(self, snapshot_id: str, target: Path) -> None: ...


class FileSync(Protocol):
    """File synchronisation policies used to merge the staged tree."""

    def mirror(self, source: Path, dest: Path, excludes: Iterable[str] = ()) -> None: ...

    def additive(self, source: Path, dest: Path, excludes: Iterable[str] = ()) -> None: ...


class RestoreState(str, Enum):
    """States of the restore state machine."""

    IDLE = "idle"
    SPACE_PREFLIGHT = "space-preflight"
    CAPTURE_STATE = "capture-state"
    STAGING = "staging"
    SWAP_DATA = "swap-data"
    SELECTIVE_SYNC = "selective-sync"
    CLEANUP = "cleanup"
    RESUME = "resume"
    DONE = "done"
    ABORTED = "aborted"
    FAILED = "failed"


ConfirmCallback = Callable[[Snapshot, SpaceEstimate], str]


def _step(op: OperationScope | None, name: str, *, status: str = "success", detail: object = None) -> None:
    if op is not None:
        op.add_step(name, status=status, detail=detail)


def _relative(path: Path) -> Path:
    return path.relative_to(path.anchor) if path.is_absolute() else path


@dataclass(slots=True)
class RestoreOutcome:
    """Summary of a completed restore."""

    snapshot: Snapshot
    estimate: SpaceEstimate
    workloads: WorkloadState
    resume: ResumeReport
    runtime_data_swapped: bool
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "snapshot": self.snapshot.to_dict(),
            "estimate": self.estimate.to_dict(),
            "workloads": self.workloads.to_dict(),
            "resume": self.resume.to_dict(),
            "runtime_data_swapped": self.runtime_data_swapped,
            "warnings": list(self.warnings),
        }


@dataclass(slots=True)
class RestoreOrchestrator:
    """Restore the whole machine from one snapshot."""

    store: SnapshotStore
    sync: FileSync
    containers: ContainerStateManager
    estimator: DiskSpaceEstimator
    settings: RestoreConfig
    state: RestoreState = RestoreState.IDLE
    history: list[RestoreState] = field(default_factory=list)

    def select(self, listing: SnapshotListing, ordinal: int | str) -> Snapshot:
        """Resolve *ordinal*; an invalid choice raises and leaves the machine idle."""
        return listing.select(ordinal)

    def execute(
        self,
        listing: SnapshotListing,
        ordinal: int | str,
        *,
        confirm: ConfirmCallback,
        op: OperationScope | None = None,
    ) -> RestoreOutcome:
        """Run the full restore for the snapshot at *ordinal* in *listing*."""
        self.state = RestoreState.IDLE
        self.history = [RestoreState.IDLE]
        snapshot = self.select(listing, ordinal)
        _step(op, "restore.select", detail=snapshot.short_id)

        self._transition(RestoreState.SPACE_PREFLIGHT)
        estimate = self.estimator.estimate_restore(snapshot.short_id)
        _step(op, "restore.preflight", status="success" if estimate.ok else "error",
              detail=estimate.to_dict())
        if not estimate.ok:
            self._transition(RestoreState.ABORTED)
            raise InsufficientSpaceError(
                f"Not enough disk space under {estimate.checked_path} to perform the restore. "
                f"{estimate.describe()}",
                estimate,
            )

        phrase = confirm(snapshot, estimate)
        if (phrase or "").strip() != self.settings.confirmation_phrase:
            self._transition(RestoreState.ABORTED)
            _step(op, "restore.confirm", status="skipped", detail="declined")
            raise ConfirmationDeclinedError("Restore aborted; confirmation phrase not entered.")
        _step(op, "restore.confirm")

        self._transition(RestoreState.CAPTURE_STATE)
        try:
            workloads = self.containers.capture(stop_daemon=True)
        except ProviderError:
            self._transition(RestoreState.ABORTED)
            raise
        _step(op, "restore.capture", detail=workloads.to_dict())

        warnings: list[str] = []
        self._transition(RestoreState.STAGING)
        guard = StagingGuard(self.settings.staging_root, self.containers, workloads)
        try:
            with guard:
                staging = guard.directory
                _step(op, "restore.staging", status="running", detail=str(staging))
                LOGGER.info("Restoring snapshot %s into %s...", snapshot.short_id, staging)
                try:
                    self.store.restore(snapshot.short_id, staging)
                except ProviderError as exc:
                    raise StagedRestoreError(
                        f"Restoring snapshot {snapshot.short_id} into staging failed: {exc}"
                    ) from exc

                self._transition(RestoreState.SWAP_DATA)
                swapped = self._swap_runtime_data(staging)
                if not swapped:
                    warnings.append(
                        f"No runtime data ({self.settings.runtime_data_dir}) in snapshot; "
                        "swap skipped."
                    )
                _step(op, "restore.swap", status="success" if swapped else "warning",
                      detail=str(self.settings.runtime_data_dir))

                self._transition(RestoreState.SELECTIVE_SYNC)
                self._selective_sync(staging)
                _step(op, "restore.sync")

                self._transition(RestoreState.CLEANUP)
        except StagedRestoreError:
            self._transition(RestoreState.FAILED)
            self._note_rollback(guard, op)
            raise
        except (RestoreInterrupted, ProviderError, OSError):
            self._transition(RestoreState.ABORTED)
            self._note_rollback(guard, op)
            raise
        _step(op, "restore.cleanup", detail=str(guard.path))
        if guard.cleanup_error:
            warnings.append(guard.cleanup_error)

        self._transition(RestoreState.RESUME)
        report = self.containers.resume(workloads)
        warnings.extend(report.warnings)
        warnings.extend(report.errors)
        _step(op, "restore.resume", status="success" if report.ok else "warning",
              detail=report.to_dict())

        self._transition(RestoreState.DONE)
        return RestoreOutcome(
            snapshot=snapshot,
            estimate=estimate,
            workloads=workloads,
            resume=report,
            runtime_data_swapped=swapped,
            warnings=warnings,
        )

    # ------------------------------------------------------------------
    def _transition(self, state: RestoreState) -> None:
        LOGGER.debug("Restore state %s -> %s", self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def _note_rollback(self, guard: StagingGuard, op: OperationScope | None) -> None:
        if guard.rollback_report is not None:
            _step(
                op,
                "restore.rollback",
                status="success" if guard.rollback_report.ok else "warning",
                detail=guard.rollback_report.to_dict(),
            )

    def _swap_runtime_data(self, staging: Path) -> bool:
        """Replace the live runtime data directory wholesale with the staged one."""
        relative = _relative(self.settings.runtime_data_dir)
        staged = staging / relative
        live = self.settings.live_root / relative
        if not staged.is_dir() or staged.is_symlink():
            LOGGER.warning(
                "No runtime data found at %s in the snapshot; skipping swap.",
                self.settings.runtime_data_dir,
            )
            return False
        LOGGER.info("Swapping runtime data directory %s...", live)
        live.parent.mkdir(parents=True, exist_ok=True)
        incoming = live.with_name(f".{live.name}.incoming-{secrets.token_hex(3)}")
        # Same-filesystem rename when possible, copy otherwise; the live
        # directory is only removed once the staged copy sits beside it.
        try:
            shutil.move(str(staged), str(incoming))
            if live.is_symlink() or live.is_file():
                live.unlink()
            elif live.exists():
                shutil.rmtree(live)
            os.replace(incoming, live)
        except BaseException:
            if incoming.exists():
                LOGGER.warning("Runtime data swap did not complete; removing %s.", incoming)
                shutil.rmtree(incoming, ignore_errors=True)
            raise
        return True

    def sync_excludes(self, staging: Path) -> list[str]:
        """Return the exclusion set applied to the mirror sync."""
        excludes = list(self.settings.sync_excludes)
        try:
            staging_rel = staging.relative_to(self.settings.live_root)
        except ValueError:
            staging_rel = None
        if staging_rel is not None:
            anchored = f"/{staging_rel.as_posix()}"
            if anchored not in excludes:
                excludes.append(anchored)
        return excludes

    def _selective_sync(self, staging: Path) -> None:
        """Mirror application data, then add OS directories without deleting."""
        root = self.settings.live_root
        excludes = self.sync_excludes(staging)
        additive = [f"/{_relative(path).as_posix()}" for path in self.settings.additive_paths]
        LOGGER.info("Syncing system files (mirror policy)...")
        self.sync.mirror(staging, root, [*excludes, *additive])
        for anchored in additive:
            relative = Path(anchored.lstrip("/"))
            source = staging / relative
            if source.is_symlink() or not source.is_dir():
                LOGGER.debug("Skipping additive sync for %s (not a directory in snapshot).", anchored)
                continue
            LOGGER.info("Syncing %s (additive policy)...", anchored)
            self.sync.additive(source, root / relative, _reanchor(excludes, anchored))


def _reanchor(excludes: Sequence[str], prefix: str) -> list[str]:
    """Return *excludes* under *prefix*, re-anchored to *prefix* as transfer root."""
    result: list[str] = []
    marker = prefix.rstrip("/") + "/"
    for pattern in excludes:
        if pattern.startswith(marker):
            result.append("/" + pattern[len(marker) :])
    return result


@dataclass(slots=True)
class BackupOutcome:
    """Summary of a completed backup."""

    summary: BackupSummary
    estimate: SpaceEstimate
    workloads: WorkloadState
    resume: ResumeReport

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "summary": self.summary.to_dict(),
            "estimate": self.estimate.to_dict(),
            "workloads": self.workloads.to_dict(),
            "resume": self.resume.to_dict(),
        }


@dataclass(slots=True)
class BackupOrchestrator:
    """Preflight, pause containers, back up the tree, resume containers."""

    store: SnapshotStore
    containers: ContainerStateManager
    estimator: DiskSpaceEstimator
    settings: BackupConfig

    def execute(
        self,
        *,
        tags: Iterable[str] | None = None,
        op: OperationScope | None = None,
    ) -> BackupOutcome:
        """Create a new snapshot of the configured paths."""
        repo_is_empty = self.store.snapshot_count() == 0
        estimate = self.estimator.estimate_backup(repo_is_empty)
        _step(op, "backup.preflight", status="success" if estimate.ok else "error",
              detail=estimate.to_dict())
        if not estimate.ok:
            label = "the first backup" if repo_is_empty else "a new backup"
            raise InsufficientSpaceError(
                f"Not enough disk space for {label}. {estimate.describe()}",
                estimate,
            )

        workloads = self.containers.capture(stop_daemon=False)
        _step(op, "backup.capture", detail=workloads.to_dict())
        resolved_tags = list(tags) if tags else list(self.settings.tags)
        try:
            LOGGER.info(
                "Starting backup of %s...", " ".join(str(path) for path in self.settings.paths)
            )
            summary = self.store.backup(self.settings.paths, self.settings.excludes, resolved_tags)
            _step(op, "backup.snapshot", detail=summary.to_dict())
        finally:
            report = self.containers.resume(workloads)
            _step(op, "backup.resume", status="success" if report.ok else "warning",
                  detail=report.to_dict())
        return BackupOutcome(
            summary=summary,
            estimate=estimate,
            workloads=workloads,
            resume=report,
        )


__all__ = [
    "BackupOrchestrator",
    "BackupOutcome",
    "ConfirmCallback",
    "FileSync",
    "RestoreOrchestrator",
    "RestoreOutcome",
    "RestoreState",
    "SnapshotStore",
]
