"""Scoped ownership of the restore staging area.

:class:`StagingGuard` is entered once per restore attempt. It creates a fresh,
uniquely named staging directory and arms SIGINT/SIGTERM handlers that turn a
signal into :class:`~snapctl.errors.RestoreInterrupted`. However the block is
left, the guard removes the staging directory; if the block failed or was
interrupted and the container runtime is still down, it brings the runtime
back before the previous signal handlers are reinstated.
"""
from __future__ import annotations

import logging
import secrets
import shutil
import signal
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from types import FrameType, TracebackType

from .containers import ContainerStateManager, ResumeReport, WorkloadState
from .errors import RestoreInterrupted

LOGGER = logging.getLogger(__name__)

STAGING_PREFIX = "restic_restore_"
GUARDED_SIGNALS: tuple[signal.Signals, ...] = (signal.SIGINT, signal.SIGTERM)

_Handler = Callable[[int, FrameType | None], object] | int | None


def staging_name(now: float | None = None) -> str:
    """Return a staging directory name unique across attempts."""
    stamp = int(time.time() if now is None else now)
    return f"{STAGING_PREFIX}{stamp}-{secrets.token_hex(3)}"


@dataclass(slots=True)
class StagingGuard:
    """Own the staging directory and the runtime stop for one restore."""

    staging_root: Path
    containers: ContainerStateManager
    workloads: WorkloadState
    signals: tuple[signal.Signals, ...] = GUARDED_SIGNALS
    path: Path | None = None
    rollback_report: ResumeReport | None = None
    pending_signal: int | None = None
    cleanup_error: str | None = None
    _previous: dict[int, _Handler] = field(default_factory=dict)
    _deferring: bool = False
    _armed: bool = False

    def __enter__(self) -> StagingGuard:
        """Create the staging directory and arm the interruption handler.

        If either step fails the runtime is brought back before the error
        propagates, since ``__exit__`` does not run for a failed ``__enter__``.
        """
        try:
            self.staging_root.mkdir(parents=True, exist_ok=True)
            candidate = self.staging_root / staging_name()
            while candidate.exists():
                candidate = self.staging_root / staging_name()
            candidate.mkdir(mode=0o700)
            self.path = candidate
            self._arm()
        except BaseException:
            LOGGER.error("Could not prepare a staging directory under %s.", self.staging_root)
            self._deferring = True
            try:
                self._remove_staging()
                self._rollback()
            finally:
                self._disarm()
            raise
        LOGGER.debug("Staging directory %s created; interruption handler armed.", candidate)
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> bool:
        """Remove the staging area, roll back the runtime on failure, then disarm."""
        self._deferring = True
        try:
            self._remove_staging()
            if exc is not None or self.pending_signal is not None:
                self._rollback()
        finally:
            self._disarm()
        if exc is None and self.pending_signal is not None:
            raise RestoreInterrupted(self.pending_signal)
        return False

    @property
    def armed(self) -> bool:
        """Return True while the interruption handler is installed."""
        return self._armed

    @property
    def directory(self) -> Path:
        """Return the staging directory; only valid inside the guarded block."""
        if self.path is None:
            raise RuntimeError("Staging guard has not been entered.")
        return self.path

    # ------------------------------------------------------------------
    def _runtime_down(self) -> bool:
        return self.workloads.daemon_stopped or self.workloads.containers_stopped

    def _rollback(self) -> None:
        if self._runtime_down():
            LOGGER.warning("Restore did not complete; bringing the container runtime back.")
            self.rollback_report = self.containers.resume(self.workloads)

    def _remove_staging(self) -> None:
        if self.path is None or not self.path.exists():
            return
        LOGGER.info("Removing staging directory %s...", self.path)
        try:
            shutil.rmtree(self.path)
        except OSError as exc:
            self.cleanup_error = f"Failed to remove staging directory {self.path}: {exc}"
            LOGGER.error(self.cleanup_error)

    def _handle_signal(self, signum: int, frame: FrameType | None) -> None:
        if self._deferring:
            LOGGER.warning("Signal %s received during cleanup; finishing cleanup first.", signum)
            if self.pending_signal is None:
                self.pending_signal = signum
            return
        LOGGER.warning("Signal %s received; aborting restore.", signum)
        raise RestoreInterrupted(signum)

    def _arm(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            LOGGER.debug("Not on the main thread; signal handlers left untouched.")
            return
        for signum in self.signals:
            self._previous[int(signum)] = signal.getsignal(signum)
            signal.signal(signum, self._handle_signal)
        self._armed = True

    def _disarm(self) -> None:
        if not self._armed:
            return
        for signum, previous in self._previous.items():
            signal.signal(signum, previous if previous is not None else signal.SIG_DFL)
        self._previous.clear()
        self._armed = False


__all__ = ["GUARDED_SIGNALS", "STAGING_PREFIX", "StagingGuard", "staging_name"]
