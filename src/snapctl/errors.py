"""Exception taxonomy shared by the orchestrators, providers and CLI."""
from __future__ import annotations

import signal
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .diskspace import SpaceEstimate


class SnapctlError(RuntimeError):
    """Base class for every error raised by snapctl."""


class PreconditionError(SnapctlError):
    """Raised when an operation cannot start; nothing has been modified."""


class SelectionError(PreconditionError):
    """Raised when a snapshot ordinal falls outside the materialised listing."""


class ConfirmationDeclinedError(PreconditionError):
    """Raised when the operator does not type the confirmation phrase."""


class RepositoryNotInitializedError(PreconditionError):
    """Raised when the snapshot repository is missing or unreadable."""


class RepositoryExistsError(PreconditionError):
    """Raised when bootstrapping would overwrite an existing repository."""


class InsufficientSpaceError(PreconditionError):
    """Raised when the disk space preflight fails."""

    def __init__(self, message: str, estimate: SpaceEstimate) -> None:
        """Attach the failing *estimate* so callers can report both numbers."""
        super().__init__(message)
        self.estimate = estimate


class ProviderError(SnapctlError):
    """Raised when an external command (restic, rsync, docker, systemctl) fails."""


class StagedRestoreError(SnapctlError):
    """Raised when restoring a snapshot into the staging area fails."""


class RestoreInterrupted(SnapctlError):
    """Raised by the interruption handler inside the guarded restore window."""

    def __init__(self, signum: int) -> None:
        """Record the signal that interrupted the restore."""
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        super().__init__(f"Restore interrupted by {name}.")
        self.signum = signum


__all__ = [
    "ConfirmationDeclinedError",
    "InsufficientSpaceError",
    "PreconditionError",
    "ProviderError",
    "RepositoryExistsError",
    "RepositoryNotInitializedError",
    "RestoreInterrupted",
    "SelectionError",
    "SnapctlError",
    "StagedRestoreError",
]
