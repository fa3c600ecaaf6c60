"""Clients for the external tools snapctl drives."""
from __future__ import annotations

from .docker import ContainerInfo, DockerError, DockerProvider
from .restic import BackupSummary, ContentEntry, ResticError, ResticProvider
from .rsync import RsyncError, RsyncProvider
from .systemd import SystemdError, SystemdProvider

__all__ = [
    "BackupSummary",
    "ContainerInfo",
    "ContentEntry",
    "DockerError",
    "DockerProvider",
    "ResticError",
    "ResticProvider",
    "RsyncError",
    "RsyncProvider",
    "SystemdError",
    "SystemdProvider",
]
