"""One-shot detection of the external tools available on this host.

Detection runs once per CLI invocation; the resulting :class:`Capabilities`
value is handed to the providers and orchestrators instead of re-probing the
host on every call.
"""
from __future__ import annotations

import re
import shutil
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass

from packaging.version import InvalidVersion, Version

from .config import BinariesConfig

MIN_RESTIC_VERSION = Version("0.12.0")

_RESTIC_VERSION_RE = re.compile(r"restic\s+v?(\d+\.\d+(?:\.\d+)?)")


@dataclass(frozen=True, slots=True)
class Capabilities:
    """Resolved tool availability for the current host."""

    restic_path: str | None
    restic_version: Version | None
    rsync_path: str | None
    docker_path: str | None
    compose_command: tuple[str, ...] | None

    @property
    def restic_supported(self) -> bool:
        """Return True when restic is present and new enough for JSON listings."""
        return self.restic_version is not None and self.restic_version >= MIN_RESTIC_VERSION

    def missing_tools(self) -> list[str]:
        """Return the required tools that could not be found."""
        missing: list[str] = []
        if self.restic_path is None:
            missing.append("restic")
        if self.rsync_path is None:
            missing.append("rsync")
        return missing

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "restic": {
                "path": self.restic_path,
                "version": str(self.restic_version) if self.restic_version else None,
                "supported": self.restic_supported,
                "minimum": str(MIN_RESTIC_VERSION),
            },
            "rsync": {"path": self.rsync_path},
            "docker": {
                "path": self.docker_path,
                "compose": " ".join(self.compose_command) if self.compose_command else None,
            },
        }


def parse_restic_version(output: str) -> Version | None:
    """Extract the version from ``restic version`` output."""
    match = _RESTIC_VERSION_RE.search(output or "")
    if match is None:
        return None
    try:
        return Version(match.group(1))
    except InvalidVersion:
        return None


def detect_capabilities(binaries: BinariesConfig) -> Capabilities:
    """Probe the host for restic, rsync, docker and a compose implementation."""
    restic_path = shutil.which(binaries.restic)
    restic_version: Version | None = None
    if restic_path is not None:
        ok, output = _probe([restic_path, "version"])
        if ok:
            restic_version = parse_restic_version(output)

    docker_path = shutil.which(binaries.docker)
    return Capabilities(
        restic_path=restic_path,
        restic_version=restic_version,
        rsync_path=shutil.which(binaries.rsync),
        docker_path=docker_path,
        compose_command=_resolve_compose(docker_path, binaries.docker_compose),
    )


def _resolve_compose(docker_path: str | None, compose_bin: str) -> tuple[str, ...] | None:
    if docker_path is not None:
        ok, _ = _probe([docker_path, "compose", "version"])
        if ok:
            return (docker_path, "compose")
    standalone = shutil.which(compose_bin)
    if standalone is not None:
        return (standalone,)
    return None


def _probe(args: Sequence[str]) -> tuple[bool, str]:
    try:
        result = subprocess.run(  # noqa: S603, S607
            list(args),
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError:
        return False, ""
    return result.returncode == 0, (result.stdout or result.stderr or "")


__all__ = ["Capabilities", "MIN_RESTIC_VERSION", "detect_capabilities", "parse_restic_version"]
