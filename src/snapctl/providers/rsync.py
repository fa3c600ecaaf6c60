"""File sync client backed by ``rsync``."""
from __future__ import annotations

import subprocess
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path

from ..errors import ProviderError

# Archive mode plus ACLs and extended attributes, as a whole-system copy needs.
BASE_FLAGS: tuple[str, ...] = ("-aAXH", "--numeric-ids")


class RsyncError(ProviderError):
    """Raised when rsync fails."""


@dataclass(slots=True)
class RsyncProvider:
    """Merge a staged tree into a live one with ``rsync``."""

    rsync_bin: str = "rsync"

    def mirror(self, source: Path, dest: Path, excludes: Iterable[str] = ()) -> None:
        """Make *dest* match *source*, deleting files absent from *source*.

        Excluded paths are neither copied nor deleted on the destination.
        """
        args = [*BASE_FLAGS, "--delete"]
        args.extend(f"--exclude={pattern}" for pattern in excludes)
        args.extend([_as_dir(source), _as_dir(dest)])
        self._run_command(args, error_prefix=f"rsync mirror {source} -> {dest}")

    def additive(self, source: Path, dest: Path, excludes: Iterable[str] = ()) -> None:
        """Copy *source* over *dest* without deleting anything on *dest*."""
        args = list(BASE_FLAGS)
        args.extend(f"--exclude={pattern}" for pattern in excludes)
        args.extend([_as_dir(source), _as_dir(dest)])
        self._run_command(args, error_prefix=f"rsync additive {source} -> {dest}")

    # ------------------------------------------------------------------
    def _run_command(
        self,
        args: Sequence[str],
        *,
        error_prefix: str,
    ) -> subprocess.CompletedProcess[str]:
        command = [self.rsync_bin, *args]
        try:
            result = subprocess.run(  # noqa: S603, S607
                command,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise RsyncError(f"{self.rsync_bin} not found: {exc}") from exc
        if result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise RsyncError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


def _as_dir(path: Path) -> str:
    """Return *path* with a trailing slash so rsync copies its contents."""
    text = str(path)
    return text if text.endswith("/") else f"{text}/"


__all__ = ["BASE_FLAGS", "RsyncError", "RsyncProvider"]
