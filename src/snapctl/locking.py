"""Process-level advisory locks for mutating snapctl commands.

Only one backup, restore, delete or repository bootstrap may run on a host at
a time. The lock is an ``fcntl.flock`` on ``<runtime_dir>/snapctl.lock``;
the lock file is rewritten with diagnostic metadata on every acquisition and
left in place after release.
"""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

GLOBAL_LOCK_NAME = "snapctl"
_POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired before the timeout elapses."""


@dataclass(slots=True)
class LockHandle:
    """Details about an acquired lock."""

    path: Path
    wait_ms: int


class LockManager:
    """Acquire named advisory locks under the runtime directory."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Store the lock directory and the default acquisition timeout."""
        self.runtime_dir = Path(runtime_dir).expanduser()
        self.default_timeout = default_timeout

    def lock_path(self, name: str) -> Path:
        """Return the lock file path for *name*."""
        safe = "".join(char if char.isalnum() or char in {"-", "_", "."} else "-" for char in name)
        return self.runtime_dir / f"{safe}.lock"

    @contextmanager
    def operation_lock(
        self,
        command: str | None = None,
        *,
        timeout: float | None = None,
    ) -> Iterator[LockHandle]:
        """Hold the global snapctl lock for the duration of the block."""
        with self.named_lock(GLOBAL_LOCK_NAME, command=command, timeout=timeout) as handle:
            yield handle

    @contextmanager
    def named_lock(
        self,
        name: str,
        *,
        command: str | None = None,
        timeout: float | None = None,
    ) -> Iterator[LockHandle]:
        """Hold the lock called *name* for the duration of the block."""
        path = self.lock_path(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        limit = self.default_timeout if timeout is None else timeout
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            wait_ms = self._acquire(fd, path, limit)
            self._write_metadata(fd, path, command)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def _acquire(self, fd: int, path: Path, timeout: float) -> int:
        start = time.monotonic()
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                elapsed = time.monotonic() - start
                if elapsed >= timeout:
                    holder = self._describe_holder(path)
                    raise LockTimeoutError(
                        f"Timed out after {timeout:.1f}s waiting for {path}{holder}."
                    ) from None
                time.sleep(min(_POLL_INTERVAL, max(timeout - elapsed, 0.0)))
                continue
            return int((time.monotonic() - start) * 1000)

    def _write_metadata(self, fd: int, path: Path, command: str | None) -> None:
        payload = {
            "pid": os.getpid(),
            "path": str(path),
            "command": command,
            "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds"),
        }
        data = (json.dumps(payload) + "\n").encode("utf-8")
        os.ftruncate(fd, 0)
        os.lseek(fd, 0, os.SEEK_SET)
        os.write(fd, data)

    @staticmethod
    def _describe_holder(path: Path) -> str:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return ""
        if not isinstance(data, dict) or "pid" not in data:
            return ""
        command = data.get("command")
        suffix = f" running '{command}'" if command else ""
        return f" (held by pid {data['pid']}{suffix})"


__all__ = ["GLOBAL_LOCK_NAME", "LockHandle", "LockManager", "LockTimeoutError"]
