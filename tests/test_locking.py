"""Tests for the locking primitives."""
from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from snapctl.locking import LockManager, LockTimeoutError


def test_operation_lock_creates_metadata(tmp_path: Path) -> None:
    """Acquiring the global lock writes metadata and releases cleanly."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    lock_path = tmp_path / "run" / "snapctl.lock"
    with manager.operation_lock("snapshot create") as handle:
        assert handle.wait_ms >= 0
        assert handle.path == lock_path
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        assert data["pid"] == os.getpid()
        assert data["path"] == str(lock_path)
        assert data["command"] == "snapshot create"

    # Lockfile persists for diagnostics but no longer holds the lock.
    with manager.operation_lock(timeout=0.2):
        pass


def test_operation_lock_timeout_names_holder(tmp_path: Path) -> None:
    """A second acquisition times out and reports who holds the lock."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.operation_lock("snapshot restore"):
        with pytest.raises(LockTimeoutError, match="snapshot restore"):
            with manager.operation_lock("snapshot delete", timeout=0.1):
                pass


def test_lock_path_sanitises_names(tmp_path: Path) -> None:
    """Unsafe characters in lock names are replaced."""
    manager = LockManager(tmp_path / "run")

    assert manager.lock_path("a/b c") == tmp_path / "run" / "a-b-c.lock"
