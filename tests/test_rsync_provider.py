"""Tests for the rsync file sync provider."""
from __future__ import annotations

import subprocess
from pathlib import Path

import pytest
from conftest import DummyResult

from snapctl.providers.rsync import RsyncError, RsyncProvider


def _capture(monkeypatch: pytest.MonkeyPatch, returncode: int = 0) -> list[list[str]]:
    seen: list[list[str]] = []

    def fake_subprocess_run(command: list[str], **kwargs: object) -> DummyResult:
        seen.append(command)
        return DummyResult(returncode=returncode, stderr="some files vanished")

    monkeypatch.setattr(subprocess, "run", fake_subprocess_run)
    return seen


def test_mirror_deletes_and_excludes(monkeypatch: pytest.MonkeyPatch) -> None:
    """Mirror mode deletes extraneous files and honours exclusions."""
    seen = _capture(monkeypatch)

    RsyncProvider().mirror(Path("/tmp/stage"), Path("/"), ["/proc", "/var/lib/docker"])

    assert seen == [
        [
            "rsync",
            "-aAXH",
            "--numeric-ids",
            "--delete",
            "--exclude=/proc",
            "--exclude=/var/lib/docker",
            "/tmp/stage/",
            "/",
        ]
    ]


def test_additive_never_deletes(monkeypatch: pytest.MonkeyPatch) -> None:
    """Additive mode copies contents without ``--delete``."""
    seen = _capture(monkeypatch)

    RsyncProvider(rsync_bin="/usr/bin/rsync").additive(Path("/tmp/stage/usr"), Path("/usr"))

    assert seen == [["/usr/bin/rsync", "-aAXH", "--numeric-ids", "/tmp/stage/usr/", "/usr/"]]
    assert "--delete" not in seen[0]


def test_failure_raises_with_exit_code(monkeypatch: pytest.MonkeyPatch) -> None:
    """A non-zero exit becomes an RsyncError naming the pass."""
    _capture(monkeypatch, returncode=24)

    with pytest.raises(RsyncError, match=r"rsync mirror .* failed \(exit 24\)"):
        RsyncProvider().mirror(Path("/a"), Path("/b"))
