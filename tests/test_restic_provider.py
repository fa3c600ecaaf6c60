"""Tests for the restic snapshot store provider."""
from __future__ import annotations

import json
import subprocess
from collections.abc import Sequence
from pathlib import Path

import pytest
from conftest import DummyResult

from snapctl.providers.restic import ResticError, ResticProvider


@pytest.fixture
def provider(tmp_path: Path) -> ResticProvider:
    """Return a provider pointed at a temporary repository."""
    return ResticProvider(
        repository=tmp_path / "repo",
        password_file=tmp_path / "password",
        restic_bin="restic",  # Not invoked; monkeypatched in tests.
    )


def _record(
    monkeypatch: pytest.MonkeyPatch,
    result: DummyResult,
) -> list[list[str]]:
    calls: list[list[str]] = []

    def fake_run(self: ResticProvider, args: Sequence[str], **kwargs: object) -> DummyResult:
        calls.append(list(args))
        if kwargs.get("check", True) and result.returncode != 0:
            raise ResticError(f"{kwargs.get('error_prefix')} failed (exit {result.returncode})")
        return result

    monkeypatch.setattr(ResticProvider, "_run_command", fake_run)
    return calls


def test_snapshots_parses_json(monkeypatch: pytest.MonkeyPatch, provider: ResticProvider) -> None:
    """Each element of ``snapshots --json`` becomes a Snapshot."""
    payload = [
        {
            "id": "a" * 64,
            "short_id": "aaaaaaaa",
            "time": "2024-05-01T10:00:00.5+00:00",
            "hostname": "host",
            "tags": ["manual-snapshot"],
            "paths": ["/", "/boot"],
        },
        {"id": "b" * 64, "time": "2024-05-02T10:00:00Z", "hostname": "host"},
    ]
    calls = _record(monkeypatch, DummyResult(stdout=json.dumps(payload)))

    snapshots = provider.snapshots()

    assert calls == [["snapshots", "--json"]]
    assert [snapshot.short_id for snapshot in snapshots] == ["aaaaaaaa", "bbbbbbbb"]
    assert snapshots[0].tags == ("manual-snapshot",)
    assert provider.snapshot_count() == 2


def test_snapshots_handles_null_payload(
    monkeypatch: pytest.MonkeyPatch, provider: ResticProvider
) -> None:
    """An empty repository may print ``null``."""
    _record(monkeypatch, DummyResult(stdout="null\n"))

    assert provider.snapshots() == []


def test_snapshots_rejects_garbage(
    monkeypatch: pytest.MonkeyPatch, provider: ResticProvider
) -> None:
    """Unparseable output raises ResticError."""
    _record(monkeypatch, DummyResult(stdout="not json"))

    with pytest.raises(ResticError, match="invalid JSON"):
        provider.snapshots()


def test_backup_builds_arguments_and_reads_summary(
    monkeypatch: pytest.MonkeyPatch, provider: ResticProvider
) -> None:
    """Tags, exclusions and paths are passed through; the summary id is shortened."""
    stdout = "\n".join(
        [
            json.dumps({"message_type": "status", "percent_done": 0.5}),
            json.dumps(
                {
                    "message_type": "summary",
                    "snapshot_id": "0123456789abcdef",
                    "files_new": 4,
                    "data_added": 2048,
                }
            ),
        ]
    )
    calls = _record(monkeypatch, DummyResult(stdout=stdout))

    summary = provider.backup([Path("/"), "/boot"], ["/var/cache"], ["manual-snapshot"])

    assert calls == [
        [
            "backup",
            "--json",
            "--tag",
            "manual-snapshot",
            "--exclude",
            "/var/cache",
            "/",
            "/boot",
        ]
    ]
    assert summary.snapshot_id == "01234567"
    assert summary.files_new == 4
    assert summary.data_added == 2048


def test_backup_without_summary_raises(
    monkeypatch: pytest.MonkeyPatch, provider: ResticProvider
) -> None:
    """A run that never reports a summary is treated as a failure."""
    _record(monkeypatch, DummyResult(stdout='{"message_type": "status"}\n'))

    with pytest.raises(ResticError, match="summary"):
        provider.backup(["/"])


def test_content_listing_counts_files_only(
    monkeypatch: pytest.MonkeyPatch, provider: ResticProvider
) -> None:
    """The snapshot header and directories are skipped."""
    stdout = "\n".join(
        [
            json.dumps({"struct_type": "snapshot", "id": "abc", "paths": ["/"]}),
            json.dumps({"struct_type": "node", "type": "dir", "path": "/etc"}),
            json.dumps({"struct_type": "node", "type": "file", "path": "/etc/a", "size": 1024}),
            json.dumps({"message_type": "node", "type": "file", "path": "/etc/b", "size": 2048}),
            json.dumps({"type": "file", "path": "/etc/c", "size": 4096}),
        ]
    )
    calls = _record(monkeypatch, DummyResult(stdout=stdout))

    entries = provider.content_listing("abcd1234")

    assert calls == [["ls", "--json", "abcd1234"]]
    assert [entry.size for entry in entries] == [1024, 2048, 4096]


def test_is_initialized_uses_cat_config(
    monkeypatch: pytest.MonkeyPatch, provider: ResticProvider
) -> None:
    """A non-zero ``cat config`` means the repository is not usable."""
    calls = _record(monkeypatch, DummyResult(returncode=1, stderr="Fatal: unable to open"))

    assert provider.is_initialized() is False
    assert calls == [["cat", "config"]]


def test_forget_prunes_by_default(
    monkeypatch: pytest.MonkeyPatch, provider: ResticProvider
) -> None:
    """Deletion removes the snapshot and prunes unreferenced data."""
    calls = _record(monkeypatch, DummyResult())

    provider.forget("abcd1234")
    provider.restore("abcd1234", Path("/tmp/stage"))

    assert calls == [
        ["forget", "abcd1234", "--prune"],
        ["restore", "abcd1234", "--target", "/tmp/stage"],
    ]


def test_run_command_adds_repository_and_reports_stderr(
    monkeypatch: pytest.MonkeyPatch, provider: ResticProvider
) -> None:
    """The real seam passes the repository and credential file, never the credential."""
    seen: list[list[str]] = []

    def fake_subprocess_run(command: list[str], **kwargs: object) -> DummyResult:
        seen.append(command)
        return DummyResult(returncode=1, stderr="Fatal: wrong password")

    monkeypatch.setattr(subprocess, "run", fake_subprocess_run)

    with pytest.raises(ResticError, match=r"restic init failed \(exit 1\): Fatal: wrong password"):
        provider.init()

    assert seen == [
        [
            "restic",
            "-r",
            str(provider.repository),
            "--password-file",
            str(provider.password_file),
            "init",
        ]
    ]


def test_missing_binary_raises_restic_error(
    monkeypatch: pytest.MonkeyPatch, provider: ResticProvider
) -> None:
    """A missing executable becomes a ResticError."""

    def fake_subprocess_run(command: list[str], **kwargs: object) -> DummyResult:
        raise FileNotFoundError(command[0])

    monkeypatch.setattr(subprocess, "run", fake_subprocess_run)

    with pytest.raises(ResticError, match="not found"):
        provider.snapshots()
