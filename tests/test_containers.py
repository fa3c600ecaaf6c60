"""Tests for container capture and replay."""
from __future__ import annotations

import logging
from pathlib import Path

import pytest
from conftest import FakeDaemon, FakeRuntime, compose_container

from snapctl.containers import ContainerStateManager, WorkloadState, classify
from snapctl.errors import ProviderError
from snapctl.providers.docker import ContainerInfo


def _manager(runtime: FakeRuntime) -> tuple[ContainerStateManager, FakeDaemon]:
    daemon = FakeDaemon(runtime)
    manager = ContainerStateManager(
        runtime=runtime,
        daemon=daemon,
        liveness_timeout=3.0,
        poll_interval=1.0,
        sleep=lambda seconds: None,
    )
    return manager, daemon


def test_classify_groups_compose_projects(tmp_path: Path) -> None:
    """Two containers of one project yield one group; the first working dir wins."""
    infos = [
        ContainerInfo(id="s1", name="web"),
        compose_container("c1", "app-db-1", "app", str(tmp_path / "first")),
        compose_container("c2", "app-api-1", "app", str(tmp_path / "second")),
    ]

    standalone, groups = classify(infos)

    assert [workload.name for workload in standalone] == ["web"]
    assert groups == {"app": str(tmp_path / "first")}


def test_classify_drops_project_without_working_dir(caplog: pytest.LogCaptureFixture) -> None:
    """A project whose containers never carry the label is dropped with a warning."""
    infos = [
        compose_container("c1", "orphan-1", "orphan", None),
        compose_container("c2", "late-1", "late", None),
        compose_container("c3", "late-2", "late", "/srv/late"),
    ]

    with caplog.at_level(logging.WARNING, logger="snapctl.containers"):
        standalone, groups = classify(infos)

    assert standalone == []
    assert groups == {"late": "/srv/late"}
    assert "orphan" in caplog.text


def test_capture_is_noop_when_runtime_not_installed() -> None:
    """A host without the runtime yields an empty state and stops nothing."""
    runtime = FakeRuntime(installed=False)
    manager, daemon = _manager(runtime)

    state = manager.capture(stop_daemon=True)

    assert state.was_running is False
    assert daemon.calls == []
    assert manager.resume(state).to_dict()["started"] == []


def test_capture_is_noop_when_runtime_inactive() -> None:
    """An inactive runtime is left alone and resume does not start it."""
    runtime = FakeRuntime(active=False, containers=[ContainerInfo(id="x", name="x")])
    manager, daemon = _manager(runtime)

    state = manager.capture(stop_daemon=True)
    report = manager.resume(state)

    assert state == WorkloadState()
    assert daemon.calls == []
    assert runtime.calls == []
    assert report.daemon_started is False


def test_backup_capture_stops_and_restarts_exact_ids() -> None:
    """Without stopping the daemon, the same ids are stopped and restarted."""
    runtime = FakeRuntime(
        containers=[ContainerInfo(id="a1", name="web"), ContainerInfo(id="b2", name="db")]
    )
    manager, daemon = _manager(runtime)

    state = manager.capture(stop_daemon=False)
    report = manager.resume(state)

    assert runtime.calls == [("stop", ("a1", "b2")), ("start", ("a1", "b2"))]
    assert daemon.calls == []
    assert report.started == ["a1", "b2"]


def test_replay_starts_daemon_then_names_then_groups(tmp_path: Path) -> None:
    """A restore-time capture is replayed by name and by compose project."""
    project_dir = tmp_path / "compose"
    project_dir.mkdir()
    runtime = FakeRuntime(
        containers=[
            ContainerInfo(id="s1", name="web"),
            compose_container("c1", "app-db-1", "app", str(project_dir)),
            compose_container("c2", "app-api-1", "app", str(project_dir)),
        ]
    )
    manager, daemon = _manager(runtime)

    state = manager.capture(stop_daemon=True)
    assert state.daemon_stopped is True
    assert runtime.active is False

    report = manager.resume(state)

    assert daemon.calls == ["stop", "start"]
    assert runtime.calls == [("start", ("web",)), ("compose_up", project_dir)]
    assert report.groups_up == ["app"]
    assert report.ok is True
    assert state.daemon_stopped is False


def test_replay_skips_missing_compose_directory(
    tmp_path: Path,
    caplog: pytest.LogCaptureFixture,
) -> None:
    """A vanished working directory is a warning, not an error."""
    runtime = FakeRuntime(
        containers=[compose_container("c1", "gone-1", "gone", str(tmp_path / "missing"))]
    )
    manager, _ = _manager(runtime)
    state = manager.capture(stop_daemon=True)
    caplog.clear()

    with caplog.at_level(logging.WARNING, logger="snapctl.containers"):
        report = manager.resume(state)

    assert report.ok is True
    assert report.groups_up == []
    assert any("gone" in warning for warning in report.warnings)
    assert all(record.levelno == logging.WARNING for record in caplog.records)


def test_replay_reports_runtime_that_never_comes_up() -> None:
    """Workloads are not started when the runtime stays down after a start."""
    runtime = FakeRuntime(containers=[ContainerInfo(id="s1", name="web")])

    class StubbornDaemon(FakeDaemon):
        def start(self) -> None:
            self.calls.append("start")

    daemon = StubbornDaemon(runtime)
    manager = ContainerStateManager(
        runtime=runtime, daemon=daemon, liveness_timeout=2.0, sleep=lambda s: None
    )

    state = manager.capture(stop_daemon=True)
    report = manager.resume(state)

    assert report.daemon_started is True
    assert report.ok is False
    assert ("start", ("web",)) not in runtime.calls


def test_restart_failure_is_reported_not_raised() -> None:
    """A failed restart is collected into the report."""
    runtime = FakeRuntime(containers=[ContainerInfo(id="a1", name="web")], fail_start=True)
    manager, _ = _manager(runtime)

    report = manager.resume(manager.capture(stop_daemon=False))

    assert report.ok is False
    assert "Failed to restart containers" in report.errors[0]


def test_failed_container_stop_restarts_what_was_requested() -> None:
    """A partial ``docker stop`` failure still starts every captured id again."""
    runtime = FakeRuntime(
        containers=[ContainerInfo(id="a", name="one"), ContainerInfo(id="b", name="two")],
        fail_stop=True,
    )
    manager, daemon = _manager(runtime)

    with pytest.raises(ProviderError, match="docker stop"):
        manager.capture(stop_daemon=False)

    assert runtime.calls == [("stop", ("a", "b")), ("start", ("a", "b"))]
    assert daemon.calls == []


def test_failed_daemon_stop_brings_runtime_back() -> None:
    """A daemon that half-stopped is started again before the error propagates."""
    runtime = FakeRuntime(containers=[ContainerInfo(id="s1", name="web")])
    manager, daemon = _manager(runtime)
    daemon.fail_stop = True

    with pytest.raises(ProviderError, match="systemctl stop"):
        manager.capture(stop_daemon=True)

    assert daemon.calls == ["stop", "start"]
    assert runtime.active is True
    assert ("start", ("web",)) in runtime.calls
