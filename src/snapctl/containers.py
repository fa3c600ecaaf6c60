"""Capture and replay of running container workloads.

Before a backup or restore touches the disk, the running containers are
recorded and stopped; afterwards they are brought back. Two shapes of workload
are tracked:

* standalone containers, recorded by their human-readable name;
* compose groups, one entry per project mapping to the working directory the
  project is brought up from. The first container of a project that carries
  the working-directory label supplies it. A project whose containers never
  carry it cannot be replayed and is dropped with a warning.

Backups stop only the enumerated containers and restart exactly those ids.
Restores stop the whole runtime, because the runtime's data directory is
replaced underneath it, and replay the topology by name and by project.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from .errors import ProviderError
from .providers.docker import ContainerInfo

LOGGER = logging.getLogger(__name__)


class ContainerRuntime(Protocol):
    """Container engine operations used for capture and replay."""

    def is_installed(self) -> bool: ...

    def is_active(self) -> bool: ...

    def list_running_ids(self) -> list[str]: ...

    def inspect(self, container_ids: Sequence[str]) -> list[ContainerInfo]: ...

    def stop(self, containers: Sequence[str]) -> None: ...

    def start(self, containers: Sequence[str]) -> None: ...

    def compose_up(self, working_dir: Path) -> None: ...


class DaemonControl(Protocol):
    """Start and stop the container runtime daemon itself."""

    def start(self) -> object: ...

    def stop(self) -> object: ...


@dataclass(frozen=True, slots=True)
class StandaloneWorkload:
    """A running container that is not part of a compose project."""

    id: str
    name: str


@dataclass(slots=True)
class WorkloadState:
    """Point-in-time record of the running workloads, held for one operation."""

    standalone: list[StandaloneWorkload] = field(default_factory=list)
    groups: dict[str, str] = field(default_factory=dict)
    container_ids: list[str] = field(default_factory=list)
    was_running: bool = False
    daemon_stopped: bool = False
    containers_stopped: bool = False

    @property
    def standalone_names(self) -> list[str]:
        """Return standalone container names in capture order."""
        return [workload.name for workload in self.standalone]

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "was_running": self.was_running,
            "daemon_stopped": self.daemon_stopped,
            "standalone": self.standalone_names,
            "groups": dict(self.groups),
            "containers": len(self.container_ids),
        }


@dataclass(slots=True)
class ResumeReport:
    """What a resume managed to bring back."""

    daemon_started: bool = False
    started: list[str] = field(default_factory=list)
    groups_up: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        """Return True when nothing failed outright."""
        return not self.errors

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "daemon_started": self.daemon_started,
            "started": list(self.started),
            "groups_up": list(self.groups_up),
            "warnings": list(self.warnings),
            "errors": list(self.errors),
        }


def classify(infos: Sequence[ContainerInfo]) -> tuple[list[StandaloneWorkload], dict[str, str]]:
    """Split *infos* into standalone workloads and compose groups."""
    standalone: list[StandaloneWorkload] = []
    groups: dict[str, str] = {}
    seen_projects: list[str] = []
    for info in infos:
        project = info.compose_project
        if project is None:
            standalone.append(StandaloneWorkload(id=info.id, name=info.name))
            continue
        if project not in seen_projects:
            seen_projects.append(project)
        working_dir = info.compose_working_dir
        if working_dir and project not in groups:
            groups[project] = working_dir
    for project in seen_projects:
        if project not in groups:
            LOGGER.warning(
                "Compose project '%s' has no working directory label; "
                "it will not be brought back up automatically.",
                project,
            )
    return standalone, groups


@dataclass(slots=True)
class ContainerStateManager:
    """Capture running workloads, stop them, and bring them back later."""

    runtime: ContainerRuntime
    daemon: DaemonControl
    liveness_timeout: float = 60.0
    poll_interval: float = 1.0
    sleep: Callable[[float], None] = field(default=time.sleep)

    def capture(self, *, stop_daemon: bool) -> WorkloadState:
        """Record running workloads and stop them.

        With *stop_daemon* the whole runtime is stopped; otherwise only the
        enumerated containers are. A runtime that is missing or not answering
        yields an empty state with ``was_running`` False.
        """
        if not self.runtime.is_installed():
            LOGGER.debug("Container runtime not installed; nothing to capture.")
            return WorkloadState()
        if not self.runtime.is_active():
            LOGGER.info("Container runtime is not active; nothing to capture.")
            return WorkloadState()

        container_ids = self.runtime.list_running_ids()
        infos = self.runtime.inspect(container_ids)
        standalone, groups = classify(infos)
        state = WorkloadState(
            standalone=standalone,
            groups=groups,
            container_ids=list(container_ids),
            was_running=True,
        )
        LOGGER.info(
            "Captured %d running container(s): %d standalone, %d compose project(s).",
            len(container_ids),
            len(standalone),
            len(groups),
        )
        # Flags are set before stopping: a failed stop may still have stopped some.
        try:
            if stop_daemon:
                LOGGER.info("Stopping the container runtime...")
                state.daemon_stopped = True
                self.daemon.stop()
            elif container_ids:
                LOGGER.info("Stopping running containers...")
                state.containers_stopped = True
                self.runtime.stop(container_ids)
        except ProviderError:
            LOGGER.error("Stopping workloads failed; bringing back what was stopped.")
            self.resume(state)
            raise
        return state

    def resume(self, state: WorkloadState) -> ResumeReport:
        """Bring workloads back the way :meth:`capture` took them down."""
        if not state.was_running:
            return ResumeReport()
        if state.daemon_stopped:
            return self.replay(state)
        return self.restart(state)

    def restart(self, state: WorkloadState) -> ResumeReport:
        """Start exactly the container ids stopped by a backup-time capture."""
        report = ResumeReport()
        if not state.containers_stopped or not state.container_ids:
            return report
        LOGGER.info("Restarting containers...")
        try:
            self.runtime.start(state.container_ids)
        except ProviderError as exc:
            self._record_error(report, f"Failed to restart containers: {exc}")
        else:
            report.started.extend(state.container_ids)
            state.containers_stopped = False
        return report

    def replay(self, state: WorkloadState) -> ResumeReport:
        """Start the daemon, then standalone containers, then compose groups."""
        report = ResumeReport()
        if state.daemon_stopped:
            LOGGER.info("Starting the container runtime...")
            try:
                self.daemon.start()
            except ProviderError as exc:
                self._record_error(report, f"Failed to start the container runtime: {exc}")
                return report
            state.daemon_stopped = False
            report.daemon_started = True
        if not self._wait_until_active():
            self._record_error(
                report,
                "Container runtime did not become active; workloads were not restarted.",
            )
            return report

        names = state.standalone_names
        if names:
            LOGGER.info("Starting %d standalone container(s)...", len(names))
            try:
                self.runtime.start(names)
            except ProviderError as exc:
                self._record_error(report, f"Failed to start containers: {exc}")
            else:
                report.started.extend(names)

        for project, working_dir in state.groups.items():
            self._bring_up_group(project, working_dir, report)
        return report

    # ------------------------------------------------------------------
    def _bring_up_group(self, project: str, working_dir: str, report: ResumeReport) -> None:
        directory = Path(working_dir) if working_dir else None
        if directory is None or not directory.is_dir():
            message = (
                f"Skipping compose project '{project}': working directory "
                f"{working_dir or '(none)'} does not exist."
            )
            LOGGER.warning(message)
            report.warnings.append(message)
            return
        LOGGER.info("Bringing up compose project '%s' in %s...", project, directory)
        try:
            self.runtime.compose_up(directory)
        except ProviderError as exc:
            self._record_error(report, f"Failed to bring up compose project '{project}': {exc}")
            return
        report.groups_up.append(project)

    def _wait_until_active(self) -> bool:
        waited = 0.0
        while True:
            if self.runtime.is_active():
                return True
            if waited >= self.liveness_timeout:
                return False
            self.sleep(self.poll_interval)
            waited += self.poll_interval

    @staticmethod
    def _record_error(report: ResumeReport, message: str) -> None:
        LOGGER.error(message)
        report.errors.append(message)


__all__ = [
    "ContainerRuntime",
    "ContainerStateManager",
    "DaemonControl",
    "ResumeReport",
    "StandaloneWorkload",
    "WorkloadState",
    "classify",
]
