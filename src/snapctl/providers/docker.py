"""Container runtime client backed by the ``docker`` command line tool."""
from __future__ import annotations

import json
import os
import shutil
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from ..errors import ProviderError

COMPOSE_PROJECT_LABEL = "com.docker.compose.project"
COMPOSE_WORKING_DIR_LABEL = "com.docker.compose.project.working_dir"


class DockerError(ProviderError):
    """Raised when a docker invocation fails."""


@dataclass(frozen=True, slots=True)
class ContainerInfo:
    """The parts of ``docker inspect`` needed to replay a container."""

    id: str
    name: str
    labels: Mapping[str, str] = field(default_factory=dict)

    @property
    def compose_project(self) -> str | None:
        """Return the compose project label, if any."""
        value = self.labels.get(COMPOSE_PROJECT_LABEL, "").strip()
        return value or None

    @property
    def compose_working_dir(self) -> str | None:
        """Return the compose working directory label, if any."""
        value = self.labels.get(COMPOSE_WORKING_DIR_LABEL, "").strip()
        return value or None


@dataclass(slots=True)
class DockerProvider:
    """Query and drive the docker engine.

    ``compose_command`` is resolved once at startup (``docker compose`` or the
    standalone ``docker-compose``); None means no compose tool is available.
    """

    docker_bin: str = "docker"
    compose_command: tuple[str, ...] | None = None

    def is_installed(self) -> bool:
        """Return True when the docker binary can be executed."""
        path = Path(self.docker_bin)
        if path.is_absolute():
            return path.exists() and os.access(path, os.X_OK)
        return shutil.which(self.docker_bin) is not None

    def is_active(self) -> bool:
        """Return True when the engine answers ``docker info``."""
        try:
            result = self._run_command(["info"], check=False)
        except DockerError:
            return False
        return result.returncode == 0

    def list_running_ids(self) -> list[str]:
        """Return the identifiers of running containers."""
        result = self._run_command(["ps", "-q"], error_prefix="docker ps")
        return [line.strip() for line in (result.stdout or "").splitlines() if line.strip()]

    def inspect(self, container_ids: Sequence[str]) -> list[ContainerInfo]:
        """Return name and labels for each of *container_ids*."""
        if not container_ids:
            return []
        result = self._run_command(
            ["inspect", *container_ids],
            error_prefix="docker inspect",
        )
        try:
            payload = json.loads(result.stdout or "[]")
        except json.JSONDecodeError as exc:
            raise DockerError(f"docker inspect returned invalid JSON: {exc}") from exc
        if not isinstance(payload, list):
            raise DockerError("docker inspect returned an unexpected payload.")
        infos: list[ContainerInfo] = []
        for item in payload:
            if not isinstance(item, Mapping):
                continue
            config = item.get("Config")
            raw_labels = config.get("Labels") if isinstance(config, Mapping) else None
            labels = (
                {str(key): str(value) for key, value in raw_labels.items()}
                if isinstance(raw_labels, Mapping)
                else {}
            )
            container_id = str(item.get("Id", "") or "")
            name = str(item.get("Name", "") or "").lstrip("/") or container_id[:12]
            infos.append(ContainerInfo(id=container_id, name=name, labels=labels))
        return infos

    def stop(self, containers: Sequence[str]) -> None:
        """Stop *containers* (ids or names) in one call."""
        if containers:
            self._run_command(["stop", *containers], error_prefix="docker stop")

    def start(self, containers: Sequence[str]) -> None:
        """Start *containers* (ids or names) in one call."""
        if containers:
            self._run_command(["start", *containers], error_prefix="docker start")

    def compose_up(self, working_dir: Path) -> None:
        """Bring up the compose project rooted at *working_dir*."""
        if not self.compose_command:
            raise DockerError("No docker compose command is available.")
        self._run_command(
            [*self.compose_command, "up", "-d"],
            error_prefix=f"compose up in {working_dir}",
            cwd=working_dir,
            raw=True,
        )

    # ------------------------------------------------------------------
    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        error_prefix: str | None = None,
        cwd: Path | None = None,
        raw: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        command = list(args) if raw else [self.docker_bin, *args]
        try:
            result = subprocess.run(  # noqa: S603, S607
                command,
                capture_output=True,
                text=True,
                check=False,
                cwd=str(cwd) if cwd is not None else None,
            )
        except FileNotFoundError as exc:
            raise DockerError(f"{command[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            prefix = error_prefix or " ".join(command[:2])
            raise DockerError(f"{prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = [
    "COMPOSE_PROJECT_LABEL",
    "COMPOSE_WORKING_DIR_LABEL",
    "ContainerInfo",
    "DockerError",
    "DockerProvider",
]
