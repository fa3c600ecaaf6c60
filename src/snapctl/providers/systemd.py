"""Systemd provider for the container runtime's daemon units."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass

from ..errors import ProviderError


class SystemdError(ProviderError):
    """Raised when systemd operations fail."""


@dataclass(slots=True)
class SystemdProvider:
    """Start, stop and probe the units that make up the container runtime daemon."""

    units: tuple[str, ...] = ("docker.socket", "docker.service")
    systemctl_bin: str = "systemctl"

    @property
    def service_units(self) -> tuple[str, ...]:
        """Return the non-socket units, i.e. the ones that run the daemon."""
        services = tuple(unit for unit in self.units if not unit.endswith(".socket"))
        return services or self.units

    def is_active(self) -> bool:
        """Return True when every service unit reports ``active``."""
        for unit in self.service_units:
            try:
                result = self._systemctl("is-active", [unit], check=False)
            except SystemdError:
                return False
            if result.returncode != 0 or (result.stdout or "").strip() != "active":
                return False
        return True

    def start(self) -> subprocess.CompletedProcess[str]:
        """Start the socket and service units."""
        return self._systemctl("start", self.units)

    def stop(self) -> subprocess.CompletedProcess[str]:
        """Stop the socket first so socket activation cannot respawn the daemon."""
        ordered = sorted(self.units, key=lambda unit: not unit.endswith(".socket"))
        return self._systemctl("stop", ordered)

    # ------------------------------------------------------------------
    def _systemctl(
        self,
        command: str,
        units: Sequence[str],
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        args: list[str] = [self.systemctl_bin, command, *units]
        return self._run_command(
            args,
            check=check,
            error_prefix=f"{self.systemctl_bin} {command}",
        )

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise SystemdError(f"{args[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise SystemdError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = ["SystemdProvider", "SystemdError"]
