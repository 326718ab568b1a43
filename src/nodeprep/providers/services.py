"""Windows service registration and control."""
from __future__ import annotations

import logging
import re
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from .shell import CommandError, CommandRunner, PowerShell, ps_literal

LOGGER = logging.getLogger(__name__)

_STATE_PATTERN = re.compile(r"STATE\s*:\s*\d+\s+(?P<state>[A-Z_]+)")


class ServiceRegistrationError(RuntimeError):
    """Raised when a service cannot be registered or reconfigured."""


class ServiceStartError(RuntimeError):
    """Raised when a registered service fails to start."""


@dataclass(slots=True)
class ServiceRegistry:
    """Query the Service Control Manager through ``sc.exe``."""

    runner: CommandRunner
    sc_bin: str = "sc.exe"

    def exists(self, name: str) -> bool:
        """Return ``True`` when service *name* is registered."""
        result = self.runner.run([self.sc_bin, "query", name], check=False)
        return result.returncode == 0

    def state(self, name: str) -> str | None:
        """Return the SCM state (``RUNNING``, ``STOPPED``...) or ``None`` when unknown."""
        result = self.runner.run([self.sc_bin, "query", name], check=False)
        if result.returncode != 0:
            return None
        match = _STATE_PATTERN.search(result.stdout or "")
        return match.group("state") if match else None

    def is_running(self, name: str) -> bool:
        """Return ``True`` when service *name* reports ``RUNNING``."""
        return self.state(name) == "RUNNING"


@dataclass(slots=True)
class NssmProvider:
    """Wrap non-service executables as Windows services via nssm."""

    runner: CommandRunner
    nssm_bin: str = "nssm"

    def install(self, name: str, executable: str, args: Sequence[str] = ()) -> None:
        """Register *executable* with *args* as service *name*."""
        self._nssm(["install", name, executable, *args], action=f"register service {name}")

    def set_dependency(self, name: str, depends_on: str) -> None:
        """Make service *name* depend on service *depends_on*."""
        self._nssm(
            ["set", name, "DependOnService", depends_on],
            action=f"set dependency of {name} on {depends_on}",
        )

    def get_dependency(self, name: str) -> str | None:
        """Return the service *name* currently depends on, if any."""
        result = self._nssm(
            ["get", name, "DependOnService"],
            action=f"read dependency of {name}",
        )
        # nssm writes UTF-16 to pipes, which decodes with interleaved NULs.
        value = (result.stdout or "").replace("\x00", "").strip()
        return value.splitlines()[0].strip() if value else None

    def register_service(
        self,
        name: str,
        executable: str,
        args: Sequence[str] = (),
        *,
        depends_on: str | None = None,
    ) -> None:
        """Install service *name* and optionally declare its dependency."""
        self.install(name, executable, args)
        if depends_on:
            self.set_dependency(name, depends_on)
        LOGGER.info("Registered service %s (depends on %s)", name, depends_on or "nothing")

    # ------------------------------------------------------------------
    def _nssm(self, args: Sequence[str], *, action: str) -> subprocess.CompletedProcess[str]:
        try:
            return self.runner.run([self.nssm_bin, *args], error_prefix=f"nssm {args[0]}")
        except CommandError as exc:
            raise ServiceRegistrationError(f"Failed to {action}: {exc}") from exc


@dataclass(slots=True)
class SelfRegisteringAgent:
    """A binary that installs itself as a service (rancher-wins)."""

    runner: CommandRunner
    powershell: PowerShell
    registry: ServiceRegistry
    binary: Path
    service_name: str = "rancher-wins"
    register_args: tuple[str, ...] = ("srv", "app", "run", "--register")

    def register(self) -> None:
        """Ask the agent binary to register its own service."""
        try:
            self.runner.run(
                [str(self.binary), *self.register_args],
                error_prefix=f"{self.binary.name} register",
            )
        except CommandError as exc:
            raise ServiceRegistrationError(
                f"Failed to register service {self.service_name}: {exc}"
            ) from exc

    def start(self) -> None:
        """Start the agent service unless it is already running."""
        if self.registry.is_running(self.service_name):
            return
        try:
            self.powershell.run(
                f"Start-Service -Name {ps_literal(self.service_name)}",
                error_prefix=f"start service {self.service_name}",
            )
        except CommandError as exc:
            raise ServiceStartError(f"Failed to start service {self.service_name}: {exc}") from exc
        LOGGER.info("Started service %s", self.service_name)


__all__ = [
    "NssmProvider",
    "SelfRegisteringAgent",
    "ServiceRegistrationError",
    "ServiceRegistry",
    "ServiceStartError",
]
