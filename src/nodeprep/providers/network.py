"""Host-mode container network creation."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from ..models import RuntimeSelection
from .shell import CommandError, CommandRunner, PowerShell, ps_literal

LOGGER = logging.getLogger(__name__)


class NetworkError(RuntimeError):
    """Raised when the host network cannot be queried or created."""


@dataclass(slots=True)
class DockerNetworkDriver:
    """Manage NAT networks through the docker CLI."""

    runner: CommandRunner
    docker_bin: str = "docker"

    def exists(self, name: str) -> bool:
        """Return ``True`` when a docker network called *name* exists."""
        try:
            result = self.runner.run(
                [
                    self.docker_bin,
                    "network",
                    "ls",
                    "--filter",
                    f"name={name}",
                    "--format",
                    "{{.ID}}",
                ],
                error_prefix="docker network ls",
            )
        except CommandError as exc:
            raise NetworkError(f"Failed to query docker network {name}: {exc}") from exc
        return bool((result.stdout or "").strip())

    def create(self, name: str) -> None:
        """Create NAT network *name*."""
        try:
            self.runner.run(
                [self.docker_bin, "network", "create", "-d", "nat", name],
                error_prefix="docker network create",
            )
        except CommandError as exc:
            raise NetworkError(f"Failed to create docker network {name}: {exc}") from exc


@dataclass(slots=True)
class HnsNetworkModule:
    """Manage NAT networks through the HNS PowerShell module (``hns.psm1``)."""

    powershell: PowerShell
    module_path: Path

    def exists(self, name: str) -> bool:
        """Return ``True`` when an HNS network called *name* exists."""
        script = (
            f"{self._import()}; "
            f"$net = Get-HnsNetwork | Where-Object {{ $_.Name -eq {ps_literal(name)} }}; "
            "if ($net) { Write-Output $net.Id }"
        )
        try:
            result = self.powershell.run(script, error_prefix="Get-HnsNetwork")
        except CommandError as exc:
            raise NetworkError(f"Failed to query HNS network {name}: {exc}") from exc
        return bool((result.stdout or "").strip())

    def create(self, name: str) -> None:
        """Create NAT network *name*."""
        script = f"{self._import()}; New-HnsNetwork -Type NAT -Name {ps_literal(name)}"
        try:
            self.powershell.run(script, error_prefix="New-HnsNetwork")
        except CommandError as exc:
            raise NetworkError(f"Failed to create HNS network {name}: {exc}") from exc

    # ------------------------------------------------------------------
    def _import(self) -> str:
        return f"Import-Module {ps_literal(self.module_path)} -DisableNameChecking"


@dataclass(slots=True)
class HostNetworkBootstrapper:
    """Ensure the host-mode network for the selected runtime exists."""

    docker: DockerNetworkDriver
    hns: HnsNetworkModule
    docker_name: str = "host"
    hns_name: str = "nat"

    def network_name(self, runtime: RuntimeSelection) -> str:
        """Return the network name used with *runtime*."""
        return self.docker_name if runtime is RuntimeSelection.DOCKER else self.hns_name

    def exists(self, runtime: RuntimeSelection) -> bool:
        """Return ``True`` when the host network for *runtime* is present."""
        return self._backend(runtime).exists(self.network_name(runtime))

    def create(self, runtime: RuntimeSelection) -> None:
        """Create the host network for *runtime*."""
        name = self.network_name(runtime)
        self._backend(runtime).create(name)
        LOGGER.info("Created %s network %s", runtime.network_mechanism, name)

    def ensure_host_network(self, runtime: RuntimeSelection) -> bool:
        """Create the host network when missing; return ``True`` when it was created."""
        if self.exists(runtime):
            return False
        self.create(runtime)
        return True

    # ------------------------------------------------------------------
    def _backend(self, runtime: RuntimeSelection) -> DockerNetworkDriver | HnsNetworkModule:
        if runtime is RuntimeSelection.DOCKER:
            return self.docker
        return self.hns


__all__ = [
    "DockerNetworkDriver",
    "HnsNetworkModule",
    "HostNetworkBootstrapper",
    "NetworkError",
]
