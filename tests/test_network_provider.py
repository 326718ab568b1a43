"""Tests for host network and firewall providers."""
from __future__ import annotations

from pathlib import Path

import pytest
from conftest import ScriptedRunner

from nodeprep.models import RuntimeSelection
from nodeprep.providers.firewall import FirewallProvider, FirewallRuleError, FirewallRuleSpec
from nodeprep.providers.network import (
    DockerNetworkDriver,
    HnsNetworkModule,
    HostNetworkBootstrapper,
    NetworkError,
)
from nodeprep.providers.shell import PowerShell


def _bootstrapper(runner: ScriptedRunner) -> HostNetworkBootstrapper:
    powershell = PowerShell(runner, executable="powershell.exe")
    return HostNetworkBootstrapper(
        docker=DockerNetworkDriver(runner),
        hns=HnsNetworkModule(powershell, module_path=Path("C:/k/hns.psm1")),
    )


def test_docker_network_created_when_missing(scripted_runner: ScriptedRunner) -> None:
    """The docker driver is queried before a NAT network is created."""
    bootstrapper = _bootstrapper(scripted_runner)

    created = bootstrapper.ensure_host_network(RuntimeSelection.DOCKER)

    assert created is True
    assert scripted_runner.calls == [
        ["docker", "network", "ls", "--filter", "name=host", "--format", "{{.ID}}"],
        ["docker", "network", "create", "-d", "nat", "host"],
    ]


def test_docker_network_left_alone_when_present(scripted_runner: ScriptedRunner) -> None:
    """An existing network is never re-created."""
    scripted_runner.responder = lambda args: (0, "3f2a9c1b\n")
    bootstrapper = _bootstrapper(scripted_runner)

    assert bootstrapper.ensure_host_network(RuntimeSelection.DOCKER) is False
    assert len(scripted_runner.calls) == 1


def test_hns_network_uses_module_in_same_session(scripted_runner: ScriptedRunner) -> None:
    """The HNS module is imported in the same invocation as each cmdlet."""
    bootstrapper = _bootstrapper(scripted_runner)

    assert bootstrapper.ensure_host_network(RuntimeSelection.CONTAINERD) is True

    query, create = scripted_runner.scripts()
    assert query.startswith("Import-Module 'C:/k/hns.psm1'")
    assert "Get-HnsNetwork" in query
    assert "$_.Name -eq 'nat'" in query
    assert create.startswith("Import-Module 'C:/k/hns.psm1'")
    assert create.endswith("New-HnsNetwork -Type NAT -Name 'nat'")


def test_hns_network_present(scripted_runner: ScriptedRunner) -> None:
    """An HNS network reported by id counts as present."""
    scripted_runner.responder = lambda args: (0, "6b8a-44\n")

    assert _bootstrapper(scripted_runner).exists(RuntimeSelection.CONTAINERD) is True


def test_network_failure_raises(scripted_runner: ScriptedRunner) -> None:
    """Provider failures are wrapped in NetworkError."""
    scripted_runner.responder = lambda args: (1, "Cannot connect to the Docker daemon")

    with pytest.raises(NetworkError, match="query docker network host"):
        _bootstrapper(scripted_runner).ensure_host_network(RuntimeSelection.DOCKER)


def test_network_name_follows_runtime(scripted_runner: ScriptedRunner) -> None:
    """Each runtime uses its own network name."""
    bootstrapper = _bootstrapper(scripted_runner)

    assert bootstrapper.network_name(RuntimeSelection.DOCKER) == "host"
    assert bootstrapper.network_name(RuntimeSelection.CONTAINERD) == "nat"


def test_firewall_rule_query_and_create(
    scripted_runner: ScriptedRunner,
    scripted_powershell: PowerShell,
) -> None:
    """Rules are looked up by name and created as inbound allow rules."""
    provider = FirewallProvider(scripted_powershell)
    spec = FirewallRuleSpec(name="kubelet", display_name="kubelet", port=10250)

    assert provider.exists("kubelet") is False
    provider.create(spec)

    query, create = scripted_runner.scripts()
    assert "Get-NetFirewallRule -Name 'kubelet' -ErrorAction SilentlyContinue" in query
    assert create == (
        "New-NetFirewallRule -Name 'kubelet' -DisplayName 'kubelet' "
        "-Enabled True -Direction Inbound -Protocol TCP -Action Allow -LocalPort 10250"
    )


def test_firewall_rule_present(scripted_runner: ScriptedRunner) -> None:
    """A rule reported by the query counts as present."""
    scripted_runner.responder = lambda args: (0, "present\r\n")
    provider = FirewallProvider(PowerShell(scripted_runner, executable="powershell.exe"))

    assert provider.exists("kubelet") is True


def test_firewall_create_failure_raises(scripted_powershell: PowerShell) -> None:
    """Creation failures are reported as FirewallRuleError."""
    runner = scripted_powershell.runner
    assert isinstance(runner, ScriptedRunner)
    runner.responder = lambda args: (1, "Access is denied.")

    with pytest.raises(FirewallRuleError, match="create firewall rule kubelet"):
        FirewallProvider(scripted_powershell).create(
            FirewallRuleSpec(name="kubelet", display_name="kubelet", port=10250)
        )
