"""Host providers used by the nodeprep bootstrap."""
from __future__ import annotations

from .environment import HostEnvironment, MachinePathStore, PathPersistError
from .fetcher import ArtifactFetcher, FetchError, FetchResult
from .firewall import FirewallProvider, FirewallRuleError, FirewallRuleSpec
from .network import DockerNetworkDriver, HnsNetworkModule, HostNetworkBootstrapper, NetworkError
from .services import (
    NssmProvider,
    SelfRegisteringAgent,
    ServiceRegistrationError,
    ServiceRegistry,
    ServiceStartError,
)
from .shell import CommandError, CommandRunner, PowerShell

__all__ = [
    "ArtifactFetcher",
    "CommandError",
    "CommandRunner",
    "DockerNetworkDriver",
    "FetchError",
    "FetchResult",
    "FirewallProvider",
    "FirewallRuleError",
    "FirewallRuleSpec",
    "HnsNetworkModule",
    "HostEnvironment",
    "HostNetworkBootstrapper",
    "MachinePathStore",
    "NetworkError",
    "NssmProvider",
    "PathPersistError",
    "PowerShell",
    "SelfRegisteringAgent",
    "ServiceRegistrationError",
    "ServiceRegistry",
    "ServiceStartError",
]
