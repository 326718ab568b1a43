"""Provisionable host resources and the idempotency guard.

Every resource the bootstrap touches is a small target object that knows how
to answer "is it already there?" (``exists``) and how to create it
(``install``). The orchestrator only calls ``install`` when
:func:`should_install` says the resource is absent, so repeated runs leave an
already-prepared node unchanged.
"""
from __future__ import annotations

import logging
import tempfile
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, runtime_checkable

from ..archive import ArchiveError, extract_members
from ..models import ProvisionKind, RuntimeSelection
from ..providers.environment import MachinePathStore
from ..providers.fetcher import ArtifactFetcher
from ..providers.firewall import FirewallProvider, FirewallRuleSpec
from ..providers.network import HostNetworkBootstrapper
from ..providers.services import NssmProvider, ServiceRegistry
from ..templates import TemplateEngine

LOGGER = logging.getLogger(__name__)


@runtime_checkable
class Provisionable(Protocol):
    """A host resource with a presence predicate and an installer."""

    kind: ProvisionKind
    identity: str

    def exists(self) -> bool:
        """Return ``True`` when the resource is already present."""
        ...

    def install(self) -> None:
        """Create the resource."""
        ...


def should_install(target: Provisionable) -> bool:
    """Return ``True`` when *target* is absent and must be installed."""
    return not target.exists()


@dataclass(slots=True)
class DirectoryTarget:
    """A directory created with its parents."""

    path: Path
    kind: ProvisionKind = field(default=ProvisionKind.DIRECTORY, init=False)

    @property
    def identity(self) -> str:
        return str(self.path)

    def exists(self) -> bool:
        return self.path.is_dir()

    def install(self) -> None:
        self.path.mkdir(parents=True, exist_ok=True)


@dataclass(slots=True)
class SymbolicLinkTarget:
    """Directory symlink at *link* pointing to *target*."""

    link: Path
    target: Path
    kind: ProvisionKind = field(default=ProvisionKind.SYMBOLIC_LINK, init=False)

    @property
    def identity(self) -> str:
        return f"{self.link} -> {self.target}"

    def exists(self) -> bool:
        # A real directory at the link path also counts; it is never replaced.
        return self.link.is_symlink() or self.link.exists()

    def install(self) -> None:
        self.link.parent.mkdir(parents=True, exist_ok=True)
        self.link.symlink_to(self.target, target_is_directory=True)


@dataclass(slots=True)
class BinaryFileTarget:
    """A file downloaded from *source* to *path*."""

    path: Path
    source: str
    fetcher: ArtifactFetcher
    verify_checksum: bool = False
    kind: ProvisionKind = field(default=ProvisionKind.BINARY_FILE, init=False)

    @property
    def identity(self) -> str:
        return str(self.path)

    def exists(self) -> bool:
        return self.path.is_file()

    def install(self) -> None:
        expected = self.fetcher.fetch_checksum(self.source) if self.verify_checksum else None
        self.fetcher.fetch(self.path, self.source, expected_sha256=expected)


@dataclass(slots=True)
class ArchiveMemberTarget:
    """An executable unpacked from an archive downloaded from *source*."""

    path: Path
    source: str
    fetcher: ArtifactFetcher
    pattern: str
    strip_components: int = 0
    tar_bin: str = "tar"
    kind: ProvisionKind = field(default=ProvisionKind.BINARY_FILE, init=False)

    @property
    def identity(self) -> str:
        return str(self.path)

    def exists(self) -> bool:
        return self.path.is_file()

    def install(self) -> None:
        archive_name = self.source.rsplit("/", 1)[-1] or "archive"
        with tempfile.TemporaryDirectory(prefix="nodeprep-") as tmp:
            archive = Path(tmp) / archive_name
            self.fetcher.fetch(archive, self.source)
            extract_members(
                archive,
                self.path.parent,
                pattern=self.pattern,
                strip_components=self.strip_components,
                tar_bin=self.tar_bin,
            )
        if not self.path.is_file():
            raise ArchiveError(f"{archive_name} did not contain {self.path.name} ({self.pattern}).")


@dataclass(slots=True)
class SearchPathTarget:
    """An entry on the persisted machine PATH."""

    entry: Path
    store: MachinePathStore
    kind: ProvisionKind = field(default=ProvisionKind.SEARCH_PATH, init=False)

    @property
    def identity(self) -> str:
        return f"PATH += {self.entry}"

    def exists(self) -> bool:
        return self.store.contains(str(self.entry))

    def install(self) -> None:
        self.store.append(str(self.entry))


@dataclass(slots=True)
class ScriptTarget:
    """A file rendered from a template; stale content counts as absent."""

    path: Path
    templates: TemplateEngine
    template_name: str
    context: Mapping[str, object]
    kind: ProvisionKind = field(default=ProvisionKind.SCRIPT, init=False)

    @property
    def identity(self) -> str:
        return str(self.path)

    def exists(self) -> bool:
        if not self.path.is_file():
            return False
        rendered = self.templates.render_to_string(self.template_name, self.context)
        try:
            current = self.path.read_text(encoding="utf-8")
        except UnicodeDecodeError:
            return False
        return current == rendered

    def install(self) -> None:
        self.templates.render_to_path(self.template_name, self.path, self.context)


@dataclass(slots=True)
class ServiceTarget:
    """A registered Windows service; *installer* performs the registration."""

    name: str
    registry: ServiceRegistry
    installer: Callable[[], None]
    kind: ProvisionKind = field(default=ProvisionKind.SERVICE, init=False)

    @property
    def identity(self) -> str:
        return self.name

    def exists(self) -> bool:
        return self.registry.exists(self.name)

    def install(self) -> None:
        self.installer()


@dataclass(slots=True)
class RunningServiceTarget:
    """A registered service that must be in the ``RUNNING`` state."""

    name: str
    registry: ServiceRegistry
    starter: Callable[[], None]
    kind: ProvisionKind = field(default=ProvisionKind.SERVICE, init=False)

    @property
    def identity(self) -> str:
        return f"{self.name} (running)"

    def exists(self) -> bool:
        return self.registry.is_running(self.name)

    def install(self) -> None:
        self.starter()


@dataclass(slots=True)
class ServiceDependencyTarget:
    """The declared start dependency of an nssm-managed service."""

    name: str
    depends_on: str
    nssm: NssmProvider
    kind: ProvisionKind = field(default=ProvisionKind.SERVICE, init=False)

    @property
    def identity(self) -> str:
        return f"{self.name} depends on {self.depends_on}"

    def exists(self) -> bool:
        current = self.nssm.get_dependency(self.name)
        return current is not None and current.lower() == self.depends_on.lower()

    def install(self) -> None:
        LOGGER.info("Setting %s dependency to %s", self.name, self.depends_on)
        self.nssm.set_dependency(self.name, self.depends_on)


@dataclass(slots=True)
class NetworkTarget:
    """The host-mode network used by the selected runtime."""

    runtime: RuntimeSelection
    bootstrapper: HostNetworkBootstrapper
    kind: ProvisionKind = field(default=ProvisionKind.NETWORK, init=False)

    @property
    def identity(self) -> str:
        name = self.bootstrapper.network_name(self.runtime)
        return f"{name} ({self.runtime.network_mechanism})"

    def exists(self) -> bool:
        return self.bootstrapper.exists(self.runtime)

    def install(self) -> None:
        self.bootstrapper.create(self.runtime)


@dataclass(slots=True)
class FirewallRuleTarget:
    """An inbound firewall rule looked up by name."""

    spec: FirewallRuleSpec
    provider: FirewallProvider
    kind: ProvisionKind = field(default=ProvisionKind.FIREWALL_RULE, init=False)

    @property
    def identity(self) -> str:
        return f"{self.spec.name} ({self.spec.protocol}/{self.spec.port})"

    def exists(self) -> bool:
        return self.provider.exists(self.spec.name)

    def install(self) -> None:
        self.provider.create(self.spec)


__all__ = [
    "ArchiveMemberTarget",
    "BinaryFileTarget",
    "DirectoryTarget",
    "FirewallRuleTarget",
    "NetworkTarget",
    "Provisionable",
    "RunningServiceTarget",
    "ScriptTarget",
    "SearchPathTarget",
    "ServiceDependencyTarget",
    "ServiceTarget",
    "SymbolicLinkTarget",
    "should_install",
]
