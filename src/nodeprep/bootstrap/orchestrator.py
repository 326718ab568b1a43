"""Ordered, idempotent preparation of a Windows worker node.

The orchestrator runs a fixed sequence of steps. Each step builds its targets
fresh from the configuration, asks every target whether it already exists and
installs only what is missing. The first fatal provider error stops the run;
work completed by earlier steps is kept so a re-run resumes where it failed.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from ..archive import supervisor_arch
from ..config import AppConfig
from ..models import RuntimeSelection, VersionTag
from ..providers.environment import HostEnvironment, MachinePathStore
from ..providers.fetcher import ArtifactFetcher
from ..providers.firewall import FirewallProvider, FirewallRuleSpec
from ..providers.network import DockerNetworkDriver, HnsNetworkModule, HostNetworkBootstrapper
from ..providers.services import NssmProvider, SelfRegisteringAgent, ServiceRegistry
from ..providers.shell import CommandRunner, PowerShell
from ..templates import TemplateEngine
from .errors import PROVIDER_ERRORS, BootstrapError, PreconditionMissingError
from .kubelet import START_SCRIPT_TEMPLATE, KubeletStartConfig, script_context
from .preconditions import PathProbe, require_runtime
from .targets import (
    ArchiveMemberTarget,
    BinaryFileTarget,
    DirectoryTarget,
    FirewallRuleTarget,
    NetworkTarget,
    Provisionable,
    RunningServiceTarget,
    ScriptTarget,
    SearchPathTarget,
    ServiceDependencyTarget,
    ServiceTarget,
    SymbolicLinkTarget,
    should_install,
)

LOGGER = logging.getLogger(__name__)

STEP_CHECK_PRECONDITION = "check-precondition"
STEP_PATH_SETUP = "path-setup"
STEP_NETWORK_MODULE = "network-module"
STEP_SUPERVISOR_AGENT = "supervisor-agent"
STEP_PROCESS_SUPERVISOR = "process-supervisor"
STEP_CORE_BINARIES = "core-binaries"
STEP_WORKER_SERVICE = "worker-service"
STEP_FIREWALL_RULE = "firewall-rule"

STEP_ORDER: tuple[str, ...] = (
    STEP_CHECK_PRECONDITION,
    STEP_PATH_SETUP,
    STEP_NETWORK_MODULE,
    STEP_SUPERVISOR_AGENT,
    STEP_PROCESS_SUPERVISOR,
    STEP_CORE_BINARIES,
    STEP_WORKER_SERVICE,
    STEP_FIREWALL_RULE,
)

SUPERVISOR_STRIP_COMPONENTS = 2


class TargetAction(str, Enum):
    """What the orchestrator did with a single target."""

    SKIPPED = "skipped"
    INSTALLED = "installed"
    PLANNED = "planned"
    WARNING = "warning"
    FAILED = "failed"


@dataclass(slots=True)
class TargetRecord:
    """Outcome for one target within a step."""

    kind: str
    identity: str
    action: TargetAction
    detail: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation."""
        payload: dict[str, object] = {
            "kind": self.kind,
            "identity": self.identity,
            "action": self.action.value,
        }
        if self.detail:
            payload["detail"] = self.detail
        return payload


@dataclass(slots=True)
class StepRecord:
    """Outcome of one bootstrap step."""

    name: str
    targets: list[TargetRecord] = field(default_factory=list)

    @property
    def changed(self) -> int:
        """Number of targets installed by this step."""
        return sum(1 for record in self.targets if record.action is TargetAction.INSTALLED)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation."""
        return {"name": self.name, "targets": [record.to_dict() for record in self.targets]}


@dataclass(slots=True)
class BootstrapReport:
    """Result of a bootstrap run."""

    runtime: RuntimeSelection
    version: VersionTag
    dry_run: bool = False
    steps: list[StepRecord] = field(default_factory=list)
    failed_step: str | None = None
    error: Exception | None = None

    @property
    def succeeded(self) -> bool:
        """Return ``True`` when every step completed."""
        return self.failed_step is None

    @property
    def changed(self) -> int:
        """Total number of targets installed."""
        return sum(step.changed for step in self.steps)

    @property
    def warnings(self) -> list[str]:
        """Messages of targets that finished with a non-fatal failure."""
        return [
            f"{record.identity}: {record.detail}"
            for step in self.steps
            for record in step.targets
            if record.action is TargetAction.WARNING
        ]

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation."""
        return {
            "runtime": self.runtime.value,
            "version": str(self.version),
            "dry_run": self.dry_run,
            "succeeded": self.succeeded,
            "failed_step": self.failed_step,
            "error": str(self.error) if self.error else None,
            "changed": self.changed,
            "warnings": self.warnings,
            "steps": [step.to_dict() for step in self.steps],
        }


@dataclass(slots=True)
class BootstrapProviders:
    """Host-facing collaborators used by the orchestrator."""

    runner: CommandRunner
    powershell: PowerShell
    fetcher: ArtifactFetcher
    path_store: MachinePathStore
    registry: ServiceRegistry
    nssm: NssmProvider
    network: HostNetworkBootstrapper
    firewall: FirewallProvider
    templates: TemplateEngine
    endpoint_exists: PathProbe = os.path.exists

    @classmethod
    def from_config(cls, config: AppConfig) -> BootstrapProviders:
        """Wire real providers from *config*."""
        runner = CommandRunner()
        powershell = PowerShell(runner, executable=config.services.powershell_bin)
        return cls(
            runner=runner,
            powershell=powershell,
            fetcher=ArtifactFetcher(timeout=config.fetch.timeout, insecure=config.fetch.insecure),
            path_store=MachinePathStore(powershell),
            registry=ServiceRegistry(runner, sc_bin=config.services.sc_bin),
            nssm=NssmProvider(runner),
            network=HostNetworkBootstrapper(
                docker=DockerNetworkDriver(runner, docker_bin=config.services.docker_bin),
                hns=HnsNetworkModule(powershell, module_path=config.paths.hns_module),
                docker_name=config.network.docker_name,
                hns_name=config.network.hns_name,
            ),
            firewall=FirewallProvider(powershell),
            templates=TemplateEngine.with_overrides(config.templates_dir),
        )


class BootstrapOrchestrator:
    """Run the bootstrap steps for one runtime and Kubernetes version."""

    def __init__(
        self,
        config: AppConfig,
        providers: BootstrapProviders,
        *,
        runtime: RuntimeSelection,
        version: VersionTag,
        dry_run: bool = False,
    ) -> None:
        """Bind the run to *runtime* and *version*; nothing touches the host yet."""
        self.config = config
        self.providers = providers
        self.runtime = runtime
        self.version = version
        self.dry_run = dry_run
        self.environment = HostEnvironment(search_path=providers.runner.search_path)

    def steps(self) -> list[tuple[str, Callable[[StepRecord], None]]]:
        """Return the ordered ``(name, callable)`` step pairs."""
        return [
            (STEP_CHECK_PRECONDITION, self._check_precondition),
            (STEP_PATH_SETUP, self._path_setup),
            (STEP_NETWORK_MODULE, self._network_module),
            (STEP_SUPERVISOR_AGENT, self._supervisor_agent),
            (STEP_PROCESS_SUPERVISOR, self._process_supervisor),
            (STEP_CORE_BINARIES, self._core_binaries),
            (STEP_WORKER_SERVICE, self._worker_service),
            (STEP_FIREWALL_RULE, self._firewall_rule),
        ]

    def run(self) -> BootstrapReport:
        """Execute every step in order and return the report."""
        report = BootstrapReport(runtime=self.runtime, version=self.version, dry_run=self.dry_run)
        for name, step in self.steps():
            record = StepRecord(name=name)
            report.steps.append(record)
            LOGGER.debug("Starting step %s", name)
            try:
                step(record)
            except PreconditionMissingError as exc:
                report.failed_step = name
                report.error = exc
                break
            except PROVIDER_ERRORS as exc:
                LOGGER.error("Step %s failed: %s", name, exc)
                report.failed_step = name
                report.error = BootstrapError(name, exc)
                break
        return report

    # ------------------------------------------------------------------
    def _check_precondition(self, record: StepRecord) -> None:
        try:
            require_runtime(self.runtime, self.providers.endpoint_exists)
        except PreconditionMissingError as exc:
            record.targets.append(
                TargetRecord(
                    kind="precondition",
                    identity=self.runtime.endpoint,
                    action=TargetAction.FAILED,
                    detail=str(exc),
                )
            )
            raise
        record.targets.append(
            TargetRecord(
                kind="precondition",
                identity=self.runtime.endpoint,
                action=TargetAction.SKIPPED,
                detail=f"{self.runtime.display_name} is running",
            )
        )

    def _path_setup(self, record: StepRecord) -> None:
        paths = self.config.paths
        self._apply(record, DirectoryTarget(paths.kubernetes_root))
        self._ensure_search_path(record, paths.kubernetes_root)
        self._apply(record, DirectoryTarget(paths.kubelet_log_dir))
        self._apply(record, DirectoryTarget(paths.kubelet_etc_dir))
        self._apply(record, DirectoryTarget(paths.pki_dir))
        self._apply(record, SymbolicLinkTarget(link=paths.pki_link, target=paths.pki_dir))

    def _network_module(self, record: StepRecord) -> None:
        module_action: TargetAction | None = None
        if self.runtime is RuntimeSelection.CONTAINERD:
            module_action = self._apply(
                record,
                BinaryFileTarget(
                    path=self.config.paths.hns_module,
                    source=self.config.artifacts.hns_module_url,
                    fetcher=self.providers.fetcher,
                ),
            )
        self._apply(
            record,
            NetworkTarget(runtime=self.runtime, bootstrapper=self.providers.network),
            assume_absent=module_action is TargetAction.PLANNED,
        )

    def _supervisor_agent(self, record: StepRecord) -> None:
        paths = self.config.paths
        agent = SelfRegisteringAgent(
            runner=self.providers.runner,
            powershell=self.providers.powershell,
            registry=self.providers.registry,
            binary=paths.agent_binary,
            service_name=self.config.services.agent,
        )
        binary_action = self._apply(
            record,
            BinaryFileTarget(
                path=paths.agent_binary,
                source=self.config.artifacts.agent_url,
                fetcher=self.providers.fetcher,
            ),
        )
        service_action = self._apply(
            record,
            ServiceTarget(
                name=agent.service_name,
                registry=self.providers.registry,
                installer=agent.register,
            ),
            assume_absent=binary_action is TargetAction.PLANNED,
        )
        self._apply(
            record,
            RunningServiceTarget(
                name=agent.service_name,
                registry=self.providers.registry,
                starter=agent.start,
            ),
            assume_absent=service_action is TargetAction.PLANNED,
        )

    def _process_supervisor(self, record: StepRecord) -> None:
        paths = self.config.paths
        arch = supervisor_arch(self.config.artifacts.supervisor_arch)
        self._apply(
            record,
            ArchiveMemberTarget(
                path=paths.nssm_binary,
                source=self.config.artifacts.supervisor_url,
                fetcher=self.providers.fetcher,
                pattern=f"*/{arch}/*.exe",
                strip_components=SUPERVISOR_STRIP_COMPONENTS,
                tar_bin=self.config.services.tar_bin,
            ),
        )
        self._ensure_search_path(record, paths.nssm_dir)

    def _core_binaries(self, record: StepRecord) -> None:
        artifacts = self.config.artifacts
        for name in artifacts.binaries:
            self._apply(
                record,
                BinaryFileTarget(
                    path=self.config.paths.kubernetes_root / f"{name}.exe",
                    source=artifacts.binary_url(name, str(self.version)),
                    fetcher=self.providers.fetcher,
                    verify_checksum=self.config.fetch.verify_checksums,
                ),
            )

    def _worker_service(self, record: StepRecord) -> None:
        paths = self.config.paths
        services = self.config.services
        start_config = KubeletStartConfig.from_config(self.config, self.runtime)
        context = script_context(
            start_config,
            network_name=self.providers.network.network_name(self.runtime),
        )
        self._apply(
            record,
            ScriptTarget(
                path=paths.start_script,
                templates=self.providers.templates,
                template_name=START_SCRIPT_TEMPLATE,
                context=context,
            ),
        )

        nssm = self.providers.nssm
        depends_on = self.runtime.service_name
        service_args = ["-ExecutionPolicy", "Bypass", "-NoProfile", str(paths.start_script)]

        def register() -> None:
            nssm.register_service(
                services.worker,
                services.powershell_bin,
                service_args,
                depends_on=depends_on,
            )

        service_action = self._apply(
            record,
            ServiceTarget(name=services.worker, registry=self.providers.registry, installer=register),
        )
        if service_action is TargetAction.INSTALLED:
            return
        # A dry run may not have nssm yet, so the dependency cannot be read.
        supervisor_missing = self.dry_run and not paths.nssm_binary.is_file()
        self._apply(
            record,
            ServiceDependencyTarget(name=services.worker, depends_on=depends_on, nssm=nssm),
            assume_absent=service_action is TargetAction.PLANNED or supervisor_missing,
        )

    def _firewall_rule(self, record: StepRecord) -> None:
        firewall = self.config.firewall
        spec = FirewallRuleSpec(
            name=firewall.name,
            display_name=firewall.display_name,
            port=firewall.port,
            protocol=firewall.protocol,
        )
        self._apply(
            record,
            FirewallRuleTarget(spec=spec, provider=self.providers.firewall),
            fatal=False,
        )

    def _ensure_search_path(self, record: StepRecord, entry: Path) -> None:
        action = self._apply(record, SearchPathTarget(entry=entry, store=self.providers.path_store))
        if action in (TargetAction.SKIPPED, TargetAction.INSTALLED):
            self.environment = self.environment.with_path_entry(str(entry))
            self.providers.runner.use_environment(self.environment.search_path)

    def _apply(
        self,
        record: StepRecord,
        target: Provisionable,
        *,
        fatal: bool = True,
        assume_absent: bool = False,
    ) -> TargetAction:
        kind = target.kind.value
        identity = target.identity
        if assume_absent:
            # Depends on something this dry run only planned; probing would fail.
            record.targets.append(TargetRecord(kind, identity, TargetAction.PLANNED))
            return TargetAction.PLANNED
        try:
            if not should_install(target):
                record.targets.append(TargetRecord(kind, identity, TargetAction.SKIPPED))
                return TargetAction.SKIPPED
            if self.dry_run:
                record.targets.append(TargetRecord(kind, identity, TargetAction.PLANNED))
                return TargetAction.PLANNED
            target.install()
        except PROVIDER_ERRORS as exc:
            if fatal:
                record.targets.append(TargetRecord(kind, identity, TargetAction.FAILED, str(exc)))
                raise
            LOGGER.warning("Non-fatal failure for %s: %s", identity, exc)
            record.targets.append(TargetRecord(kind, identity, TargetAction.WARNING, str(exc)))
            return TargetAction.WARNING
        LOGGER.info("Installed %s %s", kind, identity)
        record.targets.append(TargetRecord(kind, identity, TargetAction.INSTALLED))
        return TargetAction.INSTALLED


__all__ = [
    "BootstrapOrchestrator",
    "BootstrapProviders",
    "BootstrapReport",
    "STEP_ORDER",
    "StepRecord",
    "TargetAction",
    "TargetRecord",
]
