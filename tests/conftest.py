"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import hashlib
import os
import subprocess
from collections.abc import Callable, Sequence
from pathlib import Path

import pytest

from nodeprep.bootstrap import targets as targets_module
from nodeprep.bootstrap.orchestrator import BootstrapProviders
from nodeprep.config import AppConfig, load_config
from nodeprep.models import RuntimeSelection
from nodeprep.providers.fetcher import FetchError, FetchResult
from nodeprep.providers.firewall import FirewallRuleError, FirewallRuleSpec
from nodeprep.providers.services import ServiceRegistrationError
from nodeprep.providers.shell import CommandError, CommandRunner, PowerShell
from nodeprep.templates import TemplateEngine


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


Responder = Callable[[list[str]], tuple[int, str]]


class ScriptedRunner(CommandRunner):
    """Command runner that records invocations and replies from a responder."""

    def __init__(self) -> None:
        """Start with an empty search path and a responder that always succeeds."""
        super().__init__(search_path=())
        self.calls: list[list[str]] = []
        self.responder: Responder = lambda args: (0, "")

    def run(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        error_prefix: str | None = None,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Record *args* and return the scripted reply."""
        command = [str(arg) for arg in args]
        self.calls.append(command)
        returncode, stdout = self.responder(command)
        if check and returncode != 0:
            prefix = error_prefix or command[0]
            raise CommandError(f"{prefix} failed (exit {returncode}): {stdout or 'no output'}")
        return subprocess.CompletedProcess(command, returncode, stdout=stdout, stderr="")

    def scripts(self) -> list[str]:
        """Return the PowerShell scripts passed through this runner."""
        return [call[-1] for call in self.calls if call[0] == "powershell.exe"]


@pytest.fixture
def scripted_runner() -> ScriptedRunner:
    """Return a fresh :class:`ScriptedRunner`."""
    return ScriptedRunner()


@pytest.fixture
def scripted_powershell(scripted_runner: ScriptedRunner) -> PowerShell:
    """Return a PowerShell wrapper bound to ``scripted_runner``."""
    return PowerShell(scripted_runner, executable="powershell.exe")


class FakeHost:
    """In-memory Windows host used to drive the orchestrator end to end."""

    def __init__(self) -> None:
        """Start with no runtime, services, networks or firewall rules."""
        self.endpoints: set[str] = set()
        self.services: dict[str, str] = {}
        self.service_commands: dict[str, tuple[str, list[str]]] = {}
        self.dependencies: dict[str, str] = {}
        self.networks: set[tuple[str, str]] = set()
        self.firewall_rules: dict[str, FirewallRuleSpec] = {}
        self.machine_path: list[str] = ["C:\\Windows\\System32"]
        self.fetched: list[str] = []
        self.calls: list[str] = []
        self.fail_sources: set[str] = set()
        self.fail_firewall = False
        self.fail_calls: set[str] = set()
        self.runner = FakeRunner(self)

    def providers(self) -> BootstrapProviders:
        """Return orchestrator providers backed by this host."""
        powershell = FakePowerShell(self)
        return BootstrapProviders(
            runner=self.runner,  # type: ignore[arg-type]
            powershell=powershell,  # type: ignore[arg-type]
            fetcher=FakeFetcher(self),  # type: ignore[arg-type]
            path_store=FakePathStore(self),  # type: ignore[arg-type]
            registry=FakeRegistry(self),  # type: ignore[arg-type]
            nssm=FakeNssm(self),  # type: ignore[arg-type]
            network=FakeNetwork(self),  # type: ignore[arg-type]
            firewall=FakeFirewall(self),  # type: ignore[arg-type]
            templates=TemplateEngine.with_overrides(None),
            endpoint_exists=lambda path: path in self.endpoints,
        )

    def install_runtime(self, runtime: RuntimeSelection) -> None:
        """Simulate a running container runtime."""
        self.endpoints.add(runtime.endpoint)
        self.services[runtime.service_name] = "RUNNING"

    def record(self, call: str) -> None:
        """Log *call* and fail it when it matches an entry in ``fail_calls``."""
        self.calls.append(call)
        if any(marker in call for marker in self.fail_calls):
            raise CommandError(f"{call} failed (exit 1): Access is denied.", returncode=1)


class FakeRunner:
    """Runner double that understands the agent self-registration command."""

    def __init__(self, host: FakeHost) -> None:
        self.host = host
        self.search_path: tuple[str, ...] = ("C:\\Windows\\System32",)

    def use_environment(self, search_path: Sequence[str]) -> None:
        self.search_path = tuple(search_path)

    def run(self, args: Sequence[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        command = [str(arg) for arg in args]
        self.host.record("run " + " ".join(command))
        if command[1:] == ["srv", "app", "run", "--register"]:
            self.host.services["rancher-wins"] = "STOPPED"
        return subprocess.CompletedProcess(command, 0, stdout="", stderr="")


class FakePowerShell:
    def __init__(self, host: FakeHost) -> None:
        self.host = host
        self.runner = host.runner

    def run(self, script: str, **kwargs: object) -> subprocess.CompletedProcess[str]:
        self.host.record(f"powershell {script}")
        if script.startswith("Start-Service"):
            name = script.split("'")[1]
            self.host.services[name] = "RUNNING"
        return subprocess.CompletedProcess(["powershell.exe"], 0, stdout="", stderr="")


class FakeFetcher:
    def __init__(self, host: FakeHost) -> None:
        self.host = host

    def fetch(
        self, destination: Path, source: str, *, expected_sha256: str | None = None
    ) -> FetchResult:
        self.host.calls.append(f"fetch {source}")
        if any(marker in source for marker in self.host.fail_sources):
            raise FetchError(source, destination, "HTTP status 404")
        payload = f"payload:{source}".encode()
        digest = hashlib.sha256(payload).hexdigest()
        if expected_sha256 is not None and expected_sha256 != digest:
            raise FetchError(source, destination, "SHA-256 mismatch")
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(payload)
        self.host.fetched.append(source)
        return FetchResult(source, destination, len(payload), digest, expected_sha256 is not None)

    def fetch_checksum(self, source: str) -> str:
        self.host.calls.append(f"checksum {source}")
        return hashlib.sha256(f"payload:{source}".encode()).hexdigest()


class FakePathStore:
    def __init__(self, host: FakeHost) -> None:
        self.host = host

    def contains(self, entry: str) -> bool:
        self.host.calls.append(f"path? {entry}")
        return entry.lower() in (item.lower() for item in self.host.machine_path)

    def append(self, entry: str) -> None:
        self.host.calls.append(f"path+ {entry}")
        self.host.machine_path.append(entry)


class FakeRegistry:
    def __init__(self, host: FakeHost) -> None:
        self.host = host

    def exists(self, name: str) -> bool:
        self.host.calls.append(f"service? {name}")
        return name in self.host.services

    def is_running(self, name: str) -> bool:
        self.host.calls.append(f"running? {name}")
        return self.host.services.get(name) == "RUNNING"


class FakeNssm:
    def __init__(self, host: FakeHost) -> None:
        self.host = host

    def register_service(
        self,
        name: str,
        executable: str,
        args: Sequence[str] = (),
        *,
        depends_on: str | None = None,
    ) -> None:
        try:
            self.host.record(f"nssm install {name}")
        except CommandError as exc:
            raise ServiceRegistrationError(f"Failed to register service {name}: {exc}") from exc
        self.host.services[name] = "STOPPED"
        self.host.service_commands[name] = (executable, list(args))
        if depends_on:
            self.set_dependency(name, depends_on)

    def set_dependency(self, name: str, depends_on: str) -> None:
        self.host.calls.append(f"nssm set {name} DependOnService {depends_on}")
        self.host.dependencies[name] = depends_on

    def get_dependency(self, name: str) -> str | None:
        self.host.calls.append(f"nssm get {name}")
        return self.host.dependencies.get(name)


class FakeNetwork:
    names = {RuntimeSelection.DOCKER: "host", RuntimeSelection.CONTAINERD: "nat"}

    def __init__(self, host: FakeHost) -> None:
        self.host = host

    def network_name(self, runtime: RuntimeSelection) -> str:
        return self.names[runtime]

    def exists(self, runtime: RuntimeSelection) -> bool:
        self.host.calls.append(f"network? {self.network_name(runtime)}")
        return (runtime.network_mechanism, self.network_name(runtime)) in self.host.networks

    def create(self, runtime: RuntimeSelection) -> None:
        self.host.calls.append(f"network+ {self.network_name(runtime)}")
        self.host.networks.add((runtime.network_mechanism, self.network_name(runtime)))


class FakeFirewall:
    def __init__(self, host: FakeHost) -> None:
        self.host = host

    def exists(self, name: str) -> bool:
        self.host.calls.append(f"firewall? {name}")
        return name in self.host.firewall_rules

    def create(self, spec: FirewallRuleSpec) -> None:
        self.host.calls.append(f"firewall+ {spec.name}")
        if self.host.fail_firewall:
            raise FirewallRuleError(f"Failed to create firewall rule {spec.name}: access denied")
        self.host.firewall_rules[spec.name] = spec


@pytest.fixture
def fake_host(monkeypatch: pytest.MonkeyPatch) -> FakeHost:
    """Return an empty fake host; archive extraction drops a stub nssm.exe."""

    def fake_extract(archive: Path, dest: Path, **kwargs: object) -> None:
        dest.mkdir(parents=True, exist_ok=True)
        (dest / "nssm.exe").write_bytes(b"nssm")

    monkeypatch.setattr(targets_module, "extract_members", fake_extract)
    return FakeHost()


def node_overrides(root: Path) -> dict[str, object]:
    """Return config overrides that relocate the node layout under *root*."""
    return {
        "logs_dir": str(root / "ProgramData" / "nodeprep" / "logs"),
        "paths": {
            "kubernetes_root": str(root / "k"),
            "nssm_dir": str(root / "Program Files" / "nssm"),
            "kubelet_log_dir": str(root / "var" / "log" / "kubelet"),
            "kubelet_etc_dir": str(root / "var" / "lib" / "kubelet" / "etc" / "kubernetes"),
            "pki_dir": str(root / "etc" / "kubernetes" / "pki"),
            "pki_link": str(root / "var" / "lib" / "kubelet" / "etc" / "kubernetes" / "pki"),
        },
    }


@pytest.fixture
def node_config(tmp_path: Path) -> AppConfig:
    """Return a configuration whose node layout lives under ``tmp_path``."""
    return load_config(
        config_file=tmp_path / "missing.yml",
        env={},
        overrides=node_overrides(tmp_path),
    )
