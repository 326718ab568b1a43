"""Configuration loader for nodeprep.

Values are merged from the following sources, later sources winning:

1. Built-in defaults.
2. ``C:/ProgramData/nodeprep/config.yml`` (or an override path).
3. Environment variables prefixed with ``NODEPREP_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    set NODEPREP_FETCH__TIMEOUT=300
    set NODEPREP_FIREWALL__PORT=10250

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - PyYAML is a declared dependency
    raise RuntimeError(
        "PyYAML is required to load nodeprep configuration. Install with "
        "`pip install nodeprep` or ensure PyYAML>=6.0 is available."
    ) from exc

from .models import RuntimeSelection

ENV_PREFIX = "NODEPREP_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class PathsConfig:
    """Filesystem layout produced on the node."""

    kubernetes_root: Path = Path("C:/k")
    nssm_dir: Path = Path("C:/Program Files/nssm")
    kubelet_log_dir: Path = Path("C:/var/log/kubelet")
    kubelet_etc_dir: Path = Path("C:/var/lib/kubelet/etc/kubernetes")
    pki_dir: Path = Path("C:/etc/kubernetes/pki")
    pki_link: Path = Path("C:/var/lib/kubelet/etc/kubernetes/pki")

    @property
    def start_script(self) -> Path:
        """Location of the generated kubelet start script."""
        return self.kubernetes_root / "StartKubelet.ps1"

    @property
    def hns_module(self) -> Path:
        """Location of the downloaded HNS PowerShell module."""
        return self.kubernetes_root / "hns.psm1"

    @property
    def agent_binary(self) -> Path:
        """Location of the self-registering wins agent."""
        return self.kubernetes_root / "wins.exe"

    @property
    def nssm_binary(self) -> Path:
        """Location of the extracted nssm executable."""
        return self.nssm_dir / "nssm.exe"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "kubernetes_root": str(self.kubernetes_root),
            "nssm_dir": str(self.nssm_dir),
            "kubelet_log_dir": str(self.kubelet_log_dir),
            "kubelet_etc_dir": str(self.kubelet_etc_dir),
            "pki_dir": str(self.pki_dir),
            "pki_link": str(self.pki_link),
        }


@dataclass(frozen=True)
class ArtifactsConfig:
    """Remote sources for the executables installed on the node."""

    kubernetes_base_url: str = "https://dl.k8s.io"
    kubernetes_arch: str = "amd64"
    binaries: tuple[str, ...] = ("kubelet", "kubeadm", "kubectl")
    agent_url: str = "https://github.com/rancher/wins/releases/download/v0.0.4/wins.exe"
    supervisor_url: str = (
        "https://k8stestinfrabinaries.blob.core.windows.net/nssm-mirror/nssm-2.24.zip"
    )
    supervisor_arch: str = "auto"
    hns_module_url: str = (
        "https://github.com/Microsoft/SDN/raw/master/Kubernetes/windows/hns.psm1"
    )

    def binary_url(self, name: str, version: str) -> str:
        """Return the download URL for Kubernetes binary *name* at *version*."""
        base = self.kubernetes_base_url.rstrip("/")
        return f"{base}/{version}/bin/windows/{self.kubernetes_arch}/{name}.exe"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "kubernetes_base_url": self.kubernetes_base_url,
            "kubernetes_arch": self.kubernetes_arch,
            "binaries": list(self.binaries),
            "agent_url": self.agent_url,
            "supervisor_url": self.supervisor_url,
            "supervisor_arch": self.supervisor_arch,
            "hns_module_url": self.hns_module_url,
        }


@dataclass(frozen=True)
class FetchConfig:
    """Download behaviour for the artifact fetcher."""

    timeout: float = 120.0
    verify_checksums: bool = True
    insecure: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "timeout": self.timeout,
            "verify_checksums": self.verify_checksums,
            "insecure": self.insecure,
        }


@dataclass(frozen=True)
class ServicesConfig:
    """Service names and host tooling used to manage them."""

    worker: str = "kubelet"
    agent: str = "rancher-wins"
    powershell_bin: str = "powershell.exe"
    sc_bin: str = "sc.exe"
    docker_bin: str = "docker"
    tar_bin: str = "tar"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "worker": self.worker,
            "agent": self.agent,
            "powershell_bin": self.powershell_bin,
            "sc_bin": self.sc_bin,
            "docker_bin": self.docker_bin,
            "tar_bin": self.tar_bin,
        }


@dataclass(frozen=True)
class NetworkConfig:
    """Names of the host-mode network per runtime family."""

    docker_name: str = "host"
    hns_name: str = "nat"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"docker_name": self.docker_name, "hns_name": self.hns_name}


@dataclass(frozen=True)
class FirewallConfig:
    """Inbound rule opened for the kubelet API."""

    name: str = "kubelet"
    display_name: str = "kubelet"
    port: int = 10250
    protocol: str = "TCP"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "display_name": self.display_name,
            "port": self.port,
            "protocol": self.protocol,
        }


@dataclass(frozen=True)
class KubeletConfig:
    """Static settings baked into the kubelet start script."""

    pause_image: str | None = "mcr.microsoft.com/oss/kubernetes/pause:3.9"
    hostname_override: str | None = None
    extra_args: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "pause_image": self.pause_image,
            "hostname_override": self.hostname_override,
            "extra_args": list(self.extra_args),
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for nodeprep."""

    config_file: Path
    logs_dir: Path
    templates_dir: Path | None
    container_runtime: RuntimeSelection
    paths: PathsConfig
    artifacts: ArtifactsConfig
    fetch: FetchConfig
    services: ServicesConfig
    network: NetworkConfig
    firewall: FirewallConfig
    kubelet: KubeletConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "logs_dir": str(self.logs_dir),
            "templates_dir": str(self.templates_dir) if self.templates_dir else None,
            "container_runtime": self.container_runtime.value,
            "paths": self.paths.to_dict(),
            "artifacts": self.artifacts.to_dict(),
            "fetch": self.fetch.to_dict(),
            "services": self.services.to_dict(),
            "network": self.network.to_dict(),
            "firewall": self.firewall.to_dict(),
            "kubelet": self.kubelet.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "C:/ProgramData/nodeprep/config.yml",
    "logs_dir": "C:/ProgramData/nodeprep/logs",
    "templates_dir": None,
    "container_runtime": "docker",
    "paths": PathsConfig().to_dict(),
    "artifacts": ArtifactsConfig().to_dict(),
    "fetch": FetchConfig().to_dict(),
    "services": ServicesConfig().to_dict(),
    "network": NetworkConfig().to_dict(),
    "firewall": FirewallConfig().to_dict(),
    "kubelet": KubeletConfig().to_dict(),
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    section: set(cast(Mapping[str, object], DEFAULTS[section]).keys())
    for section in ("paths", "artifacts", "fetch", "services", "network", "firewall", "kubelet")
}
ALLOWED_SUPERVISOR_ARCHES = {"auto", "win64", "win32"}
ALLOWED_PROTOCOLS = {"TCP", "UDP"}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in ALLOWED_SECTION_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    runtime_value = raw.get("container_runtime")
    try:
        RuntimeSelection.parse(str(runtime_value))
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc

    artifacts = _as_dict(raw.get("artifacts"), "artifacts")
    arch = artifacts.get("supervisor_arch")
    if arch is not None and str(arch) not in ALLOWED_SUPERVISOR_ARCHES:
        allowed = ", ".join(sorted(ALLOWED_SUPERVISOR_ARCHES))
        raise ConfigError(f"Unsupported artifacts.supervisor_arch '{arch}'. Allowed: {allowed}.")

    firewall = _as_dict(raw.get("firewall"), "firewall")
    protocol = firewall.get("protocol")
    if protocol is not None and str(protocol).upper() not in ALLOWED_PROTOCOLS:
        allowed = ", ".join(sorted(ALLOWED_PROTOCOLS))
        raise ConfigError(f"Unsupported firewall.protocol '{protocol}'. Allowed: {allowed}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    paths_map = _as_dict(raw.get("paths"), "paths")
    paths = PathsConfig(
        kubernetes_root=_to_path(paths_map.get("kubernetes_root")),
        nssm_dir=_to_path(paths_map.get("nssm_dir")),
        kubelet_log_dir=_to_path(paths_map.get("kubelet_log_dir")),
        kubelet_etc_dir=_to_path(paths_map.get("kubelet_etc_dir")),
        pki_dir=_to_path(paths_map.get("pki_dir")),
        pki_link=_to_path(paths_map.get("pki_link")),
    )

    artifacts_map = _as_dict(raw.get("artifacts"), "artifacts")
    binaries = tuple(
        _expect_str(item, "artifacts.binaries[]").strip()
        for item in _as_sequence(artifacts_map.get("binaries", ()), "artifacts.binaries")
    )
    if not binaries or any(not name for name in binaries):
        raise ConfigError("artifacts.binaries must list at least one non-empty binary name.")
    artifacts = ArtifactsConfig(
        kubernetes_base_url=_expect_str(
            artifacts_map.get("kubernetes_base_url"), "artifacts.kubernetes_base_url"
        ),
        kubernetes_arch=_expect_str(artifacts_map.get("kubernetes_arch"), "artifacts.kubernetes_arch"),
        binaries=binaries,
        agent_url=_expect_str(artifacts_map.get("agent_url"), "artifacts.agent_url"),
        supervisor_url=_expect_str(artifacts_map.get("supervisor_url"), "artifacts.supervisor_url"),
        supervisor_arch=str(artifacts_map.get("supervisor_arch", "auto")),
        hns_module_url=_expect_str(artifacts_map.get("hns_module_url"), "artifacts.hns_module_url"),
    )

    fetch_map = _as_dict(raw.get("fetch"), "fetch")
    fetch = FetchConfig(
        timeout=_expect_positive_float(fetch_map.get("timeout"), "fetch.timeout", default=120.0),
        verify_checksums=_expect_bool(fetch_map.get("verify_checksums"), "fetch.verify_checksums"),
        insecure=_expect_bool(fetch_map.get("insecure"), "fetch.insecure"),
    )

    services_map = _as_dict(raw.get("services"), "services")
    services = ServicesConfig(
        **{key: _expect_str(services_map.get(key), f"services.{key}") for key in services_map}
    )

    network_map = _as_dict(raw.get("network"), "network")
    network = NetworkConfig(
        docker_name=_expect_str(network_map.get("docker_name"), "network.docker_name"),
        hns_name=_expect_str(network_map.get("hns_name"), "network.hns_name"),
    )

    firewall_map = _as_dict(raw.get("firewall"), "firewall")
    port = _expect_int(firewall_map.get("port"), "firewall.port", default=10250)
    if not 0 < port < 65536:
        raise ConfigError(f"firewall.port must be between 1 and 65535. Got {port}.")
    firewall = FirewallConfig(
        name=_expect_str(firewall_map.get("name"), "firewall.name"),
        display_name=_expect_str(firewall_map.get("display_name"), "firewall.display_name"),
        port=port,
        protocol=str(firewall_map.get("protocol", "TCP")).upper(),
    )

    kubelet_map = _as_dict(raw.get("kubelet"), "kubelet")
    kubelet = KubeletConfig(
        pause_image=_optional_str(kubelet_map.get("pause_image"), "kubelet.pause_image"),
        hostname_override=_optional_str(
            kubelet_map.get("hostname_override"), "kubelet.hostname_override"
        ),
        extra_args=tuple(
            _expect_str(item, "kubelet.extra_args[]")
            for item in _as_sequence(kubelet_map.get("extra_args") or (), "kubelet.extra_args")
        ),
    )

    templates_value = raw.get("templates_dir")
    templates_dir = _to_path(templates_value) if templates_value else None

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        logs_dir=_to_path(raw.get("logs_dir")),
        templates_dir=templates_dir,
        container_runtime=RuntimeSelection.parse(str(raw.get("container_runtime"))),
        paths=paths,
        artifacts=artifacts,
        fetch=fetch,
        services=services,
        network=network,
        firewall=firewall,
        kubelet=kubelet,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_bool(value: object | None, label: str) -> bool:
    if isinstance(value, bool):
        return value
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str) and value.strip():
        return value
    raise ConfigError(f"Expected {key} to resolve to a non-empty string. Got {value!r}.")


def _optional_str(value: object, key: str) -> str | None:
    if value is None or value == "":
        return None
    return _expect_str(value, key)


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ArtifactsConfig",
    "ConfigError",
    "FetchConfig",
    "FirewallConfig",
    "KubeletConfig",
    "NetworkConfig",
    "PathsConfig",
    "ServicesConfig",
    "load_config",
]
