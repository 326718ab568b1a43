"""Core value types shared by the bootstrap workflow."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

VERSION_PREFIX = "v"


class RuntimeSelection(str, Enum):
    """Container runtime the node will be joined with.

    The selection is fixed for the duration of a bootstrap run. It decides
    which control endpoint is probed before anything else happens, how the
    host network is created, and which service the kubelet depends on.
    """

    DOCKER = "docker"
    CONTAINERD = "containerd"

    @classmethod
    def parse(cls, value: str | RuntimeSelection) -> RuntimeSelection:
        """Return the member matching *value* (case-insensitive)."""
        if isinstance(value, RuntimeSelection):
            return value
        normalized = str(value).strip().lower()
        for member in cls:
            if member.value == normalized:
                return member
        allowed = ", ".join(member.value for member in cls)
        raise ValueError(f"Unsupported container runtime '{value}'. Allowed: {allowed}.")

    @property
    def endpoint(self) -> str:
        """Named pipe exposed by the runtime once its service is running."""
        if self is RuntimeSelection.DOCKER:
            return "//./pipe/docker_engine"
        return "//./pipe/containerd-containerd"

    @property
    def service_name(self) -> str:
        """Windows service name registered by the runtime installer."""
        if self is RuntimeSelection.DOCKER:
            return "docker"
        return "containerd"

    @property
    def display_name(self) -> str:
        """Human-friendly runtime name used in diagnostics."""
        if self is RuntimeSelection.DOCKER:
            return "Docker"
        return "containerD"

    @property
    def network_mechanism(self) -> str:
        """Mechanism used to create the host network for this runtime."""
        if self is RuntimeSelection.DOCKER:
            return "driver"
        return "hns-module"


@dataclass(frozen=True, slots=True)
class VersionTag:
    """Kubernetes release identifier, always carrying the ``v`` prefix."""

    value: str

    @classmethod
    def parse(cls, raw: str | VersionTag) -> VersionTag:
        """Normalise *raw* so it starts with ``v``; already-prefixed input is unchanged."""
        if isinstance(raw, VersionTag):
            return raw
        text = str(raw).strip()
        if not text or text == VERSION_PREFIX:
            raise ValueError("Kubernetes version must be a non-empty string.")
        if any(char.isspace() or char == "/" for char in text):
            raise ValueError(f"Kubernetes version '{text}' contains invalid characters.")
        if not text.startswith(VERSION_PREFIX):
            text = f"{VERSION_PREFIX}{text}"
        return cls(text)

    def __str__(self) -> str:
        """Return the normalised version string."""
        return self.value


class ProvisionKind(str, Enum):
    """Kinds of host resources the bootstrap workflow provisions."""

    BINARY_FILE = "binary-file"
    SERVICE = "service"
    DIRECTORY = "directory"
    SYMBOLIC_LINK = "symbolic-link"
    FIREWALL_RULE = "firewall-rule"
    NETWORK = "network"
    SEARCH_PATH = "search-path"
    SCRIPT = "script"


__all__ = ["ProvisionKind", "RuntimeSelection", "VERSION_PREFIX", "VersionTag"]
