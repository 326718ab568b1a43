"""Machine search-path handling for the node being prepared."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from pathlib import PureWindowsPath

from .shell import CommandError, PowerShell, ps_literal

LOGGER = logging.getLogger(__name__)

PATH_SEPARATOR = ";"


class PathPersistError(RuntimeError):
    """Raised when the machine PATH cannot be read or updated."""


def _normalise_entry(entry: str) -> str:
    return str(PureWindowsPath(entry.strip())).rstrip("\\").lower()


@dataclass(frozen=True, slots=True)
class HostEnvironment:
    """Snapshot of the search path seen by commands launched during a run."""

    search_path: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_path_value(cls, value: str) -> HostEnvironment:
        """Build an environment from a ``;``-separated PATH value."""
        entries = tuple(item for item in value.split(PATH_SEPARATOR) if item.strip())
        return cls(search_path=entries)

    def has_path_entry(self, entry: str) -> bool:
        """Return ``True`` when *entry* is on the search path (case-insensitive)."""
        wanted = _normalise_entry(entry)
        return any(_normalise_entry(item) == wanted for item in self.search_path)

    def with_path_entry(self, entry: str) -> HostEnvironment:
        """Return a copy with *entry* appended unless it is already present."""
        if self.has_path_entry(entry):
            return self
        return replace(self, search_path=(*self.search_path, entry))

    def path_value(self) -> str:
        """Return the search path joined with ``;``."""
        return PATH_SEPARATOR.join(self.search_path)


class MachinePathStore:
    """Read and append to the persisted machine-scope PATH variable."""

    def __init__(self, powershell: PowerShell) -> None:
        """Use *powershell* to reach the .NET environment API."""
        self.powershell = powershell

    def read(self) -> HostEnvironment:
        """Return the persisted machine PATH as a :class:`HostEnvironment`."""
        script = "[Environment]::GetEnvironmentVariable('Path', [EnvironmentVariableTarget]::Machine)"
        try:
            result = self.powershell.run(script, error_prefix="read machine PATH")
        except CommandError as exc:
            raise PathPersistError(str(exc)) from exc
        return HostEnvironment.from_path_value((result.stdout or "").strip())

    def contains(self, entry: str) -> bool:
        """Return ``True`` when *entry* is already on the machine PATH."""
        return self.read().has_path_entry(entry)

    def append(self, entry: str) -> HostEnvironment:
        """Persist *entry* on the machine PATH and return the updated environment."""
        current = self.read()
        updated = current.with_path_entry(entry)
        if updated is current:
            return current
        script = (
            "[Environment]::SetEnvironmentVariable('Path', "
            f"{ps_literal(updated.path_value())}, [EnvironmentVariableTarget]::Machine)"
        )
        try:
            self.powershell.run(script, error_prefix=f"add {entry} to machine PATH")
        except CommandError as exc:
            raise PathPersistError(str(exc)) from exc
        LOGGER.info("Added %s to the machine PATH", entry)
        return updated


__all__ = ["HostEnvironment", "MachinePathStore", "PathPersistError"]
