"""Archive extraction for downloaded tool bundles."""
from __future__ import annotations

import platform
import shutil
import subprocess
from pathlib import Path


class ArchiveError(RuntimeError):
    """Raised when an archive cannot be extracted."""


def supervisor_arch(configured: str = "auto") -> str:
    """Return the nssm build directory (``win64`` or ``win32``) for this host."""
    if configured != "auto":
        return configured
    machine = platform.machine().lower()
    if machine.endswith("64") or machine in {"amd64", "x86_64", "arm64"}:
        return "win64"
    return "win32"


def extract_members(
    archive: Path,
    dest: Path,
    *,
    pattern: str,
    strip_components: int = 0,
    tar_bin: str = "tar",
) -> None:
    """Extract members of *archive* matching *pattern* into *dest*.

    Windows ships bsdtar as ``tar.exe``, which reads zip archives and
    understands ``--strip-components`` and wildcard member names.
    """
    resolved = shutil.which(tar_bin)
    if resolved is None:
        raise ArchiveError(f"The '{tar_bin}' command is required to extract {archive.name}.")
    if not archive.is_file():
        raise ArchiveError(f"Archive not found: {archive}")
    dest.mkdir(parents=True, exist_ok=True)

    cmd: list[str] = [resolved, "-x", "-f", str(archive), "-C", str(dest)]
    if strip_components:
        cmd.append(f"--strip-components={strip_components}")
    cmd.append(pattern)
    _run_tar(cmd)


def _run_tar(cmd: list[str]) -> None:
    result = subprocess.run(  # noqa: S603, S607 - controlled command execution
        cmd,
        capture_output=True,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        message = result.stderr or result.stdout or "tar command failed"
        raise ArchiveError(message.strip())


__all__ = ["ArchiveError", "extract_members", "supervisor_arch"]
