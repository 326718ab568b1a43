"""Subprocess execution shared by every provider."""
from __future__ import annotations

import logging
import os
import shutil
import subprocess
from collections.abc import Iterable, Sequence

LOGGER = logging.getLogger(__name__)


class CommandError(RuntimeError):
    """Raised when an external command cannot be run or exits non-zero."""

    def __init__(self, message: str, *, returncode: int | None = None) -> None:
        """Store the failing *returncode* alongside *message*."""
        super().__init__(message)
        self.returncode = returncode


def ps_literal(value: object) -> str:
    """Quote *value* for interpolation into a PowerShell script."""
    text = str(value).replace("'", "''")
    return f"'{text}'"


class CommandRunner:
    """Run host commands with a controllable search path.

    The search path starts as the PATH of the current process. After the
    bootstrap adds directories to the persisted machine PATH it calls
    :meth:`use_environment` so later commands resolve newly installed tools
    without a new shell.
    """

    def __init__(self, search_path: Iterable[str] | None = None) -> None:
        """Initialise the runner; *search_path* defaults to the process PATH."""
        if search_path is None:
            search_path = [
                entry for entry in os.environ.get("PATH", "").split(os.pathsep) if entry
            ]
        self.search_path: tuple[str, ...] = tuple(search_path)

    def use_environment(self, search_path: Iterable[str]) -> None:
        """Replace the search path used for subsequent commands."""
        self.search_path = tuple(search_path)

    def run(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        error_prefix: str | None = None,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run *args* and return the completed process."""
        command = [str(arg) for arg in args]
        prefix = error_prefix or command[0]
        env = os.environ.copy()
        env["PATH"] = os.pathsep.join(self.search_path)
        # CreateProcess searches the parent's PATH, so resolve against ours first.
        command[0] = shutil.which(command[0], path=env["PATH"]) or command[0]
        LOGGER.debug("Running %s", command)
        try:
            result = subprocess.run(  # noqa: S603, S607 - controlled command execution
                command,
                capture_output=True,
                text=True,
                env=env,
                timeout=timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            raise CommandError(f"{command[0]} not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise CommandError(f"{prefix} timed out after {timeout} seconds.") from exc
        if check and result.returncode != 0:
            stdout = result.stdout or ""
            stderr = result.stderr or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise CommandError(
                f"{prefix} failed (exit {result.returncode}): {message}",
                returncode=result.returncode,
            )
        return result


class PowerShell:
    """Execute PowerShell snippets through a :class:`CommandRunner`."""

    def __init__(self, runner: CommandRunner, executable: str = "powershell.exe") -> None:
        """Bind the shell to *runner* and the PowerShell *executable*."""
        self.runner = runner
        self.executable = executable

    def run(
        self,
        script: str,
        *,
        check: bool = True,
        error_prefix: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run *script* non-interactively and return the completed process."""
        args = [
            self.executable,
            "-NoLogo",
            "-NoProfile",
            "-NonInteractive",
            "-ExecutionPolicy",
            "Bypass",
            "-Command",
            script,
        ]
        return self.runner.run(
            args,
            check=check,
            error_prefix=error_prefix or f"{self.executable} -Command",
        )


__all__ = ["CommandError", "CommandRunner", "PowerShell", "ps_literal"]
