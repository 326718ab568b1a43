"""Tests for command execution and machine PATH handling."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence

import pytest
from conftest import ScriptedRunner

from nodeprep.providers import shell
from nodeprep.providers.environment import HostEnvironment, MachinePathStore, PathPersistError
from nodeprep.providers.shell import CommandError, CommandRunner, PowerShell, ps_literal


def test_command_runner_raises_with_stderr(monkeypatch: pytest.MonkeyPatch) -> None:
    """Non-zero exits surface stderr in the error message."""

    def fake_run(args: Sequence[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        return subprocess.CompletedProcess(list(args), 1060, stdout="", stderr="does not exist")

    monkeypatch.setattr(shell.subprocess, "run", fake_run)
    runner = CommandRunner(search_path=["C:/Windows/System32"])

    with pytest.raises(CommandError, match=r"sc query failed \(exit 1060\): does not exist") as exc:
        runner.run(["sc.exe", "query", "kubelet"], error_prefix="sc query")

    assert exc.value.returncode == 1060


def test_command_runner_passes_search_path(monkeypatch: pytest.MonkeyPatch) -> None:
    """Commands see the runner's search path rather than the process PATH."""
    seen: dict[str, object] = {}

    def fake_run(args: Sequence[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        seen["args"] = list(args)
        seen["env"] = kwargs["env"]
        return subprocess.CompletedProcess(list(args), 0, stdout="ok", stderr="")

    monkeypatch.setattr(shell.subprocess, "run", fake_run)
    monkeypatch.setattr(shell.shutil, "which", lambda cmd, path=None: None)
    runner = CommandRunner(search_path=["first"])
    runner.use_environment(["first", "second"])

    result = runner.run(["nssm", "version"])

    assert result.stdout == "ok"
    assert seen["args"] == ["nssm", "version"]
    env = seen["env"]
    assert isinstance(env, dict)
    assert env["PATH"].split(shell.os.pathsep) == ["first", "second"]


def test_command_runner_resolves_executable_on_search_path(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """The executable is resolved against the runner's search path."""
    seen: list[list[str]] = []

    def fake_run(args: Sequence[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        seen.append(list(args))
        return subprocess.CompletedProcess(list(args), 0, stdout="", stderr="")

    monkeypatch.setattr(shell.subprocess, "run", fake_run)
    monkeypatch.setattr(
        shell.shutil,
        "which",
        lambda cmd, path=None: f"{path}/{cmd}.exe" if path == "C:/nssm" else None,
    )
    runner = CommandRunner(search_path=["C:/nssm"])

    runner.run(["nssm", "get", "kubelet", "DependOnService"])

    assert seen == [["C:/nssm/nssm.exe", "get", "kubelet", "DependOnService"]]


def test_command_runner_reports_missing_binary(monkeypatch: pytest.MonkeyPatch) -> None:
    """A missing executable becomes a CommandError."""

    def fake_run(args: Sequence[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        raise FileNotFoundError(2, "No such file")

    monkeypatch.setattr(shell.subprocess, "run", fake_run)

    with pytest.raises(CommandError, match="not found"):
        CommandRunner(search_path=[]).run(["docker", "network", "ls"])


def test_command_runner_reports_timeout(monkeypatch: pytest.MonkeyPatch) -> None:
    """Timeouts are reported as CommandError."""

    def fake_run(args: Sequence[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        raise subprocess.TimeoutExpired(list(args), 5)

    monkeypatch.setattr(shell.subprocess, "run", fake_run)

    with pytest.raises(CommandError, match="timed out after 5"):
        CommandRunner(search_path=[]).run(["docker", "info"], timeout=5)


def test_powershell_wraps_script(scripted_runner: ScriptedRunner) -> None:
    """Scripts run non-interactively with the execution policy bypassed."""
    PowerShell(scripted_runner, executable="powershell.exe").run("Get-Service kubelet")

    call = scripted_runner.calls[0]
    assert call[0] == "powershell.exe"
    assert "-NoProfile" in call
    assert call[call.index("-ExecutionPolicy") + 1] == "Bypass"
    assert call[-2:] == ["-Command", "Get-Service kubelet"]


def test_ps_literal_doubles_single_quotes() -> None:
    """Embedded quotes survive PowerShell parsing."""
    assert ps_literal("C:/Program Files/it's") == "'C:/Program Files/it''s'"


def test_host_environment_path_entries_are_case_insensitive() -> None:
    """PATH membership ignores case, separators and trailing slashes."""
    env = HostEnvironment.from_path_value("C:\\Windows;C:\\K\\;;")

    assert env.search_path == ("C:\\Windows", "C:\\K\\")
    assert env.has_path_entry("c:/k")
    assert env.with_path_entry("C:/k") is env

    extended = env.with_path_entry("C:/Program Files/nssm")
    assert extended.search_path[-1] == "C:/Program Files/nssm"
    assert extended.path_value() == "C:\\Windows;C:\\K\\;C:/Program Files/nssm"


def test_machine_path_store_appends_missing_entry(
    scripted_runner: ScriptedRunner,
    scripted_powershell: PowerShell,
) -> None:
    """Appending persists the updated PATH through the machine scope."""
    scripted_runner.responder = lambda args: (0, "C:\\Windows\r\n")
    store = MachinePathStore(scripted_powershell)

    assert store.contains("C:/k") is False
    updated = store.append("C:/k")

    assert updated.search_path == ("C:\\Windows", "C:/k")
    scripts = scripted_runner.scripts()
    assert "GetEnvironmentVariable('Path'" in scripts[0]
    assert scripts[-1] == (
        "[Environment]::SetEnvironmentVariable('Path', 'C:\\Windows;C:/k', "
        "[EnvironmentVariableTarget]::Machine)"
    )


def test_machine_path_store_skips_present_entry(
    scripted_runner: ScriptedRunner,
    scripted_powershell: PowerShell,
) -> None:
    """No write happens when the entry is already persisted."""
    scripted_runner.responder = lambda args: (0, "C:\\Windows;C:\\k")
    store = MachinePathStore(scripted_powershell)

    store.append("C:/k")

    assert all("SetEnvironmentVariable" not in script for script in scripted_runner.scripts())


def test_machine_path_store_wraps_failures(
    scripted_runner: ScriptedRunner,
    scripted_powershell: PowerShell,
) -> None:
    """PowerShell failures are reported as PathPersistError."""
    scripted_runner.responder = lambda args: (1, "access denied")

    with pytest.raises(PathPersistError, match="access denied"):
        MachinePathStore(scripted_powershell).read()
