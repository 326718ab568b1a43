"""Typer-powered command line for ``nodeprep``.

``nodeprep prepare`` turns a fresh Windows host with a running container
runtime into a node that is ready for ``kubeadm join``. ``nodeprep status``
performs the same checks without changing anything.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .bootstrap import (
    BootstrapOrchestrator,
    BootstrapProviders,
    BootstrapReport,
    TargetAction,
    exit_code_for,
)
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .logging import OperationScope, StructuredLogger
from .models import RuntimeSelection, VersionTag

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to nodeprep's YAML config file.",
)

KUBERNETES_VERSION_OPTION = typer.Option(
    ...,
    "--kubernetes-version",
    "-v",
    help="Kubernetes release to install, e.g. v1.27.3 (the leading 'v' is optional).",
)

CONTAINER_RUNTIME_OPTION = typer.Option(
    None,
    "--container-runtime",
    help="Container runtime already running on this host: docker or containerD.",
)

DRY_RUN_OPTION = typer.Option(
    False,
    "--dry-run",
    help="Report what would be installed without changing the host.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit the step report as JSON.",
)

_ACTION_STYLES = {
    TargetAction.SKIPPED: "[dim]present[/dim]",
    TargetAction.INSTALLED: "[green]installed[/green]",
    TargetAction.PLANNED: "[yellow]planned[/yellow]",
    TargetAction.WARNING: "[yellow]warning[/yellow]",
    TargetAction.FAILED: "[red]failed[/red]",
}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Prepare a Windows host to join a Kubernetes cluster as a worker node.

        Installs the kubelet, kubeadm and kubectl binaries, the wins agent and
        nssm, registers the kubelet service and opens the kubelet port. Every
        step is idempotent, so the command is safe to re-run.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Objects shared by every command invocation."""

    config: AppConfig
    logger: StructuredLogger


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc
    runtime = RuntimeContext(config=config, logger=StructuredLogger(config.logs_dir))
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


def _build_providers(config: AppConfig) -> BootstrapProviders:
    """Return the host providers for *config* (patched in tests)."""
    return BootstrapProviders.from_config(config)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the nodeprep version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"nodeprep {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = 2,
    errors: Sequence[str] | None = None,
    quiet: bool = False,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    if not quiet:
        console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _parse_selection(
    op: OperationScope,
    config: AppConfig,
    kubernetes_version: str,
    container_runtime: str | None,
) -> tuple[VersionTag, RuntimeSelection]:
    try:
        version = VersionTag.parse(kubernetes_version)
    except ValueError as exc:
        _command_error(op, str(exc), rc=int(ExitCode.VALIDATION))
    if container_runtime is None:
        return version, config.container_runtime
    try:
        selection = RuntimeSelection.parse(container_runtime)
    except ValueError as exc:
        _command_error(op, str(exc), rc=int(ExitCode.VALIDATION))
    return version, selection


def _render_report(report: BootstrapReport) -> None:
    mode = " (dry run)" if report.dry_run else ""
    console.print(
        f"[bold]Kubernetes {report.version} with {report.runtime.display_name}{mode}[/bold]"
    )
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Step")
    table.add_column("Kind")
    table.add_column("Target")
    table.add_column("Action")
    table.add_column("Detail")
    for step in report.steps:
        for index, record in enumerate(step.targets):
            table.add_row(
                step.name if index == 0 else "",
                record.kind,
                record.identity,
                _ACTION_STYLES[record.action],
                record.detail or "",
            )
    console.print(table)


def _step_status(report: BootstrapReport, name: str, actions: set[TargetAction]) -> str:
    if report.failed_step == name or TargetAction.FAILED in actions:
        return "error"
    if TargetAction.WARNING in actions:
        return "warning"
    if TargetAction.INSTALLED in actions:
        return "changed"
    if TargetAction.PLANNED in actions:
        return "planned"
    return "unchanged"


def _run_bootstrap(
    op: OperationScope,
    runtime: RuntimeContext,
    version: VersionTag,
    selection: RuntimeSelection,
    *,
    dry_run: bool,
    json_output: bool,
) -> None:
    orchestrator = BootstrapOrchestrator(
        runtime.config,
        _build_providers(runtime.config),
        runtime=selection,
        version=version,
        dry_run=dry_run,
    )
    report = orchestrator.run()
    for step in report.steps:
        actions = {record.action for record in step.targets}
        op.add_step(step.name, status=_step_status(report, step.name, actions))

    payload = report.to_dict()
    if json_output:
        console.print(json.dumps(payload, indent=2), soft_wrap=True, markup=False, highlight=False)
    else:
        _render_report(report)

    if report.error is not None:
        _command_error(
            op,
            str(report.error),
            rc=int(exit_code_for(report.error)),
            quiet=json_output,
        )

    context = {"report": payload}
    if report.warnings:
        if not json_output:
            console.print("[yellow]Completed with warnings.[/yellow]")
        op.warning(
            "Bootstrap completed with warnings.",
            warnings=report.warnings,
            changed=report.changed,
            context=context,
        )
        return
    if dry_run:
        if not json_output:
            planned = sum(
                1
                for step in report.steps
                for record in step.targets
                if record.action is TargetAction.PLANNED
            )
            console.print(f"[yellow]Dry run[/yellow]: {planned} target(s) would be installed.")
        op.success("Dry run complete.", changed=0, context=context)
        return
    if not json_output:
        console.print(f"[green]Node prepared ({report.changed} change(s)).[/green]")
    op.success("Node prepared.", changed=report.changed, context=context)


@app.command()
def prepare(
    ctx: typer.Context,
    kubernetes_version: str = KUBERNETES_VERSION_OPTION,
    container_runtime: str | None = CONTAINER_RUNTIME_OPTION,
    dry_run: bool = DRY_RUN_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Install and register everything the node needs before ``kubeadm join``."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "prepare",
        args={
            "kubernetes_version": kubernetes_version,
            "container_runtime": container_runtime,
            "dry_run": dry_run,
            "json": json_output,
        },
        target={"kind": "node", "scope": "bootstrap"},
    ) as op:
        version, selection = _parse_selection(
            op, runtime.config, kubernetes_version, container_runtime
        )
        _run_bootstrap(
            op,
            runtime,
            version,
            selection,
            dry_run=dry_run,
            json_output=json_output,
        )


@app.command()
def status(
    ctx: typer.Context,
    kubernetes_version: str = KUBERNETES_VERSION_OPTION,
    container_runtime: str | None = CONTAINER_RUNTIME_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Report which bootstrap targets are present without changing the host."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "status",
        args={
            "kubernetes_version": kubernetes_version,
            "container_runtime": container_runtime,
            "json": json_output,
        },
        target={"kind": "node", "scope": "bootstrap"},
    ) as op:
        version, selection = _parse_selection(
            op, runtime.config, kubernetes_version, container_runtime
        )
        _run_bootstrap(
            op,
            runtime,
            version,
            selection,
            dry_run=True,
            json_output=json_output,
        )


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
