"""Bootstrap workflow for preparing a Windows worker node."""
from __future__ import annotations

from .errors import BootstrapError, PreconditionMissingError, exit_code_for
from .kubelet import KubeletStartConfig, render_start_command
from .orchestrator import (
    STEP_ORDER,
    BootstrapOrchestrator,
    BootstrapProviders,
    BootstrapReport,
    StepRecord,
    TargetAction,
    TargetRecord,
)
from .preconditions import check_runtime_endpoint, require_runtime
from .targets import Provisionable, should_install

__all__ = [
    # orchestration
    "BootstrapOrchestrator",
    "BootstrapProviders",
    "BootstrapReport",
    "STEP_ORDER",
    "StepRecord",
    "TargetAction",
    "TargetRecord",
    # errors
    "BootstrapError",
    "PreconditionMissingError",
    "exit_code_for",
    # building blocks
    "KubeletStartConfig",
    "Provisionable",
    "check_runtime_endpoint",
    "render_start_command",
    "require_runtime",
    "should_install",
]
