"""Error types raised by the bootstrap workflow and their exit codes."""
from __future__ import annotations

from ..archive import ArchiveError
from ..exit_codes import ExitCode
from ..models import RuntimeSelection
from ..providers.environment import PathPersistError
from ..providers.fetcher import FetchError
from ..providers.firewall import FirewallRuleError
from ..providers.network import NetworkError
from ..providers.services import ServiceRegistrationError, ServiceStartError
from ..providers.shell import CommandError


class PreconditionMissingError(RuntimeError):
    """Raised when the selected container runtime is not available on the host."""

    def __init__(self, runtime: RuntimeSelection) -> None:
        """Build the operator-facing message for *runtime*."""
        name = runtime.display_name
        super().__init__(
            f"{name} service was not detected - please install and start {name} "
            f"before running nodeprep with --container-runtime {runtime.value}"
        )
        self.runtime = runtime


class BootstrapError(RuntimeError):
    """A provider failure attributed to the bootstrap step it happened in."""

    def __init__(self, step: str, cause: BaseException) -> None:
        """Wrap *cause* raised while running *step*."""
        super().__init__(f"{step}: {cause}")
        self.step = step
        self.cause = cause


PROVIDER_ERRORS: tuple[type[Exception], ...] = (
    ArchiveError,
    CommandError,
    FetchError,
    FirewallRuleError,
    NetworkError,
    PathPersistError,
    ServiceRegistrationError,
    ServiceStartError,
    OSError,
)


def exit_code_for(error: BaseException) -> ExitCode:
    """Return the process exit code that reports *error*."""
    if isinstance(error, BootstrapError):
        return exit_code_for(error.cause)
    if isinstance(error, PreconditionMissingError):
        return ExitCode.ENVIRONMENT
    if isinstance(error, PROVIDER_ERRORS):
        return ExitCode.PROVIDER
    return ExitCode.VALIDATION


__all__ = [
    "BootstrapError",
    "PROVIDER_ERRORS",
    "PreconditionMissingError",
    "exit_code_for",
]
