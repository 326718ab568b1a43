"""Windows Defender Firewall rules for node services."""
from __future__ import annotations

from dataclasses import dataclass

from .shell import CommandError, PowerShell, ps_literal


class FirewallRuleError(RuntimeError):
    """Raised when a firewall rule cannot be queried or created."""


@dataclass(frozen=True, slots=True)
class FirewallRuleSpec:
    """Inbound allow rule for a single local port."""

    name: str
    display_name: str
    port: int
    protocol: str = "TCP"


@dataclass(slots=True)
class FirewallProvider:
    """Query and create rules with the NetSecurity PowerShell cmdlets."""

    powershell: PowerShell

    def exists(self, name: str) -> bool:
        """Return ``True`` when a rule with internal name *name* exists."""
        script = (
            f"$rule = Get-NetFirewallRule -Name {ps_literal(name)} -ErrorAction SilentlyContinue; "
            "if ($rule) { Write-Output 'present' }"
        )
        try:
            result = self.powershell.run(script, error_prefix="Get-NetFirewallRule")
        except CommandError as exc:
            raise FirewallRuleError(f"Failed to query firewall rule {name}: {exc}") from exc
        return "present" in (result.stdout or "")

    def create(self, spec: FirewallRuleSpec) -> None:
        """Create the inbound allow rule described by *spec*."""
        script = (
            f"New-NetFirewallRule -Name {ps_literal(spec.name)} "
            f"-DisplayName {ps_literal(spec.display_name)} "
            f"-Enabled True -Direction Inbound -Protocol {spec.protocol} "
            f"-Action Allow -LocalPort {spec.port}"
        )
        try:
            self.powershell.run(script, error_prefix="New-NetFirewallRule")
        except CommandError as exc:
            raise FirewallRuleError(f"Failed to create firewall rule {spec.name}: {exc}") from exc


__all__ = ["FirewallProvider", "FirewallRuleError", "FirewallRuleSpec"]
