"""Kubelet start script generation."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path, PureWindowsPath

from ..config import AppConfig
from ..models import RuntimeSelection

START_SCRIPT_TEMPLATE = "kubelet/StartKubelet.ps1.j2"
KUBEADM_FLAGS_FILE = "kubeadm-flags.env"


def _win(path: Path | str) -> str:
    return str(PureWindowsPath(str(path)))


@dataclass(frozen=True, slots=True)
class KubeletStartConfig:
    """Static inputs of the kubelet command line written into the start script."""

    runtime: RuntimeSelection
    kubelet_binary: Path
    state_dir: Path
    kubernetes_dir: Path
    log_dir: Path
    pause_image: str | None = None
    hostname_override: str | None = None
    extra_args: tuple[str, ...] = ()

    @classmethod
    def from_config(cls, config: AppConfig, runtime: RuntimeSelection) -> KubeletStartConfig:
        """Derive the start configuration from *config* for *runtime*."""
        paths = config.paths
        return cls(
            runtime=runtime,
            kubelet_binary=paths.kubernetes_root / "kubelet.exe",
            # C:/var/lib/kubelet/etc/kubernetes -> C:/var/lib/kubelet
            state_dir=paths.kubelet_etc_dir.parent.parent,
            kubernetes_dir=paths.pki_dir.parent,
            log_dir=paths.kubelet_log_dir,
            pause_image=config.kubelet.pause_image,
            hostname_override=config.kubelet.hostname_override,
            extra_args=config.kubelet.extra_args,
        )

    @property
    def flags_file(self) -> Path:
        """Environment file kubeadm writes during ``kubeadm join``."""
        return self.state_dir / KUBEADM_FLAGS_FILE


def render_start_command(config: KubeletStartConfig) -> list[str]:
    """Return the static kubelet arguments appended after the kubeadm flags."""
    hostname = config.hostname_override or "$(hostname)"
    args = [
        f"--cert-dir={_win(config.state_dir / 'pki')}",
        f"--config={_win(config.state_dir / 'config.yaml')}",
        f"--bootstrap-kubeconfig={_win(config.kubernetes_dir / 'bootstrap-kubelet.conf')}",
        f"--kubeconfig={_win(config.kubernetes_dir / 'kubelet.conf')}",
        f"--hostname-override={hostname}",
    ]
    if config.pause_image:
        args.append(f'--pod-infra-container-image="{config.pause_image}"')
    args.extend(
        [
            "--enable-debugging-handlers",
            "--cgroups-per-qos=false",
            '--enforce-node-allocatable=""',
            '--resolv-conf=""',
            f"--log-dir={_win(config.log_dir)}",
            "--logtostderr=false",
        ]
    )
    if config.runtime is RuntimeSelection.CONTAINERD:
        args.extend(
            [
                "--container-runtime=remote",
                f"--container-runtime-endpoint=npipe://{config.runtime.endpoint}",
            ]
        )
    args.extend(config.extra_args)
    return args


def script_context(config: KubeletStartConfig, *, network_name: str | None) -> dict[str, object]:
    """Return the template context for the start script.

    *network_name* is only passed for runtimes whose host network must be
    re-created by the script when the runtime drops it (docker).
    """
    # The command line is expanded inside a double-quoted PowerShell string.
    arguments = [arg.replace('"', '`"') for arg in render_start_command(config)]
    return {
        "flags_file": _win(config.flags_file),
        "kubelet_binary": _win(config.kubelet_binary),
        "network_name": network_name if config.runtime is RuntimeSelection.DOCKER else None,
        "arguments": arguments,
    }


__all__ = [
    "KUBEADM_FLAGS_FILE",
    "KubeletStartConfig",
    "START_SCRIPT_TEMPLATE",
    "render_start_command",
    "script_context",
]
