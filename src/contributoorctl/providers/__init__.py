"""Sidecar runners and the remote services the CLI consults."""
from __future__ import annotations

from ..config import ConfigService, ConfigValidationError, RunMethod
from ..installer import InstallerConfig
from .base import (
    BinaryNotInstalledError,
    CommandError,
    ServiceNotInstalledError,
    SidecarError,
    SidecarRunner,
)
from .beacon import BeaconError, BeaconInfo, BeaconService, HealthStatus
from .binary import BinarySidecar, DownloadError, PidFileError
from .docker import ComposeFileNotFoundError, DockerSidecar, InvalidComposePathError
from .github import GitHubError, GitHubService
from .systemd import SystemdSidecar


def create_runner(config_service: ConfigService, installer: InstallerConfig) -> SidecarRunner:
    """Return the runner for the configured ``runMethod``."""
    run_method = config_service.get().run_method
    if run_method is RunMethod.DOCKER:
        return DockerSidecar(config_service, installer)
    if run_method is RunMethod.SYSTEMD:
        return SystemdSidecar(config_service, installer)
    if run_method is RunMethod.BINARY:
        return BinarySidecar(config_service, installer)
    raise ConfigValidationError("runMethod", f"invalid sidecar run method: {run_method!r}")


__all__ = [
    "BeaconError",
    "BeaconInfo",
    "BeaconService",
    "BinaryNotInstalledError",
    "BinarySidecar",
    "CommandError",
    "ComposeFileNotFoundError",
    "DockerSidecar",
    "DownloadError",
    "GitHubError",
    "GitHubService",
    "HealthStatus",
    "InvalidComposePathError",
    "PidFileError",
    "ServiceNotInstalledError",
    "SidecarError",
    "SidecarRunner",
    "SystemdSidecar",
    "create_runner",
]
