"""Shared contract and helpers for the sidecar runners."""
from __future__ import annotations

import logging
import subprocess
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from pathlib import Path

from ..config import ConfigService
from ..installer import InstallerConfig

log = logging.getLogger(__name__)


class SidecarError(RuntimeError):
    """Raised when a runner operation fails."""


class CommandError(SidecarError):
    """Raised when an external command exits unsuccessfully."""

    def __init__(
        self,
        message: str,
        *,
        args: Sequence[str] = (),
        returncode: int | None = None,
        output: str = "",
    ) -> None:
        super().__init__(message)
        self.command = list(args)
        self.returncode = returncode
        self.output = output


class ServiceNotInstalledError(SidecarError):
    """Raised when the systemd unit has not been registered."""


class BinaryNotInstalledError(SidecarError):
    """Raised when the sidecar binary is missing from ``<dir>/bin``."""


class SidecarRunner(ABC):
    """Uniform lifecycle operations over the three run methods.

    ``stop`` is not required to be idempotent; callers check
    :meth:`is_running` first.
    """

    def __init__(self, config_service: ConfigService, installer: InstallerConfig) -> None:
        """Bind the runner to the live config and installer settings."""
        self.config_service = config_service
        self.installer = installer

    @abstractmethod
    def start(self) -> None:
        """Start the sidecar."""

    @abstractmethod
    def stop(self) -> None:
        """Stop the sidecar."""

    @abstractmethod
    def is_running(self) -> bool:
        """Return ``True`` when the sidecar is running."""

    @abstractmethod
    def update(self) -> None:
        """Fetch and install the configured sidecar version."""

    @abstractmethod
    def version(self) -> str:
        """Return the version that is actually installed or running."""

    @abstractmethod
    def status(self) -> str:
        """Return a short human readable state."""

    @abstractmethod
    def logs(self, tail_lines: int = 0, follow: bool = False) -> None:
        """Stream the sidecar logs to the terminal."""


def run_command(
    args: Sequence[str],
    *,
    check: bool = True,
    error_prefix: str | None = None,
    capture_output: bool = True,
    env: Mapping[str, str] | None = None,
    cwd: Path | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run *args* and wrap failures in :class:`CommandError`.

    Captured stdout and stderr are appended to the error message so operators
    see the tool's own diagnostics.
    """
    prefix = error_prefix or " ".join(args[:2])
    log.debug("Running %s", " ".join(args))
    try:
        if capture_output:
            result = subprocess.run(  # noqa: S603
                list(args),
                capture_output=True,
                text=True,
                check=False,
                env=dict(env) if env is not None else None,
                cwd=str(cwd) if cwd is not None else None,
            )
        else:
            result = subprocess.run(  # noqa: S603
                list(args),
                text=True,
                check=False,
                env=dict(env) if env is not None else None,
                cwd=str(cwd) if cwd is not None else None,
            )
    except FileNotFoundError as exc:
        raise CommandError(f"{args[0]} not found: {exc}", args=args) from exc
    if check and result.returncode != 0:
        output = _combined_output(result)
        raise CommandError(
            f"{prefix} failed (exit {result.returncode}): {output or 'no output'}",
            args=args,
            returncode=result.returncode,
            output=output,
        )
    return result


def _combined_output(result: subprocess.CompletedProcess[str]) -> str:
    stdout = (getattr(result, "stdout", "") or "").strip()
    stderr = (getattr(result, "stderr", "") or "").strip()
    return "\n".join(part for part in (stdout, stderr) if part)


__all__ = [
    "BinaryNotInstalledError",
    "CommandError",
    "ServiceNotInstalledError",
    "SidecarError",
    "SidecarRunner",
    "run_command",
]
