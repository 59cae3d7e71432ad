"""Service manager runner: systemd units on Linux, launchd daemons on macOS."""
from __future__ import annotations

import re
import subprocess
from collections.abc import Sequence
from pathlib import Path

from ..config import ConfigService
from ..installer import InstallerConfig
from .base import ServiceNotInstalledError, SidecarError, SidecarRunner, run_command
from .binary import BinarySidecar, detect_platform

DARWIN = "darwin"
LAUNCHD_DAEMON_DIR = Path("/Library/LaunchDaemons")

_LAUNCHD_PID = re.compile(r'"PID"\s*=\s*(\d+)\s*;', re.ASCII)


class SystemdSidecar(SidecarRunner):
    """Drive ``contributoor.service`` through ``sudo systemctl``.

    On macOS the same operations go through ``sudo launchctl`` against the
    ``io.ethpandaops.contributoor`` daemon plist instead. The unit and the
    plist are registered by the installer script; this runner only operates
    them. Binary replacement is delegated to :class:`BinarySidecar`.
    """

    def __init__(
        self,
        config_service: ConfigService,
        installer: InstallerConfig,
        *,
        binary: BinarySidecar | None = None,
        target_os: str | None = None,
        sudo_bin: str = "sudo",
        systemctl_bin: str = "systemctl",
        journalctl_bin: str = "journalctl",
        launchctl_bin: str = "launchctl",
    ) -> None:
        """Bind the runner; the binary runner is created on first use."""
        super().__init__(config_service, installer)
        self._binary = binary
        self.target_os = target_os or detect_platform()[0]
        self.sudo_bin = sudo_bin
        self.systemctl_bin = systemctl_bin
        self.journalctl_bin = journalctl_bin
        self.launchctl_bin = launchctl_bin

    @property
    def unit_name(self) -> str:
        return self.installer.service_name

    @property
    def launchd_label(self) -> str:
        return self.installer.launchd_label

    @property
    def plist_path(self) -> Path:
        return LAUNCHD_DAEMON_DIR / f"{self.launchd_label}.plist"

    @property
    def uses_launchd(self) -> bool:
        return self.target_os == DARWIN

    @property
    def binary(self) -> BinarySidecar:
        if self._binary is None:
            self._binary = BinarySidecar(self.config_service, self.installer)
        return self._binary

    def is_installed(self) -> bool:
        """Return ``True`` when systemd lists the unit file or the plist exists."""
        if self.uses_launchd:
            result = run_command(
                [self.sudo_bin, "test", "-f", str(self.plist_path)],
                check=False,
            )
            return result.returncode == 0
        result = self._systemctl("list-unit-files", self.unit_name, check=False)
        return result.returncode == 0 and self.unit_name in (result.stdout or "")

    def _require_installed(self) -> None:
        if not self.is_installed():
            name = self.plist_path if self.uses_launchd else self.unit_name
            raise ServiceNotInstalledError(
                f"{name} is not installed; run 'contributoor install' first"
            )

    def start(self) -> None:
        """Start the service, replacing a binary that reports the wrong version.

        systemd units are confirmed ``active`` afterwards. launchd daemons are
        loaded and started without waiting for a pid.
        """
        self._require_installed()
        self.binary.check_version()
        if self.uses_launchd:
            self._launchctl("load", "-w", str(self.plist_path))
            self._launchctl("start", self.launchd_label)
            return
        self._systemctl("start", self.unit_name)
        if not self.is_running():
            raise SidecarError("service failed to start")

    def stop(self) -> None:
        """Stop the service; launchd daemons are also unloaded."""
        self._require_installed()
        if self.uses_launchd:
            self._launchctl("stop", self.launchd_label, check=False)
            self._launchctl("unload", str(self.plist_path))
            return
        self._systemctl("stop", self.unit_name)
        if self.is_running():
            raise SidecarError("service failed to stop")

    def is_running(self) -> bool:
        """Return ``True`` when the service is active. A missing service is not running."""
        if not self.is_installed():
            return False
        if self.uses_launchd:
            return self._launchd_pid() is not None
        return self._is_active() == "active"

    def update(self) -> None:
        """Stop the service if needed, replace the binary and reload the manager.

        The service is left stopped; restarting it is up to the caller.
        """
        self._require_installed()
        if self.is_running():
            self.stop()
        self.binary.update()
        if self.uses_launchd:
            self._launchctl("unload", str(self.plist_path))
            self._launchctl("load", "-w", str(self.plist_path))
            return
        self._systemctl("daemon-reload")

    def version(self) -> str:
        """Return the version of the binary the service executes."""
        return self.binary.version()

    def status(self) -> str:
        """Return the unit's ``is-active`` state, or running/stopped under launchd."""
        if not self.is_installed():
            return "not installed"
        if self.uses_launchd:
            return "running" if self._launchd_pid() is not None else "stopped"
        return self._is_active() or "unknown"

    def logs(self, tail_lines: int = 0, follow: bool = False) -> None:
        """Stream the unit journal, or the binary's log file under launchd."""
        if self.uses_launchd:
            self.binary.logs(tail_lines, follow)
            return
        args = ["-u", self.unit_name]
        if follow:
            args.append("-f")
        if tail_lines > 0:
            args.extend(["-n", str(tail_lines)])
        self._journalctl(args)

    # ------------------------------------------------------------------
    def _is_active(self) -> str:
        result = self._systemctl("is-active", self.unit_name, check=False)
        return (result.stdout or "").strip()

    def _launchd_pid(self) -> int | None:
        result = self._launchctl("list", self.launchd_label, check=False)
        if result.returncode != 0:
            return None
        match = _LAUNCHD_PID.search(result.stdout or "")
        return int(match.group(1)) if match else None

    def _systemctl(
        self,
        command: str,
        unit: str | None = None,
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        args: list[str] = [self.sudo_bin, self.systemctl_bin, command]
        if unit is not None:
            args.append(unit)
        return run_command(args, check=check, error_prefix=f"{self.systemctl_bin} {command}")

    def _launchctl(
        self,
        command: str,
        *args: str,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        return run_command(
            [self.sudo_bin, self.launchctl_bin, command, *args],
            check=check,
            error_prefix=f"{self.launchctl_bin} {command}",
        )

    def _journalctl(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        joined = " ".join(args)
        return run_command(
            [self.sudo_bin, self.journalctl_bin, *args],
            capture_output=False,
            error_prefix=f"{self.journalctl_bin} {joined}",
        )


__all__ = ["LAUNCHD_DAEMON_DIR", "SystemdSidecar"]
