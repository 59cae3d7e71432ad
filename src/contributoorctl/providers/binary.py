"""Run the sidecar binary directly, tracked through a pid file."""
from __future__ import annotations

import hashlib
import logging
import os
import platform
import re
import subprocess
import tempfile
import threading
from pathlib import Path
from typing import IO

import httpx

from ..config import CONFIG_FILENAME, LATEST_VERSION, ConfigService
from ..installer import InstallerConfig
from .base import BinaryNotInstalledError, SidecarError, SidecarRunner, run_command

log = logging.getLogger(__name__)

PID_FILENAME = "contributoor.pid"
BINARY_NAME = "sentry"
RELEASE_DOWNLOAD_URL = "https://github.com/{org}/{repo}/releases/download/v{version}"
DOWNLOAD_TIMEOUT = httpx.Timeout(30.0, read=300.0)

_PID_PATTERN = re.compile(r"^\d+$", re.ASCII)
_ARCH_ALIASES = {"x86_64": "amd64", "aarch64": "arm64"}


class PidFileError(SidecarError):
    """Raised when the pid file is missing or does not hold a numeric pid."""


class DownloadError(SidecarError):
    """Raised when a release artifact cannot be downloaded or verified."""


def detect_platform() -> tuple[str, str]:
    """Return ``(os, arch)`` using the release artifact naming."""
    machine = platform.machine().lower()
    return platform.system().lower(), _ARCH_ALIASES.get(machine, machine)


def parse_checksums(text: str) -> dict[str, str]:
    """Parse ``<sha256>  <filename>`` lines into a filename mapping."""
    checksums: dict[str, str] = {}
    for line in text.splitlines():
        parts = line.split()
        if len(parts) == 2:
            digest, name = parts
            checksums[name.lstrip("*")] = digest.lower()
    return checksums


class BinarySidecar(SidecarRunner):
    """Launch ``<dir>/bin/sentry`` as a detached child process."""

    def __init__(
        self,
        config_service: ConfigService,
        installer: InstallerConfig,
        *,
        transport: httpx.BaseTransport | None = None,
        target_platform: tuple[str, str] | None = None,
    ) -> None:
        """Open the append-mode log files used by :meth:`start`."""
        super().__init__(config_service, installer)
        self.transport = transport
        self.target_platform = target_platform or detect_platform()
        self._stdout: IO[bytes] | None = None
        self._stderr: IO[bytes] | None = None
        self._open_logs()

    @property
    def base_dir(self) -> Path:
        return self.config_service.get().expanded_directory()

    @property
    def binary_path(self) -> Path:
        return self.base_dir / "bin" / BINARY_NAME

    @property
    def pid_path(self) -> Path:
        return self.base_dir / PID_FILENAME

    @property
    def logs_dir(self) -> Path:
        return self.base_dir / "logs"

    def _open_logs(self) -> None:
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
            self._stdout = (self.logs_dir / "debug.log").open("ab")
            self._stderr = (self.logs_dir / "service.log").open("ab")
        except OSError as exc:
            self.close()
            raise SidecarError(f"failed to open log files: {exc}") from exc

    def close(self) -> None:
        """Close the log file handles held by this runner."""
        for handle in (self._stdout, self._stderr):
            if handle is not None:
                handle.close()
        self._stdout = None
        self._stderr = None

    def _require_binary(self) -> None:
        if not self.binary_path.exists():
            raise BinaryNotInstalledError(
                f"binary not found at {self.binary_path}; run 'contributoor install' first"
            )

    def _read_pid(self) -> int | None:
        try:
            raw = self.pid_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise PidFileError(f"failed to read pid file: {exc}") from exc
        if not _PID_PATTERN.match(raw):
            raise PidFileError(f"invalid PID format in {self.pid_path}")
        return int(raw)

    def _write_pid(self, pid: int) -> None:
        fd = os.open(self.pid_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(str(pid))

    def _reap(self, process: subprocess.Popen[bytes]) -> None:
        returncode = process.wait()
        if returncode:
            log.error("Sidecar exited with status %s", returncode)
        try:
            if self._read_pid() == process.pid:
                self.pid_path.unlink()
        except (OSError, PidFileError) as exc:
            log.error("Failed to remove pid file: %s", exc)

    def start(self) -> None:
        """Spawn the binary and record its pid.

        A binary that does not report the configured version is replaced
        first. Returns once the child is running; a background thread removes
        the pid file when the child exits.
        """
        self._require_binary()
        self.check_version()
        if self._stdout is None or self._stderr is None:
            self._open_logs()

        config_path = self.base_dir / CONFIG_FILENAME
        try:
            process = subprocess.Popen(  # noqa: S603
                [str(self.binary_path), "--config", str(config_path)],
                stdout=self._stdout,
                stderr=self._stderr,
                start_new_session=True,
            )
        except OSError as exc:
            raise SidecarError(f"failed to start binary: {exc}") from exc

        try:
            self._write_pid(process.pid)
        except OSError as exc:
            raise SidecarError(f"failed to write pid file: {exc}") from exc

        threading.Thread(
            target=self._reap,
            args=(process,),
            name="contributoor-reaper",
            daemon=True,
        ).start()

    def stop(self) -> None:
        """Terminate the recorded process and remove the pid file."""
        self._require_binary()
        pid = self._read_pid()
        if pid is None:
            raise PidFileError(f"pid file not found at {self.pid_path}")
        run_command(["kill", str(pid)], error_prefix="failed to stop process")
        self.pid_path.unlink(missing_ok=True)
        self.close()

    def is_running(self) -> bool:
        """Check the recorded pid with ``kill -0``, removing stale pid files."""
        pid = self._read_pid()
        if pid is None:
            return False
        alive = run_command(["kill", "-0", str(pid)], check=False)
        if alive.returncode != 0:
            log.debug("Removing stale pid file for %s", pid)
            self.pid_path.unlink(missing_ok=True)
            return False
        return True

    def release_url(self, filename: str) -> str:
        """Return the download URL of *filename* for the configured version."""
        base = RELEASE_DOWNLOAD_URL.format(
            org=self.installer.github_org,
            repo=self.installer.github_repo,
            version=self.config_service.get().version,
        )
        return f"{base}/{filename}"

    def update(self) -> None:
        """Install the configured release, preserving the running state."""
        version = self.config_service.get().version
        os_name, arch = self.target_platform
        tarball_name = f"contributoor_{version}_{os_name}_{arch}.tar.gz"
        checksums_name = f"contributoor_{version}_checksums.txt"

        fd, tmp_name = tempfile.mkstemp(prefix="contributoor-", suffix=".tar.gz")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as handle, httpx.Client(
                transport=self.transport,
                timeout=DOWNLOAD_TIMEOUT,
                follow_redirects=True,
            ) as client:
                checksums = self._download_checksums(client, self.release_url(checksums_name))
                digest = self._download_to(client, self.release_url(tarball_name), handle)

            expected = checksums.get(tarball_name)
            if expected is None:
                log.warning("No checksum published for %s", tarball_name)
            elif expected != digest:
                raise DownloadError(
                    f"checksum mismatch for {tarball_name}: expected {expected}, got {digest}"
                )

            was_running = self.is_running()
            if was_running:
                self.stop()

            self._install_release(tmp_path, version)

            if was_running:
                self.start()
        finally:
            tmp_path.unlink(missing_ok=True)

    def _download_checksums(self, client: httpx.Client, url: str) -> dict[str, str]:
        try:
            response = client.get(url)
        except httpx.HTTPError as exc:
            raise DownloadError(f"failed to download checksums: {exc}") from exc
        if response.status_code != 200:
            raise DownloadError(
                f"failed to download checksums: unexpected status code {response.status_code}"
            )
        return parse_checksums(response.text)

    def _download_to(self, client: httpx.Client, url: str, handle: IO[bytes]) -> str:
        hasher = hashlib.sha256()
        try:
            with client.stream("GET", url) as response:
                if response.status_code != 200:
                    raise DownloadError(
                        f"failed to download binary: unexpected status code {response.status_code}"
                    )
                for chunk in response.iter_bytes():
                    handle.write(chunk)
                    hasher.update(chunk)
        except httpx.HTTPError as exc:
            raise DownloadError(f"failed to download binary: {exc}") from exc
        return hasher.hexdigest()

    def _install_release(self, tarball: Path, version: str) -> None:
        release_dir = self.base_dir / "releases" / f"contributoor-{version}"
        release_binary = release_dir / BINARY_NAME
        try:
            release_dir.mkdir(mode=0o755, parents=True, exist_ok=True)
        except OSError as exc:
            raise SidecarError(f"failed to create release directory: {exc}") from exc

        run_command(
            ["tar", "--no-same-owner", "-xzf", str(tarball), "-C", str(release_dir)],
            error_prefix="failed to extract binary",
        )

        try:
            release_binary.chmod(0o755)
            self.binary_path.parent.mkdir(parents=True, exist_ok=True)
            if self.binary_path.is_symlink() or self.binary_path.exists():
                self.binary_path.unlink()
            self.binary_path.symlink_to(release_binary)
        except OSError as exc:
            raise SidecarError(f"failed to install binary: {exc}") from exc

    def version(self) -> str:
        """Return the version reported by ``sentry --release``."""
        self._require_binary()
        result = run_command(
            [str(self.binary_path), "--release"],
            error_prefix="failed to get binary version",
        )
        return (result.stdout or "").strip().removeprefix("v")

    def check_version(self) -> None:
        """Install the configured release when the binary reports another one."""
        expected = self.config_service.get().version
        if expected == LATEST_VERSION:
            return
        current = self.version()
        if current != expected:
            log.warning(
                "Version mismatch: binary is %s but config expects %s; updating",
                current,
                expected,
            )
            self.update()

    def status(self) -> str:
        """Return ``running`` or ``stopped``."""
        return "running" if self.is_running() else "stopped"

    def logs(self, tail_lines: int = 0, follow: bool = False) -> None:
        """Print ``logs/debug.log`` through ``tail``."""
        self._require_binary()
        args = ["tail"]
        if follow:
            args.append("-f")
        if tail_lines > 0:
            args.extend(["-n", str(tail_lines)])
        args.append(str(self.logs_dir / "debug.log"))
        run_command(args, capture_output=False, error_prefix="tail")


__all__ = [
    "BinarySidecar",
    "DownloadError",
    "PidFileError",
    "detect_platform",
    "parse_checksums",
]
