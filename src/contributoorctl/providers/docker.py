"""Docker compose runner for the Contributoor sidecar."""
from __future__ import annotations

import logging
import os
import sys
from collections.abc import Sequence
from pathlib import Path

from ..config import ConfigService, RunMethod
from ..installer import InstallerConfig
from .base import CommandError, SidecarError, SidecarRunner, run_command

log = logging.getLogger(__name__)

COMPOSE_FILENAME = "docker-compose.yml"
COMPOSE_METRICS_FILENAME = "docker-compose.metrics.yml"
COMPOSE_HEALTH_FILENAME = "docker-compose.health.yml"
COMPOSE_NETWORK_FILENAME = "docker-compose.network.yml"
COMPOSE_EXTENSIONS = (".yml", ".yaml")
IMAGE_VERSION_LABEL = '{{index .Config.Labels "org.opencontainers.image.version"}}'


class ComposeFileNotFoundError(SidecarError):
    """Raised when no compose file exists in any search location."""


class InvalidComposePathError(SidecarError):
    """Raised when a compose path is not a regular ``.yml``/``.yaml`` file."""


def default_search_dirs() -> list[Path]:
    """Return compose search locations in priority order.

    Release layout (next to the executable, symlinks resolved first), then
    the current directory, then two levels up for a repository checkout.
    """
    executable = Path(sys.argv[0] or sys.executable)
    dirs = [executable.resolve().parent, executable.absolute().parent]
    cwd = Path.cwd()
    dirs.extend([cwd, cwd / ".." / ".."])
    unique: list[Path] = []
    for directory in dirs:
        if directory not in unique:
            unique.append(directory)
    return unique


def find_compose_file(filename: str, search_dirs: Sequence[Path] | None = None) -> Path:
    """Return the first ``search_dirs`` entry containing *filename*."""
    for directory in search_dirs if search_dirs is not None else default_search_dirs():
        candidate = directory / filename
        if candidate.exists():
            return candidate
    raise ComposeFileNotFoundError(f"{filename} not found")


def validate_compose_path(path: Path) -> Path:
    """Return *path* as an absolute, normalised compose file path.

    Anything that is not an existing regular file with a ``.yml``/``.yaml``
    extension is rejected before it can reach a subprocess.
    """
    if not path.exists():
        raise InvalidComposePathError(f"invalid compose file path: {path} does not exist")
    if path.is_dir():
        raise InvalidComposePathError("compose path is a directory, not a file")
    if not path.is_file():
        raise InvalidComposePathError(f"compose path is not a regular file: {path}")
    absolute = Path(os.path.normpath(path.absolute()))
    if absolute.suffix.lower() not in COMPOSE_EXTENSIONS:
        raise InvalidComposePathError("compose file must have .yml or .yaml extension")
    return absolute


class DockerSidecar(SidecarRunner):
    """Run the sidecar as a docker compose project."""

    def __init__(
        self,
        config_service: ConfigService,
        installer: InstallerConfig,
        *,
        search_dirs: Sequence[Path] | None = None,
    ) -> None:
        """Locate and validate the base compose file."""
        super().__init__(config_service, installer)
        self.search_dirs = list(search_dirs) if search_dirs is not None else None
        self.compose_path = self._resolve_compose(COMPOSE_FILENAME)

    def _resolve_compose(self, filename: str) -> Path:
        path = find_compose_file(filename, self.search_dirs)
        try:
            return validate_compose_path(path)
        except InvalidComposePathError as exc:
            raise InvalidComposePathError(f"invalid {filename} file: {exc}") from exc

    @property
    def image(self) -> str:
        """Return the ``image:tag`` for the configured version."""
        return f"{self.installer.docker_image}:{self.config_service.get().version}"

    def compose_env(self) -> dict[str, str]:
        """Return the environment passed to every docker compose call."""
        cfg = self.config_service.get()
        env = dict(os.environ)
        env["CONTRIBUTOOR_CONFIG_PATH"] = str(self.config_service.get_config_path().parent)
        env["CONTRIBUTOOR_VERSION"] = cfg.version
        if cfg.run_method is RunMethod.DOCKER and cfg.docker_network:
            env["CONTRIBUTOOR_DOCKER_NETWORK"] = cfg.docker_network
        if cfg.metrics_address:
            host, port = cfg.metrics_host_port()
            env["CONTRIBUTOOR_METRICS_ADDRESS"] = host
            env["CONTRIBUTOOR_METRICS_PORT"] = port
        if cfg.health_check_address:
            host, port = cfg.health_host_port()
            env["CONTRIBUTOOR_HEALTH_ADDRESS"] = host
            env["CONTRIBUTOOR_HEALTH_PORT"] = port
        return env

    def compose_args(self) -> list[str]:
        """Return ``compose -f ...`` including overlays the config needs."""
        cfg = self.config_service.get()
        args = ["compose", "-f", str(self.compose_path)]
        if cfg.metrics_address:
            args.extend(["-f", str(self._resolve_compose(COMPOSE_METRICS_FILENAME))])
        if cfg.health_check_address:
            args.extend(["-f", str(self._resolve_compose(COMPOSE_HEALTH_FILENAME))])
        if cfg.run_method is RunMethod.DOCKER and cfg.docker_network:
            args.extend(["-f", str(self._resolve_compose(COMPOSE_NETWORK_FILENAME))])
        return args

    def start(self) -> None:
        """Bring the compose project up, pulling the configured image."""
        existing = run_command(
            ["docker", "ps", "-aq", "-f", f"name={self.installer.container_name}"],
            check=False,
        )
        if existing.returncode == 0 and (existing.stdout or "").strip():
            run_command(
                ["docker", "rm", "-f", self.installer.container_name],
                error_prefix="failed to remove existing container",
            )

        run_command(
            ["docker", *self.compose_args(), "up", "-d", "--pull", "always"],
            env=self.compose_env(),
            error_prefix="failed to start containers",
        )

    def stop(self) -> None:
        """Tear the compose project down, removing volumes and local images."""
        args = [
            "docker",
            *self.compose_args(),
            "down",
            "--remove-orphans",
            "-v",
            "--rmi",
            "local",
            "--timeout",
            "30",
        ]
        try:
            run_command(args, env=self.compose_env(), error_prefix="failed to stop via compose")
        except CommandError as exc:
            # A compose file changed between versions no longer matches the
            # running project; remove the container by name instead.
            log.debug("%s", exc)
            run_command(
                ["docker", "rm", "-f", self.installer.container_name],
                error_prefix="failed to stop container",
            )

    def is_running(self) -> bool:
        """Return ``True`` when any compose service reports ``running``."""
        result = run_command(
            ["docker", *self.compose_args(), "ps", "--format", "{{.State}}"],
            env=self.compose_env(),
            error_prefix="failed to check container state",
        )
        return any("running" in line.lower() for line in (result.stdout or "").splitlines())

    def update(self) -> None:
        """Pull the configured image. Restarting is left to the caller."""
        image = self.image
        run_command(["docker", "pull", image], error_prefix=f"failed to pull image {image}")

    def version(self) -> str:
        """Return the image version label of the container or local image."""
        container = run_command(
            ["docker", "inspect", "-f", IMAGE_VERSION_LABEL, self.installer.container_name],
            check=False,
        )
        if container.returncode == 0:
            return (container.stdout or "").strip().removeprefix("v")

        image = self.image
        result = run_command(
            ["docker", "inspect", "-f", IMAGE_VERSION_LABEL, image],
            error_prefix="failed to get image version",
        )
        return (result.stdout or "").strip().removeprefix("v")

    def status(self) -> str:
        """Return the container state, or ``not running`` without a container."""
        name = self.installer.container_name
        listing = run_command(
            ["docker", "ps", "-a", "--filter", f"name={name}", "--format", "{{.ID}}"],
            check=False,
        )
        if listing.returncode != 0 or not (listing.stdout or "").strip():
            return "not running"
        result = run_command(
            ["docker", "inspect", "-f", "{{.State.Status}}", name],
            error_prefix="failed to get container status",
        )
        return (result.stdout or "").strip()

    def logs(self, tail_lines: int = 0, follow: bool = False) -> None:
        """Stream ``docker compose logs`` to the terminal."""
        args = ["docker", *self.compose_args(), "logs"]
        if tail_lines > 0:
            args.extend(["--tail", str(tail_lines)])
        if follow:
            args.append("-f")
        run_command(
            args,
            env=self.compose_env(),
            capture_output=False,
            cwd=self.compose_path.parent,
            error_prefix="docker compose logs",
        )


__all__ = [
    "COMPOSE_FILENAME",
    "ComposeFileNotFoundError",
    "DockerSidecar",
    "InvalidComposePathError",
    "default_search_dirs",
    "find_compose_file",
    "validate_compose_path",
]
