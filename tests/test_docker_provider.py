"""Tests for the docker compose runner."""
from __future__ import annotations

from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

import pytest

from contributoorctl.config import ConfigService, RunMethod, new_default_config
from contributoorctl.installer import InstallerConfig
from contributoorctl.providers import base as base_module
from contributoorctl.providers.base import CommandError
from contributoorctl.providers.docker import (
    IMAGE_VERSION_LABEL,
    ComposeFileNotFoundError,
    DockerSidecar,
    InvalidComposePathError,
    find_compose_file,
    validate_compose_path,
)


class DummyResult:
    """Simple stand-in for ``subprocess.CompletedProcess``."""

    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Initialise the dummy result."""
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


Call = tuple[list[str], dict[str, Any]]


def _fake_run(
    monkeypatch: pytest.MonkeyPatch,
    responder: Callable[[list[str]], DummyResult] | None = None,
) -> list[Call]:
    calls: list[Call] = []

    def fake_run(args: Sequence[str], **kwargs: Any) -> DummyResult:
        calls.append((list(args), kwargs))
        return responder(list(args)) if responder else DummyResult()

    monkeypatch.setattr(base_module.subprocess, "run", fake_run)
    return calls


def _release_dir(tmp_path: Path, *names: str) -> Path:
    release = tmp_path / "release"
    release.mkdir()
    for name in names or ("docker-compose.yml",):
        (release / name).write_text("services: {}\n", encoding="utf-8")
    return release


def _runner(tmp_path: Path, release: Path, **overrides: object) -> DockerSidecar:
    cfg = new_default_config(str(tmp_path))
    cfg.version = "1.2.3"
    for key, value in overrides.items():
        setattr(cfg, key, value)
    service = ConfigService(tmp_path / "config.yaml", cfg)
    return DockerSidecar(service, InstallerConfig(), search_dirs=[release])


def test_find_compose_file_uses_first_match(tmp_path: Path) -> None:
    """Search locations are checked in order."""
    first = tmp_path / "first"
    second = tmp_path / "second"
    first.mkdir()
    second.mkdir()
    (second / "docker-compose.yml").write_text("", encoding="utf-8")
    (first / "docker-compose.yml").write_text("", encoding="utf-8")

    assert find_compose_file("docker-compose.yml", [first, second]) == first / "docker-compose.yml"


def test_find_compose_file_missing(tmp_path: Path) -> None:
    """No match anywhere is a dedicated error."""
    with pytest.raises(ComposeFileNotFoundError):
        find_compose_file("docker-compose.yml", [tmp_path])


def test_validate_compose_path_rejects_wrong_extension(tmp_path: Path) -> None:
    """Only .yml and .yaml files are accepted."""
    target = tmp_path / "compose.txt"
    target.write_text("", encoding="utf-8")

    with pytest.raises(InvalidComposePathError, match="extension"):
        validate_compose_path(target)


def test_validate_compose_path_rejects_directory(tmp_path: Path) -> None:
    """A directory is never a compose file, whatever its name."""
    target = tmp_path / "docker-compose.yml"
    target.mkdir()

    with pytest.raises(InvalidComposePathError, match="directory"):
        validate_compose_path(target)


def test_validate_compose_path_rejects_missing(tmp_path: Path) -> None:
    """Missing files are rejected."""
    with pytest.raises(InvalidComposePathError, match="does not exist"):
        validate_compose_path(tmp_path / "docker-compose.yml")


def test_validate_compose_path_returns_clean_absolute_path(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Relative paths with ``..`` are normalised to an absolute path."""
    (tmp_path / "sub").mkdir()
    (tmp_path / "docker-compose.yaml").write_text("", encoding="utf-8")
    monkeypatch.chdir(tmp_path)

    resolved = validate_compose_path(Path("sub/../docker-compose.yaml"))

    assert resolved == tmp_path.resolve() / "docker-compose.yaml"
    assert resolved.is_absolute()


def test_invalid_compose_file_never_reaches_subprocess(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A bad compose path fails construction before any command runs."""
    calls = _fake_run(monkeypatch)
    release = tmp_path / "release"
    (release / "docker-compose.yml").mkdir(parents=True)

    with pytest.raises(InvalidComposePathError):
        _runner(tmp_path, release)

    assert calls == []


def test_start_runs_compose_up_with_environment(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Start pulls and brings the project up with the sidecar environment."""
    calls = _fake_run(monkeypatch)
    release = _release_dir(tmp_path)
    runner = _runner(tmp_path, release)

    runner.start()

    ps_args, _ = calls[0]
    assert ps_args == ["docker", "ps", "-aq", "-f", "name=contributoor"]
    up_args, kwargs = calls[-1]
    assert up_args == [
        "docker",
        "compose",
        "-f",
        str(release / "docker-compose.yml"),
        "up",
        "-d",
        "--pull",
        "always",
    ]
    assert kwargs["env"]["CONTRIBUTOOR_CONFIG_PATH"] == str(tmp_path)
    assert kwargs["env"]["CONTRIBUTOOR_VERSION"] == "1.2.3"
    assert "CONTRIBUTOOR_METRICS_ADDRESS" not in kwargs["env"]


def test_start_removes_leftover_container(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """An existing container with the same name is removed first."""

    def responder(args: list[str]) -> DummyResult:
        if args[:3] == ["docker", "ps", "-aq"]:
            return DummyResult(stdout="abc123\n")
        return DummyResult()

    calls = _fake_run(monkeypatch, responder)
    runner = _runner(tmp_path, _release_dir(tmp_path))

    runner.start()

    assert calls[1][0] == ["docker", "rm", "-f", "contributoor"]


def test_start_failure_includes_output(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Compose errors carry the tool's own output."""

    def responder(args: list[str]) -> DummyResult:
        if "up" in args:
            return DummyResult(returncode=1, stderr="pull access denied")
        return DummyResult()

    _fake_run(monkeypatch, responder)
    runner = _runner(tmp_path, _release_dir(tmp_path))

    with pytest.raises(CommandError, match="pull access denied") as excinfo:
        runner.start()

    assert excinfo.value.returncode == 1


def test_stop_tears_down_project(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Stop removes orphans, volumes and local images."""
    calls = _fake_run(monkeypatch)
    release = _release_dir(tmp_path)
    runner = _runner(tmp_path, release)

    runner.stop()

    (args, _), = calls
    assert args[-7:] == ["down", "--remove-orphans", "-v", "--rmi", "local", "--timeout", "30"]
    assert args[:4] == ["docker", "compose", "-f", str(release / "docker-compose.yml")]


def test_stop_falls_back_to_container_removal(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """When compose down fails the container is removed by name."""

    def responder(args: list[str]) -> DummyResult:
        if "down" in args:
            return DummyResult(returncode=1, stderr="no such project")
        return DummyResult()

    calls = _fake_run(monkeypatch, responder)
    runner = _runner(tmp_path, _release_dir(tmp_path))

    runner.stop()

    assert calls[-1][0] == ["docker", "rm", "-f", "contributoor"]


@pytest.mark.parametrize(
    ("output", "expected"),
    [
        ("running\n", True),
        ("exited\nRunning\n", True),
        ("Exited (0)\n", False),
        ("", False),
    ],
)
def test_is_running_parses_compose_state(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    output: str,
    expected: bool,
) -> None:
    """Any service line containing ``running`` counts."""
    calls = _fake_run(monkeypatch, lambda args: DummyResult(stdout=output))
    runner = _runner(tmp_path, _release_dir(tmp_path))

    assert runner.is_running() is expected
    assert calls[0][0][-3:] == ["ps", "--format", "{{.State}}"]


def test_update_pulls_configured_image(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Update only pulls the image for the configured version."""
    calls = _fake_run(monkeypatch)
    runner = _runner(tmp_path, _release_dir(tmp_path))

    runner.update()

    assert [args for args, _ in calls] == [["docker", "pull", "ethpandaops/contributoor:1.2.3"]]


def test_version_reads_container_label(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """The image version label is reported without a leading ``v``."""
    calls = _fake_run(monkeypatch, lambda args: DummyResult(stdout="v1.2.3\n"))
    runner = _runner(tmp_path, _release_dir(tmp_path))

    assert runner.version() == "1.2.3"
    assert calls[0][0] == ["docker", "inspect", "-f", IMAGE_VERSION_LABEL, "contributoor"]


def test_version_falls_back_to_image(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Without a container the local image label is used."""

    def responder(args: list[str]) -> DummyResult:
        if args[-1] == "contributoor":
            return DummyResult(returncode=1, stderr="No such object")
        return DummyResult(stdout="1.2.3\n")

    calls = _fake_run(monkeypatch, responder)
    runner = _runner(tmp_path, _release_dir(tmp_path))

    assert runner.version() == "1.2.3"
    assert calls[-1][0][-1] == "ethpandaops/contributoor:1.2.3"


def test_overlays_follow_configuration(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Metrics, health and network overlays are added when configured."""
    calls = _fake_run(monkeypatch)
    release = _release_dir(
        tmp_path,
        "docker-compose.yml",
        "docker-compose.metrics.yml",
        "docker-compose.health.yml",
        "docker-compose.network.yml",
    )
    runner = _runner(
        tmp_path,
        release,
        metrics_address="127.0.0.1:9090",
        health_check_address=":9191",
        docker_network="eth",
        run_method=RunMethod.DOCKER,
    )

    runner.start()

    args, kwargs = calls[-1]
    compose_files = [args[index + 1] for index, value in enumerate(args) if value == "-f"]
    assert compose_files == [
        str(release / "docker-compose.yml"),
        str(release / "docker-compose.metrics.yml"),
        str(release / "docker-compose.health.yml"),
        str(release / "docker-compose.network.yml"),
    ]
    env = kwargs["env"]
    assert env["CONTRIBUTOOR_METRICS_ADDRESS"] == "127.0.0.1"
    assert env["CONTRIBUTOOR_METRICS_PORT"] == "9090"
    assert env["CONTRIBUTOOR_HEALTH_ADDRESS"] == "0.0.0.0"
    assert env["CONTRIBUTOOR_HEALTH_PORT"] == "9191"
    assert env["CONTRIBUTOOR_DOCKER_NETWORK"] == "eth"


def test_missing_overlay_is_reported(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """A configured overlay without its compose file fails."""
    _fake_run(monkeypatch)
    runner = _runner(tmp_path, _release_dir(tmp_path), metrics_address=":9090")

    with pytest.raises(ComposeFileNotFoundError, match="metrics"):
        runner.start()


def test_status_without_container(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """No container means ``not running``."""
    _fake_run(monkeypatch, lambda args: DummyResult(stdout=""))
    runner = _runner(tmp_path, _release_dir(tmp_path))

    assert runner.status() == "not running"


def test_status_reports_container_state(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """The container state comes from ``docker inspect``."""

    def responder(args: list[str]) -> DummyResult:
        if args[:2] == ["docker", "ps"]:
            return DummyResult(stdout="abc123\n")
        return DummyResult(stdout="restarting\n")

    _fake_run(monkeypatch, responder)
    runner = _runner(tmp_path, _release_dir(tmp_path))

    assert runner.status() == "restarting"


def test_logs_streams_to_terminal(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Logs are not captured and honour tail and follow."""
    calls = _fake_run(monkeypatch)
    release = _release_dir(tmp_path)
    runner = _runner(tmp_path, release)

    runner.logs(tail_lines=50, follow=True)

    args, kwargs = calls[0]
    assert args[-4:] == ["logs", "--tail", "50", "-f"]
    assert "capture_output" not in kwargs
    assert kwargs["cwd"] == str(release)
