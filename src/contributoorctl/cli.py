"""Typer command line for installing and operating the Contributoor sidecar."""
from __future__ import annotations

import logging
import textwrap
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .config import (
    CONFIG_FILENAME,
    DEFAULT_CONFIG_DIR,
    DEFAULT_OUTPUT_SERVER,
    LATEST_VERSION,
    ConfigError,
    ConfigParseError,
    ConfigService,
    ConfigValidationError,
    OutputServerConfig,
    RunMethod,
    SidecarConfig,
    load_config_service,
    new_default_config,
)
from .exit_codes import ExitCode
from .installer import InstallerConfig, load_installer_config
from .logging import OperationScope, StructuredLogger, configure_console_logging
from .providers import (
    BeaconService,
    BinaryNotInstalledError,
    ComposeFileNotFoundError,
    GitHubError,
    GitHubService,
    InvalidComposePathError,
    ServiceNotInstalledError,
    SidecarError,
    SidecarRunner,
    create_runner,
)
from .validate import (
    ValidationError,
    encode_credentials,
    is_ethpandaops_server,
    is_local_address,
    split_beacon_addresses,
    validate_beacon_node_address,
    validate_metrics_address,
    validate_output_server_address,
    validate_output_server_credentials,
)
from .version_check import VersionCheckError, check_version

console = Console()

LABEL_WIDTH = 20
REDACTED = "********"

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Contributoor sidecar installer.

        Configure the sidecar once with ``install``, then start, stop, update
        and inspect it regardless of whether it runs under Docker, systemd or
        as a plain binary.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect the sidecar configuration.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Objects shared by every command of one invocation."""

    config_dir: Path
    installer: InstallerConfig
    logger: StructuredLogger


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.find_root().obj
    if not isinstance(runtime, RuntimeContext):  # pragma: no cover - callback always runs
        raise RuntimeError("CLI runtime was not initialised.")
    return runtime


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    release: bool = typer.Option(
        False,
        "--release",
        "-r",
        help="Print the installer release and exit.",
    ),
    config_path: str = typer.Option(
        DEFAULT_CONFIG_DIR,
        "--config-path",
        "-c",
        help="Contributoor directory holding config.yaml.",
    ),
    debug: bool = typer.Option(
        False,
        "--debug",
        help="Show diagnostic output on the terminal.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    configure_console_logging(logging.DEBUG if debug else logging.WARNING)
    if release:
        console.print(__version__)
        raise typer.Exit(code=ExitCode.OK)

    config_dir = Path(config_path).expanduser()
    if ctx.invoked_subcommand == "install":
        try:
            config_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
        except OSError as exc:
            logging.getLogger(__name__).debug("Cannot create %s: %s", config_dir, exc)

    # Commands other than install never create the directory as a side effect.
    logger = StructuredLogger(config_dir / "logs", enabled=config_dir.is_dir())
    ctx.obj = RuntimeContext(
        config_dir=config_dir,
        installer=load_installer_config(),
        logger=logger,
    )

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{escape(message)}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _provider_error(op: OperationScope, message: str) -> NoReturn:
    _command_error(op, message, rc=ExitCode.PROVIDER)


def _config_error(op: OperationScope, exc: ConfigError) -> NoReturn:
    if isinstance(exc, (ConfigParseError, ConfigValidationError)):
        _command_error(op, str(exc), rc=ExitCode.VALIDATION)
    _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)


def _sidecar_error(op: OperationScope, exc: SidecarError, action: str) -> NoReturn:
    message = f"{action}: {exc}"
    if isinstance(
        exc,
        (
            ComposeFileNotFoundError,
            InvalidComposePathError,
            ServiceNotInstalledError,
            BinaryNotInstalledError,
        ),
    ):
        _command_error(op, message, rc=ExitCode.ENVIRONMENT)
    _provider_error(op, message)


def _load_config(runtime: RuntimeContext, op: OperationScope) -> ConfigService:
    try:
        service = load_config_service(runtime.config_dir)
    except ConfigError as exc:
        _config_error(op, exc)
    op.add_step("config.load", status="success", detail=str(service.get_config_path()))
    return service


def _create_runner(
    runtime: RuntimeContext,
    service: ConfigService,
    op: OperationScope,
) -> SidecarRunner:
    try:
        runner = create_runner(service, runtime.installer)
    except ConfigError as exc:
        _config_error(op, exc)
    except SidecarError as exc:
        _sidecar_error(op, exc, "error creating sidecar runner")
    op.add_step("runner.create", status="success", detail=type(runner).__name__)
    return runner


def _create_github(runtime: RuntimeContext, op: OperationScope) -> GitHubService:
    try:
        return GitHubService(runtime.installer.github_org, runtime.installer.github_repo)
    except GitHubError as exc:
        _command_error(op, f"error creating github service: {exc}", rc=ExitCode.VALIDATION)


def _is_running(runner: SidecarRunner, op: OperationScope) -> bool:
    try:
        running = runner.is_running()
    except SidecarError as exc:
        _sidecar_error(op, exc, "failed to check sidecar status")
    op.add_step("runner.is_running", status="success", detail=running)
    return running


def _row(label: str, value: object) -> None:
    console.print(f"{label:<{LABEL_WIDTH}}: {value}")


@app.command()
def install(
    ctx: typer.Context,
    network: str | None = typer.Option(None, "--network", help="Ethereum network name."),
    beacon_node: str | None = typer.Option(
        None,
        "--beacon-node",
        help="Beacon node address(es), comma separated.",
    ),
    run_method: str | None = typer.Option(
        None,
        "--run-method",
        help="How to run the sidecar: docker, systemd or binary.",
    ),
    version: str | None = typer.Option(
        None,
        "--version",
        help="Sidecar version to pin, or 'latest'.",
    ),
    output_server: str | None = typer.Option(
        None,
        "--output-server",
        help="Output server address.",
    ),
    username: str | None = typer.Option(None, "--username", help="Output server username."),
    password: str | None = typer.Option(None, "--password", help="Output server password."),
    metrics_address: str | None = typer.Option(
        None,
        "--metrics-address",
        help="Expose sidecar metrics on host:port.",
    ),
    docker_network: str | None = typer.Option(
        None,
        "--docker-network",
        help="Attach the container to this docker network.",
    ),
) -> None:
    """Write config.yaml, keeping existing values for options not given."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "install",
        args={
            "network": network,
            "beacon_node": beacon_node,
            "run_method": run_method,
            "version": version,
            "output_server": output_server,
            "username": username,
            "metrics_address": metrics_address,
            "docker_network": docker_network,
        },
        target={"kind": "config", "path": str(runtime.config_dir / CONFIG_FILENAME)},
    ) as op:
        config_path = runtime.config_dir / CONFIG_FILENAME
        if config_path.exists():
            service = _load_config(runtime, op)
            base = service.get()
        else:
            base = new_default_config(str(runtime.config_dir))
            service = ConfigService(config_path, base)

        try:
            method = RunMethod.parse(run_method) if run_method else base.run_method
        except ConfigValidationError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)

        beacon = beacon_node if beacon_node is not None else base.beacon_node_address
        existing_output = base.output_server or OutputServerConfig()
        address = output_server or existing_output.address or DEFAULT_OUTPUT_SERVER
        credentials = existing_output.credentials
        try:
            validate_beacon_node_address(beacon)
            validate_output_server_address(address)
            if username is not None or password is not None:
                validate_output_server_credentials(
                    username or "",
                    password or "",
                    is_ethpandaops_server(address),
                )
                credentials = encode_credentials(username or "", password or "")
            elif is_ethpandaops_server(address) and not credentials:
                validate_output_server_credentials("", "", True)
            if metrics_address is not None:
                validate_metrics_address(metrics_address)
        except ValidationError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)
        op.add_step("install.validate", status="success")

        target_version = version.removeprefix("v") if version else base.version
        if version and target_version != LATEST_VERSION:
            github = _create_github(runtime, op)
            try:
                exists = github.version_exists(target_version)
            except GitHubError as exc:
                _provider_error(op, f"failed to check version: {exc}")
            if not exists:
                _command_error(op, f"Version {target_version} not found.", rc=ExitCode.VALIDATION)

        def apply(cfg: SidecarConfig) -> None:
            cfg.run_method = method
            cfg.beacon_node_address = beacon
            cfg.version = target_version
            cfg.contributoor_directory = base.contributoor_directory or str(runtime.config_dir)
            cfg.output_server = OutputServerConfig(
                address=address,
                credentials=credentials,
                tls=address.startswith("https://"),
            )
            if network:
                cfg.network_name = network.strip().lower()
            if metrics_address is not None:
                cfg.metrics_address = metrics_address
            if docker_network is not None:
                cfg.docker_network = docker_network

        try:
            service.update(apply)
        except ConfigError as exc:
            _config_error(op, exc)
        op.add_step("config.write", status="success", detail=str(config_path))

        console.print(f"[green]Configuration written to {config_path}.[/green]")
        console.print("Run 'contributoor start' to start the sidecar.")
        op.success("Configuration installed.", changed=1, context={"path": str(config_path)})


@app.command()
def start(ctx: typer.Context) -> None:
    """Start the sidecar."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("start", target={"kind": "sidecar"}) as op:
        service = _load_config(runtime, op)
        runner = _create_runner(runtime, service, op)
        if _is_running(runner, op):
            _command_error(
                op,
                "Contributoor is already running. Use 'contributoor stop' first.",
                rc=ExitCode.VALIDATION,
            )
        try:
            runner.start()
        except SidecarError as exc:
            _sidecar_error(op, exc, "failed to start sidecar")
        op.add_step("runner.start", status="success")
        console.print("[green]Contributoor started successfully.[/green]")
        op.success("Sidecar started.", changed=1)


@app.command()
def stop(ctx: typer.Context) -> None:
    """Stop the sidecar."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("stop", target={"kind": "sidecar"}) as op:
        service = _load_config(runtime, op)
        runner = _create_runner(runtime, service, op)
        if not _is_running(runner, op):
            _command_error(
                op,
                "Contributoor is not running. Use 'contributoor start' to start it.",
                rc=ExitCode.VALIDATION,
            )
        try:
            runner.stop()
        except SidecarError as exc:
            _sidecar_error(op, exc, "failed to stop sidecar")
        op.add_step("runner.stop", status="success")
        console.print("[yellow]Contributoor stopped.[/yellow]")
        op.success("Sidecar stopped.", changed=1)


@app.command()
def restart(ctx: typer.Context) -> None:
    """Stop the sidecar if it is running, then start it."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("restart", target={"kind": "sidecar"}) as op:
        service = _load_config(runtime, op)
        runner = _create_runner(runtime, service, op)
        try:
            if _is_running(runner, op):
                runner.stop()
                op.add_step("runner.stop", status="success")
            runner.start()
        except SidecarError as exc:
            _sidecar_error(op, exc, "failed to restart sidecar")
        op.add_step("runner.start", status="success")
        console.print("[green]Contributoor restarted successfully.[/green]")
        op.success("Sidecar restarted.", changed=1)


@app.command()
def status(ctx: typer.Context) -> None:
    """Show the sidecar version, configuration and state."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("status", target={"kind": "sidecar"}) as op:
        service = _load_config(runtime, op)
        cfg = service.get()
        runner = _create_runner(runtime, service, op)

        current = cfg.version
        latest: str | None = None
        needs_update = False
        try:
            github = GitHubService(runtime.installer.github_org, runtime.installer.github_repo)
            result = check_version(runner, github, cfg.version)
        except (GitHubError, VersionCheckError) as exc:
            op.add_step("version.check", status="warning", detail=str(exc))
        else:
            current, latest, needs_update = result.current, result.latest, result.needs_update
            op.add_step("version.check", status="success", detail=result.latest)

        running = _is_running(runner, op)
        try:
            state = runner.status()
        except SidecarError as exc:
            _sidecar_error(op, exc, "failed to get status")

        if needs_update:
            console.print(
                f"[yellow]A new version of contributoor is available: {current} -> {latest}. "
                "Run 'contributoor update' to upgrade.[/yellow]"
            )
        console.print("[bold blue]Contributoor Status[/bold blue]")
        _row("Version", current)
        if latest:
            _row("Latest Version", latest)
        _row("Run Method", cfg.run_method.value if cfg.run_method else "")
        _row("Network", cfg.network_name)
        _row("Beacon Node", cfg.beacon_node_address)
        _row("Config Path", service.get_config_path())
        if cfg.output_server is not None:
            _row("Output Server", cfg.output_server.address)
        color = "green" if running else "red"
        _row("Status", f"[{color}]{state.title()}[/{color}]")

        _print_beacon_nodes(cfg.beacon_node_address)
        op.success(
            "Reported sidecar status.",
            context={"running": running, "state": state, "version": current, "latest": latest},
        )


def _print_beacon_nodes(addresses: str) -> None:
    nodes = split_beacon_addresses(addresses)
    for index, address in enumerate(nodes, start=1):
        if not is_local_address(address):
            continue
        with BeaconService(address) as beacon:
            info = beacon.get_beacon_info()

        console.print()
        if len(nodes) > 1:
            console.print(f"[bold blue]Beacon Node {index} Status[/bold blue] ({address})")
        else:
            console.print("[bold blue]Beacon Node Status[/bold blue]")

        if info.error:
            _row("Status", "[red]Unreachable[/red]")
            _row("Error", escape(info.error))
            continue
        if info.network:
            _row("Network", info.network)
        if info.health is not None:
            if info.health.is_syncing:
                _row("Health", "[yellow]Syncing[/yellow]")
            elif info.health.is_healthy:
                _row("Health", "[green]Healthy[/green]")
            else:
                _row("Health", "[red]Unhealthy[/red]")
        if info.sync is not None:
            if info.sync.el_offline:
                _row("Sync Status", "[red]Execution Layer Offline[/red]")
            elif info.sync.is_syncing:
                _row(
                    "Sync Status",
                    f"[yellow]Syncing (head: {info.sync.head_slot}, "
                    f"distance: {info.sync.sync_distance})[/yellow]",
                )
            else:
                _row("Sync Status", "[green]Synced[/green]")
        if info.identity is not None and info.identity.peer_id:
            _row("Peer ID", info.identity.peer_id)


def _set_version(version: str) -> Callable[[SidecarConfig], None]:
    def apply(cfg: SidecarConfig) -> None:
        cfg.version = version

    return apply


@app.command()
def update(
    ctx: typer.Context,
    version: str | None = typer.Option(
        None,
        "--version",
        "-v",
        help="Install this version instead of the latest release.",
    ),
) -> None:
    """Install a new sidecar version, rolling the config back on failure."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "update",
        args={"version": version},
        target={"kind": "sidecar"},
    ) as op:
        service = _load_config(runtime, op)
        github = _create_github(runtime, op)

        if version:
            target = version.removeprefix("v")
            try:
                exists = github.version_exists(target)
            except GitHubError as exc:
                _provider_error(op, f"failed to check version: {exc}")
            if not exists:
                _command_error(
                    op,
                    f"Version {target} not found. Use 'contributoor update' without "
                    "--version to get the latest version.",
                    rc=ExitCode.VALIDATION,
                )
        else:
            try:
                target = github.get_latest_version()
            except GitHubError as exc:
                _provider_error(op, f"failed to get latest version: {exc}")
        op.add_step("version.resolve", status="success", detail=target)

        previous = service.get().version
        if previous == target:
            console.print(f"Contributoor is already on version {target}.")
            op.success("Already up to date.", context={"version": target})
            return

        runner = _create_runner(runtime, service, op)
        was_running = _is_running(runner, op)
        run_method = service.get().run_method

        try:
            service.update(_set_version(target))
        except ConfigError as exc:
            _config_error(op, exc)
        op.add_step("config.version", status="success", detail=f"{previous} -> {target}")

        try:
            runner.update()
            op.add_step("runner.update", status="success")
            if was_running and run_method is RunMethod.DOCKER:
                runner.stop()
                runner.start()
                op.add_step("runner.restart", status="success")
            elif was_running and run_method is RunMethod.SYSTEMD:
                runner.start()
                op.add_step("runner.start", status="success")
        except SidecarError as exc:
            message = f"failed to update sidecar: {exc}"
            try:
                service.update(_set_version(previous))
            except ConfigError as rollback_exc:
                message = f"{message} (config rollback failed: {rollback_exc})"
            else:
                op.add_step("config.rollback", status="success", detail=previous)
            _provider_error(op, message)

        console.print(f"[green]Contributoor updated successfully to version {target}.[/green]")
        op.success(
            "Sidecar updated.",
            changed=1,
            context={"previous": previous, "version": target, "restarted": was_running},
        )


@app.command()
def logs(
    ctx: typer.Context,
    tail: int = typer.Option(
        100,
        "--tail",
        "-n",
        help="Number of lines to show from the end of the logs.",
    ),
    follow: bool = typer.Option(False, "--follow", "-f", help="Follow log output."),
) -> None:
    """Show the sidecar logs."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "logs",
        args={"tail": tail, "follow": follow},
        target={"kind": "sidecar"},
    ) as op:
        service = _load_config(runtime, op)
        runner = _create_runner(runtime, service, op)
        try:
            runner.logs(tail_lines=tail, follow=follow)
        except SidecarError as exc:
            _sidecar_error(op, exc, "failed to show logs")
        op.success("Displayed sidecar logs.")


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the configuration after defaults are applied."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        service = _load_config(runtime, op)
        data = service.get().to_dict()
        output = data.get("outputServer")
        if isinstance(output, dict) and output.get("credentials"):
            output["credentials"] = REDACTED

        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.")
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold", no_wrap=True)
        table.add_column("Value")
        for key, value in data.items():
            if isinstance(value, dict):
                for nested_key, nested_value in value.items():
                    table.add_row(f"{key}.{nested_key}", escape(str(nested_value)))
            else:
                table.add_row(key, escape(str(value)))
        console.print(table)
        op.success("Rendered configuration table.")


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
