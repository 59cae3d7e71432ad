"""Configuration store for the Contributoor sidecar.

The sidecar reads ``<contributoorDirectory>/config.yaml``. This module owns
every read and write of that file:

1. Loading overlays the keys of the user's file on the defaults of the
   current schema, so fields introduced by newer releases pick up sensible
   defaults while everything the user set, including an explicit
   ``tls: false``, is preserved.
2. When the stored ``version`` differs from the merged result a
   version-keyed migration hook runs and the upgraded file is written back.
3. Mutations go through :meth:`ConfigService.update`, which works on a copy,
   validates it, writes ``config.yaml.tmp`` and renames it over the real file
   before the in-memory value is swapped.

There is no cross-process locking: two CLI invocations racing against the
same directory can interleave their writes.
"""
from __future__ import annotations

import copy
import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass, fields, is_dataclass
from enum import Enum
from pathlib import Path

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load the contributoor configuration. Install with "
        "`pip install contributoorctl` or ensure PyYAML>=6.0 is available."
    ) from exc

from .validate import ValidationError, decode_credentials

CONFIG_FILENAME = "config.yaml"
DEFAULT_CONFIG_DIR = "~/.contributoor"
DEFAULT_OUTPUT_SERVER = "https://xatu.primary.production.platform.ethpandaops.io"
LATEST_VERSION = "latest"
CONFIG_DOCS_URL = "https://github.com/ethpandaops/contributoor#configuration"


class ConfigError(RuntimeError):
    """Raised when configuration handling fails."""


class ConfigDirectoryError(ConfigError):
    """Raised when the contributoor directory is missing or not a directory."""


class ConfigNotFoundError(ConfigError):
    """Raised when ``config.yaml`` does not exist yet (install has not run)."""


class ConfigParseError(ConfigError):
    """Raised when ``config.yaml`` cannot be read or does not match the schema."""


class ConfigValidationError(ConfigError):
    """Raised when a configuration value fails validation."""

    def __init__(self, field_name: str, message: str) -> None:
        super().__init__(message)
        self.field = field_name


class RunMethod(str, Enum):
    """Supported ways of running the sidecar."""

    DOCKER = "docker"
    SYSTEMD = "systemd"
    BINARY = "binary"

    @classmethod
    def parse(cls, value: object) -> RunMethod:
        """Parse *value*, accepting the legacy ``RUN_METHOD_*`` spellings."""
        if isinstance(value, RunMethod):
            return value
        text = str(value).strip().lower().removeprefix("run_method_")
        try:
            return cls(text)
        except ValueError as exc:
            allowed = ", ".join(method.value for method in cls)
            raise ConfigValidationError(
                "runMethod",
                f"invalid runMethod: {value!r}. Allowed: {allowed}.",
            ) from exc


def _normalise_network(value: object) -> str:
    return str(value).strip().lower().removeprefix("network_name_")


@dataclass
class OutputServerConfig:
    """Where the sidecar ships its events."""

    address: str = ""
    credentials: str = ""
    tls: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return the YAML representation, omitting empty strings.

        ``tls`` is always written so ``false`` is not replaced by the
        default on the next load.
        """
        payload: dict[str, object] = {}
        if self.address:
            payload["address"] = self.address
        if self.credentials:
            payload["credentials"] = self.credentials
        payload["tls"] = self.tls
        return payload

    @classmethod
    def from_dict(cls, raw: Mapping[str, object]) -> OutputServerConfig:
        """Build an output server config from its YAML mapping."""
        _reject_unknown(raw, _OUTPUT_SERVER_KEYS, "outputServer")
        return cls(
            address=_as_str(raw.get("address"), "outputServer.address"),
            credentials=_as_str(raw.get("credentials"), "outputServer.credentials"),
            tls=_as_bool(raw.get("tls"), "outputServer.tls"),
        )


@dataclass
class SidecarConfig:
    """The user's sidecar configuration, as persisted in ``config.yaml``."""

    log_level: str = ""
    version: str = ""
    contributoor_directory: str = ""
    run_method: RunMethod | None = None
    network_name: str = ""
    beacon_node_address: str = ""
    output_server: OutputServerConfig | None = None
    docker_network: str = ""
    metrics_address: str = ""
    health_check_address: str = ""

    def to_dict(self) -> dict[str, object]:
        """Return the camelCase YAML representation, omitting unset values.

        A missing output server is written as ``null`` so loading does not
        fill in the default server.
        """
        payload: dict[str, object] = {}
        for attr, key in _FIELD_KEYS.items():
            value = getattr(self, attr)
            if attr == "output_server":
                payload[key] = value.to_dict() if value is not None else None
            elif isinstance(value, RunMethod):
                payload[key] = value.value
            elif value:
                payload[key] = value
        return payload

    @classmethod
    def from_dict(cls, raw: Mapping[str, object]) -> SidecarConfig:
        """Build a config from the YAML mapping stored on disk."""
        _reject_unknown(raw, set(_KEY_FIELDS), "config")
        run_method_raw = raw.get("runMethod")
        output_raw = raw.get("outputServer")
        if output_raw is not None and not isinstance(output_raw, Mapping):
            raise ConfigParseError("outputServer must be a mapping.")
        network_raw = raw.get("networkName")
        return cls(
            log_level=_as_str(raw.get("logLevel"), "logLevel"),
            version=_as_str(raw.get("version"), "version"),
            contributoor_directory=_as_str(
                raw.get("contributoorDirectory"), "contributoorDirectory"
            ),
            run_method=RunMethod.parse(run_method_raw) if run_method_raw else None,
            network_name=_normalise_network(network_raw) if network_raw else "",
            beacon_node_address=_as_str(raw.get("beaconNodeAddress"), "beaconNodeAddress"),
            output_server=OutputServerConfig.from_dict(output_raw) if output_raw else None,
            docker_network=_as_str(raw.get("dockerNetwork"), "dockerNetwork"),
            metrics_address=_as_str(raw.get("metricsAddress"), "metricsAddress"),
            health_check_address=_as_str(raw.get("healthCheckAddress"), "healthCheckAddress"),
        )

    def metrics_host_port(self) -> tuple[str, str]:
        """Split ``metrics_address`` into ``(host, port)``."""
        return _split_host_port(self.metrics_address)

    def health_host_port(self) -> tuple[str, str]:
        """Split ``health_check_address`` into ``(host, port)``."""
        return _split_host_port(self.health_check_address)

    def expanded_directory(self) -> Path:
        """Return ``contributoor_directory`` with ``~`` expanded."""
        return Path(self.contributoor_directory).expanduser()


_FIELD_KEYS: dict[str, str] = {
    "log_level": "logLevel",
    "version": "version",
    "contributoor_directory": "contributoorDirectory",
    "run_method": "runMethod",
    "network_name": "networkName",
    "beacon_node_address": "beaconNodeAddress",
    "output_server": "outputServer",
    "docker_network": "dockerNetwork",
    "metrics_address": "metricsAddress",
    "health_check_address": "healthCheckAddress",
}
_KEY_FIELDS = {key: attr for attr, key in _FIELD_KEYS.items()}
_OUTPUT_SERVER_KEYS = {"address", "credentials", "tls"}

# Migrations keyed by the version recorded in the user's file. Each hook
# receives the merged config (to mutate) and the config as read from disk.
Migration = Callable[[SidecarConfig, SidecarConfig], None]
MIGRATIONS: dict[str, Migration] = {}


def new_default_config(contributoor_directory: str = "") -> SidecarConfig:
    """Return a config populated with the current schema defaults."""
    return SidecarConfig(
        log_level="info",
        version=LATEST_VERSION,
        contributoor_directory=contributoor_directory,
        run_method=RunMethod.DOCKER,
        network_name="mainnet",
        beacon_node_address="",
        output_server=OutputServerConfig(address=DEFAULT_OUTPUT_SERVER, tls=True),
    )


def merge_config(target: SidecarConfig, source: SidecarConfig | None) -> SidecarConfig:
    """Return *target* overlaid with every non-zero field of *source*.

    Nested configs merge recursively, so an old file that set only
    ``outputServer.address`` keeps the default ``outputServer.tls``.
    """
    merged = copy.deepcopy(target)
    if source is not None:
        _merge_into(merged, source)
    return merged


def _merge_into(target: object, source: object) -> None:
    for item in fields(source):  # type: ignore[arg-type]
        value = getattr(source, item.name)
        current = getattr(target, item.name)
        if is_dataclass(value) and is_dataclass(current):
            _merge_into(current, value)
        elif value:
            setattr(target, item.name, copy.deepcopy(value))


def merge_config_data(target: SidecarConfig, raw: Mapping[str, object]) -> SidecarConfig:
    """Return *target* overlaid with the mapping read from ``config.yaml``.

    Keys present in *raw* win unless they hold an empty string. Booleans are
    taken as written and an explicit ``null`` clears a nested section, so a
    saved ``tls: false`` or a removed output server survives a reload.
    """
    data = _overlay(target.to_dict(), raw)
    try:
        return SidecarConfig.from_dict(data)
    except ConfigError as exc:
        raise ConfigParseError(_invalid_config_message(exc)) from exc


def _overlay(base: Mapping[str, object], raw: Mapping[str, object]) -> dict[str, object]:
    merged = dict(base)
    for key, value in raw.items():
        current = merged.get(key)
        if isinstance(value, Mapping) and isinstance(current, Mapping):
            merged[key] = _overlay(current, value)
        elif value is None:
            if isinstance(current, Mapping):
                merged[key] = None
        elif value != "":
            merged[key] = value
    return merged


def migrate_config(target: SidecarConfig, source: SidecarConfig) -> None:
    """Apply the migration registered for ``source.version``, if any."""
    migration = MIGRATIONS.get(source.version)
    if migration is not None:
        migration(target, source)


def validate_config(config: SidecarConfig) -> None:
    """Raise :class:`ConfigValidationError` when *config* is not usable."""
    if not config.version:
        raise ConfigValidationError("version", "version is required")
    if not config.contributoor_directory:
        raise ConfigValidationError("contributoorDirectory", "contributoorDirectory is required")
    if not isinstance(config.run_method, RunMethod):
        raise ConfigValidationError("runMethod", f"invalid runMethod: {config.run_method!r}")
    if not config.network_name:
        raise ConfigValidationError("networkName", "networkName is required")
    if config.output_server is not None and config.output_server.credentials:
        try:
            decode_credentials(config.output_server.credentials)
        except ValidationError as exc:
            raise ConfigValidationError(
                "outputServer.credentials",
                f"invalid outputServer.credentials: {exc}",
            ) from exc


class ConfigService:
    """Owns the live sidecar config and its on-disk ``config.yaml``."""

    def __init__(self, config_path: Path, config: SidecarConfig) -> None:
        """Wrap an already loaded *config* stored at *config_path*."""
        self.config_path = config_path
        self._config = copy.deepcopy(config)

    def get(self) -> SidecarConfig:
        """Return a snapshot of the current config.

        The snapshot is a copy; edits to it are never persisted. Use
        :meth:`update` to change the configuration.
        """
        return copy.deepcopy(self._config)

    def get_config_path(self) -> Path:
        """Return the path of ``config.yaml``."""
        return self.config_path

    def update(self, updates: Callable[[SidecarConfig], None]) -> None:
        """Apply *updates* to a copy, validate it, then persist atomically.

        On any failure the file on disk and the in-memory config are left
        exactly as they were.
        """
        updated = copy.deepcopy(self._config)
        updates(updated)
        validate_config(updated)

        tmp_path = self.config_path.with_name(f"{self.config_path.name}.tmp")
        try:
            write_config(tmp_path, updated)
            os.replace(tmp_path, self.config_path)
        except OSError as exc:
            raise ConfigError(f"failed to save config: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

        self._config = updated

    def save(self) -> None:
        """Write the current in-memory config straight to ``config.yaml``."""
        try:
            write_config(self.config_path, self._config)
        except OSError as exc:
            raise ConfigError(f"error writing config file: {exc}") from exc


def load_config_service(config_dir: str | os.PathLike[str] = DEFAULT_CONFIG_DIR) -> ConfigService:
    """Load ``config.yaml`` from *config_dir* into a :class:`ConfigService`."""
    directory = Path(config_dir).expanduser()
    if not directory.exists():
        raise ConfigDirectoryError(f"directory [{directory}] does not exist")
    if not directory.is_dir():
        raise ConfigDirectoryError(f"[{directory}] is not a directory")

    config_path = directory / CONFIG_FILENAME
    if not config_path.exists():
        raise ConfigNotFoundError(
            "configuration error:\n\n"
            "Your config.yaml file does not exist. Please run 'contributoor install' first.\n\n"
            f"Debug details: config file not found at [{config_path}]"
        )

    raw = read_config_data(config_path)
    old_config = _parse_config(raw)
    new_config = merge_config_data(new_default_config(str(config_dir)), raw)

    if old_config.version != new_config.version:
        migrate_config(new_config, old_config)
        try:
            write_config(config_path, new_config)
        except OSError as exc:
            raise ConfigError(f"failed to save migrated config: {exc}") from exc

    return ConfigService(config_path, new_config)


def read_config(path: Path) -> SidecarConfig:
    """Parse *path* into a :class:`SidecarConfig` without applying defaults."""
    return _parse_config(read_config_data(path))


def read_config_data(path: Path) -> Mapping[str, object]:
    """Return the raw YAML mapping stored at *path*."""
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigParseError(f"failed to read config: {exc}") from exc
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:
        raise ConfigParseError(_invalid_config_message(exc)) from exc
    if not isinstance(data, Mapping):
        raise ConfigParseError(_invalid_config_message("top level must be a mapping"))
    return data


def _parse_config(data: Mapping[str, object]) -> SidecarConfig:
    try:
        return SidecarConfig.from_dict(data)
    except ConfigError as exc:
        raise ConfigParseError(_invalid_config_message(exc)) from exc


def write_config(path: Path, config: SidecarConfig) -> None:
    """Serialise *config* to *path* with ``0600`` permissions."""
    path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    text = yaml.safe_dump(config.to_dict(), sort_keys=False)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(text)
    os.chmod(path, 0o600)


def _invalid_config_message(detail: object) -> str:
    return (
        "configuration error:\n\n"
        "Your config.yaml file appears to be invalid. Please check:\n"
        "1. All fields are correctly spelled\n"
        "2. No unknown fields are present\n"
        "3. All required fields are set\n\n"
        "If the problem persists, try removing your config.yaml and re-running install.sh\n\n"
        f"For detailed configuration help, visit: {CONFIG_DOCS_URL}\n\n"
        f"Debug details: {detail}"
    )


def _reject_unknown(raw: Mapping[str, object], allowed: set[str], label: str) -> None:
    unknown = {str(key) for key in raw} - allowed
    if unknown:
        joined = ", ".join(sorted(unknown))
        raise ConfigParseError(f"Unknown {label} keys: {joined}.")


def _as_str(value: object, label: str) -> str:
    if value is None:
        return ""
    if isinstance(value, bool) or isinstance(value, (Mapping, list)):
        raise ConfigParseError(f"Expected {label} to be a string. Got {type(value).__name__}.")
    return str(value)


def _as_bool(value: object, label: str) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    raise ConfigParseError(f"Expected {label} to be a boolean. Got {value!r}.")


def _split_host_port(address: str) -> tuple[str, str]:
    if not address:
        return "", ""
    host, sep, port = address.rpartition(":")
    if not sep:
        return "0.0.0.0", address
    return host or "0.0.0.0", port


__all__ = [
    "CONFIG_FILENAME",
    "ConfigDirectoryError",
    "ConfigError",
    "ConfigNotFoundError",
    "ConfigParseError",
    "ConfigService",
    "ConfigValidationError",
    "DEFAULT_CONFIG_DIR",
    "LATEST_VERSION",
    "MIGRATIONS",
    "OutputServerConfig",
    "RunMethod",
    "SidecarConfig",
    "load_config_service",
    "merge_config",
    "merge_config_data",
    "migrate_config",
    "new_default_config",
    "read_config",
    "read_config_data",
    "validate_config",
    "write_config",
]
