"""Installer-level settings that never reach the sidecar's config file.

These values identify where releases are published and which image, unit
or launchd label the runners operate on. Defaults can be overridden through
environment variables prefixed with ``CONTRIBUTOOR_INSTALLER_`` so test and
staging builds can point at forks without a code change::

    export CONTRIBUTOOR_INSTALLER_GITHUB_ORG=my-fork
    export CONTRIBUTOOR_INSTALLER_DOCKER_IMAGE=registry.local/contributoor
"""
from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, fields

ENV_PREFIX = "CONTRIBUTOOR_INSTALLER_"


@dataclass(frozen=True)
class InstallerConfig:
    """Resolved installer settings."""

    docker_image: str = "ethpandaops/contributoor"
    github_org: str = "ethpandaops"
    github_repo: str = "contributoor"
    service_name: str = "contributoor.service"
    launchd_label: str = "io.ethpandaops.contributoor"
    container_name: str = "contributoor"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {field.name: getattr(self, field.name) for field in fields(self)}


def load_installer_config(env: Mapping[str, str] | None = None) -> InstallerConfig:
    """Build an :class:`InstallerConfig` from defaults and the environment."""
    resolved_env = os.environ if env is None else env
    overrides: dict[str, str] = {}
    for field in fields(InstallerConfig):
        value = resolved_env.get(f"{ENV_PREFIX}{field.name.upper()}")
        if value is not None and value.strip():
            overrides[field.name] = value.strip()
    return InstallerConfig(**overrides)


__all__ = ["ENV_PREFIX", "InstallerConfig", "load_installer_config"]
