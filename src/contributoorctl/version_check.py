"""Compare the installed sidecar version with the newest published release."""
from __future__ import annotations

import logging
from dataclasses import dataclass

from .config import LATEST_VERSION
from .providers.base import SidecarError, SidecarRunner
from .providers.github import GitHubError, GitHubService

log = logging.getLogger(__name__)


class VersionCheckError(RuntimeError):
    """Raised when either side of the version comparison cannot be resolved."""


@dataclass(frozen=True, slots=True)
class VersionCheckResult:
    """Current and latest versions.

    ``needs_update`` is plain string inequality: a pin that differs from
    the published release in either direction is reported.
    """

    current: str
    latest: str
    needs_update: bool


@dataclass(frozen=True, slots=True)
class LatestVersionLookup:
    """Outcome of a lookup whose failure should not abort the caller."""

    version: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.version is not None


def check_version(
    runner: SidecarRunner,
    github: GitHubService,
    config_version: str,
) -> VersionCheckResult:
    """Resolve the current and latest versions.

    For ``latest`` the runner reports what is actually installed; a pinned
    version is compared as configured and the runner is not consulted.
    """
    try:
        latest = github.get_latest_version()
    except GitHubError as exc:
        raise VersionCheckError(f"failed to get latest version: {exc}") from exc

    if config_version == LATEST_VERSION:
        try:
            current = runner.version()
        except SidecarError as exc:
            raise VersionCheckError(f"failed to get running version: {exc}") from exc
    else:
        current = config_version

    return VersionCheckResult(current=current, latest=latest, needs_update=current != latest)


def lookup_latest_version(github: GitHubService) -> LatestVersionLookup:
    """Fetch the latest release, recording the failure instead of raising."""
    try:
        return LatestVersionLookup(version=github.get_latest_version())
    except GitHubError as exc:
        log.debug("Latest version lookup failed: %s", exc)
        return LatestVersionLookup(error=str(exc))


__all__ = [
    "LatestVersionLookup",
    "VersionCheckError",
    "VersionCheckResult",
    "check_version",
    "lookup_latest_version",
]
