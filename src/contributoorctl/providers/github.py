"""GitHub release lookups for the sidecar repository."""
from __future__ import annotations

from urllib.parse import urlsplit

import httpx

GITHUB_API_HOST = "api.github.com"
GITHUB_TIMEOUT = 10.0
_FORBIDDEN_CHARS = frozenset("/?#[]@!$&'()*+,;=")


class GitHubError(RuntimeError):
    """Raised when release information cannot be fetched or parsed."""


def validate_github_url(owner: str, repo: str) -> str:
    """Return the releases endpoint for ``owner/repo`` after checking both names."""
    if not owner or not repo:
        raise GitHubError("owner and repo cannot be empty")
    if _FORBIDDEN_CHARS.intersection(owner + repo):
        raise GitHubError("invalid owner or repo name")
    url = f"https://{GITHUB_API_HOST}/repos/{owner}/{repo}/releases"
    host = urlsplit(url).hostname
    if host != GITHUB_API_HOST:
        raise GitHubError(f"invalid GitHub API host: {host}")
    return url


def parse_release_version(tag: str) -> tuple[int, int, int] | None:
    """Return ``(major, minor, patch)`` for ``[v]X.Y.Z`` tags, else ``None``."""
    parts = tag.removeprefix("v").split(".")
    if len(parts) != 3 or not all(part.isascii() and part.isdigit() for part in parts):
        return None
    major, minor, patch = (int(part) for part in parts)
    return major, minor, patch


def select_latest_version(tags: list[str]) -> str:
    """Return the highest ``X.Y.Z`` tag without its ``v`` prefix.

    Tags that are not three numeric components are skipped.
    """
    latest_tag = ""
    latest_parts: tuple[int, int, int] | None = None
    for tag in tags:
        parts = parse_release_version(tag)
        if parts is None:
            continue
        if latest_parts is None or parts > latest_parts:
            latest_tag, latest_parts = tag, parts
    if latest_parts is None:
        raise GitHubError("no valid version tags found")
    return latest_tag.removeprefix("v")


class GitHubService:
    """Read the release list of a GitHub repository."""

    def __init__(
        self,
        owner: str,
        repo: str,
        *,
        client: httpx.Client | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Validate ``owner/repo``; requests go through *client* when given."""
        self.releases_url = validate_github_url(owner, repo)
        self._client = client
        self._transport = transport

    def list_release_tags(self) -> list[str]:
        """Return the ``tag_name`` of every published release."""
        try:
            if self._client is not None:
                response = self._client.get(self.releases_url)
            else:
                with httpx.Client(transport=self._transport, timeout=GITHUB_TIMEOUT) as client:
                    response = client.get(self.releases_url)
        except httpx.HTTPError as exc:
            raise GitHubError(f"failed to fetch releases: {exc}") from exc

        if response.status_code != 200:
            raise GitHubError(f"GitHub API returned status {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise GitHubError(f"failed to parse releases response: {exc}") from exc
        if not isinstance(payload, list):
            raise GitHubError("failed to parse releases response: expected a list")

        tags: list[str] = []
        for release in payload:
            if isinstance(release, dict):
                tag = release.get("tag_name")
                if isinstance(tag, str) and tag:
                    tags.append(tag)
        return tags

    def get_latest_version(self) -> str:
        """Return the newest ``X.Y.Z`` release, without the ``v`` prefix."""
        return select_latest_version(self.list_release_tags())

    def version_exists(self, version: str) -> bool:
        """Return ``True`` when a release is tagged exactly ``v<version>``."""
        wanted = version if version.startswith("v") else f"v{version}"
        return wanted in self.list_release_tags()


__all__ = [
    "GITHUB_API_HOST",
    "GitHubError",
    "GitHubService",
    "parse_release_version",
    "select_latest_version",
    "validate_github_url",
]
