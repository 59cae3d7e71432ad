"""Read-only diagnostics against a beacon node's REST API."""
from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import httpx

log = logging.getLogger(__name__)

BEACON_TIMEOUT = 5.0
HEALTH_PATH = "/eth/v1/node/health"
SYNCING_PATH = "/eth/v1/node/syncing"
IDENTITY_PATH = "/eth/v1/node/identity"
SPEC_PATH = "/eth/v1/config/spec"


class BeaconError(RuntimeError):
    """Raised when a beacon node request fails."""


@dataclass(frozen=True, slots=True)
class HealthStatus:
    """Outcome of ``/eth/v1/node/health``."""

    status_code: int
    is_healthy: bool
    is_syncing: bool


@dataclass(frozen=True, slots=True)
class SyncStatus:
    """Payload of ``/eth/v1/node/syncing``."""

    head_slot: str = ""
    sync_distance: str = ""
    is_syncing: bool = False
    is_optimistic: bool = False
    el_offline: bool = False


@dataclass(frozen=True, slots=True)
class NodeIdentity:
    """Payload of ``/eth/v1/node/identity``."""

    peer_id: str = ""
    enr: str = ""
    p2p_addresses: list[str] = field(default_factory=list)
    discovery_addresses: list[str] = field(default_factory=list)
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class BeaconInfo:
    """Best-effort summary of a beacon node; ``error`` is set instead of raising."""

    health: HealthStatus | None = None
    sync: SyncStatus | None = None
    identity: NodeIdentity | None = None
    network: str = ""
    error: str | None = None


class BeaconService:
    """Query one beacon node."""

    def __init__(
        self,
        address: str,
        *,
        client: httpx.Client | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Use *client* when given, otherwise a 5 second client over *transport*."""
        self.address = address.rstrip("/")
        self._client = client or httpx.Client(transport=transport, timeout=BEACON_TIMEOUT)
        self._owns_client = client is None

    def close(self) -> None:
        """Close the HTTP client if this service created it."""
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> BeaconService:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def get_health(self) -> HealthStatus:
        """Return the health endpoint status (200 healthy, 206 syncing)."""
        try:
            response = self._client.get(f"{self.address}{HEALTH_PATH}")
        except httpx.HTTPError as exc:
            raise BeaconError(f"failed to get health: {exc}") from exc
        return HealthStatus(
            status_code=response.status_code,
            is_healthy=response.status_code == 200,
            is_syncing=response.status_code == 206,
        )

    def get_sync_status(self) -> SyncStatus:
        data = self._get_data(SYNCING_PATH, "sync status")
        return SyncStatus(
            head_slot=str(data.get("head_slot", "")),
            sync_distance=str(data.get("sync_distance", "")),
            is_syncing=bool(data.get("is_syncing", False)),
            is_optimistic=bool(data.get("is_optimistic", False)),
            el_offline=bool(data.get("el_offline", False)),
        )

    def get_node_identity(self) -> NodeIdentity:
        data = self._get_data(IDENTITY_PATH, "node identity")
        metadata = data.get("metadata")
        return NodeIdentity(
            peer_id=str(data.get("peer_id", "")),
            enr=str(data.get("enr", "")),
            p2p_addresses=[str(item) for item in data.get("p2p_addresses") or []],
            discovery_addresses=[str(item) for item in data.get("discovery_addresses") or []],
            metadata=(
                {str(key): str(value) for key, value in metadata.items()}
                if isinstance(metadata, Mapping)
                else {}
            ),
        )

    def get_network(self) -> str:
        """Return ``CONFIG_NAME`` from the node's chain spec."""
        data = self._get_data(SPEC_PATH, "spec")
        return str(data.get("CONFIG_NAME", ""))

    def get_beacon_info(self) -> BeaconInfo:
        """Collect health, sync, identity and network without raising.

        An unreachable node sets ``error``; the optional lookups are skipped
        quietly when they fail.
        """
        info = BeaconInfo()
        if not self.address:
            info.error = "no beacon node address configured"
            return info

        try:
            info.health = self.get_health()
        except BeaconError as exc:
            info.error = f"beacon node unreachable: {exc}"
            return info

        try:
            info.sync = self.get_sync_status()
        except BeaconError as exc:
            log.debug("Failed to get sync status: %s", exc)
        try:
            info.identity = self.get_node_identity()
        except BeaconError as exc:
            log.debug("Failed to get node identity: %s", exc)
        try:
            info.network = self.get_network()
        except BeaconError as exc:
            log.debug("Failed to get network: %s", exc)
        return info

    def _get_data(self, path: str, label: str) -> Mapping[str, Any]:
        try:
            response = self._client.get(
                f"{self.address}{path}",
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise BeaconError(f"failed to get {label}: request failed: {exc}") from exc
        if response.status_code != 200:
            raise BeaconError(
                f"failed to get {label}: unexpected status code: {response.status_code}"
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise BeaconError(f"failed to get {label}: failed to decode response: {exc}") from exc
        data = payload.get("data") if isinstance(payload, Mapping) else None
        if not isinstance(data, Mapping):
            raise BeaconError(f"failed to get {label}: response has no data object")
        return data


__all__ = [
    "BeaconError",
    "BeaconInfo",
    "BeaconService",
    "HealthStatus",
    "NodeIdentity",
    "SyncStatus",
]
