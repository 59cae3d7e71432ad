"""Input validators shared by the config store and the CLI."""
from __future__ import annotations

import base64
import binascii
import logging
from urllib.parse import urlsplit

import httpx

log = logging.getLogger(__name__)

BEACON_HEALTH_PATH = "/eth/v1/node/health"
BEACON_HEALTH_TIMEOUT = 5.0
HEALTHY_STATUS_CODES = frozenset({200, 206})
ETHPANDAOPS_HOST_MARKER = "platform.ethpandaops.io"


class ValidationError(ValueError):
    """Raised when user supplied values fail validation."""


def _has_http_scheme(address: str) -> bool:
    return address.startswith("http://") or address.startswith("https://")


def is_local_address(address: str) -> bool:
    """Return ``True`` for localhost or 127.0.0.1 addresses."""
    host = address.removeprefix("http://").removeprefix("https://")
    host = host.split(":", 1)[0]
    return host.startswith("127.0.0.1") or host.startswith("localhost")


def split_beacon_addresses(addresses: str) -> list[str]:
    """Split a comma separated beacon node list, dropping blank entries."""
    return [entry.strip() for entry in addresses.split(",") if entry.strip()]


def validate_beacon_node_address(
    addresses: str,
    *,
    client: httpx.Client | None = None,
) -> None:
    """Check every beacon node in *addresses* is well formed and reachable.

    Addresses that do not point at the local host (for example Docker network
    hostnames) cannot be reached from the installer and only get the scheme
    check. Local addresses must answer the health endpoint with 200 (healthy)
    or 206 (syncing).
    """
    nodes = split_beacon_addresses(addresses)
    if not nodes:
        raise ValidationError("beacon node address is required")

    for address in nodes:
        if not _has_http_scheme(address):
            raise ValidationError("beacon node address must start with http:// or https://")

    owned_client = client is None
    http = client or httpx.Client(timeout=BEACON_HEALTH_TIMEOUT)
    try:
        for address in nodes:
            if not is_local_address(address):
                log.debug("Skipping health check for non-local beacon node %s", address)
                continue
            url = f"{address.rstrip('/')}{BEACON_HEALTH_PATH}"
            try:
                response = http.get(url)
            except httpx.HTTPError as exc:
                raise ValidationError(
                    f"unable to connect to beacon node {address}: {exc}"
                ) from exc
            if response.status_code not in HEALTHY_STATUS_CODES:
                raise ValidationError(
                    f"beacon node {address} returned status {response.status_code}"
                )
    finally:
        if owned_client:
            http.close()


def validate_output_server_address(address: str) -> None:
    """Validate a custom output server address."""
    if not address:
        raise ValidationError("server address is required for custom server")
    if not _has_http_scheme(address):
        raise ValidationError("server address must start with http:// or https://")


def is_ethpandaops_server(address: str) -> bool:
    """Return ``True`` when *address* points at an ethPandaOps hosted server."""
    return ETHPANDAOPS_HOST_MARKER in address


def validate_output_server_credentials(
    username: str,
    password: str,
    is_ethpandaops: bool,
) -> None:
    """Validate credentials for the selected output server type."""
    if is_ethpandaops:
        if not username or not password:
            raise ValidationError("username and password are required for ethPandaOps servers")
        return
    if bool(username) != bool(password):
        raise ValidationError("both username and password must be provided if using credentials")


def validate_metrics_address(address: str) -> None:
    """Validate a ``host:port`` metrics address. Empty disables metrics."""
    if not address:
        return
    candidate = address if ":" in address else f":{address}"
    if not _has_http_scheme(candidate):
        candidate = f"http://{candidate}"
    try:
        port = urlsplit(candidate).port
    except ValueError as exc:
        raise ValidationError(f"invalid metrics address: {exc}") from exc
    if port is None:
        raise ValidationError("metrics address must include a port")


def encode_credentials(username: str, password: str) -> str:
    """Return base64 ``username:password``, or ``""`` when both are empty."""
    if not username and not password:
        return ""
    raw = f"{username}:{password}".encode()
    return base64.b64encode(raw).decode("ascii")


def decode_credentials(encoded: str) -> tuple[str, str]:
    """Decode credentials produced by :func:`encode_credentials`."""
    if not encoded:
        return "", ""
    try:
        decoded = base64.b64decode(encoded, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise ValidationError(f"invalid credentials encoding: {exc}") from exc
    parts = decoded.split(":", 1)
    if len(parts) != 2:
        raise ValidationError("invalid credentials format")
    return parts[0], parts[1]


__all__ = [
    "ValidationError",
    "decode_credentials",
    "encode_credentials",
    "is_ethpandaops_server",
    "is_local_address",
    "split_beacon_addresses",
    "validate_beacon_node_address",
    "validate_metrics_address",
    "validate_output_server_address",
    "validate_output_server_credentials",
]
