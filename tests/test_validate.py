"""Tests for input validators and credential encoding."""
from __future__ import annotations

import base64

import httpx
import pytest

from contributoorctl.validate import (
    ValidationError,
    decode_credentials,
    encode_credentials,
    is_ethpandaops_server,
    is_local_address,
    split_beacon_addresses,
    validate_beacon_node_address,
    validate_metrics_address,
    validate_output_server_address,
    validate_output_server_credentials,
)


def _client(status_code: int, seen: list[str] | None = None) -> httpx.Client:
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(str(request.url))
        return httpx.Response(status_code)

    return httpx.Client(transport=httpx.MockTransport(handler))


@pytest.mark.parametrize(
    ("username", "password"),
    [("user", "pass"), ("user", "pass:word"), ("", "secret"), ("user", "")],
)
def test_credentials_round_trip(username: str, password: str) -> None:
    """Encoded credentials decode back to the same pair."""
    assert decode_credentials(encode_credentials(username, password)) == (username, password)


def test_empty_credentials_encode_to_empty_string() -> None:
    """Blank credentials encode to ``""`` and decode back without error."""
    assert encode_credentials("", "") == ""
    assert decode_credentials("") == ("", "")


def test_encode_credentials_is_plain_base64() -> None:
    """The encoding is base64 of ``user:pass``."""
    assert encode_credentials("user", "pass") == base64.b64encode(b"user:pass").decode()


def test_decode_credentials_requires_separator() -> None:
    """Decoded text without a colon is rejected."""
    encoded = base64.b64encode(b"nocolon").decode()

    with pytest.raises(ValidationError, match="invalid credentials format"):
        decode_credentials(encoded)


def test_decode_credentials_rejects_bad_base64() -> None:
    """Non-base64 input is a validation error."""
    with pytest.raises(ValidationError):
        decode_credentials("%%%")


def test_split_beacon_addresses_drops_blanks() -> None:
    """Whitespace and empty entries are ignored."""
    assert split_beacon_addresses(" http://a:1 , ,http://b:2") == ["http://a:1", "http://b:2"]


@pytest.mark.parametrize(
    ("address", "expected"),
    [
        ("http://localhost:5052", True),
        ("http://127.0.0.1:5052", True),
        ("https://beacon:5052", False),
        ("http://10.0.0.5:5052", False),
    ],
)
def test_is_local_address(address: str, expected: bool) -> None:
    """Only localhost and 127.0.0.1 count as local."""
    assert is_local_address(address) is expected


def test_beacon_address_requires_scheme() -> None:
    """Every address needs an http or https scheme."""
    with pytest.raises(ValidationError, match="http://"):
        validate_beacon_node_address("http://beacon:5052,beacon2:5052", client=_client(200))


def test_beacon_address_required() -> None:
    """An empty list is rejected."""
    with pytest.raises(ValidationError, match="required"):
        validate_beacon_node_address(" , ")


@pytest.mark.parametrize("status_code", [200, 206])
def test_local_beacon_health_check_accepts_healthy_and_syncing(status_code: int) -> None:
    """Local nodes answering 200 or 206 pass."""
    seen: list[str] = []

    validate_beacon_node_address(
        "http://localhost:5052/",
        client=_client(status_code, seen),
    )

    assert seen == ["http://localhost:5052/eth/v1/node/health"]


def test_local_beacon_health_check_rejects_other_status() -> None:
    """Any other status code fails validation."""
    with pytest.raises(ValidationError, match="503"):
        validate_beacon_node_address("http://127.0.0.1:5052", client=_client(503))


def test_local_beacon_unreachable() -> None:
    """Transport failures become validation errors."""

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = httpx.Client(transport=httpx.MockTransport(handler))

    with pytest.raises(ValidationError, match="unable to connect"):
        validate_beacon_node_address("http://127.0.0.1:5052", client=client)


def test_remote_beacon_nodes_are_not_contacted() -> None:
    """Docker network hostnames only get the scheme check."""
    seen: list[str] = []

    validate_beacon_node_address("http://beacon:5052", client=_client(500, seen))

    assert seen == []


def test_output_server_address_rules() -> None:
    """Custom server addresses must be present and use http(s)."""
    validate_output_server_address("https://xatu.example")
    with pytest.raises(ValidationError, match="required"):
        validate_output_server_address("")
    with pytest.raises(ValidationError, match="http://"):
        validate_output_server_address("xatu.example:443")


def test_is_ethpandaops_server() -> None:
    """Hosted servers are recognised by their platform domain."""
    assert is_ethpandaops_server("https://xatu.primary.production.platform.ethpandaops.io")
    assert not is_ethpandaops_server("https://xatu.example")


def test_ethpandaops_servers_require_credentials() -> None:
    """Hosted servers require both username and password."""
    validate_output_server_credentials("user", "pass", True)
    with pytest.raises(ValidationError):
        validate_output_server_credentials("user", "", True)


def test_custom_servers_require_both_or_neither() -> None:
    """Custom servers accept no credentials or a complete pair."""
    validate_output_server_credentials("", "", False)
    validate_output_server_credentials("user", "pass", False)
    with pytest.raises(ValidationError, match="both"):
        validate_output_server_credentials("", "pass", False)


@pytest.mark.parametrize("address", ["", ":9090", "0.0.0.0:9090", "localhost:9100"])
def test_metrics_address_accepts_host_port(address: str) -> None:
    """Empty or host:port metrics addresses are valid."""
    validate_metrics_address(address)


@pytest.mark.parametrize("address", ["localhost:", "localhost:port"])
def test_metrics_address_requires_port(address: str) -> None:
    """A missing or non-numeric port is rejected."""
    with pytest.raises(ValidationError):
        validate_metrics_address(address)
