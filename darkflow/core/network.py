"""
darkflow/core/network.py

Network-mode detection from the endpoint's textual identity.

    contains a mainnet-provider marker  ->  mainnet
    else contains the devnet marker     ->  devnet
    else                                ->  localhost

Matching is case-insensitive. This three-way classification governs every
real-vs-simulated routing branch in the pipeline.
"""

from typing import Optional, Sequence
from urllib.parse import urlparse

from darkflow.core.exceptions import ConfigurationError
from darkflow.core.models import NetworkMode


MAINNET_MARKERS: Sequence[str] = ("mainnet", "helius", "quicknode")
DEVNET_MARKER = "devnet"

_HTTP_SCHEMES = ("http", "https")
_WS_SCHEMES   = ("ws", "wss")


def detect_network_mode(endpoint: str) -> NetworkMode:
    lowered = endpoint.lower()
    if any(marker in lowered for marker in MAINNET_MARKERS):
        return NetworkMode.MAINNET
    if DEVNET_MARKER in lowered:
        return NetworkMode.DEVNET
    return NetworkMode.LOCALHOST


def resolve_network_mode(endpoint: str, override: Optional[str] = None) -> NetworkMode:
    """Return the pinned mode when configured, otherwise detect it from the endpoint."""
    if override:
        try:
            return NetworkMode(override.lower())
        except ValueError:
            raise ConfigurationError(
                "Unknown network mode",
                {"network_mode": override},
            ) from None
    return detect_network_mode(endpoint)


def validate_endpoint(endpoint: str, websocket: bool = False) -> str:
    """
    Raise ConfigurationError unless endpoint is an http(s) URL
    (or ws(s) when websocket=True) with a host.
    """
    schemes = _WS_SCHEMES if websocket else _HTTP_SCHEMES
    parsed = urlparse(endpoint or "")
    if parsed.scheme not in schemes or not parsed.netloc:
        raise ConfigurationError(
            "Malformed endpoint",
            {"endpoint": endpoint, "expected_schemes": "/".join(schemes)},
        )
    return endpoint


def websocket_endpoint(rpc_url: str) -> str:
    """
    Derive the pubsub endpoint from an RPC endpoint.

    http -> ws, https -> wss. A local validator serves pubsub on the RPC
    port + 1 (8899 -> 8900).
    """
    parsed = urlparse(validate_endpoint(rpc_url))
    scheme = "wss" if parsed.scheme == "https" else "ws"
    netloc = parsed.netloc
    if parsed.port is not None and parsed.port == 8899:
        netloc = f"{parsed.hostname}:8900"
    return parsed._replace(scheme=scheme, netloc=netloc).geturl()
