"""
tests/test_models.py

Records, event payload parsing, token registry and network detection.
"""

from decimal import Decimal

import pytest
from solders.pubkey import Pubkey

from darkflow.core.exceptions import ConfigurationError, ValidationError
from darkflow.core.models import (
    WRAPPED_SOL_MINT,
    EscrowRecord,
    EscrowRequest,
    NetworkMode,
    OrderSettledEvent,
    TokenInfo,
    TokenRegistry,
)
from darkflow.core.network import (
    detect_network_mode,
    resolve_network_mode,
    validate_endpoint,
    websocket_endpoint,
)
from darkflow.core.time import NonceSource


ADDRESS = Pubkey.from_string("5XQ8wk4T8haHVRBFF1XBnNUUifyXiv4WUTvnGC2P4oVo")

WIRE = {"nonce": 7, "amount_in": 1000, "min_out": 990, "token_in": 1, "token_out": 2}


# ─────────────────────────────────────────────────────────────
# Event payloads
# ─────────────────────────────────────────────────────────────

class TestOrderSettledEvent:

    def test_from_wire_keys(self):
        event = OrderSettledEvent.from_payload(WIRE)
        assert event == OrderSettledEvent(7, 1000, 990, 1, 2)
        assert event.to_payload() == WIRE

    def test_accepts_digit_strings(self):
        payload = {k: str(v) for k, v in WIRE.items()}
        assert OrderSettledEvent.from_payload(payload).nonce == 7

    def test_accepts_event_instance(self):
        event = OrderSettledEvent(7, 1000, 990, 1, 2)
        assert OrderSettledEvent.from_payload(event) is event

    @pytest.mark.parametrize("field", sorted(WIRE))
    def test_missing_field(self, field):
        payload = dict(WIRE)
        del payload[field]
        with pytest.raises(ValidationError):
            OrderSettledEvent.from_payload(payload)

    @pytest.mark.parametrize("bad", [-1, 2 ** 64, "abc", 1.5, None, True])
    def test_bad_values(self, bad):
        with pytest.raises(ValidationError):
            OrderSettledEvent.from_payload({**WIRE, "nonce": bad})

    @pytest.mark.parametrize("payload", [None, "nonce=7", [7, 1000], 42])
    def test_non_mapping(self, payload):
        with pytest.raises(ValidationError):
            OrderSettledEvent.from_payload(payload)


# ─────────────────────────────────────────────────────────────
# Records
# ─────────────────────────────────────────────────────────────

class TestRecords:

    def test_escrow_requires_positive_amount(self):
        with pytest.raises(ValidationError):
            EscrowRecord(ADDRESS, ADDRESS, 1, 0, 0, 1, 2)

    def test_escrow_defaults(self):
        record = EscrowRecord(ADDRESS, ADDRESS, 1, 10, 0, 1, 2)
        assert record.is_funded is False
        assert record.is_active is True
        assert record.to_dict()["address"] == str(ADDRESS)

    def test_request_rejects_same_token(self):
        usdc = TokenRegistry.default().by_symbol("USDC")
        with pytest.raises(ValidationError):
            EscrowRequest(nonce=1, amount_in=10, min_amount_out=0, token_in=usdc, token_out=usdc)

    def test_request_rejects_zero_amount(self):
        registry = TokenRegistry.default()
        with pytest.raises(ValidationError):
            EscrowRequest(1, 0, 0, registry.by_symbol("USDC"), registry.by_symbol("SOL"))


# ─────────────────────────────────────────────────────────────
# Tokens
# ─────────────────────────────────────────────────────────────

class TestTokens:

    def test_default_registry(self):
        registry = TokenRegistry.default()
        assert [t.symbol for t in registry] == ["USDC", "SOL", "USDT"]
        assert registry.by_id(2).mint == WRAPPED_SOL_MINT
        assert registry.by_mint(WRAPPED_SOL_MINT).symbol == "SOL"
        assert "USDT" in registry
        assert len(registry) == 3

    def test_unknown_lookups(self):
        registry = TokenRegistry.default()
        with pytest.raises(ValidationError):
            registry.by_symbol("BONK")
        with pytest.raises(ValidationError):
            registry.by_id(99)

    def test_duplicate_rejected(self):
        usdc = TokenRegistry.default().by_symbol("USDC")
        with pytest.raises(ValidationError):
            TokenRegistry([usdc, usdc])

    def test_base_unit_conversion_floors(self):
        usdc = TokenRegistry.default().by_symbol("USDC")
        assert usdc.to_base_units(Decimal("1000")) == 1_000_000_000
        assert usdc.to_base_units(Decimal("0.0000019")) == 1
        assert usdc.from_base_units(2_500_000) == Decimal("2.5")

    def test_display_places(self):
        registry = TokenRegistry.default()
        assert registry.by_symbol("SOL").display_places == 4
        assert registry.by_symbol("USDC").display_places == 2

    def test_from_dict(self):
        token = TokenInfo.from_dict(
            {"symbol": "USDC", "token_id": "1", "mint": str(ADDRESS), "decimals": 6}
        )
        assert token.token_id == 1
        with pytest.raises(ValidationError):
            TokenInfo.from_dict({"symbol": "X"})


# ─────────────────────────────────────────────────────────────
# Network mode
# ─────────────────────────────────────────────────────────────

class TestNetworkMode:

    @pytest.mark.parametrize("endpoint, mode", [
        ("https://api.mainnet-beta.solana.com", NetworkMode.MAINNET),
        ("https://mainnet.helius-rpc.com/?api-key=x", NetworkMode.MAINNET),
        ("https://example.solana-mainnet.quiknode.pro", NetworkMode.MAINNET),
        ("https://my.quicknode.example", NetworkMode.MAINNET),
        ("https://api.devnet.solana.com", NetworkMode.DEVNET),
        ("https://API.DEVNET.SOLANA.COM", NetworkMode.DEVNET),
        ("http://127.0.0.1:8899", NetworkMode.LOCALHOST),
        ("http://localhost:8899", NetworkMode.LOCALHOST),
    ])
    def test_detection(self, endpoint, mode):
        assert detect_network_mode(endpoint) is mode

    def test_mainnet_marker_wins_over_devnet(self):
        assert detect_network_mode("https://devnet.helius-rpc.com") is NetworkMode.MAINNET

    def test_override_pins_mode(self):
        assert resolve_network_mode("https://devnet.helius-rpc.com", "devnet") is NetworkMode.DEVNET
        assert resolve_network_mode("https://api.devnet.solana.com", None) is NetworkMode.DEVNET

    def test_unknown_override(self):
        with pytest.raises(ConfigurationError):
            resolve_network_mode("https://api.devnet.solana.com", "testnet")

    @pytest.mark.parametrize("endpoint", ["", "api.devnet.solana.com", "ftp://x", "http://"])
    def test_malformed_endpoint(self, endpoint):
        with pytest.raises(ConfigurationError):
            validate_endpoint(endpoint)

    def test_websocket_endpoint(self):
        assert websocket_endpoint("https://api.devnet.solana.com") == "wss://api.devnet.solana.com"
        assert websocket_endpoint("http://127.0.0.1:8899") == "ws://127.0.0.1:8900"


class TestNonces:

    def test_strictly_increasing(self):
        source = NonceSource()
        nonces = [source.next() for _ in range(200)]
        assert nonces == sorted(set(nonces))
