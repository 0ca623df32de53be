"""
darkflow/core/models.py

Darkflow Data Model

Record kinds (stored by the ledger, keyed by derived addresses):

    EscrowRecord        one per swap attempt, identified by (owner, nonce)
    SettlementRecord    one per nonce; active: false -> true -> {false | deleted}
    TokenMappingRecord  token_id -> mint, registered once per id

Event:

    OrderSettledEvent   emitted when a settlement is activated; delivered
                        at-least-once, so consumers must tolerate duplicates

All amounts are integers in the smallest unit of their asset. UI amounts are
Decimal and only appear at the edges (TokenInfo conversions, session results).
"""

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_DOWN
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from solders.pubkey import Pubkey

from darkflow.core.exceptions import ValidationError


_U64_MAX = 2 ** 64 - 1

WRAPPED_SOL_MINT = Pubkey.from_string("So11111111111111111111111111111111111111112")
SYSTEM_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")


# ─────────────────────────────────────────────────────────────
# Network Mode
# ─────────────────────────────────────────────────────────────

class NetworkMode(str, Enum):
    """Classification of the ledger endpoint. Governs real vs simulated routing."""
    MAINNET   = "mainnet"
    DEVNET    = "devnet"
    LOCALHOST = "localhost"

    @property
    def is_mainnet(self) -> bool:
        return self is NetworkMode.MAINNET


# ─────────────────────────────────────────────────────────────
# Tokens
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class TokenInfo:
    """A tradeable asset as known to the token mapping table."""
    symbol:   str
    token_id: int
    mint:     Pubkey
    decimals: int

    def to_base_units(self, amount: Decimal) -> int:
        """Convert a UI amount to base units, flooring any excess precision."""
        scaled = Decimal(amount) * (Decimal(10) ** self.decimals)
        return int(scaled.to_integral_value(rounding=ROUND_DOWN))

    def from_base_units(self, amount: int) -> Decimal:
        return Decimal(amount) / (Decimal(10) ** self.decimals)

    @property
    def display_places(self) -> int:
        """Display precision: 4 places for 9-decimal assets, 2 otherwise."""
        return 4 if self.decimals == 9 else 2

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol":   self.symbol,
            "token_id": self.token_id,
            "mint":     str(self.mint),
            "decimals": self.decimals,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TokenInfo":
        try:
            return cls(
                symbol=   str(data["symbol"]),
                token_id= int(data["token_id"]),
                mint=     Pubkey.from_string(str(data["mint"])),
                decimals= int(data["decimals"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid token entry: {exc}", {"entry": dict(data)}) from exc


class TokenRegistry:
    """
    Lookup table over the tradeable tokens.

    Immutable after construction; safe to share read-only across threads.
    """

    def __init__(self, tokens: Iterable[TokenInfo]) -> None:
        self._by_symbol: Dict[str, TokenInfo] = {}
        self._by_id:     Dict[int, TokenInfo] = {}
        self._by_mint:   Dict[Pubkey, TokenInfo] = {}
        for token in tokens:
            if token.symbol in self._by_symbol or token.token_id in self._by_id:
                raise ValidationError(
                    "Duplicate token in registry",
                    {"symbol": token.symbol, "token_id": token.token_id},
                )
            self._by_symbol[token.symbol] = token
            self._by_id[token.token_id]   = token
            self._by_mint[token.mint]     = token

    @classmethod
    def default(cls) -> "TokenRegistry":
        return cls([
            TokenInfo("USDC", 1, Pubkey.from_string("4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU"), 6),
            TokenInfo("SOL",  2, WRAPPED_SOL_MINT, 9),
            TokenInfo("USDT", 3, Pubkey.from_string("EJwZgeZrdC8TXTQbQBoL6bfuAnFUUy1PVCMB4DYPzVaS"), 6),
        ])

    def by_symbol(self, symbol: str) -> TokenInfo:
        try:
            return self._by_symbol[symbol]
        except KeyError:
            raise ValidationError("Unknown token symbol", {"symbol": symbol}) from None

    def by_id(self, token_id: int) -> TokenInfo:
        try:
            return self._by_id[token_id]
        except KeyError:
            raise ValidationError("Unknown token id", {"token_id": token_id}) from None

    def by_mint(self, mint: Pubkey) -> TokenInfo:
        try:
            return self._by_mint[mint]
        except KeyError:
            raise ValidationError("Unknown token mint", {"mint": str(mint)}) from None

    def __iter__(self):
        return iter(self._by_symbol.values())

    def __len__(self) -> int:
        return len(self._by_symbol)

    def __contains__(self, symbol: str) -> bool:
        return symbol in self._by_symbol


# ─────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────

def _require_u64(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer", {name: value})
    if value < 0 or value > _U64_MAX:
        raise ValidationError(f"{name} out of u64 range", {name: value})
    return value


# ─────────────────────────────────────────────────────────────
# Records
# ─────────────────────────────────────────────────────────────

@dataclass
class EscrowRecord:
    """
    Single-use escrow for one swap attempt.

    Invariants:
        amount_in > 0, min_amount_out >= 0
        address is a pure function of (owner, nonce)
        is_funded is set true exactly once
    """
    address:        Pubkey
    owner:          Pubkey
    nonce:          int
    amount_in:      int
    min_amount_out: int
    token_in_id:    int
    token_out_id:   int
    is_funded:      bool = False
    is_active:      bool = True

    def __post_init__(self) -> None:
        _require_u64("nonce", self.nonce)
        _require_u64("amount_in", self.amount_in)
        _require_u64("min_amount_out", self.min_amount_out)
        if self.amount_in == 0:
            raise ValidationError("amount_in must be positive", {"nonce": self.nonce})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address":        str(self.address),
            "owner":          str(self.owner),
            "nonce":          self.nonce,
            "amount_in":      self.amount_in,
            "min_amount_out": self.min_amount_out,
            "token_in_id":    self.token_in_id,
            "token_out_id":   self.token_out_id,
            "is_funded":      self.is_funded,
            "is_active":      self.is_active,
        }


@dataclass
class SettlementRecord:
    """
    Matched order awaiting (or past) execution.

    active is false at creation, true once matching completes, and false
    again (or the record is deleted) after execution. Never executed while
    active is false.
    """
    address:        Pubkey
    nonce:          int
    amount_in:      int = 0
    min_amount_out: int = 0
    token_in_id:    int = 0
    token_out_id:   int = 0
    active:         bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address":        str(self.address),
            "nonce":          self.nonce,
            "amount_in":      self.amount_in,
            "min_amount_out": self.min_amount_out,
            "token_in_id":    self.token_in_id,
            "token_out_id":   self.token_out_id,
            "active":         self.active,
        }


@dataclass(frozen=True)
class TokenMappingRecord:
    """token_id -> mint. Registered once; re-registration is a no-op."""
    address:  Pubkey
    token_id: int
    mint:     Pubkey


# ─────────────────────────────────────────────────────────────
# Event
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class OrderSettledEvent:
    """Settlement-finalized event: the matched trade parameters for one nonce."""
    nonce:          int
    amount_in:      int
    min_amount_out: int
    token_in_id:    int
    token_out_id:   int

    # wire key -> field name
    _WIRE_KEYS = {
        "nonce":     "nonce",
        "amount_in": "amount_in",
        "min_out":   "min_amount_out",
        "token_in":  "token_in_id",
        "token_out": "token_out_id",
    }

    @classmethod
    def from_payload(cls, payload: Union["OrderSettledEvent", Mapping[str, Any]]) -> "OrderSettledEvent":
        """
        Build an event from a raw payload mapping.

        Accepts wire keys (amount_in, min_out, token_in, token_out, nonce).
        Numeric strings are accepted, as emitted by JSON transports.
        Raises ValidationError on anything else.
        """
        if isinstance(payload, OrderSettledEvent):
            return payload
        if not isinstance(payload, Mapping):
            raise ValidationError(
                "Event payload must be a mapping",
                {"type": type(payload).__name__},
            )

        values: Dict[str, int] = {}
        for wire_key, field_name in cls._WIRE_KEYS.items():
            if wire_key not in payload:
                raise ValidationError("Event payload missing field", {"field": wire_key})
            raw = payload[wire_key]
            if isinstance(raw, str) and raw.isdigit():
                raw = int(raw)
            values[field_name] = _require_u64(wire_key, raw)

        return cls(**values)

    def to_payload(self) -> Dict[str, int]:
        return {
            "nonce":     self.nonce,
            "amount_in": self.amount_in,
            "min_out":   self.min_amount_out,
            "token_in":  self.token_in_id,
            "token_out": self.token_out_id,
        }


# ─────────────────────────────────────────────────────────────
# Instruction inputs
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class EscrowRequest:
    """Parameters of a create-escrow instruction."""
    nonce:          int
    amount_in:      int
    min_amount_out: int
    token_in:       TokenInfo
    token_out:      TokenInfo

    def __post_init__(self) -> None:
        _require_u64("nonce", self.nonce)
        _require_u64("amount_in", self.amount_in)
        _require_u64("min_amount_out", self.min_amount_out)
        if self.amount_in == 0:
            raise ValidationError("amount_in must be positive")
        if self.token_in.token_id == self.token_out.token_id:
            raise ValidationError(
                "token_in and token_out must differ",
                {"token": self.token_in.symbol},
            )


@dataclass(frozen=True)
class ExecutionAccounts:
    """Accounts referenced by an execute-swap instruction."""
    settlement:        Pubkey
    escrow:            Pubkey
    token_in_mapping:  Pubkey
    token_out_mapping: Pubkey
    routing_program:   Pubkey

    def to_dict(self) -> Dict[str, str]:
        return {
            "settlement":        str(self.settlement),
            "escrow":            str(self.escrow),
            "token_in_mapping":  str(self.token_in_mapping),
            "token_out_mapping": str(self.token_out_mapping),
            "routing_program":   str(self.routing_program),
        }


@dataclass(frozen=True)
class RouteAccount:
    """One account meta required by an aggregator route."""
    pubkey:      Pubkey
    is_signer:   bool
    is_writable: bool


@dataclass(frozen=True)
class RoutePlan:
    """Opaque aggregator route: the target program, its data and its accounts."""
    program_id: Pubkey
    data:       bytes
    accounts:   List[RouteAccount] = field(default_factory=list)
    out_amount: Optional[int] = None
