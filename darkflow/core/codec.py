"""
darkflow/core/codec.py

Binary layouts of the swap program's accounts, instructions and events.

All integers little-endian. Every account, instruction and event starts
with an 8-byte discriminator:

    account      sha256("account:" + AccountName)[:8]
    instruction  sha256("global:"  + instruction_name)[:8]
    event        sha256("event:"   + EventName)[:8]

Escrow (TempWallet) layout: nonce sits at byte offset 120, which is what
the fixed-offset escrow lookup filters on:

    0    discriminator   8
    8    owner           32
    40   token_in mint   32
    72   token_out mint  32
    104  amount_in       u64
    112  min_out         u64
    120  nonce           u64
    128  active          bool
    129  is_funded       bool
    130  comp. offset    u64
    138  ciphertexts     5 x 32
    298  bump            u8
"""

import base64
import binascii
import hashlib
import struct
from typing import Callable, Dict, List, Optional, Sequence

from solders.pubkey import Pubkey

from darkflow.core.exceptions import ValidationError
from darkflow.core.models import (
    EscrowRecord,
    SettlementRecord,
    TokenMappingRecord,
)


def _discriminator(namespace: str, name: str) -> bytes:
    return hashlib.sha256(f"{namespace}:{name}".encode("utf-8")).digest()[:8]


ESCROW_DISCRIMINATOR        = _discriminator("account", "TempWallet")
SETTLEMENT_DISCRIMINATOR    = _discriminator("account", "SettlementRequest")
TOKEN_MAPPING_DISCRIMINATOR = _discriminator("account", "TokenMapping")
ORDER_SETTLED_DISCRIMINATOR = _discriminator("event", "OrderSettledEvent")

_ESCROW_LAYOUT        = struct.Struct("<8s32s32s32sQQQ??Q32s32s32s32s32sB")
_SETTLEMENT_LAYOUT    = struct.Struct("<8sQQQQQ?B")
_TOKEN_MAPPING_LAYOUT = struct.Struct("<8s32sQ")
_ORDER_SETTLED_LAYOUT = struct.Struct("<8sQQQQQ")

ESCROW_NONCE_OFFSET   = 120
ESCROW_ACCOUNT_SIZE   = _ESCROW_LAYOUT.size
CIPHERTEXT_SIZE       = 32

_PROGRAM_DATA_PREFIX = "Program data: "


# ─────────────────────────────────────────────────────────────
# Accounts
# ─────────────────────────────────────────────────────────────

def _check_discriminator(data: bytes, expected: bytes, kind: str) -> None:
    if data[:8] != expected:
        raise ValidationError(f"Account is not a {kind}", {"discriminator": data[:8].hex()})


def decode_escrow(
    address: Pubkey,
    data: bytes,
    token_id_for_mint: Callable[[Pubkey], int],
) -> EscrowRecord:
    """
    Decode a TempWallet account.

    The account stores mints; token_id_for_mint resolves them to the
    numeric ids used throughout the pipeline.
    """
    if len(data) < _ESCROW_LAYOUT.size:
        raise ValidationError("Escrow account too short", {"length": len(data)})
    _check_discriminator(data, ESCROW_DISCRIMINATOR, "TempWallet")
    (
        _disc, owner, mint_in, mint_out,
        amount_in, min_out, nonce,
        active, is_funded,
        *_rest,
    ) = _ESCROW_LAYOUT.unpack_from(data)
    return EscrowRecord(
        address=        address,
        owner=          Pubkey.from_bytes(owner),
        nonce=          nonce,
        amount_in=      amount_in,
        min_amount_out= min_out,
        token_in_id=    token_id_for_mint(Pubkey.from_bytes(mint_in)),
        token_out_id=   token_id_for_mint(Pubkey.from_bytes(mint_out)),
        is_funded=      is_funded,
        is_active=      active,
    )


def decode_settlement(address: Pubkey, data: bytes) -> SettlementRecord:
    if len(data) < _SETTLEMENT_LAYOUT.size:
        raise ValidationError("Settlement account too short", {"length": len(data)})
    _check_discriminator(data, SETTLEMENT_DISCRIMINATOR, "SettlementRequest")
    _disc, amount_in, min_out, token_in, token_out, nonce, active, _bump = (
        _SETTLEMENT_LAYOUT.unpack_from(data)
    )
    return SettlementRecord(
        address=        address,
        nonce=          nonce,
        amount_in=      amount_in,
        min_amount_out= min_out,
        token_in_id=    token_in,
        token_out_id=   token_out,
        active=         active,
    )


def decode_token_mapping(address: Pubkey, data: bytes) -> TokenMappingRecord:
    if len(data) < _TOKEN_MAPPING_LAYOUT.size:
        raise ValidationError("Token mapping account too short", {"length": len(data)})
    _check_discriminator(data, TOKEN_MAPPING_DISCRIMINATOR, "TokenMapping")
    _disc, mint, token_id = _TOKEN_MAPPING_LAYOUT.unpack_from(data)
    return TokenMappingRecord(address=address, token_id=token_id, mint=Pubkey.from_bytes(mint))


def encode_escrow_account(
    owner: Pubkey,
    mint_in: Pubkey,
    mint_out: Pubkey,
    amount_in: int,
    min_out: int,
    nonce: int,
    active: bool = True,
    is_funded: bool = False,
    bump: int = 255,
) -> bytes:
    """Serialize a TempWallet account (ciphertexts zeroed)."""
    blank = bytes(CIPHERTEXT_SIZE)
    return _ESCROW_LAYOUT.pack(
        ESCROW_DISCRIMINATOR, bytes(owner), bytes(mint_in), bytes(mint_out),
        amount_in, min_out, nonce, active, is_funded, 0,
        blank, blank, blank, blank, blank, bump,
    )


def encode_settlement_account(record: SettlementRecord, bump: int = 255) -> bytes:
    return _SETTLEMENT_LAYOUT.pack(
        SETTLEMENT_DISCRIMINATOR,
        record.amount_in, record.min_amount_out,
        record.token_in_id, record.token_out_id,
        record.nonce, record.active, bump,
    )


# ─────────────────────────────────────────────────────────────
# Instructions
# ─────────────────────────────────────────────────────────────

def instruction_discriminator(name: str) -> bytes:
    return _discriminator("global", name)


def encode_register_token(token_id: int) -> bytes:
    return instruction_discriminator("register_token") + struct.pack("<Q", token_id)


def encode_create_private_swap(
    amount_in: int,
    min_out: int,
    nonce: int,
    computation_offset: int = 0,
    ciphertexts: Optional[Sequence[bytes]] = None,
) -> bytes:
    """
    create_private_swap(amount_in, min_out, nonce, computation_offset,
                        enc_amount_in, enc_min_out, enc_token_in,
                        enc_token_out, enc_nonce)

    Ciphertexts are produced by the confidential-computation collaborator;
    zeroed placeholders are sent when none are supplied.
    """
    blobs = list(ciphertexts) if ciphertexts is not None else [bytes(CIPHERTEXT_SIZE)] * 5
    if len(blobs) != 5 or any(len(b) != CIPHERTEXT_SIZE for b in blobs):
        raise ValidationError("Expected five 32-byte ciphertexts")
    return (
        instruction_discriminator("create_private_swap")
        + struct.pack("<QQQQ", amount_in, min_out, nonce, computation_offset)
        + b"".join(blobs)
    )


def encode_execute_swap(route_data: bytes) -> bytes:
    """execute_swap(data: Vec<u8>): u32 length prefix then raw bytes."""
    return instruction_discriminator("execute_swap") + struct.pack("<I", len(route_data)) + route_data


def encode_execute_swap_test(nonce: int) -> bytes:
    return instruction_discriminator("execute_swap_test") + struct.pack("<Q", nonce)


def encode_simulate_match_order(
    amount_in: int,
    min_out: int,
    token_in: int,
    token_out: int,
    nonce: int,
) -> bytes:
    return instruction_discriminator("simulate_match_order") + struct.pack(
        "<QQQQQ", amount_in, min_out, token_in, token_out, nonce
    )


# ─────────────────────────────────────────────────────────────
# Events
# ─────────────────────────────────────────────────────────────

def decode_order_settled(data: bytes) -> Optional[Dict[str, int]]:
    """
    Decode an OrderSettledEvent body into its wire payload.
    Returns None when the bytes carry a different event.
    """
    if len(data) < _ORDER_SETTLED_LAYOUT.size or data[:8] != ORDER_SETTLED_DISCRIMINATOR:
        return None
    _disc, amount_in, min_out, token_in, token_out, nonce = _ORDER_SETTLED_LAYOUT.unpack_from(data)
    return {
        "amount_in": amount_in,
        "min_out":   min_out,
        "token_in":  token_in,
        "token_out": token_out,
        "nonce":     nonce,
    }


def encode_order_settled(payload: Dict[str, int]) -> bytes:
    return _ORDER_SETTLED_LAYOUT.pack(
        ORDER_SETTLED_DISCRIMINATOR,
        payload["amount_in"], payload["min_out"],
        payload["token_in"], payload["token_out"], payload["nonce"],
    )


def parse_order_settled_logs(logs: Sequence[str]) -> List[Dict[str, int]]:
    """
    Extract OrderSettledEvent payloads from a transaction's log lines.
    Lines that are not event data, or carry other events, are skipped.
    """
    payloads: List[Dict[str, int]] = []
    for line in logs:
        if not line.startswith(_PROGRAM_DATA_PREFIX):
            continue
        try:
            raw = base64.b64decode(line[len(_PROGRAM_DATA_PREFIX):], validate=True)
        except (binascii.Error, ValueError):
            continue
        payload = decode_order_settled(raw)
        if payload is not None:
            payloads.append(payload)
    return payloads
