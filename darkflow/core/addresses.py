"""
darkflow/core/addresses.py

Address Deriver: pure, deterministic addressing for swap records.

Every record the pipeline touches lives at a program-derived address:

    settlement_address(nonce)        = derive("settlement",  [u64le(nonce)])
    token_mapping_address(token_id)  = derive("token",       [u64le(token_id)])
    escrow_address(owner, nonce)     = derive("temp_wallet", [owner, u64le(nonce)])

Derivation is Solana's find_program_address over (tag, *components) bound to
the program id. No I/O, no randomness, no state.

Unambiguity:
    Only the registered tags are accepted, each with a fixed component
    layout. Total seed lengths differ per tag (18, 13 and 51 bytes), so two
    distinct (tag, components) tuples can never share a preimage.
"""

import struct
from typing import Dict, Sequence, Tuple, Union

from solders.pubkey import Pubkey

from darkflow.core.exceptions import ValidationError


SETTLEMENT_TAG = "settlement"
TOKEN_TAG      = "token"
ESCROW_TAG     = "temp_wallet"

_U64_MAX = 2 ** 64 - 1

# tag -> fixed byte width of each component, in order
_SEED_LAYOUTS: Dict[str, Tuple[int, ...]] = {
    SETTLEMENT_TAG: (8,),
    TOKEN_TAG:      (8,),
    ESCROW_TAG:     (32, 8),
}


def u64_le(value: int) -> bytes:
    """Encode an unsigned 64-bit integer as 8 little-endian bytes."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(
            "u64 value must be an int", {"type": type(value).__name__}
        )
    if value < 0 or value > _U64_MAX:
        raise ValidationError("u64 value out of range", {"value": value})
    return struct.pack("<Q", value)


def _owner_bytes(owner: Union[Pubkey, bytes]) -> bytes:
    raw = bytes(owner)
    if len(raw) != 32:
        raise ValidationError("owner must be 32 bytes", {"length": len(raw)})
    return raw


class AddressDeriver:
    """
    Derives record addresses for one program.

    Instances hold only the (immutable) program id and are safe to share
    across threads.
    """

    def __init__(self, program_id: Pubkey) -> None:
        self.program_id = program_id

    def derive(self, tag: str, components: Sequence[bytes]) -> Pubkey:
        """
        Derive the address for (tag, components).

        Raises ValidationError on an unknown tag or a component whose width
        does not match the tag's layout.
        """
        layout = _SEED_LAYOUTS.get(tag)
        if layout is None:
            raise ValidationError("unknown derivation tag", {"tag": tag})
        if len(components) != len(layout):
            raise ValidationError(
                "wrong number of components",
                {"tag": tag, "expected": len(layout), "got": len(components)},
            )
        for index, (component, width) in enumerate(zip(components, layout)):
            if len(component) != width:
                raise ValidationError(
                    "component has wrong width",
                    {"tag": tag, "index": index, "expected": width, "got": len(component)},
                )

        seeds = [tag.encode("ascii"), *(bytes(c) for c in components)]
        address, _bump = Pubkey.find_program_address(seeds, self.program_id)
        return address

    def settlement_address(self, nonce: int) -> Pubkey:
        return self.derive(SETTLEMENT_TAG, [u64_le(nonce)])

    def token_mapping_address(self, token_id: int) -> Pubkey:
        return self.derive(TOKEN_TAG, [u64_le(token_id)])

    def escrow_address(self, owner: Union[Pubkey, bytes], nonce: int) -> Pubkey:
        return self.derive(ESCROW_TAG, [_owner_bytes(owner), u64_le(nonce)])

    def __repr__(self) -> str:
        return f"AddressDeriver(program_id={self.program_id})"
