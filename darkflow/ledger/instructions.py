"""
darkflow/ledger/instructions.py

Instruction envelope submitted to the in-memory authority.

CONTRACT — Signing
    bytes_signed = RFC 8785 form of instruction.to_signing_dict()
    algorithm    = Ed25519 (payer's key)
    encoding     = base64url, no padding

CONTRACT — Identity
    instruction_id = SHA-256 hex of the same canonical bytes. Two envelopes
    with identical content share an id; the authority does not use it for
    deduplication (execution is guarded by record state, not by id).
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Set

from darkflow.core import canonical
from darkflow.core.crypto import KeypairManager


class InstructionKind:
    """
    Instruction name constants. These are the ONLY valid Instruction.kind values.
    Names match the program's instruction names.
    """
    REGISTER_TOKEN                 = "register_token"
    CREATE_ESCROW                  = "create_private_swap"
    EXECUTE_SWAP                   = "execute_swap"
    EXECUTE_SWAP_SIMULATED         = "execute_swap_test"
    SIMULATE_SETTLEMENT_ACTIVATION = "simulate_match_order"


_VALID_KINDS: Set[str] = {
    InstructionKind.REGISTER_TOKEN,
    InstructionKind.CREATE_ESCROW,
    InstructionKind.EXECUTE_SWAP,
    InstructionKind.EXECUTE_SWAP_SIMULATED,
    InstructionKind.SIMULATE_SETTLEMENT_ACTIVATION,
}


@dataclass
class Instruction:
    """
    One state-changing call.

    accounts maps role -> base58 address; args holds JSON-primitive values
    (bytes are carried as hex strings).
    """

    kind:      str
    payer:     str
    accounts:  Dict[str, str]
    args:      Dict[str, Any]
    signature: Optional[str] = None

    @classmethod
    def create(
        cls,
        kind:     str,
        payer:    str,
        accounts: Dict[str, str],
        args:     Optional[Dict[str, Any]] = None,
    ) -> "Instruction":
        if kind not in _VALID_KINDS:
            raise ValueError(
                f"Unknown instruction kind: {kind!r}. "
                f"Valid kinds: {sorted(_VALID_KINDS)}"
            )
        return cls(kind=kind, payer=payer, accounts=dict(accounts), args=dict(args or {}))

    def to_signing_dict(self) -> Dict[str, Any]:
        return {
            "kind":     self.kind,
            "payer":    self.payer,
            "accounts": self.accounts,
            "args":     self.args,
        }

    def signing_bytes(self) -> bytes:
        return canonical.signing_bytes(self.to_signing_dict())

    @property
    def instruction_id(self) -> str:
        return canonical.digest(self.to_signing_dict())

    def sign(self, key_manager: KeypairManager) -> "Instruction":
        """Sign in place and return self, so create(...).sign(key) chains."""
        if str(key_manager.pubkey) != self.payer:
            raise ValueError("Signing key does not match the instruction payer")
        self.signature = key_manager.sign(self.signing_bytes())
        return self

    def verify_signature(self) -> bool:
        if not self.signature:
            return False
        return KeypairManager.verify_detached(self.signing_bytes(), self.signature, self.payer)
