"""
darkflow/core/crypto.py

Signing credential: an Ed25519 keypair in Solana CLI file format.

Key contracts:
    pubkey                  : @property → solders Pubkey (the owner identity)
    sign(data)              : bytes → base64url str, no padding
    verify_detached(...)    : @staticmethod, verifies with ONLY a pubkey
    to_keypair()            : solders Keypair, for signing Solana transactions

File format: JSON array of 64 integers, the 32-byte seed followed by the
32-byte public key (what `solana-keygen new` writes).

The credential only authorizes submitted instructions. It is not part of
the settlement pipeline's own state.
"""

import base64
import json
from pathlib import Path
from typing import Union

from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
)
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from darkflow.core.exceptions import ConfigurationError


class KeypairManager:
    """
    Ed25519 signing credential.

    Public surface:
        KeypairManager.generate()                       → new random key
        KeypairManager.from_file(path)                  → load Solana CLI keypair file
        KeypairManager.from_seed(seed)                  → load from raw 32-byte seed
        KeypairManager.verify_detached(data, sig, key)  → @staticmethod

        key.pubkey          (@property) → solders Pubkey
        key.public_key_hex  (@property) → 64-char lowercase hex
        key.sign(data)                  → base64url str (no padding)
        key.to_keypair()                → solders Keypair
        key.save(path)                  → write Solana CLI keypair file
    """

    def __init__(self, private_key: Ed25519PrivateKey) -> None:
        self._private_key: Ed25519PrivateKey = private_key
        self._public_raw:  bytes = (
            private_key.public_key()
            .public_bytes(Encoding.Raw, PublicFormat.Raw)
        )
        self._pubkey: Pubkey = Pubkey.from_bytes(self._public_raw)

    # ── Construction ──────────────────────────────────────────

    @classmethod
    def generate(cls) -> "KeypairManager":
        return cls(Ed25519PrivateKey.generate())

    @classmethod
    def from_seed(cls, seed: bytes) -> "KeypairManager":
        if len(seed) != 32:
            raise ValueError(f"Ed25519 seed must be 32 bytes, got {len(seed)}")
        return cls(Ed25519PrivateKey.from_private_bytes(seed))

    @classmethod
    def from_secret_bytes(cls, secret: bytes) -> "KeypairManager":
        """
        Load from a 64-byte Solana secret (seed || public key).
        Raises ValueError if the embedded public key does not match the seed.
        """
        if len(secret) != 64:
            raise ValueError(f"Solana secret key must be 64 bytes, got {len(secret)}")
        manager = cls.from_seed(secret[:32])
        if manager._public_raw != secret[32:]:
            raise ValueError("Public key half does not match the seed")
        return manager

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "KeypairManager":
        """
        Load a Solana CLI keypair file.
        Raises ConfigurationError on a missing, unreadable or malformed file.
        """
        path = Path(path).expanduser()
        if not path.exists():
            raise ConfigurationError("Keypair file not found", {"path": str(path)})
        try:
            values = json.loads(path.read_text(encoding="utf-8"))
            if not isinstance(values, list) or not all(
                isinstance(v, int) and 0 <= v <= 255 for v in values
            ):
                raise ValueError("expected a JSON array of byte values")
            return cls.from_secret_bytes(bytes(values))
        except (OSError, ValueError) as exc:
            raise ConfigurationError(
                f"Failed to load keypair: {exc}", {"path": str(path)}
            ) from exc

    # ── Identity ──────────────────────────────────────────────

    @property
    def pubkey(self) -> Pubkey:
        return self._pubkey

    @property
    def public_key_hex(self) -> str:
        return self._public_raw.hex()

    # ── Signing ───────────────────────────────────────────────

    def sign(self, data: bytes) -> str:
        """Sign data. Returns base64url, no padding. Always 86 characters."""
        raw_sig = self._private_key.sign(data)
        return base64.urlsafe_b64encode(raw_sig).rstrip(b"=").decode("ascii")

    @staticmethod
    def verify_detached(
        data:          bytes,
        signature_b64: str,
        signer:        Union[Pubkey, str],
    ) -> bool:
        """
        Verify an Ed25519 signature against a public key.

        signer is a Pubkey or its base58 string.
        Returns False for ANY failure. Never raises.
        """
        try:
            if isinstance(signer, str):
                signer = Pubkey.from_string(signer)
            pub = Ed25519PublicKey.from_public_bytes(bytes(signer))

            padding    = 4 - len(signature_b64) % 4
            padded_sig = signature_b64 + "=" * (padding % 4)
            raw_sig    = base64.urlsafe_b64decode(padded_sig)
            if len(raw_sig) != 64:
                return False

            pub.verify(raw_sig, data)
            return True
        except Exception:
            return False

    # ── Interop / Persistence ─────────────────────────────────

    def secret_bytes(self) -> bytes:
        """Seed || public key. Never log or transmit."""
        seed = self._private_key.private_bytes(
            encoding=             Encoding.Raw,
            format=               PrivateFormat.Raw,
            encryption_algorithm= NoEncryption(),
        )
        return seed + self._public_raw

    def to_keypair(self) -> Keypair:
        return Keypair.from_bytes(self.secret_bytes())

    def save(self, path: Union[str, Path]) -> None:
        path = Path(path).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(list(self.secret_bytes())), encoding="utf-8")

    def __repr__(self) -> str:
        return f"KeypairManager(pubkey={str(self._pubkey)[:12]}...)"
