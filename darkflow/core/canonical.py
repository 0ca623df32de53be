"""
darkflow/core/canonical.py

Bytes covered by an instruction signature: the RFC 8785 (JCS) form of the
instruction's signing dict. Keys are base58 strings and binary values hex,
so the dict is plain JSON by the time it gets here.
"""

import hashlib
from typing import Any, Mapping

import jcs


def signing_bytes(signing_dict: Mapping[str, Any]) -> bytes:
    return jcs.canonicalize(dict(signing_dict))


def digest(signing_dict: Mapping[str, Any]) -> str:
    """Hex SHA-256 of signing_bytes(). Serves as the instruction id."""
    return hashlib.sha256(signing_bytes(signing_dict)).hexdigest()
