"""
darkflow/__init__.py

Darkflow: private swap settlement and execution pipeline.

A swap intent is registered as an escrow record at an address derived from
(owner, nonce). Once funded and matched, its settlement record becomes
active and the keeper executes it: through the aggregator on mainnet,
through the simulated swap elsewhere. The client session polls the same
records and reports the realized result.
"""

__version__ = "0.3.0"

from darkflow.core.addresses import AddressDeriver
from darkflow.core.crypto import KeypairManager
from darkflow.core.exceptions import DarkflowError
from darkflow.core.models import (
    EscrowRecord,
    NetworkMode,
    OrderSettledEvent,
    SettlementRecord,
    TokenInfo,
    TokenRegistry,
)
from darkflow.core.network import detect_network_mode

__all__ = [
    # Records
    "EscrowRecord",
    "SettlementRecord",
    "OrderSettledEvent",
    "TokenInfo",
    "TokenRegistry",
    # Addressing / identity
    "AddressDeriver",
    "KeypairManager",
    "NetworkMode",
    "detect_network_mode",
    # Errors
    "DarkflowError",
]
