"""
Darkflow Ledger - typed access to the swap program's records.

Two implementations of LedgerClient:
- SolanaLedgerClient: JSON-RPC + websocket against a cluster
- InMemoryLedgerClient: over the process-local InMemoryLedger authority
"""

from darkflow.ledger.interface import LedgerClient, Subscription
from darkflow.ledger.memory import InMemoryLedger, InMemoryLedgerClient
from darkflow.ledger.solana import SolanaLedgerClient

__all__ = [
    "LedgerClient",
    "Subscription",
    "InMemoryLedger",
    "InMemoryLedgerClient",
    "SolanaLedgerClient",
]
