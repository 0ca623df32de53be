"""
darkflow/ledger/interface.py

Typed client interface to the ledger / swap program.

Exposes exactly the operations the pipeline consumes:

    reads          fetch_escrow, fetch_settlement, fetch_token_mapping,
                   find_escrows_by_nonce, get_balance
    subscription   subscribe_order_settled
    instructions   register_token, create_escrow, execute_swap,
                   execute_swap_simulated, simulate_settlement_activation

Reads return None for "not found". Instructions raise SubmissionError on
transport failure and a PreconditionFailedError / RecordNotFoundError
subclass when the authority rejects them.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, List, Mapping, Optional

from solders.pubkey import Pubkey

from darkflow.core.addresses import AddressDeriver
from darkflow.core.models import (
    EscrowRecord,
    EscrowRequest,
    ExecutionAccounts,
    OrderSettledEvent,
    RoutePlan,
    SettlementRecord,
    TokenInfo,
    TokenMappingRecord,
)


# Receives the raw event payload (wire keys). Must return quickly.
EventCallback = Callable[[Mapping[str, Any]], None]


class Subscription(ABC):
    """Handle for a live event subscription."""

    @abstractmethod
    def cancel(self, timeout: Optional[float] = None) -> bool:
        """
        De-register the subscription.

        Blocks until de-registration is confirmed or timeout elapses.
        Returns True iff confirmed. Safe to call more than once.
        """

    @property
    @abstractmethod
    def active(self) -> bool:
        """True while events may still be delivered."""


class LedgerClient(ABC):
    """Strongly typed access to the swap program's records and instructions."""

    endpoint:   str
    program_id: Pubkey

    @property
    def addresses(self) -> AddressDeriver:
        return AddressDeriver(self.program_id)

    @property
    @abstractmethod
    def payer(self) -> Pubkey:
        """Identity that signs submitted instructions."""

    # ── Subscription ──────────────────────────────────────────

    @abstractmethod
    def subscribe_order_settled(self, callback: EventCallback) -> Subscription:
        """Deliver every OrderSettledEvent payload to callback (at-least-once)."""

    # ── Reads ─────────────────────────────────────────────────

    @abstractmethod
    def fetch_escrow(self, address: Pubkey) -> Optional[EscrowRecord]:
        pass

    @abstractmethod
    def fetch_settlement(self, address: Pubkey) -> Optional[SettlementRecord]:
        pass

    @abstractmethod
    def fetch_token_mapping(self, address: Pubkey) -> Optional[TokenMappingRecord]:
        pass

    @abstractmethod
    def find_escrows_by_nonce(self, nonce: int) -> List[EscrowRecord]:
        """All escrow records whose serialized nonce field equals nonce."""

    @abstractmethod
    def get_balance(self, owner: Pubkey, token: TokenInfo) -> int:
        """Owner's balance of token, in base units."""

    # ── Instructions ──────────────────────────────────────────

    @abstractmethod
    def register_token(self, token: TokenInfo) -> Optional[str]:
        """
        Register token_id -> mint.
        Returns the transaction id, or None when already registered (no-op).
        """

    @abstractmethod
    def create_escrow(self, request: EscrowRequest) -> str:
        """Create the escrow record at escrow_address(payer, request.nonce)."""

    @abstractmethod
    def execute_swap(self, accounts: ExecutionAccounts, route: RoutePlan) -> str:
        """Execute against the real aggregator with an opaque route payload."""

    @abstractmethod
    def execute_swap_simulated(self, accounts: ExecutionAccounts, nonce: int) -> str:
        """Execute without external liquidity (non-mainnet only)."""

    @abstractmethod
    def simulate_settlement_activation(self, event: OrderSettledEvent) -> str:
        """Test-only: activate a settlement, bypassing confidential matching."""

    # ── Helpers ───────────────────────────────────────────────

    def execution_accounts(
        self,
        nonce:           int,
        escrow:          Pubkey,
        token_in_id:     int,
        token_out_id:    int,
        routing_program: Pubkey,
    ) -> ExecutionAccounts:
        addresses = self.addresses
        return ExecutionAccounts(
            settlement=        addresses.settlement_address(nonce),
            escrow=            escrow,
            token_in_mapping=  addresses.token_mapping_address(token_in_id),
            token_out_mapping= addresses.token_mapping_address(token_out_id),
            routing_program=   routing_program,
        )
