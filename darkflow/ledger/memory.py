"""
darkflow/ledger/memory.py

In-memory authority for the swap program, plus a client bound to one signer.

InMemoryLedger enforces the same invariants the on-chain program does:

    - every instruction carries a valid Ed25519 signature from its payer
    - records live only at their derived addresses (seed constraints)
    - a settlement executes only while active, and execution closes it,
      so of any number of concurrent execution attempts exactly one succeeds
    - execution also deactivates the escrow it settled
    - an escrow is funded exactly once, and funding fails if its nonce
      already has a settlement record
    - token mappings are created once; a second create is rejected

State is guarded by one lock. Events are published after the lock is
released, onto per-subscription delivery threads, so the instruction that
emitted an event never waits on a subscriber.

Hooks that model collaborators outside the pipeline (deposit detection,
confidential matching, token balances) are plain methods, not instructions.
"""

import itertools
import queue
import threading
from dataclasses import replace
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from loguru import logger
from solders.pubkey import Pubkey

from darkflow.core.addresses import AddressDeriver
from darkflow.core.crypto import KeypairManager
from darkflow.core.exceptions import (
    AlreadyFundedError,
    PreconditionFailedError,
    RecordExistsError,
    RecordNotFoundError,
    SettlementNotActiveError,
    SubmissionError,
    UnauthorizedSignerError,
    ValidationError,
)
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
from darkflow.ledger.instructions import Instruction, InstructionKind
from darkflow.ledger.interface import EventCallback, LedgerClient, Subscription


_STOP = object()


# ─────────────────────────────────────────────────────────────
# Subscription
# ─────────────────────────────────────────────────────────────

class QueueSubscription(Subscription):
    """Delivers payloads to one callback from a dedicated thread."""

    def __init__(self, ledger: "InMemoryLedger", callback: EventCallback) -> None:
        self._ledger   = ledger
        self._callback = callback
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._active   = True
        self._thread   = threading.Thread(
            target=self._run, name="darkflow-event-delivery", daemon=True
        )
        self._thread.start()

    @property
    def active(self) -> bool:
        return self._active

    def deliver(self, payload: Mapping[str, Any]) -> None:
        if self._active:
            self._queue.put(payload)

    def cancel(self, timeout: Optional[float] = None) -> bool:
        if self._active:
            self._active = False
            self._ledger._unsubscribe(self)
            self._queue.put(_STOP)
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            try:
                self._callback(item)
            except Exception as exc:
                logger.error("LEDGER | subscriber callback failed | error={!r}", exc)


# ─────────────────────────────────────────────────────────────
# Authority
# ─────────────────────────────────────────────────────────────

class InMemoryLedger:
    """
    Process-local swap program.

    allow_test_instructions mirrors the program's devnet feature: when
    False, execute_swap_test and simulate_match_order are rejected, as on
    a mainnet deployment.
    """

    def __init__(self, program_id: Pubkey, allow_test_instructions: bool = True) -> None:
        self.program_id = program_id
        self.addresses  = AddressDeriver(program_id)
        self.allow_test_instructions = allow_test_instructions

        self._lock = threading.Lock()
        self._escrows:        Dict[Pubkey, EscrowRecord]       = {}
        self._settlements:    Dict[Pubkey, SettlementRecord]   = {}
        self._token_mappings: Dict[Pubkey, TokenMappingRecord] = {}
        self._custody:        Dict[Pubkey, int]                = {}
        self._balances:       Dict[Tuple[Pubkey, Pubkey], int] = {}
        self._accepted:       List[Instruction]                = []
        self._tx_counter = itertools.count(1)

        self._subscribers_lock = threading.Lock()
        self._subscribers: List[QueueSubscription] = []

        self._handlers: Dict[str, Callable[[Instruction], List[OrderSettledEvent]]] = {
            InstructionKind.REGISTER_TOKEN:                 self._register_token,
            InstructionKind.CREATE_ESCROW:                  self._create_escrow,
            InstructionKind.EXECUTE_SWAP:                   self._execute_swap,
            InstructionKind.EXECUTE_SWAP_SIMULATED:         self._execute_swap_test,
            InstructionKind.SIMULATE_SETTLEMENT_ACTIVATION: self._simulate_match_order,
        }

    # ── Reads ─────────────────────────────────────────────────
    # Copies, so callers can never mutate authority state.

    def get_escrow(self, address: Pubkey) -> Optional[EscrowRecord]:
        with self._lock:
            record = self._escrows.get(address)
            return replace(record) if record else None

    def get_settlement(self, address: Pubkey) -> Optional[SettlementRecord]:
        with self._lock:
            record = self._settlements.get(address)
            return replace(record) if record else None

    def get_token_mapping(self, address: Pubkey) -> Optional[TokenMappingRecord]:
        with self._lock:
            return self._token_mappings.get(address)

    def find_escrows_by_nonce(self, nonce: int) -> List[EscrowRecord]:
        with self._lock:
            return [replace(r) for r in self._escrows.values() if r.nonce == nonce]

    def balance(self, owner: Pubkey, mint: Pubkey) -> int:
        with self._lock:
            return self._balances.get((owner, mint), 0)

    @property
    def accepted_instructions(self) -> List[Instruction]:
        """Every instruction the authority applied, in order."""
        with self._lock:
            return list(self._accepted)

    # ── Instruction processing ────────────────────────────────

    def submit(self, instruction: Instruction) -> str:
        """
        Verify, apply and record one instruction. Returns a transaction id.

        Raises UnauthorizedSignerError on a bad signature, SubmissionError on
        an unavailable instruction, and the handler's rejection otherwise.
        Rejected instructions leave state unchanged.
        """
        if not instruction.verify_signature():
            raise UnauthorizedSignerError(
                "Instruction signature invalid", {"kind": instruction.kind}
            )
        handler = self._handlers[instruction.kind]

        with self._lock:
            events = handler(instruction)
            self._accepted.append(instruction)
            tx_id = f"mem-{next(self._tx_counter):08d}-{instruction.instruction_id[:16]}"

        for event in events:
            self.publish(event.to_payload())
        return tx_id

    def _register_token(self, ix: Instruction) -> List[OrderSettledEvent]:
        token_id = ix.args["token_id"]
        address  = Pubkey.from_string(ix.accounts["token_mapping"])
        if address != self.addresses.token_mapping_address(token_id):
            raise PreconditionFailedError("Token mapping address mismatch", {"token_id": token_id})
        if address in self._token_mappings:
            raise RecordExistsError("Token mapping already in use", {"token_id": token_id})
        self._token_mappings[address] = TokenMappingRecord(
            address=  address,
            token_id= token_id,
            mint=     Pubkey.from_string(ix.accounts["mint"]),
        )
        return []

    def _create_escrow(self, ix: Instruction) -> List[OrderSettledEvent]:
        owner   = Pubkey.from_string(ix.payer)
        nonce   = ix.args["nonce"]
        address = Pubkey.from_string(ix.accounts["escrow"])
        if address != self.addresses.escrow_address(owner, nonce):
            raise PreconditionFailedError("Escrow address mismatch", {"nonce": nonce})
        if address in self._escrows:
            raise RecordExistsError("Escrow already in use", {"nonce": nonce})
        try:
            record = EscrowRecord(
                address=        address,
                owner=          owner,
                nonce=          nonce,
                amount_in=      ix.args["amount_in"],
                min_amount_out= ix.args["min_out"],
                token_in_id=    ix.args["token_in"],
                token_out_id=   ix.args["token_out"],
            )
        except ValidationError as exc:
            raise PreconditionFailedError(f"Invalid escrow: {exc.message}", exc.details) from exc
        self._escrows[address] = record
        self._custody[address] = 0
        return []

    def _check_execution(self, ix: Instruction) -> Tuple[SettlementRecord, EscrowRecord]:
        address    = Pubkey.from_string(ix.accounts["settlement"])
        settlement = self._settlements.get(address)
        if settlement is None:
            raise RecordNotFoundError("Settlement not found", {"settlement": str(address)})
        if not settlement.active:
            raise SettlementNotActiveError(
                "Settlement Request not active", {"nonce": settlement.nonce}
            )
        escrow = self._escrows.get(Pubkey.from_string(ix.accounts["escrow"]))
        if escrow is None or escrow.nonce != settlement.nonce:
            raise PreconditionFailedError(
                "Escrow does not belong to settlement", {"nonce": settlement.nonce}
            )
        for role, token_id in (
            ("token_in_mapping",  settlement.token_in_id),
            ("token_out_mapping", settlement.token_out_id),
        ):
            mapping_address = Pubkey.from_string(ix.accounts[role])
            if mapping_address != self.addresses.token_mapping_address(token_id):
                raise PreconditionFailedError(f"{role} address mismatch", {"token_id": token_id})
            if mapping_address not in self._token_mappings:
                raise RecordNotFoundError("Token mapping not found", {"token_id": token_id})
        return settlement, escrow

    def _close_settlement(self, settlement: SettlementRecord, escrow: EscrowRecord) -> None:
        settlement.active = False
        escrow.is_active  = False
        del self._settlements[settlement.address]

    def _execute_swap(self, ix: Instruction) -> List[OrderSettledEvent]:
        self._close_settlement(*self._check_execution(ix))
        return []

    def _execute_swap_test(self, ix: Instruction) -> List[OrderSettledEvent]:
        self._require_test_instructions(ix.kind)
        self._close_settlement(*self._check_execution(ix))
        return []

    def _simulate_match_order(self, ix: Instruction) -> List[OrderSettledEvent]:
        self._require_test_instructions(ix.kind)
        event = OrderSettledEvent.from_payload(ix.args)
        return [self._activate(event, Pubkey.from_string(ix.accounts["settlement"]))]

    def _require_test_instructions(self, kind: str) -> None:
        if not self.allow_test_instructions:
            raise SubmissionError("Instruction not available on this deployment", {"kind": kind})

    def _activate(self, event: OrderSettledEvent, address: Pubkey) -> OrderSettledEvent:
        if address != self.addresses.settlement_address(event.nonce):
            raise PreconditionFailedError("Settlement address mismatch", {"nonce": event.nonce})
        settlement = self._settlements.get(address)
        if settlement is None:
            raise RecordNotFoundError("Settlement not found", {"nonce": event.nonce})
        if settlement.active:
            raise PreconditionFailedError("Settlement already active", {"nonce": event.nonce})
        if event.amount_in == 0:
            raise PreconditionFailedError("Invalid order amount", {"nonce": event.nonce})
        settlement.amount_in      = event.amount_in
        settlement.min_amount_out = event.min_amount_out
        settlement.token_in_id    = event.token_in_id
        settlement.token_out_id   = event.token_out_id
        settlement.active         = True
        return event

    # ── External collaborators ────────────────────────────────

    def deposit(self, escrow_address: Pubkey, amount: int) -> bool:
        """
        Credit the escrow's custody account (the user's transfer).

        The first time custody reaches amount_in the escrow becomes funded and
        an inactive settlement record is registered for its nonce, awaiting
        matching. Returns True iff this deposit funded the escrow.

        Raises AlreadyFundedError once the escrow is funded, and
        RecordExistsError when another escrow with the same nonce already
        holds the settlement record. Either way the escrow stays unfunded.
        """
        with self._lock:
            escrow = self._escrows.get(escrow_address)
            if escrow is None:
                raise RecordNotFoundError("Escrow not found", {"escrow": str(escrow_address)})
            if not escrow.is_active:
                raise PreconditionFailedError("Escrow not active", {"nonce": escrow.nonce})
            if escrow.is_funded:
                raise AlreadyFundedError("Already funded", {"nonce": escrow.nonce})
            address = self.addresses.settlement_address(escrow.nonce)
            if self._custody[escrow_address] + amount < escrow.amount_in:
                self._custody[escrow_address] += amount
                return False
            if address in self._settlements:
                raise RecordExistsError("Settlement already in use", {"nonce": escrow.nonce})
            self._custody[escrow_address] += amount
            escrow.is_funded = True
            self._settlements[address] = SettlementRecord(address=address, nonce=escrow.nonce)
            return True

    def complete_matching(self, event: OrderSettledEvent) -> None:
        """Matching callback: activate the settlement and emit the event."""
        with self._lock:
            self._activate(event, self.addresses.settlement_address(event.nonce))
        self.publish(event.to_payload())

    def credit(self, owner: Pubkey, mint: Pubkey, amount: int) -> None:
        with self._lock:
            key = (owner, mint)
            self._balances[key] = self._balances.get(key, 0) + amount

    # ── Events ────────────────────────────────────────────────

    def subscribe(self, callback: EventCallback) -> QueueSubscription:
        subscription = QueueSubscription(self, callback)
        with self._subscribers_lock:
            self._subscribers.append(subscription)
        return subscription

    def publish(self, payload: Mapping[str, Any]) -> None:
        """Deliver a payload to every subscriber. Also used to replay events."""
        with self._subscribers_lock:
            subscribers = list(self._subscribers)
        for subscription in subscribers:
            subscription.deliver(payload)

    def _unsubscribe(self, subscription: QueueSubscription) -> None:
        with self._subscribers_lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)


# ─────────────────────────────────────────────────────────────
# Client
# ─────────────────────────────────────────────────────────────

class InMemoryLedgerClient(LedgerClient):
    """LedgerClient over an InMemoryLedger, signing as one credential."""

    def __init__(
        self,
        ledger:   InMemoryLedger,
        signer:   KeypairManager,
        endpoint: str = "http://127.0.0.1:8899",
    ) -> None:
        self.ledger     = ledger
        self.signer     = signer
        self.endpoint   = endpoint
        self.program_id = ledger.program_id

    @property
    def payer(self) -> Pubkey:
        return self.signer.pubkey

    def _submit(self, kind: str, accounts: Dict[str, str], args: Dict[str, Any]) -> str:
        instruction = Instruction.create(
            kind=     kind,
            payer=    str(self.signer.pubkey),
            accounts= accounts,
            args=     args,
        ).sign(self.signer)
        return self.ledger.submit(instruction)

    # ── Subscription ──────────────────────────────────────────

    def subscribe_order_settled(self, callback: EventCallback) -> Subscription:
        return self.ledger.subscribe(callback)

    # ── Reads ─────────────────────────────────────────────────

    def fetch_escrow(self, address: Pubkey) -> Optional[EscrowRecord]:
        return self.ledger.get_escrow(address)

    def fetch_settlement(self, address: Pubkey) -> Optional[SettlementRecord]:
        return self.ledger.get_settlement(address)

    def fetch_token_mapping(self, address: Pubkey) -> Optional[TokenMappingRecord]:
        return self.ledger.get_token_mapping(address)

    def find_escrows_by_nonce(self, nonce: int) -> List[EscrowRecord]:
        return self.ledger.find_escrows_by_nonce(nonce)

    def get_balance(self, owner: Pubkey, token: TokenInfo) -> int:
        return self.ledger.balance(owner, token.mint)

    # ── Instructions ──────────────────────────────────────────

    def register_token(self, token: TokenInfo) -> Optional[str]:
        address = self.addresses.token_mapping_address(token.token_id)
        if self.ledger.get_token_mapping(address) is not None:
            return None
        try:
            return self._submit(
                InstructionKind.REGISTER_TOKEN,
                {"token_mapping": str(address), "mint": str(token.mint)},
                {"token_id": token.token_id},
            )
        except RecordExistsError:
            # lost a race with another registrant
            return None

    def create_escrow(self, request: EscrowRequest) -> str:
        escrow = self.addresses.escrow_address(self.payer, request.nonce)
        return self._submit(
            InstructionKind.CREATE_ESCROW,
            {
                "escrow":         str(escrow),
                "token_in_mint":  str(request.token_in.mint),
                "token_out_mint": str(request.token_out.mint),
            },
            {
                "amount_in": request.amount_in,
                "min_out":   request.min_amount_out,
                "nonce":     request.nonce,
                "token_in":  request.token_in.token_id,
                "token_out": request.token_out.token_id,
            },
        )

    def execute_swap(self, accounts: ExecutionAccounts, route: RoutePlan) -> str:
        return self._submit(
            InstructionKind.EXECUTE_SWAP,
            accounts.to_dict(),
            {"route_data": route.data.hex()},
        )

    def execute_swap_simulated(self, accounts: ExecutionAccounts, nonce: int) -> str:
        return self._submit(
            InstructionKind.EXECUTE_SWAP_SIMULATED,
            accounts.to_dict(),
            {"nonce": nonce},
        )

    def simulate_settlement_activation(self, event: OrderSettledEvent) -> str:
        return self._submit(
            InstructionKind.SIMULATE_SETTLEMENT_ACTIVATION,
            {"settlement": str(self.addresses.settlement_address(event.nonce))},
            event.to_payload(),
        )
