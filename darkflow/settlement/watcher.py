"""
darkflow/settlement/watcher.py

Settlement Watcher (keeper).

Subscribes to OrderSettledEvent and executes each activated settlement:

    1. payload -> OrderSettledEvent              malformed: log, discard
    2. escrow lookup by nonce                    none: log, discard
    3. derive settlement + token mapping addresses
    4. settlement must exist and be active       else: discard
    5. mainnet      route via the aggregator, execute_swap
       otherwise    execute_swap_simulated against the system program

CONTRACT — Failure isolation
    handle_event() never raises. Every per-event failure is logged and
    reported as a HandleOutcome; nothing is retried here. Recovery is the
    next event or the client's own poll.

CONTRACT — Duplicates
    Events arrive at-least-once. A duplicate for an executed settlement
    finds it missing or inactive and is discarded. Two handlers racing on the
    same nonce are serialized by the ledger authority; the loser's
    submission is rejected and reported as SUBMISSION_FAILED.

CONTRACT — Shutdown
    stop() cancels the subscription, waits (bounded) for de-registration,
    then drains handlers already running. Events arriving after stop() has
    begun are dropped.
"""

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Set

from loguru import logger
from solders.pubkey import Pubkey

from darkflow.core.exceptions import (
    DarkflowError,
    QuoteError,
    RecordNotFoundError,
    ValidationError,
)
from darkflow.core.models import SYSTEM_PROGRAM_ID, NetworkMode, OrderSettledEvent
from darkflow.ledger.interface import LedgerClient, Subscription
from darkflow.routing.resolver import RouteResolver


JUPITER_PROGRAM_ID = Pubkey.from_string("JUP6LkbZbjS1jKKwapdHNy74zcZ3tLUZoi5QNyVTaV4")


class HandleOutcome(str, Enum):
    EXECUTED           = "executed"
    SIMULATED          = "simulated"
    MALFORMED          = "malformed"
    NO_ESCROW          = "no_escrow"
    SETTLEMENT_MISSING = "settlement_missing"
    NOT_ACTIVE         = "not_active"
    ROUTE_FAILED       = "route_failed"
    SUBMISSION_FAILED  = "submission_failed"
    ERROR              = "error"


@dataclass(frozen=True)
class WatcherConfig:
    network_mode:          NetworkMode
    aggregator_program_id: Pubkey = JUPITER_PROGRAM_ID
    max_workers:           int = 4
    shutdown_timeout:      float = 10.0


class SettlementWatcher:

    def __init__(
        self,
        ledger:   LedgerClient,
        resolver: RouteResolver,
        config:   WatcherConfig,
    ) -> None:
        self.ledger   = ledger
        self.resolver = resolver
        self.config   = config

        self._lock = threading.Lock()
        self._subscription: Optional[Subscription] = None
        self._executor:     Optional[ThreadPoolExecutor] = None
        self._inflight:     Set[Future] = set()
        self._stopping = False
        self._counts: Dict[HandleOutcome, int] = {o: 0 for o in HandleOutcome}

        # token_id -> mint; mappings never change once registered
        self._mint_cache_lock = threading.Lock()
        self._mint_cache: Dict[int, Pubkey] = {}

    # ── Lifecycle ─────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._subscription is not None and not self._stopping

    def start(self) -> None:
        with self._lock:
            if self._subscription is not None:
                raise RuntimeError("Watcher already started")
            self._stopping = False
            self._executor = ThreadPoolExecutor(
                max_workers=self.config.max_workers,
                thread_name_prefix="darkflow-keeper",
            )
            self._subscription = self.ledger.subscribe_order_settled(self._dispatch)
        logger.info(
            "KEEPER | started | network={} endpoint={} workers={}",
            self.config.network_mode.value, self.ledger.endpoint, self.config.max_workers,
        )

    def stop(self, timeout: Optional[float] = None) -> bool:
        """
        Stop the watcher. Returns True iff de-registration was confirmed
        within timeout (defaults to config.shutdown_timeout).
        """
        timeout = self.config.shutdown_timeout if timeout is None else timeout
        with self._lock:
            if self._subscription is None:
                return True
            self._stopping = True
            subscription, executor = self._subscription, self._executor

        confirmed = subscription.cancel(timeout)
        if not confirmed:
            logger.warning("KEEPER | unsubscribe not confirmed | timeout={}", timeout)
        executor.shutdown(wait=True)

        with self._lock:
            self._subscription = None
            self._executor = None
        logger.info("KEEPER | stopped | confirmed={}", confirmed)
        return confirmed

    def run_forever(self, stop_event: threading.Event) -> bool:
        """Run until stop_event is set, then stop. Returns stop()'s result."""
        self.start()
        stop_event.wait()
        return self.stop()

    def outcome_counts(self) -> Dict[HandleOutcome, int]:
        with self._lock:
            return dict(self._counts)

    # ── Dispatch ──────────────────────────────────────────────

    def _dispatch(self, payload: Mapping[str, Any]) -> None:
        with self._lock:
            if self._stopping or self._executor is None:
                logger.debug("KEEPER | event dropped | reason=stopping")
                return
            future = self._executor.submit(self.handle_event, payload)
            self._inflight.add(future)
        future.add_done_callback(self._discard)

    def _discard(self, future: Future) -> None:
        with self._lock:
            self._inflight.discard(future)

    def handle_event(self, payload: Mapping[str, Any]) -> HandleOutcome:
        try:
            outcome = self._handle(payload)
        except Exception as exc:
            logger.exception("KEEPER | event processing error | error={!r}", exc)
            outcome = HandleOutcome.ERROR
        with self._lock:
            self._counts[outcome] += 1
        return outcome

    # ── Handling ──────────────────────────────────────────────

    def _handle(self, payload: Mapping[str, Any]) -> HandleOutcome:
        try:
            event = OrderSettledEvent.from_payload(payload)
        except ValidationError as exc:
            logger.warning("KEEPER | malformed event | error={}", exc)
            return HandleOutcome.MALFORMED

        nonce = event.nonce
        logger.info("KEEPER | processing order | nonce={}", nonce)

        escrows = self.ledger.find_escrows_by_nonce(nonce)
        if not escrows:
            logger.info("KEEPER | no escrow | nonce={}", nonce)
            return HandleOutcome.NO_ESCROW
        if len(escrows) > 1:
            logger.warning(
                "KEEPER | multiple escrows | nonce={} count={} using={}",
                nonce, len(escrows), escrows[0].address,
            )
        escrow = escrows[0]

        settlement = self.ledger.fetch_settlement(self.ledger.addresses.settlement_address(nonce))
        if settlement is None:
            logger.info("KEEPER | settlement missing | nonce={}", nonce)
            return HandleOutcome.SETTLEMENT_MISSING
        if not settlement.active:
            logger.info("KEEPER | settlement not active | nonce={}", nonce)
            return HandleOutcome.NOT_ACTIVE

        if self.config.network_mode.is_mainnet:
            return self._execute_routed(event, escrow.address)
        return self._execute_simulated(event, escrow.address)

    def _execute_routed(self, event: OrderSettledEvent, escrow: Pubkey) -> HandleOutcome:
        try:
            route = self.resolver.route(
                self._mint_for(event.token_in_id),
                self._mint_for(event.token_out_id),
                event.amount_in,
                escrow,
            )
        except (QuoteError, RecordNotFoundError) as exc:
            logger.error("KEEPER | route failed | nonce={} error={}", event.nonce, exc)
            return HandleOutcome.ROUTE_FAILED

        if route.program_id != self.config.aggregator_program_id:
            logger.error(
                "KEEPER | route targets unexpected program | nonce={} program={}",
                event.nonce, route.program_id,
            )
            return HandleOutcome.ROUTE_FAILED

        accounts = self.ledger.execution_accounts(
            event.nonce, escrow, event.token_in_id, event.token_out_id,
            self.config.aggregator_program_id,
        )
        try:
            tx = self.ledger.execute_swap(accounts, route)
        except DarkflowError as exc:
            logger.error("KEEPER | swap failed | nonce={} error={}", event.nonce, exc)
            return HandleOutcome.SUBMISSION_FAILED
        logger.info("KEEPER | swap executed | nonce={} tx={}", event.nonce, tx)
        return HandleOutcome.EXECUTED

    def _execute_simulated(self, event: OrderSettledEvent, escrow: Pubkey) -> HandleOutcome:
        accounts = self.ledger.execution_accounts(
            event.nonce, escrow, event.token_in_id, event.token_out_id, SYSTEM_PROGRAM_ID,
        )
        try:
            tx = self.ledger.execute_swap_simulated(accounts, event.nonce)
        except DarkflowError as exc:
            logger.error("KEEPER | test swap failed | nonce={} error={}", event.nonce, exc)
            return HandleOutcome.SUBMISSION_FAILED
        logger.info("KEEPER | test swap executed | nonce={} tx={}", event.nonce, tx)
        return HandleOutcome.SIMULATED

    def _mint_for(self, token_id: int) -> Pubkey:
        with self._mint_cache_lock:
            cached = self._mint_cache.get(token_id)
        if cached is not None:
            return cached
        mapping = self.ledger.fetch_token_mapping(
            self.ledger.addresses.token_mapping_address(token_id)
        )
        if mapping is None:
            raise RecordNotFoundError("Token mapping not found", {"token_id": token_id})
        with self._mint_cache_lock:
            self._mint_cache[token_id] = mapping.mint
        return mapping.mint
