"""
darkflow/runtime/session.py

Client State Machine: drives one user's swap from input to result.

    INPUT ──submit──▶ DEPOSIT ──funded──▶ PROCESSING ──settled──▶ COMPLETE
      ▲                                                              │
      └──────────────────────────── reset ───────────────────────────┘

No other transitions exist. Once DEPOSIT is entered there is no cancel:
funds may already be in flight.

CONTRACT — Polling
    tick() is one poll. start() runs it every poll_interval seconds on a
    daemon thread until COMPLETE or close(). Each tick isolates its own
    errors; a failing read leaves the state unchanged for the next tick.

CONTRACT — Completion
    In PROCESSING the settlement record is read each tick. Absence (closed)
    or active=false after having been seen active is completion. Off
    mainnet the session may itself submit the simulated execution, only
    when the escrow is funded and the settlement active; the ledger
    authority makes this safe against the keeper doing the same.

CONTRACT — Result
    Computed once on entering COMPLETE, by diffing the to-asset balance
    captured at submit against the balance at completion. A zero or
    unknown difference reports funds_returned instead of a rate.
"""

import threading
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from loguru import logger
from solders.pubkey import Pubkey

from darkflow.core.exceptions import (
    DarkflowError,
    InsufficientFundsError,
    QuoteError,
    ValidationError,
)
from darkflow.core.models import (
    SYSTEM_PROGRAM_ID,
    EscrowRequest,
    NetworkMode,
    OrderSettledEvent,
    TokenInfo,
    TokenRegistry,
)
from darkflow.core.time import NonceSource
from darkflow.ledger.interface import LedgerClient
from darkflow.routing.resolver import Quote, RouteResolver


PRIVACY_FEE_RATE      = Decimal("0.003")
MIN_OUT_RETAIN_BPS    = 9900            # 1% slippage on the estimate
DEFAULT_POLL_INTERVAL = 5.0

_FOUR_PLACES = Decimal("0.0001")


class SwapStep(str, Enum):
    INPUT      = "input"
    DEPOSIT    = "deposit"
    PROCESSING = "processing"
    COMPLETE   = "complete"


# ─────────────────────────────────────────────────────────────
# Failures
# ─────────────────────────────────────────────────────────────

class FailureCategory(str, Enum):
    """User-visible failure classes. Values are the stable messages."""
    USER_CANCELLED         = "Transaction cancelled"
    INSUFFICIENT_FEE_FUNDS = "Insufficient SOL for transaction fees"
    INSUFFICIENT_BALANCE   = "Insufficient balance"
    GENERIC                = "Swap failed"


@dataclass(frozen=True)
class SwapFailure:
    category: FailureCategory
    detail:   str = ""

    @property
    def message(self) -> str:
        return self.category.value


def classify_failure(exc: BaseException) -> SwapFailure:
    detail = str(exc)
    lowered = detail.lower()
    if isinstance(exc, InsufficientFundsError):
        return SwapFailure(FailureCategory.INSUFFICIENT_BALANCE, detail)
    if "user rejected" in lowered:
        return SwapFailure(FailureCategory.USER_CANCELLED, detail)
    if "insufficient funds" in lowered:
        return SwapFailure(FailureCategory.INSUFFICIENT_FEE_FUNDS, detail)
    return SwapFailure(FailureCategory.GENERIC, detail)


# ─────────────────────────────────────────────────────────────
# Result
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SwapResult:
    amount_in:      str
    token_in:       str
    amount_out:     str
    token_out:      str
    rate:           Optional[str]
    privacy_fee:    str
    funds_returned: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "amount_in":      self.amount_in,
            "token_in":       self.token_in,
            "amount_out":     self.amount_out,
            "token_out":      self.token_out,
            "rate":           self.rate,
            "privacy_fee":    self.privacy_fee,
            "funds_returned": self.funds_returned,
        }


def format_amount(token: TokenInfo, amount: Decimal) -> str:
    return f"{amount:.{token.display_places}f}"


def privacy_fee(amount_in: Decimal) -> Decimal:
    return (amount_in * PRIVACY_FEE_RATE).quantize(_FOUR_PLACES)


def _parse_amount(amount: Union[str, int, Decimal]) -> Decimal:
    if isinstance(amount, float):
        amount = repr(amount)
    try:
        value = Decimal(amount)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError("Please enter a valid amount", {"amount": amount}) from None
    if not value.is_finite() or value <= 0:
        raise ValidationError("Please enter a valid amount", {"amount": amount})
    return value


# ─────────────────────────────────────────────────────────────
# Session
# ─────────────────────────────────────────────────────────────

class SwapSession:
    """
    One swap session for the ledger client's payer.

    simulate_matching and self_execute only take effect off mainnet.
    """

    def __init__(
        self,
        ledger:            LedgerClient,
        resolver:          RouteResolver,
        registry:          TokenRegistry,
        network_mode:      NetworkMode,
        poll_interval:     float = DEFAULT_POLL_INTERVAL,
        nonces:            Optional[NonceSource] = None,
        simulate_matching: bool = True,
        self_execute:      bool = True,
    ) -> None:
        self.ledger        = ledger
        self.resolver      = resolver
        self.registry      = registry
        self.network_mode  = network_mode
        self.poll_interval = poll_interval
        self.nonces        = nonces or NonceSource()
        self.simulate_matching = simulate_matching and not network_mode.is_mainnet
        self.self_execute      = self_execute and not network_mode.is_mainnet

        self._lock = threading.RLock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._clear()

    def _clear(self) -> None:
        self.step:           SwapStep = SwapStep.INPUT
        self.token_in:       Optional[TokenInfo] = None
        self.token_out:      Optional[TokenInfo] = None
        self.amount_text:    str = ""
        self.amount_in:      int = 0
        self.min_amount_out: int = 0
        self.nonce:          Optional[int] = None
        self.escrow_address: Optional[Pubkey] = None
        self.result:         Optional[SwapResult] = None
        self.failure:        Optional[SwapFailure] = None
        self._start_to_balance:  Optional[int] = None
        self._settlement_active: bool = False
        self._matching_sent:     bool = False

    # ── Input helpers ─────────────────────────────────────────

    def ensure_tokens_registered(self) -> List[str]:
        """Register every registry token. Returns the symbols newly registered."""
        registered = []
        for token in self.registry:
            try:
                if self.ledger.register_token(token) is not None:
                    registered.append(token.symbol)
                    logger.info("SESSION | token registered | symbol={} id={}", token.symbol, token.token_id)
            except DarkflowError as exc:
                logger.warning("SESSION | token registration failed | symbol={} error={}", token.symbol, exc)
        return registered

    def estimate(self, from_symbol: str, to_symbol: str, amount: Union[str, int, Decimal]) -> Optional[Quote]:
        """Quote for display. None when no estimate is available."""
        token_in  = self.registry.by_symbol(from_symbol)
        token_out = self.registry.by_symbol(to_symbol)
        try:
            return self.resolver.quote(
                token_in.mint,
                token_out.mint,
                _parse_amount(amount),
                token_in.decimals,
                token_out.decimals,
                self.network_mode,
            )
        except (QuoteError, ValidationError) as exc:
            logger.warning("SESSION | quote error | {}->{} error={}", from_symbol, to_symbol, exc)
            return None

    def balance(self, token: TokenInfo) -> Optional[int]:
        """Payer's balance in base units, or None when it cannot be read."""
        try:
            return self.ledger.get_balance(self.ledger.payer, token)
        except DarkflowError as exc:
            logger.warning("SESSION | balance fetch error | token={} error={}", token.symbol, exc)
            return None

    # ── Transitions ───────────────────────────────────────────

    def submit(self, from_symbol: str, to_symbol: str, amount: Union[str, int, Decimal]) -> bool:
        """
        INPUT -> DEPOSIT. Validates, creates the escrow and records the
        to-asset starting balance. On failure stays in INPUT, sets
        self.failure and returns False.
        """
        with self._lock:
            if self.step is not SwapStep.INPUT:
                raise RuntimeError(f"submit() not allowed in step {self.step.value}")
            self.failure = None
            try:
                self._submit(from_symbol, to_symbol, amount)
            except Exception as exc:
                self.failure = classify_failure(exc)
                logger.error("SESSION | submit failed | category={} detail={}",
                             self.failure.category.name, self.failure.detail)
                return False
            return True

    def _submit(self, from_symbol: str, to_symbol: str, amount: Union[str, int, Decimal]) -> None:
        token_in  = self.registry.by_symbol(from_symbol)
        token_out = self.registry.by_symbol(to_symbol)
        value = _parse_amount(amount)
        if token_in.token_id == token_out.token_id:
            raise ValidationError("Cannot swap the same token", {"token": from_symbol})

        known = self.balance(token_in)
        if known is not None and token_in.from_base_units(known) < value:
            raise InsufficientFundsError(
                f"Insufficient {from_symbol} balance",
                {"balance": format_amount(token_in, token_in.from_base_units(known))},
            )

        quote   = self.estimate(from_symbol, to_symbol, value)
        min_out = quote.output_base_units * MIN_OUT_RETAIN_BPS // 10_000 if quote else 0
        nonce   = self.nonces.next()
        request = EscrowRequest(
            nonce=          nonce,
            amount_in=      token_in.to_base_units(value),
            min_amount_out= min_out,
            token_in=       token_in,
            token_out=      token_out,
        )

        start_balance = self.balance(token_out)
        tx = self.ledger.create_escrow(request)

        self.token_in          = token_in
        self.token_out         = token_out
        self.amount_text       = str(amount)
        self.amount_in         = request.amount_in
        self.min_amount_out    = min_out
        self.nonce             = nonce
        self.escrow_address    = self.ledger.addresses.escrow_address(self.ledger.payer, nonce)
        self._start_to_balance = start_balance
        self.step              = SwapStep.DEPOSIT
        logger.info("SESSION | escrow created | nonce={} escrow={} tx={}", nonce, self.escrow_address, tx)

    def tick(self) -> SwapStep:
        """One poll. Never raises; returns the step after the poll."""
        with self._lock:
            if self.step in (SwapStep.DEPOSIT, SwapStep.PROCESSING):
                try:
                    self._poll()
                except Exception as exc:
                    logger.warning("SESSION | poll error | step={} error={!r}", self.step.value, exc)
            return self.step

    def _poll(self) -> None:
        escrow = self.ledger.fetch_escrow(self.escrow_address)
        if self.step is SwapStep.DEPOSIT:
            if escrow is None or not escrow.is_funded:
                return
            self.step = SwapStep.PROCESSING
            logger.info("SESSION | deposit detected | nonce={}", self.nonce)
            if self.simulate_matching and not self._matching_sent:
                self._request_matching()

        settlement = self.ledger.fetch_settlement(self.ledger.addresses.settlement_address(self.nonce))
        if settlement is None:
            self._complete()
            return
        if not settlement.active:
            if self._settlement_active:
                self._complete()
            return

        self._settlement_active = True
        if self.self_execute and escrow is not None and escrow.is_funded:
            self._execute_simulated()

    def _request_matching(self) -> None:
        self._matching_sent = True
        event = OrderSettledEvent(
            nonce=          self.nonce,
            amount_in=      self.amount_in,
            min_amount_out= self.min_amount_out,
            token_in_id=    self.token_in.token_id,
            token_out_id=   self.token_out.token_id,
        )
        try:
            tx = self.ledger.simulate_settlement_activation(event)
            logger.info("SESSION | settlement active (simulated) | nonce={} tx={}", self.nonce, tx)
        except DarkflowError as exc:
            logger.warning("SESSION | simulated matching failed | nonce={} error={}", self.nonce, exc)

    def _execute_simulated(self) -> None:
        accounts = self.ledger.execution_accounts(
            self.nonce,
            self.escrow_address,
            self.token_in.token_id,
            self.token_out.token_id,
            SYSTEM_PROGRAM_ID,
        )
        try:
            tx = self.ledger.execute_swap_simulated(accounts, self.nonce)
            logger.info("SESSION | test swap sent | nonce={} tx={}", self.nonce, tx)
        except DarkflowError as exc:
            # the keeper may have executed first
            logger.info("SESSION | test swap not applied | nonce={} error={}", self.nonce, exc)

    def _complete(self) -> None:
        final_balance = self.balance(self.token_out)
        amount_in = Decimal(self.amount_text)
        fee = privacy_fee(amount_in)

        out_units = 0
        if final_balance is not None and self._start_to_balance is not None:
            out_units = max(final_balance - self._start_to_balance, 0)
        amount_out = self.token_out.from_base_units(out_units)

        rate = None
        if out_units > 0:
            rate = str((amount_in / amount_out).quantize(_FOUR_PLACES))

        self.result = SwapResult(
            amount_in=      self.amount_text,
            token_in=       self.token_in.symbol,
            amount_out=     format_amount(self.token_out, amount_out),
            token_out=      self.token_out.symbol,
            rate=           rate,
            privacy_fee=    str(fee),
            funds_returned= out_units == 0,
        )
        self.step = SwapStep.COMPLETE
        self._stop.set()
        logger.info("SESSION | complete | nonce={} result={}", self.nonce, self.result.to_dict())

    def reset(self) -> None:
        """COMPLETE -> INPUT."""
        with self._lock:
            if self.step is not SwapStep.COMPLETE:
                raise RuntimeError(f"reset() not allowed in step {self.step.value}")
            self._clear()

    # ── Polling thread ────────────────────────────────────────

    def start(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stop.clear()
            self._thread = threading.Thread(
                target=self._run, name="darkflow-swap-session", daemon=True
            )
            self._thread.start()

    def _run(self) -> None:
        while not self._stop.wait(self.poll_interval):
            if self.tick() is SwapStep.COMPLETE:
                return

    def close(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None

    @property
    def polling(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
