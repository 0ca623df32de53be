"""
darkflow/ledger/solana.py

LedgerClient over a Solana cluster running the swap program.

Reads go through JSON-RPC (solana-py's sync Client). Instructions are
encoded with darkflow.core.codec, signed with the credential's solders
Keypair and confirmed before returning. OrderSettledEvent payloads are
pulled out of program logs on a websocket logs subscription that runs its
own asyncio loop on a background thread.
"""

import asyncio
import threading
from typing import Any, List, Optional, Sequence

import base58
import httpx
from loguru import logger
from solana.rpc.api import Client
from solana.rpc.commitment import Confirmed
from solana.rpc.core import RPCException
from solana.rpc.types import MemcmpOpts, TokenAccountOpts, TxOpts
from solana.rpc.websocket_api import connect
from solders.instruction import AccountMeta
from solders.instruction import Instruction as SoldersInstruction
from solders.message import Message
from solders.pubkey import Pubkey
from solders.rpc.config import RpcTransactionLogsFilterMentions
from solders.rpc.responses import LogsNotification
from solders.system_program import ID as SYSTEM_PROGRAM
from solders.transaction import Transaction

from darkflow.core import codec
from darkflow.core.addresses import u64_le
from darkflow.core.crypto import KeypairManager
from darkflow.core.exceptions import SubmissionError, ValidationError
from darkflow.core.models import (
    WRAPPED_SOL_MINT,
    EscrowRecord,
    EscrowRequest,
    ExecutionAccounts,
    OrderSettledEvent,
    RoutePlan,
    SettlementRecord,
    TokenInfo,
    TokenMappingRecord,
    TokenRegistry,
)
from darkflow.core.network import validate_endpoint, websocket_endpoint
from darkflow.ledger.interface import EventCallback, LedgerClient, Subscription


_RECONNECT_DELAY_SECONDS = 2.0


# ─────────────────────────────────────────────────────────────
# Websocket subscription
# ─────────────────────────────────────────────────────────────

class LogsSubscription(Subscription):
    """
    Websocket logs subscription mentioning the program id.

    Reconnects after transport errors until cancelled. cancel() asks the
    loop to send logs_unsubscribe and waits for the thread to exit; it
    returns False if the thread is still running or the unsubscribe failed.
    """

    def __init__(self, ws_url: str, program_id: Pubkey, callback: EventCallback) -> None:
        self._ws_url     = ws_url
        self._program_id = program_id
        self._callback   = callback
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stop: Optional[asyncio.Event] = None
        self._started    = threading.Event()
        self._registered = False
        self._unsubscribe_failed = False
        self._active     = True
        self._thread     = threading.Thread(
            target=self._run, name="darkflow-logs-subscription", daemon=True
        )
        self._thread.start()
        self._started.wait()

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self, timeout: Optional[float] = None) -> bool:
        if self._active:
            self._active = False
            self._loop.call_soon_threadsafe(self._stop.set)
        self._thread.join(timeout)
        if self._thread.is_alive() or self._unsubscribe_failed:
            return False
        return not self._registered

    def _run(self) -> None:
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)
        self._stop = asyncio.Event()
        self._started.set()
        try:
            self._loop.run_until_complete(self._supervise())
        finally:
            self._loop.close()

    async def _supervise(self) -> None:
        while not self._stop.is_set():
            try:
                await self._listen()
            except Exception as exc:
                self._registered = False
                logger.warning("LEDGER | websocket error | url={} error={!r}", self._ws_url, exc)
                try:
                    await asyncio.wait_for(self._stop.wait(), _RECONNECT_DELAY_SECONDS)
                except asyncio.TimeoutError:
                    pass

    async def _listen(self) -> None:
        async with connect(self._ws_url) as ws:
            await ws.logs_subscribe(
                RpcTransactionLogsFilterMentions(self._program_id), commitment=Confirmed
            )
            first = await ws.recv()
            subscription_id = first[0].result
            self._registered = True
            logger.info("LEDGER | subscribed | subscription={}", subscription_id)

            stop_wait = asyncio.ensure_future(self._stop.wait())
            try:
                while not self._stop.is_set():
                    recv = asyncio.ensure_future(ws.recv())
                    done, _ = await asyncio.wait(
                        {recv, stop_wait}, return_when=asyncio.FIRST_COMPLETED
                    )
                    if recv not in done:
                        recv.cancel()
                        break
                    for message in recv.result():
                        self._handle_message(message)
            finally:
                stop_wait.cancel()

            try:
                await ws.logs_unsubscribe(subscription_id)
            except Exception as exc:
                # cancel() reports unconfirmed from here on
                self._unsubscribe_failed = True
                logger.warning(
                    "LEDGER | unsubscribe failed | subscription={} error={!r}", subscription_id, exc
                )
                return
            self._registered = False
            logger.info("LEDGER | unsubscribed | subscription={}", subscription_id)

    def _handle_message(self, message: Any) -> None:
        if not isinstance(message, LogsNotification):
            return
        value = message.result.value
        if value.err is not None:
            return
        for payload in codec.parse_order_settled_logs(value.logs):
            try:
                self._callback(payload)
            except Exception as exc:
                logger.error("LEDGER | subscriber callback failed | error={!r}", exc)


# ─────────────────────────────────────────────────────────────
# Client
# ─────────────────────────────────────────────────────────────

class SolanaLedgerClient(LedgerClient):

    def __init__(
        self,
        endpoint:    str,
        program_id:  Pubkey,
        signer:      KeypairManager,
        registry:    TokenRegistry,
        ws_endpoint: Optional[str] = None,
        client:      Optional[Client] = None,
    ) -> None:
        self.endpoint    = validate_endpoint(endpoint)
        self.ws_endpoint = validate_endpoint(
            ws_endpoint or websocket_endpoint(endpoint), websocket=True
        )
        self.program_id = program_id
        self.signer     = signer
        self.registry   = registry
        self.rpc        = client or Client(self.endpoint, commitment=Confirmed)

    @property
    def payer(self) -> Pubkey:
        return self.signer.pubkey

    # ── Subscription ──────────────────────────────────────────

    def subscribe_order_settled(self, callback: EventCallback) -> Subscription:
        return LogsSubscription(self.ws_endpoint, self.program_id, callback)

    # ── Reads ─────────────────────────────────────────────────

    def _account_data(self, address: Pubkey) -> Optional[bytes]:
        try:
            account = self.rpc.get_account_info(address).value
        except (RPCException, httpx.HTTPError) as exc:
            raise SubmissionError(f"get_account_info failed: {exc}", {"address": str(address)}) from exc
        if account is None:
            return None
        return bytes(account.data)

    def _token_id_for_mint(self, mint: Pubkey) -> int:
        return self.registry.by_mint(mint).token_id

    def fetch_escrow(self, address: Pubkey) -> Optional[EscrowRecord]:
        data = self._account_data(address)
        if data is None:
            return None
        return codec.decode_escrow(address, data, self._token_id_for_mint)

    def fetch_settlement(self, address: Pubkey) -> Optional[SettlementRecord]:
        data = self._account_data(address)
        if data is None:
            return None
        return codec.decode_settlement(address, data)

    def fetch_token_mapping(self, address: Pubkey) -> Optional[TokenMappingRecord]:
        data = self._account_data(address)
        if data is None:
            return None
        return codec.decode_token_mapping(address, data)

    def find_escrows_by_nonce(self, nonce: int) -> List[EscrowRecord]:
        filters = [
            codec.ESCROW_ACCOUNT_SIZE,
            MemcmpOpts(
                offset=codec.ESCROW_NONCE_OFFSET,
                bytes=base58.b58encode(u64_le(nonce)).decode("ascii"),
            ),
        ]
        try:
            keyed = self.rpc.get_program_accounts(
                self.program_id, encoding="base64", filters=filters
            ).value
        except (RPCException, httpx.HTTPError) as exc:
            raise SubmissionError(f"get_program_accounts failed: {exc}", {"nonce": nonce}) from exc

        records: List[EscrowRecord] = []
        for item in keyed:
            try:
                records.append(
                    codec.decode_escrow(item.pubkey, bytes(item.account.data), self._token_id_for_mint)
                )
            except ValidationError as exc:
                logger.warning("LEDGER | undecodable escrow | address={} error={}", item.pubkey, exc)
        return records

    def get_balance(self, owner: Pubkey, token: TokenInfo) -> int:
        try:
            if token.mint == WRAPPED_SOL_MINT:
                return self.rpc.get_balance(owner).value
            accounts = self.rpc.get_token_accounts_by_owner_json_parsed(
                owner, TokenAccountOpts(mint=token.mint)
            ).value
        except (RPCException, httpx.HTTPError) as exc:
            raise SubmissionError(f"Balance query failed: {exc}", {"owner": str(owner)}) from exc
        return sum(
            int(item.account.data.parsed["info"]["tokenAmount"]["amount"]) for item in accounts
        )

    # ── Instructions ──────────────────────────────────────────

    def _send(self, name: str, data: bytes, metas: Sequence[AccountMeta]) -> str:
        instruction = SoldersInstruction(self.program_id, data, list(metas))
        keypair     = self.signer.to_keypair()
        try:
            blockhash = self.rpc.get_latest_blockhash().value.blockhash
            message   = Message([instruction], keypair.pubkey())
            tx        = Transaction([keypair], message, blockhash)
            signature = self.rpc.send_transaction(
                tx, opts=TxOpts(skip_preflight=False, preflight_commitment=Confirmed)
            ).value
            self.rpc.confirm_transaction(signature, commitment=Confirmed)
        except (RPCException, httpx.HTTPError) as exc:
            raise SubmissionError(f"{name} failed: {exc}", {"instruction": name}) from exc
        logger.debug("LEDGER | confirmed | instruction={} signature={}", name, signature)
        return str(signature)

    def _payer_meta(self) -> AccountMeta:
        return AccountMeta(self.payer, is_signer=True, is_writable=True)

    def register_token(self, token: TokenInfo) -> Optional[str]:
        address = self.addresses.token_mapping_address(token.token_id)
        if self.fetch_token_mapping(address) is not None:
            return None
        metas = [
            self._payer_meta(),
            AccountMeta(address, is_signer=False, is_writable=True),
            AccountMeta(token.mint, is_signer=False, is_writable=False),
            AccountMeta(SYSTEM_PROGRAM, is_signer=False, is_writable=False),
        ]
        try:
            return self._send("register_token", codec.encode_register_token(token.token_id), metas)
        except SubmissionError:
            # another registrant may have won the race
            if self.fetch_token_mapping(address) is not None:
                return None
            raise

    def create_escrow(self, request: EscrowRequest) -> str:
        escrow = self.addresses.escrow_address(self.payer, request.nonce)
        metas = [
            self._payer_meta(),
            AccountMeta(escrow, is_signer=False, is_writable=True),
            AccountMeta(request.token_in.mint, is_signer=False, is_writable=False),
            AccountMeta(request.token_out.mint, is_signer=False, is_writable=False),
            AccountMeta(SYSTEM_PROGRAM, is_signer=False, is_writable=False),
        ]
        data = codec.encode_create_private_swap(
            request.amount_in, request.min_amount_out, request.nonce
        )
        return self._send("create_private_swap", data, metas)

    def _execution_metas(self, accounts: ExecutionAccounts) -> List[AccountMeta]:
        return [
            self._payer_meta(),
            AccountMeta(accounts.settlement, is_signer=False, is_writable=True),
            AccountMeta(accounts.escrow, is_signer=False, is_writable=True),
            AccountMeta(accounts.token_in_mapping, is_signer=False, is_writable=False),
            AccountMeta(accounts.token_out_mapping, is_signer=False, is_writable=False),
            AccountMeta(accounts.routing_program, is_signer=False, is_writable=False),
        ]

    def execute_swap(self, accounts: ExecutionAccounts, route: RoutePlan) -> str:
        metas = self._execution_metas(accounts)
        # The escrow signs the routed call by seeds, not in the outer transaction.
        metas.extend(
            AccountMeta(a.pubkey, is_signer=a.is_signer and a.pubkey == self.payer, is_writable=a.is_writable)
            for a in route.accounts
        )
        return self._send("execute_swap", codec.encode_execute_swap(route.data), metas)

    def execute_swap_simulated(self, accounts: ExecutionAccounts, nonce: int) -> str:
        return self._send(
            "execute_swap_test",
            codec.encode_execute_swap_test(nonce),
            self._execution_metas(accounts),
        )

    def simulate_settlement_activation(self, event: OrderSettledEvent) -> str:
        metas = [
            AccountMeta(self.addresses.settlement_address(event.nonce), is_signer=False, is_writable=True),
            self._payer_meta(),
        ]
        data = codec.encode_simulate_match_order(
            event.amount_in,
            event.min_amount_out,
            event.token_in_id,
            event.token_out_id,
            event.nonce,
        )
        return self._send("simulate_match_order", data, metas)
