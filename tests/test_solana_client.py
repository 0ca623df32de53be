"""
tests/test_solana_client.py

Solana ledger client against a recording RPC double: account decoding,
the nonce-filtered program account scan, balance queries, transaction
assembly and error wrapping. No cluster is contacted.
"""

import asyncio
from types import SimpleNamespace

import base58
import pytest
from solana.rpc.api import Client
from solana.rpc.core import RPCException
from solders.hash import Hash

from darkflow.core import codec
from darkflow.core.addresses import u64_le
from darkflow.core.exceptions import SubmissionError
from darkflow.core.models import (
    SYSTEM_PROGRAM_ID,
    OrderSettledEvent,
    RouteAccount,
    RoutePlan,
    SettlementRecord,
)
from darkflow.ledger.solana import LogsSubscription, SolanaLedgerClient

from conftest import JUPITER_PROGRAM_ID, PROGRAM_ID


class FakeRpc:
    """Records calls; serves accounts from a dict keyed by address."""

    def __init__(self):
        self.accounts = {}
        self.program_accounts = []
        self.lamports = 0
        self.token_amounts = []
        self.calls = []
        self.sent = []
        self.fail_with = None

    def _maybe_fail(self):
        if self.fail_with is not None:
            raise self.fail_with

    def get_account_info(self, address):
        self._maybe_fail()
        data = self.accounts.get(address)
        return SimpleNamespace(value=None if data is None else SimpleNamespace(data=data))

    def get_program_accounts(self, program_id, encoding=None, filters=None):
        self._maybe_fail()
        self.calls.append(("get_program_accounts", program_id, encoding, filters))
        return SimpleNamespace(value=[
            SimpleNamespace(pubkey=address, account=SimpleNamespace(data=data))
            for address, data in self.program_accounts
        ])

    def get_balance(self, owner):
        self._maybe_fail()
        return SimpleNamespace(value=self.lamports)

    def get_token_accounts_by_owner_json_parsed(self, owner, opts):
        self._maybe_fail()
        self.calls.append(("get_token_accounts_by_owner_json_parsed", owner, opts))
        return SimpleNamespace(value=[
            SimpleNamespace(account=SimpleNamespace(data=SimpleNamespace(
                parsed={"info": {"tokenAmount": {"amount": amount}}}
            )))
            for amount in self.token_amounts
        ])

    def get_latest_blockhash(self):
        self._maybe_fail()
        return SimpleNamespace(value=SimpleNamespace(blockhash=Hash.default()))

    def send_transaction(self, tx, opts=None):
        self._maybe_fail()
        self.sent.append(tx)
        return SimpleNamespace(value=tx.signatures[0])

    def confirm_transaction(self, signature, commitment=None):
        return SimpleNamespace(value=[])


@pytest.fixture
def rpc():
    return FakeRpc()


@pytest.fixture
def client(rpc, user_key, registry):
    return SolanaLedgerClient(
        endpoint=   "http://127.0.0.1:8899",
        program_id= PROGRAM_ID,
        signer=     user_key,
        registry=   registry,
        client=     rpc,
    )


def _escrow_data(registry, owner, nonce):
    return codec.encode_escrow_account(
        owner=     owner,
        mint_in=   registry.by_symbol("USDC").mint,
        mint_out=  registry.by_symbol("SOL").mint,
        amount_in= 5_000_000,
        min_out=   0,
        nonce=     nonce,
        is_funded= True,
    )


# ─────────────────────────────────────────────────────────────
# Reads
# ─────────────────────────────────────────────────────────────

class TestReads:

    def test_websocket_endpoint_derived(self, client):
        assert client.ws_endpoint == "ws://127.0.0.1:8900"

    def test_default_rpc_is_sync_client(self, user_key, registry):
        client = SolanaLedgerClient("http://127.0.0.1:8899", PROGRAM_ID, user_key, registry)
        assert isinstance(client.rpc, Client)

    def test_missing_account(self, client, user_key):
        assert client.fetch_escrow(user_key.pubkey) is None
        assert client.fetch_settlement(user_key.pubkey) is None

    def test_fetch_escrow(self, client, rpc, registry, user_key):
        address = client.addresses.escrow_address(user_key.pubkey, 8)
        rpc.accounts[address] = _escrow_data(registry, user_key.pubkey, 8)

        record = client.fetch_escrow(address)
        assert record.address == address
        assert record.nonce == 8
        assert record.token_in_id == 1
        assert record.is_funded is True

    def test_fetch_settlement(self, client, rpc):
        address = client.addresses.settlement_address(8)
        record = SettlementRecord(address, 8, 10, 0, 1, 2, active=True)
        rpc.accounts[address] = codec.encode_settlement_account(record)
        assert client.fetch_settlement(address) == record

    def test_find_escrows_by_nonce_filters(self, client, rpc, registry, user_key):
        address = client.addresses.escrow_address(user_key.pubkey, 77)
        rpc.program_accounts = [
            (address, _escrow_data(registry, user_key.pubkey, 77)),
            (user_key.pubkey, b"garbage"),
        ]

        records = client.find_escrows_by_nonce(77)
        assert [r.address for r in records] == [address]

        _, program_id, encoding, filters = rpc.calls[0]
        assert program_id == PROGRAM_ID
        assert encoding == "base64"
        assert filters[0] == codec.ESCROW_ACCOUNT_SIZE
        assert filters[1].offset == 120
        assert filters[1].bytes == base58.b58encode(u64_le(77)).decode("ascii")

    def test_sol_balance(self, client, rpc, registry, user_key):
        rpc.lamports = 1_500_000_000
        assert client.get_balance(user_key.pubkey, registry.by_symbol("SOL")) == 1_500_000_000

    def test_token_balance_sums_accounts(self, client, rpc, registry, user_key):
        rpc.token_amounts = ["1000000", "250000"]
        assert client.get_balance(user_key.pubkey, registry.by_symbol("USDC")) == 1_250_000
        _, owner, opts = rpc.calls[-1]
        assert owner == user_key.pubkey
        assert opts.mint == registry.by_symbol("USDC").mint

    def test_rpc_error_wrapped(self, client, rpc, user_key):
        rpc.fail_with = RPCException("node is behind")
        with pytest.raises(SubmissionError):
            client.fetch_escrow(user_key.pubkey)
        with pytest.raises(SubmissionError):
            client.find_escrows_by_nonce(1)


# ─────────────────────────────────────────────────────────────
# Transactions
# ─────────────────────────────────────────────────────────────

class TestTransactions:

    def _instruction(self, rpc):
        tx = rpc.sent[-1]
        message = tx.message
        ix = message.instructions[0]
        return message, ix, [message.account_keys[i] for i in ix.accounts]

    def test_execute_swap_simulated(self, client, rpc, user_key):
        accounts = client.execution_accounts(9, user_key.pubkey, 1, 2, SYSTEM_PROGRAM_ID)
        signature = client.execute_swap_simulated(accounts, 9)

        message, ix, keys = self._instruction(rpc)
        assert signature == str(rpc.sent[-1].signatures[0])
        assert message.account_keys[ix.program_id_index] == PROGRAM_ID
        assert bytes(ix.data) == codec.encode_execute_swap_test(9)
        assert keys[0] == user_key.pubkey
        assert keys[1] == client.addresses.settlement_address(9)
        assert message.header.num_required_signatures == 1

    def test_execute_swap_appends_route_accounts(self, client, rpc, user_key):
        escrow = client.addresses.escrow_address(user_key.pubkey, 9)
        route = RoutePlan(
            program_id= JUPITER_PROGRAM_ID,
            data=       b"\x01\x02\x03",
            accounts=   [
                RouteAccount(escrow, is_signer=True, is_writable=True),
                RouteAccount(JUPITER_PROGRAM_ID, is_signer=False, is_writable=False),
            ],
        )
        accounts = client.execution_accounts(9, escrow, 1, 2, JUPITER_PROGRAM_ID)
        client.execute_swap(accounts, route)

        message, ix, keys = self._instruction(rpc)
        assert bytes(ix.data) == codec.encode_execute_swap(b"\x01\x02\x03")
        assert keys[-2] == escrow
        assert message.header.num_required_signatures == 1

    def test_simulated_activation(self, client, rpc):
        event = OrderSettledEvent(9, 10, 0, 1, 2)
        client.simulate_settlement_activation(event)
        _, ix, keys = self._instruction(rpc)
        assert keys[0] == client.addresses.settlement_address(9)
        assert bytes(ix.data) == codec.encode_simulate_match_order(10, 0, 1, 2, 9)

    def test_register_token_skips_existing(self, client, rpc, registry):
        token = registry.by_symbol("USDT")
        address = client.addresses.token_mapping_address(3)
        rpc.accounts[address] = codec.TOKEN_MAPPING_DISCRIMINATOR + bytes(token.mint) + u64_le(3)
        assert client.register_token(token) is None
        assert rpc.sent == []

    def test_register_token_sends(self, client, rpc, registry):
        assert client.register_token(registry.by_symbol("USDT")) is not None
        _, ix, _ = self._instruction(rpc)
        assert bytes(ix.data) == codec.encode_register_token(3)

    def test_send_failure_wrapped(self, client, rpc, user_key):
        rpc.fail_with = RPCException("Blockhash not found")
        accounts = client.execution_accounts(9, user_key.pubkey, 1, 2, SYSTEM_PROGRAM_ID)
        with pytest.raises(SubmissionError, match="execute_swap_test failed"):
            client.execute_swap_simulated(accounts, 9)


class TestLogsSubscription:

    def test_cancel_while_unreachable(self):
        received = []
        subscription = LogsSubscription("ws://127.0.0.1:1", PROGRAM_ID, received.append)
        assert subscription.active is True
        assert subscription.cancel(timeout=10.0) is True
        assert subscription.active is False
        assert received == []

    @pytest.mark.parametrize("unsubscribe_fails, confirmed", [(False, True), (True, False)])
    def test_cancel_reports_unsubscribe(self, monkeypatch, wait_until, unsubscribe_fails, confirmed):
        ws = FakeWebsocket(unsubscribe_fails)
        monkeypatch.setattr("darkflow.ledger.solana.connect", lambda url: ws)
        subscription = LogsSubscription("ws://127.0.0.1:8900", PROGRAM_ID, lambda payload: None)
        assert wait_until(lambda: ws.recv_calls >= 2)

        assert subscription.cancel(timeout=5.0) is confirmed
        assert ws.unsubscribed == [7]


class FakeWebsocket:
    """Acknowledges one subscription, then idles until cancelled."""

    def __init__(self, unsubscribe_fails):
        self.unsubscribe_fails = unsubscribe_fails
        self.recv_calls = 0
        self.unsubscribed = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    async def logs_subscribe(self, filter_, commitment=None):
        pass

    async def recv(self):
        self.recv_calls += 1
        if self.recv_calls == 1:
            return [SimpleNamespace(result=7)]
        await asyncio.sleep(3600)

    async def logs_unsubscribe(self, subscription_id):
        self.unsubscribed.append(subscription_id)
        if self.unsubscribe_fails:
            raise ConnectionError("socket closed")
