"""
tests/conftest.py

Shared fixtures: an in-memory ledger authority, clients signing as a user
and as a keeper, and helpers to walk an order through its lifecycle.
"""

import base64
import json
import time
from decimal import Decimal

import httpx
import pytest
from solders.pubkey import Pubkey

from darkflow.core.crypto import KeypairManager
from darkflow.core.models import EscrowRequest, OrderSettledEvent, TokenRegistry
from darkflow.ledger.memory import InMemoryLedger, InMemoryLedgerClient
from darkflow.routing.jupiter import JupiterClient


PROGRAM_ID = Pubkey.from_string("5XQ8wk4T8haHVRBFF1XBnNUUifyXiv4WUTvnGC2P4oVo")
JUPITER_PROGRAM_ID = Pubkey.from_string("JUP6LkbZbjS1jKKwapdHNy74zcZ3tLUZoi5QNyVTaV4")


@pytest.fixture
def registry():
    return TokenRegistry.default()


@pytest.fixture
def user_key():
    return KeypairManager.generate()


@pytest.fixture
def keeper_key():
    return KeypairManager.generate()


@pytest.fixture
def ledger():
    return InMemoryLedger(PROGRAM_ID)


@pytest.fixture
def mainnet_ledger():
    """Authority with the test-only instructions disabled."""
    return InMemoryLedger(PROGRAM_ID, allow_test_instructions=False)


@pytest.fixture
def user_client(ledger, user_key):
    return InMemoryLedgerClient(ledger, user_key)


@pytest.fixture
def keeper_client(ledger, keeper_key):
    return InMemoryLedgerClient(ledger, keeper_key)


@pytest.fixture
def registered(user_client, registry):
    """Every registry token has a mapping record."""
    for token in registry:
        user_client.register_token(token)
    return registry


@pytest.fixture
def wait_until():
    """Poll predicate until true or timeout. Returns the final result."""
    def _wait(predicate, timeout=5.0, interval=0.01):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(interval)
        return predicate()
    return _wait


def make_order(
    client,
    registry,
    nonce,
    from_symbol="USDC",
    to_symbol="SOL",
    amount=Decimal("1000"),
    fund=True,
    activate=True,
):
    """
    Create an escrow as client's payer, then optionally fund it and
    complete matching. Returns (escrow_address, event).
    """
    token_in  = registry.by_symbol(from_symbol)
    token_out = registry.by_symbol(to_symbol)
    request = EscrowRequest(
        nonce=          nonce,
        amount_in=      token_in.to_base_units(amount),
        min_amount_out= 0,
        token_in=       token_in,
        token_out=      token_out,
    )
    client.create_escrow(request)
    escrow = client.addresses.escrow_address(client.payer, nonce)
    event = OrderSettledEvent(
        nonce=          nonce,
        amount_in=      request.amount_in,
        min_amount_out= request.min_amount_out,
        token_in_id=    token_in.token_id,
        token_out_id=   token_out.token_id,
    )
    if fund:
        client.ledger.deposit(escrow, request.amount_in)
    if fund and activate:
        client.ledger.complete_matching(event)
    return escrow, event


@pytest.fixture
def order(user_client, registered):
    """Factory: make_order bound to the user client and registry."""
    def _order(nonce, **kwargs):
        return make_order(user_client, registered, nonce, **kwargs)
    return _order


# ── Aggregator double ─────────────────────────────────────────

ROUTE_DATA = b"\xe5\x17\xcb\x97\x7a\xe3\xad\x2a\x01\x02"


def jupiter_app(
    out_amount="25000000000",
    program_id=JUPITER_PROGRAM_ID,
    quote_status=200,
    seen=None,
):
    """
    httpx.MockTransport handler standing in for the aggregator API.
    Requests are appended to seen when given.
    """
    def _handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        if request.url.path.endswith("/quote"):
            if quote_status != 200:
                return httpx.Response(quote_status, json={"error": "unavailable"})
            return httpx.Response(200, json={
                "inputMint":  request.url.params["inputMint"],
                "outputMint": request.url.params["outputMint"],
                "inAmount":   request.url.params["amount"],
                "outAmount":  out_amount,
            })
        if request.url.path.endswith("/swap-instructions"):
            body = json.loads(request.content)
            return httpx.Response(200, json={
                "swapInstruction": {
                    "programId": str(program_id),
                    "accounts": [
                        {"pubkey": body["userPublicKey"], "isSigner": False, "isWritable": True},
                        {"pubkey": str(program_id), "isSigner": False, "isWritable": False},
                    ],
                    "data": base64.b64encode(ROUTE_DATA).decode("ascii"),
                },
            })
        return httpx.Response(404)
    return _handler


def jupiter_client(handler):
    return JupiterClient(client=httpx.Client(transport=httpx.MockTransport(handler)))
