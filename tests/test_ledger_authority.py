"""
tests/test_ledger_authority.py

In-memory swap program: signatures, seed constraints, record lifecycle
and event delivery.

Run:
    pytest tests/test_ledger_authority.py -v
"""

import hashlib
from decimal import Decimal

import pytest

from darkflow.core.crypto import KeypairManager
from darkflow.core.exceptions import (
    AlreadyFundedError,
    PreconditionFailedError,
    RecordExistsError,
    RecordNotFoundError,
    SettlementNotActiveError,
    SubmissionError,
    UnauthorizedSignerError,
)
from darkflow.core.models import SYSTEM_PROGRAM_ID, EscrowRequest, OrderSettledEvent
from darkflow.ledger.instructions import Instruction, InstructionKind
from darkflow.ledger.memory import InMemoryLedgerClient

from conftest import make_order


def _accounts(client, event, escrow):
    return client.execution_accounts(
        event.nonce, escrow, event.token_in_id, event.token_out_id, SYSTEM_PROGRAM_ID
    )


# ─────────────────────────────────────────────────────────────
# Signatures
# ─────────────────────────────────────────────────────────────

class TestSignatures:

    def test_tampered_instruction_rejected(self, ledger, user_key, registry):
        token = registry.by_symbol("USDC")
        ix = Instruction.create(
            kind=     InstructionKind.REGISTER_TOKEN,
            payer=    str(user_key.pubkey),
            accounts= {
                "token_mapping": str(ledger.addresses.token_mapping_address(1)),
                "mint":          str(token.mint),
            },
            args=     {"token_id": 1},
        ).sign(user_key)
        ix.args["token_id"] = 2

        with pytest.raises(UnauthorizedSignerError):
            ledger.submit(ix)
        assert ledger.accepted_instructions == []

    def test_unsigned_instruction_rejected(self, ledger, user_key):
        ix = Instruction.create(
            InstructionKind.EXECUTE_SWAP_SIMULATED, str(user_key.pubkey), {}, {"nonce": 1}
        )
        with pytest.raises(UnauthorizedSignerError):
            ledger.submit(ix)

    def test_signing_with_foreign_key(self, user_key, keeper_key):
        ix = Instruction.create(
            InstructionKind.EXECUTE_SWAP_SIMULATED, str(user_key.pubkey), {}, {"nonce": 1}
        )
        with pytest.raises(ValueError):
            ix.sign(keeper_key)

    def test_unknown_kind(self, user_key):
        with pytest.raises(ValueError):
            Instruction.create("drain_vault", str(user_key.pubkey), {})

    def test_identical_content_shares_id(self, user_key):
        a = Instruction.create(InstructionKind.EXECUTE_SWAP_SIMULATED, str(user_key.pubkey), {}, {"nonce": 4})
        b = Instruction.create(InstructionKind.EXECUTE_SWAP_SIMULATED, str(user_key.pubkey), {}, {"nonce": 4})
        assert a.instruction_id == b.instruction_id

    def test_signing_bytes_ignore_key_order(self, user_key):
        payer = str(user_key.pubkey)
        a = Instruction.create(InstructionKind.EXECUTE_SWAP_SIMULATED, payer, {"escrow": "e", "settlement": "s"}, {"nonce": 4})
        b = Instruction.create(InstructionKind.EXECUTE_SWAP_SIMULATED, payer, {"settlement": "s", "escrow": "e"}, {"nonce": 4})
        assert a.signing_bytes() == b.signing_bytes()
        assert a.instruction_id == hashlib.sha256(a.signing_bytes()).hexdigest()


# ─────────────────────────────────────────────────────────────
# Token mappings
# ─────────────────────────────────────────────────────────────

class TestTokenMappings:

    def test_register_is_idempotent(self, user_client, registry):
        token = registry.by_symbol("SOL")
        assert user_client.register_token(token) is not None
        assert user_client.register_token(token) is None

        mapping = user_client.fetch_token_mapping(user_client.addresses.token_mapping_address(2))
        assert mapping.mint == token.mint
        assert mapping.token_id == 2

    def test_authority_rejects_second_create(self, ledger, user_key, registry):
        token = registry.by_symbol("USDT")

        def _ix():
            return Instruction.create(
                kind=     InstructionKind.REGISTER_TOKEN,
                payer=    str(user_key.pubkey),
                accounts= {
                    "token_mapping": str(ledger.addresses.token_mapping_address(3)),
                    "mint":          str(token.mint),
                },
                args=     {"token_id": 3},
            ).sign(user_key)

        ledger.submit(_ix())
        with pytest.raises(RecordExistsError):
            ledger.submit(_ix())

    def test_address_must_match_seed(self, ledger, user_key, registry):
        ix = Instruction.create(
            kind=     InstructionKind.REGISTER_TOKEN,
            payer=    str(user_key.pubkey),
            accounts= {
                "token_mapping": str(ledger.addresses.token_mapping_address(9)),
                "mint":          str(registry.by_symbol("USDC").mint),
            },
            args=     {"token_id": 1},
        ).sign(user_key)
        with pytest.raises(PreconditionFailedError):
            ledger.submit(ix)


# ─────────────────────────────────────────────────────────────
# Escrow lifecycle
# ─────────────────────────────────────────────────────────────

class TestEscrow:

    def test_create_at_derived_address(self, user_client, registered):
        escrow, _ = make_order(user_client, registered, 100, fund=False)
        record = user_client.fetch_escrow(escrow)

        assert record.owner == user_client.payer
        assert record.nonce == 100
        assert record.is_funded is False
        assert user_client.find_escrows_by_nonce(100) == [record]
        assert user_client.find_escrows_by_nonce(101) == []

    def test_duplicate_nonce_rejected(self, user_client, registered):
        make_order(user_client, registered, 100, fund=False)
        with pytest.raises(RecordExistsError):
            make_order(user_client, registered, 100, fund=False)

    def test_same_nonce_different_owner(self, ledger, user_client, keeper_key, registered):
        other = InMemoryLedgerClient(ledger, keeper_key)
        first, _  = make_order(user_client, registered, 100, fund=False)
        second, _ = make_order(other, registered, 100, fund=False)
        assert first != second
        assert len(ledger.find_escrows_by_nonce(100)) == 2

    def test_second_owner_cannot_fund_same_nonce(self, ledger, user_client, keeper_key, registered):
        other = InMemoryLedgerClient(ledger, keeper_key)
        first, _          = make_order(user_client, registered, 77, activate=False)
        second, second_ev = make_order(other, registered, 77, fund=False)
        settlement = ledger.get_settlement(ledger.addresses.settlement_address(77))

        with pytest.raises(RecordExistsError):
            ledger.deposit(second, second_ev.amount_in)

        # Step 1: the second escrow stays unfunded
        assert ledger.get_escrow(second).is_funded is False
        # Step 2: the settlement record still belongs to the first funding
        assert ledger.get_escrow(first).is_funded is True
        assert ledger.get_settlement(settlement.address) == settlement

    def test_partial_then_full_deposit(self, ledger, user_client, registered):
        escrow, event = make_order(user_client, registered, 100, fund=False)
        settlement = ledger.addresses.settlement_address(100)

        assert ledger.deposit(escrow, event.amount_in // 2) is False
        assert ledger.get_escrow(escrow).is_funded is False
        assert ledger.get_settlement(settlement) is None

        assert ledger.deposit(escrow, event.amount_in - event.amount_in // 2) is True
        assert ledger.get_escrow(escrow).is_funded is True
        assert ledger.get_settlement(settlement).active is False

    def test_funded_once(self, ledger, user_client, registered):
        escrow, event = make_order(user_client, registered, 100, activate=False)
        with pytest.raises(AlreadyFundedError):
            ledger.deposit(escrow, event.amount_in)

    def test_deposit_to_unknown_escrow(self, ledger, user_key):
        with pytest.raises(RecordNotFoundError):
            ledger.deposit(user_key.pubkey, 1)

    def test_reads_are_copies(self, ledger, user_client, registered):
        escrow, _ = make_order(user_client, registered, 100, fund=False)
        ledger.get_escrow(escrow).is_funded = True
        assert ledger.get_escrow(escrow).is_funded is False


# ─────────────────────────────────────────────────────────────
# Settlement lifecycle
# ─────────────────────────────────────────────────────────────

class TestSettlement:

    def test_inactive_settlement_not_executable(self, user_client, keeper_client, registered):
        escrow, event = make_order(user_client, registered, 200, activate=False)
        with pytest.raises(SettlementNotActiveError):
            keeper_client.execute_swap_simulated(_accounts(keeper_client, event, escrow), 200)

    def test_execute_closes_settlement(self, ledger, order, keeper_client):
        escrow, event = order(200)
        accounts = _accounts(keeper_client, event, escrow)

        keeper_client.execute_swap_simulated(accounts, 200)
        assert ledger.get_settlement(accounts.settlement) is None
        assert ledger.get_escrow(escrow) is not None
        assert ledger.get_escrow(escrow).is_active is False
        assert ledger.get_escrow(escrow).is_funded is True

        with pytest.raises(RecordNotFoundError):
            keeper_client.execute_swap_simulated(accounts, 200)

    def test_missing_settlement(self, keeper_client, user_key, registered):
        event = OrderSettledEvent(300, 10, 0, 1, 2)
        escrow = keeper_client.addresses.escrow_address(user_key.pubkey, 300)
        with pytest.raises(RecordNotFoundError):
            keeper_client.execute_swap_simulated(_accounts(keeper_client, event, escrow), 300)

    def test_escrow_from_other_nonce_rejected(self, order, keeper_client):
        escrow_a, event_a = order(201)
        escrow_b, _       = order(202)
        with pytest.raises(PreconditionFailedError):
            keeper_client.execute_swap_simulated(_accounts(keeper_client, event_a, escrow_b), 201)

    def test_wrong_token_mapping_rejected(self, order, keeper_client):
        escrow, event = order(200)
        wrong = OrderSettledEvent(event.nonce, event.amount_in, 0, 3, event.token_out_id)
        with pytest.raises(PreconditionFailedError):
            keeper_client.execute_swap_simulated(_accounts(keeper_client, wrong, escrow), 200)

    def test_unregistered_token_mapping(self, user_client, keeper_client, registry):
        user_client.register_token(registry.by_symbol("USDC"))
        escrow, event = make_order(user_client, registry, 200)
        with pytest.raises(RecordNotFoundError):
            keeper_client.execute_swap_simulated(_accounts(keeper_client, event, escrow), 200)

    def test_simulated_activation(self, ledger, user_client, registered):
        escrow, event = make_order(user_client, registered, 200, activate=False)
        user_client.simulate_settlement_activation(event)

        settlement = ledger.get_settlement(ledger.addresses.settlement_address(200))
        assert settlement.active is True
        assert settlement.amount_in == event.amount_in
        assert settlement.token_out_id == event.token_out_id

    def test_activation_requires_settlement(self, user_client, registered):
        make_order(user_client, registered, 200, fund=False)
        with pytest.raises(RecordNotFoundError):
            user_client.simulate_settlement_activation(OrderSettledEvent(200, 10, 0, 1, 2))

    def test_activating_active_settlement_rejected(self, user_client, order):
        _, event = order(200)
        with pytest.raises(PreconditionFailedError):
            user_client.simulate_settlement_activation(event)


class TestMainnetDeployment:
    """Test-only instructions are unavailable when the feature is off."""

    @pytest.fixture
    def client(self, mainnet_ledger, user_key, registry):
        client = InMemoryLedgerClient(mainnet_ledger, user_key)
        for token in registry:
            client.register_token(token)
        return client

    def test_simulated_execution_unavailable(self, client, registry):
        escrow, event = make_order(client, registry, 400)
        with pytest.raises(SubmissionError):
            client.execute_swap_simulated(_accounts(client, event, escrow), 400)

    def test_simulated_activation_unavailable(self, client, registry):
        _, event = make_order(client, registry, 400, activate=False)
        with pytest.raises(SubmissionError):
            client.simulate_settlement_activation(event)


# ─────────────────────────────────────────────────────────────
# Events
# ─────────────────────────────────────────────────────────────

class TestEvents:

    def test_matching_emits_event(self, ledger, user_client, registered, wait_until):
        received = []
        subscription = user_client.subscribe_order_settled(received.append)
        try:
            _, event = make_order(user_client, registered, 500, amount=Decimal("5"))
            assert wait_until(lambda: len(received) == 1)
            assert received[0] == event.to_payload()
        finally:
            assert subscription.cancel(timeout=2.0) is True
        assert subscription.active is False

    def test_simulated_activation_emits_event(self, user_client, registered, wait_until):
        received = []
        subscription = user_client.subscribe_order_settled(received.append)
        try:
            _, event = make_order(user_client, registered, 501, activate=False)
            user_client.simulate_settlement_activation(event)
            assert wait_until(lambda: received == [event.to_payload()])
        finally:
            subscription.cancel(timeout=2.0)

    def test_no_delivery_after_cancel(self, ledger, wait_until):
        received = []
        subscription = ledger.subscribe(received.append)
        assert subscription.cancel(timeout=2.0) is True
        assert subscription.cancel(timeout=2.0) is True

        ledger.publish({"nonce": 1})
        assert wait_until(lambda: received != [], timeout=0.2) is False

    def test_failing_callback_does_not_stop_delivery(self, ledger, wait_until):
        received = []

        def _callback(payload):
            if payload["nonce"] == 1:
                raise RuntimeError("boom")
            received.append(payload)

        subscription = ledger.subscribe(_callback)
        try:
            ledger.publish({"nonce": 1})
            ledger.publish({"nonce": 2})
            assert wait_until(lambda: received == [{"nonce": 2}])
        finally:
            subscription.cancel(timeout=2.0)

    def test_rejected_instruction_leaves_no_trace(self, ledger, user_client, registered):
        before = len(ledger.accepted_instructions)
        request = EscrowRequest(
            nonce=          600,
            amount_in=      1,
            min_amount_out= 0,
            token_in=       registered.by_symbol("USDC"),
            token_out=      registered.by_symbol("SOL"),
        )
        user_client.create_escrow(request)
        with pytest.raises(RecordExistsError):
            user_client.create_escrow(request)
        assert len(ledger.accepted_instructions) == before + 1
