"""
Darkflow: Local Swap Example

Demonstrates:
- In-memory swap program (no cluster needed)
- Keeper watching for matched orders
- A user swap session from input to result
"""

import time

from solders.pubkey import Pubkey

from darkflow.core.crypto import KeypairManager
from darkflow.core.logs import configure_logging
from darkflow.core.models import NetworkMode, TokenRegistry
from darkflow.ledger.memory import InMemoryLedger, InMemoryLedgerClient
from darkflow.routing.resolver import RouteResolver
from darkflow.runtime.session import SwapSession, SwapStep
from darkflow.settlement.watcher import SettlementWatcher, WatcherConfig

PROGRAM_ID = "5XQ8wk4T8haHVRBFF1XBnNUUifyXiv4WUTvnGC2P4oVo"


def main():
    """Walk one USDC -> SOL swap through the local pipeline."""

    configure_logging("WARNING")
    print("=" * 60)
    print("Darkflow: Local Swap Example")
    print("=" * 60)
    print()

    # 1️⃣ Program and participants
    print("1️⃣ Starting in-memory swap program...")
    ledger   = InMemoryLedger(Pubkey.from_string(PROGRAM_ID))
    registry = TokenRegistry.default()
    user     = InMemoryLedgerClient(ledger, KeypairManager.generate())
    keeper   = InMemoryLedgerClient(ledger, KeypairManager.generate())
    ledger.credit(user.payer, registry.by_symbol("USDC").mint, 1_000_000_000)
    print(f"✅ User {str(user.payer)[:12]}... holds 1000 USDC")
    print()

    # 2️⃣ Keeper
    print("2️⃣ Starting keeper...")
    resolver = RouteResolver()
    watcher  = SettlementWatcher(keeper, resolver, WatcherConfig(network_mode=NetworkMode.LOCALHOST))
    watcher.start()
    print("✅ Keeper subscribed")
    print()

    # 3️⃣ Swap session
    print("3️⃣ Submitting swap: 1000 USDC -> SOL")
    session = SwapSession(
        user, resolver, registry, NetworkMode.LOCALHOST,
        poll_interval=0.1, self_execute=False,
    )
    session.ensure_tokens_registered()
    estimate = session.estimate("USDC", "SOL", "1000")
    print(f"  📝 Estimate: {estimate.output_amount} SOL (simulated)")
    if not session.submit("USDC", "SOL", "1000"):
        print(f"❌ {session.failure.message}: {session.failure.detail}")
        return
    print(f"  🔐 Escrow: {session.escrow_address}")
    session.start()

    # Simulated execution moves no funds: credit the proceeds up front, then
    # make the user's transfer. The session sends simulated matching and the
    # keeper executes.
    ledger.credit(user.payer, registry.by_symbol("SOL").mint, 25_000_000_000)
    ledger.deposit(session.escrow_address, session.amount_in)

    deadline = time.monotonic() + 10
    while session.step is not SwapStep.COMPLETE and time.monotonic() < deadline:
        time.sleep(0.05)
    session.close(timeout=2.0)
    watcher.stop(timeout=2.0)
    print()

    # 4️⃣ Result
    print("4️⃣ Result")
    if session.result is None:
        print("❌ Swap did not complete in time")
        return
    for key, value in session.result.to_dict().items():
        print(f"  {key:<15} {value}")
    print()
    print(f"Keeper outcomes: { {k.value: v for k, v in watcher.outcome_counts().items() if v} }")


if __name__ == "__main__":
    main()
