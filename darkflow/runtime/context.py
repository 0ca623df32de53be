"""
Runtime context: configuration wired into credential, ledger client and router.
"""

from dataclasses import dataclass
from typing import Optional

from darkflow.config import DarkflowConfig
from darkflow.core.crypto import KeypairManager
from darkflow.core.models import NetworkMode, TokenRegistry
from darkflow.ledger.interface import LedgerClient
from darkflow.ledger.solana import SolanaLedgerClient
from darkflow.routing.jupiter import JupiterClient
from darkflow.routing.resolver import RouteResolver
from darkflow.runtime.session import SwapSession
from darkflow.settlement.watcher import SettlementWatcher, WatcherConfig


@dataclass
class RuntimeContext:
    """Everything a keeper or a swap session needs, built once."""

    config:       DarkflowConfig
    signer:       KeypairManager
    ledger:       LedgerClient
    resolver:     RouteResolver
    registry:     TokenRegistry
    network_mode: NetworkMode

    @classmethod
    def from_config(
        cls,
        config: DarkflowConfig,
        ledger: Optional[LedgerClient] = None,
    ) -> "RuntimeContext":
        """
        Build the context. Raises ConfigurationError when the credential
        cannot be loaded or any setting is invalid.

        ledger replaces the Solana client (the in-memory one, in tests).
        """
        config.validate()
        signer   = KeypairManager.from_file(config.resolved_wallet_path)
        registry = config.registry()
        mode     = config.resolved_network_mode

        if ledger is None:
            ledger = SolanaLedgerClient(
                endpoint=    config.rpc_url,
                program_id=  config.program_pubkey,
                signer=      signer,
                registry=    registry,
                ws_endpoint= config.ws_url,
            )

        aggregator = JupiterClient(config.jupiter_api_url) if mode.is_mainnet else None
        resolver   = RouteResolver(aggregator, slippage_bps=config.slippage_bps)

        return cls(
            config=       config,
            signer=       signer,
            ledger=       ledger,
            resolver=     resolver,
            registry=     registry,
            network_mode= mode,
        )

    def watcher(self) -> SettlementWatcher:
        return SettlementWatcher(
            self.ledger,
            self.resolver,
            WatcherConfig(
                network_mode=          self.network_mode,
                aggregator_program_id= self.config.jupiter_program_pubkey,
                max_workers=           self.config.max_workers,
                shutdown_timeout=      self.config.shutdown_timeout,
            ),
        )

    def session(self) -> SwapSession:
        return SwapSession(
            self.ledger,
            self.resolver,
            self.registry,
            self.network_mode,
            poll_interval=self.config.poll_interval,
        )

    def close(self) -> None:
        if self.resolver.aggregator is not None:
            self.resolver.aggregator.close()

    def __repr__(self) -> str:
        return (
            f"RuntimeContext("
            f"network={self.network_mode.value!r}, "
            f"endpoint={self.ledger.endpoint!r}, "
            f"payer={str(self.signer.pubkey)[:12]}...)"
        )
