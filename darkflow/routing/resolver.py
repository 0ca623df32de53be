"""
darkflow/routing/resolver.py

Route Resolver.

    mainnet       delegate to the aggregator; failures propagate as QuoteError
    otherwise     fixed cross rate against wrapped SOL, identity for any other
                  pair, flagged is_simulated so callers can mark it
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
from typing import Any, Dict, Optional

from loguru import logger
from solders.pubkey import Pubkey

from darkflow.core.exceptions import QuoteError
from darkflow.core.models import WRAPPED_SOL_MINT, NetworkMode, RoutePlan
from darkflow.routing.jupiter import JupiterClient


# Quote units per SOL used by the simulated quote.
SIMULATED_SOL_RATE = Decimal(40)

DEFAULT_SLIPPAGE_BPS = 50


def _scale(amount: Decimal, decimals: int) -> int:
    return int((amount * (Decimal(10) ** decimals)).to_integral_value(rounding=ROUND_DOWN))


@dataclass(frozen=True)
class Quote:
    output_amount:     Decimal
    is_simulated:      bool
    output_base_units: int
    route:             Optional[Dict[str, Any]] = None


def simulated_output(from_asset: Pubkey, to_asset: Pubkey, amount: Decimal) -> Decimal:
    if from_asset == WRAPPED_SOL_MINT and to_asset != WRAPPED_SOL_MINT:
        return amount * SIMULATED_SOL_RATE
    if from_asset != WRAPPED_SOL_MINT and to_asset == WRAPPED_SOL_MINT:
        return amount / SIMULATED_SOL_RATE
    return amount


class RouteResolver:

    def __init__(
        self,
        aggregator:   Optional[JupiterClient] = None,
        slippage_bps: int = DEFAULT_SLIPPAGE_BPS,
    ) -> None:
        self.aggregator   = aggregator
        self.slippage_bps = slippage_bps

    def _require_aggregator(self) -> JupiterClient:
        if self.aggregator is None:
            raise QuoteError("No aggregator configured for mainnet routing")
        return self.aggregator

    def quote(
        self,
        from_asset:    Pubkey,
        to_asset:      Pubkey,
        amount:        Decimal,
        from_decimals: int,
        to_decimals:   int,
        network_mode:  NetworkMode,
    ) -> Quote:
        amount = Decimal(amount)
        if not network_mode.is_mainnet:
            output = simulated_output(from_asset, to_asset, amount)
            return Quote(
                output_amount=     output,
                is_simulated=      True,
                output_base_units= _scale(output, to_decimals),
            )

        raw = self._require_aggregator().get_quote(
            str(from_asset), str(to_asset), _scale(amount, from_decimals), self.slippage_bps
        )
        out_base = int(raw["outAmount"])
        return Quote(
            output_amount=     Decimal(out_base) / (Decimal(10) ** to_decimals),
            is_simulated=      False,
            output_base_units= out_base,
            route=             raw,
        )

    def route(
        self,
        input_mint:        Pubkey,
        output_mint:       Pubkey,
        amount_base_units: int,
        user:              Pubkey,
    ) -> RoutePlan:
        """Real aggregator route for execution. Mainnet only."""
        aggregator = self._require_aggregator()
        raw = aggregator.get_quote(
            str(input_mint), str(output_mint), amount_base_units, self.slippage_bps
        )
        plan = aggregator.get_swap_instruction(raw, user)
        logger.info(
            "ROUTER | route resolved | in={} out={} amount={} expected_out={} accounts={}",
            input_mint, output_mint, amount_base_units, plan.out_amount, len(plan.accounts),
        )
        return plan
