"""
darkflow/cli/quote.py

darkflow quote FROM TO AMOUNT: print the route resolver's quote.
"""

from decimal import Decimal, InvalidOperation
from typing import Optional

import click

from darkflow.cli.common import config_option, fail, load_config
from darkflow.core.exceptions import QuoteError, ValidationError
from darkflow.routing.jupiter import JupiterClient
from darkflow.routing.resolver import RouteResolver
from darkflow.runtime.session import format_amount


@click.command("quote")
@click.argument("from_symbol")
@click.argument("to_symbol")
@click.argument("amount")
@config_option
def quote_command(
    from_symbol: str,
    to_symbol:   str,
    amount:      str,
    config_path: Optional[str],
) -> None:
    """
    Quote AMOUNT of FROM_SYMBOL in TO_SYMBOL.

    \b
    Examples:
      darkflow quote USDC SOL 1000
      KEEPER_RPC_URL=https://api.mainnet-beta.solana.com darkflow quote SOL USDC 2
    """
    config   = load_config(config_path)
    registry = config.registry()
    mode     = config.resolved_network_mode

    try:
        token_in  = registry.by_symbol(from_symbol.upper())
        token_out = registry.by_symbol(to_symbol.upper())
        value     = Decimal(amount)
    except ValidationError as e:
        fail(str(e))
    except InvalidOperation:
        fail(f"Invalid amount: {amount}")
    if not value.is_finite() or value <= 0:
        fail(f"Invalid amount: {amount}")

    aggregator = JupiterClient(config.jupiter_api_url) if mode.is_mainnet else None
    resolver   = RouteResolver(aggregator, slippage_bps=config.slippage_bps)
    try:
        quote = resolver.quote(
            token_in.mint, token_out.mint, value,
            token_in.decimals, token_out.decimals, mode,
        )
    except QuoteError as e:
        fail(str(e), code=1)
    finally:
        if aggregator is not None:
            aggregator.close()

    marker = "  (simulated)" if quote.is_simulated else ""
    click.echo(
        f"{amount} {token_in.symbol} -> "
        f"{format_amount(token_out, quote.output_amount)} {token_out.symbol}"
        f"{marker}  [{mode.value}]"
    )
