"""
darkflow/cli/__init__.py

Darkflow CLI, root Click command group.

Registered in pyproject.toml as:

    [project.scripts]
    darkflow = "darkflow.cli:cli"

Adding a new command:
    1. Create darkflow/cli/your_command.py with a @click.command()
    2. Import it here
    3. cli.add_command(your_command)
"""

import click

from darkflow.cli.address import address_group
from darkflow.cli.keeper import keeper_command
from darkflow.cli.quote import quote_command


@click.group()
@click.version_option(package_name="darkflow")
def cli() -> None:
    """
    Darkflow private swap tooling.

    \b
    Commands:
      keeper    Execute activated settlements until interrupted.
      quote     Quote a swap (simulated off mainnet).
      address   Print derived record addresses.

    \b
    Quick start:
      KEEPER_RPC_URL=https://api.devnet.solana.com darkflow keeper
      darkflow quote USDC SOL 1000
      darkflow address settlement 1700000000000
    """
    pass


cli.add_command(keeper_command)
cli.add_command(quote_command)
cli.add_command(address_group)
