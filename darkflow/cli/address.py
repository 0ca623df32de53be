"""
darkflow/cli/address.py

darkflow address {settlement,token,escrow}: print derived addresses.
"""

from typing import Optional

import click
from solders.pubkey import Pubkey

from darkflow.cli.common import config_option, fail, load_config
from darkflow.core.addresses import AddressDeriver
from darkflow.core.exceptions import ValidationError


def _deriver(config_path: Optional[str]) -> AddressDeriver:
    return AddressDeriver(load_config(config_path).program_pubkey)


@click.group("address")
def address_group() -> None:
    """Print addresses derived from the configured program id."""
    pass


@address_group.command("settlement")
@click.argument("nonce", type=int)
@config_option
def settlement_command(nonce: int, config_path: Optional[str]) -> None:
    """Settlement record address for NONCE."""
    try:
        click.echo(str(_deriver(config_path).settlement_address(nonce)))
    except ValidationError as e:
        fail(str(e))


@address_group.command("token")
@click.argument("token_id", type=int)
@config_option
def token_command(token_id: int, config_path: Optional[str]) -> None:
    """Token mapping record address for TOKEN_ID."""
    try:
        click.echo(str(_deriver(config_path).token_mapping_address(token_id)))
    except ValidationError as e:
        fail(str(e))


@address_group.command("escrow")
@click.argument("owner")
@click.argument("nonce", type=int)
@config_option
def escrow_command(owner: str, nonce: int, config_path: Optional[str]) -> None:
    """Escrow record address for OWNER (base58) and NONCE."""
    try:
        owner_key = Pubkey.from_string(owner)
    except ValueError:
        fail(f"Invalid owner public key: {owner}")
    try:
        click.echo(str(_deriver(config_path).escrow_address(owner_key, nonce)))
    except ValidationError as e:
        fail(str(e))
