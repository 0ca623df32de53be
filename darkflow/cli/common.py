"""
darkflow/cli/common.py

Helpers shared by the darkflow commands.

Exit codes:
    0  success
    1  operation failed (quote unavailable, unsubscribe unconfirmed)
    2  configuration or input error
"""

import sys
from typing import NoReturn, Optional

import click

from darkflow.config import DarkflowConfig
from darkflow.core.exceptions import ConfigurationError


config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False),
    default=None,
    envvar="DARKFLOW_CONFIG",
    help="YAML configuration file. Environment variables override it.",
)


def fail(msg: str, code: int = 2) -> NoReturn:
    click.echo(f"ERROR: {msg}", err=True)
    sys.exit(code)


def load_config(config_path: Optional[str]) -> DarkflowConfig:
    """Load and validate configuration, exiting with code 2 on error."""
    try:
        return DarkflowConfig.load(config_path)
    except ConfigurationError as e:
        fail(str(e))
