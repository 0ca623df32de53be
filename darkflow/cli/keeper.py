"""
darkflow/cli/keeper.py

darkflow keeper: run the settlement watcher until SIGINT or SIGTERM.

Exit codes:
    0  stopped, subscription de-registration confirmed
    1  stopped, de-registration not confirmed within the shutdown timeout
    2  configuration error (endpoint, credential, program id)
"""

import signal
import sys
import threading
from typing import Optional

import click
from loguru import logger

from darkflow.cli.common import config_option, fail, load_config
from darkflow.core.exceptions import ConfigurationError
from darkflow.core.logs import configure_logging
from darkflow.runtime.context import RuntimeContext


@click.command("keeper")
@config_option
@click.option(
    "--json-logs",
    is_flag=True,
    default=False,
    help="Emit logs as JSON lines.",
)
def keeper_command(config_path: Optional[str], json_logs: bool) -> None:
    """
    Watch for matched orders and execute them.

    Mainnet endpoints route through the aggregator; devnet and local
    endpoints execute the simulated swap.
    """
    config = load_config(config_path)
    configure_logging(config.log_level, serialize=json_logs)

    try:
        context = RuntimeContext.from_config(config)
    except ConfigurationError as e:
        fail(str(e))

    watcher    = context.watcher()
    stop_event = threading.Event()

    def _request_stop(signum, _frame) -> None:
        logger.info("KEEPER | signal received | signal={}", signal.Signals(signum).name)
        stop_event.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    logger.info("KEEPER | running | {}", context)
    try:
        confirmed = watcher.run_forever(stop_event)
    finally:
        context.close()
    sys.exit(0 if confirmed else 1)
