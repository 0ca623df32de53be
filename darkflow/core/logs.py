"""
darkflow/core/logs.py

Logging setup. Library modules log through loguru's shared `logger` and
never touch sinks; entry points call configure_logging() once.

Message register:  "COMPONENT | event | key=value ..."
"""

import sys

from loguru import logger

_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> "
    "<level>{level: <8}</level> "
    "<cyan>{name}</cyan> {message}"
)


def configure_logging(level: str = "INFO", serialize: bool = False) -> None:
    """Replace loguru's default sink with a single stderr sink."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=     level.upper(),
        format=    _FORMAT,
        serialize= serialize,
        backtrace= False,
        diagnose=  False,
    )
