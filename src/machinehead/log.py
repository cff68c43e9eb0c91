from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler

LOGGER_NAME = "machinehead"


def make_logger(console: Console, debug: bool = False) -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG if debug else logging.INFO)
    logger.handlers = [
        RichHandler(
            console=console,
            show_path=debug,
            markup=False,
            rich_tracebacks=True,
        )
    ]
    logger.propagate = False

    return logger
