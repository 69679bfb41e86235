from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler

_NOISY_LOGGERS = ("httpx", "httpcore", "websockets")


def configure_logging(level: str = "INFO") -> None:
    """Route stdlib logging through rich for CLI sessions.

    Library modules only call ``logging.getLogger(__name__)``; this is the single
    place where handlers are attached.
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    handler = RichHandler(
        console=Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
        log_time_format="[%X]",
    )
    logging.basicConfig(level=numeric_level, format="%(message)s", handlers=[handler], force=True)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))
