from __future__ import annotations

import logging

from rich.logging import RichHandler

_LEVELS = {0: logging.WARNING, 1: logging.INFO}


def configure_logging(verbosity: int = 0) -> None:
    level = _LEVELS.get(max(0, int(verbosity)), logging.DEBUG)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
        force=True,
    )
    # Provider SDK request logging only at -vvv.
    if verbosity < 3:
        logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
        logging.getLogger("openai").setLevel(max(level, logging.WARNING))
