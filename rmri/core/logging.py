"""Logging setup for the console and an optional log file."""

import logging
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    console: Optional[Console] = None
) -> logging.Logger:
    """
    Configure the ``rmri`` logger hierarchy.

    Args:
        level: Log level name
        log_file: Optional path for a plain-text log file
        console: Rich console to render to (defaults to stderr)

    Returns:
        The configured ``rmri`` logger
    """
    logger = logging.getLogger("rmri")
    logger.setLevel(level.upper())
    logger.handlers.clear()
    logger.propagate = False

    rich_handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
    )
    rich_handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    logger.addHandler(rich_handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        logger.addHandler(file_handler)

    # litellm is chatty at INFO
    logging.getLogger("LiteLLM").setLevel(logging.WARNING)

    return logger
