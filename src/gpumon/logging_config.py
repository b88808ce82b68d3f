"""Logging configuration for gpumon."""

from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler


def setup_logging(verbose: bool = False, console: Console | None = None) -> None:
    """Configure root logging once for the CLI.

    Args:
        verbose: If True, log at DEBUG instead of WARNING
        console: Console to write to (default: stderr)
    """
    level = logging.DEBUG if verbose else logging.WARNING

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    handler = RichHandler(
        console=console or Console(stderr=True),
        show_time=verbose,
        show_path=False,
        rich_tracebacks=verbose,
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s", datefmt="%H:%M:%S"))
    root_logger.addHandler(handler)

    # Set levels for noisy libraries
    for noisy in ("urllib3", "kubernetes", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
