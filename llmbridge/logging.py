"""Logging helpers for the gateway and its command-line tools."""

from __future__ import annotations

import logging
from typing import Optional

from rich.logging import RichHandler

from .console import err_console

_NOISY_LOGGERS = ("urllib3", "openai", "httpx")


def configure_logging(level: str = "INFO") -> None:
    """Route log records through a Rich handler on stderr."""

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        handlers=[RichHandler(console=err_console, rich_tracebacks=False, markup=False, show_path=False)],
        force=True,
    )
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    return logging.getLogger(name or "llmbridge")
