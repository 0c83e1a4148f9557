"""Rich console shared by the command-line driver and the log handler."""

from __future__ import annotations

from rich.console import Console
from rich.theme import Theme

_THEME = Theme(
    {
        "info": "cyan",
        "warning": "yellow",
        "error": "bold red",
        "success": "green",
        "prompt": "bold green",
        "assistant": "white",
        "usage": "dim cyan",
    }
)

console = Console(theme=_THEME)
err_console = Console(theme=_THEME, stderr=True)

__all__ = ["console", "err_console"]
