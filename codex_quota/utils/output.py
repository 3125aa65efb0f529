"""Shared rich consoles for stdout and stderr."""

from __future__ import annotations

import os
import sys

from loguru import logger
from rich.console import Console
from rich.markup import escape

console = Console(highlight=False)
err_console = Console(stderr=True, highlight=False)


def colors_enabled(no_color: bool = False) -> bool:
    if no_color or os.environ.get("NO_COLOR") is not None:
        return False
    return sys.stdout.isatty()


def configure(no_color: bool = False) -> None:
    """Rebuild both consoles with the process-wide color setting."""
    global console, err_console
    enabled = colors_enabled(no_color)
    console = Console(highlight=False, no_color=not enabled, force_terminal=enabled or None)
    err_console = Console(stderr=True, highlight=False, no_color=not enabled)


def warn(message: str) -> None:
    logger.warning(message)
    err_console.print(f"[yellow]Warning: {escape(message)}[/yellow]", soft_wrap=True)
