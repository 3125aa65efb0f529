"""Browser launching and headless detection."""

from __future__ import annotations

import os
import subprocess
import sys

from loguru import logger
from rich.markup import escape

from codex_quota.utils import output


def is_headless() -> bool:
    if os.environ.get("SSH_CLIENT") or os.environ.get("SSH_TTY"):
        return True
    if sys.platform.startswith("linux"):
        return not os.environ.get("DISPLAY") and not os.environ.get("WAYLAND_DISPLAY")
    return False


def _launcher(url: str) -> list[str]:
    if sys.platform == "darwin":
        return ["open", url]
    if sys.platform == "win32":
        return ["cmd", "/c", "start", "", url]
    return ["xdg-open", url]


def _print_url(heading: str, url: str) -> None:
    output.err_console.print(f"\n{heading}")
    output.err_console.print(f"\n  {escape(url)}\n", soft_wrap=True)


def open_browser(url: str, no_browser: bool = False) -> bool:
    """Open ``url`` in a detached browser process, or print it when that is not possible.

    Returns whether a browser was launched.
    """
    if no_browser or is_headless():
        _print_url("Open this URL in your browser to authenticate:", url)
        return False

    try:
        subprocess.Popen(
            _launcher(url),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
    except OSError as exc:
        logger.debug("Browser launch failed: {}", exc)
        _print_url("Could not open browser. Open this URL manually:", url)
        return False

    output.err_console.print("\nOpening browser for authentication...")
    _print_url("If the browser doesn't open, use this URL:", url)
    return True
