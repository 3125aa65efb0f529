"""Async HTTP client construction shared by the usage clients."""

from __future__ import annotations

from typing import Any

import httpx


def make_client(**kwargs: Any) -> httpx.AsyncClient:
    """Create the client every usage request goes through."""
    return httpx.AsyncClient(**kwargs)


def describe_error(exc: httpx.HTTPError) -> str:
    if isinstance(exc, httpx.TimeoutException):
        return "Request timed out"
    return str(exc) or type(exc).__name__
