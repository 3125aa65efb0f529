"""Codex usage endpoint client."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

import httpx
from loguru import logger

from codex_quota.config.constants import ORIGINATOR, USAGE_TIMEOUT_SEC, USAGE_URL
from codex_quota.models import CodexAccount
from codex_quota.tokens.codex import ensure_fresh
from codex_quota.usage import http

REFRESH_FAILED = "Token refresh failed - re-auth required"


@dataclass
class CodexUsage:
    account: CodexAccount
    usage: dict[str, Any]


def build_headers(account: CodexAccount) -> dict[str, str]:
    return {
        "Authorization": f"Bearer {account.access}",
        "accept": "application/json",
        "chatgpt-account-id": account.account_id,
        "originator": ORIGINATOR,
    }


async def fetch_usage(client: httpx.AsyncClient, account: CodexAccount) -> dict[str, Any]:
    """GET the usage payload; failures come back as ``{"error": ...}`` and are never retried."""
    try:
        response = await client.get(USAGE_URL, headers=build_headers(account))
    except httpx.HTTPError as exc:
        logger.debug("Codex usage request for {} failed: {}", account.label, exc)
        return {"error": http.describe_error(exc)}
    if not response.is_success:
        return {"error": f"HTTP {response.status_code}"}
    try:
        payload = response.json()
    except ValueError:
        return {"error": "Invalid JSON response"}
    return payload if isinstance(payload, dict) else {"error": "Invalid JSON response"}


async def fetch_all(accounts: list[CodexAccount]) -> list[dict[str, Any]]:
    async with http.make_client(timeout=USAGE_TIMEOUT_SEC) as client:
        return list(await asyncio.gather(*(fetch_usage(client, account) for account in accounts)))


def collect_usage(accounts: list[CodexAccount]) -> list[CodexUsage]:
    """Refresh each account in turn, then fetch usage for all of them concurrently.

    Refreshes stay sequential because each one rewrites shared files.
    """
    fresh = [account for account in accounts if ensure_fresh(account)]
    fetched = dict(zip((id(a) for a in fresh), asyncio.run(fetch_all(fresh)))) if fresh else {}
    return [CodexUsage(account, fetched.get(id(account), {"error": REFRESH_FAILED})) for account in accounts]
