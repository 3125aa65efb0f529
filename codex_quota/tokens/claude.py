"""Claude OAuth refresh and multi-store persistence."""

from __future__ import annotations

import time
from typing import Any

import httpx
from loguru import logger

from codex_quota.auth.claude import refresh_claude_token
from codex_quota.config import paths
from codex_quota.config.constants import CLAUDE_REFRESH_BUFFER_MS
from codex_quota.errors import TokenExchangeError
from codex_quota.models import ClaudeAccount, PersistResult, TokenSet
from codex_quota.store import foreign
from codex_quota.store.container import map_accounts, read_container, write_container
from codex_quota.store.token_match import (
    CLAUDE_TOKEN_FIELDS,
    is_oauth_token_match,
    normalize_entry_tokens,
    update_claude_entry,
)


def is_expiring(expires_at: int | None) -> bool:
    """Unknown expiry is treated as still valid."""
    if not expires_at:
        return False
    return expires_at <= time.time() * 1000 + CLAUDE_REFRESH_BUFFER_MS


def account_tokens(account: ClaudeAccount) -> TokenSet:
    return TokenSet(
        access=account.oauth_token,
        refresh=account.oauth_refresh_token,
        expires=account.oauth_expires_at,
        scopes=account.oauth_scopes,
    )


def persist_claude_tokens(
    account: ClaudeAccount,
    previous_access: str | None = None,
    previous_refresh: str | None = None,
) -> PersistResult:
    result = PersistResult()
    if account.source.startswith("env"):
        return result

    for store in foreign.CLAUDE_STORES:
        parsed = foreign.read_root(store)
        if parsed is None:
            continue
        stored = foreign.slot_tokens(store, parsed)
        if not is_oauth_token_match(
            stored_access=stored.access,
            stored_refresh=stored.refresh,
            previous_access=previous_access,
            previous_refresh=previous_refresh,
            label=account.label,
            stored_label=foreign.stored_label(store, parsed),
        ):
            continue
        tokens = account_tokens(account)
        tokens.scopes = account.oauth_scopes or stored.scopes
        update = foreign.update_store(store, tokens)
        if update.updated:
            result.updated_paths.append(str(update.path))
        if update.error:
            result.errors.append(update.error)

    def _mapper(entry: Any) -> Any:
        if not isinstance(entry, dict):
            return entry
        stored = normalize_entry_tokens(entry, CLAUDE_TOKEN_FIELDS)
        if not is_oauth_token_match(
            stored_access=stored["access"],
            stored_refresh=stored["refresh"],
            previous_access=previous_access,
            previous_refresh=previous_refresh,
            label=account.label,
            stored_label=entry.get("label"),
        ):
            return entry
        return update_claude_entry(
            dict(entry),
            account.oauth_token,
            account.oauth_refresh_token,
            account.oauth_expires_at,
            account.oauth_scopes or stored["scopes"],
        )

    for path in paths.claude_multi_account_paths():
        if not path.exists():
            continue
        container = read_container(path)
        if container.root_type == "invalid":
            result.errors.append(f"Failed to parse {path}")
            continue
        updated, accounts = map_accounts(container, _mapper)
        if not updated:
            continue
        try:
            write_container(container, accounts)
        except OSError as exc:
            result.errors.append(f"Failed to update {path}: {exc}")
            continue
        result.updated_paths.append(str(path))

    for error in result.errors:
        logger.warning(error)
    return result


def ensure_fresh_claude(account: ClaudeAccount) -> bool:
    """Refresh ``account``'s OAuth token in place when it is near expiry."""
    if not is_expiring(account.oauth_expires_at):
        return True
    if not account.oauth_refresh_token:
        return False

    previous_access, previous_refresh = account.oauth_token, account.oauth_refresh_token
    try:
        refreshed = refresh_claude_token(account.oauth_refresh_token)
    except (TokenExchangeError, httpx.HTTPError) as exc:
        logger.warning("Claude token refresh failed for {}: {}", account.label, exc)
        return False

    account.oauth_token = refreshed.access
    account.oauth_refresh_token = refreshed.refresh or previous_refresh
    account.oauth_expires_at = refreshed.expires
    logger.info("Refreshed Claude OAuth token for {}", account.label)
    persist_claude_tokens(account, previous_access=previous_access, previous_refresh=previous_refresh)
    return True
