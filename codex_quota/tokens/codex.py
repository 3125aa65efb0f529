"""OpenAI token refresh and multi-store persistence."""

from __future__ import annotations

import time
from typing import Any

from loguru import logger

from codex_quota.auth.codex import refresh_token
from codex_quota.config import paths
from codex_quota.config.constants import OPENAI_REFRESH_BUFFER_MS
from codex_quota.models import CodexAccount, PersistResult, TokenSet
from codex_quota.store import foreign
from codex_quota.store.container import map_accounts, read_container, write_container
from codex_quota.store.token_match import (
    OPENAI_TOKEN_FIELDS,
    is_oauth_token_match,
    normalize_entry_tokens,
    update_entry_tokens,
)


def is_expiring(expires: int | None) -> bool:
    """Unknown expiry counts as expiring."""
    if not expires:
        return True
    return expires <= time.time() * 1000 + OPENAI_REFRESH_BUFFER_MS


def account_tokens(account: CodexAccount) -> TokenSet:
    return TokenSet(
        access=account.access,
        refresh=account.refresh,
        expires=account.expires,
        account_id=account.account_id,
        id_token=account.id_token,
    )


def entry_values(account: CodexAccount) -> dict[str, Any]:
    values: dict[str, Any] = {
        "access": account.access,
        "refresh": account.refresh,
        "expires": account.expires,
        "accountId": account.account_id,
    }
    if account.id_token:
        values["idToken"] = account.id_token
    return values


def persist_openai_tokens(
    account: CodexAccount,
    previous_access: str | None = None,
    previous_refresh: str | None = None,
) -> PersistResult:
    """Write ``account``'s tokens to every store whose slot held the previous tokens.

    Env-sourced accounts are never persisted.
    """
    result = PersistResult()
    if account.source.startswith("env"):
        return result

    tokens = account_tokens(account)
    for store in foreign.CODEX_STORES:
        parsed = foreign.read_root(store)
        if parsed is None:
            if store.path.exists():
                result.errors.append(f"Invalid {store.title} format at {store.path}")
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
        update = foreign.update_store(store, tokens)
        if update.updated:
            result.updated_paths.append(str(update.path))
        if update.error:
            result.errors.append(update.error)

    values = entry_values(account)

    def _mapper(entry: Any) -> Any:
        if not isinstance(entry, dict):
            return entry
        stored = normalize_entry_tokens(entry, OPENAI_TOKEN_FIELDS)
        if not is_oauth_token_match(
            stored_access=stored["access"],
            stored_refresh=stored["refresh"],
            previous_access=previous_access,
            previous_refresh=previous_refresh,
            label=account.label,
            stored_label=entry.get("label"),
        ):
            return entry
        return update_entry_tokens(dict(entry), values, OPENAI_TOKEN_FIELDS)

    for path in paths.codex_multi_account_paths():
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


def ensure_fresh(account: CodexAccount) -> bool:
    """Refresh ``account`` in place when it is near expiry and propagate the new tokens."""
    if not is_expiring(account.expires):
        return True
    previous_access, previous_refresh = account.access, account.refresh
    refreshed = refresh_token(account.refresh)
    if not refreshed:
        return False

    if refreshed.account_id:
        account.account_id = refreshed.account_id
    account.access = refreshed.access or account.access
    account.refresh = refreshed.refresh or account.refresh
    account.expires = refreshed.expires
    account.updated_at = int(time.time() * 1000)
    logger.info("Refreshed Codex token for {}", account.label)
    persist_openai_tokens(account, previous_access=previous_access, previous_refresh=previous_refresh)
    return True
