"""Codex account loading, deduplication and managed-file edits."""

from __future__ import annotations

import json
import os
import re
import time
from pathlib import Path
from typing import Any

from loguru import logger

from codex_quota.accounts import is_valid_label
from codex_quota.config import paths
from codex_quota.errors import CodexQuotaError, InvalidInputError, NotFoundError
from codex_quota.models import CodexAccount, CodexToken
from codex_quota.store.container import (
    MultiAccountContainer,
    map_accounts,
    read_container,
    resolve_active_store_path,
    write_container,
)
from codex_quota.store.token_match import OPENAI_TOKEN_FIELDS, normalize_entry_tokens, update_entry_tokens
from codex_quota.utils.jwt import extract_account_id, extract_profile
from codex_quota.utils.output import warn

CODEX_CLI_LABEL = "codex-cli"


def account_from_entry(entry: Any, source: str) -> CodexAccount | None:
    """Normalize one raw entry; ``None`` unless label, accountId, access and refresh are all set."""
    if not isinstance(entry, dict):
        return None
    values = normalize_entry_tokens(entry, OPENAI_TOKEN_FIELDS)
    label = entry.get("label")
    if not (label and values["accountId"] and values["access"] and values["refresh"]):
        return None
    expires = values["expires"]
    updated_at = entry.get("updatedAt")
    return CodexAccount(
        label=str(label),
        account_id=str(values["accountId"]),
        access=str(values["access"]),
        refresh=str(values["refresh"]),
        expires=int(expires) if isinstance(expires, (int, float)) and not isinstance(expires, bool) else None,
        id_token=values["idToken"],
        updated_at=updated_at if isinstance(updated_at, int) else None,
        source=source,
    )


def load_accounts_from_env() -> list[CodexAccount]:
    raw = os.environ.get("CODEX_ACCOUNTS")
    if not raw:
        return []
    try:
        parsed = json.loads(raw)
    except ValueError:
        warn("CODEX_ACCOUNTS env var is not valid JSON")
        return []
    if isinstance(parsed, dict):
        parsed = parsed.get("accounts")
    if not isinstance(parsed, list):
        return []
    accounts = [account_from_entry(entry, "env") for entry in parsed]
    return [account for account in accounts if account]


def load_accounts_from_file(path: Path) -> list[CodexAccount]:
    container = read_container(path)
    if container.root_type == "invalid":
        logger.warning("Skipping unparseable account file {}", path)
        return []
    accounts = [account_from_entry(entry, str(path)) for entry in container.accounts]
    return [account for account in accounts if account]


def load_account_from_codex_cli() -> list[CodexAccount]:
    """Synthesize the ``codex-cli`` account from the Codex CLI's own auth file."""
    path = paths.codex_cli_auth_path()
    if not path.exists():
        return []
    try:
        parsed = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.debug("Ignoring unreadable {}: {}", path, exc)
        return []
    tokens = parsed.get("tokens") if isinstance(parsed, dict) else None
    if not isinstance(tokens, dict) or not tokens.get("access_token") or not tokens.get("refresh_token"):
        return []
    account_id = tokens.get("account_id")
    if not isinstance(account_id, str) or not account_id:
        account_id = extract_account_id(tokens["access_token"])
    if not account_id:
        return []
    expires_at = tokens.get("expires_at")
    return [
        CodexAccount(
            label=CODEX_CLI_LABEL,
            account_id=account_id,
            access=tokens["access_token"],
            refresh=tokens["refresh_token"],
            expires=int(expires_at) * 1000 if expires_at else int(time.time() * 1000) - 1000,
            id_token=tokens.get("id_token"),
            source=str(path),
        )
    ]


def load_all_accounts_no_dedup(local: bool = False) -> list[CodexAccount]:
    """Every account from env, then the multi-account files, then the CLI fallback.

    A label already produced by an earlier source hides later records with
    the same label. With ``local`` the foreign CLI file is never consulted.
    """
    merged: list[CodexAccount] = []
    seen: set[str] = set()
    sources = [load_accounts_from_env()]
    sources.extend(load_accounts_from_file(path) for path in paths.codex_multi_account_paths())
    for batch in sources:
        for account in batch:
            if account.label in seen:
                continue
            seen.add(account.label)
            merged.append(account)
    if not merged and not local:
        merged.extend(load_account_from_codex_cli())
    return merged


def account_email(account: CodexAccount) -> str | None:
    return extract_profile(account.access)["email"] if account.access else None


def dedupe_by_email(accounts: list[CodexAccount], preferred_label: str | None = None) -> list[CodexAccount]:
    """Keep one account per JWT email, first occurrence wins.

    ``preferred_label`` claims its email slot regardless of position.
    Accounts whose token carries no email are always kept.
    """
    preferred_email = None
    if preferred_label:
        preferred = next((a for a in accounts if a.label == preferred_label), None)
        if preferred:
            preferred_email = account_email(preferred)

    seen: set[str] = set()
    result: list[CodexAccount] = []
    for account in accounts:
        email = account_email(account)
        if not email:
            result.append(account)
            continue
        if preferred_email and email == preferred_email:
            if account.label == preferred_label:
                result.append(account)
            continue
        if email in seen:
            continue
        seen.add(email)
        result.append(account)
    return result


def load_accounts(preferred_label: str | None = None, local: bool = False) -> list[CodexAccount]:
    return dedupe_by_email(load_all_accounts_no_dedup(local=local), preferred_label=preferred_label)


def find_account_by_label(label: str, local: bool = False) -> CodexAccount | None:
    return next((a for a in load_all_accounts_no_dedup(local=local) if a.label == label), None)


def get_all_labels() -> list[str]:
    return list(dict.fromkeys(a.label for a in load_all_accounts_no_dedup()))


def resolve_active_path() -> Path:
    return resolve_active_store_path(paths.codex_multi_account_paths())


def read_active_container() -> MultiAccountContainer:
    """Container that owns the Codex ``activeLabel`` pointer."""
    return read_container(resolve_active_path())


def find_account_in_files(label: str) -> CodexAccount | None:
    """Label lookup restricted to the multi-account files, without dedup."""
    for path in paths.codex_multi_account_paths():
        for account in load_accounts_from_file(path) if path.exists() else []:
            if account.label == label:
                return account
    return None


def find_label_by_account_id(account_id: str | None) -> str | None:
    if not account_id:
        return None
    for path in paths.codex_multi_account_paths():
        if not path.exists():
            continue
        container = read_container(path)
        for entry in container.accounts:
            if not isinstance(entry, dict):
                continue
            entry_id = entry.get("accountId") or entry.get("account_id")
            if entry_id == account_id and isinstance(entry.get("label"), str):
                return entry["label"]
    return None


# ============================================================================
# Managed-file edits
# ============================================================================


def default_label(email: str | None) -> str:
    """Label suggested for a new login: the email's local part, else a timestamp."""
    if email:
        label = re.sub(r"[^a-z0-9_-]", "", email.split("@")[0].lower())
        if label:
            return label
    return f"account-{int(time.time() * 1000)}"


def token_entry(label: str, token: CodexToken) -> dict[str, Any]:
    return {
        "label": label,
        "accountId": token.account_id,
        "access": token.access,
        "refresh": token.refresh,
        "idToken": token.id_token,
        "expires": token.expires,
    }


def add_account(label: str, token: CodexToken) -> Path:
    """Append a freshly logged-in account to the primary managed file."""
    existing = get_all_labels()
    if label in existing:
        raise InvalidInputError(
            f'Label "{label}" already exists. Use a different label or remove the existing one.',
            existingLabels=existing,
        )
    if not is_valid_label(label):
        raise InvalidInputError(f'Invalid label "{label}". Use only letters, numbers, hyphens, and underscores.')
    container = read_container(paths.codex_multi_account_paths()[0])
    if container.root_type == "invalid":
        raise CodexQuotaError(f"Failed to parse {container.path}")
    return write_container(container, [*container.accounts, token_entry(label, token)])


def replace_account_tokens(source: str, label: str, token: CodexToken) -> Path:
    """Swap in new tokens for ``label`` in ``source``, keeping the entry's other fields."""
    container = read_container(source)
    if container.root_type == "invalid":
        raise CodexQuotaError(f"Failed to parse {source}")

    def _mapper(entry: Any) -> Any:
        if not isinstance(entry, dict) or entry.get("label") != label:
            return entry
        values = {
            "access": token.access,
            "refresh": token.refresh,
            "expires": token.expires,
            "accountId": token.account_id,
            "idToken": token.id_token,
        }
        return update_entry_tokens(dict(entry), values, OPENAI_TOKEN_FIELDS)

    _, accounts = map_accounts(container, _mapper)
    return write_container(container, accounts)


def remove_from_file(source: str, label: str) -> int:
    """Drop ``label`` from ``source``; the file is deleted when nothing remains.

    Returns the number of accounts left.
    """
    container = read_container(source)
    if container.root_type == "invalid":
        raise CodexQuotaError(f"Failed to parse {source}")
    remaining = [a for a in container.accounts if not (isinstance(a, dict) and a.get("label") == label)]
    if len(remaining) == len(container.accounts):
        raise NotFoundError(f'Account "{label}" not found in {source}')
    if remaining:
        write_container(container, remaining)
    else:
        container.path.unlink()
    logger.debug("Removed {} from {}", label, source)
    return len(remaining)
