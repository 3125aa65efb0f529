"""Claude account loading, session-key discovery and deduplication."""

from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Any

from loguru import logger

from codex_quota.accounts import is_valid_label
from codex_quota.config import paths
from codex_quota.errors import CodexQuotaError, InvalidInputError, NotFoundError
from codex_quota.models import ClaudeAccount, ClaudeToken
from codex_quota.store import foreign
from codex_quota.store.container import MultiAccountContainer, map_accounts, read_container, write_container
from codex_quota.store.token_match import update_claude_entry
from codex_quota.utils.output import warn

CLAUDE_CODE_LABEL = "claude-code"
OPENCODE_LABEL = "opencode"
OAUTH_ENV_SOURCE = "env:CLAUDE_OAUTH_ACCOUNTS"
REQUIRED_USAGE_SCOPE = "user:profile"
DEDUP_PREFIX_LEN = 50

_SESSION_KEY_RE = re.compile(r"sk-ant-[a-z0-9_-]+", re.IGNORECASE)
_DIRECT_KEYS = (
    "sessionKey",
    "session_key",
    "token",
    "sessionToken",
    "accessToken",
    "access_token",
    "oauthAccessToken",
)


def is_session_key(value: Any) -> bool:
    return isinstance(value, str) and value.startswith("sk-ant-")


def find_session_key(value: Any) -> str | None:
    """Search a string or nested structure for something shaped like ``sk-ant-...``."""
    if is_session_key(value):
        return value
    if isinstance(value, str):
        match = _SESSION_KEY_RE.search(value)
        return match.group(0) if match else None
    if isinstance(value, dict):
        direct = next((value[key] for key in _DIRECT_KEYS if value.get(key) is not None), None)
        if is_session_key(direct):
            return direct
        children = value.values()
    elif isinstance(value, list):
        children = value
    else:
        return None
    for child in children:
        found = find_session_key(child)
        if found:
            return found
    return None


def _first(raw: dict[str, Any], *keys: str) -> Any:
    return next((raw[key] for key in keys if raw.get(key) is not None), None)


def normalize_account(raw: Any, source: str) -> ClaudeAccount | None:
    if not isinstance(raw, dict):
        return None
    cookies = raw.get("cookies")
    scopes = _first(raw, "oauthScopes", "oauth_scopes")
    expires = _first(raw, "oauthExpiresAt", "oauth_expires_at")
    return ClaudeAccount(
        label=raw.get("label") or "",
        session_key=_first(raw, "sessionKey", "session_key"),
        oauth_token=_first(raw, "oauthToken", "oauth_token", "accessToken", "access_token"),
        oauth_refresh_token=_first(raw, "oauthRefreshToken", "oauth_refresh_token"),
        oauth_expires_at=int(expires) if isinstance(expires, (int, float)) and not isinstance(expires, bool) else None,
        oauth_scopes=list(scopes) if isinstance(scopes, list) else None,
        cf_clearance=_first(raw, "cfClearance", "cf_clearance"),
        org_id=_first(raw, "orgId", "org_id"),
        cookies=cookies if isinstance(cookies, dict) else None,
        source=source,
    )


def is_valid_account(account: ClaudeAccount | None) -> bool:
    if not account or not account.label:
        return False
    session_key = account.session_key or find_session_key(account.cookies)
    return bool(session_key or account.oauth_token)


def account_to_entry(account: ClaudeAccount) -> dict[str, Any]:
    """Serialize a new account using the canonical camelCase field names."""
    entry: dict[str, Any] = {
        "label": account.label,
        "sessionKey": account.session_key,
        "oauthToken": account.oauth_token,
        "oauthRefreshToken": account.oauth_refresh_token,
        "oauthExpiresAt": account.oauth_expires_at,
        "oauthScopes": account.oauth_scopes,
        "cfClearance": account.cf_clearance,
        "orgId": account.org_id,
    }
    if account.cookies:
        entry["cookies"] = account.cookies
    return entry


def _parse_env_list(name: str, warn_invalid: bool) -> list[Any]:
    raw = os.environ.get(name)
    if not raw:
        return []
    try:
        parsed = json.loads(raw)
    except ValueError:
        if warn_invalid:
            warn(f"{name} env var is not valid JSON")
        return []
    if isinstance(parsed, dict):
        parsed = parsed.get("accounts")
    return parsed if isinstance(parsed, list) else []


def load_accounts_from_env() -> list[ClaudeAccount]:
    accounts = [normalize_account(raw, "env") for raw in _parse_env_list("CLAUDE_ACCOUNTS", True)]
    return [account for account in accounts if is_valid_account(account)]


def load_accounts_from_file(path: Path) -> list[ClaudeAccount]:
    container = read_container(path)
    if container.root_type == "invalid":
        logger.warning("Skipping unparseable account file {}", path)
        return []
    accounts = [normalize_account(raw, str(path)) for raw in container.accounts]
    return [account for account in accounts if is_valid_account(account)]


def load_accounts() -> list[ClaudeAccount]:
    """Env accounts then file accounts; a repeated label keeps its first record."""
    merged: list[ClaudeAccount] = []
    seen: set[str] = set()
    batches = [load_accounts_from_env()]
    batches.extend(load_accounts_from_file(path) for path in paths.claude_multi_account_paths())
    for batch in batches:
        for account in batch:
            if account.label in seen:
                continue
            seen.add(account.label)
            merged.append(account)
    return merged


def find_account_by_label(label: str) -> ClaudeAccount | None:
    return next((a for a in load_accounts() if a.label == label), None)


def get_labels() -> list[str]:
    return list(dict.fromkeys(a.label for a in load_accounts()))


def resolve_active_path() -> Path:
    return paths.claude_multi_account_paths()[0]


def read_active_container() -> MultiAccountContainer:
    return read_container(resolve_active_path())


# ============================================================================
# Claude Code credentials
# ============================================================================


def _read_credentials() -> tuple[Path, Any, str | None]:
    path = paths.claude_credentials_path()
    if not path.exists():
        return path, None, f"Claude credentials not found at {path}"
    try:
        return path, json.loads(path.read_text(encoding="utf-8")), None
    except (OSError, ValueError) as exc:
        return path, None, f"Failed to read Claude credentials: {exc}"


def load_session_from_credentials() -> tuple[str | None, str, str | None]:
    """``(session_key, source, error)`` from the Claude Code credentials file."""
    path, parsed, error = _read_credentials()
    if error:
        return None, str(path), error
    session_key = find_session_key(parsed)
    if not session_key:
        return None, str(path), "No Claude sessionKey found in credentials file"
    return session_key, str(path), None


def load_oauth_token() -> tuple[str | None, str, str | None]:
    path, parsed, error = _read_credentials()
    if error:
        return None, str(path), error
    root = parsed if isinstance(parsed, dict) else {}
    oauth = foreign.read_slot(foreign.CLAUDE_CODE, root)
    token = oauth.get("accessToken") or root.get("accessToken") or root.get("access_token")
    if not token:
        return None, str(path), "No Claude OAuth accessToken found"
    return token, str(path), None


# ============================================================================
# OAuth account set used for usage
# ============================================================================


def load_oauth_from_env() -> list[ClaudeAccount]:
    accounts = []
    for raw in _parse_env_list("CLAUDE_OAUTH_ACCOUNTS", False):
        if not isinstance(raw, dict) or not raw.get("label") or not raw.get("accessToken"):
            continue
        scopes = raw.get("scopes")
        accounts.append(
            ClaudeAccount(
                label=raw["label"],
                oauth_token=raw["accessToken"],
                oauth_refresh_token=raw.get("refreshToken"),
                oauth_expires_at=raw.get("expiresAt"),
                oauth_scopes=scopes if isinstance(scopes, list) else None,
                subscription_type=raw.get("subscriptionType"),
                rate_limit_tier=raw.get("rateLimitTier"),
                source=OAUTH_ENV_SOURCE,
            )
        )
    return accounts


def load_oauth_from_claude_code() -> list[ClaudeAccount]:
    """The Claude Code login, only when it carries the scope the usage API needs."""
    path, parsed, error = _read_credentials()
    if error:
        return []
    oauth = foreign.read_slot(foreign.CLAUDE_CODE, parsed)
    if not oauth.get("accessToken"):
        return []
    scopes = oauth.get("scopes") or []
    if REQUIRED_USAGE_SCOPE not in scopes:
        return []
    return [
        ClaudeAccount(
            label=CLAUDE_CODE_LABEL,
            oauth_token=oauth["accessToken"],
            oauth_refresh_token=oauth.get("refreshToken"),
            oauth_expires_at=oauth.get("expiresAt"),
            oauth_scopes=list(scopes),
            subscription_type=oauth.get("subscriptionType"),
            rate_limit_tier=oauth.get("rateLimitTier"),
            source=str(path),
        )
    ]


def load_oauth_from_opencode() -> list[ClaudeAccount]:
    path = paths.opencode_auth_path()
    if not path.exists():
        return []
    try:
        parsed = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return []
    anthropic = foreign.read_slot(foreign.OPENCODE_CLAUDE, parsed)
    if not anthropic.get("access"):
        return []
    return [
        ClaudeAccount(
            label=OPENCODE_LABEL,
            oauth_token=anthropic["access"],
            oauth_refresh_token=anthropic.get("refresh"),
            oauth_expires_at=anthropic.get("expires"),
            source=str(path),
        )
    ]


def dedupe_oauth_accounts(accounts: list[ClaudeAccount]) -> list[ClaudeAccount]:
    """One account per refresh-token prefix, or access-token prefix without one."""
    seen: set[str] = set()
    result: list[ClaudeAccount] = []
    for account in accounts:
        if not account.oauth_token:
            result.append(account)
            continue
        key = (account.oauth_refresh_token or account.oauth_token)[:DEDUP_PREFIX_LEN]
        if key in seen:
            continue
        seen.add(key)
        result.append(account)
    return result


def load_all_oauth_accounts(local: bool = False) -> list[ClaudeAccount]:
    """OAuth accounts from env, the managed file, Claude Code and OpenCode, deduplicated."""
    batches = [load_oauth_from_env()]
    for path in paths.claude_multi_account_paths():
        batches.append([a for a in load_accounts_from_file(path) if a.oauth_token])
    if not local:
        batches.append(load_oauth_from_claude_code())
        batches.append(load_oauth_from_opencode())

    merged: list[ClaudeAccount] = []
    seen: set[str] = set()
    for batch in batches:
        for account in batch:
            if account.label in seen:
                continue
            seen.add(account.label)
            merged.append(account)
    return dedupe_oauth_accounts(merged)


# ============================================================================
# Managed-file edits
# ============================================================================


def is_managed_source(source: str) -> bool:
    return source in {str(p) for p in paths.claude_multi_account_paths()}


def check_new_label(label: str | None) -> str:
    label = (label or "").strip()
    if not label:
        raise InvalidInputError("Label is required")
    if not is_valid_label(label):
        raise InvalidInputError(f'Invalid label "{label}". Use only letters, numbers, hyphens, and underscores.')
    if label in get_labels():
        raise InvalidInputError(f'Label "{label}" already exists. Choose a different label.')
    return label


def oauth_account(label: str, token: ClaudeToken) -> ClaudeAccount:
    return ClaudeAccount(
        label=label,
        oauth_token=token.access,
        oauth_refresh_token=token.refresh,
        oauth_expires_at=token.expires,
        oauth_scopes=token.scopes,
    )


def manual_account(
    label: str,
    session_input: str | None,
    oauth_input: str | None = None,
    cf_clearance: str | None = None,
    org_id: str | None = None,
) -> ClaudeAccount:
    """Build an account from pasted values; the session field may hold a whole JSON blob."""
    parsed: Any = None
    if session_input and session_input.strip().startswith("{"):
        try:
            parsed = json.loads(session_input)
        except ValueError:
            parsed = None
    session_key = find_session_key(parsed if parsed is not None else session_input)

    oauth_token = (oauth_input or "").strip() or None
    if not oauth_token and isinstance(parsed, dict):
        nested = foreign.read_slot(foreign.CLAUDE_CODE, parsed)
        oauth_token = nested.get("accessToken") or parsed.get("accessToken") or parsed.get("access_token")
    if not session_key and not oauth_token:
        raise InvalidInputError("Provide at least a sessionKey or an OAuth token.")
    return ClaudeAccount(
        label=label,
        session_key=session_key,
        oauth_token=oauth_token,
        cf_clearance=(cf_clearance or "").strip() or None,
        org_id=(org_id or "").strip() or None,
    )


def add_account(account: ClaudeAccount) -> Path:
    """Append ``account`` to the managed file that owns ``activeLabel``."""
    container = read_active_container()
    if container.root_type == "invalid":
        raise CodexQuotaError(f"Failed to parse {container.path}")
    return write_container(container, [*container.accounts, account_to_entry(account)])


def replace_oauth_tokens(source: str, label: str, token: ClaudeToken) -> Path:
    """Swap in re-authenticated OAuth tokens, keeping every other field of the entry."""
    container = read_container(source)
    if container.root_type == "invalid":
        raise CodexQuotaError(f"Failed to parse {source}")

    def _mapper(entry: Any) -> Any:
        if not isinstance(entry, dict) or entry.get("label") != label:
            return entry
        return update_claude_entry(dict(entry), token.access, token.refresh, token.expires, token.scopes)

    _, accounts = map_accounts(container, _mapper)
    return write_container(container, accounts)


def remove_from_file(source: str, label: str) -> int:
    """Drop ``label`` from ``source``, deleting the file when it empties; returns accounts left."""
    container = read_container(source)
    if container.root_type == "invalid":
        raise CodexQuotaError(f"Failed to parse {source}")
    remaining = [a for a in container.accounts if not (isinstance(a, dict) and a.get("label") == label)]
    if len(remaining) == len(container.accounts):
        raise NotFoundError(f'Claude account "{label}" not found in {source}')
    if remaining:
        write_container(container, remaining)
    else:
        container.path.unlink()
    return len(remaining)
