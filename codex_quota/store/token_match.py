"""Token field naming tables and the mirror-matching predicate."""

from __future__ import annotations

from typing import Any

# canonical key -> accepted spellings, preferred first
OPENAI_TOKEN_FIELDS: dict[str, tuple[str, ...]] = {
    "access": ("access", "access_token"),
    "refresh": ("refresh", "refresh_token"),
    "expires": ("expires", "expires_at"),
    "accountId": ("accountId", "account_id"),
    "idToken": ("idToken", "id_token"),
}

CLAUDE_TOKEN_FIELDS: dict[str, tuple[str, ...]] = {
    "access": ("oauthToken", "oauth_token", "accessToken", "access_token", "access"),
    "refresh": ("oauthRefreshToken", "oauth_refresh_token", "refreshToken", "refresh_token", "refresh"),
    "scopes": ("oauthScopes", "oauth_scopes", "scopes"),
    "expires": ("oauthExpiresAt", "oauth_expires_at", "expiresAt", "expires_at", "expires"),
}


def is_oauth_token_match(
    stored_access: str | None = None,
    stored_refresh: str | None = None,
    previous_access: str | None = None,
    previous_refresh: str | None = None,
    label: str | None = None,
    stored_label: str | None = None,
) -> bool:
    """Whether a stored slot mirrors the account whose tokens were ``previous_*``.

    The label branch only applies to an empty slot; callers pass a
    ``stored_label`` only for stores where a label alias is meaningful.
    """
    if previous_refresh and stored_refresh and stored_refresh == previous_refresh:
        return True
    if previous_access and stored_access and stored_access == previous_access:
        return True
    if not stored_access and not stored_refresh and label and stored_label and label == stored_label:
        return True
    return False


def normalize_entry_tokens(entry: Any, fields: dict[str, tuple[str, ...]]) -> dict[str, Any]:
    result: dict[str, Any] = {}
    source = entry if isinstance(entry, dict) else {}
    for canonical, candidates in fields.items():
        result[canonical] = next(
            (source[key] for key in candidates if source.get(key) is not None),
            None,
        )
    return result


def resolve_key(entry: dict[str, Any], candidates: tuple[str, ...]) -> str:
    """Spelling already used by ``entry`` for a field, else the preferred one."""
    for key in candidates:
        if key in entry:
            return key
    return candidates[0]


def update_entry_tokens(
    entry: dict[str, Any],
    values: dict[str, Any],
    fields: dict[str, tuple[str, ...]],
) -> dict[str, Any]:
    """Write canonical ``values`` into ``entry`` using the entry's own spellings."""
    for canonical, candidates in fields.items():
        if canonical in values:
            entry[resolve_key(entry, candidates)] = values[canonical]
    return entry


def update_claude_entry(
    entry: dict[str, Any],
    access: str | None,
    refresh: str | None,
    expires: int | None,
    scopes: list[str] | None = None,
) -> dict[str, Any]:
    """Write tokens into a multi-account entry keeping whichever field spellings it already uses."""
    values: dict[str, Any] = {"access": access, "refresh": refresh, "expires": expires}
    if scopes:
        values["scopes"] = scopes
    return update_entry_tokens(entry, values, CLAUDE_TOKEN_FIELDS)
