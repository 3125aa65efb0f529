"""Credential data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


@dataclass
class CodexAccount:
    """One OpenAI Codex OAuth account, normalized from any source."""

    label: str
    account_id: str
    access: str
    refresh: str
    expires: int | None = None
    id_token: str | None = None
    updated_at: int | None = None
    source: str = ""


@dataclass
class ClaudeAccount:
    """One Claude credential: a web session key, OAuth tokens, or both."""

    label: str
    session_key: str | None = None
    oauth_token: str | None = None
    oauth_refresh_token: str | None = None
    oauth_expires_at: int | None = None
    oauth_scopes: list[str] | None = None
    cf_clearance: str | None = None
    org_id: str | None = None
    cookies: dict[str, str] | None = None
    subscription_type: str | None = None
    rate_limit_tier: str | None = None
    source: str = ""

    @property
    def sync_capable(self) -> bool:
        return bool(self.oauth_token and self.oauth_refresh_token)


@dataclass
class TokenSet:
    """Tokens held in one provider slot, in canonical form (expiry in ms)."""

    access: str | None = None
    refresh: str | None = None
    expires: int | None = None
    account_id: str | None = None
    id_token: str | None = None
    scopes: list[str] | None = None


@dataclass
class StoreSnapshot:
    """Current contents of one foreign store's provider slot."""

    name: str
    path: Path
    exists: bool
    tokens: TokenSet | None = None


@dataclass
class CodexCliAuth:
    """Parsed Codex CLI ``auth.json`` with the tracked-label marker."""

    path: Path
    exists: bool
    parsed: dict[str, Any] | None = None
    tokens: dict[str, Any] | None = None
    account_id: str | None = None
    tracked_label: str | None = None
    error: str | None = None


@dataclass
class UpdateResult:
    updated: bool
    path: Path | None = None
    skipped: bool = False
    error: str | None = None


@dataclass
class PersistResult:
    updated_paths: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass
class CodexToken:
    """Tokens returned by a completed Codex login."""

    access: str
    refresh: str
    expires: int
    account_id: str
    id_token: str | None = None
    email: str | None = None


@dataclass
class ClaudeToken:
    """Tokens returned by a completed Claude login."""

    access: str
    refresh: str | None
    expires: int
    scopes: list[str]
