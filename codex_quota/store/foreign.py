"""Foreign auth stores owned by other CLIs.

Each store keeps one vendor's credentials in a single provider slot of a
larger JSON object whose other keys belong to other providers. The table
below describes every known store; ``update_store`` rewrites just the
slot and leaves every sibling key alone.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from loguru import logger

from codex_quota.config import paths
from codex_quota.config.constants import SECRET_FILE_MODE
from codex_quota.models import StoreSnapshot, TokenSet, UpdateResult
from codex_quota.store.token_match import CLAUDE_TOKEN_FIELDS, OPENAI_TOKEN_FIELDS, normalize_entry_tokens
from codex_quota.utils.fs import write_json_file
from codex_quota.utils.jwt import extract_account_id

CODEX = "codex"
CLAUDE = "claude"
LABEL_MARKER = "codex_quota_label"


@dataclass(frozen=True)
class ForeignStore:
    """Where a foreign CLI keeps one vendor's tokens and how they are spelled."""

    name: str
    vendor: str
    title: str
    locate: Callable[[], Path]
    slot: str
    schema: str
    legacy_slots: tuple[str, ...] = ()
    creatable: bool = False
    alias: str | None = None
    label_marker: str | None = None

    @property
    def path(self) -> Path:
        return self.locate()


CODEX_CLI = ForeignStore(
    name="codex-cli",
    vendor=CODEX,
    title="Codex auth.json",
    locate=paths.codex_cli_auth_path,
    slot="tokens",
    schema="codex-cli",
    creatable=True,
    label_marker=LABEL_MARKER,
)
OPENCODE_OPENAI = ForeignStore(
    name="opencode",
    vendor=CODEX,
    title="OpenCode auth.json",
    locate=paths.opencode_auth_path,
    slot="openai",
    schema="openai",
    alias="opencode",
)
PI_OPENAI = ForeignStore(
    name="pi",
    vendor=CODEX,
    title="pi auth.json",
    locate=paths.pi_auth_path,
    slot="openai-codex",
    schema="openai",
    alias="pi",
)
CLAUDE_CODE = ForeignStore(
    name="claude-code",
    vendor=CLAUDE,
    title="Claude credentials",
    locate=paths.claude_credentials_path,
    slot="claudeAiOauth",
    schema="claude-code",
    legacy_slots=("claude_ai_oauth",),
    creatable=True,
    alias="claude-code",
)
OPENCODE_CLAUDE = ForeignStore(
    name="opencode",
    vendor=CLAUDE,
    title="OpenCode auth.json",
    locate=paths.opencode_auth_path,
    slot="anthropic",
    schema="anthropic",
    alias="opencode",
)
PI_CLAUDE = ForeignStore(
    name="pi",
    vendor=CLAUDE,
    title="pi auth.json",
    locate=paths.pi_auth_path,
    slot="anthropic",
    schema="anthropic",
    alias="pi",
)

CODEX_STORES: tuple[ForeignStore, ...] = (CODEX_CLI, OPENCODE_OPENAI, PI_OPENAI)
CLAUDE_STORES: tuple[ForeignStore, ...] = (CLAUDE_CODE, OPENCODE_CLAUDE, PI_CLAUDE)


# ============================================================================
# Slot adapters
# ============================================================================


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _to_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


def read_slot(store: ForeignStore, parsed: Any) -> dict[str, Any]:
    root = _as_dict(parsed)
    slot = root.get(store.slot)
    for legacy in store.legacy_slots:
        if slot is None:
            slot = root.get(legacy)
    return _as_dict(slot)


def slot_tokens(store: ForeignStore, parsed: Any) -> TokenSet:
    """Canonical view of a store's slot; expiry is always in milliseconds."""
    slot = read_slot(store, parsed)
    if store.schema == "codex-cli":
        expires_at = _to_int(slot.get("expires_at"))
        access = slot.get("access_token")
        return TokenSet(
            access=access,
            refresh=slot.get("refresh_token"),
            expires=expires_at * 1000 if expires_at else None,
            account_id=slot.get("account_id") or slot.get("accountId") or extract_account_id(access),
            id_token=slot.get("id_token"),
        )
    if store.vendor == CODEX:
        values = normalize_entry_tokens(slot, OPENAI_TOKEN_FIELDS)
        return TokenSet(
            access=values["access"],
            refresh=values["refresh"],
            expires=_to_int(values["expires"]),
            account_id=values["accountId"],
            id_token=values["idToken"],
        )
    values = normalize_entry_tokens(slot, CLAUDE_TOKEN_FIELDS)
    scopes = values["scopes"]
    return TokenSet(
        access=values["access"],
        refresh=values["refresh"],
        expires=_to_int(values["expires"]),
        scopes=list(scopes) if isinstance(scopes, list) else None,
    )


def _write_slot(store: ForeignStore, slot: dict[str, Any], tokens: TokenSet, exact: bool) -> dict[str, Any]:
    if store.schema == "codex-cli":
        slot.update(
            access_token=tokens.access,
            refresh_token=tokens.refresh,
            account_id=tokens.account_id,
        )
        if tokens.expires:
            slot["expires_at"] = tokens.expires // 1000
        if tokens.id_token:
            slot["id_token"] = tokens.id_token
        elif exact:
            slot.pop("id_token", None)
        return slot
    if store.schema == "openai":
        slot.update(
            type="oauth",
            access=tokens.access,
            refresh=tokens.refresh,
            expires=tokens.expires if tokens.expires is not None else int(time.time() * 1000) - 1000,
            accountId=tokens.account_id,
        )
        return slot
    if store.schema == "anthropic":
        slot.update(
            type="oauth",
            access=tokens.access,
            refresh=tokens.refresh,
            expires=tokens.expires,
        )
    else:
        slot.update(
            accessToken=tokens.access,
            refreshToken=tokens.refresh,
            expiresAt=tokens.expires,
        )
    if tokens.scopes is not None:
        slot["scopes"] = tokens.scopes
    elif exact:
        slot.pop("scopes", None)
    return slot


# ============================================================================
# Read / write
# ============================================================================


def read_root(store: ForeignStore) -> dict[str, Any] | None:
    """Parsed root object of ``store``, or ``None`` when missing or unreadable."""
    path = store.path
    if not path.exists():
        return None
    try:
        parsed = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.debug("Cannot read {}: {}", path, exc)
        return None
    return parsed if isinstance(parsed, dict) else None


def stored_label(store: ForeignStore, parsed: Any) -> str | None:
    """Label a store's slot answers to when it holds no tokens."""
    if store.label_marker:
        marker = _as_dict(parsed).get(store.label_marker)
        return marker if isinstance(marker, str) and marker else None
    return store.alias


def snapshot(store: ForeignStore) -> StoreSnapshot:
    """Current tokens in ``store``; unreadable files report ``tokens=None``."""
    path = store.path
    if not path.exists():
        return StoreSnapshot(name=store.name, path=path, exists=False)
    parsed = read_root(store)
    if parsed is None:
        return StoreSnapshot(name=store.name, path=path, exists=True)
    return StoreSnapshot(name=store.name, path=path, exists=True, tokens=slot_tokens(store, parsed))


def _prepare_update(
    store: ForeignStore,
    tokens: TokenSet,
    markers: dict[str, Any] | None,
    exact: bool,
    create: bool,
) -> tuple[UpdateResult | None, dict[str, Any]]:
    """Payload that would be written, or a final result when nothing should be."""
    path = store.path
    existing: dict[str, Any] = {}
    if path.exists():
        try:
            parsed = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            return UpdateResult(updated=False, path=path, error=f"Failed to read {store.title}: {exc}"), {}
        if not isinstance(parsed, dict):
            return UpdateResult(updated=False, path=path, error=f"Invalid {store.title} format"), {}
        existing = parsed
    elif not (create and store.creatable):
        return UpdateResult(updated=False, path=path, skipped=True), {}

    current_slot = read_slot(store, existing)
    new_slot = _write_slot(store, dict(current_slot), tokens, exact)
    markers = markers or {}
    unchanged = (
        path.exists()
        and store.slot in existing
        and not any(legacy in existing for legacy in store.legacy_slots)
        and new_slot == current_slot
        and all(existing.get(key) == value for key, value in markers.items())
    )
    if unchanged:
        return UpdateResult(updated=False, path=path), {}

    payload = {**existing, store.slot: new_slot, **markers}
    for legacy in store.legacy_slots:
        payload.pop(legacy, None)
    return None, payload


def preview_store(
    store: ForeignStore,
    tokens: TokenSet,
    markers: dict[str, Any] | None = None,
    exact: bool = False,
    create: bool = False,
) -> UpdateResult:
    """What ``update_store`` would do, without writing; ``updated`` means a write is due."""
    result, _ = _prepare_update(store, tokens, markers, exact, create)
    return result or UpdateResult(updated=True, path=store.path)


def update_store(
    store: ForeignStore,
    tokens: TokenSet,
    markers: dict[str, Any] | None = None,
    stamp: dict[str, Any] | None = None,
    exact: bool = False,
    create: bool = False,
) -> UpdateResult:
    """Replace ``store``'s provider slot with ``tokens``.

    ``markers`` are root keys that count towards change detection,
    ``stamp`` root keys are only written alongside a real change. An
    ``exact`` write also drops slot fields the new tokens do not carry.
    A missing file is skipped unless ``create`` is set for a creatable
    store. Never raises.
    """
    path = store.path
    result, payload = _prepare_update(store, tokens, markers, exact, create)
    if result:
        return result
    payload.update(stamp or {})
    try:
        write_json_file(path, payload, mode=SECRET_FILE_MODE)
    except OSError as exc:
        return UpdateResult(updated=False, path=path, error=f"Failed to write {store.title}: {exc}")
    logger.debug("Updated {} slot in {}", store.slot, path)
    return UpdateResult(updated=True, path=path)


def remove_root_key(store: ForeignStore, key: str) -> UpdateResult:
    """Drop one root-level key from ``store`` (used for the tracked-label marker)."""
    path = store.path
    if not path.exists():
        return UpdateResult(updated=False, path=path, skipped=True)
    try:
        parsed = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        return UpdateResult(updated=False, path=path, error=f"Failed to read {store.title}: {exc}")
    if not isinstance(parsed, dict):
        return UpdateResult(updated=False, path=path, error=f"Invalid {store.title} format")
    if key not in parsed:
        return UpdateResult(updated=False, path=path)
    payload = {k: v for k, v in parsed.items() if k != key}
    try:
        write_json_file(path, payload, mode=SECRET_FILE_MODE)
    except OSError as exc:
        return UpdateResult(updated=False, path=path, error=f"Failed to write {store.title}: {exc}")
    return UpdateResult(updated=True, path=path)
