"""Claude active-label tracking, divergence detection, switch and sync."""

from __future__ import annotations

import dataclasses
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from codex_quota.accounts import claude as accounts
from codex_quota.config import paths
from codex_quota.config.constants import PRIMARY_CMD
from codex_quota.errors import CodexQuotaError, InvalidInputError, NotFoundError, RefreshFailedError
from codex_quota.models import ClaudeAccount, ClaudeToken, StoreSnapshot, TokenSet
from codex_quota.store import foreign
from codex_quota.store.container import MultiAccountContainer, map_accounts, write_container
from codex_quota.store.token_match import update_claude_entry
from codex_quota.sync.common import PULL, PlanEntry, SyncReport, find_fresher, plan_push, record_push
from codex_quota.tokens.claude import account_tokens, ensure_fresh_claude, persist_claude_tokens


def set_active_label(label: str | None) -> Path | None:
    """Update ``activeLabel``; ``None`` when no Claude accounts file exists yet."""
    if not any(path.exists() for path in paths.claude_multi_account_paths()):
        return None
    return write_container(accounts.read_active_container(), active_label=label)


def get_active_account() -> tuple[str | None, ClaudeAccount | None, Path]:
    """``(activeLabel, account, path)`` from the managed accounts file."""
    container = accounts.read_active_container()
    label = container.active_label
    if not label or container.root_type == "invalid":
        return label, None, container.path
    for entry in container.accounts:
        if not isinstance(entry, dict) or entry.get("label") != label:
            continue
        account = accounts.normalize_account(entry, str(container.path))
        if accounts.is_valid_account(account):
            return label, account, container.path
    return label, None, container.path


def compare_tokens(account: ClaudeAccount, tokens: TokenSet | None) -> tuple[bool, bool | None, str | None]:
    """``(considered, matches, method)``; refresh tokens are compared before access tokens."""
    if tokens is None:
        return False, None, None
    if account.oauth_refresh_token and tokens.refresh:
        return True, account.oauth_refresh_token == tokens.refresh, "refresh"
    if account.oauth_token and tokens.access:
        return True, account.oauth_token == tokens.access, "access"
    return False, None, None


@dataclass
class ClaudeDivergence:
    active_label: str | None
    active_account: ClaudeAccount | None
    active_store_path: Path
    diverged: bool = False
    skipped: bool = False
    skip_reason: str | None = None
    stores: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "activeLabel": self.active_label,
            "activeStorePath": str(self.active_store_path),
            "diverged": self.diverged,
            "skipped": self.skipped,
            "skipReason": self.skip_reason,
            "stores": self.stores,
        }


def detect_claude_divergence() -> ClaudeDivergence:
    label, account, path = get_active_account()
    if not label:
        return ClaudeDivergence(None, None, path, skipped=True, skip_reason="no-active-label")
    if not account:
        return ClaudeDivergence(label, None, path, skipped=True, skip_reason="active-account-missing")
    if not account.oauth_token:
        return ClaudeDivergence(label, account, path, skipped=True, skip_reason="active-account-not-oauth")

    stores = []
    for store in foreign.CLAUDE_STORES:
        snap = foreign.snapshot(store)
        considered, matches, method = compare_tokens(account, snap.tokens)
        stores.append(
            {
                "name": snap.name,
                "path": str(snap.path),
                "exists": snap.exists,
                "considered": considered,
                "matches": matches,
                "method": method,
            }
        )
    diverged = any(s["considered"] and s["matches"] is False for s in stores)
    return ClaudeDivergence(label, account, path, diverged=diverged, stores=stores)


# ============================================================================
# Untracked foreign tokens
# ============================================================================


def is_likely_valid(tokens: TokenSet | None) -> bool:
    if not tokens or not tokens.access:
        return False
    return not (tokens.expires is not None and tokens.expires <= time.time() * 1000)


def is_equivalent(tokens: TokenSet, account: ClaudeAccount) -> bool:
    if tokens.refresh and account.oauth_refresh_token:
        return tokens.refresh == account.oauth_refresh_token
    if tokens.access and account.oauth_token:
        return tokens.access == account.oauth_token
    return False


def managed_accounts(container: MultiAccountContainer) -> list[ClaudeAccount]:
    result = []
    for entry in container.accounts:
        account = accounts.normalize_account(entry, str(container.path))
        if accounts.is_valid_account(account):
            result.append(account)
    return result


def find_untracked_stores(managed: list[ClaudeAccount]) -> list[StoreSnapshot]:
    """OpenCode and pi Claude tokens that no managed account holds."""
    untracked = []
    for store in (foreign.OPENCODE_CLAUDE, foreign.PI_CLAUDE):
        snap = foreign.snapshot(store)
        if not snap.exists or not is_likely_valid(snap.tokens):
            continue
        if not any(is_equivalent(snap.tokens, account) for account in managed):
            untracked.append(snap)
    return untracked


def add_imported_account(container: MultiAccountContainer, label: str, tokens: TokenSet) -> None:
    """Append a new OAuth entry built from foreign ``tokens`` to ``container``."""
    labels = {a.label for a in managed_accounts(container)}
    if not accounts.is_valid_label(label):
        raise InvalidInputError(f'invalid label "{label}".')
    if label in labels:
        raise InvalidInputError(f'label "{label}" already exists.')
    entry = accounts.account_to_entry(
        ClaudeAccount(
            label=label,
            oauth_token=tokens.access,
            oauth_refresh_token=tokens.refresh,
            oauth_expires_at=tokens.expires,
            oauth_scopes=tokens.scopes,
        )
    )
    container.accounts = [*container.accounts, entry]


def merge_imported_tokens(container: MultiAccountContainer, label: str, tokens: TokenSet) -> bool:
    """Overwrite the OAuth fields of ``label``'s entry with foreign ``tokens``."""

    def _mapper(entry: Any) -> Any:
        if not isinstance(entry, dict) or entry.get("label") != label:
            return entry
        return update_claude_entry(dict(entry), tokens.access, tokens.refresh, tokens.expires, tokens.scopes)

    updated, mapped = map_accounts(container, _mapper)
    if updated:
        container.accounts = mapped
    return updated


# ============================================================================
# Recovery
# ============================================================================


def find_recovery_store() -> tuple[StoreSnapshot | None, str | None]:
    """The freshest foreign store, provided every store agrees on one token identity.

    Returns ``(store, None)`` or ``(None, "no-stores" | "ambiguous")``.
    """
    candidates = []
    for store in foreign.CLAUDE_STORES:
        snap = foreign.snapshot(store)
        if snap.exists and snap.tokens and (snap.tokens.access or snap.tokens.refresh):
            candidates.append(snap)
    if not candidates:
        return None, "no-stores"
    fingerprints = {snap.tokens.refresh or snap.tokens.access for snap in candidates}
    if len(fingerprints) > 1:
        return None, "ambiguous"
    best = max(candidates, key=lambda snap: snap.tokens.expires or 0)
    return best, None


# ============================================================================
# Switch and sync
# ============================================================================


def push_account(account: ClaudeAccount, report: SyncReport) -> None:
    """Write ``account``'s OAuth tokens into every Claude foreign store.

    A Claude Code write error is fatal; OpenCode and pi errors are warnings.
    """
    tokens = account_tokens(account)
    for store in foreign.CLAUDE_STORES:
        primary = store is foreign.CLAUDE_CODE
        if report.dry_run:
            entry = plan_push(store, tokens, create=primary)
            report.plan.append(entry)
            if entry.action == "push":
                report.updated.append(entry.path)
            elif entry.reason == "not found":
                report.skipped.append(entry.path)
            continue
        result = foreign.update_store(store, tokens, create=primary)
        if primary and result.error:
            raise CodexQuotaError(result.error)
        record_push(report, result)


def switch_account(label: str) -> dict[str, Any]:
    account = accounts.find_account_by_label(label)
    if not account:
        raise NotFoundError(f'Claude account "{label}" not found', availableLabels=accounts.get_labels())
    if not account.oauth_token:
        raise InvalidInputError(
            "Claude switch requires an OAuth token. Re-add with --oauth or provide an oauthToken."
        )

    result: dict[str, Any] = {"success": True, "label": label}
    if account.source in {str(p) for p in paths.claude_multi_account_paths()}:
        try:
            active_path = set_active_label(label)
        except OSError as exc:
            result["activeLabelError"] = str(exc)
        else:
            if active_path:
                result["activeLabelPath"] = str(active_path)

    report = SyncReport(active_label=label)
    push_account(account, report)
    result["claudeCredentialsPath"] = str(foreign.CLAUDE_CODE.path)
    result["updated"] = report.updated
    result["skipped"] = report.skipped
    result["warnings"] = report.warnings
    return result


def _adopt(account: ClaudeAccount, snap: StoreSnapshot, report: SyncReport) -> ClaudeAccount | None:
    """Persist ``snap``'s tokens as the active account's; ``None`` if nothing was written."""
    tokens = snap.tokens
    adopted = dataclasses.replace(
        account,
        oauth_token=tokens.access,
        oauth_refresh_token=tokens.refresh,
        oauth_expires_at=tokens.expires,
        oauth_scopes=tokens.scopes or account.oauth_scopes,
    )
    persisted = persist_claude_tokens(
        adopted,
        previous_access=account.oauth_token,
        previous_refresh=account.oauth_refresh_token,
    )
    report.warnings.extend(persisted.errors)
    if not persisted.updated_paths:
        return None
    report.pulled.append(str(snap.path))
    return adopted


def _recover(account: ClaudeAccount, label: str, report: SyncReport) -> ClaudeAccount:
    snap, reason = find_recovery_store()
    if snap and snap.tokens and snap.tokens.access:
        active_expires = account.oauth_expires_at or 0
        recovery_expires = snap.tokens.expires or 0
        newer = bool(recovery_expires and (not active_expires or recovery_expires > active_expires))
        if newer or not active_expires:
            adopted = _adopt(account, snap, report)
            if adopted:
                report.warnings.append(
                    f"Claude OAuth refresh failed; recovered tokens from {paths.shorten_path(snap.path)}."
                )
                return adopted

    detail = ""
    if reason == "ambiguous":
        detail = " CLI auth stores disagree; refusing to overwrite."
    elif reason == "no-stores":
        detail = " No valid CLI auth stores found."
    raise RefreshFailedError(f'Failed to refresh Claude OAuth token for "{label}".{detail}', activeLabel=label)


def sync_active(dry_run: bool = False) -> SyncReport:
    """Pull fresher tokens, refresh (recovering from the foreign stores if needed), then push."""
    label, account, path = get_active_account()
    if not label:
        raise NotFoundError(f"No activeLabel set. Run '{PRIMARY_CMD} claude switch <label>' first.")
    if not account:
        raise NotFoundError(
            f'Active label "{label}" could not be resolved in {paths.shorten_path(path)}.',
            activeLabel=label,
        )

    report = SyncReport(active_label=label, dry_run=dry_run)
    if not account.oauth_token:
        report.warnings.append("Active Claude account has no OAuth tokens; nothing to sync.")
        return report

    snapshots = [foreign.snapshot(store) for store in foreign.CLAUDE_STORES]
    fresher = find_fresher(account.oauth_token, account.oauth_refresh_token, account.oauth_expires_at, snapshots)
    if fresher and fresher.tokens:
        if dry_run:
            report.pulled.append(str(fresher.path))
            report.plan.append(PlanEntry(fresher.name, str(fresher.path), PULL, "holds a newer token"))
            account = dataclasses.replace(
                account,
                oauth_token=fresher.tokens.access,
                oauth_expires_at=fresher.tokens.expires,
                oauth_scopes=fresher.tokens.scopes or account.oauth_scopes,
            )
        else:
            adopted = _adopt(account, fresher, report)
            if adopted:
                report.plan.append(PlanEntry(fresher.name, str(fresher.path), PULL, "held a newer token"))
                account = adopted

    if not dry_run and not ensure_fresh_claude(account):
        account = _recover(account, label, report)

    push_account(account, report)
    return report


# ============================================================================
# Reauth and remove
# ============================================================================


def find_managed_account(label: str, action: str, owner_hint: str) -> ClaudeAccount:
    """Resolve ``label`` for an edit; only entries of the managed file qualify."""
    account = accounts.find_account_by_label(label)
    if not account:
        raise NotFoundError(f'Claude account "{label}" not found', availableLabels=accounts.get_labels())
    if account.source == "env":
        raise InvalidInputError(
            f"Cannot {action} account from CLAUDE_ACCOUNTS env var. Modify the env var directly."
        )
    if not accounts.is_managed_source(account.source):
        raise InvalidInputError(f"Cannot {action} account from {account.source}. {owner_hint}")
    return account


def apply_reauth(account: ClaudeAccount, token: ClaudeToken) -> dict[str, Any]:
    label = account.label
    accounts.replace_oauth_tokens(account.source, label, token)
    result: dict[str, Any] = {"success": True, "label": label, "source": account.source}
    active_label, _, _ = get_active_account()
    if active_label != label:
        result["cliUpdated"] = False
        return result

    report = SyncReport(active_label=label)
    push_account(accounts.oauth_account(label, token), report)
    result["cliUpdated"] = True
    result["updated"] = report.updated
    result["warnings"] = report.warnings
    return result


def clear_active_label(label: str) -> bool:
    container = accounts.read_active_container()
    if not container.exists:
        return True
    if container.active_label != label:
        return False
    write_container(container, active_label=None)
    return True


def remove_account(account: ClaudeAccount) -> dict[str, Any]:
    label = account.label
    was_active = accounts.read_active_container().active_label == label
    remaining = accounts.remove_from_file(account.source, label)

    result: dict[str, Any] = {"success": True, "label": label, "source": paths.shorten_path(account.source)}
    if remaining:
        result["remainingAccounts"] = remaining
    else:
        result["message"] = "File deleted (no accounts remaining)"
    if was_active:
        try:
            result["activeLabelCleared"] = clear_active_label(label)
        except OSError as exc:
            result["activeLabelCleared"] = False
            result["activeLabelError"] = str(exc)
    return result
