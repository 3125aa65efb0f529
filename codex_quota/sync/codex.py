"""Codex active-label tracking, divergence detection, switch and sync."""

from __future__ import annotations

import dataclasses
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from loguru import logger

from codex_quota.accounts import codex as accounts
from codex_quota.config import paths
from codex_quota.config.constants import PRIMARY_CMD
from codex_quota.errors import InvalidInputError, NotFoundError, RefreshFailedError
from codex_quota.models import CodexAccount, CodexCliAuth, CodexToken, TokenSet, UpdateResult
from codex_quota.store import foreign
from codex_quota.store.container import MultiAccountContainer, write_container
from codex_quota.sync.common import PULL, PlanEntry, SyncReport, find_fresher, plan_push, record_push
from codex_quota.tokens.codex import ensure_fresh, persist_openai_tokens
from codex_quota.utils.jwt import extract_account_id, extract_profile


def read_codex_cli_auth() -> CodexCliAuth:
    path = foreign.CODEX_CLI.path
    if not path.exists():
        return CodexCliAuth(path=path, exists=False)
    parsed = foreign.read_root(foreign.CODEX_CLI)
    if parsed is None:
        return CodexCliAuth(path=path, exists=True, error=f"Cannot parse {path}")
    tokens = parsed.get("tokens") if isinstance(parsed.get("tokens"), dict) else None
    account_id = None
    if tokens:
        direct = tokens.get("account_id") or tokens.get("accountId")
        access = tokens.get("access_token") or tokens.get("accessToken")
        if isinstance(direct, str) and direct:
            account_id = direct
        elif isinstance(access, str) and access:
            account_id = extract_account_id(access)
    return CodexCliAuth(
        path=path,
        exists=True,
        parsed=parsed,
        tokens=tokens,
        account_id=account_id,
        tracked_label=foreign.stored_label(foreign.CODEX_CLI, parsed),
    )


def set_active_label(label: str | None) -> Path:
    """Point the owning container's ``activeLabel`` at ``label``, creating the file if needed."""
    container = accounts.read_active_container()
    return write_container(container, active_label=label)


def clear_label_marker(label: str, account_id: str | None) -> UpdateResult:
    """Drop the Codex CLI marker if it still names ``label`` for the same account."""
    cli = read_codex_cli_auth()
    if not cli.exists or cli.parsed is None:
        return UpdateResult(updated=False, path=cli.path, skipped=True)
    if cli.tracked_label != label or not cli.account_id or cli.account_id != account_id:
        return UpdateResult(updated=False, path=cli.path, skipped=True)
    return foreign.remove_root_key(foreign.CODEX_CLI, foreign.LABEL_MARKER)


def _marker_label(cli: CodexCliAuth) -> str | None:
    """The CLI marker, when the account it names really is the one in the CLI."""
    if not cli.tracked_label or not cli.account_id:
        return None
    tracked = accounts.find_account_by_label(cli.tracked_label)
    if tracked and tracked.account_id == cli.account_id:
        return cli.tracked_label
    return None


def maybe_migrate_marker(container: MultiAccountContainer, cli: CodexCliAuth) -> tuple[bool, str | None]:
    """Promote the CLI marker to ``activeLabel`` when the container has none."""
    if container.active_label:
        return False, container.active_label
    label = _marker_label(cli)
    if not label:
        return False, None
    write_container(container, active_label=label)
    logger.info("Migrated {} marker to activeLabel {}", foreign.LABEL_MARKER, label)
    return True, label


@dataclass
class CodexDivergence:
    active_label: str | None
    active_account: CodexAccount | None
    active_store_path: Path
    cli_account_id: str | None
    cli_label: str | None
    tracked_label: str | None
    diverged: bool
    kind: str | None
    migrated: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "activeLabel": self.active_label,
            "activeAccountId": self.active_account.account_id if self.active_account else None,
            "activeStorePath": str(self.active_store_path),
            "cliAccountId": self.cli_account_id,
            "cliLabel": self.cli_label,
            "trackedLabel": self.tracked_label,
            "diverged": self.diverged,
            "kind": self.kind,
            "migrated": self.migrated,
        }


def detect_codex_divergence(allow_migration: bool = True) -> CodexDivergence:
    """Compare the active label's account with what the Codex CLI currently holds.

    Without ``allow_migration`` the marker is still honoured but nothing is written.
    """
    container = accounts.read_active_container()
    cli = read_codex_cli_auth()
    if allow_migration:
        migrated, active_label = maybe_migrate_marker(container, cli)
    else:
        migrated, active_label = False, container.active_label or _marker_label(cli)

    active_account = accounts.find_account_by_label(active_label) if active_label else None
    active_id = active_account.account_id if active_account else None
    diverged = bool(active_id and cli.account_id and active_id != cli.account_id)
    kind = None
    if active_id and cli.account_id:
        if not diverged:
            kind = "aligned"
        elif not cli.tracked_label:
            kind = "diverged-native"
        else:
            kind = "diverged-managed"
    return CodexDivergence(
        active_label=active_label,
        active_account=active_account,
        active_store_path=container.path,
        cli_account_id=cli.account_id,
        cli_label=accounts.find_label_by_account_id(cli.account_id),
        tracked_label=cli.tracked_label,
        diverged=diverged,
        kind=kind,
        migrated=migrated,
    )


# ============================================================================
# Push
# ============================================================================


def push_tokens(account: CodexAccount) -> TokenSet:
    expires = account.expires if account.expires else int(time.time() * 1000) - 1000
    return TokenSet(
        access=account.access,
        refresh=account.refresh,
        expires=expires,
        account_id=account.account_id,
        id_token=account.id_token,
    )


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def push_account(account: CodexAccount, label: str, report: SyncReport) -> None:
    """Write ``account`` into every Codex foreign store and tag the CLI with ``label``."""
    tokens = push_tokens(account)
    for store in foreign.CODEX_STORES:
        is_cli = store is foreign.CODEX_CLI
        markers = {foreign.LABEL_MARKER: label} if is_cli else None
        if report.dry_run:
            entry = plan_push(store, tokens, markers=markers, exact=is_cli, create=is_cli)
            report.plan.append(entry)
            if entry.action == "push":
                report.updated.append(entry.path)
            elif entry.reason == "not found":
                report.skipped.append(entry.path)
            continue
        result = foreign.update_store(
            store,
            tokens,
            markers=markers,
            stamp={"last_refresh": _now_iso()} if is_cli else None,
            exact=is_cli,
            create=is_cli,
        )
        record_push(report, result)


def switch_account(label: str) -> dict[str, Any]:
    """Make ``label`` the active Codex account everywhere."""
    account = accounts.find_account_by_label(label)
    if not account:
        available = accounts.get_all_labels()
        raise NotFoundError(f'Account "{label}" not found', availableLabels=available)
    if not ensure_fresh(account):
        raise RefreshFailedError(
            f'Failed to refresh token for "{label}". Re-authentication may be required.',
            hint=f"Run '{PRIMARY_CMD} codex reauth {label}' to re-authenticate this account.",
        )

    profile = extract_profile(account.access)
    result: dict[str, Any] = {
        "success": True,
        "label": label,
        "email": profile["email"],
        "planType": profile["planType"],
        "accountId": account.account_id,
    }
    try:
        result["activeLabelPath"] = str(set_active_label(label))
    except OSError as exc:
        result["activeLabelError"] = str(exc)

    report = SyncReport(active_label=label)
    push_account(account, label, report)
    result["updated"] = report.updated
    result["skipped"] = report.skipped
    result["warnings"] = report.warnings
    return result


# ============================================================================
# Sync
# ============================================================================


def _pull(account: CodexAccount, report: SyncReport) -> CodexAccount:
    snapshots = [foreign.snapshot(store) for store in foreign.CODEX_STORES]
    fresher = find_fresher(account.access, account.refresh, account.expires, snapshots)
    if not fresher or not fresher.tokens:
        return account
    tokens = fresher.tokens
    pulled = dataclasses.replace(
        account,
        access=tokens.access or account.access,
        refresh=tokens.refresh or account.refresh,
        expires=tokens.expires,
        account_id=tokens.account_id or account.account_id,
        id_token=tokens.id_token or account.id_token,
    )
    if report.dry_run:
        report.pulled.append(str(fresher.path))
        report.plan.append(PlanEntry(fresher.name, str(fresher.path), PULL, "holds a newer token"))
        return pulled

    persisted = persist_openai_tokens(pulled, previous_access=account.access, previous_refresh=account.refresh)
    report.warnings.extend(persisted.errors)
    if not persisted.updated_paths:
        return account
    report.pulled.append(str(fresher.path))
    report.plan.append(PlanEntry(fresher.name, str(fresher.path), PULL, "held a newer token"))
    return pulled


def sync_active(dry_run: bool = False) -> SyncReport:
    """Pull fresher tokens from the foreign stores, refresh, then push the active account."""
    divergence = detect_codex_divergence(allow_migration=not dry_run)
    label = divergence.active_label
    if not label:
        raise NotFoundError(f"No activeLabel set. Run '{PRIMARY_CMD} codex switch <label>' first.")
    account = divergence.active_account or accounts.find_account_in_files(label)
    if not account:
        raise NotFoundError(
            f'Active label "{label}" could not be resolved in multi-account files.',
            activeLabel=label,
        )

    report = SyncReport(active_label=label, dry_run=dry_run)
    account = _pull(account, report)
    if not dry_run and not ensure_fresh(account):
        raise RefreshFailedError(
            f'Failed to refresh token for "{label}". Re-authentication may be required.',
            activeLabel=label,
        )

    report.email = extract_profile(account.access)["email"]
    report.account_id = account.account_id
    push_account(account, label, report)
    return report


# ============================================================================
# Reauth and remove
# ============================================================================


def find_managed_account(label: str, action: str) -> CodexAccount:
    """Resolve ``label`` for an edit; env and foreign-file accounts cannot be edited here."""
    account = accounts.find_account_by_label(label)
    if not account:
        raise NotFoundError(f'Account "{label}" not found', availableLabels=accounts.get_all_labels())
    if account.source == "env":
        raise InvalidInputError(
            f"Cannot {action} account from CODEX_ACCOUNTS env var. Modify the env var directly."
        )
    return account


def apply_reauth(account: CodexAccount, token: CodexToken) -> dict[str, Any]:
    """Store re-authenticated tokens and, for the active label, push them to the CLI stores."""
    label = account.label
    if account.source not in {str(p) for p in paths.codex_multi_account_paths()}:
        raise InvalidInputError(
            f"Cannot re-authenticate account from {paths.shorten_path(account.source)}. "
            f"Run '{PRIMARY_CMD} codex add' to manage it here."
        )
    accounts.replace_account_tokens(account.source, label, token)
    result: dict[str, Any] = {
        "success": True,
        "label": label,
        "email": token.email,
        "accountId": token.account_id,
        "source": account.source,
    }
    if accounts.read_active_container().active_label != label:
        result["cliUpdated"] = False
        return result

    refreshed = dataclasses.replace(
        account,
        access=token.access,
        refresh=token.refresh,
        expires=token.expires,
        account_id=token.account_id,
        id_token=token.id_token,
    )
    report = SyncReport(active_label=label)
    push_account(refreshed, label, report)
    result["cliUpdated"] = True
    result["updated"] = report.updated
    result["warnings"] = report.warnings
    return result


def clear_active_label(label: str) -> bool:
    """Null ``activeLabel`` if it still names ``label``; a vanished file counts as cleared."""
    container = accounts.read_active_container()
    if not container.exists:
        return True
    if container.active_label != label:
        return False
    write_container(container, active_label=None)
    return True


def remove_codex_cli_auth() -> Path:
    path = foreign.CODEX_CLI.path
    path.unlink()
    return path


def remove_account(account: CodexAccount) -> dict[str, Any]:
    """Delete ``account`` from its managed file and drop every pointer that named it."""
    label = account.label
    was_active = detect_codex_divergence(allow_migration=False).active_label == label
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
    cleared = clear_label_marker(label, account.account_id)
    if cleared.updated:
        result["codexQuotaLabelCleared"] = True
    if cleared.error:
        result["codexQuotaLabelError"] = cleared.error
    return result
