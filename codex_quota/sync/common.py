"""Shared pieces of the sync engine: reports, plans and the fresher-store search."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

from codex_quota.models import StoreSnapshot, TokenSet, UpdateResult
from codex_quota.store import foreign

PULL = "pull"
PUSH = "push"
ALIGNED = "aligned"
SKIP = "skip"


@dataclass
class PlanEntry:
    store: str
    path: str
    action: str
    reason: str


@dataclass
class SyncReport:
    """Outcome of a sync; ``updated`` lists paths written (or due, in a dry run)."""

    active_label: str
    dry_run: bool = False
    email: str | None = None
    account_id: str | None = None
    pulled: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    plan: list[PlanEntry] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": True,
            "dryRun": self.dry_run,
            "activeLabel": self.active_label,
        }
        if self.email is not None or self.account_id is not None:
            data["email"] = self.email
            data["accountId"] = self.account_id
        data.update(
            pulled=self.pulled,
            updated=self.updated,
            skipped=self.skipped,
            warnings=self.warnings,
            plan=[asdict(entry) for entry in self.plan],
        )
        return data


def find_fresher(
    access: str | None,
    refresh: str | None,
    expires: int | None,
    snapshots: list[StoreSnapshot],
) -> StoreSnapshot | None:
    """Foreign snapshot holding a newer copy of the same refresh token, if any.

    A later expiry wins; a store with an expiry beats an account without
    one; with no expiry on either side a different access token wins.
    """
    if not refresh:
        return None
    best: StoreSnapshot | None = None
    best_expires = expires or 0
    best_access = access
    for snap in snapshots:
        tokens = snap.tokens
        if not snap.exists or tokens is None or tokens.refresh != refresh:
            continue
        store_expires = tokens.expires or 0
        if store_expires and best_expires:
            if store_expires > best_expires:
                best, best_expires, best_access = snap, store_expires, tokens.access
        elif store_expires:
            best, best_expires, best_access = snap, store_expires, tokens.access
        elif tokens.access and tokens.access != best_access:
            best, best_access = snap, tokens.access
    return best


def plan_push(
    store: foreign.ForeignStore,
    tokens: TokenSet,
    markers: dict[str, Any] | None = None,
    exact: bool = False,
    create: bool = False,
) -> PlanEntry:
    preview = foreign.preview_store(store, tokens, markers=markers, exact=exact, create=create)
    path = str(store.path)
    if preview.error:
        return PlanEntry(store.name, path, SKIP, preview.error)
    if preview.skipped:
        return PlanEntry(store.name, path, SKIP, "not found")
    if not preview.updated:
        return PlanEntry(store.name, path, ALIGNED, "already holds the active tokens")
    if not store.path.exists():
        return PlanEntry(store.name, path, PUSH, "will be created")
    return PlanEntry(store.name, path, PUSH, "holds different tokens")


def record_push(report: SyncReport, result: UpdateResult) -> None:
    """Fold one store write into ``report``."""
    path = str(result.path)
    if result.error:
        report.warnings.append(result.error)
    elif result.skipped:
        report.skipped.append(path)
    elif result.updated:
        report.updated.append(path)
