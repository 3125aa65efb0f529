"""Quota reporting across the Codex and Claude namespaces."""

from __future__ import annotations

from typing import Any, NoReturn

from rich.markup import escape

from codex_quota.accounts import claude as claude_accounts
from codex_quota.accounts import codex as codex_accounts
from codex_quota.cli import display, prompts
from codex_quota.config.constants import PRIMARY_CMD
from codex_quota.errors import NotFoundError
from codex_quota.sync import claude as claude_sync
from codex_quota.sync import codex as codex_sync
from codex_quota.usage import claude as claude_usage
from codex_quota.usage import codex as codex_usage
from codex_quota.utils import output
from codex_quota.utils.jwt import extract_profile

ALL = "all"
CODEX = "codex"
CLAUDE = "claude"


def codex_divergence_warning(divergence: codex_sync.CodexDivergence) -> list[str]:
    active_id = divergence.active_account.account_id if divergence.active_account else None
    return [
        "[yellow]Warning: CLI auth diverged from activeLabel[/yellow]",
        f"  Active: {escape(divergence.active_label or '(none)')} ({escape(active_id or '(unknown)')})",
        f"  CLI:    {escape(divergence.cli_label or '(unknown)')} "
        f"({escape(divergence.cli_account_id or '(unknown)')})",
        "",
        f"Run '{PRIMARY_CMD} codex sync' to push active account to CLI.",
        "",
    ]


def claude_divergence_warning(divergence: claude_sync.ClaudeDivergence) -> list[str]:
    if divergence.diverged:
        names = [s["name"] for s in divergence.stores if s["considered"] and s["matches"] is False]
        return [
            f"[yellow]Warning: Claude auth diverged from activeLabel ({escape(divergence.active_label or '(none)')})"
            "[/yellow]",
            f"  Diverged stores: {', '.join(names) or 'one or more stores'}",
            "",
            f"Run '{PRIMARY_CMD} claude sync' to push active account to CLI.",
            "",
        ]
    if divergence.skip_reason == "active-account-not-oauth" and divergence.active_label:
        return ["Note: Active Claude account has no OAuth tokens; skipping divergence check.", ""]
    return []


def codex_items(label: str | None, local: bool) -> tuple[list[dict[str, Any]], codex_sync.CodexDivergence | None]:
    divergence = None if local else codex_sync.detect_codex_divergence(allow_migration=False)
    accounts = codex_accounts.load_accounts(divergence.active_label if divergence else None, local=local)
    selected = [a for a in accounts if a.label == label] if label else accounts
    if label and accounts and not selected:
        raise NotFoundError(f'Account "{label}" not found', availableLabels=[a.label for a in accounts])

    items = []
    for result in codex_usage.collect_usage(selected):
        profile = extract_profile(result.account.access)
        items.append(
            {
                "label": result.account.label,
                "email": profile["email"],
                "accountId": result.account.account_id,
                "planType": profile["planType"],
                "usage": result.usage,
                "source": result.account.source,
            }
        )
    return items, divergence


def claude_results(label: str | None, local: bool, as_json: bool) -> list[dict[str, Any]] | None:
    """OAuth usage when OAuth accounts exist, else stored sessions, else browser cookies."""
    if not local:
        for warning in prompts.import_untracked_claude_stores(as_json):
            output.err_console.print(f"[yellow]Warning: {escape(warning)}[/yellow]")

    oauth_accounts = claude_accounts.load_all_oauth_accounts(local=local)
    selected = [a for a in oauth_accounts if a.label == label] if label else oauth_accounts
    if selected:
        return claude_usage.dedupe_results_by_usage(claude_usage.collect_oauth_usage(selected))

    session_accounts = claude_accounts.load_accounts()
    selected_sessions = [a for a in session_accounts if a.label == label] if label else session_accounts
    if selected_sessions:
        return claude_usage.dedupe_results_by_usage(claude_usage.collect_session_usage(selected_sessions))
    if label:
        available = list(dict.fromkeys([*(a.label for a in oauth_accounts), *(a.label for a in session_accounts)]))
        raise NotFoundError(f'Claude account "{label}" not found', availableLabels=available)

    legacy = claude_usage.collect_legacy_usage()
    return [legacy] if legacy.get("success") or legacy.get("usage") else None


def _no_accounts(scope: str, as_json: bool) -> NoReturn:
    codex_hint = f"Run '{PRIMARY_CMD} codex add' to add a Codex account."
    claude_hint = f"Run '{PRIMARY_CMD} claude add' to add a Claude account."
    hints = {CODEX: [codex_hint], CLAUDE: [claude_hint]}.get(scope, [codex_hint, claude_hint])
    display.fail("No accounts found", as_json, hint="\n".join(hints))


def run_quota(scope: str, label: str | None, as_json: bool, local: bool) -> None:
    show_codex = scope in (ALL, CODEX)
    show_claude = scope in (ALL, CLAUDE)

    codex_list: list[dict[str, Any]] = []
    codex_divergence = None
    if show_codex:
        codex_list, codex_divergence = codex_items(label, local)

    claude_divergence = claude_sync.detect_claude_divergence() if show_claude and not local else None
    claude_list = None
    if show_claude:
        claude_list = claude_results(label if scope == CLAUDE else None, local, as_json)

    if not codex_list and not claude_list:
        _no_accounts(scope, as_json)

    if as_json:
        codex_info = codex_divergence.to_dict() if codex_divergence else None
        claude_info = claude_divergence.to_dict() if claude_divergence else None
        codex_out = [{**item, "divergence": codex_info} for item in codex_list] if codex_info else codex_list
        claude_out = claude_list or []
        if claude_info:
            claude_out = [{**item, "divergence": claude_info} for item in claude_out]
        if show_codex and show_claude:
            divergence = {"codex": codex_info, "claude": claude_info}
            display.print_json({"codex": codex_out, "claude": claude_out, "divergence": divergence})
        elif show_claude:
            display.print_json(claude_out)
        else:
            display.print_json(codex_out)
        return

    if codex_divergence and codex_divergence.diverged:
        display.warn_lines(codex_divergence_warning(codex_divergence))
    if claude_divergence:
        display.warn_lines(claude_divergence_warning(claude_divergence))
    for item in codex_list:
        display.print_box(display.codex_usage_lines(item))
    for result in claude_list or []:
        display.print_box(display.claude_usage_lines(result))
