"""Interactive prompts shared by the Codex and Claude commands."""

from __future__ import annotations

import sys

import typer
from rich.markup import escape

from codex_quota.accounts import claude as claude_accounts
from codex_quota.config.paths import shorten_path
from codex_quota.errors import InvalidInputError
from codex_quota.store.container import write_container
from codex_quota.sync import claude as claude_sync
from codex_quota.utils import output


def is_interactive() -> bool:
    return sys.stdin.isatty() and sys.stdout.isatty()


def ask(message: str, default: str = "") -> str:
    return typer.prompt(message, default=default, show_default=False, err=True).strip()


def confirm(message: str) -> bool:
    return typer.confirm(message, default=False, err=True)


def choose_claude_method() -> str:
    """``oauth`` or ``manual``, from a numbered menu."""
    output.err_console.print("\nChoose authentication method:")
    output.err_console.print("  [1] OAuth (recommended) - opens browser")
    output.err_console.print("  [2] Manual - paste sessionKey or OAuth token\n")
    choice = ask("Enter choice (1 or 2)", default="1")
    if choice == "2":
        return "manual"
    if choice != "1":
        raise InvalidInputError(f'Invalid choice "{choice}". Enter 1 or 2.')
    return "oauth"


def _note(message: str, style: str) -> None:
    output.err_console.print(f"[{style}]{escape(message)}[/{style}]")


def import_untracked_claude_stores(as_json: bool = False) -> list[str]:
    """Offer to record OpenCode/pi Claude tokens that no managed account holds.

    Only runs on an interactive terminal outside ``--json``; returns warnings.
    """
    if as_json or not is_interactive():
        return []
    container = claude_accounts.read_active_container()
    if container.root_type == "invalid":
        return [f"Invalid Claude accounts file at {container.path}"]

    managed = claude_sync.managed_accounts(container)
    untracked = claude_sync.find_untracked_stores(managed)
    updated = False
    for snap in untracked:
        output.err_console.print(
            f"Detected Claude OAuth token in {snap.name} ({escape(shorten_path(snap.path))}) "
            f"not saved in {escape(shorten_path(container.path))}.",
            soft_wrap=True,
        )
        if not managed:
            output.err_console.print("No managed Claude accounts found to merge into.")
        output.err_console.print("Choose how to record it:")
        output.err_console.print("  [1] Add as new account")
        output.err_console.print("  [2] Merge into existing account")
        output.err_console.print("  [3] Skip\n")
        choice = ask("Enter choice (1, 2, or 3)", default="3")

        if choice == "2" and managed:
            output.err_console.print(f"Existing labels: {escape(', '.join(a.label for a in managed))}")
            label = ask("Merge into label")
            if label not in {a.label for a in managed}:
                _note(f'Skipping: label "{label}" not found.', "yellow")
                continue
            if claude_sync.merge_imported_tokens(container, label, snap.tokens):
                updated = True
                managed = claude_sync.managed_accounts(container)
                _note(f'Merged OAuth token into "{label}".', "green")
            else:
                _note(f'No changes applied to "{label}".', "yellow")
            continue

        if choice == "1" or choice == "2":
            label = ask("New label")
            if not label:
                _note("Skipping: label is required.", "yellow")
                continue
            try:
                claude_sync.add_imported_account(container, label, snap.tokens)
            except InvalidInputError as exc:
                _note(f"Skipping: {exc.message}", "yellow")
                continue
            updated = True
            managed = claude_sync.managed_accounts(container)
            _note(f'Added Claude account "{label}".', "green")
            continue

        output.err_console.print("Skipping import.")

    if updated:
        write_container(container)
    return []
