"""`codex-quota claude ...` commands."""

import typer
from rich.markup import escape

from codex_quota.accounts import claude as claude_accounts
from codex_quota.auth.claude import login_claude_oauth
from codex_quota.cli import display, prompts, quota
from codex_quota.config import paths
from codex_quota.config.constants import PRIMARY_CMD
from codex_quota.errors import InvalidInputError
from codex_quota.store.container import read_container
from codex_quota.sync import claude as claude_sync
from codex_quota.utils import output

claude_app = typer.Typer(help="Manage Claude accounts", invoke_without_command=True)

JSON_OPTION = typer.Option(False, "--json", help="Output in JSON format")
LOCAL_OPTION = typer.Option(False, "--local", help="Use only stored account files; skip CLI auth checks")
NO_BROWSER_OPTION = typer.Option(False, "--no-browser", help="Print OAuth URL instead of opening browser")

REAUTH_HINT = "Use the owning tool to re-authenticate."
REMOVE_HINT = "Remove it from the owning tool instead."


def _warn_all(warnings: list[str]) -> None:
    for warning in warnings:
        output.err_console.print(f"[yellow]Warning: {escape(warning)}[/yellow]", soft_wrap=True)


@claude_app.callback()
def claude_main(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
    local: bool = LOCAL_OPTION,
):
    """Manage Claude accounts (defaults to quota)."""
    if ctx.invoked_subcommand is None:
        with display.report_errors(json_output):
            quota.run_quota(quota.CLAUDE, None, json_output, local)


@claude_app.command("quota")
def claude_quota(
    label: str = typer.Argument(None, help="Only show this account"),
    json_output: bool = JSON_OPTION,
    local: bool = LOCAL_OPTION,
):
    """Check Claude usage."""
    with display.report_errors(json_output):
        quota.run_quota(quota.CLAUDE, label, json_output, local)


@claude_app.command("list")
def claude_list(
    json_output: bool = JSON_OPTION,
    local: bool = LOCAL_OPTION,
):
    """List Claude credentials."""
    with display.report_errors(json_output):
        if not local:
            _warn_all(prompts.import_untracked_claude_stores(json_output))
        divergence = None if local else claude_sync.detect_claude_divergence()
        active_label = divergence.active_label if divergence else None
        accounts = claude_accounts.load_accounts()

        if not accounts:
            if json_output:
                display.print_json({"accounts": []})
                return
            output.console.print("No Claude accounts found.\n\nSearched:")
            output.console.print("  - CLAUDE_ACCOUNTS env var")
            for path in paths.claude_multi_account_paths():
                output.console.print(f"  - {escape(str(path))}")
            output.console.print(f"\nRun '{PRIMARY_CMD} claude add' to add a Claude credential.")
            return

        if json_output:
            display.print_json(
                {
                    "accounts": [
                        {
                            "label": account.label,
                            "source": account.source,
                            "hasSessionKey": bool(
                                account.session_key or claude_accounts.find_session_key(account.cookies)
                            ),
                            "hasOauthToken": bool(account.oauth_token),
                            "orgId": account.org_id,
                            "isActive": active_label is not None and account.label == active_label,
                        }
                        for account in accounts
                    ],
                    "activeInfo": {
                        "activeLabel": active_label,
                        "activeStorePath": str(divergence.active_store_path) if divergence else None,
                        "divergence": divergence.diverged if divergence else False,
                        "skipped": divergence.skipped if divergence else False,
                        "skipReason": divergence.skip_reason if divergence else None,
                        "local": local,
                    },
                }
            )
            return

        if divergence:
            display.warn_lines(quota.claude_divergence_warning(divergence))

        lines = [f"Claude Accounts ({len(accounts)} total)", ""]
        for index, account in enumerate(accounts):
            is_active = active_label is not None and account.label == active_label
            auth = []
            if account.session_key or claude_accounts.find_session_key(account.cookies):
                auth.append("sessionKey")
            if account.oauth_token:
                auth.append("oauthToken")
            status = " [green]\\[active][/green]" if is_active else ""
            lines.append(f"{'*' if is_active else ' '} {escape(account.label)}{status}")
            lines.append(f"  Auth: {'+'.join(auth) or 'unknown'} | {escape(paths.shorten_path(account.source))}")
            if index < len(accounts) - 1:
                lines.append("")
        if active_label is not None:
            lines.extend(["", "* = active (from activeLabel)"])
        display.print_box(lines)


@claude_app.command("add")
def claude_add(
    label: str = typer.Argument(None, help="Label for the Claude credential (e.g. work, personal)"),
    oauth: bool = typer.Option(False, "--oauth", help="Use OAuth browser authentication (recommended)"),
    manual: bool = typer.Option(False, "--manual", help="Use manual token entry"),
    no_browser: bool = NO_BROWSER_OPTION,
    json_output: bool = JSON_OPTION,
):
    """Add a Claude credential (via OAuth or manual entry)."""
    with display.report_errors(json_output):
        if oauth and manual:
            raise InvalidInputError("Cannot use both --oauth and --manual flags. Choose one authentication method.")
        if not label and not json_output:
            label = prompts.ask("Label (e.g., work, personal)")
        label = claude_accounts.check_new_label(label)

        if oauth or manual:
            method = "oauth" if oauth else "manual"
        else:
            method = "oauth" if json_output else prompts.choose_claude_method()

        if method == "oauth":
            account = claude_accounts.oauth_account(label, login_claude_oauth(no_browser=no_browser))
        else:
            output.err_console.print("\nPaste a sessionKey (or the JSON from claude.ai), an OAuth token, or both.")
            account = claude_accounts.manual_account(
                label,
                prompts.ask("sessionKey (leave empty to skip)"),
                prompts.ask("oauthToken (leave empty to skip)"),
                prompts.ask("cfClearance (optional)"),
                prompts.ask("orgId (optional)"),
            )
        path = claude_accounts.add_account(account)

        if json_output:
            display.print_json({"success": True, "label": label, "method": method, "source": str(path)})
            return
        via = "OAuth" if method == "oauth" else "manual entry"
        display.print_box(
            [
                display.success(f"Added Claude credential {label} (via {via})"),
                "",
                f"Saved to: {escape(paths.shorten_path(path))}",
                "",
                f"Run '{PRIMARY_CMD} claude quota' to check Claude usage",
            ]
        )


@claude_app.command("reauth")
def claude_reauth(
    label: str = typer.Argument(..., help="Label of the Claude account to re-authenticate"),
    no_browser: bool = NO_BROWSER_OPTION,
    json_output: bool = JSON_OPTION,
):
    """Re-authenticate an existing Claude account via OAuth."""
    with display.report_errors(json_output):
        account = claude_sync.find_managed_account(label, "re-authenticate", REAUTH_HINT)
        if not json_output:
            output.err_console.print(f'Re-authenticating Claude account "{escape(label)}"...')
        result = claude_sync.apply_reauth(account, login_claude_oauth(no_browser=no_browser))

        if json_output:
            display.print_json(result)
            return
        lines = [
            display.success(f"Re-authenticated Claude account {label}"),
            "",
            f"Updated: {escape(paths.shorten_path(result['source']))}",
        ]
        if result["cliUpdated"]:
            lines.append("CLI auth files also updated (active account)")
        display.print_box(lines)
        _warn_all(result.get("warnings", []))


@claude_app.command("switch")
def claude_switch(
    label: str = typer.Argument(..., help="Label of the Claude credential to switch to"),
    json_output: bool = JSON_OPTION,
):
    """Switch Claude Code, OpenCode, and pi credentials."""
    with display.report_errors(json_output):
        result = claude_sync.switch_account(label)

        if json_output:
            display.print_json(result)
            return
        if result.get("activeLabelError"):
            _warn_all([f"Failed to update activeLabel: {result['activeLabelError']}"])
        lines = [display.success(f"Switched Claude credentials to {label}"), ""]
        if result.get("activeLabelPath"):
            lines.append(f"Active label: {escape(paths.shorten_path(result['activeLabelPath']))}")
        lines.extend(display.path_lines("Updated:", result["updated"]))
        display.print_box(lines)
        _warn_all(result["warnings"])


@claude_app.command("sync")
def claude_sync_command(
    dry_run: bool = typer.Option(False, "--dry-run", help="Preview sync without writing files"),
    json_output: bool = JSON_OPTION,
):
    """Sync activeLabel to Claude Code, OpenCode, and pi."""
    with display.report_errors(json_output):
        report = claude_sync.sync_active(dry_run=dry_run).to_dict()

        if json_output:
            display.print_json(report)
            return
        display.print_box(display.sync_lines(report, report["activeLabel"]))
        _warn_all(report["warnings"])


@claude_app.command("remove")
def claude_remove(
    label: str = typer.Argument(..., help="Label of the Claude credential to remove"),
    json_output: bool = JSON_OPTION,
):
    """Remove a Claude credential from storage."""
    with display.report_errors(json_output):
        account = claude_sync.find_managed_account(label, "remove", REMOVE_HINT)

        if not json_output and len(read_container(account.source).accounts) == 1:
            output.console.print("[yellow]Warning: This is the only Claude account in this file.[/yellow]")
            output.console.print(f"The file will be deleted: {escape(paths.shorten_path(account.source))}")
            if not prompts.confirm("Continue?"):
                output.console.print("Cancelled.")
                raise typer.Exit()

        result = claude_sync.remove_account(account)

        if json_output:
            display.print_json(result)
            return
        if result.get("activeLabelError"):
            _warn_all([f"Failed to clear activeLabel: {result['activeLabelError']}"])
        lines = [display.success(f"Removed Claude account {label}"), ""]
        if "remainingAccounts" in result:
            lines.append(
                f"Updated: {escape(result['source'])} ({result['remainingAccounts']} account(s) remaining)"
            )
        else:
            lines.append(f"Deleted: {escape(result['source'])} (no accounts remaining)")
        display.print_box(lines)
