"""`codex-quota codex ...` commands."""

import typer
from rich.markup import escape

from codex_quota.accounts import codex as codex_accounts
from codex_quota.accounts import is_valid_label
from codex_quota.auth.codex import login_codex_oauth
from codex_quota.cli import display, prompts, quota
from codex_quota.config import paths
from codex_quota.config.constants import PRIMARY_CMD
from codex_quota.errors import InvalidInputError
from codex_quota.store.container import read_container
from codex_quota.sync import codex as codex_sync
from codex_quota.utils import output
from codex_quota.utils.jwt import extract_profile

codex_app = typer.Typer(help="Manage OpenAI Codex accounts", invoke_without_command=True)

JSON_OPTION = typer.Option(False, "--json", help="Output in JSON format")
LOCAL_OPTION = typer.Option(False, "--local", help="Use only stored account files; skip CLI auth checks")
NO_BROWSER_OPTION = typer.Option(False, "--no-browser", help="Print auth URL instead of opening browser")


def _identity(label: str, email: str | None, plan: str | None = None) -> str:
    return f"{label}{f' <{email}>' if email else ''}{f' ({plan})' if plan else ''}"


def _warn_all(warnings: list[str]) -> None:
    for warning in warnings:
        output.err_console.print(f"[yellow]Warning: {escape(warning)}[/yellow]", soft_wrap=True)


@codex_app.callback()
def codex_main(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
    local: bool = LOCAL_OPTION,
):
    """Manage OpenAI Codex accounts (defaults to quota)."""
    if ctx.invoked_subcommand is None:
        with display.report_errors(json_output):
            quota.run_quota(quota.CODEX, None, json_output, local)


@codex_app.command("quota")
def codex_quota(
    label: str = typer.Argument(None, help="Only show this account"),
    json_output: bool = JSON_OPTION,
    local: bool = LOCAL_OPTION,
):
    """Check usage quota."""
    with display.report_errors(json_output):
        quota.run_quota(quota.CODEX, label, json_output, local)


@codex_app.command("list")
def codex_list(
    json_output: bool = JSON_OPTION,
    local: bool = LOCAL_OPTION,
):
    """List all accounts from all sources."""
    with display.report_errors(json_output):
        divergence = None if local else codex_sync.detect_codex_divergence(allow_migration=False)
        active_label = divergence.active_label if divergence else None
        accounts = codex_accounts.load_accounts(active_label, local=local)

        if not accounts:
            if json_output:
                display.print_json({"accounts": []})
                return
            output.console.print("No accounts found.\n\nSearched:")
            output.console.print("  - CODEX_ACCOUNTS env var")
            for path in paths.codex_multi_account_paths():
                output.console.print(f"  - {escape(str(path))}")
            output.console.print(f"  - {escape(str(paths.codex_cli_auth_path()))}")
            output.console.print(f"\nRun '{PRIMARY_CMD} codex add' to add an account via OAuth.")
            return

        active_id = divergence.active_account.account_id if divergence and divergence.active_account else None
        cli_id = divergence.cli_account_id if divergence else None
        native_id = cli_id if cli_id and cli_id != active_id else None

        details = []
        for account in accounts:
            profile = extract_profile(account.access)
            status, expiry = display.format_expiry_status(account.expires)
            is_active = active_label is not None and account.label == active_label
            details.append(
                {
                    "label": account.label,
                    "email": profile["email"],
                    "accountId": account.account_id,
                    "planType": profile["planType"],
                    "expires": account.expires,
                    "expiryStatus": status,
                    "expiryDisplay": expiry,
                    "source": account.source,
                    "isActive": is_active,
                    "isNativeActive": not is_active and native_id is not None and account.account_id == native_id,
                }
            )

        if json_output:
            info = divergence.to_dict() if divergence else {}
            display.print_json(
                {
                    "accounts": details,
                    "activeInfo": {
                        "activeLabel": active_label,
                        "activeAccountId": active_id,
                        "activeStorePath": info.get("activeStorePath"),
                        "cliAccountId": cli_id,
                        "cliLabel": info.get("cliLabel"),
                        "divergence": info.get("diverged", False),
                        "migrated": info.get("migrated", False),
                        "local": local,
                    },
                }
            )
            return

        if divergence and divergence.diverged:
            display.warn_lines(quota.codex_divergence_warning(divergence))

        lines = [f"Accounts ({len(details)} total)", ""]
        for index, detail in enumerate(details):
            marker, status = " ", ""
            if detail["isActive"]:
                marker, status = "*", " [green]\\[active][/green]"
            elif detail["isNativeActive"]:
                marker, status = "~", " [yellow]\\[native][/yellow]"
            identity = _identity(detail["label"], detail["email"], detail["planType"])
            lines.append(f"{marker} {escape(identity)}{status}")
            if detail["expiryStatus"] == "expired":
                expiry = "[red]Expired[/red]"
            elif detail["expiryStatus"] == "expiring":
                expiry = f"[yellow]{detail['expiryDisplay']}[/yellow]"
            else:
                expiry = f"Expires: {detail['expiryDisplay']}"
            lines.append(f"  {expiry} | {escape(paths.shorten_path(detail['source']))}")
            if index < len(details) - 1:
                lines.append("")

        has_active = any(d["isActive"] for d in details)
        has_native = any(d["isNativeActive"] for d in details)
        if has_active or has_native:
            lines.append("")
            if has_active:
                lines.append("* = active (from activeLabel)")
            if has_native:
                lines.append(f"~ = CLI auth (run '{PRIMARY_CMD} codex sync' to realign)")
        display.print_box(lines)


@codex_app.command("add")
def codex_add(
    label: str = typer.Argument(None, help="Label for the new account (defaults to the email prefix)"),
    no_browser: bool = NO_BROWSER_OPTION,
    json_output: bool = JSON_OPTION,
):
    """Add a new account via OAuth browser flow."""
    with display.report_errors(json_output):
        if label and not is_valid_label(label):
            raise InvalidInputError(f'Invalid label "{label}". Use only letters, numbers, hyphens, and underscores.')
        token = login_codex_oauth(no_browser=no_browser)
        label = label or codex_accounts.default_label(token.email)
        path = codex_accounts.add_account(label, token)

        if json_output:
            display.print_json(
                {
                    "success": True,
                    "label": label,
                    "email": token.email,
                    "accountId": token.account_id,
                    "source": str(path),
                }
            )
            return
        display.print_box(
            [
                display.success(f"Added account {_identity(label, token.email)}"),
                "",
                f"Saved to: {escape(paths.shorten_path(path))}",
                "",
                f"Run '{PRIMARY_CMD} codex switch {escape(label)}' to activate this account",
            ]
        )


@codex_app.command("reauth")
def codex_reauth(
    label: str = typer.Argument(..., help="Label of the account to re-authenticate"),
    no_browser: bool = NO_BROWSER_OPTION,
    json_output: bool = JSON_OPTION,
):
    """Re-authenticate an existing account via OAuth."""
    with display.report_errors(json_output):
        account = codex_sync.find_managed_account(label, "re-authenticate")
        if not json_output:
            output.err_console.print(f'Re-authenticating account "{escape(label)}"...')
        token = login_codex_oauth(no_browser=no_browser)
        result = codex_sync.apply_reauth(account, token)

        if json_output:
            display.print_json(result)
            return
        lines = [
            display.success(f"Re-authenticated account {_identity(label, token.email)}"),
            "",
            f"Updated: {escape(paths.shorten_path(result['source']))}",
        ]
        if result["cliUpdated"]:
            lines.append("CLI auth files also updated (active account)")
        display.print_box(lines)
        _warn_all(result.get("warnings", []))


@codex_app.command("switch")
def codex_switch(
    label: str = typer.Argument(..., help="Label of the account to activate"),
    json_output: bool = JSON_OPTION,
):
    """Switch active account for Codex CLI, OpenCode, and pi."""
    with display.report_errors(json_output):
        result = codex_sync.switch_account(label)

        if json_output:
            display.print_json(result)
            return
        if result.get("activeLabelError"):
            _warn_all([f"Failed to update activeLabel: {result['activeLabelError']}"])
        lines = [
            display.success(f"Switched to {_identity(label, result['email'], result['planType'])}"),
            "",
        ]
        if result.get("activeLabelPath"):
            lines.append(f"Active label: {escape(paths.shorten_path(result['activeLabelPath']))}")
        lines.extend(display.path_lines("Updated:", result["updated"]))
        display.print_box(lines)
        _warn_all(result["warnings"])


@codex_app.command("sync")
def codex_sync_command(
    dry_run: bool = typer.Option(False, "--dry-run", help="Preview sync without writing files"),
    json_output: bool = JSON_OPTION,
):
    """Sync activeLabel to Codex CLI, OpenCode, and pi."""
    with display.report_errors(json_output):
        report = codex_sync.sync_active(dry_run=dry_run).to_dict()

        if json_output:
            display.print_json(report)
            return
        display.print_box(display.sync_lines(report, _identity(report["activeLabel"], report.get("email"))))
        _warn_all(report["warnings"])


@codex_app.command("remove")
def codex_remove(
    label: str = typer.Argument(..., help="Label of the account to remove"),
    json_output: bool = JSON_OPTION,
):
    """Remove an account from storage."""
    with display.report_errors(json_output):
        account = codex_sync.find_managed_account(label, "remove")

        if account.label == codex_accounts.CODEX_CLI_LABEL and account.source == str(paths.codex_cli_auth_path()):
            if not json_output:
                output.console.print("[yellow]Warning: This will clear your Codex CLI authentication.[/yellow]")
                output.console.print(
                    f"You will need to re-authenticate using 'codex auth' or '{PRIMARY_CMD} codex add'."
                )
                if not prompts.confirm("Continue?"):
                    output.console.print("Cancelled.")
                    raise typer.Exit()
            path = codex_sync.remove_codex_cli_auth()
            if json_output:
                display.print_json(
                    {"success": True, "label": label, "source": str(path), "message": "Codex CLI auth cleared"}
                )
                return
            display.print_box(
                [display.success(f"Removed {label}"), "", f"Deleted: {escape(paths.shorten_path(path))}"]
            )
            return

        if not json_output and len(read_container(account.source).accounts) == 1:
            output.console.print("[yellow]Warning: This is the only account in this file.[/yellow]")
            output.console.print(f"The file will be deleted: {escape(paths.shorten_path(account.source))}")
            if not prompts.confirm("Continue?"):
                output.console.print("Cancelled.")
                raise typer.Exit()

        result = codex_sync.remove_account(account)

        if json_output:
            display.print_json(result)
            return
        if result.get("activeLabelError"):
            _warn_all([f"Failed to clear activeLabel: {result['activeLabelError']}"])
        if result.get("codexQuotaLabelError"):
            _warn_all([f"Failed to clear codex_quota_label: {result['codexQuotaLabelError']}"])
        email = extract_profile(account.access)["email"]
        lines = [display.success(f"Removed account {_identity(label, email)}"), ""]
        if "remainingAccounts" in result:
            lines.append(
                f"Updated: {escape(result['source'])} ({result['remainingAccounts']} account(s) remaining)"
            )
        else:
            lines.append(f"Deleted: {escape(result['source'])} (no accounts remaining)")
        display.print_box(lines)
