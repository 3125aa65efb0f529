"""CLI commands for codex-quota."""

import sys

import typer
from loguru import logger

from codex_quota import __logo__, __version__
from codex_quota.cli import display, quota
from codex_quota.cli.claude import claude_app
from codex_quota.cli.codex import JSON_OPTION, LOCAL_OPTION, codex_app
from codex_quota.config.constants import PRIMARY_CMD
from codex_quota.utils import output

app = typer.Typer(
    name=PRIMARY_CMD,
    help=f"{__logo__} {PRIMARY_CMD} - Manage and monitor OpenAI Codex and Claude accounts",
    invoke_without_command=True,
)

NAMESPACES = ("codex", "claude")
SUBCOMMANDS = ("quota", "add", "reauth", "switch", "sync", "list", "remove")


def version_callback(value: bool):
    if value:
        output.console.print(f"{__logo__} {PRIMARY_CMD} v{__version__}")
        raise typer.Exit()


@app.callback()
def root(
    ctx: typer.Context,
    version: bool = typer.Option(None, "--version", "-v", callback=version_callback, is_eager=True),
    no_color: bool = typer.Option(False, "--no-color", help="Disable colored output"),
    verbose: bool = typer.Option(False, "--verbose", help="Show debug logs"),
    json_output: bool = JSON_OPTION,
    local: bool = LOCAL_OPTION,
):
    """Check quota for all accounts (Codex + Claude) when no namespace is given."""
    output.configure(no_color=no_color)
    if verbose:
        logger.enable("codex_quota")
    if ctx.invoked_subcommand is None:
        with display.report_errors(json_output):
            quota.run_quota(quota.ALL, None, json_output, local)


@app.command("quota", hidden=True)
def root_quota(
    label: str = typer.Argument(None, help="Only show accounts with this label"),
    json_output: bool = JSON_OPTION,
    local: bool = LOCAL_OPTION,
):
    """Check quota for all accounts (Codex + Claude)."""
    with display.report_errors(json_output):
        quota.run_quota(quota.ALL, label, json_output, local)


app.add_typer(codex_app, name="codex")
app.add_typer(claude_app, name="claude")


# ============================================================================
# Argument pre-parsing
# ============================================================================


def _reject(message: str, hint: str) -> None:
    output.err_console.print(f"[red]Error: {message}[/red]")
    output.err_console.print(hint)
    raise SystemExit(1)


def rewrite_args(args: list[str]) -> list[str]:
    """Reject the pre-namespace syntax and route bare labels to ``quota``.

    ``codex-quota work`` and ``codex-quota codex work`` both mean "quota for work".
    """
    if "--claude" in args or "--codex" in args:
        _reject(
            "--claude/--codex flags were replaced by namespaces.",
            f"Use '{PRIMARY_CMD} claude' or '{PRIMARY_CMD} codex' instead.",
        )
    positions = [i for i, arg in enumerate(args) if not arg.startswith("-")]
    if not positions:
        return args
    first = positions[0]
    word = args[first]
    if word in SUBCOMMANDS and word != "quota":
        _reject(
            f"'{word}' now requires a namespace.",
            f"Use '{PRIMARY_CMD} codex {word}' or '{PRIMARY_CMD} claude {word}'.",
        )
    if word not in NAMESPACES and word != "quota":
        return [*args[:first], "quota", *args[first:]]
    if word in NAMESPACES and len(positions) > 1:
        second = positions[1]
        if args[second] not in SUBCOMMANDS:
            return [*args[:second], "quota", *args[second:]]
    return args


def main() -> None:
    app(args=rewrite_args(sys.argv[1:]), prog_name=PRIMARY_CMD)


if __name__ == "__main__":
    main()
