import io
from datetime import datetime

import pytest
import typer
from rich.console import Console
from rich.text import Text

from codex_quota.cli import display
from codex_quota.errors import NotFoundError

NOW = datetime(2026, 1, 1, 10, 0).timestamp()
ORG = "0123abcd-0123-4567-89ab-0123456789ab"


@pytest.mark.parametrize(
    ("seconds", "expected"),
    [
        (None, ""),
        (0, ""),
        (300, "(resets in 5m)"),
        (90 * 60, "(resets in 1h 30m)"),
        (74 * 3600, "(resets in 3d 2h)"),
    ],
)
def test_format_reset_time_relative(seconds, expected) -> None:
    assert display.format_reset_time(seconds, now=NOW) == expected


def test_format_reset_time_inline() -> None:
    assert display.format_reset_time(3600, "inline", now=NOW) == "(resets 11:00)"
    assert display.format_reset_time(48 * 3600, "inline", now=NOW) == "(resets 10:00 on 3 Jan)"


@pytest.mark.parametrize(
    ("offset_minutes", "expected"),
    [
        (-1, ("expired", "expired")),
        (3, ("expiring", "Expiring in 3m")),
        (10, ("valid", "10m")),
        (2 * 60 + 5, ("valid", "2h 5m")),
        (26 * 60 + 5, ("valid", "1d 2h")),
    ],
)
def test_format_expiry_status(offset_minutes, expected) -> None:
    expires = int(NOW * 1000) + offset_minutes * 60_000
    assert display.format_expiry_status(expires, now=NOW) == expected


def test_format_expiry_status_unknown() -> None:
    assert display.format_expiry_status(None) == ("unknown", "unknown")


def test_format_bar_colours_by_usage() -> None:
    assert display.format_bar(100) == "[green][" + "█" * 20 + "][/green]"
    assert display.format_bar(25) == "[yellow][" + "█" * 5 + "░" * 15 + "][/yellow]"
    assert display.format_bar(5).startswith("[red][█░")
    assert display.format_bar(-10) == "[red][" + "░" * 20 + "][/red]"


def test_draw_box_aligns_markup_lines() -> None:
    console = Console(file=io.StringIO(), width=100, color_system=None)

    console.print(display.draw_box(["[bold]hello[/bold]", display.format_bar(50)], min_width=10))

    rendered = console.file.getvalue().splitlines()
    assert len(rendered) == 4
    assert {Text(line).cell_len for line in rendered} == {26}
    assert rendered[0].startswith("╭")
    assert rendered[1] == "│ hello" + " " * 18 + "│"
    assert rendered[-1].endswith("╯")


def test_codex_usage_lines() -> None:
    item = {
        "label": "work",
        "email": "me@e.com",
        "source": "/tmp/accounts.json",
        "usage": {
            "plan_type": "plus",
            "rate_limit": {
                "primary_window": {"used_percent": 25, "reset_after_seconds": 3600},
                "secondary_window": {"used_percent": 90},
            },
        },
    }

    lines = display.codex_usage_lines(item, now=NOW)

    assert lines[0] == "[bold]Codex (work) <me@e.com> (plus)[/bold]"
    assert lines[2].startswith("5h limit:     [green]")
    assert lines[2].endswith("75% left (resets 11:00)")
    assert lines[3].startswith("Weekly limit: [red]")
    assert lines[3].endswith("10% left")
    assert lines[4] == "  Source: /tmp/accounts.json"


def test_codex_usage_error_lines() -> None:
    lines = display.codex_usage_lines({"label": "x", "usage": {"error": "HTTP 500"}})

    assert lines[-1] == "[red]Error: HTTP 500[/red]"


def test_claude_usage_lines_for_web_session() -> None:
    result = {
        "success": True,
        "label": "me",
        "orgId": ORG,
        "usage": {"five_hour": {"utilization": 0.3}, "seven_day": {"utilization": 50}},
        "account": {
            "email_address": "u@e.com",
            "memberships": [{"organization": {"uuid": ORG, "rate_limit_tier": "default_claude_max_20x"}}],
        },
        "overage": {"enabled": True, "limit": 50, "used": 20},
        "errors": {"account": "HTTP 500"},
    }

    lines = display.claude_usage_lines(result, now=NOW)

    assert lines[0] == "[bold]Claude (me) <u@e.com> (Claude Max)[/bold]"
    assert lines[2].endswith("70% left")
    assert lines[3].endswith("50% left")
    assert "  Overage: enabled, limit 50, remaining 30.0" in lines
    assert f"  Org: {ORG}" in lines
    assert lines[-1] == "  [yellow]Partial errors: account=HTTP 500[/yellow]"


def test_claude_usage_lines_generic_fallback() -> None:
    lines = display.claude_usage_lines({"success": True, "usage": {"session": {"used": 20, "limit": 100}}})
    assert lines[2] == "  Session: 80% left"

    empty = display.claude_usage_lines({"success": True, "usage": {}})
    assert empty[2] == "  Usage: (no usage data)"

    failed = display.claude_usage_lines({"success": False, "label": "x", "error": "boom"})
    assert failed[-1] == "[red]Error: boom[/red]"


def test_sync_lines_for_dry_run() -> None:
    report = {
        "dryRun": True,
        "pulled": [],
        "updated": ["/tmp/a.json"],
        "skipped": [],
        "plan": [{"store": "codex-cli", "path": "/tmp/a.json", "action": "push", "reason": "holds different tokens"}],
    }

    lines = display.sync_lines(report, "work")

    assert lines[0] == "Syncing active account: work"
    assert "[yellow]Dry run: no files were written.[/yellow]" in lines
    assert "  /tmp/a.json" in lines
    assert lines[lines.index("Skipped (not found):") + 1] == "  (none)"
    assert lines[-1] == "  push    codex-cli     holds different tokens"


def test_report_errors_exits_with_code_one() -> None:
    with pytest.raises(typer.Exit) as excinfo:
        with display.report_errors():
            raise NotFoundError("Account not found", availableLabels=["a"])

    assert excinfo.value.exit_code == 1
