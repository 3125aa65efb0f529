"""Bars, boxes and per-account usage lines."""

from __future__ import annotations

import json
import math
import re
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, NoReturn

import httpx
import typer
from loguru import logger
from rich import box
from rich.markup import escape
from rich.panel import Panel
from rich.text import Text

from codex_quota.config.paths import shorten_path
from codex_quota.errors import CodexQuotaError
from codex_quota.usage.claude import normalize_org_id
from codex_quota.utils import output

BAR_WIDTH = 20
BOX_MIN_WIDTH = 70


def _first(mapping: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if mapping.get(key) is not None:
            return mapping[key]
    return None


def _number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def print_json(payload: Any) -> None:
    output.console.out(json.dumps(payload, indent=2, ensure_ascii=False), highlight=False)


def warn_lines(lines: list[str]) -> None:
    for line in lines:
        output.err_console.print(line, soft_wrap=True)


def fail(message: str, as_json: bool = False, **details: Any) -> NoReturn:
    """Print ``message`` as an error (or a JSON error object) and exit 1."""
    if as_json:
        print_json({"success": False, "error": message, **details})
    else:
        output.err_console.print(f"[red]Error: {escape(message)}[/red]", soft_wrap=True)
        if details.get("availableLabels"):
            output.err_console.print(f"Available: {escape(', '.join(details['availableLabels']))}")
        if details.get("hint"):
            output.err_console.print(escape(details["hint"]))
    raise typer.Exit(1)


@contextmanager
def report_errors(as_json: bool = False) -> Iterator[None]:
    """Turn domain, filesystem and HTTP failures into an error message and exit code 1."""
    try:
        yield
    except CodexQuotaError as exc:
        logger.debug("Command failed: {}", exc)
        fail(exc.message, as_json, **exc.details)
    except (OSError, httpx.HTTPError) as exc:
        logger.debug("Command failed: {!r}", exc)
        fail(str(exc) or type(exc).__name__, as_json)


# ============================================================================
# Time formatting
# ============================================================================


def format_reset_time(seconds: float | None, style: str = "parentheses", now: float | None = None) -> str:
    if not seconds:
        return ""
    seconds = int(seconds)
    reset = datetime.fromtimestamp((time.time() if now is None else now) + seconds)
    hours, mins = seconds // 3600, (seconds % 3600) // 60
    if style == "inline":
        clock = reset.strftime("%H:%M")
        if hours >= 24:
            return f"(resets {clock} on {reset.day} {reset.strftime('%b')})"
        return f"(resets {clock})"
    if hours > 24:
        return f"(resets in {hours // 24}d {hours % 24}h)"
    if hours > 0:
        return f"(resets in {hours}h {mins}m)"
    return f"(resets in {mins}m)"


def format_reset_at(value: Any, now: float | None = None) -> str:
    """Inline reset text for an ISO timestamp."""
    if not isinstance(value, str) or not value:
        return ""
    try:
        when = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return ""
    current = time.time() if now is None else now
    seconds = max(0, int(when.timestamp() - current))
    return format_reset_time(seconds, "inline", now=current)


def format_expiry_status(expires: int | None, now: float | None = None) -> tuple[str, str]:
    """``(status, display)`` for an expiry in epoch milliseconds."""
    if not expires:
        return "unknown", "unknown"
    current_ms = (time.time() if now is None else now) * 1000
    remaining = expires - current_ms
    if remaining <= 0:
        return "expired", "expired"
    minutes = int(remaining // 60_000)
    if minutes < 5:
        return "expiring", f"Expiring in {minutes}m"
    hours, mins = divmod(minutes, 60)
    days, hours = divmod(hours, 24)
    if days:
        return "valid", f"{days}d {hours}h"
    if hours:
        return "valid", f"{hours}h {mins}m"
    return "valid", f"{mins}m"


# ============================================================================
# Bars and boxes
# ============================================================================


def _bar_style(remaining: float) -> str:
    used = 100 - remaining
    if used < 70:
        return "green"
    if used < 90:
        return "yellow"
    return "red"


def format_bar(remaining: float, width: int = BAR_WIDTH) -> str:
    """``[████░░]`` sized by remaining quota; full means nothing used."""
    filled = max(0, min(width, round(remaining / 100 * width)))
    bar = "█" * filled + "░" * (width - filled)
    style = _bar_style(remaining)
    return f"[{style}][{bar}][/{style}]"


def _limit_line(title: str, remaining: float, reset: str) -> str:
    return f"{title}{format_bar(remaining)} {round(remaining)}% left {reset}".rstrip()


def draw_box(lines: list[str], min_width: int = BOX_MIN_WIDTH) -> Panel:
    """Frame markup ``lines`` in a rounded panel sized to the widest line."""
    widths = [Text.from_markup(line).cell_len for line in lines]
    return Panel(
        Text.from_markup("\n".join(lines)),
        box=box.ROUNDED,
        width=max([min_width, *widths]) + 4,
        padding=(0, 1),
    )


def print_box(lines: list[str]) -> None:
    output.console.print(draw_box(lines))


def success(message: str) -> str:
    return f"[green]{escape(message)}[/green]"


def path_lines(title: str, items: list[str]) -> list[str]:
    if not items:
        return [title, "  (none)"]
    return [title, *(f"  {escape(shorten_path(item))}" for item in items)]


# ============================================================================
# Codex usage
# ============================================================================


def parse_window(window: Any) -> dict[str, Any] | None:
    if not isinstance(window, dict):
        return None
    return {
        "used": _number(_first(window, "used_percent", "usedPercent", "percent_used")),
        "remaining": _number(_first(window, "remaining_percent", "remainingPercent")),
        "resets": _first(window, "resets_at", "resetsAt", "reset_at"),
        "reset_after_seconds": _number(_first(window, "reset_after_seconds", "resetAfterSeconds")),
    }


def _codex_windows(usage: dict[str, Any]) -> tuple[Any, Any]:
    rate_limit = usage.get("rate_limit") if isinstance(usage.get("rate_limit"), dict) else {}
    primary = rate_limit.get("primary_window") or _first(usage, "primary", "session", "fiveHour")
    secondary = rate_limit.get("secondary_window") or _first(usage, "secondary", "weekly", "week")
    return primary, secondary


def codex_usage_lines(item: dict[str, Any], now: float | None = None) -> list[str]:
    """Box lines for one Codex quota item (``label``, ``email``, ``planType``, ``usage``, ``source``)."""
    usage = item.get("usage") if isinstance(item.get("usage"), dict) else {}
    plan = usage.get("plan_type") or item.get("planType")
    header = "Codex"
    if item.get("label"):
        header += f" ({item['label']})"
    if item.get("email"):
        header += f" <{item['email']}>"
    if plan:
        header += f" ({plan})"
    lines = [f"[bold]{escape(header)}[/bold]", ""]
    source = item.get("source")

    if usage.get("error"):
        lines.append(f"[red]Error: {escape(str(usage['error']))}[/red]")
        if source:
            lines.append(f"  Source: {escape(shorten_path(source))}")
        return lines

    primary, secondary = _codex_windows(usage)
    for title, window in (("5h limit:     ", primary), ("Weekly limit: ", secondary)):
        parsed = parse_window(window)
        if not parsed:
            continue
        remaining = parsed["remaining"]
        if remaining is None and parsed["used"] is not None:
            remaining = 100 - parsed["used"]
        if remaining is None:
            continue
        reset = format_reset_time(parsed["reset_after_seconds"], "inline", now=now)
        lines.append(_limit_line(title, remaining, reset))
    if source:
        lines.append(f"  Source: {escape(shorten_path(source))}")
    return lines


# ============================================================================
# Claude usage
# ============================================================================


def normalize_percent_used(value: Any) -> float | None:
    used = _number(value)
    if used is None:
        return None
    if 0 <= used <= 1:
        used *= 100
    return min(100.0, max(0.0, used))


def parse_utilization_window(window: Any) -> dict[str, Any] | None:
    if not isinstance(window, dict):
        return None
    remaining_pct = _first(window, "remaining_percent", "remainingPercent", "percent_remaining")
    remaining = None
    if remaining_pct is not None:
        remaining = _number(remaining_pct)
    else:
        used = normalize_percent_used(_first(window, "utilization", "used_percent", "usedPercent", "percent_used"))
        if used is not None:
            remaining = 100 - used
    if remaining is not None:
        remaining = min(100.0, max(0.0, remaining))
    return {"remaining": remaining, "resets_at": _first(window, "resets_at", "resetsAt", "reset_at", "resetAt")}


def format_plan_label(label: Any) -> str:
    if not label:
        return ""
    words = str(label).replace("_", " ").split()
    return " ".join(word[0].upper() + word[1:] for word in words)


def _plan_display(result: dict[str, Any], account: dict[str, Any]) -> str | None:
    membership = None
    if isinstance(account.get("memberships"), list):
        org = normalize_org_id(result.get("orgId"))
        membership = next(
            (
                m
                for m in account["memberships"]
                if isinstance(m, dict)
                and normalize_org_id((m.get("organization") or {}).get("uuid")) == org
            ),
            None,
        )
    organization = (membership or {}).get("organization") or {}
    subscription = account.get("subscription") if isinstance(account.get("subscription"), dict) else {}
    plan = (
        result.get("subscriptionType")
        or result.get("rateLimitTier")
        or _first(account, "plan", "plan_type", "planType")
        or subscription.get("plan")
        or organization.get("rate_limit_tier")
        or ("claude_max" if "claude_max" in (organization.get("capabilities") or []) else None)
    )
    if not plan:
        return None
    plan = re.sub(r"_\d+x$", "", re.sub(r"^default_", "", str(plan)), flags=re.IGNORECASE)
    return format_plan_label(plan)


def _account_email(account: dict[str, Any]) -> str | None:
    user = account.get("user") if isinstance(account.get("user"), dict) else {}
    nested = account.get("account") if isinstance(account.get("account"), dict) else {}
    return _first(account, "email", "email_address") or user.get("email") or nested.get("email")


def format_overage_line(overage: Any) -> str | None:
    if not isinstance(overage, dict):
        return None
    limit = _first(overage, "limit", "spend_limit", "spendLimit", "overage_spend_limit")
    used = _first(overage, "used", "spent", "spend", "amount_used")
    remaining = overage.get("remaining")
    if remaining is None and _number(limit) is not None and _number(used) is not None:
        remaining = _number(limit) - _number(used)
    enabled = _first(overage, "enabled", "is_enabled", "active")
    parts = []
    if enabled is not None:
        parts.append("enabled" if enabled else "disabled")
    if limit is not None:
        parts.append(f"limit {limit}")
    if remaining is not None:
        parts.append(f"remaining {remaining}")
    return f"Overage: {', '.join(parts)}" if parts else None


def _generic_windows(usage: Any) -> list[tuple[str, dict[str, Any]]]:
    if not isinstance(usage, dict):
        return []
    root = _first(usage, "usage", "quotas", "quota") or usage
    if not isinstance(root, dict):
        return []
    windows: list[tuple[str, dict[str, Any]]] = []
    seen: set[str] = set()

    def _push(label: str, window: Any) -> None:
        if isinstance(window, dict) and label not in seen:
            seen.add(label)
            windows.append((label, window))

    _push("Session", _first(root, "session", "sessions", "fiveHour", "five_hour", "primary"))
    _push("Weekly", _first(root, "weekly", "week", "secondary"))
    models = _first(root, "models", "model", "usage_by_model", "model_usage")
    if isinstance(models, dict):
        for key, value in models.items():
            _push(format_plan_label(key), value)
    _push("Opus", _first(root, "opus", "model_opus", "claude_opus"))
    return windows


def _generic_percent_left(window: dict[str, Any]) -> float | None:
    remaining_pct = _number(_first(window, "remaining_percent", "remainingPercent", "percent_remaining"))
    if remaining_pct is not None:
        return remaining_pct
    used_pct = _number(_first(window, "used_percent", "usedPercent", "percent_used", "percentUsed"))
    if used_pct is not None:
        return 100 - used_pct
    limit = _number(_first(window, "limit", "quota", "total", "max", "maximum"))
    if not limit or limit <= 0:
        return None
    remaining = _number(_first(window, "remaining", "remaining_units", "remaining_tokens"))
    if remaining is not None:
        return remaining / limit * 100
    used = _number(_first(window, "used", "used_units", "used_tokens"))
    return (1 - used / limit) * 100 if used is not None else None


CLAUDE_WINDOWS = (
    ("5h limit:     ", ("five_hour", "fiveHour")),
    ("Weekly limit: ", ("seven_day", "sevenDay")),
    ("Opus weekly:  ", ("seven_day_opus", "sevenDayOpus")),
    ("Sonnet weekly: ", ("seven_day_sonnet", "sevenDaySonnet")),
)


def claude_usage_lines(result: dict[str, Any], now: float | None = None) -> list[str]:
    """Box lines for one Claude usage result (OAuth or web session)."""
    account = result.get("account") if isinstance(result.get("account"), dict) else {}
    email = _account_email(account)
    plan = _plan_display(result, account)
    header = "Claude"
    if result.get("label"):
        header += f" ({result['label']})"
    if email:
        header += f" <{email}>"
    if plan:
        header += f" ({plan})"
    lines = [f"[bold]{escape(header)}[/bold]", ""]

    if not result.get("success"):
        lines.append(f"[red]Error: {escape(str(result.get('error') or 'Claude usage unavailable'))}[/red]")
        return lines

    usage = result.get("usage")
    rendered = False
    if isinstance(usage, dict):
        for title, keys in CLAUDE_WINDOWS:
            parsed = parse_utilization_window(_first(usage, *keys))
            if not parsed or parsed["remaining"] is None:
                continue
            lines.append(_limit_line(title, parsed["remaining"], format_reset_at(parsed["resets_at"], now=now)))
            rendered = True

    if not rendered:
        windows = _generic_windows(usage)
        for label, window in windows:
            percent = _generic_percent_left(window)
            seconds = _number(_first(window, "reset_after_seconds", "resetAfterSeconds"))
            resets = _first(window, "resets_at", "resetsAt", "reset_at", "resetAt", "reset")
            reset = format_reset_time(seconds, now=now) if seconds else (f"(resets {resets})" if resets else "")
            left = "?" if percent is None else f"{round(percent)}% left"
            lines.append(escape(f"  {label}: {left} {reset}".rstrip()))
        if not windows:
            lines.append("  Usage: (no usage data)")

    overage = format_overage_line(result.get("overage"))
    if overage:
        lines.append(f"  {escape(overage)}")
    if result.get("orgId"):
        lines.append(f"  Org: {escape(str(result['orgId']))}")
    if result.get("source"):
        lines.append(f"  Source: {escape(shorten_path(result['source']))}")
    if result.get("errors"):
        parts = ", ".join(f"{key}={value}" for key, value in result["errors"].items())
        lines.append(f"  [yellow]Partial errors: {escape(parts)}[/yellow]")
    return lines


# ============================================================================
# Sync reports
# ============================================================================


def sync_lines(report: dict[str, Any], identity: str) -> list[str]:
    """Box lines for a sync (or dry-run) report."""
    lines = [f"Syncing active account: {escape(identity)}", ""]
    if report["dryRun"]:
        lines.extend(["[yellow]Dry run: no files were written.[/yellow]", ""])
    if report["pulled"]:
        lines.extend(path_lines("Pulled fresher token from:", report["pulled"]))
        lines.append("")
    lines.extend(path_lines("Updated:", report["updated"]))
    lines.append("")
    lines.extend(path_lines("Skipped (not found):", report["skipped"]))
    if report["dryRun"] and report["plan"]:
        lines.extend(["", "Plan:"])
        for entry in report["plan"]:
            lines.append(f"  {entry['action']:<8}{entry['store']:<14}{escape(entry['reason'])}")
    return lines
