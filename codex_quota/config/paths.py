"""Home-rooted credential paths and their environment overrides.

Every path is resolved at call time so a changed ``HOME`` or override
variable takes effect immediately.
"""

from __future__ import annotations

import os
from pathlib import Path


def home() -> Path:
    return Path(os.path.expanduser("~"))


def codex_multi_account_paths() -> list[Path]:
    """Tool-owned Codex account files, primary (write target) first."""
    return [
        home() / ".codex-accounts.json",
        home() / ".opencode" / "openai-codex-auth-accounts.json",
    ]


def claude_multi_account_paths() -> list[Path]:
    return [home() / ".claude-accounts.json"]


def codex_cli_auth_path() -> Path:
    override = os.environ.get("CODEX_AUTH_PATH")
    return Path(override) if override else home() / ".codex" / "auth.json"


def pi_auth_path() -> Path:
    override = os.environ.get("PI_AUTH_PATH")
    return Path(override) if override else home() / ".pi" / "agent" / "auth.json"


def opencode_auth_path() -> Path:
    data_home = os.environ.get("XDG_DATA_HOME") or str(home() / ".local" / "share")
    return Path(data_home) / "opencode" / "auth.json"


def claude_credentials_path() -> Path:
    override = os.environ.get("CLAUDE_CREDENTIALS_PATH")
    return Path(override) if override else home() / ".claude" / ".credentials.json"


def claude_cookie_db_paths() -> list[Path]:
    """Chrome-family cookie databases probed by the legacy session path."""
    override = os.environ.get("CLAUDE_COOKIE_DB_PATH")
    if override:
        return [Path(override)]
    config = home() / ".config"
    return [
        config / browser / "Default" / "Cookies"
        for browser in ("chromium", "google-chrome", "google-chrome-canary", "google-chrome-for-testing")
    ]


def shorten_path(path: str | Path | None) -> str:
    if not path:
        return ""
    text = str(path)
    root = str(home())
    if text == root:
        return "~"
    if text.startswith(root + os.sep):
        return "~" + text[len(root):]
    return text
