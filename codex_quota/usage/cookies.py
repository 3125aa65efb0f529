"""Best-effort Claude session discovery from Chrome-family cookie databases (Linux).

Only the legacy web-session path uses this; OAuth accounts never need it.
"""

from __future__ import annotations

import hashlib
import re
import shutil
import sqlite3
import subprocess
import tempfile
from contextlib import closing
from pathlib import Path

from Crypto.Cipher import AES
from loguru import logger

from codex_quota.accounts import claude as accounts
from codex_quota.config import paths
from codex_quota.models import ClaudeAccount

DEFAULT_PASSWORD = "peanuts"
SECRET_TOOL_APPS = ("chromium", "chrome", "google-chrome", "google-chrome-canary")

_COOKIE_PATTERNS = {
    "sessionKey": re.compile(r"sk-ant-[a-z0-9_-]+", re.IGNORECASE),
    "cf_clearance": re.compile(r"[A-Za-z0-9._-]{20,}"),
    "lastActiveOrg": re.compile(
        r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.IGNORECASE
    ),
}
_LEADING = re.compile(r"^[^\x20-\x7e]+")
_TRAILING = re.compile(r"[^\x20-\x7e]+$")
_NON_ASCII = re.compile(r"[^\x20-\x7e]")

_QUERY = "select name, value, encrypted_value from cookies where host_key like '%claude.ai%'"


def get_safe_storage_password() -> str:
    """Chrome's keyring password from ``secret-tool``, or Chrome's built-in fallback."""
    for app in SECRET_TOOL_APPS:
        try:
            result = subprocess.run(
                ["secret-tool", "lookup", "application", app],
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as exc:
            logger.debug("secret-tool unavailable: {}", exc)
            break
        value = result.stdout.strip() if result.returncode == 0 else ""
        if value:
            return value
    return DEFAULT_PASSWORD


def decrypt_cookie(encrypted: bytes | None, password: str) -> str | None:
    """Decrypt a ``v10``/``v11`` cookie value; other values are returned as text."""
    if not encrypted or len(encrypted) < 4:
        return None
    if encrypted[:3] not in (b"v10", b"v11"):
        return encrypted.decode("utf-8", errors="replace")

    ciphertext = encrypted[3:]
    if len(ciphertext) % AES.block_size:
        return None
    key = hashlib.pbkdf2_hmac("sha1", password.encode("utf-8"), b"saltysalt", 1, 16)
    decrypted = AES.new(key, AES.MODE_CBC, iv=b" " * 16).decrypt(ciphertext)
    pad = decrypted[-1]
    if 0 < pad <= 16:
        decrypted = decrypted[:-pad]
    return decrypted.decode("utf-8", errors="replace")


def strip_non_printable(value: str) -> str:
    return _TRAILING.sub("", _LEADING.sub("", value))


def extract_cookie_value(value: str | None, name: str | None = None) -> str | None:
    """Pull the known shape of ``name`` out of a possibly noisy decrypted value."""
    if not value:
        return None
    ascii_only = _NON_ASCII.sub("", strip_non_printable(value))
    if not ascii_only:
        return None
    pattern = _COOKIE_PATTERNS.get(name or "")
    if pattern is None:
        return ascii_only
    match = pattern.search(ascii_only)
    return match.group(0) if match else None


def read_cookies_from_db(cookie_path: Path) -> tuple[dict[str, str], str | None]:
    """``(cookies, error)`` for claude.ai from one cookie DB, read from a temporary copy."""
    with tempfile.TemporaryDirectory(prefix="cq-claude-cookies-") as tmp:
        copy = Path(tmp) / "Cookies"
        try:
            shutil.copyfile(cookie_path, copy)
            with closing(sqlite3.connect(f"file:{copy}?mode=ro", uri=True)) as conn:
                rows = conn.execute(_QUERY).fetchall()
        except (OSError, sqlite3.Error) as exc:
            return {}, str(exc) or "Failed to read cookie DB"
    if not rows:
        return {}, "No Claude cookies found in DB"

    password: str | None = None
    cookies: dict[str, str] = {}
    for name, plain, encrypted in rows:
        if not name:
            continue
        if plain:
            raw = plain
        elif encrypted:
            password = password or get_safe_storage_password()
            raw = decrypt_cookie(bytes(encrypted), password)
        else:
            continue
        value = extract_cookie_value(raw, name)
        if value:
            cookies[name] = value
    return cookies, None


def load_cookie_candidates() -> list[ClaudeAccount]:
    sessions = []
    for cookie_path in paths.claude_cookie_db_paths():
        if not cookie_path.exists():
            continue
        cookies, error = read_cookies_from_db(cookie_path)
        if error:
            logger.debug("Skipping cookie DB {}: {}", cookie_path, error)
            continue
        if cookies.get("sessionKey"):
            sessions.append(
                ClaudeAccount(
                    label="",
                    session_key=cookies["sessionKey"],
                    cf_clearance=cookies.get("cf_clearance"),
                    cookies=cookies,
                    source=str(cookie_path),
                )
            )
    return sessions


def load_session_candidates() -> list[ClaudeAccount]:
    """Cookie-DB sessions then the Claude Code credentials file, each paired with the OAuth token."""
    oauth_token, _, _ = accounts.load_oauth_token()
    sessions = load_cookie_candidates()
    for session in sessions:
        session.oauth_token = oauth_token

    session_key, source, _ = accounts.load_session_from_credentials()
    if session_key:
        sessions.append(
            ClaudeAccount(label="", session_key=session_key, oauth_token=oauth_token or session_key, source=source)
        )
    return sessions
