"""PKCE and authorization helpers."""

from __future__ import annotations

import base64
import hashlib
import os
import urllib.parse


def _base64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("utf-8")


def generate_pkce() -> tuple[str, str]:
    """Return ``(verifier, challenge)``: 43-char base64url strings."""
    verifier = _base64url(os.urandom(32))
    challenge = _base64url(hashlib.sha256(verifier.encode("utf-8")).digest())
    return verifier, challenge


def create_state() -> str:
    return os.urandom(32).hex()


def build_authorize_url(base_url: str, params: dict[str, str]) -> str:
    # Spaces must be %20, not "+", to match the vendor CLIs.
    return f"{base_url}?{urllib.parse.urlencode(params, quote_via=urllib.parse.quote)}"


def parse_authorization_input(raw: str | None) -> tuple[str | None, str | None]:
    """Split pasted input into ``(code, state)``.

    Accepts a full callback URL, ``code#state``, or a bare code.
    """
    value = (raw or "").strip()
    if not value:
        return None, None

    if value.startswith(("http://", "https://")):
        url = urllib.parse.urlparse(value)
        qs = urllib.parse.parse_qs(url.query)
        return qs.get("code", [None])[0] or None, qs.get("state", [None])[0] or None

    if "#" in value:
        code, state = value.split("#", 1)
        return code or None, state or None

    return value, None
