"""Unverified JWT payload decoding."""

from __future__ import annotations

import base64
import binascii
import json
from typing import Any

from codex_quota.config.constants import JWT_CLAIM, JWT_PROFILE


def _decode_base64url(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def decode_jwt(token: Any) -> dict[str, Any] | None:
    """Return the payload of a three-segment token, or ``None`` if it cannot be read."""
    if not isinstance(token, str):
        return None
    parts = token.split(".")
    if len(parts) != 3:
        return None
    try:
        payload = json.loads(_decode_base64url(parts[1]).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None
    return payload if isinstance(payload, dict) else None


def _claim(payload: dict[str, Any] | None, key: str) -> dict[str, Any]:
    value = (payload or {}).get(key)
    return value if isinstance(value, dict) else {}


def extract_account_id(access_token: Any) -> str | None:
    account_id = _claim(decode_jwt(access_token), JWT_CLAIM).get("chatgpt_account_id")
    return str(account_id) if account_id else None


def extract_profile(access_token: Any) -> dict[str, str | None]:
    """Email, plan type and user id from an access token, each ``None`` when absent."""
    payload = decode_jwt(access_token)
    auth = _claim(payload, JWT_CLAIM)
    profile = _claim(payload, JWT_PROFILE)
    return {
        "email": profile.get("email"),
        "planType": auth.get("chatgpt_plan_type"),
        "userId": auth.get("chatgpt_user_id"),
    }
