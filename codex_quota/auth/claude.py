"""Claude OAuth login (paste-back flow) and token refresh."""

from __future__ import annotations

import time
from typing import Any, Callable

import httpx
import typer

from codex_quota.auth.browser import open_browser
from codex_quota.auth.pkce import build_authorize_url, create_state, generate_pkce, parse_authorization_input
from codex_quota.config.constants import (
    CLAUDE_DEFAULT_EXPIRES_IN,
    CLAUDE_OAUTH_AUTHORIZE_URL,
    CLAUDE_OAUTH_CLIENT_ID,
    CLAUDE_OAUTH_REDIRECT_URI,
    CLAUDE_OAUTH_SCOPES,
    CLAUDE_OAUTH_TOKEN_URL,
    OAUTH_TIMEOUT_SEC,
)
from codex_quota.errors import AuthCancelledError, AuthDeniedError, TokenExchangeError
from codex_quota.models import ClaudeToken
from codex_quota.utils import output


def build_auth_url(challenge: str, state: str) -> str:
    # code=true makes the provider display code#state instead of redirecting.
    return build_authorize_url(
        CLAUDE_OAUTH_AUTHORIZE_URL,
        {
            "response_type": "code",
            "client_id": CLAUDE_OAUTH_CLIENT_ID,
            "redirect_uri": CLAUDE_OAUTH_REDIRECT_URI,
            "scope": CLAUDE_OAUTH_SCOPES,
            "code_challenge": challenge,
            "code_challenge_method": "S256",
            "state": state,
            "code": "true",
        },
    )


def _post_token(body: dict[str, Any], failure: str) -> dict[str, Any]:
    with httpx.Client(timeout=OAUTH_TIMEOUT_SEC) as client:
        response = client.post(CLAUDE_OAUTH_TOKEN_URL, json=body)
    if not response.is_success:
        raise TokenExchangeError(f"{failure}: {response.status_code} {response.text}")
    try:
        payload = response.json()
    except ValueError as exc:
        raise TokenExchangeError(f"{failure}: response is not JSON") from exc
    return payload if isinstance(payload, dict) else {}


def _expires_at(payload: dict[str, Any]) -> int:
    expires_in = payload.get("expires_in") or CLAUDE_DEFAULT_EXPIRES_IN
    return int(time.time() * 1000 + expires_in * 1000)


def exchange_code_for_tokens(code: str, verifier: str, state: str) -> ClaudeToken:
    payload = _post_token(
        {
            "grant_type": "authorization_code",
            "code": code,
            "state": state,
            "redirect_uri": CLAUDE_OAUTH_REDIRECT_URI,
            "client_id": CLAUDE_OAUTH_CLIENT_ID,
            "code_verifier": verifier,
        },
        "Token exchange failed",
    )
    if not payload.get("access_token"):
        raise TokenExchangeError("Token exchange failed: Missing access_token in response")
    if not payload.get("refresh_token"):
        raise TokenExchangeError("Token exchange failed: Missing refresh_token in response")
    return ClaudeToken(
        access=payload["access_token"],
        refresh=payload["refresh_token"],
        expires=_expires_at(payload),
        scopes=CLAUDE_OAUTH_SCOPES.split(),
    )


def refresh_claude_token(refresh: str) -> ClaudeToken:
    """Exchange a refresh token; a missing new refresh token keeps the old one."""
    payload = _post_token(
        {
            "grant_type": "refresh_token",
            "refresh_token": refresh,
            "client_id": CLAUDE_OAUTH_CLIENT_ID,
        },
        "Token refresh failed",
    )
    if not payload.get("access_token"):
        raise TokenExchangeError("Token refresh failed: Missing access_token in response")
    return ClaudeToken(
        access=payload["access_token"],
        refresh=payload.get("refresh_token") or refresh,
        expires=_expires_at(payload),
        scopes=CLAUDE_OAUTH_SCOPES.split(),
    )


def _prompt_code() -> str:
    try:
        return typer.prompt("Paste code#state here", default="", show_default=False, err=True)
    except typer.Abort as exc:
        raise AuthCancelledError("Authentication cancelled by user.") from exc


def login_claude_oauth(
    no_browser: bool = False,
    prompt: Callable[[], str] = _prompt_code,
) -> ClaudeToken:
    """Open the authorize page, read the pasted ``code#state`` and exchange it."""
    verifier, challenge = generate_pkce()
    state = create_state()
    url = build_auth_url(challenge, state)

    output.err_console.print("\nStarting Claude OAuth authentication...")
    open_browser(url, no_browser=no_browser)
    output.err_console.print("After authenticating in the browser, you will see a code.")
    output.err_console.print("Copy the entire code (including any #state portion) and paste it below.\n")

    code, returned_state = parse_authorization_input(prompt())
    if not code:
        raise AuthCancelledError("No authorization code provided. Authentication cancelled.")
    if returned_state and returned_state != state:
        raise AuthDeniedError("State mismatch. Possible CSRF attack. Please try again.")

    output.err_console.print("\nExchanging code for tokens...")
    return exchange_code_for_tokens(code, verifier, returned_state or state)
