"""Codex OAuth login and token exchange."""

from __future__ import annotations

import time
from typing import Any

import httpx
from loguru import logger

from codex_quota.auth.browser import open_browser
from codex_quota.auth.pkce import build_authorize_url, create_state, generate_pkce
from codex_quota.auth.server import check_port_available, port_busy_message, wait_for_callback
from codex_quota.config.constants import (
    AUTHORIZE_URL,
    CALLBACK_PORT,
    CLIENT_ID,
    JWT_CLAIM,
    OAUTH_TIMEOUT_SEC,
    ORIGINATOR,
    REDIRECT_URI,
    SCOPE,
    TOKEN_URL,
)
from codex_quota.errors import PortBusyError, TokenExchangeError
from codex_quota.models import CodexToken, TokenSet
from codex_quota.utils import output
from codex_quota.utils.jwt import decode_jwt, extract_account_id, extract_profile

_FORM_HEADERS = {"Content-Type": "application/x-www-form-urlencoded"}


def build_auth_url(challenge: str, state: str) -> str:
    return build_authorize_url(
        AUTHORIZE_URL,
        {
            "response_type": "code",
            "client_id": CLIENT_ID,
            "redirect_uri": REDIRECT_URI,
            "scope": SCOPE,
            "code_challenge": challenge,
            "code_challenge_method": "S256",
            "state": state,
            "id_token_add_organizations": "true",
            "codex_cli_simplified_flow": "true",
            "originator": ORIGINATOR,
        },
    )


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return f"HTTP {response.status_code}"
    if isinstance(payload, dict):
        detail = payload.get("error_description") or payload.get("error")
        if isinstance(detail, str) and detail:
            return detail
    return f"HTTP {response.status_code}"


def parse_token_response(payload: Any) -> CodexToken:
    """Validate a token-endpoint payload and derive account id and email."""
    payload = payload if isinstance(payload, dict) else {}
    access = payload.get("access_token")
    refresh = payload.get("refresh_token")
    expires_in = payload.get("expires_in")
    if not access:
        raise TokenExchangeError("Token exchange failed: Missing access_token in response")
    if not refresh:
        raise TokenExchangeError("Token exchange failed: Missing refresh_token in response")
    if not isinstance(expires_in, (int, float)) or isinstance(expires_in, bool):
        raise TokenExchangeError("Token exchange failed: Missing or invalid expires_in in response")

    id_token = payload.get("id_token") or None
    account_id = extract_account_id(access)
    email = None
    id_payload = decode_jwt(id_token) if id_token else None
    if id_payload:
        email = id_payload.get("email") or None
        if not account_id:
            claim = id_payload.get(JWT_CLAIM)
            account_id = claim.get("chatgpt_account_id") if isinstance(claim, dict) else None
    if not email:
        email = extract_profile(access)["email"]
    if not account_id:
        raise TokenExchangeError("Token exchange failed: Could not extract account_id from tokens")

    return CodexToken(
        access=access,
        refresh=refresh,
        expires=int(time.time() * 1000 + expires_in * 1000),
        account_id=str(account_id),
        id_token=id_token,
        email=email,
    )


def exchange_code_for_tokens(code: str, verifier: str) -> CodexToken:
    data = {
        "grant_type": "authorization_code",
        "code": code,
        "client_id": CLIENT_ID,
        "redirect_uri": REDIRECT_URI,
        "code_verifier": verifier,
    }
    with httpx.Client(timeout=30.0) as client:
        response = client.post(TOKEN_URL, data=data, headers=_FORM_HEADERS)
    if not response.is_success:
        raise TokenExchangeError(f"Token exchange failed: {_error_detail(response)}")
    try:
        payload = response.json()
    except ValueError as exc:
        raise TokenExchangeError("Token exchange failed: response is not JSON") from exc
    return parse_token_response(payload)


def refresh_token(refresh: str) -> TokenSet | None:
    """Trade a refresh token for new tokens; ``None`` on any failure."""
    data = {
        "grant_type": "refresh_token",
        "refresh_token": refresh,
        "client_id": CLIENT_ID,
    }
    try:
        with httpx.Client(timeout=30.0) as client:
            response = client.post(TOKEN_URL, data=data, headers=_FORM_HEADERS)
    except httpx.HTTPError as exc:
        logger.warning("Codex token refresh request failed: {}", exc)
        return None
    if not response.is_success:
        logger.warning("Codex token refresh rejected: HTTP {}", response.status_code)
        return None
    try:
        payload = response.json()
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    access = payload.get("access_token")
    new_refresh = payload.get("refresh_token")
    expires_in = payload.get("expires_in")
    if not access or not new_refresh or not isinstance(expires_in, (int, float)) or isinstance(expires_in, bool):
        return None
    return TokenSet(
        access=access,
        refresh=new_refresh,
        expires=int(time.time() * 1000 + expires_in * 1000),
        account_id=extract_account_id(access),
        id_token=payload.get("id_token"),
    )


def login_codex_oauth(no_browser: bool = False, timeout: float = OAUTH_TIMEOUT_SEC) -> CodexToken:
    """Run the browser login and return the exchanged tokens.

    The callback port is probed before anything else so a busy port
    fails fast without opening a browser.
    """
    if not check_port_available(CALLBACK_PORT):
        raise PortBusyError(port_busy_message(CALLBACK_PORT))

    verifier, challenge = generate_pkce()
    state = create_state()
    url = build_auth_url(challenge, state)

    output.err_console.print("\nStarting OpenAI OAuth authentication...")
    code, _ = wait_for_callback(
        state,
        timeout=timeout,
        on_ready=lambda _server: open_browser(url, no_browser=no_browser),
    )
    output.err_console.print("Exchanging authorization code for tokens...")
    return exchange_code_for_tokens(code, verifier)
