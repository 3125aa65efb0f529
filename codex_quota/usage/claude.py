"""Claude usage: the OAuth usage endpoint and the legacy web-session path."""

from __future__ import annotations

import asyncio
import re
from typing import Any

import httpx
from loguru import logger

from codex_quota.accounts.claude import find_session_key, load_session_from_credentials
from codex_quota.config.constants import (
    CLAUDE_ACCOUNT_URL,
    CLAUDE_API_BASE,
    CLAUDE_OAUTH_BETA,
    CLAUDE_OAUTH_USAGE_URL,
    CLAUDE_OAUTH_VERSION,
    CLAUDE_ORGS_URL,
    CLAUDE_ORIGIN,
    CLAUDE_TIMEOUT_SEC,
    CLAUDE_USER_AGENT,
)
from codex_quota.models import ClaudeAccount
from codex_quota.tokens.claude import ensure_fresh_claude
from codex_quota.usage import cookies, http

_UUID = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)
_HEX32 = re.compile(r"^[0-9a-f]{32}$", re.IGNORECASE)
_DASHED_ID = re.compile(r"^[0-9a-f-]{36}$", re.IGNORECASE)
_AUTH_ERROR = re.compile(r"account_session_invalid|invalid authorization|http 401|http 403", re.IGNORECASE)

USAGE_WINDOWS = ("five_hour", "seven_day", "seven_day_opus", "seven_day_sonnet")


def normalize_org_id(org_id: Any) -> Any:
    if isinstance(org_id, str) and _DASHED_ID.match(org_id):
        return org_id.replace("-", "")
    return org_id


def is_auth_error(error: Any) -> bool:
    return bool(error) and _AUTH_ERROR.search(str(error)) is not None


# ============================================================================
# OAuth usage endpoint
# ============================================================================


def oauth_headers(access_token: str) -> dict[str, str]:
    return {
        "Authorization": f"Bearer {access_token}",
        "anthropic-version": CLAUDE_OAUTH_VERSION,
        "anthropic-beta": CLAUDE_OAUTH_BETA,
    }


async def fetch_oauth_usage(client: httpx.AsyncClient, access_token: str) -> dict[str, Any]:
    try:
        response = await client.get(CLAUDE_OAUTH_USAGE_URL, headers=oauth_headers(access_token))
    except httpx.HTTPError as exc:
        return {"success": False, "error": http.describe_error(exc)}
    if not response.is_success:
        detail = response.text[:200] or response.reason_phrase
        return {"success": False, "error": f"HTTP {response.status_code}: {detail}"}
    try:
        return {"success": True, "data": response.json()}
    except ValueError:
        return {"success": False, "error": "Invalid JSON response"}


def _account_fields(account: ClaudeAccount) -> dict[str, Any]:
    fields: dict[str, Any] = {"label": account.label, "source": account.source}
    if account.subscription_type:
        fields["subscriptionType"] = account.subscription_type
    if account.rate_limit_tier:
        fields["rateLimitTier"] = account.rate_limit_tier
    return fields


def refresh_error(account: ClaudeAccount) -> str:
    if account.oauth_refresh_token:
        return "OAuth token expired and refresh failed - run 'claude /login'"
    return "OAuth token expired - refresh token missing, run 'claude /login'"


async def fetch_oauth_usage_for_account(client: httpx.AsyncClient, account: ClaudeAccount) -> dict[str, Any]:
    result = await fetch_oauth_usage(client, account.oauth_token or "")
    if not result["success"]:
        return {"success": False, **_account_fields(account), "error": result["error"]}
    return {"success": True, **_account_fields(account), "usage": result["data"]}


async def _fetch_oauth_all(accounts: list[ClaudeAccount]) -> list[dict[str, Any]]:
    async with http.make_client(timeout=CLAUDE_TIMEOUT_SEC) as client:
        return list(await asyncio.gather(*(fetch_oauth_usage_for_account(client, a) for a in accounts)))


def collect_oauth_usage(accounts: list[ClaudeAccount]) -> list[dict[str, Any]]:
    """Refresh then fetch usage for OAuth accounts; results keep the input order."""
    fresh = [account for account in accounts if ensure_fresh_claude(account)]
    fetched = dict(zip((id(a) for a in fresh), asyncio.run(_fetch_oauth_all(fresh)))) if fresh else {}
    results = []
    for account in accounts:
        result = fetched.get(id(account))
        if result is None:
            result = {"success": False, **_account_fields(account), "error": refresh_error(account)}
        results.append(result)
    return results


def usage_fingerprint(usage: Any) -> tuple[Any, ...]:
    windows = usage if isinstance(usage, dict) else {}
    return tuple(
        (windows.get(key) or {}).get("utilization") if isinstance(windows.get(key), dict) else None
        for key in USAGE_WINDOWS
    )


def dedupe_results_by_usage(results: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Collapse results with identical utilization; failures are always kept."""
    seen: set[tuple[Any, ...]] = set()
    kept = []
    for result in results:
        if not result.get("success") or not result.get("usage"):
            kept.append(result)
            continue
        fingerprint = usage_fingerprint(result["usage"])
        if fingerprint in seen:
            continue
        seen.add(fingerprint)
        kept.append(result)
    return kept


# ============================================================================
# Legacy web-session path
# ============================================================================


def build_headers(
    session_key: str | None,
    cf_clearance: str | None,
    bearer: str | None,
    mode: str,
    cookie_bag: dict[str, str] | None,
) -> dict[str, str]:
    headers = {
        "accept": "application/json, text/plain, */*",
        "accept-language": "en-US,en;q=0.9",
        "cache-control": "no-cache",
        "pragma": "no-cache",
        "origin": CLAUDE_ORIGIN,
        "referer": f"{CLAUDE_ORIGIN}/",
        "user-agent": CLAUDE_USER_AGENT,
        "sec-fetch-dest": "empty",
        "sec-fetch-mode": "cors",
        "sec-fetch-site": "same-origin",
        "x-requested-with": "XMLHttpRequest",
    }
    if "cookie" in mode and (session_key or cookie_bag):
        if cookie_bag:
            parts = [f"{name}={value}" for name, value in cookie_bag.items() if isinstance(value, str) and value]
        else:
            parts = [f"sessionKey={session_key}"]
            if cf_clearance:
                parts.append(f"cf_clearance={cf_clearance}")
        headers["Cookie"] = "; ".join(parts)
    if "bearer" in mode and bearer:
        headers["Authorization"] = f"Bearer {bearer}"
    return headers


def _advances_ladder(status: int) -> bool:
    # 429 stops the ladder so the caller sees the rate limit.
    return status in (401, 403) or status >= 500


async def fetch_json(
    client: httpx.AsyncClient,
    url: str,
    session_key: str | None,
    cf_clearance: str | None,
    oauth_token: str | None,
    cookie_bag: dict[str, str] | None,
) -> dict[str, Any]:
    """GET ``url`` walking the credential ladder until one attempt succeeds.

    Returns ``{"data": ...}`` or ``{"error": ..., "status": ...}``.
    """
    has_cookie = bool(session_key or cookie_bag)
    attempts: list[tuple[str, str | None]] = []
    if has_cookie:
        attempts.append(("cookie", None))
    if session_key:
        attempts.append(("bearer", session_key))
    if oauth_token:
        attempts.append(("bearer", oauth_token))
    if has_cookie and session_key:
        attempts.append(("cookie+bearer", session_key))
    if has_cookie and oauth_token:
        attempts.append(("cookie+bearer", oauth_token))

    last_error: dict[str, Any] | None = None
    for mode, bearer in attempts:
        headers = build_headers(session_key, cf_clearance, bearer, mode, cookie_bag)
        try:
            response = await client.get(url, headers=headers)
        except httpx.HTTPError as exc:
            return {"error": http.describe_error(exc)}
        if response.is_success:
            if not response.text:
                return {"data": None}
            try:
                return {"data": response.json()}
            except ValueError:
                return {"error": "Invalid JSON response"}

        detail = response.text.strip()[:200]
        status = response.status_code
        last_error = {"status": status, "error": f"HTTP {status}: {detail}" if detail else f"HTTP {status}"}
        logger.debug("Claude {} attempt on {} returned {}", mode, url, status)
        if not _advances_ladder(status):
            return last_error
    return last_error or {"error": "HTTP 403"}


def _is_uuid_like(value: Any) -> bool:
    return isinstance(value, str) and bool(_HEX32.match(value) or _UUID.match(value))


def _search_uuid(root: Any) -> str | None:
    stack = [root]
    seen: set[int] = set()
    while stack:
        current = stack.pop()
        if not isinstance(current, (dict, list)) or id(current) in seen:
            continue
        seen.add(id(current))
        values = current if isinstance(current, list) else list(current.values())
        for value in values:
            if _is_uuid_like(value):
                return value
            if isinstance(value, (dict, list)):
                stack.append(value)
    return None


def _first_id(obj: dict[str, Any]) -> Any:
    for key in ("id", "uuid", "organizationId", "orgId", "org_id"):
        if obj.get(key):
            return obj[key]
    return None


def extract_org_id(payload: Any) -> Any:
    """Organization id from an ``/organizations`` (or similar) payload."""
    if not payload:
        return None
    if isinstance(payload, str):
        return payload
    found = _search_uuid(payload)
    if found:
        return found
    if isinstance(payload, dict):
        direct = _first_id(payload) or payload.get("current_organization_uuid")
        if direct:
            return direct
        orgs = next(
            (payload[key] for key in ("organizations", "orgs", "items", "data") if payload.get(key) is not None),
            None,
        )
    else:
        orgs = payload
    if not isinstance(orgs, list) or not orgs:
        return None
    first = orgs[0]
    if isinstance(first, str):
        return first
    return _first_id(first) if isinstance(first, dict) else None


async def _fetch_for_org(
    client: httpx.AsyncClient,
    org_id: Any,
    creds: tuple[str | None, str | None, str | None, dict[str, str] | None],
) -> dict[str, Any]:
    org = normalize_org_id(org_id)
    usage, overage, account = await asyncio.gather(
        fetch_json(client, f"{CLAUDE_API_BASE}/organizations/{org}/usage", *creds),
        fetch_json(client, f"{CLAUDE_API_BASE}/organizations/{org}/overage_spend_limit", *creds),
        fetch_json(client, CLAUDE_ACCOUNT_URL, *creds),
    )
    errors = {
        name: response["error"]
        for name, response in (("usage", usage), ("overage", overage), ("account", account))
        if response.get("error")
    }
    return {
        "orgId": org_id,
        "usage": usage.get("data"),
        "overage": overage.get("data"),
        "account": account.get("data"),
        "errors": errors,
    }


def _session_result(attempt: dict[str, Any], label: str | None, source: str | None) -> dict[str, Any]:
    return {
        "success": True,
        "label": label,
        "source": source,
        "orgId": attempt["orgId"],
        "usage": attempt["usage"],
        "overage": attempt["overage"],
        "account": attempt["account"],
        "errors": attempt["errors"] or None,
    }


def _failure(label: str | None, source: str | None, error: str) -> dict[str, Any]:
    return {"success": False, "label": label, "source": source, "error": error}


def _credentials(account: ClaudeAccount) -> tuple[str | None, str | None, str | None, dict[str, str] | None]:
    bag = account.cookies or None
    session_key = account.session_key or find_session_key(bag)
    cf_clearance = account.cf_clearance or (bag or {}).get("cf_clearance") or (bag or {}).get("cfClearance")
    return session_key, cf_clearance, account.oauth_token, bag


async def fetch_usage_for_credentials(client: httpx.AsyncClient, account: ClaudeAccount) -> dict[str, Any]:
    """Usage for one stored credential: configured org first, then org discovery."""
    label = account.label or None
    creds = _credentials(account)
    session_key, _, oauth_token, bag = creds
    if not session_key and not oauth_token and not bag:
        return _failure(label, account.source, "Missing Claude session key or OAuth token")

    last_auth_error = None
    known_org = account.org_id or (bag or {}).get("lastActiveOrg")
    if known_org:
        attempt = await _fetch_for_org(client, known_org, creds)
        if not any(is_auth_error(e) for e in attempt["errors"].values()):
            return _session_result(attempt, label, account.source)
        last_auth_error = attempt["errors"].get("usage") or attempt["errors"].get("overage")

    orgs = await fetch_json(client, CLAUDE_ORGS_URL, *creds)
    if orgs.get("error"):
        return _failure(label, account.source, f"Organizations request failed: {orgs['error']}")
    org_id = extract_org_id(orgs.get("data"))
    if not org_id:
        return _failure(label, account.source, "No Claude organization ID found")

    attempt = await _fetch_for_org(client, org_id, creds)
    if not any(is_auth_error(e) for e in attempt["errors"].values()):
        return _session_result(attempt, label, account.source)
    return _failure(
        label,
        account.source,
        f"Organizations request failed: {last_auth_error or 'Invalid authorization'}",
    )


async def _fetch_sessions(accounts: list[ClaudeAccount]) -> list[dict[str, Any]]:
    async with http.make_client(timeout=CLAUDE_TIMEOUT_SEC) as client:
        return list(await asyncio.gather(*(fetch_usage_for_credentials(client, a) for a in accounts)))


def collect_session_usage(accounts: list[ClaudeAccount]) -> list[dict[str, Any]]:
    return asyncio.run(_fetch_sessions(accounts))


async def fetch_legacy_usage(client: httpx.AsyncClient) -> dict[str, Any]:
    """Usage from the first discovered browser or credentials-file session that authenticates."""
    candidates = cookies.load_session_candidates()
    if not candidates:
        _, source, error = load_session_from_credentials()
        return {"success": False, "source": source, "error": error or "Missing Claude session key"}

    last_auth_error = None
    for candidate in candidates:
        creds = _credentials(candidate)
        bag = creds[3]
        if bag and bag.get("lastActiveOrg"):
            attempt = await _fetch_for_org(client, bag["lastActiveOrg"], creds)
            if not any(is_auth_error(e) for e in attempt["errors"].values()):
                return _session_result(attempt, None, candidate.source)
            last_auth_error = attempt["errors"].get("usage") or attempt["errors"].get("overage") or last_auth_error

        orgs = await fetch_json(client, CLAUDE_ORGS_URL, *creds)
        if orgs.get("error"):
            if is_auth_error(orgs["error"]):
                last_auth_error = orgs["error"]
                continue
            return _failure(None, candidate.source, f"Organizations request failed: {orgs['error']}")
        org_id = extract_org_id(orgs.get("data"))
        if not org_id:
            return _failure(None, candidate.source, "No Claude organization ID found")

        attempt = await _fetch_for_org(client, org_id, creds)
        if not any(is_auth_error(e) for e in attempt["errors"].values()):
            return _session_result(attempt, None, candidate.source)
        last_auth_error = attempt["errors"].get("usage") or attempt["errors"].get("overage") or last_auth_error

    return _failure(
        None,
        candidates[0].source,
        f"Organizations request failed: {last_auth_error or 'Invalid authorization'}",
    )


def collect_legacy_usage() -> dict[str, Any]:
    async def _run() -> dict[str, Any]:
        async with http.make_client(timeout=CLAUDE_TIMEOUT_SEC) as client:
            return await fetch_legacy_usage(client)

    return asyncio.run(_run())
