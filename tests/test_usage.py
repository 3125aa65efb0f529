import time

import httpx
import pytest

from codex_quota.models import ClaudeAccount, CodexAccount
from codex_quota.tokens import codex as codex_tokens
from codex_quota.usage import claude as claude_usage
from codex_quota.usage import codex as codex_usage
from codex_quota.usage import http

ORG = "0123abcd-0123-4567-89ab-0123456789ab"


def _route(monkeypatch, handler) -> list[httpx.Request]:
    seen: list[httpx.Request] = []

    def _record(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    monkeypatch.setattr(
        http, "make_client", lambda **kw: httpx.AsyncClient(transport=httpx.MockTransport(_record), **kw)
    )
    return seen


def _codex_account(label: str, expires: int) -> CodexAccount:
    return CodexAccount(label=label, account_id=f"acc_{label}", access=f"tok_{label}", refresh="r", expires=expires)


def test_codex_usage_keeps_order_and_reports_refresh_failures(home, monkeypatch) -> None:
    future = int(time.time() * 1000) + 3_600_000
    seen = _route(
        monkeypatch,
        lambda request: httpx.Response(
            200, json={"plan_type": "plus", "account": request.headers["chatgpt-account-id"]}
        ),
    )
    monkeypatch.setattr(codex_tokens, "refresh_token", lambda refresh: None)
    accounts = [_codex_account("a", future), _codex_account("stale", 1), _codex_account("b", future)]

    results = codex_usage.collect_usage(accounts)

    assert [r.account.label for r in results] == ["a", "stale", "b"]
    assert results[0].usage["account"] == "acc_a"
    assert results[1].usage == {"error": codex_usage.REFRESH_FAILED}
    assert results[2].usage["account"] == "acc_b"
    assert len(seen) == 2
    assert seen[0].headers["authorization"] == "Bearer tok_a"
    assert seen[0].headers["originator"] == "codex_cli_rs"


def test_codex_usage_http_error_is_not_retried(home, monkeypatch) -> None:
    future = int(time.time() * 1000) + 3_600_000
    seen = _route(monkeypatch, lambda _request: httpx.Response(500, text="boom"))

    results = codex_usage.collect_usage([_codex_account("a", future)])

    assert results[0].usage == {"error": "HTTP 500"}
    assert len(seen) == 1


def test_claude_oauth_usage(home, monkeypatch) -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["anthropic-beta"] == "oauth-2025-04-20"
        if request.headers["authorization"] == "Bearer good":
            return httpx.Response(200, json={"five_hour": {"utilization": 12}})
        return httpx.Response(500, text="upstream down")

    _route(monkeypatch, _handler)
    accounts = [
        ClaudeAccount(label="ok", oauth_token="good", subscription_type="max", source="managed"),
        ClaudeAccount(label="broken", oauth_token="bad", source="managed"),
        ClaudeAccount(label="expired", oauth_token="old", oauth_expires_at=1, source="managed"),
    ]

    results = claude_usage.collect_oauth_usage(accounts)

    assert results[0] == {
        "success": True,
        "label": "ok",
        "source": "managed",
        "subscriptionType": "max",
        "usage": {"five_hour": {"utilization": 12}},
    }
    assert results[1]["error"] == "HTTP 500: upstream down"
    assert results[2]["error"] == "OAuth token expired - refresh token missing, run 'claude /login'"


def test_dedupe_results_by_usage_keeps_failures() -> None:
    same = {"five_hour": {"utilization": 10}, "seven_day": {"utilization": 40}}
    results = [
        {"success": True, "label": "a", "usage": same},
        {"success": True, "label": "b", "usage": dict(same)},
        {"success": False, "label": "c", "error": "x"},
        {"success": False, "label": "d", "error": "x"},
        {"success": True, "label": "e", "usage": {"five_hour": {"utilization": 11}}},
    ]

    assert [r["label"] for r in claude_usage.dedupe_results_by_usage(results)] == ["a", "c", "d", "e"]


@pytest.mark.asyncio
async def test_fetch_json_walks_ladder_until_a_credential_works() -> None:
    seen: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.headers.get("authorization") == "Bearer oauth":
            return httpx.Response(200, json={"ok": True})
        return httpx.Response(401, text="invalid authorization")

    async with httpx.AsyncClient(transport=httpx.MockTransport(_handler)) as client:
        result = await claude_usage.fetch_json(client, "https://claude.ai/api/x", "sk-ant-1", "cf", "oauth", None)

    assert result == {"data": {"ok": True}}
    assert len(seen) == 3
    assert seen[0].headers["cookie"] == "sessionKey=sk-ant-1; cf_clearance=cf"
    assert "authorization" not in seen[0].headers
    assert seen[1].headers["authorization"] == "Bearer sk-ant-1"
    assert "cookie" not in seen[1].headers


@pytest.mark.asyncio
async def test_fetch_json_stops_on_rate_limit() -> None:
    seen: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(429, text="slow down")

    async with httpx.AsyncClient(transport=httpx.MockTransport(_handler)) as client:
        result = await claude_usage.fetch_json(client, "https://claude.ai/api/x", "sk-ant-1", None, "oauth", None)

    assert result == {"status": 429, "error": "HTTP 429: slow down"}
    assert len(seen) == 1


@pytest.mark.asyncio
async def test_fetch_json_server_errors_exhaust_the_ladder() -> None:
    seen: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(502)

    async with httpx.AsyncClient(transport=httpx.MockTransport(_handler)) as client:
        result = await claude_usage.fetch_json(client, "https://claude.ai/api/x", "sk-ant-1", None, "oauth", None)

    assert result["status"] == 502
    assert len(seen) == 5
    assert seen[-1].headers["authorization"] == "Bearer oauth"
    assert "sessionKey=sk-ant-1" in seen[-1].headers["cookie"]


@pytest.mark.asyncio
async def test_fetch_json_cookie_bag_replaces_session_cookie() -> None:
    seen: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, text="")

    async with httpx.AsyncClient(transport=httpx.MockTransport(_handler)) as client:
        result = await claude_usage.fetch_json(
            client, "https://claude.ai/api/x", None, None, None, {"sessionKey": "sk-ant-2", "lastActiveOrg": ORG}
        )

    assert result == {"data": None}
    assert seen[0].headers["cookie"] == f"sessionKey=sk-ant-2; lastActiveOrg={ORG}"


@pytest.mark.parametrize(
    ("payload", "expected"),
    [
        (None, None),
        ("org-plain", "org-plain"),
        ([{"uuid": ORG, "name": "Personal"}], ORG),
        ({"organizations": [{"id": "org_1"}]}, "org_1"),
        ({"current_organization_uuid": "org_2"}, "org_2"),
        (["org_3"], "org_3"),
        ({"organizations": []}, None),
    ],
)
def test_extract_org_id(payload, expected) -> None:
    assert claude_usage.extract_org_id(payload) == expected


def test_normalize_org_id() -> None:
    assert claude_usage.normalize_org_id(ORG) == ORG.replace("-", "")
    assert claude_usage.normalize_org_id("org_1") == "org_1"
    assert claude_usage.normalize_org_id(None) is None


def _claude_web(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if path == "/api/organizations":
        return httpx.Response(200, json=[{"uuid": ORG}])
    if path.endswith("/usage"):
        return httpx.Response(200, json={"five_hour": {"utilization": 5}})
    if path.endswith("/overage_spend_limit"):
        return httpx.Response(404, text="none")
    if path == "/api/account":
        return httpx.Response(200, json={"email_address": "u@e.com"})
    return httpx.Response(500)


def test_session_usage_discovers_org(home, monkeypatch) -> None:
    seen = _route(monkeypatch, _claude_web)

    results = claude_usage.collect_session_usage(
        [ClaudeAccount(label="web", session_key="sk-ant-1", source="file"), ClaudeAccount(label="nothing")]
    )

    ok, missing = results
    assert ok["success"] is True
    assert ok["orgId"] == ORG
    assert ok["usage"] == {"five_hour": {"utilization": 5}}
    assert ok["overage"] is None
    assert ok["account"] == {"email_address": "u@e.com"}
    assert ok["errors"] == {"overage": "HTTP 404: none"}
    assert any(ORG.replace("-", "") in request.url.path for request in seen)
    assert missing == {
        "success": False,
        "label": "nothing",
        "source": "",
        "error": "Missing Claude session key or OAuth token",
    }


def test_session_usage_reports_org_failure(home, monkeypatch) -> None:
    _route(monkeypatch, lambda _request: httpx.Response(403, text="Invalid authorization"))

    [result] = claude_usage.collect_session_usage([ClaudeAccount(label="web", session_key="sk-ant-1")])

    assert result["success"] is False
    assert result["error"] == "Organizations request failed: HTTP 403: Invalid authorization"


def test_legacy_usage_from_credentials_file(home, monkeypatch, write_json) -> None:
    write_json(home / ".claude" / ".credentials.json", {"sessionKey": "sk-ant-legacy"})
    seen = _route(monkeypatch, _claude_web)

    result = claude_usage.collect_legacy_usage()

    assert result["success"] is True
    assert result["label"] is None
    assert result["source"] == str(home / ".claude" / ".credentials.json")
    assert "sessionKey=sk-ant-legacy" in seen[0].headers["cookie"]


def test_legacy_usage_without_any_session(home) -> None:
    result = claude_usage.collect_legacy_usage()

    assert result["success"] is False
    assert result["source"] == str(home / ".claude" / ".credentials.json")
