import time

import pytest

from codex_quota.errors import InvalidInputError, NotFoundError, RefreshFailedError, TokenExchangeError
from codex_quota.models import ClaudeToken, TokenSet
from codex_quota.store.container import read_container
from codex_quota.sync import claude as claude_sync
from codex_quota.tokens import claude as claude_tokens

NOW = int(time.time() * 1000)
FUTURE = NOW + 24 * 3_600_000


def _oauth_entry(label: str, access: str = "a1", refresh: str = "r1", expires: int = FUTURE) -> dict:
    return {"label": label, "oauthToken": access, "oauthRefreshToken": refresh, "oauthExpiresAt": expires}


def _refresh_rejected(refresh: str) -> ClaudeToken:
    raise TokenExchangeError("Token refresh failed: 400")


def test_switch_writes_claude_code_and_keeps_other_providers(home, write_json, read_json) -> None:
    managed = write_json(home / ".claude-accounts.json", {"accounts": [_oauth_entry("me")]})
    opencode = write_json(
        home / ".local" / "share" / "opencode" / "auth.json",
        {"anthropic": {"type": "oauth", "access": "old"}, "openai": {"type": "oauth", "access": "codex"}},
    )

    result = claude_sync.switch_account("me")

    assert result["activeLabelPath"] == str(managed)
    assert read_json(managed)["activeLabel"] == "me"
    creds = read_json(home / ".claude" / ".credentials.json")
    assert creds["claudeAiOauth"]["accessToken"] == "a1"
    assert creds["claudeAiOauth"]["refreshToken"] == "r1"
    data = read_json(opencode)
    assert data["anthropic"]["access"] == "a1"
    assert data["openai"] == {"type": "oauth", "access": "codex"}


def test_switch_requires_oauth_token(home, write_json) -> None:
    write_json(home / ".claude-accounts.json", [{"label": "web", "sessionKey": "sk-ant-1"}])

    with pytest.raises(InvalidInputError, match="requires an OAuth token"):
        claude_sync.switch_account("web")


def test_divergence_reports_mismatching_stores(home, write_json) -> None:
    write_json(home / ".claude-accounts.json", {"activeLabel": "me", "accounts": [_oauth_entry("me")]})
    write_json(home / ".claude" / ".credentials.json", {"claudeAiOauth": {"accessToken": "x", "refreshToken": "r_other"}})

    divergence = claude_sync.detect_claude_divergence()

    assert divergence.diverged is True
    claude_code = next(s for s in divergence.stores if s["name"] == "claude-code")
    assert (claude_code["considered"], claude_code["matches"], claude_code["method"]) == (True, False, "refresh")


def test_divergence_skip_reasons(home, write_json) -> None:
    assert claude_sync.detect_claude_divergence().skip_reason == "no-active-label"

    web = {"label": "web", "sessionKey": "sk-ant-1"}
    write_json(home / ".claude-accounts.json", {"activeLabel": "web", "accounts": [web]})
    assert claude_sync.detect_claude_divergence().skip_reason == "active-account-not-oauth"

    write_json(home / ".claude-accounts.json", {"activeLabel": "ghost", "accounts": []})
    assert claude_sync.detect_claude_divergence().skip_reason == "active-account-missing"


def test_sync_adopts_fresher_store_then_pushes(home, write_json, read_json) -> None:
    managed = write_json(home / ".claude-accounts.json", {"activeLabel": "me", "accounts": [_oauth_entry("me")]})
    pi = write_json(
        home / ".pi" / "agent" / "auth.json",
        {"anthropic": {"type": "oauth", "access": "a2", "refresh": "r1", "expires": FUTURE + 60_000}},
    )

    report = claude_sync.sync_active()

    assert report.pulled == [str(pi)]
    entry = read_json(managed)["accounts"][0]
    assert (entry["oauthToken"], entry["oauthExpiresAt"]) == ("a2", FUTURE + 60_000)
    assert read_json(home / ".claude" / ".credentials.json")["claudeAiOauth"]["accessToken"] == "a2"

    again = claude_sync.sync_active()
    assert again.pulled == []
    assert again.updated == []


def test_sync_recovers_from_agreeing_stores(home, write_json, read_json, monkeypatch) -> None:
    monkeypatch.setattr(claude_tokens, "refresh_claude_token", _refresh_rejected)
    managed = write_json(
        home / ".claude-accounts.json",
        {"activeLabel": "me", "accounts": [_oauth_entry("me", "old", "r_old", NOW - 1000)]},
    )
    write_json(
        home / ".claude" / ".credentials.json",
        {"claudeAiOauth": {"accessToken": "new", "refreshToken": "r_new", "expiresAt": FUTURE}},
    )

    report = claude_sync.sync_active()

    entry = read_json(managed)["accounts"][0]
    assert (entry["oauthToken"], entry["oauthRefreshToken"]) == ("new", "r_new")
    assert any("recovered tokens" in warning for warning in report.warnings)


def test_sync_refuses_when_stores_disagree(home, write_json, monkeypatch) -> None:
    monkeypatch.setattr(claude_tokens, "refresh_claude_token", _refresh_rejected)
    write_json(
        home / ".claude-accounts.json",
        {"activeLabel": "me", "accounts": [_oauth_entry("me", "old", "r_old", NOW - 1000)]},
    )
    write_json(home / ".claude" / ".credentials.json", {"claudeAiOauth": {"accessToken": "x", "refreshToken": "r_a"}})
    write_json(home / ".pi" / "agent" / "auth.json", {"anthropic": {"access": "y", "refresh": "r_b"}})

    with pytest.raises(RefreshFailedError, match="disagree"):
        claude_sync.sync_active()


def test_dry_run_plans_claude_code_creation(home, write_json) -> None:
    write_json(home / ".claude-accounts.json", {"activeLabel": "me", "accounts": [_oauth_entry("me")]})

    report = claude_sync.sync_active(dry_run=True)

    assert not (home / ".claude" / ".credentials.json").exists()
    plan = {entry.store: (entry.action, entry.reason) for entry in report.plan}
    assert plan["claude-code"] == ("push", "will be created")
    assert plan["opencode"] == ("skip", "not found")


def test_untracked_store_import_helpers(home, write_json) -> None:
    path = write_json(home / ".claude-accounts.json", {"accounts": [_oauth_entry("me")]})
    write_json(home / ".local" / "share" / "opencode" / "auth.json", {"anthropic": {"access": "a9", "refresh": "r9"}})
    write_json(home / ".pi" / "agent" / "auth.json", {"anthropic": {"access": "a1", "refresh": "r1"}})
    container = read_container(path)

    untracked = claude_sync.find_untracked_stores(claude_sync.managed_accounts(container))

    assert [snap.name for snap in untracked] == ["opencode"]
    tokens = untracked[0].tokens
    with pytest.raises(InvalidInputError, match="already exists"):
        claude_sync.add_imported_account(container, "me", tokens)
    claude_sync.add_imported_account(container, "imported", tokens)
    assert container.accounts[-1]["oauthToken"] == "a9"

    assert claude_sync.merge_imported_tokens(container, "me", TokenSet(access="m", refresh="mr"))
    assert container.accounts[0]["oauthToken"] == "m"


def test_remove_active_claude_account(home, write_json, read_json) -> None:
    managed = write_json(
        home / ".claude-accounts.json",
        {"activeLabel": "me", "accounts": [_oauth_entry("me"), _oauth_entry("other", "a2", "r2")]},
    )
    account = claude_sync.find_managed_account("me", "remove", "hint")

    result = claude_sync.remove_account(account)

    assert result["remainingAccounts"] == 1
    assert result["activeLabelCleared"] is True
    assert read_json(managed)["activeLabel"] is None


def test_claude_code_login_is_not_a_managed_account(home, write_json) -> None:
    write_json(home / ".claude-accounts.json", {"accounts": []})
    write_json(home / ".claude" / ".credentials.json", {"claudeAiOauth": {"accessToken": "a"}})

    with pytest.raises(NotFoundError, match="not found"):
        claude_sync.find_managed_account("claude-code", "remove", "Remove it from the owning tool instead.")


def test_reauth_rewrites_snake_case_entry_in_place(home, write_json, read_json) -> None:
    managed = write_json(
        home / ".claude-accounts.json",
        {
            "accounts": [
                {
                    "label": "me",
                    "oauth_token": "a_old",
                    "oauth_refresh_token": "r_old",
                    "oauth_expires_at": 1,
                    "oauth_scopes": ["user:profile"],
                    "sessionKey": "sk-ant-keep",
                }
            ]
        },
    )
    account = claude_sync.find_managed_account("me", "re-authenticate", "hint")
    token = ClaudeToken(access="a_new", refresh="r_new", expires=FUTURE, scopes=["user:inference"])

    result = claude_sync.apply_reauth(account, token)

    assert result["cliUpdated"] is False
    [entry] = read_json(managed)["accounts"]
    assert entry == {
        "label": "me",
        "oauth_token": "a_new",
        "oauth_refresh_token": "r_new",
        "oauth_expires_at": FUTURE,
        "oauth_scopes": ["user:inference"],
        "sessionKey": "sk-ant-keep",
    }
