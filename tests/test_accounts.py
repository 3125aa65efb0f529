import json
import time

import pytest

from codex_quota.accounts import claude as claude_accounts
from codex_quota.accounts import codex as codex_accounts
from codex_quota.accounts import is_valid_label
from codex_quota.errors import InvalidInputError, NotFoundError
from codex_quota.models import CodexToken


def _entry(label: str, token: str, account_id: str = "acc_X", refresh: str = "r1") -> dict:
    return {"label": label, "accountId": account_id, "access": token, "refresh": refresh, "expires": 1}


def test_label_validation() -> None:
    assert is_valid_label("work_1-a")
    assert not is_valid_label("work space")
    assert not is_valid_label("")
    assert not is_valid_label(None)


def test_env_accounts_shadow_file_labels(home, monkeypatch, write_json, make_jwt) -> None:
    write_json(home / ".codex-accounts.json", {"accounts": [_entry("work", make_jwt("acc_file"))]})
    monkeypatch.setenv("CODEX_ACCOUNTS", json.dumps([_entry("work", make_jwt("acc_env"), account_id="acc_env")]))

    accounts = codex_accounts.load_all_accounts_no_dedup()

    assert [(a.label, a.account_id, a.source) for a in accounts] == [("work", "acc_env", "env")]


def test_invalid_env_json_warns_and_returns_nothing(home, monkeypatch) -> None:
    monkeypatch.setenv("CODEX_ACCOUNTS", "{nope")

    assert codex_accounts.load_accounts_from_env() == []


def test_entries_missing_required_fields_are_dropped(home, write_json, make_jwt) -> None:
    write_json(
        home / ".codex-accounts.json",
        [_entry("ok", make_jwt()), {"label": "no-refresh", "accountId": "a", "access": "t"}, "junk"],
    )

    assert [a.label for a in codex_accounts.load_all_accounts_no_dedup()] == ["ok"]


def test_snake_case_entries_are_accepted(home, write_json) -> None:
    write_json(
        home / ".opencode" / "openai-codex-auth-accounts.json",
        [{"label": "old", "account_id": "acc", "access_token": "a", "refresh_token": "r", "expires_at": 5}],
    )

    account = codex_accounts.load_all_accounts_no_dedup()[0]

    assert (account.account_id, account.access, account.refresh, account.expires) == ("acc", "a", "r", 5)


def test_codex_cli_fallback_only_without_managed_accounts(home, write_json, make_jwt) -> None:
    write_json(home / ".codex" / "auth.json", {"tokens": {"access_token": make_jwt("acc_cli"), "refresh_token": "r"}})

    fallback = codex_accounts.load_all_accounts_no_dedup()

    assert [a.label for a in fallback] == ["codex-cli"]
    assert fallback[0].account_id == "acc_cli"
    assert fallback[0].expires < int(time.time() * 1000)
    assert codex_accounts.load_all_accounts_no_dedup(local=True) == []

    write_json(home / ".codex-accounts.json", [_entry("work", make_jwt())])
    assert [a.label for a in codex_accounts.load_all_accounts_no_dedup()] == ["work"]


def test_dedupe_by_email_prefers_active_label(home, write_json, make_jwt) -> None:
    write_json(
        home / ".codex-accounts.json",
        [
            _entry("first", make_jwt(email="same@e.com")),
            _entry("second", make_jwt(email="same@e.com")),
            _entry("other", make_jwt(email="other@e.com")),
            _entry("anon", make_jwt()),
        ],
    )

    assert [a.label for a in codex_accounts.load_accounts()] == ["first", "other", "anon"]
    assert [a.label for a in codex_accounts.load_accounts(preferred_label="second")] == ["second", "other", "anon"]


def test_add_and_remove_round_trip(home, write_json, read_json, make_jwt) -> None:
    path = write_json(home / ".codex-accounts.json", {"accounts": [_entry("keep", make_jwt())], "note": "x"})
    before = read_json(path)
    token = CodexToken(access=make_jwt("acc_new"), refresh="r", expires=99, account_id="acc_new")

    codex_accounts.add_account("mywork", token)
    assert [a["label"] for a in read_json(path)["accounts"]] == ["keep", "mywork"]

    assert codex_accounts.remove_from_file(str(path), "mywork") == 1
    after = read_json(path)
    assert after["accounts"] == before["accounts"]
    assert after["note"] == "x"


def test_add_rejects_duplicate_and_invalid_labels(home, write_json, make_jwt) -> None:
    write_json(home / ".codex-accounts.json", [_entry("work", make_jwt())])
    token = CodexToken(access="a", refresh="r", expires=1, account_id="acc")

    with pytest.raises(InvalidInputError, match="already exists"):
        codex_accounts.add_account("work", token)
    with pytest.raises(InvalidInputError, match="Invalid label"):
        codex_accounts.add_account("bad label", token)


def test_remove_last_account_deletes_file(home, write_json, make_jwt) -> None:
    path = write_json(home / ".codex-accounts.json", [_entry("only", make_jwt())])

    assert codex_accounts.remove_from_file(str(path), "only") == 0
    assert not path.exists()

    with pytest.raises(NotFoundError):
        codex_accounts.remove_from_file(str(write_json(path, [])), "ghost")


def test_default_label_from_email() -> None:
    assert codex_accounts.default_label("John.Doe+x@example.com") == "johndoex"
    assert codex_accounts.default_label(None).startswith("account-")


def test_claude_session_key_search() -> None:
    nested = {"outer": [{"cookie": "foo sk-ant-sid01-abc_DEF bar"}]}

    assert claude_accounts.find_session_key(nested) == "sk-ant-sid01-abc_DEF"
    assert claude_accounts.find_session_key({"sessionKey": "sk-ant-direct"}) == "sk-ant-direct"
    assert claude_accounts.find_session_key({"nothing": 1}) is None


def test_claude_loader_accepts_session_or_oauth(home, write_json) -> None:
    write_json(
        home / ".claude-accounts.json",
        {
            "accounts": [
                {"label": "web", "sessionKey": "sk-ant-1"},
                {"label": "cli", "oauth_token": "tok", "oauth_refresh_token": "r"},
                {"label": "empty"},
            ]
        },
    )

    accounts = claude_accounts.load_accounts()

    assert [a.label for a in accounts] == ["web", "cli"]
    assert accounts[1].oauth_refresh_token == "r"


def test_claude_oauth_set_dedupes_by_refresh_prefix(home, monkeypatch, write_json) -> None:
    shared = "r" * 60
    write_json(home / ".claude-accounts.json", [{"label": "managed", "oauthToken": "a1", "oauthRefreshToken": shared}])
    write_json(
        home / ".claude" / ".credentials.json",
        {"claudeAiOauth": {"accessToken": "a2", "refreshToken": shared + "x", "scopes": ["user:profile"]}},
    )
    write_json(home / ".local" / "share" / "opencode" / "auth.json", {"anthropic": {"access": "a3", "refresh": "other"}})
    monkeypatch.setenv("CLAUDE_OAUTH_ACCOUNTS", json.dumps([{"label": "env", "accessToken": "a4"}]))

    labels = [a.label for a in claude_accounts.load_all_oauth_accounts()]

    assert labels == ["env", "managed", "opencode"]
    assert [a.label for a in claude_accounts.load_all_oauth_accounts(local=True)] == ["env", "managed"]


def test_claude_code_login_requires_profile_scope(home, write_json) -> None:
    write_json(home / ".claude" / ".credentials.json", {"claudeAiOauth": {"accessToken": "a", "scopes": ["user:inference"]}})

    assert claude_accounts.load_oauth_from_claude_code() == []


def test_manual_account_parses_pasted_json() -> None:
    pasted = json.dumps({"sessionKey": "sk-ant-xyz", "claudeAiOauth": {"accessToken": "oauth"}})

    account = claude_accounts.manual_account("me", pasted, "", " cf ", "")

    assert account.session_key == "sk-ant-xyz"
    assert account.oauth_token == "oauth"
    assert account.cf_clearance == "cf"
    assert account.org_id is None

    with pytest.raises(InvalidInputError):
        claude_accounts.manual_account("me", "", "")


def test_check_new_label(home, write_json) -> None:
    write_json(home / ".claude-accounts.json", [{"label": "taken", "sessionKey": "sk-ant-1"}])

    assert claude_accounts.check_new_label(" fresh ") == "fresh"
    with pytest.raises(InvalidInputError, match="already exists"):
        claude_accounts.check_new_label("taken")
    with pytest.raises(InvalidInputError, match="required"):
        claude_accounts.check_new_label("")
