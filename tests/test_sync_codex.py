import os
import time

import pytest

from codex_quota.accounts import codex as codex_accounts
from codex_quota.errors import InvalidInputError, NotFoundError
from codex_quota.models import CodexToken
from codex_quota.store import foreign
from codex_quota.sync import codex as codex_sync

FUTURE = int(time.time() * 1000) + 24 * 3_600_000


@pytest.fixture
def accounts_file(home, write_json, make_jwt):
    def _write(active_label=None, labels=("mywork",)):
        payload = {
            "activeLabel": active_label,
            "accounts": [
                {
                    "label": label,
                    "accountId": f"acc_{label}",
                    "access": make_jwt(f"acc_{label}", email=f"{label}@e.com", plan="plus"),
                    "refresh": f"r_{label}",
                    "expires": FUTURE,
                }
                for label in labels
            ],
        }
        return write_json(home / ".codex-accounts.json", payload)

    return _write


def _snapshot_files(home):
    return {
        str(path): path.read_bytes()
        for path in sorted(home.rglob("*.json"))
        if path.is_file()
    }


def test_switch_updates_active_label_and_every_store(home, accounts_file, write_json, read_json) -> None:
    managed = accounts_file()
    opencode = write_json(
        home / ".local" / "share" / "opencode" / "auth.json",
        {
            "openai": {"type": "oauth", "access": "old"},
            "anthropic": {"type": "api", "key": "k1"},
            "openrouter": {"type": "api", "key": "k2"},
        },
    )

    result = codex_sync.switch_account("mywork")

    assert result["success"] is True
    assert result["email"] == "mywork@e.com"
    assert read_json(managed)["activeLabel"] == "mywork"
    data = read_json(opencode)
    assert data["openai"]["accountId"] == "acc_mywork"
    assert data["anthropic"] == {"type": "api", "key": "k1"}
    assert data["openrouter"] == {"type": "api", "key": "k2"}
    cli = read_json(home / ".codex" / "auth.json")
    assert cli["tokens"]["account_id"] == "acc_mywork"
    assert cli[foreign.LABEL_MARKER] == "mywork"
    assert "last_refresh" in cli
    assert str(home / ".pi" / "agent" / "auth.json") in result["skipped"]


def test_switch_twice_leaves_identical_files(home, accounts_file) -> None:
    accounts_file()
    codex_sync.switch_account("mywork")
    first = _snapshot_files(home)

    second_result = codex_sync.switch_account("mywork")

    assert _snapshot_files(home) == first
    assert second_result["updated"] == []


def test_switch_through_symlinked_store(home, accounts_file, tmp_path, write_json, read_json) -> None:
    accounts_file()
    real = write_json(tmp_path / "somewhere" / "real.json", {"openai": {"access": "old"}, "other": 1})
    link = home / ".local" / "share" / "opencode" / "auth.json"
    link.parent.mkdir(parents=True)
    link.symlink_to(real)

    codex_sync.switch_account("mywork")

    assert link.is_symlink()
    assert os.readlink(link) == str(real)
    assert read_json(real)["openai"]["accountId"] == "acc_mywork"
    assert read_json(real)["other"] == 1


def test_switch_unknown_label(home, accounts_file) -> None:
    accounts_file()

    with pytest.raises(NotFoundError) as excinfo:
        codex_sync.switch_account("ghost")
    assert excinfo.value.details["availableLabels"] == ["mywork"]


def test_divergence_then_sync_realigns(home, accounts_file, write_json, read_json, make_jwt) -> None:
    accounts_file(active_label="mywork")
    cli_tokens = {"access_token": make_jwt("acc_Y"), "refresh_token": "r_y"}
    cli_path = write_json(home / ".codex" / "auth.json", {"tokens": cli_tokens})

    divergence = codex_sync.detect_codex_divergence(allow_migration=False)
    assert divergence.diverged is True
    assert divergence.kind == "diverged-native"
    assert divergence.cli_account_id == "acc_Y"

    report = codex_sync.sync_active()

    assert str(cli_path) in report.updated
    cli = read_json(cli_path)
    assert cli["tokens"]["account_id"] == "acc_mywork"
    assert cli[foreign.LABEL_MARKER] == "mywork"
    assert codex_sync.detect_codex_divergence().kind == "aligned"

    again = codex_sync.sync_active()
    assert again.updated == []
    assert [entry.action for entry in again.plan] == []


def test_dry_run_plans_without_writing(home, accounts_file, write_json, make_jwt) -> None:
    accounts_file(active_label="mywork")
    write_json(home / ".codex" / "auth.json", {"tokens": {"access_token": make_jwt("acc_Y"), "refresh_token": "r_y"}})
    before = _snapshot_files(home)

    report = codex_sync.sync_active(dry_run=True).to_dict()

    assert _snapshot_files(home) == before
    assert report["dryRun"] is True
    plan = {entry["store"]: (entry["action"], entry["reason"]) for entry in report["plan"]}
    assert plan["codex-cli"] == ("push", "holds different tokens")
    assert plan["opencode"] == ("skip", "not found")
    assert plan["pi"] == ("skip", "not found")


def test_sync_pulls_fresher_token_from_store(home, accounts_file, write_json, read_json, make_jwt) -> None:
    managed = accounts_file(active_label="mywork")
    newer = make_jwt("acc_mywork", email="mywork@e.com")
    write_json(
        home / ".pi" / "agent" / "auth.json",
        {"openai-codex": {"access": newer, "refresh": "r_mywork", "expires": FUTURE + 60_000}},
    )

    report = codex_sync.sync_active()

    assert report.pulled == [str(home / ".pi" / "agent" / "auth.json")]
    entry = read_json(managed)["accounts"][0]
    assert entry["access"] == newer
    assert entry["expires"] == FUTURE + 60_000


def test_sync_without_active_label(home, accounts_file) -> None:
    accounts_file()

    with pytest.raises(NotFoundError, match="No activeLabel set"):
        codex_sync.sync_active()


def test_marker_migrates_into_active_label(home, accounts_file, write_json, read_json, make_jwt) -> None:
    managed = accounts_file(labels=("mywork", "other"))
    write_json(
        home / ".codex" / "auth.json",
        {"tokens": {"access_token": make_jwt("acc_other"), "refresh_token": "r"}, foreign.LABEL_MARKER: "other"},
    )

    preview = codex_sync.detect_codex_divergence(allow_migration=False)
    assert preview.active_label == "other"
    assert read_json(managed)["activeLabel"] is None

    divergence = codex_sync.detect_codex_divergence()
    assert divergence.migrated is True
    assert read_json(managed)["activeLabel"] == "other"


def test_marker_for_other_account_is_not_migrated(home, accounts_file, write_json, make_jwt) -> None:
    accounts_file(labels=("mywork", "other"))
    write_json(
        home / ".codex" / "auth.json",
        {"tokens": {"access_token": make_jwt("acc_mywork"), "refresh_token": "r"}, foreign.LABEL_MARKER: "other"},
    )

    divergence = codex_sync.detect_codex_divergence()

    assert divergence.migrated is False
    assert divergence.active_label is None


def test_remove_active_account_clears_pointers(home, accounts_file, write_json, read_json, make_jwt) -> None:
    managed = accounts_file(active_label="mywork", labels=("mywork", "other"))
    cli_path = write_json(
        home / ".codex" / "auth.json",
        {"tokens": {"access_token": make_jwt("acc_mywork"), "refresh_token": "r"}, foreign.LABEL_MARKER: "mywork"},
    )
    account = codex_sync.find_managed_account("mywork", "remove")

    result = codex_sync.remove_account(account)

    assert result["remainingAccounts"] == 1
    assert result["activeLabelCleared"] is True
    assert result["codexQuotaLabelCleared"] is True
    data = read_json(managed)
    assert [a["label"] for a in data["accounts"]] == ["other"]
    assert data["activeLabel"] is None
    cli = read_json(cli_path)
    assert foreign.LABEL_MARKER not in cli
    assert cli["tokens"]["refresh_token"] == "r"


def test_env_account_cannot_be_edited(home, monkeypatch, make_jwt) -> None:
    monkeypatch.setenv(
        "CODEX_ACCOUNTS",
        f'[{{"label": "ci", "accountId": "a", "access": "{make_jwt()}", "refresh": "r"}}]',
    )

    with pytest.raises(InvalidInputError, match="CODEX_ACCOUNTS env var"):
        codex_sync.find_managed_account("ci", "remove")


def test_reauth_active_account_pushes_to_cli(home, accounts_file, read_json, make_jwt) -> None:
    managed = accounts_file(active_label="mywork")
    account = codex_sync.find_managed_account("mywork", "re-authenticate")
    token = CodexToken(access=make_jwt("acc_mywork"), refresh="r_fresh", expires=FUTURE, account_id="acc_mywork")

    result = codex_sync.apply_reauth(account, token)

    assert result["cliUpdated"] is True
    assert read_json(managed)["accounts"][0]["refresh"] == "r_fresh"
    assert read_json(home / ".codex" / "auth.json")["tokens"]["refresh_token"] == "r_fresh"


def test_reauth_of_cli_fallback_account_is_rejected(home, write_json, make_jwt) -> None:
    write_json(home / ".codex" / "auth.json", {"tokens": {"access_token": make_jwt("acc_cli"), "refresh_token": "r"}})
    account = codex_sync.find_managed_account(codex_accounts.CODEX_CLI_LABEL, "re-authenticate")
    token = CodexToken(access="a", refresh="r", expires=FUTURE, account_id="acc_cli")

    with pytest.raises(InvalidInputError, match="codex add"):
        codex_sync.apply_reauth(account, token)
