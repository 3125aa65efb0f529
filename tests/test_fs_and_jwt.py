import os
import stat

from codex_quota.utils.fs import resolve_write_path, write_json_file
from codex_quota.utils.jwt import decode_jwt, extract_account_id, extract_profile


def test_write_json_file_creates_parents_with_secret_mode(tmp_path, read_json) -> None:
    target = tmp_path / "nested" / "dir" / "auth.json"

    written = write_json_file(target, {"a": 1})

    assert written == target
    assert read_json(target) == {"a": 1}
    assert stat.S_IMODE(os.stat(target).st_mode) == 0o600
    assert not (tmp_path / "nested" / "dir" / "auth.json.tmp").exists()


def test_secret_file_is_never_written_with_loose_permissions(tmp_path, read_json, monkeypatch) -> None:
    target = tmp_path / "auth.json"
    stale = tmp_path / "auth.json.tmp"
    stale.write_text("left over", encoding="utf-8")
    stale.chmod(0o644)
    created: list[int] = []
    real_open = os.open

    def _open(path, flags, mode=0o777):
        fd = real_open(path, flags, mode)
        created.append(stat.S_IMODE(os.fstat(fd).st_mode))
        return fd

    monkeypatch.setattr(os, "open", _open)

    write_json_file(target, {"secret": "s"})

    assert created == [0o600]
    assert stat.S_IMODE(os.stat(target).st_mode) == 0o600
    assert read_json(target) == {"secret": "s"}
    assert not stale.exists()


def test_write_through_symlink_keeps_link_and_updates_target(tmp_path, read_json) -> None:
    real = tmp_path / "somewhere" / "real.json"
    real.parent.mkdir()
    real.write_text("{}", encoding="utf-8")
    link = tmp_path / "link.json"
    link.symlink_to(real)

    written = write_json_file(link, {"updated": True})

    assert written == real
    assert link.is_symlink()
    assert os.readlink(link) == str(real)
    assert read_json(real) == {"updated": True}


def test_dangling_relative_symlink_resolves_against_link_directory(tmp_path, read_json) -> None:
    link = tmp_path / "auth.json"
    link.symlink_to("data/real.json")

    assert resolve_write_path(link) == tmp_path / "data" / "real.json"

    write_json_file(link, {"x": 1})

    assert link.is_symlink()
    assert read_json(tmp_path / "data" / "real.json") == {"x": 1}


def test_decode_jwt_payload(make_jwt) -> None:
    token = make_jwt("acc_1", email="u@e.com", plan="plus")

    payload = decode_jwt(token)

    assert payload["https://api.openai.com/auth"]["chatgpt_account_id"] == "acc_1"
    assert extract_account_id(token) == "acc_1"
    assert extract_profile(token) == {"email": "u@e.com", "planType": "plus", "userId": None}


def test_decode_jwt_rejects_malformed_tokens() -> None:
    assert decode_jwt(None) is None
    assert decode_jwt("not-a-jwt") is None
    assert decode_jwt("a.!!!.c") is None
    assert extract_account_id("a.b") is None
    assert extract_profile("garbage") == {"email": None, "planType": None, "userId": None}
