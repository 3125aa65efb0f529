import base64
import json
from pathlib import Path
from typing import Any, Callable

import pytest

ENV_OVERRIDES = ("CODEX_ACCOUNTS", "CLAUDE_ACCOUNTS", "CLAUDE_OAUTH_ACCOUNTS", "NO_COLOR", "SSH_CLIENT", "SSH_TTY")


@pytest.fixture
def home(tmp_path: Path, monkeypatch) -> Path:
    """Point HOME and every credential path override into a temporary directory."""
    root = tmp_path / "home"
    root.mkdir()
    monkeypatch.setenv("HOME", str(root))
    monkeypatch.setenv("CODEX_AUTH_PATH", str(root / ".codex" / "auth.json"))
    monkeypatch.setenv("PI_AUTH_PATH", str(root / ".pi" / "agent" / "auth.json"))
    monkeypatch.setenv("CLAUDE_CREDENTIALS_PATH", str(root / ".claude" / ".credentials.json"))
    monkeypatch.setenv("XDG_DATA_HOME", str(root / ".local" / "share"))
    monkeypatch.setenv("CLAUDE_COOKIE_DB_PATH", str(root / "no-such-cookies.db"))
    for name in ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)
    return root


def _segment(data: dict[str, Any]) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode("utf-8")).rstrip(b"=").decode("ascii")


@pytest.fixture
def make_jwt() -> Callable[..., str]:
    """Build an unsigned Codex-style access token."""

    def _make(account_id: str = "acc_X", email: str | None = None, plan: str | None = None, **claims: Any) -> str:
        auth: dict[str, Any] = {"chatgpt_account_id": account_id}
        if plan:
            auth["chatgpt_plan_type"] = plan
        payload: dict[str, Any] = {"https://api.openai.com/auth": auth, **claims}
        if email:
            payload["https://api.openai.com/profile"] = {"email": email}
        return f"{_segment({'alg': 'none'})}.{_segment(payload)}.sig"

    return _make


@pytest.fixture
def write_json() -> Callable[[Path, Any], Path]:
    def _write(path: Path, payload: Any) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(payload), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def read_json() -> Callable[[Path], Any]:
    def _read(path: Path) -> Any:
        return json.loads(path.read_text(encoding="utf-8"))

    return _read
