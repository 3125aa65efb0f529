"""OAuth authorization-code + PKCE flows for both vendors."""

from codex_quota.auth.claude import login_claude_oauth
from codex_quota.auth.codex import login_codex_oauth

__all__ = ["login_claude_oauth", "login_codex_oauth"]
