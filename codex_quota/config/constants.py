"""Wire constants shared with the vendor CLIs."""

PRIMARY_CMD = "codex-quota"

# OpenAI Codex OAuth (matches the Codex CLI)
TOKEN_URL = "https://auth.openai.com/oauth/token"
AUTHORIZE_URL = "https://auth.openai.com/oauth/authorize"
CLIENT_ID = "app_EMoamEEZ73f0CkXaXp7hrann"
CALLBACK_HOST = "127.0.0.1"
CALLBACK_PORT = 1455
CALLBACK_PATH = "/auth/callback"
REDIRECT_URI = f"http://localhost:{CALLBACK_PORT}{CALLBACK_PATH}"
SCOPE = "openid profile email offline_access"
ORIGINATOR = "codex_cli_rs"
OAUTH_TIMEOUT_SEC = 120
OPENAI_REFRESH_BUFFER_MS = 60 * 1000
USAGE_URL = "https://chatgpt.com/backend-api/wham/usage"
USAGE_TIMEOUT_SEC = 15.0
JWT_CLAIM = "https://api.openai.com/auth"
JWT_PROFILE = "https://api.openai.com/profile"

# Claude web API (legacy cookie path)
CLAUDE_API_BASE = "https://claude.ai/api"
CLAUDE_ORIGIN = "https://claude.ai"
CLAUDE_ORGS_URL = f"{CLAUDE_API_BASE}/organizations"
CLAUDE_ACCOUNT_URL = f"{CLAUDE_API_BASE}/account"
CLAUDE_TIMEOUT_SEC = 15.0
CLAUDE_USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

# Claude OAuth API
CLAUDE_OAUTH_USAGE_URL = "https://api.anthropic.com/api/oauth/usage"
CLAUDE_OAUTH_VERSION = "2023-06-01"
CLAUDE_OAUTH_BETA = "oauth-2025-04-20"
CLAUDE_REFRESH_BUFFER_MS = 5 * 60 * 1000

# Claude OAuth browser flow
CLAUDE_OAUTH_AUTHORIZE_URL = "https://claude.ai/oauth/authorize"
CLAUDE_OAUTH_TOKEN_URL = "https://console.anthropic.com/v1/oauth/token"
CLAUDE_OAUTH_REDIRECT_URI = "https://console.anthropic.com/oauth/code/callback"
CLAUDE_OAUTH_CLIENT_ID = "9d1c250a-e61b-44d9-88ed-5944d1962f5e"
CLAUDE_OAUTH_SCOPES = "org:create_api_key user:profile user:inference"
CLAUDE_DEFAULT_EXPIRES_IN = 3600

MULTI_ACCOUNT_SCHEMA_VERSION = 1
LABEL_PATTERN = r"^[A-Za-z0-9_-]+$"
SECRET_FILE_MODE = 0o600

SUCCESS_HTML = (
    "<!doctype html>"
    "<html lang=\"en\">"
    "<head>"
    "<meta charset=\"utf-8\" />"
    "<title>codex-quota: signed in</title>"
    "<script>setTimeout(function () { window.close(); }, 3000);</script>"
    "</head>"
    "<body>"
    "<h1>Authentication successful</h1>"
    "<p>You can close this window and return to your terminal.</p>"
    "</body>"
    "</html>"
)

ERROR_HTML_TEMPLATE = (
    "<!doctype html>"
    "<html lang=\"en\">"
    "<head>"
    "<meta charset=\"utf-8\" />"
    "<title>codex-quota: sign-in failed</title>"
    "</head>"
    "<body>"
    "<h1>Authentication failed</h1>"
    "<p>{message}</p>"
    "<p>Return to your terminal and try again.</p>"
    "</body>"
    "</html>"
)
