"""Error taxonomy for codex-quota commands."""

from typing import Any


class CodexQuotaError(RuntimeError):
    """Base class for user-facing failures (exit code 1).

    Keyword ``details`` are merged into the ``--json`` error object.
    """

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details


class NotFoundError(CodexQuotaError):
    """A label, file, or account is missing."""


class InvalidInputError(CodexQuotaError):
    """Malformed label, duplicate label, conflicting flags, or a missing argument."""


class PortBusyError(CodexQuotaError):
    """The loopback callback port cannot be bound."""


class AuthDeniedError(CodexQuotaError):
    """The provider returned an OAuth error or the state did not match."""


class TokenExchangeError(CodexQuotaError):
    """The token endpoint rejected the request or returned an incomplete payload."""


class RefreshFailedError(CodexQuotaError):
    """A command needed a fresh token and the refresh was rejected."""


class AuthTimeoutError(CodexQuotaError):
    """No OAuth callback arrived before the deadline."""


class AuthCancelledError(CodexQuotaError):
    """The user interrupted the OAuth wait."""
