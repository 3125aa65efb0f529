"""Configuration module for codex-quota."""

from codex_quota.config import constants, paths

__all__ = ["constants", "paths"]
