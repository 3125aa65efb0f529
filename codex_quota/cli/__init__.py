"""CLI module for codex-quota."""
