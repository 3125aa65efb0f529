"""Utility functions for codex-quota."""

from codex_quota.utils.fs import resolve_write_path, write_file_atomic, write_json_file
from codex_quota.utils.jwt import decode_jwt, extract_account_id, extract_profile

__all__ = [
    "decode_jwt",
    "extract_account_id",
    "extract_profile",
    "resolve_write_path",
    "write_file_atomic",
    "write_json_file",
]
