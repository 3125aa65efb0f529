"""Multi-account container files.

A container is either a bare list of account entries or an object
``{"accounts": [...], "activeLabel": ..., "schemaVersion": ...}``.
Unknown root fields are carried through every rewrite.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from loguru import logger

from codex_quota.config.constants import MULTI_ACCOUNT_SCHEMA_VERSION, SECRET_FILE_MODE
from codex_quota.utils.fs import write_json_file

_UNSET: Any = object()


@dataclass
class MultiAccountContainer:
    path: Path
    exists: bool = False
    root_type: str = "missing"  # missing | array | object | invalid
    root_fields: dict[str, Any] = field(default_factory=dict)
    schema_version: int = 0
    active_label: str | None = None
    accounts: list[Any] = field(default_factory=list)


def read_container(path: str | Path) -> MultiAccountContainer:
    """Read a container without ever raising; unreadable files become ``invalid``."""
    container = MultiAccountContainer(path=Path(path))
    container.exists = container.path.exists()
    if not container.exists:
        return container

    try:
        parsed = json.loads(container.path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.warning("Cannot parse {}: {}", container.path, exc)
        container.root_type = "invalid"
        return container

    if isinstance(parsed, list):
        container.root_type = "array"
        container.accounts = parsed
        return container
    if not isinstance(parsed, dict):
        container.root_type = "invalid"
        return container

    container.root_type = "object"
    accounts = parsed.get("accounts")
    container.accounts = accounts if isinstance(accounts, list) else []
    version = parsed.get("schemaVersion")
    container.schema_version = version if isinstance(version, int) and not isinstance(version, bool) else 0
    active = parsed.get("activeLabel")
    container.active_label = active if isinstance(active, str) else None
    container.root_fields = {
        key: value
        for key, value in parsed.items()
        if key not in ("accounts", "schemaVersion", "activeLabel")
    }
    return container


def build_payload(
    container: MultiAccountContainer,
    accounts: list[Any],
    active_label: Any = _UNSET,
    schema_version: int = 0,
) -> dict[str, Any]:
    """Merge root fields, markers and accounts into the object written to disk."""
    version = max(container.schema_version, schema_version, MULTI_ACCOUNT_SCHEMA_VERSION)
    candidate = container.active_label if active_label is _UNSET else active_label
    return {
        **container.root_fields,
        "schemaVersion": version,
        "activeLabel": candidate if isinstance(candidate, str) and candidate else None,
        "accounts": accounts,
    }


def write_container(
    container: MultiAccountContainer,
    accounts: list[Any] | None = None,
    active_label: Any = _UNSET,
    mode: int = SECRET_FILE_MODE,
) -> Path:
    """Persist ``accounts`` (default: the container's own) and return the path written."""
    payload = build_payload(
        container,
        container.accounts if accounts is None else accounts,
        active_label=active_label,
    )
    return write_json_file(container.path, payload, mode=mode)


def map_accounts(
    container: MultiAccountContainer,
    mapper: Callable[[Any], Any],
) -> tuple[bool, list[Any]]:
    """Apply ``mapper`` to each entry; changed means some entry came back as a new object."""
    updated = False
    accounts: list[Any] = []
    for entry in container.accounts:
        next_entry = mapper(entry)
        if next_entry is not entry:
            updated = True
        accounts.append(next_entry)
    return updated, accounts


def resolve_active_store_path(paths: list[Path]) -> Path:
    """First existing container path, else the primary one."""
    for path in paths:
        if path.exists():
            return path
    return paths[0]
