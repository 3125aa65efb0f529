"""Symlink-aware atomic file writes."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any


def resolve_write_path(path: str | Path) -> Path:
    """Return the real file a write to ``path`` should land in.

    A symlinked path resolves to its target (relative link targets are
    taken against the link's own directory) so the link itself survives
    the write. Anything else, including a missing file, is returned as is.
    """
    path = Path(path)
    try:
        if not path.is_symlink():
            return path
    except OSError:
        return path
    try:
        return Path(os.path.realpath(path, strict=True))
    except OSError:
        try:
            target = Path(os.readlink(path))
        except OSError:
            return path
        if not target.is_absolute():
            target = path.parent / target
        return Path(os.path.normpath(target))


def write_file_atomic(path: str | Path, contents: str, mode: int | None = None) -> Path:
    """Write ``contents`` via ``<target>.tmp`` + rename and return the target written."""
    target = resolve_write_path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = target.with_name(target.name + ".tmp")
    # os.open only applies ``mode`` when it creates the file
    tmp_path.unlink(missing_ok=True)
    try:
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o666 if mode is None else mode)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(contents)
        os.replace(tmp_path, target)
    except OSError:
        tmp_path.unlink(missing_ok=True)
        raise
    return target


def dump_json(payload: Any) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False) + "\n"


def write_json_file(path: str | Path, payload: Any, mode: int | None = 0o600) -> Path:
    return write_file_atomic(path, dump_json(payload), mode=mode)
