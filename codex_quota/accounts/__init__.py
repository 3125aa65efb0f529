"""Account loaders for each vendor."""

import re

from codex_quota.config.constants import LABEL_PATTERN

_LABEL_RE = re.compile(LABEL_PATTERN)


def is_valid_label(label: str | None) -> bool:
    return bool(label) and _LABEL_RE.match(label) is not None
