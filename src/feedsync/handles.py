"""Account handle normalization shared by config, pipeline and media cache."""

from __future__ import annotations

import re
from collections.abc import Iterable

HANDLE_PATTERN = re.compile(r"^[A-Za-z0-9_]{1,15}$")


def normalize_handle(value: str) -> str:
    """Strip a leading ``@`` and surrounding whitespace."""

    text = str(value).strip()
    if text.startswith("@"):
        text = text[1:]
    return text.strip()


def handle_key(value: str) -> str:
    """Return the case-insensitive key used for cooldowns and lookups."""

    return normalize_handle(value).lower()


def normalize_handles(values: Iterable[str] | None) -> list[str]:
    """Normalize and de-duplicate handles case-insensitively, keeping first-seen order."""

    if not values:
        return []
    seen: set[str] = set()
    result: list[str] = []
    for raw in values:
        clean = normalize_handle(raw)
        if not clean:
            continue
        key = clean.lower()
        if key in seen:
            continue
        seen.add(key)
        result.append(clean)
    return result


def is_valid_handle(value: str) -> bool:
    return bool(HANDLE_PATTERN.match(value))
