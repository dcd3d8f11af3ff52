"""Free-text cleanup applied before anything is persisted.

This strips the common script-injection vectors from user text. It is not an
HTML sanitizer: output must still be escaped wherever it is rendered.
"""

from __future__ import annotations

import re
from typing import Any

MAX_TEXT_LENGTH = 1000

_script_pattern = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.I)
_unsafe_tag_pattern = re.compile(
    r"</?(?:iframe|object|embed|link|meta|style)\b[^>]*>", re.I
)
_unsafe_scheme_pattern = re.compile(r"(?:javascript|data):", re.I)
_event_handler_pattern = re.compile(r"\bon\w+\s*=", re.I)


def sanitize_input(value: Any) -> str:
    """Return ``value`` trimmed, stripped of unsafe markup and capped in length."""

    if not isinstance(value, str):
        return ""
    cleaned = value.strip()
    cleaned = _script_pattern.sub("", cleaned)
    cleaned = _unsafe_tag_pattern.sub("", cleaned)
    cleaned = _unsafe_scheme_pattern.sub("", cleaned)
    cleaned = _event_handler_pattern.sub("", cleaned)
    return cleaned[:MAX_TEXT_LENGTH]


def sanitize_optional(value: Any) -> str | None:
    """Sanitize ``value`` and collapse empty results to ``None``."""

    if value is None:
        return None
    cleaned = sanitize_input(value)
    return cleaned or None
