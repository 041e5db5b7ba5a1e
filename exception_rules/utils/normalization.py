"""
Rule name normalization.

Every comparison of rule names goes through ``normalize_name``. Persisted
rules may carry a missing, null or number-typed ``name``; those values are
coerced, never rejected, so the data stays searchable.
"""

import re
from typing import Any

# Whitespace and punctuation; CJK characters are word characters for re.
_NON_WORD_RE = re.compile(r"[\W_]+", re.UNICODE)


def _to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    try:
        return str(value)
    except Exception:
        return ""


def normalize_name(value: Any) -> str:
    """Return the comparison key for a rule name.

    ``None`` becomes ``''``; any other value is coerced with ``str()``,
    then trimmed and lower-cased. Never raises.
    """
    return _to_text(value).strip().lower()


def display_name(value: Any) -> str:
    """Return a trimmed, case-preserving rendering of a rule name."""
    return _to_text(value).strip()


def compact_name(value: Any) -> str:
    """Normalized name with whitespace and punctuation removed.

    Only used for similarity scoring, never for exact matching.
    """
    return _NON_WORD_RE.sub("", normalize_name(value))
