"""
Bounded, secret-free copies of payloads for the activity trail.

Activity context stores old/new values next to the request that produced
them.  ``sanitize_for_audit`` trims those values to a fixed depth, array
length and string length, and drops credential-like keys entirely.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from change_control.utils.hashing import normalize_number

DEFAULT_OMIT_KEYS: frozenset[str] = frozenset({
    "_csrf",
    "password",
    "password_hash",
    "token",
    "secret",
    "secret_enc",
})


@dataclass(frozen=True)
class SanitizeLimits:
    max_depth: int = 4
    max_items: int = 40
    max_string: int = 400
    omit_keys: frozenset[str] = field(default_factory=lambda: DEFAULT_OMIT_KEYS)


DEFAULT_LIMITS = SanitizeLimits()


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return f"{text[:limit]}..."


def sanitize_for_audit(value: Any, limits: SanitizeLimits = DEFAULT_LIMITS, depth: int = 0) -> Any:
    """
    Return a JSON-safe copy of ``value`` bounded by ``limits``.

    Containers deeper than ``max_depth`` collapse to ``None``; lists keep
    their first ``max_items`` entries; strings longer than ``max_string``
    are cut and suffixed with ``...``.
    """
    if value is None or isinstance(value, bool):
        return value
    if depth > limits.max_depth:
        return None
    if isinstance(value, str):
        return _truncate(value, limits.max_string)
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, Decimal):
        return normalize_number(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Mapping):
        result = {}
        for key, item in value.items():
            if str(key) in limits.omit_keys:
                continue
            result[str(key)] = sanitize_for_audit(item, limits, depth + 1)
        return result
    if isinstance(value, (list, tuple, set, frozenset)):
        items = list(value)[: limits.max_items]
        return [sanitize_for_audit(item, limits, depth + 1) for item in items]
    return _truncate(str(value), limits.max_string)
