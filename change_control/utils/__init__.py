"""Utility modules for the change-control kernel."""

from change_control.utils.hashing import (
    canonicalize_json,
    hash_payload,
    normalize_number,
    to_json_safe,
)
from change_control.utils.sanitize import SanitizeLimits, sanitize_for_audit

__all__ = [
    "canonicalize_json",
    "hash_payload",
    "normalize_number",
    "to_json_safe",
    "SanitizeLimits",
    "sanitize_for_audit",
]
