"""
Deterministic serialisation and hashing.

Snapshot signatures, configuration checksums and change-log values all go
through ``canonicalize_json`` so that equal content always produces the
same string, whatever the key order or numeric type it arrived with.
"""

import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any


def _json_serializer(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        return normalize_number(obj)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, (set, frozenset)):
        return sorted(obj, key=str)
    if isinstance(obj, bytes):
        return obj.hex()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def normalize_number(value: Any) -> int | float | None:
    """
    Collapse Decimal/str/float numerics to a stable JSON number.

    Integral values become ``int`` (``Decimal("1.000")`` -> ``1``) so that a
    quantity read back from a NUMERIC column serialises identically to the
    same quantity submitted as JSON.
    """
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        dec = Decimal(str(value))
    except ArithmeticError:
        return None
    if not dec.is_finite():
        return None
    if dec == dec.to_integral_value():
        return int(dec)
    return float(dec)


def canonicalize_json(data: Any) -> str:
    """Sorted keys, no whitespace, Decimal/datetime handled."""
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        default=_json_serializer,
    )


def to_json_safe(data: Any) -> Any:
    """Round-trip through canonical JSON so the value fits a JSON column."""
    return json.loads(canonicalize_json(data))


def hash_payload(payload: Any) -> str:
    """Hex-encoded SHA-256 of the canonical JSON form."""
    return hashlib.sha256(canonicalize_json(payload).encode("utf-8")).hexdigest()
