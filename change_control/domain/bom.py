"""
BOM domain rules (``change_control.domain.bom``).

Responsibility
--------------
Everything about a Bill of Materials that can be decided without a
database: the status machine, enum domains, form-payload coercion, the
canonical snapshot and its signature, and the per-section change diff
written to ``bom_change_log``.

Architecture position
---------------------
**Kernel domain layer** -- pure functions.  ``services/bom_service.py``
and ``services/bom_validator.py`` own the I/O.

Invariants enforced
-------------------
* Canonical snapshot: each line is projected to a fixed field set,
  sections are sorted by their composite key, object keys are sorted
  recursively and the result is serialised as canonical JSON.  Reordering
  input arrays or keys never changes the signature, and
  ``signature(canonical(x)) == signature(x)``.
* Section keys double as change-log ``entity_key`` values.
* A missing id in a key is ``0``; a missing scope is ``ALL``; a missing
  labour rate type is ``PER_PAIR``.

Notes
-----
Child rows are deleted and re-inserted on every save, so per-line database
ids are not stable across saves.  Nothing here depends on them.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from change_control.utils.hashing import canonicalize_json, hash_payload, normalize_number

BOM_ENTITY_TYPE = "BOM"
BOM_SCREEN_KEY = "master_data.bom"


class BomLevel(str, Enum):
    FINISHED = "FINISHED"
    SEMI_FINISHED = "SEMI_FINISHED"


class BomStatus(str, Enum):
    DRAFT = "DRAFT"
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


BOM_TRANSITIONS: dict[BomStatus, frozenset[BomStatus]] = {
    BomStatus.DRAFT: frozenset({BomStatus.PENDING, BomStatus.APPROVED}),
    BomStatus.PENDING: frozenset({BomStatus.APPROVED, BomStatus.DRAFT}),
    BomStatus.APPROVED: frozenset(),
    BomStatus.REJECTED: frozenset(),
}

LEVEL_ITEM_TYPE: dict[str, str] = {
    BomLevel.FINISHED.value: "FG",
    BomLevel.SEMI_FINISHED.value: "SFG",
}

SCOPE_ALL = "ALL"
SCOPE_SPECIFIC = "SPECIFIC"
SCOPES: frozenset[str] = frozenset({SCOPE_ALL, SCOPE_SPECIFIC})
LABOUR_RATE_TYPES: frozenset[str] = frozenset({"PER_DOZEN", "PER_PAIR"})
DEFAULT_RATE_TYPE = "PER_PAIR"
RULE_ACTION_TYPES: frozenset[str] = frozenset(
    {"ADD_RM", "REMOVE_RM", "REPLACE_RM", "ADJUST_QTY", "CHANGE_LOSS"}
)
SUPPORTED_RULE_ACTIONS: frozenset[str] = frozenset({"ADJUST_QTY"})

SECTIONS: tuple[str, ...] = ("rm_lines", "sfg_lines", "labour_lines", "variant_rules")


class ChangeType(str, Enum):
    ADDED = "ADDED"
    UPDATED = "UPDATED"
    REMOVED = "REMOVED"


def format_bom_no(sequence: int) -> str:
    """``BOM-`` + six-digit zero-padded sequence."""
    return f"BOM-{int(sequence):06d}"


# ---------------------------------------------------------------------------
# Coercion helpers
# ---------------------------------------------------------------------------


def to_number(value: Any) -> int | float | None:
    return normalize_number(value)


def to_positive_number(value: Any) -> int | float | None:
    num = normalize_number(value)
    if num is None or num <= 0:
        return None
    return num


def to_id(value: Any) -> int | None:
    num = normalize_number(value)
    if num is None or not float(num).is_integer():
        return None
    return int(num)


def normalize_scope(value: Any) -> str:
    text = str(value or SCOPE_ALL).strip().upper()
    return text if text in SCOPES else SCOPE_ALL


def parse_json_array(raw: Any) -> list[Any]:
    if not raw:
        return []
    if isinstance(raw, list):
        return raw
    if isinstance(raw, Mapping):
        return list(raw.values())
    try:
        parsed = json.loads(str(raw))
    except ValueError:
        return []
    return parsed if isinstance(parsed, list) else []


def parse_json_object(raw: Any) -> dict[str, Any]:
    if not raw:
        return {}
    if isinstance(raw, Mapping):
        return dict(raw)
    try:
        parsed = json.loads(str(raw))
    except ValueError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def as_rows(value: Any) -> list[Mapping[str, Any]]:
    if not value:
        return []
    if isinstance(value, Mapping):
        value = list(value.values())
    if not isinstance(value, (list, tuple)):
        return []
    return [row for row in value if isinstance(row, Mapping)]


def sorted_object(value: Any) -> Any:
    """Recursively rebuild mappings with sorted keys."""
    if isinstance(value, Mapping):
        return {k: sorted_object(value[k]) for k in sorted(value)}
    if isinstance(value, (list, tuple)):
        return [sorted_object(v) for v in value]
    return value


# ---------------------------------------------------------------------------
# Section keys
# ---------------------------------------------------------------------------


def _k(value: Any) -> str:
    ident = to_id(value)
    return str(ident or 0)


def rm_line_key(row: Mapping[str, Any]) -> str:
    return ":".join([
        _k(row.get("rm_item_id")), _k(row.get("dept_id")),
        _k(row.get("color_id")), _k(row.get("size_id")),
    ])


def sfg_line_key(row: Mapping[str, Any]) -> str:
    return f"{_k(row.get('fg_size_id'))}:{_k(row.get('sfg_sku_id'))}"


def labour_line_key(row: Mapping[str, Any]) -> str:
    return ":".join([
        _k(row.get("dept_id")),
        _k(row.get("labour_id")),
        row.get("size_scope") or SCOPE_ALL,
        _k(row.get("size_id")),
        row.get("rate_type") or DEFAULT_RATE_TYPE,
    ])


def variant_rule_key(row: Mapping[str, Any]) -> str:
    return ":".join([
        row.get("size_scope") or SCOPE_ALL,
        _k(row.get("size_id")),
        row.get("packing_scope") or SCOPE_ALL,
        _k(row.get("packing_type_id")),
        row.get("color_scope") or SCOPE_ALL,
        _k(row.get("color_id")),
        row.get("action_type") or "",
        row.get("material_scope") or SCOPE_ALL,
        _k(row.get("target_rm_item_id")),
    ])


SECTION_KEYS: dict[str, Callable[[Mapping[str, Any]], str]] = {
    "rm_lines": rm_line_key,
    "sfg_lines": sfg_line_key,
    "labour_lines": labour_line_key,
    "variant_rules": variant_rule_key,
}


# ---------------------------------------------------------------------------
# Projections
# ---------------------------------------------------------------------------


def project_header(header: Mapping[str, Any] | None) -> dict[str, Any]:
    header = header or {}
    return {
        "item_id": to_id(header.get("item_id")),
        "level": str(header.get("level") or "").upper(),
        "output_qty": to_number(header.get("output_qty")) or 0,
        "output_uom_id": to_id(header.get("output_uom_id")),
    }


def project_rm_line(row: Mapping[str, Any]) -> dict[str, Any]:
    loss = to_number(row.get("normal_loss_pct"))
    return {
        "rm_item_id": to_id(row.get("rm_item_id")),
        "color_id": to_id(row.get("color_id")),
        "size_id": to_id(row.get("size_id")),
        "dept_id": to_id(row.get("dept_id")),
        "qty": to_number(row.get("qty")),
        "uom_id": to_id(row.get("uom_id")),
        "normal_loss_pct": 0 if loss is None else loss,
    }


def project_sfg_line(row: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "fg_size_id": to_id(row.get("fg_size_id")),
        "sfg_sku_id": to_id(row.get("sfg_sku_id")),
        "required_qty": to_number(row.get("required_qty")),
        "uom_id": to_id(row.get("uom_id")),
        "ref_approved_bom_id": to_id(row.get("ref_approved_bom_id")),
    }


def project_labour_line(row: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "size_scope": normalize_scope(row.get("size_scope")),
        "size_id": to_id(row.get("size_id")),
        "dept_id": to_id(row.get("dept_id")),
        "labour_id": to_id(row.get("labour_id")),
        "rate_type": str(row.get("rate_type") or DEFAULT_RATE_TYPE).upper(),
        "rate_value": to_number(row.get("rate_value")),
    }


def _normalize_rule_value(value: Any) -> Any:
    value = sorted_object(value)
    if isinstance(value, dict):
        return {
            k: (normalize_number(v) if isinstance(v, (int, float)) and not isinstance(v, bool) else v)
            for k, v in value.items()
        }
    return value


def project_variant_rule(row: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "size_scope": normalize_scope(row.get("size_scope")),
        "size_id": to_id(row.get("size_id")),
        "packing_scope": normalize_scope(row.get("packing_scope")),
        "packing_type_id": to_id(row.get("packing_type_id")),
        "color_scope": normalize_scope(row.get("color_scope")),
        "color_id": to_id(row.get("color_id")),
        "action_type": str(row.get("action_type") or "").upper(),
        "material_scope": normalize_scope(row.get("material_scope")),
        "target_rm_item_id": to_id(row.get("target_rm_item_id")),
        "new_value": _normalize_rule_value(parse_json_object(row.get("new_value"))),
    }


_PROJECTIONS: dict[str, Callable[[Mapping[str, Any]], dict[str, Any]]] = {
    "rm_lines": project_rm_line,
    "sfg_lines": project_sfg_line,
    "labour_lines": project_labour_line,
    "variant_rules": project_variant_rule,
}


def canonical_snapshot(snapshot: Mapping[str, Any] | None) -> dict[str, Any]:
    """Project and sort every section of a BOM snapshot."""
    snapshot = snapshot or {}
    result: dict[str, Any] = {"header": project_header(snapshot.get("header"))}
    for section in SECTIONS:
        project = _PROJECTIONS[section]
        key = SECTION_KEYS[section]
        rows = [project(row) for row in as_rows(snapshot.get(section))]
        # Full canonical text breaks ties between rows sharing a section key.
        rows.sort(key=lambda r: (key(r), canonicalize_json(r)))
        result[section] = rows
    return sorted_object(result)


def snapshot_signature(snapshot: Mapping[str, Any] | None) -> str:
    """Canonical JSON string of the projected snapshot."""
    return canonicalize_json(canonical_snapshot(snapshot))


def signature_digest(snapshot: Mapping[str, Any] | None) -> str:
    """Short SHA-256 of the canonical snapshot, for logs."""
    return hash_payload(canonical_snapshot(snapshot))


# ---------------------------------------------------------------------------
# Form payload
# ---------------------------------------------------------------------------


def parse_bom_form_payload(body: Mapping[str, Any] | None) -> dict[str, Any]:
    """
    Turn submitted form fields into the normalised input shape.

    Line sections arrive as JSON strings in ``rm_lines_json``,
    ``sfg_lines_json``, ``labour_lines_json`` and ``variant_rules_json``.
    Blank rows are dropped.  The raw ``new_value`` text of each variant rule
    is kept under ``raw_new_value`` so the validator can reject invalid JSON.
    """
    body = body or {}
    rm_lines = [
        {
            "rm_item_id": to_id(row.get("rm_item_id")),
            "color_id": to_id(row.get("color_id")),
            "size_id": to_id(row.get("size_id")),
            "dept_id": to_id(row.get("dept_id")),
            "qty": to_number(row.get("qty")),
            "uom_id": to_id(row.get("uom_id")),
            "normal_loss_pct": to_number(row.get("normal_loss_pct")),
        }
        for row in as_rows(parse_json_array(body.get("rm_lines_json")))
    ]
    sfg_lines = [
        {
            "fg_size_id": to_id(row.get("fg_size_id")),
            "sfg_sku_id": to_id(row.get("sfg_sku_id")),
            "required_qty": to_number(row.get("required_qty")),
            "uom_id": to_id(row.get("uom_id")),
        }
        for row in as_rows(parse_json_array(body.get("sfg_lines_json")))
    ]
    labour_lines = [
        {
            "size_scope": normalize_scope(row.get("size_scope")),
            "size_id": to_id(row.get("size_id")),
            "dept_id": to_id(row.get("dept_id")),
            "labour_id": to_id(row.get("labour_id")),
            "rate_type": str(row.get("rate_type") or DEFAULT_RATE_TYPE).upper(),
            "rate_value": to_number(row.get("rate_value")),
        }
        for row in as_rows(parse_json_array(body.get("labour_lines_json")))
    ]
    variant_rules = []
    for row in as_rows(parse_json_array(body.get("variant_rules_json"))):
        rule = dict(project_variant_rule(row))
        raw = row.get("new_value")
        rule["raw_new_value"] = raw if isinstance(raw, str) else None
        variant_rules.append(rule)

    return {
        "header": {
            "item_id": to_id(body.get("item_id")),
            "level": str(body.get("level") or "").upper(),
            "output_qty": to_number(body.get("output_qty")),
            "output_uom_id": to_id(body.get("output_uom_id")),
        },
        "rm_lines": [r for r in rm_lines if r["rm_item_id"] or r["dept_id"] or r["qty"]],
        "sfg_lines": [r for r in sfg_lines if r["fg_size_id"] or r["sfg_sku_id"] or r["required_qty"]],
        "labour_lines": [r for r in labour_lines if r["dept_id"] or r["labour_id"] or r["rate_value"]],
        "variant_rules": [r for r in variant_rules if r["action_type"]],
    }


# ---------------------------------------------------------------------------
# Change diff
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChangeRow:
    section: str
    entity_key: str
    change_type: ChangeType
    old_value: Any
    new_value: Any


def _changed(a: Any, b: Any) -> bool:
    return canonicalize_json(a) != canonicalize_json(b)


def _diff_section(section: str, before: Iterable[Mapping[str, Any]], after: Iterable[Mapping[str, Any]]) -> list[ChangeRow]:
    key = SECTION_KEYS[section]
    before_map = {key(r): dict(r) for r in before}
    after_map = {key(r): dict(r) for r in after}
    rows: list[ChangeRow] = []
    for entity_key in list(before_map) + [k for k in after_map if k not in before_map]:
        old = before_map.get(entity_key)
        new = after_map.get(entity_key)
        if old is not None and new is None:
            rows.append(ChangeRow(section, entity_key, ChangeType.REMOVED, old, None))
        elif old is None and new is not None:
            rows.append(ChangeRow(section, entity_key, ChangeType.ADDED, None, new))
        elif _changed(old, new):
            rows.append(ChangeRow(section, entity_key, ChangeType.UPDATED, old, new))
    return rows


def build_change_rows(
    before: Mapping[str, Any] | None,
    after: Mapping[str, Any] | None,
) -> list[ChangeRow]:
    """
    Per-entry diff between two snapshots.

    The header row is emitted only when both sides exist and differ; line
    sections compare by section key.
    """
    rows: list[ChangeRow] = []
    if before is not None and after is not None:
        old_header, new_header = before.get("header"), after.get("header")
        if _changed(old_header, new_header):
            change = ChangeType.UPDATED if old_header else ChangeType.ADDED
            rows.append(ChangeRow("header", "header", change, old_header, new_header))
    for section in SECTIONS:
        rows.extend(_diff_section(
            section,
            as_rows((before or {}).get(section)),
            as_rows((after or {}).get(section)),
        ))
    return rows


def snapshot_change_row(before: Mapping[str, Any] | None, after: Mapping[str, Any] | None) -> ChangeRow:
    """Whole-snapshot ``(before, after)`` row written on every save and approval."""
    change = ChangeType.ADDED if before is None else ChangeType.UPDATED
    return ChangeRow("snapshot", "snapshot", change, before, after)
