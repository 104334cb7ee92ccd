"""
Configuration Loader (``change_config.loader``).

Responsibility
--------------
Reads the change-control YAML file and parses it into the frozen
dataclasses of ``change_config.schema``.  Callers use
``change_config.get_active_config()``; this module is its machinery.

Invariants enforced
-------------------
* Required keys (``config_id``, ``version``, node ``key``) raise
  ``KeyError`` when missing; unknown keys are ignored.
* A node that declares ``scope_type`` must also declare ``scope_key``.
* ``compute_checksum`` is deterministic: the same YAML content always
  yields the same SHA-256, whatever the key order.

Failure modes
-------------
* Missing file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Structural errors  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

import yaml

from change_config.schema import (
    AuditConfig,
    ChangeControlConfig,
    EventConfig,
    GateConfig,
    NavNodeDef,
)

SCOPE_TYPES = frozenset({"MODULE", "SCREEN", "VOUCHER", "REPORT"})


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a YAML file; an empty document yields ``{}``."""
    with open(path) as f:
        return yaml.safe_load(f) or {}


def compute_checksum(data: dict[str, Any]) -> str:
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def parse_nav_node(data: dict[str, Any]) -> NavNodeDef:
    scope_type = data.get("scope_type")
    scope_key = data.get("scope_key")
    if scope_type is not None:
        scope_type = str(scope_type).upper()
        if scope_type not in SCOPE_TYPES:
            raise ValueError(f"Unknown scope_type {scope_type!r} on nav node {data.get('key')!r}")
        if not scope_key:
            raise ValueError(f"Nav node {data.get('key')!r} declares scope_type without scope_key")
    return NavNodeDef(
        key=data["key"],
        label=data.get("label") or data["key"],
        scope_type=scope_type,
        scope_key=scope_key,
        route=data.get("route"),
        children=tuple(parse_nav_node(c) for c in data.get("children") or ()),
    )


def parse_legacy_aliases(data: dict[str, Any] | None) -> tuple[tuple[str, str], ...]:
    return tuple(sorted((str(k), str(v)) for k, v in (data or {}).items()))


def parse_gate(data: dict[str, Any] | None) -> GateConfig:
    data = data or {}
    return GateConfig(reroute_on_denied=bool(data.get("reroute_on_denied", True)))


def parse_events(data: dict[str, Any] | None) -> EventConfig:
    data = data or {}
    defaults = EventConfig()
    limit = int(data.get("decision_queue_limit", defaults.decision_queue_limit))
    if limit < 1:
        raise ValueError("events.decision_queue_limit must be at least 1")
    return EventConfig(
        decision_queue_limit=limit,
        decision_event_name=data.get("decision_event_name", defaults.decision_event_name),
        decision_link_template=data.get("decision_link_template", defaults.decision_link_template),
    )


def parse_audit(data: dict[str, Any] | None) -> AuditConfig:
    data = data or {}
    defaults = AuditConfig()
    parsed = AuditConfig(
        max_depth=int(data.get("max_depth", defaults.max_depth)),
        max_items=int(data.get("max_items", defaults.max_items)),
        max_string=int(data.get("max_string", defaults.max_string)),
        omit_keys=tuple(data.get("omit_keys", defaults.omit_keys)),
    )
    if min(parsed.max_depth, parsed.max_items, parsed.max_string) < 1:
        raise ValueError("audit limits must be positive")
    return parsed


def parse_config(data: dict[str, Any]) -> ChangeControlConfig:
    return ChangeControlConfig(
        config_id=data["config_id"],
        version=int(data["version"]),
        admin_role_name=data.get("admin_role_name", "admin"),
        navigation=tuple(parse_nav_node(n) for n in data.get("navigation") or ()),
        legacy_aliases=parse_legacy_aliases(data.get("legacy_aliases")),
        gate=parse_gate(data.get("gate")),
        events=parse_events(data.get("events")),
        audit=parse_audit(data.get("audit")),
        checksum=compute_checksum(data),
    )


def load_config(path: Path) -> ChangeControlConfig:
    return parse_config(load_yaml_file(path))
