"""
Actor and permission value objects (``change_control.domain.actor``).

Responsibility
--------------
Immutable per-request snapshot of the acting user plus the eight-action
permission rows it carries.  Defines the role/override merge and the
staleness rule that drives override self-heal.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.

Invariants enforced
-------------------
* ``navigate`` is only granted together with ``view``; ``edit``,
  ``delete``, ``hard_delete``, ``approve`` and ``print`` are only granted
  together with ``navigate``.
* Effective permission for an action is ``override ?? role ?? False``.
* An override row is stale when every action is unset or equal (as a
  boolean) to the role base.  Deleting a stale row never changes
  effective access.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any

ACTIONS: tuple[str, ...] = (
    "navigate",
    "view",
    "create",
    "edit",
    "delete",
    "hard_delete",
    "print",
    "approve",
)

_NAVIGATE_GATED: frozenset[str] = frozenset(
    {"edit", "delete", "hard_delete", "approve", "print"}
)


class ScopeType(str, Enum):
    MODULE = "MODULE"
    SCREEN = "SCREEN"
    VOUCHER = "VOUCHER"
    REPORT = "REPORT"


def normalize_action(action: str) -> str:
    """Accept ``create`` or ``can_create`` (any case) and return ``create``."""
    if not action:
        raise ValueError("action is required")
    key = action.strip().lower()
    if key.startswith("can_"):
        key = key[4:]
    if key not in ACTIONS:
        raise ValueError(f"Unknown permission action: {action!r}")
    return key


def permission_key(scope_type: ScopeType | str, scope_key: str) -> str:
    """Key used in ``Actor.permissions``: ``"SCREEN:master_data.bom"``."""
    return f"{ScopeType(scope_type).value}:{scope_key}"


def _flag(values: Mapping[str, Any], action: str) -> Any:
    if f"can_{action}" in values:
        return values[f"can_{action}"]
    return values.get(action)


@dataclass(frozen=True)
class PermissionFlags:
    """Effective (two-state) permission row for one scope."""

    navigate: bool = False
    view: bool = False
    create: bool = False
    edit: bool = False
    delete: bool = False
    hard_delete: bool = False
    print: bool = False
    approve: bool = False

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any] | None) -> PermissionFlags:
        if not values:
            return cls()
        return cls(**{a: bool(_flag(values, a)) for a in ACTIONS})

    @classmethod
    def all_granted(cls) -> PermissionFlags:
        return cls(**{a: True for a in ACTIONS})

    def grants(self, action: str) -> bool:
        """True iff the flag is set AND its structural prerequisite holds."""
        action = normalize_action(action)
        if not getattr(self, action):
            return False
        if action == "navigate":
            return self.view
        if action in _NAVIGATE_GATED:
            return self.navigate
        return True

    def to_dict(self) -> dict[str, bool]:
        return {f"can_{a}": getattr(self, a) for a in ACTIONS}


@dataclass(frozen=True)
class OverrideFlags:
    """Tri-state per-user override row; ``None`` means "inherit the role"."""

    navigate: bool | None = None
    view: bool | None = None
    create: bool | None = None
    edit: bool | None = None
    delete: bool | None = None
    hard_delete: bool | None = None
    print: bool | None = None
    approve: bool | None = None

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any] | None) -> OverrideFlags:
        if not values:
            return cls()
        kwargs = {}
        for a in ACTIONS:
            raw = _flag(values, a)
            kwargs[a] = None if raw is None else bool(raw)
        return cls(**kwargs)

    def is_unset(self) -> bool:
        return all(getattr(self, f.name) is None for f in fields(self))

    def merge(self, base: PermissionFlags | None) -> PermissionFlags:
        base = base or PermissionFlags()
        merged = {}
        for a in ACTIONS:
            value = getattr(self, a)
            merged[a] = getattr(base, a) if value is None else value
        return PermissionFlags(**merged)

    def is_stale_against(self, base: PermissionFlags | None) -> bool:
        base = base or PermissionFlags()
        for a in ACTIONS:
            value = getattr(self, a)
            if value is not None and bool(value) != getattr(base, a):
                return False
        return True

    def relative_to(self, base: PermissionFlags | None) -> OverrideFlags:
        """Drop actions that merely restate the role base."""
        base = base or PermissionFlags()
        return OverrideFlags(**{
            a: (None if getattr(self, a) is None or getattr(self, a) == getattr(base, a)
                else getattr(self, a))
            for a in ACTIONS
        })

    def to_dict(self) -> dict[str, bool | None]:
        return {f"can_{a}": getattr(self, a) for a in ACTIONS}


@dataclass(frozen=True)
class Actor:
    """
    Immutable snapshot of the requesting user.

    ``permissions`` is keyed by ``permission_key(scope_type, scope_key)``
    and holds the already-merged effective rows.
    """

    id: int
    username: str
    is_active: bool
    role_id: int | None
    role_name: str | None
    branch_ids: frozenset[int] = frozenset()
    permissions: Mapping[str, PermissionFlags] = field(default_factory=dict)
    is_admin: bool = False
    email: str | None = None

    def permission(self, scope_type: ScopeType | str, scope_key: str) -> PermissionFlags | None:
        return self.permissions.get(permission_key(scope_type, scope_key))

    def has_branch(self, branch_id: int) -> bool:
        return branch_id in self.branch_ids


def is_admin_role(role_name: str | None, admin_role_name: str = "admin") -> bool:
    """Primary role name equals the admin role name, case-insensitively."""
    return bool(role_name) and role_name.strip().lower() == admin_role_name.lower()
