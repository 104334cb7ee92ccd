"""
Pure domain layer.

Value objects and rules with no dependency on the ORM, the database or
the wall clock.  Everything here is immutable and deterministic.
"""

from change_control.domain.actor import (
    ACTIONS,
    Actor,
    OverrideFlags,
    PermissionFlags,
    ScopeType,
    is_admin_role,
    normalize_action,
    permission_key,
)
from change_control.domain.approval import (
    ApprovalDecision,
    ApprovalRequest,
    ApprovalStatus,
    DecisionEvent,
    EnqueuedEvent,
    GateReason,
    PayloadAction,
    RequestType,
    parse_approval_payload,
)
from change_control.domain.clock import Clock, DeterministicClock, SystemClock
from change_control.domain.nav import NavCatalogue, NavNode, ScopeEntry
from change_control.domain.permissions import PermissionDecision, PermissionResolver

__all__ = [
    "ACTIONS",
    "Actor",
    "OverrideFlags",
    "PermissionFlags",
    "ScopeType",
    "is_admin_role",
    "normalize_action",
    "permission_key",
    "ApprovalDecision",
    "ApprovalRequest",
    "ApprovalStatus",
    "DecisionEvent",
    "EnqueuedEvent",
    "GateReason",
    "PayloadAction",
    "RequestType",
    "parse_approval_payload",
    "Clock",
    "DeterministicClock",
    "SystemClock",
    "NavCatalogue",
    "NavNode",
    "ScopeEntry",
    "PermissionDecision",
    "PermissionResolver",
]
