"""
Approval domain types (``change_control.domain.approval``).

Responsibility
--------------
Pure value objects for the maker-checker queue: the request lifecycle
state machine, the tagged payload variants keyed by ``_action``, and the
event records published on enqueue and decision.

Architecture position
---------------------
**Kernel domain layer** -- ZERO I/O.

Invariants enforced
-------------------
* ``APPROVAL_TRANSITIONS`` defines the only valid status transitions.
  PENDING is the sole non-terminal state.
* A payload is parsed into exactly one variant.  Unknown ``_action`` tags
  produce ``UnknownPayload`` instead of raising, so appliers can log and
  skip them.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Union

SCHEMA_VERSION = 1
NEW_ENTITY_ID = "NEW"

TOPIC_ENQUEUED = "approval.enqueued"
TOPIC_DECIDED = "approval.decided"


class ApprovalStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


APPROVAL_TRANSITIONS: dict[ApprovalStatus, frozenset[ApprovalStatus]] = {
    ApprovalStatus.PENDING: frozenset({ApprovalStatus.APPROVED, ApprovalStatus.REJECTED}),
    ApprovalStatus.APPROVED: frozenset(),
    ApprovalStatus.REJECTED: frozenset(),
}

TERMINAL_APPROVAL_STATUSES: frozenset[ApprovalStatus] = frozenset({
    ApprovalStatus.APPROVED,
    ApprovalStatus.REJECTED,
})


class RequestType(str, Enum):
    MASTER_DATA_CHANGE = "MASTER_DATA_CHANGE"
    VOUCHER = "VOUCHER"
    BOM = "BOM"


class ApprovalDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class PayloadAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    TOGGLE = "toggle"
    APPROVE_DRAFT = "approve_draft"
    CREATE_VERSION_FROM = "create_version_from"


class GateReason(str, Enum):
    ADMIN_BYPASS = "admin_bypass"
    DIRECT = "direct"
    POLICY_REQUIRES_APPROVAL = "policy_requires_approval"
    PERMISSION_REROUTE = "permission_reroute"


@dataclass(frozen=True)
class ApprovalRequest:
    """Read-side snapshot of an ``approval_request`` row."""

    id: int
    branch_id: int
    request_type: RequestType
    entity_type: str
    entity_id: str
    summary: str | None
    old_value: Any
    new_value: Any
    status: ApprovalStatus
    requested_by: int
    requested_at: datetime
    decided_by: int | None = None
    decided_at: datetime | None = None
    decision_notes: str | None = None

    @property
    def action(self) -> str | None:
        if isinstance(self.new_value, Mapping):
            return self.new_value.get("_action")
        return None

    @property
    def is_new_entity(self) -> bool:
        return self.entity_id == NEW_ENTITY_ID


# =========================================================================
# Tagged payload variants
# =========================================================================


@dataclass(frozen=True)
class SavePayload:
    """``create`` / ``update`` of a BOM: the full normalised form input."""

    action: PayloadAction
    input: Mapping[str, Any]
    bom_id: int | None = None
    schema_version: int = SCHEMA_VERSION


@dataclass(frozen=True)
class ApproveDraftPayload:
    bom_id: int
    snapshot: Mapping[str, Any]
    schema_version: int = SCHEMA_VERSION


@dataclass(frozen=True)
class CreateVersionPayload:
    source_bom_id: int | None
    schema_version: int = SCHEMA_VERSION


@dataclass(frozen=True)
class EntityChangePayload:
    """Master-data row change: column values plus metadata keys."""

    action: PayloadAction
    values: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class UnknownPayload:
    action: str | None
    raw: Any


ApprovalPayload = Union[
    SavePayload,
    ApproveDraftPayload,
    CreateVersionPayload,
    EntityChangePayload,
    UnknownPayload,
]


def _as_int(value: Any) -> int | None:
    if value is None or value == "" or value == NEW_ENTITY_ID:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_approval_payload(raw: Any, entity_id: str | None = None) -> ApprovalPayload:
    """
    Parse a stored ``new_value`` into its variant.

    A ``None`` payload is a delete request.  A mapping without ``_action``
    is an entity change whose action follows from ``entity_id`` ("NEW"
    creates, anything else updates).
    """
    if raw is None:
        return EntityChangePayload(PayloadAction.DELETE, {})
    if not isinstance(raw, Mapping):
        return UnknownPayload(None, raw)

    tag = raw.get("_action")
    schema_version = int(raw.get("schema_version") or SCHEMA_VERSION)

    if tag is None:
        action = PayloadAction.CREATE if entity_id in (None, NEW_ENTITY_ID) else PayloadAction.UPDATE
        return EntityChangePayload(action, dict(raw))

    try:
        action = PayloadAction(str(tag))
    except ValueError:
        return UnknownPayload(str(tag), raw)

    if action in (PayloadAction.CREATE, PayloadAction.UPDATE) and isinstance(raw.get("input"), Mapping):
        return SavePayload(
            action=action,
            input=raw["input"],
            bom_id=_as_int(raw.get("bom_id")),
            schema_version=schema_version,
        )
    if action == PayloadAction.APPROVE_DRAFT:
        bom_id = _as_int(raw.get("bom_id")) or _as_int(entity_id)
        if bom_id is None:
            return UnknownPayload(action.value, raw)
        return ApproveDraftPayload(bom_id, raw.get("snapshot") or {}, schema_version)
    if action == PayloadAction.CREATE_VERSION_FROM:
        return CreateVersionPayload(
            _as_int(raw.get("source_bom_id")) or _as_int(entity_id),
            schema_version,
        )
    return EntityChangePayload(action, dict(raw))


# =========================================================================
# Events
# =========================================================================


@dataclass(frozen=True)
class EnqueuedEvent:
    """Published on ``approval.enqueued`` after the request is committed."""

    request_id: int
    branch_id: int
    request_type: str
    entity_type: str
    entity_id: str
    summary: str | None
    requested_by: int
    old_value: Any = None
    new_value: Any = None


@dataclass(frozen=True)
class DecisionEvent:
    """Published on ``approval.decided``; delivered to the requester's streams."""

    status: ApprovalStatus
    request_id: int
    requested_by: int
    summary: str
    link: str
    message: str
    sticky: bool = True

    def to_payload(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "requestId": self.request_id,
            "summary": self.summary,
            "link": self.link,
            "message": self.message,
            "sticky": self.sticky,
        }
