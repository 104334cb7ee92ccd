"""
Module: change_control.models.approval
Responsibility: ORM persistence for approval policies and approval requests.

Architecture position: Kernel > Models.  May import from db/ and domain/.

Invariants enforced:
    - Status and request type are limited by check constraints.
    - PENDING rows carry no decision columns; decided rows carry both
      decided_by and decided_at.
    - decided_by never equals requested_by.
    - One policy row per (entity_type, entity_key, action).

Failure modes:
    - IntegrityError on any of the checks above.
    - AdminOnlyError from db/decision_guard.py before flush.

Audit relevance:
    new_value is the canonical intent of a queued change; the applier
    replays it verbatim on approval.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from change_control.db.base import Base, IdentityInteger, JSONDocument

if TYPE_CHECKING:
    from change_control.domain.approval import ApprovalRequest


class ApprovalPolicyModel(Base):
    __tablename__ = "approval_policy"

    __table_args__ = (
        UniqueConstraint(
            "entity_type", "entity_key", "action",
            name="uq_approval_policy",
        ),
    )

    entity_type: Mapped[str] = mapped_column(String(40), nullable=False)
    entity_key: Mapped[str] = mapped_column(String(120), nullable=False)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    requires_approval: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    updated_by: Mapped[int | None] = mapped_column(IdentityInteger)
    updated_at: Mapped[datetime | None]


class ApprovalRequestModel(Base):
    """Persistent maker-checker request.

    Contract:
        PENDING is the only mutable status.  The decision service moves a
        row to APPROVED or REJECTED exactly once.
    """

    __tablename__ = "approval_request"

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING', 'APPROVED', 'REJECTED')",
            name="ck_approval_request_status",
        ),
        CheckConstraint(
            "request_type IN ('MASTER_DATA_CHANGE', 'VOUCHER', 'BOM')",
            name="ck_approval_request_type",
        ),
        CheckConstraint(
            "(status = 'PENDING' AND decided_by IS NULL AND decided_at IS NULL) OR "
            "(status <> 'PENDING' AND decided_by IS NOT NULL AND decided_at IS NOT NULL)",
            name="ck_approval_request_decision_columns",
        ),
        CheckConstraint(
            "decided_by IS NULL OR decided_by <> requested_by",
            name="ck_approval_request_maker_checker",
        ),
        Index("ix_approval_request_status", "status", "requested_at"),
        Index("ix_approval_request_entity", "entity_type", "entity_id", "status"),
    )

    branch_id: Mapped[int] = mapped_column(
        IdentityInteger, ForeignKey("branches.id"), nullable=False
    )
    request_type: Mapped[str] = mapped_column(String(30), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(60), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(60), nullable=False)
    summary: Mapped[str | None] = mapped_column(Text)
    old_value: Mapped[Any | None] = mapped_column(JSONDocument)
    new_value: Mapped[Any | None] = mapped_column(JSONDocument)
    status: Mapped[str] = mapped_column(String(20), default="PENDING", nullable=False)
    requested_by: Mapped[int] = mapped_column(
        IdentityInteger, ForeignKey("users.id"), nullable=False
    )
    requested_at: Mapped[datetime] = mapped_column(nullable=False)
    decided_by: Mapped[int | None] = mapped_column(IdentityInteger, ForeignKey("users.id"))
    decided_at: Mapped[datetime | None]
    decision_notes: Mapped[str | None] = mapped_column(Text)

    def __repr__(self) -> str:
        return (
            f"<ApprovalRequest {self.id} {self.request_type}/{self.entity_type}"
            f":{self.entity_id} status={self.status}>"
        )

    def to_dto(self) -> ApprovalRequest:
        from change_control.domain.approval import (
            ApprovalRequest as ApprovalRequestDTO,
            ApprovalStatus,
            RequestType,
        )

        return ApprovalRequestDTO(
            id=self.id,
            branch_id=self.branch_id,
            request_type=RequestType(self.request_type),
            entity_type=self.entity_type,
            entity_id=self.entity_id,
            summary=self.summary,
            old_value=self.old_value,
            new_value=self.new_value,
            status=ApprovalStatus(self.status),
            requested_by=self.requested_by,
            requested_at=self.requested_at,
            decided_by=self.decided_by,
            decided_at=self.decided_at,
            decision_notes=self.decision_notes,
        )
