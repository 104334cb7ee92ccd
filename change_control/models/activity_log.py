"""
Module: change_control.models.activity_log
Responsibility: ORM persistence for the append-only activity trail.

Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - action is one of CREATE, UPDATE, DELETE, SUBMIT, APPROVE, REJECT,
      CANCEL.
    - Rows are never updated or deleted by the kernel.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import CheckConstraint, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from change_control.db.base import Base, IdentityInteger, JSONDocument

ACTIVITY_ACTIONS: tuple[str, ...] = (
    "CREATE", "UPDATE", "DELETE", "SUBMIT", "APPROVE", "REJECT", "CANCEL",
)


class ActivityLog(Base):
    __tablename__ = "activity_log"

    __table_args__ = (
        CheckConstraint(
            "action IN ('CREATE', 'UPDATE', 'DELETE', 'SUBMIT', 'APPROVE', 'REJECT', 'CANCEL')",
            name="ck_activity_log_action",
        ),
        Index("ix_activity_log_entity", "entity_type", "entity_id"),
        Index("ix_activity_log_created", "created_at"),
    )

    branch_id: Mapped[int | None] = mapped_column(IdentityInteger)
    user_id: Mapped[int | None] = mapped_column(IdentityInteger)
    entity_type: Mapped[str] = mapped_column(String(60), nullable=False)
    entity_id: Mapped[str | None] = mapped_column(String(60))
    action: Mapped[str] = mapped_column(String(10), nullable=False)
    voucher_type_code: Mapped[str | None] = mapped_column(String(40))
    context: Mapped[dict[str, Any] | None] = mapped_column(JSONDocument)
    created_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<ActivityLog {self.id} {self.action} {self.entity_type}:{self.entity_id}>"
