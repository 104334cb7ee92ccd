"""
Module: change_control.models.period
Responsibility: Per-branch monthly period status (OPEN, LOCKED, FROZEN).

Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - One row per (branch_id, year, month); month in 1..12.
    - A missing row means OPEN.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import CheckConstraint, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from change_control.db.base import Base, IdentityInteger


class PeriodControl(Base):
    __tablename__ = "period_control"

    __table_args__ = (
        UniqueConstraint("branch_id", "year", "month", name="uq_period_control"),
        CheckConstraint("month BETWEEN 1 AND 12", name="ck_period_control_month"),
        CheckConstraint("status IN ('OPEN', 'LOCKED', 'FROZEN')", name="ck_period_control_status"),
    )

    branch_id: Mapped[int] = mapped_column(IdentityInteger, ForeignKey("branches.id"), nullable=False)
    year: Mapped[int] = mapped_column(nullable=False)
    month: Mapped[int] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(String(10), default="OPEN", nullable=False)
    updated_by: Mapped[int | None] = mapped_column(IdentityInteger)
    updated_at: Mapped[datetime | None]

    def __repr__(self) -> str:
        return f"<PeriodControl branch={self.branch_id} {self.year}-{self.month:02d} {self.status}>"
