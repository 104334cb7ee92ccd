"""
Module: change_control.models.voucher
Responsibility: Minimal voucher header carrying the approval columns the
    applier writes.  Voucher bodies and ledger posting live outside the
    kernel.
"""

from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import CheckConstraint, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from change_control.db.base import Base, IdentityInteger


class VoucherHeader(Base):
    __tablename__ = "voucher_header"

    __table_args__ = (
        UniqueConstraint("branch_id", "voucher_type_code", "voucher_no", name="uq_voucher_header_no"),
        CheckConstraint(
            "status IN ('DRAFT', 'PENDING', 'APPROVED', 'REJECTED')",
            name="ck_voucher_header_status",
        ),
    )

    branch_id: Mapped[int] = mapped_column(IdentityInteger, ForeignKey("branches.id"), nullable=False)
    voucher_type_code: Mapped[str] = mapped_column(String(40), nullable=False)
    voucher_no: Mapped[int] = mapped_column(nullable=False)
    voucher_date: Mapped[date] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(String(10), default="PENDING", nullable=False)
    remarks: Mapped[str | None] = mapped_column(Text)
    created_by: Mapped[int | None] = mapped_column(IdentityInteger, ForeignKey("users.id"))
    created_at: Mapped[datetime | None]
    approved_by: Mapped[int | None] = mapped_column(IdentityInteger, ForeignKey("users.id"))
    approved_at: Mapped[datetime | None]
