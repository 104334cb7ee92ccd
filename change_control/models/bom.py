"""
Module: change_control.models.bom
Responsibility: ORM persistence for BOM headers, their four child sections
    and the per-entry change log.

Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - ux_bom_header_single_draft: at most one DRAFT per (item_id, level).
      Partial unique index on both PostgreSQL and SQLite.
    - uq_bom_header_version: version_no unique per (item_id, level).
    - bom_no globally unique.
    - output_qty > 0, version_no >= 1, level/status domains.
    - Child rows cascade on header delete.

Failure modes:
    - IntegrityError naming ux_bom_header_single_draft on a concurrent
      second draft.  services/bom_service.py maps it to DRAFT_EXISTS.

Notes:
    Child rows are replaced wholesale on every save, so their ids are not
    stable across saves.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    CheckConstraint,
    ForeignKey,
    Index,
    Numeric,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from change_control.db.base import Base, IdentityInteger, JSONDocument

SINGLE_DRAFT_INDEX = "ux_bom_header_single_draft"
VERSION_CONSTRAINT = "uq_bom_header_version"


class BomHeader(Base):
    __tablename__ = "bom_header"

    __table_args__ = (
        Index(
            SINGLE_DRAFT_INDEX,
            "item_id", "level",
            unique=True,
            postgresql_where=text("status = 'DRAFT'"),
            sqlite_where=text("status = 'DRAFT'"),
        ),
        UniqueConstraint("item_id", "level", "version_no", name=VERSION_CONSTRAINT),
        CheckConstraint("level IN ('FINISHED', 'SEMI_FINISHED')", name="ck_bom_header_level"),
        CheckConstraint(
            "status IN ('DRAFT', 'PENDING', 'APPROVED', 'REJECTED')",
            name="ck_bom_header_status",
        ),
        CheckConstraint("output_qty > 0", name="ck_bom_header_output_qty"),
        CheckConstraint("version_no >= 1", name="ck_bom_header_version_no"),
        Index("ix_bom_header_item_status", "item_id", "level", "status"),
    )

    bom_no: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    item_id: Mapped[int] = mapped_column(IdentityInteger, ForeignKey("items.id"), nullable=False)
    level: Mapped[str] = mapped_column(String(20), nullable=False)
    output_qty: Mapped[Decimal] = mapped_column(Numeric(18, 3), nullable=False)
    output_uom_id: Mapped[int | None] = mapped_column(IdentityInteger, ForeignKey("uom.id"))
    status: Mapped[str] = mapped_column(String(20), default="DRAFT", nullable=False)
    version_no: Mapped[int] = mapped_column(default=1, nullable=False)
    created_by: Mapped[int | None] = mapped_column(IdentityInteger, ForeignKey("users.id"))
    created_at: Mapped[datetime | None]
    updated_by: Mapped[int | None] = mapped_column(IdentityInteger, ForeignKey("users.id"))
    updated_at: Mapped[datetime | None]
    approved_by: Mapped[int | None] = mapped_column(IdentityInteger, ForeignKey("users.id"))
    approved_at: Mapped[datetime | None]

    rm_lines: Mapped[list[BomRmLine]] = relationship(
        back_populates="bom", cascade="all, delete-orphan",
        passive_deletes=True, order_by="BomRmLine.id",
    )
    sfg_lines: Mapped[list[BomSfgLine]] = relationship(
        back_populates="bom", cascade="all, delete-orphan",
        passive_deletes=True, order_by="BomSfgLine.id",
        foreign_keys="BomSfgLine.bom_id",
    )
    labour_lines: Mapped[list[BomLabourLine]] = relationship(
        back_populates="bom", cascade="all, delete-orphan",
        passive_deletes=True, order_by="BomLabourLine.id",
    )
    variant_rules: Mapped[list[BomVariantRule]] = relationship(
        back_populates="bom", cascade="all, delete-orphan",
        passive_deletes=True, order_by="BomVariantRule.id",
    )

    def __repr__(self) -> str:
        return f"<BomHeader {self.id} {self.bom_no} v{self.version_no} status={self.status}>"

    def header_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "bom_no": self.bom_no,
            "item_id": self.item_id,
            "level": self.level,
            "output_qty": self.output_qty,
            "output_uom_id": self.output_uom_id,
            "status": self.status,
            "version_no": self.version_no,
            "created_by": self.created_by,
            "approved_by": self.approved_by,
        }


class BomRmLine(Base):
    __tablename__ = "bom_rm_line"

    __table_args__ = (
        CheckConstraint(
            "normal_loss_pct IS NULL OR (normal_loss_pct >= 0 AND normal_loss_pct <= 100)",
            name="ck_bom_rm_line_loss",
        ),
    )

    bom_id: Mapped[int] = mapped_column(
        IdentityInteger, ForeignKey("bom_header.id", ondelete="CASCADE"), nullable=False, index=True
    )
    rm_item_id: Mapped[int] = mapped_column(IdentityInteger, ForeignKey("items.id"), nullable=False)
    color_id: Mapped[int | None] = mapped_column(IdentityInteger, ForeignKey("colors.id"))
    size_id: Mapped[int | None] = mapped_column(IdentityInteger, ForeignKey("sizes.id"))
    dept_id: Mapped[int] = mapped_column(IdentityInteger, ForeignKey("departments.id"), nullable=False)
    qty: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)
    uom_id: Mapped[int | None] = mapped_column(IdentityInteger, ForeignKey("uom.id"))
    normal_loss_pct: Mapped[Decimal | None] = mapped_column(Numeric(6, 2))

    bom: Mapped[BomHeader] = relationship(back_populates="rm_lines")


class BomSfgLine(Base):
    __tablename__ = "bom_sfg_line"

    bom_id: Mapped[int] = mapped_column(
        IdentityInteger, ForeignKey("bom_header.id", ondelete="CASCADE"), nullable=False, index=True
    )
    fg_size_id: Mapped[int | None] = mapped_column(IdentityInteger, ForeignKey("sizes.id"))
    sfg_sku_id: Mapped[int] = mapped_column(IdentityInteger, ForeignKey("skus.id"), nullable=False)
    required_qty: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)
    uom_id: Mapped[int | None] = mapped_column(IdentityInteger, ForeignKey("uom.id"))
    ref_approved_bom_id: Mapped[int | None] = mapped_column(
        IdentityInteger, ForeignKey("bom_header.id")
    )

    bom: Mapped[BomHeader] = relationship(back_populates="sfg_lines", foreign_keys=[bom_id])


class BomLabourLine(Base):
    __tablename__ = "bom_labour_line"

    __table_args__ = (
        CheckConstraint("size_scope IN ('ALL', 'SPECIFIC')", name="ck_bom_labour_line_scope"),
        CheckConstraint("rate_type IN ('PER_DOZEN', 'PER_PAIR')", name="ck_bom_labour_line_rate_type"),
    )

    bom_id: Mapped[int] = mapped_column(
        IdentityInteger, ForeignKey("bom_header.id", ondelete="CASCADE"), nullable=False, index=True
    )
    size_scope: Mapped[str] = mapped_column(String(10), default="ALL", nullable=False)
    size_id: Mapped[int | None] = mapped_column(IdentityInteger, ForeignKey("sizes.id"))
    dept_id: Mapped[int] = mapped_column(IdentityInteger, ForeignKey("departments.id"), nullable=False)
    labour_id: Mapped[int] = mapped_column(IdentityInteger, ForeignKey("labours.id"), nullable=False)
    rate_type: Mapped[str] = mapped_column(String(12), default="PER_PAIR", nullable=False)
    rate_value: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)

    bom: Mapped[BomHeader] = relationship(back_populates="labour_lines")


class BomVariantRule(Base):
    __tablename__ = "bom_variant_rule"

    __table_args__ = (
        CheckConstraint(
            "action_type IN ('ADD_RM', 'REMOVE_RM', 'REPLACE_RM', 'ADJUST_QTY', 'CHANGE_LOSS')",
            name="ck_bom_variant_rule_action",
        ),
    )

    bom_id: Mapped[int] = mapped_column(
        IdentityInteger, ForeignKey("bom_header.id", ondelete="CASCADE"), nullable=False, index=True
    )
    size_scope: Mapped[str] = mapped_column(String(10), default="ALL", nullable=False)
    size_id: Mapped[int | None] = mapped_column(IdentityInteger, ForeignKey("sizes.id"))
    packing_scope: Mapped[str] = mapped_column(String(10), default="ALL", nullable=False)
    packing_type_id: Mapped[int | None] = mapped_column(IdentityInteger, ForeignKey("packing_types.id"))
    color_scope: Mapped[str] = mapped_column(String(10), default="ALL", nullable=False)
    color_id: Mapped[int | None] = mapped_column(IdentityInteger, ForeignKey("colors.id"))
    action_type: Mapped[str] = mapped_column(String(20), nullable=False)
    material_scope: Mapped[str] = mapped_column(String(10), default="ALL", nullable=False)
    target_rm_item_id: Mapped[int | None] = mapped_column(IdentityInteger, ForeignKey("items.id"))
    new_value: Mapped[dict[str, Any] | None] = mapped_column(JSONDocument)

    bom: Mapped[BomHeader] = relationship(back_populates="variant_rules")


class BomChangeLog(Base):
    """Append-only per-entry diff row; ``section='snapshot'`` holds the whole pair."""

    __tablename__ = "bom_change_log"

    __table_args__ = (
        CheckConstraint(
            "change_type IN ('ADDED', 'UPDATED', 'REMOVED')",
            name="ck_bom_change_log_change_type",
        ),
        Index("ix_bom_change_log_bom", "bom_id", "version_no"),
    )

    bom_id: Mapped[int] = mapped_column(
        IdentityInteger, ForeignKey("bom_header.id", ondelete="CASCADE"), nullable=False
    )
    version_no: Mapped[int] = mapped_column(nullable=False)
    request_id: Mapped[int | None] = mapped_column(IdentityInteger, ForeignKey("approval_request.id"))
    section: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_key: Mapped[str] = mapped_column(String(200), nullable=False)
    change_type: Mapped[str] = mapped_column(String(10), nullable=False)
    old_value: Mapped[Any | None] = mapped_column(JSONDocument)
    new_value: Mapped[Any | None] = mapped_column(JSONDocument)
    changed_by: Mapped[int | None] = mapped_column(IdentityInteger, ForeignKey("users.id"))
    changed_at: Mapped[datetime | None]
