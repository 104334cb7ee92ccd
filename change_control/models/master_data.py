"""
Module: change_control.models.master_data
Responsibility: ORM persistence for the master-data entities that approved
    requests write into: basic-info lookups, accounts and parties with
    branch maps, labours, employees, labour rates, items, variants, SKUs,
    RM purchase rates and FG -> SFG usage links.

Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - Lookup names are unique per table (DUPLICATE_NAME on violation).
    - Item codes and SKU codes are globally unique.
    - item_type is one of RM, SFG, FG.
    - Child map rows cascade with their owner.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Numeric,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from change_control.db.base import Base, IdentityInteger

ITEM_TYPES: tuple[str, ...] = ("RM", "SFG", "FG")


class _AuditColumns:
    created_by: Mapped[int | None] = mapped_column(IdentityInteger)
    created_at: Mapped[datetime | None] = mapped_column(server_default=func.now())
    updated_by: Mapped[int | None] = mapped_column(IdentityInteger)
    updated_at: Mapped[datetime | None]


class _NamedLookup(_AuditColumns):
    code: Mapped[str | None] = mapped_column(String(40))
    name: Mapped[str] = mapped_column(String(120), unique=True, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


# =============================================================================
# Basic info
# =============================================================================


class Uom(_NamedLookup, Base):
    __tablename__ = "uom"


class Size(_NamedLookup, Base):
    __tablename__ = "sizes"


class Color(_NamedLookup, Base):
    __tablename__ = "colors"


class Grade(_NamedLookup, Base):
    __tablename__ = "grades"


class PackingType(_NamedLookup, Base):
    __tablename__ = "packing_types"


class City(_NamedLookup, Base):
    __tablename__ = "cities"


class ProductGroup(_NamedLookup, Base):
    __tablename__ = "product_groups"


class ProductSubgroup(_NamedLookup, Base):
    __tablename__ = "product_subgroups"

    group_id: Mapped[int | None] = mapped_column(IdentityInteger, ForeignKey("product_groups.id"))


class ProductType(_NamedLookup, Base):
    __tablename__ = "product_types"


class PartyGroup(_NamedLookup, Base):
    __tablename__ = "party_groups"


class AccountGroup(_NamedLookup, Base):
    __tablename__ = "account_groups"


class Department(_NamedLookup, Base):
    __tablename__ = "departments"

    is_production: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class UomConversion(_AuditColumns, Base):
    __tablename__ = "uom_conversions"

    __table_args__ = (
        UniqueConstraint("from_uom_id", "to_uom_id", name="uq_uom_conversions_pair"),
        CheckConstraint("factor > 0", name="ck_uom_conversions_factor"),
    )

    from_uom_id: Mapped[int] = mapped_column(IdentityInteger, ForeignKey("uom.id"), nullable=False)
    to_uom_id: Mapped[int] = mapped_column(IdentityInteger, ForeignKey("uom.id"), nullable=False)
    factor: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class _ItemTypeMap:
    item_type: Mapped[str] = mapped_column(String(3), nullable=False)


class SizeItemType(_ItemTypeMap, Base):
    __tablename__ = "size_item_types"

    __table_args__ = (UniqueConstraint("size_id", "item_type", name="uq_size_item_types"),)

    size_id: Mapped[int] = mapped_column(
        IdentityInteger, ForeignKey("sizes.id", ondelete="CASCADE"), nullable=False
    )


class ProductGroupItemType(_ItemTypeMap, Base):
    __tablename__ = "product_group_item_types"

    __table_args__ = (UniqueConstraint("group_id", "item_type", name="uq_product_group_item_types"),)

    group_id: Mapped[int] = mapped_column(
        IdentityInteger, ForeignKey("product_groups.id", ondelete="CASCADE"), nullable=False
    )


class ProductSubgroupItemType(_ItemTypeMap, Base):
    __tablename__ = "product_subgroup_item_types"

    __table_args__ = (
        UniqueConstraint("subgroup_id", "item_type", name="uq_product_subgroup_item_types"),
    )

    subgroup_id: Mapped[int] = mapped_column(
        IdentityInteger, ForeignKey("product_subgroups.id", ondelete="CASCADE"), nullable=False
    )


# =============================================================================
# Accounts, parties, people
# =============================================================================


class Account(_NamedLookup, Base):
    __tablename__ = "accounts"

    account_group_id: Mapped[int | None] = mapped_column(IdentityInteger, ForeignKey("account_groups.id"))


class AccountBranch(Base):
    __tablename__ = "account_branch"

    __table_args__ = (UniqueConstraint("account_id", "branch_id", name="uq_account_branch"),)

    account_id: Mapped[int] = mapped_column(
        IdentityInteger, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    branch_id: Mapped[int] = mapped_column(IdentityInteger, ForeignKey("branches.id"), nullable=False)


class Party(_NamedLookup, Base):
    __tablename__ = "parties"

    party_group_id: Mapped[int | None] = mapped_column(IdentityInteger, ForeignKey("party_groups.id"))
    city_id: Mapped[int | None] = mapped_column(IdentityInteger, ForeignKey("cities.id"))
    phone: Mapped[str | None] = mapped_column(String(40))


class PartyBranch(Base):
    __tablename__ = "party_branch"

    __table_args__ = (UniqueConstraint("party_id", "branch_id", name="uq_party_branch"),)

    party_id: Mapped[int] = mapped_column(
        IdentityInteger, ForeignKey("parties.id", ondelete="CASCADE"), nullable=False
    )
    branch_id: Mapped[int] = mapped_column(IdentityInteger, ForeignKey("branches.id"), nullable=False)


class Labour(_NamedLookup, Base):
    __tablename__ = "labours"

    dept_id: Mapped[int | None] = mapped_column(IdentityInteger, ForeignKey("departments.id"))


class LabourDepartment(Base):
    __tablename__ = "labour_department"

    __table_args__ = (UniqueConstraint("labour_id", "dept_id", name="uq_labour_department"),)

    labour_id: Mapped[int] = mapped_column(
        IdentityInteger, ForeignKey("labours.id", ondelete="CASCADE"), nullable=False
    )
    dept_id: Mapped[int] = mapped_column(IdentityInteger, ForeignKey("departments.id"), nullable=False)


class Employee(_NamedLookup, Base):
    __tablename__ = "employees"

    dept_id: Mapped[int | None] = mapped_column(IdentityInteger, ForeignKey("departments.id"))
    designation: Mapped[str | None] = mapped_column(String(80))


class LabourRate(_AuditColumns, Base):
    __tablename__ = "labour_rates"

    __table_args__ = (
        CheckConstraint("rate_type IN ('PER_DOZEN', 'PER_PAIR')", name="ck_labour_rates_rate_type"),
    )

    labour_id: Mapped[int | None] = mapped_column(IdentityInteger, ForeignKey("labours.id"))
    dept_id: Mapped[int | None] = mapped_column(IdentityInteger, ForeignKey("departments.id"))
    rate_type: Mapped[str] = mapped_column(String(12), default="PER_PAIR", nullable=False)
    rate_value: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


# =============================================================================
# Products
# =============================================================================


class Item(_AuditColumns, Base):
    __tablename__ = "items"

    __table_args__ = (
        CheckConstraint("item_type IN ('RM', 'SFG', 'FG')", name="ck_items_item_type"),
        UniqueConstraint("item_type", "name", name="uq_items_type_name"),
    )

    code: Mapped[str] = mapped_column(String(80), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(160), nullable=False)
    item_type: Mapped[str] = mapped_column(String(3), nullable=False)
    base_uom_id: Mapped[int | None] = mapped_column(IdentityInteger, ForeignKey("uom.id"))
    group_id: Mapped[int | None] = mapped_column(IdentityInteger, ForeignKey("product_groups.id"))
    subgroup_id: Mapped[int | None] = mapped_column(IdentityInteger, ForeignKey("product_subgroups.id"))
    product_type_id: Mapped[int | None] = mapped_column(IdentityInteger, ForeignKey("product_types.id"))
    uses_sfg: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    sfg_part_type: Mapped[str | None] = mapped_column(String(40))
    min_stock_level: Mapped[Decimal | None] = mapped_column(Numeric(18, 3))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<Item {self.id} {self.item_type} {self.code}>"


class ItemUsage(Base):
    """FG -> SFG link."""

    __tablename__ = "item_usage"

    __table_args__ = (UniqueConstraint("fg_item_id", "sfg_item_id", name="uq_item_usage"),)

    fg_item_id: Mapped[int] = mapped_column(
        IdentityInteger, ForeignKey("items.id", ondelete="CASCADE"), nullable=False
    )
    sfg_item_id: Mapped[int] = mapped_column(
        IdentityInteger, ForeignKey("items.id", ondelete="CASCADE"), nullable=False
    )


class RmPurchaseRate(Base):
    __tablename__ = "rm_purchase_rates"

    rm_item_id: Mapped[int] = mapped_column(
        IdentityInteger, ForeignKey("items.id", ondelete="CASCADE"), nullable=False, index=True
    )
    color_id: Mapped[int | None] = mapped_column(IdentityInteger, ForeignKey("colors.id"))
    size_id: Mapped[int | None] = mapped_column(IdentityInteger, ForeignKey("sizes.id"))
    purchase_rate: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)
    avg_purchase_rate: Mapped[Decimal | None] = mapped_column(Numeric(18, 4))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_by: Mapped[int | None] = mapped_column(IdentityInteger)
    created_at: Mapped[datetime | None] = mapped_column(server_default=func.now())


class Variant(_AuditColumns, Base):
    __tablename__ = "variants"

    item_id: Mapped[int] = mapped_column(IdentityInteger, ForeignKey("items.id"), nullable=False, index=True)
    size_id: Mapped[int | None] = mapped_column(IdentityInteger, ForeignKey("sizes.id"))
    grade_id: Mapped[int | None] = mapped_column(IdentityInteger, ForeignKey("grades.id"))
    color_id: Mapped[int | None] = mapped_column(IdentityInteger, ForeignKey("colors.id"))
    packing_type_id: Mapped[int | None] = mapped_column(IdentityInteger, ForeignKey("packing_types.id"))
    sale_rate: Mapped[Decimal | None] = mapped_column(Numeric(18, 4))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class Sku(_AuditColumns, Base):
    __tablename__ = "skus"

    variant_id: Mapped[int] = mapped_column(
        IdentityInteger, ForeignKey("variants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sku_code: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
