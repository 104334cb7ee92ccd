"""
Module: change_control.models.access
Responsibility: ORM persistence for branches, users, role templates, the
    permission scope registry, role permission rows and per-user overrides.

Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - One role row per (role, scope); one override row per (user, scope).
    - Role rows are two-state (NOT NULL booleans); override rows are
      tri-state (nullable booleans, NULL = inherit).
    - Scope identity is (scope_type, scope_key).
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from change_control.db.base import Base, IdentityInteger
from change_control.domain.actor import OverrideFlags, PermissionFlags


class Branch(Base):
    __tablename__ = "branches"

    code: Mapped[str | None] = mapped_column(String(40), unique=True)
    name: Mapped[str] = mapped_column(String(120), unique=True, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_by: Mapped[int | None] = mapped_column(IdentityInteger)
    created_at: Mapped[datetime | None] = mapped_column(server_default=func.now())
    updated_by: Mapped[int | None] = mapped_column(IdentityInteger)
    updated_at: Mapped[datetime | None]


class RoleTemplate(Base):
    __tablename__ = "role_templates"

    name: Mapped[str] = mapped_column(String(80), unique=True, nullable=False)
    description: Mapped[str | None] = mapped_column(String(255))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_by: Mapped[int | None] = mapped_column(IdentityInteger)
    created_at: Mapped[datetime | None] = mapped_column(server_default=func.now())
    updated_by: Mapped[int | None] = mapped_column(IdentityInteger)
    updated_at: Mapped[datetime | None]


class User(Base):
    __tablename__ = "users"

    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'inactive', 'locked')",
            name="ck_users_status",
        ),
    )

    username: Mapped[str] = mapped_column(String(80), unique=True, nullable=False)
    email: Mapped[str | None] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(String(20), default="active", nullable=False)
    primary_role_id: Mapped[int | None] = mapped_column(
        IdentityInteger, ForeignKey("role_templates.id")
    )
    created_by: Mapped[int | None] = mapped_column(IdentityInteger)
    created_at: Mapped[datetime | None] = mapped_column(server_default=func.now())
    updated_by: Mapped[int | None] = mapped_column(IdentityInteger)
    updated_at: Mapped[datetime | None]

    def __repr__(self) -> str:
        return f"<User {self.id} {self.username} status={self.status}>"


class UserBranch(Base):
    __tablename__ = "user_branch"

    __table_args__ = (
        UniqueConstraint("user_id", "branch_id", name="uq_user_branch"),
    )

    user_id: Mapped[int] = mapped_column(
        IdentityInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    branch_id: Mapped[int] = mapped_column(
        IdentityInteger, ForeignKey("branches.id", ondelete="CASCADE"), nullable=False
    )


class PermissionScope(Base):
    """Catalogue entry ``(scope_type, scope_key, module_group)``."""

    __tablename__ = "permission_scope_registry"

    __table_args__ = (
        UniqueConstraint("scope_type", "scope_key", name="uq_permission_scope"),
        CheckConstraint(
            "scope_type IN ('MODULE', 'SCREEN', 'VOUCHER', 'REPORT')",
            name="ck_permission_scope_type",
        ),
    )

    scope_type: Mapped[str] = mapped_column(String(20), nullable=False)
    scope_key: Mapped[str] = mapped_column(String(120), nullable=False)
    module_group: Mapped[str | None] = mapped_column(String(80))
    description: Mapped[str | None] = mapped_column(String(255))


class _RoleFlagColumns:
    can_navigate: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    can_view: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    can_create: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    can_edit: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    can_delete: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    can_hard_delete: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    can_print: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    can_approve: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class _OverrideFlagColumns:
    can_navigate: Mapped[bool | None] = mapped_column(Boolean)
    can_view: Mapped[bool | None] = mapped_column(Boolean)
    can_create: Mapped[bool | None] = mapped_column(Boolean)
    can_edit: Mapped[bool | None] = mapped_column(Boolean)
    can_delete: Mapped[bool | None] = mapped_column(Boolean)
    can_hard_delete: Mapped[bool | None] = mapped_column(Boolean)
    can_print: Mapped[bool | None] = mapped_column(Boolean)
    can_approve: Mapped[bool | None] = mapped_column(Boolean)


class RolePermission(_RoleFlagColumns, Base):
    __tablename__ = "role_permissions"

    __table_args__ = (
        UniqueConstraint("role_id", "scope_id", name="uq_role_permissions"),
    )

    role_id: Mapped[int] = mapped_column(
        IdentityInteger, ForeignKey("role_templates.id", ondelete="CASCADE"), nullable=False
    )
    scope_id: Mapped[int] = mapped_column(
        IdentityInteger, ForeignKey("permission_scope_registry.id", ondelete="CASCADE"), nullable=False
    )

    def to_flags(self) -> PermissionFlags:
        return PermissionFlags.from_mapping(
            {k: getattr(self, k) for k in PermissionFlags().to_dict()}
        )


class UserPermissionOverride(_OverrideFlagColumns, Base):
    __tablename__ = "user_permissions_override"

    __table_args__ = (
        UniqueConstraint("user_id", "scope_id", name="uq_user_permissions_override"),
    )

    user_id: Mapped[int] = mapped_column(
        IdentityInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    scope_id: Mapped[int] = mapped_column(
        IdentityInteger, ForeignKey("permission_scope_registry.id", ondelete="CASCADE"), nullable=False
    )

    def to_flags(self) -> OverrideFlags:
        return OverrideFlags.from_mapping(
            {k: getattr(self, k) for k in OverrideFlags().to_dict()}
        )
