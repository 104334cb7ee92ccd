"""
PermissionService -- actor loading, override self-heal and permission saves.

Responsibility:
    Builds the immutable ``Actor`` snapshot for a request: user status,
    primary role, assigned branches and the merged permission map
    (``override ?? role ?? False`` per action).  Before merging it deletes
    override rows that restate the role base for every action.  Also owns
    the writes behind the role and user permission screens and the sync of
    the nav catalogue into the scope registry.

Architecture position:
    Kernel > Services.  The pure allow/deny decision lives in
    ``domain/permissions.py``; this module only does the I/O around it.

Invariants enforced:
    - Self-heal never changes effective access: a deleted row was equal to
      the base in every action it defined.
    - Override saves store ``None`` for actions equal to the role base and
      delete the row once every action is ``None``.

Failure modes:
    - AuthRequiredError: user id unknown.
    - InactiveActorError: user status is not ``active``.
    - EntityNotFoundError: role or scope id unknown on save.
"""

from collections.abc import Mapping
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from change_control.domain.actor import (
    Actor,
    OverrideFlags,
    PermissionFlags,
    is_admin_role,
    permission_key,
)
from change_control.domain.clock import Clock
from change_control.domain.nav import NavCatalogue
from change_control.exceptions import (
    AuthRequiredError,
    EntityNotFoundError,
    InactiveActorError,
)
from change_control.logging_config import get_logger
from change_control.models.access import (
    PermissionScope,
    RolePermission,
    RoleTemplate,
    User,
    UserBranch,
    UserPermissionOverride,
)
from change_control.services.base import BaseService

logger = get_logger("services.permission")


class PermissionService(BaseService):
    def __init__(
        self,
        session: Session,
        admin_role_name: str = "admin",
        clock: Clock | None = None,
    ):
        super().__init__(session, clock)
        self._admin_role_name = admin_role_name

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load_actor(self, user_id: int | None) -> Actor:
        if user_id is None:
            raise AuthRequiredError()
        user = self.session.get(User, user_id)
        if user is None:
            raise AuthRequiredError(user_id)
        status = (user.status or "").strip().lower()
        if status != "active":
            raise InactiveActorError(user_id, user.status)

        role = self.session.get(RoleTemplate, user.primary_role_id) if user.primary_role_id else None
        branch_ids = frozenset(
            self.session.execute(
                select(UserBranch.branch_id).where(UserBranch.user_id == user.id)
            ).scalars().all()
        )

        self.heal_overrides(user.id, role.id if role else None)

        base = self._role_flags(role.id) if role else {}
        overrides = self._override_flags(user.id)

        permissions: dict[str, PermissionFlags] = {}
        for key in set(base) | set(overrides):
            override = overrides.get(key)
            permissions[key] = override.merge(base.get(key)) if override else base[key]

        actor = Actor(
            id=user.id,
            username=user.username,
            is_active=True,
            role_id=role.id if role else None,
            role_name=role.name if role else None,
            branch_ids=branch_ids,
            permissions=permissions,
            is_admin=is_admin_role(role.name if role else None, self._admin_role_name),
            email=user.email,
        )
        logger.debug(
            "actor_loaded",
            extra={
                "actor_id": actor.id,
                "role_name": actor.role_name,
                "is_admin": actor.is_admin,
                "branches": len(branch_ids),
                "scopes": len(permissions),
            },
        )
        return actor

    def _role_flags(self, role_id: int) -> dict[str, PermissionFlags]:
        rows = self.session.execute(
            select(RolePermission, PermissionScope)
            .join(PermissionScope, PermissionScope.id == RolePermission.scope_id)
            .where(RolePermission.role_id == role_id)
        ).all()
        return {
            permission_key(scope.scope_type, scope.scope_key): row.to_flags()
            for row, scope in rows
        }

    def _override_flags(self, user_id: int) -> dict[str, OverrideFlags]:
        rows = self.session.execute(
            select(UserPermissionOverride, PermissionScope)
            .join(PermissionScope, PermissionScope.id == UserPermissionOverride.scope_id)
            .where(UserPermissionOverride.user_id == user_id)
        ).all()
        return {
            permission_key(scope.scope_type, scope.scope_key): row.to_flags()
            for row, scope in rows
        }

    # ------------------------------------------------------------------
    # Self-heal
    # ------------------------------------------------------------------

    def heal_overrides(self, user_id: int, role_id: int | None = None) -> list[int]:
        """Delete override rows equal to the role base; return their scope ids."""
        if role_id is None:
            user = self.session.get(User, user_id)
            role_id = user.primary_role_id if user else None

        base_by_scope: dict[int, PermissionFlags] = {}
        if role_id is not None:
            for row in self.session.execute(
                select(RolePermission).where(RolePermission.role_id == role_id)
            ).scalars():
                base_by_scope[row.scope_id] = row.to_flags()

        stale = [
            row for row in self.session.execute(
                select(UserPermissionOverride).where(UserPermissionOverride.user_id == user_id)
            ).scalars()
            if row.to_flags().is_stale_against(base_by_scope.get(row.scope_id))
        ]
        if not stale:
            return []

        scope_ids = sorted(row.scope_id for row in stale)
        self.session.execute(
            delete(UserPermissionOverride).where(
                UserPermissionOverride.user_id == user_id,
                UserPermissionOverride.scope_id.in_(scope_ids),
            )
        )
        self.session.flush()
        logger.info(
            "permission_overrides_healed",
            extra={"user_id": user_id, "scope_ids": scope_ids},
        )
        return scope_ids

    # ------------------------------------------------------------------
    # Saves
    # ------------------------------------------------------------------

    def _require_scope(self, scope_id: int) -> PermissionScope:
        scope = self.session.get(PermissionScope, scope_id)
        if scope is None:
            raise EntityNotFoundError("PermissionScope", scope_id)
        return scope

    def save_role_permissions(
        self,
        role_id: int,
        scope_id: int,
        values: Mapping[str, Any],
    ) -> PermissionFlags:
        if self.session.get(RoleTemplate, role_id) is None:
            raise EntityNotFoundError("RoleTemplate", role_id)
        self._require_scope(scope_id)

        flags = PermissionFlags.from_mapping(values)
        row = self.session.execute(
            select(RolePermission).where(
                RolePermission.role_id == role_id,
                RolePermission.scope_id == scope_id,
            )
        ).scalar_one_or_none()
        if row is None:
            row = RolePermission(role_id=role_id, scope_id=scope_id)
            self.session.add(row)
        for column, value in flags.to_dict().items():
            setattr(row, column, value)
        self.session.flush()

        logger.info(
            "role_permissions_saved",
            extra={"role_id": role_id, "scope_id": scope_id, **flags.to_dict()},
        )
        return flags

    def save_user_override(
        self,
        user_id: int,
        scope_id: int,
        values: Mapping[str, Any],
    ) -> OverrideFlags | None:
        """
        Store a tri-state override relative to the user's role base.

        Returns the stored flags, or None when nothing differs from the base
        and the row was removed.
        """
        user = self.session.get(User, user_id)
        if user is None:
            raise EntityNotFoundError("User", user_id)
        self._require_scope(scope_id)

        base = None
        if user.primary_role_id is not None:
            base_row = self.session.execute(
                select(RolePermission).where(
                    RolePermission.role_id == user.primary_role_id,
                    RolePermission.scope_id == scope_id,
                )
            ).scalar_one_or_none()
            base = base_row.to_flags() if base_row else None

        flags = OverrideFlags.from_mapping(values).relative_to(base)
        row = self.session.execute(
            select(UserPermissionOverride).where(
                UserPermissionOverride.user_id == user_id,
                UserPermissionOverride.scope_id == scope_id,
            )
        ).scalar_one_or_none()

        if flags.is_unset():
            if row is not None:
                self.session.delete(row)
                self.session.flush()
            logger.info("user_override_cleared", extra={"user_id": user_id, "scope_id": scope_id})
            return None

        if row is None:
            row = UserPermissionOverride(user_id=user_id, scope_id=scope_id)
            self.session.add(row)
        for column, value in flags.to_dict().items():
            setattr(row, column, value)
        self.session.flush()

        logger.info("user_override_saved", extra={"user_id": user_id, "scope_id": scope_id})
        return flags

    # ------------------------------------------------------------------
    # Scope registry
    # ------------------------------------------------------------------

    def sync_scopes(self, catalogue: NavCatalogue) -> int:
        """Insert catalogue scopes missing from the registry; refresh module groups."""
        existing = {
            (s.scope_type, s.scope_key): s
            for s in self.session.execute(select(PermissionScope)).scalars()
        }
        inserted = 0
        for entry in catalogue.entries():
            row = existing.get((entry.scope_type.value, entry.scope_key))
            if row is None:
                self.session.add(PermissionScope(
                    scope_type=entry.scope_type.value,
                    scope_key=entry.scope_key,
                    module_group=entry.module,
                    description=entry.label,
                ))
                inserted += 1
            elif row.module_group != entry.module:
                row.module_group = entry.module
        self.session.flush()
        logger.info("permission_scopes_synced", extra={"inserted": inserted, "total": len(catalogue)})
        return inserted

    def scope_id(self, scope_type: str, scope_key: str) -> int | None:
        return self.session.execute(
            select(PermissionScope.id).where(
                PermissionScope.scope_type == scope_type,
                PermissionScope.scope_key == scope_key,
            )
        ).scalar_one_or_none()
