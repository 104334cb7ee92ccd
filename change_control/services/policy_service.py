"""
PolicyService -- ``(entity_type, entity_key, action) -> requires_approval``.

Absence of a row means approval is not required.  ``save_settings`` backs
the approval-settings screen: it replaces every VOUCHER_TYPE and SCREEN
policy with one ``requires_approval=true`` row per checked
``"TYPE:key:action"`` field.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from change_control.domain.clock import Clock
from change_control.logging_config import get_logger
from change_control.models.approval import ApprovalPolicyModel
from change_control.services.base import BaseService

logger = get_logger("services.policy")

POLICY_SCREEN = "SCREEN"
POLICY_VOUCHER_TYPE = "VOUCHER_TYPE"
REPLACED_POLICY_TYPES: tuple[str, ...] = (POLICY_VOUCHER_TYPE, POLICY_SCREEN)


@dataclass(frozen=True)
class ApprovalPolicy:
    entity_type: str
    entity_key: str
    action: str
    requires_approval: bool
    updated_by: int | None = None
    updated_at: datetime | None = None


def parse_policy_keys(fields: Iterable[str]) -> list[tuple[str, str, str]]:
    """Pick well-formed ``TYPE:key:action`` keys; ignore everything else."""
    result: list[tuple[str, str, str]] = []
    seen: set[tuple[str, str, str]] = set()
    for key in fields:
        if ":" not in str(key):
            continue
        parts = str(key).split(":")
        if len(parts) != 3 or not all(p.strip() for p in parts):
            continue
        ident = (parts[0].strip(), parts[1].strip(), parts[2].strip())
        if ident not in seen:
            seen.add(ident)
            result.append(ident)
    return result


class PolicyService(BaseService):
    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session, clock)

    def requires_approval(self, entity_type: str, entity_key: str, action: str) -> bool:
        value = self.session.execute(
            select(ApprovalPolicyModel.requires_approval).where(
                ApprovalPolicyModel.entity_type == entity_type,
                ApprovalPolicyModel.entity_key == entity_key,
                ApprovalPolicyModel.action == action,
            )
        ).scalar_one_or_none()
        return value is True

    def set_policy(
        self,
        entity_type: str,
        entity_key: str,
        action: str,
        requires_approval: bool,
        actor_id: int | None = None,
    ) -> ApprovalPolicy:
        row = self.session.execute(
            select(ApprovalPolicyModel).where(
                ApprovalPolicyModel.entity_type == entity_type,
                ApprovalPolicyModel.entity_key == entity_key,
                ApprovalPolicyModel.action == action,
            )
        ).scalar_one_or_none()
        if row is None:
            row = ApprovalPolicyModel(entity_type=entity_type, entity_key=entity_key, action=action)
            self.session.add(row)
        row.requires_approval = bool(requires_approval)
        row.updated_by = actor_id
        row.updated_at = self.clock.now()
        self.session.flush()
        return self._to_dto(row)

    def save_settings(self, fields: Mapping[str, Any] | Iterable[str], actor_id: int | None = None) -> int:
        keys = parse_policy_keys(fields.keys() if isinstance(fields, Mapping) else fields)
        self.session.execute(
            delete(ApprovalPolicyModel).where(
                ApprovalPolicyModel.entity_type.in_(REPLACED_POLICY_TYPES)
            )
        )
        now = self.clock.now()
        for entity_type, entity_key, action in keys:
            self.session.add(ApprovalPolicyModel(
                entity_type=entity_type,
                entity_key=entity_key,
                action=action,
                requires_approval=True,
                updated_by=actor_id,
                updated_at=now,
            ))
        self.session.flush()
        logger.info(
            "approval_policies_saved",
            extra={"actor_id": actor_id, "policies": len(keys)},
        )
        return len(keys)

    def list_policies(self, entity_type: str | None = None) -> list[ApprovalPolicy]:
        stmt = select(ApprovalPolicyModel).order_by(
            ApprovalPolicyModel.entity_type,
            ApprovalPolicyModel.entity_key,
            ApprovalPolicyModel.action,
        )
        if entity_type is not None:
            stmt = stmt.where(ApprovalPolicyModel.entity_type == entity_type)
        return [self._to_dto(r) for r in self.session.execute(stmt).scalars()]

    @staticmethod
    def _to_dto(row: ApprovalPolicyModel) -> ApprovalPolicy:
        return ApprovalPolicy(
            entity_type=row.entity_type,
            entity_key=row.entity_key,
            action=row.action,
            requires_approval=row.requires_approval,
            updated_by=row.updated_by,
            updated_at=row.updated_at,
        )
