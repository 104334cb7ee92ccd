"""
ApprovalGate -- direct apply, queue, or refuse.

Responsibility:
    Decides for every screen write whether the caller may apply the change
    now or must queue it for an admin, and persists the queued request.

Architecture position:
    Kernel > Services.  Called by the request pipeline after the branch and
    period gates.  Uses the pure ``PermissionResolver`` and the
    ``PolicyService``; writes through ``ActivityLogService``; defers the
    ``approval.enqueued`` event on the ``EventBus``.

Decision table (non-admin):

    allowed | policy | result
    --------+--------+-------------------------------------------
    yes     | no     | direct
    yes     | yes    | queued  (policy_requires_approval)
    no      | yes    | queued  (policy_requires_approval)
    no      | no     | queued  (permission_reroute), or
            |        | ForbiddenActionError when rerouting is off

Admins always bypass.  Permission reroute turns a would-be 403 into a
queued request on purpose; see DESIGN.md.

Invariants enforced:
    - ``new_value`` is stored verbatim.  It must carry everything the
      applier needs to replay the change without in-memory state.
    - A queued request always produces one SUBMIT activity row and one
      deferred ``approval.enqueued`` event.
"""

from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import Session

from change_control.domain.actor import Actor, ScopeType, normalize_action
from change_control.domain.approval import (
    NEW_ENTITY_ID,
    TOPIC_ENQUEUED,
    ApprovalStatus,
    EnqueuedEvent,
    GateReason,
    RequestType,
)
from change_control.domain.clock import Clock
from change_control.domain.permissions import PermissionResolver
from change_control.exceptions import ForbiddenActionError, ValidationDetail, ValidationError
from change_control.logging_config import get_logger
from change_control.models.approval import ApprovalRequestModel
from change_control.services.activity_log_service import ActivityLogService
from change_control.services.base import BaseService
from change_control.services.event_bus import EventBus
from change_control.services.policy_service import POLICY_SCREEN, POLICY_VOUCHER_TYPE, PolicyService

logger = get_logger("services.approval_gate")

SOURCE_SCREEN = "screen-approval"
SOURCE_GENERIC = "approval-required"


@dataclass(frozen=True)
class GateSettings:
    reroute_on_denied: bool = True


@dataclass(frozen=True)
class GateResult:
    queued: bool
    request_id: int | None = None
    reason: GateReason | None = None


@dataclass(frozen=True)
class EntityRef:
    """What a write touches: ``entity_type`` plus its id ("NEW" on create)."""

    entity_type: str
    entity_id: Any = NEW_ENTITY_ID


class ApprovalGate(BaseService):
    def __init__(
        self,
        session: Session,
        resolver: PermissionResolver,
        bus: EventBus,
        settings: GateSettings | None = None,
        clock: Clock | None = None,
        policies: PolicyService | None = None,
        activity: ActivityLogService | None = None,
    ):
        super().__init__(session, clock)
        self._resolver = resolver
        self._bus = bus
        self._settings = settings or GateSettings()
        self._policies = policies or PolicyService(session, self.clock)
        self._activity = activity or ActivityLogService(session, self.clock)

    def gate(
        self,
        actor: Actor,
        branch_id: int,
        scope_key: str,
        action: str,
        entity: EntityRef,
        summary: str | None = None,
        before: Any = None,
        after: Any = None,
    ) -> GateResult:
        action = normalize_action(action)
        if actor.is_admin:
            logger.debug(
                "approval_gate_admin_bypass",
                extra={"scope_key": scope_key, "action": action, "actor_id": actor.id},
            )
            return GateResult(False, reason=GateReason.ADMIN_BYPASS)

        allowed = self._resolver.screen_allows(actor, scope_key, action)
        required = self._policies.requires_approval(POLICY_SCREEN, scope_key, action)

        if not allowed and not required:
            if not self._settings.reroute_on_denied:
                logger.warning(
                    "approval_gate_denied",
                    extra={"scope_key": scope_key, "action": action, "actor_id": actor.id},
                )
                raise ForbiddenActionError(ScopeType.SCREEN.value, scope_key, action)
            reason = GateReason.PERMISSION_REROUTE
        elif required:
            reason = GateReason.POLICY_REQUIRES_APPROVAL
        else:
            return GateResult(False, reason=GateReason.DIRECT)

        request_id = self._enqueue(
            actor=actor,
            branch_id=branch_id,
            request_type=RequestType.MASTER_DATA_CHANGE,
            entity_type=entity.entity_type,
            entity_id=entity.entity_id,
            summary=summary,
            old_value=before,
            new_value=after,
            source=SOURCE_SCREEN,
            reason=reason,
        )
        logger.info(
            "approval_request_queued",
            extra={
                "request_id": request_id,
                "scope_key": scope_key,
                "action": action,
                "entity_type": entity.entity_type,
                "reason": reason.value,
            },
        )
        return GateResult(True, request_id, reason)

    def enqueue(
        self,
        actor: Actor,
        branch_id: int | None,
        request_type: RequestType | str,
        entity_type: str | None,
        entity_id: Any,
        summary: str | None = None,
        old_value: Any = None,
        new_value: Any = None,
    ) -> int:
        """Generic queue entry used by vouchers, BOM workflows and callers
        that already decided approval is required."""
        details: list[ValidationDetail] = []
        if not branch_id:
            details.append(ValidationDetail("branch_id", "Branch is required."))
        try:
            request_type = RequestType(request_type)
        except ValueError:
            details.append(ValidationDetail("request_type", "Invalid request type."))
        if not entity_type:
            details.append(ValidationDetail("entity_type", "Entity type is required."))
        if entity_id is None or str(entity_id).strip() == "":
            details.append(ValidationDetail("entity_id", "Entity id is required."))
        if details:
            raise ValidationError("Approval request is incomplete.", details)

        request_id = self._enqueue(
            actor=actor,
            branch_id=branch_id,
            request_type=request_type,
            entity_type=entity_type,
            entity_id=entity_id,
            summary=summary,
            old_value=old_value,
            new_value=new_value,
            source=SOURCE_GENERIC,
            reason=None,
        )
        logger.info(
            "approval_request_queued",
            extra={
                "request_id": request_id,
                "request_type": request_type.value,
                "entity_type": entity_type,
                "entity_id": str(entity_id),
            },
        )
        return request_id

    def gate_voucher(
        self,
        actor: Actor,
        branch_id: int,
        voucher_type_code: str,
        action: str,
        voucher_id: Any,
        summary: str | None = None,
        old_value: Any = None,
        new_value: Any = None,
    ) -> GateResult:
        if actor.is_admin:
            return GateResult(False, reason=GateReason.ADMIN_BYPASS)
        if not self._policies.requires_approval(POLICY_VOUCHER_TYPE, voucher_type_code, action):
            return GateResult(False, reason=GateReason.DIRECT)
        request_id = self.enqueue(
            actor,
            branch_id,
            RequestType.VOUCHER,
            voucher_type_code,
            voucher_id,
            summary=summary,
            old_value=old_value,
            new_value=new_value,
        )
        return GateResult(True, request_id, GateReason.POLICY_REQUIRES_APPROVAL)

    def _enqueue(
        self,
        *,
        actor: Actor,
        branch_id: int,
        request_type: RequestType,
        entity_type: str,
        entity_id: Any,
        summary: str | None,
        old_value: Any,
        new_value: Any,
        source: str,
        reason: GateReason | None,
    ) -> int:
        entity_key = str(entity_id if entity_id not in (None, "") else NEW_ENTITY_ID)
        row = ApprovalRequestModel(
            branch_id=branch_id,
            request_type=request_type.value,
            entity_type=entity_type,
            entity_id=entity_key,
            summary=summary or None,
            old_value=old_value,
            new_value=new_value,
            status=ApprovalStatus.PENDING.value,
            requested_by=actor.id,
            requested_at=self.clock.now(),
        )
        self.session.add(row)
        self.session.flush()

        self._activity.record(
            branch_id=branch_id,
            user_id=actor.id,
            entity_type=entity_type,
            entity_id=entity_key,
            action="SUBMIT",
            source=source,
            voucher_type_code=entity_type if request_type == RequestType.VOUCHER else None,
            approval_request_id=row.id,
            summary=summary,
            old_value=old_value,
            new_value=new_value,
            extra={"reason": reason.value} if reason else None,
        )
        self._bus.defer(TOPIC_ENQUEUED, EnqueuedEvent(
            request_id=row.id,
            branch_id=branch_id,
            request_type=request_type.value,
            entity_type=entity_type,
            entity_id=entity_key,
            summary=summary,
            requested_by=actor.id,
            old_value=old_value,
            new_value=new_value,
        ))
        return row.id
