"""
ApprovalDecisionService -- admin approve/reject of queued requests.

Responsibility:
    Decides a PENDING approval request.  Approve executes the change
    through ``ApprovalApplier``, then marks the request APPROVED, then
    writes the APPROVE activity row; all three land in the caller's
    transaction or not at all.  Reject rewinds a pending BOM
    ``approve_draft`` before marking the request REJECTED.

Architecture position:
    Kernel > Services.  The storage layer repeats the decider checks
    (check constraint ``decided_by <> requested_by`` and the
    ``decision_guard`` before_flush listener).

Invariants enforced:
    - Only admins decide (AdminOnlyError).
    - The decider is never the requester (SelfApprovalError).
    - Only PENDING requests are decided (ApprovalAlreadyDecidedError).
    - The request row is read FOR UPDATE, so two admins cannot decide
      the same request concurrently.

Failure modes:
    - ApprovalRequestNotFoundError for unknown ids.
    - Anything the applier raises; the request stays PENDING.

Audit relevance:
    APPROVE/REJECT activity rows carry the request id, summary and both
    payloads.  A DecisionEvent is deferred for the requester.
"""

from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from change_control.domain.actor import Actor
from change_control.domain.approval import (
    APPROVAL_TRANSITIONS,
    TOPIC_DECIDED,
    ApprovalDecision,
    ApprovalRequest,
    ApprovalStatus,
    DecisionEvent,
    RequestType,
)
from change_control.domain.bom import BOM_ENTITY_TYPE
from change_control.domain.clock import Clock
from change_control.exceptions import (
    AdminOnlyError,
    ApprovalAlreadyDecidedError,
    ApprovalRequestNotFoundError,
    SelfApprovalError,
)
from change_control.logging_config import get_logger
from change_control.models.approval import ApprovalRequestModel
from change_control.services.activity_log_service import ActivityLogService
from change_control.services.approval_applier import ApprovalApplier
from change_control.services.base import BaseService
from change_control.services.bom_service import BomService
from change_control.services.event_bus import EventBus
from change_control.utils.messages import Translator, translate

logger = get_logger("services.approval_decision")

SOURCE_DECISION = "approval-decision"


@dataclass(frozen=True)
class DecisionSettings:
    link_template: str = "/administration/approvals?status={status}&request_id={request_id}"


class ApprovalDecisionService(BaseService):
    def __init__(
        self,
        session: Session,
        bus: EventBus,
        clock: Clock | None = None,
        applier: ApprovalApplier | None = None,
        bom_service: BomService | None = None,
        activity: ActivityLogService | None = None,
        settings: DecisionSettings | None = None,
        translator: Translator | None = None,
    ):
        super().__init__(session, clock)
        self._bus = bus
        self._bom = bom_service or BomService(session, self.clock, translator=translator)
        self._applier = applier or ApprovalApplier(session, self.clock, bom_service=self._bom)
        self._activity = activity or ActivityLogService(session, self.clock)
        self._settings = settings or DecisionSettings()
        self._translator = translator

    @property
    def applier(self) -> ApprovalApplier:
        return self._applier

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_request(self, request_id: int) -> ApprovalRequest:
        row = self.session.get(ApprovalRequestModel, request_id)
        if row is None:
            raise ApprovalRequestNotFoundError(request_id)
        return row.to_dto()

    def list_requests(
        self,
        status: ApprovalStatus | str | None = ApprovalStatus.PENDING,
        branch_id: int | None = None,
        limit: int | None = None,
    ) -> list[ApprovalRequest]:
        stmt = select(ApprovalRequestModel).order_by(
            ApprovalRequestModel.requested_at.desc(), ApprovalRequestModel.id.desc()
        )
        if status:
            stmt = stmt.where(ApprovalRequestModel.status == ApprovalStatus(status).value)
        if branch_id is not None:
            stmt = stmt.where(ApprovalRequestModel.branch_id == branch_id)
        if limit:
            stmt = stmt.limit(limit)
        return [row.to_dto() for row in self.session.execute(stmt).scalars()]

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def _load_for_decision(self, request_id: int, decider: Actor, decision: ApprovalDecision) -> ApprovalRequestModel:
        if not decider.is_admin:
            logger.warning(
                "approval_decision_forbidden",
                extra={"request_id": request_id, "actor_id": decider.id, "decision": decision.value},
            )
            raise AdminOnlyError(decider.id, f"{decision.value} approval requests")

        row = self.session.execute(
            select(ApprovalRequestModel)
            .where(ApprovalRequestModel.id == request_id)
            .with_for_update()
        ).scalar_one_or_none()
        if row is None:
            raise ApprovalRequestNotFoundError(request_id)
        if row.requested_by == decider.id:
            logger.warning(
                "approval_self_decision_blocked",
                extra={"request_id": request_id, "actor_id": decider.id},
            )
            raise SelfApprovalError(request_id, decider.id)
        target = ApprovalStatus.APPROVED if decision == ApprovalDecision.APPROVE else ApprovalStatus.REJECTED
        if target not in APPROVAL_TRANSITIONS.get(ApprovalStatus(row.status), frozenset()):
            raise ApprovalAlreadyDecidedError(request_id, row.status)
        return row

    def approve(self, request_id: int, decider: Actor, notes: str | None = None) -> ApprovalRequest:
        row = self._load_for_decision(request_id, decider, ApprovalDecision.APPROVE)
        request = row.to_dto()

        self._applier.apply(request, decider.id)

        self._mark(row, ApprovalStatus.APPROVED, decider, notes)
        self._record(row, "APPROVE", decider)
        self._defer_event(row, ApprovalStatus.APPROVED)
        logger.info(
            "approval_request_approved",
            extra={
                "request_id": row.id,
                "request_type": row.request_type,
                "entity_type": row.entity_type,
                "entity_id": row.entity_id,
                "decided_by": decider.id,
            },
        )
        return row.to_dto()

    def reject(self, request_id: int, decider: Actor, notes: str | None = None) -> ApprovalRequest:
        row = self._load_for_decision(request_id, decider, ApprovalDecision.REJECT)

        rewound = False
        if row.entity_type == BOM_ENTITY_TYPE:
            rewound = self._bom.reset_pending_after_reject(row.to_dto())

        self._mark(row, ApprovalStatus.REJECTED, decider, notes)
        self._record(row, "REJECT", decider)
        self._defer_event(row, ApprovalStatus.REJECTED)
        logger.info(
            "approval_request_rejected",
            extra={
                "request_id": row.id,
                "entity_type": row.entity_type,
                "entity_id": row.entity_id,
                "decided_by": decider.id,
                "bom_rewound": rewound,
            },
        )
        return row.to_dto()

    def _mark(self, row: ApprovalRequestModel, status: ApprovalStatus, decider: Actor, notes: str | None) -> None:
        row.status = status.value
        row.decided_by = decider.id
        row.decided_at = self.clock.now()
        row.decision_notes = notes or None
        self.session.flush()

    def _record(self, row: ApprovalRequestModel, action: str, decider: Actor) -> None:
        self._activity.record(
            branch_id=row.branch_id,
            user_id=decider.id,
            entity_type=row.entity_type,
            entity_id=row.entity_id,
            action=action,
            source=SOURCE_DECISION,
            voucher_type_code=row.entity_type if row.request_type == RequestType.VOUCHER.value else None,
            approval_request_id=row.id,
            summary=row.summary,
            old_value=row.old_value,
            new_value=row.new_value,
        )

    def _defer_event(self, row: ApprovalRequestModel, status: ApprovalStatus) -> None:
        if status == ApprovalStatus.APPROVED:
            message = translate(self._translator, "approval_approved", "Your request was approved.")
        else:
            message = translate(self._translator, "approval_rejected", "Your request was rejected.")
        self._bus.defer(TOPIC_DECIDED, DecisionEvent(
            status=status,
            request_id=row.id,
            requested_by=row.requested_by,
            summary=row.summary or "",
            link=self._settings.link_template.format(status=status.value, request_id=row.id),
            message=message,
        ))
