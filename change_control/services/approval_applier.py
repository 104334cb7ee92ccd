"""
ApprovalApplier -- execute an approved request's change.

Responsibility:
    Dispatches an approved request by ``(request_type, entity_type)`` to the
    code that performs the change, inside the decision transaction:

        VOUCHER             -> voucher_header.status = APPROVED
        entity_type == BOM  -> BomService.apply_approved_change
        MASTER_DATA_CHANGE  -> the EntityApplier registered for entity_type

Architecture position:
    Kernel > Services.  Called only by ``ApprovalDecisionService.approve``,
    before the request row is marked APPROVED.  An exception here aborts the
    decision and leaves the request PENDING.

Extension:
    Entity services outside the kernel (commission and allowance rules,
    for example) plug in with ``register(entity_type, applier)``.

Failure modes:
    - ApprovalNotAppliedError when no applier accepted the payload.
    - Any error raised by the applier itself (DuplicateNameError,
      EntityNotFoundError, BomSnapshotMismatchError, ValidationError).
"""

from datetime import datetime
from typing import Protocol

from sqlalchemy.orm import Session

from change_control.domain.approval import ApprovalRequest, RequestType, UnknownPayload, parse_approval_payload
from change_control.domain.bom import BOM_ENTITY_TYPE, to_id
from change_control.domain.clock import Clock
from change_control.exceptions import ApprovalNotAppliedError, EntityNotFoundError
from change_control.logging_config import get_logger
from change_control.models.voucher import VoucherHeader
from change_control.services.base import BaseService
from change_control.services.bom_service import BomService
from change_control.services.master_data_appliers import (
    TABLE_ENTITY_SPECS,
    ItemApplier,
    SkuApplier,
    TableApplier,
)

logger = get_logger("services.approval_applier")


class EntityApplier(Protocol):
    def apply(self, session: Session, request: ApprovalRequest, decider_id: int, now: datetime) -> bool:
        ...


def default_appliers() -> dict[str, EntityApplier]:
    appliers: dict[str, EntityApplier] = {spec.entity_type: TableApplier(spec) for spec in TABLE_ENTITY_SPECS}
    appliers[ItemApplier.entity_type] = ItemApplier()
    appliers[SkuApplier.entity_type] = SkuApplier()
    return appliers


class ApprovalApplier(BaseService):
    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        bom_service: BomService | None = None,
        appliers: dict[str, EntityApplier] | None = None,
    ):
        super().__init__(session, clock)
        self._bom = bom_service or BomService(session, self.clock)
        self._appliers = dict(appliers) if appliers is not None else default_appliers()

    def register(self, entity_type: str, applier: EntityApplier) -> None:
        self._appliers[entity_type] = applier
        logger.debug("entity_applier_registered", extra={"entity_type": entity_type})

    def registered_types(self) -> list[str]:
        return sorted(self._appliers)

    def apply(self, request: ApprovalRequest, decider_id: int) -> bool:
        if request.request_type == RequestType.VOUCHER:
            self._approve_voucher(request, decider_id)
            return True

        if request.entity_type == BOM_ENTITY_TYPE:
            applied = self._bom.apply_approved_change(request, decider_id) is not None
        else:
            payload = parse_approval_payload(request.new_value, request.entity_id)
            if isinstance(payload, UnknownPayload):
                logger.warning(
                    "approval_payload_unknown",
                    extra={"request_id": request.id, "action": payload.action, "entity_type": request.entity_type},
                )
                applied = False
            else:
                applier = self._appliers.get(request.entity_type)
                applied = bool(applier and applier.apply(self.session, request, decider_id, self.clock.now()))

        if not applied:
            logger.warning(
                "approval_apply_failed",
                extra={
                    "request_id": request.id,
                    "request_type": request.request_type.value,
                    "entity_type": request.entity_type,
                },
            )
            raise ApprovalNotAppliedError(request.id, request.request_type.value, request.entity_type)
        return True

    def _approve_voucher(self, request: ApprovalRequest, decider_id: int) -> None:
        voucher_id = to_id(request.entity_id)
        voucher = self.session.get(VoucherHeader, voucher_id) if voucher_id else None
        if voucher is None:
            raise EntityNotFoundError("VOUCHER", request.entity_id)
        voucher.status = "APPROVED"
        voucher.approved_by = decider_id
        voucher.approved_at = self.clock.now()
        self.session.flush()
        logger.info(
            "voucher_approved",
            extra={"voucher_id": voucher_id, "voucher_type_code": voucher.voucher_type_code, "request_id": request.id},
        )
