"""
ActivityLogService -- best-effort activity trail for every transition.

Responsibility:
    Writes one ``activity_log`` row per submit, approve, reject and
    direct create/update/delete.  The ``context`` document always carries
    ``source`` and, where known, ``approval_request_id``, ``summary``,
    ``old_value`` and ``new_value`` (sanitised).

Architecture position:
    Kernel > Services.  Called by the approval gate, the decision service,
    the period gate and the BOM engine.

Invariants enforced:
    - Each insert runs inside its own SAVEPOINT.  A failed insert is rolled
      back to the savepoint, logged, and swallowed so that the surrounding
      business transaction is never failed by the audit path.

Failure modes:
    - None raised.  ``record()`` returns None when the insert failed.
"""

from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from change_control.domain.clock import Clock
from change_control.logging_config import get_logger
from change_control.models.activity_log import ACTIVITY_ACTIONS, ActivityLog
from change_control.services.base import BaseService
from change_control.utils.sanitize import DEFAULT_LIMITS, SanitizeLimits, sanitize_for_audit

logger = get_logger("services.activity_log")


@dataclass(frozen=True)
class ActivityEntry:
    id: int
    branch_id: int | None
    user_id: int | None
    entity_type: str
    entity_id: str | None
    action: str
    voucher_type_code: str | None
    context: dict[str, Any]


class ActivityLogService(BaseService):
    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        limits: SanitizeLimits = DEFAULT_LIMITS,
    ):
        super().__init__(session, clock)
        self._limits = limits

    def record(
        self,
        *,
        branch_id: int | None,
        user_id: int | None,
        entity_type: str,
        entity_id: Any,
        action: str,
        source: str,
        voucher_type_code: str | None = None,
        approval_request_id: int | None = None,
        summary: str | None = None,
        old_value: Any = None,
        new_value: Any = None,
        extra: dict[str, Any] | None = None,
    ) -> int | None:
        action = str(action).upper()
        if action not in ACTIVITY_ACTIONS:
            logger.warning(
                "activity_log_unknown_action",
                extra={"action": action, "entity_type": entity_type},
            )
            return None

        context: dict[str, Any] = {"source": source}
        if approval_request_id is not None:
            context["approval_request_id"] = approval_request_id
        if summary is not None:
            context["summary"] = summary
        if old_value is not None:
            context["old_value"] = old_value
        if new_value is not None:
            context["new_value"] = new_value
        if extra:
            context.update(extra)

        row = ActivityLog(
            branch_id=branch_id,
            user_id=user_id,
            entity_type=entity_type,
            entity_id=None if entity_id is None else str(entity_id),
            action=action,
            voucher_type_code=voucher_type_code,
            context=sanitize_for_audit(context, self._limits),
            created_at=self.clock.now(),
        )
        try:
            with self.session.begin_nested():
                self.session.add(row)
                self.session.flush()
        except SQLAlchemyError as exc:
            logger.error(
                "activity_log_write_failed",
                extra={
                    "entity_type": entity_type,
                    "entity_id": str(entity_id),
                    "action": action,
                    "error": str(exc),
                },
            )
            return None

        logger.debug(
            "activity_logged",
            extra={
                "activity_id": row.id,
                "entity_type": entity_type,
                "entity_id": row.entity_id,
                "action": action,
                "source": source,
            },
        )
        return row.id

    def list_for_entity(self, entity_type: str, entity_id: Any) -> list[ActivityEntry]:
        rows = self.session.execute(
            select(ActivityLog)
            .where(
                ActivityLog.entity_type == entity_type,
                ActivityLog.entity_id == str(entity_id),
            )
            .order_by(ActivityLog.id)
        ).scalars().all()
        return [
            ActivityEntry(
                id=r.id,
                branch_id=r.branch_id,
                user_id=r.user_id,
                entity_type=r.entity_type,
                entity_id=r.entity_id,
                action=r.action,
                voucher_type_code=r.voucher_type_code,
                context=dict(r.context or {}),
            )
            for r in rows
        ]
