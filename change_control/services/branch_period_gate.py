"""
BranchPeriodGate -- active-branch resolution and period locks.

Responsibility:
    Resolves which branch a write acts on and refuses writes a non-admin
    may not make there: a branch outside the actor's assignment, or a
    ``voucher_date`` inside a LOCKED or FROZEN period.

Architecture position:
    Kernel > Services.  First two stages of the request pipeline; both run
    before any mutation.

Branch resolution order:
    ``x-branch-id`` header, query ``branch_id``, body ``branch_id``,
    cookie ``active_branch_id``, then the actor's first assigned branch.

Invariants enforced:
    - Admins bypass both checks.
    - A non-admin with no branches is refused outright.
    - A submitted ``branch_id`` (body or query) must also be assigned, even
      when a different active branch was resolved.
    - Period gate parity: a non-admin write dated inside a locked period
      is rejected; otherwise it proceeds.

Failure modes:
    - ForbiddenBranchError("No branches assigned" / "Branch not assigned")
    - ForbiddenPeriodError(branch, year, month, status)
    - ValidationError for an unparseable voucher date or bad period status.
"""

from collections.abc import Mapping
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from change_control.domain.actor import Actor
from change_control.domain.bom import to_id
from change_control.domain.clock import Clock
from change_control.exceptions import (
    AdminOnlyError,
    ForbiddenBranchError,
    ForbiddenPeriodError,
    ValidationError,
)
from change_control.logging_config import get_logger
from change_control.models.period import PeriodControl
from change_control.services.activity_log_service import ActivityLogService
from change_control.services.base import BaseService

logger = get_logger("services.branch_period_gate")

BRANCH_HEADER = "x-branch-id"
BRANCH_COOKIE = "active_branch_id"
DATE_FIELDS: tuple[str, ...] = ("voucher_date", "voucherDate", "date", "period_date")
PERIOD_STATUSES: tuple[str, ...] = ("OPEN", "LOCKED", "FROZEN")
CLOSED_STATUSES: frozenset[str] = frozenset({"LOCKED", "FROZEN"})


def _header(headers: Mapping[str, Any] | None, name: str) -> Any:
    for key, value in (headers or {}).items():
        if str(key).lower() == name:
            return value
    return None


def requested_branch_id(
    headers: Mapping[str, Any] | None = None,
    query: Mapping[str, Any] | None = None,
    body: Mapping[str, Any] | None = None,
    cookies: Mapping[str, Any] | None = None,
) -> int | None:
    for candidate in (
        _header(headers, BRANCH_HEADER),
        (query or {}).get("branch_id"),
        (body or {}).get("branch_id"),
        (cookies or {}).get(BRANCH_COOKIE),
    ):
        branch_id = to_id(candidate)
        if branch_id:
            return branch_id
    return None


def voucher_date_of(body: Mapping[str, Any] | None) -> Any:
    for key in DATE_FIELDS:
        value = (body or {}).get(key)
        if value not in (None, ""):
            return value
    return None


def parse_voucher_date(value: Any) -> date:
    """Calendar date of ``value``; aware datetimes are taken in UTC."""
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError.single("voucher_date", "Invalid voucher date") from None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc)
    return parsed.date()


class BranchPeriodGate(BaseService):
    def __init__(self, session: Session, clock: Clock | None = None, activity: ActivityLogService | None = None):
        super().__init__(session, clock)
        self._activity = activity or ActivityLogService(session, self.clock)

    def resolve_branch(
        self,
        actor: Actor,
        headers: Mapping[str, Any] | None = None,
        query: Mapping[str, Any] | None = None,
        body: Mapping[str, Any] | None = None,
        cookies: Mapping[str, Any] | None = None,
    ) -> int | None:
        requested = requested_branch_id(headers, query, body, cookies)
        assigned = sorted(actor.branch_ids)
        active = requested or (assigned[0] if assigned else None)
        if actor.is_admin:
            return active

        if not assigned:
            logger.warning("branch_gate_no_branches", extra={"actor_id": actor.id})
            raise ForbiddenBranchError(None, "No branches assigned")
        if active not in assigned:
            logger.warning("branch_gate_denied", extra={"actor_id": actor.id, "branch_id": active})
            raise ForbiddenBranchError(active, "Branch not assigned")
        submitted = to_id((body or {}).get("branch_id") or (query or {}).get("branch_id"))
        if submitted and submitted not in assigned:
            logger.warning("branch_gate_denied", extra={"actor_id": actor.id, "branch_id": submitted})
            raise ForbiddenBranchError(submitted, "Branch not assigned")
        return active

    def period_status(self, branch_id: int, year: int, month: int) -> str:
        status = self.session.execute(
            select(PeriodControl.status).where(
                PeriodControl.branch_id == branch_id,
                PeriodControl.year == year,
                PeriodControl.month == month,
            )
        ).scalar_one_or_none()
        return status or "OPEN"

    def is_period_locked(self, branch_id: int, on: date) -> bool:
        return self.period_status(branch_id, on.year, on.month) in CLOSED_STATUSES

    def check_period(self, actor: Actor, branch_id: int | None, body: Mapping[str, Any] | None) -> date | None:
        """Refuse a non-admin write dated inside a closed period; returns the date checked."""
        raw = voucher_date_of(body)
        if raw is None or not branch_id or actor.is_admin:
            return None
        on = parse_voucher_date(raw)
        status = self.period_status(branch_id, on.year, on.month)
        if status in CLOSED_STATUSES:
            logger.warning(
                "period_gate_denied",
                extra={
                    "actor_id": actor.id,
                    "branch_id": branch_id,
                    "year": on.year,
                    "month": on.month,
                    "status": status,
                },
            )
            raise ForbiddenPeriodError(branch_id, on.year, on.month, status)
        return on

    def set_period_status(self, actor: Actor, branch_id: int, year: int, month: int, status: str) -> str:
        if not actor.is_admin:
            raise AdminOnlyError(actor.id, "change period status")
        status = str(status or "").upper()
        if status not in PERIOD_STATUSES:
            raise ValidationError.single("status", "Invalid period status.")
        if not 1 <= int(month) <= 12:
            raise ValidationError.single("month", "Month must be between 1 and 12.")

        row = self.session.execute(
            select(PeriodControl)
            .where(
                PeriodControl.branch_id == branch_id,
                PeriodControl.year == year,
                PeriodControl.month == month,
            )
            .with_for_update()
        ).scalar_one_or_none()
        previous = row.status if row else "OPEN"
        if row is None:
            row = PeriodControl(branch_id=branch_id, year=year, month=month)
            self.session.add(row)
        row.status = status
        row.updated_by = actor.id
        row.updated_at = self.clock.now()
        self.session.flush()

        self._activity.record(
            branch_id=branch_id,
            user_id=actor.id,
            entity_type="PERIOD_CONTROL",
            entity_id=f"{year}-{int(month):02d}",
            action="UPDATE",
            source="period-control",
            old_value={"status": previous},
            new_value={"status": status},
        )
        logger.info(
            "period_status_changed",
            extra={"branch_id": branch_id, "year": year, "month": month, "from": previous, "to": status},
        )
        return status
