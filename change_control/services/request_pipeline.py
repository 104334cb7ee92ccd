"""
RequestPipeline -- the canonical path of a write through the core.

Responsibility:
    Runs one write through the staged flow and owns its transaction:

        1. authenticate   PermissionService.load_actor
        2. branch         BranchPeriodGate.resolve_branch
        3. period         BranchPeriodGate.check_period (write methods only)
        4. gate           ApprovalGate.gate (when the request names a scope)
        5. execute        caller's callback, skipped when the write was queued
        6. commit
        7. publish        EventBus.dispatch_pending

Architecture position:
    Kernel > Services -- imperative shell.  The outer (HTTP) layer builds a
    ``WriteRequest`` and hands over an ``execute`` callback; everything
    else is decided here.

Invariants enforced:
    - Refusals (branch, period, permission) happen before any mutation.
    - Deferred events are published only after a successful commit and are
      discarded on rollback.
    - Every log line of a run carries the same correlation id.

Failure modes:
    - ChangeControlError subclasses propagate unchanged after rollback.
    - Any other exception is logged and re-raised as InternalError with
      the run's correlation id.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import date
from typing import Any
from uuid import uuid4

from sqlalchemy.orm import Session

from change_control.domain.actor import Actor
from change_control.domain.clock import Clock, SystemClock
from change_control.domain.permissions import PermissionResolver
from change_control.exceptions import ChangeControlError, InternalError
from change_control.logging_config import LogContext, get_logger
from change_control.services.approval_gate import ApprovalGate, EntityRef, GateResult, GateSettings
from change_control.services.branch_period_gate import BranchPeriodGate
from change_control.services.event_bus import EventBus
from change_control.services.permission_service import PermissionService

logger = get_logger("services.request_pipeline")

WRITE_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


@dataclass(frozen=True)
class GatedWrite:
    """The screen action a request performs, for the approval gate."""

    scope_key: str
    action: str
    entity: EntityRef
    summary: str | None = None
    before: Any = None
    after: Any = None


@dataclass(frozen=True)
class WriteRequest:
    user_id: int | None
    method: str = "POST"
    headers: Mapping[str, Any] = field(default_factory=dict)
    query: Mapping[str, Any] = field(default_factory=dict)
    body: Mapping[str, Any] = field(default_factory=dict)
    cookies: Mapping[str, Any] = field(default_factory=dict)
    gated: GatedWrite | None = None
    correlation_id: str | None = None

    @property
    def is_write(self) -> bool:
        return self.method.upper() in WRITE_METHODS


@dataclass
class RequestContext:
    """Mutable state threaded through the stages of one run."""

    request: WriteRequest
    session: Session
    correlation_id: str
    actor: Actor | None = None
    branch_id: int | None = None
    voucher_date: date | None = None
    gate_result: GateResult | None = None
    result: Any = None
    events_published: int = 0

    @property
    def queued(self) -> bool:
        return bool(self.gate_result and self.gate_result.queued)


Execute = Callable[[RequestContext], Any]


class RequestPipeline:
    def __init__(
        self,
        session: Session,
        resolver: PermissionResolver,
        bus: EventBus,
        gate_settings: GateSettings | None = None,
        clock: Clock | None = None,
        admin_role_name: str = "admin",
        auto_commit: bool = True,
    ):
        self._session = session
        self._bus = bus
        self._clock = clock or SystemClock()
        self._auto_commit = auto_commit
        self._permissions = PermissionService(session, admin_role_name, self._clock)
        self._branch_period = BranchPeriodGate(session, self._clock)
        self._gate = ApprovalGate(session, resolver, bus, gate_settings, self._clock)

    @property
    def gate(self) -> ApprovalGate:
        return self._gate

    def run(self, request: WriteRequest, execute: Execute) -> RequestContext:
        ctx = RequestContext(
            request=request,
            session=self._session,
            correlation_id=request.correlation_id or str(uuid4()),
        )
        with LogContext.bind(correlation_id=ctx.correlation_id):
            t0 = time.monotonic()
            try:
                self._authenticate(ctx)
                self._resolve_branch(ctx)
                with LogContext.bind(actor_id=ctx.actor.id, branch_id=ctx.branch_id):
                    self._check_period(ctx)
                    self._apply_gate(ctx)
                    if not ctx.queued:
                        ctx.result = execute(ctx)
                    if self._auto_commit:
                        self._session.commit()
            except ChangeControlError as exc:
                self._abort()
                logger.warning(
                    "request_refused",
                    extra={"error_code": exc.code, "error": str(exc), "method": request.method},
                )
                raise
            except Exception as exc:
                self._abort()
                logger.error(
                    "request_failed",
                    extra={"method": request.method, "error": str(exc)},
                    exc_info=True,
                )
                raise InternalError(ctx.correlation_id, type(exc).__name__) from exc

            ctx.events_published = self._bus.dispatch_pending() if self._auto_commit else 0
            logger.info(
                "request_completed",
                extra={
                    "method": request.method,
                    "queued": ctx.queued,
                    "request_id": ctx.gate_result.request_id if ctx.gate_result else None,
                    "events_published": ctx.events_published,
                    "duration_ms": round((time.monotonic() - t0) * 1000, 2),
                },
            )
            return ctx

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _authenticate(self, ctx: RequestContext) -> None:
        ctx.actor = self._permissions.load_actor(ctx.request.user_id)

    def _resolve_branch(self, ctx: RequestContext) -> None:
        req = ctx.request
        ctx.branch_id = self._branch_period.resolve_branch(
            ctx.actor, req.headers, req.query, req.body, req.cookies
        )

    def _check_period(self, ctx: RequestContext) -> None:
        if ctx.request.is_write:
            ctx.voucher_date = self._branch_period.check_period(ctx.actor, ctx.branch_id, ctx.request.body)

    def _apply_gate(self, ctx: RequestContext) -> None:
        gated = ctx.request.gated
        if gated is None or not ctx.request.is_write:
            return
        with LogContext.bind(scope_key=gated.scope_key):
            ctx.gate_result = self._gate.gate(
                ctx.actor,
                ctx.branch_id,
                gated.scope_key,
                gated.action,
                gated.entity,
                summary=gated.summary,
                before=gated.before,
                after=gated.after,
            )

    def _abort(self) -> None:
        if self._auto_commit:
            self._session.rollback()
        self._bus.discard_pending()
