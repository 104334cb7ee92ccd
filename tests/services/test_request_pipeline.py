"""RequestPipeline stage tests.

Covers:
- A successful write commits and then publishes deferred events
- A queued write skips execute
- Refusals roll back and discard deferred events
- Unexpected exceptions surface as InternalError with the correlation id
- Locked periods refuse dated writes before execute runs
- auto_commit=False leaves commit and publish to the caller
"""

import pytest
from sqlalchemy import select

from change_control.domain.approval import TOPIC_ENQUEUED
from change_control.exceptions import (
    AuthRequiredError,
    ForbiddenBranchError,
    ForbiddenPeriodError,
    InternalError,
    ValidationError,
)
from change_control.models.master_data import Uom
from change_control.services.approval_gate import EntityRef, GateSettings
from change_control.services.request_pipeline import GatedWrite, RequestPipeline, WriteRequest

UNITS = "master_data.basic_info.units"


@pytest.fixture
def pipeline(session, resolver, bus, deterministic_clock):
    return RequestPipeline(session, resolver, bus, GateSettings(reroute_on_denied=True), deterministic_clock)


def add_uom(name):
    def execute(ctx):
        uom = Uom(name=name)
        ctx.session.add(uom)
        ctx.session.flush()
        return uom.id

    return execute


def uom_names(session):
    return session.execute(select(Uom.name)).scalars().all()


class TestSuccessfulRuns:
    def test_admin_write_executes_and_commits(self, session, pipeline, principals):
        ctx = pipeline.run(WriteRequest(principals.admin.id, correlation_id="req-1"), add_uom("Dozen"))
        assert ctx.correlation_id == "req-1"
        assert ctx.branch_id == principals.branch.id
        assert ctx.result is not None
        assert "Dozen" in uom_names(session)

    def test_queued_write_skips_execute_and_publishes(self, session, pipeline, bus, principals):
        seen = []
        bus.subscribe(TOPIC_ENQUEUED, seen.append)
        request = WriteRequest(
            principals.outsider.id,
            gated=GatedWrite(UNITS, "create", EntityRef("UOM"), summary="Create UOM", after={"name": "Gross"}),
        )

        ctx = pipeline.run(request, add_uom("Gross"))

        assert ctx.queued is True
        assert ctx.result is None
        assert "Gross" not in uom_names(session)
        assert ctx.events_published == 1
        assert [e.request_id for e in seen] == [ctx.gate_result.request_id]

    def test_read_is_not_gated(self, pipeline, principals):
        request = WriteRequest(
            principals.outsider.id,
            method="GET",
            gated=GatedWrite(UNITS, "create", EntityRef("UOM")),
        )
        ctx = pipeline.run(request, lambda ctx: "listing")
        assert ctx.gate_result is None
        assert ctx.result == "listing"


class TestRefusals:
    def test_unauthenticated(self, pipeline):
        with pytest.raises(AuthRequiredError):
            pipeline.run(WriteRequest(None), add_uom("Never"))

    def test_refusal_rolls_back_and_discards(self, session, pipeline, bus, principals, captured_logs):
        maker_id = principals.maker.id
        session.commit()

        def execute(ctx):
            add_uom("Half")(ctx)
            bus.defer(TOPIC_ENQUEUED, "stale")
            raise ValidationError("Please fix validation errors.")

        with pytest.raises(ValidationError):
            pipeline.run(WriteRequest(maker_id), execute)

        assert "Half" not in uom_names(session)
        assert bus.pending() == ()
        assert any(r["message"] == "request_refused" for r in captured_logs())

    def test_other_branch_refused_before_execute(self, session, pipeline, principals):
        calls = []
        request = WriteRequest(principals.maker.id, headers={"x-branch-id": str(principals.other_branch.id)})
        with pytest.raises(ForbiddenBranchError):
            pipeline.run(request, calls.append)
        assert calls == []

    def test_locked_period_refused(self, session, seed, pipeline, principals):
        seed.period(principals.branch, 2026, 3, "LOCKED")
        calls = []
        request = WriteRequest(principals.maker.id, body={"voucher_date": "2026-03-02"})
        with pytest.raises(ForbiddenPeriodError):
            pipeline.run(request, calls.append)
        assert calls == []

    def test_unexpected_error_wrapped(self, session, pipeline, principals, captured_logs):
        admin_id = principals.admin.id
        session.commit()

        def execute(ctx):
            raise KeyError("boom")

        with pytest.raises(InternalError) as exc:
            pipeline.run(WriteRequest(admin_id, correlation_id="req-9"), execute)
        assert exc.value.correlation_id == "req-9"
        assert exc.value.cause == "KeyError"
        assert isinstance(exc.value.__cause__, KeyError)
        failed = [r for r in captured_logs() if r["message"] == "request_failed"]
        assert failed and failed[0].get("correlation_id") == "req-9"


class TestManualCommit:
    def test_caller_owns_commit_and_publish(self, session, resolver, bus, deterministic_clock, principals):
        pipeline = RequestPipeline(session, resolver, bus, clock=deterministic_clock, auto_commit=False)
        seen = []
        bus.subscribe(TOPIC_ENQUEUED, seen.append)
        request = WriteRequest(
            principals.outsider.id,
            gated=GatedWrite(UNITS, "create", EntityRef("UOM"), after={"name": "Score"}),
        )

        ctx = pipeline.run(request, add_uom("Score"))

        assert ctx.queued is True
        assert ctx.events_published == 0
        assert seen == []
        assert len(bus.pending()) == 1
        session.commit()
        assert bus.dispatch_pending() == 1
        assert len(seen) == 1
