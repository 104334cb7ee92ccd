"""ApprovalGate ORM tests.

Covers:
- Admin bypass, direct apply, policy queueing, permission reroute
- Refusal when rerouting is switched off
- Queued requests store new_value verbatim, write one SUBMIT row and
  defer exactly one approval.enqueued event
- Generic enqueue validation and voucher gating
"""

import pytest
from sqlalchemy import select

from change_control.domain.approval import TOPIC_ENQUEUED, EnqueuedEvent, GateReason, RequestType
from change_control.exceptions import ForbiddenActionError, ValidationError
from change_control.models.activity_log import ActivityLog
from change_control.models.approval import ApprovalRequestModel
from change_control.services.approval_gate import ApprovalGate, EntityRef, GateSettings

SCREEN = "master_data.basic_info.units"
PAYLOAD = {"name": "Dozen", "code": "DZN", "_meta": {"note": "kept verbatim"}}


def _gate_units(gate, actor, branch_id, action="create", entity_id="NEW"):
    return gate.gate(
        actor,
        branch_id,
        SCREEN,
        action,
        EntityRef("UOM", entity_id),
        summary="Create UOM Dozen",
        after=PAYLOAD,
    )


class TestGateDecisions:
    def test_admin_bypass(self, gate, principals, load_actor, bus):
        result = _gate_units(gate, load_actor(principals.admin), principals.branch.id)
        assert result.queued is False
        assert result.reason == GateReason.ADMIN_BYPASS
        assert bus.pending() == ()

    def test_direct_when_allowed_without_policy(self, gate, principals, load_actor):
        result = gate.gate(
            load_actor(principals.maker),
            principals.branch.id,
            "master_data.bom",
            "create",
            EntityRef("BOM"),
        )
        assert result.queued is False
        assert result.reason == GateReason.DIRECT

    def test_policy_queues_allowed_write(self, gate, seed, principals, load_actor):
        seed.policy("SCREEN", "master_data.bom", "create")
        result = gate.gate(
            load_actor(principals.maker),
            principals.branch.id,
            "master_data.bom",
            "create",
            EntityRef("BOM"),
        )
        assert result.queued is True
        assert result.reason == GateReason.POLICY_REQUIRES_APPROVAL

    def test_denied_write_rerouted(self, gate, principals, load_actor):
        result = _gate_units(gate, load_actor(principals.outsider), principals.branch.id)
        assert result.queued is True
        assert result.reason == GateReason.PERMISSION_REROUTE

    def test_denied_write_refused_when_reroute_off(
        self, session, resolver, bus, deterministic_clock, principals, load_actor, captured_logs
    ):
        strict = ApprovalGate(session, resolver, bus, GateSettings(reroute_on_denied=False), deterministic_clock)
        with pytest.raises(ForbiddenActionError) as exc:
            _gate_units(strict, load_actor(principals.outsider), principals.branch.id)
        assert exc.value.scope_key == SCREEN
        assert exc.value.code == "FORBIDDEN_ACTION"
        assert session.execute(select(ApprovalRequestModel)).scalars().all() == []
        assert any(r["message"] == "approval_gate_denied" for r in captured_logs())


class TestQueuedRequest:
    def test_row_activity_and_event(self, session, gate, principals, load_actor, bus, deterministic_clock):
        actor = load_actor(principals.outsider)
        result = _gate_units(gate, actor, principals.branch.id)

        row = session.get(ApprovalRequestModel, result.request_id)
        assert row.status == "PENDING"
        assert row.request_type == "MASTER_DATA_CHANGE"
        assert row.entity_type == "UOM"
        assert row.entity_id == "NEW"
        assert row.new_value == PAYLOAD
        assert row.requested_by == actor.id
        assert row.requested_at.replace(tzinfo=None) == deterministic_clock.now().replace(tzinfo=None)

        submits = [
            a for a in session.execute(select(ActivityLog).order_by(ActivityLog.id)).scalars()
            if (a.context or {}).get("approval_request_id") == result.request_id
        ]
        assert [a.action for a in submits] == ["SUBMIT"]
        assert submits[0].context["source"] == "screen-approval"
        assert submits[0].context["reason"] == "permission_reroute"

        pending = bus.pending()
        assert len(pending) == 1
        topic, event = pending[0]
        assert topic == TOPIC_ENQUEUED
        assert isinstance(event, EnqueuedEvent)
        assert event.request_id == result.request_id
        assert event.new_value == PAYLOAD

    def test_nothing_published_before_dispatch(self, gate, principals, load_actor, bus):
        received = []
        bus.subscribe(TOPIC_ENQUEUED, received.append)
        _gate_units(gate, load_actor(principals.outsider), principals.branch.id)
        assert received == []
        assert bus.dispatch_pending() == 1
        assert len(received) == 1


class TestEnqueue:
    def test_missing_fields_collected(self, gate, principals, load_actor):
        with pytest.raises(ValidationError) as exc:
            gate.enqueue(load_actor(principals.maker), None, "BOGUS", "", "  ")
        fields = {d.field for d in exc.value.details}
        assert fields == {"branch_id", "request_type", "entity_type", "entity_id"}

    def test_generic_enqueue(self, session, gate, principals, load_actor):
        request_id = gate.enqueue(
            load_actor(principals.maker),
            principals.branch.id,
            RequestType.BOM,
            "BOM",
            12,
            summary="Approve BOM",
            new_value={"_action": "approve_draft", "bom_id": 12},
        )
        row = session.get(ApprovalRequestModel, request_id)
        assert row.entity_id == "12"
        assert row.request_type == "BOM"


class TestVoucherGate:
    def test_no_policy_is_direct(self, gate, principals, load_actor):
        result = gate.gate_voucher(
            load_actor(principals.maker), principals.branch.id, "CASH_VOUCHER", "create", "NEW",
        )
        assert result.queued is False

    def test_policy_queues_voucher(self, session, gate, seed, principals, load_actor):
        seed.policy("VOUCHER_TYPE", "CASH_VOUCHER", "create")
        result = gate.gate_voucher(
            load_actor(principals.maker), principals.branch.id, "CASH_VOUCHER", "create", 55,
            summary="Cash voucher 55",
        )
        row = session.get(ApprovalRequestModel, result.request_id)
        assert row.request_type == "VOUCHER"
        assert row.entity_type == "CASH_VOUCHER"

    def test_admin_bypasses_voucher_policy(self, gate, seed, principals, load_actor):
        seed.policy("VOUCHER_TYPE", "CASH_VOUCHER", "create")
        result = gate.gate_voucher(
            load_actor(principals.admin), principals.branch.id, "CASH_VOUCHER", "create", 55,
        )
        assert result.reason == GateReason.ADMIN_BYPASS
