"""Approval payload variants and decision events.

Covers:
- parse_approval_payload for every ``_action`` tag
- Untagged mappings become entity changes keyed off entity_id
- Unknown tags and malformed payloads never raise
"""

import pytest

from change_control.domain.approval import (
    APPROVAL_TRANSITIONS,
    ApprovalStatus,
    ApproveDraftPayload,
    CreateVersionPayload,
    DecisionEvent,
    EntityChangePayload,
    PayloadAction,
    SavePayload,
    UnknownPayload,
    parse_approval_payload,
)


class TestParsePayload:
    def test_none_is_delete(self):
        payload = parse_approval_payload(None, "12")
        assert isinstance(payload, EntityChangePayload)
        assert payload.action == PayloadAction.DELETE

    @pytest.mark.parametrize("entity_id, expected", [
        ("NEW", PayloadAction.CREATE),
        (None, PayloadAction.CREATE),
        ("4", PayloadAction.UPDATE),
    ])
    def test_untagged_mapping(self, entity_id, expected):
        payload = parse_approval_payload({"name": "Kilogram"}, entity_id)
        assert isinstance(payload, EntityChangePayload)
        assert payload.action == expected
        assert payload.values == {"name": "Kilogram"}

    def test_bom_save(self):
        payload = parse_approval_payload(
            {"_action": "update", "bom_id": "9", "input": {"header": {}}, "schema_version": 1},
            "9",
        )
        assert isinstance(payload, SavePayload)
        assert payload.action == PayloadAction.UPDATE
        assert payload.bom_id == 9

    def test_bom_create_without_id(self):
        payload = parse_approval_payload({"_action": "create", "input": {}}, "NEW")
        assert isinstance(payload, SavePayload)
        assert payload.bom_id is None

    def test_approve_draft_falls_back_to_entity_id(self):
        payload = parse_approval_payload({"_action": "approve_draft", "snapshot": {"a": 1}}, "3")
        assert payload == ApproveDraftPayload(3, {"a": 1})

    def test_approve_draft_without_any_id_is_unknown(self):
        payload = parse_approval_payload({"_action": "approve_draft"}, "NEW")
        assert isinstance(payload, UnknownPayload)

    def test_create_version(self):
        payload = parse_approval_payload({"_action": "create_version_from", "source_bom_id": 5}, "5")
        assert payload == CreateVersionPayload(5)

    def test_toggle_is_entity_change(self):
        payload = parse_approval_payload({"_action": "toggle", "is_active": False}, "8")
        assert isinstance(payload, EntityChangePayload)
        assert payload.action == PayloadAction.TOGGLE

    def test_unknown_tag(self):
        payload = parse_approval_payload({"_action": "explode"}, "1")
        assert payload == UnknownPayload("explode", {"_action": "explode"})

    def test_non_mapping(self):
        assert isinstance(parse_approval_payload(["x"], "1"), UnknownPayload)


class TestLifecycle:
    def test_pending_is_only_open_state(self):
        assert APPROVAL_TRANSITIONS[ApprovalStatus.PENDING] == {
            ApprovalStatus.APPROVED,
            ApprovalStatus.REJECTED,
        }
        assert not APPROVAL_TRANSITIONS[ApprovalStatus.APPROVED]
        assert not APPROVAL_TRANSITIONS[ApprovalStatus.REJECTED]

    def test_decision_event_payload(self):
        event = DecisionEvent(
            ApprovalStatus.REJECTED, 4, 2, "BOM BOM-000001", "/approvals/4", "Rejected",
        )
        assert event.to_payload() == {
            "status": "REJECTED",
            "requestId": 4,
            "summary": "BOM BOM-000001",
            "link": "/approvals/4",
            "message": "Rejected",
            "sticky": True,
        }
