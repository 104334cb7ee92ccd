"""Event bus, decision streams, admin notifications and audit sanitising.

Covers:
- Deferred events are published only on dispatch, in order
- Subscriber failures are logged, not raised
- DecisionEventHub per-user queues (last N), replay on register, ack
- Admin fan-out: recipient filtering, message body, failure isolation,
  delivery off the publishing thread
- Activity context sanitising (depth, length, secret keys), as properties
"""

import json
import threading
from decimal import Decimal

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from change_control.domain.approval import TOPIC_DECIDED, TOPIC_ENQUEUED, ApprovalStatus, DecisionEvent, EnqueuedEvent
from change_control.services.activity_log_service import ActivityLogService
from change_control.services.event_bus import DecisionEventHub, DecisionHubSettings, EventBus
from change_control.services.notification_service import (
    AdminNotificationService,
    LoggingMailer,
    is_deliverable_email,
)
from change_control.utils.sanitize import DEFAULT_LIMITS, DEFAULT_OMIT_KEYS, SanitizeLimits, sanitize_for_audit


def decision(request_id, user_id=5, status=ApprovalStatus.APPROVED):
    return DecisionEvent(status, request_id, user_id, f"Request {request_id}", f"/approvals/{request_id}", "done")


class RecordingStream:
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    def send(self, event_name, payload):
        if self.fail:
            raise ConnectionError("client went away")
        self.sent.append((event_name, payload["requestId"]))


# =============================================================================
# EventBus
# =============================================================================


class TestEventBus:
    def test_defer_then_dispatch_in_order(self):
        bus = EventBus()
        seen = []
        bus.subscribe("t", seen.append)
        bus.defer("t", 1)
        bus.defer("t", 2)
        assert seen == []
        assert bus.dispatch_pending() == 2
        assert seen == [1, 2]
        assert bus.pending() == ()

    def test_discard(self):
        bus = EventBus()
        seen = []
        bus.subscribe("t", seen.append)
        bus.defer("t", 1)
        assert bus.discard_pending() == 1
        assert bus.dispatch_pending() == 0
        assert seen == []

    def test_failing_subscriber_isolated(self, captured_logs):
        bus = EventBus()
        seen = []

        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe("t", broken)
        bus.subscribe("t", seen.append)
        assert bus.publish("t", "x") == 1
        assert seen == ["x"]
        assert any(r["message"] == "event_subscriber_failed" for r in captured_logs())

    def test_unsubscribe(self):
        bus = EventBus()
        seen = []
        bus.subscribe("t", seen.append)
        bus.unsubscribe("t", seen.append)
        bus.publish("t", 1)
        assert seen == []


# =============================================================================
# DecisionEventHub
# =============================================================================


class TestDecisionHub:
    def test_live_stream_receives_event(self):
        hub = DecisionEventHub()
        stream = RecordingStream()
        hub.register(5, stream)
        assert hub.publish(decision(1)) == 1
        assert stream.sent == [("approval_decision", 1)]

    def test_offline_queue_replayed_until_ack(self):
        hub = DecisionEventHub(DecisionHubSettings(queue_limit=2))
        for request_id in (1, 2, 3):
            hub.publish(decision(request_id))
        assert [p["requestId"] for p in hub.pending_for(5)] == [2, 3]

        first = RecordingStream()
        hub.register(5, first)
        assert [r for _, r in first.sent] == [2, 3]

        second = RecordingStream()
        hub.register(5, second)
        assert [r for _, r in second.sent] == [2, 3]

        assert hub.ack(5) == 2
        assert hub.pending_for(5) == []

    def test_failed_stream_dropped(self):
        hub = DecisionEventHub()
        hub.register(5, RecordingStream(fail=True))
        assert hub.publish(decision(1)) == 0
        assert hub.stream_count(5) == 0

    def test_only_requester_notified(self):
        hub = DecisionEventHub()
        other = RecordingStream()
        hub.register(6, other)
        hub.publish(decision(1, user_id=5))
        assert other.sent == []

    def test_attached_to_bus(self):
        bus = EventBus()
        hub = DecisionEventHub()
        hub.attach(bus)
        bus.defer(TOPIC_DECIDED, decision(9))
        bus.dispatch_pending()
        assert [p["requestId"] for p in hub.pending_for(5)] == [9]


# =============================================================================
# Admin notifications
# =============================================================================


def enqueued(requested_by):
    return EnqueuedEvent(
        request_id=11,
        branch_id=1,
        request_type="MASTER_DATA_CHANGE",
        entity_type="UOM",
        entity_id="NEW",
        summary="Create <UOM>",
        requested_by=requested_by,
        new_value={"name": "Dozen"},
    )


@pytest.fixture
def session_factory(session):
    return lambda: Session(bind=session.connection())


class TestAdminNotifications:
    @pytest.mark.parametrize("email, ok", [
        ("admin@factory.pk", True),
        ("admin@example.com", False),
        ("not-an-email", False),
        (None, False),
    ])
    def test_deliverable(self, email, ok):
        assert is_deliverable_email(email) is ok

    def test_admins_receive_message(self, seed, principals, session_factory):
        seed.user(seed.role("admin "), username="admin3", email="ops@example.com")
        mailer = LoggingMailer()
        service = AdminNotificationService(session_factory, mailer)
        assert service.notify(enqueued(principals.maker.id)) is True

        message = mailer.sent[0]
        assert message.to == ("admin@factory.pk", "admin2@factory.pk")
        assert message.subject == "ERP approval pending: UOM"
        assert "Requested By: maker" in message.text
        assert "Create &lt;UOM&gt;" in message.html

    def test_inactive_admin_skipped(self, seed, principals, session_factory):
        principals.admin2.status = "inactive"
        seed.session.flush()
        mailer = LoggingMailer()
        AdminNotificationService(session_factory, mailer).notify(enqueued(principals.maker.id))
        assert mailer.sent[0].to == ("admin@factory.pk",)

    def test_mailer_failure_is_swallowed(self, principals, session_factory, captured_logs):
        class BrokenMailer:
            def send(self, message):
                raise OSError("smtp down")

        service = AdminNotificationService(session_factory, BrokenMailer())
        assert service.notify(enqueued(principals.maker.id)) is False
        assert any(r["message"] == "admin_notification_failed" for r in captured_logs())

    def test_lookup_failure_is_swallowed(self):
        def factory():
            raise OperationalError("SELECT 1", {}, Exception("db down"))

        assert AdminNotificationService(factory).notify(enqueued(1)) is False

    def test_attached_to_bus(self, principals, session_factory):
        bus = EventBus()
        service = AdminNotificationService(session_factory)
        service.attach(bus)
        bus.publish(TOPIC_ENQUEUED, enqueued(principals.maker.id))
        service.shutdown(wait=True)
        assert len(service.mailer.sent) == 1

    def test_publish_does_not_wait_for_delivery(self, principals, session_factory):
        release = threading.Event()

        class SlowMailer(LoggingMailer):
            def send(self, message):
                release.wait(timeout=10)
                super().send(message)

        bus = EventBus()
        service = AdminNotificationService(session_factory, SlowMailer())
        service.attach(bus)
        assert bus.publish(TOPIC_ENQUEUED, enqueued(principals.maker.id)) == 1
        assert service.mailer.sent == []

        release.set()
        service.shutdown(wait=True)
        assert len(service.mailer.sent) == 1

    def test_notify_async_returns_outcome(self, principals, session_factory):
        service = AdminNotificationService(session_factory)
        try:
            assert service.notify_async(enqueued(principals.maker.id)).result(timeout=10) is True
        finally:
            service.shutdown()

    def test_worker_crash_is_logged(self, principals, session_factory, captured_logs, monkeypatch):
        service = AdminNotificationService(session_factory)
        monkeypatch.setattr(service, "build_message", lambda *a: 1 / 0)
        future = service.notify_async(enqueued(principals.maker.id))
        service.shutdown(wait=True)
        assert isinstance(future.exception(), ZeroDivisionError)
        assert any(r["message"] == "admin_notification_crashed" for r in captured_logs())

    def test_translator_failure_falls_back(self, principals, session_factory):
        def translator(key):
            raise KeyError(key)

        mailer = LoggingMailer()
        AdminNotificationService(session_factory, mailer, translate=translator).notify(enqueued(principals.maker.id))
        assert mailer.sent[0].subject.startswith("ERP approval pending")


# =============================================================================
# Audit sanitising
# =============================================================================


_keys = st.one_of(st.sampled_from(sorted(DEFAULT_OMIT_KEYS)), st.text(max_size=8))

payloads = st.recursive(
    st.none()
    | st.booleans()
    | st.integers()
    | st.text(max_size=450)
    | st.decimals(allow_nan=False, allow_infinity=False, places=3),
    lambda children: st.lists(children, max_size=45) | st.dictionaries(_keys, children, max_size=5),
    max_leaves=60,
)


def _assert_bounded(value, limits, depth=0):
    if depth > limits.max_depth:
        assert value is None or isinstance(value, bool)
        return
    if isinstance(value, dict):
        assert not set(value) & limits.omit_keys
        for item in value.values():
            _assert_bounded(item, limits, depth + 1)
    elif isinstance(value, list):
        assert len(value) <= limits.max_items
        for item in value:
            _assert_bounded(item, limits, depth + 1)
    elif isinstance(value, str):
        assert len(value) <= limits.max_string + len("...")


class TestSanitize:
    def test_secrets_dropped_and_values_bounded(self):
        limits = SanitizeLimits(max_depth=2, max_items=2, max_string=5)
        result = sanitize_for_audit({
            "password": "hunter2",
            "name": "abcdefgh",
            "qty": Decimal("2.500"),
            "lines": [1, 2, 3],
            "deep": {"a": {"b": {"c": 1}}},
        }, limits)
        assert "password" not in result
        assert result["name"] == "abcde..."
        assert result["qty"] == 2.5
        assert result["lines"] == [1, 2]
        assert result["deep"] == {"a": {"b": None}}

    def test_default_limits(self):
        assert (DEFAULT_LIMITS.max_depth, DEFAULT_LIMITS.max_items, DEFAULT_LIMITS.max_string) == (4, 40, 400)

    @settings(max_examples=50, suppress_health_check=[HealthCheck.too_slow])
    @given(payloads)
    def test_default_bounds_hold(self, payload):
        result = sanitize_for_audit(payload)
        _assert_bounded(result, DEFAULT_LIMITS)
        json.dumps(result)

    @settings(max_examples=50, suppress_health_check=[HealthCheck.too_slow])
    @given(payloads, st.integers(0, 3), st.integers(0, 5), st.integers(0, 20))
    def test_custom_bounds_hold(self, payload, max_depth, max_items, max_string):
        limits = SanitizeLimits(max_depth=max_depth, max_items=max_items, max_string=max_string)
        _assert_bounded(sanitize_for_audit(payload, limits), limits)

    def test_activity_record_sanitises_context(self, session, deterministic_clock):
        service = ActivityLogService(session, deterministic_clock)
        entry_id = service.record(
            branch_id=None, user_id=None, entity_type="UOM", entity_id=1,
            action="update", source="test", new_value={"token": "x", "name": "Dozen"},
        )
        entries = service.list_for_entity("UOM", 1)
        assert [e.id for e in entries] == [entry_id]
        assert entries[0].action == "UPDATE"
        assert entries[0].context["new_value"] == {"name": "Dozen"}

    def test_unknown_action_not_written(self, session, deterministic_clock):
        service = ActivityLogService(session, deterministic_clock)
        assert service.record(
            branch_id=None, user_id=None, entity_type="UOM", entity_id=1, action="EXPLODE", source="test",
        ) is None
