"""
EventBus and DecisionEventHub -- after-commit event delivery.

Responsibility:
    ``EventBus`` carries two topics: ``approval.enqueued`` (admins) and
    ``approval.decided`` (the original requester).  Services *defer*
    events while the transaction is open; the request pipeline calls
    ``dispatch_pending()`` after commit or ``discard_pending()`` after
    rollback, so nothing is published for work that did not land.

    ``DecisionEventHub`` is the ``approval.decided`` subscriber that keeps
    per-user streams.  Decisions for a user with no open stream are queued
    (last N only) and delivered when a stream registers; the queue is kept
    until the user acknowledges it.

Architecture position:
    Kernel > Services.  Shared process-wide; pending events are scoped to
    the current execution context.

Invariants enforced:
    - A subscriber or stream failure is logged and never raised.
    - Deferred events are delivered in the order they were deferred.
"""

from collections import defaultdict, deque
from collections.abc import Callable
from contextvars import ContextVar
from dataclasses import dataclass
from threading import RLock
from typing import Any, Protocol

from change_control.domain.approval import TOPIC_DECIDED, DecisionEvent
from change_control.logging_config import get_logger

logger = get_logger("services.event_bus")

Subscriber = Callable[[Any], None]

_pending: ContextVar[tuple[tuple[str, Any], ...]] = ContextVar(
    "cc_pending_events", default=()
)


class EventBus:
    def __init__(self) -> None:
        self._subscribers: dict[str, list[Subscriber]] = defaultdict(list)
        self._lock = RLock()

    def subscribe(self, topic: str, handler: Subscriber) -> None:
        with self._lock:
            self._subscribers[topic].append(handler)

    def unsubscribe(self, topic: str, handler: Subscriber) -> None:
        with self._lock:
            if handler in self._subscribers.get(topic, []):
                self._subscribers[topic].remove(handler)

    def publish(self, topic: str, event: Any) -> int:
        """Deliver now.  Returns the number of subscribers that succeeded."""
        with self._lock:
            handlers = list(self._subscribers.get(topic, []))
        delivered = 0
        for handler in handlers:
            try:
                handler(event)
                delivered += 1
            except Exception as exc:
                logger.error(
                    "event_subscriber_failed",
                    extra={
                        "topic": topic,
                        "handler": getattr(handler, "__qualname__", repr(handler)),
                        "error": str(exc),
                    },
                )
        return delivered

    def defer(self, topic: str, event: Any) -> None:
        _pending.set(_pending.get() + ((topic, event),))

    def pending(self) -> tuple[tuple[str, Any], ...]:
        return _pending.get()

    def dispatch_pending(self) -> int:
        events = _pending.get()
        _pending.set(())
        for topic, event in events:
            self.publish(topic, event)
        if events:
            logger.debug("events_dispatched", extra={"count": len(events)})
        return len(events)

    def discard_pending(self) -> int:
        events = _pending.get()
        _pending.set(())
        if events:
            logger.info("events_discarded", extra={"count": len(events)})
        return len(events)


# =============================================================================
# Decision streams
# =============================================================================


class DecisionStream(Protocol):
    """One open push channel (for example an SSE connection)."""

    def send(self, event_name: str, payload: dict[str, Any]) -> None:
        ...


@dataclass(frozen=True)
class DecisionHubSettings:
    queue_limit: int = 10
    event_name: str = "approval_decision"


class DecisionEventHub:
    def __init__(self, settings: DecisionHubSettings | None = None):
        self._settings = settings or DecisionHubSettings()
        self._streams: dict[int, list[DecisionStream]] = defaultdict(list)
        self._queues: dict[int, deque[dict[str, Any]]] = {}
        self._lock = RLock()

    def attach(self, bus: EventBus) -> None:
        bus.subscribe(TOPIC_DECIDED, self.publish)

    def _queue_for(self, user_id: int) -> deque[dict[str, Any]]:
        queue = self._queues.get(user_id)
        if queue is None:
            queue = deque(maxlen=self._settings.queue_limit)
            self._queues[user_id] = queue
        return queue

    def _send(self, user_id: int, stream: DecisionStream, payload: dict[str, Any]) -> bool:
        try:
            stream.send(self._settings.event_name, payload)
            return True
        except Exception as exc:
            logger.warning(
                "decision_stream_send_failed",
                extra={"user_id": user_id, "error": str(exc)},
            )
            return False

    def register(self, user_id: int, stream: DecisionStream) -> None:
        """Open a stream and replay any unacknowledged decisions to it."""
        with self._lock:
            self._streams[user_id].append(stream)
            backlog = list(self._queues.get(user_id, ()))
        for payload in backlog:
            if not self._send(user_id, stream, payload):
                self.unregister(user_id, stream)
                break

    def unregister(self, user_id: int, stream: DecisionStream) -> None:
        with self._lock:
            streams = self._streams.get(user_id, [])
            if stream in streams:
                streams.remove(stream)
            if not streams:
                self._streams.pop(user_id, None)

    def publish(self, event: DecisionEvent) -> int:
        payload = event.to_payload()
        with self._lock:
            self._queue_for(event.requested_by).append(payload)
            streams = list(self._streams.get(event.requested_by, []))
        delivered = 0
        for stream in streams:
            if self._send(event.requested_by, stream, payload):
                delivered += 1
            else:
                self.unregister(event.requested_by, stream)
        logger.info(
            "decision_event_published",
            extra={
                "request_id": event.request_id,
                "user_id": event.requested_by,
                "status": event.status.value,
                "streams": delivered,
            },
        )
        return delivered

    def pending_for(self, user_id: int) -> list[dict[str, Any]]:
        with self._lock:
            return list(self._queues.get(user_id, ()))

    def ack(self, user_id: int) -> int:
        with self._lock:
            queue = self._queues.pop(user_id, None)
        return len(queue) if queue else 0

    def stream_count(self, user_id: int) -> int:
        with self._lock:
            return len(self._streams.get(user_id, []))
