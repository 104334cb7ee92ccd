"""
AdminNotificationService -- fan-out of newly queued approvals to admins.

Responsibility:
    Subscribes to ``approval.enqueued``.  For each event it resolves the
    admin recipients (active users whose primary role is the admin role,
    with a syntactically valid e-mail on a non-placeholder domain), renders
    a plain-text and HTML body, and hands the message to a ``Mailer``.

Architecture position:
    Kernel > Services.  Runs after commit with its own short-lived session;
    it never shares the request transaction.  When attached to a bus the
    lookup and delivery run on a worker thread, so a slow mail transport
    never holds up the request that published the event.

Failure modes:
    - None raised.  Lookup, translation and delivery failures are logged
      and the enqueue that produced the event is unaffected.
"""

import contextvars
import html
import json
import re
from collections.abc import Callable
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Protocol

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from change_control.domain.approval import TOPIC_ENQUEUED, EnqueuedEvent
from change_control.logging_config import get_logger
from change_control.models.access import RoleTemplate, User
from change_control.services.event_bus import EventBus
from change_control.utils.messages import Translator, translate

logger = get_logger("services.notification")

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PLACEHOLDER_DOMAINS: tuple[str, ...] = ("example.com", "example.org", "example.net")


@dataclass(frozen=True)
class MailMessage:
    to: tuple[str, ...]
    subject: str
    text: str
    html: str


class Mailer(Protocol):
    def send(self, message: MailMessage) -> None:
        ...


class LoggingMailer:
    """Default transport: records the message and delivers nothing."""

    def __init__(self) -> None:
        self.sent: list[MailMessage] = []

    def send(self, message: MailMessage) -> None:
        self.sent.append(message)
        logger.info(
            "mail_logged",
            extra={"recipients": len(message.to), "subject": message.subject},
        )


def is_deliverable_email(value: str | None) -> bool:
    email = str(value or "").strip().lower()
    if not email or not _EMAIL_RE.match(email):
        return False
    return not any(email.endswith(f"@{domain}") for domain in PLACEHOLDER_DOMAINS)


def _log_crash(future: Future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.error("admin_notification_crashed", extra={"error": str(exc)}, exc_info=exc)


def _pretty_json(value: Any) -> str:
    try:
        return json.dumps(value if value is not None else {}, indent=2, default=str)
    except (TypeError, ValueError):
        return "{}"


class AdminNotificationService:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        mailer: Mailer | None = None,
        admin_role_name: str = "admin",
        translate: Translator | None = None,
        executor: Executor | None = None,
    ):
        self._session_factory = session_factory
        self._mailer = mailer or LoggingMailer()
        self._admin_role_name = admin_role_name
        self._translate = translate
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="admin-notify")

    @property
    def mailer(self) -> Mailer:
        return self._mailer

    def attach(self, bus: EventBus) -> None:
        bus.subscribe(TOPIC_ENQUEUED, self.notify_async)

    def notify_async(self, event: EnqueuedEvent) -> Future:
        """Queue ``notify`` on the worker; the caller's log context goes with it."""
        ctx = contextvars.copy_context()
        future = self._executor.submit(ctx.run, self.notify, event)
        future.add_done_callback(_log_crash)
        return future

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def _t(self, key: str, default: str) -> str:
        return translate(self._translate, key, default)

    def admin_recipients(self, session: Session) -> list[str]:
        rows = session.execute(
            select(User.email)
            .join(RoleTemplate, RoleTemplate.id == User.primary_role_id)
            .where(
                func.lower(func.trim(RoleTemplate.name)) == self._admin_role_name.lower(),
                func.lower(func.trim(User.status)) == "active",
                User.email.is_not(None),
            )
            .order_by(User.id)
        ).scalars().all()
        return [e.strip() for e in rows if is_deliverable_email(e)]

    def _requester_name(self, session: Session, user_id: int) -> str | None:
        return session.execute(
            select(User.username).where(User.id == user_id)
        ).scalar_one_or_none()

    def build_message(self, event: EnqueuedEvent, recipients: list[str], requested_by_name: str | None) -> MailMessage:
        subject = f"{self._t('approval_pending_subject', 'ERP approval pending')}: {event.entity_type or 'UNKNOWN'}"
        title = self._t("approval_pending_details", "Request details")
        fields = [
            (self._t("approval_request_id", "Request ID"), event.request_id),
            (self._t("request_type", "Request Type"), event.request_type),
            (self._t("entity_type", "Entity Type"), event.entity_type),
            (self._t("entity_id", "Entity ID"), event.entity_id),
            (self._t("requested_by", "Requested By"), requested_by_name),
            (self._t("branch", "Branch"), event.branch_id),
            (self._t("summary", "Summary"), event.summary),
        ]
        old_label = self._t("old_value", "Old Value")
        new_label = self._t("new_value", "New Value")
        old_json = _pretty_json(event.old_value)
        new_json = _pretty_json(event.new_value)

        text_lines = [f"{title}:"]
        text_lines += [f"{label}: {value if value not in (None, '') else '-'}" for label, value in fields]
        text_lines += [f"{old_label}: {old_json}", f"{new_label}: {new_json}"]

        items = "".join(
            f"<li><strong>{html.escape(label)}:</strong> "
            f"{html.escape(str(value if value not in (None, '') else '-'))}</li>"
            for label, value in fields
        )
        body = (
            f"<p><strong>{html.escape(title)}</strong></p><ul>{items}</ul>"
            f"<p><strong>{html.escape(old_label)}</strong></p><pre>{html.escape(old_json)}</pre>"
            f"<p><strong>{html.escape(new_label)}</strong></p><pre>{html.escape(new_json)}</pre>"
        )
        return MailMessage(tuple(recipients), subject, "\n".join(text_lines), body)

    def notify(self, event: EnqueuedEvent) -> bool:
        try:
            session = self._session_factory()
            try:
                recipients = self.admin_recipients(session)
                requested_by_name = self._requester_name(session, event.requested_by)
            finally:
                session.close()
        except SQLAlchemyError as exc:
            logger.error(
                "admin_notification_lookup_failed",
                extra={"request_id": event.request_id, "error": str(exc)},
            )
            return False

        if not recipients:
            logger.info("admin_notification_no_recipients", extra={"request_id": event.request_id})
            return False

        message = self.build_message(event, recipients, requested_by_name)
        try:
            self._mailer.send(message)
        except Exception as exc:
            logger.error(
                "admin_notification_failed",
                extra={
                    "request_id": event.request_id,
                    "entity_type": event.entity_type,
                    "error": str(exc),
                },
            )
            return False

        logger.info(
            "admin_notification_sent",
            extra={"request_id": event.request_id, "recipients": len(recipients)},
        )
        return True
