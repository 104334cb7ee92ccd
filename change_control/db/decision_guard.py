"""
ORM-level decider eligibility for approval requests.

The decision service refuses non-admin deciders before touching a row.
This module is the storage-layer counterpart: a Session ``before_flush``
listener that refuses to flush any ``approval_request`` row entering
APPROVED or REJECTED unless ``decided_by`` resolves to a user whose primary
role is the admin role.  The check constraints on the table cover the
remaining decision invariants (decision columns vs. status, and
``decided_by <> requested_by``).

    session.flush()
         |
         v
    [before_flush] --> _check_decider_is_admin() --> AdminOnlyError
         |
         v
    SQL sent to database (only if the check passes)

Call ``register_decision_guard()`` once at startup, after models are
imported.  Tests that need to write decided rows directly may call
``unregister_decision_guard()``.
"""

from sqlalchemy import event, inspect, select
from sqlalchemy.orm import Session

from change_control.domain.actor import is_admin_role
from change_control.exceptions import AdminOnlyError
from change_control.logging_config import get_logger

logger = get_logger("db.decision_guard")

_DECIDED = ("APPROVED", "REJECTED")
_admin_role_name = "admin"


def _entering_decided(obj) -> bool:
    if obj.status not in _DECIDED:
        return False
    state = inspect(obj)
    if state.pending:
        return True
    history = state.attrs.status.history
    return bool(history.added)


def _check_decider_is_admin(session, flush_context, instances):
    from change_control.models.access import RoleTemplate, User
    from change_control.models.approval import ApprovalRequestModel

    candidates = [
        obj for obj in list(session.new) + list(session.dirty)
        if isinstance(obj, ApprovalRequestModel) and _entering_decided(obj)
    ]
    for obj in candidates:
        role_name = None
        if obj.decided_by is not None:
            with session.no_autoflush:
                role_name = session.execute(
                    select(RoleTemplate.name)
                    .join(User, User.primary_role_id == RoleTemplate.id)
                    .where(User.id == obj.decided_by)
                ).scalar_one_or_none()

        if not is_admin_role(role_name, _admin_role_name):
            logger.error(
                "decision_guard_blocked",
                extra={
                    "request_id": obj.id,
                    "decided_by": obj.decided_by,
                    "status": obj.status,
                    "role_name": role_name,
                },
            )
            raise AdminOnlyError(obj.decided_by, "decide approval requests")


def register_decision_guard(admin_role_name: str = "admin") -> None:
    global _admin_role_name
    _admin_role_name = admin_role_name
    if not event.contains(Session, "before_flush", _check_decider_is_admin):
        event.listen(Session, "before_flush", _check_decider_is_admin)


def unregister_decision_guard() -> None:
    if event.contains(Session, "before_flush", _check_decider_is_admin):
        event.remove(Session, "before_flush", _check_decider_is_admin)
