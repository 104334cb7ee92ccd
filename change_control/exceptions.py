"""
Typed exception hierarchy for the change-control kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Every write attempt ends in one of three outcomes: it lands, it is queued
for approval, or it is refused.  Refusals must be machine-readable so the
outer layer can re-render field errors, short-circuit forbidden writes, and
log internal failures with a correlation id.  Callers therefore catch by
type and read the ``code`` class attribute; they never parse messages.

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    ChangeControlError (base)
    |
    +-- AccessError
    |   +-- AuthRequiredError
    |   +-- InactiveActorError
    |   +-- ForbiddenBranchError
    |   +-- ForbiddenPeriodError
    |   +-- ForbiddenActionError
    |   |   +-- SelfApprovalError
    |   +-- AdminOnlyError
    |
    +-- ValidationError
    |   +-- DraftExistsError
    |   +-- DuplicateNameError
    |   +-- BomNotEditableError
    |   +-- BomPendingApprovalError
    |   +-- ApprovalNotAppliedError
    |
    +-- NotFoundError
    |   +-- ApprovalRequestNotFoundError
    |   +-- BomNotFoundError
    |   +-- EntityNotFoundError
    |
    +-- ConflictError
    |   +-- BomSnapshotMismatchError
    |   +-- ApprovalAlreadyDecidedError
    |   +-- PendingApprovalExistsError
    |
    +-- InternalError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category    | Code                   | When Raised
------------|------------------------|---------------------------------------------
Access      | AUTH_REQUIRED          | No actor (or unknown user) on a protected path
            | ACTOR_INACTIVE         | User exists but status is not active
            | FORBIDDEN_BRANCH       | Branch outside the actor's assigned set
            | FORBIDDEN_PERIOD       | Non-admin write into a LOCKED/FROZEN period
            | FORBIDDEN_ACTION       | Resolver denies and the gate cannot reroute
            | ADMIN_ONLY             | Non-admin tried to decide an approval
------------|------------------------|---------------------------------------------
Validation  | VALIDATION             | Structural payload errors, carries details[]
            | DRAFT_EXISTS           | Second DRAFT for the same (item, level)
            | DUPLICATE_NAME         | Unique name/code violation on a master row
------------|------------------------|---------------------------------------------
Lookup      | NOT_FOUND              | Referenced entity missing
------------|------------------------|---------------------------------------------
Conflict    | CONFLICT               | Concurrent modification, decided request
            | BOM_SNAPSHOT_MISMATCH  | approve_draft signature no longer matches
------------|------------------------|---------------------------------------------
Internal    | INTERNAL               | Anything else; logged with correlation id

===============================================================================
PROPAGATION
===============================================================================

VALIDATION and CONFLICT are recoverable and carry the offending fields.
Access errors are raised before any mutation.  INTERNAL aborts the
surrounding transaction.  Audit and notification failures are logged and
never raised.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


class ChangeControlError(Exception):
    """Base exception for all change-control errors."""

    code: str = "INTERNAL"


class InternalError(ChangeControlError):
    """Unexpected failure wrapped by the request pipeline."""

    code: str = "INTERNAL"

    def __init__(self, correlation_id: str | None, cause: str):
        self.correlation_id = correlation_id
        self.cause = cause
        super().__init__(f"Internal error ({correlation_id}): {cause}")


# Access


class AccessError(ChangeControlError):
    """Base class for refusals raised before any mutation."""

    code: str = "ACCESS_DENIED"


class AuthRequiredError(AccessError):
    code: str = "AUTH_REQUIRED"

    def __init__(self, user_id: int | None = None, reason: str = "Invalid session"):
        self.user_id = user_id
        self.reason = reason
        super().__init__(reason)


class InactiveActorError(AccessError):
    code: str = "ACTOR_INACTIVE"

    def __init__(self, user_id: int, status: str):
        self.user_id = user_id
        self.status = status
        super().__init__(f"User inactive: {user_id} (status={status})")


class ForbiddenBranchError(AccessError):
    """Actor attempted to act on a branch outside its assigned set."""

    code: str = "FORBIDDEN_BRANCH"

    def __init__(self, branch_id: int | None, reason: str):
        self.branch_id = branch_id
        self.reason = reason
        super().__init__(reason)


class ForbiddenPeriodError(AccessError):
    """Non-admin write whose date falls into a LOCKED or FROZEN period."""

    code: str = "FORBIDDEN_PERIOD"

    def __init__(self, branch_id: int, year: int, month: int, status: str):
        self.branch_id = branch_id
        self.year = year
        self.month = month
        self.status = status
        super().__init__(
            f"Period {year}-{month:02d} is {status} for branch {branch_id}"
        )


class ForbiddenActionError(AccessError):
    code: str = "FORBIDDEN_ACTION"

    def __init__(self, scope_type: str, scope_key: str, action: str, reason: str | None = None):
        self.scope_type = scope_type
        self.scope_key = scope_key
        self.action = action
        self.reason = reason
        super().__init__(
            reason or f"Action '{action}' not permitted on {scope_type}:{scope_key}"
        )


class SelfApprovalError(ForbiddenActionError):
    """The requester of an approval attempted to decide it."""

    def __init__(self, request_id: int, actor_id: int):
        self.request_id = request_id
        self.actor_id = actor_id
        super().__init__(
            "APPROVAL",
            str(request_id),
            "approve",
            reason=f"User {actor_id} cannot decide their own request {request_id}",
        )


class AdminOnlyError(AccessError):
    code: str = "ADMIN_ONLY"

    def __init__(self, actor_id: int | None, operation: str):
        self.actor_id = actor_id
        self.operation = operation
        super().__init__(f"Only administrators may {operation}")


# Validation


@dataclass(frozen=True)
class ValidationDetail:
    """One offending field and its human-readable message."""

    field: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"field": self.field, "message": self.message}


class ValidationError(ChangeControlError):
    """Structural errors in a payload.  Always carries ``details``."""

    code: str = "VALIDATION"

    def __init__(
        self,
        message: str = "Validation failed",
        details: list[ValidationDetail] | None = None,
    ):
        self.message = message
        self.details = list(details or [])
        super().__init__(message)

    @classmethod
    def single(cls, field: str, message: str) -> ValidationError:
        return cls(message, [ValidationDetail(field, message)])

    def details_as_dicts(self) -> list[dict[str, str]]:
        return [d.to_dict() for d in self.details]


class DraftExistsError(ValidationError):
    """A DRAFT already exists for the (item, level) family."""

    code: str = "DRAFT_EXISTS"

    MESSAGE = "A draft already exists for this item and level."

    def __init__(self, item_id: int, level: str):
        self.item_id = item_id
        self.level = level
        super().__init__(self.MESSAGE, [ValidationDetail("item_id", self.MESSAGE)])


class DuplicateNameError(ValidationError):
    code: str = "DUPLICATE_NAME"

    def __init__(self, entity_type: str, field: str = "name"):
        self.entity_type = entity_type
        self.field = field
        message = f"A {entity_type.lower()} with this {field} already exists."
        super().__init__(message, [ValidationDetail(field, message)])


class BomNotEditableError(ValidationError):
    """BOM is not in a status that permits the requested mutation."""

    def __init__(self, bom_id: int, status: str, message: str):
        self.bom_id = bom_id
        self.status = status
        super().__init__(message, [ValidationDetail("status", message)])


class BomPendingApprovalError(ValidationError):
    MESSAGE = "A pending approval already exists for this BOM."

    def __init__(self, bom_id: int):
        self.bom_id = bom_id
        super().__init__(self.MESSAGE, [ValidationDetail("bom_id", self.MESSAGE)])


class ApprovalNotAppliedError(ValidationError):
    """No applier accepted the approved payload."""

    def __init__(self, request_id: int, request_type: str, entity_type: str):
        self.request_id = request_id
        self.request_type = request_type
        self.entity_type = entity_type
        message = f"approval_apply_failed: {request_type}/{entity_type}"
        super().__init__(message, [ValidationDetail("entity_type", message)])


# Lookup


class NotFoundError(ChangeControlError):
    code: str = "NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: Any):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} not found: {entity_id}")


class ApprovalRequestNotFoundError(NotFoundError):
    def __init__(self, request_id: int):
        super().__init__("ApprovalRequest", request_id)


class BomNotFoundError(NotFoundError):
    def __init__(self, bom_id: int):
        super().__init__("BOM", bom_id)


class EntityNotFoundError(NotFoundError):
    """Master-data row referenced by an approval payload is missing."""


# Conflict


class ConflictError(ChangeControlError):
    code: str = "CONFLICT"


class BomSnapshotMismatchError(ConflictError):
    """
    The live BOM no longer matches the snapshot embedded in an
    ``approve_draft`` payload.  The approver must re-submit.
    """

    code: str = "BOM_SNAPSHOT_MISMATCH"

    MESSAGE = (
        "BOM snapshot mismatch while approving. "
        "Please reopen and resubmit approval."
    )

    def __init__(self, bom_id: int, expected_signature: str, actual_signature: str):
        self.bom_id = bom_id
        self.expected_signature = expected_signature
        self.actual_signature = actual_signature
        super().__init__(self.MESSAGE)


class ApprovalAlreadyDecidedError(ConflictError):
    def __init__(self, request_id: int, status: str):
        self.request_id = request_id
        self.status = status
        super().__init__(f"Approval request {request_id} is already {status}")


class PendingApprovalExistsError(ConflictError):
    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"A pending approval already exists for {entity_type} {entity_id}"
        )
