"""
BomService -- BOM draft, approval and versioning lifecycle.

Responsibility:
    Owns every mutation of ``bom_header`` and its four line tables, plus the
    ``bom_change_log`` written alongside each one.  Also replays approved
    BOM requests (``apply_approved_change``) and rewinds a pending
    ``approve_draft`` on reject.

Architecture position:
    Kernel > Services.  Called by the request pipeline for direct writes
    and by ``ApprovalApplier`` for approved requests.  Validation is
    delegated to ``BomValidator``; canonical snapshots and diffs come from
    ``change_control.domain.bom``.

State machine:
    DRAFT    -> PENDING   set_pending (approve_draft queued)
    DRAFT    -> APPROVED  approve_direct (admin, or applier)
    PENDING  -> APPROVED  approve_direct (applier)
    PENDING  -> DRAFT     reset_pending_after_reject
    APPROVED -> new DRAFT at version+1   create_new_version_from_approved

Invariants enforced:
    - At most one DRAFT per (item_id, level): checked in code, backed by
      the ``ux_bom_header_single_draft`` partial unique index.  A unique
      violation raised by a concurrent insert becomes ``DraftExistsError``.
    - Header inserts take ``LOCK TABLE bom_header IN SHARE ROW EXCLUSIVE
      MODE`` (PostgreSQL only) before re-checking draft uniqueness and
      computing ``bom_no`` and ``version_no``.
    - ``version_no`` is max(version_no) + 1 for the family.  A
      ``uq_bom_header_version`` violation while a DRAFT exists for the
      family also becomes ``DraftExistsError``.
    - Version cloning locks the family rows (``FOR UPDATE``) before the
      draft uniqueness check.
    - ``approve_draft`` replays fail with ``BomSnapshotMismatchError`` when
      the live BOM no longer matches the submitted snapshot.

Failure modes:
    - ValidationError (and subclasses) for bad input or wrong status.
    - BomNotFoundError for unknown ids.
    - PendingApprovalExistsError when another request is already pending.
    - BomSnapshotMismatchError on a stale ``approve_draft``.

Audit relevance:
    Every save, approval and clone writes per-entry change rows and one
    ``snapshot`` row carrying the whole (before, after) pair.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import String, cast, func, or_, select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, aliased

from change_control.db.engine import dialect_of
from change_control.domain.actor import Actor
from change_control.domain.approval import (
    NEW_ENTITY_ID,
    SCHEMA_VERSION,
    ApprovalRequest,
    ApprovalStatus,
    ApproveDraftPayload,
    CreateVersionPayload,
    PayloadAction,
    SavePayload,
    parse_approval_payload,
)
from change_control.domain.bom import (
    BOM_ENTITY_TYPE,
    BOM_SCREEN_KEY,
    BomLevel,
    BomStatus,
    ChangeRow,
    build_change_rows,
    canonical_snapshot,
    format_bom_no,
    signature_digest,
    snapshot_change_row,
    snapshot_signature,
    to_id,
)
from change_control.domain.clock import Clock
from change_control.exceptions import (
    BomNotEditableError,
    BomNotFoundError,
    BomPendingApprovalError,
    BomSnapshotMismatchError,
    DraftExistsError,
    PendingApprovalExistsError,
)
from change_control.logging_config import get_logger
from change_control.models.access import User
from change_control.models.approval import ApprovalRequestModel
from change_control.models.bom import (
    SINGLE_DRAFT_INDEX,
    VERSION_CONSTRAINT,
    BomChangeLog,
    BomHeader,
    BomLabourLine,
    BomRmLine,
    BomSfgLine,
    BomVariantRule,
)
from change_control.models.master_data import Item
from change_control.services.approval_gate import ApprovalGate, EntityRef
from change_control.services.base import BaseService
from change_control.services.bom_validator import BomValidator
from change_control.utils.hashing import to_json_safe
from change_control.utils.messages import Translator

logger = get_logger("services.bom")

RM_FIELDS = ("rm_item_id", "color_id", "size_id", "dept_id", "qty", "uom_id", "normal_loss_pct")
SFG_FIELDS = ("fg_size_id", "sfg_sku_id", "required_qty", "uom_id", "ref_approved_bom_id")
LABOUR_FIELDS = ("size_scope", "size_id", "dept_id", "labour_id", "rate_type", "rate_value")
RULE_FIELDS = (
    "size_scope", "size_id", "packing_scope", "packing_type_id", "color_scope",
    "color_id", "action_type", "material_scope", "target_rm_item_id", "new_value",
)

_SECTION_MODELS: dict[str, tuple[type, tuple[str, ...]]] = {
    "rm_lines": (BomRmLine, RM_FIELDS),
    "sfg_lines": (BomSfgLine, SFG_FIELDS),
    "labour_lines": (BomLabourLine, LABOUR_FIELDS),
    "variant_rules": (BomVariantRule, RULE_FIELDS),
}

# SQLite reports partial-index violations by column list, not index name.
_SQLITE_DRAFT_VIOLATION = "bom_header.item_id, bom_header.level"
_SQLITE_VERSION_VIOLATION = "bom_header.item_id, bom_header.level, bom_header.version_no"


@dataclass(frozen=True)
class BomSaveResult:
    id: int
    version_no: int
    bom_no: str
    status: str


@dataclass(frozen=True)
class BomSummary:
    id: int
    bom_no: str
    level: str
    status: str
    version_no: int
    output_qty: Any
    item_code: str | None
    item_name: str | None
    created_by_name: str | None
    approved_by_name: str | None
    created_at: datetime | None
    approved_at: datetime | None
    pending_approval_count: int


@dataclass(frozen=True)
class BomVersion:
    id: int
    bom_no: str
    item_id: int
    level: str
    status: str
    version_no: int
    item_code: str | None
    item_name: str | None
    created_at: datetime | None
    approved_at: datetime | None


@dataclass(frozen=True)
class BomWriteOutcome:
    """Result of a gated BOM write: applied directly or queued."""

    queued: bool
    bom_id: int | None = None
    request_id: int | None = None


# ---------------------------------------------------------------------------
# Approval payload builders
# ---------------------------------------------------------------------------


def build_approval_payload(action: PayloadAction | str, input: Mapping[str, Any], bom_id: int | None = None) -> dict[str, Any]:
    header = input.get("header") or {}
    return {
        "schema_version": SCHEMA_VERSION,
        "_action": PayloadAction(action).value,
        "bom_id": bom_id or None,
        "input": {
            "header": {
                "item_id": header.get("item_id"),
                "level": header.get("level"),
                "output_qty": header.get("output_qty"),
                "output_uom_id": header.get("output_uom_id"),
            },
            "rm_lines": list(input.get("rm_lines") or []),
            "sfg_lines": list(input.get("sfg_lines") or []),
            "labour_lines": list(input.get("labour_lines") or []),
            "variant_rules": list(input.get("variant_rules") or []),
        },
    }


def build_approve_draft_payload(bom_id: int, snapshot: Mapping[str, Any] | None) -> dict[str, Any]:
    return {
        "schema_version": SCHEMA_VERSION,
        "_action": PayloadAction.APPROVE_DRAFT.value,
        "bom_id": bom_id or None,
        "snapshot": canonical_snapshot(snapshot or {}),
    }


def build_create_version_payload(source_bom_id: int) -> dict[str, Any]:
    return {
        "schema_version": SCHEMA_VERSION,
        "_action": PayloadAction.CREATE_VERSION_FROM.value,
        "source_bom_id": source_bom_id,
    }


def is_single_draft_violation(exc: IntegrityError) -> bool:
    orig = getattr(exc, "orig", None)
    constraint = getattr(getattr(orig, "diag", None), "constraint_name", None)
    if constraint == SINGLE_DRAFT_INDEX:
        return True
    message = str(orig or exc)
    if SINGLE_DRAFT_INDEX in message:
        return True
    return _SQLITE_DRAFT_VIOLATION in message and "version_no" not in message


def is_version_violation(exc: IntegrityError) -> bool:
    orig = getattr(exc, "orig", None)
    constraint = getattr(getattr(orig, "diag", None), "constraint_name", None)
    if constraint == VERSION_CONSTRAINT:
        return True
    message = str(orig or exc)
    return VERSION_CONSTRAINT in message or _SQLITE_VERSION_VIOLATION in message


def _row_dict(row: Any, fields: Iterable[str]) -> dict[str, Any]:
    return {f: getattr(row, f) for f in fields}


class BomService(BaseService):
    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        validator: BomValidator | None = None,
        translator: Translator | None = None,
    ):
        super().__init__(session, clock)
        self._validator = validator or BomValidator(session, translator)

    @property
    def validator(self) -> BomValidator:
        return self._validator

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _header(self, bom_id: int, lock: bool = False) -> BomHeader:
        stmt = select(BomHeader).where(BomHeader.id == bom_id)
        if lock:
            stmt = stmt.with_for_update()
        header = self.session.execute(stmt).scalar_one_or_none()
        if header is None:
            raise BomNotFoundError(bom_id)
        return header

    def get_snapshot(self, bom_id: int) -> dict[str, Any] | None:
        """Header plus every line section, JSON-safe, lines ordered by id."""
        header = self.session.get(BomHeader, bom_id)
        if header is None:
            return None
        return self._snapshot_of(header)

    def _snapshot_of(self, header: BomHeader) -> dict[str, Any]:
        self.session.flush()
        self.session.refresh(header)
        snapshot: dict[str, Any] = {"header": header.header_dict()}
        for section, (_, fields) in _SECTION_MODELS.items():
            rows = sorted(getattr(header, section), key=lambda r: r.id)
            snapshot[section] = [_row_dict(r, fields) for r in rows]
        return to_json_safe(snapshot)

    def has_pending_approval(
        self,
        bom_id: int,
        actions: Iterable[str] | None = None,
        exclude_request_id: int | None = None,
    ) -> bool:
        stmt = select(ApprovalRequestModel.id, ApprovalRequestModel.new_value).where(
            ApprovalRequestModel.entity_type == BOM_ENTITY_TYPE,
            ApprovalRequestModel.entity_id == str(bom_id),
            ApprovalRequestModel.status == ApprovalStatus.PENDING.value,
        )
        if exclude_request_id is not None:
            stmt = stmt.where(ApprovalRequestModel.id != exclude_request_id)
        wanted = {a for a in (actions or ()) if a}
        for _, new_value in self.session.execute(stmt).all():
            if not wanted:
                return True
            action = new_value.get("_action") if isinstance(new_value, Mapping) else None
            if (action or "") in wanted:
                return True
        return False

    def list_boms(self, status: str | None = None, level: str | None = None, q: str | None = None) -> list[BomSummary]:
        creator = aliased(User)
        approver = aliased(User)
        pending = (
            select(func.count(ApprovalRequestModel.id))
            .where(
                ApprovalRequestModel.entity_type == BOM_ENTITY_TYPE,
                ApprovalRequestModel.entity_id == cast(BomHeader.id, String),
                ApprovalRequestModel.status == ApprovalStatus.PENDING.value,
            )
            .correlate(BomHeader)
            .scalar_subquery()
        )
        stmt = (
            select(
                BomHeader,
                Item.code,
                Item.name,
                creator.username,
                approver.username,
                pending,
            )
            .outerjoin(Item, Item.id == BomHeader.item_id)
            .outerjoin(creator, creator.id == BomHeader.created_by)
            .outerjoin(approver, approver.id == BomHeader.approved_by)
            .order_by(BomHeader.id.desc())
        )
        status = str(status or "").upper()
        level = str(level or "").upper()
        if status in {s.value for s in BomStatus}:
            stmt = stmt.where(BomHeader.status == status)
        if level in {lv.value for lv in BomLevel}:
            stmt = stmt.where(BomHeader.level == level)
        q = str(q or "").strip()
        if q:
            pattern = f"%{q}%"
            stmt = stmt.where(or_(
                BomHeader.bom_no.ilike(pattern),
                Item.name.ilike(pattern),
                Item.code.ilike(pattern),
            ))
        return [
            BomSummary(
                id=h.id,
                bom_no=h.bom_no,
                level=h.level,
                status=h.status,
                version_no=h.version_no,
                output_qty=h.output_qty,
                item_code=code,
                item_name=name,
                created_by_name=created_by,
                approved_by_name=approved_by,
                created_at=h.created_at,
                approved_at=h.approved_at,
                pending_approval_count=int(count or 0),
            )
            for h, code, name, created_by, approved_by, count in self.session.execute(stmt).all()
        ]

    def get_bom_for_form(self, bom_id: int) -> dict[str, Any] | None:
        header = self.session.get(BomHeader, bom_id)
        if header is None:
            return None
        item = self.session.get(Item, header.item_id)
        head = header.header_dict()
        head.update({
            "created_at": header.created_at,
            "approved_at": header.approved_at,
            "item_code": item.code if item else None,
            "item_name": item.name if item else None,
        })
        form: dict[str, Any] = {"header": head}
        for section, (_, fields) in _SECTION_MODELS.items():
            rows = sorted(getattr(header, section), key=lambda r: r.id)
            form[section] = [{"id": r.id, **_row_dict(r, fields)} for r in rows]
        return form

    def list_versions(self, item_id: int | None = None, level: str | None = None) -> list[BomVersion]:
        stmt = (
            select(BomHeader, Item.code, Item.name)
            .outerjoin(Item, Item.id == BomHeader.item_id)
            .order_by(BomHeader.item_id.asc(), BomHeader.version_no.desc())
        )
        item_id = to_id(item_id)
        if item_id:
            stmt = stmt.where(BomHeader.item_id == item_id)
        level = str(level or "").upper()
        if level in {lv.value for lv in BomLevel}:
            stmt = stmt.where(BomHeader.level == level)
        return [
            BomVersion(
                id=h.id,
                bom_no=h.bom_no,
                item_id=h.item_id,
                level=h.level,
                status=h.status,
                version_no=h.version_no,
                item_code=code,
                item_name=name,
                created_at=h.created_at,
                approved_at=h.approved_at,
            )
            for h, code, name in self.session.execute(stmt).all()
        ]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _has_draft(self, item_id: int, level: str, exclude_id: int | None = None) -> bool:
        stmt = select(BomHeader.id).where(
            BomHeader.item_id == item_id,
            BomHeader.level == level,
            BomHeader.status == BomStatus.DRAFT.value,
        )
        if exclude_id:
            stmt = stmt.where(BomHeader.id != exclude_id)
        return self.session.execute(stmt.limit(1)).scalar_one_or_none() is not None

    def _ensure_draft_uniqueness(self, item_id: int, level: str, exclude_id: int | None = None) -> None:
        if self._has_draft(item_id, level, exclude_id):
            raise DraftExistsError(item_id, level)

    def _lock_header_table(self) -> None:
        if dialect_of(self.session) == "postgresql":
            self.session.execute(text("LOCK TABLE bom_header IN SHARE ROW EXCLUSIVE MODE"))

    def _next_bom_no(self) -> str:
        # caller holds the header table lock
        max_id = self.session.execute(select(func.max(BomHeader.id))).scalar()
        return format_bom_no(int(max_id or 0) + 1)

    def _next_version_no(self, item_id: int, level: str) -> int:
        current = self.session.execute(
            select(func.max(BomHeader.version_no)).where(
                BomHeader.item_id == item_id,
                BomHeader.level == level,
            )
        ).scalar()
        return int(current or 0) + 1

    def _insert_header(self, item_id: int, level: str, output_qty: Any, output_uom_id: int | None, user_id: int | None) -> BomHeader:
        self._lock_header_table()
        self._ensure_draft_uniqueness(item_id, level)
        version_no = self._next_version_no(item_id, level)
        bom_no = self._next_bom_no()
        header = BomHeader(
            bom_no=bom_no,
            item_id=item_id,
            level=level,
            output_qty=output_qty,
            output_uom_id=output_uom_id,
            status=BomStatus.DRAFT.value,
            version_no=version_no,
            created_by=user_id,
            created_at=self.clock.now(),
        )
        savepoint = self.session.begin_nested()
        try:
            self.session.add(header)
            self.session.flush()
        except IntegrityError as exc:
            savepoint.rollback()
            if is_single_draft_violation(exc) or (
                is_version_violation(exc) and self._has_draft(item_id, level)
            ):
                logger.warning(
                    "bom_draft_insert_conflict",
                    extra={"item_id": item_id, "level": level},
                )
                raise DraftExistsError(item_id, level) from exc
            raise
        savepoint.commit()
        return header

    def _replace_lines(self, header: BomHeader, lines: Mapping[str, Any]) -> None:
        for section, (model, fields) in _SECTION_MODELS.items():
            setattr(header, section, [
                model(**{f: row.get(f) for f in fields})
                for row in lines.get(section) or []
            ])
        self.session.flush()

    def _write_change_log(
        self,
        bom_id: int,
        version_no: int,
        request_id: int | None,
        user_id: int | None,
        before: Mapping[str, Any] | None,
        after: Mapping[str, Any] | None,
    ) -> int:
        rows: list[ChangeRow] = build_change_rows(before, after)
        rows.append(snapshot_change_row(before, after))
        now = self.clock.now()
        for row in rows:
            self.session.add(BomChangeLog(
                bom_id=bom_id,
                version_no=version_no,
                request_id=request_id,
                section=row.section,
                entity_key=row.entity_key[:200],
                change_type=row.change_type.value,
                old_value=to_json_safe(row.old_value),
                new_value=to_json_safe(row.new_value),
                changed_by=user_id,
                changed_at=now,
            ))
        self.session.flush()
        return len(rows)

    def save_draft(
        self,
        input: Mapping[str, Any],
        bom_id: int | None = None,
        user_id: int | None = None,
        request_id: int | None = None,
    ) -> BomSaveResult:
        """
        Validate ``input`` and create or update a DRAFT.

        ``request_id`` is the approval request being replayed, if any; it
        is recorded on the change log and ignored by the pending check.
        """
        normalized = self._validator.validate(input)
        head = normalized["header"]
        before = self.get_snapshot(bom_id) if bom_id else None

        self._ensure_draft_uniqueness(head["item_id"], head["level"], exclude_id=bom_id)

        if bom_id is None:
            header = self._insert_header(
                head["item_id"], head["level"], head["output_qty"], head["output_uom_id"], user_id,
            )
        else:
            header = self._header(bom_id, lock=True)
            if self.has_pending_approval(bom_id, exclude_request_id=request_id):
                raise BomPendingApprovalError(bom_id)
            if header.status != BomStatus.DRAFT.value:
                raise BomNotEditableError(bom_id, header.status, "Only draft BOM can be edited.")
            header.item_id = head["item_id"]
            header.level = head["level"]
            header.output_qty = head["output_qty"]
            header.output_uom_id = head["output_uom_id"]
            header.updated_by = user_id
            header.updated_at = self.clock.now()
            try:
                with self.session.begin_nested():
                    self.session.flush()
            except IntegrityError as exc:
                if is_single_draft_violation(exc):
                    raise DraftExistsError(head["item_id"], head["level"]) from exc
                raise

        self._replace_lines(header, normalized)
        after = self._snapshot_of(header)
        self._write_change_log(header.id, header.version_no, request_id, user_id, before, after)

        logger.info(
            "bom_draft_saved",
            extra={
                "bom_id": header.id,
                "bom_no": header.bom_no,
                "version_no": header.version_no,
                "is_new": bom_id is None,
                "request_id": request_id,
            },
        )
        return BomSaveResult(header.id, header.version_no, header.bom_no, header.status)

    def set_pending(self, bom_id: int, request_id: int | None = None) -> BomSaveResult:
        """
        DRAFT -> PENDING.  Idempotent on PENDING.  ``request_id`` is the
        ``approve_draft`` request that drives the transition and does not
        count as a competing approval.
        """
        header = self._header(bom_id, lock=True)
        if header.status == BomStatus.PENDING.value:
            return BomSaveResult(header.id, header.version_no, header.bom_no, header.status)
        if header.status != BomStatus.DRAFT.value:
            raise BomNotEditableError(bom_id, header.status, "Only draft BOM can be approved.")
        if self.has_pending_approval(bom_id, exclude_request_id=request_id):
            raise PendingApprovalExistsError(BOM_ENTITY_TYPE, str(bom_id))
        header.status = BomStatus.PENDING.value
        header.approved_by = None
        header.approved_at = None
        self.session.flush()
        logger.info("bom_set_pending", extra={"bom_id": bom_id, "request_id": request_id})
        return BomSaveResult(header.id, header.version_no, header.bom_no, header.status)

    def approve_direct(self, bom_id: int, user_id: int | None, request_id: int | None = None) -> BomSaveResult:
        header = self._header(bom_id, lock=True)
        if header.status == BomStatus.APPROVED.value:
            return BomSaveResult(header.id, header.version_no, header.bom_no, header.status)
        if header.status not in (BomStatus.DRAFT.value, BomStatus.PENDING.value):
            raise BomNotEditableError(bom_id, header.status, "Only draft BOM can be approved.")

        before = self._snapshot_of(header)
        header.status = BomStatus.APPROVED.value
        header.approved_by = user_id
        header.approved_at = self.clock.now()
        after = self._snapshot_of(header)
        self._write_change_log(header.id, header.version_no, request_id, user_id, before, after)

        logger.info(
            "bom_approved",
            extra={"bom_id": bom_id, "version_no": header.version_no, "approved_by": user_id, "request_id": request_id},
        )
        return BomSaveResult(header.id, header.version_no, header.bom_no, header.status)

    def create_new_version_from_approved(self, source_bom_id: int, user_id: int | None) -> BomSaveResult:
        source = self._header(source_bom_id)
        if source.status != BomStatus.APPROVED.value:
            raise BomNotEditableError(
                source_bom_id, source.status,
                "New version can only be created from an approved BOM.",
            )

        self.session.execute(
            select(BomHeader.id)
            .where(BomHeader.item_id == source.item_id, BomHeader.level == source.level)
            .with_for_update()
        ).all()
        self._ensure_draft_uniqueness(source.item_id, source.level)

        source_lines = {
            section: [_row_dict(r, fields) for r in sorted(getattr(source, section), key=lambda r: r.id)]
            for section, (_, fields) in _SECTION_MODELS.items()
        }
        header = self._insert_header(
            source.item_id, source.level, source.output_qty, source.output_uom_id, user_id,
        )
        self._replace_lines(header, source_lines)
        after = self._snapshot_of(header)
        self._write_change_log(header.id, header.version_no, None, user_id, None, after)

        logger.info(
            "bom_version_created",
            extra={
                "source_bom_id": source_bom_id,
                "bom_id": header.id,
                "version_no": header.version_no,
            },
        )
        return BomSaveResult(header.id, header.version_no, header.bom_no, header.status)

    # ------------------------------------------------------------------
    # Approval replay
    # ------------------------------------------------------------------

    def reset_pending_after_reject(self, request: ApprovalRequest) -> bool:
        if request.entity_type != BOM_ENTITY_TYPE:
            return False
        payload = parse_approval_payload(request.new_value, request.entity_id)
        if not isinstance(payload, ApproveDraftPayload):
            return False
        header = self.session.execute(
            select(BomHeader).where(BomHeader.id == payload.bom_id).with_for_update()
        ).scalar_one_or_none()
        if header is None or header.status != BomStatus.PENDING.value:
            return False
        header.status = BomStatus.DRAFT.value
        header.approved_by = None
        header.approved_at = None
        self.session.flush()
        logger.info("bom_pending_reset", extra={"bom_id": header.id, "request_id": request.id})
        return True

    def apply_approved_change(self, request: ApprovalRequest, approver_id: int | None) -> str | None:
        """
        Replay an approved BOM request.  Returns the affected BOM id, or
        ``None`` when the payload is not a BOM action.
        """
        payload = parse_approval_payload(request.new_value, request.entity_id)
        actor_id = request.requested_by or approver_id

        if isinstance(payload, SavePayload):
            existing_id = None
            if payload.action == PayloadAction.UPDATE:
                existing_id = to_id(request.entity_id) if request.entity_id != NEW_ENTITY_ID else None
                existing_id = existing_id or payload.bom_id
            result = self.save_draft(payload.input, existing_id, actor_id, request.id)
            return str(result.id)

        if isinstance(payload, ApproveDraftPayload):
            if payload.snapshot:
                current = self.get_snapshot(payload.bom_id)
                if current is None:
                    raise BomNotFoundError(payload.bom_id)
                if snapshot_signature(current) != snapshot_signature(payload.snapshot):
                    expected = signature_digest(payload.snapshot)
                    actual = signature_digest(current)
                    logger.warning(
                        "bom_snapshot_mismatch",
                        extra={
                            "bom_id": payload.bom_id,
                            "request_id": request.id,
                            "expected": expected,
                            "actual": actual,
                        },
                    )
                    raise BomSnapshotMismatchError(payload.bom_id, expected, actual)
            self.approve_direct(payload.bom_id, approver_id, request.id)
            return str(payload.bom_id)

        if isinstance(payload, CreateVersionPayload):
            if not payload.source_bom_id:
                return None
            result = self.create_new_version_from_approved(payload.source_bom_id, actor_id)
            return str(result.id)

        logger.info(
            "bom_apply_skipped",
            extra={"request_id": request.id, "payload": type(payload).__name__},
        )
        return None

    # ------------------------------------------------------------------
    # Gated screen workflows
    # ------------------------------------------------------------------

    def save_or_queue(self, actor: Actor, branch_id: int, gate: ApprovalGate, input: Mapping[str, Any], bom_id: int | None = None) -> BomWriteOutcome:
        """Save a draft directly, or queue it through the approval gate."""
        action = PayloadAction.UPDATE if bom_id else PayloadAction.CREATE
        result = gate.gate(
            actor,
            branch_id,
            BOM_SCREEN_KEY,
            "edit" if bom_id else "create",
            EntityRef(BOM_ENTITY_TYPE, bom_id or NEW_ENTITY_ID),
            summary=f"{'Edit' if bom_id else 'Create'} BOM",
            before=self.get_snapshot(bom_id) if bom_id else None,
            after=build_approval_payload(action, input, bom_id),
        )
        if result.queued:
            return BomWriteOutcome(True, bom_id, result.request_id)
        saved = self.save_draft(input, bom_id, actor.id)
        return BomWriteOutcome(False, saved.id)

    def send_for_approval(self, actor: Actor, branch_id: int, gate: ApprovalGate, bom_id: int) -> BomWriteOutcome:
        """Approve a DRAFT directly, or queue ``approve_draft`` and mark it PENDING."""
        header = self._header(bom_id)
        if header.status != BomStatus.DRAFT.value:
            raise BomNotEditableError(bom_id, header.status, "Only draft BOM can be approved.")
        if actor.is_admin:
            self.approve_direct(bom_id, actor.id)
            return BomWriteOutcome(False, bom_id)
        if self.has_pending_approval(bom_id):
            raise BomPendingApprovalError(bom_id)

        snapshot = self.get_snapshot(bom_id)
        result = gate.gate(
            actor,
            branch_id,
            BOM_SCREEN_KEY,
            "approve",
            EntityRef(BOM_ENTITY_TYPE, bom_id),
            summary=f"Approve BOM #{header.bom_no}",
            before=snapshot,
            after=build_approve_draft_payload(bom_id, snapshot),
        )
        if not result.queued:
            self.approve_direct(bom_id, actor.id)
            return BomWriteOutcome(False, bom_id)
        self.set_pending(bom_id, request_id=result.request_id)
        return BomWriteOutcome(True, bom_id, result.request_id)

    def new_version_or_queue(self, actor: Actor, branch_id: int, gate: ApprovalGate, source_bom_id: int) -> BomWriteOutcome:
        if not actor.is_admin:
            result = gate.gate(
                actor,
                branch_id,
                BOM_SCREEN_KEY,
                "create",
                EntityRef(BOM_ENTITY_TYPE, source_bom_id),
                summary=f"Create new BOM version #{source_bom_id}",
                after=build_create_version_payload(source_bom_id),
            )
            if result.queued:
                return BomWriteOutcome(True, source_bom_id, result.request_id)
        created = self.create_new_version_from_approved(source_bom_id, actor.id)
        return BomWriteOutcome(False, created.id)
