"""
Master-data appliers -- replay approved MASTER_DATA_CHANGE requests.

Responsibility:
    Turns the stored ``new_value`` of an approved request into row writes
    for simple master-data tables.  ``TableApplier`` covers every table that
    is a parent row plus optional id-list child maps (item types, branches,
    departments).  ``ItemApplier`` and ``SkuApplier`` carry the product
    rules that do not fit that shape.

Architecture position:
    Kernel > Services.  Registered on ``ApprovalApplier`` by entity type;
    runs inside the decision transaction, before the request row is marked
    APPROVED.

Payload rules:
    entity_id "NEW"            -> insert
    numeric entity_id          -> update (unknown keys ignored)
    ``_action == "toggle"``    -> set ``is_active`` (or user ``status``)
    ``_action == "delete"``
      or ``new_value is None`` -> delete child rows, then the parent

    Meta keys (``item_types``, ``branch_ids``, ``dept_ids``, ``rates``,
    ``usage_ids``, ``_summary``, ``_action``) never reach a column write.

Failure modes:
    - EntityNotFoundError when the target row of an update/toggle/delete is
      missing.
    - DuplicateNameError when a unique index on name/code is violated.
"""

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from change_control.domain.approval import (
    NEW_ENTITY_ID,
    ApprovalRequest,
    EntityChangePayload,
    PayloadAction,
    parse_approval_payload,
)
from change_control.domain.bom import to_id
from change_control.exceptions import DuplicateNameError, EntityNotFoundError
from change_control.logging_config import get_logger
from change_control.models.access import Branch, RoleTemplate, User, UserBranch
from change_control.models.master_data import (
    Account,
    AccountBranch,
    AccountGroup,
    City,
    Color,
    Department,
    Employee,
    Grade,
    Item,
    ItemUsage,
    Labour,
    LabourDepartment,
    LabourRate,
    PackingType,
    Party,
    PartyBranch,
    PartyGroup,
    ProductGroup,
    ProductGroupItemType,
    ProductSubgroup,
    ProductSubgroupItemType,
    ProductType,
    RmPurchaseRate,
    Size,
    SizeItemType,
    Sku,
    Uom,
    UomConversion,
    Variant,
)

logger = get_logger("services.master_data_appliers")

META_KEYS: frozenset[str] = frozenset({
    "item_types", "branch_ids", "dept_ids", "_summary", "_action",
    "rates", "usage_ids", "schema_version",
})
_AUDIT_COLUMNS = frozenset({"id", "created_by", "created_at", "updated_by", "updated_at"})


def strip_meta(values: Mapping[str, Any] | None) -> dict[str, Any]:
    return {k: v for k, v in (values or {}).items() if k not in META_KEYS}


def column_values(model: type, values: Mapping[str, Any]) -> dict[str, Any]:
    """Keep only keys that are writable columns of ``model``."""
    columns = set(model.__table__.columns.keys()) - _AUDIT_COLUMNS
    return {k: v for k, v in strip_meta(values).items() if k in columns}


def to_code(value: str | None) -> str:
    return re.sub(r"[^a-z0-9]+", "_", (value or "").lower()).strip("_")[:80]


def duplicate_field(exc: IntegrityError) -> str:
    message = str(getattr(exc, "orig", None) or exc).lower()
    if "sku_code" in message:
        return "sku_code"
    if "code" in message:
        return "code"
    return "name"


def _stamp(model: type, row_values: dict[str, Any], prefix: str, user_id: int | None, now: datetime) -> dict[str, Any]:
    columns = model.__table__.columns
    if f"{prefix}_by" in columns:
        row_values[f"{prefix}_by"] = user_id
    if f"{prefix}_at" in columns:
        row_values[f"{prefix}_at"] = now
    return row_values


def _entity_id(request: ApprovalRequest) -> int | None:
    if request.entity_id in (None, "", NEW_ENTITY_ID):
        return None
    return to_id(request.entity_id)


@dataclass(frozen=True)
class ChildMap:
    """Id-list child table rewritten wholesale from one payload key."""

    model: type
    owner_column: str
    value_column: str
    payload_key: str


@dataclass(frozen=True)
class TableEntitySpec:
    entity_type: str
    model: type
    child_maps: tuple[ChildMap, ...] = ()
    toggle_column: str = "is_active"


class TableApplier:
    def __init__(self, spec: TableEntitySpec):
        self.spec = spec

    @property
    def entity_type(self) -> str:
        return self.spec.entity_type

    def apply(self, session: Session, request: ApprovalRequest, decider_id: int, now: datetime) -> bool:
        payload = parse_approval_payload(request.new_value, request.entity_id)
        if not isinstance(payload, EntityChangePayload):
            return False
        entity_id = _entity_id(request)
        try:
            with session.begin_nested():
                if payload.action == PayloadAction.DELETE:
                    self._delete(session, entity_id)
                elif payload.action == PayloadAction.TOGGLE:
                    self._toggle(session, entity_id, payload.values, decider_id, now)
                elif payload.action == PayloadAction.CREATE or entity_id is None:
                    entity_id = self._insert(session, payload.values, decider_id, now)
                else:
                    self._update(session, entity_id, payload.values, decider_id, now)
        except IntegrityError as exc:
            field = duplicate_field(exc)
            logger.warning(
                "master_data_apply_duplicate",
                extra={"entity_type": self.entity_type, "field": field, "request_id": request.id},
            )
            raise DuplicateNameError(self.entity_type, field) from exc

        logger.info(
            "master_data_applied",
            extra={
                "entity_type": self.entity_type,
                "entity_id": entity_id,
                "action": payload.action.value,
                "request_id": request.id,
            },
        )
        return True

    def _require(self, session: Session, entity_id: int | None) -> Any:
        row = session.get(self.spec.model, entity_id) if entity_id else None
        if row is None:
            raise EntityNotFoundError(self.entity_type, entity_id)
        return row

    def _delete(self, session: Session, entity_id: int | None) -> None:
        row = self._require(session, entity_id)
        for child in self.spec.child_maps:
            session.execute(delete(child.model).where(getattr(child.model, child.owner_column) == entity_id))
        session.delete(row)
        session.flush()

    def _toggle(self, session: Session, entity_id: int | None, values: Mapping[str, Any], user_id: int, now: datetime) -> None:
        row = self._require(session, entity_id)
        column = self.spec.toggle_column
        if column == "status":
            current = str(row.status or "").lower() == "active"
            active = bool(values["is_active"]) if "is_active" in values else not current
            row.status = "active" if active else "inactive"
        else:
            current = bool(getattr(row, column))
            setattr(row, column, bool(values[column]) if column in values else not current)
        for key, value in _stamp(self.spec.model, {}, "updated", user_id, now).items():
            setattr(row, key, value)
        session.flush()

    def _insert(self, session: Session, values: Mapping[str, Any], user_id: int, now: datetime) -> int:
        model = self.spec.model
        row = model(**_stamp(model, column_values(model, values), "created", user_id, now))
        session.add(row)
        session.flush()
        self._write_children(session, row.id, values)
        return row.id

    def _update(self, session: Session, entity_id: int, values: Mapping[str, Any], user_id: int, now: datetime) -> None:
        row = self._require(session, entity_id)
        model = self.spec.model
        for key, value in _stamp(model, column_values(model, values), "updated", user_id, now).items():
            setattr(row, key, value)
        session.flush()
        self._write_children(session, entity_id, values)

    def _write_children(self, session: Session, owner_id: int, values: Mapping[str, Any]) -> None:
        for child in self.spec.child_maps:
            wanted = values.get(child.payload_key)
            if not isinstance(wanted, list):
                continue
            session.execute(delete(child.model).where(getattr(child.model, child.owner_column) == owner_id))
            seen: set[Any] = set()
            for value in wanted:
                if value in (None, "") or value in seen:
                    continue
                seen.add(value)
                session.add(child.model(**{child.owner_column: owner_id, child.value_column: value}))
        session.flush()


_ITEM_TYPES_KEY = "item_types"
_BRANCHES_KEY = "branch_ids"

TABLE_ENTITY_SPECS: tuple[TableEntitySpec, ...] = (
    TableEntitySpec("UOM", Uom),
    TableEntitySpec("SIZE", Size, (ChildMap(SizeItemType, "size_id", "item_type", _ITEM_TYPES_KEY),)),
    TableEntitySpec("COLOR", Color),
    TableEntitySpec("GRADE", Grade),
    TableEntitySpec("PACKING_TYPE", PackingType),
    TableEntitySpec("CITY", City),
    TableEntitySpec(
        "PRODUCT_GROUP", ProductGroup,
        (ChildMap(ProductGroupItemType, "group_id", "item_type", _ITEM_TYPES_KEY),),
    ),
    TableEntitySpec(
        "PRODUCT_SUBGROUP", ProductSubgroup,
        (ChildMap(ProductSubgroupItemType, "subgroup_id", "item_type", _ITEM_TYPES_KEY),),
    ),
    TableEntitySpec("PRODUCT_TYPE", ProductType),
    TableEntitySpec("PARTY_GROUP", PartyGroup),
    TableEntitySpec("ACCOUNT_GROUP", AccountGroup),
    TableEntitySpec("DEPARTMENT", Department),
    TableEntitySpec("UOM_CONVERSION", UomConversion),
    TableEntitySpec("ACCOUNT", Account, (ChildMap(AccountBranch, "account_id", "branch_id", _BRANCHES_KEY),)),
    TableEntitySpec("PARTY", Party, (ChildMap(PartyBranch, "party_id", "branch_id", _BRANCHES_KEY),)),
    TableEntitySpec("LABOUR", Labour, (ChildMap(LabourDepartment, "labour_id", "dept_id", "dept_ids"),)),
    TableEntitySpec("EMPLOYEE", Employee),
    TableEntitySpec("LABOUR_RATE", LabourRate),
    TableEntitySpec("BRANCH", Branch),
    TableEntitySpec("ROLE", RoleTemplate),
    TableEntitySpec(
        "USER", User,
        (ChildMap(UserBranch, "user_id", "branch_id", _BRANCHES_KEY),),
        toggle_column="status",
    ),
)


# =============================================================================
# Items
# =============================================================================


def _linked_sfg_ids(session: Session, fg_id: int) -> list[int]:
    return list(session.execute(
        select(ItemUsage.sfg_item_id).where(ItemUsage.fg_item_id == fg_id).order_by(ItemUsage.id)
    ).scalars())


def _delete_unshared_items(session: Session, candidates: Iterable[int]) -> list[int]:
    candidates = list(candidates)
    if not candidates:
        return []
    still_used = set(session.execute(
        select(ItemUsage.sfg_item_id).where(ItemUsage.sfg_item_id.in_(candidates))
    ).scalars())
    deletable = [i for i in candidates if i not in still_used]
    if deletable:
        session.execute(delete(Item).where(Item.id.in_(deletable)))
    return deletable


class ItemApplier:
    """
    RM/SFG/FG items.

    RM rows carry purchase ``rates``; SFG rows carry ``usage_ids`` (the FGs
    that consume them); FG rows with ``uses_sfg`` keep one companion SFG
    named ``"<FG name> - UPPER|STEP"``.
    """

    entity_type = "ITEM"

    def apply(self, session: Session, request: ApprovalRequest, decider_id: int, now: datetime) -> bool:
        payload = parse_approval_payload(request.new_value, request.entity_id)
        if not isinstance(payload, EntityChangePayload):
            return False
        entity_id = _entity_id(request)
        existing = session.get(Item, entity_id) if entity_id else None
        if entity_id and existing is None:
            raise EntityNotFoundError(self.entity_type, entity_id)
        values = payload.values
        item_type = values.get("item_type") or (existing.item_type if existing else None)
        if not item_type:
            return False

        try:
            with session.begin_nested():
                if payload.action == PayloadAction.DELETE:
                    self._delete(session, existing)
                elif payload.action == PayloadAction.TOGGLE:
                    self._toggle(session, existing, values, decider_id, now)
                elif existing is None:
                    entity_id = self._create(session, item_type, values, decider_id, now)
                else:
                    self._update(session, existing, values, decider_id, now)
        except IntegrityError as exc:
            raise DuplicateNameError(self.entity_type, duplicate_field(exc)) from exc

        logger.info(
            "item_change_applied",
            extra={
                "item_id": entity_id,
                "item_type": item_type,
                "action": payload.action.value,
                "request_id": request.id,
            },
        )
        return True

    def _delete(self, session: Session, item: Item) -> None:
        if item.item_type == "FG":
            linked = _linked_sfg_ids(session, item.id)
            session.execute(delete(ItemUsage).where(ItemUsage.fg_item_id == item.id))
            _delete_unshared_items(session, linked)
        elif item.item_type == "SFG":
            session.execute(delete(ItemUsage).where(ItemUsage.sfg_item_id == item.id))
        elif item.item_type == "RM":
            session.execute(delete(RmPurchaseRate).where(RmPurchaseRate.rm_item_id == item.id))
        session.execute(delete(Item).where(Item.id == item.id))
        session.expire_all()

    def _toggle(self, session: Session, item: Item, values: Mapping[str, Any], user_id: int, now: datetime) -> None:
        active = bool(values["is_active"]) if "is_active" in values else not item.is_active
        ids = [item.id]
        if item.item_type == "FG":
            ids += _linked_sfg_ids(session, item.id)
        session.execute(
            update(Item).where(Item.id.in_(ids)).values(is_active=active, updated_by=user_id, updated_at=now)
        )
        session.expire_all()

    def _create(self, session: Session, item_type: str, values: Mapping[str, Any], user_id: int, now: datetime) -> int:
        row_values = column_values(Item, values)
        row_values.update({
            "item_type": item_type,
            "code": values.get("code") or to_code(values.get("name")),
            "uses_sfg": bool(values.get("uses_sfg") or False),
            "min_stock_level": values.get("min_stock_level") or 0,
        })
        item = Item(**_stamp(Item, row_values, "created", user_id, now))
        session.add(item)
        session.flush()

        if item_type == "RM":
            self._write_rates(session, item.id, values.get("rates"), user_id, now)
        if item_type == "SFG":
            self._write_usage(session, item.id, values.get("usage_ids"))
        if item_type == "FG" and values.get("uses_sfg"):
            self.ensure_sfg_for_finished(session, item, values.get("sfg_part_type"), user_id, now)
        return item.id

    def _update(self, session: Session, item: Item, values: Mapping[str, Any], user_id: int, now: datetime) -> None:
        row_values = column_values(Item, values)
        row_values.pop("item_type", None)
        if not row_values.get("code"):
            row_values.pop("code", None)
        if not row_values.get("name"):
            row_values.pop("name", None)
        for key, value in _stamp(Item, row_values, "updated", user_id, now).items():
            setattr(item, key, value)
        session.flush()

        if item.item_type == "RM":
            session.execute(delete(RmPurchaseRate).where(RmPurchaseRate.rm_item_id == item.id))
            self._write_rates(session, item.id, values.get("rates"), user_id, now)
        elif item.item_type == "SFG":
            session.execute(delete(ItemUsage).where(ItemUsage.sfg_item_id == item.id))
            self._write_usage(session, item.id, values.get("usage_ids"))
        elif item.item_type == "FG":
            if values.get("uses_sfg"):
                self.ensure_sfg_for_finished(
                    session, item, values.get("sfg_part_type") or item.sfg_part_type, user_id, now,
                )
            else:
                linked = _linked_sfg_ids(session, item.id)
                session.execute(delete(ItemUsage).where(ItemUsage.fg_item_id == item.id))
                if linked:
                    session.execute(
                        update(Item).where(Item.id.in_(linked))
                        .values(is_active=False, updated_by=user_id, updated_at=now)
                    )
        session.flush()

    @staticmethod
    def _write_rates(session: Session, item_id: int, rates: Any, user_id: int, now: datetime) -> None:
        for rate in rates if isinstance(rates, list) else []:
            if not isinstance(rate, Mapping):
                continue
            purchase_rate = rate.get("purchase_rate")
            avg = rate.get("avg_purchase_rate")
            session.add(RmPurchaseRate(
                rm_item_id=item_id,
                color_id=rate.get("color_id") or None,
                size_id=rate.get("size_id") or None,
                purchase_rate=purchase_rate,
                avg_purchase_rate=purchase_rate if avg is None else avg,
                created_by=user_id,
                created_at=now,
            ))
        session.flush()

    @staticmethod
    def _write_usage(session: Session, sfg_id: int, usage_ids: Any) -> None:
        for fg_id in dict.fromkeys(usage_ids if isinstance(usage_ids, list) else []):
            if fg_id:
                session.add(ItemUsage(fg_item_id=fg_id, sfg_item_id=sfg_id))
        session.flush()

    def ensure_sfg_for_finished(self, session: Session, fg: Item, part_type: str | None, user_id: int, now: datetime) -> int:
        """Create or refresh the companion SFG of ``fg``; returns its id."""
        suffix = "STEP" if part_type == "STEP" else "UPPER"
        sfg_name = f"{fg.name} - {suffix}"
        sfg_code = to_code(f"{fg.code}_{suffix}")
        shared = {
            "name": sfg_name,
            "group_id": fg.group_id,
            "subgroup_id": fg.subgroup_id,
            "product_type_id": fg.product_type_id,
            "base_uom_id": fg.base_uom_id,
        }
        linked = _linked_sfg_ids(session, fg.id)
        by_code = session.execute(
            select(Item).where(Item.code == sfg_code, Item.item_type == "SFG")
        ).scalar_one_or_none()

        if linked:
            primary_id = linked[0]
            if by_code is not None and by_code.id != primary_id:
                session.execute(delete(ItemUsage).where(
                    ItemUsage.fg_item_id == fg.id, ItemUsage.sfg_item_id == primary_id,
                ))
                self._link(session, fg.id, by_code.id)
                primary_id = by_code.id
            session.execute(
                update(Item).where(Item.id == primary_id)
                .values(code=sfg_code, updated_by=user_id, updated_at=now, **shared)
            )
            extras = [i for i in linked[1:] if i != primary_id]
            if extras:
                session.execute(delete(ItemUsage).where(
                    ItemUsage.fg_item_id == fg.id, ItemUsage.sfg_item_id.in_(extras),
                ))
                _delete_unshared_items(session, extras)
            session.expire_all()
            return primary_id

        if by_code is not None:
            for key, value in shared.items():
                setattr(by_code, key, value)
            by_code.updated_by = user_id
            by_code.updated_at = now
            self._link(session, fg.id, by_code.id)
            return by_code.id

        sfg = Item(
            item_type="SFG",
            code=sfg_code,
            min_stock_level=0,
            created_by=user_id,
            created_at=now,
            **shared,
        )
        session.add(sfg)
        session.flush()
        self._link(session, fg.id, sfg.id)
        return sfg.id

    @staticmethod
    def _link(session: Session, fg_id: int, sfg_id: int) -> None:
        exists = session.execute(
            select(ItemUsage.id).where(ItemUsage.fg_item_id == fg_id, ItemUsage.sfg_item_id == sfg_id)
        ).scalar_one_or_none()
        if exists is None:
            session.add(ItemUsage(fg_item_id=fg_id, sfg_item_id=sfg_id))
            session.flush()


# =============================================================================
# SKUs
# =============================================================================


def _sku_part(value: Any) -> str:
    return str(value or "").strip().upper()


def build_sku_code(item_name: str | None, parts: Iterable[str | None]) -> str:
    return " ".join([_sku_part(item_name)] + [_sku_part(p) for p in parts if p])


def split_sfg_name(name: str | None, code: str | None) -> tuple[str, str]:
    """``"Runner - UPPER"`` -> ``("Runner", "UPPER")``."""
    if name and " - " in name:
        base, _, rest = name.partition(" - ")
        return base.strip(), rest.strip()
    return (code or name or "SFG").replace("_", " ").strip(), ""


def unique_sku_code(session: Session, base: str) -> str:
    candidate, counter = base, 2
    while session.execute(select(func.count(Sku.id)).where(Sku.sku_code == candidate)).scalar():
        candidate = f"{base} {counter}"
        counter += 1
    return candidate


class SkuApplier:
    """SKU screens edit variants; ``entity_id`` is the variant id."""

    entity_type = "SKU"

    def apply(self, session: Session, request: ApprovalRequest, decider_id: int, now: datetime) -> bool:
        if request.new_value is None:
            return False
        payload = parse_approval_payload(request.new_value, request.entity_id)
        if not isinstance(payload, EntityChangePayload):
            return False
        values = payload.values
        variant_id = _entity_id(request)

        if payload.action == PayloadAction.CREATE or variant_id is None:
            return self._create(session, values, decider_id, now)

        variant = session.get(Variant, variant_id)
        if variant is None:
            raise EntityNotFoundError(self.entity_type, variant_id)

        if payload.action == PayloadAction.DELETE:
            session.execute(delete(Sku).where(Sku.variant_id == variant_id))
            session.execute(delete(Variant).where(Variant.id == variant_id))
            session.expire_all()
        elif payload.action == PayloadAction.TOGGLE:
            active = bool(values["is_active"]) if "is_active" in values else not variant.is_active
            variant.is_active = active
            variant.updated_by = decider_id
            variant.updated_at = now
            session.execute(update(Sku).where(Sku.variant_id == variant_id).values(is_active=active))
        else:
            variant.sale_rate = values.get("sale_rate") or 0
            variant.updated_by = decider_id
            variant.updated_at = now
        session.flush()
        logger.info(
            "sku_change_applied",
            extra={"variant_id": variant_id, "action": payload.action.value, "request_id": request.id},
        )
        return True

    def _create(self, session: Session, values: Mapping[str, Any], user_id: int, now: datetime) -> bool:
        item = session.get(Item, to_id(values.get("item_id"))) if values.get("item_id") else None
        if item is None:
            return False

        variant = Variant(
            item_id=item.id,
            size_id=values.get("size_id") or None,
            grade_id=values.get("grade_id") or None,
            color_id=values.get("color_id") or None,
            packing_type_id=values.get("packing_type_id") or None,
            sale_rate=values.get("sale_rate") or 0,
            is_active=values.get("is_active") is not False,
            created_by=user_id,
            created_at=now,
        )
        session.add(variant)
        session.flush()

        def name_of(model: type, ident: Any) -> str | None:
            row = session.get(model, ident) if ident else None
            return row.name if row else None

        size = name_of(Size, variant.size_id)
        color = name_of(Color, variant.color_id)
        if item.item_type == "SFG":
            base, suffix = split_sfg_name(item.name, item.code)
            code = build_sku_code(base, [size, color, suffix])
        else:
            code = build_sku_code(item.name, [
                size, name_of(PackingType, variant.packing_type_id), name_of(Grade, variant.grade_id), color,
            ])
        sku = Sku(
            variant_id=variant.id,
            sku_code=unique_sku_code(session, code),
            is_active=True,
            created_by=user_id,
            created_at=now,
        )
        session.add(sku)
        session.flush()
        logger.info("sku_created", extra={"variant_id": variant.id, "sku_code": sku.sku_code})
        return True
