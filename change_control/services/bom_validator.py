"""
BomValidator -- structural and referential validation of BOM input.

Responsibility:
    Turns a normalised BOM input (``{header, rm_lines, sfg_lines,
    labour_lines, variant_rules}``) into the exact rows that will be
    stored, or raises one ``ValidationError`` listing every problem.

Architecture position:
    Kernel > Services.  Read-only; called by ``BomService.save_draft``
    both for direct saves and when an approved create/update is replayed,
    so stale payloads are re-checked against current master data.

Rules (aggregated into ``details[]``, 1-based line numbers):
    header        item exists; level matches item type (FINISHED=FG,
                  SEMI_FINISHED=SFG); output_qty > 0; output UOM defaults
                  to the item's base UOM.
    rm_lines      item, department and qty required; item is RM; UOM taken
                  from the item; loss % within [0, 100]; department is an
                  active production department.
    sfg_lines     forbidden at SEMI_FINISHED level; size, SKU and qty
                  required; SKU belongs to an SFG item; UOM from the item;
                  the item has an APPROVED BOM (stored as
                  ref_approved_bom_id).
    labour_lines  department, labour and rate >= 0 required; known rate
                  type; active production department; department is
                  allowed for the labour; size required for SPECIFIC.
    variant_rules ADJUST_QTY only; packing/colour scope ALL; specific size
                  or colour within the FG/SFG universe; specific target is
                  an RM item; ``new_value`` is a JSON object with qty > 0
                  and a uom_id.

    Purchase-rate coverage runs only once everything above passes:
    every RM line needs an active rate for (item, colour or 0, size or 0).

Failure modes:
    - ValidationError("Please fix validation errors.", details)
    - ValidationError("Missing required material rates.", [rm_lines_json])
"""

from collections.abc import Mapping
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from change_control.domain.bom import (
    LABOUR_RATE_TYPES,
    LEVEL_ITEM_TYPE,
    RULE_ACTION_TYPES,
    SCOPE_ALL,
    SCOPE_SPECIFIC,
    SUPPORTED_RULE_ACTIONS,
    BomLevel,
    BomStatus,
    DEFAULT_RATE_TYPE,
    as_rows,
    normalize_scope,
    parse_json_object,
    project_variant_rule,
    to_id,
    to_number,
    to_positive_number,
)
from change_control.exceptions import ValidationDetail, ValidationError
from change_control.logging_config import get_logger
from change_control.models.bom import BomHeader
from change_control.models.master_data import (
    Department,
    Item,
    Labour,
    LabourDepartment,
    RmPurchaseRate,
    SizeItemType,
    Sku,
    Variant,
)
from change_control.utils.messages import Translator, translate

logger = get_logger("services.bom_validator")

_LEVELS = frozenset(level.value for level in BomLevel)


class BomValidator:
    def __init__(self, session: Session, translator: Translator | None = None):
        self.session = session
        self._translator = translator

    def _t(self, key: str, default: str) -> str:
        return translate(self._translator, key, default)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def latest_approved_bom_id(self, item_id: int | None) -> int | None:
        if not item_id:
            return None
        return self.session.execute(
            select(BomHeader.id)
            .where(BomHeader.item_id == item_id, BomHeader.status == BomStatus.APPROVED.value)
            .order_by(BomHeader.version_no.desc())
            .limit(1)
        ).scalar_one_or_none()

    def _items(self, ids: set[int]) -> dict[int, Item]:
        if not ids:
            return {}
        return {i.id: i for i in self.session.execute(select(Item).where(Item.id.in_(ids))).scalars()}

    def _departments(self, ids: set[int]) -> dict[int, Department]:
        if not ids:
            return {}
        return {
            d.id: d
            for d in self.session.execute(select(Department).where(Department.id.in_(ids))).scalars()
        }

    def _labour_departments(self, labour_ids: set[int]) -> dict[int, set[int]]:
        """Allowed departments per labour: the map table plus the labour's own dept."""
        if not labour_ids:
            return {}
        allowed: dict[int, set[int]] = {}
        for labour in self.session.execute(select(Labour).where(Labour.id.in_(labour_ids))).scalars():
            allowed[labour.id] = {labour.dept_id} if labour.dept_id else set()
        for row in self.session.execute(
            select(LabourDepartment).where(LabourDepartment.labour_id.in_(labour_ids))
        ).scalars():
            allowed.setdefault(row.labour_id, set()).add(row.dept_id)
        return allowed

    def _sku_items(self, sku_ids: set[int]) -> dict[int, Item]:
        if not sku_ids:
            return {}
        rows = self.session.execute(
            select(Sku.id, Item)
            .join(Variant, Variant.id == Sku.variant_id)
            .join(Item, Item.id == Variant.item_id)
            .where(Sku.id.in_(sku_ids))
        ).all()
        return {sku_id: item for sku_id, item in rows}

    def _rule_universe(self) -> tuple[set[int], set[int]]:
        """Sizes and colours that exist on active FG/SFG variants (plus mapped sizes)."""
        sizes: set[int] = set(
            self.session.execute(
                select(SizeItemType.size_id).where(SizeItemType.item_type.in_(("FG", "SFG")))
            ).scalars()
        )
        colors: set[int] = set()
        for size_id, color_id in self.session.execute(
            select(Variant.size_id, Variant.color_id)
            .join(Item, Item.id == Variant.item_id)
            .where(Item.item_type.in_(("FG", "SFG")), Variant.is_active.is_(True))
        ).all():
            if size_id:
                sizes.add(size_id)
            if color_id:
                colors.add(color_id)
        return sizes, colors

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self, data: Mapping[str, Any] | None) -> dict[str, Any]:
        data = data or {}
        details: list[ValidationDetail] = []

        def fail(field: str, key: str, default: str, suffix: str = "") -> None:
            details.append(ValidationDetail(field, f"{self._t(key, default)}{suffix}"))

        header = data.get("header") or {}
        item_id = to_id(header.get("item_id"))
        level = str(header.get("level") or "").upper()
        output_qty = to_positive_number(header.get("output_qty"))
        output_uom_id = to_id(header.get("output_uom_id"))

        if not item_id:
            fail("item_id", "bom_error_item_required", "Please select an item.")
        if level not in _LEVELS:
            fail("level", "bom_error_level_required", "Please select a valid BOM level.")
        if not output_qty:
            fail("output_qty", "bom_error_output_qty_required", "Output quantity must be greater than zero.")

        item = self.session.get(Item, item_id) if item_id else None
        if item is None:
            fail("item_id", "bom_error_item_not_found", "Selected item does not exist.")
        else:
            expected = LEVEL_ITEM_TYPE.get(level)
            if expected and item.item_type != expected:
                fail("level", "bom_error_level_item_mismatch", "Level must match item type.")
            if not output_uom_id:
                output_uom_id = item.base_uom_id
        if not output_uom_id:
            fail("output_uom_id", "bom_error_output_uom_required", "Output UOM is required.")

        rm_lines = self._rm_lines(data.get("rm_lines"), fail)
        sfg_lines = self._sfg_lines(data.get("sfg_lines"), level, fail)
        labour_lines = self._labour_lines(data.get("labour_lines"), fail)

        # RM departments are checked together with labour departments.
        depts = self._departments(
            {l["dept_id"] for l in rm_lines + labour_lines if l["dept_id"]}
        )
        for idx, line in enumerate(rm_lines, start=1):
            if not _is_production(depts.get(line["dept_id"])):
                fail("rm_lines_json", "bom_error_department_must_be_production",
                     "Department must be an active production department", f" #{idx}")
        self._check_labour_departments(labour_lines, depts, fail)

        variant_rules = self._variant_rules(data.get("variant_rules"), fail)

        if details:
            logger.info("bom_validation_failed", extra={"item_id": item_id, "errors": len(details)})
            raise ValidationError(
                self._t("error_required_fields", "Please fix validation errors."),
                details,
            )

        self.validate_required_rates(rm_lines)

        return {
            "header": {
                "item_id": item_id,
                "level": level,
                "output_qty": output_qty,
                "output_uom_id": output_uom_id,
            },
            "rm_lines": rm_lines,
            "sfg_lines": sfg_lines,
            "labour_lines": labour_lines,
            "variant_rules": variant_rules,
        }

    def _rm_lines(self, raw: Any, fail) -> list[dict[str, Any]]:
        lines = []
        for row in as_rows(raw):
            loss = to_number(row.get("normal_loss_pct"))
            line = {
                "rm_item_id": to_id(row.get("rm_item_id")),
                "color_id": to_id(row.get("color_id")),
                "size_id": to_id(row.get("size_id")),
                "dept_id": to_id(row.get("dept_id")),
                "qty": to_positive_number(row.get("qty")),
                "uom_id": to_id(row.get("uom_id")),
                "normal_loss_pct": 0 if loss is None else loss,
            }
            if line["rm_item_id"] or line["dept_id"] or line["qty"]:
                lines.append(line)

        items = self._items({l["rm_item_id"] for l in lines if l["rm_item_id"]})
        for idx, line in enumerate(lines, start=1):
            if not (line["rm_item_id"] and line["dept_id"] and line["qty"]):
                fail("rm_lines_json", "bom_error_rm_line_invalid", "Invalid raw material line", f" #{idx}")
                continue
            item = items.get(line["rm_item_id"])
            if item is None or item.item_type != "RM":
                fail("rm_lines_json", "bom_error_rm_item_invalid",
                     "Raw material line must reference an RM item", f" #{idx}")
                continue
            line["uom_id"] = item.base_uom_id
            if not line["uom_id"]:
                fail("rm_lines_json", "bom_error_rm_uom_required", "Raw material UOM is required", f" #{idx}")
            if line["normal_loss_pct"] < 0 or line["normal_loss_pct"] > 100:
                fail("rm_lines_json", "bom_error_loss_pct_invalid",
                     "Normal loss % must be between 0 and 100", f" #{idx}")
        return lines

    def _sfg_lines(self, raw: Any, level: str, fail) -> list[dict[str, Any]]:
        lines = []
        for row in as_rows(raw):
            line = {
                "fg_size_id": to_id(row.get("fg_size_id")),
                "sfg_sku_id": to_id(row.get("sfg_sku_id")),
                "required_qty": to_positive_number(row.get("required_qty")),
                "uom_id": to_id(row.get("uom_id")),
                "ref_approved_bom_id": None,
            }
            if line["fg_size_id"] or line["sfg_sku_id"] or line["required_qty"]:
                lines.append(line)

        if level == BomLevel.SEMI_FINISHED.value and lines:
            fail("sfg_lines_json", "bom_error_sfg_not_allowed_for_sfg_level",
                 "Semi-finished BOM cannot include SFG section lines.")

        sku_items = self._sku_items({l["sfg_sku_id"] for l in lines if l["sfg_sku_id"]})
        for idx, line in enumerate(lines, start=1):
            if not (line["fg_size_id"] and line["sfg_sku_id"] and line["required_qty"]):
                fail("sfg_lines_json", "bom_error_sfg_line_invalid", "Invalid semi-finished line", f" #{idx}")
                continue
            item = sku_items.get(line["sfg_sku_id"])
            if item is None or item.item_type != "SFG":
                fail("sfg_lines_json", "bom_error_sfg_item_invalid",
                     "Selected SKU must belong to a semi-finished item", f" #{idx}")
                continue
            line["uom_id"] = item.base_uom_id
            if not line["uom_id"]:
                fail("sfg_lines_json", "bom_error_sfg_uom_required", "SFG UOM is required", f" #{idx}")
            approved_id = self.latest_approved_bom_id(item.id)
            if not approved_id:
                fail("sfg_lines_json", "bom_error_sfg_requires_approved_bom",
                     "Selected SFG item has no approved BOM", f" #{idx}")
                continue
            line["ref_approved_bom_id"] = approved_id
        return lines

    def _labour_lines(self, raw: Any, fail) -> list[dict[str, Any]]:
        lines = []
        for row in as_rows(raw):
            line = {
                "size_scope": normalize_scope(row.get("size_scope")),
                "size_id": to_id(row.get("size_id")),
                "dept_id": to_id(row.get("dept_id")),
                "labour_id": to_id(row.get("labour_id")),
                "rate_type": str(row.get("rate_type") or DEFAULT_RATE_TYPE).upper(),
                "rate_value": to_number(row.get("rate_value")),
            }
            if line["dept_id"] or line["labour_id"] or line["rate_value"]:
                lines.append(line)
        return lines

    def _check_labour_departments(self, lines: list[dict[str, Any]], depts, fail) -> None:
        allowed = self._labour_departments({l["labour_id"] for l in lines if l["labour_id"]})
        for idx, line in enumerate(lines, start=1):
            if not line["dept_id"] or not line["labour_id"] or line["rate_value"] is None or line["rate_value"] < 0:
                fail("labour_lines_json", "bom_error_labour_line_invalid", "Invalid labour line", f" #{idx}")
                continue
            if line["rate_type"] not in LABOUR_RATE_TYPES:
                fail("labour_lines_json", "bom_error_labour_rate_type_invalid",
                     "Invalid labour rate type", f" #{idx}")
                continue
            if not _is_production(depts.get(line["dept_id"])):
                fail("labour_lines_json", "bom_error_department_must_be_production",
                     "Department must be an active production department", f" #{idx}")
            if line["dept_id"] not in allowed.get(line["labour_id"], set()):
                fail("labour_lines_json", "bom_error_labour_department_invalid",
                     "Selected department is not allowed for this labour", f" #{idx}")
            if line["size_scope"] == SCOPE_SPECIFIC and not line["size_id"]:
                fail("labour_lines_json", "bom_error_size_required_for_specific_scope",
                     "Size is required for SPECIFIC scope", f" #{idx}")
            if line["size_scope"] == SCOPE_ALL:
                line["size_id"] = None

    def _variant_rules(self, raw: Any, fail) -> list[dict[str, Any]]:
        rules = []
        for row in as_rows(raw):
            rule = project_variant_rule(row)
            rule["new_value"] = parse_json_object(row.get("new_value"))
            raw_value = row.get("raw_new_value", row.get("new_value"))
            rule["_raw"] = raw_value.strip() if isinstance(raw_value, str) else ""
            if rule["action_type"]:
                rules.append(rule)

        needs_universe = any(
            (r["size_scope"] == SCOPE_SPECIFIC and r["size_id"])
            or (r["color_scope"] == SCOPE_SPECIFIC and r["color_id"])
            for r in rules
        )
        sizes, colors = self._rule_universe() if needs_universe else (set(), set())
        targets = self._items({
            r["target_rm_item_id"] for r in rules
            if r["material_scope"] == SCOPE_SPECIFIC and r["target_rm_item_id"]
        })

        for idx, rule in enumerate(rules, start=1):
            n = f" #{idx}"
            raw_value = rule.pop("_raw")
            if rule["action_type"] not in RULE_ACTION_TYPES:
                fail("variant_rules_json", "bom_error_variant_action_invalid", "Invalid variant rule action", n)
                continue
            if rule["action_type"] not in SUPPORTED_RULE_ACTIONS:
                fail("variant_rules_json", "bom_error_variant_action_invalid", "Invalid variant rule action", n)
            if rule["packing_scope"] != SCOPE_ALL or rule["color_scope"] != SCOPE_ALL:
                fail("variant_rules_json", "error_invalid_value", "Invalid value", n)
            if rule["size_scope"] == SCOPE_SPECIFIC and not rule["size_id"]:
                fail("variant_rules_json", "bom_error_size_required_for_specific_scope",
                     "Size is required for SPECIFIC scope", n)
            if rule["packing_scope"] == SCOPE_SPECIFIC and not rule["packing_type_id"]:
                fail("variant_rules_json", "bom_error_packing_required_for_specific_scope",
                     "Packing type is required for SPECIFIC scope", n)
            if rule["color_scope"] == SCOPE_SPECIFIC and not rule["color_id"]:
                fail("variant_rules_json", "bom_error_color_required_for_specific_scope",
                     "Color is required for SPECIFIC scope", n)
            if rule["size_scope"] == SCOPE_SPECIFIC and rule["size_id"] and rule["size_id"] not in sizes:
                fail("variant_rules_json", "error_invalid_value", "Invalid value", f"{n} (size)")
            if rule["color_scope"] == SCOPE_SPECIFIC and rule["color_id"] and rule["color_id"] not in colors:
                fail("variant_rules_json", "error_invalid_value", "Invalid value", f"{n} (color)")
            if rule["material_scope"] == SCOPE_SPECIFIC:
                if not rule["target_rm_item_id"]:
                    fail("variant_rules_json", "bom_error_material_required_for_specific_scope",
                         "Target material is required for SPECIFIC scope", n)
                else:
                    target = targets.get(rule["target_rm_item_id"])
                    if target is None or target.item_type != "RM":
                        fail("variant_rules_json", "bom_error_material_must_be_rm",
                             "Target material must be an RM item", n)

            if rule["size_scope"] == SCOPE_ALL:
                rule["size_id"] = None
            if rule["packing_scope"] == SCOPE_ALL:
                rule["packing_type_id"] = None
            if rule["color_scope"] == SCOPE_ALL:
                rule["color_id"] = None
            if rule["material_scope"] == SCOPE_ALL:
                rule["target_rm_item_id"] = None

            if raw_value and raw_value != "{}" and not rule["new_value"]:
                fail("variant_rules_json", "bom_error_variant_value_invalid_json",
                     "Rule value must be a valid JSON object", n)
            qty = to_positive_number(rule["new_value"].get("qty"))
            uom_id = to_id(rule["new_value"].get("uom_id"))
            if not qty:
                fail("variant_rules_json", "error_invalid_value", "Invalid value", f"{n} (qty)")
            else:
                rule["new_value"]["qty"] = qty
            if not uom_id:
                fail("variant_rules_json", "error_invalid_value", "Invalid value", f"{n} (uom)")
            else:
                rule["new_value"]["uom_id"] = uom_id
        return rules

    def validate_required_rates(self, rm_lines: list[dict[str, Any]]) -> None:
        keys = [(l["rm_item_id"], l["color_id"] or 0, l["size_id"] or 0) for l in rm_lines]
        item_ids = {k[0] for k in keys if k[0]}
        if not item_ids:
            return
        available = {
            (r.rm_item_id, r.color_id or 0, r.size_id or 0)
            for r in self.session.execute(
                select(RmPurchaseRate).where(
                    RmPurchaseRate.rm_item_id.in_(item_ids),
                    RmPurchaseRate.is_active.is_(True),
                )
            ).scalars()
        }
        missing = [k for k in keys if k not in available]
        if not missing:
            return

        names = {i.id: i.name for i in self._items(item_ids).values()}
        missing_names: list[str] = []
        for item_id, _, _ in missing:
            name = names.get(item_id) or str(item_id)
            if name not in missing_names:
                missing_names.append(name)
        detail = (
            f"{self._t('bom_error_missing_material_rates_detail', 'Missing active purchase rates for')}: "
            f"{', '.join(missing_names)}"
        )
        logger.info("bom_validation_missing_rates", extra={"items": missing_names})
        raise ValidationError(
            self._t("bom_error_missing_material_rates", "Missing required material rates."),
            [ValidationDetail("rm_lines_json", detail)],
        )


def _is_production(dept: Department | None) -> bool:
    return dept is not None and bool(dept.is_active) and bool(dept.is_production)
