"""BomValidator rule tests.

Covers:
- Header rules (item, level vs item type, output quantity)
- Line rules with 1-based line numbers in the messages
- Production department and labour department checks
- SFG lines need an approved BOM for the SFG item
- Variant rule scopes, targets and JSON values
- Purchase-rate coverage runs only after structural checks pass
"""

import pytest

from change_control.exceptions import ValidationError


@pytest.fixture
def validator(bom_service):
    return bom_service.validator


def _messages(exc_info):
    return [(d.field, d.message) for d in exc_info.value.details]


class TestHeader:
    def test_valid_input_normalised(self, validator, bom_world):
        result = validator.validate(bom_world.input())
        assert result["header"]["level"] == "FINISHED"
        assert result["rm_lines"][0]["uom_id"] == bom_world.uom.id
        assert result["labour_lines"][0]["size_id"] is None

    def test_missing_everything(self, validator):
        with pytest.raises(ValidationError) as exc:
            validator.validate({})
        fields = {f for f, _ in _messages(exc)}
        assert {"item_id", "level", "output_qty", "output_uom_id"} <= fields

    def test_level_must_match_item_type(self, validator, bom_world):
        with pytest.raises(ValidationError) as exc:
            validator.validate(bom_world.input(level="SEMI_FINISHED"))
        assert ("level", "Level must match item type.") in _messages(exc)

    def test_zero_output_qty(self, validator, bom_world):
        with pytest.raises(ValidationError) as exc:
            validator.validate(bom_world.input(output_qty=0))
        assert "output_qty" in {f for f, _ in _messages(exc)}


class TestLines:
    def test_rm_line_must_be_rm_item(self, validator, bom_world):
        data = bom_world.input()
        data["rm_lines"].append({"rm_item_id": bom_world.fg.id, "dept_id": bom_world.dept.id, "qty": 1})
        with pytest.raises(ValidationError) as exc:
            validator.validate(data)
        assert ("rm_lines_json", "Raw material line must reference an RM item #2") in _messages(exc)

    def test_loss_pct_range(self, validator, bom_world):
        data = bom_world.input()
        data["rm_lines"][0]["normal_loss_pct"] = 120
        with pytest.raises(ValidationError) as exc:
            validator.validate(data)
        assert ("rm_lines_json", "Normal loss % must be between 0 and 100 #1") in _messages(exc)

    def test_non_production_department(self, validator, bom_world):
        data = bom_world.input()
        data["rm_lines"][0]["dept_id"] = bom_world.office.id
        with pytest.raises(ValidationError) as exc:
            validator.validate(data)
        assert ("rm_lines_json", "Department must be an active production department #1") in _messages(exc)

    def test_labour_department_not_allowed(self, validator, seed, bom_world):
        cutting = seed.department("Cutting")
        data = bom_world.input()
        data["labour_lines"][0]["dept_id"] = cutting.id
        with pytest.raises(ValidationError) as exc:
            validator.validate(data)
        assert ("labour_lines_json", "Selected department is not allowed for this labour #1") in _messages(exc)

    def test_labour_extra_department_allowed(self, validator, seed, bom_world):
        cutting = seed.department("Cutting")
        cutter = seed.labour(bom_world.dept, extra_depts=(cutting,), name="Cutter")
        data = bom_world.input()
        data["labour_lines"] = [{"dept_id": cutting.id, "labour_id": cutter.id, "rate_value": 0}]
        assert validator.validate(data)["labour_lines"][0]["dept_id"] == cutting.id

    def test_specific_labour_scope_needs_size(self, validator, bom_world):
        data = bom_world.input()
        data["labour_lines"][0]["size_scope"] = "SPECIFIC"
        with pytest.raises(ValidationError) as exc:
            validator.validate(data)
        assert ("labour_lines_json", "Size is required for SPECIFIC scope #1") in _messages(exc)

    def test_bad_rate_type(self, validator, bom_world):
        data = bom_world.input()
        data["labour_lines"][0]["rate_type"] = "PER_HOUR"
        with pytest.raises(ValidationError) as exc:
            validator.validate(data)
        assert ("labour_lines_json", "Invalid labour rate type #1") in _messages(exc)


class TestSfgLines:
    def _with_sfg(self, bom_world):
        data = bom_world.input()
        data["sfg_lines"] = [{
            "fg_size_id": bom_world.size.id,
            "sfg_sku_id": bom_world.sfg_sku.id,
            "required_qty": 1,
        }]
        return data

    def test_sfg_requires_approved_bom(self, validator, bom_world):
        with pytest.raises(ValidationError) as exc:
            validator.validate(self._with_sfg(bom_world))
        assert ("sfg_lines_json", "Selected SFG item has no approved BOM #1") in _messages(exc)

    def test_sfg_references_latest_approved_bom(self, validator, bom_service, bom_world, principals):
        sfg_input = bom_world.input(item_id=bom_world.sfg.id, level="SEMI_FINISHED")
        sfg_bom = bom_service.save_draft(sfg_input)
        bom_service.approve_direct(sfg_bom.id, principals.admin.id)

        result = validator.validate(self._with_sfg(bom_world))
        assert result["sfg_lines"][0]["ref_approved_bom_id"] == sfg_bom.id
        assert result["sfg_lines"][0]["uom_id"] == bom_world.pair.id

    def test_sfg_lines_forbidden_at_sfg_level(self, validator, bom_world):
        data = self._with_sfg(bom_world)
        data["header"].update(item_id=bom_world.sfg.id, level="SEMI_FINISHED")
        with pytest.raises(ValidationError) as exc:
            validator.validate(data)
        assert ("sfg_lines_json", "Semi-finished BOM cannot include SFG section lines.") in _messages(exc)


class TestVariantRules:
    def _rule(self, bom_world, **overrides):
        rule = {
            "action_type": "ADJUST_QTY",
            "size_scope": "SPECIFIC",
            "size_id": bom_world.size.id,
            "material_scope": "SPECIFIC",
            "target_rm_item_id": bom_world.rm.id,
            "new_value": {"qty": 2, "uom_id": bom_world.uom.id},
        }
        rule.update(overrides)
        return rule

    def _validate(self, validator, bom_world, rule):
        data = bom_world.input()
        data["variant_rules"] = [rule]
        return validator.validate(data)

    def test_valid_rule(self, validator, bom_world):
        result = self._validate(validator, bom_world, self._rule(bom_world))
        rule = result["variant_rules"][0]
        assert rule["packing_type_id"] is None
        assert rule["new_value"] == {"qty": 2, "uom_id": bom_world.uom.id}

    def test_unsupported_action(self, validator, bom_world):
        with pytest.raises(ValidationError) as exc:
            self._validate(validator, bom_world, self._rule(bom_world, action_type="REPLACE_RM"))
        assert ("variant_rules_json", "Invalid variant rule action #1") in _messages(exc)

    def test_target_must_be_rm(self, validator, bom_world):
        with pytest.raises(ValidationError) as exc:
            self._validate(validator, bom_world, self._rule(bom_world, target_rm_item_id=bom_world.sfg.id))
        assert ("variant_rules_json", "Target material must be an RM item #1") in _messages(exc)

    def test_size_outside_universe(self, validator, seed, bom_world):
        stray = seed.size("99")
        with pytest.raises(ValidationError) as exc:
            self._validate(validator, bom_world, self._rule(bom_world, size_id=stray.id))
        assert ("variant_rules_json", "Invalid value #1 (size)") in _messages(exc)

    def test_colour_scope_must_be_all(self, validator, bom_world):
        with pytest.raises(ValidationError) as exc:
            self._validate(validator, bom_world, self._rule(
                bom_world, color_scope="SPECIFIC", color_id=bom_world.color.id,
            ))
        assert ("variant_rules_json", "Invalid value #1") in _messages(exc)

    def test_invalid_json_value(self, validator, bom_world):
        rule = self._rule(bom_world, new_value="{not json")
        with pytest.raises(ValidationError) as exc:
            self._validate(validator, bom_world, rule)
        messages = _messages(exc)
        assert ("variant_rules_json", "Rule value must be a valid JSON object #1") in messages
        assert ("variant_rules_json", "Invalid value #1 (qty)") in messages


class TestRates:
    def test_missing_rate_reported_by_name(self, validator, bom_world):
        data = bom_world.input()
        data["rm_lines"].append({"rm_item_id": bom_world.rm_unrated.id, "dept_id": bom_world.dept.id, "qty": 1})
        with pytest.raises(ValidationError) as exc:
            validator.validate(data)
        assert exc.value.message == "Missing required material rates."
        assert _messages(exc) == [("rm_lines_json", "Missing active purchase rates for: Glue")]

    def test_rate_check_waits_for_structural_errors(self, validator, bom_world):
        data = bom_world.input(output_qty=0)
        data["rm_lines"].append({"rm_item_id": bom_world.rm_unrated.id, "dept_id": bom_world.dept.id, "qty": 1})
        with pytest.raises(ValidationError) as exc:
            validator.validate(data)
        assert exc.value.message == "Please fix validation errors."
