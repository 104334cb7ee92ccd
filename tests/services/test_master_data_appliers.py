"""Master-data applier tests.

Covers:
- TableApplier insert/update/toggle/delete with child id-lists
- Meta keys never reach column writes
- Duplicate names surface as DuplicateNameError
- ItemApplier companion SFG handling and RM rates
- SkuApplier variant creation and SKU code generation
"""

from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from change_control.domain.approval import ApprovalRequest, ApprovalStatus, RequestType
from change_control.exceptions import DuplicateNameError, EntityNotFoundError
from change_control.models.access import User, UserBranch
from change_control.models.master_data import (
    Item,
    ItemUsage,
    Party,
    PartyBranch,
    RmPurchaseRate,
    Size,
    SizeItemType,
    Sku,
    Uom,
    Variant,
)
from change_control.services.approval_applier import default_appliers
from change_control.services.master_data_appliers import (
    build_sku_code,
    column_values,
    split_sfg_name,
    to_code,
)

NOW = datetime(2026, 3, 10, 10, 0, tzinfo=timezone.utc)
DECIDER = 1


def request(entity_type, entity_id, new_value):
    return ApprovalRequest(
        id=1,
        branch_id=1,
        request_type=RequestType.MASTER_DATA_CHANGE,
        entity_type=entity_type,
        entity_id=str(entity_id),
        summary=None,
        old_value=None,
        new_value=new_value,
        status=ApprovalStatus.PENDING,
        requested_by=2,
        requested_at=NOW,
    )


@pytest.fixture
def appliers():
    return default_appliers()


def apply(appliers, session, entity_type, entity_id, new_value):
    return appliers[entity_type].apply(session, request(entity_type, entity_id, new_value), DECIDER, NOW)


class TestHelpers:
    def test_column_values_drop_meta_and_audit(self):
        values = column_values(Uom, {"name": "Dozen", "_summary": "x", "item_types": ["FG"], "id": 9, "bogus": 1})
        assert values == {"name": "Dozen"}

    def test_to_code(self):
        assert to_code("Oxford Shoe - Upper!") == "oxford_shoe_upper"

    def test_sku_code(self):
        assert build_sku_code("Oxford", ["42", None, "black"]) == "OXFORD 42 BLACK"
        assert split_sfg_name("Runner - UPPER", "runner_upper") == ("Runner", "UPPER")
        assert split_sfg_name(None, "runner_upper") == ("runner upper", "")


class TestTableApplier:
    def test_insert_with_child_map(self, session, appliers):
        assert apply(appliers, session, "SIZE", "NEW", {"name": "44", "item_types": ["FG", "FG", "SFG"]})
        size = session.execute(select(Size).where(Size.name == "44")).scalar_one()
        assert size.created_by == DECIDER
        types = session.execute(select(SizeItemType.item_type).where(SizeItemType.size_id == size.id)).scalars()
        assert sorted(types) == ["FG", "SFG"]

    def test_update_and_toggle(self, session, seed, appliers):
        uom = seed.uom("Pcs")
        apply(appliers, session, "UOM", uom.id, {"name": "Pieces", "unknown": 1})
        apply(appliers, session, "UOM", uom.id, {"_action": "toggle"})
        session.refresh(uom)
        assert uom.name == "Pieces"
        assert uom.is_active is False
        assert uom.updated_by == DECIDER

    def test_delete(self, session, seed, appliers):
        size = seed.size("46", item_types=("FG",))
        apply(appliers, session, "SIZE", size.id, None)
        session.expire_all()
        assert session.get(Size, size.id) is None
        assert session.execute(select(SizeItemType).where(SizeItemType.size_id == size.id)).first() is None

    def test_missing_target(self, session, appliers):
        with pytest.raises(EntityNotFoundError):
            apply(appliers, session, "COLOR", 424242, {"name": "Teal"})

    def test_duplicate_name(self, session, seed, appliers):
        seed.color("Red")
        with pytest.raises(DuplicateNameError) as exc:
            apply(appliers, session, "COLOR", "NEW", {"name": "Red"})
        assert exc.value.field == "name"

    def test_user_toggle_uses_status(self, session, seed, appliers):
        branch = seed.branch()
        user = seed.user(branches=(branch,))
        apply(appliers, session, "USER", user.id, {"_action": "toggle", "is_active": False})
        session.refresh(user)
        assert user.status == "inactive"

    def test_user_branch_list_rewritten(self, session, seed, appliers):
        first, second = seed.branch(), seed.branch()
        user = seed.user(branches=(first,))
        apply(appliers, session, "USER", user.id, {"branch_ids": [second.id]})
        branches = session.execute(select(UserBranch.branch_id).where(UserBranch.user_id == user.id)).scalars()
        assert list(branches) == [second.id]
        assert session.get(User, user.id).updated_by == DECIDER

    def test_party_branch_map_replaced(self, session, seed, appliers):
        first, second = seed.branch(), seed.branch()
        apply(appliers, session, "PARTY", "NEW", {"name": "Lahore Leather", "phone": "042", "branch_ids": [first.id]})
        party = session.execute(select(Party).where(Party.name == "Lahore Leather")).scalar_one()

        apply(appliers, session, "PARTY", party.id, {"name": "Lahore Leather", "branch_ids": [second.id, second.id]})
        branches = session.execute(select(PartyBranch.branch_id).where(PartyBranch.party_id == party.id)).scalars()
        assert list(branches) == [second.id]


class TestItemApplier:
    def test_rm_created_with_rates(self, session, seed, appliers):
        kg = seed.uom("KG")
        apply(appliers, session, "ITEM", "NEW", {
            "item_type": "RM", "name": "Sole Rubber", "base_uom_id": kg.id,
            "rates": [{"purchase_rate": "120.50"}],
        })
        item = session.execute(select(Item).where(Item.name == "Sole Rubber")).scalar_one()
        assert item.code == "sole_rubber"
        rates = session.execute(select(RmPurchaseRate).where(RmPurchaseRate.rm_item_id == item.id)).scalars().all()
        assert len(rates) == 1
        assert rates[0].avg_purchase_rate == rates[0].purchase_rate

    def test_fg_with_sfg_creates_companion(self, session, seed, appliers):
        pair = seed.uom("PAIR")
        apply(appliers, session, "ITEM", "NEW", {
            "item_type": "FG", "name": "Runner", "code": "FG-RUN", "base_uom_id": pair.id,
            "uses_sfg": True, "sfg_part_type": "STEP",
        })
        fg = session.execute(select(Item).where(Item.code == "FG-RUN")).scalar_one()
        sfg_ids = session.execute(select(ItemUsage.sfg_item_id).where(ItemUsage.fg_item_id == fg.id)).scalars().all()
        assert len(sfg_ids) == 1
        sfg = session.get(Item, sfg_ids[0])
        assert sfg.name == "Runner - STEP"
        assert sfg.item_type == "SFG"

    def test_fg_toggle_cascades_to_linked_sfg(self, session, seed, appliers):
        pair = seed.uom("PAIR")
        apply(appliers, session, "ITEM", "NEW", {
            "item_type": "FG", "name": "Loafer", "code": "FG-LOAF", "base_uom_id": pair.id, "uses_sfg": True,
        })
        fg = session.execute(select(Item).where(Item.code == "FG-LOAF")).scalar_one()
        apply(appliers, session, "ITEM", fg.id, {"_action": "toggle", "is_active": False})
        rows = session.execute(select(Item.is_active).where(Item.name.like("Loafer%"))).scalars().all()
        assert rows == [False, False]

    def test_item_without_type_not_applied(self, session, appliers):
        assert apply(appliers, session, "ITEM", "NEW", {"name": "Mystery"}) is False


class TestSkuApplier:
    def test_create_builds_code(self, session, bom_world, appliers):
        assert apply(appliers, session, "SKU", "NEW", {
            "item_id": bom_world.fg.id, "size_id": bom_world.size.id, "color_id": bom_world.color.id,
        })
        codes = session.execute(select(Sku.sku_code)).scalars().all()
        assert "OXFORD SHOE 42 BLACK" in codes

    def test_sfg_code_carries_part_suffix(self, session, bom_world, appliers):
        apply(appliers, session, "SKU", "NEW", {
            "item_id": bom_world.sfg.id, "size_id": bom_world.size.id, "color_id": bom_world.color.id,
        })
        codes = session.execute(select(Sku.sku_code)).scalars().all()
        assert "OXFORD SHOE 42 BLACK UPPER" in codes

    def test_toggle_variant_and_skus(self, session, bom_world, appliers):
        variant_id = bom_world.sfg_sku.variant_id
        apply(appliers, session, "SKU", variant_id, {"_action": "toggle", "is_active": False})
        session.expire_all()
        assert session.get(Variant, variant_id).is_active is False
        assert session.get(Sku, bom_world.sfg_sku.id).is_active is False

    def test_delete_payload_is_skipped(self, session, bom_world, appliers):
        assert apply(appliers, session, "SKU", bom_world.sfg_sku.variant_id, None) is False
