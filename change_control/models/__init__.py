"""ORM models for the change-control kernel."""

from change_control.models.access import (
    Branch,
    PermissionScope,
    RolePermission,
    RoleTemplate,
    User,
    UserBranch,
    UserPermissionOverride,
)
from change_control.models.activity_log import ACTIVITY_ACTIONS, ActivityLog
from change_control.models.approval import ApprovalPolicyModel, ApprovalRequestModel
from change_control.models.bom import (
    SINGLE_DRAFT_INDEX,
    BomChangeLog,
    BomHeader,
    BomLabourLine,
    BomRmLine,
    BomSfgLine,
    BomVariantRule,
)
from change_control.models.master_data import (
    ITEM_TYPES,
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
from change_control.models.period import PeriodControl
from change_control.models.voucher import VoucherHeader

__all__ = [
    "Branch",
    "RoleTemplate",
    "User",
    "UserBranch",
    "PermissionScope",
    "RolePermission",
    "UserPermissionOverride",
    "ActivityLog",
    "ACTIVITY_ACTIONS",
    "ApprovalPolicyModel",
    "ApprovalRequestModel",
    "BomHeader",
    "BomRmLine",
    "BomSfgLine",
    "BomLabourLine",
    "BomVariantRule",
    "BomChangeLog",
    "SINGLE_DRAFT_INDEX",
    "ITEM_TYPES",
    "Uom",
    "Size",
    "Color",
    "Grade",
    "PackingType",
    "City",
    "ProductGroup",
    "ProductSubgroup",
    "ProductType",
    "PartyGroup",
    "AccountGroup",
    "Department",
    "UomConversion",
    "SizeItemType",
    "ProductGroupItemType",
    "ProductSubgroupItemType",
    "Account",
    "AccountBranch",
    "Party",
    "PartyBranch",
    "Labour",
    "LabourDepartment",
    "Employee",
    "LabourRate",
    "Item",
    "ItemUsage",
    "RmPurchaseRate",
    "Variant",
    "Sku",
    "PeriodControl",
    "VoucherHeader",
]
