"""Services for the change-control kernel (write side)."""

from change_control.services.activity_log_service import ActivityLogService
from change_control.services.approval_applier import ApprovalApplier, EntityApplier, default_appliers
from change_control.services.approval_decision_service import ApprovalDecisionService, DecisionSettings
from change_control.services.approval_gate import ApprovalGate, EntityRef, GateResult, GateSettings
from change_control.services.bom_service import (
    BomSaveResult,
    BomService,
    BomSummary,
    BomVersion,
    BomWriteOutcome,
)
from change_control.services.bom_validator import BomValidator
from change_control.services.branch_period_gate import BranchPeriodGate
from change_control.services.event_bus import DecisionEventHub, DecisionHubSettings, EventBus
from change_control.services.notification_service import AdminNotificationService, LoggingMailer, MailMessage
from change_control.services.permission_service import PermissionService
from change_control.services.policy_service import ApprovalPolicy, PolicyService
from change_control.services.request_pipeline import GatedWrite, RequestContext, RequestPipeline, WriteRequest

__all__ = [
    "ActivityLogService",
    "AdminNotificationService",
    "ApprovalApplier",
    "ApprovalDecisionService",
    "ApprovalGate",
    "ApprovalPolicy",
    "BomSaveResult",
    "BomService",
    "BomSummary",
    "BomValidator",
    "BomVersion",
    "BomWriteOutcome",
    "BranchPeriodGate",
    "DecisionEventHub",
    "DecisionHubSettings",
    "DecisionSettings",
    "EntityApplier",
    "EntityRef",
    "EventBus",
    "GateResult",
    "GateSettings",
    "GatedWrite",
    "LoggingMailer",
    "MailMessage",
    "PermissionService",
    "PolicyService",
    "RequestContext",
    "RequestPipeline",
    "WriteRequest",
    "default_appliers",
]
