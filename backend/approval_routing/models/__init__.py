from approval_routing.models.tier_configuration import TierConfiguration, WorkflowCategory
from approval_routing.models.workflow import (
    RejectionHistoryEntry,
    StepAction,
    WorkflowInstance,
    WorkflowStatus,
    WorkflowStepHistory,
)
from approval_routing.models.delegation import (
    DelegationAuditAction,
    DelegationAuditEntry,
    DelegationRule,
    DelegationStatus,
    DelegationType,
    ProxyApprovalRecord,
)
from approval_routing.models.notification import NotificationIntent, NotificationType

__all__ = [
    "TierConfiguration", "WorkflowCategory",
    "WorkflowInstance", "WorkflowStepHistory", "RejectionHistoryEntry", "WorkflowStatus", "StepAction",
    "DelegationRule", "DelegationAuditEntry", "ProxyApprovalRecord",
    "DelegationType", "DelegationStatus", "DelegationAuditAction",
    "NotificationIntent", "NotificationType",
]
