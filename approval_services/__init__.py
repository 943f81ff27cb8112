"""
Approval services: use cases orchestrating the pure engines, plus the
adapters (repositories, providers, notification services) they run on.
"""

from approval_services.approval_status import (
    ApprovalStatusQuery,
    ApprovalStatusView,
    StageView,
    build_status_view,
)
from approval_services.cancel_approval import CancelApprovalUseCase
from approval_services.expiry_sweep import ExpirySweep
from approval_services.memory_repository import InMemoryApprovalRepository
from approval_services.notifications import (
    NullNotificationService,
    RecordingNotificationService,
    dispatch,
)
from approval_services.process_vote import ProcessVoteOutcome, ProcessVoteUseCase
from approval_services.request_approval import RequestApprovalOutcome, RequestApprovalUseCase
from approval_services.sql_repository import SqlApprovalRepository
from approval_services.static_providers import StaticApproverResolver, StaticPolicyProvider

__all__ = [
    "ApprovalStatusQuery",
    "ApprovalStatusView",
    "CancelApprovalUseCase",
    "ExpirySweep",
    "InMemoryApprovalRepository",
    "NullNotificationService",
    "ProcessVoteOutcome",
    "ProcessVoteUseCase",
    "RecordingNotificationService",
    "RequestApprovalOutcome",
    "RequestApprovalUseCase",
    "SqlApprovalRepository",
    "StageView",
    "StaticApproverResolver",
    "StaticPolicyProvider",
    "build_status_view",
    "dispatch",
]
