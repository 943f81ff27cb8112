"""
approval_services.approval_status -- Read model for one approval.

Responsibility:
    Build a viewer-specific status view of an approval: labels for the
    instance and each stage, per-stage vote counts against the required
    number, the viewer's capabilities and whether the viewer must act.

Architecture position:
    Services (read side).  Reads through the ApprovalRepository only and
    never writes.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from approval_engines.capabilities import get_capabilities
from approval_engines.state_machine import get_active_stage, get_progress
from approval_engines.voting import required_approvals
from approval_kernel.domain.approval import (
    ApprovalCapabilities,
    ApprovalInstance,
    ApprovalReference,
    ApprovalStatus,
    Stage,
    StageProgress,
    StageStatus,
)
from approval_kernel.domain.ports import ApprovalRepository
from approval_kernel.domain.result import EngineResult, ErrorCode

STATUS_LABELS: dict[ApprovalStatus, str] = {
    ApprovalStatus.PENDING: "Pending Approval",
    ApprovalStatus.APPROVED: "Approved",
    ApprovalStatus.REJECTED: "Rejected",
    ApprovalStatus.EXPIRED: "Expired",
    ApprovalStatus.CANCELLED: "Cancelled",
}

STAGE_STATUS_LABELS: dict[StageStatus, str] = {
    StageStatus.PENDING: "Pending",
    StageStatus.ACTIVE: "Awaiting Approval",
    StageStatus.APPROVED: "Approved",
    StageStatus.REJECTED: "Rejected",
    StageStatus.SKIPPED: "Skipped",
}


@dataclass(frozen=True)
class StageView:
    name: str
    sequence: int
    status: StageStatus
    status_label: str
    approvers: tuple[str, ...]
    voting_rule: str
    vote_count: int
    required_votes: int
    has_viewer_voted: bool


@dataclass(frozen=True)
class ApprovalStatusView:
    approval_id: str
    policy_id: str
    status: ApprovalStatus
    status_label: str
    initiator_id: str
    capabilities: ApprovalCapabilities
    progress: StageProgress
    stages: tuple[StageView, ...]
    active_stage: StageView | None
    created_at: datetime
    updated_at: datetime
    expires_at: datetime | None
    requires_action: bool
    action_summary: str | None = None


def build_stage_view(stage: Stage, viewer_id: str) -> StageView:
    return StageView(
        name=stage.name,
        sequence=stage.sequence,
        status=stage.status,
        status_label=STAGE_STATUS_LABELS[stage.status],
        approvers=stage.approvers,
        voting_rule=stage.voting_rule.describe(),
        vote_count=len(stage.votes),
        required_votes=required_approvals(stage.voting_rule, stage.approvers),
        has_viewer_voted=stage.vote_of(viewer_id) is not None,
    )


def build_status_view(approval: ApprovalInstance, viewer_id: str) -> ApprovalStatusView:
    capabilities = get_capabilities(approval, viewer_id)
    stages = tuple(build_stage_view(s, viewer_id) for s in approval.stages)
    active = get_active_stage(approval)
    active_view = stages[active.sequence] if active is not None else None

    summary = None
    if capabilities.can_vote and active_view is not None:
        summary = f'Your approval is needed for "{active_view.name}"'

    return ApprovalStatusView(
        approval_id=approval.approval_id,
        policy_id=approval.policy_id,
        status=approval.status,
        status_label=STATUS_LABELS[approval.status],
        initiator_id=approval.initiator_id,
        capabilities=capabilities,
        progress=get_progress(approval),
        stages=stages,
        active_stage=active_view,
        created_at=approval.created_at,
        updated_at=approval.updated_at,
        expires_at=approval.expires_at,
        requires_action=capabilities.can_vote,
        action_summary=summary,
    )


class ApprovalStatusQuery:
    """Look up approvals and render them for a viewer."""

    def __init__(self, repository: ApprovalRepository) -> None:
        self._repository = repository

    def by_id(self, approval_id: str, viewer_id: str) -> EngineResult[ApprovalStatusView]:
        loaded = self._repository.find_by_id(approval_id)
        if not loaded.success:
            return EngineResult.from_error(loaded.error)
        if loaded.value is None:
            return EngineResult.fail(
                ErrorCode.NOT_FOUND,
                f"Approval {approval_id} not found",
                approval_id=approval_id,
            )
        return EngineResult.ok(build_status_view(loaded.value, viewer_id))

    def by_reference(
        self, reference: ApprovalReference, viewer_id: str,
    ) -> EngineResult[ApprovalStatusView]:
        loaded = self._repository.find_by_reference(reference)
        if not loaded.success:
            return EngineResult.from_error(loaded.error)
        if loaded.value is None:
            return EngineResult.fail(
                ErrorCode.NOT_FOUND,
                f"No approval linked to {reference.key}",
                reference=reference.key,
            )
        return EngineResult.ok(build_status_view(loaded.value, viewer_id))

    def pending_for(self, principal_id: str) -> EngineResult[list[ApprovalStatusView]]:
        """Views of every approval currently waiting on ``principal_id``."""
        found = self._repository.find_pending_for_principal(principal_id)
        if not found.success:
            return EngineResult.from_error(found.error)
        return EngineResult.ok([build_status_view(a, principal_id) for a in found.value])
