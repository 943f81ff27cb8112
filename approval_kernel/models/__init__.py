"""ORM models for the approval kernel."""

from approval_kernel.models.approval import (
    ApprovalInstanceModel,
    ApprovalReferenceModel,
    ApprovalStageApproverModel,
    ApprovalStageModel,
    ApprovalVoteModel,
)

__all__ = [
    "ApprovalInstanceModel",
    "ApprovalStageModel",
    "ApprovalStageApproverModel",
    "ApprovalVoteModel",
    "ApprovalReferenceModel",
]
