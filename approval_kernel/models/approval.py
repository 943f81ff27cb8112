"""
Module: approval_kernel.models.approval
Responsibility: ORM persistence for approval instances, their stages, the
    approver snapshot of each stage, votes and entity references.

Architecture position: Kernel > Models.  May import from db/ and, lazily inside
    to_dto/from_dto, from domain/.

Invariants enforced:
    - Lifecycle: DB check constraints limit instance and stage status values.
    - Stage order: UNIQUE(approval_id, sequence).
    - One vote per principal per stage: UNIQUE(stage_id, principal_id).
    - One approval per business entity: UNIQUE(entity_type, entity_id) on
      approval_references.
    - Optimistic concurrency: ``version`` is bumped by every successful save;
      the repository issues ``UPDATE ... WHERE version = :expected``.

Failure modes:
    - IntegrityError on a duplicate approval_id, vote or reference.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import (
    JSON,
    CheckConstraint,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from approval_kernel.db.base import UUID, Base, UUIDString

if TYPE_CHECKING:
    from approval_kernel.domain.approval import (
        ApprovalInstance,
        Stage,
        Vote,
    )


class ApprovalInstanceModel(Base):
    """Persistent approval instance.

    Contract:
        Status transitions are validated by the state machine before a save
        reaches this table.  ``entity_type`` is denormalized from metadata so
        list queries can filter on it.
    """

    __tablename__ = "approval_instances"

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'approved', 'rejected', 'cancelled', 'expired')",
            name="ck_approval_instances_valid_status",
        ),
        CheckConstraint("version >= 1", name="ck_approval_instances_version"),
        Index("ix_approval_instances_status_expiry", "status", "expires_at"),
        Index("ix_approval_instances_initiator", "initiator_id", "created_at"),
    )

    approval_id: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    policy_id: Mapped[str] = mapped_column(String(100), nullable=False)
    initiator_id: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="pending")
    version: Mapped[int] = mapped_column(nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    updated_at: Mapped[datetime] = mapped_column(nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(nullable=True)
    closed_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    close_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    instance_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict,
    )

    stages: Mapped[list["ApprovalStageModel"]] = relationship(
        "ApprovalStageModel",
        back_populates="instance",
        order_by="ApprovalStageModel.sequence",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return (
            f"<ApprovalInstance {self.approval_id} "
            f"status={self.status} version={self.version}>"
        )

    def to_dto(self) -> ApprovalInstance:
        """Convert ORM model to frozen domain DTO."""
        from approval_kernel.domain.approval import ApprovalInstance as InstanceDTO
        from approval_kernel.domain.approval import ApprovalStatus

        return InstanceDTO(
            approval_id=self.approval_id,
            policy_id=self.policy_id,
            initiator_id=self.initiator_id,
            status=ApprovalStatus(self.status),
            stages=tuple(stage.to_dto() for stage in self.stages),
            created_at=self.created_at,
            updated_at=self.updated_at,
            expires_at=self.expires_at,
            version=self.version,
            metadata=dict(self.instance_metadata or {}),
            closed_by=self.closed_by,
            close_reason=self.close_reason,
        )

    @classmethod
    def from_dto(cls, dto: ApprovalInstance, version: int) -> ApprovalInstanceModel:
        """Create ORM model (with stages, approvers and votes) from a domain DTO."""
        metadata = dict(dto.metadata)
        return cls(
            approval_id=dto.approval_id,
            policy_id=dto.policy_id,
            initiator_id=dto.initiator_id,
            entity_type=metadata.get("entity_type"),
            status=dto.status.value,
            version=version,
            created_at=dto.created_at,
            updated_at=dto.updated_at,
            expires_at=dto.expires_at,
            closed_by=dto.closed_by,
            close_reason=dto.close_reason,
            instance_metadata=metadata,
            stages=[ApprovalStageModel.from_dto(stage) for stage in dto.stages],
        )

    def apply_dto(self, dto: ApprovalInstance, version: int) -> None:
        """Copy mutable state from ``dto`` onto this row and its children.

        Stage count, names and approver snapshots never change after
        creation, so stages are updated in place by sequence.
        """
        self.status = dto.status.value
        self.version = version
        self.updated_at = dto.updated_at
        self.expires_at = dto.expires_at
        self.closed_by = dto.closed_by
        self.close_reason = dto.close_reason
        self.instance_metadata = dict(dto.metadata)
        self.entity_type = dto.metadata.get("entity_type")
        by_sequence = {stage.sequence: stage for stage in self.stages}
        for stage in dto.stages:
            by_sequence[stage.sequence].apply_dto(stage)


class ApprovalStageModel(Base):
    """One ordered stage of a persisted approval instance."""

    __tablename__ = "approval_stages"

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'active', 'approved', 'rejected', 'skipped')",
            name="ck_approval_stages_valid_status",
        ),
        CheckConstraint(
            "rule_type IN ('any', 'threshold', 'unanimous')",
            name="ck_approval_stages_valid_rule",
        ),
        UniqueConstraint("approval_id", "sequence", name="uq_approval_stages_sequence"),
    )

    approval_id: Mapped[str] = mapped_column(
        String(100),
        ForeignKey("approval_instances.approval_id", ondelete="CASCADE"),
        nullable=False,
    )
    sequence: Mapped[int] = mapped_column(nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    rule_type: Mapped[str] = mapped_column(String(30), nullable=False)
    min_approvals: Mapped[int | None] = mapped_column(nullable=True)
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="pending")
    activated_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    instance: Mapped["ApprovalInstanceModel"] = relationship(
        "ApprovalInstanceModel", back_populates="stages",
    )
    approvers: Mapped[list["ApprovalStageApproverModel"]] = relationship(
        "ApprovalStageApproverModel",
        order_by="ApprovalStageApproverModel.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    votes: Mapped[list["ApprovalVoteModel"]] = relationship(
        "ApprovalVoteModel",
        order_by="ApprovalVoteModel.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<ApprovalStage {self.approval_id}#{self.sequence} {self.name} status={self.status}>"

    def to_dto(self) -> Stage:
        from approval_kernel.domain.approval import (
            Stage as StageDTO,
            StageStatus,
            VotingRule,
            VotingRuleType,
        )

        return StageDTO(
            name=self.name,
            sequence=self.sequence,
            approvers=tuple(a.principal_id for a in self.approvers),
            voting_rule=VotingRule(VotingRuleType(self.rule_type), self.min_approvals),
            status=StageStatus(self.status),
            votes=tuple(v.to_dto() for v in self.votes),
            activated_at=self.activated_at,
            completed_at=self.completed_at,
        )

    @classmethod
    def from_dto(cls, dto: Stage) -> ApprovalStageModel:
        return cls(
            sequence=dto.sequence,
            name=dto.name,
            rule_type=dto.voting_rule.rule_type.value,
            min_approvals=dto.voting_rule.min_approvals,
            status=dto.status.value,
            activated_at=dto.activated_at,
            completed_at=dto.completed_at,
            approvers=[
                ApprovalStageApproverModel(principal_id=p, position=i)
                for i, p in enumerate(dto.approvers)
            ],
            votes=[ApprovalVoteModel.from_dto(v, i) for i, v in enumerate(dto.votes)],
        )

    def apply_dto(self, dto: Stage) -> None:
        self.status = dto.status.value
        self.activated_at = dto.activated_at
        self.completed_at = dto.completed_at
        existing = {v.principal_id: v for v in self.votes}
        for position, vote in enumerate(dto.votes):
            row = existing.get(vote.principal_id)
            if row is None:
                self.votes.append(ApprovalVoteModel.from_dto(vote, position))
            else:
                row.decision = vote.decision.value
                row.reason = vote.reason
                row.cast_at = vote.timestamp
                row.position = position


class ApprovalStageApproverModel(Base):
    """Approver snapshot row; written once when the instance is created."""

    __tablename__ = "approval_stage_approvers"

    __table_args__ = (
        UniqueConstraint("stage_id", "principal_id", name="uq_approval_stage_approvers"),
        Index("ix_approval_stage_approvers_principal", "principal_id"),
    )

    stage_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("approval_stages.id", ondelete="CASCADE"),
        nullable=False,
    )
    principal_id: Mapped[str] = mapped_column(String(100), nullable=False)
    position: Mapped[int] = mapped_column(nullable=False)


class ApprovalVoteModel(Base):
    """Persistent vote; at most one per principal per stage."""

    __tablename__ = "approval_votes"

    __table_args__ = (
        CheckConstraint(
            "decision IN ('approve', 'reject', 'request_changes')",
            name="ck_approval_votes_valid_decision",
        ),
        UniqueConstraint("stage_id", "principal_id", name="uq_approval_votes_principal"),
    )

    stage_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("approval_stages.id", ondelete="CASCADE"),
        nullable=False,
    )
    principal_id: Mapped[str] = mapped_column(String(100), nullable=False)
    decision: Mapped[str] = mapped_column(String(30), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cast_at: Mapped[datetime] = mapped_column(nullable=False)
    position: Mapped[int] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<ApprovalVote {self.principal_id} decision={self.decision}>"

    def to_dto(self) -> Vote:
        from approval_kernel.domain.approval import Vote as VoteDTO
        from approval_kernel.domain.approval import VoteDecision

        return VoteDTO(
            principal_id=self.principal_id,
            decision=VoteDecision(self.decision),
            timestamp=self.cast_at,
            reason=self.reason,
        )

    @classmethod
    def from_dto(cls, dto: Vote, position: int) -> ApprovalVoteModel:
        return cls(
            principal_id=dto.principal_id,
            decision=dto.decision.value,
            reason=dto.reason,
            cast_at=dto.timestamp,
            position=position,
        )


class ApprovalReferenceModel(Base):
    """Link from a business entity to the approval gating it."""

    __tablename__ = "approval_references"

    __table_args__ = (
        UniqueConstraint("entity_type", "entity_id", name="uq_approval_references_entity"),
        Index("ix_approval_references_approval", "approval_id"),
    )

    entity_type: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(200), nullable=False)
    approval_id: Mapped[str] = mapped_column(
        String(100),
        ForeignKey("approval_instances.approval_id", ondelete="CASCADE"),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<ApprovalReference {self.entity_type}:{self.entity_id} -> {self.approval_id}>"
