"""
approval_engines.state_machine -- Pure approval instance state machine.

Responsibility:
    Create approval instances from a policy and a pre-resolved approver
    snapshot, record votes on the active stage, advance or close stages,
    and cancel or expire pending instances.  Every operation returns a new
    instance inside an ``EngineResult``; inputs are never mutated.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  Time comes in as the
    ``now`` argument; approvers come in already resolved.

Invariants enforced:
    - Lifecycle: only edges in ``APPROVAL_TRANSITIONS`` are taken.
    - Stage ordering: a pending instance has exactly one ``active`` stage,
      the first stage that is not closed; a terminal instance has none.
    - Closed stages are never rewritten.  After a rejection the later
      stages stay ``pending``.
    - A stage without approvers is skipped when it is reached, never
      earlier, so every stage after the active one is ``pending``.
    - One vote per principal per stage: re-voting replaces the earlier
      vote in place (same position, new timestamp).

Failure modes (returned, never raised):
    - INVALID_INPUT: no stages; an empty approver set on a stage of a
      non-skippable policy; ``threshold(n)`` larger than the approver set;
      approver snapshot not aligned with the policy's stages.
    - INVALID_DECISION: decision outside approve / reject / request_changes.
    - NOT_FOUND: no active stage (the instance is terminal).
    - NOT_ACTIVE_STAGE: voter is not an approver on the active stage.
    - INVALID_STATE: cancel/expire on a terminal instance, or expiry
      before ``expires_at``.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import replace
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from approval_engines.tracer import traced_engine
from approval_engines.voting import evaluate_votes
from approval_kernel.domain.approval import (
    ApprovalInstance,
    ApprovalPolicy,
    ApprovalStatus,
    Stage,
    StageOutcome,
    StageProgress,
    StageStatus,
    Vote,
    VoteDecision,
    VotingRuleType,
    can_transition,
)
from approval_kernel.domain.result import EngineResult, ErrorCode
from approval_kernel.exceptions import InvalidDecisionError

ALL_STAGES_SKIPPED = "All stages skipped"
EXPIRED_REASON = "Approval expired"


def _dedupe(principal_ids: Sequence[str]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(p for p in principal_ids if p))


def _first_open_index(stages: Sequence[Stage], start: int = 0) -> int | None:
    for index in range(start, len(stages)):
        if not stages[index].is_closed:
            return index
    return None


def _activate_from(stages: list[Stage], start: int, now: datetime) -> int | None:
    """Activate the first stage at or after ``start`` that has approvers.

    Stages without approvers are skipped as they are reached.  Returns the
    activated index, or None when every remaining stage was skipped.
    """
    for index in range(start, len(stages)):
        stage = stages[index]
        if stage.approvers:
            stages[index] = replace(stage, status=StageStatus.ACTIVE, activated_at=now)
            return index
        stages[index] = replace(stage, status=StageStatus.SKIPPED, completed_at=now)
    return None


def get_active_stage(instance: ApprovalInstance) -> Stage | None:
    """The stage currently accepting votes, if any."""
    if instance.status != ApprovalStatus.PENDING:
        return None
    for stage in instance.stages:
        if stage.status == StageStatus.ACTIVE:
            return stage
    return None


@traced_engine(
    "state_machine.create",
    "1.0",
    fingerprint_fields=("approval_id", "initiator_id", "stage_approvers"),
)
def create_instance(
    approval_id: str,
    initiator_id: str,
    policy: ApprovalPolicy,
    stage_approvers: Sequence[Sequence[str]],
    *,
    now: datetime,
    expires_at: datetime | None = None,
    metadata: Mapping[str, Any] | None = None,
) -> EngineResult[ApprovalInstance]:
    """Build a pending instance with its first open stage active.

    Args:
        stage_approvers: One approver list per ``policy.required_stages``
            entry, in the same order.  Duplicates are dropped.
        now: Creation time; becomes ``created_at``, ``updated_at`` and the
            first stage's ``activated_at``.
    """
    templates = policy.required_stages
    if not templates:
        return EngineResult.fail(
            ErrorCode.INVALID_INPUT,
            f"Policy {policy.policy_id} has no stages",
            policy_id=policy.policy_id,
        )
    if len(stage_approvers) != len(templates):
        return EngineResult.fail(
            ErrorCode.INVALID_INPUT,
            f"Expected approvers for {len(templates)} stages, got {len(stage_approvers)}",
            policy_id=policy.policy_id,
        )
    if expires_at is not None and expires_at <= now:
        return EngineResult.fail(
            ErrorCode.INVALID_INPUT,
            "expires_at must be later than the creation time",
        )

    stages: list[Stage] = []
    for sequence, (template, raw) in enumerate(zip(templates, stage_approvers)):
        approvers = _dedupe(raw)
        rule = template.voting_rule
        if not approvers and not policy.skippable:
            return EngineResult.fail(
                ErrorCode.INVALID_INPUT,
                f"Stage '{template.name}' has no approvers",
                stage=template.name,
            )
        if approvers and rule.rule_type == VotingRuleType.THRESHOLD \
                and rule.min_approvals > len(approvers):
            return EngineResult.fail(
                ErrorCode.INVALID_INPUT,
                f"Stage '{template.name}' needs {rule.min_approvals} approvals "
                f"but has {len(approvers)} approvers",
                stage=template.name,
            )
        stages.append(Stage(
            name=template.name,
            sequence=sequence,
            approvers=approvers,
            voting_rule=rule,
        ))

    status = ApprovalStatus.PENDING
    close_reason = None
    if _activate_from(stages, 0, now) is None:
        # Skippable policy whose stages all resolved to nobody
        status = ApprovalStatus.APPROVED
        close_reason = ALL_STAGES_SKIPPED

    return EngineResult.ok(ApprovalInstance(
        approval_id=approval_id,
        policy_id=policy.policy_id,
        initiator_id=initiator_id,
        status=status,
        stages=tuple(stages),
        created_at=now,
        updated_at=now,
        expires_at=expires_at,
        metadata=metadata or {},
        close_reason=close_reason,
    ))


@traced_engine(
    "state_machine.record_vote",
    "1.0",
    fingerprint_fields=("voter_id", "decision", "reason", "now"),
)
def record_vote(
    instance: ApprovalInstance,
    voter_id: str,
    decision: VoteDecision | str,
    reason: str | None = None,
    *,
    now: datetime,
) -> EngineResult[ApprovalInstance]:
    """Record (or replace) ``voter_id``'s vote on the active stage.

    An identical re-vote (same decision and reason) returns the instance
    unchanged.  Otherwise the stage is re-evaluated: approval advances to
    the next open stage or approves the instance; rejection rejects the
    stage and the instance.
    """
    try:
        parsed = VoteDecision.parse(decision)
    except InvalidDecisionError as exc:
        return EngineResult.fail(ErrorCode.INVALID_DECISION, str(exc), decision=str(decision))

    active = get_active_stage(instance)
    if active is None:
        return EngineResult.fail(
            ErrorCode.NOT_FOUND,
            f"Approval {instance.approval_id} has no active stage "
            f"(status: {instance.status.value})",
            approval_id=instance.approval_id,
        )
    if not active.has_approver(voter_id):
        return EngineResult.fail(
            ErrorCode.NOT_ACTIVE_STAGE,
            f"Principal {voter_id} is not an approver on stage '{active.name}'",
            principal_id=voter_id,
            stage_name=active.name,
        )

    existing = active.vote_of(voter_id)
    if existing is not None and existing.decision == parsed and existing.reason == reason:
        return EngineResult.ok(instance)

    new_vote = Vote(principal_id=voter_id, decision=parsed, timestamp=now, reason=reason)
    if existing is None:
        votes = active.votes + (new_vote,)
    else:
        votes = tuple(new_vote if v.principal_id == voter_id else v for v in active.votes)

    evaluation = evaluate_votes(active.voting_rule, active.approvers, votes)
    stages = list(instance.stages)
    index = active.sequence
    status = instance.status
    closed_by = instance.closed_by
    close_reason = instance.close_reason

    if evaluation.outcome == StageOutcome.REJECTED:
        stages[index] = replace(active, votes=votes, status=StageStatus.REJECTED, completed_at=now)
        status = ApprovalStatus.REJECTED
        closed_by = voter_id
        close_reason = reason
    elif evaluation.outcome == StageOutcome.APPROVED:
        stages[index] = replace(active, votes=votes, status=StageStatus.APPROVED, completed_at=now)
        if _activate_from(stages, index + 1, now) is None:
            status = ApprovalStatus.APPROVED
            closed_by = voter_id
            close_reason = reason
    else:
        stages[index] = replace(active, votes=votes)

    if status != instance.status and not can_transition(instance.status, status):
        return EngineResult.fail(
            ErrorCode.INVALID_STATE,
            f"Illegal transition {instance.status.value} -> {status.value}",
        )

    return EngineResult.ok(replace(
        instance,
        stages=tuple(stages),
        status=status,
        updated_at=now,
        closed_by=closed_by,
        close_reason=close_reason,
    ))


def _close_pending(
    instance: ApprovalInstance,
    target: ApprovalStatus,
    *,
    now: datetime,
    closed_by: str | None,
    close_reason: str | None,
) -> EngineResult[ApprovalInstance]:
    if not can_transition(instance.status, target):
        return EngineResult.fail(
            ErrorCode.INVALID_STATE,
            f"Approval {instance.approval_id} cannot become {target.value} "
            f"(status: {instance.status.value})",
            approval_id=instance.approval_id,
            status=instance.status.value,
        )
    stages = tuple(
        replace(s, status=StageStatus.SKIPPED, completed_at=now)
        if s.status == StageStatus.ACTIVE else s
        for s in instance.stages
    )
    return EngineResult.ok(replace(
        instance,
        stages=stages,
        status=target,
        updated_at=now,
        closed_by=closed_by,
        close_reason=close_reason,
    ))


def cancel_instance(
    instance: ApprovalInstance,
    actor_id: str,
    reason: str | None = None,
    *,
    now: datetime,
) -> EngineResult[ApprovalInstance]:
    """Cancel a pending instance.  Authorization is the caller's concern."""
    return _close_pending(
        instance, ApprovalStatus.CANCELLED,
        now=now, closed_by=actor_id, close_reason=reason,
    )


def expire_instance(
    instance: ApprovalInstance,
    *,
    now: datetime,
) -> EngineResult[ApprovalInstance]:
    """Expire a pending instance whose ``expires_at`` has passed."""
    if instance.expires_at is None or instance.expires_at > now:
        return EngineResult.fail(
            ErrorCode.INVALID_STATE,
            f"Approval {instance.approval_id} has not reached its expiry",
            approval_id=instance.approval_id,
            status=instance.status.value,
        )
    return _close_pending(
        instance, ApprovalStatus.EXPIRED,
        now=now, closed_by=None, close_reason=EXPIRED_REASON,
    )


def get_progress(instance: ApprovalInstance) -> StageProgress:
    """Completed stages over total, as a whole percentage rounded half-up.

    Approved and skipped stages count as completed.  An approved instance
    always reports 100.
    """
    total = len(instance.stages)
    completed = sum(
        1 for s in instance.stages
        if s.status in (StageStatus.APPROVED, StageStatus.SKIPPED)
    )
    if instance.status == ApprovalStatus.APPROVED:
        percent = 100
    elif total == 0:
        percent = 0
    else:
        percent = int(
            (Decimal(completed) * 100 / Decimal(total)).quantize(
                Decimal("1"), rounding=ROUND_HALF_UP,
            )
        )
    active = get_active_stage(instance)
    return StageProgress(
        completed_stages=completed,
        total_stages=total,
        percent_complete=percent,
        is_complete=instance.is_terminal,
        active_stage_name=active.name if active is not None else None,
    )


def check_stage_ordering(instance: ApprovalInstance) -> bool:
    """True when the instance's stages are consistent with its status."""
    active = [i for i, s in enumerate(instance.stages) if s.status == StageStatus.ACTIVE]
    if instance.status != ApprovalStatus.PENDING:
        return not active
    if len(active) != 1:
        return False
    index = active[0]
    if _first_open_index(instance.stages) != index:
        return False
    return all(s.status == StageStatus.PENDING for s in instance.stages[index + 1:])
