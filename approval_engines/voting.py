"""
approval_engines.voting -- Pure voting rule evaluator.

Responsibility:
    Decide whether a stage's votes, under its voting rule, close the stage
    as approved, close it as rejected, or leave it open.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import approval_kernel.domain types.

Invariants enforced:
    - Veto: any single ``reject`` from an assigned approver rejects the
      stage under every rule type.
    - Only votes cast by principals in ``approvers`` count; a principal
      counts at most once (their latest vote wins).
    - ``request_changes`` never closes a stage.
    - ``unanimous`` over an empty approver set never approves.
    - Purity: no clock access, no I/O, no database.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from approval_engines.tracer import traced_engine
from approval_kernel.domain.approval import (
    StageOutcome,
    Vote,
    VoteDecision,
    VoteEvaluation,
    VotingRule,
    VotingRuleType,
)


def required_approvals(rule: VotingRule, approvers: Sequence[str]) -> int:
    """Number of distinct approvals that close the stage as approved."""
    if rule.rule_type == VotingRuleType.ANY:
        return 1
    if rule.rule_type == VotingRuleType.THRESHOLD:
        return rule.min_approvals or 1
    return len(set(approvers))


def effective_votes(approvers: Sequence[str], votes: Iterable[Vote]) -> dict[str, Vote]:
    """Latest vote per assigned approver, keyed by principal id."""
    assigned = set(approvers)
    latest: dict[str, Vote] = {}
    for vote in votes:
        if vote.principal_id in assigned:
            latest[vote.principal_id] = vote
    return latest


@traced_engine("voting", "1.0", fingerprint_fields=("rule", "approvers", "votes"))
def evaluate_votes(
    rule: VotingRule,
    approvers: Sequence[str],
    votes: Iterable[Vote],
) -> VoteEvaluation:
    """Aggregate a stage's votes under ``rule``.

    Args:
        rule: The stage's voting rule.
        approvers: The stage's snapshotted approver ids.
        votes: Votes recorded on the stage (any order, may include
            non-approvers, which are ignored).

    Returns:
        VoteEvaluation with the outcome and the counts that produced it.
    """
    counted = effective_votes(approvers, votes)
    approved_by = {p for p, v in counted.items() if v.decision == VoteDecision.APPROVE}
    rejected_by = [p for p, v in counted.items() if v.decision == VoteDecision.REJECT]
    changes = sum(1 for v in counted.values() if v.decision == VoteDecision.REQUEST_CHANGES)
    needed = required_approvals(rule, approvers)

    def _result(outcome: StageOutcome, reason: str) -> VoteEvaluation:
        return VoteEvaluation(
            outcome=outcome,
            approvals=len(approved_by),
            rejections=len(rejected_by),
            changes_requested=changes,
            required_approvals=needed,
            reason=reason,
        )

    # A single rejection blocks, whatever the rule
    if rejected_by:
        return _result(StageOutcome.REJECTED, f"Rejected by {rejected_by[0]}")

    if rule.rule_type == VotingRuleType.UNANIMOUS:
        assigned = set(approvers)
        if assigned and assigned <= approved_by:
            return _result(StageOutcome.APPROVED, "Approved by all approvers")
    elif len(approved_by) >= needed:
        return _result(StageOutcome.APPROVED, f"{len(approved_by)}/{needed} approvals")

    return _result(StageOutcome.OPEN, f"{len(approved_by)}/{needed} approvals")
