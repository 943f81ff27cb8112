"""
Tests for the pure voting rule evaluator.

Tests cover:
- any / threshold / unanimous aggregation
- single-reject veto under every rule
- request_changes never closing a stage
- votes from non-approvers ignored, latest vote per principal counted
"""

from datetime import datetime, UTC

import pytest

from approval_engines.voting import effective_votes, evaluate_votes, required_approvals
from approval_kernel.domain.approval import StageOutcome, Vote, VoteDecision, VotingRule

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)

APPROVE = VoteDecision.APPROVE
REJECT = VoteDecision.REJECT
CHANGES = VoteDecision.REQUEST_CHANGES


def votes(*pairs: tuple[str, VoteDecision]) -> tuple[Vote, ...]:
    return tuple(Vote(p, d, NOW) for p, d in pairs)


class TestRequiredApprovals:
    """Tests for the approval count each rule needs."""

    def test_counts(self):
        approvers = ("a", "b", "c")
        assert required_approvals(VotingRule.any_rule(), approvers) == 1
        assert required_approvals(VotingRule.threshold_rule(2), approvers) == 2
        assert required_approvals(VotingRule.unanimous_rule(), approvers) == 3


class TestAnyRule:
    """Tests for the any rule."""

    def test_one_approval_approves(self):
        result = evaluate_votes(VotingRule.any_rule(), ("a", "b"), votes(("b", APPROVE)))
        assert result.outcome == StageOutcome.APPROVED
        assert result.reason == "1/1 approvals"

    def test_no_votes_open(self):
        result = evaluate_votes(VotingRule.any_rule(), ("a", "b"), ())
        assert result.outcome == StageOutcome.OPEN
        assert result.reason == "0/1 approvals"


class TestThresholdRule:
    """Tests for the threshold rule."""

    def test_below_threshold_open(self):
        result = evaluate_votes(VotingRule.threshold_rule(2), ("a", "b", "c"), votes(("a", APPROVE)))
        assert result.outcome == StageOutcome.OPEN
        assert result.approvals == 1
        assert result.required_approvals == 2

    def test_at_threshold_approves(self):
        result = evaluate_votes(
            VotingRule.threshold_rule(2), ("a", "b", "c"),
            votes(("a", APPROVE), ("c", APPROVE)),
        )
        assert result.outcome == StageOutcome.APPROVED
        assert result.reason == "2/2 approvals"


class TestUnanimousRule:
    """Tests for the unanimous rule."""

    def test_all_must_approve(self):
        rule = VotingRule.unanimous_rule()
        partial = evaluate_votes(rule, ("a", "b"), votes(("a", APPROVE)))
        full = evaluate_votes(rule, ("a", "b"), votes(("a", APPROVE), ("b", APPROVE)))
        assert partial.outcome == StageOutcome.OPEN
        assert full.outcome == StageOutcome.APPROVED
        assert full.reason == "Approved by all approvers"

    def test_empty_approver_set_never_approves(self):
        result = evaluate_votes(VotingRule.unanimous_rule(), (), ())
        assert result.outcome == StageOutcome.OPEN


class TestVeto:
    """A single rejection closes the stage under every rule."""

    @pytest.mark.parametrize("rule", [
        VotingRule.any_rule(),
        VotingRule.threshold_rule(1),
        VotingRule.unanimous_rule(),
    ])
    def test_reject_vetoes(self, rule):
        result = evaluate_votes(rule, ("a", "b"), votes(("a", APPROVE), ("b", REJECT)))
        assert result.outcome == StageOutcome.REJECTED
        assert result.reason == "Rejected by b"
        assert result.rejections == 1


class TestVoteCounting:
    """Tests for which votes count."""

    def test_request_changes_never_closes(self):
        result = evaluate_votes(
            VotingRule.any_rule(), ("a", "b"),
            votes(("a", CHANGES), ("b", CHANGES)),
        )
        assert result.outcome == StageOutcome.OPEN
        assert result.changes_requested == 2

    def test_non_approver_votes_ignored(self):
        """Votes from principals outside the snapshot do not count, even rejects."""
        result = evaluate_votes(VotingRule.any_rule(), ("a",), votes(("mallory", REJECT)))
        assert result.outcome == StageOutcome.OPEN
        assert result.rejections == 0

    def test_latest_vote_per_principal(self):
        cast = votes(("a", CHANGES), ("a", APPROVE))
        assert effective_votes(("a",), cast)["a"].decision == APPROVE
        result = evaluate_votes(VotingRule.threshold_rule(2), ("a", "b"), cast)
        assert result.approvals == 1
        assert result.outcome == StageOutcome.OPEN
