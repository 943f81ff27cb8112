"""
Tests for approval_config -- loading, validating and parsing policy sets.

Covers:
- the shipped po_revision set and how its policies match metrics
- validation errors and warnings for malformed sets
- checksum determinism
- end-to-end request against the loaded set
"""

import textwrap

import pytest

from approval_config import get_active_policies
from approval_config.loader import compute_checksum, parse_selector, parse_voting_rule
from approval_config.validator import validate_policy_set
from approval_engines.policy_matcher import is_auto_approved, match_policy
from approval_kernel.domain.approval import SelectorType, VotingRule, VotingRuleType
from approval_services.request_approval import RequestApprovalUseCase
from approval_services.static_providers import StaticPolicyProvider


def write_set(tmp_path, name, body):
    (tmp_path / f"{name}.yaml").write_text(textwrap.dedent(body))
    return tmp_path


VALID_SET = """
    config_id: tiny
    version: 3
    policies:
      - policy_id: only
        name: Only Policy
        priority: 1
        predicates:
          - {kind: threshold, metric: amount, operator: gt, value: 0}
        stages:
          - name: Review
            approvers: {type: explicit, principal_ids: [a, b]}
            voting: {rule: unanimous}
"""


class TestShippedPolicySet:
    """approval_config/sets/po_revision.yaml."""

    @pytest.fixture(scope="class")
    def policy_set(self):
        return get_active_policies("po_revision")

    def test_identity(self, policy_set):
        assert policy_set.config_id == "po_revision"
        assert policy_set.version == 1
        assert len(policy_set.checksum) == 64
        assert [p.policy_id for p in policy_set.policies] == [
            "policy-high-value",
            "policy-large-percentage",
            "policy-medium-value",
            "policy-line-changes",
            "policy-no-cost",
            "policy-standard",
        ]

    def test_high_value_stages(self, policy_set):
        policy = policy_set.get("policy-high-value")
        assert [s.name for s in policy.required_stages] == [
            "Manager Review", "Director Approval", "Executive Approval",
        ]
        executive = policy.required_stages[2]
        assert executive.voting_rule == VotingRule.threshold_rule(1)
        assert executive.approver_selector.config["roles"] == ("vp", "cfo")

    @pytest.mark.parametrize(
        "metrics, expected",
        [
            ({"total_cost_change": 75000}, "policy-high-value"),
            ({"total_cost_change": 25000, "percentage_change": 25}, "policy-large-percentage"),
            ({"total_cost_change": 25000}, "policy-medium-value"),
            ({"total_cost_change": 500, "changed_line_items": 6}, "policy-line-changes"),
            ({"total_cost_change": 0}, "policy-no-cost"),
            ({"total_cost_change": 500}, "policy-standard"),
        ],
    )
    def test_policy_selection(self, policy_set, metrics, expected):
        assert match_policy(policy_set.policies, metrics).policy_id == expected

    def test_negative_change_needs_no_approval(self, policy_set):
        assert match_policy(policy_set.policies, {"total_cost_change": -10}) is None

    def test_no_cost_policy_auto_approves(self, policy_set):
        assert is_auto_approved(policy_set.get("policy-no-cost"))
        assert not is_auto_approved(policy_set.get("policy-standard"))

    def test_load_is_traced(self, captured_logs):
        loaded = get_active_policies("po_revision")
        trace = next(r for r in captured_logs() if r["message"] == "APPROVAL_CONFIG_TRACE")
        assert trace["config_set_id"] == "po_revision"
        assert trace["checksum"] == loaded.checksum
        assert trace["policy_count"] == 6

    def test_request_against_loaded_set(self, repository, resolver, notifications, clock):
        provider = StaticPolicyProvider(get_active_policies("po_revision").policies)
        use_case = RequestApprovalUseCase(repository, provider, resolver, notifications, clock)

        outcome = use_case.request_approval(
            "apr-1", "alice", "purchase_order", {"total_cost_change": 60000},
        ).value

        approvers = [s.approvers for s in outcome.approval.stages]
        assert approvers == [("mgr-1",), ("dir-1",), ("vp-1", "cfo-1")]


class TestLoading:
    """Loading sets from a custom directory."""

    def test_custom_directory(self, tmp_path):
        loaded = get_active_policies("tiny", write_set(tmp_path, "tiny", VALID_SET))

        policy = loaded.get("only")
        assert loaded.version == 3
        assert policy.required_stages[0].voting_rule.rule_type == VotingRuleType.UNANIMOUS
        assert policy.required_stages[0].approver_selector.config["principal_ids"] == ("a", "b")
        assert loaded.get("missing") is None

    def test_missing_set(self, tmp_path):
        with pytest.raises(FileNotFoundError, match="Policy set not found"):
            get_active_policies("absent", tmp_path)

    def test_invalid_set_lists_errors(self, tmp_path):
        write_set(tmp_path, "broken", """
            config_id: broken
            policies:
              - policy_id: p1
                name: P1
                priority: high
                predicates:
                  - {kind: equality, metric: amount, operator: gt, value: 1}
                stages:
                  - name: Review
                    approvers: {type: oracle}
                    voting: {rule: threshold}
              - policy_id: p1
                name: Again
                priority: 2
        """)

        with pytest.raises(ValueError) as excinfo:
            get_active_policies("broken", tmp_path)

        message = str(excinfo.value)
        assert "p1: priority must be an integer" in message
        assert "operator 'gt' is not valid for equality predicates" in message
        assert "unknown selector type 'oracle'" in message
        assert "threshold voting needs min_approvals >= 1" in message
        assert "Duplicate policy id: p1" in message
        assert "non-skippable policy must declare at least one stage" in message


class TestValidator:
    """validate_policy_set in isolation."""

    def test_missing_policies_list(self):
        result = validate_policy_set({"config_id": "x"})
        assert result.errors == ["Policy set must declare a 'policies' list"]

    def test_policy_without_predicates_warns(self):
        data = {
            "config_id": "x",
            "policies": [{"policy_id": "p", "name": "P", "priority": 1, "skippable": True}],
        }
        result = validate_policy_set(data)
        assert result.is_valid
        assert result.warnings == ["p: no predicates, policy matches every request"]

    def test_duplicate_stage_names(self):
        stage = {"name": "Review", "approvers": {"type": "role", "role": "manager"}}
        data = {
            "config_id": "x",
            "policies": [{
                "policy_id": "p", "name": "P", "priority": 1,
                "predicates": [{"kind": "threshold", "metric": "m", "operator": "gt", "value": 0}],
                "stages": [stage, stage],
            }],
        }
        assert "p: duplicate stage name 'Review'" in validate_policy_set(data).errors

    def test_min_approvals_only_for_threshold(self):
        data = {
            "config_id": "x",
            "policies": [{
                "policy_id": "p", "name": "P", "priority": 1, "skippable": True,
                "stages": [{
                    "name": "S",
                    "approvers": {"type": "role", "role": "manager"},
                    "voting": {"rule": "any", "min_approvals": 2},
                }],
            }],
        }
        errors = validate_policy_set(data).errors
        assert errors == ["p.stages[0]: min_approvals is only valid for threshold rules"]


class TestParsing:
    """Low-level parse helpers and checksum."""

    def test_selector_lists_become_tuples(self):
        selector = parse_selector({"type": "role", "roles": ["vp", "cfo"]})
        assert selector.selector_type == SelectorType.ROLE
        assert selector.config["roles"] == ("vp", "cfo")

    def test_default_voting_rule(self):
        assert parse_voting_rule(None) == VotingRule.any_rule()

    def test_checksum_ignores_key_order(self):
        assert compute_checksum({"a": 1, "b": [1, 2]}) == compute_checksum({"b": [1, 2], "a": 1})

    def test_checksum_changes_with_content(self):
        assert compute_checksum({"a": 1}) != compute_checksum({"a": 2})
