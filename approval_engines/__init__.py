"""
Pure decision engines for the approval workflow.

All engines are zero-I/O functions over ``approval_kernel.domain`` types:
policy matching, voting rule evaluation, the instance state machine and
the capability resolver.
"""

from approval_engines.capabilities import get_capabilities
from approval_engines.policy_matcher import (
    evaluate_predicate,
    find_matching_policies,
    is_auto_approved,
    match_policy,
    policy_matches,
)
from approval_engines.state_machine import (
    cancel_instance,
    check_stage_ordering,
    create_instance,
    expire_instance,
    get_active_stage,
    get_progress,
    record_vote,
)
from approval_engines.voting import evaluate_votes, required_approvals

__all__ = [
    "cancel_instance",
    "check_stage_ordering",
    "create_instance",
    "evaluate_predicate",
    "evaluate_votes",
    "expire_instance",
    "find_matching_policies",
    "get_active_stage",
    "get_capabilities",
    "get_progress",
    "is_auto_approved",
    "match_policy",
    "policy_matches",
    "record_vote",
    "required_approvals",
]
