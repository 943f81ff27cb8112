"""Pure domain types for the approval kernel (zero I/O)."""

from approval_kernel.domain.approval import (
    APPROVAL_TRANSITIONS,
    CLOSED_STAGE_STATUSES,
    FINAL_DECISIONS,
    TERMINAL_APPROVAL_STATUSES,
    ApprovalCapabilities,
    ApprovalInstance,
    ApprovalPolicy,
    ApprovalReference,
    ApprovalStatus,
    ApproverSelector,
    Capability,
    PolicyPredicate,
    PredicateKind,
    PredicateLogic,
    PredicateOperator,
    SelectorType,
    Stage,
    StageOutcome,
    StageProgress,
    StageStatus,
    StageTemplate,
    Vote,
    VoteDecision,
    VoteEvaluation,
    VotingRule,
    VotingRuleType,
)
from approval_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from approval_kernel.domain.result import EngineError, EngineResult, ErrorCode

__all__ = [
    "APPROVAL_TRANSITIONS",
    "CLOSED_STAGE_STATUSES",
    "FINAL_DECISIONS",
    "TERMINAL_APPROVAL_STATUSES",
    "ApprovalCapabilities",
    "ApprovalInstance",
    "ApprovalPolicy",
    "ApprovalReference",
    "ApprovalStatus",
    "ApproverSelector",
    "Capability",
    "Clock",
    "DeterministicClock",
    "EngineError",
    "EngineResult",
    "ErrorCode",
    "PolicyPredicate",
    "PredicateKind",
    "PredicateLogic",
    "PredicateOperator",
    "SelectorType",
    "Stage",
    "StageOutcome",
    "StageProgress",
    "StageStatus",
    "StageTemplate",
    "SystemClock",
    "Vote",
    "VoteDecision",
    "VoteEvaluation",
    "VotingRule",
    "VotingRuleType",
]
