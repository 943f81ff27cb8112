"""
Approval domain types (``approval_kernel.domain.approval``).

Responsibility
--------------
Pure value objects for the multi-stage approval workflow.  Defines the
approval lifecycle state machine, policy/predicate/stage templates, the
approval instance with its stages and votes, and the evaluation records
returned by the engines.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``models/``, engines, services, or outer layers.  May import
only ``approval_kernel.exceptions``.

Invariants enforced
-------------------
* Lifecycle state machine -- ``APPROVAL_TRANSITIONS`` defines the only
  valid status transitions.  Terminal states have no outgoing edges.
* Approver snapshot -- ``Stage.approvers`` is fixed when the instance is
  created; voting never re-resolves selectors.
* One vote per principal per stage -- ``Stage.votes`` holds at most one
  ``Vote`` per ``principal_id`` (the state machine upserts in place).
* Immutability -- every type here is a frozen dataclass; state changes
  produce new instances via ``dataclasses.replace``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

from approval_kernel.exceptions import InvalidDecisionError


# =========================================================================
# Approval Status Lifecycle
# =========================================================================


class ApprovalStatus(str, Enum):
    """Approval instance lifecycle states."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


APPROVAL_TRANSITIONS: dict[ApprovalStatus, frozenset[ApprovalStatus]] = {
    ApprovalStatus.PENDING: frozenset({
        ApprovalStatus.APPROVED,
        ApprovalStatus.REJECTED,
        ApprovalStatus.CANCELLED,
        ApprovalStatus.EXPIRED,
    }),
    ApprovalStatus.APPROVED: frozenset(),
    ApprovalStatus.REJECTED: frozenset(),
    ApprovalStatus.CANCELLED: frozenset(),
    ApprovalStatus.EXPIRED: frozenset(),
}

TERMINAL_APPROVAL_STATUSES: frozenset[ApprovalStatus] = frozenset({
    ApprovalStatus.APPROVED,
    ApprovalStatus.REJECTED,
    ApprovalStatus.CANCELLED,
    ApprovalStatus.EXPIRED,
})


def can_transition(current: ApprovalStatus, target: ApprovalStatus) -> bool:
    """True when ``current -> target`` is an edge of the lifecycle."""
    return target in APPROVAL_TRANSITIONS.get(current, frozenset())


class StageStatus(str, Enum):
    """Lifecycle of a single stage within an instance."""

    PENDING = "pending"
    ACTIVE = "active"
    APPROVED = "approved"
    REJECTED = "rejected"
    SKIPPED = "skipped"


CLOSED_STAGE_STATUSES: frozenset[StageStatus] = frozenset({
    StageStatus.APPROVED,
    StageStatus.REJECTED,
    StageStatus.SKIPPED,
})


class VoteDecision(str, Enum):
    """Decisions an approver can cast on the active stage."""

    APPROVE = "approve"
    REJECT = "reject"
    REQUEST_CHANGES = "request_changes"

    @classmethod
    def parse(cls, value: Any) -> VoteDecision:
        """Coerce an enum member or its string value.

        Raises:
            InvalidDecisionError: for anything outside the known set.
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        raise InvalidDecisionError(value)


# Decisions a voter cannot take back on the same stage.
FINAL_DECISIONS: frozenset[VoteDecision] = frozenset({
    VoteDecision.APPROVE,
    VoteDecision.REJECT,
})


# =========================================================================
# Voting Rules
# =========================================================================


class VotingRuleType(str, Enum):
    """How votes on a stage are aggregated."""

    ANY = "any"
    THRESHOLD = "threshold"
    UNANIMOUS = "unanimous"


@dataclass(frozen=True)
class VotingRule:
    """Aggregation rule for a stage.

    ``min_approvals`` is meaningful only for ``THRESHOLD`` and must be >= 1.
    """

    rule_type: VotingRuleType
    min_approvals: int | None = None

    def __post_init__(self) -> None:
        if self.rule_type == VotingRuleType.THRESHOLD:
            if self.min_approvals is None or self.min_approvals < 1:
                raise ValueError(
                    f"Threshold voting rule requires min_approvals >= 1, "
                    f"got {self.min_approvals!r}"
                )
        elif self.min_approvals is not None:
            raise ValueError(
                f"min_approvals is only valid for threshold rules "
                f"(rule_type={self.rule_type.value})"
            )

    @classmethod
    def any_rule(cls) -> VotingRule:
        return cls(VotingRuleType.ANY)

    @classmethod
    def threshold_rule(cls, min_approvals: int) -> VotingRule:
        return cls(VotingRuleType.THRESHOLD, min_approvals)

    @classmethod
    def unanimous_rule(cls) -> VotingRule:
        return cls(VotingRuleType.UNANIMOUS)

    def describe(self) -> str:
        if self.rule_type == VotingRuleType.THRESHOLD:
            return f"threshold({self.min_approvals})"
        return self.rule_type.value


# =========================================================================
# Approver Selectors
# =========================================================================


class SelectorType(str, Enum):
    """Strategy an ``ApproverResolver`` uses to find a stage's approvers."""

    EXPLICIT = "explicit"
    ROLE = "role"
    HIERARCHY = "hierarchy"
    DYNAMIC = "dynamic"


def _freeze(mapping: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping or {}))


@dataclass(frozen=True)
class ApproverSelector:
    """Descriptor of how to find approvers; opaque to the engines.

    Typical ``config`` keys: ``principal_ids`` (explicit), ``role`` (role),
    ``levels`` (hierarchy), ``rule`` (dynamic).
    """

    selector_type: SelectorType
    config: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "config", _freeze(self.config))

    @classmethod
    def explicit(cls, *principal_ids: str) -> ApproverSelector:
        return cls(SelectorType.EXPLICIT, {"principal_ids": tuple(principal_ids)})

    @classmethod
    def role(cls, role: str) -> ApproverSelector:
        return cls(SelectorType.ROLE, {"role": role})

    @classmethod
    def hierarchy(cls, levels: int = 1) -> ApproverSelector:
        return cls(SelectorType.HIERARCHY, {"levels": levels})

    @classmethod
    def dynamic(cls, rule: str) -> ApproverSelector:
        return cls(SelectorType.DYNAMIC, {"rule": rule})


# =========================================================================
# Policy and Predicate Types
# =========================================================================


class PredicateKind(str, Enum):
    THRESHOLD = "threshold"
    EQUALITY = "equality"


class PredicateOperator(str, Enum):
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    EQ = "eq"


THRESHOLD_OPERATORS: frozenset[PredicateOperator] = frozenset({
    PredicateOperator.GT,
    PredicateOperator.GTE,
    PredicateOperator.LT,
    PredicateOperator.LTE,
    PredicateOperator.EQ,
})

EQUALITY_OPERATORS: frozenset[PredicateOperator] = frozenset({
    PredicateOperator.EQ,
})

OPERATORS_BY_KIND: dict[PredicateKind, frozenset[PredicateOperator]] = {
    PredicateKind.THRESHOLD: THRESHOLD_OPERATORS,
    PredicateKind.EQUALITY: EQUALITY_OPERATORS,
}


class PredicateLogic(str, Enum):
    """How a policy combines its predicates."""

    ALL = "all"
    ANY = "any"


@dataclass(frozen=True)
class PolicyPredicate:
    """A single condition over one request metric.

    Example: ``PolicyPredicate(THRESHOLD, "total_cost_change", GTE, 50000)``.
    """

    kind: PredicateKind
    metric: str
    operator: PredicateOperator
    value: Any

    def __post_init__(self) -> None:
        if self.operator not in OPERATORS_BY_KIND[self.kind]:
            raise ValueError(
                f"Operator '{self.operator.value}' is not valid for "
                f"{self.kind.value} predicates"
            )


@dataclass(frozen=True)
class StageTemplate:
    """Blueprint for one stage of every instance created from a policy."""

    name: str
    approver_selector: ApproverSelector
    voting_rule: VotingRule


@dataclass(frozen=True)
class ApprovalPolicy:
    """A named approval policy.

    Created by configuration and immutable.  ``priority`` decides between
    several matching policies: higher wins, ties keep declaration order.
    Empty ``entity_types`` means the policy applies to every entity type.
    """

    policy_id: str
    name: str
    priority: int
    predicates: tuple[PolicyPredicate, ...] = ()
    predicate_logic: PredicateLogic = PredicateLogic.ALL
    required_stages: tuple[StageTemplate, ...] = ()
    skippable: bool = False
    entity_types: tuple[str, ...] = ()
    description: str = ""

    def applies_to(self, entity_type: str) -> bool:
        return not self.entity_types or entity_type in self.entity_types


# =========================================================================
# Instance, Stage, Vote
# =========================================================================


@dataclass(frozen=True)
class Vote:
    """One principal's decision on one stage. Immutable."""

    principal_id: str
    decision: VoteDecision
    timestamp: datetime
    reason: str | None = None


@dataclass(frozen=True)
class Stage:
    """One ordered stage of an approval instance.

    ``approvers`` is the snapshot taken at creation.  ``votes`` contains at
    most one vote per principal, in first-cast order.
    """

    name: str
    sequence: int
    approvers: tuple[str, ...]
    voting_rule: VotingRule
    status: StageStatus = StageStatus.PENDING
    votes: tuple[Vote, ...] = ()
    activated_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_closed(self) -> bool:
        return self.status in CLOSED_STAGE_STATUSES

    def vote_of(self, principal_id: str) -> Vote | None:
        for vote in self.votes:
            if vote.principal_id == principal_id:
                return vote
        return None

    def has_approver(self, principal_id: str) -> bool:
        return principal_id in self.approvers


@dataclass(frozen=True)
class ApprovalInstance:
    """A running (or finished) approval created from one policy.

    ``version`` is the optimistic-concurrency token; repositories only
    accept a save whose version matches the stored one.
    """

    approval_id: str
    policy_id: str
    initiator_id: str
    status: ApprovalStatus
    stages: tuple[Stage, ...]
    created_at: datetime
    updated_at: datetime
    expires_at: datetime | None = None
    version: int = 0
    metadata: Mapping[str, Any] = field(default_factory=dict)
    closed_by: str | None = None
    close_reason: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "metadata", _freeze(self.metadata))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_APPROVAL_STATUSES

    def all_approvers(self) -> tuple[str, ...]:
        """Every snapshotted approver across stages, first-seen order."""
        seen: dict[str, None] = {}
        for stage in self.stages:
            for principal_id in stage.approvers:
                seen.setdefault(principal_id, None)
        return tuple(seen)


@dataclass(frozen=True)
class ApprovalReference:
    """Link from an approval instance to the business entity it gates."""

    entity_type: str
    entity_id: str

    @property
    def key(self) -> str:
        return f"{self.entity_type}:{self.entity_id}"


# =========================================================================
# Evaluation Results
# =========================================================================


class StageOutcome(str, Enum):
    OPEN = "open"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass(frozen=True)
class VoteEvaluation:
    """Result of aggregating a stage's votes under its voting rule."""

    outcome: StageOutcome
    approvals: int = 0
    rejections: int = 0
    changes_requested: int = 0
    required_approvals: int = 0
    reason: str = ""


class Capability(str, Enum):
    CAN_APPROVE = "can_approve"
    CAN_REJECT = "can_reject"
    CAN_REQUEST_CHANGES = "can_request_changes"
    CAN_CANCEL = "can_cancel"


CAPABILITY_FOR_DECISION: dict[VoteDecision, Capability] = {
    VoteDecision.APPROVE: Capability.CAN_APPROVE,
    VoteDecision.REJECT: Capability.CAN_REJECT,
    VoteDecision.REQUEST_CHANGES: Capability.CAN_REQUEST_CHANGES,
}


@dataclass(frozen=True)
class ApprovalCapabilities:
    """What one principal may do on one instance, with reasons for each no."""

    can_approve: bool = False
    can_reject: bool = False
    can_request_changes: bool = False
    can_cancel: bool = False
    denial_reasons: Mapping[Capability, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "denial_reasons", _freeze(self.denial_reasons))

    def allows(self, decision: VoteDecision) -> bool:
        return bool(getattr(self, CAPABILITY_FOR_DECISION[decision].value))

    def denial_for(self, decision: VoteDecision) -> str | None:
        return self.denial_reasons.get(CAPABILITY_FOR_DECISION[decision])

    @property
    def can_vote(self) -> bool:
        return self.can_approve or self.can_reject or self.can_request_changes


@dataclass(frozen=True)
class StageProgress:
    """Completion summary of an instance."""

    completed_stages: int
    total_stages: int
    percent_complete: int
    is_complete: bool
    active_stage_name: str | None = None
