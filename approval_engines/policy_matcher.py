"""
approval_engines.policy_matcher -- Pure policy selection engine.

Responsibility:
    Evaluate policy predicates against request metrics and select the
    single policy that governs a request.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import approval_kernel.domain types.

Invariants enforced:
    - Deterministic ordering: matching policies are ordered by priority
      descending; equal priorities keep declaration order (stable sort).
    - Numeric comparison is exact: values are compared as ``Decimal``
      built from ``str(value)``, never as floats.
    - The matcher never invents a policy: no match returns ``None`` and
      the caller decides what that means.

Failure modes:
    - A metric that is missing or not numeric makes a threshold predicate
      false (it does not raise).
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from decimal import Decimal, InvalidOperation
from typing import Any

from approval_engines.tracer import traced_engine
from approval_kernel.domain.approval import (
    ApprovalPolicy,
    PolicyPredicate,
    PredicateKind,
    PredicateLogic,
    PredicateOperator,
)


def _to_decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    if isinstance(value, (int, float, str)):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            return None
        return result if result.is_finite() else None
    return None


def evaluate_predicate(predicate: PolicyPredicate, metrics: Mapping[str, Any]) -> bool:
    """True when ``metrics`` satisfy a single predicate."""
    if predicate.metric not in metrics:
        return False
    actual = metrics[predicate.metric]

    if predicate.kind == PredicateKind.EQUALITY:
        left, right = _to_decimal(actual), _to_decimal(predicate.value)
        if left is not None and right is not None:
            return left == right
        return actual == predicate.value

    left, right = _to_decimal(actual), _to_decimal(predicate.value)
    if left is None or right is None:
        return False

    op = predicate.operator
    if op == PredicateOperator.GT:
        return left > right
    if op == PredicateOperator.GTE:
        return left >= right
    if op == PredicateOperator.LT:
        return left < right
    if op == PredicateOperator.LTE:
        return left <= right
    return left == right


def policy_matches(policy: ApprovalPolicy, metrics: Mapping[str, Any]) -> bool:
    """Combine a policy's predicates under its predicate logic.

    Zero predicates match under ``all`` and never match under ``any``.
    """
    results = (evaluate_predicate(p, metrics) for p in policy.predicates)
    if policy.predicate_logic == PredicateLogic.ANY:
        return any(results)
    return all(results)


def find_matching_policies(
    policies: Iterable[ApprovalPolicy],
    metrics: Mapping[str, Any],
) -> list[ApprovalPolicy]:
    """Every matching policy, highest priority first."""
    matching = [p for p in policies if policy_matches(p, metrics)]
    return sorted(matching, key=lambda p: -p.priority)


@traced_engine("policy_matcher", "1.0", fingerprint_fields=("metrics",))
def match_policy(
    policies: Iterable[ApprovalPolicy],
    metrics: Mapping[str, Any],
) -> ApprovalPolicy | None:
    """Select the governing policy, or ``None`` when nothing matches."""
    matching = find_matching_policies(policies, metrics)
    return matching[0] if matching else None


def is_auto_approved(policy: ApprovalPolicy) -> bool:
    """A skippable policy with no stages approves a request outright."""
    return policy.skippable and not policy.required_stages
