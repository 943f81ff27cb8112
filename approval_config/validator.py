"""
Policy-set validator (``approval_config.validator``).

Responsibility
--------------
Checks the raw (parsed-YAML) policy set before any domain object is built,
collecting every structural problem instead of stopping at the first.

Invariants enforced
-------------------
* ``config_id`` present; policy ids unique within the set.
* Each policy has ``name`` and an integer ``priority``.
* Predicate kind/operator agreement (equality predicates allow ``eq`` only).
* Threshold voting rules carry ``min_approvals >= 1``; other rules carry none.
* Non-skippable policies declare at least one stage.
* Stage names are unique within a policy.
* Selector types are known.

Failure modes
-------------
* Validation errors (``ConfigValidationResult.errors``)  -> the set MUST
  NOT be loaded.
* Warnings (policies with no predicates match every request) do not block.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from approval_kernel.domain.approval import (
    OPERATORS_BY_KIND,
    PredicateKind,
    PredicateLogic,
    PredicateOperator,
    SelectorType,
    VotingRuleType,
)


@dataclass
class ConfigValidationResult:
    """
    Result of policy-set validation.

    ``is_valid`` is ``True`` only when ``errors`` is empty.
    """

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return len(self.errors) == 0

    def add_error(self, msg: str) -> None:
        self.errors.append(msg)

    def add_warning(self, msg: str) -> None:
        self.warnings.append(msg)


def _enum_value(enum_type, value: Any) -> Any:
    try:
        return enum_type(value)
    except ValueError:
        return None


def validate_policy_set(data: dict[str, Any]) -> ConfigValidationResult:
    """Validate a raw policy-set mapping as loaded from YAML."""
    result = ConfigValidationResult()

    if not data.get("config_id"):
        result.add_error("Policy set is missing config_id")

    policies = data.get("policies")
    if not isinstance(policies, list):
        result.add_error("Policy set must declare a 'policies' list")
        return result

    seen: set[str] = set()
    for index, policy in enumerate(policies):
        label = policy.get("policy_id") or f"policies[{index}]"
        if not policy.get("policy_id"):
            result.add_error(f"{label}: missing policy_id")
        elif policy["policy_id"] in seen:
            result.add_error(f"Duplicate policy id: {policy['policy_id']}")
        else:
            seen.add(policy["policy_id"])
        _validate_policy(label, policy, result)

    return result


def _validate_policy(label: str, policy: dict[str, Any], result: ConfigValidationResult) -> None:
    if not policy.get("name"):
        result.add_error(f"{label}: missing name")
    if not isinstance(policy.get("priority"), int) or isinstance(policy.get("priority"), bool):
        result.add_error(f"{label}: priority must be an integer")
    if _enum_value(PredicateLogic, policy.get("predicate_logic", "all")) is None:
        result.add_error(f"{label}: unknown predicate_logic {policy.get('predicate_logic')!r}")

    predicates = policy.get("predicates", [])
    if not predicates:
        result.add_warning(f"{label}: no predicates, policy matches every request")
    for i, predicate in enumerate(predicates):
        _validate_predicate(f"{label}.predicates[{i}]", predicate, result)

    stages = policy.get("stages", [])
    if not stages and not policy.get("skippable", False):
        result.add_error(f"{label}: non-skippable policy must declare at least one stage")
    names: set[str] = set()
    for i, stage in enumerate(stages):
        name = stage.get("name")
        where = f"{label}.stages[{i}]"
        if not name:
            result.add_error(f"{where}: missing name")
        elif name in names:
            result.add_error(f"{label}: duplicate stage name {name!r}")
        else:
            names.add(name)
        _validate_selector(where, stage.get("approvers"), result)
        _validate_voting(where, stage.get("voting"), result)


def _validate_predicate(where: str, predicate: dict[str, Any], result: ConfigValidationResult) -> None:
    for key in ("kind", "metric", "operator", "value"):
        if key not in predicate:
            result.add_error(f"{where}: missing {key}")
    kind = _enum_value(PredicateKind, predicate.get("kind"))
    operator = _enum_value(PredicateOperator, predicate.get("operator"))
    if "kind" in predicate and kind is None:
        result.add_error(f"{where}: unknown kind {predicate['kind']!r}")
    if "operator" in predicate and operator is None:
        result.add_error(f"{where}: unknown operator {predicate['operator']!r}")
    if kind is not None and operator is not None and operator not in OPERATORS_BY_KIND[kind]:
        result.add_error(
            f"{where}: operator '{operator.value}' is not valid for {kind.value} predicates"
        )


def _validate_selector(where: str, selector: Any, result: ConfigValidationResult) -> None:
    if not isinstance(selector, dict):
        result.add_error(f"{where}: missing approvers selector")
        return
    if _enum_value(SelectorType, selector.get("type")) is None:
        result.add_error(f"{where}: unknown selector type {selector.get('type')!r}")


def _validate_voting(where: str, voting: Any, result: ConfigValidationResult) -> None:
    if voting is None:
        return
    rule = _enum_value(VotingRuleType, voting.get("rule"))
    if rule is None:
        result.add_error(f"{where}: unknown voting rule {voting.get('rule')!r}")
        return
    minimum = voting.get("min_approvals")
    if rule == VotingRuleType.THRESHOLD:
        if not isinstance(minimum, int) or minimum < 1:
            result.add_error(f"{where}: threshold voting needs min_approvals >= 1")
    elif minimum is not None:
        result.add_error(f"{where}: min_approvals is only valid for threshold rules")
