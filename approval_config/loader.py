"""
Policy-set loader (``approval_config.loader``).

Responsibility
--------------
Loads a YAML policy-set file and parses it into ``ApprovalPolicy``
domain dataclasses.  Build/test tooling: runtime callers go through
``approval_config.get_active_policies()``.

Architecture position
---------------------
**Config layer**.  Imports domain value objects from ``approval_kernel``;
the kernel never imports from here.

Invariants enforced
-------------------
* No silent defaults for required fields: a missing ``policy_id``,
  ``name``, ``priority`` or predicate field raises ``KeyError``.
* ``compute_checksum`` produces a deterministic SHA-256 hash of the raw
  set for identity and change detection.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
* Unknown enum values, operator/kind mismatch  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from approval_kernel.domain.approval import (
    ApprovalPolicy,
    ApproverSelector,
    PolicyPredicate,
    PredicateKind,
    PredicateLogic,
    PredicateOperator,
    SelectorType,
    StageTemplate,
    VotingRule,
    VotingRuleType,
)


@dataclass(frozen=True)
class PolicySet:
    """A loaded, validated set of approval policies."""

    config_id: str
    version: int
    checksum: str
    policies: tuple[ApprovalPolicy, ...]
    description: str = ""

    def get(self, policy_id: str) -> ApprovalPolicy | None:
        for policy in self.policies:
            if policy.policy_id == policy_id:
                return policy
        return None


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_predicate(data: dict[str, Any]) -> PolicyPredicate:
    return PolicyPredicate(
        kind=PredicateKind(data["kind"]),
        metric=data["metric"],
        operator=PredicateOperator(data["operator"]),
        value=data["value"],
    )


def parse_selector(data: dict[str, Any]) -> ApproverSelector:
    """Parse ``{type: role, roles: [...]}`` style selector dicts.

    Every key other than ``type`` becomes selector config.  List values
    are frozen to tuples.
    """
    config = {
        key: tuple(value) if isinstance(value, list) else value
        for key, value in data.items()
        if key != "type"
    }
    return ApproverSelector(SelectorType(data["type"]), config)


def parse_voting_rule(data: dict[str, Any] | None) -> VotingRule:
    if not data:
        return VotingRule.any_rule()
    return VotingRule(VotingRuleType(data["rule"]), data.get("min_approvals"))


def parse_stage(data: dict[str, Any]) -> StageTemplate:
    return StageTemplate(
        name=data["name"],
        approver_selector=parse_selector(data["approvers"]),
        voting_rule=parse_voting_rule(data.get("voting")),
    )


def parse_policy(data: dict[str, Any]) -> ApprovalPolicy:
    """
    Parse an ``ApprovalPolicy`` from a dict.

    Preconditions:
        - ``data`` contains ``policy_id``, ``name`` and ``priority``.
    Raises:
        KeyError: if required keys are missing.
        ValueError: if an enum value is unknown or a predicate operator
            does not fit its kind.
    """
    return ApprovalPolicy(
        policy_id=data["policy_id"],
        name=data["name"],
        priority=int(data["priority"]),
        predicates=tuple(parse_predicate(p) for p in data.get("predicates", [])),
        predicate_logic=PredicateLogic(data.get("predicate_logic", "all")),
        required_stages=tuple(parse_stage(s) for s in data.get("stages", [])),
        skippable=bool(data.get("skippable", False)),
        entity_types=tuple(data.get("entity_types", [])),
        description=data.get("description", ""),
    )


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Identical ``data`` always produces identical checksums.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def parse_policy_set(data: dict[str, Any]) -> PolicySet:
    return PolicySet(
        config_id=data["config_id"],
        version=int(data.get("version", 1)),
        checksum=compute_checksum(data),
        policies=tuple(parse_policy(p) for p in data.get("policies", [])),
        description=data.get("description", ""),
    )
