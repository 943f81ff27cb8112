"""
approval_services.static_providers -- In-process policy and approver lookups.

Responsibility:
    ``StaticPolicyProvider`` serves a fixed list of ``ApprovalPolicy``
    objects (typically a loaded ``PolicySet``).  ``StaticApproverResolver``
    turns ``ApproverSelector`` descriptors into principal ids from
    in-memory directories: explicit lists, a role map, a manager chain and
    registered dynamic rules.

Architecture position:
    Services > adapters.  Mirrors the ``OrgHierarchyProvider`` lookups
    (roles, approval chain) behind the ``ApproverResolver`` port.

Failure modes:
    - Unknown roles, missing managers and unknown dynamic rules resolve to
      an empty tuple; the state machine then skips or rejects the stage
      according to the policy.
    - Duplicate policy ids raise ``ValueError`` at construction.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence

from approval_kernel.domain.approval import ApprovalPolicy, ApproverSelector, SelectorType
from approval_kernel.domain.ports import ApproverResolutionContext
from approval_kernel.logging_config import get_logger

logger = get_logger("services.static_providers")

DynamicRule = Callable[[ApproverResolutionContext], Iterable[str]]


class StaticPolicyProvider:
    """Fixed, ordered policy catalogue."""

    def __init__(self, policies: Iterable[ApprovalPolicy]) -> None:
        self._policies: tuple[ApprovalPolicy, ...] = tuple(policies)
        self._by_id: dict[str, ApprovalPolicy] = {}
        for policy in self._policies:
            if policy.policy_id in self._by_id:
                raise ValueError(f"Duplicate policy id: {policy.policy_id}")
            self._by_id[policy.policy_id] = policy

    def get_all_policies(self) -> Sequence[ApprovalPolicy]:
        return self._policies

    def get_policy_by_id(self, policy_id: str) -> ApprovalPolicy | None:
        return self._by_id.get(policy_id)

    def get_policies_for_entity_type(self, entity_type: str) -> Sequence[ApprovalPolicy]:
        return tuple(p for p in self._policies if p.applies_to(entity_type))


class StaticApproverResolver:
    """Resolve selectors against in-memory directories.

    Args:
        roles: role name -> principal ids holding it.
        managers: principal id -> that principal's manager.
        dynamic_rules: rule name -> callable returning principal ids.
    """

    def __init__(
        self,
        roles: Mapping[str, Iterable[str]] | None = None,
        managers: Mapping[str, str] | None = None,
        dynamic_rules: Mapping[str, DynamicRule] | None = None,
    ) -> None:
        self._roles = {k: tuple(v) for k, v in (roles or {}).items()}
        self._managers = dict(managers or {})
        self._dynamic = dict(dynamic_rules or {})

    def register_dynamic_rule(self, name: str, rule: DynamicRule) -> None:
        self._dynamic[name] = rule

    def approval_chain(self, principal_id: str, levels: int) -> tuple[str, ...]:
        """Up to ``levels`` managers above ``principal_id``, nearest first."""
        chain: list[str] = []
        current = principal_id
        for _ in range(levels):
            manager = self._managers.get(current)
            if manager is None or manager in chain or manager == principal_id:
                break
            chain.append(manager)
            current = manager
        return tuple(chain)

    def resolve(
        self,
        selector: ApproverSelector,
        context: ApproverResolutionContext,
    ) -> tuple[str, ...]:
        config = selector.config
        if selector.selector_type == SelectorType.EXPLICIT:
            found: Iterable[str] = config.get("principal_ids", ())
        elif selector.selector_type == SelectorType.ROLE:
            roles = config.get("roles") or (config.get("role"),)
            found = [p for role in roles for p in self._roles.get(role, ())]
        elif selector.selector_type == SelectorType.HIERARCHY:
            found = self.approval_chain(context.initiator_id, int(config.get("levels", 1)))
        else:
            rule = self._dynamic.get(config.get("rule"))
            if rule is None:
                logger.warning(
                    "approver_rule_not_registered",
                    extra={"rule": config.get("rule")},
                )
                found = ()
            else:
                found = rule(context)
        return tuple(dict.fromkeys(found))

    def matches(
        self,
        principal_id: str,
        selector: ApproverSelector,
        context: ApproverResolutionContext,
    ) -> bool:
        return principal_id in self.resolve(selector, context)
